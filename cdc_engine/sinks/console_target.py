"""Console append target: prints change records as they are applied."""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape

from cdc_engine.common.models import SourcePosition

# Row-kind prefixes: insert, update before/after images, delete.
_STYLES = {"+I": "green", "-U": "yellow", "+U": "yellow", "-D": "red"}


def _row_kinds(record: Dict[str, Any]) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
    operation = record["operation"]
    if operation == "INSERT":
        return [("+I", record["after"])]
    if operation == "UPDATE":
        return [("-U", record["before"]), ("+U", record["after"])]
    return [("-D", record["before"])]


class ConsoleAppendTarget:
    """
    Prints each change record as one or two row-kind lines.

    Updates print their before image as ``-U`` and their after image as ``+U``.
    Nothing is retained, so ``open`` reports no prior position and records
    replayed after a restart are printed again.
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def open(self) -> Optional[SourcePosition]:
        return None

    def append(self, records: Sequence[Dict[str, Any]]) -> None:
        for record in records:
            for kind, row in _row_kinds(record):
                style = _STYLES[kind]
                line = escape(json.dumps(row, sort_keys=True, default=str))
                self.console.print(
                    f"[dim]{record['table']}[/dim] [{style}]{kind}[/{style}] {line}",
                    highlight=False,
                    soft_wrap=True,
                )

    def flush(self) -> None:
        self.console.file.flush()

    def close(self) -> None:
        pass
