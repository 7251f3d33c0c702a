"""JSON-lines append target: one history file per table."""

import json
import os
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Sequence

from cdc_engine.common.errors import TransientIOError
from cdc_engine.common.models import SourcePosition
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


def _last_line(path: Path) -> Optional[bytes]:
    """Read the last complete line of a file without loading all of it."""
    with open(path, "rb") as handle:
        handle.seek(0, os.SEEK_END)
        end = handle.tell()
        if end == 0:
            return None
        chunk = 4096
        data = b""
        pos = end
        while pos > 0:
            read = min(chunk, pos)
            pos -= read
            handle.seek(pos)
            data = handle.read(read) + data
            lines = data.rstrip(b"\n").split(b"\n")
            if len(lines) > 1 or pos == 0:
                return lines[-1] or None
    return None


class JsonLinesAppendTarget:
    """
    Appends change records to ``<directory>/<schema>.<table>.jsonl``.

    A failed append truncates every touched file back to its previous size so a
    batch is never half written; ``flush`` fsyncs.
    """

    def __init__(self, directory: str) -> None:
        self.directory = Path(directory)
        self._handles: Dict[str, BinaryIO] = {}

    def _path(self, table: str) -> Path:
        return self.directory / f"{table}.jsonl"

    def _handle(self, table: str) -> BinaryIO:
        handle = self._handles.get(table)
        if handle is None:
            handle = open(self._path(table), "ab")
            self._handles[table] = handle
        return handle

    def open(self) -> Optional[SourcePosition]:
        """Create the directory and recover the highest position already written."""
        self.directory.mkdir(parents=True, exist_ok=True)
        last: Optional[SourcePosition] = None
        for path in sorted(self.directory.glob("*.jsonl")):
            line = _last_line(path)
            if not line:
                continue
            try:
                position = SourcePosition.from_dict(json.loads(line)["position"])
            except (ValueError, KeyError) as e:
                logger.warning(f"Ignoring unreadable last record in {path}: {e}")
                continue
            if last is None or position > last:
                last = position
        logger.info(f"JSON-lines target at {self.directory} (last position: {last})")
        return last

    def append(self, records: Sequence[Dict[str, Any]]) -> None:
        sizes: Dict[str, int] = {}
        try:
            for record in records:
                table = record["table"]
                handle = self._handle(table)
                if table not in sizes:
                    handle.flush()
                    sizes[table] = handle.tell()
                handle.write(json.dumps(record, sort_keys=True, default=str).encode("utf-8") + b"\n")
            for table in sizes:
                self._handles[table].flush()
        except OSError as e:
            for table, size in sizes.items():
                handle = self._handles.pop(table, None)
                if handle is not None:
                    try:
                        handle.close()
                    except OSError:
                        pass
                os.truncate(self._path(table), size)
            raise TransientIOError(f"append to {self.directory} failed: {e}") from e

    def flush(self) -> None:
        try:
            for handle in self._handles.values():
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as e:
            raise TransientIOError(f"fsync in {self.directory} failed: {e}") from e

    def close(self) -> None:
        for handle in self._handles.values():
            handle.close()
        self._handles.clear()
