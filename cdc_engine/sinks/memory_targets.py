"""In-process sink targets, used for tests and local dry runs."""

import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cdc_engine.common.errors import TransientIOError
from cdc_engine.common.models import SourcePosition, TableId
from cdc_engine.sinks.base import RowWrite


class _FailureInjector:
    """Raises TransientIOError for the next ``count`` calls, or for every call while ``down``."""

    def __init__(self) -> None:
        self._pending = 0
        self.down = False
        self.calls = 0

    def inject_failures(self, count: int) -> None:
        self._pending += count

    def check(self) -> None:
        self.calls += 1
        if self.down:
            raise TransientIOError("target unavailable")
        if self._pending > 0:
            self._pending -= 1
            raise TransientIOError("injected write failure")


class InMemoryUpsertTarget(_FailureInjector):
    """
    Keyed in-memory tables with per-key position guards.

    Deleted keys leave a tombstone holding the delete's position so that an older
    write replayed later cannot resurrect the row.
    """

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        # table -> key -> (row or None for tombstone, position)
        self._tables: Dict[TableId, Dict[Tuple[Any, ...], Tuple[Optional[Dict[str, Any]], SourcePosition]]] = {}
        self.write_log: List[RowWrite] = []

    def open(self) -> None:
        pass

    def write_batch(self, writes: Sequence[RowWrite]) -> int:
        self.check()
        changed = 0
        with self._lock:
            for write in writes:
                table = self._tables.setdefault(write.table_id, {})
                current = table.get(write.key)
                if current is not None and current[1] >= write.position:
                    continue
                table[write.key] = (dict(write.row) if write.row is not None else None, write.position)
                self.write_log.append(write)
                changed += 1
        return changed

    def rows(self, table: str) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
        """Live rows of a table, tombstones excluded."""
        with self._lock:
            stored = self._tables.get(TableId.parse(table), {})
            return {key: dict(row) for key, (row, _) in stored.items() if row is not None}

    def position_of(self, table: str, key: Tuple[Any, ...]) -> Optional[SourcePosition]:
        with self._lock:
            entry = self._tables.get(TableId.parse(table), {}).get(key)
            return entry[1] if entry else None

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class InMemoryAppendTarget(_FailureInjector):
    """Append-only in-memory record list."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self.records: List[Dict[str, Any]] = []

    def open(self) -> Optional[SourcePosition]:
        with self._lock:
            if not self.records:
                return None
            return SourcePosition.from_dict(self.records[-1]["position"])

    def append(self, records: Sequence[Dict[str, Any]]) -> None:
        self.check()
        with self._lock:
            self.records.extend(dict(r) for r in records)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class InMemoryBulkTarget(_FailureInjector):
    """
    In-memory primary-key OLAP table set.

    Rows flagged ``__op`` = 1 delete their key. A label already loaded is
    acknowledged without applying the rows again.
    """

    def __init__(self, primary_keys: Optional[Dict[str, Sequence[str]]] = None) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self.primary_keys = {TableId.parse(t): tuple(c) for t, c in (primary_keys or {}).items()}
        self.tables: Dict[TableId, Dict[Tuple[Any, ...], Dict[str, Any]]] = {}
        self.labels: List[str] = []

    def open(self) -> None:
        pass

    def load(self, table_id: TableId, rows: List[Dict[str, Any]], label: str) -> None:
        self.check()
        with self._lock:
            if label in self.labels:
                return
            columns = self.primary_keys.get(table_id)
            table = self.tables.setdefault(table_id, {})
            for row in rows:
                data = {k: v for k, v in row.items() if k != "__op"}
                key = tuple(data.get(c) for c in columns) if columns else tuple(sorted(data.items()))
                if row.get("__op") == 1:
                    table.pop(key, None)
                else:
                    table[key] = data
            self.labels.append(label)

    def rows(self, table: str) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self.tables.get(TableId.parse(table), {}).items()}

    def close(self) -> None:
        pass
