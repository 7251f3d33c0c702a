"""In-process source log, for embedding the engine and for tests."""

import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cdc_engine.common.errors import TransientIOError
from cdc_engine.common.models import RawChangeRecord, ReadFrom, SourcePosition, StartPosition, TableId
from cdc_engine.common.utils import utc_now

_OP_CODES = {"INSERT": "c", "UPDATE": "u", "DELETE": "d"}


def build_envelope(
    table: str,
    operation: str,
    before: Optional[Mapping[str, Any]] = None,
    after: Optional[Mapping[str, Any]] = None,
    ts_ms: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a Debezium-style change envelope."""
    table_id = TableId.parse(table)
    ts = ts_ms if ts_ms is not None else int(time.time() * 1000)
    return {
        "op": _OP_CODES[operation.upper()],
        "before": dict(before) if before is not None else None,
        "after": dict(after) if after is not None else None,
        "source": {"db": table_id.schema, "table": table_id.name, "ts_ms": ts},
        "ts_ms": ts,
    }


class InMemorySourceLog:
    """
    Append-only change log held in memory.

    Offsets start at ``first_offset`` and are dense. ``truncate_before`` drops
    history to simulate a retention window, and ``inject_failures`` makes the next
    reads raise TransientIOError.
    """

    def __init__(self, first_offset: int = 1) -> None:
        self._records: List[Tuple[int, Optional[Dict[str, Any]]]] = []
        self._next_offset = first_offset
        self._start_offset = first_offset
        self._cond = threading.Condition()
        self._failures = 0

    def append(self, payload: Optional[Dict[str, Any]]) -> SourcePosition:
        """Append a raw payload (None for a control record) and wake up readers."""
        with self._cond:
            offset = self._next_offset
            self._records.append((offset, payload))
            self._next_offset += 1
            self._cond.notify_all()
        return SourcePosition.from_offset(offset)

    def append_change(
        self,
        table: str,
        operation: str,
        before: Optional[Mapping[str, Any]] = None,
        after: Optional[Mapping[str, Any]] = None,
        ts_ms: Optional[int] = None,
    ) -> SourcePosition:
        """
        Append one row change.

        Args:
            table: Table id as schema.table
            operation: INSERT, UPDATE or DELETE
            before: Row before the change
            after: Row after the change
            ts_ms: Commit timestamp in epoch milliseconds

        Returns:
            Position of the new record
        """
        return self.append(build_envelope(table, operation, before, after, ts_ms))

    def truncate_before(self, offset: int) -> None:
        """Drop every record with an offset lower than ``offset``."""
        with self._cond:
            self._records = [(o, p) for o, p in self._records if o >= offset]
            self._start_offset = max(self._start_offset, offset)
            self._next_offset = max(self._next_offset, self._start_offset)

    def inject_failures(self, count: int) -> None:
        with self._cond:
            self._failures = count

    def _take_failure(self) -> bool:
        with self._cond:
            if self._failures > 0:
                self._failures -= 1
                return True
            return False

    def open_stream(self, start: ReadFrom) -> "_InMemoryStream":
        with self._cond:
            if isinstance(start, SourcePosition):
                offset = start.offset
            elif start is StartPosition.LATEST:
                offset = self._next_offset
            else:
                offset = self._start_offset
        return _InMemoryStream(self, max(offset, self._start_offset))

    def current_head_position(self) -> Optional[SourcePosition]:
        with self._cond:
            if self._next_offset == self._start_offset and not self._records:
                return None
            return SourcePosition.from_offset(self._next_offset - 1)

    def earliest_retained_position(self) -> Optional[SourcePosition]:
        with self._cond:
            return SourcePosition.from_offset(self._start_offset)

    def _read_at(self, offset: int, timeout: float, closed: threading.Event) -> Optional[Tuple[int, Optional[Dict[str, Any]]]]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while not closed.is_set():
                if offset < self._start_offset:
                    raise TransientIOError(f"offset {offset} was truncated while reading")
                index = offset - self._start_offset
                if index < len(self._records):
                    return self._records[index]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
        return None

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


class _InMemoryStream:
    """Cursor over an InMemorySourceLog."""

    def __init__(self, log: InMemorySourceLog, offset: int) -> None:
        self._log = log
        self._offset = offset
        self._closed = threading.Event()

    def next(self, timeout: float) -> Optional[RawChangeRecord]:
        if self._log._take_failure():
            raise TransientIOError("injected source failure")
        entry = self._log._read_at(self._offset, timeout, self._closed)
        if entry is None:
            return None
        offset, payload = entry
        self._offset = offset + 1
        return RawChangeRecord(position=SourcePosition.from_offset(offset), payload=payload, received_at=utc_now())

    def close(self) -> None:
        self._closed.set()
        self._log._wake()
