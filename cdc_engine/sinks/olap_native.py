"""Buffered OLAP-native ingest sink."""

import re
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from cdc_engine.common.errors import SchemaError
from cdc_engine.common.models import ChangeEvent, SourcePosition, TableId
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.sinks.base import keyed_writes

logger = get_logger(__name__)

# Row flag understood by primary-key OLAP tables: 0 upserts, 1 deletes.
OP_COLUMN = "__op"
OP_UPSERT = 0
OP_DELETE = 1

_LABEL_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class BulkIngestTarget(Protocol):
    """Batched native-ingest API of an OLAP store."""

    def open(self) -> None:
        ...

    def load(self, table_id: TableId, rows: List[Dict[str, Any]], label: str) -> None:
        """
        Load rows and return only once the store confirms they are durable.

        Loading the same label twice must not apply the rows twice.
        """
        ...

    def close(self) -> None:
        ...


class _TableBuffer:
    """Pending rows for one table, collapsed per key (last write wins)."""

    def __init__(self) -> None:
        self.rows: "OrderedDict[Tuple[Any, ...], Dict[str, Any]]" = OrderedDict()
        self.first: Optional[SourcePosition] = None
        self.last: Optional[SourcePosition] = None

    def add(self, key: Tuple[Any, ...], row: Dict[str, Any], position: SourcePosition) -> None:
        self.rows.pop(key, None)
        self.rows[key] = row
        if self.first is None:
            self.first = position
        self.last = position


class OLAPNativeSink:
    """
    Buffers changes and bulk-loads them on a size or time threshold.

    ``flush`` loads everything buffered and returns only after the target has
    confirmed durability; until then the buffered positions are not reported as
    durable.
    """

    kind = "olap"

    def __init__(
        self,
        sink_id: str,
        target: BulkIngestTarget,
        primary_keys: Mapping[str, Sequence[str]],
        max_rows: int = 1000,
        flush_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize OLAP sink.

        Args:
            sink_id: Sink identifier
            target: Bulk ingest target
            primary_keys: table id (schema.table) -> primary key columns
            max_rows: Buffered row count that triggers a load
            flush_interval: Seconds after which a non-empty buffer is loaded
            clock: Monotonic clock, injectable for tests
        """
        self._sink_id = sink_id
        self.target = target
        self.primary_keys = {TableId.parse(t): tuple(cols) for t, cols in primary_keys.items()}
        self.max_rows = max_rows
        self.flush_interval = flush_interval
        self._clock = clock
        self._buffers: "OrderedDict[TableId, _TableBuffer]" = OrderedDict()
        self._applied: Optional[SourcePosition] = None
        self._durable: Optional[SourcePosition] = None
        self._last_load = clock()
        self.loads = 0

    @property
    def sink_id(self) -> str:
        return self._sink_id

    @property
    def buffered_rows(self) -> int:
        return sum(len(b.rows) for b in self._buffers.values())

    def open(self) -> None:
        self.target.open()
        logger.info(f"Opened OLAP sink {self.sink_id} (max_rows={self.max_rows}, interval={self.flush_interval}s)")

    def apply(self, batch: Sequence[ChangeEvent]) -> Optional[SourcePosition]:
        for event in batch:
            columns = self.primary_keys.get(event.table_id)
            if not columns:
                raise SchemaError(f"sink {self.sink_id} has no primary key configured for {event.table_id}")
            buffer = self._buffers.setdefault(event.table_id, _TableBuffer())
            for write in keyed_writes(event, columns):
                if write.row is None:
                    row = dict(zip(write.key_columns, write.key))
                    row[OP_COLUMN] = OP_DELETE
                else:
                    row = dict(write.row)
                    row[OP_COLUMN] = OP_UPSERT
                buffer.add(write.key, row, write.position)
            self._applied = event.source_position

        if self.buffered_rows >= self.max_rows:
            self._load_buffers()
        return self._applied

    def tick(self) -> None:
        if self._buffers and self._clock() - self._last_load >= self.flush_interval:
            self._load_buffers()

    def flush(self) -> Optional[SourcePosition]:
        self._load_buffers()
        return self._durable

    def _label(self, table_id: TableId, buffer: _TableBuffer) -> str:
        """Deterministic load label: the same buffered range always gets the same label."""
        span = "-".join(f"{p.segment}_{p.offset}_{p.index}" for p in (buffer.first, buffer.last) if p is not None)
        return _LABEL_UNSAFE.sub("_", f"{self.sink_id}-{table_id.schema}-{table_id.name}-{span}")[:128]

    def _load_buffers(self) -> None:
        """Load every table buffer; tables loaded before a failure are not reloaded."""
        for table_id in list(self._buffers):
            buffer = self._buffers[table_id]
            if buffer.rows:
                self.target.load(table_id, list(buffer.rows.values()), self._label(table_id, buffer))
                self.loads += 1
                logger.debug(f"Sink {self.sink_id}: loaded {len(buffer.rows)} rows into {table_id}")
            del self._buffers[table_id]
        self._durable = self._applied
        self._last_load = self._clock()

    def close(self) -> None:
        self.target.close()
