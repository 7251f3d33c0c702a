"""Upsert-by-primary-key sink."""

from typing import Mapping, Optional, Protocol, Sequence

from cdc_engine.common.errors import SchemaError
from cdc_engine.common.models import ChangeEvent, SourcePosition, TableId
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.sinks.base import RowWrite, keyed_writes

logger = get_logger(__name__)


class UpsertTarget(Protocol):
    """Keyed table store with position-guarded writes."""

    def open(self) -> None:
        ...

    def write_batch(self, writes: Sequence[RowWrite]) -> int:
        """
        Apply writes atomically, in order.

        A write is ignored when the target already holds the same key at the same
        or a later position (a deleted key keeps its position as a tombstone).
        Returns the number of writes that changed the target.
        """
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...


class UpsertTableSink:
    """
    Applies INSERT/UPDATE as upserts and DELETE as removals by primary key.

    Every write carries the event's source position, so re-applying an event the
    target already holds is a no-op.
    """

    kind = "upsert"

    def __init__(self, sink_id: str, target: UpsertTarget, primary_keys: Mapping[str, Sequence[str]]) -> None:
        """
        Initialize upsert sink.

        Args:
            sink_id: Sink identifier
            target: Keyed store to write to
            primary_keys: table id (schema.table) -> primary key columns
        """
        self._sink_id = sink_id
        self.target = target
        self.primary_keys = {TableId.parse(t): tuple(cols) for t, cols in primary_keys.items()}
        self._applied: Optional[SourcePosition] = None
        self._durable: Optional[SourcePosition] = None

    @property
    def sink_id(self) -> str:
        return self._sink_id

    def open(self) -> None:
        self.target.open()
        logger.info(f"Opened upsert sink {self.sink_id}")

    def _key_columns(self, table_id: TableId) -> Sequence[str]:
        columns = self.primary_keys.get(table_id)
        if not columns:
            raise SchemaError(f"sink {self.sink_id} has no primary key configured for {table_id}")
        return columns

    def apply(self, batch: Sequence[ChangeEvent]) -> Optional[SourcePosition]:
        if not batch:
            return self._applied
        writes = []
        for event in batch:
            writes.extend(keyed_writes(event, self._key_columns(event.table_id)))
        changed = self.target.write_batch(writes)
        self._applied = batch[-1].source_position
        logger.debug(f"Sink {self.sink_id}: {changed}/{len(writes)} writes changed the target")
        return self._applied

    def flush(self) -> Optional[SourcePosition]:
        self.target.flush()
        self._durable = self._applied
        return self._durable

    def tick(self) -> None:
        pass

    def close(self) -> None:
        self.target.close()
