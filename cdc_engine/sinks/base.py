"""
Sink writer capability protocol.

New sink kinds plug into the pipeline by implementing this protocol; the
pipeline never subclasses or inspects concrete writers.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Sequence, Tuple, runtime_checkable

from cdc_engine.common.models import ChangeEvent, SourcePosition, TableId


@runtime_checkable
class SinkWriter(Protocol):
    """Protocol that every sink writer must satisfy."""

    @property
    def sink_id(self) -> str:
        """Unique identifier for this sink instance."""
        ...

    @property
    def kind(self) -> str:
        """Sink kind: upsert, append or olap."""
        ...

    def open(self) -> None:
        """Initialize resources (connections, files, HTTP clients)."""
        ...

    def apply(self, batch: Sequence[ChangeEvent]) -> Optional[SourcePosition]:
        """Apply a batch in order; return the highest position applied."""
        ...

    def flush(self) -> Optional[SourcePosition]:
        """Block until everything applied is durable; return the highest durable position."""
        ...

    def tick(self) -> None:
        """Called periodically while idle, for time-based flushing."""
        ...

    def close(self) -> None:
        """Release resources."""
        ...


@dataclass(frozen=True)
class RowWrite:
    """One keyed write handed to an upsert or bulk target. ``row`` is None for deletes."""

    table_id: TableId
    key_columns: Tuple[str, ...]
    key: Tuple[Any, ...]
    row: Optional[Dict[str, Any]]
    position: SourcePosition

    @property
    def is_delete(self) -> bool:
        return self.row is None


def keyed_writes(event: ChangeEvent, key_columns: Sequence[str]) -> Sequence[RowWrite]:
    """
    Translate an event into keyed writes.

    An UPDATE that changes the primary key becomes a delete of the old key followed
    by a write of the new one, both at the event's position.
    """
    columns = tuple(key_columns)
    position = event.source_position
    if event.after_image is None:
        return [RowWrite(event.table_id, columns, event.primary_key(columns), None, position)]

    new_key = event.primary_key(columns)
    writes = []
    if event.before_image is not None:
        old_key = tuple(event.before_image.get(c) for c in columns)
        if all(c in event.before_image for c in columns) and old_key != new_key:
            writes.append(RowWrite(event.table_id, columns, old_key, None, position))
    writes.append(RowWrite(event.table_id, columns, new_key, dict(event.after_image), position))
    return writes
