"""Append-only change log sink."""

from typing import Any, Dict, List, Optional, Protocol, Sequence

from cdc_engine.common.models import ChangeEvent, SourcePosition
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


class AppendTarget(Protocol):
    """Append-only record store."""

    def open(self) -> Optional[SourcePosition]:
        """Open the store and return the position of the last record it holds."""
        ...

    def append(self, records: Sequence[Dict[str, Any]]) -> None:
        """Append records atomically: on failure none of them remain."""
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...


def change_record(event: ChangeEvent) -> Dict[str, Any]:
    """Immutable history record for one event."""
    return {
        "table": str(event.table_id),
        "operation": event.operation.value,
        "before": dict(event.before_image) if event.before_image is not None else None,
        "after": dict(event.after_image) if event.after_image is not None else None,
        "changed_fields": list(event.changed_fields()),
        "position": event.source_position.to_dict(),
        "position_key": event.source_position.sort_key(),
        "origin_position": event.origin_position.to_dict() if event.origin_position else None,
        "commit_timestamp": event.commit_timestamp.isoformat() if event.commit_timestamp else None,
    }


class AppendLogSink:
    """
    Appends every event, including updates and deletes, as an immutable record.

    Prior entries are never mutated. Events at or below the last position already
    in the target are skipped, so replays after a crash do not duplicate history.
    """

    kind = "append"

    def __init__(self, sink_id: str, target: AppendTarget) -> None:
        self._sink_id = sink_id
        self.target = target
        self._last_appended: Optional[SourcePosition] = None
        self._durable: Optional[SourcePosition] = None

    @property
    def sink_id(self) -> str:
        return self._sink_id

    def open(self) -> None:
        self._last_appended = self.target.open()
        self._durable = self._last_appended
        logger.info(f"Opened append sink {self.sink_id} (last appended: {self._last_appended})")

    def apply(self, batch: Sequence[ChangeEvent]) -> Optional[SourcePosition]:
        fresh: List[ChangeEvent] = [
            e for e in batch if self._last_appended is None or e.source_position > self._last_appended
        ]
        if len(fresh) < len(batch):
            logger.debug(f"Sink {self.sink_id}: skipped {len(batch) - len(fresh)} already appended events")
        if fresh:
            self.target.append([change_record(e) for e in fresh])
            self._last_appended = fresh[-1].source_position
        return self._last_appended

    def flush(self) -> Optional[SourcePosition]:
        self.target.flush()
        self._durable = self._last_appended
        return self._durable

    def tick(self) -> None:
        pass

    def close(self) -> None:
        self.target.close()
