"""Source log collaborator protocols."""

from typing import Optional, Protocol, runtime_checkable

from cdc_engine.common.models import RawChangeRecord, ReadFrom, SourcePosition


@runtime_checkable
class ChangeStream(Protocol):
    """An open, ordered stream of raw change records."""

    def next(self, timeout: float) -> Optional[RawChangeRecord]:
        """Return the next record, or None if nothing arrived within ``timeout`` seconds."""
        ...

    def close(self) -> None:
        """Release the stream; wakes up a blocked ``next``."""
        ...


@runtime_checkable
class SourceLog(Protocol):
    """
    Ordered change log of a transactional source.

    ``open_stream`` may return records at or before a concrete start position;
    the LogReader filters them. ``earliest_retained_position`` is the position of
    the first record still available (for offset logs, the log start offset even
    when the log is empty).
    """

    def open_stream(self, start: ReadFrom) -> ChangeStream:
        ...

    def current_head_position(self) -> Optional[SourcePosition]:
        ...

    def earliest_retained_position(self) -> Optional[SourcePosition]:
        ...
