"""Buffered transport protocols."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple


@dataclass(frozen=True)
class TransportRecord:
    """One record of a transport topic. ``value`` is None for tombstones."""

    offset: int
    key: Optional[str]
    value: Optional[Dict[str, Any]]


class TransportSubscription(Protocol):
    """Cursor over one topic, in offset order."""

    def poll(self, timeout: float) -> Optional[TransportRecord]:
        """Return the next record, or None if nothing arrived within ``timeout`` seconds."""
        ...

    def close(self) -> None:
        ...


class Transport(Protocol):
    """
    Durable, replayable, ordered log between a publisher and its consumers.

    Each topic is a single ordered partition; records carry the table id as key.
    """

    def publish(self, topic: str, records: Sequence[Tuple[Optional[str], Optional[Dict[str, Any]]]]) -> None:
        """Send (key, value) records in order. Durability is confirmed by ``flush``."""
        ...

    def flush(self) -> None:
        """Block until every published record is acknowledged; raise TransientIOError otherwise."""
        ...

    def subscribe(self, topic: str, group: str, start_offset: Optional[int] = None) -> TransportSubscription:
        """Open a cursor at ``start_offset`` (inclusive); None means the earliest retained record."""
        ...

    def earliest_offset(self, topic: str) -> int:
        """Offset of the first retained record (the log start offset when the topic is empty)."""
        ...

    def end_offset(self, topic: str) -> int:
        """Offset the next published record will get."""
        ...

    def last_record(self, topic: str) -> Optional[TransportRecord]:
        ...

    def topics(self, prefix: str = "") -> List[str]:
        ...

    def close(self) -> None:
        ...
