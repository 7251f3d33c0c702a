"""Source log over a transport topic."""

import time
from typing import Optional

from cdc_engine.common.models import RawChangeRecord, ReadFrom, SourcePosition, StartPosition
from cdc_engine.common.utils import utc_now
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.transport.base import Transport, TransportSubscription

logger = get_logger(__name__)


class TransportLog:
    """
    Exposes one transport topic as a SourceLog.

    Positions are transport offsets (segment 0). Envelopes carrying an
    ``origin_position`` that does not advance past the previous one are
    republished duplicates and are dropped.
    """

    def __init__(self, transport: Transport, topic: str, group: str) -> None:
        self.transport = transport
        self.topic = topic
        self.group = group

    def open_stream(self, start: ReadFrom) -> "TransportStream":
        if isinstance(start, SourcePosition):
            offset: Optional[int] = start.offset
        elif start is StartPosition.LATEST:
            offset = self.transport.end_offset(self.topic)
        else:
            offset = None
        return TransportStream(self.transport.subscribe(self.topic, self.group, offset), self.topic)

    def current_head_position(self) -> Optional[SourcePosition]:
        end = self.transport.end_offset(self.topic)
        if end <= self.transport.earliest_offset(self.topic):
            return None
        return SourcePosition.from_offset(end - 1)

    def earliest_retained_position(self) -> Optional[SourcePosition]:
        return SourcePosition.from_offset(self.transport.earliest_offset(self.topic))


class TransportStream:
    def __init__(self, subscription: TransportSubscription, topic: str) -> None:
        self.subscription = subscription
        self.topic = topic
        self._last_origin: Optional[SourcePosition] = None

    def next(self, timeout: float) -> Optional[RawChangeRecord]:
        deadline = time.monotonic() + timeout
        while True:
            record = self.subscription.poll(max(0.0, deadline - time.monotonic()))
            if record is None:
                return None
            origin_data = record.value.get("origin_position") if isinstance(record.value, dict) else None
            if origin_data:
                origin = SourcePosition.from_dict(origin_data)
                if self._last_origin is not None and origin <= self._last_origin:
                    logger.debug(f"{self.topic}: dropping republished record at offset {record.offset} ({origin})")
                    if time.monotonic() >= deadline:
                        return None
                    continue
                self._last_origin = origin
            return RawChangeRecord(
                position=SourcePosition.from_offset(record.offset),
                payload=record.value,
                received_at=utc_now(),
            )

    def close(self) -> None:
        self.subscription.close()
