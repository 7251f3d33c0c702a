"""
Log reader.

Tails a source's ordered change log from a resume position or a start sentinel
and hands out raw change records in strictly increasing position order.
"""

import threading
import time
from typing import Iterator, Optional

from cdc_engine.common.errors import OrderingViolationError, PositionLostError
from cdc_engine.common.models import RawChangeRecord, ReadFrom, SourcePosition, StartPosition
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.source.base import ChangeStream, SourceLog

logger = get_logger(__name__)


def is_position_retained(position: SourcePosition, earliest: Optional[SourcePosition]) -> bool:
    """
    Check whether resuming after ``position`` loses no records.

    The record following ``position`` must still be retained: either ``position``
    is at or after the earliest retained record, or it is the record immediately
    before it in the same segment.
    """
    if earliest is None or position >= earliest:
        return True
    return position.segment == earliest.segment and position.offset + 1 >= earliest.offset


class LogReader:
    """
    Ordered, resumable reader over a SourceLog.

    Resuming from a concrete position is exclusive: only records strictly after it
    are returned. ``poll`` blocks for at most the given timeout and ``close``
    interrupts a blocked poll.
    """

    def __init__(self, source: SourceLog, poll_interval: float = 0.5) -> None:
        """
        Initialize log reader.

        Args:
            source: Source log to read
            poll_interval: Default bounded wait for ``poll`` and iteration
        """
        self.source = source
        self.poll_interval = poll_interval
        self._stream: Optional[ChangeStream] = None
        self._resume_after: Optional[SourcePosition] = None
        self._last_position: Optional[SourcePosition] = None
        self._closed = threading.Event()

    @property
    def resume_after(self) -> Optional[SourcePosition]:
        """Position the current stream resumes after (None when reading from the earliest record)."""
        return self._resume_after

    @property
    def last_position(self) -> Optional[SourcePosition]:
        """Position of the last record returned."""
        return self._last_position

    def open(self, from_position: ReadFrom) -> "LogReader":
        """
        Open the reader.

        Args:
            from_position: Concrete position to resume after, or a StartPosition sentinel

        Returns:
            self

        Raises:
            PositionLostError: If the resume position is older than the retained history
        """
        if self._stream is not None:
            self.close()
        self._closed.clear()
        self._last_position = None

        if isinstance(from_position, SourcePosition):
            earliest = self.source.earliest_retained_position()
            if not is_position_retained(from_position, earliest):
                logger.error(f"Resume position {from_position} is no longer retained (earliest: {earliest})")
                raise PositionLostError(from_position, earliest)
            self._resume_after = from_position
        elif from_position is StartPosition.LATEST:
            self._resume_after = self.source.current_head_position()
        else:
            self._resume_after = None

        self._stream = self.source.open_stream(from_position)
        logger.info(f"Opened source log from {from_position} (resuming after {self._resume_after})")
        return self

    def poll(self, timeout: Optional[float] = None) -> Optional[RawChangeRecord]:
        """
        Return the next record, or None if none arrived within the timeout.

        Raises:
            OrderingViolationError: If the source goes backwards
            TransientIOError: If the source connection was lost
        """
        stream = self._stream
        if stream is None:
            if self._closed.is_set():
                return None
            raise RuntimeError("LogReader is not open. Call open() first.")

        wait = self.poll_interval if timeout is None else timeout
        deadline = time.monotonic() + wait

        while not self._closed.is_set():
            remaining = max(0.0, deadline - time.monotonic())
            record = stream.next(remaining)
            if record is None:
                return None

            position = record.position
            if self._resume_after is not None and position <= self._resume_after:
                continue
            if self._last_position is not None:
                if position < self._last_position:
                    raise OrderingViolationError(
                        f"source went backwards: {position} after {self._last_position}"
                    )
                if position == self._last_position:
                    logger.debug(f"Dropping redelivered record at {position}")
                    continue

            self._last_position = position
            return record

        return None

    def __iter__(self) -> Iterator[RawChangeRecord]:
        while not self._closed.is_set():
            record = self.poll()
            if record is not None:
                yield record

    def current_head_position(self) -> Optional[SourcePosition]:
        return self.source.current_head_position()

    def earliest_retained_position(self) -> Optional[SourcePosition]:
        return self.source.earliest_retained_position()

    def close(self) -> None:
        """Close the reader and wake up any blocked poll."""
        self._closed.set()
        if self._stream is not None:
            try:
                self._stream.close()
            finally:
                self._stream = None
            logger.info("Closed source log")
