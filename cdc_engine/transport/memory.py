"""In-process transport, used for tests and single-process buffered mode."""

import copy
import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cdc_engine.common.errors import TransientIOError
from cdc_engine.transport.base import TransportRecord


class _Topic:
    def __init__(self) -> None:
        self.records: List[TransportRecord] = []
        self.start_offset = 0
        self.next_offset = 0


class InMemoryTransport:
    """
    Topics held in memory, one ordered partition each.

    ``truncate_before`` simulates retention and ``inject_failures`` makes the next
    publishes fail with TransientIOError.
    """

    def __init__(self) -> None:
        self._topics: Dict[str, _Topic] = {}
        self._cond = threading.Condition()
        self._failures = 0

    def _topic(self, name: str) -> _Topic:
        topic = self._topics.get(name)
        if topic is None:
            topic = _Topic()
            self._topics[name] = topic
        return topic

    def inject_failures(self, count: int) -> None:
        with self._cond:
            self._failures = count

    def publish(self, topic: str, records: Sequence[Tuple[Optional[str], Optional[Dict[str, Any]]]]) -> None:
        with self._cond:
            if self._failures > 0:
                self._failures -= 1
                raise TransientIOError("injected publish failure")
            log = self._topic(topic)
            for key, value in records:
                log.records.append(TransportRecord(log.next_offset, key, copy.deepcopy(value)))
                log.next_offset += 1
            self._cond.notify_all()

    def flush(self) -> None:
        pass

    def truncate_before(self, topic: str, offset: int) -> None:
        with self._cond:
            log = self._topic(topic)
            log.records = [r for r in log.records if r.offset >= offset]
            log.start_offset = max(log.start_offset, offset)
            log.next_offset = max(log.next_offset, log.start_offset)

    def records(self, topic: str) -> List[TransportRecord]:
        with self._cond:
            return list(self._topic(topic).records)

    def subscribe(self, topic: str, group: str, start_offset: Optional[int] = None) -> "InMemorySubscription":
        with self._cond:
            log = self._topic(topic)
            offset = log.start_offset if start_offset is None else max(start_offset, log.start_offset)
        return InMemorySubscription(self, topic, offset)

    def earliest_offset(self, topic: str) -> int:
        with self._cond:
            return self._topic(topic).start_offset

    def end_offset(self, topic: str) -> int:
        with self._cond:
            return self._topic(topic).next_offset

    def last_record(self, topic: str) -> Optional[TransportRecord]:
        with self._cond:
            records = self._topic(topic).records
            return records[-1] if records else None

    def topics(self, prefix: str = "") -> List[str]:
        with self._cond:
            return sorted(name for name in self._topics if name.startswith(prefix))

    def _read_at(self, topic: str, offset: int, timeout: float, closed: threading.Event) -> Optional[TransportRecord]:
        deadline = time.monotonic() + timeout
        with self._cond:
            log = self._topic(topic)
            while not closed.is_set():
                if offset < log.start_offset:
                    raise TransientIOError(f"{topic} offset {offset} was truncated while reading")
                index = offset - log.start_offset
                if index < len(log.records):
                    return log.records[index]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
        return None

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        pass


class InMemorySubscription:
    def __init__(self, transport: InMemoryTransport, topic: str, offset: int) -> None:
        self._transport = transport
        self._topic = topic
        self._offset = offset
        self._closed = threading.Event()

    def poll(self, timeout: float) -> Optional[TransportRecord]:
        record = self._transport._read_at(self._topic, self._offset, timeout, self._closed)
        if record is not None:
            self._offset = record.offset + 1
        return record

    def close(self) -> None:
        self._closed.set()
        self._transport._wake()
