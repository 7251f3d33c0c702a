"""Kafka append target: one history topic per table."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from cdc_engine.common.errors import TransientIOError
from cdc_engine.common.models import SourcePosition
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.transport.base import Transport

logger = get_logger(__name__)


class KafkaAppendTarget:
    """
    Publishes change records to ``<prefix>.<schema>.<table>`` topics.

    ``append`` returns only after the brokers acknowledged the records. After a
    failed append the per-topic tail is re-read before the next attempt so records
    that did reach the broker are not appended twice.
    """

    def __init__(self, transport: Transport, topic_prefix: str) -> None:
        self.transport = transport
        self.topic_prefix = topic_prefix
        self._tails: Dict[str, SourcePosition] = {}
        self._recover = False

    def _topic(self, table: str) -> str:
        return f"{self.topic_prefix}.{table}"

    def _read_tails(self) -> None:
        self._tails.clear()
        for topic in self.transport.topics(prefix=f"{self.topic_prefix}."):
            last = self.transport.last_record(topic)
            if last is not None and isinstance(last.value, dict) and "position" in last.value:
                self._tails[topic] = SourcePosition.from_dict(last.value["position"])

    def open(self) -> Optional[SourcePosition]:
        self._read_tails()
        last = max(self._tails.values(), default=None)
        logger.info(f"Kafka history target {self.topic_prefix}.* (last position: {last})")
        return last

    def append(self, records: Sequence[Dict[str, Any]]) -> None:
        if self._recover:
            self._read_tails()
            self._recover = False

        by_topic: Dict[str, List[Tuple[Optional[str], Optional[Dict[str, Any]]]]] = {}
        for record in records:
            topic = self._topic(record["table"])
            tail = self._tails.get(topic)
            if tail is not None and SourcePosition.from_dict(record["position"]) <= tail:
                continue
            by_topic.setdefault(topic, []).append((record["table"], record))

        try:
            for topic, batch in by_topic.items():
                self.transport.publish(topic, batch)
            self.transport.flush()
        except TransientIOError:
            self._recover = True
            raise
        for topic, batch in by_topic.items():
            value = batch[-1][1]
            if value is not None:
                self._tails[topic] = SourcePosition.from_dict(value["position"])

    def flush(self) -> None:
        self.transport.flush()

    def close(self) -> None:
        self.transport.close()
