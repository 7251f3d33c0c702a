"""Kafka transport (kafka-python)."""

import json
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from kafka import KafkaConsumer, KafkaProducer, TopicPartition
from kafka.errors import KafkaError

from cdc_engine.common.config import KafkaConfig
from cdc_engine.common.errors import TransientIOError
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.transport.base import TransportRecord

logger = get_logger(__name__)

# Every topic is read and written as a single ordered partition.
PARTITION = 0


def _serialize_value(value: Optional[Dict[str, Any]]) -> Optional[bytes]:
    if value is None:
        return None
    return json.dumps(value, default=str).encode("utf-8")


def _deserialize_value(data: Optional[bytes]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    return json.loads(data.decode("utf-8"))


def _to_record(message: Any) -> TransportRecord:
    key = message.key.decode("utf-8") if message.key is not None else None
    return TransportRecord(offset=message.offset, key=key, value=message.value)


class KafkaTransport:
    """
    Transport over Kafka topics.

    Records are produced to partition 0 with ``acks=all`` and one in-flight
    request, so a topic's offsets follow publish order.
    """

    def __init__(self, config: KafkaConfig, client_id: str = "cdc-engine", ack_timeout: float = 30.0) -> None:
        """
        Initialize Kafka transport.

        Args:
            config: Kafka configuration
            client_id: Client id reported to the brokers
            ack_timeout: Seconds to wait for a publish acknowledgement on flush
        """
        self.config = config
        self.client_id = client_id
        self.ack_timeout = ack_timeout
        self._producer: Optional[KafkaProducer] = None
        self._admin_consumer: Optional[KafkaConsumer] = None
        self._pending: List[Any] = []

    @property
    def bootstrap_servers(self) -> List[str]:
        return [s.strip() for s in self.config.bootstrap_servers.split(",") if s.strip()]

    def _get_producer(self) -> KafkaProducer:
        if self._producer is None:
            try:
                self._producer = KafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    client_id=self.client_id,
                    acks="all",
                    retries=5,
                    max_in_flight_requests_per_connection=1,
                    key_serializer=lambda k: k.encode("utf-8") if k is not None else None,
                    value_serializer=_serialize_value,
                )
                logger.info(f"Connected Kafka producer to {self.config.bootstrap_servers}")
            except KafkaError as e:
                raise TransientIOError(f"cannot connect Kafka producer: {e}") from e
        return self._producer

    def _new_consumer(self, group: Optional[str] = None) -> KafkaConsumer:
        try:
            return KafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                group_id=group,
                enable_auto_commit=False,
                auto_offset_reset="earliest",
                value_deserializer=_deserialize_value,
            )
        except KafkaError as e:
            raise TransientIOError(f"cannot connect Kafka consumer: {e}") from e

    def _metadata_consumer(self) -> KafkaConsumer:
        if self._admin_consumer is None:
            self._admin_consumer = self._new_consumer()
        return self._admin_consumer

    def publish(self, topic: str, records: Sequence[Tuple[Optional[str], Optional[Dict[str, Any]]]]) -> None:
        producer = self._get_producer()
        try:
            for key, value in records:
                self._pending.append(producer.send(topic, key=key, value=value, partition=PARTITION))
        except KafkaError as e:
            raise TransientIOError(f"publish to {topic} failed: {e}") from e

    def flush(self) -> None:
        """Wait for every pending send to be acknowledged."""
        if self._producer is None:
            return
        pending, self._pending = self._pending, []
        try:
            self._producer.flush()
            for future in pending:
                future.get(timeout=self.ack_timeout)
        except KafkaError as e:
            raise TransientIOError(f"Kafka did not acknowledge published records: {e}") from e

    def _partition(self, topic: str) -> Optional[TopicPartition]:
        consumer = self._metadata_consumer()
        try:
            partitions = consumer.partitions_for_topic(topic)
        except KafkaError as e:
            raise TransientIOError(f"cannot fetch metadata for {topic}: {e}") from e
        if not partitions:
            return None
        return TopicPartition(topic, PARTITION)

    def earliest_offset(self, topic: str) -> int:
        tp = self._partition(topic)
        if tp is None:
            return 0
        try:
            return self._metadata_consumer().beginning_offsets([tp])[tp]
        except KafkaError as e:
            raise TransientIOError(f"cannot fetch offsets for {topic}: {e}") from e

    def end_offset(self, topic: str) -> int:
        tp = self._partition(topic)
        if tp is None:
            return 0
        try:
            return self._metadata_consumer().end_offsets([tp])[tp]
        except KafkaError as e:
            raise TransientIOError(f"cannot fetch offsets for {topic}: {e}") from e

    def last_record(self, topic: str) -> Optional[TransportRecord]:
        """Read the record just before the end offset, if the topic holds any."""
        start = self.earliest_offset(topic)
        end = self.end_offset(topic)
        if end <= start:
            return None
        subscription = self.subscribe(topic, group=f"{self.client_id}-tail", start_offset=end - 1)
        try:
            for _ in range(10):
                record = subscription.poll(1.0)
                if record is not None:
                    return record
        finally:
            subscription.close()
        raise TransientIOError(f"timed out reading the last record of {topic}")

    def topics(self, prefix: str = "") -> List[str]:
        try:
            names = self._metadata_consumer().topics()
        except KafkaError as e:
            raise TransientIOError(f"cannot list Kafka topics: {e}") from e
        return sorted(name for name in names if name.startswith(prefix))

    def subscribe(self, topic: str, group: str, start_offset: Optional[int] = None) -> "KafkaSubscription":
        consumer = self._new_consumer(group)
        tp = TopicPartition(topic, PARTITION)
        consumer.assign([tp])
        if start_offset is None:
            consumer.seek_to_beginning(tp)
        else:
            consumer.seek(tp, start_offset)
        logger.info(f"Subscribed to {topic} at offset {start_offset if start_offset is not None else 'earliest'}")
        return KafkaSubscription(consumer)

    def close(self) -> None:
        if self._producer is not None:
            self._producer.close()
            self._producer = None
        if self._admin_consumer is not None:
            self._admin_consumer.close()
            self._admin_consumer = None
        logger.info("Closed Kafka transport")


class KafkaSubscription:
    """
    Assigned-partition consumer handing out one record at a time.

    KafkaConsumer is not thread-safe: a ``close`` from another thread while a poll
    is running is deferred until that poll returns.
    """

    def __init__(self, consumer: KafkaConsumer, max_poll_records: int = 500) -> None:
        self.consumer = consumer
        self.max_poll_records = max_poll_records
        self._buffer: Deque[TransportRecord] = deque()
        self._lock = threading.Lock()
        self._polling = False
        self._closed = False

    def poll(self, timeout: float) -> Optional[TransportRecord]:
        with self._lock:
            if self._closed:
                return None
            if self._buffer:
                return self._buffer.popleft()
            self._polling = True
        try:
            batch = self.consumer.poll(timeout_ms=int(timeout * 1000), max_records=self.max_poll_records)
        except KafkaError as e:
            raise TransientIOError(f"Kafka poll failed: {e}") from e
        finally:
            with self._lock:
                self._polling = False
                if self._closed:
                    self.consumer.close()
        with self._lock:
            if self._closed:
                return None
            for messages in batch.values():
                self._buffer.extend(_to_record(m) for m in messages)
            return self._buffer.popleft() if self._buffer else None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if not self._polling:
                self.consumer.close()
