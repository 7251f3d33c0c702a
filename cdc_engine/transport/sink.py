"""Publisher-side sink writing decoded events to a transport topic."""

from typing import Optional, Sequence

from cdc_engine.common.models import ChangeEvent, SourcePosition
from cdc_engine.decoder.event_decoder import EventDecoder
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.observability.metrics import MetricsExporter
from cdc_engine.transport.base import Transport

logger = get_logger(__name__)


class TransportSink:
    """
    Publishes events to a transport topic, keyed by table id.

    A batch is acknowledged by the transport before ``apply`` returns; a batch
    retried after a partial publish leaves duplicates that consumers drop by
    origin position.

    Each envelope carries its origin position. On open the origin position of the
    topic's last record is recovered, and events at or below it are not
    published again.
    """

    kind = "transport"

    def __init__(
        self,
        sink_id: str,
        transport: Transport,
        topic: str,
        decoder: Optional[EventDecoder] = None,
        metrics: Optional[MetricsExporter] = None,
    ) -> None:
        self._sink_id = sink_id
        self.transport = transport
        self.topic = topic
        self.decoder = decoder or EventDecoder()
        self.metrics = metrics
        self._last_published: Optional[SourcePosition] = None
        self._durable: Optional[SourcePosition] = None

    @property
    def sink_id(self) -> str:
        return self._sink_id

    def open(self) -> None:
        last = self.transport.last_record(self.topic)
        if last is not None and isinstance(last.value, dict) and last.value.get("origin_position"):
            self._last_published = SourcePosition.from_dict(last.value["origin_position"])
        self._durable = self._last_published
        logger.info(f"Opened transport sink {self.sink_id} on {self.topic} (last published: {self._last_published})")

    def _origin(self, event: ChangeEvent) -> SourcePosition:
        return event.origin_position or event.source_position

    def apply(self, batch: Sequence[ChangeEvent]) -> Optional[SourcePosition]:
        fresh = [e for e in batch if self._last_published is None or self._origin(e) > self._last_published]
        if fresh:
            self.transport.publish(self.topic, [(str(e.table_id), self.decoder.encode(e)) for e in fresh])
            self.transport.flush()
            self._last_published = self._origin(fresh[-1])
            if self.metrics is not None:
                self.metrics.record_published(self.topic, len(fresh))
        return self._last_published

    def flush(self) -> Optional[SourcePosition]:
        self.transport.flush()
        self._durable = self._last_published
        return self._durable

    def tick(self) -> None:
        pass

    def close(self) -> None:
        self.transport.close()
