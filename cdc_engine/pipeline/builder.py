"""Assembles pipelines from settings and a topology file."""

from pathlib import Path
from typing import Dict, List, Optional

from cdc_engine.checkpoint.kv_store import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
    PostgresKeyValueStore,
)
from cdc_engine.checkpoint.position_store import PositionStore
from cdc_engine.common.config import PipelineSettings, Settings, TopologyConfig
from cdc_engine.common.errors import ConfigurationError
from cdc_engine.common.postgres import PostgresConnectionManager
from cdc_engine.decoder.event_decoder import EventDecoder
from cdc_engine.observability.logging_config import get_logger
from cdc_engine.observability.metrics import MetricsExporter
from cdc_engine.pipeline.coordinator import PipelineCoordinator
from cdc_engine.sinks.factory import build_sink
from cdc_engine.source.base import SourceLog
from cdc_engine.source.mysql_binlog import MySQLBinlogSource
from cdc_engine.transport.base import Transport
from cdc_engine.transport.kafka import KafkaTransport
from cdc_engine.transport.log import TransportLog
from cdc_engine.transport.sink import TransportSink

logger = get_logger(__name__)

PUBLISHER_SINK_ID = "transport"


def build_source(settings: Settings) -> SourceLog:
    """Source log selected by ``CDC_SOURCE``."""
    if settings.pipeline.source == "kafka":
        transport = KafkaTransport(settings.kafka, client_id=f"{settings.pipeline.pipeline_id}-source")
        return TransportLog(transport, settings.kafka.source_topic, settings.kafka.consumer_group)
    source = MySQLBinlogSource(settings.mysql, poll_interval=settings.pipeline.poll_interval_seconds)
    source.check_row_format()
    return source


def build_kv_store(settings: Settings) -> KeyValueStore:
    """Key-value store selected by ``CDC_STATE_STORE``."""
    kind = settings.pipeline.state_store
    if kind == "postgres":
        return PostgresKeyValueStore(PostgresConnectionManager.from_config(settings.postgres))
    if kind == "memory":
        return InMemoryKeyValueStore()
    return FileKeyValueStore(str(Path(settings.pipeline.state_dir) / "positions"))


def build_position_store(settings: Settings, pipeline_id: Optional[str] = None) -> PositionStore:
    return PositionStore(
        build_kv_store(settings),
        pipeline_id or settings.pipeline.pipeline_id,
        lease_ttl=settings.pipeline.lease_ttl_seconds,
    )


def _settings_for(settings: Settings, pipeline_id: str) -> PipelineSettings:
    return settings.pipeline.model_copy(update={"pipeline_id": pipeline_id})


def build_direct_pipeline(
    settings: Settings,
    topology: TopologyConfig,
    metrics: Optional[MetricsExporter] = None,
    source: Optional[SourceLog] = None,
) -> PipelineCoordinator:
    """Source log -> decoder -> router -> sinks."""
    return PipelineCoordinator(
        source or build_source(settings),
        [build_sink(sink, settings) for sink in topology.sinks],
        topology.bindings,
        build_position_store(settings),
        settings=settings.pipeline,
        decoder=EventDecoder(),
        metrics=metrics,
    )


def build_publisher(
    settings: Settings,
    topology: TopologyConfig,
    transport: Transport,
    metrics: Optional[MetricsExporter] = None,
    source: Optional[SourceLog] = None,
) -> PipelineCoordinator:
    """
    Pipeline publishing every bound table to the transport topic.

    Args:
        settings: Application settings
        topology: Topology whose tables are published
        transport: Transport the publisher writes to
        metrics: Metrics exporter
        source: Source log (built from settings when omitted)
    """
    pipeline_id = f"{settings.pipeline.pipeline_id}-publisher"
    decoder = EventDecoder()
    sink = TransportSink(PUBLISHER_SINK_ID, transport, settings.kafka.transport_topic, decoder=decoder, metrics=metrics)
    bindings: Dict[str, List[str]] = {table: [PUBLISHER_SINK_ID] for table in topology.bindings}
    return PipelineCoordinator(
        source or build_source(settings),
        [sink],
        bindings,
        build_position_store(settings, pipeline_id),
        settings=_settings_for(settings, pipeline_id),
        decoder=decoder,
        metrics=metrics,
    )


def build_consumer(
    settings: Settings,
    topology: TopologyConfig,
    transport: Transport,
    metrics: Optional[MetricsExporter] = None,
) -> PipelineCoordinator:
    """Pipeline reading the transport topic into the topology's sinks."""
    pipeline_id = f"{settings.pipeline.pipeline_id}-consumer"
    source = TransportLog(transport, settings.kafka.transport_topic, f"{settings.kafka.consumer_group}-{pipeline_id}")
    return PipelineCoordinator(
        source,
        [build_sink(sink, settings) for sink in topology.sinks],
        topology.bindings,
        build_position_store(settings, pipeline_id),
        settings=_settings_for(settings, pipeline_id),
        decoder=EventDecoder(),
        metrics=metrics,
    )


def build_pipelines(
    settings: Settings,
    topology: TopologyConfig,
    metrics: Optional[MetricsExporter] = None,
    role: str = "all",
) -> List[PipelineCoordinator]:
    """
    Build the pipelines of one deployment.

    Args:
        settings: Application settings (``CDC_MODE`` selects direct or buffered)
        topology: Sinks and bindings
        metrics: Metrics exporter shared by all pipelines
        role: In buffered mode, "publisher", "consumer" or "all"

    Returns:
        Unstarted coordinators
    """
    if settings.pipeline.mode == "direct":
        if role not in ("all", "direct"):
            raise ConfigurationError(f"role {role!r} only applies to buffered mode")
        return [build_direct_pipeline(settings, topology, metrics)]

    if role not in ("all", "publisher", "consumer"):
        raise ConfigurationError(f"unknown role {role!r}")
    pipelines: List[PipelineCoordinator] = []
    if role in ("all", "publisher"):
        transport = KafkaTransport(settings.kafka, client_id=f"{settings.pipeline.pipeline_id}-publisher")
        pipelines.append(build_publisher(settings, topology, transport, metrics))
    if role in ("all", "consumer"):
        transport = KafkaTransport(settings.kafka, client_id=f"{settings.pipeline.pipeline_id}-consumer")
        pipelines.append(build_consumer(settings, topology, transport, metrics))
    logger.info(f"Built buffered pipelines: {[p.pipeline_id for p in pipelines]}")
    return pipelines
