"""Builds sink writers from topology declarations."""

from pathlib import Path

from rich.console import Console

from cdc_engine.common.config import Settings, SinkConfig
from cdc_engine.common.errors import ConfigurationError
from cdc_engine.common.postgres import PostgresConnectionManager
from cdc_engine.sinks.append_log import AppendLogSink
from cdc_engine.sinks.base import SinkWriter
from cdc_engine.sinks.console_target import ConsoleAppendTarget
from cdc_engine.sinks.jsonl_target import JsonLinesAppendTarget
from cdc_engine.sinks.kafka_target import KafkaAppendTarget
from cdc_engine.sinks.memory_targets import InMemoryAppendTarget, InMemoryBulkTarget, InMemoryUpsertTarget
from cdc_engine.sinks.olap_native import OLAPNativeSink
from cdc_engine.sinks.postgres_target import PostgresUpsertTarget
from cdc_engine.sinks.starrocks_target import StarRocksStreamLoadTarget
from cdc_engine.sinks.upsert_table import UpsertTableSink
from cdc_engine.transport.kafka import KafkaTransport


def build_sink(config: SinkConfig, settings: Settings) -> SinkWriter:
    """
    Create the sink writer declared by ``config``.

    Args:
        config: Sink declaration from the topology file
        settings: Application settings (connection details)

    Returns:
        Unopened sink writer
    """
    options = config.options

    if config.kind == "upsert":
        if config.target == "postgres":
            target = PostgresUpsertTarget(
                PostgresConnectionManager.from_config(settings.postgres),
                config.primary_keys,
                target_schema=options.get("target_schema"),
            )
        else:
            target = InMemoryUpsertTarget()
        return UpsertTableSink(config.id, target, config.primary_keys)

    if config.kind == "append":
        if config.target == "jsonl":
            directory = options.get("directory") or str(Path(settings.pipeline.state_dir) / config.id)
            append_target = JsonLinesAppendTarget(directory)
        elif config.target == "kafka":
            append_target = KafkaAppendTarget(
                KafkaTransport(settings.kafka, client_id=f"{settings.pipeline.pipeline_id}-{config.id}"),
                options.get("topic_prefix", f"{settings.kafka.topic_prefix}.history"),
            )
        elif config.target == "console":
            append_target = ConsoleAppendTarget(Console(stderr=bool(options.get("stderr", False))))
        else:
            append_target = InMemoryAppendTarget()
        return AppendLogSink(config.id, append_target)

    if config.kind == "olap":
        if config.target == "starrocks":
            bulk_target = StarRocksStreamLoadTarget(settings.starrocks, table_map=options.get("table_map"))
        else:
            bulk_target = InMemoryBulkTarget(config.primary_keys)
        return OLAPNativeSink(
            config.id,
            bulk_target,
            config.primary_keys,
            max_rows=int(options.get("max_rows", settings.starrocks.max_rows)),
            flush_interval=float(options.get("flush_interval_seconds", settings.starrocks.flush_interval_seconds)),
        )

    raise ConfigurationError(f"unsupported sink kind {config.kind!r}")
