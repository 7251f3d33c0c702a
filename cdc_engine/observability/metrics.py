"""Prometheus metrics exporters."""

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from cdc_engine.common.config import get_settings


# Pipeline Metrics
cdc_events_total = Counter(
    "cdc_events_total",
    "Total number of CDC events routed",
    ["pipeline", "operation", "table"],
)

cdc_errors_total = Counter(
    "cdc_errors_total",
    "Total number of CDC processing errors",
    ["pipeline", "error_type"],
)

cdc_decode_skipped_total = Counter(
    "cdc_decode_skipped_total",
    "Records skipped by the skip-and-log decode policy",
    ["pipeline"],
)

cdc_source_lag = Gauge(
    "cdc_source_lag",
    "Distance between source head and last confirmed position",
    ["pipeline"],
)

cdc_commit_lag_seconds = Gauge(
    "cdc_commit_lag_seconds",
    "Seconds between source commit and routing of the latest event",
    ["pipeline"],
)

cdc_source_reconnects_total = Counter(
    "cdc_source_reconnects_total",
    "Source log reopen attempts after transient failures",
    ["pipeline"],
)

pipeline_state = Gauge(
    "cdc_pipeline_state",
    "Pipeline state (0=starting, 1=running, 2=paused, 3=failed, 4=stopped)",
    ["pipeline"],
)

# Sink Metrics
sink_batch_size = Histogram(
    "cdc_sink_batch_size",
    "Size of batches applied to sinks",
    ["pipeline", "sink"],
    buckets=[1, 10, 50, 100, 500, 1000, 5000],
)

sink_apply_duration_seconds = Histogram(
    "cdc_sink_apply_duration_seconds",
    "Time taken to apply a batch to a sink",
    ["pipeline", "sink"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0],
)

sink_retries_total = Counter(
    "cdc_sink_retries_total",
    "Transient sink write failures that were retried",
    ["pipeline", "sink"],
)

sink_queue_depth = Gauge(
    "cdc_sink_queue_depth",
    "Items waiting in a sink's input queue",
    ["pipeline", "sink"],
)

sink_degraded = Gauge(
    "cdc_sink_degraded",
    "Sink degraded flag (1=degraded, 0=healthy)",
    ["pipeline", "sink"],
)

sink_applied_offset = Gauge(
    "cdc_sink_applied_offset",
    "Offset of the highest position applied by a sink",
    ["pipeline", "sink"],
)

sink_lag = Gauge(
    "cdc_sink_lag",
    "Distance between the highest routed position and a sink's applied position",
    ["pipeline", "sink"],
)

# Checkpoint Metrics
checkpoint_confirmed_offset = Gauge(
    "cdc_checkpoint_confirmed_offset",
    "Offset of the last confirmed checkpoint",
    ["pipeline"],
)

checkpoint_stalled = Gauge(
    "cdc_checkpoint_stalled",
    "Checkpoint stalled flag (1=stalled, 0=progressing)",
    ["pipeline"],
)

checkpoints_total = Counter(
    "cdc_checkpoints_total",
    "Checkpoints by outcome",
    ["pipeline", "outcome"],
)

# Transport Metrics
transport_published_total = Counter(
    "cdc_transport_published_total",
    "Records published to the buffered transport",
    ["topic"],
)

# Health Metrics
pipeline_health = Gauge(
    "pipeline_health",
    "Pipeline health status (1=healthy, 0=unhealthy)",
    ["pipeline"],
)


_STATE_VALUES = {"STARTING": 0, "RUNNING": 1, "PAUSED": 2, "FAILED": 3, "STOPPED": 4}


class MetricsExporter:
    """Prometheus metrics exporter."""

    def __init__(self, port: Optional[int] = None) -> None:
        """
        Initialize metrics exporter.

        Args:
            port: Port to expose metrics on (default from config)
        """
        self.settings = get_settings()
        self.port = port or self.settings.observability.metrics_port
        self._server_started = False

    def start(self) -> None:
        """Start metrics HTTP server."""
        if not self._server_started:
            start_http_server(self.port)
            self._server_started = True

    def record_event(self, pipeline: str, operation: str, table: str) -> None:
        """Record one routed CDC event."""
        cdc_events_total.labels(pipeline=pipeline, operation=operation, table=table).inc()

    def record_error(self, pipeline: str, error_type: str) -> None:
        """
        Record a processing error.

        Args:
            pipeline: Pipeline name
            error_type: Error type/category
        """
        cdc_errors_total.labels(pipeline=pipeline, error_type=error_type).inc()

    def update_pipeline_state(self, pipeline: str, state: str) -> None:
        pipeline_state.labels(pipeline=pipeline).set(_STATE_VALUES.get(state, -1))

    def update_pipeline_health(self, pipeline: str, healthy: bool) -> None:
        """
        Update pipeline health metric.

        Args:
            pipeline: Pipeline name
            healthy: Health status
        """
        pipeline_health.labels(pipeline=pipeline).set(1 if healthy else 0)

    def update_source_lag(self, pipeline: str, lag: Optional[int]) -> None:
        if lag is not None:
            cdc_source_lag.labels(pipeline=pipeline).set(lag)

    def record_sink_batch(self, pipeline: str, sink: str, size: int, duration: float) -> None:
        """
        Record a batch applied to a sink.

        Args:
            pipeline: Pipeline name
            sink: Sink id
            size: Number of events in the batch
            duration: Apply duration in seconds
        """
        sink_batch_size.labels(pipeline=pipeline, sink=sink).observe(size)
        sink_apply_duration_seconds.labels(pipeline=pipeline, sink=sink).observe(duration)

    def record_sink_retry(self, pipeline: str, sink: str) -> None:
        sink_retries_total.labels(pipeline=pipeline, sink=sink).inc()

    def update_sink_status(
        self,
        pipeline: str,
        sink: str,
        degraded: bool,
        queue_depth: int,
        applied_offset: Optional[int],
        lag: Optional[int],
    ) -> None:
        """Update the per-sink gauges."""
        sink_degraded.labels(pipeline=pipeline, sink=sink).set(1 if degraded else 0)
        sink_queue_depth.labels(pipeline=pipeline, sink=sink).set(queue_depth)
        if applied_offset is not None:
            sink_applied_offset.labels(pipeline=pipeline, sink=sink).set(applied_offset)
        if lag is not None:
            sink_lag.labels(pipeline=pipeline, sink=sink).set(lag)

    def record_checkpoint(self, pipeline: str, outcome: str, confirmed_offset: Optional[int] = None) -> None:
        """
        Record a checkpoint outcome.

        Args:
            pipeline: Pipeline name
            outcome: issued / confirmed / stalled
            confirmed_offset: Offset of the confirmed barrier
        """
        checkpoints_total.labels(pipeline=pipeline, outcome=outcome).inc()
        if confirmed_offset is not None:
            checkpoint_confirmed_offset.labels(pipeline=pipeline).set(confirmed_offset)

    def update_checkpoint_stalled(self, pipeline: str, stalled: bool) -> None:
        checkpoint_stalled.labels(pipeline=pipeline).set(1 if stalled else 0)

    def record_decode_skipped(self, pipeline: str) -> None:
        cdc_decode_skipped_total.labels(pipeline=pipeline).inc()

    def record_source_reconnect(self, pipeline: str) -> None:
        cdc_source_reconnects_total.labels(pipeline=pipeline).inc()

    def update_commit_lag(self, pipeline: str, lag_seconds: float) -> None:
        """
        Update the commit-to-routing lag.

        Args:
            pipeline: Pipeline name
            lag_seconds: Seconds since the source committed the latest routed event
        """
        cdc_commit_lag_seconds.labels(pipeline=pipeline).set(max(0.0, lag_seconds))

    def record_published(self, topic: str, count: int) -> None:
        transport_published_total.labels(topic=topic).inc(count)
