"""
Per-sink worker thread.

Each sink gets a bounded FIFO queue fed by the pipeline's dispatcher and a
thread that batches events into ``apply`` calls, flushes on barrier markers and
acks them to the checkpointer. Transient failures are retried with backoff;
when retries are exhausted the sink turns DEGRADED and the dispatcher stops
feeding it so other sinks keep flowing.
"""

import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Union

from cdc_engine.common.config import PipelineSettings
from cdc_engine.common.errors import TransientIOError
from cdc_engine.common.models import ChangeEvent, SourcePosition, position_lag
from cdc_engine.common.utils import retry_with_backoff
from cdc_engine.observability.logging_config import get_context_logger
from cdc_engine.observability.metrics import MetricsExporter
from cdc_engine.sinks.base import SinkWriter

# Granularity of blocking queue operations, so state changes are noticed promptly.
PUT_SLICE_SECONDS = 0.05


class SinkState(str, Enum):
    """Worker states."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    RECOVERING = "RECOVERING"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class FlushMarker:
    """Barrier marker: flush everything before it, then ack the barrier."""

    checkpoint_id: int
    barrier: Optional[SourcePosition]


@dataclass(frozen=True)
class StopMarker:
    drain: bool


QueueItem = Union[ChangeEvent, FlushMarker, StopMarker]


@dataclass
class SinkStatus:
    """Point-in-time view of one sink."""

    sink_id: str
    kind: str
    state: SinkState
    applied_position: Optional[SourcePosition]
    durable_position: Optional[SourcePosition]
    queue_depth: int
    lag: Optional[int] = None
    gap: bool = False
    last_error: Optional[str] = None
    skipped_events: int = 0

    def to_dict(self) -> dict:
        return {
            "sink_id": self.sink_id,
            "kind": self.kind,
            "state": self.state.value,
            "applied_position": self.applied_position.to_dict() if self.applied_position else None,
            "durable_position": self.durable_position.to_dict() if self.durable_position else None,
            "queue_depth": self.queue_depth,
            "lag": self.lag,
            "gap": self.gap,
            "last_error": self.last_error,
            "skipped_events": self.skipped_events,
        }


@dataclass
class _Stuck:
    """Work that failed past its retry budget and is re-probed while DEGRADED."""

    batch: List[ChangeEvent] = field(default_factory=list)
    marker: Optional[FlushMarker] = None


class SinkWorker:
    """
    Drives one SinkWriter from its own thread.

    Events at or below the highest position the worker has already accepted are
    skipped, which lets several sinks share one reader that was rewound for a
    single recovering sink.
    """

    def __init__(
        self,
        sink: SinkWriter,
        pipeline_id: str,
        settings: PipelineSettings,
        on_ack: Callable[[str, int, Optional[SourcePosition]], None],
        on_fatal: Callable[[str, BaseException], None],
        on_rewind: Callable[[str, Optional[SourcePosition]], None],
        durable_position: Optional[SourcePosition] = None,
        metrics: Optional[MetricsExporter] = None,
    ) -> None:
        """
        Initialize sink worker.

        Args:
            sink: Sink writer to drive
            pipeline_id: Owning pipeline, for logs and metrics
            settings: Pipeline settings (batching, queue size, retries)
            on_ack: Called with (sink id, checkpoint id, barrier) after a flush
            on_fatal: Called with (sink id, error) on a non-transient failure
            on_rewind: Called with (sink id, last applied position) when the sink
                recovers after events were dropped for it
            durable_position: Position this sink is known to have made durable
            metrics: Metrics exporter
        """
        self.sink = sink
        self.pipeline_id = pipeline_id
        self.settings = settings
        self.on_ack = on_ack
        self.on_fatal = on_fatal
        self.on_rewind = on_rewind
        self.metrics = metrics
        self.log = get_context_logger(__name__, pipeline_id=pipeline_id, sink_id=sink.sink_id)

        self._queue: "queue.Queue[QueueItem]" = queue.Queue(maxsize=settings.queue_size)
        self._lock = threading.Lock()
        self._state = SinkState.HEALTHY
        self._gap = False
        self._stuck: Optional[_Stuck] = None
        # Marker put aside while its preceding batch is stuck.
        self._held: Optional[QueueItem] = None
        self._last_error: Optional[str] = None

        self._applied = durable_position
        self._accepted = durable_position
        self._durable = durable_position
        self._skipped = 0

        self._halt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def sink_id(self) -> str:
        return self.sink.sink_id

    @property
    def state(self) -> SinkState:
        with self._lock:
            return self._state

    @property
    def applied_position(self) -> Optional[SourcePosition]:
        return self._applied

    @property
    def durable_position(self) -> Optional[SourcePosition]:
        return self._durable

    def start(self) -> None:
        """Open the sink and start the worker thread."""
        self.sink.open()
        self._thread = threading.Thread(
            target=self._run, name=f"sink-{self.sink_id}", daemon=True
        )
        self._thread.start()
        self.log.info(f"Started worker for sink {self.sink_id} (durable position: {self._durable})")

    # Dispatcher side

    def offer(self, item: QueueItem, cancel: Optional[threading.Event] = None) -> bool:
        """
        Enqueue an event or marker, blocking while the queue is full.

        Returns False without blocking when the sink is not HEALTHY (the event is
        dropped and a gap is recorded) and when ``cancel`` is set while waiting.
        """
        while True:
            with self._lock:
                if self._state is not SinkState.HEALTHY:
                    if isinstance(item, ChangeEvent) and self._state in (SinkState.DEGRADED, SinkState.RECOVERING):
                        self._gap = True
                    return False
            try:
                self._queue.put(item, timeout=PUT_SLICE_SECONDS)
                return True
            except queue.Full:
                if cancel is not None and cancel.is_set():
                    return False

    def request_stop(self, drain: bool = True) -> None:
        """Ask the worker to stop after the items already queued (drain) or at once."""
        if not drain:
            self._halt.set()
            return
        with self._lock:
            healthy = self._state is SinkState.HEALTHY
        while healthy and self._thread is not None and self._thread.is_alive():
            try:
                self._queue.put(StopMarker(drain=True), timeout=PUT_SLICE_SECONDS)
                return
            except queue.Full:
                healthy = self.state is SinkState.HEALTHY
        self._halt.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def rewound(self) -> None:
        """Called by the coordinator once the reader has been reopened for this sink."""
        with self._lock:
            if self._state is SinkState.RECOVERING:
                self._state = SinkState.HEALTHY
                self._gap = False
        self.log.info(f"Sink {self.sink_id} is receiving events again after {self._applied}")

    def status(self, head: Optional[SourcePosition] = None) -> SinkStatus:
        """Current status; ``lag`` is only filled in when the source head is given."""
        with self._lock:
            state = self._state
            gap = self._gap
            last_error = self._last_error
        return SinkStatus(
            sink_id=self.sink_id,
            kind=self.sink.kind,
            state=state,
            applied_position=self._applied,
            durable_position=self._durable,
            queue_depth=self._queue.qsize(),
            lag=position_lag(head, self._applied) if head is not None else None,
            gap=gap,
            last_error=last_error,
            skipped_events=self._skipped,
        )

    # Worker side

    def _run(self) -> None:
        pending: List[ChangeEvent] = []
        deadline: Optional[float] = None
        try:
            while not self._halt.is_set():
                if self.state is not SinkState.HEALTHY:
                    if not self._probe():
                        break
                    continue

                timeout = self.settings.batch_timeout_seconds
                if deadline is not None:
                    timeout = max(0.0, deadline - time.monotonic())
                item: Optional[QueueItem] = self._held
                self._held = None
                if item is None:
                    try:
                        item = self._queue.get(timeout=timeout)
                    except queue.Empty:
                        item = None

                if isinstance(item, ChangeEvent):
                    if self._accepted is not None and item.source_position <= self._accepted:
                        self._skipped += 1
                        continue
                    pending.append(item)
                    self._accepted = item.source_position
                    if deadline is None:
                        deadline = time.monotonic() + self.settings.batch_timeout_seconds
                    if len(pending) < self.settings.batch_size:
                        continue

                if pending:
                    batch, pending, deadline = pending, [], None
                    if not self._apply(batch):
                        if isinstance(item, (FlushMarker, StopMarker)):
                            self._held = item
                        continue

                if item is None:
                    self._tick()
                elif isinstance(item, FlushMarker):
                    self._flush(item)
                elif isinstance(item, StopMarker):
                    self._flush(None)
                    break
                self.report_metrics()
        except Exception as e:
            with self._lock:
                self._state = SinkState.FAILED
                self._last_error = str(e)
            self.log.error(f"Sink {self.sink_id} failed: {e}", exc_info=True)
            self.on_fatal(self.sink_id, e)
        finally:
            self._finish(pending)

    def _retry(self, func: Callable[[], Any]) -> Any:
        def on_retry(attempt: int, error: BaseException) -> None:
            self.log.warning(f"Sink {self.sink_id}: attempt {attempt} failed ({error}), retrying")
            if self.metrics:
                self.metrics.record_sink_retry(self.pipeline_id, self.sink_id)

        return retry_with_backoff(
            func,
            max_retries=self.settings.sink_max_retries,
            initial_delay=self.settings.retry_initial_delay_seconds,
            backoff_factor=self.settings.retry_backoff_factor,
            max_delay=self.settings.retry_max_delay_seconds,
            retry_on=(TransientIOError,),
            stop_event=self._halt,
            on_retry=on_retry,
        )

    def _apply(self, batch: List[ChangeEvent]) -> bool:
        started = time.monotonic()
        try:
            self._retry(lambda: self.sink.apply(batch))
        except TransientIOError as e:
            self._degrade(_Stuck(batch=batch), e)
            return False
        self._applied = batch[-1].source_position
        if self.metrics:
            self.metrics.record_sink_batch(self.pipeline_id, self.sink_id, len(batch), time.monotonic() - started)
        return True

    def _flush(self, marker: Optional[FlushMarker]) -> bool:
        try:
            self._retry(self.sink.flush)
        except TransientIOError as e:
            self._degrade(_Stuck(marker=marker), e)
            return False
        self._durable = self._applied
        if marker is not None:
            self.on_ack(self.sink_id, marker.checkpoint_id, marker.barrier)
        return True

    def _tick(self) -> None:
        try:
            self.sink.tick()
        except TransientIOError as e:
            self.log.warning(f"Sink {self.sink_id}: background flush failed ({e}), will retry")

    def _degrade(self, stuck: _Stuck, error: BaseException) -> None:
        with self._lock:
            if self._halt.is_set():
                self._stuck = stuck
                return
            self._state = SinkState.DEGRADED
            self._stuck = stuck
            self._last_error = str(error)
        self.log.error(
            f"Sink {self.sink_id} is DEGRADED after {self.settings.sink_max_retries} retries: {error}; "
            f"probing every {self.settings.sink_recovery_interval_seconds}s",
            extra={"position": self._applied.to_dict() if self._applied else None},
        )
        if self.metrics:
            self.metrics.record_error(self.pipeline_id, f"sink_degraded:{self.sink_id}")
        self.report_metrics()

    def _probe(self) -> bool:
        """
        Retry the stuck work while DEGRADED, or wait for the rewind while RECOVERING.

        Returns False when the worker should exit.
        """
        if self._halt.wait(self.settings.sink_recovery_interval_seconds if self.state is SinkState.DEGRADED else PUT_SLICE_SECONDS):
            return False
        if self.state is SinkState.RECOVERING:
            return True

        stuck = self._stuck
        try:
            if stuck is not None and stuck.batch:
                self.sink.apply(stuck.batch)
                self._applied = stuck.batch[-1].source_position
            if stuck is not None and stuck.marker is not None:
                self.sink.flush()
                self._durable = self._applied
                self.on_ack(self.sink_id, stuck.marker.checkpoint_id, stuck.marker.barrier)
        except TransientIOError as e:
            self.log.debug(f"Sink {self.sink_id} still unavailable: {e}")
            return True

        with self._lock:
            self._stuck = None
            self._last_error = None
            gap = self._gap
            self._state = SinkState.RECOVERING if gap else SinkState.HEALTHY

        if gap:
            discarded = self._discard_queue()
            self._accepted = self._applied
            self.log.warning(
                f"Sink {self.sink_id} recovered after dropping events; discarded {discarded} queued items, "
                f"requesting a rewind to {self._applied}",
                extra={"position": self._applied.to_dict() if self._applied else None},
            )
            self.on_rewind(self.sink_id, self._applied)
        else:
            self.log.info(f"Sink {self.sink_id} recovered")
        self.report_metrics()
        return True

    def _discard_queue(self) -> int:
        discarded = 0
        stop: Optional[StopMarker] = self._held if isinstance(self._held, StopMarker) else None
        self._held = None
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, StopMarker):
                stop = item
            else:
                discarded += 1
        if stop is not None:
            self._queue.put(stop)
        return discarded

    def _finish(self, pending: Sequence[ChangeEvent]) -> None:
        abandoned: List[SourcePosition] = [e.source_position for e in pending]
        if self._stuck is not None:
            abandoned.extend(e.source_position for e in self._stuck.batch)
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if isinstance(item, ChangeEvent):
                abandoned.append(item.source_position)
        if abandoned:
            self.log.warning(
                f"Sink {self.sink_id} stopped with {len(abandoned)} unapplied events "
                f"({min(abandoned)} .. {max(abandoned)}); they are excluded from checkpoints"
            )
        try:
            self.sink.close()
        except Exception as e:
            self.log.warning(f"Error closing sink {self.sink_id}: {e}")
        with self._lock:
            if self._state is not SinkState.FAILED:
                self._state = SinkState.STOPPED
        self.report_metrics()
        self.log.info(f"Worker for sink {self.sink_id} stopped (durable position: {self._durable})")

    def report_metrics(self, head: Optional[SourcePosition] = None) -> None:
        if self.metrics is None:
            return
        status = self.status(head)
        self.metrics.update_sink_status(
            self.pipeline_id,
            self.sink_id,
            degraded=status.state in (SinkState.DEGRADED, SinkState.RECOVERING),
            queue_depth=status.queue_depth,
            applied_offset=status.applied_position.offset if status.applied_position else None,
            lag=status.lag,
        )
