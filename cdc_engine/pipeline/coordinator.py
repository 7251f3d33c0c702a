"""
Pipeline coordinator.

Owns one pipeline instance: the lease on its position record, the reader
thread that decodes, routes and dispatches events, the per-sink workers and the
checkpointer. Every piece of mutable state lives on the coordinator's
PipelineInstance, so several pipelines can run in one process.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from cdc_engine.checkpoint.checkpointer import Checkpoint, Checkpointer
from cdc_engine.checkpoint.position_store import PipelineState, PositionStore
from cdc_engine.common.config import PipelineSettings
from cdc_engine.common.errors import (
    CDCError,
    ConfigurationError,
    DecodeError,
    InvalidStateTransition,
    LeaseConflictError,
    OrderingViolationError,
    PositionLostError,
    TransientIOError,
)
from cdc_engine.common.models import (
    ChangeEvent,
    RawChangeRecord,
    ReadFrom,
    SourcePosition,
    StartPosition,
    position_lag,
)
from cdc_engine.common.utils import backoff_delays, retry_with_backoff, utc_now
from cdc_engine.decoder.event_decoder import EventDecoder
from cdc_engine.observability.logging_config import get_context_logger
from cdc_engine.observability.metrics import MetricsExporter
from cdc_engine.routing.router import Router, bindings_to_dict
from cdc_engine.sinks.base import SinkWriter
from cdc_engine.sinks.worker import FlushMarker, SinkState, SinkStatus, SinkWorker
from cdc_engine.source.base import SourceLog
from cdc_engine.source.log_reader import LogReader

# Interval of stall checks and gauge updates on the housekeeping thread.
MAINTENANCE_INTERVAL_SECONDS = 1.0


class RunState(str, Enum):
    """Lifecycle states of a pipeline."""

    STARTING = "STARTING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


_TRANSITIONS = {
    RunState.STARTING: {RunState.RUNNING, RunState.FAILED, RunState.STOPPED},
    RunState.RUNNING: {RunState.PAUSED, RunState.FAILED, RunState.STOPPED},
    RunState.PAUSED: {RunState.RUNNING, RunState.FAILED, RunState.STOPPED},
    RunState.FAILED: set(),
    RunState.STOPPED: set(),
}


@dataclass
class PipelineInstance:
    """Mutable state of one pipeline; nothing here is shared with other pipelines."""

    pipeline_id: str
    settings: PipelineSettings
    router: Router
    decoder: EventDecoder
    metrics: Optional[MetricsExporter] = None
    durable: Optional[PipelineState] = None
    run_state: RunState = RunState.STARTING
    reason: Optional[str] = None
    read_from: Optional[ReadFrom] = None
    first_resume_after: Optional[SourcePosition] = None
    last_dispatched: Optional[SourcePosition] = None
    events_routed: int = 0
    decode_skipped: int = 0
    started_at: Optional[Any] = None


@dataclass
class PipelineStatus:
    """Operator-facing snapshot of a pipeline."""

    pipeline_id: str
    state: RunState
    health: str
    reason: Optional[str]
    last_confirmed_position: Optional[SourcePosition]
    head_position: Optional[SourcePosition]
    lag: Optional[int]
    sinks: List[SinkStatus] = field(default_factory=list)
    degraded_sinks: List[str] = field(default_factory=list)
    stalled_tables: List[str] = field(default_factory=list)
    checkpoint_state: str = "IDLE"
    checkpoint_stalled: bool = False
    missing_acks: List[str] = field(default_factory=list)
    events_routed: int = 0
    decode_skipped: int = 0

    @property
    def is_healthy(self) -> bool:
        return self.health == "healthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "state": self.state.value,
            "health": self.health,
            "reason": self.reason,
            "last_confirmed_position": self.last_confirmed_position.to_dict() if self.last_confirmed_position else None,
            "head_position": self.head_position.to_dict() if self.head_position else None,
            "lag": self.lag,
            "sinks": [s.to_dict() for s in self.sinks],
            "degraded_sinks": self.degraded_sinks,
            "stalled_tables": self.stalled_tables,
            "checkpoint": {
                "state": self.checkpoint_state,
                "stalled": self.checkpoint_stalled,
                "missing_acks": self.missing_acks,
            },
            "events_routed": self.events_routed,
            "decode_skipped": self.decode_skipped,
        }


class PipelineCoordinator:
    """
    Runs one source-to-sinks pipeline.

    ``start`` takes the lease, resumes after the last confirmed position and
    starts the reader and worker threads. Fatal errors move the pipeline to
    FAILED with an operator-visible reason; ``stop`` shuts it down, draining
    the sinks unless told otherwise.
    """

    def __init__(
        self,
        source: SourceLog,
        sinks: Sequence[SinkWriter],
        bindings: Mapping[str, Iterable[str]],
        position_store: PositionStore,
        settings: Optional[PipelineSettings] = None,
        decoder: Optional[EventDecoder] = None,
        metrics: Optional[MetricsExporter] = None,
        pipeline_id: Optional[str] = None,
    ) -> None:
        """
        Initialize pipeline coordinator.

        Args:
            source: Source log to read
            sinks: Sink writers (unopened)
            bindings: table id (schema.table) -> sink ids
            position_store: Lease-guarded state store for this pipeline
            settings: Pipeline settings (defaults from the environment)
            decoder: Event decoder
            metrics: Metrics exporter
            pipeline_id: Overrides settings.pipeline_id

        Raises:
            ConfigurationError: If bindings reference unknown sinks or sink ids repeat
        """
        settings = settings or PipelineSettings()
        sink_ids = [s.sink_id for s in sinks]
        if len(sink_ids) != len(set(sink_ids)):
            raise ConfigurationError(f"duplicate sink ids in {sink_ids}")

        self.instance = PipelineInstance(
            pipeline_id=pipeline_id or settings.pipeline_id,
            settings=settings,
            router=Router(bindings, sink_ids),
            decoder=decoder or EventDecoder(),
            metrics=metrics,
        )
        self.log = get_context_logger(__name__, pipeline_id=self.instance.pipeline_id)
        self.source = source
        self.sinks = {s.sink_id: s for s in sinks}
        self.position_store = position_store
        self.reader = LogReader(source, poll_interval=settings.poll_interval_seconds)

        self.workers: Dict[str, SinkWorker] = {}
        self.checkpointer: Optional[Checkpointer] = None

        self._state_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._rewind_lock = threading.Lock()
        self._rewind_requests: Dict[str, Optional[SourcePosition]] = {}
        self._stop_reading = threading.Event()
        self._abort = threading.Event()
        self._finished = threading.Event()
        self._read_thread: Optional[threading.Thread] = None
        self._housekeeping_thread: Optional[threading.Thread] = None
        self._last_persist = time.monotonic()
        self._last_maintenance = 0.0
        self._source_failures = 0
        self._cleaned_up = False

    # Properties

    @property
    def pipeline_id(self) -> str:
        return self.instance.pipeline_id

    @property
    def settings(self) -> PipelineSettings:
        return self.instance.settings

    @property
    def router(self) -> Router:
        return self.instance.router

    @property
    def metrics(self) -> Optional[MetricsExporter]:
        return self.instance.metrics

    @property
    def state(self) -> RunState:
        return self.instance.run_state

    @property
    def reason(self) -> Optional[str]:
        return self.instance.reason

    # State machine

    def _transition(self, target: RunState, reason: Optional[str] = None) -> None:
        with self._state_lock:
            current = self.instance.run_state
            if target not in _TRANSITIONS[current]:
                raise InvalidStateTransition(f"pipeline {self.pipeline_id}: {current.value} -> {target.value}")
            self.instance.run_state = target
            if reason is not None:
                self.instance.reason = reason
        self.log.info(f"Pipeline {self.pipeline_id}: {current.value} -> {target.value}")
        if self.metrics:
            self.metrics.update_pipeline_state(self.pipeline_id, target.value)
        if target in (RunState.FAILED, RunState.STOPPED):
            self._finished.set()

    def _fail(self, reason: str) -> None:
        """Move to FAILED and halt every thread; safe to call from any thread."""
        with self._state_lock:
            if self.instance.run_state in (RunState.FAILED, RunState.STOPPED):
                return
        try:
            self._transition(RunState.FAILED, reason)
        except InvalidStateTransition:
            return
        self.log.error(f"Pipeline {self.pipeline_id} FAILED: {reason}")
        if self.metrics:
            self.metrics.record_error(self.pipeline_id, "pipeline_failed")
            self.metrics.update_pipeline_health(self.pipeline_id, False)
        self._stop_reading.set()
        self._abort.set()
        for worker in self.workers.values():
            worker.request_stop(drain=False)

    # Lifecycle

    def start(self) -> "PipelineCoordinator":
        """
        Take the lease, restore positions, open sinks and start reading.

        Raises:
            LeaseConflictError: If another coordinator holds the lease
            ConfigurationError: If the stored bindings differ from this instance's
            PositionLostError: If the resume position is no longer retained
        """
        if self.state is not RunState.STARTING or self._read_thread is not None:
            raise InvalidStateTransition(f"pipeline {self.pipeline_id} was already started")
        self.instance.started_at = utc_now()
        self.log.info(f"Starting pipeline {self.pipeline_id} with sinks {sorted(self.sinks)}")

        try:
            durable = self.position_store.acquire_lease(bindings_to_dict(self.router.bindings))
        except (LeaseConflictError, ConfigurationError) as e:
            self._fail(str(e))
            raise
        self.instance.durable = durable

        default_start = StartPosition(self.settings.start_position)
        read_from: ReadFrom = durable.last_confirmed_position or default_start
        self.instance.read_from = read_from

        bound = self.router.bound_sinks
        sink_positions: Dict[str, SourcePosition] = {}
        for sink_id in bound:
            position = durable.sink_positions.get(sink_id) or durable.last_confirmed_position
            if position is not None:
                sink_positions[sink_id] = position

        self.checkpointer = Checkpointer(
            bound,
            interval=self.settings.checkpoint_interval_seconds,
            every_events=self.settings.checkpoint_every_events,
            stall_timeout=self.settings.stall_timeout_seconds,
            sink_positions=sink_positions,
            on_confirmed=self._on_confirmed,
        )

        try:
            for sink_id, sink in self.sinks.items():
                worker = SinkWorker(
                    sink,
                    self.pipeline_id,
                    self.settings,
                    on_ack=self._on_ack,
                    on_fatal=self._on_sink_fatal,
                    on_rewind=self._on_rewind,
                    durable_position=sink_positions.get(sink_id),
                    metrics=self.metrics,
                )
                self.workers[sink_id] = worker
                worker.start()
            self.reader.open(read_from)
        except (CDCError, OSError) as e:
            self._fail(f"startup failed: {e}")
            self._cleanup()
            raise

        self.instance.first_resume_after = self.reader.resume_after
        self.instance.last_dispatched = self.reader.resume_after
        self._transition(RunState.RUNNING)
        self._read_thread = threading.Thread(target=self._read_loop, name=f"reader-{self.pipeline_id}", daemon=True)
        self._read_thread.start()
        self._housekeeping_thread = threading.Thread(
            target=self._housekeeping_loop, name=f"housekeeping-{self.pipeline_id}", daemon=True
        )
        self._housekeeping_thread.start()
        self.log.info(f"Pipeline {self.pipeline_id} running from {read_from}")
        return self

    def pause(self) -> None:
        """Stop consuming new records; connections stay open and workers keep draining."""
        self._transition(RunState.PAUSED)

    def resume(self) -> None:
        self._transition(RunState.RUNNING)

    def wait(self, timeout: Optional[float] = None) -> RunState:
        """Block until the pipeline is FAILED or STOPPED (or the timeout expires)."""
        self._finished.wait(timeout)
        return self.state

    def stop(self, drain: bool = True) -> None:
        """
        Shut the pipeline down.

        With ``drain`` the in-flight record is finished, a final barrier is issued
        and every sink flushes before its position is persisted. Without it,
        queued events are abandoned (and logged) and only positions already made
        durable are kept. Concurrent callers wait for the first one to finish.
        """
        with self._stop_lock:
            self._stop(drain)

    def _stop(self, drain: bool) -> None:
        if self.state is RunState.STOPPED or (self.state is RunState.FAILED and self._cleaned_up):
            return
        self.log.info(f"Stopping pipeline {self.pipeline_id} (drain={drain})")
        self._stop_reading.set()
        if not drain:
            self._abort.set()
        if self._read_thread is not None and self._read_thread is not threading.current_thread():
            self._read_thread.join(self.settings.shutdown_timeout_seconds)

        if self.state is RunState.FAILED:
            self._cleanup()
            return

        timeout = self.settings.shutdown_timeout_seconds
        if drain and self.checkpointer is not None:
            self._issue_barrier()
        for worker in self.workers.values():
            worker.request_stop(drain=drain)
        deadline = time.monotonic() + timeout
        for worker in self.workers.values():
            if not worker.join(max(0.0, deadline - time.monotonic())):
                self.log.warning(f"Sink {worker.sink_id} did not drain within {timeout}s; abandoning its queue")
                worker.request_stop(drain=False)
                worker.join(timeout)

        if self.state is not RunState.FAILED:
            self._persist()
        self._cleanup()
        if self.state is not RunState.FAILED:
            self._transition(RunState.STOPPED)
        if self._housekeeping_thread is not None:
            self._housekeeping_thread.join(self.settings.shutdown_timeout_seconds)

    def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self._abort.set()
        for worker in self.workers.values():
            worker.request_stop(drain=False)
        for worker in self.workers.values():
            worker.join(self.settings.shutdown_timeout_seconds)
        self.reader.close()
        durable = self.instance.durable
        with self._persist_lock:
            if durable is not None and self.position_store.holds_lease:
                try:
                    self.position_store.release_lease(durable)
                except (LeaseConflictError, TransientIOError) as e:
                    self.log.warning(f"Could not release lease on {self.pipeline_id}: {e}")
            self.position_store.close()
        self._finished.set()

    # Read loop

    def _read_loop(self) -> None:
        try:
            while not self._stop_reading.is_set():
                self._handle_rewinds()
                if self.state is RunState.PAUSED:
                    self._stop_reading.wait(self.settings.poll_interval_seconds)
                    continue
                try:
                    record = self.reader.poll(self.settings.poll_interval_seconds)
                except TransientIOError as e:
                    self._reopen_source(e)
                    continue
                self._source_failures = 0
                if record is not None:
                    self._dispatch(record)
                elif self.checkpointer is not None and self.checkpointer.due():
                    self._issue_barrier()
        except (OrderingViolationError, PositionLostError, DecodeError, LeaseConflictError) as e:
            self._fail(f"{type(e).__name__}: {e}")
        except Exception as e:
            self.log.error(f"Unexpected error in read loop of {self.pipeline_id}: {e}", exc_info=True)
            self._fail(f"{type(e).__name__}: {e}")

    def _dispatch(self, record: RawChangeRecord) -> None:
        instance = self.instance
        try:
            event = instance.decoder.decode(record)
        except DecodeError as e:
            if self.settings.decode_failure_policy != "skip":
                raise
            instance.decode_skipped += 1
            self.log.warning(
                f"Skipping undecodable record at {record.position}: {e}", extra={"position": record.position.to_dict()}
            )
            if self.metrics:
                self.metrics.record_decode_skipped(self.pipeline_id)
            event = None

        if event is not None:
            self._route(event)

        instance.last_dispatched = record.position
        checkpointer = self.checkpointer
        if checkpointer is not None:
            checkpointer.observe(record.position)
            if checkpointer.due():
                self._issue_barrier()

    def _route(self, event: ChangeEvent) -> None:
        for sink_id, routed in self.router.route(event):
            worker = self.workers[sink_id]
            if not worker.offer(routed, cancel=self._abort) and worker.state is SinkState.DEGRADED:
                self.log.debug(f"Dropped {routed.source_position} for degraded sink {sink_id}")
        self.instance.events_routed += 1
        if self.metrics:
            self.metrics.record_event(self.pipeline_id, event.operation.value, str(event.table_id))
            if event.commit_timestamp is not None:
                self.metrics.update_commit_lag(
                    self.pipeline_id, (utc_now() - event.commit_timestamp).total_seconds()
                )

    def _issue_barrier(self) -> Optional[Checkpoint]:
        if self.checkpointer is None:
            return None
        checkpoint = self.checkpointer.issue(self.instance.last_dispatched)
        marker = FlushMarker(checkpoint.checkpoint_id, checkpoint.barrier_position)
        for sink_id in sorted(self.router.bound_sinks):
            self.workers[sink_id].offer(marker, cancel=self._abort)
        if self.metrics:
            self.metrics.record_checkpoint(self.pipeline_id, "issued")
        return checkpoint

    def _reopen_source(self, error: TransientIOError) -> None:
        """
        Reopen the reader after the last dispatched position, with backoff.

        Failures are counted until a poll succeeds again; past
        ``source_max_retries`` consecutive failures the pipeline fails.
        """
        self._source_failures += 1
        if self._source_failures > self.settings.source_max_retries:
            self._fail(f"source unavailable after {self.settings.source_max_retries} retries: {error}")
            return
        delays = backoff_delays(
            self.settings.retry_initial_delay_seconds,
            self.settings.retry_backoff_factor,
            self.settings.retry_max_delay_seconds,
        )
        delay = 0.0
        for _ in range(self._source_failures):
            delay = next(delays)
        self.log.warning(
            f"Source connection lost for {self.pipeline_id}: {error}; "
            f"reconnecting in {delay:.2f}s (attempt {self._source_failures}/{self.settings.source_max_retries})"
        )
        if self._stop_reading.wait(delay):
            return
        resume: ReadFrom = self.instance.last_dispatched or self.instance.read_from or StartPosition.EARLIEST
        if self._open_reader(resume):
            self.log.info(f"Source reopened after {resume}")

    def _open_reader(self, target: ReadFrom) -> bool:
        """Open the reader at ``target``, retrying transient errors; False if it gave up."""

        def reopen() -> None:
            if self.metrics:
                self.metrics.record_source_reconnect(self.pipeline_id)
            self.reader.open(target)

        try:
            retry_with_backoff(
                reopen,
                max_retries=self.settings.source_max_retries,
                initial_delay=self.settings.retry_initial_delay_seconds,
                backoff_factor=self.settings.retry_backoff_factor,
                max_delay=self.settings.retry_max_delay_seconds,
                stop_event=self._stop_reading,
            )
            return True
        except TransientIOError as e:
            if not self._stop_reading.is_set():
                self._fail(f"source unavailable after {self.settings.source_max_retries} retries: {e}")
            return False

    def _handle_rewinds(self) -> None:
        with self._rewind_lock:
            requests = dict(self._rewind_requests)
            self._rewind_requests.clear()
        if not requests:
            return

        positions = list(requests.values())
        if any(p is None for p in positions):
            target: ReadFrom = self.instance.first_resume_after or self.instance.read_from or StartPosition.EARLIEST
        else:
            target = min(p for p in positions if p is not None)
        self.log.warning(f"Rewinding {self.pipeline_id} to {target} for recovered sinks {sorted(requests)}")
        if not self._open_reader(target):
            return
        self.instance.last_dispatched = self.reader.resume_after
        for sink_id in requests:
            self.workers[sink_id].rewound()

    def _housekeeping_loop(self) -> None:
        """Renew the lease and refresh stall checks and gauges, even while the reader is blocked."""
        interval = min(MAINTENANCE_INTERVAL_SECONDS, self.settings.lease_ttl_seconds / 6)
        try:
            while not self._finished.wait(interval):
                self._maintenance()
        except Exception as e:
            self.log.error(f"Unexpected error in housekeeping of {self.pipeline_id}: {e}", exc_info=True)
            self._fail(f"{type(e).__name__}: {e}")

    def _maintenance(self) -> None:
        now = time.monotonic()
        if now - self._last_persist >= self.settings.lease_ttl_seconds / 3:
            self._persist()
        if now - self._last_maintenance < MAINTENANCE_INTERVAL_SECONDS:
            return
        self._last_maintenance = now
        if self.checkpointer is not None:
            stalled = self.checkpointer.check_stalled()
            if self.metrics:
                self.metrics.update_checkpoint_stalled(self.pipeline_id, stalled)
        if self.metrics:
            head = self._head_position()
            self.metrics.update_source_lag(self.pipeline_id, position_lag(head, self._confirmed_position()))
            for worker in self.workers.values():
                worker.report_metrics(head)

    # Worker callbacks

    def _on_ack(self, sink_id: str, checkpoint_id: int, barrier: Optional[SourcePosition]) -> None:
        if self.checkpointer is not None and self.state is not RunState.FAILED:
            self.checkpointer.ack(sink_id, checkpoint_id, barrier)

    def _on_confirmed(self, checkpoint: Checkpoint, global_position: Optional[SourcePosition]) -> None:
        if self.metrics:
            self.metrics.record_checkpoint(
                self.pipeline_id,
                "confirmed",
                confirmed_offset=global_position.offset if global_position else None,
            )
        self._persist()

    def _on_sink_fatal(self, sink_id: str, error: BaseException) -> None:
        self._fail(f"sink {sink_id} failed: {type(error).__name__}: {error}")

    def _on_rewind(self, sink_id: str, position: Optional[SourcePosition]) -> None:
        with self._rewind_lock:
            self._rewind_requests[sink_id] = position

    # Persistence

    def _confirmed_position(self) -> Optional[SourcePosition]:
        durable = self.instance.durable
        return durable.last_confirmed_position if durable is not None else None

    def _persist(self) -> None:
        """Write per-sink positions and the global minimum, renewing the lease."""
        durable = self.instance.durable
        if durable is None or self.checkpointer is None:
            return
        with self._persist_lock:
            if self.state is RunState.FAILED or self._cleaned_up or not self.position_store.holds_lease:
                return
            durable.sink_positions = self.checkpointer.sink_positions()
            confirmed = self.checkpointer.confirmed_position()
            if confirmed is not None and (
                durable.last_confirmed_position is None or confirmed > durable.last_confirmed_position
            ):
                durable.last_confirmed_position = confirmed
            try:
                self.position_store.save(durable)
                self._last_persist = time.monotonic()
            except TransientIOError as e:
                self.log.warning(f"Could not persist positions of {self.pipeline_id}: {e}; will retry")
                return
            except LeaseConflictError as e:
                self._fail(f"lease lost: {e}")
                return
        position = durable.last_confirmed_position
        self.log.debug(
            f"Persisted {self.pipeline_id} at {position}", extra={"position": position.to_dict() if position else None}
        )

    # Status

    def _head_position(self) -> Optional[SourcePosition]:
        try:
            return self.reader.current_head_position()
        except (TransientIOError, OSError) as e:
            self.log.debug(f"Head position unavailable: {e}")
            return None

    def status(self) -> PipelineStatus:
        """Current status, health and per-sink detail."""
        state = self.state
        head = self._head_position()
        confirmed = self._confirmed_position()
        sinks = [worker.status(head) for worker in self.workers.values()]
        degraded = [s.sink_id for s in sinks if s.state in (SinkState.DEGRADED, SinkState.RECOVERING)]
        stalled_tables = [str(t) for t in self.router.exclusive_tables(degraded)] if degraded else []

        checkpoint_state = "IDLE"
        stalled = False
        missing: List[str] = []
        if self.checkpointer is not None:
            cp = self.checkpointer.status()
            checkpoint_state = cp.state.value
            stalled = cp.stalled
            missing = cp.missing_acks

        reason = self.reason
        if state in (RunState.FAILED, RunState.STOPPED):
            health = "unhealthy"
        elif state is RunState.STARTING:
            health = "degraded"
            reason = reason or "starting"
        elif degraded or stalled:
            health = "degraded"
            parts = []
            if degraded:
                parts.append(f"sinks degraded: {', '.join(degraded)}")
                if stalled_tables:
                    parts.append(f"tables stalled: {', '.join(stalled_tables)}")
            if stalled:
                parts.append(f"checkpoint stalled waiting on {', '.join(missing) or 'barrier'}")
            reason = "; ".join(parts)
        else:
            health = "healthy"

        if self.metrics:
            self.metrics.update_pipeline_health(self.pipeline_id, health == "healthy")

        return PipelineStatus(
            pipeline_id=self.pipeline_id,
            state=state,
            health=health,
            reason=reason,
            last_confirmed_position=confirmed,
            head_position=head,
            lag=position_lag(head, confirmed),
            sinks=sinks,
            degraded_sinks=degraded,
            stalled_tables=stalled_tables,
            checkpoint_state=checkpoint_state,
            checkpoint_stalled=stalled,
            missing_acks=missing,
            events_routed=self.instance.events_routed,
            decode_skipped=self.instance.decode_skipped,
        )
