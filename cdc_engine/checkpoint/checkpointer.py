"""Barrier-based checkpointing."""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from cdc_engine.common.models import SourcePosition
from cdc_engine.common.utils import utc_now
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


class CheckpointerState(str, Enum):
    IDLE = "IDLE"
    BARRIER_ISSUED = "BARRIER_ISSUED"
    CONFIRMED = "CONFIRMED"


class CheckpointStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


@dataclass
class Checkpoint:
    """One barrier and the sinks that have acknowledged it."""

    checkpoint_id: int
    barrier_position: Optional[SourcePosition]
    status: CheckpointStatus = CheckpointStatus.PENDING
    issued_at: datetime = field(default_factory=utc_now)
    confirmed_at: Optional[datetime] = None
    acks: Dict[str, Optional[SourcePosition]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "checkpoint_id": self.checkpoint_id,
            "barrier_position": self.barrier_position.to_dict() if self.barrier_position else None,
            "status": self.status.value,
            "issued_at": self.issued_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "acks": sorted(self.acks),
        }


@dataclass
class CheckpointerStatus:
    state: CheckpointerState
    current: Optional[Checkpoint]
    last_confirmed: Optional[Checkpoint]
    stalled: bool
    missing_acks: List[str]
    sink_positions: Dict[str, SourcePosition]


class Checkpointer:
    """
    Tracks barriers and per-sink durable positions.

    A barrier is confirmed once every bound sink has acked it. Acks also raise the
    acking sink's durable position, which never moves backwards; the globally
    confirmed position is the minimum over bound sinks, so it is never ahead of
    any of them. Issuing a barrier while one is pending supersedes it.
    """

    def __init__(
        self,
        sink_ids: Iterable[str],
        interval: float = 5.0,
        every_events: int = 1000,
        stall_timeout: float = 60.0,
        sink_positions: Optional[Dict[str, SourcePosition]] = None,
        on_confirmed: Optional[Callable[[Checkpoint, Optional[SourcePosition]], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize checkpointer.

        Args:
            sink_ids: Sinks that must ack every barrier
            interval: Seconds between barriers
            every_events: Routed events that trigger a barrier
            stall_timeout: Seconds after which an unconfirmed barrier counts as stalled
            sink_positions: Durable positions recovered from the position store
            on_confirmed: Called with (checkpoint, global position) on confirmation
            clock: Monotonic clock, injectable for tests
        """
        self.sink_ids = frozenset(sink_ids)
        self.interval = interval
        self.every_events = every_events
        self.stall_timeout = stall_timeout
        self.on_confirmed = on_confirmed
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CheckpointerState.IDLE
        self._next_id = 1
        self._current: Optional[Checkpoint] = None
        self._current_issued_at = clock()
        self._last_confirmed: Optional[Checkpoint] = None
        self._last_barrier_at = clock()
        self._observed_since_barrier = 0
        self._highest_routed: Optional[SourcePosition] = None
        self._stall_reported = False
        self._sink_positions: Dict[str, SourcePosition] = {
            sink: pos for sink, pos in (sink_positions or {}).items() if sink in self.sink_ids
        }

    @property
    def state(self) -> CheckpointerState:
        return self._state

    @property
    def highest_routed(self) -> Optional[SourcePosition]:
        return self._highest_routed

    def observe(self, position: SourcePosition) -> None:
        """Record that everything up to ``position`` has been routed."""
        with self._lock:
            if self._highest_routed is None or position > self._highest_routed:
                self._highest_routed = position
            self._observed_since_barrier += 1

    def due(self) -> bool:
        """
        Whether a barrier should be issued now.

        True once ``every_events`` events were routed since the last barrier, or
        the interval elapsed with routed events. A barrier still unconfirmed after
        the interval is due again even without new events, so a sink that missed
        it while unavailable gets another one to ack.
        """
        with self._lock:
            elapsed = self._clock() - self._last_barrier_at >= self.interval
            if self._observed_since_barrier == 0:
                return elapsed and self._state is CheckpointerState.BARRIER_ISSUED
            return self._observed_since_barrier >= self.every_events or elapsed

    def issue(self, position: Optional[SourcePosition] = None) -> Checkpoint:
        """
        Create a PENDING checkpoint.

        Args:
            position: Barrier position; defaults to the highest routed position.
                Every event at or below it must already be queued to its sinks.
        """
        with self._lock:
            barrier = position if position is not None else self._highest_routed
            if self._current is not None and self._current.status is CheckpointStatus.PENDING:
                logger.debug(
                    f"Checkpoint {self._current.checkpoint_id} superseded before confirmation "
                    f"(acks: {sorted(self._current.acks)})"
                )
            checkpoint = Checkpoint(checkpoint_id=self._next_id, barrier_position=barrier)
            self._next_id += 1
            self._current = checkpoint
            now = self._clock()
            if self._state is not CheckpointerState.BARRIER_ISSUED:
                self._current_issued_at = now
                self._stall_reported = False
            self._state = CheckpointerState.BARRIER_ISSUED
            self._last_barrier_at = now
            self._observed_since_barrier = 0
            logger.debug(f"Issued checkpoint {checkpoint.checkpoint_id} at {barrier}")
            return checkpoint

    def ack(self, sink_id: str, checkpoint_id: int, position: Optional[SourcePosition]) -> Optional[Checkpoint]:
        """
        Record that ``sink_id`` made everything up to ``position`` durable.

        Returns:
            The checkpoint if this ack confirmed it, else None
        """
        confirmed: Optional[Checkpoint] = None
        with self._lock:
            if sink_id not in self.sink_ids:
                return None
            if position is not None:
                current = self._sink_positions.get(sink_id)
                if current is None or position > current:
                    self._sink_positions[sink_id] = position

            checkpoint = self._current
            if checkpoint is None or checkpoint.checkpoint_id != checkpoint_id:
                return None
            checkpoint.acks[sink_id] = position
            if self.sink_ids.issubset(checkpoint.acks):
                checkpoint.status = CheckpointStatus.CONFIRMED
                checkpoint.confirmed_at = utc_now()
                self._last_confirmed = checkpoint
                self._current = None
                self._state = CheckpointerState.CONFIRMED
                self._stall_reported = False
                confirmed = checkpoint
            global_position = self._global_position()

        if confirmed is not None:
            logger.info(f"Checkpoint {confirmed.checkpoint_id} confirmed at {confirmed.barrier_position}")
            if self.on_confirmed is not None:
                self.on_confirmed(confirmed, global_position)
            with self._lock:
                if self._state is CheckpointerState.CONFIRMED:
                    self._state = CheckpointerState.IDLE
        return confirmed

    def _global_position(self) -> Optional[SourcePosition]:
        if not self.sink_ids or any(sink not in self._sink_positions for sink in self.sink_ids):
            return None
        return min(self._sink_positions[sink] for sink in self.sink_ids)

    def confirmed_position(self) -> Optional[SourcePosition]:
        """Minimum durable position over all bound sinks."""
        with self._lock:
            return self._global_position()

    def sink_positions(self) -> Dict[str, SourcePosition]:
        with self._lock:
            return dict(self._sink_positions)

    def stalled(self) -> bool:
        with self._lock:
            return self._is_stalled()

    def _is_stalled(self) -> bool:
        return (
            self._state is CheckpointerState.BARRIER_ISSUED
            and self._clock() - self._current_issued_at >= self.stall_timeout
        )

    def check_stalled(self) -> bool:
        """Like ``stalled`` but logs a warning the first time a stall is seen."""
        with self._lock:
            stalled = self._is_stalled()
            report = stalled and not self._stall_reported
            if report:
                self._stall_reported = True
            missing = self._missing_acks()
        if report:
            logger.warning(
                f"Checkpoint stalled for more than {self.stall_timeout}s; waiting on sinks {missing}"
            )
        return stalled

    def _missing_acks(self) -> List[str]:
        if self._current is None:
            return []
        return sorted(self.sink_ids - set(self._current.acks))

    def status(self) -> CheckpointerStatus:
        with self._lock:
            return CheckpointerStatus(
                state=self._state,
                current=self._current,
                last_confirmed=self._last_confirmed,
                stalled=self._is_stalled(),
                missing_acks=self._missing_acks(),
                sink_positions=dict(self._sink_positions),
            )
