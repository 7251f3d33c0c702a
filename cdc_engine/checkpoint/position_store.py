"""Lease-guarded persistence of pipeline positions."""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from cdc_engine.checkpoint.kv_store import KeyValueStore
from cdc_engine.common.errors import ConditionalWriteError, ConfigurationError, LeaseConflictError
from cdc_engine.common.models import SourcePosition
from cdc_engine.common.utils import parse_cdc_timestamp, utc_now
from cdc_engine.observability.logging_config import get_logger

logger = get_logger(__name__)


def _position(data: Optional[Mapping[str, Any]]) -> Optional[SourcePosition]:
    return SourcePosition.from_dict(data) if data else None


@dataclass
class PipelineState:
    """Durable state of one pipeline instance."""

    pipeline_id: str
    last_confirmed_position: Optional[SourcePosition] = None
    sink_positions: Dict[str, SourcePosition] = field(default_factory=dict)
    sink_bindings: Dict[str, List[str]] = field(default_factory=dict)
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_id": self.pipeline_id,
            "last_confirmed_position": self.last_confirmed_position.to_dict() if self.last_confirmed_position else None,
            "sink_positions": {sink: pos.to_dict() for sink, pos in sorted(self.sink_positions.items())},
            "sink_bindings": {table: sorted(sinks) for table, sinks in sorted(self.sink_bindings.items())},
            "lease_owner": self.lease_owner,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineState":
        return cls(
            pipeline_id=data["pipeline_id"],
            last_confirmed_position=_position(data.get("last_confirmed_position")),
            sink_positions={sink: SourcePosition.from_dict(pos) for sink, pos in (data.get("sink_positions") or {}).items()},
            sink_bindings={table: sorted(sinks) for table, sinks in (data.get("sink_bindings") or {}).items()},
            lease_owner=data.get("lease_owner"),
            lease_expires_at=parse_cdc_timestamp(data.get("lease_expires_at")),
            updated_at=parse_cdc_timestamp(data.get("updated_at")),
        )


class PositionStore:
    """
    Persists PipelineState under a lease.

    Only the lease holder may write. Every write is conditional on the version
    the holder last saw, so a second coordinator that took over an expired lease
    makes the first one's next write fail with LeaseConflictError.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        pipeline_id: str,
        owner_id: Optional[str] = None,
        lease_ttl: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize position store.

        Args:
            kv: Conditional-write key-value store
            pipeline_id: Pipeline whose state is stored
            owner_id: Lease owner identity (random by default)
            lease_ttl: Lease duration in seconds
            clock: Clock returning aware UTC datetimes
        """
        self.kv = kv
        self.pipeline_id = pipeline_id
        self.owner_id = owner_id or f"{pipeline_id}-{uuid.uuid4().hex[:12]}"
        self.lease_ttl = lease_ttl
        self._clock = clock
        self._version = 0
        self._holding = False
        self._lock = threading.Lock()

    @property
    def key(self) -> str:
        return f"pipeline.{self.pipeline_id}"

    @property
    def holds_lease(self) -> bool:
        return self._holding

    def load(self) -> Optional[PipelineState]:
        """Read the stored state without taking the lease."""
        value, _ = self.kv.get(self.key)
        return PipelineState.from_dict(value) if value is not None else None

    def _expires(self) -> datetime:
        return self._clock() + timedelta(seconds=self.lease_ttl)

    def _held_by_other(self, state: PipelineState) -> bool:
        return (
            state.lease_owner is not None
            and state.lease_owner != self.owner_id
            and state.lease_expires_at is not None
            and state.lease_expires_at > self._clock()
        )

    def acquire_lease(self, sink_bindings: Optional[Mapping[str, List[str]]] = None) -> PipelineState:
        """
        Take the lease and return the stored (or a fresh) state.

        Args:
            sink_bindings: Bindings of the starting instance; a stored state with
                different bindings is rejected

        Raises:
            LeaseConflictError: If another owner holds an unexpired lease
            ConfigurationError: If the stored bindings differ from ``sink_bindings``
        """
        with self._lock:
            value, version = self.kv.get(self.key)
            if value is None:
                state = PipelineState(pipeline_id=self.pipeline_id, sink_bindings=dict(sink_bindings or {}))
            else:
                state = PipelineState.from_dict(value)
                if self._held_by_other(state):
                    raise LeaseConflictError(
                        f"pipeline {self.pipeline_id} is leased by {state.lease_owner} "
                        f"until {state.lease_expires_at.isoformat()}"  # type: ignore[union-attr]
                    )
                if sink_bindings is not None:
                    wanted = {table: sorted(sinks) for table, sinks in sink_bindings.items()}
                    if state.sink_bindings and state.sink_bindings != wanted:
                        raise ConfigurationError(
                            f"pipeline {self.pipeline_id} was started with bindings {state.sink_bindings}; "
                            f"refusing to resume with {wanted}"
                        )
                    state.sink_bindings = wanted

            state.lease_owner = self.owner_id
            state.lease_expires_at = self._expires()
            state.updated_at = self._clock()
            try:
                self._version = self.kv.put(self.key, state.to_dict(), version)
            except ConditionalWriteError as e:
                raise LeaseConflictError(f"lost the race for the lease on {self.pipeline_id}") from e
            self._holding = True
            logger.info(f"Acquired lease on {self.pipeline_id} as {self.owner_id} (version {self._version})")
            return state

    def save(self, state: PipelineState) -> None:
        """
        Persist ``state`` and extend the lease.

        Raises:
            LeaseConflictError: If the lease is not held or was taken over
        """
        with self._lock:
            if not self._holding:
                raise LeaseConflictError(f"lease on {self.pipeline_id} is not held")
            state.lease_owner = self.owner_id
            state.lease_expires_at = self._expires()
            state.updated_at = self._clock()
            try:
                self._version = self.kv.put(self.key, state.to_dict(), self._version)
            except ConditionalWriteError as e:
                self._holding = False
                raise LeaseConflictError(f"lease on {self.pipeline_id} was taken over") from e

    def release_lease(self, state: PipelineState) -> None:
        """Persist ``state`` and give the lease up."""
        with self._lock:
            if not self._holding:
                return
            state.lease_owner = None
            state.lease_expires_at = None
            state.updated_at = self._clock()
            try:
                self._version = self.kv.put(self.key, state.to_dict(), self._version)
            except ConditionalWriteError as e:
                raise LeaseConflictError(f"lease on {self.pipeline_id} was taken over") from e
            finally:
                self._holding = False
            logger.info(f"Released lease on {self.pipeline_id}")

    def reset(self, position: Optional[SourcePosition]) -> PipelineState:
        """
        Re-seed the stored positions, e.g. after a PositionLostError.

        Every sink position is set to ``position`` (or cleared for None, which
        makes the next start use the configured start position). Requires that no
        other owner holds the lease.
        """
        state = self.acquire_lease()
        state.last_confirmed_position = position
        state.sink_positions = {sink: position for sink in state.sink_positions} if position else {}
        self.release_lease(state)
        logger.warning(f"Reset positions of {self.pipeline_id} to {position}")
        return state

    def close(self) -> None:
        self.kv.close()
