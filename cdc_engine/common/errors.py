"""Exception hierarchy for the CDC engine."""

from typing import Any, Optional


class CDCError(Exception):
    """Base class for all engine errors."""


class TransientIOError(CDCError):
    """A source, sink or store is temporarily unreachable; safe to retry."""


class PositionLostError(CDCError):
    """The requested resume position is no longer retained by the source."""

    def __init__(self, requested: Any, earliest: Any) -> None:
        super().__init__(
            f"position {requested} is older than the earliest retained position {earliest}; "
            "re-seed the pipeline from a fresh snapshot"
        )
        self.requested = requested
        self.earliest = earliest


class OrderingViolationError(CDCError):
    """The source produced a record out of position order."""


class DecodeError(CDCError):
    """A raw change record could not be decoded."""

    def __init__(self, message: str, position: Optional[Any] = None) -> None:
        super().__init__(f"{message} (at {position})" if position is not None else message)
        self.position = position


class SchemaError(CDCError):
    """An event does not fit the schema a sink needs (e.g. missing key columns)."""


class SinkWriteError(CDCError):
    """A sink write failed with an error that retrying will not fix."""


class ConditionalWriteError(CDCError):
    """A versioned write lost against a concurrent writer."""


class LeaseConflictError(CDCError):
    """Another coordinator holds the lease on the pipeline's position record."""


class ConfigurationError(CDCError):
    """The pipeline configuration is invalid or conflicts with persisted state."""


class InvalidStateTransition(CDCError):
    """A state machine was asked to make a transition it does not allow."""
