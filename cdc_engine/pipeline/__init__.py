"""Pipeline coordination and assembly."""

from cdc_engine.pipeline.coordinator import PipelineCoordinator, PipelineStatus, RunState

__all__ = [
    "PipelineCoordinator",
    "PipelineStatus",
    "RunState",
]
