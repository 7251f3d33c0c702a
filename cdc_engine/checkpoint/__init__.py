"""
Checkpointing and durable pipeline state.

Checkpointer tracks barriers and per-sink acks; PositionStore persists the
confirmed positions under a lease on top of a versioned KeyValueStore.
"""

from cdc_engine.checkpoint.checkpointer import Checkpoint, Checkpointer
from cdc_engine.checkpoint.kv_store import FileKeyValueStore, InMemoryKeyValueStore
from cdc_engine.checkpoint.position_store import PipelineState, PositionStore

__all__ = [
    "Checkpoint",
    "Checkpointer",
    "FileKeyValueStore",
    "InMemoryKeyValueStore",
    "PipelineState",
    "PositionStore",
]
