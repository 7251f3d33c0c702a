"""Fixtures for in-process pipeline tests."""

import pytest


@pytest.fixture
def make_pipeline(fast_settings, source_log, kv_store):
    """
    Build coordinators over the shared source log and state store.

    Every coordinator built here is stopped after the test.
    """
    from cdc_engine.checkpoint.position_store import PositionStore
    from cdc_engine.pipeline.coordinator import PipelineCoordinator

    built = []

    def factory(sinks, bindings, settings=None, owner=None, source=None):
        settings = settings or fast_settings
        store = PositionStore(kv_store, settings.pipeline_id, owner_id=owner, lease_ttl=settings.lease_ttl_seconds)
        pipeline = PipelineCoordinator(source or source_log, sinks, bindings, store, settings=settings)
        built.append(pipeline)
        return pipeline

    yield factory

    for pipeline in built:
        pipeline.stop(drain=False)


@pytest.fixture
def stored_state(kv_store, fast_settings):
    """Read the persisted state of ``test-pipeline`` without taking the lease."""
    from cdc_engine.checkpoint.position_store import PositionStore

    def read():
        return PositionStore(kv_store, fast_settings.pipeline_id, owner_id="reader").load()

    return read
