"""In-process tests of single ownership and lost resume positions."""

import pytest

from tests.test_utils import GatedUpsertTarget, pos

KEYS = {"shop.customers": ["id"]}
BINDINGS = {"shop.customers": ["upsert"]}


def _sink():
    from cdc_engine.sinks.memory_targets import InMemoryUpsertTarget
    from cdc_engine.sinks.upsert_table import UpsertTableSink

    return UpsertTableSink("upsert", InMemoryUpsertTarget(), KEYS)


@pytest.mark.integration
class TestLeaseAndRetention:
    """Test single ownership of a pipeline and resuming against source retention."""

    def test_second_coordinator_is_refused(self, make_pipeline):
        """Test two coordinators cannot run the same pipeline id at once."""
        from cdc_engine.common.errors import LeaseConflictError
        from cdc_engine.pipeline.coordinator import RunState

        first = make_pipeline([_sink()], BINDINGS, owner="owner-a").start()
        second = make_pipeline([_sink()], BINDINGS, owner="owner-b")

        with pytest.raises(LeaseConflictError):
            second.start()

        assert second.state is RunState.FAILED
        assert first.state is RunState.RUNNING

    def test_lease_is_kept_while_reader_is_blocked(self, make_pipeline, source_log, fast_settings):
        """Test the lease is renewed while a full sink queue holds the reader back."""
        import threading

        from cdc_engine.common.errors import LeaseConflictError
        from cdc_engine.pipeline.coordinator import RunState
        from cdc_engine.sinks.upsert_table import UpsertTableSink

        settings = fast_settings.model_copy(update={"queue_size": 2, "batch_size": 1, "lease_ttl_seconds": 0.3})
        target = GatedUpsertTarget()
        first = make_pipeline(
            [UpsertTableSink("upsert", target, KEYS)], BINDINGS, settings=settings, owner="owner-a"
        ).start()
        for key in range(1, 21):
            source_log.append_change("shop.customers", "INSERT", after={"id": key})
        threading.Event().wait(1.5)

        second = make_pipeline([_sink()], BINDINGS, settings=settings, owner="owner-b")
        with pytest.raises(LeaseConflictError):
            second.start()

        assert first.state is RunState.RUNNING
        assert first.instance.last_dispatched < pos(20)
        target.gate.set()

    def test_changed_bindings_are_refused_on_restart(self, make_pipeline):
        from cdc_engine.common.errors import ConfigurationError
        from cdc_engine.sinks.memory_targets import InMemoryAppendTarget
        from cdc_engine.sinks.append_log import AppendLogSink

        make_pipeline([_sink()], BINDINGS).start().stop(drain=True)

        restarted = make_pipeline(
            [_sink(), AppendLogSink("history", InMemoryAppendTarget())],
            {"shop.customers": ["upsert", "history"]},
        )
        with pytest.raises(ConfigurationError):
            restarted.start()

    def test_lost_resume_position_fails_start(self, make_pipeline, source_log, kv_store, fast_settings):
        """Test resuming from a position the source no longer retains fails with PositionLostError."""
        from cdc_engine.checkpoint.position_store import PositionStore
        from cdc_engine.common.errors import PositionLostError
        from cdc_engine.pipeline.coordinator import RunState

        store = PositionStore(kv_store, fast_settings.pipeline_id, owner_id="seed")
        state = store.acquire_lease()
        state.last_confirmed_position = pos(3)
        store.release_lease(state)
        for key in range(1, 13):
            source_log.append_change("shop.customers", "INSERT", after={"id": key})
        source_log.truncate_before(10)

        pipeline = make_pipeline([_sink()], BINDINGS)
        with pytest.raises(PositionLostError):
            pipeline.start()

        assert pipeline.state is RunState.FAILED
        assert "earliest retained position" in pipeline.reason

    def test_position_just_before_retention_is_usable(self, make_pipeline, source_log, kv_store, fast_settings):
        """Test resuming right before the earliest retained record loses nothing."""
        from cdc_engine.checkpoint.position_store import PositionStore
        from cdc_engine.pipeline.coordinator import RunState

        store = PositionStore(kv_store, fast_settings.pipeline_id, owner_id="seed")
        state = store.acquire_lease()
        state.last_confirmed_position = pos(9)
        store.release_lease(state)
        for key in range(1, 13):
            source_log.append_change("shop.customers", "INSERT", after={"id": key})
        source_log.truncate_before(10)

        pipeline = make_pipeline([_sink()], BINDINGS).start()

        assert pipeline.state is RunState.RUNNING
