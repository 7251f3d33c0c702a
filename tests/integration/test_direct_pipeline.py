"""In-process tests of a direct pipeline: source log -> router -> sinks."""

import threading

import pytest

from tests.test_utils import pos, wait_for_condition

KEYS = {"shop.customers": ["id"]}


def _sinks():
    from cdc_engine.sinks.append_log import AppendLogSink
    from cdc_engine.sinks.memory_targets import InMemoryAppendTarget, InMemoryUpsertTarget
    from cdc_engine.sinks.upsert_table import UpsertTableSink

    upsert_target = InMemoryUpsertTarget()
    history_target = InMemoryAppendTarget()
    sinks = [UpsertTableSink("upsert", upsert_target, KEYS), AppendLogSink("history", history_target)]
    return sinks, upsert_target, history_target


BINDINGS = {"shop.customers": ["upsert", "history"]}


def _insert(source_log, key):
    return source_log.append_change("shop.customers", "INSERT", after={"id": key, "name": f"customer-{key}"})


def _offsets(history_target):
    return [r["position"]["offset"] for r in history_target.records]


@pytest.mark.integration
class TestDirectPipeline:
    """End-to-end behaviour over in-memory collaborators."""

    def test_insert_update_delete_replicates_to_both_sinks(self, make_pipeline, stored_state):
        """Test one key's INSERT/UPDATE/DELETE leaves no row and three history records."""
        from cdc_engine.pipeline.coordinator import RunState
        from cdc_engine.source.memory_log import InMemorySourceLog

        source = InMemorySourceLog(first_offset=10)
        source.append_change("shop.customers", "INSERT", after={"id": 1, "name": "a"})
        source.append_change("shop.customers", "UPDATE", before={"id": 1, "name": "a"}, after={"id": 1, "name": "b"})
        source.append_change("shop.customers", "DELETE", before={"id": 1, "name": "b"})
        sinks, upsert_target, history_target = _sinks()

        pipeline = make_pipeline(sinks, BINDINGS, source=source).start()
        wait_for_condition(lambda: len(history_target.records) == 3, timeout_seconds=10)
        pipeline.stop(drain=True)

        assert pipeline.state is RunState.STOPPED
        assert upsert_target.rows("shop.customers") == {}
        assert [r["operation"] for r in history_target.records] == ["INSERT", "UPDATE", "DELETE"]
        assert _offsets(history_target) == [10, 11, 12]
        state = stored_state()
        assert state.last_confirmed_position == pos(12)
        assert state.lease_owner is None

    def test_restart_resumes_after_confirmed_position(self, make_pipeline, source_log, stored_state):
        """Test a restarted pipeline delivers only records after the stored position."""
        sinks, upsert_target, history_target = _sinks()
        for key in range(1, 6):
            _insert(source_log, key)

        first = make_pipeline(sinks, BINDINGS).start()
        wait_for_condition(lambda: len(history_target.records) == 5, timeout_seconds=10)
        first.stop(drain=True)
        assert stored_state().last_confirmed_position == pos(5)

        for key in range(6, 9):
            _insert(source_log, key)
        from cdc_engine.sinks.append_log import AppendLogSink
        from cdc_engine.sinks.upsert_table import UpsertTableSink

        second = make_pipeline(
            [UpsertTableSink("upsert", upsert_target, KEYS), AppendLogSink("history", history_target)], BINDINGS
        ).start()
        wait_for_condition(lambda: len(history_target.records) == 8, timeout_seconds=10)
        second.stop(drain=True)

        assert _offsets(history_target) == list(range(1, 9))
        assert len(upsert_target.rows("shop.customers")) == 8
        assert stored_state().last_confirmed_position == pos(8)

    def test_restart_after_abandoned_stop_replays_without_duplicates(
        self, make_pipeline, source_log, stored_state, fast_settings
    ):
        """
        Test a pipeline stopped without draining after a confirmed checkpoint.

        Events 6 and 7 are applied but not confirmed when it stops, so the
        restart replays them; sinks must end up as if the run was uninterrupted.
        """
        from cdc_engine.sinks.append_log import AppendLogSink
        from cdc_engine.sinks.upsert_table import UpsertTableSink

        settings = fast_settings.model_copy(
            update={"checkpoint_every_events": 5, "checkpoint_interval_seconds": 60.0}
        )
        sinks, upsert_target, history_target = _sinks()
        for key in range(1, 6):
            _insert(source_log, key)
        source_log.append_change(
            "shop.customers", "UPDATE", before={"id": 1, "name": "customer-1"}, after={"id": 1, "name": "x"}
        )
        source_log.append_change("shop.customers", "DELETE", before={"id": 2, "name": "customer-2"})

        first = make_pipeline(sinks, BINDINGS, settings=settings).start()
        wait_for_condition(lambda: len(history_target.records) == 7, timeout_seconds=10)
        wait_for_condition(lambda: stored_state().last_confirmed_position == pos(5), timeout_seconds=10)
        first.stop(drain=False)
        assert stored_state().last_confirmed_position == pos(5)

        _insert(source_log, 8)
        _insert(source_log, 9)
        second = make_pipeline(
            [UpsertTableSink("upsert", upsert_target, KEYS), AppendLogSink("history", history_target)],
            BINDINGS,
            settings=settings,
        ).start()
        wait_for_condition(lambda: len(history_target.records) == 9, timeout_seconds=10)
        second.stop(drain=True)

        assert _offsets(history_target) == list(range(1, 10))
        rows = upsert_target.rows("shop.customers")
        assert sorted(rows) == [(1,), (3,), (4,), (5,), (8,), (9,)]
        assert rows[(1,)]["name"] == "x"
        assert stored_state().last_confirmed_position == pos(9)

    def test_concurrent_stop_calls(self, make_pipeline, source_log):
        """Test two threads stopping the pipeline at once both return cleanly."""
        from cdc_engine.pipeline.coordinator import RunState

        sinks, _, history_target = _sinks()
        pipeline = make_pipeline(sinks, BINDINGS).start()
        for key in range(1, 4):
            _insert(source_log, key)
        wait_for_condition(lambda: len(history_target.records) == 3, timeout_seconds=10)

        errors = []

        def stop():
            try:
                pipeline.stop(drain=True)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=stop) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert errors == []
        assert pipeline.state is RunState.STOPPED

    def test_unbound_tables_still_advance_position(self, make_pipeline, source_log, stored_state):
        sinks, _, history_target = _sinks()
        _insert(source_log, 1)
        source_log.append_change("shop.orders", "INSERT", after={"order_id": 1})
        source_log.append(None)

        pipeline = make_pipeline(sinks, BINDINGS).start()
        wait_for_condition(lambda: pipeline.instance.last_dispatched == pos(3), timeout_seconds=10)
        pipeline.stop(drain=True)

        assert _offsets(history_target) == [1]
        assert stored_state().last_confirmed_position == pos(3)

    def test_pause_stops_consumption_until_resume(self, make_pipeline, source_log):
        from cdc_engine.pipeline.coordinator import RunState

        sinks, _, history_target = _sinks()
        pipeline = make_pipeline(sinks, BINDINGS).start()
        _insert(source_log, 1)
        wait_for_condition(lambda: len(history_target.records) == 1, timeout_seconds=10)

        pipeline.pause()
        assert pipeline.state is RunState.PAUSED
        wait_for_condition(lambda: pipeline.status().health == "healthy", timeout_seconds=5)
        _insert(source_log, 2)
        # Give the read loop time to notice the pause before checking nothing moved.
        threading.Event().wait(0.2)
        assert len(history_target.records) == 1

        pipeline.resume()
        wait_for_condition(lambda: len(history_target.records) == 2, timeout_seconds=10)

    def test_invalid_transitions_are_rejected(self, make_pipeline):
        from cdc_engine.common.errors import InvalidStateTransition

        sinks, _, _ = _sinks()
        pipeline = make_pipeline(sinks, BINDINGS)

        with pytest.raises(InvalidStateTransition):
            pipeline.pause()
        pipeline.start()
        with pytest.raises(InvalidStateTransition):
            pipeline.resume()
        with pytest.raises(InvalidStateTransition):
            pipeline.start()

    def test_transient_source_errors_are_retried(self, make_pipeline, source_log):
        """Test a dropped source connection is reopened without loss or duplicates."""
        sinks, _, history_target = _sinks()
        for key in range(1, 4):
            _insert(source_log, key)
        pipeline = make_pipeline(sinks, BINDINGS).start()
        wait_for_condition(lambda: len(history_target.records) == 3, timeout_seconds=10)

        source_log.inject_failures(2)
        for key in range(4, 7):
            _insert(source_log, key)
        wait_for_condition(lambda: len(history_target.records) == 6, timeout_seconds=10)

        assert _offsets(history_target) == list(range(1, 7))

    def test_source_unavailable_past_retries_fails_pipeline(self, make_pipeline, source_log):
        from cdc_engine.pipeline.coordinator import RunState

        sinks, _, _ = _sinks()
        pipeline = make_pipeline(sinks, BINDINGS).start()

        source_log.inject_failures(100)

        assert pipeline.wait(timeout=10) is RunState.FAILED
        assert "source unavailable" in pipeline.reason
        assert pipeline.status().health == "unhealthy"

    def test_decode_skip_policy(self, make_pipeline, source_log, fast_settings):
        sinks, _, history_target = _sinks()
        _insert(source_log, 1)
        source_log.append({"op": "x", "source": {"db": "shop", "table": "customers"}})
        _insert(source_log, 3)
        settings = fast_settings.model_copy(update={"decode_failure_policy": "skip"})

        pipeline = make_pipeline(sinks, BINDINGS, settings=settings).start()
        wait_for_condition(lambda: len(history_target.records) == 2, timeout_seconds=10)

        assert pipeline.status().decode_skipped == 1
        assert _offsets(history_target) == [1, 3]

    def test_decode_fail_policy(self, make_pipeline, source_log):
        from cdc_engine.pipeline.coordinator import RunState

        sinks, _, _ = _sinks()
        source_log.append({"op": "c"})

        pipeline = make_pipeline(sinks, BINDINGS).start()

        assert pipeline.wait(timeout=10) is RunState.FAILED
        assert "DecodeError" in pipeline.reason

    def test_fatal_sink_error_fails_pipeline(self, make_pipeline, source_log):
        """Test a record missing its key column fails the pipeline instead of degrading."""
        from cdc_engine.pipeline.coordinator import RunState

        sinks, _, _ = _sinks()
        source_log.append_change("shop.customers", "INSERT", after={"name": "no key"})

        pipeline = make_pipeline(sinks, BINDINGS).start()

        assert pipeline.wait(timeout=10) is RunState.FAILED
        assert "sink upsert failed" in pipeline.reason
