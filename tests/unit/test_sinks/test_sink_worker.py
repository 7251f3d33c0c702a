"""Unit tests for the per-sink worker thread."""

import threading

import pytest

from tests.test_utils import make_event, pos, wait_for_condition

KEYS = {"shop.customers": ["id"]}


class _Callbacks:
    """Records worker callbacks."""

    def __init__(self):
        self.acks = []
        self.fatal = []
        self.rewinds = []
        self.lock = threading.Lock()

    def on_ack(self, sink_id, checkpoint_id, barrier):
        with self.lock:
            self.acks.append((sink_id, checkpoint_id, barrier))

    def on_fatal(self, sink_id, error):
        with self.lock:
            self.fatal.append((sink_id, error))

    def on_rewind(self, sink_id, position):
        with self.lock:
            self.rewinds.append((sink_id, position))


@pytest.fixture
def worker_factory(fast_settings):
    """Build started workers over in-memory upsert targets and stop them afterwards."""
    from cdc_engine.sinks.memory_targets import InMemoryUpsertTarget
    from cdc_engine.sinks.upsert_table import UpsertTableSink
    from cdc_engine.sinks.worker import SinkWorker

    started = []

    def factory(durable_position=None):
        target = InMemoryUpsertTarget()
        callbacks = _Callbacks()
        worker = SinkWorker(
            UpsertTableSink("upsert", target, KEYS),
            "test-pipeline",
            fast_settings,
            on_ack=callbacks.on_ack,
            on_fatal=callbacks.on_fatal,
            on_rewind=callbacks.on_rewind,
            durable_position=durable_position,
        )
        worker.start()
        started.append(worker)
        return worker, target, callbacks

    yield factory

    for worker in started:
        worker.request_stop(drain=False)
        worker.join(timeout=5)


@pytest.mark.unit
class TestSinkWorker:
    """Test batching, acks, degradation and recovery."""

    def test_flush_marker_is_acked_after_apply(self, worker_factory):
        """Test a barrier is acked only once the events before it are durable."""
        from cdc_engine.sinks.worker import FlushMarker

        worker, target, callbacks = worker_factory()

        assert worker.offer(make_event(1))
        assert worker.offer(make_event(2))
        assert worker.offer(FlushMarker(1, pos(2)))

        wait_for_condition(lambda: callbacks.acks, timeout_seconds=5)
        assert callbacks.acks == [("upsert", 1, pos(2))]
        assert worker.durable_position == pos(2)
        assert len(target.rows("shop.customers")) == 2

    def test_events_at_or_below_accepted_are_skipped(self, worker_factory):
        """Test a worker resumed at a durable position ignores replayed events."""
        from cdc_engine.sinks.worker import FlushMarker

        worker, target, callbacks = worker_factory(durable_position=pos(5))

        worker.offer(make_event(3))
        worker.offer(make_event(5))
        worker.offer(make_event(6))
        worker.offer(FlushMarker(1, pos(6)))

        wait_for_condition(lambda: callbacks.acks, timeout_seconds=5)
        assert worker.applied_position == pos(6)
        assert worker.status().skipped_events == 2
        assert list(target.rows("shop.customers")) == [(6,)]

    def test_degrades_and_drops_events_with_gap(self, worker_factory):
        """Test exhausted retries turn the sink DEGRADED and new events are refused."""
        from cdc_engine.sinks.worker import FlushMarker, SinkState

        worker, target, _ = worker_factory()
        target.down = True

        worker.offer(make_event(1))
        worker.offer(FlushMarker(1, pos(1)))
        wait_for_condition(lambda: worker.state is SinkState.DEGRADED, timeout_seconds=5)

        assert worker.offer(make_event(2)) is False
        status = worker.status()
        assert status.gap is True
        assert status.last_error is not None
        assert worker.state is SinkState.DEGRADED

    def test_recovery_requests_rewind_after_gap(self, worker_factory):
        """Test a recovered sink asks to be rewound to its last applied position."""
        from cdc_engine.sinks.worker import FlushMarker, SinkState

        worker, target, callbacks = worker_factory()
        worker.offer(make_event(1))
        worker.offer(FlushMarker(1, pos(1)))
        wait_for_condition(lambda: callbacks.acks, timeout_seconds=5)

        target.down = True
        worker.offer(make_event(2))
        worker.offer(FlushMarker(2, pos(2)))
        wait_for_condition(lambda: worker.state is SinkState.DEGRADED, timeout_seconds=5)
        worker.offer(make_event(3))

        target.down = False
        wait_for_condition(lambda: worker.state is SinkState.RECOVERING, timeout_seconds=5)

        wait_for_condition(lambda: callbacks.rewinds == [("upsert", pos(2))], timeout_seconds=5)
        assert worker.offer(make_event(3)) is False

        worker.rewound()

        assert worker.state is SinkState.HEALTHY
        assert worker.status().gap is False
        assert worker.offer(make_event(3))
        worker.offer(FlushMarker(3, pos(3)))
        wait_for_condition(lambda: worker.durable_position == pos(3), timeout_seconds=5)

    def test_recovery_without_gap_goes_straight_to_healthy(self, worker_factory):
        from cdc_engine.sinks.worker import FlushMarker, SinkState

        worker, target, callbacks = worker_factory()
        target.down = True
        worker.offer(make_event(1))
        worker.offer(FlushMarker(1, pos(1)))
        wait_for_condition(lambda: worker.state is SinkState.DEGRADED, timeout_seconds=5)

        target.down = False
        wait_for_condition(lambda: worker.state is SinkState.HEALTHY, timeout_seconds=5)

        assert callbacks.rewinds == []
        wait_for_condition(lambda: callbacks.acks == [("upsert", 1, pos(1))], timeout_seconds=5)

    def test_schema_error_is_fatal(self, worker_factory):
        from cdc_engine.common.errors import SchemaError
        from cdc_engine.sinks.worker import SinkState

        worker, _, callbacks = worker_factory()

        worker.offer(make_event(1, row={"name": "no key"}))
        worker.request_stop(drain=True)
        worker.join(timeout=5)

        assert worker.state is SinkState.FAILED
        assert len(callbacks.fatal) == 1
        assert isinstance(callbacks.fatal[0][1], SchemaError)

    def test_drain_stop_applies_queued_events(self, worker_factory):
        """Test a draining stop applies and flushes everything queued before it."""
        from cdc_engine.sinks.worker import SinkState

        worker, target, _ = worker_factory()
        for offset in range(1, 6):
            worker.offer(make_event(offset))

        worker.request_stop(drain=True)

        assert worker.join(timeout=5)
        assert worker.state is SinkState.STOPPED
        assert worker.durable_position == pos(5)
        assert len(target.rows("shop.customers")) == 5

    def test_offer_cancelled_while_queue_full(self, fast_settings):
        """Test a blocked offer returns False once the cancel event is set."""
        from cdc_engine.sinks.memory_targets import InMemoryUpsertTarget
        from cdc_engine.sinks.upsert_table import UpsertTableSink
        from cdc_engine.sinks.worker import SinkWorker

        settings = fast_settings.model_copy(update={"queue_size": 1})
        callbacks = _Callbacks()
        worker = SinkWorker(
            UpsertTableSink("upsert", InMemoryUpsertTarget(), KEYS),
            "test-pipeline",
            settings,
            on_ack=callbacks.on_ack,
            on_fatal=callbacks.on_fatal,
            on_rewind=callbacks.on_rewind,
        )
        cancel = threading.Event()
        cancel.set()

        assert worker.offer(make_event(1), cancel=cancel)
        assert worker.offer(make_event(2), cancel=cancel) is False

    def test_status_to_dict(self, worker_factory):
        worker, _, _ = worker_factory(durable_position=pos(4))

        status = worker.status(head=pos(10)).to_dict()

        assert status["sink_id"] == "upsert"
        assert status["kind"] == "upsert"
        assert status["state"] == "HEALTHY"
        assert status["durable_position"] == {"segment": 0, "offset": 4, "index": 0}
        assert status["lag"] == 6
