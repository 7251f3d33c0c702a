"""Unit tests for barrier checkpointing."""

import pytest

from tests.test_utils import pos


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _checkpointer(sinks=("a", "b"), clock=None, **kwargs):
    from cdc_engine.checkpoint.checkpointer import Checkpointer

    confirmed = []
    checkpointer = Checkpointer(
        sinks,
        interval=kwargs.pop("interval", 5.0),
        every_events=kwargs.pop("every_events", 3),
        stall_timeout=kwargs.pop("stall_timeout", 10.0),
        on_confirmed=lambda checkpoint, position: confirmed.append((checkpoint.checkpoint_id, position)),
        clock=clock or _Clock(),
        **kwargs,
    )
    return checkpointer, confirmed


@pytest.mark.unit
class TestCheckpointer:
    """Test barrier confirmation, per-sink positions and stall detection."""

    def test_confirmed_only_after_every_sink_acks(self):
        from cdc_engine.checkpoint.checkpointer import CheckpointerState

        checkpointer, confirmed = _checkpointer()
        checkpointer.observe(pos(5))
        checkpoint = checkpointer.issue()

        assert checkpoint.barrier_position == pos(5)
        assert checkpointer.ack("a", checkpoint.checkpoint_id, pos(5)) is None
        assert checkpointer.state is CheckpointerState.BARRIER_ISSUED

        assert checkpointer.ack("b", checkpoint.checkpoint_id, pos(5)) is checkpoint
        assert confirmed == [(1, pos(5))]
        assert checkpointer.state is CheckpointerState.IDLE

    def test_global_position_is_minimum_over_sinks(self):
        """Test the confirmed position never exceeds the slowest sink."""
        checkpointer, _ = _checkpointer()
        checkpoint = checkpointer.issue(pos(20))

        checkpointer.ack("a", checkpoint.checkpoint_id, pos(20))
        assert checkpointer.confirmed_position() is None

        checkpointer.ack("b", checkpoint.checkpoint_id, pos(15))

        assert checkpointer.confirmed_position() == pos(15)

    def test_sink_position_never_moves_backwards(self):
        checkpointer, _ = _checkpointer(sinks=("a",))
        checkpointer.ack("a", 99, pos(10))

        checkpointer.ack("a", 100, pos(4))

        assert checkpointer.sink_positions() == {"a": pos(10)}

    def test_ack_for_superseded_checkpoint_only_raises_position(self):
        """Test a late ack for an older barrier does not confirm the newer one."""
        checkpointer, confirmed = _checkpointer(sinks=("a",))
        first = checkpointer.issue(pos(5))
        second = checkpointer.issue(pos(8))

        assert checkpointer.ack("a", first.checkpoint_id, pos(5)) is None
        assert checkpointer.sink_positions() == {"a": pos(5)}
        assert checkpointer.ack("a", second.checkpoint_id, pos(8)) is second
        assert confirmed == [(2, pos(8))]

    def test_unknown_sink_ack_is_ignored(self):
        checkpointer, _ = _checkpointer(sinks=("a",))
        checkpoint = checkpointer.issue(pos(1))

        assert checkpointer.ack("zzz", checkpoint.checkpoint_id, pos(1)) is None
        assert checkpointer.sink_positions() == {}

    def test_due_by_event_count_and_interval(self):
        clock = _Clock()
        checkpointer, _ = _checkpointer(clock=clock, every_events=3, interval=5.0)

        assert checkpointer.due() is False
        checkpointer.observe(pos(1))
        assert checkpointer.due() is False
        checkpointer.observe(pos(2))
        checkpointer.observe(pos(3))
        assert checkpointer.due() is True

        checkpointer.issue()
        checkpointer.observe(pos(4))
        assert checkpointer.due() is False
        clock.now += 5.0
        assert checkpointer.due() is True

    def test_unconfirmed_barrier_is_due_again_without_new_events(self):
        clock = _Clock()
        checkpointer, confirmed = _checkpointer(clock=clock, interval=5.0)
        checkpointer.observe(pos(1))
        first = checkpointer.issue()

        assert checkpointer.due() is False
        clock.now += 5.0
        assert checkpointer.due() is True

        second = checkpointer.issue()
        checkpointer.ack("a", first.checkpoint_id, pos(1))
        checkpointer.ack("a", second.checkpoint_id, pos(1))
        checkpointer.ack("b", second.checkpoint_id, pos(1))

        assert second.barrier_position == pos(1)
        assert confirmed == [(second.checkpoint_id, pos(1))]
        clock.now += 5.0
        assert checkpointer.due() is False

    def test_stall_timer_starts_at_first_unconfirmed_barrier(self):
        """Test superseding barriers does not reset the stall timer."""
        clock = _Clock()
        checkpointer, _ = _checkpointer(clock=clock, stall_timeout=10.0)

        checkpointer.issue(pos(1))
        clock.now += 6
        checkpointer.issue(pos(2))
        clock.now += 6

        assert checkpointer.check_stalled() is True
        status = checkpointer.status()
        assert status.stalled is True
        assert status.missing_acks == ["a", "b"]

    def test_confirmation_clears_stall(self):
        clock = _Clock()
        checkpointer, _ = _checkpointer(sinks=("a",), clock=clock, stall_timeout=1.0)
        checkpoint = checkpointer.issue(pos(1))
        clock.now += 2
        assert checkpointer.stalled() is True

        checkpointer.ack("a", checkpoint.checkpoint_id, pos(1))

        assert checkpointer.stalled() is False

    def test_recovered_positions_are_filtered_to_bound_sinks(self):
        checkpointer, _ = _checkpointer(sinks=("a",), sink_positions={"a": pos(3), "gone": pos(1)})

        assert checkpointer.sink_positions() == {"a": pos(3)}
        assert checkpointer.confirmed_position() == pos(3)

    def test_checkpoint_to_dict(self):
        checkpointer, _ = _checkpointer(sinks=("a",))
        checkpoint = checkpointer.issue(pos(2))

        data = checkpoint.to_dict()

        assert data["checkpoint_id"] == 1
        assert data["status"] == "PENDING"
        assert data["barrier_position"] == {"segment": 0, "offset": 2, "index": 0}
