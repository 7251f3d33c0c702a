"""Unit tests for the transport-backed sink and source log."""

import pytest

from tests.test_utils import make_event, pos

TOPIC = "cdc.events"


def _publish_origins(transport, *offsets):
    from cdc_engine.decoder.event_decoder import EventDecoder

    decoder = EventDecoder()
    transport.publish(TOPIC, [("shop.customers", decoder.encode(make_event(o))) for o in offsets])


@pytest.mark.unit
class TestTransportSink:
    """Test publishing with origin positions."""

    def _sink(self, transport):
        from cdc_engine.transport.sink import TransportSink

        sink = TransportSink("transport", transport, TOPIC)
        sink.open()
        return sink

    def test_events_published_keyed_by_table_with_origin(self):
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        sink = self._sink(transport)

        assert sink.apply([make_event(10), make_event(11)]) == pos(11)
        assert sink.flush() == pos(11)

        records = transport.records(TOPIC)
        assert [r.key for r in records] == ["shop.customers", "shop.customers"]
        assert records[0].value["origin_position"] == {"segment": 0, "offset": 10, "index": 0}

    def test_reopen_skips_already_published(self):
        """Test a restarted publisher resumes after the topic's last origin position."""
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        self._sink(transport).apply([make_event(1), make_event(2)])

        reopened = self._sink(transport)
        assert reopened.flush() == pos(2)
        reopened.apply([make_event(2), make_event(3)])

        assert len(transport.records(TOPIC)) == 3

    def test_failed_publish_is_transient(self):
        from cdc_engine.common.errors import TransientIOError
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        sink = self._sink(transport)
        transport.inject_failures(1)

        with pytest.raises(TransientIOError):
            sink.apply([make_event(1)])
        assert sink.apply([make_event(1)]) == pos(1)


@pytest.mark.unit
class TestTransportLog:
    """Test the consumer side: offsets as positions and duplicate origins."""

    def _log(self, transport):
        from cdc_engine.transport.log import TransportLog

        return TransportLog(transport, TOPIC, "group")

    def test_positions_are_transport_offsets(self):
        from cdc_engine.common.models import StartPosition
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        _publish_origins(transport, 10, 11)

        stream = self._log(transport).open_stream(StartPosition.EARLIEST)
        first = stream.next(0.05)

        assert first.position == pos(0)
        assert first.payload["origin_position"]["offset"] == 10
        assert stream.next(0.05).position == pos(1)

    def test_republished_origins_are_dropped(self):
        """Test a duplicate left by a retried publish is not handed out twice."""
        from cdc_engine.common.models import StartPosition
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        _publish_origins(transport, 1, 2, 2, 3)

        stream = self._log(transport).open_stream(StartPosition.EARLIEST)
        origins = []
        while True:
            record = stream.next(0.05)
            if record is None:
                break
            origins.append(record.payload["origin_position"]["offset"])

        assert origins == [1, 2, 3]

    def test_head_and_earliest_positions(self):
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        log = self._log(transport)
        assert log.current_head_position() is None

        _publish_origins(transport, 1, 2, 3)
        transport.truncate_before(TOPIC, 1)

        assert log.current_head_position() == pos(2)
        assert log.earliest_retained_position() == pos(1)

    def test_latest_starts_at_end(self):
        from cdc_engine.common.models import StartPosition
        from cdc_engine.transport.memory import InMemoryTransport

        transport = InMemoryTransport()
        _publish_origins(transport, 1)
        stream = self._log(transport).open_stream(StartPosition.LATEST)
        _publish_origins(transport, 2)

        assert stream.next(0.05).payload["origin_position"]["offset"] == 2
