"""Unit tests for the Kafka history target over the in-memory transport."""

import pytest


def _record(offset, table="shop.customers"):
    return {"table": table, "operation": "INSERT", "position": {"segment": 0, "offset": offset, "index": 0}}


@pytest.mark.unit
class TestKafkaAppendTarget:
    """Test topic naming and tail-based de-duplication."""

    def _target(self, transport=None):
        from cdc_engine.sinks.kafka_target import KafkaAppendTarget
        from cdc_engine.transport.memory import InMemoryTransport

        transport = transport or InMemoryTransport()
        return KafkaAppendTarget(transport, "cdc.history"), transport

    def test_records_are_published_per_table_keyed_by_table(self):
        target, transport = self._target()
        target.open()

        target.append([_record(1), _record(2, table="shop.orders")])

        assert transport.topics("cdc.history.") == ["cdc.history.shop.customers", "cdc.history.shop.orders"]
        record = transport.records("cdc.history.shop.customers")[0]
        assert record.key == "shop.customers"
        assert record.value["position"]["offset"] == 1

    def test_open_returns_last_position_across_topics(self):
        from cdc_engine.common.models import SourcePosition

        target, transport = self._target()
        target.open()
        target.append([_record(4), _record(9, table="shop.orders")])

        reopened, _ = self._target(transport)

        assert reopened.open() == SourcePosition(0, 9, 0)

    def test_records_at_or_below_tail_are_skipped(self):
        target, transport = self._target()
        target.open()
        target.append([_record(1), _record(2)])

        target.append([_record(2), _record(3)])

        offsets = [r.value["position"]["offset"] for r in transport.records("cdc.history.shop.customers")]
        assert offsets == [1, 2, 3]

    def test_tail_is_reread_after_failure(self):
        """Test records that reached the broker before a failure are not appended twice."""
        from cdc_engine.common.errors import TransientIOError

        target, transport = self._target()
        target.open()
        transport.inject_failures(1)

        with pytest.raises(TransientIOError):
            target.append([_record(1)])
        # The record made it to the broker even though the publish reported failure.
        transport.publish("cdc.history.shop.customers", [("shop.customers", _record(1))])

        target.append([_record(1), _record(2)])

        offsets = [r.value["position"]["offset"] for r in transport.records("cdc.history.shop.customers")]
        assert offsets == [1, 2]
