"""Unit tests for the Debezium envelope decoder."""

import pytest


def _record(payload, offset=10):
    from cdc_engine.common.models import RawChangeRecord, SourcePosition

    return RawChangeRecord(position=SourcePosition.from_offset(offset), payload=payload)


@pytest.mark.unit
class TestEventDecoder:
    """Test envelope -> ChangeEvent decoding."""

    def test_decode_insert_event(self):
        """Test decoding a create envelope."""
        from cdc_engine.common.models import Operation, TableId
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {
            "op": "c",
            "before": None,
            "after": {"id": 1, "email": "a@example.com"},
            "source": {"db": "shop", "table": "customers", "ts_ms": 1609459200000},
        }

        event = EventDecoder().decode(_record(envelope))

        assert event.operation is Operation.INSERT
        assert event.table_id == TableId("shop", "customers")
        assert event.after_image["email"] == "a@example.com"
        assert event.before_image is None
        assert event.commit_timestamp.year == 2021
        assert event.source_position.offset == 10

    def test_decode_update_event(self):
        """Test decoding an update envelope keeps both images."""
        from cdc_engine.common.models import Operation
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {
            "op": "u",
            "before": {"id": 1, "email": "old@example.com"},
            "after": {"id": 1, "email": "new@example.com"},
            "source": {"db": "shop", "table": "customers"},
        }

        event = EventDecoder().decode(_record(envelope))

        assert event.operation is Operation.UPDATE
        assert event.before_image["email"] == "old@example.com"
        assert event.changed_fields() == ["email"]

    def test_decode_delete_event(self):
        """Test decoding a delete envelope."""
        from cdc_engine.common.models import Operation
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {"op": "d", "before": {"id": 1}, "after": None, "source": {"db": "shop", "table": "customers"}}

        event = EventDecoder().decode(_record(envelope))

        assert event.operation is Operation.DELETE
        assert event.row_image == {"id": 1}

    def test_snapshot_read_is_insert(self):
        """Test snapshot reads ('r') decode as inserts."""
        from cdc_engine.common.models import Operation
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {"op": "r", "after": {"id": 7}, "source": {"db": "shop", "table": "customers"}}

        assert EventDecoder().decode(_record(envelope)).operation is Operation.INSERT

    def test_schema_wrapped_envelope(self):
        """Test JSON converter output with schemas enabled."""
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {
            "schema": {"type": "struct"},
            "payload": {"op": "c", "after": {"id": 2}, "source": {"db": "shop", "table": "orders"}},
        }

        event = EventDecoder().decode(_record(envelope))

        assert str(event.table_id) == "shop.orders"

    def test_postgres_schema_preferred_over_db(self):
        """Test the source schema names the table when present."""
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {"op": "c", "after": {"id": 1}, "source": {"db": "cdcdb", "schema": "public", "table": "t"}}

        assert str(EventDecoder().decode(_record(envelope)).table_id) == "public.t"

    def test_unknown_columns_are_kept(self):
        """Test columns the sinks do not know about pass through."""
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {"op": "c", "after": {"id": 1, "brand_new": [1, 2]}, "source": {"db": "s", "table": "t"}}

        assert EventDecoder().decode(_record(envelope)).after_image["brand_new"] == [1, 2]

    @pytest.mark.parametrize("payload", [None, {"payload": None}])
    def test_tombstones_decode_to_none(self, payload):
        """Test tombstones and empty payloads are control records."""
        from cdc_engine.decoder.event_decoder import EventDecoder

        assert EventDecoder().decode(_record(payload)) is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"after": {"id": 1}, "source": {"db": "s", "table": "t"}},
            {"op": "c", "after": {"id": 1}},
            {"op": "x", "after": {"id": 1}, "source": {"db": "s", "table": "t"}},
            {"op": "c", "after": None, "source": {"db": "s", "table": "t"}},
            {"op": "u", "before": None, "after": {"id": 1}, "source": {"db": "s", "table": "t"}},
            {"op": "c", "after": "not-an-object", "source": {"db": "s", "table": "t"}},
            {"op": "c", "after": {"id": 1}, "source": {"table": "t"}},
        ],
    )
    def test_malformed_envelopes_raise(self, payload):
        """Test malformed envelopes raise DecodeError with the position."""
        from cdc_engine.common.errors import DecodeError
        from cdc_engine.decoder.event_decoder import EventDecoder

        with pytest.raises(DecodeError) as exc_info:
            EventDecoder().decode(_record(payload, offset=42))
        assert exc_info.value.position.offset == 42

    def test_bad_timestamp_is_tolerated(self):
        """Test an unparseable timestamp leaves commit_timestamp unset."""
        from cdc_engine.decoder.event_decoder import EventDecoder

        envelope = {"op": "c", "after": {"id": 1}, "source": {"db": "s", "table": "t", "ts_ms": "yesterday"}}

        assert EventDecoder().decode(_record(envelope)).commit_timestamp is None

    def test_encode_records_origin_position(self):
        """Test encoded envelopes carry the original position and decode back to it."""
        from cdc_engine.common.models import SourcePosition
        from cdc_engine.decoder.event_decoder import EventDecoder

        decoder = EventDecoder()
        original = decoder.decode(
            _record({"op": "u", "before": {"id": 1, "v": 1}, "after": {"id": 1, "v": 2}, "source": {"db": "s", "table": "t", "ts_ms": 1000}}, offset=7)
        )

        envelope = decoder.encode(original)
        relayed = decoder.decode(_record(envelope, offset=0))

        assert envelope["origin_position"] == {"segment": 0, "offset": 7, "index": 0}
        assert relayed.origin_position == SourcePosition.from_offset(7)
        assert relayed.source_position == SourcePosition.from_offset(0)
        assert relayed.after_image == original.after_image
