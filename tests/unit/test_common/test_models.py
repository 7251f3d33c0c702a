"""Unit tests for positions, table ids and change events."""

import pytest

from tests.test_utils import make_event, pos


@pytest.mark.unit
class TestSourcePosition:
    """Test ordering and serialisation of positions."""

    def test_total_order_over_segment_offset_index(self):
        from cdc_engine.common.models import SourcePosition

        ordered = [SourcePosition(1, 900, 0), SourcePosition(1, 900, 1), SourcePosition(1, 901, 0), SourcePosition(2, 4, 0)]

        assert sorted(reversed(ordered)) == ordered

    def test_token_is_ignored_in_comparisons(self):
        from cdc_engine.common.models import SourcePosition

        assert SourcePosition(3, 10, 0, "mysql-bin.000003:4") == SourcePosition(3, 10, 0)
        assert hash(SourcePosition(3, 10, 0, "a")) == hash(SourcePosition(3, 10, 0, "b"))

    def test_sort_key_orders_like_positions(self):
        from cdc_engine.common.models import SourcePosition

        low, high = SourcePosition(1, 99999, 5), SourcePosition(2, 4, 0)

        assert low.sort_key() < high.sort_key()

    def test_dict_round_trip(self):
        from cdc_engine.common.models import SourcePosition

        position = SourcePosition(3, 10, 2, "mysql-bin.000003:4")

        assert SourcePosition.from_dict(position.to_dict()).token == "mysql-bin.000003:4"
        assert pos(5).to_dict() == {"segment": 0, "offset": 5, "index": 0}

    def test_position_lag(self):
        from cdc_engine.common.models import SourcePosition, position_lag

        assert position_lag(pos(10), pos(4)) == 6
        assert position_lag(pos(10), None) == 10
        assert position_lag(None, pos(4)) is None
        assert position_lag(SourcePosition(2, 10), SourcePosition(1, 4)) is None


@pytest.mark.unit
class TestTableId:
    def test_parse(self):
        from cdc_engine.common.models import TableId

        table = TableId.parse("shop.customers")

        assert (table.schema, table.name) == ("shop", "customers")
        assert str(table) == "shop.customers"

    @pytest.mark.parametrize("value", ["customers", ".customers", "shop."])
    def test_parse_rejects_malformed(self, value):
        from cdc_engine.common.models import TableId

        with pytest.raises(ValueError):
            TableId.parse(value)


@pytest.mark.unit
class TestChangeEvent:
    """Test image rules and key extraction."""

    def test_image_rules_per_operation(self):
        from cdc_engine.common.errors import SchemaError
        from cdc_engine.common.models import ChangeEvent, Operation, TableId

        table = TableId("shop", "customers")

        with pytest.raises(SchemaError):
            ChangeEvent(pos(1), table, Operation.INSERT)
        with pytest.raises(SchemaError):
            ChangeEvent(pos(1), table, Operation.UPDATE, after_image={"id": 1})
        with pytest.raises(SchemaError):
            ChangeEvent(pos(1), table, Operation.DELETE, before_image={"id": 1}, after_image={"id": 1})

    def test_images_are_read_only(self):
        event = make_event(1, row={"id": 1})

        with pytest.raises(TypeError):
            event.after_image["id"] = 2  # type: ignore[index]

    def test_primary_key_uses_before_image_for_delete(self):
        event = make_event(1, "DELETE", row={"id": 7, "name": "x"})

        assert event.primary_key(["id"]) == (7,)

    def test_missing_key_column(self):
        from cdc_engine.common.errors import SchemaError

        with pytest.raises(SchemaError):
            make_event(1, row={"name": "x"}).primary_key(["id"])

    def test_changed_fields(self):
        event = make_event(2, "UPDATE", row={"id": 1, "name": "b", "tier": 1}, before={"id": 1, "name": "a", "tier": 1})

        assert event.changed_fields() == ["name"]
        assert make_event(1).changed_fields() == []
