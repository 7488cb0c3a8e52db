"""
Tests for tool declarations and tool-call parsing.
"""

import pytest

from src.concierge.errors import ToolError
from src.concierge.models import OrderItem, ServiceType
from src.concierge.tools import (
    FINALIZE_ORDER,
    FINALIZE_RESERVATION,
    FinalizeOrderCall,
    FinalizeReservationCall,
    UnsupportedToolCall,
    normalize_tool_name,
    parse_items,
    parse_tool_call,
    tool_declarations,
)


ORDER_ARGS = {
    "service_type": "delivery",
    "name": " Dana ",
    "phone": 5550100,
    "address": "12 Main St",
    "items_json": '[{"name": "Pad Thai", "quantity": 2, "spice_level": "medium"}, "Spring Rolls"]',
    "requested_time": "18:30",
}

RESERVATION_ARGS = {
    "date": "2024-05-01",
    "time": "19:00",
    "party_size": "4",
    "name": "Lee",
    "phone": "555-0199",
}


class TestDeclarations:
    def test_two_finalize_tools(self):
        tools = tool_declarations()

        names = [d.name for d in tools[0].function_declarations]
        assert names == [FINALIZE_ORDER, FINALIZE_RESERVATION]

    def test_required_arguments(self):
        order, reservation = tool_declarations()[0].function_declarations

        assert "items_json" in order.parameters.required
        assert "party_size" in reservation.parameters.required


class TestNormalizeToolName:
    @pytest.mark.parametrize("name", ["finalize_order", "finalizeOrder", "FINALIZE-ORDER", "Finalize Order"])
    def test_variants(self, name):
        assert normalize_tool_name(name) == "finalizeorder"

    def test_none(self):
        assert normalize_tool_name(None) == ""


class TestParseToolCall:
    def test_finalize_order(self):
        call = parse_tool_call("c1", "finalizeOrder", ORDER_ARGS)

        assert isinstance(call, FinalizeOrderCall)
        record = call.to_record(restaurant_id="res_01", call_sid="CA1")
        assert record.customer_name == "Dana"
        assert record.customer_phone == "5550100"
        assert record.service_type == ServiceType.DELIVERY
        assert record.customer_address == "12 Main St"
        assert record.items == [
            OrderItem(name="Pad Thai", quantity=2, spice_level="medium"),
            OrderItem(name="Spring Rolls"),
        ]
        assert record.call_sid == "CA1"
        assert record.intent == "delivery"

    def test_order_defaults(self):
        call = parse_tool_call("c1", FINALIZE_ORDER, {"name": "Dana", "phone": "1"})
        record = call.to_record(restaurant_id="res_01")

        assert record.service_type == ServiceType.PICKUP
        assert record.requested_time == "ASAP"
        assert record.items == [OrderItem(name="Items", quantity=1, notes="[]")]

    def test_finalize_reservation(self):
        call = parse_tool_call("c2", "Finalize_Reservation", RESERVATION_ARGS)

        assert isinstance(call, FinalizeReservationCall)
        record = call.to_record(restaurant_id="res_01")
        assert record.party_size == 4
        assert record.intent == "reservation"
        assert record.special_requests is None

    def test_unknown_tool(self):
        call = parse_tool_call("c3", "cancel_order", {"id": 1})

        assert isinstance(call, UnsupportedToolCall)
        assert call.name == "cancel_order"
        assert call.args == {"id": 1}

    def test_missing_arguments(self):
        with pytest.raises(ToolError) as exc_info:
            parse_tool_call("c4", FINALIZE_ORDER, {"name": "Dana"})

        assert exc_info.value.code == ToolError.MALFORMED_ARGUMENTS

    def test_invalid_party_size(self):
        with pytest.raises(ToolError):
            parse_tool_call("c5", FINALIZE_RESERVATION, {**RESERVATION_ARGS, "party_size": 0})


class TestParseItems:
    def test_malformed_json_becomes_synthetic_item(self):
        items = parse_items("two pad thai, one soup")

        assert items == [OrderItem(name="Items", quantity=1, notes="two pad thai, one soup")]

    def test_non_list_becomes_synthetic_item(self):
        items = parse_items('{"name": "Soup"}')

        assert len(items) == 1
        assert items[0].name == "Items"

    def test_already_decoded_list(self):
        items = parse_items([{"name": "Soup", "quantity": "3"}, {"quantity": 1}, ""])

        assert items == [OrderItem(name="Soup", quantity=3)]

    @pytest.mark.parametrize("raw", ['[{"qty": 2}]', "[1, 2]", "[]"])
    def test_array_without_usable_entries_becomes_synthetic_item(self, raw):
        assert parse_items(raw) == [OrderItem(name="Items", quantity=1, notes=raw)]

    def test_decoded_list_without_usable_entries(self):
        items = parse_items([{"quantity": 1}, ""])

        assert items == [OrderItem(name="Items", quantity=1, notes='[{"quantity": 1}, ""]')]

    def test_bad_quantity_defaults_to_one(self):
        assert parse_items('[{"name": "Soup", "quantity": "lots"}]')[0].quantity == 1
