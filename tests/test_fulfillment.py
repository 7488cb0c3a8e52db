"""
Tests for POS submission and the activity store.
"""

import asyncio
import json

import httpx
import pytest

from src.concierge.errors import FulfillmentError
from src.concierge.fulfillment import LocalPOS, WebhookPOS, pos_for, submit_to_pos
from src.concierge.history import ActivityStore
from src.concierge.models import (
    OrderItem,
    OrderLifecycle,
    OrderRecord,
    RecordStatus,
    ReservationRecord,
)


def _order() -> OrderRecord:
    return OrderRecord(
        customer_name="Dana",
        customer_phone="555-0100",
        items=[OrderItem(name="Pad Thai", quantity=2)],
        requested_time="18:30",
        call_sid="CA1",
    )


class HangingPOS:
    async def submit(self, record):
        await asyncio.Event().wait()


class FailingPOS:
    async def submit(self, record):
        raise httpx.ConnectError("connection refused")


class TestSubmitToPOS:
    @pytest.mark.asyncio
    async def test_local_pos_accepts(self):
        pos = LocalPOS()
        record = _order()

        await submit_to_pos(record, pos)

        assert pos.submitted == [record]

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(FulfillmentError) as exc_info:
            await submit_to_pos(_order(), HangingPOS(), timeout=0.05)

        assert exc_info.value.code == FulfillmentError.POS_TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error(self):
        with pytest.raises(FulfillmentError) as exc_info:
            await submit_to_pos(_order(), FailingPOS())

        assert exc_info.value.code == FulfillmentError.POS_CONNECTION_ERROR


class TestWebhookPOS:
    @pytest.mark.asyncio
    async def test_posts_record_with_call_sid(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            pos = WebhookPOS("https://pos.example/hook", call_sid="CA42", client=client)
            await submit_to_pos(_order(), pos)

        assert len(received) == 1
        body = received[0]
        assert body["callSid"] == "CA42"
        assert body["customer_name"] == "Dana"
        assert body["intent"] == "pickup"
        assert body["items"] == [{"name": "Pad Thai", "quantity": 2, "spice_level": None, "notes": None}]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))

        async with httpx.AsyncClient(transport=transport) as client:
            pos = WebhookPOS("https://pos.example/hook", client=client)
            with pytest.raises(FulfillmentError) as exc_info:
                await submit_to_pos(_order(), pos)

        assert exc_info.value.code == FulfillmentError.POS_CONNECTION_ERROR

    def test_payload_falls_back_to_record_call_sid(self):
        assert WebhookPOS("https://pos.example/hook").payload(_order())["callSid"] == "CA1"

    def test_pos_for(self):
        assert isinstance(pos_for(""), LocalPOS)
        assert isinstance(pos_for("https://pos.example/hook", "CA1"), WebhookPOS)


class TestActivityStore:
    def test_add_and_update(self):
        store = ActivityStore()
        record = store.add(_order())

        store.update(record.id, lifecycle=OrderLifecycle.DONE, status=RecordStatus.COMPLETED)

        assert store.get(record.id).lifecycle == OrderLifecycle.DONE
        assert store.completed() == [record]
        assert len(store) == 1

    def test_update_unknown(self):
        assert ActivityStore().update("missing", status=RecordStatus.COMPLETED) is None

    def test_list_keeps_insertion_order(self):
        store = ActivityStore()
        first = store.add(_order())
        second = store.add(ReservationRecord(
            date="2024-05-01", time="19:00", party_size=2,
            customer_name="Lee", customer_phone="1",
        ))

        assert store.list() == [first, second]
        assert second.to_dict()["intent"] == "reservation"
