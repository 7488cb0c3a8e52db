"""
Fulfillment: hand a validated record to the point-of-sale system.

Exactly one attempt is made per record, bounded by a timeout. A timeout is
reported as POS_TIMEOUT; any transport or HTTP failure as
POS_CONNECTION_ERROR. There are no retries: a failed submission ends the call
with a handover to a human.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Protocol

import httpx
import structlog

from src.concierge.errors import FulfillmentError
from src.concierge.models import ActivityRecord

logger = structlog.get_logger(__name__)

DEFAULT_FULFILLMENT_TIMEOUT_S = 45.0


class POS(Protocol):
    async def submit(self, record: ActivityRecord) -> None:
        """Deliver the record; raise on rejection."""
        ...


class WebhookPOS:
    """Posts the record as JSON (plus the Twilio callSid) to a workflow webhook."""

    def __init__(self, url: str, *, call_sid: str = "", client: httpx.AsyncClient | None = None):
        self.url = url
        self.call_sid = call_sid
        self._client = client

    def payload(self, record: ActivityRecord) -> dict[str, Any]:
        data = record.to_dict()
        data["callSid"] = self.call_sid or record.call_sid
        return data

    async def submit(self, record: ActivityRecord) -> None:
        payload = self.payload(record)
        if self._client is not None:
            resp = await self._client.post(self.url, json=payload)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(self.url, json=payload)
        resp.raise_for_status()


class LocalPOS:
    """Accepts every record; used when no webhook is configured."""

    def __init__(self) -> None:
        self.submitted: list[ActivityRecord] = []

    async def submit(self, record: ActivityRecord) -> None:
        self.submitted.append(record)
        logger.info("Record accepted by local POS", record_id=record.id, intent=record.intent)


def pos_for(url: str, call_sid: str = "") -> POS:
    return WebhookPOS(url, call_sid=call_sid) if url else LocalPOS()


async def submit_to_pos(
    record: ActivityRecord,
    pos: POS,
    timeout: float = DEFAULT_FULFILLMENT_TIMEOUT_S,
) -> None:
    started = time.time()
    logger.info("Submitting to POS", record_id=record.id, intent=record.intent, timeout_s=timeout)

    try:
        await asyncio.wait_for(pos.submit(record), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.error("POS did not respond in time", record_id=record.id, timeout_s=timeout)
        raise FulfillmentError(FulfillmentError.POS_TIMEOUT) from e
    except (httpx.HTTPError, OSError) as e:
        logger.error("POS rejected or unreachable", record_id=record.id, error=str(e))
        raise FulfillmentError(FulfillmentError.POS_CONNECTION_ERROR, str(e)) from e

    logger.info(
        "POS accepted",
        record_id=record.id,
        elapsed_ms=round((time.time() - started) * 1000, 2),
    )
