"""
Tool declarations offered to the AI session and parsing of its tool calls.

The session may only finalize through two tools. Incoming calls are parsed
once, at the session boundary, into a closed set of variants so the
coordinator dispatches on type rather than on raw names:

- FinalizeOrderCall: pickup/delivery order
- FinalizeReservationCall: table reservation
- UnsupportedToolCall: anything else (answered with `unsupported_tool`)

Tool names are matched case- and separator-insensitively, so
`finalize_order`, `finalizeOrder` and `FINALIZE-ORDER` are the same tool.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import pydantic
import structlog
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field

from src.concierge.errors import ToolError
from src.concierge.models import (
    OrderItem,
    OrderRecord,
    ReservationRecord,
    ServiceType,
)

logger = structlog.get_logger(__name__)

FINALIZE_ORDER = "finalize_order"
FINALIZE_RESERVATION = "finalize_reservation"


def tool_declarations() -> list[types.Tool]:
    """Function declarations for the two finalize tools."""
    finalize_order = types.FunctionDeclaration(
        name=FINALIZE_ORDER,
        description="Finalize a pickup or delivery order after the caller confirmed the full summary.",
        parameters=types.Schema(
            type=types.Type.OBJECT,
            properties={
                "service_type": types.Schema(
                    type=types.Type.STRING,
                    enum=["pickup", "delivery"],
                    description="pickup or delivery",
                ),
                "name": types.Schema(type=types.Type.STRING, description="Customer name"),
                "phone": types.Schema(type=types.Type.STRING, description="Callback phone number"),
                "address": types.Schema(type=types.Type.STRING, description="Delivery address"),
                "items_json": types.Schema(
                    type=types.Type.STRING,
                    description='JSON array of {"name", "quantity", "spice_level", "notes"}',
                ),
                "requested_time": types.Schema(
                    type=types.Type.STRING,
                    description="HH:MM in 24h local time, or ASAP",
                ),
            },
            required=["service_type", "name", "phone", "items_json", "requested_time"],
        ),
    )
    finalize_reservation = types.FunctionDeclaration(
        name=FINALIZE_RESERVATION,
        description="Finalize a table reservation after the caller confirmed the details.",
        parameters=types.Schema(
            type=types.Type.OBJECT,
            properties={
                "date": types.Schema(type=types.Type.STRING, description="Reservation date"),
                "time": types.Schema(type=types.Type.STRING, description="Reservation time"),
                "party_size": types.Schema(type=types.Type.NUMBER, description="Number of guests"),
                "name": types.Schema(type=types.Type.STRING, description="Customer name"),
                "phone": types.Schema(type=types.Type.STRING, description="Callback phone number"),
                "special_requests": types.Schema(type=types.Type.STRING, description="Optional notes"),
            },
            required=["date", "time", "party_size", "name", "phone"],
        ),
    )
    return [types.Tool(function_declarations=[finalize_order, finalize_reservation])]


def normalize_tool_name(name: str) -> str:
    return "".join(ch for ch in (name or "").lower() if ch not in "_- ")


class FinalizeOrderArgs(BaseModel):
    """Arguments of finalize_order as sent by the model."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    service_type: str = Field(default="pickup", description="pickup or delivery")
    name: str = Field(description="Customer name")
    phone: str = Field(description="Callback phone number")
    address: Optional[str] = Field(default=None, description="Delivery address")
    items_json: Any = Field(default="[]", description="JSON array of line items")
    requested_time: str = Field(default="ASAP", description="HH:MM or ASAP")


class FinalizeReservationArgs(BaseModel):
    """Arguments of finalize_reservation as sent by the model."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    date: str
    time: str
    party_size: int = Field(ge=1)
    name: str
    phone: str
    special_requests: Optional[str] = None


def parse_items(raw: Any) -> list[OrderItem]:
    """
    Parse the model's line items.

    Anything that is not a JSON array with at least one usable item degrades
    to a single synthetic item carrying the raw text so the order is never lost.
    """
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Malformed items_json, using synthetic item", raw=raw[:200])
            return [_synthetic_item(raw)]

    if not isinstance(data, list):
        logger.warning("items_json is not a list, using synthetic item")
        return [_synthetic_item(raw if isinstance(raw, str) else json.dumps(raw))]

    items = []
    for entry in data:
        if isinstance(entry, str) and entry.strip():
            items.append(OrderItem(name=entry.strip()))
        elif isinstance(entry, dict) and entry.get("name"):
            items.append(
                OrderItem(
                    name=str(entry["name"]).strip(),
                    quantity=_quantity(entry.get("quantity")),
                    spice_level=_opt_str(entry.get("spice_level")),
                    notes=_opt_str(entry.get("notes")),
                )
            )
    if not items:
        logger.warning("No usable entries in items_json, using synthetic item")
        return [_synthetic_item(raw if isinstance(raw, str) else json.dumps(raw))]
    return items


def _synthetic_item(raw: str) -> OrderItem:
    return OrderItem(name="Items", quantity=1, notes=raw)


def _quantity(value: Any) -> int:
    try:
        return max(1, int(float(value)))
    except (TypeError, ValueError):
        return 1


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class FinalizeOrderCall:
    call_id: str
    args: FinalizeOrderArgs
    name: str = FINALIZE_ORDER

    def to_record(self, *, restaurant_id: str, call_sid: str = "") -> OrderRecord:
        service_type = (
            ServiceType.DELIVERY
            if self.args.service_type.strip().lower() == ServiceType.DELIVERY.value
            else ServiceType.PICKUP
        )
        return OrderRecord(
            customer_name=self.args.name.strip(),
            customer_phone=self.args.phone.strip(),
            items=parse_items(self.args.items_json),
            requested_time=self.args.requested_time.strip() or "ASAP",
            service_type=service_type,
            customer_address=_opt_str(self.args.address),
            restaurant_id=restaurant_id,
            call_sid=call_sid,
        )


@dataclass(frozen=True)
class FinalizeReservationCall:
    call_id: str
    args: FinalizeReservationArgs
    name: str = FINALIZE_RESERVATION

    def to_record(self, *, restaurant_id: str, call_sid: str = "") -> ReservationRecord:
        return ReservationRecord(
            date=self.args.date.strip(),
            time=self.args.time.strip(),
            party_size=self.args.party_size,
            customer_name=self.args.name.strip(),
            customer_phone=self.args.phone.strip(),
            special_requests=_opt_str(self.args.special_requests),
            restaurant_id=restaurant_id,
            call_sid=call_sid,
        )


@dataclass(frozen=True)
class UnsupportedToolCall:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


ToolCall = Union[FinalizeOrderCall, FinalizeReservationCall, UnsupportedToolCall]


def parse_tool_call(call_id: str, name: str, args: Optional[dict[str, Any]]) -> ToolCall:
    """
    Map a raw tool call onto its variant.

    Raises ToolError(MALFORMED_ARGUMENTS) when a known tool's arguments do not
    validate; unknown names never raise.
    """
    args = dict(args or {})
    normalized = normalize_tool_name(name)
    try:
        if normalized == normalize_tool_name(FINALIZE_ORDER):
            return FinalizeOrderCall(call_id=call_id, args=FinalizeOrderArgs.model_validate(args))
        if normalized == normalize_tool_name(FINALIZE_RESERVATION):
            return FinalizeReservationCall(call_id=call_id, args=FinalizeReservationArgs.model_validate(args))
    except pydantic.ValidationError as e:
        raise ToolError(
            ToolError.MALFORMED_ARGUMENTS,
            f"{name}: {e.error_count()} invalid argument(s)",
        ) from e
    return UnsupportedToolCall(call_id=call_id, name=name or "", args=args)
