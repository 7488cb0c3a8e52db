"""
Call data model: lifecycle states, finalized business records and transcripts.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional, Union


class OrderLifecycle(str, Enum):
    """Authoritative per-call lifecycle state."""
    IDLE = "IDLE"
    COLLECTING = "COLLECTING"
    READY = "READY"
    FINALIZING = "FINALIZING"
    FULFILLING = "FULFILLING"
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({OrderLifecycle.DONE, OrderLifecycle.FAILED})


class AIStatus(str, Enum):
    """What the assistant is observably doing."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class ServiceType(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class RecordStatus(str, Enum):
    COLLECTING = "collecting"
    FINALIZED = "finalized"
    ABANDONED = "abandoned"
    COMPLETED = "completed"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


@dataclass(frozen=True)
class BusinessHours:
    """Ordering window, `HH:MM` strings in the business's local timezone."""
    restaurant_id: str = "res_01"
    timezone: str = "America/New_York"
    order_start_time: str = "11:00"
    order_end_time: str = "22:15"


@dataclass(frozen=True)
class OrderItem:
    name: str
    quantity: int = 1
    spice_level: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class OrderRecord:
    """A finalized pickup/delivery order."""
    customer_name: str
    customer_phone: str
    items: list[OrderItem]
    requested_time: str
    service_type: ServiceType = ServiceType.PICKUP
    customer_address: Optional[str] = None
    special_instructions: Optional[str] = None
    allergies: Optional[str] = None
    status: RecordStatus = RecordStatus.FINALIZED
    lifecycle: OrderLifecycle = OrderLifecycle.FINALIZING
    restaurant_id: str = "res_01"
    call_sid: str = ""
    id: str = field(default_factory=lambda: new_id("act"))
    timestamp: float = field(default_factory=time.time)

    @property
    def intent(self) -> str:
        return self.service_type.value

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent
        data["service_type"] = self.service_type.value
        data["status"] = self.status.value
        data["lifecycle"] = self.lifecycle.value
        return data


@dataclass
class ReservationRecord:
    """A finalized table reservation."""
    date: str
    time: str
    party_size: int
    customer_name: str
    customer_phone: str
    special_requests: Optional[str] = None
    status: RecordStatus = RecordStatus.FINALIZED
    lifecycle: OrderLifecycle = OrderLifecycle.FINALIZING
    restaurant_id: str = "res_01"
    call_sid: str = ""
    id: str = field(default_factory=lambda: new_id("res"))
    timestamp: float = field(default_factory=time.time)

    @property
    def intent(self) -> str:
        return "reservation"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent
        data["status"] = self.status.value
        data["lifecycle"] = self.lifecycle.value
        return data


ActivityRecord = Union[OrderRecord, ReservationRecord]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    next_available: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.next_available is not None:
            data["next_available"] = self.next_available
        return data


@dataclass(frozen=True)
class TranscriptEntry:
    role: str  # "user" | "model"
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class TranscriptTurn:
    """
    Input/output transcription accumulated for the current conversational turn.

    Append-only within a turn; `complete()` commits the turn as a user/model
    entry pair (audio-only sides become "(audio)") and clears it.
    """
    input_text: str = ""
    output_text: str = ""

    def append_input(self, text: str) -> str:
        self.input_text += text
        return self.input_text

    def append_output(self, text: str) -> str:
        self.output_text += text
        return self.output_text

    @property
    def is_empty(self) -> bool:
        return not self.input_text and not self.output_text

    def complete(self) -> list[TranscriptEntry]:
        now = time.time()
        entries = [
            TranscriptEntry(role="user", text=self.input_text or "(audio)", timestamp=now),
            TranscriptEntry(role="model", text=self.output_text or "(audio)", timestamp=now + 0.001),
        ]
        self.reset()
        return entries

    def reset(self) -> None:
        self.input_text = ""
        self.output_text = ""
