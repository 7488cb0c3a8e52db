"""
Business-rule validation of finalized orders.

Only the ordering window is checked. The requested time is compared, in
minutes since local midnight, against the inclusive window configured in
BusinessHours. "ASAP" means the current local time in the business
timezone. A time that cannot be parsed is let through so a transcription
quirk never blocks an order that a human can still fix up.
"""

import re
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from src.concierge.errors import ValidationError
from src.concierge.models import BusinessHours, OrderRecord, ValidationResult

logger = structlog.get_logger(__name__)

ASAP = "ASAP"

_TIME_RE = re.compile(r"^\s*(\d{1,2})\s*:\s*(\d{2})(?::\d{2})?\s*([ap]\.?m\.?)?\s*$", re.IGNORECASE)


def parse_minutes(value: str) -> Optional[int]:
    """Minutes since midnight for `HH:MM` (optionally `h:MM am/pm`); None if unparsable."""
    match = _TIME_RE.match(value or "")
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    meridiem = (match.group(3) or "").lower().replace(".", "")
    if meridiem:
        if not 1 <= hours <= 12:
            return None
        hours = hours % 12 + (12 if meridiem == "pm" else 0)
    if hours > 23 or minutes > 59:
        return None
    return hours * 60 + minutes


def local_now(timezone: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(timezone))
    except ZoneInfoNotFoundError:
        logger.warning("Unknown business timezone, using server local time", timezone=timezone)
        return datetime.now()


def validate_order(
    record: OrderRecord,
    hours: BusinessHours,
    now: Optional[datetime] = None,
) -> ValidationResult:
    requested = (record.requested_time or "").strip()

    if requested.upper() == ASAP:
        current = now or local_now(hours.timezone)
        target = current.hour * 60 + current.minute
    else:
        target = parse_minutes(requested)
        if target is None:
            logger.info("Requested time unparsable, accepting", requested_time=requested)
            return ValidationResult(valid=True)

    start = parse_minutes(hours.order_start_time)
    end = parse_minutes(hours.order_end_time)
    if start is None or end is None:
        logger.error(
            "Business hours misconfigured, skipping window check",
            order_start_time=hours.order_start_time,
            order_end_time=hours.order_end_time,
        )
        return ValidationResult(valid=True)

    if target < start or target > end:
        logger.warning(
            "Order outside ordering window",
            requested_time=requested,
            window=f"{hours.order_start_time}-{hours.order_end_time}",
        )
        return ValidationResult(
            valid=False,
            reason=ValidationError.OUT_OF_WINDOW,
            next_available=hours.order_start_time,
        )

    return ValidationResult(valid=True)


def ensure_valid(
    record: OrderRecord,
    hours: BusinessHours,
    now: Optional[datetime] = None,
) -> ValidationResult:
    """Like validate_order, but raises ValidationError on failure."""
    result = validate_order(record, hours, now)
    if not result.valid:
        raise ValidationError(
            result.reason,
            f"Requested time {record.requested_time} outside {hours.order_start_time}-{hours.order_end_time}",
            next_available=result.next_available,
        )
    return result
