"""In-memory store of finalized activity records (orders and reservations)."""

from __future__ import annotations

from typing import Optional

import structlog

from src.concierge.models import ActivityRecord, OrderLifecycle, RecordStatus

logger = structlog.get_logger(__name__)


class ActivityStore:
    """
    Records keyed by id, kept in insertion order.

    Only the lifecycle and status tags of a stored record change after it is
    added; the business fields are written once.
    """

    def __init__(self) -> None:
        self._records: dict[str, ActivityRecord] = {}

    def add(self, record: ActivityRecord) -> ActivityRecord:
        self._records[record.id] = record
        logger.debug("Activity stored", record_id=record.id, intent=record.intent)
        return record

    def update(
        self,
        record_id: str,
        *,
        lifecycle: Optional[OrderLifecycle] = None,
        status: Optional[RecordStatus] = None,
    ) -> Optional[ActivityRecord]:
        record = self._records.get(record_id)
        if record is None:
            logger.warning("Update for unknown activity", record_id=record_id)
            return None
        if lifecycle is not None:
            record.lifecycle = lifecycle
        if status is not None:
            record.status = status
        return record

    def get(self, record_id: str) -> Optional[ActivityRecord]:
        return self._records.get(record_id)

    def list(self) -> list[ActivityRecord]:
        return list(self._records.values())

    def completed(self) -> list[ActivityRecord]:
        return [r for r in self._records.values() if r.status == RecordStatus.COMPLETED]

    def __len__(self) -> int:
        return len(self._records)
