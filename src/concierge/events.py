"""Operator-facing system event log."""

from collections import deque
from datetime import datetime
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

MAX_SYSTEM_EVENTS = 50


class SystemEventLog:
    """
    Bounded, ordered log of timestamped milestone strings.

    Entries are kept newest first; once `maxlen` is reached the oldest entry is
    evicted. Read access returns copies so observers cannot mutate the log.
    """

    def __init__(
        self,
        maxlen: int = MAX_SYSTEM_EVENTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._entries: deque[str] = deque(maxlen=maxlen)
        self._clock = clock or datetime.now

    def log(self, event: str, **fields) -> str:
        entry = f"[{self._clock().strftime('%H:%M:%S')}] {event}"
        self._entries.appendleft(entry)
        logger.info("System event", system_event=event, **fields)
        return entry

    @property
    def entries(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
