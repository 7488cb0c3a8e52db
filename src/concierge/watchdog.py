"""Silence watchdog: abandons the call after a period with no activity."""

from typing import Any, Callable

import structlog

from src.concierge.timers import CallTimers

logger = structlog.get_logger(__name__)

WATCHDOG_TIMER = "silence_watchdog"


class SilenceWatchdog:
    """
    Single re-armable timer.

    `arm()` restarts the countdown; `on_fire` runs only if `timeout` seconds
    pass without another `arm()` or a `cancel()`.
    """

    def __init__(self, timers: CallTimers, timeout: float, on_fire: Callable[[], Any]):
        self._timers = timers
        self.timeout = timeout
        self._on_fire = on_fire

    @property
    def armed(self) -> bool:
        return self._timers.is_pending(WATCHDOG_TIMER)

    def arm(self) -> None:
        self._timers.schedule(WATCHDOG_TIMER, self.timeout, self._fire)

    def cancel(self) -> None:
        self._timers.cancel(WATCHDOG_TIMER)

    def _fire(self) -> Any:
        logger.warning("Silence watchdog fired", timeout_seconds=self.timeout)
        return self._on_fire()
