"""
Named, cancellable delayed actions owned by one call.

Scheduling a name that is already pending replaces it. Callbacks may be plain
functions or coroutine functions; coroutines run as tracked tasks so
`cancel_all()` also stops work that has already started.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class CallTimers:
    def __init__(self) -> None:
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule(self, name: str, delay: float, callback: Callable[[], Any]) -> None:
        self.cancel(name)
        loop = asyncio.get_running_loop()
        self._handles[name] = loop.call_later(max(0.0, delay), self._fire, name, callback)

    def is_pending(self, name: str) -> bool:
        return name in self._handles

    @property
    def pending(self) -> list[str]:
        return sorted(self._handles)

    def cancel(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every pending timer and any timer task still running (except the caller's own)."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

        current = _current_task()
        for task in self._tasks.values():
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()

    def _fire(self, name: str, callback: Callable[[], Any]) -> None:
        self._handles.pop(name, None)
        try:
            result = callback()
        except Exception as e:
            logger.error("Timer callback failed", timer=name, error=str(e))
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks[name] = task
            task.add_done_callback(lambda t, n=name: self._task_done(n, t))

    def _task_done(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Timer task failed", timer=name, error=str(exc))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
