"""
Adaptive jitter buffer for AI audio playback.

Each decoded chunk is scheduled at max(next_start_time, now + offset). A chunk
that would start less than 10ms from now is an underrun: the offset grows by
one step (up to the maximum) and a stutter is recorded.
Otherwise the offset decays slowly toward the minimum so it does not oscillate.
"""

import structlog

logger = structlog.get_logger(__name__)


class AdaptiveJitterBuffer:
    """Scheduling offset that adapts to observed playback underruns. Times are in seconds."""

    def __init__(
        self,
        *,
        initial_offset: float = 0.05,
        min_offset: float = 0.03,
        max_offset: float = 0.25,
        step: float = 0.03,
        decay: float = 0.0005,
        underrun_margin: float = 0.01,
    ):
        if not min_offset <= max_offset:
            raise ValueError("min_offset must not exceed max_offset")
        self.min_offset = min_offset
        self.max_offset = max_offset
        self.step = step
        self.decay = decay
        self.underrun_margin = underrun_margin
        self._offset = min(max(initial_offset, min_offset), max_offset)
        self._stutter_count = 0
        self.next_start_time = 0.0

    @property
    def offset(self) -> float:
        return self._offset

    @property
    def current_offset_ms(self) -> int:
        return int(round(self._offset * 1000))

    @property
    def stutter_count(self) -> int:
        return self._stutter_count

    def get_adaptive_time(self, now: float, next_start_time: float) -> float:
        """Return the start time for the next chunk and adapt the offset."""
        scheduled = max(next_start_time, now + self._offset)
        if scheduled < now + self.underrun_margin:
            self._stutter_count += 1
            self._offset = min(self._offset + self.step, self.max_offset)
            logger.warning(
                "Jitter buffer stutter",
                offset_ms=self.current_offset_ms,
                stutters=self._stutter_count,
            )
        elif self._offset > self.min_offset:
            self._offset = max(self._offset - self.decay, self.min_offset)

        return scheduled

    def schedule(self, now: float, duration: float) -> float:
        """Schedule a chunk of `duration` seconds and advance `next_start_time` past it."""
        scheduled = self.get_adaptive_time(now, self.next_start_time)
        self.next_start_time = scheduled + duration
        return scheduled

    def reset(self) -> None:
        """Forget the playback timeline so stale scheduling cannot resume after an interrupt."""
        self.next_start_time = 0.0
