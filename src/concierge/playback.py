"""
Paced playback output.

Decoded audio (float32 at the output sample rate) is started on a
`PlaybackOutput` as a `PlaybackSource` with an absolute start time on the
event-loop clock. A single pacer task mixes every active source into 20ms
frames and hands each frame to the transport just in time, the same way the
Twilio outbound pacer keeps the carrier's buffer short so barge-in stays crisp.

Sources can be stopped at any moment (synchronously: the next frame no longer
contains them) and can ramp their gain linearly, which the filler manager uses
to fade out.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import numpy as np
import structlog

from src.concierge.audio import AI_OUTPUT_SAMPLE_RATE, FRAME_DURATION_MS

logger = structlog.get_logger(__name__)

FrameEmitter = Callable[[np.ndarray], Awaitable[None]]


class PlaybackSource:
    """One scheduled buffer on a playback output."""

    def __init__(
        self,
        output: "PlaybackOutput",
        samples: np.ndarray,
        start_time: float,
        *,
        label: str = "ai",
    ):
        self._output = output
        self.samples = samples
        self.start_time = start_time
        self.label = label
        self.position = 0
        self._gain = 1.0
        self._ramp: Optional[tuple[float, float, float, float]] = None  # (t0, g0, t1, g1)
        self._ended = False
        self._callbacks: list[Callable[["PlaybackSource"], None]] = []

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self._output.sample_rate)

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def ended(self) -> bool:
        return self._ended

    def add_done_callback(self, callback: Callable[["PlaybackSource"], None]) -> None:
        if self._ended:
            callback(self)
        else:
            self._callbacks.append(callback)

    def gain_at(self, t: float) -> float:
        if self._ramp is None:
            return self._gain
        t0, g0, t1, g1 = self._ramp
        if t >= t1 or t1 <= t0:
            return g1
        if t <= t0:
            return g0
        return g0 + (g1 - g0) * ((t - t0) / (t1 - t0))

    def ramp_gain(self, target: float, duration: float) -> None:
        """Linearly ramp the gain from its current value to `target` over `duration` seconds."""
        now = self._output.now()
        current = self.gain_at(now)
        if duration <= 0:
            self._ramp = None
            self._gain = target
            return
        self._gain = target
        self._ramp = (now, current, now + duration, target)

    def stop(self) -> None:
        """Stop immediately; nothing more of this source is rendered."""
        self._finish()

    def render(self, t0: float, frame_samples: int) -> Optional[np.ndarray]:
        """Render this source's contribution to the frame starting at `t0`."""
        if self._ended:
            return None
        rate = self._output.sample_rate
        frame_end = t0 + frame_samples / float(rate)
        if frame_end <= self.start_time:
            return None

        lead = 0
        if self.position == 0 and self.start_time > t0:
            lead = min(frame_samples, int(round((self.start_time - t0) * rate)))
        chunk = self.samples[self.position:self.position + frame_samples - lead]
        self.position += len(chunk)

        out = np.zeros(frame_samples, dtype=np.float32)
        out[lead:lead + len(chunk)] = chunk * self.gain_at(t0)

        if self.position >= len(self.samples):
            self._finish()
        return out

    def _finish(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._output._discard(self)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error("Playback done callback failed", label=self.label, error=str(e))


class PlaybackOutput:
    """
    Mixes active sources into fixed frames and emits them in real time.

    Interface:
    - `start(samples, when)` schedules a buffer and returns its source
    - `stop_all()` silences everything synchronously
    - `close()` stops the pacer
    """

    def __init__(
        self,
        emit: FrameEmitter,
        *,
        sample_rate: int = AI_OUTPUT_SAMPLE_RATE,
        frame_ms: int = FRAME_DURATION_MS,
    ):
        self._emit = emit
        self.sample_rate = sample_rate
        self.frame_samples = int(sample_rate * frame_ms / 1000)
        self.frame_duration = self.frame_samples / float(sample_rate)
        self._sources: list[PlaybackSource] = []
        self._wakeup = asyncio.Event()
        self._pacer_task: Optional[asyncio.Task] = None
        self._closed = False
        self.frames_emitted = 0

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    @property
    def active_sources(self) -> list[PlaybackSource]:
        return list(self._sources)

    @property
    def is_playing(self) -> bool:
        return bool(self._sources)

    def start(self, samples: np.ndarray, when: Optional[float] = None, *, label: str = "ai") -> PlaybackSource:
        """Schedule `samples` (float32, output rate) to start at loop time `when` (default: now)."""
        if self._closed:
            raise RuntimeError("Playback output is closed")
        start_time = self.now() if when is None else when
        source = PlaybackSource(self, np.asarray(samples, dtype=np.float32), start_time, label=label)
        if len(source.samples) == 0:
            source.stop()
            return source
        self._sources.append(source)
        self._ensure_pacer()
        self._wakeup.set()
        return source

    def stop_all(self, label: Optional[str] = None) -> int:
        stopped = 0
        for source in list(self._sources):
            if label is None or source.label == label:
                source.stop()
                stopped += 1
        return stopped

    async def close(self) -> None:
        self._closed = True
        self.stop_all()
        task, self._pacer_task = self._pacer_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _discard(self, source: PlaybackSource) -> None:
        try:
            self._sources.remove(source)
        except ValueError:
            pass

    def _ensure_pacer(self) -> None:
        if self._pacer_task and not self._pacer_task.done():
            return
        self._pacer_task = asyncio.create_task(self._pacer())

    async def _pacer(self) -> None:
        next_frame_time = self.now()
        try:
            while not self._closed:
                if not self._sources:
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    next_frame_time = self.now()
                    continue

                now = self.now()
                if now < next_frame_time:
                    await asyncio.sleep(next_frame_time - now)

                mixed: Optional[np.ndarray] = None
                for source in list(self._sources):
                    rendered = source.render(next_frame_time, self.frame_samples)
                    if rendered is None:
                        continue
                    mixed = rendered if mixed is None else mixed + rendered

                if mixed is not None:
                    np.clip(mixed, -1.0, 1.0, out=mixed)
                    self.frames_emitted += 1
                    await self._emit(mixed)

                next_frame_time = max(next_frame_time + self.frame_duration, self.now() - self.frame_duration)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Playback pacer failed", error=str(e))
