"""
Energy-based barge-in detection on caller audio.

Each capture frame's RMS is compared with a fixed threshold. Loud frames count
as caller activity (the silence watchdog is re-armed) and, after enough
consecutive loud frames, interrupt assistant playback. A single quiet frame
resets the run: there is no partial credit across gaps.
"""

from typing import Callable, Optional

import numpy as np
import structlog

from src.concierge.audio import frame_rms, pcm16_to_float

logger = structlog.get_logger(__name__)


class BargeInDetector:
    def __init__(
        self,
        *,
        threshold: float = 0.025,
        required_frames: int = 3,
        on_activity: Optional[Callable[[], None]] = None,
        on_barge_in: Optional[Callable[[], None]] = None,
    ):
        self.threshold = threshold
        self.required_frames = max(1, required_frames)
        self._on_activity = on_activity
        self._on_barge_in = on_barge_in
        self.consecutive_frames = 0
        self.last_rms = 0.0

    def process(self, frame: np.ndarray) -> bool:
        """Feed one capture frame; returns True when it triggers an interruption."""
        rms = frame_rms(frame)
        self.last_rms = rms

        if rms <= self.threshold:
            self.consecutive_frames = 0
            return False

        self.consecutive_frames += 1
        if self._on_activity:
            self._on_activity()

        if self.consecutive_frames < self.required_frames:
            return False

        logger.debug(
            "Barge-in threshold reached",
            rms=round(rms, 4),
            consecutive_frames=self.consecutive_frames,
        )
        if self._on_barge_in:
            self._on_barge_in()
        return True

    def reset(self) -> None:
        self.consecutive_frames = 0
        self.last_rms = 0.0


class CaptureFramer:
    """Accumulates inbound PCM16 into fixed-size float frames."""

    def __init__(self, frame_samples: int = 4096):
        if frame_samples <= 0:
            raise ValueError("frame_samples must be positive")
        self.frame_samples = frame_samples
        self._pending = np.zeros(0, dtype=np.float32)

    def push(self, pcm_bytes: bytes) -> list[np.ndarray]:
        samples = pcm16_to_float(pcm_bytes)
        if samples.size == 0:
            return []
        buffered = np.concatenate([self._pending, samples])
        count = len(buffered) // self.frame_samples
        frames = [
            buffered[i * self.frame_samples:(i + 1) * self.frame_samples]
            for i in range(count)
        ]
        self._pending = buffered[count * self.frame_samples:]
        return frames

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
