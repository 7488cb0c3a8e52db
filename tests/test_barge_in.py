"""
Tests for energy-based barge-in detection.
"""

import numpy as np
import pytest

from src.concierge.barge_in import BargeInDetector, CaptureFramer


def _frame(level: float, size: int = 4096) -> np.ndarray:
    return np.full(size, level, dtype=np.float32)


class TestBargeInDetector:
    def test_three_loud_frames_trigger(self):
        triggered = []
        detector = BargeInDetector(on_barge_in=lambda: triggered.append(True))

        results = [detector.process(_frame(0.03)) for _ in range(3)]

        assert results == [False, False, True]
        assert triggered == [True]

    def test_gap_resets_the_run(self):
        detector = BargeInDetector()

        assert detector.process(_frame(0.03)) is False
        assert detector.process(_frame(0.03)) is False
        assert detector.process(_frame(0.01)) is False
        assert detector.consecutive_frames == 0
        assert detector.process(_frame(0.03)) is False

    def test_threshold_boundary(self):
        detector = BargeInDetector(threshold=0.025, required_frames=1)

        assert detector.process(_frame(0.024)) is False
        assert detector.process(_frame(0.026)) is True

    def test_loud_frames_report_activity(self):
        activity = []
        detector = BargeInDetector(on_activity=lambda: activity.append(1))

        detector.process(_frame(0.0))
        detector.process(_frame(0.05))
        detector.process(_frame(0.05))

        assert len(activity) == 2
        assert detector.last_rms == pytest.approx(0.05, rel=1e-4)

    def test_reset(self):
        detector = BargeInDetector()
        detector.process(_frame(0.05))

        detector.reset()

        assert detector.consecutive_frames == 0
        assert detector.last_rms == 0.0


class TestCaptureFramer:
    def test_accumulates_until_full_frame(self):
        framer = CaptureFramer(frame_samples=4)

        assert framer.push(np.zeros(3, dtype="<i2").tobytes()) == []
        frames = framer.push(np.array([16384] * 6, dtype="<i2").tobytes())

        assert len(frames) == 2
        assert frames[0].tolist() == pytest.approx([0.0, 0.0, 0.0, 0.5])
        assert frames[1].tolist() == pytest.approx([0.5] * 4)

    def test_inbound_twilio_frames(self):
        """640-byte frames (320 samples) fill a 4096-sample frame on the 13th push."""
        framer = CaptureFramer()
        chunk = b"\x00\x00" * 320

        counts = [len(framer.push(chunk)) for _ in range(13)]

        assert counts == [0] * 12 + [1]

    def test_reset_drops_partial_frame(self):
        framer = CaptureFramer(frame_samples=4)
        framer.push(np.zeros(3, dtype="<i2").tobytes())

        framer.reset()

        assert framer.push(np.zeros(3, dtype="<i2").tobytes()) == []

    def test_invalid_frame_size(self):
        with pytest.raises(ValueError):
            CaptureFramer(frame_samples=0)
