"""
Tests for the adaptive jitter buffer.
"""

import random

import pytest

from src.concierge.jitter import AdaptiveJitterBuffer


class TestAdaptiveJitterBuffer:
    def test_initial_offset_is_clamped(self):
        assert AdaptiveJitterBuffer(initial_offset=1.0).offset == pytest.approx(0.25)
        assert AdaptiveJitterBuffer(initial_offset=0.0).offset == pytest.approx(0.03)

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            AdaptiveJitterBuffer(min_offset=0.3, max_offset=0.1)

    def test_first_chunk_scheduled_at_offset(self):
        buffer = AdaptiveJitterBuffer()

        start = buffer.schedule(now=10.0, duration=0.02)

        assert start == pytest.approx(10.05)
        assert buffer.next_start_time == pytest.approx(10.07)
        assert buffer.stutter_count == 0

    def test_consecutive_chunks_are_contiguous(self):
        buffer = AdaptiveJitterBuffer()

        first = buffer.schedule(now=10.0, duration=0.1)
        second = buffer.schedule(now=10.01, duration=0.1)

        assert second == pytest.approx(first + 0.1)
        assert buffer.stutter_count == 0

    def test_offset_decays_when_healthy(self):
        buffer = AdaptiveJitterBuffer()

        buffer.get_adaptive_time(now=0.0, next_start_time=0.0)

        assert buffer.offset == pytest.approx(0.0495)

    def test_offset_never_decays_below_minimum(self):
        buffer = AdaptiveJitterBuffer(initial_offset=0.0302)

        for _ in range(5):
            buffer.get_adaptive_time(now=0.0, next_start_time=0.0)

        assert buffer.offset == pytest.approx(0.03)

    def test_due_continuation_point_decays(self):
        buffer = AdaptiveJitterBuffer()

        start = buffer.get_adaptive_time(now=10.0, next_start_time=10.005)

        assert start == pytest.approx(10.05)
        assert buffer.offset == pytest.approx(0.0495)
        assert buffer.stutter_count == 0

    def test_late_stream_is_rescheduled_without_stutter(self):
        buffer = AdaptiveJitterBuffer()
        buffer.schedule(now=0.0, duration=0.02)

        start = buffer.schedule(now=1.0, duration=0.02)

        assert buffer.stutter_count == 0
        assert buffer.offset == pytest.approx(0.049)
        assert start == pytest.approx(1.0 + 0.0495)

    def test_start_inside_margin_is_underrun(self):
        buffer = AdaptiveJitterBuffer(initial_offset=0.005, min_offset=0.0)

        start = buffer.get_adaptive_time(now=2.0, next_start_time=0.0)

        assert start == pytest.approx(2.005)
        assert buffer.stutter_count == 1
        assert buffer.offset == pytest.approx(0.035)

    def test_underrun_increase_is_capped(self):
        buffer = AdaptiveJitterBuffer(initial_offset=0.005, min_offset=0.0, max_offset=0.02)

        buffer.get_adaptive_time(now=5.0, next_start_time=1.0)

        assert buffer.stutter_count == 1
        assert buffer.offset == pytest.approx(0.02)

    def test_offset_stays_in_bounds(self):
        rng = random.Random(1234)
        buffer = AdaptiveJitterBuffer()
        now = 0.0

        for _ in range(2000):
            now += rng.uniform(0.0, 0.3)
            previous = buffer.offset
            stutters = buffer.stutter_count
            buffer.schedule(now=now, duration=rng.uniform(0.01, 0.2))

            assert 0.03 - 1e-9 <= buffer.offset <= 0.25 + 1e-9
            if buffer.offset > previous + 1e-12:
                # Growth only ever comes from an underrun.
                assert buffer.stutter_count == stutters + 1

    def test_reset_forgets_timeline(self):
        buffer = AdaptiveJitterBuffer()
        buffer.schedule(now=0.0, duration=1.0)

        buffer.reset()

        assert buffer.next_start_time == 0.0
        start = buffer.schedule(now=0.1, duration=0.02)
        assert buffer.stutter_count == 0
        assert start == pytest.approx(0.1 + buffer.offset + 0.0005)

    def test_current_offset_ms(self):
        assert AdaptiveJitterBuffer(initial_offset=0.05).current_offset_ms == 50
