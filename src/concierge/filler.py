"""
Latency-masking filler audio.

A small pool of short clips ("mhm", a soft breath) is preloaded once and one is
played while the caller waits for the assistant's first audio. When real audio
arrives the filler is faded out; barge-in and teardown cut it immediately.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import httpx
import numpy as np
import structlog

from src.concierge.audio import (
    AI_OUTPUT_SAMPLE_RATE,
    pcm16_to_float,
    read_wav_mono_pcm16,
    resample_linear,
)
from src.concierge.playback import PlaybackOutput, PlaybackSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FillerClip:
    """Immutable pre-decoded clip at the output sample rate."""
    name: str
    samples: np.ndarray

    def __post_init__(self) -> None:
        self.samples.setflags(write=False)


def clip_from_wav(name: str, wav_bytes: bytes, target_rate: int = AI_OUTPUT_SAMPLE_RATE) -> FillerClip:
    sample_rate, pcm = read_wav_mono_pcm16(wav_bytes)
    samples = resample_linear(pcm16_to_float(pcm), sample_rate, target_rate)
    return FillerClip(name=name, samples=np.array(samples, dtype=np.float32))


async def _fetch_clip_bytes(source: str, client: httpx.AsyncClient) -> bytes:
    if source.startswith(("http://", "https://")):
        resp = await client.get(source)
        resp.raise_for_status()
        return resp.content
    return await asyncio.to_thread(Path(source).read_bytes)


class FillerManager:
    """Plays at most one filler clip at a time on a playback output."""

    def __init__(
        self,
        clips: Optional[Iterable[FillerClip]] = None,
        *,
        rng: Optional[random.Random] = None,
    ):
        self._clips: list[FillerClip] = list(clips or [])
        self._rng = rng or random.Random()
        self._active: Optional[PlaybackSource] = None
        self._fading: dict[asyncio.TimerHandle, PlaybackSource] = {}

    @property
    def clips(self) -> tuple[FillerClip, ...]:
        return tuple(self._clips)

    @property
    def is_playing(self) -> bool:
        return self._active is not None

    @property
    def is_fading(self) -> bool:
        return bool(self._fading)

    async def preload(self, sources: Iterable[str], *, timeout_s: float = 5.0) -> int:
        """
        Load WAV clips from local paths or URLs.

        Failures are logged and leave the pool as it was; fillers are an
        enhancement and never block a call.
        """
        sources = [s for s in sources if s]
        if not sources:
            return 0
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
                payloads = await asyncio.gather(*[_fetch_clip_bytes(s, client) for s in sources])
            clips = [clip_from_wav(Path(s).name, data) for s, data in zip(sources, payloads)]
        except (httpx.HTTPError, OSError, ValueError) as e:
            logger.warning("Filler assets failed to load", error=str(e))
            return 0
        self._clips = clips
        logger.info("Filler clips loaded", count=len(clips))
        return len(clips)

    def play_random_filler(self, output: PlaybackOutput) -> Optional[PlaybackSource]:
        if not self._clips:
            return None
        self.stop_with_fade(0)

        clip = self._rng.choice(self._clips)
        source = output.start(clip.samples, label="filler")
        self._active = source

        def _on_ended(ended: PlaybackSource) -> None:
            if self._active is ended:
                self._active = None

        source.add_done_callback(_on_ended)
        logger.debug("Filler started", clip=clip.name)
        return source

    def stop_with_fade(self, fade_ms: int = 150) -> None:
        """Fade the active filler to silence over `fade_ms`, then stop it. 0 stops immediately."""
        source = self._active
        if source is None:
            return
        self._active = None

        if fade_ms <= 0:
            source.stop()
            return

        source.ramp_gain(0.0, fade_ms / 1000.0)
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _stop() -> None:
            self._fading.pop(handle, None)
            source.stop()

        handle = loop.call_later(fade_ms / 1000.0, _stop)
        self._fading[handle] = source

    def cancel_pending(self) -> None:
        """Stop anything still fading right now; used on barge-in and at call teardown."""
        fading, self._fading = self._fading, {}
        for handle, source in fading.items():
            handle.cancel()
            source.stop()
