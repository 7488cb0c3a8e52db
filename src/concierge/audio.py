"""
Audio conversion utilities for the phone concierge.

- Twilio carries mu-law 8kHz; the AI session takes 16kHz PCM and returns 24kHz PCM.
- Resampling is intentionally naive: 8k->16k duplicates each sample, 24k->8k
  keeps every third sample. No anti-aliasing; intelligible, not hi-fi.
- The mu-law law is implemented here (bias 132) rather than via `audioop`,
  which no longer ships with current Python releases.
"""

import io
import wave
from typing import Union

import numpy as np

TWILIO_SAMPLE_RATE = 8000
AI_INPUT_SAMPLE_RATE = 16000
AI_OUTPUT_SAMPLE_RATE = 24000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms

ULAW_BIAS = 132
ULAW_CLIP = 32767
ULAW_SILENCE = 0xFF


def ulaw_decode_sample(ulaw_byte: int) -> int:
    """
    Decode one mu-law byte to a 16-bit linear sample.

    The byte is bit-inverted, split into sign/exponent/mantissa and the
    magnitude rebuilt as ((mantissa << 3) + 132) << exponent, minus the bias.
    """
    mu = ~ulaw_byte & 0xFF
    sign = mu & 0x80
    exponent = (mu & 0x70) >> 4
    mantissa = mu & 0x0F
    magnitude = ((mantissa << 3) + ULAW_BIAS) << exponent
    return ULAW_BIAS - magnitude if sign else magnitude - ULAW_BIAS


def ulaw_encode_sample(sample: int) -> int:
    """
    Encode one 16-bit linear sample as a mu-law byte.

    The biased magnitude is clamped, the exponent is the position of the highest
    set bit above the bias, and sign|exponent|mantissa is bit-inverted.
    """
    sign = 0x80 if sample < 0 else 0x00
    magnitude = -sample if sample < 0 else sample
    magnitude = min(magnitude + ULAW_BIAS, ULAW_CLIP)
    exponent = 7
    mask = 0x4000
    while exponent > 0 and not (magnitude & mask):
        exponent -= 1
        mask >>= 1
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


# 256-entry decode table, and a 64k-entry encode table indexed by (sample & 0xFFFF).
ULAW_DECODE_TABLE = np.array([ulaw_decode_sample(b) for b in range(256)], dtype=np.int16)
_ULAW_ENCODE_TABLE = np.array(
    [ulaw_encode_sample(i - 65536 if i >= 32768 else i) for i in range(65536)],
    dtype=np.uint8,
)


def ulaw_to_pcm16(ulaw_bytes: bytes) -> bytes:
    """
    Convert mu-law audio to linear PCM 16-bit (same sample rate).

    Args:
        ulaw_bytes: Raw mu-law encoded bytes

    Returns:
        Little-endian PCM16 bytes, twice the input length
    """
    if not ulaw_bytes:
        return b""
    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return ULAW_DECODE_TABLE[codes].astype("<i2").tobytes()


def pcm16_to_ulaw(pcm_bytes: bytes) -> bytes:
    """
    Convert linear PCM 16-bit to mu-law (same sample rate).

    Args:
        pcm_bytes: Little-endian PCM16 bytes

    Returns:
        Mu-law encoded bytes, half the input length
    """
    if not pcm_bytes:
        return b""
    samples = np.frombuffer(pcm_bytes, dtype="<i2")
    return _ULAW_ENCODE_TABLE[samples.view(np.uint16)].tobytes()


def upsample_8k_to_16k(pcm_8k: bytes) -> bytes:
    """Naive 8kHz -> 16kHz: every sample is emitted twice."""
    if not pcm_8k:
        return b""
    samples = np.frombuffer(pcm_8k, dtype="<i2")
    return np.repeat(samples, 2).astype("<i2").tobytes()


def downsample_24k_to_8k(pcm_24k: bytes) -> bytes:
    """Naive 24kHz -> 8kHz: keeps every third sample, drops a trailing partial group."""
    if not pcm_24k:
        return b""
    samples = np.frombuffer(pcm_24k[: len(pcm_24k) - (len(pcm_24k) % 2)], dtype="<i2")
    kept = len(samples) // 3
    return samples[: kept * 3 : 3].astype("<i2").tobytes()


def twilio_ulaw_to_ai_pcm(ulaw_bytes: bytes) -> bytes:
    """Twilio inbound frame (mu-law 8kHz) -> AI session input (PCM16 16kHz)."""
    return upsample_8k_to_16k(ulaw_to_pcm16(ulaw_bytes))


def ai_pcm_to_twilio_ulaw(pcm_24k: bytes) -> bytes:
    """AI session output (PCM16 24kHz) -> Twilio outbound payload (mu-law 8kHz)."""
    return pcm16_to_ulaw(downsample_24k_to_8k(pcm_24k))


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    """PCM16 bytes -> float32 samples in [-1, 1)."""
    if not pcm_bytes:
        return np.zeros(0, dtype=np.float32)
    samples = np.frombuffer(pcm_bytes[: len(pcm_bytes) - (len(pcm_bytes) % 2)], dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """float32 samples -> PCM16 bytes (scaled by 32768, clipped)."""
    if len(samples) == 0:
        return b""
    scaled = np.clip(np.asarray(samples, dtype=np.float32) * 32768.0, -32768, 32767)
    return scaled.astype("<i2").tobytes()


def frame_rms(samples: Union[np.ndarray, list]) -> float:
    """Root-mean-square energy of a frame of float samples."""
    frame = np.asarray(samples, dtype=np.float64)
    if frame.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(frame * frame)))


def duration_seconds(num_samples: int, sample_rate: int) -> float:
    return num_samples / float(sample_rate) if sample_rate else 0.0


def resample_linear(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """
    Linear-interpolation resampling for offline clip preparation.

    Not used on the live path, which keeps the naive duplicate/decimate scheme.
    """
    if source_rate == target_rate or len(samples) == 0:
        return np.asarray(samples, dtype=np.float32)
    target_len = max(1, int(round(len(samples) * target_rate / source_rate)))
    src_positions = np.arange(len(samples), dtype=np.float64)
    dst_positions = np.linspace(0, len(samples) - 1, target_len)
    return np.interp(dst_positions, src_positions, samples).astype(np.float32)


def read_wav_mono_pcm16(wav_bytes: bytes) -> tuple[int, bytes]:
    """
    Read a WAV byte string and return (sample_rate, mono PCM16 bytes).

    - If input is stereo, it is downmixed to mono.
    - If sample width is not 16-bit, raises ValueError.
    """
    if not wav_bytes:
        raise ValueError("Empty WAV")

    with wave.open(io.BytesIO(wav_bytes), "rb") as wf:
        channels = wf.getnchannels()
        sample_width = wf.getsampwidth()
        sample_rate = wf.getframerate()
        frames = wf.readframes(wf.getnframes())

    if sample_width != 2:
        raise ValueError(f"Unsupported WAV sample width: {sample_width * 8} bits")

    if channels == 1:
        return int(sample_rate), frames

    if channels == 2:
        stereo = np.frombuffer(frames, dtype="<i2").reshape(-1, 2).astype(np.int32)
        mono = (stereo.sum(axis=1) // 2).astype("<i2")
        return int(sample_rate), mono.tobytes()

    raise ValueError(f"Unsupported WAV channel count: {channels}")


def write_wav_mono_pcm16(pcm_bytes: bytes, sample_rate: int) -> bytes:
    """Create a mono 16-bit PCM WAV byte string from PCM bytes."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(pcm_bytes or b"")
    return buf.getvalue()
