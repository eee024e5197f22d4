from __future__ import annotations

import numpy as np

# G.711 mu-law companding constants.
ULAW_BIAS = 0x84
ULAW_CLIP = 32635


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode PCM16 int16 array to G.711 mu-law bytes.

    This is a vectorized mu-law encoder suitable for realtime packetization.
    """

    if pcm16.size == 0:
        return b""

    x = np.asarray(pcm16).astype(np.int32)
    sign = np.where(x < 0, 0x80, 0).astype(np.int32)
    x = np.minimum(np.abs(x), ULAW_CLIP) + ULAW_BIAS

    # Exponent is the position of the highest set bit above bit 7.
    exponent = np.zeros_like(x)
    for exp in range(1, 8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not(sign | (exponent << 4) | mantissa) & 0xFF
    return ulaw.astype(np.uint8).tobytes()


def ulaw_decode(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to PCM16 int16 array."""

    data = np.frombuffer(ulaw_bytes, dtype=np.uint8).astype(np.int32)

    mu = np.bitwise_not(data) & 0xFF
    sign = mu & 0x80
    exponent = (mu >> 4) & 0x07
    mantissa = mu & 0x0F

    magnitude = (((mantissa << 3) + ULAW_BIAS) << exponent) - ULAW_BIAS
    pcm = np.where(sign != 0, -magnitude, magnitude)

    return pcm.astype(np.int16)


def tone_pcm16(ms: int, freq: float, amp: int, *, sample_rate: int = 8000) -> np.ndarray:
    """Synthesize a sine tone as PCM16 samples."""

    samples = int(sample_rate * ms / 1000)
    n = np.arange(samples, dtype=np.float64)
    tone = np.round(amp * np.sin(2 * np.pi * freq * n / sample_rate))
    return np.clip(tone, -32768, 32767).astype(np.int16)


def make_beep_ulaw(ms: int = 180, freq: float = 880.0, amp: int = 9000, *, sample_rate: int = 8000) -> bytes:
    """Short mu-law beep played when a stream starts, so the caller hears the outbound leg is live."""

    return ulaw_encode(tone_pcm16(ms, freq, amp, sample_rate=sample_rate))
