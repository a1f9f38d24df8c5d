"""Loudness metering and gain normalization for 16-bit PCM."""

from __future__ import annotations

import numpy as np

INT16_MAX = 32767
INT16_MIN = -32768
FULL_SCALE = 32768.0


def _as_samples(pcm: bytes) -> np.ndarray:
    usable = len(pcm) - (len(pcm) % 2)
    return np.frombuffer(pcm[:usable], dtype="<i2")


def measure_loudness(pcm: bytes) -> float:
    """Mean absolute sample value scaled to [0, 1]."""
    samples = _as_samples(pcm)
    if samples.size == 0:
        return 0.0
    level = float(np.abs(samples.astype(np.int32)).mean()) / FULL_SCALE
    return max(0.0, min(1.0, level))


def peak_amplitude(pcm: bytes) -> int:
    samples = _as_samples(pcm)
    if samples.size == 0:
        return 0
    return int(np.max(np.abs(samples.astype(np.int32))))


def compute_gain(peak: int, *, ceiling: int = 16384, max_gain: float = 4.0) -> float:
    """Gain that lifts ``peak`` toward full scale, never reducing loud audio."""
    if peak >= ceiling:
        return 1.0
    if peak <= 0:
        return max_gain
    return min(INT16_MAX / peak, max_gain)


def normalize_pcm(pcm: bytes, *, ceiling: int = 16384, max_gain: float = 4.0) -> bytes:
    samples = _as_samples(pcm)
    if samples.size == 0:
        return pcm
    peak = int(np.max(np.abs(samples.astype(np.int32))))
    gain = compute_gain(peak, ceiling=ceiling, max_gain=max_gain)
    if gain == 1.0 or peak == 0:
        return pcm
    amplified = np.clip(samples.astype(np.float64) * gain, INT16_MIN, INT16_MAX)
    # astype truncates toward zero
    scaled = amplified.astype("<i2").tobytes()
    return scaled + pcm[len(scaled) :]


def normalize_segment(
    data: bytes, header_size: int = 44, *, ceiling: int = 16384, max_gain: float = 4.0
) -> bytes:
    """Boost quiet speech in a WAV payload; the header is passed through untouched."""
    if len(data) <= header_size:
        return data
    header = data[:header_size]
    return header + normalize_pcm(data[header_size:], ceiling=ceiling, max_gain=max_gain)


__all__ = ["measure_loudness", "peak_amplitude", "compute_gain", "normalize_pcm", "normalize_segment"]
