import math

import numpy as np


def decibels_to_bytes(
    magnitudes: np.ndarray,
    min_decibels: float,
    max_decibels: float,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Map linear magnitudes onto the 0-255 byte scale over a dB window."""
    with np.errstate(divide="ignore"):
        db = 20.0 * np.log10(magnitudes)
    scaled = (db - min_decibels) * (255.0 / (max_decibels - min_decibels))
    scaled = np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0)
    if out is None:
        out = np.empty(len(magnitudes), dtype=np.uint8)
    np.clip(np.floor(scaled), 0.0, 255.0, out=scaled)
    out[:] = scaled
    return out


def normalize_cutoff(freq_hz: float, sample_rate: int) -> float:
    """Cutoff as a fraction of Nyquist, kept strictly inside (0, 1)."""
    nyquist = sample_rate / 2.0
    return max(0.001, min(0.999, freq_hz / nyquist))


def bandpass_edges(center_hz: float, q: float) -> tuple[float, float]:
    """Lower/upper -3 dB edges of a band-pass with the given center and Q.

    The edges are geometric around the center: f_lo * f_hi == center**2 and
    f_hi - f_lo == center / q.
    """
    half = 1.0 / (2.0 * q)
    root = math.sqrt(1.0 + half * half)
    return center_hz * (root - half), center_hz * (root + half)
