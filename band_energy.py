"""
Shader Studio audio - Band energy
Turns per-band byte spectra into the four published energy values.
"""

import numpy as np

from config import BAND_NAMES, Config

IDLE_DECAY = 0.9  # Per-tick multiplier while no source is attached


def smooth(prev: float, nxt: float, factor: float) -> float:
    """Exponential smoothing: factor 0 follows nxt instantly, near 1 barely moves."""
    return prev * factor + nxt * (1.0 - factor)


def mean_energy(magnitudes: np.ndarray) -> float:
    """Mean byte magnitude scaled to [0, 1]."""
    if magnitudes is None or len(magnitudes) == 0:
        return 0.0
    return float(np.mean(magnitudes)) / 255.0


class BandEnergySmoother:
    """
    Holds the published ``values`` dict (bass/mid/high/overall).

    Gain, sensitivity and smoothing are read from the live config on every
    update so host edits apply on the next tick. Results are not clamped and
    may exceed 1.0 when gain * sensitivity > 1.
    """

    def __init__(self, config: Config):
        self.config = config
        self.values: dict[str, float] = {name: 0.0 for name in BAND_NAMES}

    def update(self, snapshots: dict[str, np.ndarray]) -> dict[str, float]:
        """Fold one set of magnitude snapshots in; returns the raw (pre-gain) energies."""
        raw: dict[str, float] = {}
        for name in BAND_NAMES:
            band = self.config.bands.get(name)
            raw[name] = mean_energy(snapshots.get(name))
            target = raw[name] * band.gain * band.sensitivity
            self.values[name] = smooth(self.values[name], target, band.smoothing)
        return raw

    def decay(self) -> None:
        for name in BAND_NAMES:
            self.values[name] *= IDLE_DECAY

    def reset(self) -> None:
        for name in BAND_NAMES:
            self.values[name] = 0.0
