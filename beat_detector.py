"""
Shader Studio audio - Beat / BPM detection
Adaptive-threshold onset detector on the raw (pre-gain) bass energy.
"""

import math
from collections import deque
from dataclasses import dataclass

from config import Config


@dataclass
class BeatResult:
    """Outcome of one detector tick"""
    is_beat: bool = False
    bpm: int = 0
    bpm_updated: bool = False


class BeatDetector:
    """
    A beat fires when the raw bass value is simultaneously
      - above the rolling mean of the last ``history_size`` values * ``spike_ratio``
      - above the absolute ``threshold``
      - more than ``cooldown_ms`` after the previous beat.

    The history starts zero-filled, so the mean averages over every slot from
    the first tick. BPM is the rounded mean inter-beat interval over the last
    ``bpm_window`` beats, published once ``bpm_min_beats`` timestamps exist,
    and is held (never decays) until reset().
    """
    __slots__ = ('config', 'history', '_hist_idx', 'last_beat_ms',
                 'timestamps', 'bpm', 'beat_count')

    def __init__(self, config: Config):
        self.config = config
        self.history: list[float] = [0.0] * max(1, int(config.beat.history_size))
        self._hist_idx = 0
        self.last_beat_ms = float("-inf")
        self.timestamps: deque[float] = deque(maxlen=max(2, int(config.beat.bpm_window)))
        self.bpm = 0
        self.beat_count = 0

    @property
    def rolling_mean(self) -> float:
        return sum(self.history) / len(self.history)

    def update(self, raw_bass: float, now_ms: float) -> BeatResult:
        beat_cfg = self.config.beat
        self.history[self._hist_idx] = raw_bass
        self._hist_idx = (self._hist_idx + 1) % len(self.history)
        avg = self.rolling_mean

        if not (raw_bass > avg * beat_cfg.spike_ratio
                and raw_bass > beat_cfg.threshold
                and (now_ms - self.last_beat_ms) > beat_cfg.cooldown_ms):
            return BeatResult(bpm=self.bpm)

        self.last_beat_ms = now_ms
        self.beat_count += 1
        self.timestamps.append(now_ms)

        bpm_updated = False
        if len(self.timestamps) >= max(2, beat_cfg.bpm_min_beats):
            stamps = list(self.timestamps)
            avg_interval = (stamps[-1] - stamps[0]) / (len(stamps) - 1)
            if avg_interval > 0:
                # Half-up rounding
                self.bpm = int(math.floor(60000.0 / avg_interval + 0.5))
                bpm_updated = True
        return BeatResult(is_beat=True, bpm=self.bpm, bpm_updated=bpm_updated)

    def reset(self) -> None:
        self.history = [0.0] * max(1, int(self.config.beat.history_size))
        self._hist_idx = 0
        self.last_beat_ms = float("-inf")
        self.timestamps = deque(maxlen=max(2, int(self.config.beat.bpm_window)))
        self.bpm = 0
        self.beat_count = 0
