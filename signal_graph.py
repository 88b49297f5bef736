"""
Shader Studio audio - Signal Graph
Routing topology built fresh for every attached source:

    source -> master gain -> full analyser -> output
    source -> low-pass  (250 Hz)         -> bass analyser  (silent tap)
    source -> band-pass (1200 Hz center) -> mid analyser   (silent tap)
    source -> high-pass (4000 Hz)        -> high analyser  (silent tap)

Nodes expose connect / pull_magnitudes / release, so any backend that can
push sample blocks into ``SignalGraph.process`` gets band splitting for free.
"""

import threading

import numpy as np
from scipy.signal import butter, get_window, sosfilt, sosfilt_zi

from config import GraphConfig
from frequency_utils import (
    bandpass_edges,
    decibels_to_bytes,
    normalize_cutoff,
)


def _to_mono(block: np.ndarray) -> np.ndarray:
    if block.ndim > 1:
        if block.shape[1] == 1:
            return block[:, 0]
        return block.mean(axis=1)
    return block


class AudioNode:
    """Push-style node: processes a block and forwards it to its outputs."""

    def __init__(self):
        self._outputs: list["AudioNode"] = []
        self.released = False

    def connect(self, node: "AudioNode") -> "AudioNode":
        self._outputs.append(node)
        return node

    def disconnect(self) -> None:
        self._outputs.clear()

    @property
    def outputs(self) -> tuple:
        return tuple(self._outputs)

    def push(self, block: np.ndarray) -> None:
        if self.released:
            return
        out = self._process(block)
        for node in self._outputs:
            node.push(out)

    def _process(self, block: np.ndarray) -> np.ndarray:
        return block

    def release(self) -> None:
        self.disconnect()
        self.released = True


class GainNode(AudioNode):
    def __init__(self, gain: float = 1.0):
        super().__init__()
        self.gain = gain

    def _process(self, block: np.ndarray) -> np.ndarray:
        return block * np.float32(self.gain)


class BandFilterNode(AudioNode):
    """Butterworth filter in second-order sections with state kept across blocks."""

    def __init__(self, sos: np.ndarray, kind: str):
        super().__init__()
        self.kind = kind
        self.sos = sos
        self._zi_template = sosfilt_zi(sos)
        self._zi = None

    def _process(self, block: np.ndarray) -> np.ndarray:
        mono = _to_mono(block)
        if len(mono) == 0:
            return mono
        if self._zi is None:
            self._zi = self._zi_template * mono[0]
        filtered, self._zi = sosfilt(self.sos, mono, zi=self._zi)
        return filtered.astype(np.float32)

    def release(self) -> None:
        super().release()
        self._zi = None


class AnalyserNode(AudioNode):
    """
    Spectrum analyser tap.

    Keeps the most recent ``fft_size`` samples; ``pull_magnitudes`` returns
    ``fft_size // 2`` bytes (0-255) after Blackman windowing, temporal smoothing
    and dB mapping. Samples arrive on the audio thread, pulls happen on the
    caller's frame tick.
    """

    def __init__(self, fft_size: int, smoothing_time_constant: float,
                 min_decibels: float, max_decibels: float):
        super().__init__()
        self.fft_size = fft_size
        self.frequency_bin_count = fft_size // 2
        self.smoothing_time_constant = smoothing_time_constant
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels

        self._ring = np.zeros(fft_size, dtype=np.float32)
        self._write_idx = 0
        self._ring_lock = threading.Lock()
        self._window = get_window("blackman", fft_size)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)
        self._bytes = np.zeros(self.frequency_bin_count, dtype=np.uint8)

    def _process(self, block: np.ndarray) -> np.ndarray:
        mono = _to_mono(block)
        n = len(mono)
        if n == 0:
            return block
        with self._ring_lock:
            if n >= self.fft_size:
                self._ring[:] = mono[-self.fft_size:]
                self._write_idx = 0
            else:
                end = self._write_idx + n
                if end <= self.fft_size:
                    self._ring[self._write_idx:end] = mono
                else:
                    split = self.fft_size - self._write_idx
                    self._ring[self._write_idx:] = mono[:split]
                    self._ring[:n - split] = mono[split:]
                self._write_idx = end % self.fft_size
        return block

    def time_domain(self) -> np.ndarray:
        """Most recent fft_size samples, oldest first."""
        with self._ring_lock:
            return np.concatenate((self._ring[self._write_idx:], self._ring[:self._write_idx]))

    def pull_magnitudes(self) -> np.ndarray:
        """Latest byte magnitude snapshot (the array is reused between pulls)."""
        frame = self.time_domain() * self._window
        spectrum = np.abs(np.fft.rfft(frame))[:self.frequency_bin_count] / self.fft_size
        tau = self.smoothing_time_constant
        self._smoothed *= tau
        self._smoothed += (1.0 - tau) * spectrum
        return decibels_to_bytes(self._smoothed, self.min_decibels, self.max_decibels, out=self._bytes)

    def release(self) -> None:
        super().release()
        with self._ring_lock:
            self._ring.fill(0.0)
            self._write_idx = 0
        self._smoothed.fill(0.0)


class OutputNode(AudioNode):
    """Audible destination; holds the last rendered block for the output stream."""

    def __init__(self):
        super().__init__()
        self._last: np.ndarray | None = None

    def _process(self, block: np.ndarray) -> np.ndarray:
        self._last = block
        return block

    def take(self) -> np.ndarray | None:
        block, self._last = self._last, None
        return block


class SignalGraph:
    """
    All nodes bound to one source. Never rewired in place: a source change
    releases this graph and builds a new one.
    """

    def __init__(self, sample_rate: int, config: GraphConfig, master_gain: float = 1.0):
        self.sample_rate = sample_rate
        self.input = AudioNode()
        self.master_gain = GainNode(master_gain)

        self.full_analyser = AnalyserNode(
            config.full_fft_size, config.full_smoothing_time_constant,
            config.min_decibels, config.max_decibels)
        self.output = OutputNode()

        self.bass_filter = BandFilterNode(
            butter(config.filter_order, normalize_cutoff(config.bass_cutoff_hz, sample_rate),
                   btype='lowpass', output='sos'),
            'lowpass')
        low_hz, high_hz = bandpass_edges(config.mid_center_hz, config.mid_q)
        low_norm = normalize_cutoff(low_hz, sample_rate)
        high_norm = max(low_norm + 0.001, normalize_cutoff(high_hz, sample_rate))
        self.mid_filter = BandFilterNode(
            butter(1, [low_norm, min(0.999, high_norm)], btype='bandpass', output='sos'),
            'bandpass')
        self.high_filter = BandFilterNode(
            butter(config.filter_order, normalize_cutoff(config.high_cutoff_hz, sample_rate),
                   btype='highpass', output='sos'),
            'highpass')

        self.bass_analyser = AnalyserNode(
            config.band_fft_size, config.bass_smoothing_time_constant,
            config.min_decibels, config.max_decibels)
        self.mid_analyser = AnalyserNode(
            config.band_fft_size, config.mid_smoothing_time_constant,
            config.min_decibels, config.max_decibels)
        self.high_analyser = AnalyserNode(
            config.band_fft_size, config.high_smoothing_time_constant,
            config.min_decibels, config.max_decibels)

        # Output path
        self.input.connect(self.master_gain).connect(self.full_analyser).connect(self.output)
        # Silent band taps
        self.input.connect(self.bass_filter).connect(self.bass_analyser)
        self.input.connect(self.mid_filter).connect(self.mid_analyser)
        self.input.connect(self.high_filter).connect(self.high_analyser)

        self.released = False

    def nodes(self) -> list[AudioNode]:
        return [
            self.input, self.master_gain, self.full_analyser, self.output,
            self.bass_filter, self.mid_filter, self.high_filter,
            self.bass_analyser, self.mid_analyser, self.high_analyser,
        ]

    def analysers(self) -> dict[str, AnalyserNode]:
        return {
            'overall': self.full_analyser,
            'bass': self.bass_analyser,
            'mid': self.mid_analyser,
            'high': self.high_analyser,
        }

    def process(self, block: np.ndarray) -> np.ndarray:
        """Push one source block through the graph; returns the audible block."""
        if self.released:
            return np.zeros_like(block)
        self.input.push(block)
        out = self.output.take()
        return out if out is not None else np.zeros_like(block)

    def pull_magnitudes(self) -> dict[str, np.ndarray]:
        return {name: analyser.pull_magnitudes() for name, analyser in self.analysers().items()}

    def release(self) -> None:
        """Disconnect and release every node. Safe to call twice."""
        if self.released:
            return
        self.released = True
        for node in self.nodes():
            node.release()
