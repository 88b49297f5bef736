"""
Shader Studio audio - Audio Engine
Owns the single active source (decoded file or live microphone), rebuilds the
signal graph on every source change and, once per host frame, turns the four
analyser snapshots into smoothed band values, beats and a running BPM.
"""

import asyncio
import os
import time
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np

from audio_backend import SoundDeviceBackend
from audio_errors import DecodeError
from audio_session_reporter import AudioSessionReporter
from audio_sources import (
    DecodedAudio,
    FileSource,
    MicSource,
    NoSource,
    PlaybackNode,
    PlaybackState,
    SourceKind,
)
from band_energy import BandEnergySmoother
from beat_detector import BeatDetector
from config import BAND_NAMES, BandsConfig, BeatDetectionConfig, Config
from logging_utils import log_event, set_log_level
from signal_graph import SignalGraph


class AudioEngine:
    """
    Host-driven analysis engine.

    The host calls ``update()`` once per render frame and reads ``values``.
    Callback slots hold a single handler each; assigning replaces the previous
    one. All callbacks run inside ``update()`` on the caller's thread.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        backend=None,
        clock: Callable[[], float] = time.perf_counter,
        report_dir: Optional[Union[str, Path]] = None,
    ):
        self.config = config or Config()
        set_log_level(self.config.log_level)
        self.backend = backend or SoundDeviceBackend(self.config.audio)
        self._clock = clock

        self.source: Union[NoSource, FileSource, MicSource] = NoSource()
        self._graph: Optional[SignalGraph] = None
        self._node: Optional[PlaybackNode] = None
        self._start_ref = 0.0

        self._smoother = BandEnergySmoother(self.config)
        self._detector = BeatDetector(self.config)
        self._spectrum: Optional[np.ndarray] = None
        self._tick = 0

        # Single-slot callbacks
        self.on_beat: Optional[Callable[[], None]] = None
        self.on_bpm_update: Optional[Callable[[int], None]] = None
        self.on_ended: Optional[Callable[[], None]] = None
        self.on_time_update: Optional[Callable[[float, float], None]] = None

        self._reporter: Optional[AudioSessionReporter] = None
        if report_dir is not None and self.config.report_generation_enabled:
            self._reporter = AudioSessionReporter(Path(report_dir))

        self._reset_session_stats()

    # ── Session stats ────────────────────────────────────────────────────

    def _reset_session_stats(self) -> None:
        self._session_started_at: float = time.time()
        self._session_source_kind: str = SourceKind.NONE.value
        self._session_frame_count: int = 0
        self._session_beat_count: int = 0
        self._session_raw_min: dict[str, Optional[float]] = {name: None for name in BAND_NAMES}
        self._session_raw_max: dict[str, Optional[float]] = {name: None for name in BAND_NAMES}
        self._session_raw_sum: dict[str, float] = {name: 0.0 for name in BAND_NAMES}

    def _update_session_stats(self, raw: dict[str, float], is_beat: bool) -> None:
        self._session_frame_count += 1
        if is_beat:
            self._session_beat_count += 1
        for name in BAND_NAMES:
            value = raw[name]
            self._session_raw_sum[name] += value
            low = self._session_raw_min[name]
            if low is None or value < low:
                self._session_raw_min[name] = value
            high = self._session_raw_max[name]
            if high is None or value > high:
                self._session_raw_max[name] = value

    def _session_summary(self) -> Optional[dict]:
        if self._session_frame_count <= 0:
            return None

        ended_at = time.time()
        frame_count = float(self._session_frame_count)
        summary = {
            "session_started_at": self._session_started_at,
            "session_ended_at": ended_at,
            "seconds": max(0.0, ended_at - self._session_started_at),
            "source": self._session_source_kind,
            "frames": self._session_frame_count,
            "beats": self._session_beat_count,
            "bpm": self._detector.bpm,
        }
        for name in BAND_NAMES:
            summary[f"{name}_raw_low"] = float(self._session_raw_min[name] or 0.0)
            summary[f"{name}_raw_high"] = float(self._session_raw_max[name] or 0.0)
            summary[f"{name}_raw_mean"] = self._session_raw_sum[name] / frame_count
        return summary

    def _log_session_summary(self) -> None:
        summary = self._session_summary()
        if summary is None:
            return

        log_event(
            "INFO",
            "Audio",
            "Session levels summary",
            source=summary["source"],
            frames=summary["frames"],
            seconds=f"{summary['seconds']:.1f}",
            beats=summary["beats"],
            bpm=summary["bpm"],
            bass_raw_mean=f"{summary['bass_raw_mean']:.4f}",
            bass_raw_span=f"{(summary['bass_raw_high'] - summary['bass_raw_low']):.4f}",
            mid_raw_mean=f"{summary['mid_raw_mean']:.4f}",
            high_raw_mean=f"{summary['high_raw_mean']:.4f}",
            overall_raw_mean=f"{summary['overall_raw_mean']:.4f}",
        )

        if self._reporter is not None:
            try:
                self._reporter.save_session(summary)
            except OSError as e:
                log_event("WARNING", "Audio", "Failed to write session report", error=e)

    # ── Graph lifecycle ──────────────────────────────────────────────────

    def _build_graph(self, sample_rate: int) -> SignalGraph:
        """Build a detached graph; it only becomes live through _attach_graph."""
        return SignalGraph(sample_rate, self.config.graph, self.config.bands.overall.gain)

    def _attach_graph(self, graph: SignalGraph, kind: SourceKind) -> None:
        # Never two graphs alive at once
        self._release_graph()
        self._graph = graph
        self._spectrum = None
        self._reset_session_stats()
        self._session_source_kind = kind.value
        log_event("DEBUG", "Graph", "Built", sample_rate=graph.sample_rate, source=kind.value)

    def _release_graph(self) -> None:
        if self._graph is None:
            return
        graph, self._graph = self._graph, None
        self._log_session_summary()
        graph.release()
        self._spectrum = None
        log_event("DEBUG", "Graph", "Released")

    def _open_output(self, node: PlaybackNode):
        audio = node.audio
        return self.backend.open_output(audio.sample_rate, audio.channels, node.render, node.on_finished)

    def _start_playback(self, source: FileSource, offset: float) -> None:
        graph = self._build_graph(source.buffer.sample_rate)
        node = PlaybackNode(source.buffer, graph.process)
        try:
            node.start(offset, self._open_output)
        except BaseException:
            node.stop()
            graph.release()
            raise
        self._attach_graph(graph, SourceKind.FILE)
        self._node = node
        self._start_ref = self._clock() - offset

    def _stop_playback(self) -> None:
        node, self._node = self._node, None
        if node is not None:
            try:
                node.stop()
            except Exception as e:
                log_event("WARNING", "Audio", "Failed to close output stream", error=e)
        self._release_graph()

    # ── File source ──────────────────────────────────────────────────────

    async def load_file(self, source: Union[bytes, bytearray, str, os.PathLike], file_name: str = "") -> DecodedAudio:
        """Decode *source* (encoded bytes or a path) and attach it, Stopped at offset 0."""
        self.stop()
        self.stop_mic()
        self.source = NoSource()

        if isinstance(source, (str, os.PathLike)):
            path = Path(source)
            file_name = file_name or path.name
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                log_event("ERROR", "Audio", "Failed to read file", path=path, error=e)
                raise DecodeError(f"Could not read {path}: {e}") from e
        else:
            data = bytes(source)

        try:
            decoded = await asyncio.to_thread(self.backend.decode, data)
        except DecodeError as e:
            log_event("ERROR", "Audio", "Decode failed", file=file_name or "<bytes>", error=e)
            raise

        self.source = FileSource(buffer=decoded, file_name=file_name)
        log_event("INFO", "Audio", "File loaded", file=file_name or "<bytes>",
                  duration=f"{decoded.duration:.2f}s", sample_rate=decoded.sample_rate)
        return decoded

    def play(self) -> None:
        """Stopped/Paused -> Playing on a fresh playback node. No-op when already playing."""
        source = self.source
        if not isinstance(source, FileSource) or source.state is PlaybackState.PLAYING:
            return
        self._start_playback(source, source.pause_offset)
        source.state = PlaybackState.PLAYING
        log_event("INFO", "Audio", "Play", offset=f"{source.pause_offset:.2f}s")

    def pause(self) -> None:
        source = self.source
        if not isinstance(source, FileSource) or source.state is not PlaybackState.PLAYING:
            return
        offset = min(max(0.0, self._clock() - self._start_ref), source.duration)
        self._stop_playback()
        source.pause_offset = offset
        source.state = PlaybackState.PAUSED
        log_event("INFO", "Audio", "Paused", offset=f"{offset:.2f}s")

    def stop(self) -> None:
        """Any file state -> Stopped at offset 0. Keeps the decoded buffer; never raises."""
        source = self.source
        if not isinstance(source, FileSource):
            return
        self._stop_playback()
        was_active = source.state is not PlaybackState.STOPPED
        source.state = PlaybackState.STOPPED
        source.pause_offset = 0.0
        if was_active:
            log_event("INFO", "Audio", "Stopped")

    def seek(self, t: float) -> None:
        source = self.source
        if not isinstance(source, FileSource):
            return
        target = max(0.0, min(float(t), source.duration))
        if source.state is PlaybackState.PLAYING:
            self._stop_playback()
            source.state = PlaybackState.STOPPED
            source.pause_offset = target
            self.play()
        else:
            source.pause_offset = target
        log_event("INFO", "Audio", "Seek", offset=f"{target:.2f}s")

    def set_volume(self, volume: float) -> None:
        self.config.bands.overall.gain = volume
        if self._graph is not None:
            self._graph.master_gain.gain = volume

    def get_current_time(self) -> float:
        source = self.source
        if not isinstance(source, FileSource):
            return 0.0
        if source.state is PlaybackState.PLAYING:
            return min(max(0.0, self._clock() - self._start_ref), source.duration)
        return source.pause_offset

    def _handle_playback_ended(self) -> None:
        self._stop_playback()
        source = self.source
        if isinstance(source, FileSource):
            source.state = PlaybackState.STOPPED
            source.pause_offset = 0.0
        log_event("INFO", "Audio", "Playback ended")
        if self.on_ended is not None:
            self.on_ended()

    # ── Microphone ───────────────────────────────────────────────────────

    async def start_mic(self) -> None:
        """Stop any file playback, then attach live capture.

        Raises MicrophonePermissionError / DeviceError with no graph left
        behind; a previously loaded file stays attached, Stopped. The same
        holds for any other backend failure and for cancellation: a capture
        the device thread opens after the caller gave up is closed.
        """
        self.stop()
        self.stop_mic()

        audio_cfg = self.config.audio
        graph = self._build_graph(audio_cfg.sample_rate)
        opening = asyncio.ensure_future(asyncio.to_thread(
            self.backend.open_input, audio_cfg.sample_rate, audio_cfg.input_channels, graph.process))
        try:
            capture = await asyncio.shield(opening)
        except asyncio.CancelledError:
            graph.release()
            if opening.done():
                self._close_abandoned_capture(opening)
            else:
                opening.add_done_callback(self._close_abandoned_capture)
            log_event("WARNING", "Audio", "Microphone start cancelled")
            raise
        except BaseException as e:
            graph.release()
            log_event("ERROR", "Audio", "Microphone unavailable", error=e)
            raise

        self._attach_graph(graph, SourceKind.MIC)
        self.source = MicSource(capture=capture, sample_rate=audio_cfg.sample_rate)
        log_event("INFO", "Audio", "Microphone started", sample_rate=audio_cfg.sample_rate)

    @staticmethod
    def _close_abandoned_capture(opening: asyncio.Future) -> None:
        if opening.cancelled() or opening.exception() is not None:
            return
        try:
            opening.result().close()
        except Exception as e:
            log_event("WARNING", "Audio", "Failed to close capture stream", error=e)
        else:
            log_event("DEBUG", "Audio", "Closed capture opened after cancellation")

    def stop_mic(self) -> None:
        """Release the capture handle and its graph. Safe when not active."""
        source = self.source
        if not isinstance(source, MicSource):
            return
        try:
            source.capture.close()
        except Exception as e:
            log_event("WARNING", "Audio", "Failed to close capture stream", error=e)
        self._release_graph()
        self.source = NoSource()
        log_event("INFO", "Audio", "Microphone stopped")

    # ── Per-frame analysis ───────────────────────────────────────────────

    def update(self) -> None:
        """One host frame: sample analysers, smooth, detect beats, fire callbacks."""
        if self._node is not None and self._node.ended:
            self._handle_playback_ended()

        graph = self._graph
        if graph is None:
            self._smoother.decay()
            return

        graph.master_gain.gain = self.config.bands.overall.gain
        snapshots = graph.pull_magnitudes()
        raw = self._smoother.update(snapshots)

        spectrum = snapshots["overall"].copy()
        spectrum.flags.writeable = False
        self._spectrum = spectrum

        result = self._detector.update(raw["bass"], self._clock() * 1000.0)
        self._update_session_stats(raw, result.is_beat)
        self._tick += 1

        interval = self.config.levels_log_interval
        if interval and self._tick % interval == 0:
            log_event("DEBUG", "Levels", "Band values",
                      bass=self.values["bass"], mid=self.values["mid"],
                      high=self.values["high"], overall=self.values["overall"], bpm=result.bpm)

        if result.is_beat:
            log_event("DEBUG", "Beat", "Beat", raw_bass=raw["bass"], bpm=result.bpm)
            if result.bpm_updated:
                log_event("DEBUG", "Tempo", "BPM updated", bpm=result.bpm)
                if self.on_bpm_update is not None:
                    self.on_bpm_update(result.bpm)
            if self.on_beat is not None:
                self.on_beat()

        source = self.source
        if (isinstance(source, FileSource) and source.state is PlaybackState.PLAYING
                and self.on_time_update is not None):
            self.on_time_update(self.get_current_time(), source.duration)

    # ── Publication surface ──────────────────────────────────────────────

    @property
    def values(self) -> dict[str, float]:
        return self._smoother.values

    def get_latest_spectrum(self) -> Optional[np.ndarray]:
        """Read-only full-spectrum byte magnitudes from the last update(), or None."""
        if self._graph is None:
            return None
        return self._spectrum

    @property
    def source_kind(self) -> SourceKind:
        return self.source.kind

    @property
    def playback_state(self) -> PlaybackState:
        source = self.source
        if isinstance(source, FileSource):
            return source.state
        return PlaybackState.STOPPED

    @property
    def is_playing(self) -> bool:
        return self.playback_state is PlaybackState.PLAYING

    @property
    def is_paused(self) -> bool:
        return self.playback_state is PlaybackState.PAUSED

    @property
    def is_live(self) -> bool:
        return isinstance(self.source, MicSource)

    @property
    def duration(self) -> float:
        source = self.source
        return source.duration if isinstance(source, FileSource) else 0.0

    @property
    def pause_offset(self) -> float:
        source = self.source
        return source.pause_offset if isinstance(source, FileSource) else 0.0

    @property
    def file_name(self) -> str:
        source = self.source
        return source.file_name if isinstance(source, FileSource) else ""

    @property
    def bpm(self) -> int:
        return self._detector.bpm

    @property
    def sensitivity(self) -> float:
        return self.config.bands.overall.sensitivity

    @sensitivity.setter
    def sensitivity(self, value: float) -> None:
        self.config.set_sensitivity(value)

    @property
    def beat_threshold(self) -> float:
        return self.config.beat.threshold

    @beat_threshold.setter
    def beat_threshold(self, value: float) -> None:
        self.config.beat.threshold = value

    @property
    def beat_cooldown_ms(self) -> float:
        return self.config.beat.cooldown_ms

    @beat_cooldown_ms.setter
    def beat_cooldown_ms(self, value: float) -> None:
        self.config.beat.cooldown_ms = value

    # ── Teardown ─────────────────────────────────────────────────────────

    def reset(self) -> None:
        """Restore band and beat settings to defaults and clear all analysis state."""
        self.config.bands = BandsConfig()
        self.config.beat = BeatDetectionConfig()
        self._smoother.reset()
        self._detector.reset()
        if self._graph is not None:
            self._graph.master_gain.gain = self.config.bands.overall.gain
        log_event("INFO", "Audio", "Reset")

    def dispose(self) -> None:
        """Release everything; the engine can still be reused afterwards."""
        self.stop()
        self.stop_mic()
        self.source = NoSource()
        self.reset()
        log_event("INFO", "Audio", "Disposed")
