"""
Shader Studio audio - Sources
The three things the engine can be attached to (nothing, a decoded file, a
live microphone) and the one-shot playback node used to play a file.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np


class SourceKind(Enum):
    NONE = "none"
    FILE = "file"
    MIC = "mic"


class PlaybackState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class DecodedAudio:
    """PCM buffer, shape (frames, channels), float32 in [-1, 1]"""
    samples: np.ndarray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1]) if self.samples.ndim > 1 else 1

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)


@dataclass
class NoSource:
    kind: SourceKind = field(default=SourceKind.NONE, init=False)


@dataclass
class FileSource:
    """Decoded file plus its transport state; survives stop() for replay."""
    buffer: DecodedAudio
    file_name: str = ""
    state: PlaybackState = PlaybackState.STOPPED
    pause_offset: float = 0.0
    kind: SourceKind = field(default=SourceKind.FILE, init=False)

    @property
    def duration(self) -> float:
        return self.buffer.duration


@dataclass
class MicSource:
    """Live capture; owns the open input stream handle."""
    capture: Any
    sample_rate: int
    kind: SourceKind = field(default=SourceKind.MIC, init=False)


class PlaybackNode:
    """
    Single-use player for a decoded buffer.

    ``render(frames)`` is called from the output stream callback and returns
    the next block pushed through the graph. Once stopped, it cannot start
    again; every play() builds a fresh node.
    """

    def __init__(self, audio: DecodedAudio, process: Callable[[np.ndarray], np.ndarray]):
        self.audio = audio
        self._process = process
        self._position = 0
        self._lock = threading.Lock()
        self.started = False
        self.stopped = False
        self.ended = False
        self.handle = None

    @property
    def exhausted(self) -> bool:
        return self._position >= self.audio.frames

    @property
    def position_seconds(self) -> float:
        if self.audio.sample_rate <= 0:
            return 0.0
        return self._position / float(self.audio.sample_rate)

    def start(self, offset: float, open_stream: Callable[["PlaybackNode"], Any]) -> None:
        """Begin rendering at *offset* seconds via a stream opened by *open_stream*."""
        if self.started:
            raise RuntimeError("PlaybackNode can only be started once")
        self.started = True
        start_frame = int(round(max(0.0, offset) * self.audio.sample_rate))
        self._position = min(start_frame, self.audio.frames)
        self.handle = open_stream(self)
        self.handle.start()

    def render(self, frames: int) -> Optional[np.ndarray]:
        """Next block of at most *frames* rows, or None when nothing is left."""
        with self._lock:
            if self.stopped or self.exhausted:
                return None
            end = min(self._position + frames, self.audio.frames)
            block = self.audio.samples[self._position:end]
            self._position = end
        return self._process(block)

    def on_finished(self) -> None:
        """Stream finished callback; marks a natural end only."""
        with self._lock:
            if not self.stopped and self.exhausted:
                self.ended = True

    def stop(self) -> None:
        with self._lock:
            if self.stopped:
                return
            self.stopped = True
        if self.handle is not None:
            handle, self.handle = self.handle, None
            handle.close()
