"""
Shader Studio audio - Device backend
Thin wrapper over sounddevice (PortAudio streams) and soundfile (decoding).
Both are imported lazily so the engine and its tests load on machines
without a PortAudio install.
"""

import io
from typing import Any, Callable, Optional

import numpy as np

from audio_errors import DecodeError, DeviceError, MicrophonePermissionError
from audio_sources import DecodedAudio
from config import AudioConfig
from logging_utils import log_event

_PERMISSION_MARKERS = ("permission", "denied", "not permitted", "not authorized")


def classify_device_error(exc: Exception, action: str) -> DeviceError:
    """Map a PortAudio / OS failure onto the engine's error types."""
    text = str(exc).lower()
    if isinstance(exc, PermissionError) or any(marker in text for marker in _PERMISSION_MARKERS):
        return MicrophonePermissionError(f"{action}: {exc}")
    return DeviceError(f"{action}: {exc}")


class StreamHandle:
    """Owns one PortAudio stream. close() is idempotent."""

    def __init__(self, stream):
        self._stream = stream

    @property
    def active(self) -> bool:
        return self._stream is not None and bool(getattr(self._stream, "active", False))

    def start(self) -> None:
        import sounddevice as sd

        if self._stream is None:
            raise DeviceError("Stream already closed")
        try:
            self._stream.start()
        except sd.PortAudioError as e:
            raise classify_device_error(e, "Failed to start stream") from e

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()


class SoundDeviceBackend:
    """Decode and stream I/O on top of sounddevice + soundfile."""

    def __init__(self, audio_config: Optional[AudioConfig] = None):
        self.audio_config = audio_config or AudioConfig()

    def decode(self, data: bytes) -> DecodedAudio:
        """Decode an encoded file (WAV/FLAC/OGG/...) into float32 PCM."""
        import soundfile as sf

        if not data:
            raise DecodeError("Empty audio data")
        try:
            samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
        except (sf.LibsndfileError, RuntimeError, TypeError, ValueError) as e:
            raise DecodeError(f"Could not decode audio: {e}") from e
        if samples.shape[0] == 0:
            raise DecodeError("Decoded audio contains no frames")
        log_event("INFO", "Backend", "Decoded audio", frames=samples.shape[0],
                  channels=samples.shape[1], sample_rate=sample_rate)
        return DecodedAudio(samples=np.ascontiguousarray(samples), sample_rate=int(sample_rate))

    def open_output(
        self,
        sample_rate: int,
        channels: int,
        render: Callable[[int], Optional[np.ndarray]],
        on_finished: Callable[[], None],
    ) -> StreamHandle:
        """Open an output stream fed by *render*; the stream stops itself when render runs dry."""
        import sounddevice as sd

        def callback(outdata, frames, time_info, status):
            if status:
                log_event("DEBUG", "Backend", "Output status", status=status)
            block = render(frames)
            if block is None:
                outdata.fill(0)
                raise sd.CallbackStop()
            rows = block.shape[0]
            if block.ndim == 1:
                block = block[:, None]
            if block.shape[1] in (1, outdata.shape[1]):
                outdata[:rows] = block
            else:
                outdata[:rows] = block[:, :outdata.shape[1]]
            if rows < frames:
                outdata[rows:].fill(0)
                raise sd.CallbackStop()

        try:
            stream = sd.OutputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="float32",
                blocksize=self.audio_config.blocksize,
                device=self.audio_config.output_device,
                callback=callback,
                finished_callback=on_finished,
            )
        except (sd.PortAudioError, ValueError) as e:
            raise classify_device_error(e, "Failed to open output stream") from e
        return StreamHandle(stream)

    def open_input(
        self,
        sample_rate: int,
        channels: int,
        on_block: Callable[[np.ndarray], Any],
    ) -> StreamHandle:
        """Open and start a capture stream pushing every block into *on_block*."""
        import sounddevice as sd

        def callback(indata, frames, time_info, status):
            if status:
                log_event("DEBUG", "Backend", "Input status", status=status)
            on_block(indata.copy())

        try:
            stream = sd.InputStream(
                samplerate=sample_rate,
                channels=channels,
                dtype="float32",
                blocksize=self.audio_config.blocksize,
                device=self.audio_config.input_device,
                callback=callback,
            )
        except (sd.PortAudioError, ValueError, PermissionError) as e:
            raise classify_device_error(e, "Failed to open microphone") from e
        handle = StreamHandle(stream)
        try:
            handle.start()
        except DeviceError:
            stream.close()
            raise
        log_event("INFO", "Backend", "Input capture started", sample_rate=sample_rate, channels=channels)
        return handle

    def list_devices(self) -> list[dict]:
        import sounddevice as sd

        try:
            devices = sd.query_devices()
        except sd.PortAudioError as e:
            raise classify_device_error(e, "Failed to query devices") from e
        return [
            {
                "index": idx,
                "name": dev["name"],
                "max_input_channels": dev["max_input_channels"],
                "max_output_channels": dev["max_output_channels"],
                "default_samplerate": dev["default_samplerate"],
            }
            for idx, dev in enumerate(devices)
        ]
