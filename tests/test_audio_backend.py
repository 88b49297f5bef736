import io
import sys
import types
import unittest
from unittest import mock

import numpy as np
import soundfile as sf

from audio_backend import SoundDeviceBackend, StreamHandle, classify_device_error
from audio_errors import DecodeError, DeviceError, MicrophonePermissionError
from config import AudioConfig


def _wav_bytes(frames: int = 4410, channels: int = 2, sample_rate: int = 44100) -> bytes:
    t = np.arange(frames) / sample_rate
    tone = 0.25 * np.sin(2 * np.pi * 440.0 * t)
    data = np.column_stack([tone] * channels).astype(np.float32)
    buf = io.BytesIO()
    sf.write(buf, data, sample_rate, format="WAV", subtype="FLOAT")
    return buf.getvalue()


class _FakeStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.closed = False
        self.fail_start = None

    def start(self):
        if self.fail_start is not None:
            raise self.fail_start
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


def _fake_sounddevice():
    sd = types.SimpleNamespace()

    class PortAudioError(Exception):
        pass

    class CallbackStop(Exception):
        pass

    sd.PortAudioError = PortAudioError
    sd.CallbackStop = CallbackStop
    sd.streams = []

    def make_stream(**kwargs):
        stream = _FakeStream(**kwargs)
        sd.streams.append(stream)
        return stream

    sd.OutputStream = make_stream
    sd.InputStream = make_stream
    sd.query_devices = lambda: [
        {"name": "Mic", "max_input_channels": 1, "max_output_channels": 0, "default_samplerate": 48000.0},
        {"name": "Speakers", "max_input_channels": 0, "max_output_channels": 2, "default_samplerate": 44100.0},
    ]
    return sd


class TestDecode(unittest.TestCase):
    def test_decode_wav_bytes(self):
        audio = SoundDeviceBackend().decode(_wav_bytes())
        self.assertEqual(audio.sample_rate, 44100)
        self.assertEqual(audio.samples.shape, (4410, 2))
        self.assertEqual(audio.samples.dtype, np.float32)
        self.assertAlmostEqual(audio.duration, 0.1)

    def test_decode_garbage_raises(self):
        with self.assertRaises(DecodeError):
            SoundDeviceBackend().decode(b"definitely not audio" * 10)

    def test_decode_empty_raises(self):
        with self.assertRaises(DecodeError):
            SoundDeviceBackend().decode(b"")


class TestErrorClassification(unittest.TestCase):
    def test_permission_text_maps_to_permission_error(self):
        err = classify_device_error(RuntimeError("Access denied by the system"), "Failed")
        self.assertIsInstance(err, MicrophonePermissionError)
        self.assertIsInstance(err, PermissionError)
        self.assertIsInstance(err, DeviceError)

    def test_builtin_permission_error(self):
        err = classify_device_error(PermissionError("nope"), "Failed")
        self.assertIsInstance(err, MicrophonePermissionError)

    def test_other_failures_are_device_errors(self):
        err = classify_device_error(RuntimeError("Invalid device [PaErrorCode -9996]"), "Failed to open microphone")
        self.assertIsInstance(err, DeviceError)
        self.assertNotIsInstance(err, MicrophonePermissionError)
        self.assertIn("Failed to open microphone", str(err))


class TestStreams(unittest.TestCase):
    def setUp(self):
        self.sd = _fake_sounddevice()
        patcher = mock.patch.dict(sys.modules, {"sounddevice": self.sd})
        patcher.start()
        self.addCleanup(patcher.stop)
        self.backend = SoundDeviceBackend(AudioConfig(blocksize=512, output_device=3))

    def test_open_output_passes_settings(self):
        on_finished = mock.Mock()
        handle = self.backend.open_output(48000, 2, lambda frames: None, on_finished)
        stream = self.sd.streams[-1]
        self.assertIsInstance(handle, StreamHandle)
        self.assertEqual(stream.kwargs["samplerate"], 48000)
        self.assertEqual(stream.kwargs["channels"], 2)
        self.assertEqual(stream.kwargs["blocksize"], 512)
        self.assertEqual(stream.kwargs["device"], 3)
        self.assertIs(stream.kwargs["finished_callback"], on_finished)
        self.assertFalse(stream.started)

    def test_output_callback_pads_and_stops_on_short_block(self):
        blocks = [np.full((3, 2), 0.5, dtype=np.float32)]
        self.backend.open_output(44100, 2, lambda frames: blocks.pop(0) if blocks else None, mock.Mock())
        callback = self.sd.streams[-1].kwargs["callback"]

        outdata = np.ones((5, 2), dtype=np.float32)
        with self.assertRaises(self.sd.CallbackStop):
            callback(outdata, 5, None, None)
        np.testing.assert_allclose(outdata[:3], 0.5)
        np.testing.assert_allclose(outdata[3:], 0.0)

    def test_output_callback_full_block_continues(self):
        self.backend.open_output(44100, 2, lambda frames: np.full((frames, 1), 0.25, dtype=np.float32), mock.Mock())
        callback = self.sd.streams[-1].kwargs["callback"]
        outdata = np.zeros((4, 2), dtype=np.float32)
        callback(outdata, 4, None, None)
        np.testing.assert_allclose(outdata, 0.25)

    def test_output_callback_stops_when_dry(self):
        self.backend.open_output(44100, 1, lambda frames: None, mock.Mock())
        callback = self.sd.streams[-1].kwargs["callback"]
        outdata = np.ones((4, 1), dtype=np.float32)
        with self.assertRaises(self.sd.CallbackStop):
            callback(outdata, 4, None, None)
        np.testing.assert_allclose(outdata, 0.0)

    def test_open_input_starts_and_forwards_copies(self):
        received = []
        handle = self.backend.open_input(44100, 1, received.append)
        stream = self.sd.streams[-1]
        self.assertTrue(stream.started)

        indata = np.ones((8, 1), dtype=np.float32)
        stream.kwargs["callback"](indata, 8, None, None)
        indata.fill(0.0)
        np.testing.assert_allclose(received[0], 1.0)

        handle.close()
        handle.close()
        self.assertTrue(stream.closed)

    def test_open_input_open_failure_is_device_error(self):
        def broken(**kwargs):
            raise self.sd.PortAudioError("Error querying device -1")

        self.sd.InputStream = broken
        with self.assertRaises(DeviceError):
            self.backend.open_input(44100, 1, lambda block: None)

    def test_open_input_start_denied_closes_stream(self):
        def denied(**kwargs):
            stream = _FakeStream(**kwargs)
            stream.fail_start = self.sd.PortAudioError("Permission denied")
            self.sd.streams.append(stream)
            return stream

        self.sd.InputStream = denied
        with self.assertRaises(MicrophonePermissionError):
            self.backend.open_input(44100, 1, lambda block: None)
        self.assertTrue(self.sd.streams[-1].closed)

    def test_list_devices(self):
        devices = self.backend.list_devices()
        self.assertEqual([d["name"] for d in devices], ["Mic", "Speakers"])
        self.assertEqual(devices[1]["index"], 1)
        self.assertEqual(devices[0]["max_input_channels"], 1)


if __name__ == "__main__":
    unittest.main()
