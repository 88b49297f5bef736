"""
Shader Studio audio - error taxonomy.

Acquisition failures surface as these types; per-frame analysis never raises.
"""


class AudioEngineError(Exception):
    """Base class for audio engine failures"""


class DecodeError(AudioEngineError):
    """Audio bytes could not be decoded (malformed or unsupported format)"""


class DeviceError(AudioEngineError):
    """Capture/playback device unavailable, busy, or failed to open"""


class MicrophonePermissionError(DeviceError, PermissionError):
    """Live capture was denied by the platform"""
