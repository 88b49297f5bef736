# Shader Studio audio configuration
# All default values and constants

from dataclasses import dataclass, field, is_dataclass

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1

BAND_NAMES = ("bass", "mid", "high", "overall")


@dataclass
class BandConfig:
    """Per-band multipliers applied before smoothing"""
    gain: float = 1.0                 # >= 0, not clamped by the engine
    smoothing: float = 0.75           # [0, 0.98): 0 = instant, 0.98 = heavily damped
    sensitivity: float = 1.0          # Usually shared across all bands by the host


@dataclass
class BandsConfig:
    """The three filtered bands plus the full spectrum"""
    bass: BandConfig = field(default_factory=lambda: BandConfig(smoothing=0.75))
    mid: BandConfig = field(default_factory=lambda: BandConfig(smoothing=0.70))
    high: BandConfig = field(default_factory=lambda: BandConfig(smoothing=0.65))
    overall: BandConfig = field(default_factory=lambda: BandConfig(smoothing=0.80))

    def get(self, name: str) -> BandConfig:
        if name not in BAND_NAMES:
            raise KeyError(name)
        return getattr(self, name)


@dataclass
class BeatDetectionConfig:
    """Adaptive-threshold beat detection on the raw bass stream"""
    threshold: float = 0.6            # Absolute floor the raw bass must exceed
    cooldown_ms: float = 250.0        # Minimum spacing between beats (ms)
    history_size: int = 20            # Rolling-mean window (ticks)
    spike_ratio: float = 1.5          # Raw bass must exceed rolling mean * this
    bpm_window: int = 12              # Beat timestamps kept for the tempo estimate
    bpm_min_beats: int = 4            # Timestamps required before a BPM is published


@dataclass
class GraphConfig:
    """Band filter and analyser topology settings"""
    bass_cutoff_hz: float = 250.0     # Low-pass
    mid_center_hz: float = 1200.0     # Band-pass center
    mid_q: float = 0.5                # Band-pass width (edges = center / q apart)
    high_cutoff_hz: float = 4000.0    # High-pass
    filter_order: int = 2             # Butterworth order for the low/high-pass taps
    # Analyser resolution: wide full spectrum, small fast band taps
    full_fft_size: int = 2048
    band_fft_size: int = 256
    # Per-analyser smoothing time constant (0 = none, <1)
    full_smoothing_time_constant: float = 0.8
    bass_smoothing_time_constant: float = 0.85
    mid_smoothing_time_constant: float = 0.75
    high_smoothing_time_constant: float = 0.65
    # dB window mapped onto the 0-255 byte scale
    min_decibels: float = -100.0
    max_decibels: float = -30.0


@dataclass
class AudioConfig:
    """Device settings"""
    sample_rate: int = 44100          # Capture rate (file playback uses the decoded rate)
    blocksize: int = 1024
    input_channels: int = 1
    # Device index - None means use system default
    input_device: int | None = None
    output_device: int | None = None


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    bands: BandsConfig = field(default_factory=BandsConfig)
    beat: BeatDetectionConfig = field(default_factory=BeatDetectionConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)

    # Global
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)
    report_generation_enabled: bool = True    # Write session reports when a report dir is given
    levels_log_interval: int = 120    # Ticks between DEBUG level lines (0 = off)

    def set_sensitivity(self, value: float) -> None:
        """Write one sensitivity into every band."""
        for name in BAND_NAMES:
            self.bands.get(name).sensitivity = value


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; nested sections must be mappings."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if is_dataclass(current):
            log_event("WARNING", "Config", "Expected a mapping, keeping default", key=key)
            continue

        setattr(target, key, value)


# Flat parameter ids used by host control panels before the nested schema
LEGACY_PARAM_KEYS = {
    'gainBass': ('bass', 'gain'),
    'gainMid': ('mid', 'gain'),
    'gainHigh': ('high', 'gain'),
    'masterVolume': ('overall', 'gain'),
    'smoothBass': ('bass', 'smoothing'),
    'smoothMid': ('mid', 'smoothing'),
    'smoothHigh': ('high', 'smoothing'),
}


def _restore_none_fields(target, defaults) -> None:
    for key in vars(defaults):
        current = getattr(target, key)
        if is_dataclass(current):
            _restore_none_fields(current, getattr(defaults, key))
        elif current is None and getattr(defaults, key) is not None:
            setattr(target, key, getattr(defaults, key))


def migrate_config(config: Config, loaded_version, data: dict | None = None) -> None:
    """Upgrade older config structures to the current schema.
    Maps legacy flat parameter ids, restores defaults for nulls and bumps version."""
    try:
        version = int(loaded_version) if loaded_version is not None else 0
    except (TypeError, ValueError):
        version = 0

    if version < 1 and isinstance(data, dict):
        for key, (band, attr) in LEGACY_PARAM_KEYS.items():
            if data.get(key) is not None:
                setattr(config.bands.get(band), attr, float(data[key]))
        if data.get('sensitivity') is not None:
            config.set_sensitivity(float(data['sensitivity']))
        if data.get('beatThreshold') is not None:
            config.beat.threshold = float(data['beatThreshold'])
        if data.get('beatCooldown') is not None:
            config.beat.cooldown_ms = float(data['beatCooldown'])

    # Optional device indices legitimately stay None
    _restore_none_fields(config.bands, BandsConfig())
    _restore_none_fields(config.beat, BeatDetectionConfig())
    _restore_none_fields(config.graph, GraphConfig())
    if config.log_level is None:
        config.log_level = "INFO"
    if config.report_generation_enabled is None:
        config.report_generation_enabled = True
    if config.levels_log_interval is None:
        config.levels_log_interval = 120

    config.version = CURRENT_CONFIG_VERSION


# Host slider ranges (reference only; the engine never clamps to these)
AUDIO_PARAM_RANGES = {
    'gain': (0.0, 8.0),
    'smoothing': (0.0, 0.98),
    'beat_threshold': (0.1, 1.0),
    'sensitivity': (0.1, 5.0),
    'volume': (0.0, 1.5),
}
