# Audio Reaction Configuration
# All default values, constants and the frequency band table

from dataclasses import dataclass, field, is_dataclass
from enum import IntEnum
from typing import NamedTuple

from logging_utils import log_event


CURRENT_CONFIG_VERSION = 1

# Audio format
SAMPLE_RATE = 48000
CHANNELS = 2
DEFAULT_BYTES_PER_SAMPLE = 4      # 32-bit float
MIN_BUFFER_SAMPLES = 128          # Total interleaved samples below which a buffer is rejected

# Gain / AGC
DEFAULT_GAIN = 1.0
MIN_GAIN = 0.1
MAX_GAIN = 5.0
TARGET_LEVEL = 0.5
AGC_RAISE_RATE = 0.1              # Step toward a higher gain (slow release)
AGC_LOWER_RATE = 0.3              # Step toward a lower gain (fast attack)
MIN_VALID_SIGNAL = 1e-6

# Volume mix (empirical, not user-tunable)
RMS_WEIGHT = 0.7
RMS_SCALE = 4.0
SPECTRAL_WEIGHT = 0.3
SPECTRAL_SCALE = 0.25
SPECTRAL_CEILING_HZ = 20000.0

# Direction
DEFAULT_SMOOTHING = 0.5
DEFAULT_DIRECTION_THRESHOLD = 0.01
CENTER = 0.5
CENTER_DRIFT_RATE = 0.1           # Fraction of the distance to center covered per call

# Frequency bands
BAND_COUNT = 7
DEFAULT_FREQUENCY_SMOOTHING = 0.7

# Spikes
DEFAULT_SPIKE_THRESHOLD = 2.0     # 200% increase (volume tripling)
MIN_SPIKE_THRESHOLD = 0.5         # 50% increase
MAX_SPIKE_THRESHOLD = 5.0         # 500% increase
SPIKE_MIN_VOLUME = 0.1
SPIKE_MIN_INTERVAL_MS = 100
SPIKE_DURATION_MS = 50
VOLUME_HISTORY_SIZE = 3

# FFT size options
FFT_SIZE_LOW = 4096               # ~11.7 Hz resolution at 48 kHz
FFT_SIZE_MEDIUM = 8192            # ~5.86 Hz resolution
FFT_SIZE_HIGH = 16384             # ~2.93 Hz resolution
DEFAULT_FFT_SIZE = FFT_SIZE_MEDIUM
FFT_SIZES = (FFT_SIZE_LOW, FFT_SIZE_MEDIUM, FFT_SIZE_HIGH)

# Session
DEFAULT_STALE_TIMEOUT_MS = 1000


class FrequencyBand(NamedTuple):
    low: float
    high: float
    name: str
    parameter: str
    description: str


# Ordered low -> high. Brilliance is clamped to Nyquist when mapped to bins.
FREQUENCY_BANDS: tuple[FrequencyBand, ...] = (
    FrequencyBand(20.0, 60.0, "Sub Bass", "audio_subbass", "Bass drops, explosions, rumble"),
    FrequencyBand(60.0, 250.0, "Bass", "audio_bass", "Bass guitar, kick drums, male vocals"),
    FrequencyBand(250.0, 500.0, "Low Mid", "audio_lowmid", "Bass line melodies, lower harmonics"),
    FrequencyBand(500.0, 2000.0, "Mid", "audio_mid", "Main vocal range, most instrument fundamentals"),
    FrequencyBand(2000.0, 4000.0, "Upper Mid", "audio_uppermid", "Vocal clarity, instrument attack"),
    FrequencyBand(4000.0, 6000.0, "Presence", "audio_presence", "Speech intelligibility, high harmonics"),
    FrequencyBand(6000.0, 25000.0, "Brilliance", "audio_brilliance", "Cymbals, sibilance, sparkle"),
)

DEFAULT_ENABLED_BANDS = (False, True, True, True, False, False, False)


@dataclass(frozen=True)
class AudioConfiguration:
    """Immutable engine configuration. Replace it, never mutate it.

    Values are expected to be in range already; see build_audio_configuration.
    """
    gain: float = DEFAULT_GAIN
    enable_agc: bool = True
    smoothing: float = DEFAULT_SMOOTHING
    direction_threshold: float = DEFAULT_DIRECTION_THRESHOLD
    frequency_smoothing: float = DEFAULT_FREQUENCY_SMOOTHING
    spike_threshold: float = DEFAULT_SPIKE_THRESHOLD
    fft_size: int = DEFAULT_FFT_SIZE
    band_count: int = BAND_COUNT


class PresetSelection(IntEnum):
    """Avatar presets - fix gain/smoothing/threshold/FFT size for a use case"""
    CUSTOM = 0
    DEFAULT = 1            # Balanced settings for most use cases
    LOW_LATENCY = 2        # Real-time responsiveness
    VOICE_OPTIMIZED = 3    # Speech and vocal patterns
    HIGH_SMOOTHING = 4     # Stable, gradual reactions
    MUSIC_OPTIMIZED = 5    # Musical performance and visualization


class PresetValues(NamedTuple):
    gain: float
    smoothing: float
    direction_threshold: float
    fft_size: int


PRESETS: dict[PresetSelection, PresetValues] = {
    PresetSelection.DEFAULT: PresetValues(1.0, 0.5, 0.01, FFT_SIZE_MEDIUM),
    PresetSelection.LOW_LATENCY: PresetValues(1.2, 0.3, 0.01, FFT_SIZE_LOW),
    PresetSelection.VOICE_OPTIMIZED: PresetValues(1.5, 0.4, 0.02, FFT_SIZE_LOW),
    PresetSelection.HIGH_SMOOTHING: PresetValues(1.0, 0.8, 0.015, FFT_SIZE_HIGH),
    PresetSelection.MUSIC_OPTIMIZED: PresetValues(1.1, 0.5, 0.01, FFT_SIZE_MEDIUM),
}


@dataclass
class ReactionSettings:
    """User-facing reaction settings (persisted)"""
    preset: PresetSelection = PresetSelection.DEFAULT
    enable_agc: bool = True
    scale_frequency_with_volume: bool = True   # False = bands show pure proportions (sum to 1)
    spike_threshold: float = DEFAULT_SPIKE_THRESHOLD
    # Custom preset values (ignored by the other presets)
    gain: float = DEFAULT_GAIN                 # 0.1 = quiet, 5.0 = loud
    smoothing: float = DEFAULT_SMOOTHING       # 0 = immediate but jittery, 1 = smooth but delayed
    direction_threshold: float = DEFAULT_DIRECTION_THRESHOLD  # Min volume to update direction (0-0.1)
    frequency_smoothing: float = 0.5           # Higher = less flicker, more latency
    fft_size: int = DEFAULT_FFT_SIZE


@dataclass
class BandToggles:
    """Which frequency bands feed direction and band output"""
    sub_bass: bool = False
    bass: bool = True
    low_mid: bool = True
    mid: bool = True
    upper_mid: bool = False
    presence: bool = False
    brilliance: bool = False

    def as_mask(self) -> tuple[bool, ...]:
        return (
            bool(self.sub_bass),
            bool(self.bass),
            bool(self.low_mid),
            bool(self.mid),
            bool(self.upper_mid),
            bool(self.presence),
            bool(self.brilliance),
        )


@dataclass
class SessionSettings:
    """Capture session settings"""
    bytes_per_sample: int = DEFAULT_BYTES_PER_SAMPLE
    stale_timeout_ms: int = DEFAULT_STALE_TIMEOUT_MS   # Reset engine when buffers stop for this long
    device: int | str | None = None                    # None = system default input
    blocksize: int = 0                                 # 0 = device native cadence


@dataclass
class Config:
    """Master configuration"""
    version: int = 1                  # Schema version for persisted configs
    reaction: ReactionSettings = field(default_factory=ReactionSettings)
    bands: BandToggles = field(default_factory=BandToggles)
    session: SessionSettings = field(default_factory=SessionSettings)
    log_level: str = "INFO"           # Logging level (DEBUG/INFO/WARNING/ERROR)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


def nearest_fft_size(value) -> int:
    """Snap a requested transform size to the closest supported size."""
    try:
        requested = int(value)
    except (TypeError, ValueError):
        return DEFAULT_FFT_SIZE
    return min(FFT_SIZES, key=lambda size: (abs(size - requested), size))


def build_audio_configuration(config: Config) -> AudioConfiguration:
    """Resolve the preset and clamp user settings into an engine configuration."""
    reaction = config.reaction
    preset = PRESETS.get(reaction.preset)
    if preset is None:
        preset = PresetValues(reaction.gain, reaction.smoothing,
                              reaction.direction_threshold, reaction.fft_size)

    return AudioConfiguration(
        gain=clamp(preset.gain, MIN_GAIN, MAX_GAIN),
        enable_agc=bool(reaction.enable_agc),
        smoothing=clamp(preset.smoothing, 0.0, 1.0),
        direction_threshold=clamp(preset.direction_threshold, 0.0, 1.0),
        frequency_smoothing=clamp(reaction.frequency_smoothing, 0.0, 1.0),
        spike_threshold=clamp(reaction.spike_threshold, MIN_SPIKE_THRESHOLD, MAX_SPIKE_THRESHOLD),
        fft_size=nearest_fft_size(preset.fft_size),
        band_count=BAND_COUNT,
    )


def apply_dict_to_dataclass(target, data) -> None:
    """Recursively apply values from a dict onto a dataclass instance.
    Unknown keys are ignored; IntEnum fields are coerced when possible."""
    if not isinstance(data, dict):
        return

    for key, value in data.items():
        if not hasattr(target, key):
            continue

        current = getattr(target, key)

        if is_dataclass(current) and isinstance(value, dict):
            apply_dict_to_dataclass(current, value)
            continue

        if isinstance(current, IntEnum):
            try:
                setattr(target, key, current.__class__(value))
            except (ValueError, TypeError):
                log_event("WARNING", "Config", "Could not convert value, keeping default",
                          key=key, type=current.__class__.__name__, value=value)
            continue

        setattr(target, key, value)


def _float_or(value, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def migrate_config(config: Config, loaded_version) -> None:
    """Upgrade older config structures to the current schema.
    Fills missing fields with defaults, clamps ranges and bumps version."""
    reaction = config.reaction
    defaults = ReactionSettings()

    for name in ("enable_agc", "scale_frequency_with_volume"):
        if getattr(reaction, name) is None:
            setattr(reaction, name, getattr(defaults, name))
    if not isinstance(reaction.preset, PresetSelection):
        reaction.preset = PresetSelection.DEFAULT

    reaction.gain = clamp(_float_or(reaction.gain, defaults.gain), MIN_GAIN, MAX_GAIN)
    reaction.smoothing = clamp(_float_or(reaction.smoothing, defaults.smoothing), 0.0, 1.0)
    reaction.direction_threshold = clamp(
        _float_or(reaction.direction_threshold, defaults.direction_threshold), 0.0, 1.0)
    reaction.frequency_smoothing = clamp(
        _float_or(reaction.frequency_smoothing, defaults.frequency_smoothing), 0.0, 1.0)
    reaction.spike_threshold = clamp(
        _float_or(reaction.spike_threshold, defaults.spike_threshold), MIN_SPIKE_THRESHOLD, MAX_SPIKE_THRESHOLD)
    reaction.fft_size = nearest_fft_size(reaction.fft_size)

    toggle_defaults = BandToggles()
    for name in vars(toggle_defaults):
        if getattr(config.bands, name, None) is None:
            setattr(config.bands, name, getattr(toggle_defaults, name))

    session_defaults = SessionSettings()
    if config.session.bytes_per_sample is None:
        config.session.bytes_per_sample = session_defaults.bytes_per_sample
    if config.session.stale_timeout_ms is None:
        config.session.stale_timeout_ms = session_defaults.stale_timeout_ms
    if config.session.blocksize is None:
        config.session.blocksize = session_defaults.blocksize
    if config.session.device == "":
        config.session.device = None

    if not config.log_level:
        config.log_level = "INFO"

    if loaded_version != CURRENT_CONFIG_VERSION:
        log_event("INFO", "Config", "Migrated config schema",
                  from_version=loaded_version, to_version=CURRENT_CONFIG_VERSION)
    config.version = CURRENT_CONFIG_VERSION


# Default config instance
DEFAULT_CONFIG = Config()
