"""
Audio Reaction - Audio Engine
Turns interleaved stereo buffers into stereo direction, volume, per-band
intensities and a volume spike flag for avatar parameters.
"""

import dataclasses
import math
import threading
import time
from collections import deque
from typing import Callable, NamedTuple, Optional, Sequence

import numpy as np

from config import (
    AGC_LOWER_RATE,
    AGC_RAISE_RATE,
    BAND_COUNT,
    CENTER,
    CENTER_DRIFT_RATE,
    DEFAULT_ENABLED_BANDS,
    FREQUENCY_BANDS,
    MAX_GAIN,
    MIN_BUFFER_SAMPLES,
    MIN_GAIN,
    MIN_VALID_SIGNAL,
    RMS_SCALE,
    RMS_WEIGHT,
    SAMPLE_RATE,
    SPECTRAL_CEILING_HZ,
    SPECTRAL_SCALE,
    SPECTRAL_WEIGHT,
    SPIKE_DURATION_MS,
    SPIKE_MIN_INTERVAL_MS,
    SPIKE_MIN_VOLUME,
    TARGET_LEVEL,
    VOLUME_HISTORY_SIZE,
    AudioConfiguration,
    clamp,
)
from frequency_utils import (
    band_bin_range,
    band_magnitude_sum,
    band_rms_power,
    ceiling_bin,
    hamming_window,
    one_sided_magnitude,
)
from logging_utils import log_event, log_throttled

SAMPLE_DTYPES = {4: np.float32, 8: np.float64}
UNDERRUN_LOG_EVERY = 10   # Consecutive undersized buffers before an underrun warning


class AudioReactionError(Exception):
    """Base class for audio reaction errors."""


class AudioConfigurationError(AudioReactionError, ValueError):
    """Invalid setup-time configuration (e.g. bytes per sample)."""


class AudioProcessingError(AudioReactionError):
    """A buffer could not be decoded. Never escapes process_audio_data."""


class ProcessorClosedError(AudioReactionError, RuntimeError):
    """A closed processor was reset or reconfigured."""


class AudioReaction(NamedTuple):
    """One processed buffer: (bands, volume, direction, spike)."""
    bands: tuple
    volume: float
    direction: float
    spike: bool


NEUTRAL_REACTION = AudioReaction((0.0,) * BAND_COUNT, 0.0, CENTER, False)


class ExponentialSmoother:
    """
    Single-pole smoother: S' = a*S + (1-a)*x.

    `a` is the inertia (0 = follow input, 1 = frozen). Once the output is
    within `settle` of the input it lands on the input exactly, so a constant
    input is a true fixed point.
    """
    __slots__ = ('value', 'initial', 'settle')

    def __init__(self, initial: float = 0.0, settle: float = MIN_VALID_SIGNAL):
        self.initial = float(initial)
        self.value = float(initial)
        self.settle = settle

    def update(self, x: float, alpha: float) -> float:
        new_value = alpha * self.value + (1.0 - alpha) * x
        if not math.isfinite(new_value):
            return self.value
        if abs(new_value - x) < self.settle:
            new_value = float(x)
        self.value = new_value
        return new_value

    def drift(self, target: float, rate: float) -> float:
        """Move `rate` of the way toward target, independent of any configured smoothing."""
        return self.update(target, 1.0 - rate)

    def reset(self, value: Optional[float] = None) -> None:
        self.value = self.initial if value is None else float(value)


class SpikeDetector:
    """
    Flags sudden volume jumps against a short rolling baseline of previous
    output volumes.

    A spike fires when the volume is loud enough, rises more than `threshold`
    (relative) above the baseline, and the refractory interval has passed.
    It then holds for a fixed duration and clears by itself.
    """
    __slots__ = ('history', 'active', 'last_spike_time', 'spike_count')

    def __init__(self):
        self.history: deque[float] = deque([0.0] * VOLUME_HISTORY_SIZE, maxlen=VOLUME_HISTORY_SIZE)
        self.active: bool = False
        self.last_spike_time: float = -math.inf
        self.spike_count: int = 0

    def expire(self, now: float) -> None:
        if self.active and (now - self.last_spike_time) * 1000.0 >= SPIKE_DURATION_MS:
            self.active = False

    def baseline(self) -> float:
        return sum(self.history) / len(self.history)

    def update(self, volume: float, threshold: float, now: float) -> bool:
        """Evaluate `volume` against the baseline, then push it into the history."""
        self.expire(now)
        if not self.active and volume >= SPIKE_MIN_VOLUME:
            average = self.baseline()
            relative_increase = (volume - average) / average if average > 0.0 else 0.0
            interval_ok = (now - self.last_spike_time) * 1000.0 >= SPIKE_MIN_INTERVAL_MS
            if relative_increase > threshold and interval_ok:
                self.active = True
                self.last_spike_time = now
                self.spike_count += 1
                log_event("DEBUG", "Spike", "Volume spike",
                          increase=f"{relative_increase:.0%}", volume=f"{volume:.3f}")
        self.history.append(volume)
        return self.active

    def reset(self) -> None:
        self.history.clear()
        self.history.extend([0.0] * VOLUME_HISTORY_SIZE)
        self.active = False


def _check_fft_size(fft_size) -> int:
    try:
        size = int(fft_size)
    except (TypeError, ValueError):
        raise AudioConfigurationError(f"Invalid FFT size: {fft_size!r}") from None
    if size < 2:
        raise AudioConfigurationError(f"FFT size must be at least 2, got {size}")
    return size


class _ChannelScratch:
    """Per-size transform buffers, reallocated together on resize."""
    __slots__ = ('fft_size', 'window', 'left', 'right', 'mono',
                 'left_mag', 'right_mag', 'mono_mag', 'band_bins', 'ceiling')

    def __init__(self, fft_size: int, sample_rate: int):
        self.fft_size = fft_size
        self.window = hamming_window(fft_size)
        self.left = np.zeros(fft_size, dtype=np.float64)
        self.right = np.zeros(fft_size, dtype=np.float64)
        self.mono = np.zeros(fft_size, dtype=np.float64)
        num_bins = fft_size // 2 + 1
        self.left_mag = np.zeros(num_bins, dtype=np.float64)
        self.right_mag = np.zeros(num_bins, dtype=np.float64)
        self.mono_mag = np.zeros(num_bins, dtype=np.float64)
        self.band_bins = [
            band_bin_range(band.low, band.high, sample_rate, fft_size)
            for band in FREQUENCY_BANDS
        ]
        self.ceiling = ceiling_bin(SPECTRAL_CEILING_HZ, sample_rate, fft_size)


class AudioProcessor:
    """
    Spectral analysis engine.

    Consumes one interleaved stereo buffer per call on the capture thread and
    returns an AudioReaction. Owns all smoothing, gain and spike state.
    Reconfiguration may come from another thread; it is serialized with the
    transform buffers by a single lock.
    """

    def __init__(
        self,
        config: AudioConfiguration,
        bytes_per_sample: int = 4,
        *,
        enabled_bands: Optional[Sequence[bool]] = None,
        sample_rate: int = SAMPLE_RATE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if bytes_per_sample <= 0:
            raise AudioConfigurationError("Bytes per sample must be greater than 0")
        if bytes_per_sample not in SAMPLE_DTYPES:
            raise AudioConfigurationError(
                f"Unsupported bytes per sample: {bytes_per_sample} (expected 4 or 8 byte floats)")

        self._config = config
        self._bytes_per_sample = int(bytes_per_sample)
        self._dtype = SAMPLE_DTYPES[self._bytes_per_sample]
        self._sample_rate = int(sample_rate)
        self._clock = clock
        self._lock = threading.Lock()
        self._closed = False

        mask = DEFAULT_ENABLED_BANDS if enabled_bands is None else enabled_bands
        if len(mask) != BAND_COUNT:
            raise AudioConfigurationError(f"Enabled band mask needs {BAND_COUNT} entries, got {len(mask)}")
        self._enabled_bands: tuple[bool, ...] = tuple(bool(b) for b in mask)

        self._adapted_fft_size = _check_fft_size(config.fft_size)
        self._scratch: Optional[_ChannelScratch] = _ChannelScratch(self._adapted_fft_size, self._sample_rate)

        # Smoothing state
        self._volume = ExponentialSmoother(0.0)
        self._direction = ExponentialSmoother(CENTER)
        self._bands = [ExponentialSmoother(0.0) for _ in range(BAND_COUNT)]
        self._raw_band_power = np.zeros(BAND_COUNT, dtype=np.float64)
        self._current_gain: float = clamp(config.gain, MIN_GAIN, MAX_GAIN)
        self._current_rms: float = 0.0
        self._spike = SpikeDetector()

        # Buffer diagnostics
        self._last_buffer_samples: int = 0
        self._underrun_count: int = 0

        self._reset_session_stats()
        log_event("DEBUG", "AudioProcessor", "Initialized",
                  fft_size=self._adapted_fft_size, bytes_per_sample=self._bytes_per_sample)

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------
    @property
    def config(self) -> AudioConfiguration:
        return self._config

    @property
    def bytes_per_sample(self) -> int:
        return self._bytes_per_sample

    @property
    def adapted_fft_size(self) -> int:
        return self._adapted_fft_size

    @property
    def enabled_bands(self) -> tuple[bool, ...]:
        return self._enabled_bands

    @property
    def current_volume(self) -> float:
        return self._volume.value

    @property
    def current_direction(self) -> float:
        return self._direction.value

    @property
    def current_gain(self) -> float:
        return self._current_gain

    @property
    def current_rms(self) -> float:
        return self._current_rms

    @property
    def frequency_bands(self) -> tuple:
        return tuple(s.value for s in self._bands)

    @property
    def raw_band_power(self) -> tuple:
        return tuple(float(v) for v in self._raw_band_power)

    @property
    def has_spike(self) -> bool:
        return self._spike.active

    @property
    def is_active(self) -> bool:
        return not self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Zero all derived state; keep configuration and band mask."""
        with self._lock:
            self._ensure_open()
            self._volume.reset()
            self._direction.reset(CENTER)
            for smoother in self._bands:
                smoother.reset()
            self._raw_band_power.fill(0.0)
            self._current_rms = 0.0
            self._current_gain = clamp(self._config.gain, MIN_GAIN, MAX_GAIN)
            self._spike.reset()
            self._underrun_count = 0
        log_event("DEBUG", "AudioProcessor", "Reset")

    def close(self) -> None:
        """Release transform buffers and log the session summary. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            # In-flight calls keep their own reference
            self._scratch = None
            self._raw_band_power.fill(0.0)
            for smoother in self._bands:
                smoother.reset()
        self._log_shutdown_summary()
        log_event("INFO", "AudioProcessor", "Closed")

    def __enter__(self) -> "AudioProcessor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ProcessorClosedError("Audio processor has been closed")

    # ------------------------------------------------------------------
    # Reconfiguration
    # ------------------------------------------------------------------
    def apply_configuration(self, config: AudioConfiguration) -> bool:
        """Swap in a new configuration. Returns False when it equals the current one.

        A changed FFT size is picked up by the next processed buffer.
        """
        _check_fft_size(config.fft_size)
        with self._lock:
            self._ensure_open()
            if config == self._config:
                return False
            self._config = config
            if not config.enable_agc:
                self._current_gain = clamp(config.gain, MIN_GAIN, MAX_GAIN)
        log_event("INFO", "AudioProcessor", "Configuration applied",
                  gain=config.gain, agc=config.enable_agc, smoothing=config.smoothing,
                  fft_size=config.fft_size)
        return True

    def update_enabled_bands(self, enabled_bands: Sequence[bool]) -> bool:
        """Replace the band mask. A mask of the wrong length is ignored."""
        with self._lock:
            self._ensure_open()
            return self._set_enabled_bands(enabled_bands)

    def _set_enabled_bands(self, enabled_bands) -> bool:
        if enabled_bands is None or len(enabled_bands) != BAND_COUNT:
            log_event("WARNING", "AudioProcessor", "Invalid enabled bands length",
                      got=0 if enabled_bands is None else len(enabled_bands), expected=BAND_COUNT)
            return False
        self._enabled_bands = tuple(bool(b) for b in enabled_bands)
        for enabled, smoother, i in zip(self._enabled_bands, self._bands, range(BAND_COUNT)):
            if not enabled:
                smoother.reset(0.0)
                self._raw_band_power[i] = 0.0
        return True

    def update_gain(self, gain: float) -> None:
        """Set the manual gain. Only changes the live gain when AGC is off."""
        with self._lock:
            self._ensure_open()
            value = clamp(gain, MIN_GAIN, MAX_GAIN)
            self._config = dataclasses.replace(self._config, gain=value)
            if not self._config.enable_agc:
                self._current_gain = value

    def update_smoothing(self, smoothing: float) -> None:
        with self._lock:
            self._ensure_open()
            self._config = dataclasses.replace(self._config, smoothing=clamp(smoothing, 0.0, 1.0))

    def configure_frequency_bands(self, smoothing: float, enabled_bands: Sequence[bool]) -> bool:
        """Set band smoothing and mask together. An invalid mask keeps the previous one."""
        with self._lock:
            self._ensure_open()
            self._config = dataclasses.replace(
                self._config, frequency_smoothing=clamp(smoothing, 0.0, 1.0))
            return self._set_enabled_bands(enabled_bands)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def process_audio_data(self, buffer, scale_with_volume: bool) -> AudioReaction:
        """Analyze one interleaved stereo buffer. Never raises."""
        if self._closed or buffer is None:
            return NEUTRAL_REACTION
        try:
            samples = self._decode(buffer)
            if samples.size < MIN_BUFFER_SAMPLES:
                self._session_rejected += 1
                return NEUTRAL_REACTION
            return self._process(samples, bool(scale_with_volume))
        except Exception as e:
            self._session_errors += 1
            log_throttled("AudioProcessor.process", 5.0, "ERROR", "AudioProcessor",
                          "Processing failed, returning neutral output", error=repr(e))
            return NEUTRAL_REACTION

    def _decode(self, buffer) -> np.ndarray:
        """Interleaved float samples from raw bytes or any float sequence."""
        if isinstance(buffer, (bytes, bytearray, memoryview)):
            raw = memoryview(buffer).cast("B")
            usable = len(raw) - (len(raw) % self._bytes_per_sample)
            if usable <= 0:
                return np.zeros(0, dtype=np.float64)
            samples = np.frombuffer(raw[:usable], dtype=self._dtype)
        else:
            samples = np.asarray(buffer)
            if samples.ndim > 1:
                samples = samples.reshape(-1)
            if samples.size and not np.issubdtype(samples.dtype, np.number):
                raise AudioProcessingError(f"Non-numeric sample buffer: {samples.dtype}")
        if not np.all(np.isfinite(samples)):
            samples = np.nan_to_num(samples, nan=0.0, posinf=0.0, neginf=0.0)
        return samples

    def _track_buffer_size(self, total_samples: int, fft_size: int) -> None:
        if total_samples != self._last_buffer_samples:
            self._last_buffer_samples = total_samples
            log_event("DEBUG", "AudioProcessor", "Buffer size changed",
                      samples=total_samples, frames=total_samples // 2, fft_size=fft_size)

        if total_samples // 2 < fft_size:
            self._underrun_count += 1
            if self._underrun_count >= UNDERRUN_LOG_EVERY:
                log_event("WARNING", "AudioProcessor", "Consistent buffer underruns, zero-padding",
                          frames=total_samples // 2, fft_size=fft_size)
                self._underrun_count = 0
        else:
            self._underrun_count = 0

    def _resize_locked(self, fft_size: int) -> None:
        old_size = self._adapted_fft_size
        self._scratch = _ChannelScratch(fft_size, self._sample_rate)
        self._adapted_fft_size = fft_size
        log_event("INFO", "AudioProcessor", "FFT size changed", old=old_size, new=fft_size)

    def _process(self, samples: np.ndarray, scale_with_volume: bool) -> AudioReaction:
        now = self._clock()

        # Resize check + snapshot of shared state
        with self._lock:
            if self._closed:
                return NEUTRAL_REACTION
            config = self._config
            if config.fft_size != self._adapted_fft_size:
                self._resize_locked(int(config.fft_size))
            scratch = self._scratch
            enabled = self._enabled_bands
        n = scratch.fft_size
        self._track_buffer_size(samples.size, n)

        # Deinterleave and zero-pad to the transform size
        frames = min(samples.size // 2, n)
        stereo = samples[:frames * 2].reshape(frames, 2)
        scratch.left[:frames] = stereo[:, 0]
        scratch.right[:frames] = stereo[:, 1]
        scratch.left[frames:] = 0.0
        scratch.right[frames:] = 0.0
        np.add(scratch.left, scratch.right, out=scratch.mono)
        scratch.mono *= 0.5

        # Three independent windowed transforms
        left_mag = one_sided_magnitude(scratch.left, scratch.window, out=scratch.left_mag)
        right_mag = one_sided_magnitude(scratch.right, scratch.window, out=scratch.right_mag)
        mono_mag = one_sided_magnitude(scratch.mono, scratch.window, out=scratch.mono_mag)

        # Volume: time-domain RMS blended with spectral power
        mono_frames = scratch.mono[:frames]
        rms = float(np.sqrt(np.mean(mono_frames * mono_frames))) if frames else 0.0
        audible = mono_mag[:scratch.ceiling]
        spectral_power = float(np.sqrt(np.mean(audible * audible)))
        raw_volume = RMS_WEIGHT * (rms * RMS_SCALE) + SPECTRAL_WEIGHT * (spectral_power * SPECTRAL_SCALE)

        # Direction from enabled bands
        left_power = 0.0
        right_power = 0.0
        for i, (low_bin, high_bin) in enumerate(scratch.band_bins):
            if enabled[i]:
                left_power += band_magnitude_sum(left_mag, low_bin, high_bin)
                right_power += band_magnitude_sum(right_mag, low_bin, high_bin)
        total_power = left_power + right_power
        if not any(enabled) or total_power < MIN_VALID_SIGNAL:
            direction = CENTER
        else:
            direction = right_power / total_power

        # Frequency bands from the mono spectrum
        band_power = np.zeros(BAND_COUNT, dtype=np.float64)
        for i, (low_bin, high_bin) in enumerate(scratch.band_bins):
            if enabled[i]:
                band_power[i] = band_rms_power(mono_mag, low_bin, high_bin)

        # Smoothed state only changes under the lock, against the live mask and config
        with self._lock:
            if self._closed:
                return NEUTRAL_REACTION
            config = self._config
            enabled = self._enabled_bands
            self._current_rms = rms

            if raw_volume >= config.direction_threshold:
                self._direction.update(direction, config.smoothing)
            else:
                self._direction.drift(CENTER, CENTER_DRIFT_RATE)

            band_power = np.where(enabled, band_power, 0.0)
            self._raw_band_power[:] = band_power
            if scale_with_volume:
                targets = band_power * self._volume.value
            else:
                total_band_power = float(np.sum(band_power))
                if total_band_power > MIN_VALID_SIGNAL:
                    targets = band_power / total_band_power
                else:
                    targets = np.zeros(BAND_COUNT, dtype=np.float64)

            for i, smoother in enumerate(self._bands):
                if enabled[i]:
                    smoother.update(float(targets[i]), config.frequency_smoothing)
                else:
                    smoother.reset(0.0)

            # Gain: asymmetric AGC, fast to lower, slow to raise
            if config.enable_agc:
                if raw_volume > MIN_VALID_SIGNAL:
                    gain_adjustment = TARGET_LEVEL / max(MIN_VALID_SIGNAL, raw_volume * self._current_gain)
                    target_gain = config.gain * gain_adjustment
                    rate = AGC_RAISE_RATE if target_gain > self._current_gain else AGC_LOWER_RATE
                    self._current_gain += (target_gain - self._current_gain) * rate
            else:
                self._current_gain = config.gain
            self._current_gain = clamp(self._current_gain, MIN_GAIN, MAX_GAIN)

            # Final volume, monotone with a ceiling at unity
            volume = clamp(raw_volume * self._current_gain, 0.0, 1.0)
            smoothed_volume = self._volume.update(volume, config.smoothing)

            # Spike against the previous outputs, then roll the history
            spike = self._spike.update(smoothed_volume, config.spike_threshold, now)

            self._update_session_stats(raw_volume, self._current_gain, spike)
            return AudioReaction(
                bands=tuple(s.value for s in self._bands),
                volume=smoothed_volume,
                direction=self._direction.value,
                spike=spike,
            )

    # ------------------------------------------------------------------
    # Session statistics
    # ------------------------------------------------------------------
    def _reset_session_stats(self) -> None:
        self._session_started_at = time.time()
        self._session_frame_count = 0
        self._session_rejected = 0
        self._session_errors = 0
        self._session_volume_min: float | None = None
        self._session_volume_max: float | None = None
        self._session_volume_sum = 0.0
        self._session_gain_min: float | None = None
        self._session_gain_max: float | None = None
        self._session_spike_count = 0

    def _update_session_stats(self, raw_volume: float, gain: float, spike_active: bool) -> None:
        self._session_frame_count += 1
        self._session_volume_sum += raw_volume
        if self._session_volume_min is None or raw_volume < self._session_volume_min:
            self._session_volume_min = raw_volume
        if self._session_volume_max is None or raw_volume > self._session_volume_max:
            self._session_volume_max = raw_volume
        if self._session_gain_min is None or gain < self._session_gain_min:
            self._session_gain_min = gain
        if self._session_gain_max is None or gain > self._session_gain_max:
            self._session_gain_max = gain
        self._session_spike_count = self._spike.spike_count

    def _log_shutdown_summary(self) -> None:
        if self._session_frame_count <= 0:
            return

        elapsed_s = max(0.0, time.time() - self._session_started_at)
        volume_min = float(self._session_volume_min or 0.0)
        volume_max = float(self._session_volume_max or 0.0)
        volume_mean = self._session_volume_sum / float(self._session_frame_count)

        log_event(
            "INFO",
            "AudioProcessor",
            "Session summary",
            frames=self._session_frame_count,
            seconds=f"{elapsed_s:.1f}",
            raw_volume_min=f"{volume_min:.6f}",
            raw_volume_max=f"{volume_max:.6f}",
            raw_volume_mean=f"{volume_mean:.6f}",
            gain_min=f"{float(self._session_gain_min or 0.0):.3f}",
            gain_max=f"{float(self._session_gain_max or 0.0):.3f}",
            spikes=self._session_spike_count,
            rejected=self._session_rejected,
            errors=self._session_errors,
        )


def create_processor(
    config: AudioConfiguration,
    bytes_per_sample: int,
    *,
    enabled_bands: Optional[Sequence[bool]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> AudioProcessor:
    """Build a processor for a capture format. Invalid sample widths raise AudioConfigurationError."""
    return AudioProcessor(config, bytes_per_sample, enabled_bands=enabled_bands, clock=clock)
