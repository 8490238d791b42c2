"""
Capture boundary: feeds device buffers into the audio processor and hands
each AudioReaction to a dispatch callback (the avatar parameter driver).
"""

import time
from typing import Callable, Optional

from audio_engine import AudioProcessor, AudioReaction, create_processor
from config import CHANNELS, SAMPLE_RATE, Config, build_audio_configuration
from logging_utils import log_event, log_throttled


class AudioSession:
    """Owns one processor for the lifetime of a capture stream.

    Use as a context manager; the processor and any attached stream are
    closed on every exit path.
    """

    def __init__(
        self,
        config: Config,
        dispatch: Callable[[AudioReaction], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.dispatch = dispatch
        self._clock = clock
        self.processor: Optional[AudioProcessor] = None
        self.stream = None
        self._last_buffer_time: Optional[float] = None
        self.stale_resets = 0
        self.dispatch_failures = 0

    def __enter__(self) -> "AudioSession":
        self.processor = create_processor(
            build_audio_configuration(self.config),
            self.config.session.bytes_per_sample,
            enabled_bands=self.config.bands.as_mask(),
        )
        self._last_buffer_time = None
        log_event("INFO", "Session", "Started",
                  preset=self.config.reaction.preset.name,
                  fft_size=self.processor.adapted_fft_size,
                  bands=self.processor.enabled_bands)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.stream is not None:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception as e:
                log_event("WARNING", "Session", "Stream close failed", error=e)
            self.stream = None
        if self.processor is not None:
            self.processor.close()
            self.processor = None
            log_event("INFO", "Session", "Stopped",
                      stale_resets=self.stale_resets, dispatch_failures=self.dispatch_failures)

    @property
    def scale_with_volume(self) -> bool:
        return bool(self.config.reaction.scale_frequency_with_volume)

    def _check_stale(self, now: float) -> None:
        last = self._last_buffer_time
        self._last_buffer_time = now
        if last is None:
            return
        gap_ms = (now - last) * 1000.0
        if gap_ms > self.config.session.stale_timeout_ms:
            self.stale_resets += 1
            log_event("INFO", "Session", "Audio resumed after gap, resetting", gap_ms=f"{gap_ms:.0f}")
            self.processor.reset()

    def on_audio(self, data) -> Optional[AudioReaction]:
        """Process one device buffer and dispatch the result."""
        if self.processor is None or not self.processor.is_active:
            return None
        self._check_stale(self._clock())
        reaction = self.processor.process_audio_data(data, self.scale_with_volume)
        try:
            self.dispatch(reaction)
        except Exception as e:
            self.dispatch_failures += 1
            log_throttled("Session.dispatch", 5.0, "ERROR", "Session", "Dispatch failed", error=repr(e))
        return reaction

    def apply_settings(self, config: Config) -> bool:
        """Swap in new user settings on the running processor."""
        self.config = config
        if self.processor is None:
            return False
        changed = self.processor.apply_configuration(build_audio_configuration(config))
        mask_changed = self.processor.enabled_bands != config.bands.as_mask()
        if mask_changed:
            self.processor.update_enabled_bands(config.bands.as_mask())
        return changed or mask_changed


def open_input_stream(session: AudioSession, device=None, blocksize: int = 0):
    """Open and start a float32 stereo input stream feeding `session`."""
    import sounddevice as sd

    def callback(indata, frames, time_info, status):
        if status:
            log_throttled("Capture.status", 5.0, "WARNING", "Capture", "Stream status", status=status)
        session.on_audio(indata)

    stream = sd.InputStream(
        device=device,
        channels=CHANNELS,
        samplerate=SAMPLE_RATE,
        blocksize=blocksize,
        dtype='float32',
        callback=callback,
    )
    stream.start()
    session.stream = stream
    log_event("INFO", "Capture", "Input stream started", device=device, blocksize=blocksize)
    return stream
