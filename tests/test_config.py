import unittest

from config import (
    BAND_COUNT,
    FREQUENCY_BANDS,
    AudioConfiguration,
    BandToggles,
    Config,
    PresetSelection,
    build_audio_configuration,
    nearest_fft_size,
)


class TestFrequencyBandTable(unittest.TestCase):
    def test_bands_are_ordered_and_contiguous(self):
        self.assertEqual(len(FREQUENCY_BANDS), BAND_COUNT)
        for lower, upper in zip(FREQUENCY_BANDS, FREQUENCY_BANDS[1:]):
            self.assertEqual(lower.high, upper.low)
        self.assertEqual(FREQUENCY_BANDS[0].low, 20.0)
        self.assertEqual(FREQUENCY_BANDS[-1].parameter, "audio_brilliance")

    def test_default_mask(self):
        self.assertEqual(BandToggles().as_mask(), (False, True, True, True, False, False, False))


class TestBuildAudioConfiguration(unittest.TestCase):
    def test_default_preset(self):
        audio = build_audio_configuration(Config())
        self.assertEqual(audio, AudioConfiguration(frequency_smoothing=0.5))

    def test_presets_override_custom_values(self):
        cfg = Config()
        cfg.reaction.gain = 4.0
        cfg.reaction.preset = PresetSelection.VOICE_OPTIMIZED
        audio = build_audio_configuration(cfg)
        self.assertEqual(audio.gain, 1.5)
        self.assertEqual(audio.smoothing, 0.4)
        self.assertEqual(audio.direction_threshold, 0.02)
        self.assertEqual(audio.fft_size, 4096)

        cfg.reaction.preset = PresetSelection.HIGH_SMOOTHING
        self.assertEqual(build_audio_configuration(cfg).fft_size, 16384)

    def test_custom_preset_uses_clamped_user_values(self):
        cfg = Config()
        cfg.reaction.preset = PresetSelection.CUSTOM
        cfg.reaction.gain = 12.0
        cfg.reaction.smoothing = 0.25
        cfg.reaction.spike_threshold = 9.0
        cfg.reaction.fft_size = 10000
        audio = build_audio_configuration(cfg)
        self.assertEqual(audio.gain, 5.0)
        self.assertEqual(audio.smoothing, 0.25)
        self.assertEqual(audio.spike_threshold, 5.0)
        self.assertEqual(audio.fft_size, 8192)

    def test_configuration_is_frozen(self):
        audio = AudioConfiguration()
        with self.assertRaises(AttributeError):
            audio.gain = 2.0


class TestNearestFftSize(unittest.TestCase):
    def test_snaps_to_supported_size(self):
        self.assertEqual(nearest_fft_size(4096), 4096)
        self.assertEqual(nearest_fft_size(5000), 4096)
        self.assertEqual(nearest_fft_size(100000), 16384)

    def test_invalid_value_uses_default(self):
        self.assertEqual(nearest_fft_size(None), 8192)
        self.assertEqual(nearest_fft_size("big"), 8192)


if __name__ == "__main__":
    unittest.main()
