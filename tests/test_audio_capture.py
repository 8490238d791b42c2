import sys
import types
import unittest
from unittest import mock

import numpy as np

from audio_capture import AudioSession, open_input_stream
from audio_engine import AudioReaction
from config import Config, PresetSelection


def stereo_block(frames=8192, amplitude=0.2):
    rng = np.random.default_rng(7)
    return rng.normal(0.0, amplitude, (frames, 2)).astype(np.float32)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestAudioSession(unittest.TestCase):
    def test_dispatches_reactions(self):
        received = []
        with AudioSession(Config(), received.append) as session:
            reaction = session.on_audio(stereo_block())

        self.assertEqual(len(received), 1)
        self.assertIsInstance(received[0], AudioReaction)
        self.assertIs(received[0], reaction)
        self.assertEqual(len(reaction.bands), 7)

    def test_exit_closes_processor_and_stream(self):
        stream = mock.Mock()
        with AudioSession(Config(), lambda r: None) as session:
            session.stream = stream
            processor = session.processor

        self.assertFalse(processor.is_active)
        stream.stop.assert_called_once()
        stream.close.assert_called_once()
        self.assertIsNone(session.stream)

    def test_second_close_is_quiet(self):
        session = AudioSession(Config(), lambda r: None)
        session.__enter__()
        with mock.patch("audio_capture.log_event") as log_event_mock:
            session.close()
            session.close()

        stopped = [c for c in log_event_mock.call_args_list if c.args[2] == "Stopped"]
        self.assertEqual(len(stopped), 1)
        self.assertIsNone(session.processor)
        self.assertIsNone(session.on_audio(stereo_block()))

    def test_on_audio_before_start_is_ignored(self):
        session = AudioSession(Config(), lambda r: None)
        self.assertIsNone(session.on_audio(stereo_block()))

    def test_stale_gap_resets_processor(self):
        clock = FakeClock()
        config = Config()
        config.session.stale_timeout_ms = 1000
        with AudioSession(config, lambda r: None, clock=clock) as session:
            with mock.patch.object(session.processor, "reset", wraps=session.processor.reset) as reset_mock:
                session.on_audio(stereo_block())
                clock.now = 0.5
                session.on_audio(stereo_block())
                reset_mock.assert_not_called()

                clock.now = 2.0
                session.on_audio(stereo_block())
                reset_mock.assert_called_once()

        self.assertEqual(session.stale_resets, 1)

    def test_dispatch_failure_is_swallowed(self):
        def broken(reaction):
            raise RuntimeError("avatar offline")

        with mock.patch("audio_capture.log_throttled") as log_mock:
            with AudioSession(Config(), broken) as session:
                reaction = session.on_audio(stereo_block())

        self.assertIsInstance(reaction, AudioReaction)
        self.assertEqual(session.dispatch_failures, 1)
        log_mock.assert_called_once()

    def test_apply_settings_reconfigures_processor(self):
        with AudioSession(Config(), lambda r: None) as session:
            updated = Config()
            updated.reaction.preset = PresetSelection.HIGH_SMOOTHING
            updated.bands.sub_bass = True
            self.assertTrue(session.apply_settings(updated))

            self.assertEqual(session.processor.config.fft_size, 16384)
            self.assertEqual(session.processor.config.smoothing, 0.8)
            self.assertTrue(session.processor.enabled_bands[0])

            self.assertFalse(session.apply_settings(updated))


class TestOpenInputStream(unittest.TestCase):
    def test_opens_stereo_float_stream(self):
        stream = mock.Mock()
        fake_sd = types.ModuleType("sounddevice")
        fake_sd.InputStream = mock.Mock(return_value=stream)
        received = []

        with mock.patch.dict(sys.modules, {"sounddevice": fake_sd}):
            with AudioSession(Config(), received.append) as session:
                result = open_input_stream(session, device=3, blocksize=1024)

                self.assertIs(result, stream)
                self.assertIs(session.stream, stream)
                stream.start.assert_called_once()
                _, kwargs = fake_sd.InputStream.call_args
                self.assertEqual(kwargs["channels"], 2)
                self.assertEqual(kwargs["samplerate"], 48000)
                self.assertEqual(kwargs["dtype"], "float32")
                self.assertEqual(kwargs["device"], 3)
                self.assertEqual(kwargs["blocksize"], 1024)

                callback = kwargs["callback"]
                callback(stereo_block(), 8192, None, None)

        self.assertEqual(len(received), 1)
        stream.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
