import tempfile
import unittest
from pathlib import Path
from unittest import mock

from config import Config, PresetSelection
import config_persistence


class TestConfigPersistence(unittest.TestCase):
    def test_save_and_load_roundtrip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            cfg = Config()
            cfg.reaction.preset = PresetSelection.LOW_LATENCY
            cfg.reaction.spike_threshold = 1.25
            cfg.bands.presence = True
            cfg.session.device = "Stereo Mix"

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                self.assertTrue(config_persistence.save_config(cfg))
                loaded = config_persistence.load_config()

            self.assertEqual(loaded.reaction.preset, PresetSelection.LOW_LATENCY)
            self.assertIsInstance(loaded.reaction.preset, PresetSelection)
            self.assertAlmostEqual(loaded.reaction.spike_threshold, 1.25, places=6)
            self.assertTrue(loaded.bands.presence)
            self.assertEqual(loaded.session.device, "Stereo Mix")

    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                loaded = config_persistence.load_config()
            self.assertIsInstance(loaded, Config)
            self.assertFalse(cfg_file.exists())

    def test_load_invalid_json_returns_default(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            with open(cfg_file, "w", encoding="utf-8") as f:
                f.write("{invalid json")

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                loaded = config_persistence.load_config()

            self.assertIsInstance(loaded, Config)
            self.assertEqual(loaded.reaction.preset, PresetSelection.DEFAULT)

    def test_save_failure_returns_false(self):
        cfg = Config()

        with mock.patch.object(config_persistence, "get_config_file", side_effect=OSError("boom")):
            self.assertFalse(config_persistence.save_config(cfg))


if __name__ == "__main__":
    unittest.main()
