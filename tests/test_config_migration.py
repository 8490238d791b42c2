import json
import tempfile
from dataclasses import asdict
from pathlib import Path
import unittest
from unittest import mock

from config import (
    Config,
    CURRENT_CONFIG_VERSION,
    PresetSelection,
    apply_dict_to_dataclass,
    migrate_config,
)
import config_persistence


class TestConfigMigration(unittest.TestCase):
    def test_missing_version_sets_defaults_and_bumps(self):
        cfg = Config()
        data = {
            # version intentionally omitted to simulate legacy file
            "reaction": {},
            "bands": {},
        }

        apply_dict_to_dataclass(cfg, data)
        migrate_config(cfg, data.get("version"))

        self.assertEqual(cfg.version, CURRENT_CONFIG_VERSION)
        self.assertEqual(cfg.reaction.preset, PresetSelection.DEFAULT)
        self.assertTrue(cfg.reaction.enable_agc)
        self.assertTrue(cfg.bands.mid)
        self.assertFalse(cfg.bands.sub_bass)

    def test_none_values_are_sanitized(self):
        cfg = Config()
        data = {
            "version": 0,
            "reaction": {"enable_agc": None, "smoothing": None, "fft_size": None},
            "bands": {"bass": None, "brilliance": None},
            "session": {"bytes_per_sample": None, "device": ""},
            "log_level": "",
        }

        apply_dict_to_dataclass(cfg, data)
        migrate_config(cfg, data.get("version"))

        self.assertEqual(cfg.version, CURRENT_CONFIG_VERSION)
        self.assertTrue(cfg.reaction.enable_agc)
        self.assertEqual(cfg.reaction.smoothing, 0.5)
        self.assertEqual(cfg.reaction.fft_size, 8192)
        self.assertTrue(cfg.bands.bass)
        self.assertFalse(cfg.bands.brilliance)
        self.assertEqual(cfg.session.bytes_per_sample, 4)
        self.assertIsNone(cfg.session.device)
        self.assertEqual(cfg.log_level, "INFO")

    def test_out_of_range_values_are_clamped(self):
        cfg = Config()
        data = {
            "version": 1,
            "reaction": {
                "gain": 99.0,
                "smoothing": -1.0,
                "spike_threshold": 0.1,
                "fft_size": 5000,
            },
        }

        apply_dict_to_dataclass(cfg, data)
        migrate_config(cfg, data.get("version"))

        self.assertEqual(cfg.reaction.gain, 5.0)
        self.assertEqual(cfg.reaction.smoothing, 0.0)
        self.assertEqual(cfg.reaction.spike_threshold, 0.5)
        self.assertEqual(cfg.reaction.fft_size, 4096)

    def test_unknown_preset_keeps_default(self):
        cfg = Config()
        apply_dict_to_dataclass(cfg, {"reaction": {"preset": 42}})
        migrate_config(cfg, 1)
        self.assertEqual(cfg.reaction.preset, PresetSelection.DEFAULT)

    def test_preserves_custom_values(self):
        cfg = Config()
        data = {
            "version": 1,
            "reaction": {"preset": 0, "gain": 2.5, "enable_agc": False},
            "bands": {"sub_bass": True, "mid": False},
            "session": {"device": 7, "stale_timeout_ms": 250},
        }

        apply_dict_to_dataclass(cfg, data)
        migrate_config(cfg, data.get("version"))

        self.assertEqual(cfg.version, CURRENT_CONFIG_VERSION)
        self.assertEqual(cfg.reaction.preset, PresetSelection.CUSTOM)
        self.assertEqual(cfg.reaction.gain, 2.5)
        self.assertFalse(cfg.reaction.enable_agc)
        self.assertTrue(cfg.bands.sub_bass)
        self.assertFalse(cfg.bands.mid)
        self.assertEqual(cfg.session.device, 7)
        self.assertEqual(cfg.session.stale_timeout_ms, 250)

    def test_load_config_auto_saves_bumped_version(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cfg_file = Path(tmpdir) / "config.json"
            legacy_data = asdict(Config())
            legacy_data["version"] = 0
            legacy_data["reaction"]["smoothing"] = None  # force migration path
            with open(cfg_file, "w", encoding="utf-8") as f:
                json.dump(legacy_data, f)

            with mock.patch.object(config_persistence, "get_config_file", return_value=cfg_file):
                cfg = config_persistence.load_config()

            self.assertEqual(cfg.version, CURRENT_CONFIG_VERSION)
            with open(cfg_file, "r", encoding="utf-8") as f:
                persisted = json.load(f)
            self.assertEqual(persisted.get("version"), CURRENT_CONFIG_VERSION)
            self.assertEqual(persisted["reaction"]["smoothing"], 0.5)


if __name__ == "__main__":
    unittest.main()
