#!/usr/bin/env python3
"""
Audio Reaction - stereo audio to avatar parameters

Captures stereo input, runs the spectral engine and logs the resulting
direction, volume, band intensities and spikes.
"""

import argparse
import sys
import time

from audio_capture import AudioSession, open_input_stream
from audio_engine import AudioReaction
from config import FREQUENCY_BANDS, PresetSelection
from config_persistence import load_config
from logging_utils import log_event, log_throttled, set_log_level


def _parse_device(value: str):
    """Device index when numeric, otherwise a device name substring."""
    try:
        return int(value)
    except ValueError:
        return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the audio reaction engine")
    parser.add_argument(
        "--preset",
        choices=[p.name for p in PresetSelection],
        type=str.upper,
        help="Reaction preset (default: saved setting)",
    )
    parser.add_argument(
        "--device",
        type=_parse_device,
        help="Input device index or name (default: saved setting or system default)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Console log level (default: saved setting)",
    )
    parser.add_argument(
        "--seconds",
        type=float,
        default=0.0,
        help="Stop after this many seconds (default: run until Ctrl+C)",
    )
    return parser


def apply_overrides(config, args):
    """Apply CLI overrides onto a loaded Config (not persisted)."""
    if args.preset:
        config.reaction.preset = PresetSelection[args.preset]
    if args.device is not None:
        config.session.device = args.device
    if args.log_level:
        config.log_level = args.log_level
    return config


def log_reaction(reaction: AudioReaction) -> None:
    bands = " ".join(
        f"{band.parameter}={value:.2f}" for band, value in zip(FREQUENCY_BANDS, reaction.bands)
    )
    log_throttled("Run.reaction", 0.5, "INFO", "Reaction",
                  f"dir={reaction.direction:.2f} vol={reaction.volume:.2f} {bands}")
    if reaction.spike:
        log_throttled("Run.spike", 0.1, "INFO", "Reaction", "Spike", volume=f"{reaction.volume:.2f}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = apply_overrides(load_config(), args)
    set_log_level(config.log_level)

    try:
        with AudioSession(config, log_reaction) as session:
            open_input_stream(session, device=config.session.device,
                              blocksize=config.session.blocksize)
            started = time.monotonic()
            while args.seconds <= 0 or (time.monotonic() - started) < args.seconds:
                time.sleep(0.1)
    except KeyboardInterrupt:
        log_event("INFO", "Run", "Stopped by user")
    except Exception as e:
        log_event("ERROR", "Run", "Audio capture failed", error=e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
