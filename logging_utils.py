"""Tagged logging helper for the audio reaction engine.

Provides level+tag console output plus a throttled variant that is safe to
call from the audio callback thread without flooding the console.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any

_logger = logging.getLogger("audioreact")
if not _logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[%(levelname)s][%(tag)s] %(message)s")
    handler.setFormatter(formatter)
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "Audio")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})

# key -> monotonic time of the last emitted message
_throttle_last: dict[str, float] = {}
_throttle_lock = threading.Lock()


def _level_value(level: str) -> int:
    level_name = (level or "INFO").upper()
    if level_name == "WARN":
        level_name = "WARNING"
    return getattr(logging, level_name, logging.INFO)


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(_level_value(level), message, tag=tag)


def log_throttled(key: str, interval_s: float, level: str, tag: str, message: str, **fields: Any) -> bool:
    """Log at most once per `interval_s` for a given key.

    Returns True when the message was emitted, False when it was suppressed.
    """
    now = time.monotonic()
    with _throttle_lock:
        last = _throttle_last.get(key)
        if last is not None and (now - last) < interval_s:
            return False
        _throttle_last[key] = now
    log_event(level, tag, message, **fields)
    return True


def reset_throttle(key: str | None = None) -> None:
    """Forget throttle history for one key, or for all keys."""
    with _throttle_lock:
        if key is None:
            _throttle_last.clear()
        else:
            _throttle_last.pop(key, None)


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    _logger.setLevel(_level_value(level))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)
