from __future__ import annotations

"""Failed-login throttling.

Only rejected credentials count against a ``client:username`` pair; a
successful login clears its window. Counters live in process memory.
"""

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Dict, Optional


logger = logging.getLogger("projectbot.auth")


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


@dataclass
class _FailureWindow:
    failures: int
    window_end: datetime


@dataclass
class ThrottleConfig:
    max_failures: int = 10
    window_seconds: int = 900
    disabled: bool = False

    @staticmethod
    def from_env() -> "ThrottleConfig":
        flag = (os.getenv("PROJECTBOT_RATE_LIMIT_DISABLED") or "").lower()
        return ThrottleConfig(
            max_failures=_env_int("LOGIN_LIMIT", 10),
            window_seconds=_env_int("LOGIN_WINDOW_SEC", 900),
            disabled=flag in {"1", "true", "yes", "on"},
        )


class LoginThrottle:
    def __init__(self, config: Optional[ThrottleConfig] = None) -> None:
        self._config = config
        self._windows: Dict[str, _FailureWindow] = {}
        self._lock = Lock()

    @property
    def config(self) -> ThrottleConfig:
        return self._config or ThrottleConfig.from_env()

    def check(self, identifier: str) -> None:
        """Raise RateLimitExceeded while ``identifier`` is locked out."""

        cfg = self.config
        if cfg.disabled:
            return
        now = datetime.now(UTC)
        with self._lock:
            window = self._windows.get(identifier)
            if window is None:
                return
            if window.window_end <= now:
                del self._windows[identifier]
                return
            if window.failures >= cfg.max_failures:
                retry_after = int((window.window_end - now).total_seconds())
                raise RateLimitExceeded(max(retry_after, 1))

    def record_failure(self, identifier: str) -> None:
        cfg = self.config
        now = datetime.now(UTC)
        with self._lock:
            self._evict_expired(now)
            window = self._windows.get(identifier)
            if window is None:
                self._windows[identifier] = _FailureWindow(1, now + timedelta(seconds=cfg.window_seconds))
                return
            window.failures += 1
            if window.failures == cfg.max_failures:
                logger.warning("login_locked_out", extra={"identifier": identifier})

    def _evict_expired(self, now: datetime) -> None:
        expired = [key for key, window in self._windows.items() if window.window_end <= now]
        for key in expired:
            del self._windows[key]

    def clear(self, identifier: str) -> None:
        with self._lock:
            self._windows.pop(identifier, None)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


_throttle = LoginThrottle()


def get_login_throttle() -> LoginThrottle:
    return _throttle


def reset_rate_limits() -> None:
    _throttle.reset()
