from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock

from flask import Flask


STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSettings:
    enabled: bool = True
    error_rate_threshold: float = 0.6
    min_samples: int = 5
    window_seconds: int = 120
    open_seconds: int = 30
    half_open_max_calls: int = 1

    @classmethod
    def from_app(cls, app: Flask) -> "CircuitSettings":
        config = app.config
        return cls(
            enabled=bool(config.get("NETSUITE_CIRCUIT_ENABLED", True)),
            error_rate_threshold=_clamp(config.get("NETSUITE_CIRCUIT_ERROR_RATE_THRESHOLD"), 0.6, 0.05, 1.0),
            min_samples=int(_clamp(config.get("NETSUITE_CIRCUIT_MIN_SAMPLES"), 5, 1, 1000)),
            window_seconds=int(_clamp(config.get("NETSUITE_CIRCUIT_WINDOW_SECONDS"), 120, 5, 3600)),
            open_seconds=int(_clamp(config.get("NETSUITE_CIRCUIT_OPEN_SECONDS"), 30, 1, 3600)),
            half_open_max_calls=int(_clamp(config.get("NETSUITE_CIRCUIT_HALF_OPEN_MAX_CALLS"), 1, 1, 100)),
        )


def _clamp(value, default: float, minimum: float, maximum: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = float(default)
    return max(minimum, min(maximum, parsed))


class NetSuiteCircuitBreaker:
    """Error-rate breaker shared by every outbound call made in this process."""

    def __init__(self, settings: CircuitSettings | None = None) -> None:
        self._lock = Lock()
        self._settings = settings or CircuitSettings()
        self._state = STATE_CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._outcomes: deque[tuple[float, bool]] = deque()

    def configure(self, settings: CircuitSettings) -> None:
        with self._lock:
            self._settings = settings
            if not settings.enabled:
                self._reset_locked()

    def _reset_locked(self) -> None:
        self._state = STATE_CLOSED
        self._opened_at = 0.0
        self._trial_calls = 0
        self._outcomes.clear()

    def _trim(self, now: float) -> None:
        horizon = now - self._settings.window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def _trip(self, now: float) -> None:
        self._state = STATE_OPEN
        self._opened_at = now
        self._trial_calls = 0

    def _window_stats(self, now: float) -> tuple[int, int, float]:
        self._trim(now)
        samples = len(self._outcomes)
        if not samples:
            return 0, 0, 0.0
        failures = sum(1 for _at, ok in self._outcomes if not ok)
        return samples, failures, failures / samples

    def allow_call(self) -> tuple[bool, str]:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled:
                return True, "disabled"
            if self._state == STATE_OPEN:
                if now - self._opened_at < self._settings.open_seconds:
                    return False, STATE_OPEN
                self._state = STATE_HALF_OPEN
                self._trial_calls = 0
            if self._state == STATE_HALF_OPEN:
                if self._trial_calls >= self._settings.half_open_max_calls:
                    return False, STATE_HALF_OPEN
                self._trial_calls += 1
                return True, STATE_HALF_OPEN
            return True, STATE_CLOSED

    def record_success(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled:
                return
            if self._state == STATE_HALF_OPEN:
                self._reset_locked()
                return
            self._outcomes.append((now, True))
            self._trim(now)

    def record_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            if not self._settings.enabled or self._state == STATE_OPEN:
                return
            self._outcomes.append((now, False))
            if self._state == STATE_HALF_OPEN:
                self._trip(now)
                return
            samples, _failures, rate = self._window_stats(now)
            if samples >= self._settings.min_samples and rate >= self._settings.error_rate_threshold:
                self._trip(now)

    def snapshot(self) -> dict:
        now = time.monotonic()
        with self._lock:
            samples, failures, rate = self._window_stats(now)
            open_for = now - self._opened_at if self._state == STATE_OPEN and self._opened_at else 0.0
            return {
                "state": self._state,
                "enabled": self._settings.enabled,
                "samples": samples,
                "failures": failures,
                "failure_rate": round(rate, 4),
                "opened_seconds_ago": round(max(0.0, open_for), 2),
            }

    def reset_for_tests(self) -> None:
        with self._lock:
            self._settings = CircuitSettings()
            self._reset_locked()


_CIRCUIT_BREAKER = NetSuiteCircuitBreaker()


def get_netsuite_circuit_breaker() -> NetSuiteCircuitBreaker:
    return _CIRCUIT_BREAKER


def netsuite_circuit_snapshot() -> dict:
    return _CIRCUIT_BREAKER.snapshot()


def reset_netsuite_circuit_breaker_for_tests() -> None:
    _CIRCUIT_BREAKER.reset_for_tests()
