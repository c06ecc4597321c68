from __future__ import annotations

import hashlib
import secrets
import threading
import time
from typing import Callable, Dict, Tuple

from flask import current_app, request

from netsuite_sync.errors import PermissionError, SyncConfigurationError, ValidationError


def _bearer_token() -> str:
    header = str(request.headers.get("Authorization") or "").strip()
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def _token_matches(expected: str, provided: str) -> bool:
    if not expected or not provided:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def require_admin_token() -> None:
    """Admin endpoints are open when SYNC_ADMIN_TOKEN is unset (local use)."""
    expected = str(current_app.config.get("SYNC_ADMIN_TOKEN") or "").strip()
    if not expected:
        return
    if _token_matches(expected, _bearer_token()):
        return
    raise PermissionError(code="admin_token_invalid", message_key="permission_denied")


def require_webhook_secret() -> None:
    expected = str(current_app.config.get("NETSUITE_WEBHOOK_SECRET") or "").strip()
    if not expected:
        raise SyncConfigurationError(
            code="webhook_secret_missing",
            message_key="webhook_secret_missing",
            details="NETSUITE_WEBHOOK_SECRET is not configured",
        )
    if _token_matches(expected, _bearer_token()):
        return
    raise PermissionError(code="webhook_unauthorized", message_key="permission_denied")


class FixedWindowRateLimiter:
    """Per-caller request budget over fixed windows; ``allow`` returns (allowed, retry_after_seconds)."""

    max_tracked_callers = 10_000

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str, *, limit: int, window_seconds: int) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            window_start, used = self._windows.get(key, (now, 0))
            if now - window_start >= window_seconds:
                window_start, used = now, 0
            used += 1
            self._windows[key] = (window_start, used)
            if len(self._windows) > self.max_tracked_callers:
                self._evict_expired(now, window_seconds)
        retry_after = max(1, int(window_start + window_seconds - now))
        return used <= limit, retry_after

    def _evict_expired(self, now: float, window_seconds: int) -> None:
        self._windows = {
            key: window for key, window in self._windows.items() if now - window[0] < window_seconds
        }

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_API_LIMITER = FixedWindowRateLimiter()


def _caller_key() -> str:
    # Bearer callers are keyed by a token fingerprint, anonymous ones by address.
    token = _bearer_token()
    if token:
        caller = "token:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    else:
        caller = "ip:" + (str(request.remote_addr or "").strip() or "unknown")
    route = request.url_rule.rule if request.url_rule else request.path
    return f"{caller}|{request.method}|{route}"


def enforce_rate_limit() -> None:
    if not bool(current_app.config.get("RATE_LIMIT_ENABLED", True)):
        return
    if request.method == "OPTIONS" or not request.path.startswith("/api/"):
        return

    window_seconds = max(1, int(current_app.config.get("RATE_LIMIT_WINDOW_SECONDS", 60) or 60))
    max_requests = max(1, int(current_app.config.get("RATE_LIMIT_MAX_REQUESTS", 300) or 300))
    allowed, retry_after = _API_LIMITER.allow(_caller_key(), limit=max_requests, window_seconds=window_seconds)
    if allowed:
        return
    current_app.logger.warning(
        "api_rate_limited",
        extra={"request_path": request.path, "http_method": request.method, "retry_after": retry_after},
    )
    raise ValidationError(
        code="rate_limit_exceeded",
        message_key="rate_limit_exceeded",
        http_status=429,
        critical=False,
        payload={"retry_after": retry_after},
    )


def apply_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


def reset_rate_limiter_for_tests() -> None:
    _API_LIMITER.reset()
