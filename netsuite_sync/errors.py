from __future__ import annotations

import re
from typing import Any, Dict


_MESSAGES: Dict[str, str] = {
    "unexpected_error": "The operation could not be completed.",
    "action_invalid": "The requested action is not allowed.",
    "validation_error": "The request payload is invalid.",
    "permission_denied": "Missing or invalid credentials.",
    "not_found": "The requested record does not exist.",
    "job_not_cancellable": "Only pending jobs can be cancelled.",
    "invalid_transition": "The job cannot move to the requested status.",
    "sync_config_missing": "Sync configuration is incomplete.",
    "sync_config_invalid": "Sync configuration value is invalid.",
    "webhook_secret_missing": "Webhook receiver is not configured.",
    "rate_limit_exceeded": "Too many requests. Try again shortly.",
    "netsuite_temporarily_unavailable": "NetSuite is temporarily unavailable.",
    "netsuite_rejected": "NetSuite rejected the item payload.",
}


def error_message(key: str, default: str | None = None) -> str:
    return _MESSAGES.get(key, default if default is not None else key)


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        return error_message(self.message_key, error_message("unexpected_error"))

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.details:
            payload["details"] = self.details
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "validation_error"
    default_http_status = 400
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 401
    default_critical = False


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "netsuite_temporarily_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


class SyncConfigurationError(SystemError):
    default_code = "sync_config_missing"
    default_message_key = "sync_config_missing"
    default_http_status = 503
    default_critical = True


class InvalidTransitionError(UserActionError):
    default_code = "invalid_transition"
    default_message_key = "invalid_transition"
    default_http_status = 409


class SyncFailure(Exception):
    """Classified outcome of a failed job attempt."""

    failure_class = "transient"
    retryable = True

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.message = str(message or "").strip() or self.failure_class
        self.status = status


class SyncValidationError(SyncFailure):
    failure_class = "validation"
    retryable = False


class SyncNotFoundError(SyncFailure):
    failure_class = "not_found"
    retryable = False


class TransientSyncError(SyncFailure):
    failure_class = "transient"
    retryable = True


class ExternalRejectionError(SyncFailure):
    failure_class = "external_rejection"
    retryable = False


class RetriesExhaustedError(SyncFailure):
    failure_class = "transient"
    retryable = False


_HTTP_CODE_PATTERN = re.compile(r"netsuite http\s+(\d{3})", re.IGNORECASE)


def _failure_for_status(http_status: int, message: str) -> SyncFailure:
    if http_status in {408, 429} or http_status >= 500:
        return TransientSyncError(message, status=http_status)
    if http_status == 404:
        return SyncNotFoundError(message, status=http_status)
    if 400 <= http_status < 500:
        return ExternalRejectionError(message, status=http_status)
    return TransientSyncError(message, status=http_status)


def classify_failure(exc: BaseException) -> SyncFailure:
    if isinstance(exc, SyncFailure):
        return exc

    from netsuite_sync.contexts.netsuite.domain.gateway import NetSuiteGatewayError

    message = str(exc)[:1000] or exc.__class__.__name__
    if isinstance(exc, NetSuiteGatewayError):
        if exc.timeout:
            return TransientSyncError(message)
        if exc.status is not None:
            return _failure_for_status(int(exc.status), message)
        if exc.definitive:
            return ExternalRejectionError(message)

    if isinstance(exc, TimeoutError):
        return TransientSyncError(message)

    normalized = message.lower()
    code_match = _HTTP_CODE_PATTERN.search(normalized)
    if code_match:
        return _failure_for_status(int(code_match.group(1)), message)
    return TransientSyncError(message)
