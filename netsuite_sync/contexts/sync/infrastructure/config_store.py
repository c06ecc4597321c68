from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Tuple

from netsuite_sync.contexts.sync.infrastructure.support import iso_utc
from netsuite_sync.db import row_to_dict
from netsuite_sync.errors import SyncConfigurationError, ValidationError


DEFAULT_SYNC_CONFIG: Tuple[Tuple[str, str, str], ...] = (
    ("sync_enabled", "true", "Automatic OPMS to NetSuite sync; manual triggers still run when off"),
    ("sync_paused", "false", "Worker pause switch; no job is claimed while paused"),
    ("batch_size", "25", "Jobs claimed per worker tick"),
    ("max_retries", "3", "Delivery attempts before a job fails permanently"),
    ("backoff_base_seconds", "30", "Base delay for exponential retry backoff"),
    ("backoff_max_seconds", "3600", "Upper bound for a single retry delay"),
    ("backoff_jitter_ratio", "0.2", "Random jitter added to each delay, as a fraction of it"),
    ("rate_limit_per_second", "5", "Outbound NetSuite calls started per second across workers"),
    ("max_inflight", "4", "Concurrent outbound NetSuite calls per worker"),
    ("debounce_seconds", "30", "Idle time after the last edit before a change is queued"),
    ("stale_processing_seconds", "600", "PROCESSING age after which a job is reclaimed"),
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _int_at_least(minimum: int) -> Callable[[str], int]:
    def _parse(raw: str) -> int:
        value = int(raw.strip())
        if value < minimum:
            raise ValueError(f"must be >= {minimum}")
        return value

    return _parse


def _float_between(minimum: float, maximum: float | None = None, *, exclusive_min: bool = False) -> Callable[[str], float]:
    def _parse(raw: str) -> float:
        value = float(raw.strip())
        if value != value or (value <= minimum if exclusive_min else value < minimum):
            raise ValueError(f"must be {'>' if exclusive_min else '>='} {minimum}")
        if maximum is not None and value > maximum:
            raise ValueError(f"must be <= {maximum}")
        return value

    return _parse


_PARSERS: Dict[str, Callable[[str], Any]] = {
    "sync_enabled": _parse_bool,
    "sync_paused": _parse_bool,
    "batch_size": _int_at_least(1),
    "max_retries": _int_at_least(1),
    "backoff_base_seconds": _float_between(0.0, exclusive_min=True),
    "backoff_max_seconds": _float_between(0.0, exclusive_min=True),
    "backoff_jitter_ratio": _float_between(0.0, 1.0),
    "rate_limit_per_second": _float_between(0.0, exclusive_min=True),
    "max_inflight": _int_at_least(1),
    "debounce_seconds": _float_between(0.0),
    "stale_processing_seconds": _float_between(0.0, exclusive_min=True),
}
REQUIRED_KEYS = tuple(key for key, _value, _description in DEFAULT_SYNC_CONFIG)


@dataclass(frozen=True)
class SyncSettings:
    sync_enabled: bool
    sync_paused: bool
    batch_size: int
    max_retries: int
    backoff_base_seconds: float
    backoff_max_seconds: float
    backoff_jitter_ratio: float
    rate_limit_per_second: float
    max_inflight: int
    debounce_seconds: float
    stale_processing_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_value(key: str, raw: object) -> Any:
    try:
        return _PARSERS[key](str(raw if raw is not None else ""))
    except ValueError as exc:
        raise SyncConfigurationError(
            code="sync_config_invalid",
            message_key="sync_config_invalid",
            details=f"{key}={raw!r}: {exc}",
        ) from exc


def _raw_config(db) -> Dict[str, str]:
    rows = db.execute("SELECT config_key, config_value FROM sync_config").fetchall()
    return {str(row["config_key"]): row["config_value"] for row in rows}


def _settings_from_raw(raw: Dict[str, Any]) -> SyncSettings:
    missing = [key for key in REQUIRED_KEYS if key not in raw or raw[key] is None]
    if missing:
        raise SyncConfigurationError(details=f"missing sync_config keys: {', '.join(missing)}")
    values = {key: _parse_value(key, raw[key]) for key in REQUIRED_KEYS}
    if values["backoff_max_seconds"] < values["backoff_base_seconds"]:
        raise SyncConfigurationError(
            code="sync_config_invalid",
            message_key="sync_config_invalid",
            details="backoff_max_seconds must be >= backoff_base_seconds",
        )
    return SyncSettings(**values)


def load_sync_settings(db) -> SyncSettings:
    """Read the sync settings; a missing or unparsable key is an error, never a default."""
    return _settings_from_raw(_raw_config(db))


def list_sync_config(db) -> List[Dict[str, Any]]:
    rows = db.execute(
        """
        SELECT config_key, config_value, description, updated_by, updated_at
        FROM sync_config
        ORDER BY config_key ASC
        """
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def _normalize_entry(key: str, value: object) -> Tuple[str, str]:
    normalized_key = str(key or "").strip()
    if normalized_key not in _PARSERS:
        raise ValidationError(code="unknown_config_key", details=f"unknown sync_config key: {normalized_key!r}")
    if isinstance(value, bool):
        raw = "true" if value else "false"
    else:
        raw = str(value if value is not None else "").strip()
    try:
        _PARSERS[normalized_key](raw)
    except ValueError as exc:
        raise ValidationError(code="invalid_config_value", details=f"{normalized_key}: {exc}") from exc
    return normalized_key, raw


def _write_entry(db, key: str, raw: str, *, updated_by: str) -> Dict[str, Any]:
    description = next((text for name, _v, text in DEFAULT_SYNC_CONFIG if name == key), None)
    db.execute(
        """
        INSERT INTO sync_config (config_key, config_value, description, updated_by, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (config_key) DO UPDATE SET
            config_value = excluded.config_value,
            updated_by = excluded.updated_by,
            updated_at = excluded.updated_at
        """,
        (key, raw, description, str(updated_by or "admin"), iso_utc()),
    )
    return {"config_key": key, "config_value": raw}


def update_sync_config(db, values: Dict[str, object], *, updated_by: str = "admin") -> List[Dict[str, Any]]:
    """Write several keys at once; nothing is written unless the merged settings are valid.

    A table with keys still missing accepts writes so it can be repaired key by key.
    """
    entries = dict(_normalize_entry(key, value) for key, value in values.items())
    merged: Dict[str, Any] = dict(_raw_config(db))
    merged.update(entries)
    try:
        _settings_from_raw(merged)
    except SyncConfigurationError as exc:
        if exc.code == "sync_config_invalid":
            raise ValidationError(
                code="sync_config_invalid",
                message_key="sync_config_invalid",
                details=exc.details,
            ) from exc
    return [_write_entry(db, key, raw, updated_by=updated_by) for key, raw in entries.items()]


def set_sync_config(db, key: str, value: object, *, updated_by: str = "admin") -> Dict[str, Any]:
    return update_sync_config(db, {key: value}, updated_by=updated_by)[0]


def set_sync_enabled(db, enabled: bool, *, updated_by: str = "admin") -> Dict[str, Any]:
    return set_sync_config(db, "sync_enabled", bool(enabled), updated_by=updated_by)


def set_sync_paused(db, paused: bool, *, updated_by: str = "admin") -> Dict[str, Any]:
    return set_sync_config(db, "sync_paused", bool(paused), updated_by=updated_by)
