from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import current_app, g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_SYNC_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_SYNC_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 60.0, 120.0, 300.0, 600.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload or callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


def _label(value: object) -> str:
    return str(value or "unknown").strip() or "unknown"


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _bump(counter: Dict[tuple, int], key: tuple, increment: int = 1) -> None:
        counter[key] = int(counter.get(key, 0)) + increment

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = _label(route)
        status_key = str(int(status_code))
        with self._lock:
            self._requests_total += 1
            if int(status_code) >= 400:
                self._errors_total += 1
            self._bump(self._http_request_total, (method_key, route_key, status_key))
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_job_enqueued(self, direction: str, outcome: str) -> None:
        with self._lock:
            self._bump(self._sync_jobs_enqueued_total, (_label(direction), _label(outcome)))

    def observe_job_processed(self, direction: str, result: str, duration_ms: float) -> None:
        with self._lock:
            self._bump(self._sync_jobs_processed_total, (_label(direction), _label(result)))
            self._observe_histogram(self._sync_processing_time_ms, duration_ms, _SYNC_PROCESSING_BUCKETS_MS)

    def observe_retry(self, backoff_seconds: float) -> None:
        with self._lock:
            self._sync_retry_total += 1
            self._observe_histogram(self._sync_retry_backoff_seconds, backoff_seconds, _SYNC_BACKOFF_BUCKETS_SECONDS)

    def observe_failed_permanent(self, failure_class: str) -> None:
        with self._lock:
            self._bump(self._sync_failed_permanent_total, (_label(failure_class),))

    def observe_skip(self, direction: str, reason: str) -> None:
        with self._lock:
            self._bump(self._sync_skipped_total, (_label(direction), _label(reason)))

    def observe_debounce(self, promoted: int, deferred: int) -> None:
        with self._lock:
            self._sync_debounce_promoted_total += max(0, int(promoted))
            self._sync_debounce_deferred_total += max(0, int(deferred))

    def observe_dry_run(self, validation_status: str) -> None:
        with self._lock:
            self._bump(self._sync_dry_run_total, (_label(validation_status),))

    def observe_simulator_result(self, result: str) -> None:
        with self._lock:
            self._bump(self._netsuite_simulator_result_total, (_label(result),))

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def snapshot(self) -> dict:
        with self._lock:
            requests_total = int(self._requests_total)
            errors_total = int(self._errors_total)
            processed = {}
            for (direction, result), value in sorted(self._sync_jobs_processed_total.items()):
                processed.setdefault(direction, {})[result] = int(value)
            return {
                "requests_total": requests_total,
                "errors_total": errors_total,
                "error_rate": round(errors_total / requests_total, 4) if requests_total else 0.0,
                "sync_jobs_processed": processed,
                "sync_retry_total": int(self._sync_retry_total),
                "sync_debounce_promoted_total": int(self._sync_debounce_promoted_total),
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": dict(self._http_request_total),
                "http_request_duration_ms": {
                    key: self._copy_histogram(state) for key, state in self._http_request_duration_ms.items()
                },
                "sync_jobs_enqueued_total": dict(self._sync_jobs_enqueued_total),
                "sync_jobs_processed_total": dict(self._sync_jobs_processed_total),
                "sync_processing_time_ms": self._copy_histogram(self._sync_processing_time_ms),
                "sync_retry_total": int(self._sync_retry_total),
                "sync_retry_backoff_seconds": self._copy_histogram(self._sync_retry_backoff_seconds),
                "sync_failed_permanent_total": dict(self._sync_failed_permanent_total),
                "sync_skipped_total": dict(self._sync_skipped_total),
                "sync_debounce_promoted_total": int(self._sync_debounce_promoted_total),
                "sync_debounce_deferred_total": int(self._sync_debounce_deferred_total),
                "sync_dry_run_total": dict(self._sync_dry_run_total),
                "netsuite_simulator_result_total": dict(self._netsuite_simulator_result_total),
            }

    def reset(self) -> None:
        with self._lock:
            self._requests_total = 0
            self._errors_total = 0
            self._http_request_total: Dict[tuple, int] = {}
            self._http_request_duration_ms: Dict[tuple, dict] = {}
            self._sync_jobs_enqueued_total: Dict[tuple, int] = {}
            self._sync_jobs_processed_total: Dict[tuple, int] = {}
            self._sync_processing_time_ms = self._new_histogram_state(_SYNC_PROCESSING_BUCKETS_MS)
            self._sync_retry_total = 0
            self._sync_retry_backoff_seconds = self._new_histogram_state(_SYNC_BACKOFF_BUCKETS_SECONDS)
            self._sync_failed_permanent_total: Dict[tuple, int] = {}
            self._sync_skipped_total: Dict[tuple, int] = {}
            self._sync_debounce_promoted_total = 0
            self._sync_debounce_deferred_total = 0
            self._sync_dry_run_total: Dict[tuple, int] = {}
            self._netsuite_simulator_result_total: Dict[tuple, int] = {}


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_sync_job_enqueued(direction: str, outcome: str) -> None:
    _METRICS.observe_job_enqueued(direction, outcome)


def observe_sync_job_processed(direction: str, result: str, duration_ms: float) -> None:
    _METRICS.observe_job_processed(direction, result, duration_ms)


def observe_sync_retry(backoff_seconds: float) -> None:
    _METRICS.observe_retry(backoff_seconds)


def observe_sync_failed_permanent(failure_class: str) -> None:
    _METRICS.observe_failed_permanent(failure_class)


def observe_sync_skip(direction: str, reason: str) -> None:
    _METRICS.observe_skip(direction, reason)


def observe_debounce_sweep(promoted: int, deferred: int) -> None:
    _METRICS.observe_debounce(promoted, deferred)


def observe_dry_run(validation_status: str) -> None:
    _METRICS.observe_dry_run(validation_status)


def observe_netsuite_simulator_result(result: str) -> None:
    _METRICS.observe_simulator_result(result)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def _prom_counter(lines: list[str], name: str, help_text: str, samples: dict, label_names: tuple[str, ...]) -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} counter")
    for key, value in sorted(samples.items()):
        lines.append(_prom_line(name, int(value), labels=dict(zip(label_names, key))))


def prometheus_metrics_text(*, queue_state: dict | None = None, circuit_state: dict | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    _prom_counter(
        lines,
        "http_request_total",
        "Total HTTP requests by method, route and status.",
        snapshot["http_request_total"],
        ("method", "route", "status"),
    )
    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for (method, route), hist in sorted(snapshot["http_request_duration_ms"].items()):
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": method, "route": route})

    queue = dict((queue_state or {}).get("queue") or {})
    lines.append("# HELP sync_queue_size Sync jobs by state.")
    lines.append("# TYPE sync_queue_size gauge")
    for state in ("pending", "processing", "failed_permanent", "succeeded", "skipped"):
        lines.append(_prom_line("sync_queue_size", int(queue.get(f"{state}_jobs") or 0), labels={"state": state}))

    _prom_counter(
        lines,
        "sync_jobs_enqueued_total",
        "Enqueue requests by direction and outcome.",
        snapshot["sync_jobs_enqueued_total"],
        ("direction", "outcome"),
    )
    _prom_counter(
        lines,
        "sync_jobs_processed_total",
        "Processed sync jobs by direction and result.",
        snapshot["sync_jobs_processed_total"],
        ("direction", "result"),
    )

    lines.append("# HELP sync_retry_total Total retries scheduled.")
    lines.append("# TYPE sync_retry_total counter")
    lines.append(_prom_line("sync_retry_total", int(snapshot["sync_retry_total"])))

    _prom_counter(
        lines,
        "sync_failed_permanent_total",
        "Jobs moved to FAILED_PERMANENT by failure class.",
        snapshot["sync_failed_permanent_total"],
        ("failure_class",),
    )
    _prom_counter(
        lines,
        "sync_skipped_total",
        "Jobs resolved as business-rule skips.",
        snapshot["sync_skipped_total"],
        ("direction", "reason"),
    )

    lines.append("# HELP sync_processing_time_ms Job processing time in milliseconds.")
    lines.append("# TYPE sync_processing_time_ms histogram")
    _prom_histogram(lines, "sync_processing_time_ms", snapshot["sync_processing_time_ms"])

    lines.append("# HELP sync_retry_backoff_seconds Scheduled retry delay in seconds.")
    lines.append("# TYPE sync_retry_backoff_seconds histogram")
    _prom_histogram(lines, "sync_retry_backoff_seconds", snapshot["sync_retry_backoff_seconds"])

    lines.append("# HELP sync_debounce_promoted_total Change records promoted to jobs.")
    lines.append("# TYPE sync_debounce_promoted_total counter")
    lines.append(_prom_line("sync_debounce_promoted_total", int(snapshot["sync_debounce_promoted_total"])))
    lines.append("# HELP sync_debounce_deferred_total Change records kept behind an active job.")
    lines.append("# TYPE sync_debounce_deferred_total counter")
    lines.append(_prom_line("sync_debounce_deferred_total", int(snapshot["sync_debounce_deferred_total"])))

    _prom_counter(
        lines,
        "sync_dry_run_total",
        "Dry runs by validation status.",
        snapshot["sync_dry_run_total"],
        ("validation_status",),
    )
    _prom_counter(
        lines,
        "netsuite_simulator_result_total",
        "Simulated NetSuite outcomes.",
        snapshot["netsuite_simulator_result_total"],
        ("result",),
    )

    circuit = dict(circuit_state or {})
    current_state = str(circuit.get("state") or "closed")
    lines.append("# HELP netsuite_circuit_state NetSuite circuit breaker state.")
    lines.append("# TYPE netsuite_circuit_state gauge")
    for state in ("closed", "open", "half_open"):
        lines.append(_prom_line("netsuite_circuit_state", 1 if state == current_state else 0, labels={"state": state}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _parse_timestamp(value: str | None) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _queue_critical_thresholds() -> tuple[int, int]:
    age_seconds = int(current_app.config.get("SYNC_QUEUE_CRITICAL_AGE_SECONDS", 900) or 900)
    pending_jobs = int(current_app.config.get("SYNC_QUEUE_CRITICAL_PENDING_JOBS", 200) or 200)
    return max(1, age_seconds), max(1, pending_jobs)


def queue_health(db) -> dict:
    rows = db.execute(
        """
        SELECT status, COUNT(*) AS total, MIN(created_at) AS oldest_created_at,
               MAX(started_at) AS last_started_at, MAX(completed_at) AS last_completed_at
        FROM sync_jobs
        GROUP BY status
        """
    ).fetchall()
    counters = {
        "PENDING": 0,
        "PROCESSING": 0,
        "FAILED_RETRYABLE": 0,
        "FAILED_PERMANENT": 0,
        "SUCCESS": 0,
        "SKIPPED": 0,
        "CANCELLED": 0,
    }
    oldest_pending_at = None
    last_started_at = None
    last_completed_at = None
    for row in rows:
        status = str(row["status"] or "").strip().upper()
        counters[status] = int(row["total"] or 0)
        if status == "PENDING":
            oldest_pending_at = _parse_timestamp(row["oldest_created_at"])
        started = _parse_timestamp(row["last_started_at"])
        completed = _parse_timestamp(row["last_completed_at"])
        if started and (last_started_at is None or started > last_started_at):
            last_started_at = started
        if completed and (last_completed_at is None or completed > last_completed_at):
            last_completed_at = completed

    now = datetime.now(timezone.utc)
    oldest_age = int((now - oldest_pending_at).total_seconds()) if oldest_pending_at else 0
    critical_age_seconds, critical_pending_jobs = _queue_critical_thresholds()
    backlog_critical = counters["PENDING"] >= critical_pending_jobs or oldest_age >= critical_age_seconds

    worker_state = "idle"
    if counters["PROCESSING"] > 0:
        worker_state = "running"
    elif counters["PENDING"] > 0:
        worker_state = "stalled" if backlog_critical else "draining"

    return {
        "worker_status": worker_state,
        "backlog_critical": backlog_critical,
        "queue": {
            "pending_jobs": counters["PENDING"],
            "processing_jobs": counters["PROCESSING"],
            "retrying_jobs": counters["FAILED_RETRYABLE"],
            "failed_permanent_jobs": counters["FAILED_PERMANENT"],
            "succeeded_jobs": counters["SUCCESS"],
            "skipped_jobs": counters["SKIPPED"],
            "cancelled_jobs": counters["CANCELLED"],
            "oldest_pending_age_seconds": oldest_age,
            "last_started_at": last_started_at.isoformat().replace("+00:00", "Z") if last_started_at else None,
            "last_completed_at": last_completed_at.isoformat().replace("+00:00", "Z") if last_completed_at else None,
        },
    }
