from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Tuple

from flask import current_app

from netsuite_sync.contexts.netsuite.domain.gateway import (
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_UPDATE,
    DeliveryResult,
    NetSuiteGateway,
)
from netsuite_sync.contexts.netsuite.infrastructure.circuit_breaker import (
    STATE_HALF_OPEN,
    CircuitSettings,
    get_netsuite_circuit_breaker,
)
from netsuite_sync.contexts.netsuite.interfaces.runtime import build_netsuite_gateway
from netsuite_sync.contexts.sync.application.retry import schedule_retry
from netsuite_sync.contexts.sync.domain.events import InitialPricingEvent, ManualTriggerEvent, PricingWebhookEvent
from netsuite_sync.contexts.sync.domain.pricing import (
    SKIP_PRICING_FLAG,
    extract_pricing,
    is_skip_flag_set,
    require_identifiers,
    validate_pricing,
)
from netsuite_sync.contexts.sync.domain.states import Direction, JobStatus
from netsuite_sync.contexts.sync.domain.transform import build_netsuite_payload, skip_reason
from netsuite_sync.contexts.sync.domain.validation import STATUS_FAILED, validate_payload
from netsuite_sync.contexts.sync.infrastructure.catalog_repository import CatalogRepository
from netsuite_sync.contexts.sync.infrastructure.config_store import SyncSettings, load_sync_settings
from netsuite_sync.contexts.sync.infrastructure.rate_limiter import DispatchRateLimiter
from netsuite_sync.contexts.sync.infrastructure.run_store import get_item_status, record_item_status, update_items_for_job
from netsuite_sync.contexts.sync.infrastructure.support import iso_utc
from netsuite_sync.contexts.sync.infrastructure.sync_queue import (
    claim_job,
    get_job,
    job_event,
    reclaim_stale_jobs,
    select_due_jobs,
    transition_job,
)
from netsuite_sync.errors import (
    AppError,
    RetriesExhaustedError,
    SyncFailure,
    SyncNotFoundError,
    SyncValidationError,
    classify_failure,
)
from netsuite_sync.observability import bind_request_id, observe_sync_job_processed, observe_sync_skip


SKIP_LIVE_SYNC_DISABLED = "live_sync_disabled"
SKIP_NO_PRICING_FIELDS = "no_pricing_fields"
SKIP_NOT_IN_NETSUITE = "not_in_netsuite"

_LIMITERS: Dict[float, DispatchRateLimiter] = {}
_LIMITERS_LOCK = threading.Lock()


@dataclass
class JobAttempt:
    """One claimed job on its way to a single state transition."""

    job: Dict[str, Any]
    started: float = field(default_factory=time.perf_counter)
    payload: Dict[str, Any] | None = None
    operation: str | None = None
    item_code: str | None = None
    skip_reason: str | None = None
    failure: SyncFailure | None = None
    external_id: str | None = None
    sync_fields: Dict[str, Any] | None = None
    pricing_before: Dict[str, Any] | None = None
    pricing_after: Dict[str, Any] | None = None
    opms_item_id: str | None = None
    netsuite_item_id: str | None = None
    warnings: List[str] = field(default_factory=list)

    @property
    def needs_delivery(self) -> bool:
        return self.operation is not None and self.skip_reason is None and self.failure is None


def dispatch_rate_limiter(rate_per_second: float) -> DispatchRateLimiter:
    """Process-wide limiter so call spacing holds across worker ticks."""
    key = round(float(rate_per_second), 6)
    with _LIMITERS_LOCK:
        limiter = _LIMITERS.get(key)
        if limiter is None:
            limiter = DispatchRateLimiter(key)
            _LIMITERS[key] = limiter
        return limiter


def reset_dispatch_rate_limiters_for_tests() -> None:
    with _LIMITERS_LOCK:
        _LIMITERS.clear()


class OutboundItemHandler:
    """OPMS item -> NetSuite inventory item."""

    direction = Direction.OUTBOUND.value

    def __init__(self, db, gateway: NetSuiteGateway, catalog: CatalogRepository) -> None:
        self.db = db
        self.gateway = gateway
        self.catalog = catalog

    def prepare(self, attempt: JobAttempt) -> None:
        job = attempt.job
        event = job_event(job)
        attempt.opms_item_id = str(job["entity_id"])
        if isinstance(event, ManualTriggerEvent) and not event.live_sync:
            attempt.skip_reason = SKIP_LIVE_SYNC_DISABLED
            return

        known = get_item_status(self.db, job["entity_id"]) or {}
        if job.get("event_type") == "delete":
            snapshot = self.catalog.load_item_snapshot(job["entity_id"])
            item_code = known.get("item_code") or (snapshot.item_code if snapshot else None)
            if not item_code:
                raise SyncNotFoundError(f"no NetSuite item code known for OPMS item {job['entity_id']}")
            attempt.item_code = str(item_code)
            attempt.operation = OPERATION_DELETE
            return

        snapshot = self.catalog.load_item_snapshot(job["entity_id"])
        if snapshot is None:
            raise SyncNotFoundError(f"OPMS item {job['entity_id']} not found")
        reason = skip_reason(snapshot, manual=event.manual)
        if reason:
            attempt.item_code = snapshot.item_code
            attempt.skip_reason = reason
            return

        payload = build_netsuite_payload(snapshot)
        validation = validate_payload(payload)
        if validation.status == STATUS_FAILED:
            raise SyncValidationError("; ".join(validation.errors))
        attempt.warnings.extend(validation.warnings)
        attempt.payload = payload
        attempt.item_code = payload["itemId"]
        attempt.sync_fields = payload
        attempt.operation = OPERATION_UPDATE if known.get("netsuite_item_id") else OPERATION_CREATE

    def deliver(self, attempt: JobAttempt, limiter: DispatchRateLimiter) -> DeliveryResult:
        """Every gateway call takes its own limiter slot."""
        if attempt.operation == OPERATION_DELETE:
            limiter.acquire()
            return self.gateway.delete_item(str(attempt.item_code))
        # No local record of a NetSuite id: the item may still exist there from an earlier import.
        if attempt.operation == OPERATION_CREATE:
            limiter.acquire()
            if self.gateway.search_item(str(attempt.item_code)) is not None:
                attempt.operation = OPERATION_UPDATE
        limiter.acquire()
        return self.gateway.upsert_item(dict(attempt.payload or {}), operation=str(attempt.operation))


class InboundPricingHandler:
    """NetSuite pricing -> OPMS pricing columns; never touches other fields.

    Webhook jobs carry the item data. Initial pricing jobs look the item up
    in NetSuite by code first, through the same rate limiter as outbound calls.
    """

    direction = Direction.INBOUND.value

    def __init__(
        self,
        db,
        catalog: CatalogRepository,
        now: datetime | None = None,
        *,
        gateway: NetSuiteGateway | None = None,
        limiter: DispatchRateLimiter | None = None,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.now = now
        self.gateway = gateway
        self.limiter = limiter

    def _search(self, item_code: str) -> DeliveryResult | None:
        if self.gateway is None:
            self.gateway = build_netsuite_gateway()
        if self.limiter is not None:
            self.limiter.acquire()
        return self.gateway.search_item(item_code)

    def _item_data(self, attempt: JobAttempt, event) -> Dict[str, Any] | None:
        if isinstance(event, PricingWebhookEvent):
            attempt.netsuite_item_id = event.netsuite_internal_id or None
            return dict(event.item_data or {})
        if isinstance(event, InitialPricingEvent):
            attempt.item_code = event.item_code
            attempt.opms_item_id = event.opms_item_id
            found = self._search(event.item_code)
            if found is None or not found.external_id:
                return None
            return {**found.echoed_fields, "itemid": event.item_code, "internalid": found.external_id}
        raise SyncValidationError(f"inbound job carries a {event.kind} event")

    def prepare(self, attempt: JobAttempt) -> None:
        item_data = self._item_data(attempt, job_event(attempt.job))
        if item_data is None:
            attempt.skip_reason = SKIP_NOT_IN_NETSUITE
            return
        # The skip flag wins over everything, including missing identifiers.
        if is_skip_flag_set(item_data):
            attempt.skip_reason = SKIP_PRICING_FLAG
            return

        item_code, internal_id = require_identifiers(item_data)
        attempt.item_code = item_code
        attempt.netsuite_item_id = internal_id
        item = self.catalog.find_item_by_code(item_code)
        if item is None:
            raise SyncNotFoundError(f"OPMS item with code {item_code} not found")
        attempt.opms_item_id = str(item["id"])

        pricing = validate_pricing(extract_pricing(item_data))
        if not pricing.valid:
            raise SyncValidationError("; ".join(pricing.errors))
        if not pricing.values:
            attempt.skip_reason = SKIP_NO_PRICING_FIELDS
            return
        attempt.warnings.extend(pricing.warnings)
        before, after = self.catalog.apply_pricing(item["product_id"], pricing.values, now=self.now)
        attempt.pricing_before = before
        attempt.pricing_after = after
        attempt.sync_fields = dict(pricing.values)
        attempt.external_id = internal_id


def _process_limiter(settings: SyncSettings) -> DispatchRateLimiter:
    processes = max(1, int(current_app.config.get("SYNC_WORKER_PROCESSES", 1) or 1))
    return dispatch_rate_limiter(settings.rate_limit_per_second / processes)


def _attempt_limit(job: Dict[str, Any], settings: SyncSettings) -> int:
    return min(int(job.get("max_attempts") or settings.max_retries), int(settings.max_retries))


def _new_summary() -> Dict[str, Any]:
    return {"processed": 0, "succeeded": 0, "skipped": 0, "requeued": 0, "failed": 0, "reclaimed": 0}


def process_sync_queue(
    db,
    *,
    direction: str = Direction.OUTBOUND.value,
    gateway: NetSuiteGateway | None = None,
    settings: SyncSettings | None = None,
    limit: int | None = None,
    now: datetime | None = None,
    catalog: CatalogRepository | None = None,
) -> Dict[str, Any]:
    """Run one worker tick for a direction and return what happened."""
    direction = Direction(str(direction or "").strip().lower()).value
    settings = settings or load_sync_settings(db)
    summary = _new_summary()
    if settings.sync_paused:
        summary["paused"] = True
        return summary

    reclaimed = reclaim_stale_jobs(db, stale_seconds=settings.stale_processing_seconds, now=now)
    for job_id in reclaimed:
        job = get_job(db, job_id)
        if job is not None:
            update_items_for_job(db, job, job_status=job["status"], error_message=job.get("last_error_message"), now=now)
    db.commit()
    summary["reclaimed"] = len(reclaimed)
    if reclaimed:
        current_app.logger.warning("sync_stale_jobs_reclaimed", extra={"direction": direction, "job_ids": reclaimed})

    catalog = catalog or CatalogRepository(db)
    batch_size = max(1, int(limit or settings.batch_size))
    if direction == Direction.OUTBOUND.value:
        breaker = get_netsuite_circuit_breaker()
        breaker.configure(CircuitSettings.from_app(current_app))
        allowed, circuit_state = breaker.allow_call()
        summary["circuit_state"] = circuit_state
        if not allowed:
            current_app.logger.warning("sync_worker_circuit_open", extra={"direction": direction, "circuit_state": circuit_state})
            return summary
        if circuit_state == STATE_HALF_OPEN:
            batch_size = 1
        handler: OutboundItemHandler | InboundPricingHandler = OutboundItemHandler(
            db,
            gateway or build_netsuite_gateway(),
            catalog,
        )
    else:
        breaker = None
        handler = InboundPricingHandler(db, catalog, now=now, gateway=gateway, limiter=_process_limiter(settings))

    candidates = select_due_jobs(
        db,
        direction=direction,
        limit=batch_size,
        now=now,
        manual_only=not settings.sync_enabled,
    )

    deliveries: List[JobAttempt] = []
    for candidate in candidates:
        if not claim_job(db, candidate["id"], now=now):
            continue
        db.commit()
        job = get_job(db, candidate["id"]) or candidate
        attempt = JobAttempt(job=job)
        with bind_request_id(f"sync-job-{job['id']}"):
            update_items_for_job(db, job, job_status=JobStatus.PROCESSING.value, now=now)
            db.commit()
            if int(job["attempt_count"]) > _attempt_limit(job, settings):
                attempt.failure = RetriesExhaustedError(
                    f"retry ceiling of {_attempt_limit(job, settings)} attempts reached"
                )
            else:
                try:
                    handler.prepare(attempt)
                except Exception as exc:  # noqa: BLE001
                    attempt.failure = _failure_from(exc)
            if attempt.needs_delivery:
                deliveries.append(attempt)
            else:
                _apply_outcome(db, attempt, direction=direction, settings=settings, now=now, summary=summary)

    if deliveries and isinstance(handler, OutboundItemHandler):
        for attempt in _dispatch(handler, deliveries, limiter=_process_limiter(settings), max_inflight=settings.max_inflight):
            if breaker is not None:
                if attempt.failure is None:
                    breaker.record_success()
                elif attempt.failure.retryable:
                    breaker.record_failure()
            with bind_request_id(f"sync-job-{attempt.job['id']}"):
                _apply_outcome(db, attempt, direction=direction, settings=settings, now=now, summary=summary)

    return summary


def _failure_from(exc: BaseException) -> SyncFailure:
    if isinstance(exc, AppError):
        return SyncValidationError(exc.details or exc.code)
    return classify_failure(exc)


def _deliver(handler: OutboundItemHandler, attempt: JobAttempt, limiter: DispatchRateLimiter) -> DeliveryResult:
    return handler.deliver(attempt, limiter)


def _dispatch(
    handler: OutboundItemHandler,
    attempts: List[JobAttempt],
    *,
    limiter: DispatchRateLimiter,
    max_inflight: int,
) -> List[JobAttempt]:
    """Run the network calls concurrently; results are applied by the caller's thread."""
    finished: List[JobAttempt] = []
    workers = max(1, min(int(max_inflight), len(attempts)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="netsuite-dispatch") as pool:
        futures = {pool.submit(_deliver, handler, attempt, limiter): attempt for attempt in attempts}
        for future in as_completed(futures):
            attempt = futures[future]
            try:
                result = future.result()
            except Exception as exc:  # noqa: BLE001
                attempt.failure = classify_failure(exc)
            else:
                attempt.external_id = result.external_id
                attempt.netsuite_item_id = result.external_id
            finished.append(attempt)
    return finished


def _apply_outcome(
    db,
    attempt: JobAttempt,
    *,
    direction: str,
    settings: SyncSettings,
    now: datetime | None,
    summary: Dict[str, Any],
) -> None:
    job = attempt.job
    try:
        outcome = _transition(db, attempt, settings=settings, now=now)
        final = get_job(db, job["id"]) or job
        error_message = None
        if final.get("last_error_class") and final["status"] != JobStatus.SUCCESS.value:
            error_message = f"{final['last_error_class']}: {final.get('last_error_message') or ''}".strip()
        update_items_for_job(
            db,
            final,
            job_status=final["status"],
            error_message=error_message,
            sync_fields=attempt.sync_fields,
            pricing_before=attempt.pricing_before,
            pricing_after=attempt.pricing_after,
            opms_item_id=attempt.opms_item_id,
            netsuite_item_id=attempt.netsuite_item_id,
            now=now,
        )
        if direction == Direction.OUTBOUND.value and final["status"] != JobStatus.PENDING.value:
            record_item_status(
                db,
                opms_item_id=str(job["entity_id"]),
                item_code=attempt.item_code,
                status=final["status"],
                job_id=int(job["id"]),
                netsuite_item_id=attempt.external_id if final["status"] == JobStatus.SUCCESS.value else None,
                error=error_message,
                now=now,
            )
        db.commit()
    except Exception:  # noqa: BLE001
        # The job stays PROCESSING and is reclaimed once it goes stale.
        db.rollback()
        current_app.logger.exception(
            "sync_job_outcome_not_recorded",
            extra={"direction": direction, "job_id": job["id"], "entity_id": job["entity_id"]},
        )
        return

    duration_ms = (time.perf_counter() - attempt.started) * 1000.0
    summary["processed"] += 1
    summary[outcome] += 1
    observe_sync_job_processed(direction, outcome, duration_ms)
    log_extra = {
        "direction": direction,
        "job_id": job["id"],
        "entity_id": job["entity_id"],
        "attempt": job.get("attempt_count"),
        "result": outcome,
        "job_status": final["status"],
        "duration_ms": round(duration_ms, 2),
    }
    if attempt.skip_reason:
        current_app.logger.info("sync_job_skipped_business_rule", extra={**log_extra, "reason": attempt.skip_reason})
    elif attempt.failure is not None:
        current_app.logger.warning(
            "sync_job_failed",
            extra={
                **log_extra,
                "failure_class": attempt.failure.failure_class,
                "error": attempt.failure.message[:300],
            },
        )
    else:
        current_app.logger.info(
            "sync_job_processed",
            extra={**log_extra, "external_id": attempt.external_id, "warnings": attempt.warnings},
        )


def _transition(db, attempt: JobAttempt, *, settings: SyncSettings, now: datetime | None) -> str:
    job = attempt.job
    if attempt.skip_reason:
        transition_job(
            db,
            job["id"],
            from_status=JobStatus.PROCESSING,
            to_status=JobStatus.SKIPPED,
            completed_at=iso_utc(now),
            last_error_class="skipped",
            last_error_message=attempt.skip_reason,
        )
        observe_sync_skip(str(job["direction"]), attempt.skip_reason)
        return "skipped"
    if attempt.failure is not None:
        result = schedule_retry(db, job, attempt.failure, settings=settings, now=now)
        return "requeued" if result["status"] == JobStatus.PENDING.value else "failed"
    transition_job(
        db,
        job["id"],
        from_status=JobStatus.PROCESSING,
        to_status=JobStatus.SUCCESS,
        completed_at=iso_utc(now),
        external_id=attempt.external_id,
        last_error_class=None,
        last_error_message=None,
    )
    return "succeeded"


def summarize(results: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Any]:
    total = _new_summary()
    for _direction, result in results:
        for key in total:
            total[key] += int(result.get(key) or 0)
    return total
