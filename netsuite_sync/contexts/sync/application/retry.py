from __future__ import annotations

import random
from datetime import datetime
from typing import Any, Dict

from netsuite_sync.contexts.sync.domain.states import JobStatus
from netsuite_sync.contexts.sync.infrastructure.config_store import SyncSettings
from netsuite_sync.contexts.sync.infrastructure.support import iso_after, iso_utc
from netsuite_sync.contexts.sync.infrastructure.sync_queue import transition_job
from netsuite_sync.errors import SyncFailure
from netsuite_sync.observability import observe_sync_failed_permanent, observe_sync_retry


def compute_backoff_seconds(
    attempt: int,
    *,
    base: float,
    max_delay: float,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based): capped doubling plus jitter."""
    exponent = max(0, int(attempt) - 1)
    delay = float(min(float(max_delay), float(base) * (2**exponent)))
    jitter_window = delay * max(0.0, float(jitter_ratio))
    jitter = (rng or random).uniform(0.0, jitter_window) if jitter_window > 0 else 0.0
    return delay + jitter


def schedule_retry(
    db,
    job: Dict[str, Any],
    failure: SyncFailure,
    *,
    settings: SyncSettings,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> Dict[str, Any]:
    """Resolve a failed PROCESSING job to PENDING-with-delay or FAILED_PERMANENT."""
    attempt = int(job.get("attempt_count") or 0)
    max_attempts = min(int(job.get("max_attempts") or settings.max_retries), int(settings.max_retries))
    message = failure.message[:1000]

    if not failure.retryable or attempt >= max_attempts:
        transition_job(
            db,
            job["id"],
            from_status=JobStatus.PROCESSING,
            to_status=JobStatus.FAILED_PERMANENT,
            completed_at=iso_utc(now),
            last_error_class=failure.failure_class,
            last_error_message=message,
        )
        observe_sync_failed_permanent(failure.failure_class)
        return {
            "status": JobStatus.FAILED_PERMANENT.value,
            "attempt_count": attempt,
            "failure_class": failure.failure_class,
            "retries_exhausted": failure.retryable,
        }

    backoff = compute_backoff_seconds(
        attempt,
        base=settings.backoff_base_seconds,
        max_delay=settings.backoff_max_seconds,
        jitter_ratio=settings.backoff_jitter_ratio,
        rng=rng,
    )
    next_attempt_at = iso_after(backoff, now)
    transition_job(
        db,
        job["id"],
        from_status=JobStatus.PROCESSING,
        to_status=JobStatus.FAILED_RETRYABLE,
        last_error_class=failure.failure_class,
        last_error_message=message,
    )
    transition_job(
        db,
        job["id"],
        from_status=JobStatus.FAILED_RETRYABLE,
        to_status=JobStatus.PENDING,
        next_attempt_at=next_attempt_at,
    )
    observe_sync_retry(backoff)
    return {
        "status": JobStatus.PENDING.value,
        "attempt_count": attempt,
        "failure_class": failure.failure_class,
        "backoff_seconds": round(backoff, 3),
        "next_attempt_at": next_attempt_at,
    }
