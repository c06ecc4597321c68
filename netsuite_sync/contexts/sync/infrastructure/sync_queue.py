from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List

from flask import current_app

from netsuite_sync.contexts.sync.domain.events import ItemChangedEvent, SyncEvent, event_from_payload
from netsuite_sync.contexts.sync.domain.states import (
    ACTIVE_STATUSES,
    Direction,
    JobStatus,
    Priority,
    assert_transition,
    coerce_status,
    parse_priority,
)
from netsuite_sync.contexts.sync.infrastructure.change_log import record_change
from netsuite_sync.contexts.sync.infrastructure.run_store import update_items_for_job
from netsuite_sync.contexts.sync.infrastructure.support import (
    iso_before,
    iso_utc,
    json_dumps,
    json_loads,
    rowcount,
)
from netsuite_sync.db import ACTIVE_JOB_STATUSES_SQL, returned_id, row_to_dict
from netsuite_sync.errors import NotFoundError, UserActionError, ValidationError
from netsuite_sync.observability import observe_sync_job_enqueued


MODE_REUSE = "reuse"
MODE_SUPERSEDE = "supersede"

OUTCOME_CREATED = "created"
OUTCOME_REUSED = "reused"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_DEFERRED = "deferred"

EVENT_TYPES = ("create", "update", "delete")
MANUAL_EVENT_KINDS = ("manual_trigger", "batch_resync", "initial_pricing")

_JOB_COLUMNS = """
    id, direction, entity_id, container_id, event_type, priority, status,
    attempt_count, max_attempts, event_kind, event_payload, triggered_by, run_id,
    next_attempt_at, created_at, started_at, completed_at,
    last_error_class, last_error_message, external_id
"""
_TRANSITION_FIELDS = {
    "next_attempt_at",
    "started_at",
    "completed_at",
    "last_error_class",
    "last_error_message",
    "external_id",
}


@dataclass(frozen=True)
class EnqueueResult:
    job_id: int | None
    status: str | None
    outcome: str

    def to_dict(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "status": self.status, "outcome": self.outcome}


def _job_from_row(row) -> Dict[str, Any]:
    job = row_to_dict(row)
    if not job:
        return {}
    job["event_payload"] = json_loads(job.get("event_payload"), {}) or {}
    for key in ("id", "priority", "attempt_count", "max_attempts"):
        if job.get(key) is not None:
            job[key] = int(job[key])
    return job


def job_event(job: Dict[str, Any]) -> SyncEvent:
    return event_from_payload(str(job.get("event_kind") or ""), job.get("event_payload") or {})


def get_job(db, job_id: int) -> Dict[str, Any] | None:
    row = db.execute(f"SELECT {_JOB_COLUMNS} FROM sync_jobs WHERE id = ?", (int(job_id),)).fetchone()
    return _job_from_row(row) or None


def find_active_job(db, direction: str, entity_id: str) -> Dict[str, Any] | None:
    row = db.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM sync_jobs
        WHERE direction = ?
          AND entity_id = ?
          AND status IN {ACTIVE_JOB_STATUSES_SQL}
        ORDER BY id DESC
        LIMIT 1
        """,
        (direction, str(entity_id)),
    ).fetchone()
    return _job_from_row(row) or None


def _insert_job(
    db,
    *,
    direction: str,
    entity_id: str,
    container_id: str | None,
    event_type: str,
    priority: Priority,
    event: SyncEvent,
    triggered_by: str,
    run_id: int | None,
    max_attempts: int,
    now: datetime | None,
) -> int:
    cursor = db.execute(
        """
        INSERT INTO sync_jobs (
            direction, entity_id, container_id, event_type, priority, status,
            attempt_count, max_attempts, event_kind, event_payload, triggered_by,
            run_id, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            direction,
            str(entity_id),
            str(container_id) if container_id is not None else None,
            event_type,
            int(priority),
            JobStatus.PENDING.value,
            max(1, int(max_attempts)),
            event.kind,
            json_dumps(event.to_payload()),
            triggered_by,
            run_id,
            iso_utc(now),
        ),
    )
    return returned_id(cursor)


def _defer_behind_active_job(
    db,
    *,
    direction: str,
    entity_id: str,
    container_id: str | None,
    event_type: str,
    priority: Priority,
    event: SyncEvent,
    triggered_by: str,
    run_id: int | None,
    now: datetime | None,
) -> None:
    changed_fields = event.changed_fields if isinstance(event, ItemChangedEvent) else ()
    # Non-field events keep the whole request so the follow-up job replays it.
    snapshot = None
    if not isinstance(event, ItemChangedEvent):
        snapshot = {
            "event_kind": event.kind,
            "event_payload": event.to_payload(),
            "event_type": event_type,
            "priority": int(priority),
            "triggered_by": triggered_by,
            "run_id": run_id,
        }
    record_change(
        db,
        direction=direction,
        entity_id=entity_id,
        container_id=container_id,
        changed_fields=changed_fields,
        snapshot=snapshot,
        now=now,
    )


def enqueue(
    db,
    *,
    direction: str,
    entity_id: str,
    event: SyncEvent,
    event_type: str = "update",
    priority: Priority | int | str = Priority.NORMAL,
    triggered_by: str = "system",
    container_id: str | None = None,
    run_id: int | None = None,
    mode: str = MODE_REUSE,
    max_attempts: int = 3,
    now: datetime | None = None,
) -> EnqueueResult:
    """Persist a job for the entity unless an active one already covers it.

    At most one PENDING/PROCESSING/FAILED_RETRYABLE job exists per
    (direction, entity_id); the partial unique index rejects a racing insert
    and the loser resolves to the surviving job.
    """
    direction = Direction(str(direction or "").strip().lower()).value
    entity_id = str(entity_id or "").strip()
    if not entity_id:
        raise ValidationError(code="entity_id_required", details="entity_id is required")
    if event_type not in EVENT_TYPES:
        raise ValidationError(code="invalid_event_type", details=f"unknown event type: {event_type!r}")
    if mode not in {MODE_REUSE, MODE_SUPERSEDE}:
        raise ValidationError(code="invalid_enqueue_mode", details=f"unknown enqueue mode: {mode!r}")
    priority = parse_priority(priority)

    outcome = OUTCOME_CREATED
    existing = find_active_job(db, direction, entity_id)
    if existing is not None:
        if mode == MODE_REUSE:
            return _finish_enqueue(direction, entity_id, existing["id"], existing["status"], OUTCOME_REUSED, triggered_by)
        superseded = existing["status"] == JobStatus.PENDING.value and transition_job(
            db,
            existing["id"],
            from_status=JobStatus.PENDING,
            to_status=JobStatus.CANCELLED,
            completed_at=iso_utc(now),
            last_error_class="superseded",
            last_error_message="superseded by a newer request",
        )
        if not superseded:
            _defer_behind_active_job(
                db,
                direction=direction,
                entity_id=entity_id,
                container_id=container_id,
                event_type=event_type,
                priority=priority,
                event=event,
                triggered_by=triggered_by,
                run_id=run_id,
                now=now,
            )
            return _finish_enqueue(direction, entity_id, existing["id"], existing["status"], OUTCOME_DEFERRED, triggered_by)
        update_items_for_job(
            db,
            existing,
            job_status=JobStatus.CANCELLED.value,
            error_message="superseded: superseded by a newer request",
            now=now,
        )
        outcome = OUTCOME_SUPERSEDED

    try:
        job_id = _insert_job(
            db,
            direction=direction,
            entity_id=entity_id,
            container_id=container_id,
            event_type=event_type,
            priority=priority,
            event=event,
            triggered_by=triggered_by,
            run_id=run_id,
            max_attempts=max_attempts,
            now=now,
        )
    except db.integrity_errors:
        survivor = find_active_job(db, direction, entity_id)
        if survivor is None:
            raise
        return _finish_enqueue(direction, entity_id, survivor["id"], survivor["status"], OUTCOME_REUSED, triggered_by)

    return _finish_enqueue(direction, entity_id, job_id, JobStatus.PENDING.value, outcome, triggered_by)


def _finish_enqueue(
    direction: str,
    entity_id: str,
    job_id: int,
    status: str,
    outcome: str,
    triggered_by: str,
) -> EnqueueResult:
    observe_sync_job_enqueued(direction, outcome)
    current_app.logger.info(
        "sync_job_enqueued",
        extra={
            "direction": direction,
            "entity_id": entity_id,
            "job_id": job_id,
            "job_status": status,
            "outcome": outcome,
            "triggered_by": triggered_by,
        },
    )
    return EnqueueResult(job_id=job_id, status=status, outcome=outcome)


def transition_job(
    db,
    job_id: int,
    *,
    from_status: JobStatus | str,
    to_status: JobStatus | str,
    **fields: Any,
) -> bool:
    """Apply one allowed transition; False when the job is no longer in ``from_status``."""
    source = coerce_status(from_status)
    target = assert_transition(source, to_status)
    unknown = set(fields) - _TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"unsupported job fields: {sorted(unknown)}")

    assignments = ["status = ?"]
    params: List[Any] = [target.value]
    for name in sorted(fields):
        assignments.append(f"{name} = ?")
        params.append(fields[name])
    cursor = db.execute(
        f"UPDATE sync_jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
        (*params, int(job_id), source.value),
    )
    return rowcount(cursor) > 0


def select_due_jobs(
    db,
    *,
    direction: str,
    limit: int,
    now: datetime | None = None,
    manual_only: bool = False,
) -> List[Dict[str, Any]]:
    manual_clause = ""
    params: List[Any] = [direction, JobStatus.PENDING.value, iso_utc(now)]
    if manual_only:
        manual_clause = f"AND event_kind IN ({', '.join('?' for _ in MANUAL_EVENT_KINDS)})"
        params.extend(MANUAL_EVENT_KINDS)
    rows = db.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM sync_jobs
        WHERE direction = ?
          AND status = ?
          AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
          {manual_clause}
        ORDER BY priority ASC, created_at ASC, id ASC
        LIMIT ?
        """,
        (*params, max(1, int(limit))),
    ).fetchall()
    return [_job_from_row(row) for row in rows]


def claim_job(db, job_id: int, *, now: datetime | None = None) -> bool:
    assert_transition(JobStatus.PENDING, JobStatus.PROCESSING)
    cursor = db.execute(
        """
        UPDATE sync_jobs
        SET status = ?,
            attempt_count = attempt_count + 1,
            started_at = ?,
            completed_at = NULL
        WHERE id = ? AND status = ?
        """,
        (JobStatus.PROCESSING.value, iso_utc(now), int(job_id), JobStatus.PENDING.value),
    )
    return rowcount(cursor) > 0


def cancel_job(db, job_id: int, *, now: datetime | None = None) -> Dict[str, Any]:
    job = get_job(db, job_id)
    if job is None:
        raise NotFoundError(details=f"sync job {job_id} not found")
    cancelled = job["status"] == JobStatus.PENDING.value and transition_job(
        db,
        job["id"],
        from_status=JobStatus.PENDING,
        to_status=JobStatus.CANCELLED,
        completed_at=iso_utc(now),
        last_error_class="cancelled",
        last_error_message="cancelled by operator",
    )
    if not cancelled:
        current = get_job(db, job_id) or job
        raise UserActionError(
            code="job_not_cancellable",
            message_key="job_not_cancellable",
            http_status=409,
            details=f"sync job {job_id} is {current['status']}",
            payload={"status": current["status"]},
        )
    return get_job(db, job_id) or job


def reclaim_stale_jobs(db, *, stale_seconds: float, now: datetime | None = None) -> List[int]:
    """Return PROCESSING jobs abandoned by a crashed worker to the queue."""
    rows = db.execute(
        """
        SELECT id, attempt_count, max_attempts
        FROM sync_jobs
        WHERE status = ?
          AND started_at IS NOT NULL
          AND started_at < ?
        ORDER BY started_at ASC, id ASC
        """,
        (JobStatus.PROCESSING.value, iso_before(stale_seconds, now)),
    ).fetchall()

    reclaimed: List[int] = []
    message = f"job stayed PROCESSING longer than {int(stale_seconds)}s"
    for row in rows:
        job_id = int(row["id"])
        if not transition_job(
            db,
            job_id,
            from_status=JobStatus.PROCESSING,
            to_status=JobStatus.FAILED_RETRYABLE,
            last_error_class="stale_processing",
            last_error_message=message,
        ):
            continue
        if int(row["attempt_count"]) >= int(row["max_attempts"]):
            transition_job(
                db,
                job_id,
                from_status=JobStatus.FAILED_RETRYABLE,
                to_status=JobStatus.FAILED_PERMANENT,
                completed_at=iso_utc(now),
            )
        else:
            transition_job(
                db,
                job_id,
                from_status=JobStatus.FAILED_RETRYABLE,
                to_status=JobStatus.PENDING,
                next_attempt_at=None,
            )
        reclaimed.append(job_id)
    return reclaimed


def list_jobs(
    db,
    *,
    status: str | None = None,
    direction: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(coerce_status(status).value)
    if direction:
        clauses.append("direction = ?")
        params.append(Direction(str(direction).strip().lower()).value)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(str(entity_id))
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM sync_jobs
        {where}
        ORDER BY id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, max(1, min(500, int(limit))), max(0, int(offset))),
    ).fetchall()
    return [_job_from_row(row) for row in rows]


def queue_stats(db) -> Dict[str, Any]:
    rows = db.execute(
        """
        SELECT direction, status, COUNT(*) AS total
        FROM sync_jobs
        GROUP BY direction, status
        """
    ).fetchall()
    stats: Dict[str, Any] = {
        direction.value: {status.value: 0 for status in JobStatus} for direction in Direction
    }
    for row in rows:
        direction_stats = stats.setdefault(str(row["direction"]), {})
        direction_stats[str(row["status"])] = int(row["total"] or 0)
    stats["active"] = sum(
        counts.get(status.value, 0) for counts in list(stats.values()) for status in ACTIVE_STATUSES
    )
    pending_changes = db.execute("SELECT COUNT(*) AS total FROM sync_pending_changes").fetchone()
    stats["pending_changes"] = int(pending_changes["total"] or 0) if pending_changes else 0
    return stats
