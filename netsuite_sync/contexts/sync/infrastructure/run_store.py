from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from netsuite_sync.contexts.sync.domain.states import item_status_for
from netsuite_sync.contexts.sync.infrastructure.support import iso_utc, json_dumps, json_loads
from netsuite_sync.db import returned_id, row_to_dict


RUN_TYPES = ("webhook", "manual_product", "batch_resync", "initial_pricing")
RUN_STATUS_PENDING = "pending"
RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_CANCELLED = "cancelled"

_TERMINAL_ITEM_STATUSES = ("success", "failed", "skipped", "cancelled")
_RUN_COLUMNS = """
    id, run_type, direction, status, total_items, processed_items, succeeded_items,
    failed_items, skipped_items, triggered_by, error_message, created_at, started_at, completed_at
"""
_ITEM_COLUMNS = """
    id, run_id, job_id, netsuite_item_id, opms_item_id, status, sync_fields,
    pricing_before, pricing_after, error_message, retry_count, max_retries, processed_at
"""


def _item_from_row(row) -> Dict[str, Any]:
    item = row_to_dict(row)
    for key in ("sync_fields", "pricing_before", "pricing_after"):
        item[key] = json_loads(item.get(key), None)
    return item


def create_run(
    db,
    *,
    run_type: str,
    direction: str,
    triggered_by: str = "system",
    now: datetime | None = None,
) -> int:
    if run_type not in RUN_TYPES:
        raise ValueError(f"unknown run type: {run_type!r}")
    cursor = db.execute(
        """
        INSERT INTO sync_runs (run_type, direction, status, triggered_by, created_at)
        VALUES (?, ?, ?, ?, ?)
        RETURNING id
        """,
        (run_type, direction, RUN_STATUS_PENDING, triggered_by, iso_utc(now)),
    )
    return returned_id(cursor)


def add_run_item(
    db,
    *,
    run_id: int,
    job_id: int | None,
    opms_item_id: str | None = None,
    netsuite_item_id: str | None = None,
    max_retries: int = 3,
    status: str = "pending",
    error_message: str | None = None,
    now: datetime | None = None,
) -> int:
    processed_at = iso_utc(now) if status in _TERMINAL_ITEM_STATUSES else None
    cursor = db.execute(
        """
        INSERT INTO sync_run_items (
            run_id, job_id, netsuite_item_id, opms_item_id, status,
            error_message, max_retries, processed_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            int(run_id),
            job_id,
            netsuite_item_id,
            opms_item_id,
            status,
            error_message,
            int(max_retries),
            processed_at,
        ),
    )
    item_id = returned_id(cursor)
    refresh_run(db, run_id, now=now)
    return item_id


def update_items_for_job(
    db,
    job: Dict[str, Any],
    *,
    job_status: str,
    error_message: str | None = None,
    sync_fields: Dict[str, Any] | None = None,
    pricing_before: Dict[str, Any] | None = None,
    pricing_after: Dict[str, Any] | None = None,
    opms_item_id: str | None = None,
    netsuite_item_id: str | None = None,
    now: datetime | None = None,
) -> List[int]:
    """Mirror a job transition onto every open run item tracking it."""
    item_status = item_status_for(job_status)
    processed_at = iso_utc(now) if item_status in _TERMINAL_ITEM_STATUSES else None
    rows = db.execute(
        f"""
        SELECT id, run_id
        FROM sync_run_items
        WHERE job_id = ?
          AND status NOT IN ({', '.join('?' for _ in _TERMINAL_ITEM_STATUSES)})
        """,
        (int(job["id"]), *_TERMINAL_ITEM_STATUSES),
    ).fetchall()
    if not rows:
        return []

    for row in rows:
        db.execute(
            """
            UPDATE sync_run_items
            SET status = ?,
                error_message = ?,
                retry_count = ?,
                sync_fields = COALESCE(?, sync_fields),
                pricing_before = COALESCE(?, pricing_before),
                pricing_after = COALESCE(?, pricing_after),
                opms_item_id = COALESCE(?, opms_item_id),
                netsuite_item_id = COALESCE(?, netsuite_item_id),
                processed_at = ?
            WHERE id = ?
            """,
            (
                item_status,
                error_message,
                max(0, int(job.get("attempt_count") or 0) - 1),
                json_dumps(sync_fields) if sync_fields is not None else None,
                json_dumps(pricing_before) if pricing_before is not None else None,
                json_dumps(pricing_after) if pricing_after is not None else None,
                opms_item_id,
                netsuite_item_id,
                processed_at,
                row["id"],
            ),
        )
    run_ids = sorted({int(row["run_id"]) for row in rows})
    for run_id in run_ids:
        refresh_run(db, run_id, now=now)
    return run_ids


def attach_waiting_items(
    db,
    *,
    direction: str,
    entity_id: str,
    job_id: int,
) -> List[int]:
    """Link run items whose request waited behind an earlier job to the job that now carries it."""
    column = "opms_item_id" if direction == "outbound" else "netsuite_item_id"
    rows = db.execute(
        f"""
        SELECT id, run_id
        FROM sync_run_items
        WHERE job_id IS NULL
          AND status = 'pending'
          AND {column} = ?
        """,
        (str(entity_id),),
    ).fetchall()
    if not rows:
        return []
    for row in rows:
        db.execute("UPDATE sync_run_items SET job_id = ? WHERE id = ?", (int(job_id), row["id"]))
    return sorted({int(row["run_id"]) for row in rows})


def refresh_run(db, run_id: int, *, now: datetime | None = None) -> Dict[str, Any]:
    """Recompute a run's counters from its items and close it once all are terminal."""
    counts = {"pending": 0, "processing": 0, "success": 0, "failed": 0, "skipped": 0, "cancelled": 0}
    rows = db.execute(
        "SELECT status, COUNT(*) AS total FROM sync_run_items WHERE run_id = ? GROUP BY status",
        (int(run_id),),
    ).fetchall()
    for row in rows:
        counts[str(row["status"])] = int(row["total"] or 0)

    total = sum(counts.values())
    processed = counts["success"] + counts["failed"] + counts["skipped"] + counts["cancelled"]
    if total and processed == total:
        # Superseded or cancelled items close the run without counting as failures.
        if counts["cancelled"] == total:
            status = RUN_STATUS_CANCELLED
        elif counts["failed"] == total:
            status = RUN_STATUS_FAILED
        elif counts["failed"]:
            status = RUN_STATUS_COMPLETED_WITH_ERRORS
        else:
            status = RUN_STATUS_COMPLETED
        completed_at = iso_utc(now)
    elif processed or counts["processing"]:
        status = RUN_STATUS_RUNNING
        completed_at = None
    else:
        status = RUN_STATUS_PENDING
        completed_at = None

    error_message = None
    if counts["failed"]:
        error_message = f"{counts['failed']} of {total} items failed"
    started_at = iso_utc(now) if status != RUN_STATUS_PENDING else None
    db.execute(
        """
        UPDATE sync_runs
        SET status = ?,
            total_items = ?,
            processed_items = ?,
            succeeded_items = ?,
            failed_items = ?,
            skipped_items = ?,
            error_message = ?,
            started_at = COALESCE(started_at, ?),
            completed_at = ?
        WHERE id = ?
        """,
        (
            status,
            total,
            processed,
            counts["success"],
            counts["failed"],
            counts["skipped"],
            error_message,
            started_at,
            completed_at,
            int(run_id),
        ),
    )
    return {"status": status, "total_items": total, "processed_items": processed, **counts}


def get_run(db, run_id: int, *, include_items: bool = True) -> Dict[str, Any] | None:
    row = db.execute(f"SELECT {_RUN_COLUMNS} FROM sync_runs WHERE id = ?", (int(run_id),)).fetchone()
    if row is None:
        return None
    run = row_to_dict(row)
    if include_items:
        items = db.execute(
            f"SELECT {_ITEM_COLUMNS} FROM sync_run_items WHERE run_id = ? ORDER BY id ASC",
            (int(run_id),),
        ).fetchall()
        run["items"] = [_item_from_row(item) for item in items]
    return run


def list_runs(db, *, run_type: str | None = None, status: str | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if run_type:
        clauses.append("run_type = ?")
        params.append(run_type)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"SELECT {_RUN_COLUMNS} FROM sync_runs {where} ORDER BY id DESC LIMIT ?",
        (*params, max(1, min(500, int(limit)))),
    ).fetchall()
    return [row_to_dict(row) for row in rows]


def record_item_status(
    db,
    *,
    opms_item_id: str,
    item_code: str | None,
    status: str,
    job_id: int | None,
    netsuite_item_id: str | None = None,
    error: str | None = None,
    now: datetime | None = None,
) -> None:
    stamp = iso_utc(now)
    synced_at = stamp if status == "SUCCESS" else None
    db.execute(
        """
        INSERT INTO item_sync_status (
            opms_item_id, item_code, netsuite_item_id, last_status, last_job_id,
            last_error, last_synced_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (opms_item_id) DO UPDATE SET
            item_code = COALESCE(excluded.item_code, item_sync_status.item_code),
            netsuite_item_id = COALESCE(excluded.netsuite_item_id, item_sync_status.netsuite_item_id),
            last_status = excluded.last_status,
            last_job_id = excluded.last_job_id,
            last_error = excluded.last_error,
            last_synced_at = COALESCE(excluded.last_synced_at, item_sync_status.last_synced_at),
            updated_at = excluded.updated_at
        """,
        (str(opms_item_id), item_code, netsuite_item_id, status, job_id, error, synced_at, stamp),
    )


def get_item_status(db, opms_item_id: str) -> Dict[str, Any] | None:
    row = db.execute(
        """
        SELECT opms_item_id, item_code, netsuite_item_id, last_status, last_job_id,
               last_error, last_synced_at, updated_at
        FROM item_sync_status
        WHERE opms_item_id = ?
        """,
        (str(opms_item_id),),
    ).fetchone()
    return row_to_dict(row) or None
