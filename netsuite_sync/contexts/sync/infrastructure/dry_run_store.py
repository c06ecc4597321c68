from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from netsuite_sync.contexts.sync.infrastructure.support import iso_before, iso_utc, json_dumps, json_loads, rowcount
from netsuite_sync.db import returned_id, row_to_dict


SYNC_TYPES = ("single", "batch", "lookup")

_LOG_COLUMNS = """
    id, opms_item_id, opms_item_code, opms_product_id, sync_type, sync_trigger, payload,
    payload_size_bytes, field_count, validation_status, validation_errors, validation_warnings,
    would_succeed, simulated_errors, simulated_response, created_at
"""
_JSON_COLUMNS = {
    "payload": {},
    "validation_errors": [],
    "validation_warnings": [],
    "simulated_errors": [],
    "simulated_response": None,
}


def _log_from_row(row) -> Dict[str, Any]:
    log = row_to_dict(row)
    if not log:
        return {}
    for column, default in _JSON_COLUMNS.items():
        log[column] = json_loads(log.get(column), default)
    log["would_succeed"] = bool(log.get("would_succeed"))
    return log


def insert_log(
    db,
    *,
    opms_item_id: str,
    opms_item_code: str | None,
    opms_product_id: str | None,
    sync_type: str,
    sync_trigger: str | None,
    payload: Dict[str, Any],
    payload_size_bytes: int,
    validation_status: str,
    validation_errors: List[str],
    validation_warnings: List[str],
    would_succeed: bool,
    simulated_errors: List[str],
    simulated_response: Dict[str, Any] | None,
    now: datetime | None = None,
) -> int:
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"unknown dry-run sync type: {sync_type!r}")
    cursor = db.execute(
        """
        INSERT INTO sync_dry_run_logs (
            opms_item_id, opms_item_code, opms_product_id, sync_type, sync_trigger, payload,
            payload_size_bytes, field_count, validation_status, validation_errors,
            validation_warnings, would_succeed, simulated_errors, simulated_response, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            str(opms_item_id),
            opms_item_code,
            opms_product_id,
            sync_type,
            sync_trigger,
            json_dumps(payload),
            int(payload_size_bytes),
            len(payload),
            validation_status,
            json_dumps(list(validation_errors)),
            json_dumps(list(validation_warnings)),
            1 if would_succeed else 0,
            json_dumps(list(simulated_errors)),
            json_dumps(simulated_response) if simulated_response is not None else None,
            iso_utc(now),
        ),
    )
    return returned_id(cursor)


def get_log(db, log_id: int) -> Dict[str, Any] | None:
    row = db.execute(f"SELECT {_LOG_COLUMNS} FROM sync_dry_run_logs WHERE id = ?", (int(log_id),)).fetchone()
    return _log_from_row(row) or None


def list_logs(
    db,
    *,
    opms_item_id: str | None = None,
    sync_type: str | None = None,
    validation_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if opms_item_id:
        clauses.append("opms_item_id = ?")
        params.append(str(opms_item_id))
    if sync_type:
        clauses.append("sync_type = ?")
        params.append(sync_type)
    if validation_status:
        clauses.append("validation_status = ?")
        params.append(validation_status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = db.execute(
        f"""
        SELECT {_LOG_COLUMNS}
        FROM sync_dry_run_logs
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, max(1, min(500, int(limit))), max(0, int(offset))),
    ).fetchall()
    return [_log_from_row(row) for row in rows]


def log_stats(db) -> Dict[str, Any]:
    totals = db.execute(
        """
        SELECT COUNT(*) AS total,
               COALESCE(AVG(payload_size_bytes), 0) AS avg_payload_size_bytes,
               COALESCE(SUM(would_succeed), 0) AS would_succeed,
               COUNT(DISTINCT opms_item_id) AS distinct_items
        FROM sync_dry_run_logs
        """
    ).fetchone()
    by_status = {"passed": 0, "failed": 0, "partial": 0}
    for row in db.execute(
        "SELECT validation_status, COUNT(*) AS total FROM sync_dry_run_logs GROUP BY validation_status"
    ).fetchall():
        by_status[str(row["validation_status"])] = int(row["total"] or 0)
    by_type = {sync_type: 0 for sync_type in SYNC_TYPES}
    for row in db.execute("SELECT sync_type, COUNT(*) AS total FROM sync_dry_run_logs GROUP BY sync_type").fetchall():
        by_type[str(row["sync_type"])] = int(row["total"] or 0)
    return {
        "total": int(totals["total"] or 0),
        "distinct_items": int(totals["distinct_items"] or 0),
        "would_succeed": int(totals["would_succeed"] or 0),
        "avg_payload_size_bytes": round(float(totals["avg_payload_size_bytes"] or 0), 1),
        "by_validation_status": by_status,
        "by_sync_type": by_type,
    }


def delete_log(db, log_id: int) -> int:
    return rowcount(db.execute("DELETE FROM sync_dry_run_logs WHERE id = ?", (int(log_id),)))


def delete_logs_for_item(db, opms_item_id: str) -> int:
    return rowcount(db.execute("DELETE FROM sync_dry_run_logs WHERE opms_item_id = ?", (str(opms_item_id),)))


def delete_logs_by_type(db, sync_type: str) -> int:
    return rowcount(db.execute("DELETE FROM sync_dry_run_logs WHERE sync_type = ?", (sync_type,)))


def delete_logs_older_than(db, days: int, *, now: datetime | None = None) -> int:
    cutoff = iso_before(max(0, int(days)) * 86400, now)
    return rowcount(db.execute("DELETE FROM sync_dry_run_logs WHERE created_at < ?", (cutoff,)))


def delete_all_logs(db) -> int:
    return rowcount(db.execute("DELETE FROM sync_dry_run_logs"))
