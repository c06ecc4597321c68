from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List

from netsuite_sync.contexts.sync.domain.events import merge_changed_fields
from netsuite_sync.contexts.sync.domain.states import Direction
from netsuite_sync.contexts.sync.infrastructure.support import (
    iso_before,
    iso_utc,
    json_dumps,
    json_loads,
    rowcount,
)
from netsuite_sync.db import row_to_dict
from netsuite_sync.errors import ValidationError


_CHANGE_COLUMNS = """
    id, direction, entity_id, container_id, changed_fields, snapshot,
    change_count, first_change_at, last_change_at
"""


def _change_from_row(row) -> Dict[str, Any]:
    change = row_to_dict(row)
    if not change:
        return {}
    change["changed_fields"] = list(json_loads(change.get("changed_fields"), []) or [])
    change["snapshot"] = json_loads(change.get("snapshot"), None)
    change["change_count"] = int(change.get("change_count") or 0)
    return change


def get_change(db, direction: str, entity_id: str) -> Dict[str, Any] | None:
    row = db.execute(
        f"SELECT {_CHANGE_COLUMNS} FROM sync_pending_changes WHERE direction = ? AND entity_id = ?",
        (direction, str(entity_id)),
    ).fetchone()
    return _change_from_row(row) or None


def record_change(
    db,
    *,
    entity_id: str,
    container_id: str | None = None,
    changed_fields: Iterable[str] = (),
    direction: str = Direction.OUTBOUND.value,
    snapshot: Dict[str, Any] | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Upsert the pending change for an entity and restart its debounce window.

    Never enqueues: the debounce sweep turns settled changes into jobs.
    """
    direction = Direction(str(direction or "").strip().lower()).value
    entity_id = str(entity_id or "").strip()
    if not entity_id:
        raise ValidationError(code="entity_id_required", details="entity_id is required")
    changed_at = iso_utc(now)
    container = str(container_id) if container_id is not None else None

    for _attempt in range(2):
        existing = get_change(db, direction, entity_id)
        if existing is not None:
            fields = merge_changed_fields(existing["changed_fields"], list(changed_fields))
            db.execute(
                """
                UPDATE sync_pending_changes
                SET changed_fields = ?,
                    snapshot = COALESCE(?, snapshot),
                    container_id = COALESCE(?, container_id),
                    change_count = change_count + 1,
                    last_change_at = ?
                WHERE id = ?
                """,
                (
                    json_dumps(fields),
                    json_dumps(snapshot) if snapshot is not None else None,
                    container,
                    changed_at,
                    existing["id"],
                ),
            )
            return get_change(db, direction, entity_id) or existing
        try:
            db.execute(
                """
                INSERT INTO sync_pending_changes (
                    direction, entity_id, container_id, changed_fields, snapshot,
                    change_count, first_change_at, last_change_at
                )
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    direction,
                    entity_id,
                    container,
                    json_dumps(merge_changed_fields(list(changed_fields))),
                    json_dumps(snapshot) if snapshot is not None else None,
                    changed_at,
                    changed_at,
                ),
            )
        except db.integrity_errors:
            # Another writer created the row first; merge into it.
            continue
        return get_change(db, direction, entity_id) or {}
    raise RuntimeError(f"could not record change for {direction}:{entity_id}")


def due_changes(
    db,
    *,
    debounce_seconds: float,
    now: datetime | None = None,
    limit: int = 500,
) -> List[Dict[str, Any]]:
    rows = db.execute(
        f"""
        SELECT {_CHANGE_COLUMNS}
        FROM sync_pending_changes
        WHERE last_change_at <= ?
        ORDER BY last_change_at ASC, id ASC
        LIMIT ?
        """,
        (iso_before(debounce_seconds, now), max(1, int(limit))),
    ).fetchall()
    return [_change_from_row(row) for row in rows]


def delete_change(db, change: Dict[str, Any]) -> bool:
    """Delete a promoted change unless an edit landed after it was read."""
    cursor = db.execute(
        "DELETE FROM sync_pending_changes WHERE id = ? AND last_change_at = ? AND change_count = ?",
        (change["id"], change["last_change_at"], change["change_count"]),
    )
    return rowcount(cursor) > 0


def list_changes(db, *, direction: str | None = None, limit: int = 100) -> List[Dict[str, Any]]:
    where = "WHERE direction = ?" if direction else ""
    params: List[Any] = [direction] if direction else []
    rows = db.execute(
        f"""
        SELECT {_CHANGE_COLUMNS}
        FROM sync_pending_changes
        {where}
        ORDER BY last_change_at ASC, id ASC
        LIMIT ?
        """,
        (*params, max(1, min(500, int(limit)))),
    ).fetchall()
    return [_change_from_row(row) for row in rows]
