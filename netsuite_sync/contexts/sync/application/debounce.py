from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from flask import current_app

from netsuite_sync.contexts.sync.domain.events import ItemChangedEvent, event_from_payload
from netsuite_sync.contexts.sync.domain.states import Priority
from netsuite_sync.contexts.sync.infrastructure.change_log import delete_change, due_changes
from netsuite_sync.contexts.sync.infrastructure.config_store import SyncSettings, load_sync_settings
from netsuite_sync.contexts.sync.infrastructure.run_store import attach_waiting_items
from netsuite_sync.contexts.sync.infrastructure.sync_queue import (
    MANUAL_EVENT_KINDS,
    OUTCOME_CREATED,
    enqueue,
    find_active_job,
)
from netsuite_sync.observability import observe_debounce_sweep


def _job_request(change: Dict[str, Any]) -> Dict[str, Any]:
    snapshot = change.get("snapshot") or {}
    if snapshot.get("event_kind"):
        return {
            "event": event_from_payload(snapshot["event_kind"], snapshot.get("event_payload")),
            "event_type": snapshot.get("event_type") or "update",
            "priority": snapshot.get("priority") or Priority.NORMAL,
            "triggered_by": snapshot.get("triggered_by") or "system",
            "run_id": snapshot.get("run_id"),
        }
    return {
        "event": ItemChangedEvent(
            changed_fields=tuple(change.get("changed_fields") or ()),
            change_count=int(change.get("change_count") or 1),
            first_change_at=change.get("first_change_at"),
            last_change_at=change.get("last_change_at"),
        ),
        "event_type": "update",
        "priority": Priority.NORMAL,
        "triggered_by": "system",
        "run_id": None,
    }


def promote_due_changes(
    db,
    *,
    settings: SyncSettings | None = None,
    now: datetime | None = None,
    limit: int = 500,
) -> Dict[str, Any]:
    """Turn settled pending changes into jobs, one per entity.

    A change whose entity still has an active job stays in place and is
    promoted by a later sweep, after that job finishes.
    """
    settings = settings or load_sync_settings(db)
    summary = {"scanned": 0, "promoted": 0, "deferred": 0, "sync_enabled": settings.sync_enabled}

    for change in due_changes(db, debounce_seconds=settings.debounce_seconds, now=now, limit=limit):
        summary["scanned"] += 1
        snapshot_kind = (change.get("snapshot") or {}).get("event_kind")
        if not settings.sync_enabled and snapshot_kind not in MANUAL_EVENT_KINDS:
            continue
        if find_active_job(db, change["direction"], change["entity_id"]) is not None:
            summary["deferred"] += 1
            continue

        request = _job_request(change)
        result = enqueue(
            db,
            direction=change["direction"],
            entity_id=change["entity_id"],
            container_id=change.get("container_id"),
            max_attempts=settings.max_retries,
            now=now,
            **request,
        )
        if result.outcome != OUTCOME_CREATED:
            summary["deferred"] += 1
            db.commit()
            continue
        attach_waiting_items(db, direction=change["direction"], entity_id=change["entity_id"], job_id=result.job_id)
        delete_change(db, change)
        db.commit()
        summary["promoted"] += 1
        current_app.logger.info(
            "sync_debounce_promoted",
            extra={
                "direction": change["direction"],
                "entity_id": change["entity_id"],
                "job_id": result.job_id,
                "change_count": change.get("change_count"),
                "changed_fields": change.get("changed_fields"),
            },
        )

    observe_debounce_sweep(summary["promoted"], summary["deferred"])
    return summary
