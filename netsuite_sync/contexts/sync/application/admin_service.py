from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from flask import current_app

from netsuite_sync.contexts.netsuite.infrastructure.circuit_breaker import netsuite_circuit_snapshot
from netsuite_sync.contexts.sync.application.debounce import promote_due_changes
from netsuite_sync.contexts.sync.domain.contracts import (
    BatchResyncInput,
    ChangeNotificationInput,
    InitialPricingInput,
    ManualTriggerInput,
    ServiceOutput,
)
from netsuite_sync.contexts.sync.domain.events import (
    BatchResyncEvent,
    InitialPricingEvent,
    ManualTriggerEvent,
    PricingWebhookEvent,
)
from netsuite_sync.contexts.sync.domain.pricing import require_identifiers
from netsuite_sync.contexts.sync.domain.states import Direction, Priority, parse_priority
from netsuite_sync.contexts.sync.infrastructure import dry_run_store, run_store, sync_queue
from netsuite_sync.contexts.sync.infrastructure.catalog_repository import CatalogRepository
from netsuite_sync.contexts.sync.infrastructure.change_log import list_changes, record_change
from netsuite_sync.contexts.sync.infrastructure.config_store import (
    list_sync_config,
    load_sync_settings,
    set_sync_enabled,
    set_sync_paused,
    update_sync_config,
)
from netsuite_sync.contexts.sync.infrastructure.support import iso_utc
from netsuite_sync.errors import NotFoundError, SyncFailure, ValidationError
from netsuite_sync.observability import queue_health


MAX_BATCH_RESYNC_ITEMS = 1000


def _job_view(job: Dict[str, Any]) -> Dict[str, Any]:
    view = dict(job)
    view["failure"] = None
    if job.get("last_error_class"):
        view["failure"] = {
            "class": job["last_error_class"],
            "message": job.get("last_error_message"),
        }
    return view


def _unique_ids(raw_ids) -> List[str]:
    item_ids: List[str] = []
    for raw_id in raw_ids:
        normalized = str(raw_id).strip()
        if normalized and normalized not in item_ids:
            item_ids.append(normalized)
    return item_ids


def _tracked_job_id(result: sync_queue.EnqueueResult) -> int | None:
    # A deferred request is linked to its own job once the debounce sweep creates it.
    if result.outcome == sync_queue.OUTCOME_DEFERRED:
        return None
    return result.job_id


class SyncAdminService:
    def status(self, db) -> ServiceOutput:
        settings = load_sync_settings(db)
        return ServiceOutput(
            payload={
                "settings": settings.to_dict(),
                "queue": sync_queue.queue_stats(db),
                "health": queue_health(db),
                "circuit": netsuite_circuit_snapshot(),
            }
        )

    def config(self, db) -> ServiceOutput:
        return ServiceOutput(payload={"items": list_sync_config(db)})

    def update_config(self, db, values: Dict[str, Any], *, updated_by: str) -> ServiceOutput:
        if not values:
            raise ValidationError(code="config_values_required", details="no configuration values given")
        updated = update_sync_config(db, values, updated_by=updated_by)
        db.commit()
        current_app.logger.info("sync_config_updated", extra={"keys": sorted(values), "updated_by": updated_by})
        return ServiceOutput(payload={"updated": updated})

    def set_enabled(self, db, enabled: bool, *, updated_by: str) -> ServiceOutput:
        set_sync_enabled(db, enabled, updated_by=updated_by)
        db.commit()
        current_app.logger.info("sync_enabled_changed", extra={"sync_enabled": enabled, "updated_by": updated_by})
        return ServiceOutput(payload={"sync_enabled": bool(enabled)})

    def set_paused(self, db, paused: bool, *, updated_by: str) -> ServiceOutput:
        set_sync_paused(db, paused, updated_by=updated_by)
        db.commit()
        current_app.logger.info("sync_paused_changed", extra={"sync_paused": paused, "updated_by": updated_by})
        return ServiceOutput(payload={"sync_paused": bool(paused)})

    def record_item_change(self, db, change: ChangeNotificationInput, *, now: datetime | None = None) -> ServiceOutput:
        record = record_change(
            db,
            entity_id=change.item_id,
            container_id=change.product_id,
            changed_fields=change.changed_fields,
            now=now,
        )
        db.commit()
        return ServiceOutput(payload={"change": record}, status_code=202)

    def pending_changes(self, db, *, direction: str | None = None, limit: int = 100) -> ServiceOutput:
        return ServiceOutput(payload={"items": list_changes(db, direction=direction, limit=limit)})

    def sweep(self, db, *, now: datetime | None = None) -> ServiceOutput:
        return ServiceOutput(payload=promote_due_changes(db, now=now))

    def trigger_item(
        self,
        db,
        item_id: str,
        trigger: ManualTriggerInput,
        *,
        now: datetime | None = None,
    ) -> ServiceOutput:
        settings = load_sync_settings(db)
        catalog = CatalogRepository(db)
        snapshot = catalog.load_item_snapshot(item_id)
        if snapshot is None and trigger.event_type != "delete":
            raise NotFoundError(details=f"OPMS item {item_id} not found")
        result = sync_queue.enqueue(
            db,
            direction=Direction.OUTBOUND.value,
            entity_id=str(item_id),
            container_id=str(snapshot.product_id) if snapshot else None,
            event=ManualTriggerEvent(
                reason=trigger.reason,
                requested_by=trigger.requested_by,
                live_sync=trigger.live_sync,
            ),
            event_type=trigger.event_type,
            priority=parse_priority(trigger.priority, Priority.HIGH),
            triggered_by=f"manual:{trigger.requested_by}",
            mode=sync_queue.MODE_SUPERSEDE,
            max_attempts=settings.max_retries,
            now=now,
        )
        db.commit()
        return ServiceOutput(payload=result.to_dict(), status_code=202)

    def trigger_product(
        self,
        db,
        product_id: str,
        trigger: ManualTriggerInput,
        *,
        now: datetime | None = None,
    ) -> ServiceOutput:
        settings = load_sync_settings(db)
        catalog = CatalogRepository(db)
        if not catalog.product_exists(product_id):
            raise NotFoundError(details=f"OPMS product {product_id} not found")
        item_ids = catalog.item_ids_for_product(product_id)
        if not item_ids:
            raise ValidationError(code="product_has_no_items", details=f"product {product_id} has no active items")

        run_id = run_store.create_run(
            db,
            run_type="manual_product",
            direction=Direction.OUTBOUND.value,
            triggered_by=f"manual:{trigger.requested_by}",
            now=now,
        )
        jobs: List[Dict[str, Any]] = []
        for item_id in item_ids:
            result = sync_queue.enqueue(
                db,
                direction=Direction.OUTBOUND.value,
                entity_id=str(item_id),
                container_id=str(product_id),
                event=ManualTriggerEvent(
                    reason=trigger.reason,
                    requested_by=trigger.requested_by,
                    live_sync=trigger.live_sync,
                    product_id=str(product_id),
                ),
                priority=parse_priority(trigger.priority, Priority.HIGH),
                triggered_by=f"manual:{trigger.requested_by}",
                run_id=run_id,
                mode=sync_queue.MODE_SUPERSEDE,
                max_attempts=settings.max_retries,
                now=now,
            )
            run_store.add_run_item(
                db,
                run_id=run_id,
                job_id=_tracked_job_id(result),
                opms_item_id=str(item_id),
                max_retries=settings.max_retries,
                now=now,
            )
            jobs.append({"item_id": str(item_id), **result.to_dict()})
        db.commit()
        current_app.logger.info(
            "sync_product_triggered",
            extra={"product_id": str(product_id), "run_id": run_id, "items": len(jobs), "requested_by": trigger.requested_by},
        )
        return ServiceOutput(payload={"run_id": run_id, "jobs": jobs}, status_code=202)

    def batch_resync(self, db, batch: BatchResyncInput, *, now: datetime | None = None) -> ServiceOutput:
        item_ids = _unique_ids(batch.item_ids)
        if not item_ids:
            raise ValidationError(code="item_ids_required", details="at least one item id is required")
        if len(item_ids) > MAX_BATCH_RESYNC_ITEMS:
            raise ValidationError(code="batch_too_large", details=f"at most {MAX_BATCH_RESYNC_ITEMS} items per resync")

        settings = load_sync_settings(db)
        run_id = run_store.create_run(
            db,
            run_type="batch_resync",
            direction=Direction.OUTBOUND.value,
            triggered_by=f"manual:{batch.requested_by}",
            now=now,
        )
        event = BatchResyncEvent(reason=batch.reason, requested_by=batch.requested_by, batch_size=len(item_ids))
        jobs: List[Dict[str, Any]] = []
        for item_id in item_ids:
            result = sync_queue.enqueue(
                db,
                direction=Direction.OUTBOUND.value,
                entity_id=item_id,
                event=event,
                priority=Priority.LOW,
                triggered_by="batch_resync",
                run_id=run_id,
                max_attempts=settings.max_retries,
                now=now,
            )
            run_store.add_run_item(
                db,
                run_id=run_id,
                job_id=result.job_id,
                opms_item_id=item_id,
                max_retries=settings.max_retries,
                now=now,
            )
            jobs.append({"item_id": item_id, **result.to_dict()})
        db.commit()
        return ServiceOutput(payload={"run_id": run_id, "jobs": jobs}, status_code=202)

    def initial_pricing(self, db, request: InitialPricingInput, *, now: datetime | None = None) -> ServiceOutput:
        """Queue inbound jobs that pull current NetSuite pricing into OPMS, one per coded item.

        Without explicit ids the next page of active items after ``after_item_id`` is taken.
        """
        item_ids = _unique_ids(request.item_ids)
        if len(item_ids) > MAX_BATCH_RESYNC_ITEMS:
            raise ValidationError(code="batch_too_large", details=f"at most {MAX_BATCH_RESYNC_ITEMS} items per run")
        if any(not item_id.isdigit() for item_id in item_ids):
            raise ValidationError(code="invalid_item_id", details="item ids must be numeric")

        catalog = CatalogRepository(db)
        items = catalog.items_with_codes(
            [int(item_id) for item_id in item_ids] or None,
            after_id=request.after_item_id,
            limit=MAX_BATCH_RESYNC_ITEMS,
        )
        if not items:
            raise ValidationError(code="no_items_to_price", details="no active items with a code matched")

        settings = load_sync_settings(db)
        run_id = run_store.create_run(
            db,
            run_type="initial_pricing",
            direction=Direction.INBOUND.value,
            triggered_by=f"manual:{request.requested_by}",
            now=now,
        )
        jobs: List[Dict[str, Any]] = []
        for item in items:
            result = sync_queue.enqueue(
                db,
                direction=Direction.INBOUND.value,
                entity_id=f"code:{item['code']}",
                event=InitialPricingEvent(
                    item_code=item["code"],
                    opms_item_id=str(item["id"]),
                    requested_by=request.requested_by,
                    reason=request.reason,
                ),
                priority=Priority.LOW,
                triggered_by=f"manual:{request.requested_by}",
                run_id=run_id,
                max_attempts=settings.max_retries,
                now=now,
            )
            run_store.add_run_item(
                db,
                run_id=run_id,
                job_id=result.job_id,
                opms_item_id=str(item["id"]),
                max_retries=settings.max_retries,
                now=now,
            )
            jobs.append({"item_id": str(item["id"]), "item_code": item["code"], **result.to_dict()})
        db.commit()

        next_after = None
        if not item_ids and len(items) == MAX_BATCH_RESYNC_ITEMS:
            next_after = items[-1]["id"]
        current_app.logger.info(
            "sync_initial_pricing_queued",
            extra={"run_id": run_id, "items": len(jobs), "requested_by": request.requested_by},
        )
        return ServiceOutput(
            payload={"run_id": run_id, "jobs": jobs, "next_after_item_id": next_after},
            status_code=202,
        )

    def receive_pricing_webhook(self, db, body: Dict[str, Any], *, now: datetime | None = None) -> ServiceOutput:
        raw_items = body.get("items") if isinstance(body.get("items"), list) else [body.get("itemData")]
        items = [item for item in raw_items if isinstance(item, dict)]
        if not items:
            raise ValidationError(code="item_data_required", details="itemData or items is required")
        identifiers = []
        for index, item in enumerate(items):
            try:
                identifiers.append(require_identifiers(item))
            except SyncFailure as exc:
                raise ValidationError(
                    code="webhook_item_invalid",
                    details=exc.message,
                    payload={"index": index},
                ) from exc

        settings = load_sync_settings(db)
        received_at = str(body.get("timestamp") or "").strip() or iso_utc(now)
        run_id = run_store.create_run(
            db,
            run_type="webhook",
            direction=Direction.INBOUND.value,
            triggered_by="webhook",
            now=now,
        )
        jobs: List[Dict[str, Any]] = []
        for item, (item_code, internal_id) in zip(items, identifiers):
            result = sync_queue.enqueue(
                db,
                direction=Direction.INBOUND.value,
                entity_id=internal_id,
                event=PricingWebhookEvent(
                    netsuite_item_id=item_code,
                    netsuite_internal_id=internal_id,
                    received_at=received_at,
                    item_data=dict(item),
                ),
                triggered_by="webhook",
                run_id=run_id,
                mode=sync_queue.MODE_SUPERSEDE,
                max_attempts=settings.max_retries,
                now=now,
            )
            run_store.add_run_item(
                db,
                run_id=run_id,
                job_id=_tracked_job_id(result),
                netsuite_item_id=internal_id,
                max_retries=settings.max_retries,
                now=now,
            )
            jobs.append({"itemid": item_code, "internalid": internal_id, **result.to_dict()})
        db.commit()
        current_app.logger.info("sync_pricing_webhook_received", extra={"run_id": run_id, "items": len(jobs)})
        return ServiceOutput(payload={"run_id": run_id, "jobs": jobs}, status_code=202)

    def list_jobs(self, db, *, status=None, direction=None, entity_id=None, limit=50, offset=0) -> ServiceOutput:
        jobs = sync_queue.list_jobs(
            db,
            status=status,
            direction=direction,
            entity_id=entity_id,
            limit=limit,
            offset=offset,
        )
        return ServiceOutput(payload={"items": [_job_view(job) for job in jobs]})

    def job_detail(self, db, job_id: int) -> ServiceOutput:
        job = sync_queue.get_job(db, job_id)
        if job is None:
            raise NotFoundError(details=f"sync job {job_id} not found")
        return ServiceOutput(payload=_job_view(job))

    def cancel_job(self, db, job_id: int, *, now: datetime | None = None) -> ServiceOutput:
        job = sync_queue.cancel_job(db, job_id, now=now)
        run_store.update_items_for_job(
            db,
            job,
            job_status=job["status"],
            error_message="cancelled: cancelled by operator",
            now=now,
        )
        db.commit()
        current_app.logger.info("sync_job_cancelled", extra={"job_id": job["id"], "entity_id": job["entity_id"]})
        return ServiceOutput(payload=_job_view(job))

    def list_runs(self, db, *, run_type=None, status=None, limit=50) -> ServiceOutput:
        return ServiceOutput(payload={"items": run_store.list_runs(db, run_type=run_type, status=status, limit=limit)})

    def run_detail(self, db, run_id: int) -> ServiceOutput:
        run = run_store.get_run(db, run_id)
        if run is None:
            raise NotFoundError(details=f"sync run {run_id} not found")
        return ServiceOutput(payload=run)

    def item_status(self, db, item_id: str) -> ServiceOutput:
        status = run_store.get_item_status(db, item_id)
        if status is None:
            raise NotFoundError(details=f"no sync status for OPMS item {item_id}")
        return ServiceOutput(payload=status)

    def dry_run_logs(self, db, *, opms_item_id=None, sync_type=None, validation_status=None, limit=50, offset=0) -> ServiceOutput:
        logs = dry_run_store.list_logs(
            db,
            opms_item_id=opms_item_id,
            sync_type=sync_type,
            validation_status=validation_status,
            limit=limit,
            offset=offset,
        )
        return ServiceOutput(payload={"items": logs, "stats": dry_run_store.log_stats(db)})

    def dry_run_log(self, db, log_id: int) -> ServiceOutput:
        log = dry_run_store.get_log(db, log_id)
        if log is None:
            raise NotFoundError(details=f"dry-run log {log_id} not found")
        return ServiceOutput(payload=log)

    def delete_dry_run_logs(
        self,
        db,
        *,
        log_id: int | None = None,
        opms_item_id: str | None = None,
        sync_type: str | None = None,
        older_than_days: int | None = None,
        delete_all: bool = False,
        now: datetime | None = None,
    ) -> ServiceOutput:
        if log_id is not None:
            deleted = dry_run_store.delete_log(db, log_id)
            if not deleted:
                raise NotFoundError(details=f"dry-run log {log_id} not found")
        elif opms_item_id:
            deleted = dry_run_store.delete_logs_for_item(db, opms_item_id)
        elif sync_type:
            if sync_type not in dry_run_store.SYNC_TYPES:
                raise ValidationError(code="sync_type_invalid", payload={"field": "sync_type"})
            deleted = dry_run_store.delete_logs_by_type(db, sync_type)
        elif older_than_days is not None:
            deleted = dry_run_store.delete_logs_older_than(db, older_than_days, now=now)
        elif delete_all:
            deleted = dry_run_store.delete_all_logs(db)
        else:
            raise ValidationError(code="delete_scope_required", details="choose which dry-run logs to delete")
        db.commit()
        current_app.logger.info("sync_dry_run_logs_deleted", extra={"deleted": deleted})
        return ServiceOutput(payload={"deleted": deleted})
