from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Iterable, List

from flask import current_app

from netsuite_sync.contexts.sync.domain.snapshot import ItemSnapshot
from netsuite_sync.contexts.sync.domain.transform import build_netsuite_payload, payload_bytes, skip_reason
from netsuite_sync.contexts.sync.domain.validation import (
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_PASSED,
    simulate_restlet_validation,
    validate_payload,
)
from netsuite_sync.contexts.sync.infrastructure.catalog_repository import CatalogRepository
from netsuite_sync.contexts.sync.infrastructure.dry_run_store import insert_log
from netsuite_sync.errors import NotFoundError, SyncValidationError, ValidationError
from netsuite_sync.observability import observe_dry_run


DEFAULT_BATCH_CONCURRENCY = 5
MAX_BATCH_CONCURRENCY = 20
MAX_BATCH_ITEMS = 500


def _evaluate(snapshot: ItemSnapshot) -> Dict[str, Any]:
    """Transform and check one item exactly as the worker would, minus the call."""
    errors: List[str] = []
    try:
        payload = build_netsuite_payload(snapshot)
    except SyncValidationError as exc:
        payload = {}
        errors.append(exc.message)

    validation = validate_payload(payload)
    errors.extend(validation.errors)
    warnings = list(validation.warnings)
    automatic_skip = skip_reason(snapshot, manual=False)
    if automatic_skip:
        warnings.append(f"automatic sync would skip this item: {automatic_skip}")

    simulation = simulate_restlet_validation(payload)
    if errors:
        status = STATUS_FAILED
    elif warnings:
        status = STATUS_PARTIAL
    else:
        status = STATUS_PASSED
    return {
        "payload": payload,
        "payload_size_bytes": len(payload_bytes(payload)),
        "validation_status": status,
        "validation_errors": errors,
        "validation_warnings": warnings,
        "would_succeed": bool(simulation["would_succeed"]) and status != STATUS_FAILED,
        "simulated_errors": simulation["errors"],
        "checks": simulation["checks"],
        "simulated_response": simulation["response"],
        "skip_reason": automatic_skip,
    }


def _persist(
    db,
    snapshot: ItemSnapshot,
    evaluation: Dict[str, Any],
    *,
    sync_type: str,
    trigger: str | None,
    now: datetime | None,
) -> Dict[str, Any]:
    log_id = insert_log(
        db,
        opms_item_id=str(snapshot.item_id),
        opms_item_code=snapshot.item_code,
        opms_product_id=str(snapshot.product_id),
        sync_type=sync_type,
        sync_trigger=trigger,
        payload=evaluation["payload"],
        payload_size_bytes=evaluation["payload_size_bytes"],
        validation_status=evaluation["validation_status"],
        validation_errors=evaluation["validation_errors"],
        validation_warnings=evaluation["validation_warnings"],
        would_succeed=evaluation["would_succeed"],
        simulated_errors=evaluation["simulated_errors"],
        simulated_response=evaluation["simulated_response"],
        now=now,
    )
    observe_dry_run(evaluation["validation_status"])
    return {
        "log_id": log_id,
        "opms_item_id": str(snapshot.item_id),
        "opms_item_code": snapshot.item_code,
        "opms_product_id": str(snapshot.product_id),
        "sync_type": sync_type,
        "field_count": len(evaluation["payload"]),
        **evaluation,
    }


def dry_run_item(
    db,
    item_id: int | str,
    *,
    trigger: str | None = "manual",
    sync_type: str = "single",
    catalog: CatalogRepository | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    catalog = catalog or CatalogRepository(db)
    snapshot = catalog.load_item_snapshot(item_id)
    if snapshot is None:
        raise NotFoundError(details=f"OPMS item {item_id} not found")
    result = _persist(db, snapshot, _evaluate(snapshot), sync_type=sync_type, trigger=trigger, now=now)
    db.commit()
    current_app.logger.info(
        "sync_dry_run_completed",
        extra={
            "opms_item_id": result["opms_item_id"],
            "validation_status": result["validation_status"],
            "would_succeed": result["would_succeed"],
            "log_id": result["log_id"],
        },
    )
    return result


def dry_run_batch(
    db,
    item_ids: Iterable[int | str],
    *,
    trigger: str | None = "manual",
    sync_type: str = "batch",
    max_concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    catalog: CatalogRepository | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Dry-run many items; evaluation runs on a bounded pool, reads and writes stay here."""
    unique_ids: List[str] = []
    for raw_id in item_ids:
        normalized = str(raw_id).strip()
        if normalized and normalized not in unique_ids:
            unique_ids.append(normalized)
    if not unique_ids:
        raise ValidationError(code="item_ids_required", details="at least one item id is required")
    if len(unique_ids) > MAX_BATCH_ITEMS:
        raise ValidationError(code="batch_too_large", details=f"at most {MAX_BATCH_ITEMS} items per dry run")
    concurrency = max(1, min(MAX_BATCH_CONCURRENCY, int(max_concurrency or DEFAULT_BATCH_CONCURRENCY)))

    catalog = catalog or CatalogRepository(db)
    snapshots: List[ItemSnapshot] = []
    missing: List[str] = []
    for item_id in unique_ids:
        snapshot = catalog.load_item_snapshot(item_id)
        if snapshot is None:
            missing.append(item_id)
        else:
            snapshots.append(snapshot)

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="dry-run") as pool:
        evaluations = list(pool.map(_evaluate, snapshots))

    results = [
        _persist(db, snapshot, evaluation, sync_type=sync_type, trigger=trigger, now=now)
        for snapshot, evaluation in zip(snapshots, evaluations)
    ]
    db.commit()

    counts = {STATUS_PASSED: 0, STATUS_FAILED: 0, STATUS_PARTIAL: 0}
    for result in results:
        counts[result["validation_status"]] += 1
    summary = {
        "total": len(unique_ids),
        "evaluated": len(results),
        "would_succeed": sum(1 for result in results if result["would_succeed"]),
        "not_found": missing,
        "max_concurrency": concurrency,
        **counts,
        "results": results,
    }
    current_app.logger.info(
        "sync_dry_run_batch_completed",
        extra={key: value for key, value in summary.items() if key != "results"},
    )
    return summary


def dry_run_lookup(
    db,
    *,
    code: str | None = None,
    name: str | None = None,
    vendor: str | None = None,
    limit: int = 50,
    trigger: str | None = "lookup",
    catalog: CatalogRepository | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    if not any(str(value or "").strip() for value in (code, name, vendor)):
        raise ValidationError(code="lookup_criteria_required", details="code, name or vendor is required")
    catalog = catalog or CatalogRepository(db)
    item_ids = catalog.find_items(code=code, name=name, vendor=vendor, limit=limit)
    if not item_ids:
        return {"total": 0, "evaluated": 0, "would_succeed": 0, "not_found": [], "results": []}
    return dry_run_batch(db, item_ids, trigger=trigger, sync_type="lookup", catalog=catalog, now=now)
