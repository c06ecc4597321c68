from __future__ import annotations

from flask import Blueprint, jsonify, request

from netsuite_sync.contexts.sync.application.admin_service import SyncAdminService
from netsuite_sync.contexts.sync.application.delivery import process_sync_queue
from netsuite_sync.contexts.sync.application.dry_run import (
    DEFAULT_BATCH_CONCURRENCY,
    dry_run_batch,
    dry_run_item,
    dry_run_lookup,
)
from netsuite_sync.contexts.sync.domain.contracts import (
    BatchResyncInput,
    ChangeNotificationInput,
    InitialPricingInput,
    ManualTriggerInput,
    ServiceOutput,
)
from netsuite_sync.contexts.sync.domain.states import Direction
from netsuite_sync.contexts.sync.infrastructure.sync_queue import EVENT_TYPES
from netsuite_sync.db import get_db
from netsuite_sync.errors import ValidationError
from netsuite_sync.security import require_admin_token, require_webhook_secret


sync_admin_bp = Blueprint("sync_admin", __name__, url_prefix="/api/sync")
netsuite_webhook_bp = Blueprint("netsuite_webhooks", __name__, url_prefix="/api/sync/webhooks/netsuite")

_service = SyncAdminService()


@sync_admin_bp.before_request
def _guard_admin() -> None:
    require_admin_token()


def _invalid(field_name: str) -> ValidationError:
    return ValidationError(
        code="validation_error",
        message_key="validation_error",
        http_status=400,
        critical=False,
        payload={"field": field_name},
    )


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError(code="validation_error", message_key="validation_error", http_status=400, critical=False)
    return body


def _optional_string(payload: dict, field_name: str) -> str | None:
    value = payload.get(field_name)
    if value is None:
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise _invalid(field_name)
    normalized = str(value).strip()
    return normalized or None


def _required_string(payload: dict, field_name: str) -> str:
    value = _optional_string(payload, field_name)
    if value is None:
        raise _invalid(field_name)
    return value


def _optional_bool(payload: dict, field_name: str, default: bool) -> bool:
    value = payload.get(field_name)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise _invalid(field_name)
    return value


def _string_list(payload: dict, field_name: str, *, required: bool = False) -> list[str]:
    value = payload.get(field_name)
    if value is None and not required:
        return []
    if not isinstance(value, list):
        raise _invalid(field_name)
    return [str(entry).strip() for entry in value if str(entry).strip()]


def _int_arg(source, field_name: str, default: int | None, *, minimum: int = 0, maximum: int = 1000) -> int | None:
    value = source.get(field_name)
    if value is None or value == "":
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise _invalid(field_name) from exc
    if parsed < minimum or parsed > maximum:
        raise _invalid(field_name)
    return parsed


def _direction_arg(value: str | None, *, required: bool = False) -> str | None:
    normalized = str(value or "").strip().lower()
    if not normalized:
        if required:
            raise _invalid("direction")
        return None
    if normalized not in {direction.value for direction in Direction}:
        raise _invalid("direction")
    return normalized


def _requested_by(body: dict) -> str:
    return (
        _optional_string(body, "requested_by")
        or str(request.headers.get("X-Requested-By") or "").strip()
        or "operator"
    )


def _respond(output: ServiceOutput):
    return jsonify(output.payload), output.status_code


@sync_admin_bp.route("/status", methods=["GET"])
def sync_status_http():
    return _respond(_service.status(get_db()))


@sync_admin_bp.route("/config", methods=["GET"])
def sync_config_http():
    return _respond(_service.config(get_db()))


@sync_admin_bp.route("/config", methods=["PUT", "PATCH"])
def update_sync_config_http():
    body = _json_body()
    values = body.get("values")
    if not isinstance(values, dict):
        raise _invalid("values")
    return _respond(_service.update_config(get_db(), values, updated_by=_requested_by(body)))


@sync_admin_bp.route("/enable", methods=["POST"])
def enable_sync_http():
    return _respond(_service.set_enabled(get_db(), True, updated_by=_requested_by(_json_body())))


@sync_admin_bp.route("/disable", methods=["POST"])
def disable_sync_http():
    return _respond(_service.set_enabled(get_db(), False, updated_by=_requested_by(_json_body())))


@sync_admin_bp.route("/pause", methods=["POST"])
def pause_sync_http():
    return _respond(_service.set_paused(get_db(), True, updated_by=_requested_by(_json_body())))


@sync_admin_bp.route("/resume", methods=["POST"])
def resume_sync_http():
    return _respond(_service.set_paused(get_db(), False, updated_by=_requested_by(_json_body())))


@sync_admin_bp.route("/changes", methods=["POST"])
def record_change_http():
    body = _json_body()
    change = ChangeNotificationInput(
        item_id=_required_string(body, "item_id"),
        product_id=_optional_string(body, "product_id"),
        changed_fields=_string_list(body, "changed_fields"),
    )
    return _respond(_service.record_item_change(get_db(), change))


@sync_admin_bp.route("/changes", methods=["GET"])
def pending_changes_http():
    return _respond(
        _service.pending_changes(
            get_db(),
            direction=_direction_arg(request.args.get("direction")),
            limit=_int_arg(request.args, "limit", 100, minimum=1, maximum=1000),
        )
    )


@sync_admin_bp.route("/debounce/sweep", methods=["POST"])
def debounce_sweep_http():
    return _respond(_service.sweep(get_db()))


@sync_admin_bp.route("/worker/run", methods=["POST"])
def worker_run_http():
    body = _json_body()
    direction = _direction_arg(body.get("direction")) or Direction.OUTBOUND.value
    limit = _int_arg(body, "limit", None, minimum=1, maximum=500)
    summary = process_sync_queue(get_db(), direction=direction, limit=limit)
    return jsonify({"direction": direction, **summary}), 200


def _manual_trigger(body: dict) -> ManualTriggerInput:
    event_type = _optional_string(body, "event_type") or "update"
    if event_type not in EVENT_TYPES:
        raise _invalid("event_type")
    return ManualTriggerInput(
        requested_by=_requested_by(body),
        reason=_optional_string(body, "reason") or "",
        live_sync=_optional_bool(body, "live_sync", True),
        event_type=event_type,
        priority=body.get("priority"),
    )


@sync_admin_bp.route("/items/<item_id>/trigger", methods=["POST"])
def trigger_item_http(item_id: str):
    return _respond(_service.trigger_item(get_db(), item_id, _manual_trigger(_json_body())))


@sync_admin_bp.route("/products/<product_id>/trigger", methods=["POST"])
def trigger_product_http(product_id: str):
    return _respond(_service.trigger_product(get_db(), product_id, _manual_trigger(_json_body())))


@sync_admin_bp.route("/resync", methods=["POST"])
def batch_resync_http():
    body = _json_body()
    batch = BatchResyncInput(
        item_ids=_string_list(body, "item_ids", required=True),
        requested_by=_requested_by(body),
        reason=_optional_string(body, "reason") or "",
    )
    return _respond(_service.batch_resync(get_db(), batch))


@sync_admin_bp.route("/pricing/initial", methods=["POST"])
def initial_pricing_http():
    body = _json_body()
    pricing_request = InitialPricingInput(
        requested_by=_requested_by(body),
        item_ids=_string_list(body, "item_ids"),
        reason=_optional_string(body, "reason") or "",
        after_item_id=_int_arg(body, "after_item_id", 0, maximum=2**31 - 1),
    )
    return _respond(_service.initial_pricing(get_db(), pricing_request))


@sync_admin_bp.route("/items/<item_id>/status", methods=["GET"])
def item_status_http(item_id: str):
    return _respond(_service.item_status(get_db(), item_id))


@sync_admin_bp.route("/jobs", methods=["GET"])
def list_jobs_http():
    return _respond(
        _service.list_jobs(
            get_db(),
            status=(request.args.get("status") or "").strip().upper() or None,
            direction=_direction_arg(request.args.get("direction")),
            entity_id=(request.args.get("entity_id") or "").strip() or None,
            limit=_int_arg(request.args, "limit", 50, minimum=1, maximum=500),
            offset=_int_arg(request.args, "offset", 0, minimum=0, maximum=1_000_000),
        )
    )


@sync_admin_bp.route("/jobs/<int:job_id>", methods=["GET"])
def job_detail_http(job_id: int):
    return _respond(_service.job_detail(get_db(), job_id))


@sync_admin_bp.route("/jobs/<int:job_id>/cancel", methods=["POST"])
def cancel_job_http(job_id: int):
    return _respond(_service.cancel_job(get_db(), job_id))


@sync_admin_bp.route("/runs", methods=["GET"])
def list_runs_http():
    return _respond(
        _service.list_runs(
            get_db(),
            run_type=(request.args.get("run_type") or "").strip() or None,
            status=(request.args.get("status") or "").strip() or None,
            limit=_int_arg(request.args, "limit", 50, minimum=1, maximum=500),
        )
    )


@sync_admin_bp.route("/runs/<int:run_id>", methods=["GET"])
def run_detail_http(run_id: int):
    return _respond(_service.run_detail(get_db(), run_id))


@sync_admin_bp.route("/dry-run/items/<item_id>", methods=["POST"])
def dry_run_item_http(item_id: str):
    body = _json_body()
    result = dry_run_item(get_db(), item_id, trigger=_optional_string(body, "trigger") or "manual")
    return jsonify(result), 200


@sync_admin_bp.route("/dry-run/batch", methods=["POST"])
def dry_run_batch_http():
    body = _json_body()
    result = dry_run_batch(
        get_db(),
        _string_list(body, "item_ids", required=True),
        trigger=_optional_string(body, "trigger") or "manual",
        max_concurrency=_int_arg(body, "max_concurrency", DEFAULT_BATCH_CONCURRENCY, minimum=1, maximum=100),
    )
    return jsonify(result), 200


@sync_admin_bp.route("/dry-run/lookup", methods=["POST"])
def dry_run_lookup_http():
    body = _json_body()
    result = dry_run_lookup(
        get_db(),
        code=_optional_string(body, "code"),
        name=_optional_string(body, "name"),
        vendor=_optional_string(body, "vendor"),
        limit=_int_arg(body, "limit", 50, minimum=1, maximum=500),
    )
    return jsonify(result), 200


@sync_admin_bp.route("/dry-run/logs", methods=["GET"])
def dry_run_logs_http():
    return _respond(
        _service.dry_run_logs(
            get_db(),
            opms_item_id=(request.args.get("opms_item_id") or "").strip() or None,
            sync_type=(request.args.get("sync_type") or "").strip() or None,
            validation_status=(request.args.get("validation_status") or "").strip() or None,
            limit=_int_arg(request.args, "limit", 50, minimum=1, maximum=500),
            offset=_int_arg(request.args, "offset", 0, minimum=0, maximum=1_000_000),
        )
    )


@sync_admin_bp.route("/dry-run/logs/<int:log_id>", methods=["GET"])
def dry_run_log_http(log_id: int):
    return _respond(_service.dry_run_log(get_db(), log_id))


@sync_admin_bp.route("/dry-run/logs/<int:log_id>", methods=["DELETE"])
def delete_dry_run_log_http(log_id: int):
    return _respond(_service.delete_dry_run_logs(get_db(), log_id=log_id))


@sync_admin_bp.route("/dry-run/logs", methods=["DELETE"])
def delete_dry_run_logs_http():
    return _respond(
        _service.delete_dry_run_logs(
            get_db(),
            opms_item_id=(request.args.get("opms_item_id") or "").strip() or None,
            sync_type=(request.args.get("sync_type") or "").strip() or None,
            older_than_days=_int_arg(request.args, "older_than_days", None, minimum=0, maximum=3650),
            delete_all=(request.args.get("all") or "").strip().lower() in {"1", "true", "yes"},
        )
    )


@netsuite_webhook_bp.route("/pricing", methods=["POST"])
def pricing_webhook_http():
    require_webhook_secret()
    return _respond(_service.receive_pricing_webhook(get_db(), _json_body()))
