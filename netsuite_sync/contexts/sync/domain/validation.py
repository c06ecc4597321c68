from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from netsuite_sync.contexts.sync.domain.transform import DISPLAY_NAME_SEPARATOR, SENTINEL


REQUIRED_FIELDS = ("itemId", "custitem_opms_item_id", "custitem_opms_prod_id", "displayname")
ID_FIELDS = ("custitem_opms_item_id", "custitem_opms_prod_id")

ITEM_ID_MAX_LENGTH = 40
DISPLAY_NAME_MAX_LENGTH = 200
TEXT_FIELD_MAX_LENGTH = 4000

BOOLEAN_FIELDS = (
    "custitem_opms_is_repeat",
    "usebins",
    "matchbilltoreceipt",
    "custitem_aln_1_auto_numbered",
)
INTEGER_FIELDS = (
    "custitem_opms_item_id",
    "custitem_opms_prod_id",
    "unitstype",
    "custitem_aln_2_number_format",
    "custitem_aln_3_initial_sequence",
)
# Dimension fields may carry the sentinel when the catalog has no value.
OPTIONAL_NUMERIC_FIELDS = ("fabricWidth", "custitem_vertical_repeat", "custitem_horizontal_repeat", "vendor")

STATUS_PASSED = "passed"
STATUS_FAILED = "failed"
STATUS_PARTIAL = "partial"


@dataclass(frozen=True)
class PayloadValidation:
    status: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "errors": list(self.errors), "warnings": list(self.warnings)}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() in {"", SENTINEL.strip()})


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip())
    except ValueError:
        return False
    return True


def validate_payload(payload: Dict[str, Any]) -> PayloadValidation:
    errors: List[str] = []
    warnings: List[str] = []

    for name in REQUIRED_FIELDS:
        if _is_blank(payload.get(name)):
            errors.append(f"missing required field: {name}")

    for name in ID_FIELDS:
        value = payload.get(name)
        if not _is_blank(value) and not _is_numeric(value):
            errors.append(f"{name} must be numeric")

    vendor = payload.get("vendor")
    if vendor is not None and vendor != SENTINEL and not _is_numeric(vendor):
        errors.append("vendor must be a numeric NetSuite id or the empty marker")

    display_name = payload.get("displayname")
    if not _is_blank(display_name) and DISPLAY_NAME_SEPARATOR not in str(display_name):
        warnings.append("displayname is not in 'Product: Colors' format")

    if errors:
        status = STATUS_FAILED
    elif warnings:
        status = STATUS_PARTIAL
    else:
        status = STATUS_PASSED
    return PayloadValidation(status=status, errors=errors, warnings=warnings)


def _check(checks: List[Dict[str, Any]], errors: List[str], name: str, passed: bool, message: str) -> None:
    checks.append({"check": name, "passed": bool(passed), "message": None if passed else message})
    if not passed:
        errors.append(message)


def simulate_restlet_validation(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Static checks mirroring the constraints NetSuite enforces on item saves."""
    checks: List[Dict[str, Any]] = []
    errors: List[str] = []

    for name in REQUIRED_FIELDS:
        _check(checks, errors, f"required:{name}", not _is_blank(payload.get(name)), f"{name} is required")

    item_id = str(payload.get("itemId") or "")
    _check(
        checks,
        errors,
        "length:itemId",
        len(item_id) <= ITEM_ID_MAX_LENGTH,
        f"itemId exceeds {ITEM_ID_MAX_LENGTH} characters",
    )
    display_name = str(payload.get("displayname") or "")
    _check(
        checks,
        errors,
        "length:displayname",
        len(display_name) <= DISPLAY_NAME_MAX_LENGTH,
        f"displayname exceeds {DISPLAY_NAME_MAX_LENGTH} characters",
    )

    for name, value in payload.items():
        if name in {"itemId", "displayname"} or not isinstance(value, str):
            continue
        if len(value) > TEXT_FIELD_MAX_LENGTH:
            _check(checks, errors, f"length:{name}", False, f"{name} exceeds {TEXT_FIELD_MAX_LENGTH} characters")

    for name in BOOLEAN_FIELDS:
        if name in payload:
            _check(checks, errors, f"type:{name}", isinstance(payload[name], bool), f"{name} must be boolean")
    for name in INTEGER_FIELDS:
        if name in payload:
            _check(checks, errors, f"type:{name}", _is_numeric(payload[name]), f"{name} must be numeric")
    for name in OPTIONAL_NUMERIC_FIELDS:
        value = payload.get(name)
        if value is not None and value != SENTINEL:
            _check(checks, errors, f"type:{name}", _is_numeric(value), f"{name} must be numeric")

    would_succeed = not errors
    if would_succeed:
        response = {
            "success": True,
            "operation": "upsert",
            "itemId": item_id,
            "id": f"DRY-RUN-{item_id}",
            "fieldsAccepted": len(payload),
        }
    else:
        response = {"success": False, "itemId": item_id or None, "error": {"code": "INVALID_FLD_VALUE", "details": errors}}
    return {"would_succeed": would_succeed, "errors": errors, "checks": checks, "response": response}
