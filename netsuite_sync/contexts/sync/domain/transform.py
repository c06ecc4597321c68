from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Tuple

from netsuite_sync.contexts.sync.domain.snapshot import ItemSnapshot
from netsuite_sync.errors import SyncValidationError


SENTINEL = " - "
MULTI_VALUE_SEPARATOR = ", "
DISPLAY_NAME_SEPARATOR = ": "
ITEM_CODE_PATTERN = re.compile(r"^\d{4}-\d{4}$")

SKIP_DIGITAL_ITEM = "digital_item"
SKIP_INVALID_CODE = "invalid_item_code"
SKIP_ARCHIVED_ITEM = "archived_item"

NETSUITE_CONSTANTS: Tuple[Tuple[str, Any], ...] = (
    ("usebins", True),
    ("matchbilltoreceipt", True),
    ("custitem_aln_1_auto_numbered", True),
    ("unitstype", 2),
    ("custitem_aln_2_number_format", 1),
    ("custitem_aln_3_initial_sequence", 1),
)

_COMPLIANCE_VALUES = {"Y": "Yes", "N": "No"}


def _has_data(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, set)):
        return any(_has_data(item) for item in value)
    if isinstance(value, str):
        return bool(value.strip())
    return True


def render_text(value: Any) -> str:
    if not _has_data(value):
        return SENTINEL
    return str(value).strip()


def render_number(value: Any) -> int | float | str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return SENTINEL
    try:
        number = float(value)
    except (TypeError, ValueError):
        return SENTINEL
    return int(number) if number.is_integer() else round(number, 4)


def render_multi(values: Iterable[Any]) -> str:
    cleaned = {str(value).strip() for value in (values or ()) if _has_data(value)}
    if not cleaned:
        return SENTINEL
    return MULTI_VALUE_SEPARATOR.join(sorted(cleaned, key=lambda name: (name.casefold(), name)))


def render_compliance(value: Any) -> str:
    return _COMPLIANCE_VALUES.get(str(value or "").strip().upper(), SENTINEL)


def compose_display_name(parent_name: str, variant_name: str) -> str:
    variant = variant_name if variant_name == SENTINEL else (variant_name.strip() or SENTINEL)
    return f"{parent_name.strip()}{DISPLAY_NAME_SEPARATOR}{variant}"


def skip_reason(snapshot: ItemSnapshot, *, manual: bool = False) -> str | None:
    code = str(snapshot.item_code or "").strip()
    if str(snapshot.product_type or "").strip().upper() == "D" or "digital" in code.lower():
        return SKIP_DIGITAL_ITEM
    if snapshot.archived:
        return SKIP_ARCHIVED_ITEM
    # Operators may push non-standard codes by hand; automatic sync may not.
    if code and not manual and not ITEM_CODE_PATTERN.match(code):
        return SKIP_INVALID_CODE
    return None


def _field_sources(snapshot: ItemSnapshot) -> List[Tuple[str, Any, str]]:
    vendor = snapshot.vendor
    return [
        ("fabricWidth", snapshot.width, "product"),
        ("custitem_vertical_repeat", snapshot.vertical_repeat, "product"),
        ("custitem_horizontal_repeat", snapshot.horizontal_repeat, "product"),
        ("vendor", vendor.netsuite_vendor_id if vendor else None, "vendor"),
        ("vendorcode", vendor.vendor_code if vendor else None, "vendor"),
        ("vendorName", vendor.name if vendor else None, "vendor"),
        ("custitem_opms_vendor_prod_name", snapshot.vendor_product_name, "product"),
        ("custitem_opms_vendor_color", snapshot.vendor_color, "item"),
        ("custitem_opms_item_colors", snapshot.colors, "colors"),
        ("custitem_opms_finish", snapshot.finishes, "attributes"),
        ("custitem_opms_cleaning", snapshot.cleanings, "attributes"),
        ("custitem_opms_origin", snapshot.origins, "attributes"),
        ("custitem_item_application", snapshot.uses, "attributes"),
        ("custitem_opms_certifications", snapshot.certifications, "attributes"),
        ("custitem_prop65_compliance", snapshot.prop_65, "product"),
        ("custitem_ab2998_compliance", snapshot.ab_2998_compliant, "product"),
        ("custitem_tariff_harmonized_code", snapshot.tariff_code, "product"),
        ("custitem_opms_front_content", snapshot.front_content, "content"),
        ("custitem_opms_back_content", snapshot.back_content, "content"),
        ("custitem_opms_abrasion", snapshot.abrasion, "content"),
        ("custitem_opms_firecodes", snapshot.firecodes, "content"),
        ("purchasedescription", snapshot.purchase_description, "product"),
        ("salesdescription", snapshot.sales_description, "product"),
    ]


def field_validation_summary(snapshot: ItemSnapshot) -> Dict[str, int]:
    summary = {"has_data": 0, "src_empty": 0, "query_failed": 0}
    failed = set(snapshot.failed_sources)
    for _name, value, source in _field_sources(snapshot):
        if source in failed:
            summary["query_failed"] += 1
        elif _has_data(value):
            summary["has_data"] += 1
        else:
            summary["src_empty"] += 1
    return summary


def build_netsuite_payload(snapshot: ItemSnapshot) -> Dict[str, Any]:
    """Map an item snapshot onto the NetSuite inventory item fields.

    The result only depends on the snapshot: no clock reads, fixed key order,
    so transforming an unchanged item twice yields the same bytes.
    """
    item_code = str(snapshot.item_code or "").strip()
    product_name = str(snapshot.product_name or "").strip()
    if not item_code:
        raise SyncValidationError(f"item {snapshot.item_id} has no item code")
    if not product_name:
        raise SyncValidationError(f"item {snapshot.item_id} has no parent product name")

    vendor = snapshot.vendor
    colors = render_multi(snapshot.colors)
    summary = field_validation_summary(snapshot)

    payload: Dict[str, Any] = {
        "itemId": item_code,
        "custitem_opms_item_id": int(snapshot.item_id),
        "custitem_opms_prod_id": int(snapshot.product_id),
        "displayname": compose_display_name(product_name, colors),
        "custitem_opms_parent_product_name": product_name,
        "fabricWidth": render_number(snapshot.width),
        "custitem_vertical_repeat": render_number(snapshot.vertical_repeat),
        "custitem_horizontal_repeat": render_number(snapshot.horizontal_repeat),
        "custitem_opms_is_repeat": snapshot.is_repeat,
        "vendor": int(vendor.netsuite_vendor_id) if vendor and vendor.netsuite_vendor_id else SENTINEL,
        "vendorcode": render_text(vendor.vendor_code if vendor else None),
        "vendorName": render_text(vendor.name if vendor else None),
        "custitem_opms_vendor_prod_name": render_text(snapshot.vendor_product_name),
        "custitem_opms_vendor_color": render_text(snapshot.vendor_color),
        "custitem_opms_item_colors": colors,
        "custitem_opms_finish": render_multi(snapshot.finishes),
        "custitem_opms_cleaning": render_multi(snapshot.cleanings),
        "custitem_opms_origin": render_multi(snapshot.origins),
        "custitem_item_application": render_multi(snapshot.uses),
        "custitem_opms_certifications": render_multi(snapshot.certifications),
        "custitem_prop65_compliance": render_compliance(snapshot.prop_65),
        "custitem_ab2998_compliance": render_compliance(snapshot.ab_2998_compliant),
        "custitem_tariff_harmonized_code": render_text(snapshot.tariff_code),
        "custitem_opms_front_content": render_text(snapshot.front_content),
        "custitem_opms_back_content": render_text(snapshot.back_content),
        "custitem_opms_abrasion": render_text(snapshot.abrasion),
        "custitem_opms_firecodes": render_text(snapshot.firecodes),
        "purchasedescription": render_text(snapshot.purchase_description),
        "salesdescription": render_text(snapshot.sales_description),
        "custitem_opms_source_modified_at": render_text(snapshot.modified_at),
        "custitem_opms_field_validation_summary": (
            f"has_data={summary['has_data']}; src_empty={summary['src_empty']}; "
            f"query_failed={summary['query_failed']}"
        ),
    }
    for key, value in NETSUITE_CONSTANTS:
        payload[key] = value
    return payload


def payload_bytes(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
