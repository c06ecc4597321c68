from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from netsuite_sync.errors import SyncValidationError


SKIP_FLAG_FIELD = "custitemf3_lisa_item"
SKIP_PRICING_FLAG = "skip_pricing_flag"

PRICING_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("price_1_", "p_res_cut"),
    ("price_1_5", "p_hosp_roll"),
    ("cost", "cost_cut"),
    ("custitem_f3_rollprice", "cost_roll"),
)
PRICING_COLUMNS = tuple(column for _source, column in PRICING_FIELD_MAP)

PRICE_MIN = 0.01
PRICE_MAX = 999999.99

# (selling column, cost column) pairs compared for margin warnings.
_MARGIN_PAIRS = (("p_res_cut", "cost_cut"), ("p_hosp_roll", "cost_roll"))
_TRUE_FLAGS = {"t", "true", "1", "yes", "y"}


@dataclass(frozen=True)
class PricingValidation:
    values: Dict[str, float] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def is_skip_flag_set(item_data: Dict[str, Any] | None) -> bool:
    value = (item_data or {}).get(SKIP_FLAG_FIELD)
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in _TRUE_FLAGS


def require_identifiers(item_data: Dict[str, Any] | None) -> Tuple[str, str]:
    data = item_data or {}
    item_code = str(data.get("itemid") or "").strip()
    internal_id = str(data.get("internalid") or "").strip()
    missing = [name for name, value in (("itemid", item_code), ("internalid", internal_id)) if not value]
    if missing:
        raise SyncValidationError(f"webhook item is missing {', '.join(missing)}")
    return item_code, internal_id


def extract_pricing(item_data: Dict[str, Any] | None) -> Dict[str, Any]:
    data = item_data or {}
    pricing: Dict[str, Any] = {}
    for source, column in PRICING_FIELD_MAP:
        value = data.get(source)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        pricing[column] = value
    return pricing


def validate_pricing(pricing: Dict[str, Any]) -> PricingValidation:
    values: Dict[str, float] = {}
    errors: List[str] = []
    warnings: List[str] = []

    for column, raw in pricing.items():
        if isinstance(raw, bool):
            errors.append(f"{column} must be numeric")
            continue
        try:
            number = float(raw)
        except (TypeError, ValueError):
            errors.append(f"{column} must be numeric")
            continue
        if number != number:
            errors.append(f"{column} must be numeric")
            continue
        if number < 0:
            errors.append(f"{column} cannot be negative")
            continue
        if number > 0 and not (PRICE_MIN <= number <= PRICE_MAX):
            errors.append(f"{column} must be between {PRICE_MIN} and {PRICE_MAX}")
            continue
        values[column] = round(number, 2)

    for selling, cost in _MARGIN_PAIRS:
        if selling in values and cost in values and values[cost] > 0 and values[selling] <= values[cost]:
            warnings.append(f"{selling} ({values[selling]}) is not above {cost} ({values[cost]})")

    return PricingValidation(values=values, errors=errors, warnings=warnings)
