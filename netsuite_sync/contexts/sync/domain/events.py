from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Tuple, Type

from netsuite_sync.errors import ValidationError


@dataclass(frozen=True, kw_only=True)
class SyncEvent:
    """What caused a job; persisted as (event_kind, event_payload)."""

    kind: ClassVar[str] = ""
    manual: ClassVar[bool] = False

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, kw_only=True)
class ItemChangedEvent(SyncEvent):
    kind: ClassVar[str] = "item_changed"

    changed_fields: Tuple[str, ...] = ()
    change_count: int = 1
    first_change_at: str | None = None
    last_change_at: str | None = None

    def __post_init__(self) -> None:
        fields = sorted({str(name).strip() for name in self.changed_fields if str(name).strip()})
        object.__setattr__(self, "changed_fields", tuple(fields))


@dataclass(frozen=True, kw_only=True)
class ManualTriggerEvent(SyncEvent):
    kind: ClassVar[str] = "manual_trigger"
    manual: ClassVar[bool] = True

    reason: str = ""
    requested_by: str = "operator"
    live_sync: bool = True
    product_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class BatchResyncEvent(SyncEvent):
    kind: ClassVar[str] = "batch_resync"
    manual: ClassVar[bool] = True

    reason: str = ""
    requested_by: str = "operator"
    batch_size: int = 0


@dataclass(frozen=True, kw_only=True)
class PricingWebhookEvent(SyncEvent):
    kind: ClassVar[str] = "pricing_webhook"

    netsuite_item_id: str
    netsuite_internal_id: str
    received_at: str | None = None
    item_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class InitialPricingEvent(SyncEvent):
    """Pull current NetSuite pricing for an OPMS item, found by its code."""

    kind: ClassVar[str] = "initial_pricing"
    manual: ClassVar[bool] = True

    item_code: str
    opms_item_id: str | None = None
    requested_by: str = "operator"
    reason: str = ""


EVENT_TYPES: Dict[str, Type[SyncEvent]] = {
    event_type.kind: event_type
    for event_type in (ItemChangedEvent, ManualTriggerEvent, BatchResyncEvent, PricingWebhookEvent, InitialPricingEvent)
}


def event_from_payload(kind: str, payload: Dict[str, Any] | None) -> SyncEvent:
    event_type = EVENT_TYPES.get(str(kind or "").strip())
    if event_type is None:
        raise ValidationError(code="unknown_event_kind", details=f"unknown event kind: {kind!r}")
    raw = dict(payload or {})
    if event_type is ItemChangedEvent:
        raw["changed_fields"] = tuple(raw.get("changed_fields") or ())
    allowed = set(event_type.__dataclass_fields__)
    try:
        return event_type(**{key: value for key, value in raw.items() if key in allowed})
    except TypeError as exc:
        raise ValidationError(code="invalid_event_payload", details=str(exc)) from exc


def merge_changed_fields(*groups: List[str] | Tuple[str, ...]) -> List[str]:
    merged = set()
    for group in groups:
        merged.update(str(name).strip() for name in (group or ()) if str(name).strip())
    return sorted(merged)
