from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class ServiceOutput:
    payload: Dict[str, Any]
    status_code: int = 200


@dataclass(frozen=True)
class ManualTriggerInput:
    requested_by: str
    reason: str = ""
    live_sync: bool = True
    event_type: str = "update"
    priority: str | int | None = None


@dataclass(frozen=True)
class BatchResyncInput:
    item_ids: List[str]
    requested_by: str
    reason: str = ""


@dataclass(frozen=True)
class ChangeNotificationInput:
    item_id: str
    product_id: str | None = None
    changed_fields: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class InitialPricingInput:
    requested_by: str
    item_ids: List[str] = field(default_factory=list)
    reason: str = ""
    after_item_id: int = 0
