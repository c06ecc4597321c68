from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict


OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_DELETE = "delete"
OPERATION_SEARCH = "search"


class NetSuiteGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        code: str | None = None,
        timeout: bool = False,
        definitive: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = int(status) if status is not None else None
        self.code = str(code or "").strip() or None
        self.timeout = bool(timeout)
        self.definitive = bool(definitive)


@dataclass(frozen=True)
class DeliveryResult:
    external_id: str | None
    echoed_fields: Dict[str, Any] = field(default_factory=dict)
    message: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "echoed_fields": dict(self.echoed_fields),
            "message": self.message,
        }


class NetSuiteGateway(ABC):
    @abstractmethod
    def upsert_item(self, payload: Dict[str, Any], *, operation: str) -> DeliveryResult:
        raise NotImplementedError

    @abstractmethod
    def delete_item(self, item_code: str) -> DeliveryResult:
        raise NotImplementedError

    @abstractmethod
    def search_item(self, item_code: str) -> DeliveryResult | None:
        raise NotImplementedError
