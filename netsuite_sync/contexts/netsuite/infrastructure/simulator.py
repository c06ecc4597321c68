from __future__ import annotations

import hashlib
from threading import Lock
from typing import Any, Dict

from netsuite_sync.contexts.netsuite.domain.gateway import (
    DeliveryResult,
    NetSuiteGateway,
    NetSuiteGatewayError,
)
from netsuite_sync.contexts.sync.domain.validation import simulate_restlet_validation
from netsuite_sync.observability import observe_netsuite_simulator_result


class DeterministicNetSuiteSimulator(NetSuiteGateway):
    """Offline NetSuite stand-in whose outcome depends only on (seed, itemId)."""

    accept_below = 85
    transient_below = 95

    def __init__(self, seed: int = 42) -> None:
        self.seed = int(seed)
        self._lock = Lock()
        self._items: Dict[str, str] = {}

    def _digest(self, prefix: str, item_code: str) -> str:
        return hashlib.sha256(f"{prefix}:{self.seed}:{item_code}".encode("utf-8")).hexdigest()

    def _bucket(self, item_code: str) -> int:
        return int(self._digest("bucket", item_code)[:8], 16) % 100

    def _external_id(self, item_code: str) -> str:
        return f"SIM-NS-{int(self._digest('id', item_code)[:8], 16) % 1_000_000:06d}"

    def upsert_item(self, payload: Dict[str, Any], *, operation: str) -> DeliveryResult:
        item_code = str(payload.get("itemId") or "").strip()
        validation = simulate_restlet_validation(payload)
        if not validation["would_succeed"]:
            observe_netsuite_simulator_result("rejected")
            raise NetSuiteGatewayError(
                f"NetSuite HTTP 400: {'; '.join(validation['errors'])[:300]}",
                status=400,
                code="INVALID_FLD_VALUE",
                definitive=True,
            )

        bucket = self._bucket(item_code)
        if bucket < self.accept_below:
            observe_netsuite_simulator_result("accepted")
            external_id = self._external_id(item_code)
            with self._lock:
                self._items[item_code] = external_id
            return DeliveryResult(
                external_id=external_id,
                echoed_fields={"itemId": item_code, "displayname": payload.get("displayname")},
                message=f"simulated {operation}",
            )
        if bucket < self.transient_below:
            observe_netsuite_simulator_result("temporary_failure")
            raise NetSuiteGatewayError("NetSuite HTTP 503: simulated outage", status=503)

        observe_netsuite_simulator_result("rejected")
        raise NetSuiteGatewayError(
            "NetSuite HTTP 400: simulated record rejection",
            status=400,
            code="USER_ERROR",
            definitive=True,
        )

    def delete_item(self, item_code: str) -> DeliveryResult:
        with self._lock:
            external_id = self._items.pop(item_code, None)
        if external_id is None:
            observe_netsuite_simulator_result("not_found")
            raise NetSuiteGatewayError(f"NetSuite HTTP 404: item {item_code} not found", status=404)
        observe_netsuite_simulator_result("accepted")
        return DeliveryResult(external_id=external_id, echoed_fields={"itemId": item_code}, message="simulated delete")

    def search_item(self, item_code: str) -> DeliveryResult | None:
        with self._lock:
            external_id = self._items.get(item_code)
        if external_id is None:
            return None
        return DeliveryResult(external_id=external_id, echoed_fields={"itemId": item_code})
