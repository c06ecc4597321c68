from __future__ import annotations

import json
import os
import socket
import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict

from flask import current_app

from netsuite_sync.contexts.netsuite.domain.gateway import (
    OPERATION_DELETE,
    OPERATION_SEARCH,
    DeliveryResult,
    NetSuiteGateway,
    NetSuiteGatewayError,
)


_MAX_TIMEOUT_SECONDS = 120


class NetSuiteRestletGateway(NetSuiteGateway):
    def __init__(
        self,
        restlet_url: str | None = None,
        token: str | None = None,
        *,
        timeout_seconds: int | None = None,
        verify_ssl: bool | None = None,
    ) -> None:
        self.restlet_url = str(restlet_url or _get_config("NETSUITE_RESTLET_URL") or "").strip()
        self.token = str(token or _get_config("NETSUITE_TOKEN") or "").strip() or None
        configured_timeout = timeout_seconds if timeout_seconds is not None else _int_config("NETSUITE_TIMEOUT_SECONDS", 20)
        self.timeout_seconds = max(1, min(_MAX_TIMEOUT_SECONDS, int(configured_timeout)))
        self.verify_ssl = _bool_config("NETSUITE_VERIFY_SSL", True) if verify_ssl is None else bool(verify_ssl)

    def upsert_item(self, payload: Dict[str, Any], *, operation: str) -> DeliveryResult:
        body = dict(payload)
        body["operation"] = operation
        response = self._request_json("POST", self._url(), payload=body)
        return self._delivery_result(response, payload.get("itemId"))

    def delete_item(self, item_code: str) -> DeliveryResult:
        query = urllib.parse.urlencode({"itemId": item_code, "operation": OPERATION_DELETE})
        response = self._request_json("DELETE", f"{self._url()}?{query}")
        return self._delivery_result(response, item_code)

    def search_item(self, item_code: str) -> DeliveryResult | None:
        query = urllib.parse.urlencode({"itemId": item_code, "operation": OPERATION_SEARCH})
        try:
            response = self._request_json("GET", f"{self._url()}?{query}")
        except NetSuiteGatewayError as exc:
            if exc.status == 404:
                return None
            raise
        if not response.get("id"):
            return None
        return self._delivery_result(response, item_code)

    def _url(self) -> str:
        if not self.restlet_url:
            raise NetSuiteGatewayError("NETSUITE_RESTLET_URL is not configured.", definitive=True)
        return self.restlet_url

    @staticmethod
    def _delivery_result(response: Dict[str, Any], item_code: object) -> DeliveryResult:
        if response.get("success") is False:
            message = str(response.get("error") or response.get("message") or "NetSuite rejected the payload")
            raise NetSuiteGatewayError(f"NetSuite HTTP 400: {message[:300]}", status=400, definitive=True)
        external_id = response.get("id") or response.get("internalId")
        fields = response.get("fields") if isinstance(response.get("fields"), dict) else {}
        if not fields and item_code:
            fields = {"itemId": item_code}
        return DeliveryResult(
            external_id=str(external_id) if external_id is not None else None,
            echoed_fields=fields,
            message=str(response.get("message") or "") or None,
        )

    def _request_json(self, method: str, url: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")

        request = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
        context = None if self.verify_ssl else ssl._create_unverified_context()

        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds, context=context) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            raise NetSuiteGatewayError(
                f"NetSuite HTTP {exc.code}: {error_body[:300]}",
                status=exc.code,
            ) from exc
        except urllib.error.URLError as exc:
            timed_out = isinstance(exc.reason, (socket.timeout, TimeoutError))
            raise NetSuiteGatewayError(f"NetSuite connection error: {exc.reason}", timeout=timed_out) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise NetSuiteGatewayError(
                f"NetSuite call timed out after {self.timeout_seconds}s",
                timeout=True,
            ) from exc

        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as exc:
            raise NetSuiteGatewayError("NetSuite returned invalid JSON.", status=502) from exc
        if not isinstance(parsed, dict):
            raise NetSuiteGatewayError("NetSuite returned a non-object JSON body.", status=502)
        return parsed


def _get_config(key: str, default: object | None = None) -> object | None:
    try:
        if key in current_app.config:
            value = current_app.config.get(key)
            if value is not None:
                return value
        return os.environ.get(key, default)
    except RuntimeError:
        return os.environ.get(key, default)


def _int_config(key: str, default: int) -> int:
    value = _get_config(key, default)
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _bool_config(key: str, default: bool) -> bool:
    value = _get_config(key, default)
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
