"""Mixam public API client.

Every request (including the token fetch) is recorded on
`client.interactions` as a raw record:

    {timestamp, type: "api_call", action, method, endpoint,
     requestBody, responseBody, statusCode, durationMs, error}

Callers persist them with interactions.log_interactions() once the
operation is over, whether it succeeded or not.

MIXAM_MOCK_MODE=true short-circuits every call with canned responses so
the print flow can be exercised without partner credentials.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://mixam.co.uk"
TOKEN_REFRESH_MARGIN = 5 * 60
DEFAULT_TOKEN_LIFETIME = 23 * 60 * 60

# (base_url, username) -> (token, expires_at epoch seconds)
_token_cache: dict[tuple[str, str], tuple[str, float]] = {}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


def jwt_expiry(token: str) -> float | None:
    """Epoch seconds from the JWT `exp` claim, or None if it can't be read."""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
        return float(claims["exp"])
    except (IndexError, KeyError, TypeError, ValueError):
        return None


def find_orders(data: Any) -> list[dict[str, Any]]:
    """Pull the order list out of whatever shape the list endpoint returned."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("orders", "content"):
            if isinstance(data.get(key), list):
                return data[key]
        for value in data.values():
            if isinstance(value, list):
                return value
    return []


def _matches(order: dict[str, Any], order_id: str) -> bool:
    return order.get("id") == order_id or str(order.get("orderNumber")) == order_id


def _status_of(order: dict[str, Any]) -> dict[str, Any]:
    return {
        "status": order.get("orderStatus") or order.get("status") or "UNKNOWN",
        "trackingUrl": order.get("trackingUrl"),
        "estimatedDelivery": order.get("estimatedDelivery"),
    }


def _body_of(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:2000]


class MixamClient:
    def __init__(
        self,
        base_url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        mock: bool | None = None,
        timeout: float = 60,
    ):
        self._base_url = (base_url or os.getenv("MIXAM_API_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self._username = username if username is not None else os.getenv("MIXAM_USERNAME", "")
        self._password = password if password is not None else os.getenv("MIXAM_PASSWORD", "")
        self._mock = _env_flag("MIXAM_MOCK_MODE") if mock is None else mock
        self._timeout = timeout
        self.interactions: list[dict[str, Any]] = []

    @property
    def mock(self) -> bool:
        return self._mock

    # ── Transport ────────────────────────────────────────

    def _record(self, action: str, method: str, endpoint: str, **fields: Any) -> None:
        self.interactions.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "api_call",
            "action": action,
            "method": method,
            "endpoint": endpoint,
            **fields,
        })

    async def _request(
        self,
        action: str,
        method: str,
        path: str,
        *,
        authenticated: bool = True,
        record_body: Any = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        headers = kwargs.pop("headers", {})
        if authenticated:
            headers["Authorization"] = f"Bearer {await self.authenticate()}"
        if record_body is None:
            record_body = kwargs.get("json") if "json" in kwargs else kwargs.get("content")

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            self._record(
                action, method, path, requestBody=record_body,
                durationMs=int((time.monotonic() - started) * 1000),
                error=str(e) or type(e).__name__,
            )
            raise MixamError(f"Network error calling Mixam API ({url}): {e}") from e

        self._record(
            action, method, path, requestBody=record_body,
            responseBody=_body_of(resp), statusCode=resp.status_code,
            durationMs=int((time.monotonic() - started) * 1000),
        )
        logger.debug("mixam %s %s -> %d", method, path, resp.status_code)
        return resp

    # ── Auth ─────────────────────────────────────────────

    async def authenticate(self) -> str:
        """JWT for the Authorization header, cached until 5 minutes before expiry."""
        if self._mock:
            return f"mock_jwt_token_{int(time.time() * 1000)}"

        key = (self._base_url, self._username)
        cached = _token_cache.get(key)
        if cached and cached[1] > time.time() + TOKEN_REFRESH_MARGIN:
            return cached[0]

        if not self._username or not self._password:
            raise MixamError("Mixam credentials not configured. Set MIXAM_USERNAME and MIXAM_PASSWORD")

        resp = await self._request(
            "Authenticate", "GET", "/api/user/token",
            authenticated=False,
            auth=(self._username, self._password),
            headers={"Accept": "*/*"},
        )
        if resp.status_code >= 400:
            raise MixamError(f"Mixam authentication failed ({resp.status_code}): {resp.text}", resp.status_code)

        text = resp.text.strip()
        try:
            data = json.loads(text)
            token = data.get("token", text) if isinstance(data, dict) else text
        except ValueError:
            token = text
        if not token.startswith("eyJ"):
            raise MixamError("Mixam authentication response does not contain a valid JWT token")

        expires_at = jwt_expiry(token)
        if expires_at is None:
            logger.warning("[mixam] Could not decode JWT expiration, assuming 23 hours")
            expires_at = time.time() + DEFAULT_TOKEN_LIFETIME
        _token_cache[key] = (token, expires_at)
        return token

    # ── Orders ───────────────────────────────────────────

    async def upload_file(self, data: bytes, filename: str) -> dict[str, Any]:
        checksum = hashlib.md5(data).hexdigest()
        if self._mock:
            file_id = f"mock_file_{random.randrange(16**6):06x}"
            self._record("Upload file (mock)", "POST", "/api/public/files",
                         requestBody={"filename": filename, "checksum": checksum}, statusCode=200)
            return {"fileId": file_id, "url": f"https://mock-mixam-files.com/{file_id}", "checksum": checksum}

        resp = await self._request(
            "Upload file", "POST", "/api/public/files",
            files={"file": (filename, data, "application/pdf")},
            data={"checksum": checksum},
            record_body={"filename": filename, "checksum": checksum, "size": len(data)},
        )
        if resp.status_code >= 400:
            raise MixamError(f"File upload failed: {resp.status_code}", resp.status_code)
        body = resp.json()
        return {"fileId": body.get("fileId"), "url": body.get("url"), "checksum": checksum}

    async def submit_order(self, document: dict[str, Any]) -> dict[str, Any]:
        """POST the order document. Returns {orderId, jobNumber, status}."""
        if self._mock:
            result = {
                "orderId": f"MOCK-{int(time.time() * 1000)}",
                "jobNumber": f"MXM{random.randint(100000, 999999)}",
                "status": "submitted",
            }
            self._record("Submit order (mock)", "POST", "/api/public/orders",
                         requestBody=document, responseBody=result, statusCode=200)
            return result

        resp = await self._request(
            "Submit order", "POST", "/api/public/orders",
            json=document, headers={"Content-Type": "application/json"},
        )
        if resp.status_code >= 400:
            raise MixamError(f"Order submission failed: {resp.status_code} - {resp.text}", resp.status_code)
        data = resp.json()
        order = data.get("order") or data
        return {
            "orderId": order.get("id") or order.get("orderId"),
            "jobNumber": str(order.get("orderNumber") or order.get("jobNumber") or ""),
            "status": order.get("orderStatus") or order.get("status") or "INIT",
        }

    async def get_order_status(self, order_id: str) -> dict[str, Any]:
        """Single-order endpoint first, then the account's order list."""
        if self._mock:
            result = {
                "status": "submitted",
                "trackingUrl": None,
                "estimatedDelivery": (datetime.now(timezone.utc) + timedelta(days=7)).isoformat(),
            }
            self._record("Get order status (mock)", "GET", f"/api/public/orders/{order_id}",
                         responseBody=result, statusCode=200)
            return result

        accept = {"Accept": "application/json"}
        resp = await self._request("Get order status", "GET", f"/api/public/orders/{order_id}", headers=accept)
        if resp.status_code < 400:
            data = resp.json()
            return _status_of(data.get("order") or data)

        logger.info(f"[mixam] Single order endpoint returned {resp.status_code}, trying orders list")
        resp = await self._request("List orders", "GET", "/api/public/user/orders", headers=accept)
        if resp.status_code >= 400:
            raise MixamError(f"Failed to get orders: {resp.status_code}", resp.status_code)

        orders = find_orders(resp.json())
        match = next((o for o in orders if _matches(o, order_id)), None)
        if match is None:
            known = ", ".join(str(o.get("orderNumber") or o.get("id")) for o in orders)
            listing = f"Available orders: {known}" if known else "No orders found in Mixam account."
            raise MixamError(
                f"Order {order_id} not found in Mixam orders list. {listing} "
                "(Newly submitted orders may take a few minutes to appear.)",
                404,
            )
        return _status_of(match)

    async def cancel_order(self, order_id: str) -> dict[str, Any]:
        if self._mock:
            result = {"orderId": order_id, "jobNumber": "", "status": "CANCELED"}
            self._record("Cancel order (mock)", "PUT", f"/api/public/orders/{order_id}/status",
                         requestBody="CANCELED", responseBody=result, statusCode=200)
            return result

        resp = await self._request(
            "Cancel order", "PUT", f"/api/public/orders/{order_id}/status",
            content="CANCELED", headers={"Content-Type": "text/plain"},
        )
        if resp.status_code >= 400:
            body = _body_of(resp)
            if isinstance(body, dict):
                reason = body.get("message") or body.get("error") or body.get("reason") or resp.text
            else:
                reason = body or "Unknown error"
            if resp.status_code == 409:
                raise MixamError(f"Order cannot be cancelled: {reason}", 409)
            if resp.status_code == 404:
                raise MixamError(f"Order not found: {order_id}", 404)
            if resp.status_code == 400:
                raise MixamError(f"Invalid cancel request: {reason}", 400)
            raise MixamError(f"Failed to cancel order ({resp.status_code}): {reason}", resp.status_code)

        data = _body_of(resp)
        data = data if isinstance(data, dict) else {}
        return {
            "orderId": data.get("orderId") or order_id,
            "jobNumber": str(data["orderNumber"]) if data.get("orderNumber") else "",
            "status": data.get("status") or "CANCELED",
        }

    # ── Quotes & catalogue ───────────────────────────────

    async def get_price_quote(self, product_type: str, quantity: int, page_count: int) -> dict[str, Any]:
        params = {"productType": product_type, "quantity": quantity, "pageCount": page_count}
        if self._mock:
            unit = 15.0 if quantity <= 10 else 12.5 if quantity <= 50 else 10.0
            result = {
                "unitPrice": unit,
                "totalPrice": unit * quantity,
                "shippingCost": 5.0 + quantity * 0.5,
                "setupFee": 0,
                "currency": "GBP",
            }
            self._record("Price quote (mock)", "POST", "/api/public/quote",
                         requestBody=params, responseBody=result, statusCode=200)
            return result

        resp = await self._request("Price quote", "POST", "/api/public/quote", json=params)
        if resp.status_code >= 400:
            raise MixamError(f"Failed to get price quote: {resp.status_code}", resp.status_code)
        data = resp.json()
        return {
            "unitPrice": data.get("unitPrice"),
            "totalPrice": data.get("totalPrice"),
            "shippingCost": data.get("shippingCost"),
            "setupFee": data.get("setupFee") or 0,
            "currency": "GBP",
        }

    async def get_catalogue(self) -> dict[str, Any]:
        if self._mock:
            return {
                "products": [
                    {"id": 1, "name": "Brochures", "subProducts": [{"id": 0, "name": "Standard"}]},
                    {"id": 2, "name": "Books", "subProducts": [
                        {"id": 0, "name": "Paperback"}, {"id": 1, "name": "Hardcover"},
                    ]},
                    {"id": 3, "name": "Posters", "subProducts": [{"id": 0, "name": "Standard"}]},
                ],
            }
        resp = await self._request(
            "Get catalogue", "GET", "/api/public/catalogue", headers={"Accept": "application/json"},
        )
        if resp.status_code >= 400:
            raise MixamError(f"Failed to get catalogue: {resp.status_code} - {resp.text}", resp.status_code)
        return resp.json()


class MixamError(RuntimeError):
    """Raised for Mixam transport failures and non-2xx responses."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
