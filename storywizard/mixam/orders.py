"""Print order lifecycle against Mixam: submit, refresh status, cancel, webhooks.

Each operation loads printOrders/{id}, talks to Mixam through a
MixamClient, persists the client's interactions on the order (also on
failure), and records the outcome in statusHistory.

Internal fulfillmentStatus values:
  awaiting_approval, submitted, confirmed, in_production, shipped,
  delivered, cancelled, on_hold
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any

from storywizard import storage
from storywizard.notify import Notifier

from .client import MixamClient, MixamError
from .interactions import create_webhook_interaction, log_interactions, to_interaction
from .mxjdf import build_mxjdf_document, validate_mxjdf_document

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = ("awaiting_approval", "submitted", "confirmed", "on_hold")

_STATUS_MAP = {
    "PENDING": "submitted",
    "RECEIVED": "submitted",
    "INIT": "submitted",
    "SUBMITTED": "submitted",
    "CONFIRMED": "confirmed",
    "ACCEPTED": "confirmed",
    "INPRODUCTION": "in_production",
    "IN_PRODUCTION": "in_production",
    "PRINTING": "in_production",
    "DISPATCHED": "shipped",
    "SHIPPED": "shipped",
    "DELIVERED": "delivered",
    "CANCELLED": "cancelled",
    "CANCELED": "cancelled",
    "ONHOLD": "on_hold",
    "ON_HOLD": "on_hold",
}


class PrintOrderError(Exception):
    """Order is in the wrong state for the requested operation."""

    def __init__(self, message: str, status_code: int = 400, errors: list[str] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


def map_mixam_status(status: str, has_errors: bool = False) -> str:
    if has_errors:
        return "on_hold"
    mapped = _STATUS_MAP.get((status or "").upper())
    if mapped is None:
        logger.info(f"[mixam] Unknown status {status!r}, treating as submitted")
        return "submitted"
    return mapped


def load_order(order_id: str) -> dict[str, Any]:
    order = storage.get_doc(f"printOrders/{order_id}")
    if order is None:
        raise storage.DocumentNotFoundError(f"Print order {order_id} not found")
    return {"id": order_id, **order}


def _history(status: str, note: str, source: str, **extra: Any) -> storage.ArrayUnion:
    return storage.ArrayUnion([{
        "status": status,
        "timestamp": storage.now_iso(),
        "note": note,
        "source": source,
        **extra,
    }])


def _flush(order_id: str, client: MixamClient, mixam_order_id: str | None = None) -> None:
    log_interactions(order_id, [to_interaction(r, mixam_order_id) for r in client.interactions])
    client.interactions.clear()


def prepare_document(
    order: dict[str, Any],
    billing_address: dict[str, Any] | None = None,
    payment_method: str = "ACCOUNT",
) -> tuple[dict[str, Any], list[str]]:
    """Build and validate the order document. ValueError if it can't be built."""
    document = build_mxjdf_document(order, billing_address=billing_address, payment_method=payment_method)
    return document, validate_mxjdf_document(document)


async def submit_print_order(
    order_id: str,
    client: MixamClient,
    billing_address: dict[str, Any] | None = None,
    payment_method: str = "ACCOUNT",
) -> dict[str, Any]:
    order = load_order(order_id)
    if order.get("mixamOrderId"):
        raise PrintOrderError(f"Order already submitted to Mixam as {order['mixamOrderId']}", 409)

    document, errors = prepare_document(order, billing_address, payment_method)
    if errors:
        raise PrintOrderError("Mixam order document is invalid", 400, errors)

    try:
        submitted = await client.submit_order(document)
    except MixamError as e:
        _flush(order_id, client)
        storage.update_doc(f"printOrders/{order_id}", {
            "fulfillmentNotes": str(e),
            "processLog": storage.ArrayUnion([{
                "event": "mixam_submit_failed",
                "timestamp": storage.now_iso(),
                "message": str(e),
            }]),
        })
        raise

    _flush(order_id, client, submitted["orderId"])
    status = map_mixam_status(submitted["status"])
    storage.update_doc(f"printOrders/{order_id}", {
        "mixamOrderId": submitted["orderId"],
        "mixamJobNumber": submitted["jobNumber"],
        "mixamStatus": submitted["status"],
        "fulfillmentStatus": status,
        "submittedAt": storage.now_iso(),
        "updatedAt": storage.now_iso(),
        "statusHistory": _history(
            status, f"Submitted to Mixam (job {submitted['jobNumber']})", "mixam",
            mixamStatus=submitted["status"],
        ),
    })
    logger.info(f"[mixam] Order {order_id} submitted as {submitted['orderId']}")
    return {"orderId": order_id, "mixamOrderId": submitted["orderId"],
            "jobNumber": submitted["jobNumber"], "status": status}


async def refresh_order_status(order_id: str, client: MixamClient) -> dict[str, Any]:
    order = load_order(order_id)
    mixam_id = order.get("mixamOrderId")
    if not mixam_id:
        raise PrintOrderError("Order has not been submitted to Mixam")

    try:
        remote = await client.get_order_status(mixam_id)
    finally:
        _flush(order_id, client, mixam_id)

    status = map_mixam_status(remote["status"])
    update: dict[str, Any] = {
        "mixamStatus": remote["status"],
        "mixamStatusCheckedAt": storage.now_iso(),
        "updatedAt": storage.now_iso(),
    }
    if remote.get("trackingUrl"):
        update["mixamTrackingUrl"] = remote["trackingUrl"]
    if remote.get("estimatedDelivery"):
        update["mixamEstimatedDelivery"] = remote["estimatedDelivery"]
    if order.get("fulfillmentStatus") != status:
        update["fulfillmentStatus"] = status
        update["statusHistory"] = _history(
            status, f"Mixam status: {remote['status']}", "status_check", mixamStatus=remote["status"],
        )
    storage.update_doc(f"printOrders/{order_id}", update)
    return {"orderId": order_id, "mixamOrderId": mixam_id, "status": status, **remote}


async def cancel_print_order(order_id: str, client: MixamClient, reason: str | None = None) -> dict[str, Any]:
    order = load_order(order_id)
    if order.get("fulfillmentStatus") not in CANCELLABLE_STATUSES:
        raise PrintOrderError(f"Order cannot be cancelled in status {order.get('fulfillmentStatus')}", 409)

    mixam_id = order.get("mixamOrderId")
    if mixam_id:
        try:
            await client.cancel_order(mixam_id)
        finally:
            _flush(order_id, client, mixam_id)

    storage.update_doc(f"printOrders/{order_id}", {
        "fulfillmentStatus": "cancelled",
        "mixamStatus": "CANCELED" if mixam_id else order.get("mixamStatus"),
        "cancelledAt": storage.now_iso(),
        "cancellationReason": reason,
        "updatedAt": storage.now_iso(),
        "statusHistory": _history("cancelled", reason or "Cancelled", "admin"),
    })
    return {"orderId": order_id, "mixamOrderId": mixam_id, "status": "cancelled"}


# ── Webhooks ─────────────────────────────────────────────


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """HMAC-SHA256 hex check. Requests without a signature header are allowed."""
    if not secret or not signature:
        return True
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def _artwork_errors(payload: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {"itemId": item.get("itemId"), "filename": err.get("filename"),
         "page": err.get("page"), "message": err.get("message")}
        for item in payload.get("items") or []
        if item.get("hasErrors")
        for err in item.get("errors") or []
    ]


def _log_webhook_event(order: dict[str, Any], payload: dict[str, Any], status: str) -> None:
    story = storage.get_doc(f"stories/{order['storyId']}") if order.get("storyId") else None
    if not story or not story.get("storySessionId"):
        return
    storage.log_session_event(
        story["storySessionId"], "print_order.webhook_received", source="mixam_webhook",
        attributes={
            "orderId": order["id"],
            "mixamOrderId": payload.get("orderId"),
            "newStatus": status,
            "mixamStatus": payload.get("status"),
            "hasErrors": bool(payload.get("hasErrors")),
        },
    )


async def process_webhook(
    payload: dict[str, Any], client: MixamClient, notifier: Notifier | None = None,
) -> dict[str, Any]:
    """Apply a Mixam status webhook to its print order.

    Never raises for unknown orders: Mixam retries anything that is not a 200.
    """
    order_id = (payload.get("metadata") or {}).get("externalOrderId")
    if not order_id:
        logger.warning("[mixam] Webhook without externalOrderId")
        return {"received": True, "error": "Missing externalOrderId"}
    try:
        order = load_order(order_id)
    except storage.DocumentNotFoundError:
        logger.warning(f"[mixam] Webhook for unknown order {order_id}")
        return {"received": True, "warning": "Order not found"}

    webhook_status = payload.get("status") or ""
    interactions = [create_webhook_interaction(f"status.{webhook_status}", payload, payload.get("orderId"))]

    refreshed: dict[str, Any] | None = None
    if order.get("mixamOrderId"):
        try:
            refreshed = await client.get_order_status(order["mixamOrderId"])
        except MixamError as e:
            logger.warning(f"[mixam] Status refresh after webhook failed for {order_id}: {e}")
        interactions += [to_interaction(r, order["mixamOrderId"]) for r in client.interactions]
        client.interactions.clear()
    log_interactions(order_id, interactions)

    effective = (refreshed or {}).get("status") or webhook_status
    has_errors = bool(payload.get("hasErrors"))
    status = map_mixam_status(effective, has_errors)

    update: dict[str, Any] = {
        "mixamStatus": effective,
        "mixamArtworkComplete": payload.get("artworkComplete"),
        "mixamHasErrors": has_errors,
        "mixamStatusCheckedAt": storage.now_iso(),
        "lastWebhookPayload": payload,
        "lastWebhookAt": storage.now_iso(),
        "fulfillmentUpdatedAt": storage.now_iso(),
        "updatedAt": storage.now_iso(),
        "statusHistory": _history(
            status, payload.get("statusReason") or f"Mixam status: {effective} (webhook)",
            "webhook", mixamStatus=effective,
        ),
    }
    if order.get("fulfillmentStatus") != status:
        update["fulfillmentStatus"] = status
    if payload.get("statusReason"):
        update["mixamStatusReason"] = payload["statusReason"]
        update["fulfillmentNotes"] = payload["statusReason"]
    if refreshed:
        if refreshed.get("trackingUrl"):
            update["mixamTrackingUrl"] = refreshed["trackingUrl"]
        if refreshed.get("estimatedDelivery"):
            update["mixamEstimatedDelivery"] = refreshed["estimatedDelivery"]

    errors = _artwork_errors(payload) if has_errors else []
    if errors:
        update["mixamArtworkErrors"] = errors
        update["mixamValidation"] = {
            "valid": False,
            "errors": [f"Page {e['page']}: {e['message']}" for e in errors],
            "warnings": [],
            "checkedAt": storage.now_iso(),
        }
        update["fulfillmentNotes"] = "Artwork errors: " + "; ".join(str(e["message"]) for e in errors)

    shipments = payload.get("shipments") or []
    if shipments:
        latest = shipments[-1]
        for source, target in (
            ("trackingUrl", "mixamTrackingUrl"),
            ("consignmentNumber", "mixamTrackingNumber"),
            ("courier", "mixamCarrier"),
            ("parcelNumbers", "mixamParcelNumbers"),
        ):
            if latest.get(source):
                update[target] = latest[source]
        if (latest.get("date") or {}).get("date"):
            update["mixamShipmentDate"] = latest["date"]["date"]
        update["mixamShipments"] = shipments

    storage.update_doc(f"printOrders/{order_id}", update)
    _log_webhook_event(order, payload, status)

    previous = order.get("fulfillmentStatus")
    if previous != status and notifier is not None:
        try:
            await notifier(
                f"[StoryWizard] Print order {order_id} is now {status}",
                f"Order: {order_id}\nMixam order: {order.get('mixamOrderId')}\n"
                f"Status: {previous} -> {status}\nMixam status: {effective}\n",
            )
        except Exception as e:
            logger.warning(f"[mixam] Failed to send status change notification for {order_id}: {e}")

    return {"received": True, "orderId": order_id, "status": status}
