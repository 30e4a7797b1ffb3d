"""Audit trail of Mixam traffic, appended to printOrders/{id}.mixamInteractions."""

from __future__ import annotations

import logging
import random
import string
import time
from typing import Any

from storywizard import storage

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_interaction_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"mxi_{int(time.time() * 1000)}_{suffix}"


def to_interaction(record: dict[str, Any], order_id: str | None = None) -> dict[str, Any]:
    """Stamp a raw client record with an id (and Mixam order id). None values are dropped."""
    interaction = {"id": new_interaction_id(), **record}
    if order_id is not None:
        interaction["orderId"] = order_id
    return {k: v for k, v in interaction.items() if v is not None}


def create_webhook_interaction(
    event: str, payload: Any, order_id: str | None = None,
) -> dict[str, Any]:
    return to_interaction({
        "timestamp": storage.now_iso(),
        "type": "webhook",
        "webhookEvent": event,
        "webhookPayload": payload,
        "action": f"Webhook: {event}",
    }, order_id)


def log_interactions(print_order_id: str, interactions: list[dict[str, Any]]) -> bool:
    """Append interactions to the order. Failures are logged, never raised."""
    if not interactions:
        return False
    try:
        storage.update_doc(f"printOrders/{print_order_id}", {
            "mixamInteractions": storage.ArrayUnion(interactions),
            "updatedAt": storage.now_iso(),
        })
    except Exception as e:
        logger.warning(f"[mixam] Failed to log {len(interactions)} interaction(s) for order {print_order_id}: {e}")
        return False
    logger.debug(
        "mixam logged %d interaction(s) for %s: %s",
        len(interactions), print_order_id,
        ", ".join(f"{i.get('type')}:{i.get('action')}" for i in interactions),
    )
    return True
