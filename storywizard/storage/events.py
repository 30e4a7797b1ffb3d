"""Structured session events and per-character usage counters.

Both are bookkeeping: failures are logged and swallowed so they never
break the flow that triggered them.
"""

import logging
from typing import Any

from .core import now_iso
from .documents import Increment, add_doc, get_doc, list_docs, update_doc

logger = logging.getLogger(__name__)


def log_session_event(
    session_id: str,
    event: str,
    status: str = "completed",
    source: str = "server",
    attributes: dict[str, Any] | None = None,
) -> None:
    """Append {event, status, source, attributes, createdAt} to storySessions/{id}/events."""
    try:
        add_doc(f"storySessions/{session_id}/events", {
            "event": event,
            "status": status,
            "source": source,
            "attributes": attributes or {},
            "createdAt": now_iso(),
        })
    except Exception as e:
        logger.warning(f"[events] Failed to log {event} for session {session_id}: {e}")


def list_session_events(session_id: str) -> list[dict[str, Any]]:
    return list_docs(f"storySessions/{session_id}/events", order_by="createdAt")


def update_character_usage(actor_ids: list[str], main_child_id: str | None = None) -> int:
    """Bump usageCount and lastUsedAt for every character in actor_ids.

    The main child and anything that is not a plain character id are
    skipped. Returns the number of characters updated.
    """
    updated = 0
    for actor_id in dict.fromkeys(actor_ids):
        if not actor_id or actor_id == main_child_id or "/" in actor_id:
            continue
        try:
            if get_doc(f"characters/{actor_id}") is None:
                continue
            update_doc(f"characters/{actor_id}", {
                "usageCount": Increment(1),
                "lastUsedAt": now_iso(),
            })
            updated += 1
        except Exception as e:
            logger.warning(f"[usage] Failed to update usage for character {actor_id}: {e}")
    return updated
