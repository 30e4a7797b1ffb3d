"""Mixam status webhook."""

import json
import logging
import os

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from storywizard.context import FlowContext, build_flow_context
from storywizard.mixam import MixamClient, process_webhook, verify_signature

from .print_orders import get_mixam_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhooks/mixam")
async def webhook_info():
    """Reachability check for the webhook URL."""
    return {"service": "Mixam Webhook Handler", "status": "ready", "endpoint": "/api/webhooks/mixam"}


@router.post("/webhooks/mixam")
async def mixam_webhook(
    request: Request,
    client: MixamClient = Depends(get_mixam_client),
    ctx: FlowContext = Depends(build_flow_context),
):
    """Apply a Mixam status update. Always 200 except for a bad signature."""
    raw = await request.body()
    if not verify_signature(raw, request.headers.get("X-Mixam-Signature"), os.getenv("MIXAM_WEBHOOK_SECRET")):
        logger.warning("[mixam] Webhook rejected: invalid signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)
    try:
        payload = json.loads(raw)
    except ValueError:
        return {"received": True, "error": "Invalid JSON"}
    if not isinstance(payload, dict):
        return {"received": True, "error": "Invalid payload"}

    try:
        return await process_webhook(payload, client, ctx.notifier)
    except Exception:
        logger.exception("[mixam] Error processing webhook")
        return {"received": True, "error": "Internal processing error"}
