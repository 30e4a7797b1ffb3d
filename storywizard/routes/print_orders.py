"""Print order endpoints: Mixam document, submit, status, cancel."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from storywizard import storage
from storywizard.mixam import (
    MixamClient,
    MixamError,
    PrintOrderError,
    cancel_print_order,
    prepare_document,
    refresh_order_status,
    serialize_mxjdf_document,
    submit_print_order,
)
from storywizard.mixam.orders import load_order

from .models import PrintOrderBody

router = APIRouter()


def get_mixam_client() -> MixamClient:
    return MixamClient()


def _error_response(e: Exception):
    if isinstance(e, storage.DocumentNotFoundError):
        raise HTTPException(404, str(e))
    if isinstance(e, PrintOrderError):
        return JSONResponse(
            {"ok": False, "errorMessage": str(e), "errors": e.errors}, status_code=e.status_code,
        )
    if isinstance(e, MixamError):
        return JSONResponse(
            {"ok": False, "errorMessage": str(e), "mixamStatusCode": e.status_code}, status_code=502,
        )
    raise HTTPException(400, str(e))


@router.post("/printOrders/{order_id}/mxjdf")
async def build_order_document(order_id: str, body: PrintOrderBody | None = None):
    """Build and validate the Mixam order document without submitting it."""
    body = body or PrintOrderBody()
    try:
        order = load_order(order_id)
        document, errors = prepare_document(
            order,
            body.billingAddress.model_dump(exclude_none=True) if body.billingAddress else None,
            body.paymentMethod,
        )
    except (storage.DocumentNotFoundError, ValueError) as e:
        return _error_response(e)
    return {
        "ok": not errors,
        "orderId": order_id,
        "errors": errors,
        "document": document,
        "serialized": serialize_mxjdf_document(document),
    }


@router.post("/printOrders/{order_id}/submit")
async def submit_order(
    order_id: str,
    body: PrintOrderBody | None = None,
    client: MixamClient = Depends(get_mixam_client),
):
    """Submit an approved order to Mixam."""
    body = body or PrintOrderBody()
    try:
        result = await submit_print_order(
            order_id, client,
            body.billingAddress.model_dump(exclude_none=True) if body.billingAddress else None,
            body.paymentMethod,
        )
    except (storage.DocumentNotFoundError, PrintOrderError, MixamError, ValueError) as e:
        return _error_response(e)
    return {"ok": True, **result}


@router.get("/printOrders/{order_id}/status")
async def order_status(order_id: str, client: MixamClient = Depends(get_mixam_client)):
    """Fetch the current status from Mixam and store it on the order."""
    try:
        result = await refresh_order_status(order_id, client)
    except (storage.DocumentNotFoundError, PrintOrderError, MixamError) as e:
        return _error_response(e)
    return {"ok": True, **result}


@router.post("/printOrders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    reason: str | None = None,
    client: MixamClient = Depends(get_mixam_client),
):
    """Cancel the order at Mixam (if submitted) and locally."""
    try:
        result = await cancel_print_order(order_id, client, reason)
    except (storage.DocumentNotFoundError, PrintOrderError, MixamError) as e:
        return _error_response(e)
    return {"ok": True, **result}
