"""Print order -> Mixam order document (MxJdf4 public API shape).

Two ways of choosing catalogue ids:

  validated mapping   product.mixamMapping with validated=True; exact ids
                      recorded against the product from the catalogue.
  legacy tables       heuristics below, translating our paper/binding/trim
                      enums to approximate Mixam ids. Logged as a warning
                      every time it is used.

Everything here is pure: the order dict in, the document dict out.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from storywizard.layouts import pad_page_count

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("TEST_ORDER", "ACCOUNT", "CARD_ON_FILE")
FALLBACK_WEBHOOK_URL = "https://example.com/webhook"
FALLBACK_PHONE = "+44 000 000 0000"

# ── Legacy catalogue tables ──────────────────────────────

DIN_FORMAT_IDS = {f"a{n}": n for n in range(8)}

# Non-DIN sizes need both a DIN `format` and a `standardSize` string.
STANDARD_SIZES = {
    "8x10": "IN_8_5_X_11",
    "8.5x11": "IN_8_5_X_11",
    "6x9": "US_ROYAL",
    "5.5x8.5": "DEMY",
}

SUBSTRATE_TYPES = {"silk": 1, "gloss": 2, "uncoated": 3, "matt": 1}

# gsm -> weightId; ids differ between DIN and standard sizes
WEIGHT_IDS_DIN = {90: 0, 115: 2, 130: 3, 150: 4, 170: 5, 200: 14, 250: 14, 300: 14}
WEIGHT_IDS_STANDARD = {90: 0, 115: 2, 130: 3, 150: 4, 170: 4, 200: 4, 250: 4, 300: 4}

DEFAULT_WEIGHT_IDS = {
    # (standard size?, component) -> weightId
    (False, "interior"): 5,
    (False, "cover"): 14,
    (True, "interior"): 4,
    (True, "cover"): 4,
}

HARDCOVER_COVER_SUBSTRATE = {"typeId": 1, "weightId": 5, "colourId": 0}
HARDCOVER_END_PAPER_SUBSTRATE = {"typeId": 0, "weightId": 0, "colourId": 1}

LAMINATIONS = ("GLOSS", "MATT", "SOFT_TOUCH")


def size_spec(trim_size: str | None) -> dict[str, Any]:
    """Trim size -> {format, standardSize?}. Unknown sizes fall back to A4."""
    trim = (trim_size or "").lower()
    for key, format_id in DIN_FORMAT_IDS.items():
        if key in trim:
            return {"format": format_id}
    if "8" in trim and "10" in trim:
        return {"format": 4, "standardSize": STANDARD_SIZES["8x10"]}
    if "8.5" in trim and "11" in trim:
        return {"format": 4, "standardSize": STANDARD_SIZES["8.5x11"]}
    if "6" in trim and "9" in trim:
        return {"format": 4, "standardSize": STANDARD_SIZES["6x9"]}
    if "5.5" in trim and "8.5" in trim:
        return {"format": 4, "standardSize": STANDARD_SIZES["5.5x8.5"]}
    return {"format": DIN_FORMAT_IDS["a4"]}


def weight_id(gsm: Any, standard: bool, component: str) -> int:
    table = WEIGHT_IDS_STANDARD if standard else WEIGHT_IDS_DIN
    try:
        return table[int(gsm)]
    except (KeyError, TypeError, ValueError):
        return DEFAULT_WEIGHT_IDS[(standard, component)]


# ── Addresses ────────────────────────────────────────────


def to_mixam_address(
    address: dict[str, Any],
    email: str,
    phone: str | None,
    default_names: tuple[str, str],
) -> dict[str, Any]:
    parts = (address.get("name") or "").split(" ")
    result = {
        "firstName": parts[0] or default_names[0],
        "lastName": " ".join(parts[1:]) or default_names[1],
        "postcode": address.get("postalCode"),
        "line1": address.get("line1"),
        "line2": address.get("line2") or None,
        "town": address.get("city"),
        "county": address.get("state") or address.get("city"),
        "country": address.get("country") or "GB",
        "phoneNumber": phone or FALLBACK_PHONE,
        "emailAddress": email,
    }
    return {k: v for k, v in result.items() if v is not None}


def webhook_url() -> str:
    url = os.getenv("MIXAM_WEBHOOK_URL")
    if not url and os.getenv("APP_URL"):
        url = f"{os.environ['APP_URL'].rstrip('/')}/api/webhooks/mixam"
    return url or FALLBACK_WEBHOOK_URL


def _head_tail_bands(order: dict[str, Any], binding_spec: dict[str, Any]) -> str:
    color = (order.get("customOptions") or {}).get("headTailBandColor")
    if binding_spec.get("allowHeadTailBandSelection") and color:
        return color.upper().replace(" ", "_")
    return "NONE"


# ── Components ───────────────────────────────────────────


def _components_from_mapping(
    mapping: dict[str, Any], order: dict[str, Any], spec: dict[str, Any], pages: int,
) -> tuple[int, list[dict[str, Any]]]:
    logger.info("[MxJdf] Using validated mixamMapping for precise Mixam ids")
    bound = mapping["boundComponent"]
    cover = mapping["coverComponent"]
    binding = mapping["binding"]

    def size(component):
        out = {"format": component["format"]}
        if component.get("standardSize"):
            out["standardSize"] = component["standardSize"]
        return out

    components = [
        {
            "componentType": "BOUND",
            **size(bound),
            "orientation": bound["orientation"],
            "colours": "PROCESS",
            "substrate": dict(bound["substrate"]),
            "pages": pages,
            "lamination": "NONE",
            "binding": {
                "type": binding["type"],
                "edge": binding.get("edge"),
                "sewn": bool(binding.get("sewn")),
                "headAndTailBands": _head_tail_bands(order, spec.get("binding") or {}),
            },
        },
        {
            "componentType": "COVER",
            **size(cover),
            "orientation": cover["orientation"],
            "colours": "PROCESS",
            "substrate": dict(cover["substrate"]),
            "lamination": cover.get("lamination", "NONE"),
            "backColours": cover.get("backColours", "NONE"),
            "backLamination": "NONE",
            "spineColours": "NONE",
        },
    ]
    end_papers = mapping.get("endPapersComponent")
    if end_papers:
        components.append({
            "componentType": "END_PAPERS",
            **size(bound),
            "orientation": bound["orientation"],
            "colours": "NONE",
            "substrate": dict(end_papers["substrate"]),
            "lamination": "NONE",
        })
    return mapping["subProductId"], components


def _components_from_tables(
    order: dict[str, Any], spec: dict[str, Any], trim_size: str | None, pages: int,
) -> tuple[int, list[dict[str, Any]]]:
    logger.warning("[MxJdf] No validated mixamMapping found - using legacy hardcoded mappings")
    size = size_spec(trim_size)
    standard = "standardSize" in size
    interior = (spec.get("interior") or {}).get("material") or {}
    cover = (spec.get("cover") or {}).get("material") or {}
    binding_spec = spec.get("binding") or {}

    case_bound = binding_spec.get("type") in ("case", "case_with_sewing")
    binding_type = "CASE" if case_bound else "PUR"
    orientation = "LANDSCAPE" if (spec.get("format") or {}).get("orientation") == "LANDSCAPE" else "PORTRAIT"

    lamination = "NONE"
    for refining in cover.get("refinings") or []:
        if refining.get("type") == "LAMINATION" and refining.get("effect") in LAMINATIONS:
            lamination = refining["effect"]
            break

    cover_substrate = dict(HARDCOVER_COVER_SUBSTRATE) if case_bound else {
        "typeId": SUBSTRATE_TYPES.get(cover.get("type"), 1),
        "weightId": weight_id(cover.get("weight"), standard, "cover"),
        "colourId": 0,
    }
    components = [
        {
            "componentType": "BOUND",
            **size,
            "orientation": orientation,
            "colours": "PROCESS",
            "substrate": {
                "typeId": SUBSTRATE_TYPES.get(interior.get("type"), 1),
                "weightId": weight_id(interior.get("weight"), standard, "interior"),
                "colourId": 0,
            },
            "pages": pages,
            "lamination": "NONE",
            "binding": {
                "type": binding_type,
                "edge": binding_spec.get("edge") or "LEFT_RIGHT",
                "sewn": bool(binding_spec.get("sewn")),
                "headAndTailBands": _head_tail_bands(order, binding_spec),
            },
        },
        {
            "componentType": "COVER",
            **size,
            "orientation": orientation,
            "colours": "PROCESS",
            "substrate": cover_substrate,
            "lamination": lamination,
            "backColours": "NONE" if case_bound else "PROCESS",
            "backLamination": "NONE",
            "spineColours": "NONE",
        },
    ]
    if case_bound:
        components.append({
            "componentType": "END_PAPERS",
            **size,
            "orientation": orientation,
            "colours": "NONE",
            "substrate": dict(HARDCOVER_END_PAPER_SUBSTRATE),
            "lamination": "NONE",
        })
    return (1 if case_bound else 0), components


# ── Document ─────────────────────────────────────────────


def build_mxjdf_document(
    order: dict[str, Any],
    *,
    billing_address: dict[str, Any] | None = None,
    payment_method: str = "ACCOUNT",
) -> dict[str, Any]:
    """Build the Mixam order document for printOrders/{id}.

    `order` needs id, productSnapshot, quantity, shippingAddress,
    contactEmail, printableFiles {coverPdfUrl, interiorPdfUrl} and
    printableMetadata {trimSize, interiorPageCount}. Raises ValueError
    when the printable PDFs are missing or the payment method is unknown.
    """
    if payment_method not in PAYMENT_METHODS:
        raise ValueError(f"Unknown payment method: {payment_method}")
    files = order.get("printableFiles") or {}
    if not files.get("coverPdfUrl") or not files.get("interiorPdfUrl"):
        raise ValueError("Printable PDFs have not been generated for this order")

    order_id = order["id"]
    product = order.get("productSnapshot") or {}
    spec = product.get("mixamSpec") or {}
    metadata = order.get("printableMetadata") or {}

    raw_pages = int(metadata.get("interiorPageCount") or 0)
    pages = pad_page_count(raw_pages)
    if pages != raw_pages:
        logger.info(f"[MxJdf] Adjusting page count from {raw_pages} to {pages} (must be multiple of 4)")

    mapping = product.get("mixamMapping") or {}
    if mapping.get("validated"):
        sub_product_id, components = _components_from_mapping(mapping, order, spec, pages)
    else:
        sub_product_id, components = _components_from_tables(order, spec, metadata.get("trimSize"), pages)

    email = order.get("contactEmail") or ""
    shipping = to_mixam_address(
        order.get("shippingAddress") or {}, email, order.get("contactPhone"), ("Customer", "Name"),
    )
    if billing_address:
        billing = to_mixam_address(
            billing_address, billing_address.get("email") or email,
            billing_address.get("phone"), ("Billing", "Contact"),
        )
    else:
        billing = shipping

    item_id = f"ITEM-{order_id}"
    quantity = int(order.get("quantity") or 1)
    return {
        "metadata": {
            "externalOrderId": order_id,
            "statusCallbackUrl": webhook_url(),
        },
        "orderItems": [
            {
                "product": "BOOK",
                "subProductId": sub_product_id,
                "quoteType": "QUOTE",
                "itemSpecification": {
                    "copies": quantity,
                    "product": "BOOK",
                    "components": components,
                },
                "assets": [
                    {"url": files["coverPdfUrl"], "name": f"storybook-{order_id}-cover.pdf"},
                    {"url": files["interiorPdfUrl"], "name": f"storybook-{order_id}-interior.pdf"},
                ],
                "metadata": {"externalItemId": item_id},
            }
        ],
        "billingAddress": billing,
        "invoiceAddress": billing,
        "deliveries": [
            {
                "address": shipping,
                "itemDeliveryDetails": [{"itemId": item_id, "copies": quantity}],
            }
        ],
        "plainPackaging": False,
        "paymentMethod": payment_method,
    }


_ADDRESS_FIELDS = ("firstName", "lastName", "line1", "town", "postcode", "country", "emailAddress")


def _validate_address(address: dict[str, Any] | None, name: str, errors: list[str]) -> None:
    if not address:
        errors.append(f"{name} is required")
        return
    errors.extend(f"{name}.{field} is required" for field in _ADDRESS_FIELDS if not address.get(field))


def validate_mxjdf_document(doc: dict[str, Any]) -> list[str]:
    """Structural check before submission. Returns error strings; empty means valid."""
    errors: list[str] = []
    if not (doc.get("metadata") or {}).get("externalOrderId"):
        errors.append("metadata.externalOrderId is required")
    items = doc.get("orderItems") or []
    if not items:
        errors.append("At least one orderItem is required")
    deliveries = doc.get("deliveries") or []
    if not deliveries:
        errors.append("At least one delivery is required")
    if not doc.get("paymentMethod"):
        errors.append("paymentMethod is required")

    for i, item in enumerate(items):
        for field in ("product", "itemSpecification", "assets", "metadata"):
            if not item.get(field):
                errors.append(f"orderItem[{i}]: {field} is required")

    _validate_address(doc.get("billingAddress"), "billingAddress", errors)
    _validate_address(doc.get("invoiceAddress"), "invoiceAddress", errors)
    for i, delivery in enumerate(deliveries):
        _validate_address(delivery.get("address"), f"deliveries[{i}].address", errors)
    return errors


def serialize_mxjdf_document(doc: dict[str, Any]) -> str:
    return json.dumps(doc, indent=2)
