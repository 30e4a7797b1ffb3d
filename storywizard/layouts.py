"""Print layout geometry and page-count constraints.

A print layout (printLayouts/{id}) is measured in inches:

  {"leafWidth": 8, "leafHeight": 10,
   "coverLayout": {"imageBox": {...}, "textBox": {...}},
   "backCoverLayout": ..., "titlePageLayout": ..., "insideLayout": ...,
   "textBoxes": [...], "imageBoxes": [...],          # legacy, pre page-type layouts
   "pageConstraints": {"minPages": 8, "maxPages": 32, "pageMultiple": 4}}

Image targets are the box size at PRINT_DPI.
"""

from __future__ import annotations

import math
from typing import Any

PRINT_DPI = 300
DEFAULT_PRINT_LAYOUT_ID = "default-print-layout"

PAGE_KIND_TO_LAYOUT = {
    "cover_front": "cover",
    "cover_back": "backCover",
    "title_page": "titlePage",
    "text": "inside",
    "image": "inside",
    "blank": "inside",
}

_LAYOUT_KEYS = {
    "cover": "coverLayout",
    "backCover": "backCoverLayout",
    "titlePage": "titlePageLayout",
    "inside": "insideLayout",
}

SUPPORTED_ASPECT_RATIOS: list[tuple[str, float]] = [
    ("1:1", 1.0),
    ("5:4", 5 / 4),
    ("4:3", 4 / 3),
    ("3:2", 3 / 2),
    ("16:9", 16 / 9),
    ("21:9", 21 / 9),
    ("4:5", 4 / 5),
    ("3:4", 3 / 4),
    ("2:3", 2 / 3),
    ("9:16", 9 / 16),
]


def layout_type_for_page_kind(kind: str | None) -> str:
    return PAGE_KIND_TO_LAYOUT.get(kind or "", "inside")


def _first_box(boxes: list[dict[str, Any]] | None) -> dict[str, float] | None:
    if not boxes:
        return None
    box = boxes[0]
    return {k: box[k] for k in ("x", "y", "width", "height")}


def get_layout_for_page_type(layout: dict[str, Any], page_type: str) -> dict[str, Any]:
    """Page-type layout, falling back to the legacy first text/image boxes."""
    specific = layout.get(_LAYOUT_KEYS.get(page_type, ""))
    if specific:
        return specific
    if page_type == "titlePage":
        return {"textBox": {
            "x": 0.5,
            "y": 0.5,
            "width": layout["leafWidth"] - 1,
            "height": layout["leafHeight"] - 1,
        }}
    return {
        "textBox": _first_box(layout.get("textBoxes")),
        "imageBox": _first_box(layout.get("imageBoxes")),
    }


def image_dimensions_for_page_type(layout: dict[str, Any], page_type: str) -> dict[str, float]:
    """{widthPx, heightPx, widthInches, heightInches} for a page type's image box."""
    image_box = get_layout_for_page_type(layout, page_type).get("imageBox") or {}
    width_in = image_box.get("width", layout["leafWidth"])
    height_in = image_box.get("height", layout["leafHeight"])
    return {
        "widthPx": round(width_in * PRINT_DPI),
        "heightPx": round(height_in * PRINT_DPI),
        "widthInches": width_in,
        "heightInches": height_in,
    }


def closest_aspect_ratio(width: float, height: float) -> str:
    actual = width / height
    return min(SUPPORTED_ASPECT_RATIOS, key=lambda ar: abs(actual - ar[1]))[0]


def aspect_ratio_for_page_type(layout: dict[str, Any], page_type: str) -> str:
    dims = image_dimensions_for_page_type(layout, page_type)
    return closest_aspect_ratio(dims["widthInches"], dims["heightInches"])


def simple_aspect_ratio(width: float, height: float) -> str:
    """Coarse orientation ratio used when no layout is configured."""
    if abs(width - height) < 1:
        return "1:1"
    return "3:4" if height > width else "4:3"


# ── Page counts ──────────────────────────────────────────


def pad_page_count(count: int) -> int:
    """Round a page count up to the next multiple of 4."""
    return math.ceil(count / 4) * 4


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


def resolve_page_constraints(
    layout: dict[str, Any] | None,
    product: dict[str, Any] | None,
) -> dict[str, Any]:
    """{minPages, maxPages, pageMultiple, source}; layout wins over product.

    0 means "no limit" for min and max.
    """
    constraints = (layout or {}).get("pageConstraints") or {}
    if any(k in constraints for k in ("minPages", "maxPages", "pageMultiple")):
        return {
            "minPages": constraints.get("minPages") or 0,
            "maxPages": constraints.get("maxPages") or 0,
            "pageMultiple": constraints.get("pageMultiple") or 4,
            "source": "layout",
        }
    fmt = ((product or {}).get("mixamSpec") or {}).get("format")
    if fmt:
        return {
            "minPages": fmt.get("minPageCount") or 0,
            "maxPages": fmt.get("maxPageCount") or 0,
            "pageMultiple": fmt.get("pageCountIncrement") or 4,
            "source": "product",
        }
    return {"minPages": 0, "maxPages": 0, "pageMultiple": 4, "source": "default"}


def calculate_interior_page_adjustment(
    content_pages: int,
    blank_pages: int,
    constraints: dict[str, Any],
) -> dict[str, Any]:
    """Pad or truncate interior pages so cover(2) + blanks + interior is a multiple of 4.

    Returns {finalInteriorPages, paddingNeeded, wasTruncated, warnings}.
    """
    cover_pages = 2
    warnings: list[str] = []
    inside = content_pages
    truncated = False
    min_pages = constraints.get("minPages") or 0
    max_pages = constraints.get("maxPages") or 0

    if min_pages and inside < min_pages:
        added = min_pages - inside
        warnings.append(f"Padded {added} page{_plural(added)} to meet minimum of {min_pages}.")
        inside = min_pages

    total = cover_pages + blank_pages + inside
    if total % 4:
        extra = 4 - total % 4
        warnings.append(
            f"Added {extra} page{_plural(extra)} for 4-page alignment "
            f"(total: {total} -> {total + extra})."
        )
        inside += extra

    if max_pages and inside > max_pages:
        removed = inside - max_pages
        warnings.append(
            f"WARNING: Truncated {removed} page{_plural(removed)} to meet maximum of {max_pages}."
        )
        inside = max_pages
        truncated = True
        remainder = (cover_pages + blank_pages + inside) % 4
        if remainder:
            inside -= remainder
            warnings.append(
                f"Reduced by {remainder} more page{_plural(remainder)} "
                "to maintain 4-page alignment within maximum."
            )

    return {
        "finalInteriorPages": inside,
        "paddingNeeded": max(inside - content_pages, 0),
        "wasTruncated": truncated,
        "warnings": warnings,
    }
