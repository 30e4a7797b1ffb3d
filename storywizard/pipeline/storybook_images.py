"""Storybook image run: generate every page image that still needs one.

Pages are processed in batches of IMAGE_BATCH_SIZE with asyncio.gather.
Progress lives on the storybook's imageGeneration tracker:

  {status, lastRunAt, lastCompletedAt, lastErrorMessage,
   pagesReady, pagesTotal, rateLimitedAt, retryAt, rateLimitRetryCount}

pagesReady is reset to 0 when a run starts and only incremented by
generate_page_image afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from storywizard import storage
from storywizard.context import FlowContext
from storywizard.layouts import (
    DEFAULT_PRINT_LAYOUT_ID,
    aspect_ratio_for_page_type,
    image_dimensions_for_page_type,
    layout_type_for_page_kind,
    simple_aspect_ratio,
)
from storywizard.result import Err, Ok, Result

from .page_image import generate_page_image

logger = logging.getLogger(__name__)

IMAGE_BATCH_SIZE = 3
DEFAULT_IMAGE_SIZE = 2400
RATE_LIMIT_RETRY = timedelta(hours=1)
RATE_LIMIT_MESSAGE = "The Story Wizard is taking a nap! We'll try again soon."
PAGES_FAILED_MESSAGE = "One or more pages failed to render."

RATE_LIMIT_PATTERNS = (
    "RESOURCE_EXHAUSTED",
    "429",
    "quota",
    "rate limit",
    "Rate limit",
    "timed out",
    "too many requests",
    "Too Many Requests",
)


class StorybookLockedError(RuntimeError):
    """The storybook is locked (ordered for print) and must not change."""


def is_rate_limit_error(message: str) -> bool:
    return any(p in message for p in RATE_LIMIT_PATTERNS)


def _needs_image(page: dict[str, Any]) -> bool:
    return bool(page.get("imagePrompt")) and page.get("kind") != "blank"


def _page_dimensions(
    page: dict[str, Any],
    layout: dict[str, Any] | None,
    width: int,
    height: int,
) -> dict[str, Any]:
    if layout:
        page_type = layout_type_for_page_kind(page.get("kind"))
        dims = image_dimensions_for_page_type(layout, page_type)
        return {
            "targetWidthPx": dims["widthPx"],
            "targetHeightPx": dims["heightPx"],
            "aspectRatio": aspect_ratio_for_page_type(layout, page_type),
        }
    return {
        "targetWidthPx": width,
        "targetHeightPx": height,
        "aspectRatio": simple_aspect_ratio(width, height),
    }


def load_storybook(story_id: str, storybook_id: str) -> dict[str, Any]:
    """Return the storybook or raise DocumentNotFoundError / StorybookLockedError."""
    storybook = storage.get_doc(f"stories/{story_id}/storybooks/{storybook_id}")
    if storybook is None:
        raise storage.DocumentNotFoundError(f"Storybook {storybook_id} not found")
    if storybook.get("isLocked"):
        raise StorybookLockedError(f"Storybook {storybook_id} is locked")
    return storybook


async def _run_job(job: dict[str, Any], ctx: FlowContext, kwargs: dict[str, Any]) -> Result[dict[str, Any]]:
    try:
        return await generate_page_image(
            job["storyId"], job["storybookId"], job["pageId"], ctx,
            target_width=job["targetWidthPx"],
            target_height=job["targetHeightPx"],
            aspect_ratio=job["aspectRatio"],
            track_progress=True,
            **kwargs,
        )
    except Exception as e:
        return Err(str(e) or type(e).__name__, {"pageId": job["pageId"], "logs": []})


async def generate_storybook_images(
    story_id: str,
    storybook_id: str,
    ctx: FlowContext,
    *,
    force: bool = False,
    page_id: str | None = None,
    image_style_prompt: str | None = None,
    regression_tag: str | None = None,
    target_width: int | None = None,
    target_height: int | None = None,
) -> dict[str, Any]:
    """Generate page images for a storybook and return the run summary.

    Raises ValueError (bad request), DocumentNotFoundError, or
    StorybookLockedError before any work starts.
    """
    if not story_id or not storybook_id:
        raise ValueError("storyId and storybookId are required")
    storybook = load_storybook(story_id, storybook_id)
    storybook_path = f"stories/{story_id}/storybooks/{storybook_id}"
    pages_path = f"{storybook_path}/pages"
    logs: list[str] = []

    storage.update_doc(storybook_path, {
        "imageGeneration.status": "running",
        "imageGeneration.lastRunAt": storage.now_iso(),
        "imageGeneration.lastErrorMessage": None,
    })

    layout_id = storybook.get("printLayoutId") or DEFAULT_PRINT_LAYOUT_ID
    layout = storage.get_doc(f"printLayouts/{layout_id}")
    logs.append(f"[layout] {layout_id}" + ("" if layout else " (not found, using default dimensions)"))
    width = target_width or storybook.get("imageWidthPx") or DEFAULT_IMAGE_SIZE
    height = target_height or storybook.get("imageHeightPx") or DEFAULT_IMAGE_SIZE

    pages = storage.list_docs(pages_path, order_by="pageNumber")
    if page_id:
        pages = [p for p in pages if p["id"] == page_id]
    if not pages:
        raise ValueError("Storybook has no pages to illustrate")

    jobs: list[dict[str, Any]] = []
    for page in pages:
        path = f"{pages_path}/{page['id']}"
        if not _needs_image(page):
            if page.get("imageStatus") != "ready":
                storage.update_doc(path, {"imageStatus": "ready", "updatedAt": storage.now_iso()})
            continue
        if not force and page.get("imageStatus") == "ready" and page.get("imageUrl"):
            continue

        dims = _page_dimensions(page, layout, width, height)
        old_path = (page.get("imageMetadata") or {}).get("storagePath")
        if force and old_path:
            try:
                storage.delete_object(old_path)
            except storage.BucketUnavailableError:
                logs.append(f"[force] Bucket unavailable, could not delete {old_path}")
        storage.update_doc(path, {
            "imageStatus": "pending",
            "imageUrl": None,
            "imageMetadata": None,
            "layoutHints": dims,
            "updatedAt": storage.now_iso(),
        })
        jobs.append({"storyId": story_id, "storybookId": storybook_id, "pageId": page["id"], **dims})

    storage.update_doc(storybook_path, {
        "imageGeneration.pagesReady": 0,
        "imageGeneration.pagesTotal": len(jobs),
    })
    logs.append(f"[jobs] {len(jobs)} page(s) need images")

    kwargs = {"image_style_prompt": image_style_prompt, "regression_tag": regression_tag}
    results: list[tuple[dict[str, Any], Result[dict[str, Any]]]] = []
    for start in range(0, len(jobs), IMAGE_BATCH_SIZE):
        batch = jobs[start:start + IMAGE_BATCH_SIZE]
        outcomes = await asyncio.gather(*(_run_job(job, ctx, kwargs) for job in batch))
        results.extend(zip(batch, outcomes))

    failures = [
        {"pageId": job["pageId"], "errorMessage": outcome.message}
        for job, outcome in results
        if isinstance(outcome, Err)
    ]
    rate_limited = any(is_rate_limit_error(f["errorMessage"]) for f in failures)
    for f in failures:
        logs.append(f"[error] page {f['pageId']}: {f['errorMessage']}")

    current = storage.list_docs(pages_path)
    total = len(current)
    ready = sum(1 for p in current if p.get("imageStatus") == "ready")
    retry_at = None

    if ready == total and not failures:
        status = "ready"
        storage.update_doc(storybook_path, {
            "imageGeneration.status": "ready",
            "imageGeneration.lastCompletedAt": storage.now_iso(),
            "imageGeneration.lastErrorMessage": None,
        })
    elif rate_limited:
        status = "rate_limited"
        retry_at = record_rate_limit(storybook_path)
    else:
        status = "error"
        storage.update_doc(storybook_path, {
            "imageGeneration.status": "error",
            "imageGeneration.lastErrorMessage": PAGES_FAILED_MESSAGE,
        })

    return {
        "ok": status == "ready",
        "storyId": story_id,
        "storybookId": storybook_id,
        "status": status,
        "ready": ready,
        "total": total,
        "generated": len(jobs) - len(failures),
        "failures": failures,
        "rateLimited": rate_limited,
        "retryAt": retry_at,
        "logs": logs,
    }


def record_rate_limit(storybook_path: str) -> str:
    """Flag the run rate_limited and schedule a retry. Returns retryAt."""
    now = datetime.now(timezone.utc)
    retry_at = (now + RATE_LIMIT_RETRY).isoformat()
    storage.update_doc(storybook_path, {
        "imageGeneration.status": "rate_limited",
        "imageGeneration.lastErrorMessage": RATE_LIMIT_MESSAGE,
        "imageGeneration.rateLimitedAt": now.isoformat(),
        "imageGeneration.retryAt": retry_at,
        "imageGeneration.rateLimitRetryCount": storage.Increment(1),
    })
    return retry_at


def record_run_failure(story_id: str, storybook_id: str, message: str) -> Result[str]:
    """Mark a run that crashed outside per-page handling. Returns Ok(status)."""
    path = f"stories/{story_id}/storybooks/{storybook_id}"
    try:
        if is_rate_limit_error(message):
            record_rate_limit(path)
            return Ok("rate_limited")
        storage.update_doc(path, {
            "imageGeneration.status": "error",
            "imageGeneration.lastErrorMessage": message,
        })
        return Ok("error")
    except Exception as e:
        logger.warning(f"[storybookImages] Failed to record run failure for {path}: {e}")
        return Err(str(e))
