"""Page image generation for one storybook page.

For a page at stories/{s}/storybooks/{b}/pages/{p}:

  1. Gather references: actor photos/avatars (max 5), an actor JSON block,
     and style example images for the storybook's image style.
  2. Try each prompt strategy in PROMPT_STRATEGIES order, one attempt each:
       full               style examples + references + actor JSON
       no_style_examples  references + actor JSON
       minimal            art style + scene text, no images
     No media → next strategy. Exceptions continue only when retryable.
  3. Out of strategies: substitute a placeholder when the fallback policy
     allows it, otherwise mark the page error and notify operators.
  4. Upload (inline data URI if the bucket is unavailable), mark the page
     ready, and increment the storybook's imageGeneration.pagesReady.
"""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from storywizard import storage
from storywizard.actors import child_age_years
from storywizard.context import FlowContext
from storywizard.layouts import closest_aspect_ratio
from storywizard.media import (
    PLACEHOLDER_MODEL,
    build_placeholder_image,
    extension_from_mime,
    fetch_image_as_data_uri,
    image_dimensions,
    parse_media_url,
    to_data_uri,
)
from storywizard.notify import notify_maintenance_error
from storywizard.placeholders import fetch_entities
from storywizard.result import Err, Ok, Result

logger = logging.getLogger(__name__)

FLOW_NAME = "storyImageFlow"
DEFAULT_ART_STYLE = "a gentle, vibrant watercolor style"
MAX_REFERENCE_IMAGES = 5
MAX_CHILD_PHOTOS = 3
MAX_SIBLING_PHOTOS = 2

RETRYABLE_PATTERNS = (
    "did not match the expected pattern",
    "RESOURCE_EXHAUSTED",
    "429",
    "quota",
    "rate limit",
    "Rate limit",
    "timed out",
    "UNAVAILABLE",
    "DEADLINE_EXCEEDED",
    "temporarily",
)
_RATE_LIMIT_HINTS = ("RESOURCE_EXHAUSTED", "429", "quota", "rate limit", "Rate limit")


class ImageGenerationError(RuntimeError):
    """All prompt strategies failed to produce an image."""


def is_retryable_error(message: str) -> bool:
    return any(p in message for p in RETRYABLE_PATTERNS)


def fallback_allowed(ctx: FlowContext, regression_tag: str | None) -> bool:
    return bool(ctx.mock_images or ctx.image_fallback or regression_tag)


# ── Prompt strategies ────────────────────────────────────


@dataclass
class ImagePromptInputs:
    scene: str
    art_style: str
    actors_json: str
    main_child_id: str | None = None
    child_age: int | None = None
    reference_images: list[str] = field(default_factory=list)
    style_images: list[str] = field(default_factory=list)
    width: int | None = None
    height: int | None = None
    global_prompt: str = ""


@dataclass
class PromptAttempt:
    strategy: str
    text: str
    images: list[str]


def dimension_hint(width: int | None, height: int | None) -> str:
    if not width or not height:
        return ""
    if width > height:
        orientation = "landscape"
    elif height > width:
        orientation = "portrait"
    else:
        orientation = "square"
    return f"\n\nOutput should be {orientation} orientation, approximately {width}x{height} pixels."


def build_structured_prompt(inputs: ImagePromptInputs, with_style_examples: bool) -> str:
    parts: list[str] = []
    if inputs.global_prompt:
        parts.append(f"{inputs.global_prompt}\n\n")
    intro = "Create an image for a child's storybook."
    if inputs.main_child_id and inputs.child_age is not None:
        intro += f" The main child ($${inputs.main_child_id}$$) is {inputs.child_age} years old."
    parts.append(f"{intro}\n\n")
    parts.append(f"Art Style: {inputs.art_style}\n\n")
    if with_style_examples and inputs.style_images:
        n = len(inputs.style_images)
        parts.append(
            f"IMPORTANT: Use the first {n} image(s) provided as visual style reference. "
            "Match their artistic style, color palette, line weight, and overall aesthetic closely.\n\n"
        )
    parts.append(f"Scene: {inputs.scene}\n\n")
    parts.append(
        "Characters in this scene (use the character reference images for visual reference):\n"
        f"{inputs.actors_json}\n"
    )
    return "".join(parts) + dimension_hint(inputs.width, inputs.height)


def build_minimal_prompt(inputs: ImagePromptInputs) -> str:
    return f"Art Style: {inputs.art_style}\n\nScene: {inputs.scene}{dimension_hint(inputs.width, inputs.height)}"


def _full(inputs: ImagePromptInputs) -> PromptAttempt:
    return PromptAttempt(
        "full",
        build_structured_prompt(inputs, with_style_examples=True),
        [*inputs.style_images, *inputs.reference_images],
    )


def _no_style_examples(inputs: ImagePromptInputs) -> PromptAttempt:
    return PromptAttempt(
        "no_style_examples",
        build_structured_prompt(inputs, with_style_examples=False),
        list(inputs.reference_images),
    )


def _minimal(inputs: ImagePromptInputs) -> PromptAttempt:
    return PromptAttempt("minimal", build_minimal_prompt(inputs), [])


PROMPT_STRATEGIES: tuple[Callable[[ImagePromptInputs], PromptAttempt], ...] = (
    _full,
    _no_style_examples,
    _minimal,
)


def _no_media_message(finish_reason: str, last_reason: str, text: str) -> str:
    attempts = len(PROMPT_STRATEGIES)
    reason = finish_reason or ""
    if reason.lower() in ("blocked", "safety") or "SAFETY" in reason:
        return (
            f"Image was blocked by content safety filters after {attempts} attempts with "
            "progressively simpler prompts. The scene description may contain content "
            "that cannot be rendered."
        )
    if reason.lower() == "recitation" or "RECITATION" in reason:
        return "Image was blocked due to copyright/recitation concerns. Try using a different art style."
    if last_reason:
        return f"Image could not be generated after {attempts} attempts. Last reason: {last_reason}"
    if text:
        return f'Image not generated after {attempts} attempts. Model response: "{text[:200]}"'
    return (
        f"Image generation failed after {attempts} attempts with progressively simpler prompts. "
        "The scene may contain content that triggers safety filters."
    )


async def create_image(
    inputs: ImagePromptInputs,
    ctx: FlowContext,
    *,
    aspect_ratio: str | None,
    model: str,
    logs: list[str],
    audit: dict[str, Any] | None = None,
) -> tuple[bytes, str, str]:
    """Run the strategy sequence. Returns (bytes, mime_type, model).

    Raises ImageGenerationError when every strategy failed, or the
    underlying exception when a non-retryable error occurs.
    """
    last_finish = ""
    last_reason = ""
    last_text = ""
    total = len(PROMPT_STRATEGIES)

    for attempt, strategy in enumerate(PROMPT_STRATEGIES, start=1):
        prompt = strategy(inputs)
        logs.append(f"[attempt {attempt}/{total}] strategy={prompt.strategy} images={len(prompt.images)}")
        try:
            generation = await asyncio.wait_for(
                ctx.image_model(prompt.text, prompt.images, aspect_ratio=aspect_ratio, model=model),
                timeout=ctx.image_timeout,
            )
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                message = f"Image generation timed out after {ctx.image_timeout:g}s"
            else:
                message = str(e) or type(e).__name__
            logs.append(f"[attempt {attempt}/{total}] error: {message}")
            storage.log_ai_flow(
                f"{FLOW_NAME}:createImage", prompt.text,
                attempt=attempt, strategy=prompt.strategy, model=model,
                status="error", error=message, **(audit or {}),
            )
            if not is_retryable_error(message):
                raise
            if attempt == total:
                if any(h in message for h in _RATE_LIMIT_HINTS):
                    raise ImageGenerationError(
                        f"Image generation was rate limited by the provider after {total} attempts. "
                        f"Please try again later. ({message})"
                    ) from e
                if "did not match the expected pattern" in message:
                    raise ImageGenerationError(
                        f"Image prompt was rejected by the provider after {total} attempts "
                        f"(pattern validation). Prompt preview: {prompt.text[:200]}"
                    ) from e
                raise ImageGenerationError(message) from e
            await asyncio.sleep(ctx.retry_delay * attempt)
            continue

        storage.log_ai_flow(
            f"{FLOW_NAME}:createImage", prompt.text,
            attempt=attempt, strategy=prompt.strategy, model=generation.model or model,
            status="success" if generation.media_url else "no_media",
            finishReason=generation.finish_reason, finishMessage=generation.finish_message,
            responseText=generation.text[:500], **(audit or {}),
        )
        if generation.media_url:
            data, mime = await parse_media_url(generation.media_url)
            logs.append(f"[attempt {attempt}/{total}] image received ({mime}, {len(data)} bytes)")
            return data, mime, generation.model or model

        last_finish = generation.finish_reason
        last_text = generation.text
        last_reason = generation.finish_message or generation.text[:200] or generation.finish_reason or "unknown"
        logs.append(f"[attempt {attempt}/{total}] no media: {last_reason}")
        if attempt < total:
            await asyncio.sleep(ctx.retry_delay * attempt)

    raise ImageGenerationError(_no_media_message(last_finish, last_reason, last_text))


# ── Reference material ───────────────────────────────────


def _actor_entry(doc: dict[str, Any], entry_type: str, images: list[str]) -> dict[str, Any]:
    return {
        "id": doc["id"],
        "type": entry_type,
        "displayName": doc.get("displayName") or doc["id"],
        "characterType": doc.get("type") if entry_type == "character" else None,
        "description": doc.get("description"),
        "pronouns": doc.get("pronouns"),
        "likes": doc.get("likes") or [],
        "dislikes": doc.get("dislikes") or [],
        "images": [u for u in images if u.startswith("http")],
    }


def _reference_images(doc: dict[str, Any], max_photos: int, back_cover: bool) -> list[str]:
    avatar = doc.get("avatarUrl")
    if not back_cover:
        photos = [p for p in doc.get("photos") or [] if p][:max_photos]
        if photos:
            return photos
    return [avatar] if avatar else []


def build_actor_references(
    story: dict[str, Any], page: dict[str, Any],
) -> tuple[dict[str, Any], list[str]]:
    """Return (actors_json_dict, reference_image_urls) for a page.

    Back covers use avatars only; other pages lead with the main child's photos.
    """
    child_id = story.get("childId")
    entity_ids = [e for e in page.get("entityIds") or [] if e]
    ids = list(dict.fromkeys([*([child_id] if child_id else []), *entity_ids]))
    docs = fetch_entities(ids)
    back_cover = page.get("kind") == "cover_back"

    actors: dict[str, Any] = {"mainChild": None, "siblings": [], "characters": []}
    urls: list[str] = []
    for actor_id in ids:
        doc = docs.get(actor_id)
        if not doc:
            continue
        if doc["kind"] == "child" and doc["id"] == child_id:
            images = _reference_images(doc, MAX_CHILD_PHOTOS, back_cover)
            actors["mainChild"] = _actor_entry(doc, "child", images)
        elif doc["kind"] == "child":
            images = _reference_images(doc, MAX_SIBLING_PHOTOS, back_cover)
            actors["siblings"].append(_actor_entry(doc, "sibling", images))
        else:
            images = _reference_images(doc, 0, back_cover)
            actors["characters"].append(_actor_entry(doc, "character", images))
        urls.extend(images)

    return actors, list(dict.fromkeys(urls))[:MAX_REFERENCE_IMAGES]


def _style_example_urls(image_style_id: str | None) -> list[str]:
    if not image_style_id:
        return []
    style = storage.get_doc(f"imageStyles/{image_style_id}") or {}
    return [e["url"] for e in style.get("exampleImages") or [] if e.get("url")]


async def _fetch_all(urls: list[str]) -> list[str]:
    fetched = await asyncio.gather(*(fetch_image_as_data_uri(u) for u in urls))
    return [uri for uri in fetched if uri]


def resolve_art_style(
    image_style_prompt: str | None, storybook: dict[str, Any], story: dict[str, Any],
) -> str:
    return (
        image_style_prompt
        or storybook.get("imageStylePrompt")
        or story.get("selectedImageStylePrompt")
        or (story.get("metadata") or {}).get("artStyleHint")
        or DEFAULT_ART_STYLE
    )


# ── Flow ─────────────────────────────────────────────────


def _store_image(
    object_path: str, data: bytes, mime: str, metadata: dict[str, Any], logs: list[str],
) -> dict[str, Any]:
    """Upload, or inline as a data URI when the bucket is unavailable."""
    try:
        uploaded = storage.upload_object(object_path, data, mime, metadata)
    except storage.BucketUnavailableError as e:
        logs.append(f"[warn] Bucket unavailable, storing inline data URI: {e}")
        logger.warning(f"[{FLOW_NAME}] Bucket unavailable for {object_path}: {e}")
        return {"url": to_data_uri(data, mime), "path": None, "downloadToken": None}
    return uploaded


async def generate_page_image(
    story_id: str,
    storybook_id: str,
    page_id: str,
    ctx: FlowContext,
    *,
    force: bool = False,
    regression_tag: str | None = None,
    image_style_prompt: str | None = None,
    target_width: int | None = None,
    target_height: int | None = None,
    aspect_ratio: str | None = None,
    track_progress: bool = False,
) -> Result[dict[str, Any]]:
    """Generate and store the image for one page. Returns Ok or Err, never raises.

    A page that is already ready is skipped unless `force`. Only storybook
    runs pass `track_progress`, which counts the page in imageGeneration.pagesReady.
    """
    logs: list[str] = []
    storybook_path = f"stories/{story_id}/storybooks/{storybook_id}"
    page_path = f"{storybook_path}/pages/{page_id}"
    base = {"storyId": story_id, "pageId": page_id}

    story = storage.get_doc(f"stories/{story_id}")
    if story is None:
        return Err(f"Story {story_id} not found", {**base, "imageStatus": "error", "logs": logs})
    page = storage.get_doc(page_path)
    if page is None:
        return Err(f"Page {page_id} not found", {**base, "imageStatus": "error", "logs": logs})
    if not page.get("imagePrompt"):
        return Err(f"Page {page_id} has no imagePrompt", {**base, "imageStatus": "error", "logs": logs})
    if not force and page.get("imageStatus") == "ready" and page.get("imageUrl"):
        logs.append(f"[skip] Page {page_id} already has an image")
        return Ok({**base, "imageUrl": page["imageUrl"], "imageStatus": "ready", "skipped": True, "logs": logs})

    model = ctx.model("image")
    prompt_preview = ""
    try:
        old_path = (page.get("imageMetadata") or {}).get("storagePath")
        if force and old_path:
            try:
                storage.delete_object(old_path)
                logs.append(f"[force] Deleted previous image {old_path}")
            except storage.BucketUnavailableError:
                logs.append("[force] Bucket unavailable, previous image not deleted")

        storage.update_doc(page_path, {
            "imageStatus": "generating",
            "imageMetadata.lastErrorMessage": None,
            "updatedAt": storage.now_iso(),
        })

        storybook = storage.get_doc(storybook_path) or {}
        hints = page.get("layoutHints") or {}
        width = target_width or hints.get("targetWidthPx")
        height = target_height or hints.get("targetHeightPx")
        ratio = aspect_ratio or hints.get("aspectRatio")
        if not ratio and width and height:
            ratio = closest_aspect_ratio(width, height)

        actors, reference_urls = build_actor_references(story, page)
        child = storage.get_doc(f"children/{story['childId']}") if story.get("childId") else None
        inputs = ImagePromptInputs(
            scene=page.get("imageDescription") or page.get("bodyText") or page["imagePrompt"],
            art_style=resolve_art_style(image_style_prompt, storybook, story),
            actors_json=json.dumps(actors, indent=2),
            main_child_id=story.get("childId"),
            child_age=child_age_years((child or {}).get("dateOfBirth")),
            reference_images=await _fetch_all(reference_urls),
            style_images=await _fetch_all(_style_example_urls(storybook.get("imageStyleId"))),
            width=width,
            height=height,
            global_prompt=ctx.prompt("image"),
        )
        prompt_preview = build_structured_prompt(inputs, with_style_examples=True)[:500]
        logs.append(
            f"[refs] references={len(inputs.reference_images)} style_examples={len(inputs.style_images)}"
        )

        if ctx.mock_images:
            data, mime = build_placeholder_image(inputs.scene, width, height)
            used_model = PLACEHOLDER_MODEL
            logs.append("[mock] Using placeholder image")
        else:
            try:
                data, mime, used_model = await create_image(
                    inputs, ctx, aspect_ratio=ratio, model=model, logs=logs,
                    audit={"storyId": story_id, "storybookId": storybook_id, "pageId": page_id},
                )
            except Exception as e:
                if not fallback_allowed(ctx, regression_tag):
                    raise
                logs.append(f"[fallback] Generation failed, using placeholder: {e}")
                data, mime = build_placeholder_image(inputs.scene, width, height)
                used_model = PLACEHOLDER_MODEL

        ext = extension_from_mime(mime)
        stored = _store_image(f"{page_path}.{ext}", data, mime, {
            "storyId": story_id, "storybookId": storybook_id, "pageId": page_id,
        }, logs)
        dims = image_dimensions(data)
        if dims is None:
            logs.append("[warn] Could not parse image dimensions")

        storage.update_doc(page_path, {
            "imageUrl": stored["url"],
            "imageStatus": "ready",
            "imageMetadata": {
                "model": used_model,
                "width": dims[0] if dims else None,
                "height": dims[1] if dims else None,
                "mimeType": mime,
                "sizeBytes": len(data),
                "storagePath": stored["path"],
                "downloadToken": stored["downloadToken"],
                "aspectRatioHint": hints.get("aspectRatio"),
                "regressionTag": regression_tag,
                "generatedAt": storage.now_iso(),
                "lastErrorMessage": None,
            },
            "updatedAt": storage.now_iso(),
        })
        if track_progress:
            try:
                storage.update_doc(storybook_path, {"imageGeneration.pagesReady": storage.Increment(1)})
            except storage.DocumentNotFoundError:
                logs.append("[warn] Storybook document missing; progress not recorded")

        return Ok({**base, "imageUrl": stored["url"], "imageStatus": "ready", "logs": logs})

    except Exception as e:
        message = str(e) or type(e).__name__
        logs.append(f"[error] {message}")
        logger.error(f"[{FLOW_NAME}] {page_path} failed: {message}")
        try:
            storage.update_doc(page_path, {
                "imageStatus": "error",
                "imageMetadata.lastErrorMessage": message,
                "imageMetadata.errorStack": traceback.format_exc()[:1000],
                "updatedAt": storage.now_iso(),
            })
        except Exception as update_error:
            logs.append(f"[warn] Failed to record page error: {update_error}")

        await notify_maintenance_error(ctx.notifier, FLOW_NAME, message, {
            "storyId": story_id,
            "storybookId": storybook_id,
            "pageId": page_id,
            "model": model,
            "mockImagesEnabled": ctx.mock_images,
            "aspectRatio": aspect_ratio,
            "targetDimensions": f"{target_width}x{target_height}px" if target_width and target_height else None,
            "page": {
                "kind": page.get("kind"),
                "pageNumber": page.get("pageNumber"),
                "entityIds": page.get("entityIds") or [],
                "imagePromptPreview": page["imagePrompt"][:150],
            },
            "promptPreview": prompt_preview,
            "logs": logs[-20:],
        })
        return Err(message, {**base, "imageStatus": "error", "logs": logs})
