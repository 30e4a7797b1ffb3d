"""Actor exemplars: reusable character reference sheets per (actor, image style).

An exemplar (exemplars/{id}) is generated once and shared by every
storybook that uses the same actor and style:

  {actorId, actorType, imageStyleId, status, imageUrl, storagePath,
   ownerParentUid, usedByStorybookIds, createdAt, updatedAt}

generate_storybook_exemplars() resolves the actors on a storybook's pages,
reuses ready exemplars, and generates the rest EXEMPLAR_BATCH_SIZE at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from storywizard import storage
from storywizard.actors import ActorInfo, character_to_actor_info, child_profile_to_actor_info
from storywizard.context import FlowContext
from storywizard.media import (
    PLACEHOLDER_MODEL,
    build_placeholder_image,
    extension_from_mime,
    fetch_image_as_data_uri,
    parse_media_url,
    to_data_uri,
)
from storywizard.prompts import EXEMPLAR_PROMPT_TEMPLATE, render_prompt
from storywizard.result import Err, Ok, Result

from .storybook_images import load_storybook

logger = logging.getLogger(__name__)

FLOW_NAME = "actorExemplarFlow"
EXEMPLAR_BATCH_SIZE = 2
EXEMPLAR_ASPECT_RATIO = "2:1"
EXEMPLAR_WIDTH = 2400
EXEMPLAR_HEIGHT = 1200
MAX_ACTOR_PHOTOS = 3


def determine_actor_type(actor_id: str) -> str | None:
    if storage.get_doc(f"children/{actor_id}") is not None:
        return "child"
    if storage.get_doc(f"characters/{actor_id}") is not None:
        return "character"
    return None


def find_existing_exemplar(actor_id: str, image_style_id: str) -> dict[str, Any] | None:
    matches = storage.list_docs("exemplars", where={
        "actorId": actor_id,
        "imageStyleId": image_style_id,
        "status": "ready",
    })
    return next((m for m in matches if m.get("imageUrl")), None)


def _load_actor(actor_id: str, actor_type: str) -> tuple[ActorInfo, list[str]]:
    """(actor info, reference image urls: avatar + first photos)."""
    collection = "children" if actor_type == "child" else "characters"
    doc = storage.get_doc(f"{collection}/{actor_id}")
    if doc is None:
        raise ValueError(f"{actor_type.capitalize()} {actor_id} not found")
    doc = {"id": actor_id, **doc}
    if actor_type == "child":
        actor = child_profile_to_actor_info(doc, is_main_child=True)
    else:
        actor = character_to_actor_info(doc)
    urls = [u for u in [doc.get("avatarUrl"), *(doc.get("photos") or [])[:MAX_ACTOR_PHOTOS]] if u]
    return actor, list(dict.fromkeys(urls))


def _style_examples(image_style_id: str) -> list[str]:
    style = storage.get_doc(f"imageStyles/{image_style_id}") or {}
    urls = [e["url"] for e in style.get("exampleImages") or [] if e.get("url")]
    if not urls and style.get("sampleImageUrl"):
        urls = [style["sampleImageUrl"]]
    return urls


async def generate_actor_exemplar(
    actor_id: str,
    actor_type: str,
    image_style_id: str,
    image_style_prompt: str,
    owner_parent_uid: str | None,
    storybook_id: str,
    ctx: FlowContext,
) -> Result[dict[str, Any]]:
    """Generate a new reference sheet. Returns Ok({exemplarId, imageUrl}) or Err."""
    now = storage.now_iso()
    exemplar_id = storage.add_doc("exemplars", {
        "actorId": actor_id,
        "actorType": actor_type,
        "imageStyleId": image_style_id,
        "status": "generating",
        "ownerParentUid": owner_parent_uid,
        "usedByStorybookIds": [storybook_id],
        "createdAt": now,
        "updatedAt": now,
    })
    path = f"exemplars/{exemplar_id}"
    try:
        actor, reference_urls = _load_actor(actor_id, actor_type)
        style_images = [u for u in await asyncio.gather(
            *(fetch_image_as_data_uri(u) for u in _style_examples(image_style_id))
        ) if u]
        references = [u for u in await asyncio.gather(
            *(fetch_image_as_data_uri(u) for u in reference_urls)
        ) if u]

        prompt = render_prompt(EXEMPLAR_PROMPT_TEMPLATE, {
            "actor": {
                "displayName": actor.displayName,
                "characterType": actor.type if actor_type == "character" else None,
                "description": actor.description,
                "pronouns": actor.pronouns,
            },
            "stylePrompt": image_style_prompt,
            "styleExampleCount": len(style_images),
            "referenceCount": len(references),
        })

        if ctx.mock_images:
            data, mime = build_placeholder_image(actor.displayName, EXEMPLAR_WIDTH, EXEMPLAR_HEIGHT)
            model = PLACEHOLDER_MODEL
        else:
            model = ctx.model("exemplar")
            generation = await asyncio.wait_for(
                ctx.image_model(
                    prompt, [*style_images, *references],
                    aspect_ratio=EXEMPLAR_ASPECT_RATIO, model=model,
                ),
                timeout=ctx.image_timeout,
            )
            storage.log_ai_flow(
                FLOW_NAME, prompt, actorId=actor_id, exemplarId=exemplar_id, model=model,
                status="success" if generation.media_url else "no_media",
                finishReason=generation.finish_reason,
            )
            if not generation.media_url:
                reason = generation.finish_message or generation.finish_reason or generation.text[:200] or "unknown"
                raise RuntimeError(f"Model did not return an image. Reason: {reason}")
            data, mime = await parse_media_url(generation.media_url)

        object_path = f"exemplars/{owner_parent_uid or 'shared'}/{exemplar_id}/image.{extension_from_mime(mime)}"
        try:
            stored = storage.upload_object(object_path, data, mime, {"actorId": actor_id})
            image_url, storage_path = stored["url"], stored["path"]
        except storage.BucketUnavailableError as e:
            logger.warning(f"[{FLOW_NAME}] Bucket unavailable, inlining exemplar {exemplar_id}: {e}")
            image_url, storage_path = to_data_uri(data, mime), None

        storage.update_doc(path, {
            "status": "ready",
            "imageUrl": image_url,
            "storagePath": storage_path,
            "model": model,
            "lastErrorMessage": None,
            "updatedAt": storage.now_iso(),
        })
        return Ok({"exemplarId": exemplar_id, "imageUrl": image_url})

    except Exception as e:
        message = str(e) or type(e).__name__
        logger.warning(f"[{FLOW_NAME}] {actor_id} failed: {message}")
        storage.update_doc(path, {
            "status": "error",
            "lastErrorMessage": message,
            "updatedAt": storage.now_iso(),
        })
        return Err(message, {"exemplarId": exemplar_id})


def collect_actor_ids(story_id: str, storybook_id: str, main_child_id: str | None) -> list[str]:
    """Main child first, then every entity id on the storybook's pages."""
    pages = storage.list_docs(
        f"stories/{story_id}/storybooks/{storybook_id}/pages", order_by="pageNumber",
    )
    ids = [main_child_id] if main_child_id else []
    for page in pages:
        ids.extend(e for e in page.get("entityIds") or [] if e)
    return list(dict.fromkeys(ids))


async def _run_job(
    job: dict[str, Any], storybook: dict[str, Any], storybook_id: str, ctx: FlowContext, logs: list[str],
) -> dict[str, Any]:
    actor_id = job["actorId"]
    try:
        existing = job["existing"]
        if existing:
            logs.append(f"[reuse] Exemplar {existing['id']} for actor {actor_id}")
            storage.update_doc(f"exemplars/{existing['id']}", {
                "usedByStorybookIds": storage.ArrayUnion([storybook_id]),
                "updatedAt": storage.now_iso(),
            })
            return {"actorId": actor_id, "exemplarId": existing["id"], "imageUrl": existing["imageUrl"]}

        logs.append(f"[generate] Exemplar for {job['actorType']} {actor_id}")
        result = await generate_actor_exemplar(
            actor_id, job["actorType"],
            storybook["imageStyleId"], storybook["imageStylePrompt"],
            storybook.get("parentUid"), storybook_id, ctx,
        )
        if isinstance(result, Err):
            logs.append(f"[error] Exemplar for {actor_id}: {result.message}")
            return {
                "actorId": actor_id,
                "exemplarId": result.detail.get("exemplarId"),
                "imageUrl": None,
                "error": result.message,
            }
        return {"actorId": actor_id, **result.value}
    except Exception as e:
        logs.append(f"[error] Exception for {actor_id}: {e}")
        return {"actorId": actor_id, "exemplarId": None, "imageUrl": None, "error": str(e)}


async def generate_storybook_exemplars(
    story_id: str,
    storybook_id: str,
    ctx: FlowContext,
    force: bool = False,
) -> dict[str, Any]:
    """Ensure every actor in a storybook has a ready exemplar for its style.

    Raises ValueError / DocumentNotFoundError / StorybookLockedError on bad input.
    """
    if not story_id or not storybook_id:
        raise ValueError("storyId and storybookId are required")
    story = storage.get_doc(f"stories/{story_id}")
    if story is None:
        raise storage.DocumentNotFoundError(f"Story {story_id} not found")
    storybook = load_storybook(story_id, storybook_id)
    if not storybook.get("imageStyleId") or not storybook.get("imageStylePrompt"):
        raise ValueError("Storybook missing imageStyleId or imageStylePrompt")

    path = f"stories/{story_id}/storybooks/{storybook_id}"
    logs: list[str] = []
    existing = storybook.get("actorExemplars") or {}
    if not force and (storybook.get("exemplarGeneration") or {}).get("status") == "ready" and existing:
        logs.append(f"[skip] Exemplars already generated ({len(existing)} actors)")
        return {
            "ok": True, "storyId": story_id, "storybookId": storybook_id,
            "status": "ready", "actorExemplars": existing, "logs": logs,
        }

    storage.update_doc(path, {
        "exemplarGeneration.status": "running",
        "exemplarGeneration.lastRunAt": storage.now_iso(),
        "exemplarGeneration.lastErrorMessage": None,
        "updatedAt": storage.now_iso(),
    })

    actor_ids = collect_actor_ids(story_id, storybook_id, story.get("childId"))
    logs.append(f"[actors] {len(actor_ids)} unique actor(s): {', '.join(actor_ids)}")
    if not actor_ids:
        storage.update_doc(path, {
            "exemplarGeneration.status": "ready",
            "exemplarGeneration.lastCompletedAt": storage.now_iso(),
            "exemplarGeneration.actorsTotal": 0,
            "exemplarGeneration.actorsReady": 0,
            "actorExemplars": {},
        })
        return {
            "ok": True, "storyId": story_id, "storybookId": storybook_id,
            "status": "ready", "actorExemplars": {}, "logs": logs,
        }

    storage.update_doc(path, {
        "exemplarGeneration.actorsTotal": len(actor_ids),
        "exemplarGeneration.actorsReady": 0,
    })

    jobs: list[dict[str, Any]] = []
    for actor_id in actor_ids:
        actor_type = determine_actor_type(actor_id)
        if actor_type is None:
            logs.append(f"[warn] Actor {actor_id} not found in children or characters, skipping")
            continue
        jobs.append({
            "actorId": actor_id,
            "actorType": actor_type,
            "existing": None if force else find_existing_exemplar(actor_id, storybook["imageStyleId"]),
        })

    results: list[dict[str, Any]] = []
    for start in range(0, len(jobs), EXEMPLAR_BATCH_SIZE):
        batch = jobs[start:start + EXEMPLAR_BATCH_SIZE]
        results.extend(await asyncio.gather(
            *(_run_job(job, storybook, storybook_id, ctx, logs) for job in batch)
        ))
        storage.update_doc(path, {
            "exemplarGeneration.actorsReady": sum(1 for r in results if r["imageUrl"]),
            "updatedAt": storage.now_iso(),
        })

    actor_exemplars = {r["actorId"]: r["exemplarId"] for r in results if r["exemplarId"] and r["imageUrl"]}
    actors_ready = len(actor_exemplars)
    failed = sum(1 for r in results if r.get("error"))
    status = "error" if results and failed == len(results) else "ready"
    message = (
        f"{failed} of {len(results)} exemplars failed to generate (continuing with fallback for those actors)"
        if failed else None
    )
    storage.update_doc(path, {
        "exemplarGeneration.status": status,
        "exemplarGeneration.lastCompletedAt": storage.now_iso(),
        "exemplarGeneration.lastErrorMessage": message,
        "exemplarGeneration.actorsReady": actors_ready,
        "actorExemplars": actor_exemplars,
        "updatedAt": storage.now_iso(),
    })

    return {
        "ok": status == "ready",
        "storyId": story_id,
        "storybookId": storybook_id,
        "status": status,
        "actorsTotal": len(jobs),
        "actorsReady": actors_ready,
        "failedCount": failed,
        "actorExemplars": actor_exemplars,
        "logs": logs,
    }
