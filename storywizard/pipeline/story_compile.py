"""Story compile orchestrator: turn a finished session into a persisted Story.

Branches by session.storyMode:

  gemini3 / gemini4   text already on the session (<mode>FinalStory)
  wizard / friends    story document written upstream; fill in what is missing
  chat (default)      run the text compile stage on the transcript

Every branch converges on the same persistence step: upsert the story
(createdAt preserved), finalize the session, bump character usage, and
log a session event. Failures come back as Err, never raised.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from storywizard import storage
from storywizard.context import FlowContext
from storywizard.placeholders import extract_actor_ids, resolve_placeholders
from storywizard.result import Err, Ok, Result

from .synopsis import FALLBACK_SYNOPSIS, write_synopsis
from .text_compile import compile_story_text

logger = logging.getLogger(__name__)

FLOW_NAME = "storyCompileFlow"
DIRECT_MODES = ("gemini3", "gemini4")
UPSTREAM_MODES = ("wizard", "friends")
STORY_MODES = (*DIRECT_MODES, *UPSTREAM_MODES, "chat")

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


def split_paragraphs(text: str) -> list[str]:
    return [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(text or "") if p.strip()]


def _merge_actors(child_id: str, *groups: list[str]) -> list[str]:
    merged = [a for group in groups for a in group or [] if a and a != child_id]
    return [child_id, *dict.fromkeys(merged)]


# ── Mode branches ────────────────────────────────────────
# Each returns {storyText, synopsis, actors, title?} or raises ValueError.


async def _compile_direct(
    mode: str, session_id: str, session: dict[str, Any], ctx: FlowContext, debug: dict[str, Any],
) -> dict[str, Any]:
    story_text = session.get(f"{mode}FinalStory")
    if not story_text:
        raise ValueError(f"Session has no {mode}FinalStory to compile")
    child_id = session["childId"]
    actors = _merge_actors(child_id, session.get("actors") or [], extract_actor_ids(story_text))
    try:
        synopsis = await write_synopsis(story_text, child_id, ctx, actor_ids=actors)
    except Exception as e:
        logger.warning(f"[{FLOW_NAME}] Synopsis failed for {session_id}, using fallback: {e}")
        debug["synopsisError"] = str(e)
        synopsis = FALLBACK_SYNOPSIS
    return {
        "storyText": story_text,
        "synopsis": synopsis,
        "actors": actors,
        "title": session.get(f"{mode}Title"),
    }


async def _compile_upstream(
    story_id: str, session: dict[str, Any], ctx: FlowContext, debug: dict[str, Any],
) -> dict[str, Any]:
    story = storage.get_doc(f"stories/{story_id}")
    if story is None:
        raise ValueError(f"Story {story_id} not found for {session.get('storyMode')} session")
    story_text = story.get("storyText") or ""
    if not story_text:
        raise ValueError(f"Story {story_id} has no storyText")
    child_id = session["childId"]
    actors = _merge_actors(
        child_id, story.get("actors") or [], session.get("actors") or [],
        extract_actor_ids(story_text),
    )
    synopsis = story.get("synopsis")
    if not synopsis:
        debug["synopsisGenerated"] = True
        synopsis = await write_synopsis(story_text, child_id, ctx, actor_ids=actors)
    return {
        "storyText": story_text,
        "synopsis": synopsis,
        "actors": actors,
        "title": story.get("metadata", {}).get("title"),
    }


async def _compile_chat(session_id: str, ctx: FlowContext, debug: dict[str, Any]) -> dict[str, Any]:
    result = await compile_story_text(session_id, ctx)
    if isinstance(result, Err):
        debug["textCompile"] = result.detail.get("debug")
        raise ValueError(result.message)
    return {
        "storyText": result.value["storyText"],
        "synopsis": result.value["synopsis"],
        "actors": result.value["actors"],
        "title": None,
    }


# ── Persistence ──────────────────────────────────────────


def _persist_story(
    story_id: str,
    session_id: str,
    session: dict[str, Any],
    compiled: dict[str, Any],
    story_output_type_id: str | None,
) -> dict[str, Any]:
    path = f"stories/{story_id}"
    existing = storage.get_doc(path) or {}
    now = storage.now_iso()
    resolved = resolve_placeholders(compiled["storyText"])
    paragraphs = split_paragraphs(resolved)

    metadata: dict[str, Any] = {"paragraphs": len(paragraphs)}
    if compiled.get("title"):
        metadata["title"] = compiled["title"]

    story: dict[str, Any] = {
        "storySessionId": session_id,
        "childId": session["childId"],
        "parentUid": session["parentUid"],
        "storyMode": session.get("storyMode") or "chat",
        "storyText": compiled["storyText"],
        "storyTextResolved": resolved,
        "synopsis": compiled["synopsis"],
        "actors": compiled["actors"],
        "metadata": metadata,
        "status": "text_ready",
        "synopsisGeneration": {
            "status": "ready",
            "lastCompletedAt": now,
            "lastErrorMessage": None,
        },
        "updatedAt": now,
    }
    if story_output_type_id:
        story["storyOutputTypeId"] = story_output_type_id
    if not existing.get("createdAt"):
        story["createdAt"] = now
    if compiled.get("title"):
        story["titleGeneration"] = {"status": "ready", "lastCompletedAt": now}
    elif not existing.get("titleGeneration"):
        story["titleGeneration"] = {"status": "pending"}
    if not existing.get("actorAvatarGeneration"):
        story["actorAvatarGeneration"] = {"status": "pending"}

    storage.set_doc(path, story, merge=True)
    return {"resolved": resolved, "paragraphs": len(paragraphs)}


async def compile_story(
    session_id: str,
    ctx: FlowContext,
    story_output_type_id: str | None = None,
) -> Result[dict[str, Any]]:
    """Compile a session into stories/{storyId}. Returns Ok or Err, never raises."""
    debug: dict[str, Any] = {"stage": "init", "sessionId": session_id}
    try:
        session = storage.get_doc(f"storySessions/{session_id}")
        if session is None:
            return Err(f"Session {session_id} not found", {"sessionId": session_id})
        if not session.get("childId") or not session.get("parentUid"):
            return Err("Session is missing childId or parentUid", {"sessionId": session_id})

        mode = session.get("storyMode") or "chat"
        if mode not in STORY_MODES:
            logger.warning(f"[{FLOW_NAME}] Unknown storyMode {mode!r}; compiling as chat")
            mode = "chat"
        story_id = session.get("storyId") or session_id
        debug.update({"storyMode": mode, "storyId": story_id, "stage": "compile"})

        if mode in DIRECT_MODES:
            compiled = await _compile_direct(mode, session_id, session, ctx, debug)
        elif mode in UPSTREAM_MODES:
            compiled = await _compile_upstream(story_id, session, ctx, debug)
        else:
            compiled = await _compile_chat(session_id, ctx, debug)

        debug["stage"] = "persist"
        persisted = _persist_story(story_id, session_id, session, compiled, story_output_type_id)

        storage.update_doc(f"storySessions/{session_id}", {
            "currentPhase": "final",
            "status": "completed",
            "storyId": story_id,
            "updatedAt": storage.now_iso(),
        })
        storage.update_character_usage(compiled["actors"], main_child_id=session["childId"])
        storage.log_session_event(session_id, "compile.completed", attributes={
            "storyId": story_id,
            "storyMode": mode,
            "actorCount": len(compiled["actors"]),
            "paragraphs": persisted["paragraphs"],
        })

        return Ok({
            "sessionId": session_id,
            "storyId": story_id,
            "storyMode": mode,
            "storyText": compiled["storyText"],
            "storyTextResolved": persisted["resolved"],
            "synopsis": compiled["synopsis"],
            "actors": compiled["actors"],
            "paragraphs": persisted["paragraphs"],
        })

    except Exception as e:
        logger.warning(f"[{FLOW_NAME}] {session_id} failed at {debug['stage']}: {e}")
        storage.log_session_event(
            session_id, "compile.failed", status="error",
            attributes={"stage": debug["stage"], "error": str(e)},
        )
        return Err(
            f"Error in {FLOW_NAME}: {e}",
            {"sessionId": session_id, "debug": {**debug, "error": str(e)}},
        )
