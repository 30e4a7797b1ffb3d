"""Story synopsis: a short parent-facing blurb written from the story text."""

from __future__ import annotations

import logging
from typing import Any

from storywizard import storage
from storywizard.actors import build_actor_list_for_prompt, load_actors
from storywizard.context import FlowContext
from storywizard.placeholders import extract_actor_ids
from storywizard.prompts import SYNOPSIS_PROMPT_TEMPLATE, render_prompt
from storywizard.result import Err, Ok, Result

logger = logging.getLogger(__name__)

FLOW_NAME = "storySynopsisFlow"
TEMPERATURE = 0.6
MAX_OUTPUT_TOKENS = 200
FALLBACK_SYNOPSIS = "A wonderful adventure awaits!"


async def write_synopsis(
    story_text: str,
    child_id: str | None,
    ctx: FlowContext,
    actor_ids: list[str] | None = None,
) -> str:
    """One LLM call. Returns the fallback text if the model answers empty.

    LLM errors propagate; callers decide whether to fall back.
    """
    ids = list(dict.fromkeys([*(actor_ids or []), *extract_actor_ids(story_text)]))
    actors = load_actors(ids, main_child_id=child_id)
    prompt = render_prompt(SYNOPSIS_PROMPT_TEMPLATE, {
        "actorList": build_actor_list_for_prompt(actors),
        "actors": [{"id": a.id, "displayName": a.displayName} for a in actors],
        "storyText": story_text,
    })
    prefix = ctx.prompt("global_prefix")
    if prefix:
        prompt = f"{prefix}\n\n{prompt}"

    response = await ctx.llm(
        FLOW_NAME, prompt,
        model=ctx.model("synopsis"),
        temperature=TEMPERATURE, max_output_tokens=MAX_OUTPUT_TOKENS,
    )
    return response.text.strip() or FALLBACK_SYNOPSIS


async def generate_story_synopsis(
    story_id: str, ctx: FlowContext, force: bool = False,
) -> Result[dict[str, Any]]:
    """Write a synopsis onto stories/{id}, tracking synopsisGeneration status."""
    path = f"stories/{story_id}"
    story = storage.get_doc(path)
    if story is None:
        return Err(f"Story {story_id} not found", {"storyId": story_id})

    if (
        not force
        and story.get("synopsis")
        and (story.get("synopsisGeneration") or {}).get("status") == "ready"
    ):
        return Ok({"storyId": story_id, "synopsis": story["synopsis"], "skipped": True})

    storage.update_doc(path, {
        "synopsisGeneration.status": "generating",
        "synopsisGeneration.lastRunAt": storage.now_iso(),
    })
    try:
        child_id = story.get("childId")
        synopsis = await write_synopsis(
            story.get("storyText") or "", child_id, ctx, actor_ids=story.get("actors"),
        )
        actors = [child_id] if child_id else []
        actors += [a for a in extract_actor_ids(synopsis) if a != child_id]
        storage.update_doc(path, {
            "synopsis": synopsis,
            "actors": storage.ArrayUnion(actors),
            "synopsisGeneration.status": "ready",
            "synopsisGeneration.lastCompletedAt": storage.now_iso(),
            "synopsisGeneration.lastErrorMessage": None,
            "updatedAt": storage.now_iso(),
        })
        return Ok({"storyId": story_id, "synopsis": synopsis})
    except Exception as e:
        logger.warning(f"[{FLOW_NAME}] {story_id} failed: {e}")
        storage.update_doc(path, {
            "synopsisGeneration.status": "error",
            "synopsisGeneration.lastErrorMessage": str(e),
        })
        return Err(f"Error in {FLOW_NAME}: {e}", {"storyId": story_id})
