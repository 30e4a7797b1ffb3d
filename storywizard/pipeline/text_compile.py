"""Story text compile: polish a chat transcript into one finished story.

Steps:
  1. Load session, story type, child; collect beat + ending messages as a draft.
  2. Render the compile prompt (instructions, context, actor roster, draft).
  3. Ask for {storyText, synopsis} JSON with a response schema.
  4. Parse: structured output → fenced ```json block → whole text.
     A schema failure on the structured path gets one retry without schema.
  5. Union actor ids from the session and the story text (child first).
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from storywizard import storage
from storywizard.actors import build_actor_list_for_prompt, load_actors
from storywizard.context import FlowContext
from storywizard.llm import LLMResponse, SchemaValidationError
from storywizard.placeholders import extract_actor_ids, replace_placeholders_with_descriptions
from storywizard.prompts import (
    COMPILE_PROMPT_TEMPLATE,
    DEFAULT_COMPILE_INSTRUCTIONS,
    render_prompt,
)
from storywizard.result import Err, Ok, Result

logger = logging.getLogger(__name__)

FLOW_NAME = "storyTextCompileFlow"
TEMPERATURE = 0.5
MAX_OUTPUT_TOKENS = 4000
EMPTY_DRAFT_SYNOPSIS = "A magical adventure story."

_FENCED_JSON_RE = re.compile(r"```json\n([\s\S]*?)\n```")


class StoryTextOutput(BaseModel):
    storyText: str = Field(min_length=50)
    synopsis: str = Field(min_length=10)


STORY_TEXT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "storyText": {"type": "string"},
        "synopsis": {"type": "string"},
    },
    "required": ["storyText", "synopsis"],
}


def build_draft(messages: list[dict[str, Any]]) -> str:
    """Beat continuations in order, then the first ending choice, blank-line separated."""
    parts = [
        (m.get("text") or "").strip()
        for m in messages
        if m.get("kind") == "beat_continuation"
    ]
    ending = next((m for m in messages if m.get("kind") == "child_ending_choice"), None)
    if ending is not None:
        parts.append((ending.get("text") or "").strip())
    return "\n\n".join(p for p in parts if p)


def extract_json_text(raw: str) -> str:
    match = _FENCED_JSON_RE.search(raw)
    return match.group(1).strip() if match else raw.strip()


def parse_story_text(raw: str) -> StoryTextOutput:
    """Parse the unstructured path. Raises ValueError with a readable message."""
    if not raw or not raw.strip():
        raise ValueError("Model returned empty text for story compilation")
    try:
        data = json.loads(extract_json_text(raw))
    except json.JSONDecodeError as e:
        raise ValueError(f"Model output is not valid JSON: {e}") from e
    try:
        return StoryTextOutput.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Model JSON does not match expected shape: {e}") from e


async def _generate(
    ctx: FlowContext,
    session_id: str,
    flow_name: str,
    prompt: str,
    schema: dict[str, Any] | None,
) -> LLMResponse:
    model = ctx.model("compile")
    started = time.monotonic()
    try:
        response = await ctx.llm(
            FLOW_NAME, prompt,
            model=model, schema=schema,
            temperature=TEMPERATURE, max_output_tokens=MAX_OUTPUT_TOKENS,
        )
    except Exception as e:
        storage.log_ai_call(
            session_id, flow_name, model, prompt, started,
            temperature=TEMPERATURE, max_output_tokens=MAX_OUTPUT_TOKENS, error=str(e),
        )
        raise
    storage.log_ai_call(
        session_id, flow_name, model, prompt, started,
        temperature=TEMPERATURE, max_output_tokens=MAX_OUTPUT_TOKENS,
        output_text=response.text, structured_output=response.output,
        finish_reason=response.finish_reason, usage=response.usage,
    )
    return response


async def _generate_story_text(
    ctx: FlowContext, session_id: str, prompt: str, debug: dict[str, Any],
) -> StoryTextOutput:
    try:
        response = await _generate(ctx, session_id, FLOW_NAME, prompt, STORY_TEXT_SCHEMA)
        debug["finishReason"] = response.finish_reason
        if response.output is not None:
            try:
                return StoryTextOutput.model_validate(response.output)
            except ValidationError as e:
                raise SchemaValidationError(f"Schema validation failed: {e}") from e
        return parse_story_text(response.text)
    except SchemaValidationError as e:
        logger.warning(f"[{FLOW_NAME}] Structured output rejected, retrying without schema: {e}")
        debug["schemaRetry"] = str(e)

    response = await _generate(ctx, session_id, f"{FLOW_NAME}:retry", prompt, None)
    debug["finishReason"] = response.finish_reason
    return parse_story_text(response.text)


async def compile_story_text(session_id: str, ctx: FlowContext) -> Result[dict[str, Any]]:
    """Compile the session transcript into {storyText, synopsis, actors}."""
    debug: dict[str, Any] = {"stage": "init", "sessionId": session_id}
    try:
        session = storage.get_doc(f"storySessions/{session_id}")
        if session is None:
            return Err(f"Session {session_id} not found", {"sessionId": session_id})
        child_id = session.get("childId")
        story_type_id = session.get("storyTypeId")
        parent_uid = session.get("parentUid")
        if not child_id or not story_type_id or not parent_uid:
            return Err(
                "Session is missing childId, storyTypeId or parentUid",
                {"sessionId": session_id},
            )

        debug["stage"] = "load"
        story_type = storage.get_doc(f"storyTypes/{story_type_id}")
        if story_type is None:
            return Err(f"Story type {story_type_id} not found", {"sessionId": session_id})
        child = storage.get_doc(f"children/{child_id}") or {}
        messages = storage.list_docs(f"storySessions/{session_id}/messages", order_by="createdAt")

        draft = build_draft(messages)
        debug["messageCount"] = len(messages)
        debug["draftLength"] = len(draft)
        if not draft:
            return Ok({
                "sessionId": session_id,
                "storyText": "",
                "synopsis": EMPTY_DRAFT_SYNOPSIS,
                "actors": [child_id],
            })

        session_actors = [a for a in session.get("actors") or [] if a != child_id]
        actors = load_actors([child_id, *session_actors], main_child_id=child_id)

        debug["stage"] = "prompt"
        prompt = render_prompt(COMPILE_PROMPT_TEMPLATE, {
            "instructions": ctx.prompt("compile") or DEFAULT_COMPILE_INSTRUCTIONS,
            "storyType": {
                "name": story_type.get("name", story_type_id),
                "shortDescription": story_type.get("shortDescription"),
            },
            "child": {"id": child_id, "displayName": child.get("displayName") or child_id},
            "actors": [{"id": a.id, "displayName": a.displayName} for a in actors],
            "actorList": build_actor_list_for_prompt(actors),
            "draft": draft,
        })
        prefix = ctx.prompt("global_prefix")
        if prefix:
            prompt = f"{prefix}\n\n{prompt}"
        debug["promptLength"] = len(prompt)

        storage.initialize_run_trace(
            session_id, parent_uid, childId=child_id, storyTypeId=story_type_id,
            storyTypeName=story_type.get("name"),
        )

        debug["stage"] = "generate"
        output = await _generate_story_text(ctx, session_id, prompt, debug)

        debug["stage"] = "finalize"
        synopsis = replace_placeholders_with_descriptions(output.synopsis)
        story_actors = extract_actor_ids(output.storyText)
        final_actors = [child_id] + [
            a for a in dict.fromkeys([*session_actors, *story_actors]) if a != child_id
        ]
        storage.complete_run_trace(session_id)
        return Ok({
            "sessionId": session_id,
            "storyText": output.storyText,
            "synopsis": synopsis,
            "actors": final_actors,
        })

    except Exception as e:
        logger.warning(f"[{FLOW_NAME}] {session_id} failed at {debug['stage']}: {e}")
        storage.complete_run_trace(session_id, error=str(e))
        return Err(
            f"Error in {FLOW_NAME}: {e}",
            {"sessionId": session_id, "debug": {**debug, "error": str(e)}},
        )
