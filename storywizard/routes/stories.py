"""Story compile, text compile, and synopsis endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from storywizard import storage
from storywizard.context import FlowContext, build_flow_context
from storywizard.pipeline import compile_story, compile_story_text, generate_story_synopsis
from storywizard.result import Result, to_payload

from .models import StoryCompileBody, StoryTextCompileBody, SynopsisBody

router = APIRouter()


def respond(result: Result, ctx: FlowContext, error_status: int = 500):
    """Flow result -> JSON body; Err becomes `error_status` with debug hidden in production."""
    payload = to_payload(result, include_debug=not ctx.production)
    if not result.ok:
        return JSONResponse(payload, status_code=error_status)
    return payload


@router.post("/storyCompile")
async def story_compile(body: StoryCompileBody, ctx: FlowContext = Depends(build_flow_context)):
    """Compile a finished story session into stories/{storyId}."""
    if not body.sessionId:
        raise HTTPException(400, "Missing sessionId")
    if storage.get_doc(f"storySessions/{body.sessionId}") is None:
        raise HTTPException(404, "Session not found")
    result = await compile_story(body.sessionId, ctx, body.storyOutputTypeId)
    return respond(result, ctx)


@router.post("/storyTextCompile")
async def story_text_compile(body: StoryTextCompileBody, ctx: FlowContext = Depends(build_flow_context)):
    """Run only the text compile stage on a chat session."""
    if not body.sessionId:
        raise HTTPException(400, "Missing sessionId")
    result = await compile_story_text(body.sessionId, ctx)
    return respond(result, ctx)


@router.post("/stories/{story_id}/synopsis")
async def story_synopsis(
    story_id: str,
    body: SynopsisBody | None = None,
    ctx: FlowContext = Depends(build_flow_context),
):
    """(Re)generate a story's synopsis."""
    if storage.get_doc(f"stories/{story_id}") is None:
        raise HTTPException(404, "Story not found")
    result = await generate_story_synopsis(story_id, ctx, force=bool(body and body.force))
    return respond(result, ctx)
