"""Storybook image, exemplar, and single page image endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from storywizard import storage
from storywizard.context import FlowContext, build_flow_context
from storywizard.pipeline import (
    StorybookLockedError,
    generate_page_image,
    generate_storybook_exemplars,
    generate_storybook_images,
    record_run_failure,
)
from storywizard.pipeline.storybook_images import RATE_LIMIT_MESSAGE, is_rate_limit_error

from .models import ExemplarsBody, PageImageBody, StorybookImagesBody
from .stories import respond

logger = logging.getLogger(__name__)

router = APIRouter()


def _run_failure_response(story_id: str, storybook_id: str, error: Exception, ctx: FlowContext):
    message = str(error) or type(error).__name__
    logger.warning(f"[storybookV2] Run for {story_id}/{storybook_id} crashed: {message}")
    record_run_failure(story_id, storybook_id, message)
    if is_rate_limit_error(message):
        return JSONResponse(
            {"ok": False, "rateLimited": True, "errorMessage": RATE_LIMIT_MESSAGE},
            status_code=429,
        )
    body = {"ok": False, "errorMessage": message}
    if not ctx.production:
        body["debug"] = {"error": repr(error)}
    return JSONResponse(body, status_code=500)


@router.post("/storybookV2/images")
async def storybook_images(body: StorybookImagesBody, ctx: FlowContext = Depends(build_flow_context)):
    """Generate every page image a storybook still needs."""
    try:
        return await generate_storybook_images(
            body.storyId, body.storybookId, ctx,
            force=body.forceRegenerate,
            page_id=body.pageId,
            image_style_prompt=body.imageStylePrompt,
            regression_tag=body.regressionTag,
            target_width=body.targetWidthPx,
            target_height=body.targetHeightPx,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    except storage.DocumentNotFoundError as e:
        raise HTTPException(404, str(e))
    except StorybookLockedError as e:
        raise HTTPException(409, str(e))
    except Exception as e:
        return _run_failure_response(body.storyId, body.storybookId, e, ctx)


@router.post("/storybookV2/exemplars")
async def storybook_exemplars(body: ExemplarsBody, ctx: FlowContext = Depends(build_flow_context)):
    """Ensure every actor in a storybook has a reference sheet for its style."""
    try:
        result = await generate_storybook_exemplars(
            body.storyId, body.storybookId, ctx, force=body.forceRegenerate,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    except storage.DocumentNotFoundError as e:
        raise HTTPException(404, str(e))
    except StorybookLockedError as e:
        raise HTTPException(409, str(e))
    if not result["ok"]:
        return JSONResponse(result, status_code=500)
    return result


@router.post("/storybookV2/pageImage")
async def storybook_page_image(body: PageImageBody, ctx: FlowContext = Depends(build_flow_context)):
    """Generate the image for a single page."""
    if not body.storyId or not body.storybookId or not body.pageId:
        raise HTTPException(400, "storyId, storybookId and pageId are required")
    result = await generate_page_image(
        body.storyId, body.storybookId, body.pageId, ctx,
        force=body.forceRegenerate,
        regression_tag=body.regressionTag,
        image_style_prompt=body.imageStylePrompt,
        target_width=body.targetWidthPx,
        target_height=body.targetHeightPx,
        aspect_ratio=body.aspectRatio,
    )
    return respond(result, ctx)
