"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, story compile (full compile, text
compile, synopsis), storybookV2 (page image runs, exemplars, single page
image), print orders (Mixam document, submit, status, cancel), the Mixam
webhook, and token-checked bucket downloads.

Flow endpoints take a FlowContext via Depends(build_flow_context); tests
swap it with app.dependency_overrides.
"""

from fastapi import APIRouter

from .files import router as files_router
from .print_orders import router as print_orders_router
from .settings import router as settings_router
from .stories import router as stories_router
from .storybooks import router as storybooks_router
from .webhooks import router as webhooks_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(stories_router)
router.include_router(storybooks_router)
router.include_router(print_orders_router)
router.include_router(webhooks_router)
router.include_router(files_router)
