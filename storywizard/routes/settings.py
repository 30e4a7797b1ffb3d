"""Health check and settings endpoints."""

from fastapi import APIRouter

from storywizard import storage

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get stored settings (connections, models, prompts, notifications)."""
    return storage.get_config()


@router.patch("/settings")
async def update_settings(body: dict):
    """Update stored settings (partial merge per group)."""
    return storage.update_config(body)
