"""Token-checked downloads from the local bucket."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from storywizard import storage

router = APIRouter()


@router.get("/files/{path:path}")
async def download_file(path: str, token: str = ""):
    """Serve a bucket object if `token` matches its download token."""
    try:
        found = storage.read_object(path, token)
    except ValueError:
        found = None
    if found is None:
        raise HTTPException(404, "File not found")
    data, content_type = found
    return Response(content=data, media_type=content_type)
