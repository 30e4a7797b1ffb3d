"""Local object bucket with per-object download tokens.

Objects are stored under data/bucket/<path>; a sidecar
<path>.meta.json holds the content type, token, and custom metadata.
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any
from urllib.parse import quote

from .core import bucket_enabled, bucket_root, now_iso, split_path

DEFAULT_PUBLIC_URL = "http://localhost:13013"


class BucketUnavailableError(RuntimeError):
    """Raised when the object bucket is not configured or not writable."""


def _object_file(path: str) -> Path:
    if not bucket_enabled():
        raise BucketUnavailableError("Storage bucket is not configured")
    return bucket_root().joinpath(*split_path(path))


def _meta_file(file: Path) -> Path:
    return file.with_name(file.name + ".meta.json")


def object_url(path: str, token: str) -> str:
    base = os.getenv("APP_URL", DEFAULT_PUBLIC_URL).rstrip("/")
    return f"{base}/api/files/{quote(path, safe='/')}?token={token}"


def upload_object(
    path: str,
    data: bytes,
    content_type: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, str]:
    """Store bytes and return {path, downloadToken, url}."""
    file = _object_file(path)
    token = uuid.uuid4().hex
    try:
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_bytes(data)
        _meta_file(file).write_text(json.dumps({
            "contentType": content_type,
            "downloadToken": token,
            "uploadedAt": now_iso(),
            "metadata": metadata or {},
        }, indent=2))
    except OSError as e:
        raise BucketUnavailableError(f"Bucket write failed: {e}") from e
    return {"path": path, "downloadToken": token, "url": object_url(path, token)}


def delete_object(path: str) -> bool:
    file = _object_file(path)
    if not file.is_file():
        return False
    file.unlink()
    _meta_file(file).unlink(missing_ok=True)
    return True


def read_object(path: str, token: str) -> tuple[bytes, str] | None:
    """Return (data, content_type) if the object exists and the token matches."""
    file = _object_file(path)
    meta_file = _meta_file(file)
    if not file.is_file() or not meta_file.is_file():
        return None
    meta = json.loads(meta_file.read_text())
    if meta.get("downloadToken") != token:
        return None
    return file.read_bytes(), meta.get("contentType", "application/octet-stream")
