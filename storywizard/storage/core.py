"""Storage initialization, path helpers, and id utilities."""

import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

_data_dir: Path | None = None
_bucket_enabled: bool = True

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


def init_storage(data_dir: Path, bucket: bool = True) -> None:
    """Point storage at data_dir. bucket=False simulates an unavailable bucket."""
    global _data_dir, _bucket_enabled
    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)
    _bucket_enabled = bucket
    if bucket:
        bucket_root().mkdir(exist_ok=True)


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_storage() before using storage"
    return _data_dir


def bucket_enabled() -> bool:
    return _bucket_enabled


def bucket_root() -> Path:
    return data_dir() / "bucket"


def new_id() -> str:
    """Return a 20-char document id."""
    return uuid.uuid4().hex[:20]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def split_path(path: str) -> list[str]:
    """Split a slash path into validated segments.

    "stories/abc/storybooks" → ["stories", "abc", "storybooks"]
    """
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments:
        raise ValueError("Empty storage path")
    for seg in segments:
        if not _SEGMENT_RE.match(seg):
            raise ValueError(f"Invalid path segment: {seg!r}")
    return segments
