"""Image bytes helpers: media URL parsing, reference fetching, dimensions, placeholders."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re

import httpx
from PIL import Image, ImageDraw, UnidentifiedImageError

logger = logging.getLogger(__name__)

PLACEHOLDER_MODEL = "mock/storybook"

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.DOTALL)
# Some providers return "data:image/png,base64,..." (comma instead of semicolon)
_MALFORMED_DATA_URL_RE = re.compile(r"^data:([^;,]+),base64,(.*)$", re.DOTALL)


class MediaError(ValueError):
    """Raised when image bytes cannot be recovered from a media URL."""


def _sniff_mime(data: bytes) -> str | None:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _b64decode(text: str) -> bytes:
    return base64.b64decode(re.sub(r"\s+", "", text), validate=True)


async def parse_media_url(url: str) -> tuple[bytes, str]:
    """Return (bytes, mime_type) for a data URL, http(s) URL, or bare base64."""
    if not url:
        raise MediaError("Empty media URL")

    match = _DATA_URL_RE.match(url)
    if match:
        try:
            return _b64decode(match.group(2)), match.group(1)
        except (binascii.Error, ValueError) as e:
            raise MediaError(f"Invalid base64 in data URL ({match.group(1)})") from e

    if url.startswith(("http://", "https://")):
        async with httpx.AsyncClient(timeout=60, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
        mime = resp.headers.get("content-type", "image/png").split(";")[0]
        return resp.content, mime

    match = _MALFORMED_DATA_URL_RE.match(url)
    if match:
        try:
            return _b64decode(match.group(2)), match.group(1)
        except (binascii.Error, ValueError) as e:
            raise MediaError(f"Invalid base64 in malformed data URL ({match.group(1)})") from e

    try:
        data = _b64decode(url)
    except (binascii.Error, ValueError):
        data = b""
    if data:
        mime = _sniff_mime(data)
        if mime:
            return data, mime
        if len(data) > 1000:
            return data, "image/png"

    preview = url[:60].replace("\n", " ")
    raise MediaError(f"Unrecognised media URL format (length {len(url)}, starts with {preview!r})")


def to_data_uri(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def split_data_uri(uri: str) -> tuple[str, str]:
    """Return (mime_type, base64_payload) for a well-formed data URI."""
    match = _DATA_URL_RE.match(uri)
    if not match:
        raise MediaError("Not a base64 data URI")
    return match.group(1), match.group(2)


def extension_from_mime(mime_type: str) -> str:
    mime = mime_type.lower()
    if "png" in mime:
        return "png"
    if "jpeg" in mime or "jpg" in mime:
        return "jpg"
    if "webp" in mime:
        return "webp"
    if "svg" in mime:
        return "svg"
    return "img"


async def fetch_image_as_data_uri(url: str) -> str | None:
    """Download a reference image and inline it. Returns None on any failure."""
    if url.startswith("data:"):
        return url
    try:
        async with httpx.AsyncClient(timeout=30, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"[media] Failed to fetch reference image {url}: {e}")
        return None
    mime = resp.headers.get("content-type", "image/png").split(";")[0]
    return to_data_uri(resp.content, mime)


def image_dimensions(data: bytes) -> tuple[int, int] | None:
    """Best-effort (width, height); None if the bytes are not a readable image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"[media] Could not read image dimensions: {e}")
        return None


def build_placeholder_image(
    label: str,
    width: int | None = None,
    height: int | None = None,
) -> tuple[bytes, str]:
    """Render a gradient PNG placeholder with a caption. Returns (bytes, mime)."""
    width = width or 1024
    height = height or 1024
    img = Image.new("RGB", (width, height))
    draw = ImageDraw.Draw(img)
    top, bottom = (255, 214, 165), (176, 196, 255)
    for y in range(height):
        t = y / max(height - 1, 1)
        color = tuple(int(top[i] + (bottom[i] - top[i]) * t) for i in range(3))
        draw.line([(0, y), (width, y)], fill=color)
    caption = f"Storybook Mock\n{label[:60]}"
    draw.multiline_text((width // 20, height // 2), caption, fill=(60, 60, 90), spacing=8)
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue(), "image/png"
