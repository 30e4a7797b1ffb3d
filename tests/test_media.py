"""Tests for media URL parsing, reference fetching and placeholders."""

import base64

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from storywizard.media import (
    MediaError,
    build_placeholder_image,
    extension_from_mime,
    fetch_image_as_data_uri,
    image_dimensions,
    parse_media_url,
    split_data_uri,
    to_data_uri,
)


def _mock_response(content: bytes, content_type: str = "image/png", status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.content = content
    resp.headers = {"content-type": content_type}
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


# ---------------------------------------------------------------------------
# parse_media_url
# ---------------------------------------------------------------------------

class TestParseMediaUrl:
    async def test_data_url(self) -> None:
        data, mime = await parse_media_url(to_data_uri(b"hello", "image/webp"))
        assert (data, mime) == (b"hello", "image/webp")

    async def test_malformed_data_url(self) -> None:
        payload = base64.b64encode(b"abc").decode()
        data, mime = await parse_media_url(f"data:image/png,base64,{payload}")
        assert (data, mime) == (b"abc", "image/png")

    async def test_bare_base64_sniffed(self) -> None:
        png, _ = build_placeholder_image("x", 16, 16)
        data, mime = await parse_media_url(base64.b64encode(png).decode())
        assert data == png
        assert mime == "image/png"

    async def test_http_url(self) -> None:
        mock_get = AsyncMock(return_value=_mock_response(b"jpegbytes", "image/jpeg; charset=binary"))
        with patch("httpx.AsyncClient.get", mock_get):
            data, mime = await parse_media_url("https://cdn.test/a.jpg")
        assert (data, mime) == (b"jpegbytes", "image/jpeg")

    async def test_invalid_base64_in_data_url(self) -> None:
        with pytest.raises(MediaError, match="Invalid base64"):
            await parse_media_url("data:image/png;base64,@@@")

    async def test_unrecognised(self) -> None:
        with pytest.raises(MediaError, match="Unrecognised media URL format"):
            await parse_media_url("just some words")

    async def test_empty(self) -> None:
        with pytest.raises(MediaError):
            await parse_media_url("")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_split_data_uri(self) -> None:
        assert split_data_uri("data:image/png;base64,QUJD") == ("image/png", "QUJD")
        with pytest.raises(MediaError):
            split_data_uri("https://x")

    def test_extension_from_mime(self) -> None:
        assert extension_from_mime("image/png") == "png"
        assert extension_from_mime("image/jpeg") == "jpg"
        assert extension_from_mime("image/webp") == "webp"
        assert extension_from_mime("image/svg+xml") == "svg"
        assert extension_from_mime("application/octet-stream") == "img"

    def test_placeholder_dimensions(self) -> None:
        data, mime = build_placeholder_image("Page 1", 120, 80)
        assert mime == "image/png"
        assert image_dimensions(data) == (120, 80)

    def test_dimensions_of_garbage(self) -> None:
        assert image_dimensions(b"not an image") is None

    async def test_fetch_passes_data_uri_through(self) -> None:
        assert await fetch_image_as_data_uri("data:image/png;base64,QUJD") == "data:image/png;base64,QUJD"

    async def test_fetch_inlines_remote(self) -> None:
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response(b"ABC"))):
            uri = await fetch_image_as_data_uri("https://cdn.test/a.png")
        assert uri == "data:image/png;base64,QUJD"

    async def test_fetch_failure_is_none(self) -> None:
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response(b"", status=404))):
            assert await fetch_image_as_data_uri("https://cdn.test/missing.png") is None
