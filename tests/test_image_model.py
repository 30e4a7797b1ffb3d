"""Tests for storywizard.image_model — HttpImageModel."""

import pytest
import httpx
from unittest.mock import AsyncMock, MagicMock, patch

from storywizard.image_model import HttpImageModel, ImageModelError


def _mock_response(body: dict, status: int = 200, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


@pytest.fixture
def model() -> HttpImageModel:
    return HttpImageModel(provider_url="https://gemini.test", api_key="k", model="img-model")


class TestRequest:
    async def test_references_precede_prompt(self, model: HttpImageModel) -> None:
        body = {"candidates": [{"content": {"parts": []}}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        with patch("httpx.AsyncClient.post", mock_post):
            await model("draw", ["data:image/png;base64,AAAA", "https://not-inline"], aspect_ratio="4:3")
        assert mock_post.call_args[0][0] == "https://gemini.test/v1beta/models/img-model:generateContent"
        sent = mock_post.call_args.kwargs["json"]
        parts = sent["contents"][0]["parts"]
        assert parts == [
            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
            {"text": "draw"},
        ]
        assert sent["generationConfig"] == {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {"aspectRatio": "4:3"},
        }


class TestResponse:
    async def test_first_inline_image_returned(self, model: HttpImageModel) -> None:
        body = {"candidates": [{
            "content": {"parts": [
                {"text": "Here you go"},
                {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}},
                {"inlineData": {"mimeType": "image/png", "data": "WFla"}},
            ]},
            "finishReason": "STOP",
        }]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            result = await model("draw", [])
        assert result.media_url == "data:image/jpeg;base64,QUJD"
        assert result.text == "Here you go"
        assert result.finish_reason == "STOP"
        assert result.model == "img-model"

    async def test_no_media_is_not_an_exception(self, model: HttpImageModel) -> None:
        body = {"candidates": [{
            "content": {"parts": [{"text": "I can't draw that"}]},
            "finishReason": "IMAGE_SAFETY",
            "finishMessage": "blocked",
        }]}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            result = await model("draw", [])
        assert result.media_url is None
        assert result.finish_reason == "IMAGE_SAFETY"
        assert result.finish_message == "blocked"

    async def test_blocked_prompt(self, model: HttpImageModel) -> None:
        body = {"promptFeedback": {"blockReason": "PROHIBITED_CONTENT"}}
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=_mock_response(body))):
            result = await model("draw", [])
        assert result.media_url is None
        assert result.finish_reason == "PROHIBITED_CONTENT"


class TestErrors:
    async def test_http_error(self, model: HttpImageModel) -> None:
        resp = _mock_response({}, status=429, text="Resource exhausted")
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(ImageModelError, match="HTTP 429: Resource exhausted"):
                await model("draw", [])

    async def test_timeout(self, model: HttpImageModel) -> None:
        with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(ImageModelError, match="timed out"):
                await model("draw", [])
