"""Image model client — HTTP connection to a multimodal image generator.

Flows receive an ImageModel callable matching the protocol:

    async def __call__(self, prompt, images, *, aspect_ratio=None, model=None)
        -> ImageGeneration

`images` are data URIs sent ahead of the prompt text as reference
material. A generation with no media (safety block, recitation, model
refusal) is NOT an exception: `media_url` is None and `finish_reason` /
`finish_message` explain why. Transport and HTTP failures raise
ImageModelError with the provider's status text in the message.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from .media import MediaError, split_data_uri

logger = logging.getLogger(__name__)


class ImageGeneration(BaseModel):
    media_url: str | None = None
    finish_reason: str = ""
    finish_message: str = ""
    text: str = ""
    model: str = ""


class ImageModel(Protocol):
    async def __call__(
        self,
        prompt: str,
        images: list[str],
        *,
        aspect_ratio: str | None = None,
        model: str | None = None,
    ) -> ImageGeneration: ...


class HttpImageModel:
    """Gemini generateContent client with image output.

    Request: contents.parts = [inlineData per reference image..., text]
             generationConfig.responseModalities = ["TEXT", "IMAGE"]
             generationConfig.imageConfig.aspectRatio = "4:3" etc.
    Response: the first part carrying inlineData is the generated image.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "gemini-2.5-flash-image-preview",
        timeout: float = 180.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        return headers

    def _build_request(
        self, prompt: str, images: list[str], model: str, aspect_ratio: str | None,
    ) -> tuple[str, dict]:
        parts: list[dict[str, Any]] = []
        for uri in images:
            try:
                mime, payload = split_data_uri(uri)
            except MediaError:
                logger.warning("[image_model] Skipping reference that is not a data URI")
                continue
            parts.append({"inlineData": {"mimeType": mime, "data": payload}})
        parts.append({"text": prompt})

        config: dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
        if aspect_ratio:
            config["imageConfig"] = {"aspectRatio": aspect_ratio}
        url = f"{self._base_url}/v1beta/models/{model}:generateContent"
        return url, {"contents": [{"role": "user", "parts": parts}], "generationConfig": config}

    def _parse_response(self, data: dict, model: str) -> ImageGeneration:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            return ImageGeneration(
                finish_reason=feedback.get("blockReason", "NO_CANDIDATES"),
                finish_message=feedback.get("blockReasonMessage", ""),
                model=model,
            )
        candidate = candidates[0]
        media_url = None
        texts: list[str] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData")
            if inline and media_url is None:
                media_url = f"data:{inline.get('mimeType', 'image/png')};base64,{inline.get('data', '')}"
            elif part.get("text"):
                texts.append(part["text"])
        return ImageGeneration(
            media_url=media_url,
            finish_reason=candidate.get("finishReason") or "",
            finish_message=candidate.get("finishMessage") or "",
            text="".join(texts),
            model=model,
        )

    async def __call__(
        self,
        prompt: str,
        images: list[str],
        *,
        aspect_ratio: str | None = None,
        model: str | None = None,
    ) -> ImageGeneration:
        model = model or self._model
        url, body = self._build_request(prompt, images, model, aspect_ratio)
        logger.debug("image call model=%s images=%d prompt_len=%d", model, len(images), len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ImageModelError(f"Cannot connect to image model at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise ImageModelError(
                f"Image model returned HTTP {e.response.status_code}: {e.response.text[:500]}"
            ) from e
        except httpx.TimeoutException as e:
            raise ImageModelError(f"Image model timed out after {self._timeout}s") from e

        return self._parse_response(resp.json(), model)


class ImageModelError(RuntimeError):
    """Raised when the image backend cannot be reached or returns an HTTP error."""
