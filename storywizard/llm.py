"""LLM client — HTTP connection to a generative-text backend.

Flows receive an LLM callable matching the protocol:

    async def __call__(self, stage, prompt, *, model=None, schema=None,
                       temperature=None, max_output_tokens=None) -> LLMResponse

`stage` names the calling flow (e.g. "storyTextCompile", "synopsis"). It is
used for logging and lets test stubs queue responses per stage.

When `schema` (a JSON Schema dict) is given, the backend is asked for
structured JSON output; `LLMResponse.output` holds the parsed object, or
None if the text was not valid JSON.

    HttpLLM   — real HTTP client for Gemini generateContent and
                OpenAI-compatible chat completion backends.

Flows get the LLM from their FlowContext; tests inject StubLLM instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class LLMResponse(BaseModel):
    text: str = ""
    output: Any = None
    finish_reason: str = ""
    usage: dict[str, Any] = Field(default_factory=dict)
    model: str = ""


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        model: str | None = None,
        schema: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse: ...


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["gemini", "openai"]


class HttpLLM:
    """Async HTTP client for text generation backends.

    Supported formats:
      "gemini"  — POST /v1beta/models/{model}:generateContent
                  Response: {"candidates": [{"content": {"parts": [{"text": ...}]}}]}
      "openai"  — POST /v1/chat/completions  {"model": ..., "messages": [...]}
                  Response: {"choices": [{"message": {"content": ...}}]}

    Args:
        provider_url:    Base URL of the backend.
        api_key:         API key, or empty string if not required.
        provider_format: Wire format to use. Defaults to "gemini".
        model:           Default model id when a call does not name one.
        timeout:         HTTP timeout in seconds. Defaults to 120.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "gemini",
        model: str = "gemini-2.5-flash",
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            if self._format == "gemini":
                headers["x-goog-api-key"] = self._api_key
            else:
                headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self,
        stage: str,
        prompt: str,
        model: str,
        schema: dict[str, Any] | None,
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            url = f"{self._base_url}/v1/chat/completions"
            body: dict[str, Any] = {
                "model": model,
                "messages": [{"role": "user", "content": prompt}],
            }
            if temperature is not None:
                body["temperature"] = temperature
            if max_output_tokens is not None:
                body["max_tokens"] = max_output_tokens
            if schema is not None:
                body["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": stage, "schema": schema},
                }
            return url, body

        # gemini (default)
        url = f"{self._base_url}/v1beta/models/{model}:generateContent"
        config: dict[str, Any] = {}
        if temperature is not None:
            config["temperature"] = temperature
        if max_output_tokens is not None:
            config["maxOutputTokens"] = max_output_tokens
        if schema is not None:
            config["responseMimeType"] = "application/json"
            config["responseJsonSchema"] = schema
        body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        if config:
            body["generationConfig"] = config
        return url, body

    def _parse_response(self, data: dict) -> tuple[str, str, dict[str, Any]]:
        """Extract (text, finish_reason, usage) from the response body."""
        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "message" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            usage = data.get("usage") or {}
            return (
                choices[0]["message"].get("content") or "",
                choices[0].get("finish_reason") or "",
                {
                    "inputTokens": usage.get("prompt_tokens"),
                    "outputTokens": usage.get("completion_tokens"),
                    "totalTokens": usage.get("total_tokens"),
                },
            )

        # gemini
        candidates = data.get("candidates")
        if not candidates:
            block = (data.get("promptFeedback") or {}).get("blockReason")
            if block:
                raise LLMError(f"Prompt blocked by provider: {block}")
            raise LLMError("Unexpected response format from Gemini backend")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if not p.get("thought"))
        meta = data.get("usageMetadata") or {}
        return (
            text,
            candidates[0].get("finishReason") or "",
            {
                "inputTokens": meta.get("promptTokenCount"),
                "outputTokens": meta.get("candidatesTokenCount"),
                "totalTokens": meta.get("totalTokenCount"),
                "thoughtsTokens": meta.get("thoughtsTokenCount"),
                "cachedContentTokens": meta.get("cachedContentTokenCount"),
            },
        )

    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        model: str | None = None,
        schema: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> LLMResponse:
        model = model or self._model
        url, body = self._build_request(stage, prompt, model, schema, temperature, max_output_tokens)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = f"LLM backend returned HTTP {status}: {e.response.text[:500]}"
            if status == 400 and schema is not None:
                raise SchemaValidationError(message) from e
            raise LLMError(message) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        text, finish_reason, usage = self._parse_response(resp.json())
        output = None
        if schema is not None:
            try:
                output = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("llm stage=%s returned non-JSON structured output", stage)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return LLMResponse(
            text=text, output=output, finish_reason=finish_reason, usage=usage, model=model,
        )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class SchemaValidationError(LLMError):
    """Structured output did not match (or the backend rejected) the requested schema."""
