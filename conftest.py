import asyncio
import json
import shutil
from pathlib import Path

import pytest

from storywizard import storage
from storywizard.context import FlowContext
from storywizard.image_model import ImageGeneration
from storywizard.llm import LLMResponse
from storywizard.media import build_placeholder_image, to_data_uri

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe and re-init data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    storage.init_storage(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


# ── Stubs ────────────────────────────────────────────────


class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response may be a str, an LLMResponse, or an exception to raise.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list] | None = None) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: list[dict] = []

    async def __call__(self, stage, prompt, *, model=None, schema=None,
                       temperature=None, max_output_tokens=None) -> LLMResponse:
        self.calls.append({"stage": stage, "prompt": prompt, "model": model, "schema": schema})
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage '{stage}' (no responses left)"
            )
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, LLMResponse):
            return item
        output = None
        if schema is not None:
            try:
                output = json.loads(item)
            except json.JSONDecodeError:
                output = None
        return LLMResponse(text=item, output=output, finish_reason="STOP", model=model or "stub")

    def assert_exhausted(self) -> None:
        leftover = {k: v for k, v in self._queues.items() if v}
        assert not leftover, f"StubLLM: unused responses {leftover}"


def png_data_uri(width: int = 64, height: int = 64) -> str:
    data, mime = build_placeholder_image("stub", width, height)
    return to_data_uri(data, mime)


class StubImageModel:
    """Image model stand-in. Queue ImageGeneration results or exceptions;
    once the queue is empty every call returns a small PNG."""

    def __init__(self, results: list | None = None) -> None:
        self._queue = list(results or [])
        self.calls: list[dict] = []

    async def __call__(self, prompt, images, *, aspect_ratio=None, model=None) -> ImageGeneration:
        self.calls.append({
            "prompt": prompt, "images": list(images),
            "aspect_ratio": aspect_ratio, "model": model,
        })
        if self._queue:
            item = self._queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ImageGeneration(media_url=png_data_uri(), finish_reason="STOP", model=model or "stub")


class SlowImageModel(StubImageModel):
    """StubImageModel that sleeps before answering and records peak concurrency.

    `delays` is consumed per call; once empty, `default_delay` applies.
    """

    def __init__(self, results: list | None = None, delays: list[float] | None = None,
                 default_delay: float = 0.01) -> None:
        super().__init__(results)
        self._delays = list(delays or [])
        self._default_delay = default_delay
        self.active = 0
        self.peak = 0

    async def __call__(self, prompt, images, *, aspect_ratio=None, model=None) -> ImageGeneration:
        delay = self._delays.pop(0) if self._delays else self._default_delay
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(delay)
            return await super().__call__(prompt, images, aspect_ratio=aspect_ratio, model=model)
        finally:
            self.active -= 1


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def __call__(self, subject: str, body: str) -> None:
        self.sent.append((subject, body))


@pytest.fixture
def flow_context() -> FlowContext:
    return FlowContext(
        config=storage.get_config(),
        llm=StubLLM(),
        image_model=StubImageModel(),
        notifier=RecordingNotifier(),
        image_timeout=5,
        retry_delay=0,
    )
