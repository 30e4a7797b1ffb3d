"""Tests for the storybook image run."""

import pytest

from storywizard import storage
from storywizard.pipeline.page_image import generate_page_image
from storywizard.pipeline.storybook_images import (
    PAGES_FAILED_MESSAGE,
    RATE_LIMIT_MESSAGE,
    StorybookLockedError,
    generate_storybook_images,
    is_rate_limit_error,
    record_run_failure,
)

from conftest import SlowImageModel, StubImageModel

BOOK = "stories/s1/storybooks/b1"


def _seed(pages: int = 3, **storybook) -> None:
    storage.set_doc("children/k1", {"displayName": "Mia"})
    storage.set_doc("stories/s1", {"childId": "k1"})
    storage.set_doc(BOOK, {"imageStylePrompt": "crayon", **storybook})
    for n in range(1, pages + 1):
        storage.set_doc(f"{BOOK}/pages/p{n}", {
            "pageNumber": n, "kind": "text", "imagePrompt": f"scene {n}", "bodyText": f"Page {n}.",
        })
    storage.set_doc(f"{BOOK}/pages/blank", {"pageNumber": 99, "kind": "blank"})


class TestRun:
    async def test_all_pages_generated(self, flow_context):
        _seed()
        result = await generate_storybook_images("s1", "b1", flow_context)

        assert result["ok"] is True
        assert result["status"] == "ready"
        assert (result["ready"], result["total"], result["generated"]) == (4, 4, 3)
        assert result["failures"] == []
        tracker = storage.get_doc(BOOK)["imageGeneration"]
        assert tracker["status"] == "ready"
        assert tracker["pagesTotal"] == 3
        assert tracker["pagesReady"] == 3
        assert storage.get_doc(f"{BOOK}/pages/blank")["imageStatus"] == "ready"
        assert len(flow_context.image_model.calls) == 3

    async def test_default_dimensions_without_layout(self, flow_context):
        _seed(pages=1, imageWidthPx=1800, imageHeightPx=2400)
        result = await generate_storybook_images("s1", "b1", flow_context)
        assert "[layout] default-print-layout (not found, using default dimensions)" in result["logs"]
        hints = storage.get_doc(f"{BOOK}/pages/p1")["layoutHints"]
        assert hints == {"targetWidthPx": 1800, "targetHeightPx": 2400, "aspectRatio": "3:4"}
        assert flow_context.image_model.calls[0]["aspect_ratio"] == "3:4"

    async def test_layout_dimensions(self, flow_context):
        storage.set_doc("printLayouts/square", {
            "leafWidth": 8, "leafHeight": 8,
            "insideLayout": {"imageBox": {"x": 0, "y": 0, "width": 8, "height": 6}},
        })
        _seed(pages=1, printLayoutId="square")
        await generate_storybook_images("s1", "b1", flow_context)
        hints = storage.get_doc(f"{BOOK}/pages/p1")["layoutHints"]
        assert hints == {"targetWidthPx": 2400, "targetHeightPx": 1800, "aspectRatio": "4:3"}

    async def test_ready_pages_skipped_unless_forced(self, flow_context):
        _seed(pages=2)
        storage.update_doc(f"{BOOK}/pages/p1", {"imageStatus": "ready", "imageUrl": "https://cdn.test/p1.png"})
        await generate_storybook_images("s1", "b1", flow_context)
        assert len(flow_context.image_model.calls) == 1
        assert storage.get_doc(BOOK)["imageGeneration"]["pagesTotal"] == 1

        await generate_storybook_images("s1", "b1", flow_context, force=True)
        assert len(flow_context.image_model.calls) == 3

    async def test_batches_at_most_three_pages(self, flow_context):
        _seed(pages=7)
        flow_context.image_model = SlowImageModel()
        result = await generate_storybook_images("s1", "b1", flow_context)
        assert result["generated"] == 7
        assert flow_context.image_model.peak == 3

    async def test_single_page_calls_keep_progress_within_total(self, flow_context):
        _seed()
        await generate_storybook_images("s1", "b1", flow_context)
        await generate_page_image("s1", "b1", "p2", flow_context, force=True)
        await generate_page_image("s1", "b1", "p3", flow_context)
        tracker = storage.get_doc(BOOK)["imageGeneration"]
        assert tracker["pagesReady"] == tracker["pagesTotal"] == 3

    async def test_single_page(self, flow_context):
        _seed()
        result = await generate_storybook_images("s1", "b1", flow_context, page_id="p2")
        assert result["generated"] == 1
        assert storage.get_doc(f"{BOOK}/pages/p1").get("imageStatus") is None

    async def test_page_failures(self, flow_context):
        _seed(pages=2)
        flow_context.image_model = StubImageModel([RuntimeError("Invalid API key")] * 2)
        result = await generate_storybook_images("s1", "b1", flow_context)

        assert result["ok"] is False
        assert result["status"] == "error"
        assert {f["pageId"] for f in result["failures"]} == {"p1", "p2"}
        assert result["failures"][0]["errorMessage"] == "Invalid API key"
        tracker = storage.get_doc(BOOK)["imageGeneration"]
        assert tracker["status"] == "error"
        assert tracker["lastErrorMessage"] == PAGES_FAILED_MESSAGE
        assert tracker["pagesReady"] == 0

    async def test_rate_limited(self, flow_context):
        _seed(pages=1)
        flow_context.image_model = StubImageModel([RuntimeError("HTTP 429: RESOURCE_EXHAUSTED")] * 3)
        result = await generate_storybook_images("s1", "b1", flow_context)

        assert result["status"] == "rate_limited"
        assert result["rateLimited"] is True
        assert result["retryAt"]
        tracker = storage.get_doc(BOOK)["imageGeneration"]
        assert tracker["status"] == "rate_limited"
        assert tracker["lastErrorMessage"] == RATE_LIMIT_MESSAGE
        assert tracker["rateLimitRetryCount"] == 1


class TestPreconditions:
    async def test_missing_ids(self, flow_context):
        with pytest.raises(ValueError):
            await generate_storybook_images("", "b1", flow_context)

    async def test_missing_storybook(self, flow_context):
        with pytest.raises(storage.DocumentNotFoundError):
            await generate_storybook_images("s1", "nope", flow_context)

    async def test_locked(self, flow_context):
        _seed(isLocked=True)
        with pytest.raises(StorybookLockedError):
            await generate_storybook_images("s1", "b1", flow_context)
        assert "imageGeneration" not in storage.get_doc(BOOK)

    async def test_no_pages(self, flow_context):
        storage.set_doc("stories/s1", {})
        storage.set_doc(BOOK, {})
        with pytest.raises(ValueError, match="no pages"):
            await generate_storybook_images("s1", "b1", flow_context)


def test_rate_limit_patterns():
    assert is_rate_limit_error("429 Too Many Requests")
    assert not is_rate_limit_error("Invalid API key")


def test_record_run_failure():
    storage.set_doc(BOOK, {})
    assert record_run_failure("s1", "b1", "quota exceeded").value == "rate_limited"
    assert record_run_failure("s1", "b1", "disk on fire").value == "error"
    tracker = storage.get_doc(BOOK)["imageGeneration"]
    assert tracker["status"] == "error"
    assert tracker["lastErrorMessage"] == "disk on fire"
    assert not record_run_failure("s1", "ghost", "boom").ok
