"""Tests for page image generation: strategies, fallback, storage."""

import pytest
from unittest.mock import AsyncMock, call, patch

from storywizard import storage
from storywizard.image_model import ImageGeneration
from storywizard.media import PLACEHOLDER_MODEL
from storywizard.pipeline.page_image import (
    ImagePromptInputs,
    build_actor_references,
    build_minimal_prompt,
    build_structured_prompt,
    dimension_hint,
    generate_page_image,
    is_retryable_error,
    resolve_art_style,
)

from conftest import TEST_DATA_DIR, SlowImageModel, StubImageModel

PAGE_PATH = "stories/s1/storybooks/b1/pages/p1"
CHILD_PHOTO = "data:image/png;base64,Q0hJTEQ="
PET_AVATAR = "data:image/png;base64,UEVU"
STYLE_IMAGE = "data:image/png;base64,U1RZTEU="


def _seed(**page_fields) -> None:
    storage.set_doc("children/k1", {"displayName": "Mia", "photos": [CHILD_PHOTO]})
    storage.set_doc("characters/c1", {"displayName": "Bruno", "type": "Pet", "avatarUrl": PET_AVATAR})
    storage.set_doc("imageStyles/st1", {"exampleImages": [{"url": STYLE_IMAGE}, {"title": "no url"}]})
    storage.set_doc("stories/s1", {"childId": "k1", "storyText": "..."})
    storage.set_doc("stories/s1/storybooks/b1", {
        "imageStyleId": "st1",
        "imageStylePrompt": "soft pastel crayons",
        "imageGeneration": {"status": "running", "pagesReady": 0},
    })
    storage.set_doc(PAGE_PATH, {
        "pageNumber": 1,
        "kind": "text",
        "bodyText": "Mia and Bruno dig in the sand.",
        "imagePrompt": "$$k1$$ and $$c1$$ dig in the sand",
        "entityIds": ["c1"],
        "layoutHints": {"targetWidthPx": 2400, "targetHeightPx": 1800},
        **page_fields,
    })


def _no_media(reason: str = "", message: str = "", text: str = "") -> ImageGeneration:
    return ImageGeneration(finish_reason=reason, finish_message=message, text=text, model="img")


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------

class TestPromptHelpers:
    def test_dimension_hint(self):
        assert dimension_hint(None, 100) == ""
        assert "landscape orientation, approximately 200x100 pixels" in dimension_hint(200, 100)
        assert "portrait" in dimension_hint(100, 200)
        assert "square" in dimension_hint(100, 100)

    def test_structured_prompt_sections(self):
        inputs = ImagePromptInputs(
            scene="A picnic", art_style="crayon", actors_json="{}",
            main_child_id="k1", child_age=5, style_images=["a", "b"], global_prompt="Be kind.",
        )
        prompt = build_structured_prompt(inputs, with_style_examples=True)
        assert prompt.startswith("Be kind.\n\n")
        assert "The main child ($$k1$$) is 5 years old." in prompt
        assert "Use the first 2 image(s) provided as visual style reference" in prompt
        assert "Scene: A picnic" in prompt
        without = build_structured_prompt(inputs, with_style_examples=False)
        assert "visual style reference" not in without

    def test_minimal_prompt(self):
        inputs = ImagePromptInputs(scene="A picnic", art_style="crayon", actors_json="{}")
        assert build_minimal_prompt(inputs) == "Art Style: crayon\n\nScene: A picnic"

    def test_retryable_patterns(self):
        assert is_retryable_error("HTTP 429: Resource exhausted")
        assert is_retryable_error("Image generation timed out after 5s")
        assert not is_retryable_error("Invalid API key")
        assert not is_retryable_error("generate a separate story")

    def test_art_style_precedence(self):
        assert resolve_art_style("explicit", {"imageStylePrompt": "book"}, {}) == "explicit"
        assert resolve_art_style(None, {"imageStylePrompt": "book"}, {}) == "book"
        assert resolve_art_style(None, {}, {"metadata": {"artStyleHint": "hint"}}) == "hint"
        assert "watercolor" in resolve_art_style(None, {}, {})


class TestActorReferences:
    def test_child_photos_and_character_avatar(self):
        _seed()
        actors, urls = build_actor_references(
            storage.get_doc("stories/s1"), storage.get_doc(PAGE_PATH),
        )
        assert actors["mainChild"]["displayName"] == "Mia"
        assert actors["characters"][0]["characterType"] == "Pet"
        assert urls == [CHILD_PHOTO, PET_AVATAR]

    def test_back_cover_uses_avatars_only(self):
        _seed(kind="cover_back")
        storage.update_doc("children/k1", {"avatarUrl": "https://cdn.test/mia.png"})
        actors, urls = build_actor_references(
            storage.get_doc("stories/s1"), storage.get_doc(PAGE_PATH),
        )
        assert urls == ["https://cdn.test/mia.png", PET_AVATAR]
        assert actors["mainChild"]["images"] == ["https://cdn.test/mia.png"]


# ---------------------------------------------------------------------------
# generate_page_image
# ---------------------------------------------------------------------------

class TestGeneratePageImage:
    async def test_success(self, flow_context):
        _seed()
        result = await generate_page_image("s1", "b1", "p1", flow_context)

        assert result.ok
        page = storage.get_doc(PAGE_PATH)
        assert page["imageStatus"] == "ready"
        assert page["imageUrl"] == result.value["imageUrl"]
        assert page["imageMetadata"]["width"] == 64
        assert page["imageMetadata"]["storagePath"] == f"{PAGE_PATH}.png"
        assert page["imageMetadata"]["lastErrorMessage"] is None
        assert storage.get_doc("stories/s1/storybooks/b1")["imageGeneration"]["pagesReady"] == 0

        call = flow_context.image_model.calls[0]
        assert call["images"] == [STYLE_IMAGE, CHILD_PHOTO, PET_AVATAR]
        assert call["aspect_ratio"] == "4:3"
        assert call["model"] == "gemini-2.5-flash-image-preview"
        assert "Art Style: soft pastel crayons" in call["prompt"]
        assert "Scene: Mia and Bruno dig in the sand." in call["prompt"]

    async def test_strategies_narrow_then_error(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([
            _no_media("IMAGE_OTHER", "nope"), _no_media("IMAGE_OTHER", "nope"), _no_media("IMAGE_OTHER", "still no"),
        ])
        result = await generate_page_image("s1", "b1", "p1", flow_context)

        assert not result.ok
        assert result.message == "Image could not be generated after 3 attempts. Last reason: still no"
        calls = flow_context.image_model.calls
        assert len(calls) == 3
        assert len(calls[0]["images"]) == 3
        assert calls[1]["images"] == [CHILD_PHOTO, PET_AVATAR]
        assert calls[2]["images"] == []

        page = storage.get_doc(PAGE_PATH)
        assert page["imageStatus"] == "error"
        assert page["imageMetadata"]["lastErrorMessage"] == result.message
        assert storage.get_doc("stories/s1/storybooks/b1")["imageGeneration"]["pagesReady"] == 0

        subject, body = flow_context.notifier.sent[0]
        assert subject == "[StoryWizard] storyImageFlow failed"
        assert '"pageId": "p1"' in body

    async def test_safety_block_message(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([_no_media("IMAGE_SAFETY")] * 3)
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.message.startswith("Image was blocked by content safety filters after 3 attempts")

    async def test_non_retryable_error_stops(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([RuntimeError("Invalid API key")])
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert not result.ok
        assert result.message == "Invalid API key"
        assert len(flow_context.image_model.calls) == 1

    async def test_rate_limited_after_all_attempts(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([RuntimeError("HTTP 429: RESOURCE_EXHAUSTED")] * 3)
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert "rate limited by the provider after 3 attempts" in result.message
        assert len(flow_context.image_model.calls) == 3

    async def test_retryable_error_then_success(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([RuntimeError("UNAVAILABLE")])
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok
        assert len(flow_context.image_model.calls) == 2
        audit = storage.list_docs("aiFlowLogs", where={"status": "error"})
        assert audit[0]["pageId"] == "p1"

    async def test_fallback_with_regression_tag(self, flow_context):
        _seed()
        flow_context.image_model = StubImageModel([_no_media()] * 3)
        result = await generate_page_image("s1", "b1", "p1", flow_context, regression_tag="nightly")
        assert result.ok
        metadata = storage.get_doc(PAGE_PATH)["imageMetadata"]
        assert metadata["model"] == PLACEHOLDER_MODEL
        assert metadata["regressionTag"] == "nightly"
        assert (metadata["width"], metadata["height"]) == (2400, 1800)
        assert flow_context.notifier.sent == []

    async def test_fallback_from_context_flag(self, flow_context, monkeypatch):
        _seed()
        monkeypatch.setenv("STORYBOOK_IMAGE_FALLBACK", "true")
        flow_context.image_model = StubImageModel([RuntimeError("Invalid API key")])
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert not result.ok

        flow_context.image_fallback = True
        flow_context.image_model = StubImageModel([RuntimeError("Invalid API key")])
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok

    async def test_mock_images(self, flow_context):
        _seed()
        flow_context.mock_images = True
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok
        assert flow_context.image_model.calls == []
        assert storage.get_doc(PAGE_PATH)["imageMetadata"]["model"] == PLACEHOLDER_MODEL

    async def test_bucket_unavailable_inlines_data_uri(self, flow_context):
        storage.init_storage(TEST_DATA_DIR, bucket=False)
        _seed()
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok
        page = storage.get_doc(PAGE_PATH)
        assert page["imageUrl"].startswith("data:image/png;base64,")
        assert page["imageMetadata"]["storagePath"] is None

    async def test_force_deletes_previous_image(self, flow_context):
        _seed()
        old = storage.upload_object("old/p1.png", b"old", "image/png")
        storage.update_doc(PAGE_PATH, {"imageMetadata": {"storagePath": old["path"]}})
        result = await generate_page_image("s1", "b1", "p1", flow_context, force=True)
        assert result.ok
        assert storage.read_object(old["path"], old["downloadToken"]) is None

    async def test_explicit_aspect_ratio_wins(self, flow_context):
        _seed()
        await generate_page_image("s1", "b1", "p1", flow_context, aspect_ratio="1:1")
        assert flow_context.image_model.calls[0]["aspect_ratio"] == "1:1"

    async def test_missing_prompt(self, flow_context):
        _seed(imagePrompt="")
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert not result.ok
        assert result.detail["imageStatus"] == "error"

    async def test_missing_page(self, flow_context):
        _seed()
        result = await generate_page_image("s1", "b1", "ghost", flow_context)
        assert result.message == "Page ghost not found"


class TestSkipAndProgress:
    async def test_ready_page_skipped_unless_forced(self, flow_context):
        _seed(imageStatus="ready", imageUrl="https://cdn.test/p1.png")
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok
        assert result.value["skipped"] is True
        assert result.value["imageUrl"] == "https://cdn.test/p1.png"
        assert flow_context.image_model.calls == []

        result = await generate_page_image("s1", "b1", "p1", flow_context, force=True)
        assert result.ok
        assert "skipped" not in result.value
        assert len(flow_context.image_model.calls) == 1

    async def test_progress_counted_only_when_tracked(self, flow_context):
        _seed()
        await generate_page_image("s1", "b1", "p1", flow_context)
        assert storage.get_doc("stories/s1/storybooks/b1")["imageGeneration"]["pagesReady"] == 0
        await generate_page_image("s1", "b1", "p1", flow_context, force=True, track_progress=True)
        assert storage.get_doc("stories/s1/storybooks/b1")["imageGeneration"]["pagesReady"] == 1


class TestRetryTiming:
    async def test_linear_backoff_between_attempts(self, flow_context):
        _seed()
        flow_context.retry_delay = 0.1
        flow_context.image_model = StubImageModel([_no_media("IMAGE_OTHER", "nope")] * 3)
        with patch("asyncio.sleep", AsyncMock()) as sleep:
            result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert not result.ok
        assert sleep.await_args_list == [call(0.1), call(0.2)]

    async def test_slow_call_times_out_then_retries(self, flow_context):
        _seed()
        flow_context.image_timeout = 0.05
        flow_context.image_model = SlowImageModel(delays=[1.0], default_delay=0)
        result = await generate_page_image("s1", "b1", "p1", flow_context)
        assert result.ok
        assert any("timed out after 0.05s" in line for line in result.value["logs"])
        assert len(flow_context.image_model.calls) == 1
        audit = storage.list_docs("aiFlowLogs", where={"status": "error"})
        assert audit[0]["error"] == "Image generation timed out after 0.05s"
