"""Tests for actor placeholder resolution."""

from storywizard import storage
from storywizard.placeholders import (
    build_actor_descriptions_for_audio,
    extract_actor_ids,
    extract_entity_metadata,
    fetch_entities,
    replace_placeholders_for_tts,
    replace_placeholders_in_text,
    replace_placeholders_with_descriptions,
    resolve_entities_in_text,
    resolve_placeholders,
)


def _seed():
    storage.set_doc("children/abc123def456789", {
        "displayName": "Mia", "pronouns": "she/her", "likes": ["cats", "kites"],
    })
    storage.set_doc("characters/bruno1", {
        "displayName": "Bruno", "type": "Pet", "likes": ["bones"],
        "namePronunciation": "BROO-no",
    })


# ---------------------------------------------------------------------------
# extract_actor_ids
# ---------------------------------------------------------------------------


class TestExtractActorIds:
    def test_order_and_dedup(self):
        text = "$$bruno1$$ met $abc123def456789$ and $$bruno1$$ again"
        assert extract_actor_ids(text) == ["bruno1", "abc123def456789"]

    def test_short_single_token_ignored(self):
        assert extract_actor_ids("costs $5$ today") == []

    def test_empty(self):
        assert extract_actor_ids("") == []


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolve:
    def test_double_and_single_forms(self):
        _seed()
        text = "$$abc123def456789$$ and $$bruno1$$ went out. $abc123def456789$ smiled."
        assert resolve_placeholders(text) == "Mia and Bruno went out. Mia smiled."

    def test_unknown_token_left_as_is(self):
        _seed()
        assert resolve_placeholders("Hello $$ghost$$!") == "Hello $$ghost$$!"

    def test_idempotent(self):
        _seed()
        once = resolve_placeholders("$$bruno1$$ ran to $$nobody$$")
        assert resolve_placeholders(once) == once

    def test_legacy_display_name_token(self):
        _seed()
        assert resolve_placeholders("$$Bruno$$ barked") == "Bruno barked"

    def test_characters_before_children(self):
        storage.set_doc("characters/dup", {"displayName": "Character Dup"})
        storage.set_doc("children/dup", {"displayName": "Child Dup"})
        entities = fetch_entities(["dup"])
        assert entities["dup"]["kind"] == "character"

    def test_entity_map_from_text(self):
        _seed()
        entities = resolve_entities_in_text("$$bruno1$$ and $$ghost$$")
        assert set(entities) == {"bruno1"}
        assert entities["bruno1"]["kind"] == "character"

    def test_missing_display_name_falls_back_to_id(self):
        storage.set_doc("characters/nameless", {})
        entities = fetch_entities(["nameless"])
        assert replace_placeholders_in_text("$$nameless$$", entities) == "nameless"


class TestDescriptions:
    def test_character_gets_description_child_gets_name(self):
        _seed()
        text = "$$abc123def456789$$ hugged $$bruno1$$."
        assert replace_placeholders_with_descriptions(text) == "Mia hugged [Bruno, a pet, likes bones]."

    def test_tts_uses_pronunciation(self):
        _seed()
        entities = resolve_entities_in_text("$$bruno1$$ $$abc123def456789$$")
        assert replace_placeholders_for_tts("$$bruno1$$ and $$abc123def456789$$", entities) == "BROO-no and Mia"


class TestMetadata:
    def test_entity_metadata(self):
        _seed()
        text = "$$bruno1$$ and $$abc123def456789$$ and $$bruno1$$"
        entities = resolve_entities_in_text(text)
        metadata = extract_entity_metadata(text, entities)
        assert [m["id"] for m in metadata] == ["bruno1", "abc123def456789"]
        assert metadata[1] == {
            "id": "abc123def456789", "displayName": "Mia", "avatarUrl": None, "type": "child",
        }

    def test_audio_descriptions(self):
        _seed()
        entities = resolve_entities_in_text("$$bruno1$$ $$abc123def456789$$")
        hint = build_actor_descriptions_for_audio(["abc123def456789", "bruno1"], entities)
        assert "Mia is the main character of this story. She uses she/her pronouns." in hint
        assert "Likes cats and kites." in hint
        assert "Bruno is a pet. They use they/them pronouns." in hint
        assert '[Pronunciation: The name "Bruno" should be pronounced as "BROO-no".]' in hint

    def test_audio_descriptions_unresolved(self):
        assert build_actor_descriptions_for_audio(["ghost"], {}) == ""
