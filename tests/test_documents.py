"""Tests for storywizard.storage documents — paths, sentinels, queries."""

import pytest

from storywizard import storage


class TestPaths:
    def test_set_and_get_round_trip(self):
        storage.set_doc("stories/abc", {"storyText": "Once upon a time"})
        assert storage.get_doc("stories/abc") == {"storyText": "Once upon a time"}

    def test_missing_doc_is_none(self):
        assert storage.get_doc("stories/nope") is None

    def test_nested_subcollection(self):
        storage.set_doc("stories/s1/storybooks/b1/pages/p1", {"pageNumber": 1})
        pages = storage.list_docs("stories/s1/storybooks/b1/pages")
        assert pages == [{"id": "p1", "pageNumber": 1}]

    def test_collection_path_rejected_for_doc(self):
        with pytest.raises(ValueError):
            storage.get_doc("stories")

    def test_traversal_segment_rejected(self):
        with pytest.raises(ValueError):
            storage.get_doc("stories/../secrets")

    def test_add_doc_generates_id(self):
        doc_id = storage.add_doc("exemplars", {"status": "generating"})
        assert len(doc_id) == 20
        assert storage.get_doc(f"exemplars/{doc_id}") == {"status": "generating"}

    def test_delete_doc(self):
        storage.set_doc("characters/c1", {"displayName": "Bruno"})
        assert storage.delete_doc("characters/c1") is True
        assert storage.delete_doc("characters/c1") is False
        assert storage.get_doc("characters/c1") is None


class TestUpdates:
    def test_update_missing_doc_raises(self):
        with pytest.raises(storage.DocumentNotFoundError):
            storage.update_doc("stories/missing", {"status": "x"})

    def test_dotted_field_creates_maps(self):
        storage.set_doc("stories/s1", {"title": "T"})
        storage.update_doc("stories/s1", {"imageGeneration.status": "running"})
        assert storage.get_doc("stories/s1") == {
            "title": "T",
            "imageGeneration": {"status": "running"},
        }

    def test_dotted_field_keeps_siblings(self):
        storage.set_doc("stories/s1", {"imageGeneration": {"status": "idle", "pagesTotal": 4}})
        storage.update_doc("stories/s1", {"imageGeneration.status": "ready"})
        assert storage.get_doc("stories/s1")["imageGeneration"] == {"status": "ready", "pagesTotal": 4}

    def test_increment_from_missing(self):
        storage.set_doc("characters/c1", {})
        storage.update_doc("characters/c1", {"usageCount": storage.Increment(1)})
        storage.update_doc("characters/c1", {"usageCount": storage.Increment(2)})
        assert storage.get_doc("characters/c1")["usageCount"] == 3

    def test_array_union_skips_duplicates(self):
        storage.set_doc("exemplars/e1", {"usedByStorybookIds": ["b1"]})
        storage.update_doc("exemplars/e1", {"usedByStorybookIds": storage.ArrayUnion(["b1", "b2"])})
        assert storage.get_doc("exemplars/e1")["usedByStorybookIds"] == ["b1", "b2"]

    def test_merge_preserves_existing_fields(self):
        storage.set_doc("stories/s1", {"createdAt": "2024", "metadata": {"title": "A"}})
        storage.set_doc("stories/s1", {"metadata": {"paragraphs": 3}}, merge=True)
        assert storage.get_doc("stories/s1") == {
            "createdAt": "2024",
            "metadata": {"title": "A", "paragraphs": 3},
        }

    def test_set_without_merge_overwrites(self):
        storage.set_doc("stories/s1", {"a": 1})
        storage.set_doc("stories/s1", {"b": 2})
        assert storage.get_doc("stories/s1") == {"b": 2}


class TestQueries:
    def test_list_where_and_order(self):
        storage.set_doc("pages/p2", {"pageNumber": 2, "kind": "text"})
        storage.set_doc("pages/p1", {"pageNumber": 1, "kind": "text"})
        storage.set_doc("pages/p0", {"kind": "cover_front"})
        ordered = storage.list_docs("pages", order_by="pageNumber")
        assert [p["id"] for p in ordered] == ["p1", "p2", "p0"]
        text_pages = storage.list_docs("pages", where={"kind": "text"})
        assert {p["id"] for p in text_pages} == {"p1", "p2"}

    def test_list_empty_collection(self):
        assert storage.list_docs("nothing") == []

    def test_get_docs_skips_missing_and_invalid(self):
        storage.set_doc("children/k1", {"displayName": "Mia"})
        found = storage.get_docs("children", ["k1", "k2", "bad/id"])
        assert found == {"k1": {"id": "k1", "displayName": "Mia"}}

    def test_find_by_field(self):
        storage.set_doc("characters/c1", {"displayName": "Bruno"})
        storage.set_doc("characters/c2", {"displayName": ["not", "hashable"]})
        found = storage.find_by_field("characters", "displayName", ["Bruno", "Nobody"])
        assert list(found) == ["Bruno"]
        assert found["Bruno"]["id"] == "c1"
