"""Actor placeholder resolution in generated story text.

Generated text refers to actors by id rather than by name:

  $$abc123$$            canonical form, any id without "$"
  $abc123def456789$     fallback form some models emit, 15+ alphanumerics

Ids are looked up in characters, then children, by document id and then
by displayName (older stories stored names in the token). Tokens that
do not resolve are left exactly as written, so resolving is idempotent.
"""

from __future__ import annotations

import re
from typing import Any

from . import storage

DOUBLE_TOKEN_RE = re.compile(r"\$\$([^$]+)\$\$")
SINGLE_TOKEN_RE = re.compile(r"\$([a-zA-Z0-9]{15,})\$")

ACTOR_ID_RE = re.compile(r"\$\$([a-zA-Z0-9_-]+)\$\$")
SINGLE_ACTOR_ID_RE = re.compile(r"\$([a-zA-Z0-9_-]{15,})\$")

# key -> {"id", "kind": "character" | "child", **document}
EntityMap = dict[str, dict[str, Any]]


def extract_actor_ids(text: str) -> list[str]:
    """Unique actor ids referenced in text, in first-seen order."""
    if not text:
        return []
    positioned = [(m.start(), m.group(1)) for m in ACTOR_ID_RE.finditer(text)]
    positioned += [(m.start(), m.group(1)) for m in SINGLE_ACTOR_ID_RE.finditer(text)]
    positioned.sort()
    return list(dict.fromkeys(actor_id for _, actor_id in positioned))


def _token_keys(text: str) -> list[str]:
    keys = [m.strip() for m in DOUBLE_TOKEN_RE.findall(text)]
    keys += SINGLE_TOKEN_RE.findall(text)
    return list(dict.fromkeys(k for k in keys if k))


def fetch_entities(keys: list[str]) -> EntityMap:
    """Resolve ids (or legacy display names) to actor documents."""
    entities: EntityMap = {}
    pending = list(dict.fromkeys(keys))

    for collection, kind in (("characters", "character"), ("children", "child")):
        for doc_id, doc in storage.get_docs(collection, pending).items():
            entities[doc_id] = {**doc, "kind": kind}
        pending = [k for k in pending if k not in entities]

    for collection, kind in (("characters", "character"), ("children", "child")):
        if not pending:
            break
        for name, doc in storage.find_by_field(collection, "displayName", pending).items():
            entities[name] = {**doc, "kind": kind}
        pending = [k for k in pending if k not in entities]

    return entities


def resolve_entities_in_text(text: str) -> EntityMap:
    if not text:
        return {}
    return fetch_entities(_token_keys(text))


def _substitute(text: str, entity_map: EntityMap, render) -> str:
    def replace(match: re.Match) -> str:
        entity = entity_map.get(match.group(1).strip())
        return render(entity) if entity else match.group(0)

    text = DOUBLE_TOKEN_RE.sub(replace, text)
    return SINGLE_TOKEN_RE.sub(replace, text)


def replace_placeholders_in_text(text: str, entity_map: EntityMap) -> str:
    """Replace tokens with display names."""
    if not text:
        return text
    return _substitute(text, entity_map, lambda e: e.get("displayName") or e["id"])


def resolve_placeholders(text: str) -> str:
    """Fetch referenced actors and replace tokens with display names."""
    return replace_placeholders_in_text(text, resolve_entities_in_text(text))


def _describe(entity: dict[str, Any]) -> str:
    name = entity.get("displayName") or entity["id"]
    if entity["kind"] != "character":
        return name
    parts = [name]
    if entity.get("type"):
        parts.append(f"a {entity['type'].lower()}")
    likes = entity.get("likes") or []
    if likes:
        parts.append(f"likes {', '.join(likes)}")
    return f"[{', '.join(parts)}]"


def replace_placeholders_with_descriptions(text: str) -> str:
    """Replace tokens with short descriptions, e.g. "[Bruno, a pet, likes bones]".

    Children get just their display name.
    """
    if not text:
        return text
    return _substitute(text, resolve_entities_in_text(text), _describe)


def replace_placeholders_for_tts(text: str, entity_map: EntityMap) -> str:
    """Replace tokens with how names should be spoken (namePronunciation)."""
    if not text:
        return text
    return _substitute(
        text, entity_map,
        lambda e: e.get("namePronunciation") or e.get("displayName") or e["id"],
    )


def extract_entity_metadata(text: str, entity_map: EntityMap) -> list[dict[str, Any]]:
    """{id, displayName, avatarUrl, type} for each resolved entity referenced in text."""
    metadata: list[dict[str, Any]] = []
    seen: set[str] = set()
    for key in _token_keys(text or ""):
        entity = entity_map.get(key)
        if not entity or entity["id"] in seen:
            continue
        seen.add(entity["id"])
        metadata.append({
            "id": entity["id"],
            "displayName": entity.get("displayName") or entity["id"],
            "avatarUrl": entity.get("avatarUrl"),
            "type": entity["kind"],
        })
    return metadata


# ── Audio narration hints ────────────────────────────────

_PRONOUN_TEXT = {
    "he/him": "He uses he/him pronouns.",
    "she/her": "She uses she/her pronouns.",
}


def _join_natural(items: list[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return f"{', '.join(items[:-1])} and {items[-1]}"


def build_actor_descriptions_for_audio(entity_ids: list[str], entity_map: EntityMap) -> str:
    """Scene context and pronunciation hints appended to text sent to TTS.

    Returns "" when none of the ids resolve.
    """
    descriptions: list[str] = []
    pronunciations: list[str] = []
    for entity_id in dict.fromkeys(entity_ids):
        entity = entity_map.get(entity_id)
        if not entity:
            continue
        name = entity.get("displayName") or entity["id"]
        if entity["kind"] == "character":
            if entity.get("relationship") and entity.get("childName"):
                role = f"{entity['childName']}'s {entity['relationship']}"
            else:
                role = f"a {(entity.get('type') or 'character').lower()}"
        else:
            role = "the main character of this story"

        sentence = f"{name} is {role}. "
        sentence += _PRONOUN_TEXT.get(entity.get("pronouns") or "", "They use they/them pronouns.")
        if entity.get("likes"):
            sentence += f" Likes {_join_natural(entity['likes'])}."
        if entity.get("dislikes"):
            sentence += f" Dislikes {_join_natural(entity['dislikes'])}."
        descriptions.append(sentence)

        if entity.get("namePronunciation"):
            pronunciations.append(
                f'The name "{name}" should be pronounced as "{entity["namePronunciation"]}".'
            )

    if not descriptions:
        return ""
    result = f"\n\n[Characters in this scene: {' '.join(descriptions)}]"
    if pronunciations:
        result += f"\n\n[Pronunciation: {' '.join(pronunciations)}]"
    return result
