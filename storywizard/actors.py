"""Actor (child / sibling / character) records as they appear in prompts."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from . import storage


class ActorInfo(BaseModel):
    id: str
    displayName: str
    type: str = "Other"  # child | sibling | Family | Friend | Pet | Toy | Other
    avatarUrl: str | None = None
    pronouns: str | None = None
    relationship: str | None = None
    description: str | None = None
    likes: list[str] = Field(default_factory=list)
    dislikes: list[str] = Field(default_factory=list)
    isMainChild: bool = False


def child_profile_to_actor_info(child: dict[str, Any], is_main_child: bool = False) -> ActorInfo:
    return ActorInfo(
        id=child["id"],
        displayName=child.get("displayName") or child["id"],
        type="child" if is_main_child else "sibling",
        avatarUrl=child.get("avatarUrl"),
        pronouns=child.get("pronouns"),
        description=child.get("description"),
        likes=child.get("likes") or [],
        dislikes=child.get("dislikes") or [],
        isMainChild=is_main_child,
    )


def character_to_actor_info(character: dict[str, Any]) -> ActorInfo:
    return ActorInfo(
        id=character["id"],
        displayName=character.get("displayName") or character["id"],
        type=character.get("type") or "Other",
        avatarUrl=character.get("avatarUrl"),
        pronouns=character.get("pronouns"),
        relationship=character.get("relationship"),
        description=character.get("description"),
        likes=character.get("likes") or [],
        dislikes=character.get("dislikes") or [],
    )


def load_actors(actor_ids: list[str], main_child_id: str | None = None) -> list[ActorInfo]:
    """Load actors by id, children first then characters. Unknown ids are skipped.

    The main child (if found) is always first in the result.
    """
    ids = list(dict.fromkeys(actor_ids))
    if main_child_id and main_child_id not in ids:
        ids.insert(0, main_child_id)
    children = storage.get_docs("children", ids)
    characters = storage.get_docs("characters", [i for i in ids if i not in children])

    actors: list[ActorInfo] = []
    for actor_id in ids:
        if actor_id in children:
            actors.append(child_profile_to_actor_info(children[actor_id], actor_id == main_child_id))
        elif actor_id in characters:
            actors.append(character_to_actor_info(characters[actor_id]))
    actors.sort(key=lambda a: not a.isMainChild)
    return actors


def build_actor_description(actor: ActorInfo) -> str:
    """One-line prose description, e.g.

    "Mia - the main child character. Uses she/her pronouns. Likes: cats."
    """
    if actor.isMainChild:
        parts = [f"{actor.displayName} - the main child character"]
    elif actor.type == "sibling":
        parts = [f"{actor.displayName} - a sibling"]
    elif actor.type == "Family" and actor.relationship:
        parts = [f"{actor.displayName} - {actor.relationship}"]
    else:
        parts = [f"{actor.displayName} - {actor.type}"]

    if actor.pronouns:
        parts.append(f"Uses {actor.pronouns} pronouns")
    if actor.description:
        parts.append(actor.description)
    if actor.likes:
        parts.append(f"Likes: {', '.join(actor.likes)}")
    if actor.dislikes:
        parts.append(f"Dislikes: {', '.join(actor.dislikes)}")
    return ". ".join(parts) + "."


def build_actor_list_for_prompt(actors: list[ActorInfo]) -> str:
    if not actors:
        return "No actors found."
    return "\n".join(
        f"{i}. {build_actor_description(actor)}" for i, actor in enumerate(actors, start=1)
    )


def child_age_years(date_of_birth: str | None) -> int | None:
    """Whole years since an ISO date of birth, or None if unknown/future."""
    if not date_of_birth:
        return None
    try:
        dob = datetime.fromisoformat(date_of_birth.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dob.tzinfo is None:
        dob = dob.replace(tzinfo=timezone.utc)
    days = (datetime.now(timezone.utc) - dob).total_seconds() / 86400
    if days <= 0:
        return None
    return math.floor(days / 365.25)
