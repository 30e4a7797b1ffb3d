"""Handlebars prompt rendering and the built-in prompt templates.

Templates use triple-stash ({{{var}}}) so story text is not HTML-escaped.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_truncate(this, text, count):
    """{{truncate text N}} — first N characters of text."""
    return str(text or "")[:int(count)]


_HELPERS: dict[str, Callable] = {
    "truncate": _helper_truncate,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Story text compile ───────────────────────────────────

DEFAULT_COMPILE_INSTRUCTIONS = """You are a master storyteller for young children. \
Polish the draft below into one flowing, finished story.

Rules:
1. Keep every event and choice from the draft, in order.
2. Use short sentences and simple words a 3-6 year old understands.
3. Smooth transitions between beats so it reads as one continuous story.
4. Separate paragraphs with a blank line.
5. Write a 1-2 sentence synopsis suitable for a parent.

CRITICAL: Refer to characters ONLY with their $$id$$ placeholders exactly as \
given in the character reference. Never write a character's name directly."""

COMPILE_PROMPT_TEMPLATE = """{{{instructions}}}

**Story Context:**
- Story Type: {{{storyType.name}}}{{#if storyType.shortDescription}} ({{{storyType.shortDescription}}}){{/if}}
- Main Character: {{{child.displayName}}} (use $${{{child.id}}}$$ in the story)

**CHARACTER REFERENCE (use these $$id$$ placeholders in the story):**
{{#each actors}}$${{{id}}}$$ = {{{displayName}}}
{{/each}}
**CHARACTER DETAILS:**
{{{actorList}}}

**DRAFT STORY TEXT TO POLISH:**
{{{draft}}}

**Output Format:**
Return only a JSON object: {"storyText": "the polished story", "synopsis": "a short synopsis"}"""


# ── Synopsis ─────────────────────────────────────────────

SYNOPSIS_PROMPT_TEMPLATE = """You are a children's book editor writing the blurb for a picture book.

CHARACTERS IN THIS STORY:
{{{actorList}}}

ID REFERENCE:
{{#each actors}}$${{{id}}}$$ = {{{displayName}}}
{{/each}}
STORY TEXT:
{{{truncate storyText 2000}}}

TASK:
Write a 2-3 sentence synopsis of this story for a parent. Refer to \
characters with their $$id$$ placeholders.

OUTPUT:
Return only the synopsis text."""


# ── Actor exemplar reference sheet ───────────────────────

EXEMPLAR_PROMPT_TEMPLATE = """Create a character reference sheet for a children's storybook.

Character: {{{actor.displayName}}}{{#if actor.characterType}} ({{{actor.characterType}}}){{/if}}
{{#if actor.description}}Description: {{{actor.description}}}
{{/if}}{{#if actor.pronouns}}Pronouns: {{{actor.pronouns}}}
{{/if}}
Art Style: {{{stylePrompt}}}
{{#if styleExampleCount}}Use the first {{styleExampleCount}} image(s) as style reference only.
{{/if}}{{#if referenceCount}}Use the remaining {{referenceCount}} image(s) as reference for the character's appearance.
{{/if}}
Show the same character three times side by side on a plain white background:
front view, three-quarter view, and back view. Full body, neutral standing pose,
consistent proportions, clothing and colours in every view. No text or labels."""
