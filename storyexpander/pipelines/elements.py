"""Extract Elements stage and the auxiliary new-entity pass used on chapter edits."""
from __future__ import annotations

from typing import Optional

from .. import config
from ..continuity import format_elements
from ..contract import ELEMENTS_DELTA, STORY_ELEMENTS
from ..env import env_int
from ..generation import CancellationToken, GenerationClient
from ..models import Chapter, StoryElements
from ..templates import instruction_block, render
from .common import Audit, env_for_prompt, generate_structured

TEMPLATE = "extract_elements_prompt.md"
ENTITIES_TEMPLATE = "chapter_entities_prompt.md"


def run_extract_elements(
    client: GenerationClient,
    condensed_draft: str,
    *,
    instruction: str = "",
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> StoryElements:
    limit = env_int("SE_ELEMENTS_PREFIX_CHARS", config.ELEMENTS_PREFIX_CHARS)
    prompt = render(TEMPLATE, {
        "[SCHEMA]": STORY_ELEMENTS.schema_hint,
        "[INSTRUCTION_BLOCK]": instruction_block(instruction),
        "[CONDENSED_DRAFT]": condensed_draft[:limit],
    })
    model, temp, max_toks = env_for_prompt(TEMPLATE, "ELEMENTS", default_temp=0.3, default_max_tokens=2000)
    return generate_structured(
        client, prompt, STORY_ELEMENTS, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag="extract_elements",
        strict_note=f"mainStoryLines must hold {config.MIN_STORY_LINES}-{config.MAX_STORY_LINES} entries.",
        audit=audit,
    )


def run_chapter_entities(
    client: GenerationClient,
    elements: StoryElements,
    chapter: Chapter,
    number: int,
    *,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> StoryElements:
    """Detect persistent entities introduced by a chapter's instruction; returns only the delta."""
    prompt = render(ENTITIES_TEMPLATE, {
        "[KNOWN_ELEMENTS]": format_elements(elements),
        "[CHAPTER_NUM]": str(number),
        "[CHAPTER_TITLE]": chapter.title,
        "[CHAPTER_SUMMARY]": chapter.summary,
        "[CHAPTER_INSTRUCTION]": chapter.instruction or "(none)",
        "[SCHEMA]": ELEMENTS_DELTA.schema_hint,
    })
    model, temp, max_toks = env_for_prompt(ENTITIES_TEMPLATE, "ELEMENTS", default_temp=0.2, default_max_tokens=1200)
    return generate_structured(
        client, prompt, ELEMENTS_DELTA, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag=f"chapter_entities_{number:02d}", audit=audit,
    )
