"""Expand Chapter and Expand-More stages (free text, no contract parsing).

Both prompts carry the chapter's outline metadata, a bounded digest of the
chapters before it and the subset of story elements the chapter references.
The last chapter additionally gets a directive to resolve every open arc.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from ..continuity import continuity_digest, format_elements, relevant_elements
from ..generation import CancellationToken, GenerationClient
from ..models import Chapter, StoryElements
from ..templates import instruction_block, render
from .common import Audit, env_for_prompt, generate_text

TEMPLATE = "expand_chapter_prompt.md"
MORE_TEMPLATE = "expand_more_prompt.md"

FINALE_DIRECTIVE = (
    "This is the final chapter. Resolve all open story arcs and conflicts, settle the fate of every "
    "main character and give the novel a satisfying conclusion."
)


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {x}" for x in items) if items else "(none)"


def chapter_replacements(chapters: List[Chapter], index: int, elements: Optional[StoryElements]) -> Dict[str, str]:
    ch = chapters[index]
    relevant = relevant_elements(elements, ch) if elements is not None else None
    last = index == len(chapters) - 1
    return {
        "[CHAPTER_NUM]": str(index + 1),
        "[CHAPTER_TOTAL]": str(len(chapters)),
        "[CHAPTER_TITLE]": ch.title,
        "[CHAPTER_SUMMARY]": ch.summary,
        "[CHAPTER_KEY_EVENTS]": _bullets(ch.key_events),
        "[CHAPTER_CHARACTER_TRAITS]": _bullets(ch.character_traits),
        "[CHAPTER_TIMELINE]": ch.timeline or "(unspecified)",
        "[CONTINUITY_DIGEST]": continuity_digest(chapters, index),
        "[RELEVANT_ELEMENTS]": format_elements(relevant),
        "[INSTRUCTION_BLOCK]": instruction_block(ch.instruction, "Author instruction for this chapter"),
        "[FINALE_BLOCK]": (FINALE_DIRECTIVE + "\n") if last else "",
    }


def run_expand_chapter(
    client: GenerationClient,
    chapters: List[Chapter],
    index: int,
    elements: Optional[StoryElements],
    *,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> str:
    prompt = render(TEMPLATE, chapter_replacements(chapters, index, elements))
    model, temp, max_toks = env_for_prompt(TEMPLATE, "EXPAND", default_temp=0.8, default_max_tokens=3000)
    return generate_text(
        client, prompt, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag=f"expand_{index + 1:02d}", audit=audit,
    )


def run_expand_more(
    client: GenerationClient,
    chapters: List[Chapter],
    index: int,
    elements: Optional[StoryElements],
    *,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> str:
    """Return only the new continuation text; the caller appends it."""
    reps = chapter_replacements(chapters, index, elements)
    reps["[EXISTING_TEXT]"] = chapters[index].expanded_text
    prompt = render(MORE_TEMPLATE, reps)
    model, temp, max_toks = env_for_prompt(MORE_TEMPLATE, "EXPAND", default_temp=0.8, default_max_tokens=2000)
    return generate_text(
        client, prompt, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag=f"expand_more_{index + 1:02d}", audit=audit,
    )
