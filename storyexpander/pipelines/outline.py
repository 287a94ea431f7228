"""Outline stage plus the partial and single-chapter regenerations used for continuity.

- run_outline: full 6-10 chapter outline from the condensed draft
- run_outline_continuation: rewrite chapters start..end, holding earlier ones fixed
- run_refine_chapter: rewrite one chapter entry with its instruction as the primary directive
"""
from __future__ import annotations

from typing import List, Optional

from .. import config
from ..continuity import format_chapter, format_elements
from ..contract import chapter_entry_shape, outline_shape
from ..env import env_int
from ..generation import CancellationToken, GenerationClient
from ..models import Chapter, StoryElements
from ..templates import instruction_block, render
from .common import Audit, env_for_prompt, generate_structured

TEMPLATE = "outline_prompt.md"
CONTINUATION_TEMPLATE = "outline_continuation_prompt.md"
REFINE_TEMPLATE = "outline_refine_chapter_prompt.md"

_DISJOINT_NOTE = (
    "Chapters must be chronologically disjoint: each chapter covers distinct, "
    "non-repeated events and moves the timeline forward."
)


def _draft_prefix(condensed_draft: str) -> str:
    return condensed_draft[: env_int("SE_OUTLINE_PREFIX_CHARS", config.OUTLINE_PREFIX_CHARS)]


def _chapters_block(chapters: List[Chapter], first_number: int) -> str:
    if not chapters:
        return "(none)"
    return "\n\n".join(format_chapter(first_number + i, ch) for i, ch in enumerate(chapters))


def run_outline(
    client: GenerationClient,
    condensed_draft: str,
    elements: Optional[StoryElements],
    *,
    instruction: str = "",
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> List[Chapter]:
    shape = outline_shape(config.MIN_CHAPTERS, config.MAX_CHAPTERS)
    prompt = render(TEMPLATE, {
        "[MIN_CHAPTERS]": str(config.MIN_CHAPTERS),
        "[MAX_CHAPTERS]": str(config.MAX_CHAPTERS),
        "[SCHEMA]": shape.schema_hint,
        "[ELEMENTS]": format_elements(elements),
        "[INSTRUCTION_BLOCK]": instruction_block(instruction),
        "[CONDENSED_DRAFT]": _draft_prefix(condensed_draft),
    })
    model, temp, max_toks = env_for_prompt(TEMPLATE, "OUTLINE", default_temp=0.6, default_max_tokens=4000)
    return generate_structured(
        client, prompt, shape, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag="outline", strict_note=_DISJOINT_NOTE, audit=audit,
    )


def run_outline_continuation(
    client: GenerationClient,
    condensed_draft: str,
    elements: Optional[StoryElements],
    chapters: List[Chapter],
    start: int,
    *,
    instruction: str = "",
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> List[Chapter]:
    """Regenerate chapters[start:] as exactly len(chapters) - start new entries.

    With start > 0 the prompt demands that the edited chapter's consequences
    carry through every later chapter; with start == 0 the global outline
    instruction drives the rewrite.
    """
    count = len(chapters) - start
    shape = outline_shape(count, count, first_number=start + 1)
    if start > 0:
        directive = (
            f"Chapters 1 to {start} are final and must not be changed. The rewritten chapters must pick up "
            f"where they end and must explicitly carry forward the consequences of the author's instruction "
            f"for chapter {start + 1}: anything it introduces (characters, factions, events) has to keep "
            f"mattering in every later chapter."
        )
    else:
        directive = "Rewrite the whole outline so that it follows the author's outline instructions below."
    instr_lines = [
        f"Chapter {start + 1 + i}: {ch.instruction.strip()}"
        for i, ch in enumerate(chapters[start:]) if ch.instruction.strip()
    ]
    prompt = render(CONTINUATION_TEMPLATE, {
        "[START_NUM]": str(start + 1),
        "[END_NUM]": str(len(chapters)),
        "[COUNT]": str(count),
        "[CONTINUITY_DIRECTIVE]": directive,
        "[PRIOR_CHAPTERS]": _chapters_block(chapters[:start], 1),
        "[CURRENT_CHAPTERS]": _chapters_block(chapters[start:], start + 1),
        "[CHAPTER_INSTRUCTIONS]": "\n".join(instr_lines) or "(none)",
        "[ELEMENTS]": format_elements(elements),
        "[INSTRUCTION_BLOCK]": instruction_block(instruction, "Outline instructions from the author"),
        "[CONDENSED_DRAFT]": _draft_prefix(condensed_draft),
        "[SCHEMA]": shape.schema_hint,
    })
    model, temp, max_toks = env_for_prompt(CONTINUATION_TEMPLATE, "OUTLINE", default_temp=0.6, default_max_tokens=4000)
    return generate_structured(
        client, prompt, shape, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag=f"outline_from_{start + 1:02d}",
        strict_note=f"Return exactly {count} chapters. {_DISJOINT_NOTE}", audit=audit,
    )


def run_refine_chapter(
    client: GenerationClient,
    chapters: List[Chapter],
    index: int,
    elements: Optional[StoryElements],
    *,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> Chapter:
    ch = chapters[index]
    shape = chapter_entry_shape(index + 1)
    prompt = render(REFINE_TEMPLATE, {
        "[CHAPTER_NUM]": str(index + 1),
        "[CHAPTER_INSTRUCTION]": ch.instruction.strip(),
        "[PREVIOUS_CHAPTER]": format_chapter(index, chapters[index - 1]) if index > 0 else "(this is the first chapter)",
        "[CURRENT_CHAPTER]": format_chapter(index + 1, ch),
        "[NEXT_CHAPTER]": format_chapter(index + 2, chapters[index + 1]) if index + 1 < len(chapters) else "(this is the last chapter)",
        "[ELEMENTS]": format_elements(elements),
        "[SCHEMA]": shape.schema_hint,
    })
    model, temp, max_toks = env_for_prompt(REFINE_TEMPLATE, "OUTLINE", default_temp=0.5, default_max_tokens=1200)
    return generate_structured(
        client, prompt, shape, model=model, temperature=temp, max_tokens=max_toks,
        cancel=cancel, tag=f"outline_refine_{index + 1:02d}", strict_note=_DISJOINT_NOTE, audit=audit,
    )
