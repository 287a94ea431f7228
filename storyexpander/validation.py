"""Validation utilities used by pipelines and the control surface.

Output validators return (ok, reason) like the rest of the pipeline code.
Precondition checks raise ValidationError before any generation call.
"""
from __future__ import annotations
from typing import List, Optional, Tuple

from .context import ValidationError


def validate_text(output: str) -> Tuple[bool, str]:
    """Text must be non-empty (after stripping). Used for prose-like prompts."""
    if output is None:
        return False, "No output returned (None)"
    if str(output).strip() == "":
        return False, "Empty output not allowed"
    return True, "ok"


def require_draft(draft: str) -> str:
    if draft is None or not str(draft).strip():
        raise ValidationError("Draft is empty; paste or load a story draft first")
    return str(draft)


def require_index(index: int, chapters: List) -> int:
    try:
        i = int(index)
    except (TypeError, ValueError):
        raise ValidationError(f"Chapter index must be an integer, got {index!r}")
    if not chapters:
        raise ValidationError("No chapters exist yet; generate the outline first")
    if i < 0 or i >= len(chapters):
        raise ValidationError(f"Chapter index {i} out of range (0..{len(chapters) - 1})")
    return i


def require_chapter_fields(chapter) -> None:
    """A chapter must carry the outline fields expansion builds on."""
    missing = []
    if not (chapter.title or "").strip():
        missing.append("title")
    if not (chapter.summary or "").strip():
        missing.append("summary")
    if missing:
        raise ValidationError(f"Chapter is missing required field(s): {', '.join(missing)}")


def require_expanded(chapter, index: int) -> None:
    if not (chapter.expanded_text or "").strip():
        raise ValidationError(f"Chapter {index} has no expanded text yet; use advance to expand it first")


def require_propagated(pending: Optional[int], index: int) -> None:
    """Chapter `index` may only be (re)expanded once every earlier outline entry is final."""
    if pending is not None and index >= pending:
        raise ValidationError(
            f"Chapter {pending} has an instruction edit that has not been propagated; "
            f"run propagate_continuity({pending}) before expanding chapter {index}"
        )
