"""Continuity helpers: prior-chapter digest, relevant-element filter, outline splice.

Public API:
- digest_budget(index) -> int
- continuity_digest(chapters, index) -> str
- relevant_elements(elements, chapter) -> StoryElements
- format_elements(elements) -> str
- splice_outline(current, regenerated, start) -> List[Chapter]

relevant_elements is a heuristic: it returns a superset-biased relevance
filter over StoryElements, not a guarantee of completeness. Key events and
unique details match on their first word only, which can over- and
under-match.
"""
from __future__ import annotations

import copy
from typing import List

from . import config
from .env import env_int
from .models import Chapter, StoryElements


def digest_budget(index: int) -> int:
    """Character budget for the digest of chapters 0..index-1; grows with index, capped."""
    base = env_int("SE_DIGEST_BASE_CHARS", config.DIGEST_BASE_CHARS)
    per = env_int("SE_DIGEST_PER_CHAPTER_CHARS", config.DIGEST_PER_CHAPTER_CHARS)
    cap = env_int("SE_DIGEST_MAX_CHARS", config.DIGEST_MAX_CHARS)
    return min(cap, base + per * max(0, int(index)))


def _digest_entry(number: int, ch: Chapter) -> str:
    lines = [f"Chapter {number}: {ch.title}", f"Summary: {ch.summary}"]
    if ch.key_events:
        lines.append("Key events: " + "; ".join(ch.key_events))
    if ch.timeline:
        lines.append(f"Timeline: {ch.timeline}")
    return "\n".join(lines)


def continuity_digest(chapters: List[Chapter], index: int) -> str:
    """Summaries, key events and timelines of chapters before `index`, bounded by digest_budget.

    The most recent chapters are kept first; an entry that overflows the
    budget is truncated and anything older is reported as omitted.
    Output is in story order.
    """
    if index <= 0 or not chapters:
        return "This is the first chapter; nothing has happened yet."
    prior = chapters[: min(index, len(chapters))]
    budget = digest_budget(index)
    kept: List[str] = []
    used = 0
    omitted = 0
    for pos in range(len(prior) - 1, -1, -1):
        entry = _digest_entry(pos + 1, prior[pos])
        room = budget - used
        if room <= 0:
            omitted = pos + 1
            break
        if len(entry) > room:
            kept.append(entry[: max(0, room - 3)].rstrip() + "...")
            omitted = pos
            break
        kept.append(entry)
        used += len(entry) + 2
    kept.reverse()
    if omitted:
        kept.insert(0, f"(Chapters 1-{omitted} omitted for length.)")
    return "\n\n".join(kept)


def _chapter_text(ch: Chapter) -> str:
    parts = [ch.title, ch.summary, ch.timeline, " ".join(ch.key_events), " ".join(ch.character_traits)]
    return " ".join(p for p in parts if p).lower()


def _first_word(s: str) -> str:
    words = s.strip().split()
    return words[0].strip(".,;:!?\"'()").lower() if words else ""


def relevant_elements(elements: StoryElements, chapter: Chapter) -> StoryElements:
    """Subset of `elements` referenced by the chapter's outline metadata.

    Characters match on full name or first name. Key events and unique
    details match when their first word appears in the chapter text. Main
    story lines are always kept.
    """
    text = _chapter_text(chapter)
    chars = []
    for c in elements.characters:
        name = c.name.strip().lower()
        if not name:
            continue
        first = name.split()[0]
        if name in text or (len(first) > 2 and first in text):
            chars.append(copy.copy(c))
    events = [e for e in elements.key_events if _first_word(e) and _first_word(e) in text]
    details = [d for d in elements.unique_details if _first_word(d) and _first_word(d) in text]
    return StoryElements(
        characters=chars,
        key_events=events,
        timeline=[],
        unique_details=details,
        main_story_lines=list(elements.main_story_lines),
    )


def format_elements(elements: StoryElements) -> str:
    if elements is None or elements.is_empty():
        return "(none)"
    out: List[str] = []
    if elements.characters:
        out.append("Characters:")
        for c in elements.characters:
            bits = [b for b in (c.gender, c.role, c.traits) if b]
            if c.affiliation:
                bits.append(f"affiliation: {c.affiliation}")
            out.append(f"- {c.name}" + (f" ({'; '.join(bits)})" if bits else ""))
    for label, items in (
        ("Key events", elements.key_events),
        ("Timeline", elements.timeline),
        ("Unique details", elements.unique_details),
        ("Main story lines", elements.main_story_lines),
    ):
        if items:
            out.append(f"{label}:")
            out.extend(f"- {x}" for x in items)
    return "\n".join(out)


def format_chapter(number: int, ch: Chapter) -> str:
    lines = [f"Chapter {number}: {ch.title}", f"Summary: {ch.summary}"]
    if ch.key_events:
        lines.append("Key events: " + "; ".join(ch.key_events))
    if ch.character_traits:
        lines.append("Characters: " + "; ".join(ch.character_traits))
    if ch.timeline:
        lines.append(f"Timeline: {ch.timeline}")
    return "\n".join(lines)


def splice_outline(current: List[Chapter], regenerated: List[Chapter], start: int) -> List[Chapter]:
    """Keep chapters before `start` untouched and replace the rest with `regenerated`.

    Replaced chapters keep their author instruction; their expanded text,
    expansion count and illustration are cleared.
    """
    if len(regenerated) != len(current) - start:
        raise ValueError(f"Expected {len(current) - start} regenerated chapters, got {len(regenerated)}")
    out = list(current[:start])
    for offset, new in enumerate(regenerated):
        ch = copy.deepcopy(new)
        ch.instruction = current[start + offset].instruction
        ch.clear_expansion()
        out.append(ch)
    return out
