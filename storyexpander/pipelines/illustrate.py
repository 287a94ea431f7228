"""Illustrate stage (best effort).

Two sub-calls: write an image prompt from the chapter, then synthesize the
image. A safety rejection is retried once with a sanitized generic prompt;
if that is rejected too, or either call fails after retries, the result is an
Illustration with no image and a reason. Only cancellation and a missing
credential escape this module.
"""
from __future__ import annotations

from typing import Optional

from ..context import GenerationError
from ..generation import CancellationToken, GenerationClient, ImageClient
from ..logging import log_run as _log_run, log_warning as _log_warning
from ..models import Chapter, Illustration, StoryElements
from ..templates import render
from .common import Audit, env_for_prompt, generate_text

TEMPLATE = "illustration_prompt.md"
COVER_TEMPLATE = "cover_illustration_prompt.md"

_EXCERPT_CHARS = 1500


def sanitized_prompt(title: str, style: Optional[str] = None, *, kind: str = "chapter") -> str:
    s = f"A mood/atmosphere illustration for a {kind} titled \"{title}\", no specific content"
    if style:
        s += f", in the style of: {style}"
    return s


def _style_block(style: Optional[str]) -> str:
    return f"Visual style for every illustration: {style.strip()}\n" if style and style.strip() else ""


def _synthesize(images: ImageClient, prompt: str, title: str, style: Optional[str], cancel: Optional[CancellationToken], *, kind: str = "chapter") -> Illustration:
    try:
        result = images.generate_image(prompt, cancel=cancel)
    except GenerationError as e:
        _log_warning(f"Illustration failed for '{title}': {e}")
        return Illustration(prompt=prompt, reason=str(e))
    if result.image_url:
        return Illustration(prompt=prompt, image_url=result.image_url)
    _log_warning(f"Image prompt for '{title}' was rejected by the safety filter; retrying with a sanitized prompt")
    fallback = sanitized_prompt(title, style, kind=kind)
    try:
        result = images.generate_image(fallback, cancel=cancel)
    except GenerationError as e:
        _log_warning(f"Sanitized illustration failed for '{title}': {e}")
        return Illustration(prompt=fallback, reason=str(e), sanitized=True)
    if result.image_url:
        return Illustration(prompt=fallback, image_url=result.image_url, sanitized=True)
    _log_run(f"No image available for '{title}': {result.reason}")
    return Illustration(prompt=fallback, reason=result.reason or "Image rejected by safety filter", sanitized=True)


def run_illustrate_chapter(
    client: GenerationClient,
    images: ImageClient,
    chapter: Chapter,
    *,
    style: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> Illustration:
    excerpt = (chapter.expanded_text or chapter.summary)[:_EXCERPT_CHARS]
    prompt = render(TEMPLATE, {
        "[STYLE_BLOCK]": _style_block(style),
        "[CHAPTER_TITLE]": chapter.title,
        "[CHAPTER_SUMMARY]": chapter.summary,
        "[CHAPTER_EXCERPT]": excerpt,
    })
    model, temp, max_toks = env_for_prompt(TEMPLATE, "ILLUSTRATE", default_temp=0.7, default_max_tokens=400)
    try:
        image_prompt = generate_text(
            client, prompt, model=model, temperature=temp, max_tokens=max_toks,
            cancel=cancel, tag="illustration_prompt", audit=audit,
        )
    except GenerationError as e:
        _log_warning(f"Could not write an image prompt for '{chapter.title}': {e}")
        return Illustration(reason=str(e))
    if style and style.strip():
        image_prompt = f"{image_prompt}\nStyle: {style.strip()}"
    return _synthesize(images, image_prompt, chapter.title, style, cancel)


def run_illustrate_cover(
    client: GenerationClient,
    images: ImageClient,
    chapters: list,
    elements: Optional[StoryElements],
    *,
    style: Optional[str] = None,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> Illustration:
    story_lines = elements.main_story_lines if elements else []
    names = elements.character_names() if elements else []
    prompt = render(COVER_TEMPLATE, {
        "[STYLE_BLOCK]": _style_block(style),
        "[STORY_LINES]": "\n".join(f"- {s}" for s in story_lines) or "(none)",
        "[CHARACTERS]": ", ".join(names) or "(none)",
        "[CHAPTER_TITLES]": "\n".join(f"{i + 1}. {ch.title}" for i, ch in enumerate(chapters)) or "(none)",
    })
    model, temp, max_toks = env_for_prompt(COVER_TEMPLATE, "ILLUSTRATE", default_temp=0.7, default_max_tokens=400)
    title = story_lines[0] if story_lines else "Untitled"
    try:
        image_prompt = generate_text(
            client, prompt, model=model, temperature=temp, max_tokens=max_toks,
            cancel=cancel, tag="cover_prompt", audit=audit,
        )
    except GenerationError as e:
        _log_warning(f"Could not write a cover image prompt: {e}")
        return Illustration(reason=str(e))
    if style and style.strip():
        image_prompt = f"{image_prompt}\nStyle: {style.strip()}"
    return _synthesize(images, image_prompt, title, style, cancel, kind="novel cover")
