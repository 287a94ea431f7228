"""Full-story Markdown export."""
from __future__ import annotations

from pathlib import Path
from typing import List

from .models import PipelineState
from .utils import save_text


def render_markdown(state: PipelineState, title: str = "") -> str:
    """Assemble the novel: optional title and cover, then `### ` headed chapters.

    Chapters without expanded text fall back to their outline summary in italics.
    """
    out: List[str] = []
    if title:
        out.append(f"# {title}\n")
    if state.cover and state.cover.available:
        out.append(f"![Cover]({state.cover.image_url})\n")
    for i, ch in enumerate(state.chapters, start=1):
        out.append(f"### Chapter {i}: {ch.title}\n")
        if ch.illustration and ch.illustration.available:
            out.append(f"![{ch.title}]({ch.illustration.image_url})\n")
        body = ch.expanded_text.strip()
        out.append((body if body else f"*{ch.summary.strip()}*") + "\n")
    return "\n".join(out)


def write_markdown(state: PipelineState, path: str | Path, title: str = "") -> Path:
    save_text(path, render_markdown(state, title))
    return Path(path)
