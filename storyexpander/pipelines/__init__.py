"""Stage executors (summarize, elements, outline, expand, illustrate)."""

from .summarize import run_summarize
from .elements import run_extract_elements, run_chapter_entities
from .outline import run_outline, run_outline_continuation, run_refine_chapter
from .expand import run_expand_chapter, run_expand_more
from .illustrate import run_illustrate_chapter, run_illustrate_cover

__all__ = [
    "run_summarize",
    "run_extract_elements",
    "run_chapter_entities",
    "run_outline",
    "run_outline_continuation",
    "run_refine_chapter",
    "run_expand_chapter",
    "run_expand_more",
    "run_illustrate_chapter",
    "run_illustrate_cover",
]
