"""Project configuration constants.

Centralizes model defaults, stage bounds and required prompt template names
used by the pipeline and stage executors. Keeping these in one place avoids
duplication and makes it easier to evolve defaults.
"""
from __future__ import annotations

DEFAULT_MODEL = "gpt-4o"
# Conservative target used once the requested model exhausts its retries.
FALLBACK_MODEL = "gpt-4o-mini"
IMAGE_MODEL = "dall-e-3"
IMAGE_SIZE = "1024x1024"

# Attempts per model in one retry cycle
MAX_ATTEMPTS = 3

# Chunker budget (bytes of UTF-8); ~5000 words of English prose
CHUNK_MAX_BYTES = 24000

# Outline cardinality
MIN_CHAPTERS = 6
MAX_CHAPTERS = 10

# StoryElements main story lines cardinality
MIN_STORY_LINES = 3
MAX_STORY_LINES = 5

# Condensed-draft prefixes fed to structured stages
ELEMENTS_PREFIX_CHARS = 10000
OUTLINE_PREFIX_CHARS = 10000

# Continuity digest budget (chars), grows with chapter index up to a cap
DIGEST_BASE_CHARS = 1500
DIGEST_PER_CHAPTER_CHARS = 600
DIGEST_MAX_CHARS = 6000

# Pause between consecutive image requests during bulk regeneration
IMAGE_DELAY_SECONDS = 1.0

STATE_KEY = "pipeline"

REQUIRED_PROMPTS = [
    "summarize_chunk_prompt.md",
    "extract_elements_prompt.md",
    "chapter_entities_prompt.md",
    "outline_prompt.md",
    "outline_continuation_prompt.md",
    "outline_refine_chapter_prompt.md",
    "expand_chapter_prompt.md",
    "expand_more_prompt.md",
    "illustration_prompt.md",
    "cover_illustration_prompt.md",
]
