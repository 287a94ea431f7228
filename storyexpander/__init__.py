"""Story Expander package.

Turns a long free-text draft into an outlined, chapter-by-chapter expanded
novel through a resumable pipeline of LLM stages. `Pipeline` is the entry
point; `storyexpander.cli` drives it from the command line.
"""

__all__ = [
    "chunker",
    "context",
    "contract",
    "continuity",
    "env",
    "export",
    "generation",
    "llm",
    "models",
    "pipeline",
    "store",
    "templates",
    "utils",
    "validation",
]
