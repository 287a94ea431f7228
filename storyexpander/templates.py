"""Template application, prompt-key helpers and shared prompt fragments.

This module centralizes:
- apply_template, render and prompt_key_from_filename
- missing_prompts (startup check against config.REQUIRED_PROMPTS)
- instruction_block and strict_json_suffix used by every structured stage
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional

from . import config
from .env import get_prompts_dir
from .utils import read_text


def apply_template(template_path: str | Path, replacements: Dict[str, str]) -> str:
    template = read_text(template_path)
    for k, v in replacements.items():
        template = template.replace(k, v)
    return template


def template_path(filename: str) -> Path:
    return get_prompts_dir() / filename


def render(filename: str, replacements: Dict[str, str]) -> str:
    return apply_template(template_path(filename), replacements).strip() + "\n"


def prompt_key_from_filename(filename: str) -> str:
    base = Path(filename).name
    if base.lower().endswith(".md"):
        base = base[:-3]
    if base.lower().endswith("_prompt"):
        base = base[:-7]
    key = re.sub(r"[^A-Za-z0-9]+", "_", base).strip("_").upper()
    return key


def missing_prompts() -> List[str]:
    return [name for name in config.REQUIRED_PROMPTS if not template_path(name).exists()]


def instruction_block(text: Optional[str], label: str = "Additional instructions from the author") -> str:
    s = (text or "").strip()
    if not s:
        return ""
    return f"{label} (follow these closely):\n{s}\n"


def strict_json_suffix(schema_hint: str, reason: str, note: str = "") -> str:
    """Intensified instruction appended when a structured response failed to parse or validate."""
    lines = [
        "",
        "---",
        f"IMPORTANT: your previous response was rejected: {reason}",
        "Output strictly JSON. No prose, no explanations, no markdown fences, no trailing commas, no comments.",
        "The response must match this exact schema:",
        schema_hint,
    ]
    if note:
        lines.append(note)
    return "\n".join(lines) + "\n"
