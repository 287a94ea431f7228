"""Utility helpers: file I/O, fingerprints and safe JSON text rendering.

Public helpers:
- save_text(path, content)
- read_text(path)
- to_text(obj)
- fingerprint(text)
- preview(text, limit)
"""
from __future__ import annotations
from pathlib import Path
from typing import Any
import hashlib
import json

from .context import MissingFileError


def save_text(path: str | Path, content: str) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


def read_text(path: str | Path) -> str:
    p = Path(path)
    if not p.exists():
        raise MissingFileError(f"Required file not found: {path}")
    return p.read_text(encoding="utf-8")


def to_text(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, indent=2, default=str)
    except Exception:
        return str(obj)


def fingerprint(text: str) -> str:
    """Deterministic content hash of a draft (sha256 over its UTF-8 bytes)."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


def preview(text: str, limit: int = 200) -> str:
    s = (text or "").replace("\n", " ")
    return s if len(s) <= limit else s[:limit] + "..."


def _norm_token(s: Any) -> str:
    """Normalize a token for case-insensitive, quote-insensitive comparisons.
    - Cast to str, strip whitespace
    - Remove symmetrical leading/trailing single or double quotes
    - Lowercase
    """
    if s is None:
        return ""
    x = str(s).strip()
    if len(x) >= 2 and ((x.startswith('"') and x.endswith('"')) or (x.startswith("'") and x.endswith("'"))):
        x = x[1:-1].strip()
    return x.lower()
