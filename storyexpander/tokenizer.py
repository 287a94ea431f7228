"""Token estimates for log lines.

- count_text_tokens(text, model) -> int
- count_chat_tokens(messages, model) -> int

Models tiktoken does not know are counted with the o200k_base encoding; if
no encoding can be loaded at all, SE_CHARS_PER_TOKEN (default 4) is used.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

import tiktoken

from .env import env_float

# Per-message framing overhead of chat formats, plus reply priming
_MESSAGE_OVERHEAD = 3
_REPLY_PRIMING = 3


@lru_cache(maxsize=16)
def _encoding(model: str) -> Optional["tiktoken.Encoding"]:
    # Encodings are fetched on first use; offline runs fall back to the estimate
    try:
        return tiktoken.encoding_for_model(model)
    except Exception:
        pass
    for name in ("o200k_base", "cl100k_base"):
        try:
            return tiktoken.get_encoding(name)
        except Exception:
            continue
    return None


def count_text_tokens(text: str, model: str) -> int:
    enc = _encoding(model)
    if enc is None:
        cpt = env_float("SE_CHARS_PER_TOKEN", 4.0)
        return int(len(text or "") / (cpt if cpt > 0 else 4.0) + 0.5)
    return len(enc.encode(text or "", disallowed_special=()))


def count_chat_tokens(messages: List[Dict[str, str]], model: str) -> int:
    total = _REPLY_PRIMING
    for m in messages:
        total += _MESSAGE_OVERHEAD
        total += count_text_tokens(str(m.get("role", "")), model)
        total += count_text_tokens(str(m.get("content", "")), model)
    return total
