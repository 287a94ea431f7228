"""Sentence-preserving chunker for long drafts.

- split_sentences(text) -> list of contiguous sentence slices
- chunk_text(text, max_bytes) -> list of contiguous chunks

Chunks are exact slices of the input: each sentence keeps the whitespace that
follows it, so "".join(chunk_text(t, n)) == t for any input. Budgets are
measured in UTF-8 bytes because provider request limits are byte oriented.
"""
from __future__ import annotations

import re
from typing import List

# Terminal punctuation run followed by whitespace or end of text
_SENTENCE_END_RE = re.compile(r"[.!?]+(?:\s+|$)")


def byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def split_sentences(text: str) -> List[str]:
    sentences: List[str] = []
    start = 0
    for m in _SENTENCE_END_RE.finditer(text):
        end = m.end()
        if end > start:
            sentences.append(text[start:end])
            start = end
    if start < len(text):
        sentences.append(text[start:])
    return sentences


def chunk_text(text: str, max_bytes: int) -> List[str]:
    """Greedily pack sentences into chunks of at most `max_bytes` bytes.

    A sentence larger than the budget becomes its own oversized chunk.
    Empty or whitespace-only input yields a single chunk holding the input.
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be positive")
    if not text.strip():
        return [text]
    chunks: List[str] = []
    current = ""
    current_bytes = 0
    for sentence in split_sentences(text):
        size = byte_len(sentence)
        if current and current_bytes + size > max_bytes:
            chunks.append(current)
            current = ""
            current_bytes = 0
        current += sentence
        current_bytes += size
    if current:
        chunks.append(current)
    return chunks
