"""Summarize stage: condense a long draft chunk by chunk.

Each chunk is summarized independently (200-400 words) and the summaries are
joined in chunk order with a blank line to form the condensed draft.
"""
from __future__ import annotations

from typing import Optional

from .. import config
from ..chunker import chunk_text
from ..env import env_int
from ..generation import CancellationToken, GenerationClient, check_cancel
from ..logging import log_run as _log_run
from ..templates import instruction_block, render
from ..tokenizer import count_text_tokens
from .common import Audit, env_for_prompt, generate_text

TEMPLATE = "summarize_chunk_prompt.md"


def chunk_budget(override: Optional[int] = None) -> int:
    if override is not None and int(override) > 0:
        return int(override)
    return env_int("SE_CHUNK_MAX_BYTES", config.CHUNK_MAX_BYTES)


def run_summarize(
    client: GenerationClient,
    draft: str,
    *,
    instruction: str = "",
    max_bytes: Optional[int] = None,
    cancel: Optional[CancellationToken] = None,
    audit: Audit = None,
) -> str:
    chunks = chunk_text(draft, chunk_budget(max_bytes))
    model, temp, max_toks = env_for_prompt(TEMPLATE, "SUMMARIZE", default_temp=0.5, default_max_tokens=1000)
    summaries = []
    for i, chunk in enumerate(chunks, start=1):
        check_cancel(cancel)
        _log_run(f"Summarizing chunk {i}/{len(chunks)} (~{count_text_tokens(chunk, model)} tokens)")
        prompt = render(TEMPLATE, {
            "[INSTRUCTION_BLOCK]": instruction_block(instruction),
            "[CHUNK_NUM]": str(i),
            "[CHUNK_TOTAL]": str(len(chunks)),
            "[CHUNK]": chunk,
        })
        summaries.append(generate_text(
            client, prompt, model=model, temperature=temp, max_tokens=max_toks,
            cancel=cancel, tag=f"summarize_{i:03d}", audit=audit,
        ))
    return "\n\n".join(summaries)
