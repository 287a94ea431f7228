"""Shared helpers for stage executors.

Contains environment resolution, the structured-generation retry (one stricter
re-prompt after a contract failure) and free-text generation with validation.
Stage modules stay thin: build replacements, render a template, call one of
these helpers.
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple

from ..context import ContractError, GenerationError
from ..contract import Shape, parse
from ..env import env_for_prompt as _env_for_prompt
from ..generation import CancellationToken, GenerationClient, GenerationResult
from ..logging import log_run as _log_run, log_warning as _log_warning
from ..templates import strict_json_suffix
from ..validation import validate_text

__all__ = [
    "env_for_prompt",
    "generate_structured",
    "generate_text",
    "record",
]

Audit = Optional[List[GenerationResult]]

STRUCTURED_SYSTEM = (
    "You are a meticulous story editor. You answer with a single valid JSON value "
    "and nothing else: no markdown fences, no commentary, no trailing commas."
)
PROSE_SYSTEM = "You are a skilled novelist who writes vivid, coherent long-form fiction."


def env_for_prompt(template_filename: str, fallback_step_key: str, *, default_temp: float = 0.7, default_max_tokens: int = 4000) -> Tuple[Optional[str], float, int]:
    return _env_for_prompt(template_filename, fallback_step_key, default_temp=default_temp, default_max_tokens=default_max_tokens)


def record(audit: Audit, result: GenerationResult) -> None:
    if audit is not None:
        audit.append(result)


def generate_structured(
    client: GenerationClient,
    prompt: str,
    shape: Shape,
    *,
    model: Optional[str],
    temperature: float,
    max_tokens: int,
    cancel: Optional[CancellationToken] = None,
    tag: str = "",
    strict_note: str = "",
    audit: Audit = None,
) -> Any:
    """Generate, parse against `shape`, and on ContractError retry once with a stricter prompt.

    The second ContractError propagates carrying the cleaned raw text.
    GenerationError propagates from either attempt unchanged.
    """
    result = client.generate(prompt, model, system=STRUCTURED_SYSTEM, temperature=temperature,
                             max_tokens=max_tokens, cancel=cancel, tag=tag)
    record(audit, result)
    try:
        return parse(result.text, shape)
    except ContractError as e:
        _log_warning(f"Contract failure [{tag}] {shape.name}: {e.reason}; retrying with strict JSON prompt")
        first = e
    strict_prompt = prompt + strict_json_suffix(shape.schema_hint, first.reason, strict_note)
    # Stricter prompts get a colder sampling temperature
    result = client.generate(strict_prompt, model, system=STRUCTURED_SYSTEM, temperature=min(temperature, 0.3),
                             max_tokens=max_tokens, cancel=cancel, tag=f"{tag}_strict")
    record(audit, result)
    try:
        return parse(result.text, shape)
    except ContractError as e:
        _log_run(f"CONTRACT ERROR [{tag}] {shape.name}: {e.reason}")
        raise


def generate_text(
    client: GenerationClient,
    prompt: str,
    *,
    model: Optional[str],
    temperature: float,
    max_tokens: int,
    cancel: Optional[CancellationToken] = None,
    tag: str = "",
    system: str = PROSE_SYSTEM,
    audit: Audit = None,
) -> str:
    result = client.generate(prompt, model, system=system, temperature=temperature,
                             max_tokens=max_tokens, cancel=cancel, tag=tag)
    record(audit, result)
    ok, reason = validate_text(result.text)
    if not ok:
        raise GenerationError(f"{tag}: {reason}", model=result.model, attempts=result.attempts,
                              fallback_used=result.fallback_used)
    return result.text.strip()
