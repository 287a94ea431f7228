"""Generation client: bounded retry on the requested model, then one fallback cycle.

- GenerationClient.generate(prompt, model) -> GenerationResult
- ImageClient.generate_image(prompt) -> ImageResult
- CancellationToken, honoured at every attempt boundary (never mid-request)

Policy: up to N attempts (default 3) on the requested model; when those are
exhausted and the requested model is not the fallback model, one fresh cycle
of up to N attempts on the fallback model. At most 2N attempts per logical
call. Whether fallback was exercised is reported on the result (or on the
GenerationError) so callers can audit cost and quality.
"""
from __future__ import annotations

import itertools
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .context import CancelledError, GenerationError, MissingCredentialError
from .env import get_fallback_model, get_llm_log_dir, get_model, log_llm_enabled, retry_attempts, retry_base_delay
from .llm import ImageResult, complete as _llm_complete, generate_image as _llm_generate_image
from .logging import breadcrumb as _breadcrumb, log_run as _log_run, log_warning as _log_warning
from .utils import preview, save_text

__all__ = [
    "CancellationToken",
    "GenerationClient",
    "GenerationResult",
    "ImageClient",
    "ImageResult",
]


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running operation."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Operation cancelled")


def check_cancel(cancel: Optional[CancellationToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


@dataclass
class GenerationResult:
    text: str
    model: str
    requested_model: str
    attempts: int
    fallback_used: bool = False
    errors: List[str] = field(default_factory=list)


_LOG_COUNTER = itertools.count(1)


def _write_llm_log(tag: str, model: str, system: Optional[str], prompt: str, out: str) -> None:
    if not log_llm_enabled():
        return
    try:
        n = next(_LOG_COUNTER)
        safe_tag = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in (tag or "call"))
        path = get_llm_log_dir() / f"{time.strftime('%Y%m%d-%H%M%S')}_{n:04d}_{safe_tag}.txt"
        save_text(
            path,
            f"=== MODEL ===\n{model}\n\n"
            f"=== SYSTEM ===\n{system or ''}\n\n"
            f"=== USER ===\n{prompt}\n\n"
            f"=== RESPONSE ===\n{out}\n",
        )
    except Exception:
        pass


class GenerationClient:
    def __init__(
        self,
        complete_fn: Optional[Callable[..., str]] = None,
        *,
        fallback_model: Optional[str] = None,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._complete = complete_fn or _llm_complete
        self.fallback_model = fallback_model or get_fallback_model()
        self.attempts = attempts if attempts is not None else retry_attempts()
        self.base_delay = base_delay if base_delay is not None else retry_base_delay()
        self._sleep = sleep

    def _backoff(self, attempt: int) -> None:
        if self.base_delay > 0:
            self._sleep(self.base_delay * (2 ** (attempt - 1)) + random.random() * 0.2)

    def _cycle(
        self,
        prompt: str,
        model: str,
        *,
        system: Optional[str],
        temperature: float,
        max_tokens: int,
        cancel: Optional[CancellationToken],
        tag: str,
        errors: List[str],
    ) -> Tuple[Optional[str], int]:
        """Run one retry cycle on a single model. Returns (text or None, attempts made)."""
        made = 0
        for attempt in range(1, self.attempts + 1):
            check_cancel(cancel)
            made += 1
            try:
                out = self._complete(prompt, system=system, temperature=temperature, max_tokens=max_tokens, model=model)
            except MissingCredentialError:
                raise
            except Exception as e:
                errors.append(f"{model}#{attempt}: {type(e).__name__}: {e}")
                _log_warning(f"Generation attempt {attempt}/{self.attempts} failed on {model} [{tag}]: {e}")
            else:
                _write_llm_log(tag, model, system, prompt, out or "")
                if out and out.strip():
                    _log_run(f"LLM output [{tag}] model={model}: {preview(out)}")
                    return out, made
                errors.append(f"{model}#{attempt}: empty response")
                _log_warning(f"Generation attempt {attempt}/{self.attempts} returned empty text on {model} [{tag}]")
            if attempt < self.attempts:
                self._backoff(attempt)
        return None, made

    def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        *,
        system: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        cancel: Optional[CancellationToken] = None,
        tag: str = "",
    ) -> GenerationResult:
        requested = model or get_model()
        errors: List[str] = []
        _breadcrumb(f"gen:enter tag={tag} model={requested}")
        out, total = self._cycle(
            prompt, requested, system=system, temperature=temperature, max_tokens=max_tokens,
            cancel=cancel, tag=tag, errors=errors,
        )
        if out is not None:
            return GenerationResult(text=out, model=requested, requested_model=requested, attempts=total, errors=errors)
        if self.fallback_model == requested:
            raise GenerationError(
                f"Generation failed on {requested} after {total} attempts: {errors[-1] if errors else 'unknown error'}",
                model=requested, attempts=total, fallback_used=False,
            )
        _log_warning(f"Falling back from {requested} to {self.fallback_model} [{tag}]")
        out, made = self._cycle(
            prompt, self.fallback_model, system=system, temperature=temperature, max_tokens=max_tokens,
            cancel=cancel, tag=tag, errors=errors,
        )
        total += made
        if out is not None:
            return GenerationResult(
                text=out, model=self.fallback_model, requested_model=requested,
                attempts=total, fallback_used=True, errors=errors,
            )
        raise GenerationError(
            f"Generation failed on {requested} and fallback {self.fallback_model} after {total} attempts: "
            f"{errors[-1] if errors else 'unknown error'}",
            model=self.fallback_model, attempts=total, fallback_used=True,
        )


class ImageClient:
    """Image synthesis with bounded retry on hard failures.

    Safety rejections are returned immediately; callers decide whether to
    retry with a sanitized prompt.
    """

    def __init__(
        self,
        generate_fn: Optional[Callable[[str], ImageResult]] = None,
        *,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._generate = generate_fn or _llm_generate_image
        self.attempts = attempts if attempts is not None else retry_attempts()
        self.base_delay = base_delay if base_delay is not None else retry_base_delay()
        self._sleep = sleep

    def generate_image(self, prompt: str, *, cancel: Optional[CancellationToken] = None) -> ImageResult:
        last = ""
        for attempt in range(1, self.attempts + 1):
            check_cancel(cancel)
            try:
                result = self._generate(prompt)
            except MissingCredentialError:
                raise
            except Exception as e:
                last = f"{type(e).__name__}: {e}"
                _log_warning(f"Image attempt {attempt}/{self.attempts} failed: {e}")
            else:
                if result.image_url or result.rejected:
                    return result
                last = result.reason or "no image returned"
                _log_warning(f"Image attempt {attempt}/{self.attempts} returned no image: {last}")
            if attempt < self.attempts and self.base_delay > 0:
                self._sleep(self.base_delay * (2 ** (attempt - 1)))
        raise GenerationError(f"Image generation failed after {self.attempts} attempts: {last}", model="image", attempts=self.attempts)
