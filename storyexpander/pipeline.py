"""Pipeline state machine: the single owner of PipelineState.

Stages run strictly forward:

    NOT_STARTED -> SUMMARIZING -> ELEMENTS_EXTRACTED -> OUTLINED -> EXPANDING(i) -> COMPLETE

`start()` records the draft and enters SUMMARIZING. In SUMMARIZING,
`advance()` first builds the condensed draft, then extracts story elements.
In EXPANDING, `chapter_index` is the next chapter to expand.

Every operation works on a deep copy of the state and swaps it in only when
the stage executor succeeded, then persists. A GenerationError or
ContractError leaves stage, index and artifacts untouched; it is returned as
StageOutcome(ok=False) and kept in `state.last_error`. Persistence failures
are logged and exposed on `last_persistence_error`, never rolled back.

Only one operation may run at a time; a second concurrent call raises
PipelineBusyError instead of waiting.
"""
from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional

from . import config
from .context import (
    ContractError,
    GenerationError,
    PersistenceError,
    PipelineBusyError,
    StaleProgressError,
    ValidationError,
)
from .continuity import splice_outline
from .env import env_float
from .generation import CancellationToken, GenerationClient, GenerationResult, ImageClient, check_cancel
from .llm import validate_credential
from .logging import breadcrumb as _breadcrumb, log_run as _log_run, log_warning as _log_warning
from .models import ContinuityDecision, PipelineState, Stage, StageOutcome, StoryElements
from .pipelines import (
    run_chapter_entities,
    run_expand_chapter,
    run_expand_more,
    run_extract_elements,
    run_illustrate_chapter,
    run_illustrate_cover,
    run_outline,
    run_outline_continuation,
    run_refine_chapter,
    run_summarize,
)
from .store import FileStateStore, StateStore
from .utils import fingerprint
from .validation import require_chapter_fields, require_draft, require_expanded, require_index, require_propagated

StageFn = Callable[[PipelineState, List[GenerationResult]], str]


class Pipeline:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        generator: Optional[GenerationClient] = None,
        images: Optional[ImageClient] = None,
        *,
        state_key: str = config.STATE_KEY,
        credential: Optional[Callable[[], Optional[str]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store if store is not None else FileStateStore()
        self.generator = generator or GenerationClient()
        self.images = images or ImageClient()
        self.state_key = state_key
        self._credential = credential
        self._sleep = sleep
        self._lock = threading.Lock()
        self.state = PipelineState()
        self.last_persistence_error: Optional[str] = None

    # ---------------------------
    # Plumbing
    # ---------------------------

    @contextmanager
    def _exclusive(self, operation: str):
        if not self._lock.acquire(blocking=False):
            raise PipelineBusyError(f"Cannot run '{operation}': another pipeline operation is in progress")
        try:
            _breadcrumb(f"pipeline:enter:{operation}")
            yield
        finally:
            self._lock.release()

    def _require_credential(self) -> None:
        validate_credential(self._credential)

    def _persist(self) -> bool:
        try:
            self.store.save(self.state_key, self.state.to_dict())
        except PersistenceError as e:
            self.last_persistence_error = str(e)
            _log_warning(f"State not persisted: {e}")
            return False
        self.last_persistence_error = None
        return True

    def _fail(self, operation: str, err: Exception, chapter_index: Optional[int]) -> StageOutcome:
        self.state.last_error = {
            "kind": type(err).__name__,
            "operation": operation,
            "message": str(err),
            "raw": getattr(err, "raw", ""),
            "model": getattr(err, "model", ""),
            "fallback_used": bool(getattr(err, "fallback_used", False)),
            "chapter_index": chapter_index,
        }
        _log_warning(f"{operation} failed ({type(err).__name__}): {err}")
        self._persist()
        return StageOutcome(
            ok=False, stage=self.state.stage, operation=operation, error=err,
            chapter_index=chapter_index, message=str(err),
        )

    def _run_stage(self, operation: str, work_fn: StageFn, *, chapter_index: Optional[int] = None) -> StageOutcome:
        """Run `work_fn` on a copy of the state; commit and persist only if it returns."""
        work = self.state.snapshot()
        audit: List[GenerationResult] = []
        try:
            message = work_fn(work, audit)
        except (GenerationError, ContractError) as e:
            return self._fail(operation, e, chapter_index)
        fallback_used = False
        for r in audit:
            if r.fallback_used:
                fallback_used = True
                work.fallback_events.append({
                    "operation": operation,
                    "requested_model": r.requested_model,
                    "model": r.model,
                    "attempts": r.attempts,
                })
        if fallback_used:
            _log_warning(f"{operation} completed on the fallback model")
        work.last_error = None
        self.state = work
        self._persist()
        _log_run(f"STAGE OK | {operation} -> {work.stage.value} index={work.chapter_index}")
        return StageOutcome(
            ok=True, stage=work.stage, operation=operation, chapter_index=chapter_index,
            message=message or "", fallback_used=fallback_used,
        )

    def _outline_instruction(self, state: PipelineState) -> str:
        parts = [state.instructions.get("outline", ""), state.outline_instruction]
        return "\n".join(p.strip() for p in parts if p and p.strip())

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def start(
        self,
        draft: str,
        instructions: Optional[Dict[str, str]] = None,
        *,
        style: Optional[str] = None,
        chunk_max_bytes: Optional[int] = None,
    ) -> PipelineState:
        """Begin a new run for `draft`, discarding any previous progress."""
        require_draft(draft)
        with self._exclusive("start"):
            cleaned = {str(k).strip().lower(): str(v).strip() for k, v in (instructions or {}).items() if v and str(v).strip()}
            self.state = PipelineState(
                stage=Stage.SUMMARIZING,
                draft=draft,
                draft_fingerprint=fingerprint(draft),
                instructions=cleaned,
                style=style,
                chunk_max_bytes=chunk_max_bytes,
            )
            _log_run(f"=== START RUN === fingerprint={self.state.draft_fingerprint[:12]} chars={len(draft)}")
            self._persist()
            return self.state.snapshot()

    def load(self, draft: Optional[str] = None) -> PipelineState:
        """Resume saved progress. With `draft`, refuse progress saved for a different draft."""
        with self._exclusive("load"):
            try:
                data = self.store.load(self.state_key)
            except PersistenceError as e:
                self.last_persistence_error = str(e)
                _log_warning(f"State not loaded: {e}")
                raise
            if data is None:
                return self.state.snapshot()
            loaded = PipelineState.from_dict(data)
            if draft is not None:
                current = fingerprint(draft)
                if loaded.draft_fingerprint and loaded.draft_fingerprint != current:
                    raise StaleProgressError(loaded.draft_fingerprint, current)
            self.state = loaded
            return self.state.snapshot()

    def reset(self) -> None:
        with self._exclusive("reset"):
            self.state = PipelineState()
            try:
                self.store.clear(self.state_key)
            except PersistenceError as e:
                self.last_persistence_error = str(e)
                _log_warning(f"State not cleared: {e}")
            _log_run("=== RESET ===")

    def get_state(self) -> PipelineState:
        return self.state.snapshot()

    # ---------------------------
    # Forward progress
    # ---------------------------

    def advance(self, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Run the next pending stage, or retry the one that failed last time."""
        with self._exclusive("advance"):
            stage = self.state.stage
            if stage == Stage.NOT_STARTED:
                raise ValidationError("Pipeline has not been started; call start() with a draft first")
            if stage == Stage.COMPLETE:
                return StageOutcome(ok=True, stage=stage, operation="advance", message="Pipeline already complete")
            self._require_credential()
            if stage == Stage.SUMMARIZING:
                if not self.state.condensed_draft:
                    return self._run_stage("summarize", lambda w, a: self._summarize(w, a, cancel))
                return self._run_stage("extract_elements", lambda w, a: self._extract_elements(w, a, cancel))
            if stage == Stage.ELEMENTS_EXTRACTED:
                return self._run_stage("outline", lambda w, a: self._outline(w, a, cancel))
            index = 0 if stage == Stage.OUTLINED else self.state.chapter_index
            require_propagated(self.state.pending_propagation, index)
            return self._run_stage(
                "expand_chapter", lambda w, a: self._expand(w, a, index, cancel), chapter_index=index,
            )

    def run_to_completion(self, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        outcome = self.advance(cancel)
        while outcome.ok and self.state.stage != Stage.COMPLETE:
            check_cancel(cancel)
            outcome = self.advance(cancel)
        return outcome

    def _summarize(self, work: PipelineState, audit: List[GenerationResult], cancel: Optional[CancellationToken]) -> str:
        work.condensed_draft = run_summarize(
            self.generator, work.draft, instruction=work.instructions.get("summarize", ""),
            max_bytes=work.chunk_max_bytes, cancel=cancel, audit=audit,
        )
        work.elements = None
        work.chapters = []
        work.cover = None
        return f"Condensed draft ready ({len(work.condensed_draft)} chars)"

    def _extract_elements(self, work: PipelineState, audit: List[GenerationResult], cancel: Optional[CancellationToken]) -> str:
        work.elements = run_extract_elements(
            self.generator, work.condensed_draft, instruction=work.instructions.get("elements", ""),
            cancel=cancel, audit=audit,
        )
        work.stage = Stage.ELEMENTS_EXTRACTED
        return f"Extracted {len(work.elements.characters)} characters"

    def _outline(self, work: PipelineState, audit: List[GenerationResult], cancel: Optional[CancellationToken]) -> str:
        work.chapters = run_outline(
            self.generator, work.condensed_draft, work.elements,
            instruction=self._outline_instruction(work), cancel=cancel, audit=audit,
        )
        work.stage = Stage.OUTLINED
        work.chapter_index = 0
        return f"Outlined {len(work.chapters)} chapters"

    def _expand(self, work: PipelineState, audit: List[GenerationResult], index: int, cancel: Optional[CancellationToken]) -> str:
        ch = work.chapters[index]
        require_chapter_fields(ch)
        ch.expanded_text = run_expand_chapter(self.generator, work.chapters, index, work.elements, cancel=cancel, audit=audit)
        ch.expansion_count = 0
        work.chapter_index = index + 1
        work.stage = Stage.COMPLETE if work.chapter_index >= len(work.chapters) else Stage.EXPANDING
        return f"Expanded chapter {index + 1}/{len(work.chapters)}"

    # ---------------------------
    # Chapter-level regeneration
    # ---------------------------

    def expand_more(self, index: int, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Append 500-1000 more words to an expanded chapter."""
        with self._exclusive("expand_more"):
            i = require_index(index, self.state.chapters)
            require_expanded(self.state.chapters[i], i)
            require_propagated(self.state.pending_propagation, i)
            self._require_credential()

            def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
                more = run_expand_more(self.generator, work.chapters, i, work.elements, cancel=cancel, audit=audit)
                ch = work.chapters[i]
                ch.expanded_text = ch.expanded_text + "\n\n" + more
                ch.expansion_count += 1
                return f"Chapter {i + 1} extended (pass {ch.expansion_count})"

            return self._run_stage("expand_more", _work, chapter_index=i)

    def regenerate_chapter(self, index: int, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Replace an already expanded chapter's prose with a fresh expansion."""
        with self._exclusive("regenerate_chapter"):
            i = require_index(index, self.state.chapters)
            require_expanded(self.state.chapters[i], i)
            require_propagated(self.state.pending_propagation, i)
            self._require_credential()

            def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
                ch = work.chapters[i]
                require_chapter_fields(ch)
                ch.expanded_text = run_expand_chapter(self.generator, work.chapters, i, work.elements, cancel=cancel, audit=audit)
                ch.expansion_count = 0
                return f"Chapter {i + 1} regenerated"

            return self._run_stage("regenerate_chapter", _work, chapter_index=i)

    # ---------------------------
    # Continuity
    # ---------------------------

    def edit_chapter_instruction(self, index: int, text: str) -> ContinuityDecision:
        """Store a chapter's instruction. Regeneration is a separate, explicit call to propagate_continuity."""
        with self._exclusive("edit_chapter_instruction"):
            i = require_index(index, self.state.chapters)
            new = (text or "").strip()
            if self.state.chapters[i].instruction == new:
                return ContinuityDecision(index=i, needs_propagation=False)
            self.state.chapters[i].instruction = new
            pending = self.state.pending_propagation
            self.state.pending_propagation = i if pending is None else min(pending, i)
            self._persist()
            return ContinuityDecision(index=i, needs_propagation=True, affected=list(range(i, len(self.state.chapters))))

    def propagate_continuity(self, index: int, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Regenerate outline entries from `index` on, keeping earlier chapters byte-identical.

        New persistent entities introduced by the chapter's instruction are
        merged into the story elements first so later chapters keep them.
        """
        with self._exclusive("propagate_continuity"):
            i = require_index(index, self.state.chapters)
            self._require_credential()

            def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
                base = work.elements or StoryElements()
                delta = run_chapter_entities(self.generator, base, work.chapters[i], i + 1, cancel=cancel, audit=audit)
                work.elements = base.merge(delta)
                regenerated = run_outline_continuation(
                    self.generator, work.condensed_draft, work.elements, work.chapters, i,
                    instruction=self._outline_instruction(work), cancel=cancel, audit=audit,
                )
                work.chapters = splice_outline(work.chapters, regenerated, i)
                if work.pending_propagation is not None and work.pending_propagation >= i:
                    work.pending_propagation = None
                if work.stage in (Stage.EXPANDING, Stage.COMPLETE):
                    work.stage = Stage.EXPANDING
                    work.chapter_index = min(work.chapter_index, i)
                added = len(delta.characters)
                return f"Chapters {i + 1}-{len(work.chapters)} regenerated; {added} new character(s) merged"

            return self._run_stage("propagate_continuity", _work, chapter_index=i)

    def edit_outline_instruction(self, text: str) -> ContinuityDecision:
        with self._exclusive("edit_outline_instruction"):
            new = (text or "").strip()
            if self.state.outline_instruction == new:
                return ContinuityDecision(index=None, needs_propagation=False)
            self.state.outline_instruction = new
            n = len(self.state.chapters)
            if n:
                self.state.pending_propagation = 0
            self._persist()
            return ContinuityDecision(index=None, needs_propagation=n > 0, affected=list(range(n)))

    def propagate_outline_instruction(self, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Rewrite the whole outline, then refine each chapter that carries its own instruction."""
        with self._exclusive("propagate_outline_instruction"):
            if not self.state.chapters:
                raise ValidationError("No chapters exist yet; the outline instruction applies when the outline is generated")
            self._require_credential()

            def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
                regenerated = run_outline_continuation(
                    self.generator, work.condensed_draft, work.elements, work.chapters, 0,
                    instruction=self._outline_instruction(work), cancel=cancel, audit=audit,
                )
                work.chapters = splice_outline(work.chapters, regenerated, 0)
                refined = 0
                for j, ch in enumerate(work.chapters):
                    if not ch.instruction.strip():
                        continue
                    entry = run_refine_chapter(self.generator, work.chapters, j, work.elements, cancel=cancel, audit=audit)
                    entry.instruction = ch.instruction
                    work.chapters[j] = entry
                    refined += 1
                work.stage = Stage.OUTLINED
                work.chapter_index = 0
                work.pending_propagation = None
                return f"Outline regenerated; {refined} chapter(s) refined by their own instruction"

            return self._run_stage("propagate_outline_instruction", _work)

    # ---------------------------
    # Illustration (best effort)
    # ---------------------------

    def _illustrate_one(self, i: int, style: Optional[str], cancel: Optional[CancellationToken]) -> StageOutcome:
        def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
            ill = run_illustrate_chapter(self.generator, self.images, work.chapters[i], style=style, cancel=cancel, audit=audit)
            work.chapters[i].illustration = ill
            return "Illustration ready" if ill.available else f"No image available: {ill.reason}"

        return self._run_stage("illustrate_chapter", _work, chapter_index=i)

    def _illustrate_cover(self, style: Optional[str], cancel: Optional[CancellationToken]) -> StageOutcome:
        def _work(work: PipelineState, audit: List[GenerationResult]) -> str:
            ill = run_illustrate_cover(self.generator, self.images, work.chapters, work.elements, style=style, cancel=cancel, audit=audit)
            work.cover = ill
            return "Cover ready" if ill.available else f"No cover image available: {ill.reason}"

        return self._run_stage("illustrate_cover", _work)

    def illustrate_chapter(self, index: int, style: Optional[str] = None, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        with self._exclusive("illustrate_chapter"):
            i = require_index(index, self.state.chapters)
            self._require_credential()
            return self._illustrate_one(i, style or self.state.style, cancel)

    def illustrate_cover(self, style: Optional[str] = None, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        with self._exclusive("illustrate_cover"):
            if not self.state.chapters:
                raise ValidationError("No chapters exist yet; generate the outline before the cover")
            self._require_credential()
            return self._illustrate_cover(style or self.state.style, cancel)

    def regenerate_images(self, style: Optional[str] = None, cancel: Optional[CancellationToken] = None) -> StageOutcome:
        """Illustrate every expanded chapter and the cover, pausing between image requests."""
        with self._exclusive("regenerate_images"):
            if not self.state.chapters:
                raise ValidationError("No chapters exist yet; nothing to illustrate")
            self._require_credential()
            style = style or self.state.style
            delay = env_float("SE_IMAGE_DELAY_SECONDS", config.IMAGE_DELAY_SECONDS)
            targets = [i for i, ch in enumerate(self.state.chapters) if ch.expanded_text.strip()]
            made = 0
            for n, i in enumerate(targets):
                if n and delay > 0:
                    self._sleep(delay)
                check_cancel(cancel)
                self._illustrate_one(i, style, cancel)
                if self.state.chapters[i].illustration and self.state.chapters[i].illustration.available:
                    made += 1
            if targets and delay > 0:
                self._sleep(delay)
            check_cancel(cancel)
            cover = self._illustrate_cover(style, cancel)
            cover_ok = bool(self.state.cover and self.state.cover.available)
            return StageOutcome(
                ok=True, stage=self.state.stage, operation="regenerate_images",
                message=f"{made}/{len(targets)} chapter images, cover {'ready' if cover_ok else 'unavailable'}",
                fallback_used=cover.fallback_used,
            )
