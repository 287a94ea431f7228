"""Pipeline data types and their JSON-safe (de)serialization.

PipelineState is the unit of persistence: `to_dict()` / `from_dict()` must
round-trip every artifact, including nested chapters and story elements.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .utils import _norm_token


class Stage(str, Enum):
    NOT_STARTED = "not_started"
    SUMMARIZING = "summarizing"
    ELEMENTS_EXTRACTED = "elements_extracted"
    OUTLINED = "outlined"
    EXPANDING = "expanding"
    COMPLETE = "complete"


def _str_list(val: Any) -> List[str]:
    if val is None:
        return []
    if isinstance(val, str):
        return [val] if val.strip() else []
    return [str(x) for x in val if x is not None and str(x).strip()]


def _opt_int(val: Any) -> Optional[int]:
    return int(val) if val is not None else None


@dataclass
class Character:
    name: str
    gender: str = ""
    role: str = ""
    traits: str = ""
    affiliation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Character":
        return cls(
            name=str(d.get("name", "")),
            gender=str(d.get("gender") or ""),
            role=str(d.get("role") or ""),
            traits=str(d.get("traits") or ""),
            affiliation=d.get("affiliation") or None,
        )


def _union(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    out = list(existing)
    seen = set(out)
    for item in incoming:
        if item not in seen:
            out.append(item)
            seen.add(item)
    return out


@dataclass
class StoryElements:
    characters: List[Character] = field(default_factory=list)
    key_events: List[str] = field(default_factory=list)
    timeline: List[str] = field(default_factory=list)
    unique_details: List[str] = field(default_factory=list)
    main_story_lines: List[str] = field(default_factory=list)

    def character_names(self) -> List[str]:
        return [c.name for c in self.characters]

    def merge(self, other: "StoryElements") -> "StoryElements":
        """Union-merge `other` into a copy of self.

        Characters merge by natural key (case-insensitive name); existing
        entries win. Ordered collections append unseen items at the end;
        unordered ones union on exact string equality.
        """
        known = {_norm_token(c.name) for c in self.characters}
        chars = [copy.copy(c) for c in self.characters]
        for c in other.characters:
            key = _norm_token(c.name)
            if key and key not in known:
                chars.append(copy.copy(c))
                known.add(key)
        return StoryElements(
            characters=chars,
            key_events=_union(self.key_events, other.key_events),
            timeline=_union(self.timeline, other.timeline),
            unique_details=_union(self.unique_details, other.unique_details),
            main_story_lines=_union(self.main_story_lines, other.main_story_lines),
        )

    def is_empty(self) -> bool:
        return not (self.characters or self.key_events or self.timeline or self.unique_details or self.main_story_lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "characters": [c.to_dict() for c in self.characters],
            "key_events": list(self.key_events),
            "timeline": list(self.timeline),
            "unique_details": list(self.unique_details),
            "main_story_lines": list(self.main_story_lines),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StoryElements":
        return cls(
            characters=[Character.from_dict(c) for c in d.get("characters", []) if isinstance(c, dict)],
            key_events=_str_list(d.get("key_events")),
            timeline=_str_list(d.get("timeline")),
            unique_details=_str_list(d.get("unique_details")),
            main_story_lines=_str_list(d.get("main_story_lines")),
        )


@dataclass
class Illustration:
    prompt: str = ""
    image_url: Optional[str] = None
    reason: str = ""
    sanitized: bool = False

    @property
    def available(self) -> bool:
        return bool(self.image_url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Illustration":
        return cls(
            prompt=str(d.get("prompt") or ""),
            image_url=d.get("image_url") or None,
            reason=str(d.get("reason") or ""),
            sanitized=bool(d.get("sanitized", False)),
        )


@dataclass
class Chapter:
    title: str
    summary: str
    key_events: List[str] = field(default_factory=list)
    character_traits: List[str] = field(default_factory=list)
    timeline: str = ""
    instruction: str = ""
    expanded_text: str = ""
    expansion_count: int = 0
    illustration: Optional[Illustration] = None

    def clear_expansion(self) -> None:
        self.expanded_text = ""
        self.expansion_count = 0
        self.illustration = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "key_events": list(self.key_events),
            "character_traits": list(self.character_traits),
            "timeline": self.timeline,
            "instruction": self.instruction,
            "expanded_text": self.expanded_text,
            "expansion_count": self.expansion_count,
            "illustration": self.illustration.to_dict() if self.illustration else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Chapter":
        ill = d.get("illustration")
        return cls(
            title=str(d.get("title") or ""),
            summary=str(d.get("summary") or ""),
            key_events=_str_list(d.get("key_events")),
            character_traits=_str_list(d.get("character_traits")),
            timeline=str(d.get("timeline") or ""),
            instruction=str(d.get("instruction") or ""),
            expanded_text=str(d.get("expanded_text") or ""),
            expansion_count=int(d.get("expansion_count") or 0),
            illustration=Illustration.from_dict(ill) if isinstance(ill, dict) else None,
        )


@dataclass
class PipelineState:
    stage: Stage = Stage.NOT_STARTED
    chapter_index: int = 0
    draft: str = ""
    draft_fingerprint: str = ""
    instructions: Dict[str, str] = field(default_factory=dict)
    outline_instruction: str = ""
    style: Optional[str] = None
    chunk_max_bytes: Optional[int] = None
    condensed_draft: str = ""
    elements: Optional[StoryElements] = None
    chapters: List[Chapter] = field(default_factory=list)
    cover: Optional[Illustration] = None
    last_error: Optional[Dict[str, Any]] = None
    fallback_events: List[Dict[str, Any]] = field(default_factory=list)
    # Lowest chapter index whose instruction edit has not been propagated yet
    pending_propagation: Optional[int] = None

    def snapshot(self) -> "PipelineState":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "chapter_index": self.chapter_index,
            "draft": self.draft,
            "draft_fingerprint": self.draft_fingerprint,
            "instructions": dict(self.instructions),
            "outline_instruction": self.outline_instruction,
            "style": self.style,
            "chunk_max_bytes": self.chunk_max_bytes,
            "condensed_draft": self.condensed_draft,
            "elements": self.elements.to_dict() if self.elements else None,
            "chapters": [c.to_dict() for c in self.chapters],
            "cover": self.cover.to_dict() if self.cover else None,
            "last_error": self.last_error,
            "fallback_events": list(self.fallback_events),
            "pending_propagation": self.pending_propagation,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PipelineState":
        elements = d.get("elements")
        cover = d.get("cover")
        return cls(
            stage=Stage(d.get("stage", Stage.NOT_STARTED.value)),
            chapter_index=int(d.get("chapter_index") or 0),
            draft=str(d.get("draft") or ""),
            draft_fingerprint=str(d.get("draft_fingerprint") or ""),
            instructions={str(k): str(v) for k, v in (d.get("instructions") or {}).items()},
            outline_instruction=str(d.get("outline_instruction") or ""),
            style=d.get("style") or None,
            chunk_max_bytes=d.get("chunk_max_bytes"),
            condensed_draft=str(d.get("condensed_draft") or ""),
            elements=StoryElements.from_dict(elements) if isinstance(elements, dict) else None,
            chapters=[Chapter.from_dict(c) for c in d.get("chapters", []) if isinstance(c, dict)],
            cover=Illustration.from_dict(cover) if isinstance(cover, dict) else None,
            last_error=d.get("last_error"),
            fallback_events=list(d.get("fallback_events") or []),
            pending_propagation=_opt_int(d.get("pending_propagation")),
        )


@dataclass
class StageOutcome:
    """Typed result of one pipeline operation; errors are values, not exceptions."""

    ok: bool
    stage: Stage
    operation: str
    error: Optional[Exception] = None
    chapter_index: Optional[int] = None
    message: str = ""
    fallback_used: bool = False

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


@dataclass
class ContinuityDecision:
    """Returned by instruction edits: whether downstream artifacts must be regenerated."""

    index: Optional[int]
    needs_propagation: bool
    affected: List[int] = field(default_factory=list)
