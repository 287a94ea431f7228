"""JSON contract enforcement for structured model output.

Contract:
- clean_raw(raw) -> str: strip one fenced-code wrapper and trailing commas
- parse(raw, shape) -> typed value, or raises ContractError(raw=cleaned text)

Shapes describe what a stage accepts: the JSON root kind, required fields,
cardinality bounds, and a builder that backfills documented defaults and
returns model types. Key lookup is lenient on case and separators, so
"keyEvents", "KeyEvents" and "key_events" all resolve to the same field.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .context import ContractError
from .models import Chapter, Character, StoryElements
from .utils import _norm_token

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_\-]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    s = text.strip()
    m = _FENCE_RE.match(s)
    if m:
        return m.group(1).strip()
    return s


def strip_trailing_commas(text: str) -> str:
    """Drop commas that directly precede a closing bracket or brace (outside strings)."""
    out: List[str] = []
    in_string = False
    escape = False
    n = len(text)
    i = 0
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if ch == ",":
            j = i + 1
            while j < n and text[j] in " \t\r\n":
                j += 1
            if j < n and text[j] in "]}":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def clean_raw(raw: str) -> str:
    return strip_trailing_commas(strip_code_fence(raw or ""))


def _key(k: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(k).lower())


def _fields(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {_key(k): v for k, v in obj.items()}


@dataclass(frozen=True)
class Shape:
    name: str
    kind: str  # "object" | "array"
    required: Tuple[str, ...] = ()
    min_items: Optional[int] = None
    max_items: Optional[int] = None
    wrapper_keys: Tuple[str, ...] = ()
    build: Optional[Callable[[Any], Any]] = None
    schema_hint: str = ""


def _unwrap(value: Any, shape: Shape) -> Any:
    if shape.kind == "array" and isinstance(value, dict):
        f = _fields(value)
        for wk in shape.wrapper_keys:
            if isinstance(f.get(wk), list):
                return f[wk]
    if shape.kind == "object" and isinstance(value, dict) and len(value) == 1:
        f = _fields(value)
        for wk in shape.wrapper_keys:
            if isinstance(f.get(wk), dict):
                return f[wk]
    return value


def _check_required(obj: Any, required: Tuple[str, ...], where: str) -> None:
    if not isinstance(obj, dict):
        raise ContractError(f"{where}: expected an object, got {type(obj).__name__}")
    f = _fields(obj)
    missing = [r for r in required if r not in f or f[r] in (None, "")]
    if missing:
        raise ContractError(f"{where}: missing required field(s): {', '.join(missing)}")


def validate(value: Any, shape: Shape) -> Any:
    value = _unwrap(value, shape)
    if shape.kind == "array":
        if not isinstance(value, list):
            raise ContractError(f"{shape.name}: expected a JSON array, got {type(value).__name__}")
        if shape.min_items is not None and len(value) < shape.min_items:
            raise ContractError(f"{shape.name}: expected at least {shape.min_items} items, got {len(value)}")
        if shape.max_items is not None and len(value) > shape.max_items:
            raise ContractError(f"{shape.name}: expected at most {shape.max_items} items, got {len(value)}")
        for i, item in enumerate(value):
            _check_required(item, shape.required, f"{shape.name}[{i}]")
    else:
        _check_required(value, shape.required, shape.name)
    return value


def parse(raw: str, shape: Shape) -> Any:
    cleaned = clean_raw(raw)
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ContractError(f"{shape.name}: invalid JSON: {e}", raw=cleaned)
    try:
        value = validate(value, shape)
        return shape.build(value) if shape.build else value
    except ContractError as e:
        raise ContractError(e.reason, raw=cleaned)


# ---------------------------
# Field coercion helpers
# ---------------------------

def _as_list(val: Any, where: str) -> List[Any]:
    if val is None:
        return []
    if isinstance(val, list):
        return val
    if isinstance(val, str):
        return [val] if val.strip() else []
    raise ContractError(f"{where}: expected an array")


def _as_str_list(val: Any, where: str) -> List[str]:
    out: List[str] = []
    for item in _as_list(val, where):
        if isinstance(item, (dict, list)):
            item = json.dumps(item, ensure_ascii=False)
        s = str(item).strip()
        if s:
            out.append(s)
    return out


def _as_text(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, list):
        return ", ".join(str(x).strip() for x in val if str(x).strip())
    return str(val).strip()


def _build_character(item: Any, where: str) -> Character:
    if isinstance(item, str):
        if not item.strip():
            raise ContractError(f"{where}: empty character name")
        return Character(name=item.strip())
    if not isinstance(item, dict):
        raise ContractError(f"{where}: expected a character object")
    f = _fields(item)
    name = _as_text(f.get("name"))
    if not name:
        raise ContractError(f"{where}: character is missing a name")
    affiliation = _as_text(f.get("affiliation")) or None
    return Character(
        name=name,
        gender=_as_text(f.get("gender")),
        role=_as_text(f.get("role")),
        traits=_as_text(f.get("traits")),
        affiliation=affiliation,
    )


def _build_elements(value: Dict[str, Any], *, enforce_story_lines: bool) -> StoryElements:
    f = _fields(value)
    chars: List[Character] = []
    seen = set()
    for i, item in enumerate(_as_list(f.get("characters"), "characters")):
        c = _build_character(item, f"characters[{i}]")
        key = _norm_token(c.name)
        if key in seen:
            continue
        seen.add(key)
        chars.append(c)
    story_lines = _as_str_list(f.get("mainstorylines"), "mainStoryLines")
    if enforce_story_lines:
        if not config.MIN_STORY_LINES <= len(story_lines) <= config.MAX_STORY_LINES:
            raise ContractError(
                f"mainStoryLines: expected {config.MIN_STORY_LINES}-{config.MAX_STORY_LINES} entries, got {len(story_lines)}"
            )
    return StoryElements(
        characters=chars,
        key_events=_as_str_list(f.get("keyevents"), "keyEvents"),
        timeline=_as_str_list(f.get("timeline"), "timeline"),
        unique_details=_as_str_list(f.get("uniquedetails"), "uniqueDetails"),
        main_story_lines=story_lines,
    )


def _build_chapter(item: Dict[str, Any], number: int) -> Chapter:
    f = _fields(item)
    summary = _as_text(f.get("summary"))
    if not summary:
        raise ContractError(f"chapter {number}: empty summary")
    timeline = _as_text(f.get("timeline"))
    if not timeline:
        raise ContractError(f"chapter {number}: empty timeline")
    key_events = _as_str_list(f.get("keyevents"), "keyEvents")
    traits = _as_str_list(f.get("charactertraits"), "characterTraits")
    if not key_events or not traits:
        raise ContractError(f"chapter {number}: keyEvents and characterTraits must be non-empty lists")
    return Chapter(
        title=_as_text(f.get("title")) or f"Chapter {number}",
        summary=summary,
        key_events=key_events,
        character_traits=traits,
        timeline=timeline,
    )


ELEMENTS_SCHEMA_HINT = (
    '{"characters": [{"name": "...", "gender": "...", "role": "...", "traits": "...", "affiliation": "..."}], '
    '"keyEvents": ["..."], "timeline": ["..."], "uniqueDetails": ["..."], '
    '"mainStoryLines": ["...", "...", "..."]}'
)

CHAPTER_SCHEMA_HINT = (
    '{"title": "...", "summary": "3-7 sentences", "keyEvents": ["..."], '
    '"characterTraits": ["Name: traits"], "timeline": "..."}'
)

STORY_ELEMENTS = Shape(
    name="StoryElements",
    kind="object",
    required=("characters", "keyevents", "mainstorylines"),
    wrapper_keys=("storyelements", "elements"),
    build=lambda v: _build_elements(v, enforce_story_lines=True),
    schema_hint=ELEMENTS_SCHEMA_HINT,
)

# New entities surfaced by a chapter edit; every collection is optional.
ELEMENTS_DELTA = Shape(
    name="StoryElementsDelta",
    kind="object",
    wrapper_keys=("storyelements", "elements", "newelements"),
    build=lambda v: _build_elements(v, enforce_story_lines=False),
    schema_hint=ELEMENTS_SCHEMA_HINT,
)


_CHAPTER_FIELDS = ("summary", "keyevents", "charactertraits", "timeline")


def outline_shape(min_items: int = config.MIN_CHAPTERS, max_items: int = config.MAX_CHAPTERS, *, first_number: int = 1) -> Shape:
    def _build(items: List[Dict[str, Any]]) -> List[Chapter]:
        return [_build_chapter(item, first_number + i) for i, item in enumerate(items)]

    count = f"exactly {min_items}" if min_items == max_items else f"{min_items}-{max_items}"
    return Shape(
        name="Outline",
        kind="array",
        required=_CHAPTER_FIELDS,
        min_items=min_items,
        max_items=max_items,
        wrapper_keys=("chapters", "outline"),
        build=_build,
        schema_hint=f"[{CHAPTER_SCHEMA_HINT}, ...]  ({count} chapter objects)",
    )


def chapter_entry_shape(number: int) -> Shape:
    return Shape(
        name="ChapterEntry",
        kind="object",
        required=_CHAPTER_FIELDS,
        wrapper_keys=("chapter",),
        build=lambda v: _build_chapter(v, number),
        schema_hint=CHAPTER_SCHEMA_HINT,
    )


OUTLINE = outline_shape()
