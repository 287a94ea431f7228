"""Error types, RunContext and YAML loading utilities.

Contract:
- RunContext.from_paths(draft_path: str, config_path: Optional[str]) -> RunContext
- load_yaml(path: str) -> dict | list | scalar

This is the only module that performs YAML reads during a run.
Other modules accept plain values (draft text, instruction dicts) and avoid YAML I/O.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from yaml.loader import SafeLoader as _PySafeLoader

from .logging import breadcrumb as _breadcrumb, log_run as _log_run


class SEError(Exception):
    pass


class MissingFileError(SEError):
    pass


class InvalidYAMLError(SEError):
    pass


class MissingCredentialError(SEError):
    """No usable generation credential. Fatal to any stage attempt; never retried."""
    pass


class ValidationError(SEError):
    """Caller input violates a precondition. Raised before any generation call."""
    pass


class StaleProgressError(SEError):
    """Saved progress belongs to a different draft than the one supplied."""

    def __init__(self, saved_fingerprint: str, current_fingerprint: str) -> None:
        super().__init__(
            f"Saved progress was made for a different draft "
            f"(saved={saved_fingerprint[:12]} current={current_fingerprint[:12]}); "
            f"reset or start a new run"
        )
        self.saved_fingerprint = saved_fingerprint
        self.current_fingerprint = current_fingerprint


class PipelineBusyError(SEError):
    """Another operation is already running against this pipeline."""
    pass


class CancelledError(SEError):
    pass


class PersistenceError(SEError):
    pass


class GenerationError(SEError):
    """Completion or image call failed after the retry-then-fallback policy."""

    def __init__(self, message: str, *, model: str = "", attempts: int = 0, fallback_used: bool = False) -> None:
        super().__init__(message)
        self.model = model
        self.attempts = attempts
        self.fallback_used = fallback_used


class ContractError(SEError):
    """Model output did not parse or validate against the expected shape.

    `raw` holds the cleaned model text so operators can inspect what came back.
    """

    def __init__(self, reason: str, raw: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


def _yaml_load_py(content: str):
    return yaml.load(content, Loader=_PySafeLoader)


def load_yaml(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
        _breadcrumb(f"yaml:read:{path}")
    except FileNotFoundError:
        _log_run(f"YAML ERROR FileNotFound: {path}")
        raise MissingFileError(f"Required file not found: {path}")
    except Exception as e:
        _log_run(f"YAML ERROR ReadFailure: {path} :: {e}")
        raise SEError(f"Unable to read file {path}: {e}")
    try:
        data = _yaml_load_py(content)
        _log_run(f"YAML OK Parsed: {path}")
        return data
    except yaml.YAMLError as e:  # type: ignore[attr-defined]
        _log_run(f"YAML ERROR InvalidYAML: {path} :: {e}")
        raise InvalidYAMLError(f"Invalid YAML in {path}: {e}")


def _str_or_none(val: Any) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    return s or None


@dataclass(frozen=True)
class RunContext:
    """Inputs for one run: the draft text plus optional steering from a YAML run file."""

    draft: str
    instructions: Dict[str, str] = field(default_factory=dict)
    style: Optional[str] = None
    chunk_max_bytes: Optional[int] = None
    draft_path: Optional[Path] = None

    @classmethod
    def from_paths(cls, *, draft_path: str, config_path: Optional[str] = None) -> "RunContext":
        p = Path(draft_path)
        if not p.exists():
            raise MissingFileError(f"Draft file not found: {draft_path}")
        draft = p.read_text(encoding="utf-8")
        cfg: Dict[str, Any] = {}
        if config_path:
            loaded = load_yaml(config_path)
            if loaded is not None and not isinstance(loaded, dict):
                raise InvalidYAMLError(f"Run config must be a mapping: {config_path}")
            cfg = loaded or {}
        raw_instr = cfg.get("instructions") or {}
        if not isinstance(raw_instr, dict):
            raise InvalidYAMLError(f"'instructions' must be a mapping in {config_path}")
        instructions: Dict[str, str] = {}
        for k, v in raw_instr.items():
            s = _str_or_none(v)
            if s:
                instructions[str(k).strip().lower()] = s
        chunk_max = cfg.get("chunk_max_bytes")
        try:
            chunk_max_bytes = int(chunk_max) if chunk_max is not None else None
        except (TypeError, ValueError):
            raise InvalidYAMLError(f"'chunk_max_bytes' must be an integer in {config_path}")
        return cls(
            draft=draft,
            instructions=instructions,
            style=_str_or_none(cfg.get("style")),
            chunk_max_bytes=chunk_max_bytes,
            draft_path=p,
        )
