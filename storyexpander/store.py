"""State store: key -> JSON blob persistence for PipelineState.

- StateStore: interface (save, load, clear)
- FileStateStore: one `<key>.json` per key under the state directory
- MemoryStateStore: in-process dict, for tests and embedding

Every failure is raised as PersistenceError; callers decide whether it is
fatal (the pipeline treats it as a warning).
"""
from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from .context import PersistenceError
from .env import get_state_dir
from .logging import breadcrumb as _breadcrumb


class StateStore:
    def save(self, key: str, blob: Dict[str, Any]) -> None:
        raise NotImplementedError

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def save(self, key: str, blob: Dict[str, Any]) -> None:
        try:
            self._data[key] = json.dumps(blob, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Unable to serialize state '{key}': {e}")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def clear(self, key: str) -> None:
        self._data.pop(key, None)


def _safe_key(key: str) -> str:
    s = re.sub(r"[^A-Za-z0-9_.\-]+", "_", key or "").strip("._")
    if not s:
        raise PersistenceError(f"Invalid state key: {key!r}")
    return s


class FileStateStore(StateStore):
    """JSON snapshots on disk; writes go through a temp file and an atomic rename."""

    def __init__(self, directory: Optional[str | Path] = None) -> None:
        self.directory = Path(directory) if directory is not None else get_state_dir()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{_safe_key(key)}.json"

    def save(self, key: str, blob: Dict[str, Any]) -> None:
        p = self.path_for(key)
        tmp = p.with_suffix(".json.tmp")
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(blob, f, ensure_ascii=False, indent=2)
            os.replace(tmp, p)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Unable to save state to {p}: {e}")
        _breadcrumb(f"state:saved:{p.name}")

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        p = self.path_for(key)
        if not p.exists():
            return None
        try:
            with p.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Unable to load state from {p}: {e}")
        if not isinstance(data, dict):
            raise PersistenceError(f"State file {p} does not hold a JSON object")
        return data

    def clear(self, key: str) -> None:
        p = self.path_for(key)
        try:
            if p.exists():
                p.unlink()
        except OSError as e:
            raise PersistenceError(f"Unable to clear state {p}: {e}")
