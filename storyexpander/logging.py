"""Run logging: run.log, run_error.log, trace breadcrumbs and warnings.

All files live under the base directory (SE_BASE_DIR). Writers never raise;
a log failure must not interrupt a stage.

Public API:
- log_run(msg) / log_warning(msg) / log_error_base(msg)
- breadcrumb(label): one line per persistence or I/O event, optionally
  mirrored to SE_TRACE_FILE and stderr (SE_CRUMBS_STDERR=1)
- init_run_logs(keep_lines=5000): trim run.log at CLI startup
"""
from __future__ import annotations
from pathlib import Path
from typing import Optional
import os
import sys
import threading
import time


def _stamp() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


def _base() -> Path:
    from .env import get_base_dir  # lazy import, env imports config only
    return get_base_dir()


def _append(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(line)


def trace_file() -> Optional[str]:
    return os.getenv("SE_TRACE_FILE") or None


def log_run(msg: str) -> None:
    try:
        _append(_base() / "run.log", f"[{_stamp()}] {msg}\n")
    except OSError:
        pass


def breadcrumb(label: str) -> None:
    log_run(f"BREADCRUMB | {label}")
    path = trace_file()
    try:
        if path:
            _append(Path(path), f"{_stamp()} pid={os.getpid()} tid={threading.get_ident()} | {label}\n")
        if os.getenv("SE_CRUMBS_STDERR", "0") == "1":
            sys.stderr.write(f"[crumb] {label}\n")
    except OSError:
        pass


def log_warning(msg: str) -> None:
    """Print a warning and keep a copy in run.log."""
    text = f"WARNING: {msg}"
    print(text)
    log_run(text)


def log_error_base(msg: str) -> None:
    """Record an error in run_error.log and run.log, and show it on stdout."""
    try:
        _append(_base() / "run_error.log", f"[{_stamp()}] {msg}\n")
    except OSError:
        pass
    log_run(f"ERROR: {msg}")
    print(f"ERROR: {msg}")


def init_run_logs(keep_lines: int = 5000) -> None:
    try:
        path = _base() / "run.log"
        if not path.exists():
            return
        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        if len(lines) > keep_lines:
            path.write_text("".join(lines[-keep_lines:]), encoding="utf-8")
    except OSError:
        pass
