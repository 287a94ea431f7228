from pathlib import Path

import pytest

from storyexpander.context import InvalidYAMLError, MissingFileError, RunContext, load_yaml


def _draft(tmp_path: Path) -> Path:
    p = tmp_path / "draft.txt"
    p.write_text("Alice meets Bob.", encoding="utf-8")
    return p


def test_run_context_from_yaml(tmp_path: Path):
    cfg = tmp_path / "run.yaml"
    cfg.write_text(
        "instructions:\n"
        "  Summarize: Keep names\n"
        "  outline: ''\n"
        "style: ink wash\n"
        "chunk_max_bytes: 4096\n",
        encoding="utf-8",
    )
    ctx = RunContext.from_paths(draft_path=str(_draft(tmp_path)), config_path=str(cfg))
    assert ctx.draft == "Alice meets Bob."
    assert ctx.instructions == {"summarize": "Keep names"}
    assert ctx.style == "ink wash"
    assert ctx.chunk_max_bytes == 4096


def test_run_context_without_config(tmp_path: Path):
    ctx = RunContext.from_paths(draft_path=str(_draft(tmp_path)))
    assert ctx.instructions == {} and ctx.style is None and ctx.chunk_max_bytes is None


def test_missing_draft(tmp_path: Path):
    with pytest.raises(MissingFileError):
        RunContext.from_paths(draft_path=str(tmp_path / "missing.txt"))


@pytest.mark.parametrize("body", ["instructions: [a, b]\n", "- just\n- a list\n", "chunk_max_bytes: lots\n"])
def test_bad_run_config(tmp_path: Path, body: str):
    cfg = tmp_path / "run.yaml"
    cfg.write_text(body, encoding="utf-8")
    with pytest.raises(InvalidYAMLError):
        RunContext.from_paths(draft_path=str(_draft(tmp_path)), config_path=str(cfg))


def test_load_yaml_errors(tmp_path: Path):
    with pytest.raises(MissingFileError):
        load_yaml(str(tmp_path / "absent.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("key: [unclosed\n", encoding="utf-8")
    with pytest.raises(InvalidYAMLError):
        load_yaml(str(bad))
