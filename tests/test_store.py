import json
from pathlib import Path

import pytest

from storyexpander.context import PersistenceError
from storyexpander.models import Chapter, Character, Illustration, PipelineState, Stage, StoryElements
from storyexpander.store import FileStateStore, MemoryStateStore


def _rich_state() -> PipelineState:
    return PipelineState(
        stage=Stage.EXPANDING,
        chapter_index=2,
        draft="Alice meets Bob.",
        draft_fingerprint="abc",
        instructions={"outline": "darker"},
        condensed_draft="Alice meets Bob.",
        elements=StoryElements(
            characters=[Character("Alice", "female", "hero", "brave", affiliation="Guild")],
            key_events=["meet"],
            main_story_lines=["a", "b", "c"],
        ),
        chapters=[
            Chapter("One", "s1", ["e"], ["Alice: brave"], "Day 1", instruction="do x",
                    expanded_text="prose", expansion_count=2,
                    illustration=Illustration(prompt="p", image_url="http://x/1.png")),
            Chapter("Two", "s2"),
        ],
        cover=Illustration(prompt="c", reason="rejected", sanitized=True),
        last_error={"kind": "ContractError", "raw": "[oops"},
        fallback_events=[{"operation": "outline"}],
        pending_propagation=1,
    )


@pytest.mark.parametrize("make_store", [MemoryStateStore, lambda: FileStateStore()])
def test_state_round_trips_through_store(make_store):
    store = make_store()
    state = _rich_state()
    store.save("pipeline", state.to_dict())
    loaded = PipelineState.from_dict(store.load("pipeline"))
    assert loaded == state
    store.clear("pipeline")
    assert store.load("pipeline") is None


def test_file_store_defaults_to_state_dir(tmp_path: Path):
    store = FileStateStore()
    store.save("my run", {"stage": "summarizing"})
    p = tmp_path / "state" / "my_run.json"
    assert json.loads(p.read_text(encoding="utf-8")) == {"stage": "summarizing"}
    assert not (tmp_path / "state" / "my_run.json.tmp").exists()


def test_file_store_corrupt_file_is_persistence_error(tmp_path: Path):
    store = FileStateStore(tmp_path)
    (tmp_path / "pipeline.json").write_text("{nope", encoding="utf-8")
    with pytest.raises(PersistenceError):
        store.load("pipeline")


def test_unserializable_blob_is_persistence_error(tmp_path: Path):
    with pytest.raises(PersistenceError):
        FileStateStore(tmp_path).save("pipeline", {"x": object()})
    with pytest.raises(PersistenceError):
        MemoryStateStore().save("pipeline", {"x": object()})


def test_invalid_key_rejected(tmp_path: Path):
    with pytest.raises(PersistenceError):
        FileStateStore(tmp_path).path_for("../..")
