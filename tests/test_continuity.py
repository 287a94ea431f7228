import json

import pytest

from storyexpander.context import ValidationError
from storyexpander.continuity import continuity_digest, digest_budget, relevant_elements, splice_outline
from storyexpander.models import Chapter, Character, Stage, StoryElements

from conftest import ALICE_BOB_DRAFT, outline_json


def _eight_chapters_expanded(pipeline, fake_llm):
    pipeline.start(ALICE_BOB_DRAFT)
    pipeline.advance()
    pipeline.advance()
    fake_llm.queue("outline", outline_json(8))
    pipeline.advance()
    assert pipeline.run_to_completion().ok
    st = pipeline.get_state()
    assert len(st.chapters) == 8 and st.stage == Stage.COMPLETE
    return st


def test_edit_instruction_returns_decision_without_generating(pipeline, fake_llm):
    _eight_chapters_expanded(pipeline, fake_llm)
    n = len(fake_llm.calls)
    decision = pipeline.edit_chapter_instruction(3, "Introduce the Ember Guild")
    assert decision.needs_propagation
    assert decision.affected == [3, 4, 5, 6, 7]
    assert len(fake_llm.calls) == n
    assert pipeline.get_state().chapters[3].instruction == "Introduce the Ember Guild"
    again = pipeline.edit_chapter_instruction(3, "Introduce the Ember Guild")
    assert not again.needs_propagation


def test_propagation_preserves_earlier_chapters_byte_for_byte(pipeline, fake_llm):
    before = _eight_chapters_expanded(pipeline, fake_llm)
    pipeline.edit_chapter_instruction(5, "Bob keeps a secret")
    pipeline.edit_chapter_instruction(3, "Introduce the Ember Guild")
    fake_llm.queue("entities", json.dumps({
        "characters": [{"name": "The Ember Guild", "role": "faction", "traits": "secretive"},
                       {"name": "alice", "role": "duplicate"}],
        "uniqueDetails": ["Ember Guild sigil"],
    }))

    out = pipeline.propagate_continuity(3)
    assert out.ok, out.message
    after = pipeline.get_state()

    assert len(after.chapters) == 8
    for i in range(3):
        assert after.chapters[i].to_dict() == before.chapters[i].to_dict()
    for i in range(3, 8):
        assert after.chapters[i].expanded_text == ""
        assert after.chapters[i].expansion_count == 0
        assert after.chapters[i].title == f"Revised {i + 1} Title"
    assert after.chapters[3].instruction == "Introduce the Ember Guild"
    assert after.chapters[5].instruction == "Bob keeps a secret"

    names = after.elements.character_names()
    assert names.count("Alice") == 1 and "alice" not in names
    assert "The Ember Guild" in names
    assert "Ember Guild sigil" in after.elements.unique_details

    assert after.stage == Stage.EXPANDING
    assert after.chapter_index == 3

    cont = [c["prompt"] for c in fake_llm.calls if c["kind"] == "continuation"]
    assert len(cont) == 1
    assert "from chapter 4 to chapter 8 (5 chapters)" in cont[0]
    assert "consequences of the author's instruction for chapter 4" in cont[0]
    assert "The Ember Guild" in cont[0]

    # Re-expansion resumes at the edited chapter
    assert pipeline.run_to_completion().ok
    final = pipeline.get_state()
    assert final.stage == Stage.COMPLETE
    for i in range(3):
        assert final.chapters[i].expanded_text == before.chapters[i].expanded_text


def test_propagation_failure_leaves_everything_untouched(pipeline, fake_llm):
    before = _eight_chapters_expanded(pipeline, fake_llm)
    pipeline.edit_chapter_instruction(2, "Change the weather")
    fake_llm.queue("continuation", outline_json(5, 3), outline_json(4, 3))
    out = pipeline.propagate_continuity(2)
    assert not out.ok and out.error_kind == "ContractError"
    after = pipeline.get_state()
    assert [c.expanded_text for c in after.chapters] == [c.expanded_text for c in before.chapters]
    assert after.stage == Stage.COMPLETE
    assert after.elements == before.elements


def test_propagation_rejects_bad_index(pipeline, fake_llm):
    _eight_chapters_expanded(pipeline, fake_llm)
    with pytest.raises(ValidationError):
        pipeline.propagate_continuity(8)


def test_outline_instruction_regenerates_all_and_refines_overrides(pipeline, fake_llm):
    _eight_chapters_expanded(pipeline, fake_llm)
    pipeline.edit_chapter_instruction(1, "Alice loses her sword")
    pipeline.edit_chapter_instruction(6, "Bob returns home")
    decision = pipeline.edit_outline_instruction("Make it darker")
    assert decision.needs_propagation and decision.affected == list(range(8))

    out = pipeline.propagate_outline_instruction()
    assert out.ok, out.message
    st = pipeline.get_state()
    assert st.stage == Stage.OUTLINED and st.chapter_index == 0
    assert all(c.expanded_text == "" for c in st.chapters)
    titles = [c.title for c in st.chapters]
    assert titles[1] == "Refined 2 Title"
    assert titles[6] == "Refined 7 Title"
    assert titles[0] == "Revised 1 Title"
    assert st.chapters[1].instruction == "Alice loses her sword"
    assert st.chapters[6].instruction == "Bob returns home"

    refine_prompts = [c["prompt"] for c in fake_llm.calls if c["kind"] == "refine"]
    assert len(refine_prompts) == 2
    assert "Alice loses her sword" in refine_prompts[0]
    cont = [c["prompt"] for c in fake_llm.calls if c["kind"] == "continuation"][-1]
    assert "Make it darker" in cont


def test_outline_instruction_before_outline_is_just_stored(pipeline, fake_llm):
    pipeline.start(ALICE_BOB_DRAFT)
    decision = pipeline.edit_outline_instruction("Make it darker")
    assert not decision.needs_propagation
    with pytest.raises(ValidationError):
        pipeline.propagate_outline_instruction()
    pipeline.advance()
    pipeline.advance()
    pipeline.advance()
    outline_prompt = [c["prompt"] for c in fake_llm.calls if c["kind"] == "outline"][0]
    assert "Make it darker" in outline_prompt


def _two_chapters_expanded(pipeline):
    pipeline.start(ALICE_BOB_DRAFT)
    for _ in range(5):
        assert pipeline.advance().ok
    st = pipeline.get_state()
    assert (st.stage, st.chapter_index) == (Stage.EXPANDING, 2)
    return st


def test_unpropagated_edit_blocks_expansion_from_the_edited_chapter(pipeline, fake_llm):
    before = _two_chapters_expanded(pipeline)
    pipeline.edit_chapter_instruction(0, "Alice dies in this chapter")
    assert pipeline.get_state().pending_propagation == 0
    n = len(fake_llm.calls)
    with pytest.raises(ValidationError):
        pipeline.advance()
    with pytest.raises(ValidationError):
        pipeline.regenerate_chapter(0)
    with pytest.raises(ValidationError):
        pipeline.expand_more(1)
    assert len(fake_llm.calls) == n
    st = pipeline.get_state()
    assert (st.stage, st.chapter_index) == (Stage.EXPANDING, 2)
    assert st.chapters[0].expanded_text == before.chapters[0].expanded_text

    assert pipeline.propagate_continuity(0).ok
    st = pipeline.get_state()
    assert st.pending_propagation is None
    assert (st.stage, st.chapter_index) == (Stage.EXPANDING, 0)
    assert pipeline.advance().ok


def test_pending_edit_tracks_lowest_index_and_allows_earlier_chapters(pipeline):
    _two_chapters_expanded(pipeline)
    pipeline.edit_chapter_instruction(4, "A storm")
    pipeline.edit_chapter_instruction(1, "Bob hesitates")
    pipeline.edit_chapter_instruction(3, "A truce")
    assert pipeline.get_state().pending_propagation == 1
    assert pipeline.expand_more(0).ok
    assert pipeline.regenerate_chapter(0).ok
    with pytest.raises(ValidationError):
        pipeline.regenerate_chapter(1)

    # Propagating from a later chapter leaves the earlier edit pending
    assert pipeline.propagate_continuity(3).ok
    assert pipeline.get_state().pending_propagation == 1
    assert pipeline.propagate_continuity(1).ok
    assert pipeline.get_state().pending_propagation is None


def test_outline_instruction_edit_is_pending_until_propagated(pipeline):
    _two_chapters_expanded(pipeline)
    pipeline.edit_outline_instruction("Make it darker")
    assert pipeline.get_state().pending_propagation == 0
    with pytest.raises(ValidationError):
        pipeline.advance()
    assert pipeline.propagate_outline_instruction().ok
    st = pipeline.get_state()
    assert st.pending_propagation is None and st.stage == Stage.OUTLINED
    assert pipeline.advance().ok


def _chapter(n, summary="Something happens.", events=None):
    return Chapter(title=f"T{n}", summary=summary, key_events=events or [], timeline=f"Day {n}")


def test_digest_budget_grows_then_caps():
    assert digest_budget(1) < digest_budget(3) < digest_budget(5)
    assert digest_budget(100) == digest_budget(1000)


def test_continuity_digest_is_bounded_and_ordered(monkeypatch):
    monkeypatch.setenv("SE_DIGEST_BASE_CHARS", "100")
    monkeypatch.setenv("SE_DIGEST_PER_CHAPTER_CHARS", "50")
    monkeypatch.setenv("SE_DIGEST_MAX_CHARS", "300")
    chapters = [_chapter(i, summary="x" * 60) for i in range(1, 10)]
    digest = continuity_digest(chapters, 8)
    assert len(digest) <= 300 + 60
    assert "omitted" in digest
    assert "Chapter 8: T8" in digest
    assert "Chapter 9" not in digest
    assert digest.index("Chapter 7: T7") < digest.index("Chapter 8: T8")


def test_continuity_digest_first_chapter():
    assert "first chapter" in continuity_digest([_chapter(1)], 0)


def test_relevant_elements_is_a_name_filter():
    elements = StoryElements(
        characters=[Character("Alice Smith"), Character("Bob"), Character("Mallory")],
        key_events=["Dragon attacks the village", "Mallory betrays everyone"],
        unique_details=["Dragon scales glow", "Sunken library"],
        main_story_lines=["Friendship", "Survival", "Betrayal"],
    )
    ch = Chapter(title="The attack", summary="Alice and Bob flee as the dragon strikes.", character_traits=["Bob: loyal"])
    rel = relevant_elements(elements, ch)
    assert rel.character_names() == ["Alice Smith", "Bob"]
    assert rel.key_events == ["Dragon attacks the village"]
    assert rel.unique_details == ["Dragon scales glow"]
    assert rel.main_story_lines == elements.main_story_lines


def test_splice_outline_keeps_prefix_and_instructions():
    current = [_chapter(i) for i in range(1, 5)]
    for c in current:
        c.expanded_text = "prose"
    current[2].instruction = "keep me"
    new = [Chapter(title="N3", summary="s"), Chapter(title="N4", summary="s", expanded_text="junk")]
    out = splice_outline(current, new, 2)
    assert out[0] is current[0] and out[1] is current[1]
    assert [c.title for c in out] == ["T1", "T2", "N3", "N4"]
    assert out[2].instruction == "keep me"
    assert out[3].expanded_text == ""
    with pytest.raises(ValueError):
        splice_outline(current, new[:1], 2)
