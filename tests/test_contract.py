import json

import pytest

from storyexpander.context import ContractError
from storyexpander.contract import (
    ELEMENTS_DELTA,
    OUTLINE,
    STORY_ELEMENTS,
    chapter_entry_shape,
    clean_raw,
    outline_shape,
    parse,
    strip_code_fence,
    strip_trailing_commas,
)

from conftest import ELEMENTS_JSON, chapter_obj, outline_json


def test_strip_code_fence_variants():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('```\n[1, 2]\n```') == "[1, 2]"
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_strip_trailing_commas_outside_strings_only():
    assert json.loads(strip_trailing_commas('{"a": [1, 2,], }')) == {"a": [1, 2]}
    assert strip_trailing_commas('{"a": "x,]"}') == '{"a": "x,]"}'
    assert strip_trailing_commas('{"a": "say \\",}\\" ok"}') == '{"a": "say \\",}\\" ok"}'


def test_parse_of_clean_json_is_idempotent():
    raw = outline_json(7)
    assert parse(clean_raw(raw), OUTLINE) == parse(raw, OUTLINE)


def test_fenced_json_parses_like_unwrapped():
    raw = json.dumps(ELEMENTS_JSON)
    fenced = f"```json\n{raw}\n```"
    assert parse(fenced, STORY_ELEMENTS) == parse(raw, STORY_ELEMENTS)


@pytest.mark.parametrize("count", [6, 10])
def test_outline_accepts_bounds(count):
    chapters = parse(outline_json(count), OUTLINE)
    assert len(chapters) == count
    assert all(c.title and c.summary and c.timeline for c in chapters)


@pytest.mark.parametrize("count", [5, 11])
def test_outline_rejects_out_of_bounds(count):
    raw = outline_json(count)
    with pytest.raises(ContractError) as ei:
        parse(raw, OUTLINE)
    assert ei.value.raw == raw
    assert "items" in ei.value.reason


def test_outline_backfills_missing_title_and_accepts_wrapper():
    items = [chapter_obj(i) for i in range(1, 7)]
    del items[2]["title"]
    chapters = parse(json.dumps({"chapters": items}), OUTLINE)
    assert chapters[2].title == "Chapter 3"
    assert chapters[0].key_events == ["Event 1a", "Event 1b"]


def test_outline_missing_summary_is_contract_error():
    items = [chapter_obj(i) for i in range(1, 7)]
    del items[4]["summary"]
    with pytest.raises(ContractError) as ei:
        parse(json.dumps(items), OUTLINE)
    assert "summary" in ei.value.reason


def test_invalid_json_keeps_cleaned_raw():
    with pytest.raises(ContractError) as ei:
        parse("```json\nHere is your outline: [oops\n```", OUTLINE)
    assert ei.value.raw == "Here is your outline: [oops"
    assert "invalid JSON" in ei.value.reason


def test_elements_lenient_keys_and_dedup():
    data = {
        "Characters": ["Alice", {"name": "alice", "role": "duplicate"}, {"name": "Bob", "affiliation": "Guild"}],
        "key_events": ["Alice meets Bob"],
        "MainStoryLines": ["a", "b", "c", "d", "e"],
    }
    el = parse(json.dumps(data), STORY_ELEMENTS)
    assert el.character_names() == ["Alice", "Bob"]
    assert el.characters[1].affiliation == "Guild"
    assert el.key_events == ["Alice meets Bob"]
    assert el.timeline == []
    assert len(el.main_story_lines) == 5


@pytest.mark.parametrize("lines", [["only one"], ["a", "b"], ["a", "b", "c", "d", "e", "f"]])
def test_elements_story_lines_must_number_three_to_five(lines):
    data = dict(ELEMENTS_JSON, mainStoryLines=lines)
    with pytest.raises(ContractError) as ei:
        parse(json.dumps(data), STORY_ELEMENTS)
    assert "mainStoryLines" in ei.value.reason


def test_elements_missing_required_collection():
    data = {k: v for k, v in ELEMENTS_JSON.items() if k != "mainStoryLines"}
    with pytest.raises(ContractError) as ei:
        parse(json.dumps(data), STORY_ELEMENTS)
    assert "mainstorylines" in ei.value.reason


def test_elements_delta_allows_empty_collections():
    el = parse("{}", ELEMENTS_DELTA)
    assert el.is_empty()


def test_exact_count_shape_and_chapter_entry():
    shape = outline_shape(3, 3, first_number=4)
    items = [chapter_obj(i) for i in range(4, 7)]
    del items[0]["title"]
    chapters = parse(json.dumps(items), shape)
    assert chapters[0].title == "Chapter 4"
    with pytest.raises(ContractError):
        parse(json.dumps(items[:2]), shape)
    entry = parse(json.dumps({"chapter": chapter_obj(2)}), chapter_entry_shape(2))
    assert entry.title == "Chapter 2 Title"


@pytest.mark.parametrize("field", ["timeline", "keyEvents", "characterTraits"])
@pytest.mark.parametrize("how", ["missing", "empty"])
def test_outline_entry_requires_every_field(field, how):
    items = [chapter_obj(i) for i in range(1, 7)]
    if how == "missing":
        del items[3][field]
    else:
        items[3][field] = "" if field == "timeline" else []
    with pytest.raises(ContractError):
        parse(json.dumps(items), OUTLINE)
    with pytest.raises(ContractError):
        parse(json.dumps(items[3]), chapter_entry_shape(4))


def test_outline_missing_timeline_everywhere_is_rejected():
    items = [chapter_obj(i) for i in range(1, 7)]
    for item in items:
        del item["timeline"]
        del item["keyEvents"]
        del item["characterTraits"]
    with pytest.raises(ContractError) as ei:
        parse(json.dumps(items), OUTLINE)
    assert "timeline" in ei.value.reason
