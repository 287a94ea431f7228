import pytest

from storyexpander.chunker import byte_len, chunk_text, split_sentences


def test_split_sentences_keeps_trailing_whitespace():
    text = "Alice meets Bob. They fight a dragon!  They win?"
    parts = split_sentences(text)
    assert parts == ["Alice meets Bob. ", "They fight a dragon!  ", "They win?"]
    assert "".join(parts) == text


def test_single_chunk_when_budget_is_large():
    text = "Alice meets Bob. They fight a dragon. They win."
    assert chunk_text(text, 10_000) == [text]


def test_greedy_packing_respects_budget_and_round_trips():
    text = " ".join(f"Sentence number {i} is here." for i in range(200))
    chunks = chunk_text(text, 300)
    assert len(chunks) > 1
    assert "".join(chunks) == text
    for c in chunks:
        assert byte_len(c) <= 300


def test_budget_is_measured_in_bytes_not_chars():
    # 11 characters but 20 bytes per sentence
    s = "ééééééééé. "
    text = s * 4
    chunks = chunk_text(text, 2 * byte_len(s))
    assert chunks == [s * 2, s * 2]


def test_oversized_sentence_is_its_own_chunk():
    long_sentence = "word " * 100 + "end. "
    text = "Short one. " + long_sentence + "Another short one."
    chunks = chunk_text(text, 50)
    assert long_sentence in chunks
    assert "".join(chunks) == text


def test_empty_and_whitespace_input_yield_one_chunk():
    assert chunk_text("", 100) == [""]
    assert chunk_text("   \n", 100) == ["   \n"]


def test_chunking_is_deterministic():
    text = "One. Two! Three? " * 50
    assert chunk_text(text, 64) == chunk_text(text, 64)


def test_text_without_terminal_punctuation():
    text = "no punctuation at all here"
    assert chunk_text(text, 5) == [text]


def test_non_positive_budget_rejected():
    with pytest.raises(ValueError):
        chunk_text("Hello.", 0)
