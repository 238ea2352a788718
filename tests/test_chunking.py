"""Tests for narrative chunking."""

from dreamvec.core.chunking import (
    CHARS_PER_TOKEN,
    chunk_narrative,
    estimate_tokens,
    get_chunking_info,
    split_into_paragraphs,
    split_into_sentences,
)

PARAGRAPH = ("The dream began in a house by the sea. " * 20).strip()


def long_narrative(paragraphs=10):
    return "\n\n".join(f"{PARAGRAPH} Scene {i}." for i in range(paragraphs))


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("a" * 8) == 2
    assert estimate_tokens("a" * 9) == 3


def test_empty_text_has_no_chunks():
    assert chunk_narrative("") == []
    assert chunk_narrative("   \n\n  ") == []


def test_short_narrative_is_single_chunk():
    text = "  I was flying over a city made of glass and nobody could see me.  "
    chunks = chunk_narrative(text)

    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].text == text.strip()
    assert chunks[0].char_start == 0
    assert chunks[0].token_count == estimate_tokens(text.strip())


def test_single_chunk_ceiling():
    """Text right at max_tokens_per_chunk stays whole; one more token splits it."""
    at_limit = "a" * (1000 * CHARS_PER_TOKEN - 1) + "."
    assert estimate_tokens(at_limit) == 1000
    assert len(chunk_narrative(at_limit)) == 1

    over = ("a " * 2001).strip()
    assert estimate_tokens(over) == 1001
    assert len(chunk_narrative(over)) > 1


def test_long_narrative_chunks_are_bounded_and_ordered():
    text = long_narrative(10)
    chunks = chunk_narrative(text)

    assert len(chunks) >= 2
    assert [c.index for c in chunks] == list(range(len(chunks)))
    for c in chunks:
        assert c.token_count > 0
        assert len(c.text) <= 750 * CHARS_PER_TOKEN


def test_chunks_overlap():
    chunks = chunk_narrative(long_narrative(10))
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.text.startswith(prev.text[-100 * CHARS_PER_TOKEN :])


def test_overlap_is_trimmed_to_fit_chunk_size():
    paragraphs = [("word " * 560).strip() + f" {i}." for i in range(5)]
    text = "\n\n".join(paragraphs)
    chunks = chunk_narrative(text)

    assert len(chunks) == 5
    for c in chunks:
        assert len(c.text) <= 750 * CHARS_PER_TOKEN
        assert text[c.char_start : c.char_end] == c.text
    for prev, nxt in zip(chunks, chunks[1:]):
        carried = nxt.text.split("\n\n")[0]
        assert 0 < len(carried) < 100 * CHARS_PER_TOKEN
        assert prev.text.endswith(carried)


def test_chunking_is_deterministic():
    text = long_narrative(12)
    first = [c.to_dict() for c in chunk_narrative(text)]
    second = [c.to_dict() for c in chunk_narrative(text)]
    assert first == second


def test_overlong_sentence_is_hard_split():
    text = "dream " * 2000  # 12000 chars, no sentence or paragraph breaks
    chunks = chunk_narrative(text)

    assert len(chunks) >= 4
    for c in chunks:
        assert len(c.text) <= 750 * CHARS_PER_TOKEN
        assert c.token_count > 0


def test_custom_parameters():
    text = long_narrative(4)
    chunks = chunk_narrative(text, chunk_size_tokens=100, chunk_overlap_tokens=10, max_tokens_per_chunk=100)
    assert len(chunks) > 4


def test_split_into_paragraphs_positions():
    text = "First part.\n\nSecond part.\n\n\nThird."
    paras = split_into_paragraphs(text)
    assert [p[0] for p in paras] == ["First part.", "Second part.", "Third."]
    for para, start, _end in paras:
        assert text[start:].startswith(para)


def test_split_into_sentences():
    sentences = split_into_sentences("I ran. The stairs never ended! Was it real? \"Yes,\" she said.")
    assert [s[0] for s in sentences] == ["I ran.", "The stairs never ended!", "Was it real?", '"Yes," she said.']


def test_get_chunking_info():
    info = get_chunking_info()
    assert info["chunk_size_tokens"] == 750
    assert info["chunk_overlap_tokens"] == 100
    assert info["max_tokens_per_chunk"] == 1000
    assert info["chunk_size_chars"] == 3000
