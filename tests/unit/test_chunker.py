"""Tests for token-bounded chunking."""
import pytest

from docent.rag.chunker import TextChunker, TokenCounter, chunk_document
from docent.rag.models import Document, Section


def _document(text, sections=()):
    return Document(source_path="/docs/guide.md", text=text, format="text", sections=tuple(sections))


def test_token_counter_counts_words_and_punctuation():
    counter = TokenCounter()
    assert counter.count("Hello, world!") == 4
    assert counter.count("") == 0
    assert counter.truncate("one two three four", 2) == "one two"


def test_short_document_is_single_chunk_without_overlap():
    chunker = TextChunker(max_tokens=50, overlap_tokens=10)
    document = _document("A short note about the build.")

    chunks = chunker.chunk(document)

    assert len(chunks) == 1
    assert chunks[0].text == document.text
    assert chunks[0].overlap_prev == 0
    assert (chunks[0].start, chunks[0].end) == (0, len(document.text))


def test_blank_document_has_no_chunks():
    assert TextChunker(max_tokens=10, overlap_tokens=2).chunk(_document("  \n\n ")) == []


def test_chunks_cover_text_and_respect_limit(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    counter = TokenCounter()
    document = _document(make_text(12))

    chunks = chunker.chunk(document)

    assert len(chunks) > 1
    assert chunks[0].start == 0
    assert chunks[-1].end == len(document.text)
    for previous, current in zip(chunks, chunks[1:]):
        # Contiguous coverage: each chunk starts inside or at the end of the previous one
        assert current.start <= previous.end
        assert current.start > previous.start
    for chunk in chunks:
        assert counter.count(chunk.text) <= 40
        assert chunk.text == document.text[chunk.start : chunk.end]


def test_adjacent_chunks_share_overlap_tokens(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    counter = TokenCounter()
    document = _document(make_text(12))

    chunks = chunker.chunk(document)

    for previous, current in zip(chunks, chunks[1:]):
        shared = document.text[current.start : previous.end]
        assert counter.count(shared) == 8
        assert current.overlap_prev == previous.end - current.start


def test_prefers_paragraph_boundary(make_text):
    # 24 tokens per paragraph; the limit falls inside the second paragraph
    chunker = TextChunker(max_tokens=30, overlap_tokens=0, boundary_tolerance=0.3)
    document = _document(make_text(3))

    chunks = chunker.chunk(document)

    assert chunks[0].text.endswith("before continuing.")
    assert chunks[1].text.startswith("Paragraph 1")


def test_section_boundary_beats_paragraph_boundary():
    first = "Alpha beta gamma delta. Epsilon zeta eta theta."
    second = "Iota kappa lambda mu. Nu xi omicron pi."
    text = f"{first}\n\n{second}"
    sections = [
        Section(start=0, end=len(first), label="page 1", kind="page"),
        Section(start=len(first) + 2, end=len(text), label="page 2", kind="page"),
    ]
    chunker = TextChunker(max_tokens=15, overlap_tokens=0, boundary_tolerance=0.5)

    chunks = chunker.chunk(_document(text, sections))

    assert chunks[0].text == first
    assert chunks[0].labels == ("page 1",)
    assert chunks[1].labels == ("page 2",)
    assert chunks[1].location == "page 2"


def test_chunking_is_deterministic(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    document = _document(make_text(8))

    assert [c.id for c in chunker.chunk(document)] == [c.id for c in chunker.chunk(document)]


def test_edit_in_last_paragraph_keeps_earlier_chunk_ids(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    original = make_text(10)
    edited = original.replace("verify result9", "double-check result9")

    before = [c.id for c in chunker.chunk(_document(original))]
    after = [c.id for c in chunker.chunk(_document(edited))]

    assert before[:-1] == after[:-1]
    assert before[-1] != after[-1]


@pytest.mark.parametrize(
    "max_tokens, overlap, tolerance",
    [(0, 0, 0.1), (10, 10, 0.1), (10, -1, 0.1), (10, 2, 1.0)],
)
def test_invalid_parameters(max_tokens, overlap, tolerance):
    with pytest.raises(ValueError):
        TextChunker(max_tokens=max_tokens, overlap_tokens=overlap, boundary_tolerance=tolerance)


def test_chunk_stats(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    chunks = chunker.chunk(_document(make_text(5)))

    stats = chunker.get_chunk_stats(chunks)

    assert stats["chunk_count"] == len(chunks)
    assert stats["max_chunk_tokens"] <= 40
    assert chunker.get_chunk_stats([])["chunk_count"] == 0


def test_length_changing_edit_in_first_paragraph_keeps_later_chunk_ids(make_text):
    chunker = TextChunker(max_tokens=40, overlap_tokens=8)
    original = make_text(10)
    edited = original.replace("verify result1 ", "double-check result1 ")

    before = chunker.chunk(_document(original))
    after = chunker.chunk(_document(edited))

    # The edited paragraph and the chunk overlapping its tail are new
    assert len(after) == len(before)
    changed = [i for i, (b, a) in enumerate(zip(before, after)) if b.id != a.id]
    assert changed == [1, 2]
    assert after[5].start > before[5].start
    assert after[5].text == before[5].text


def test_identical_chunk_texts_get_distinct_ids():
    text = "\n\n".join(["Repeat this line exactly."] * 6)
    chunker = TextChunker(max_tokens=6, overlap_tokens=0)

    chunks = chunker.chunk(_document(text))

    assert len({c.text for c in chunks}) == 1
    assert len({c.id for c in chunks}) == len(chunks) == 6


def test_chunk_document_uses_given_parameters(make_text):
    document = _document(make_text(6))

    chunks = chunk_document(document, max_tokens=40, overlap_tokens=8)

    assert [c.id for c in chunks] == [
        c.id for c in TextChunker(max_tokens=40, overlap_tokens=8).chunk(document)
    ]
    assert chunk_document(document, max_tokens=1000, overlap_tokens=0)[0].text == document.text
