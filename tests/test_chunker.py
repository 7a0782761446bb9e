"""Tests for the recursive and sentence chunkers."""
import re

import pytest

from librarian.rag.chunker import SentenceChunker, TextChunker


def _words(text):
    return re.findall(r"\S+", text)


def test_short_text_is_one_chunk():
    chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
    chunks = chunker.chunk_text("Project goals: ship v2 by Q3, hire two engineers.")

    assert len(chunks) == 1
    assert chunks[0].content == "Project goals: ship v2 by Q3, hire two engineers."
    assert chunks[0].chunk_index == 0
    assert chunks[0].char_start == 0


def test_blank_text_yields_no_chunks():
    chunker = TextChunker(chunk_size=100, chunk_overlap=10)
    assert chunker.chunk_text("") == []
    assert chunker.chunk_text("   \n\n  ") == []


def test_chunks_respect_size_and_are_sequential():
    text = " ".join(f"word{i}" for i in range(600))
    chunker = TextChunker(chunk_size=200, chunk_overlap=40)

    chunks = chunker.chunk_text(text)

    assert len(chunks) > 1
    assert all(len(c.content) <= 200 for c in chunks)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))


def test_chunking_is_deterministic():
    text = "\n\n".join(
        f"Paragraph {p}. " + " ".join(f"token{p}_{i}" for i in range(80))
        for p in range(6)
    )
    chunker = TextChunker(chunk_size=300, chunk_overlap=50)

    first = [c.content for c in chunker.chunk_text(text)]
    second = [c.content for c in chunker.chunk_text(text)]

    assert first == second


def test_every_word_survives_chunking():
    text = "\n\n".join(
        "\n".join(" ".join(f"w{p}_{l}_{i}" for i in range(15)) for l in range(4))
        for p in range(5)
    )
    chunker = TextChunker(chunk_size=250, chunk_overlap=60)

    chunks = chunker.chunk_text(text)
    seen = [word for chunk in chunks for word in _words(chunk.content)]

    assert set(seen) == set(_words(text))
    # Dropping repeated overlap words restores the original order
    deduped = list(dict.fromkeys(seen))
    assert deduped == _words(text)


def test_consecutive_chunks_overlap():
    text = " ".join(f"item{i}" for i in range(300))
    chunker = TextChunker(chunk_size=150, chunk_overlap=50)

    chunks = chunker.chunk_text(text)

    for previous, current in zip(chunks, chunks[1:]):
        assert _words(current.content)[0] in _words(previous.content)


def test_prefers_paragraph_boundaries():
    first = "First paragraph " + "alpha " * 20
    second = "Second paragraph " + "beta " * 20
    chunker = TextChunker(chunk_size=150, chunk_overlap=0)

    chunks = chunker.chunk_text(first.strip() + "\n\n" + second.strip())

    assert chunks[0].content.startswith("First paragraph")
    assert chunks[1].content.startswith("Second paragraph")


def test_unbroken_text_falls_back_to_characters():
    chunker = TextChunker(chunk_size=50, chunk_overlap=10)
    chunks = chunker.chunk_text("x" * 175)

    assert all(len(c.content) <= 50 for c in chunks)
    assert "".join(c.content for c in chunks).count("x") >= 175


@pytest.mark.parametrize("size,overlap", [(100, 100), (100, 150), (100, -1)])
def test_invalid_overlap_rejected(size, overlap):
    with pytest.raises(ValueError):
        TextChunker(chunk_size=size, chunk_overlap=overlap)


def test_chunk_stats():
    chunker = TextChunker(chunk_size=100, chunk_overlap=20)
    chunks = chunker.chunk_text(" ".join(["lorem"] * 100))

    stats = chunker.get_chunk_stats(chunks)

    assert stats["chunk_count"] == len(chunks)
    assert stats["max_chunk_size"] <= 100
    assert chunker.get_chunk_stats([])["chunk_count"] == 0


def test_sentence_chunker_groups_sentences():
    chunker = SentenceChunker(chunk_size=60)
    text = "Query: What is our hiring goal?\nAnswer: Hire two engineers. Ship v2 by Q3! Done"

    chunks = chunker.chunk_text(text)

    assert len(chunks) > 1
    assert all(len(c) <= 60 for c in chunks)
    assert chunks[-1].endswith("Done")
    assert " ".join(chunks).split() == text.split()


def test_sentence_chunker_keeps_overlong_sentence_whole():
    sentence = "This sentence is longer than the chunk bound allows."
    chunks = SentenceChunker(chunk_size=20).chunk_text(sentence)

    assert chunks == [sentence]


def test_offsets_locate_chunks_in_source():
    text = "\n\n".join(
        f"Section {p}.\n" + " ".join(f"note{p}_{i}" for i in range(40)) for p in range(4)
    )
    chunker = TextChunker(chunk_size=180, chunk_overlap=30)

    chunks = chunker.chunk_text(text)

    assert len(chunks) > 2
    for chunk in chunks:
        assert text[chunk.char_start:chunk.char_end] == chunk.content
    assert [c.char_start for c in chunks] == sorted(c.char_start for c in chunks)


def test_default_configuration_matches_document_settings():
    chunker = TextChunker()

    assert chunker.chunk_size == 1000
    assert chunker.chunk_overlap == 200
    assert chunker.separators == ["\n\n", "\n", " ", ""]
