"""Tests for sentence-packing chunking."""

import pytest

from kb_assistant.errors import ConfigurationError
from kb_assistant.models import Document
from kb_assistant.rag.chunker import Chunker
from kb_assistant.rag.config import ChunkerConfig

LONG_TEXT = " ".join(
    f"Sentence {i} explains how the {word} feature behaves in practice." for i, word in enumerate(["cache", "auth", "log", "api"] * 12)
)


def make_chunker(**kwargs):
    return Chunker(ChunkerConfig(**kwargs))


@pytest.mark.unit
class TestChunkBounds:
    """Chunk length and overlap properties."""

    def test_small_text_with_overlap(self):
        text = " ".join(f"this is line {i:02d} ok." for i in range(1, 7))
        chunker = make_chunker(chunk_size=50, chunk_overlap=10, min_chunk_length=20)

        chunks = chunker.split_into_chunks(chunker.clean_text(text))

        assert len(chunks) >= 2
        assert all(20 <= len(chunk) <= 60 for chunk in chunks)
        assert chunks[1].startswith(chunks[0][-10:])

    def test_lengths_respect_bounds(self):
        chunker = make_chunker(chunk_size=200, chunk_overlap=40, min_chunk_length=50)

        chunks = chunker.split_into_chunks(chunker.clean_text(LONG_TEXT))

        assert len(chunks) > 2
        assert all(len(chunk) >= 50 for chunk in chunks)
        assert all(len(chunk) <= 200 for chunk in chunks[:-1])

    def test_consecutive_chunks_overlap(self):
        overlap = 40
        chunker = make_chunker(chunk_size=200, chunk_overlap=overlap, min_chunk_length=50)

        chunks = chunker.split_into_chunks(chunker.clean_text(LONG_TEXT))

        for previous, current in zip(chunks, chunks[1:]):
            assert current.startswith(previous[-overlap:])

    def test_zero_overlap_starts_fresh(self):
        chunker = make_chunker(chunk_size=120, chunk_overlap=0, min_chunk_length=10)
        sentences = chunker.split_sentences(chunker.clean_text(LONG_TEXT))

        chunks = chunker.split_into_chunks(chunker.clean_text(LONG_TEXT))

        assert all(any(chunk.startswith(sentence) for sentence in sentences) for chunk in chunks)

    def test_oversized_sentence_is_not_split(self):
        sentence = "word " * 60
        chunker = make_chunker(chunk_size=50, chunk_overlap=0, min_chunk_length=10)

        chunks = chunker.split_into_chunks(sentence.strip())

        assert chunks == [sentence.strip()]

    def test_short_final_chunk_dropped(self):
        chunker = make_chunker(chunk_size=30, chunk_overlap=0, min_chunk_length=20)

        chunks = chunker.split_into_chunks("a long enough first sentence. tiny.")

        assert chunks == ["a long enough first sentence."]

    def test_empty_text(self):
        assert make_chunker().split_into_chunks("") == []


@pytest.mark.unit
class TestSentencesAndCleaning:
    """Normalization, stopwords and sentence splitting."""

    def test_split_sentences(self):
        chunker = make_chunker()

        assert chunker.split_sentences("One. Two! Three?\nFour") == ["One.", "Two!", "Three?", "Four"]

    def test_decimal_followed_by_space_splits(self):
        # Known approximation of the fixed-terminator heuristic
        assert make_chunker().split_sentences("Version 2. Released") == ["Version 2.", "Released"]

    def test_decimal_without_space_does_not_split(self):
        assert make_chunker().split_sentences("Version 2.5 is out.") == ["Version 2.5 is out."]

    def test_clean_text_lowercases_and_collapses(self):
        assert make_chunker().clean_text("  Hello\n\tWORLD   again ") == "hello world again"

    def test_preserve_line_breaks_keeps_case(self):
        chunker = make_chunker(preserve_line_breaks=True)

        assert chunker.clean_text("Hello\n  World") == "Hello World"

    def test_remove_stopwords(self):
        chunker = make_chunker(remove_stopwords=True)

        assert chunker.clean_text("The cache is part of the API") == "cache part api"

    def test_custom_stopwords(self):
        chunker = make_chunker(remove_stopwords=True, custom_stopwords=["cache"])

        assert chunker.clean_text("The cache is fast") == "fast"

    def test_stopwords_kept_by_default(self):
        assert make_chunker().clean_text("The cache is fast") == "the cache is fast"


@pytest.mark.unit
class TestChunkerConfig:
    """Construction-time validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"chunk_size": 0},
            {"chunk_size": 100, "chunk_overlap": 100},
            {"chunk_overlap": -1},
            {"min_chunk_length": 0},
        ],
    )
    def test_invalid_config(self, kwargs):
        with pytest.raises(ConfigurationError):
            ChunkerConfig(**kwargs)

    def test_error_lists_every_problem(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ChunkerConfig(chunk_size=0, min_chunk_length=0)

        fields = [field for field, _ in exc_info.value.errors]
        assert "chunk_size" in fields
        assert "min_chunk_length" in fields


@pytest.mark.unit
def test_process_keeps_document():
    document = Document(id="abc", url="http://docs.example.com/", title="Home", content=LONG_TEXT)
    chunker = make_chunker(chunk_size=200, chunk_overlap=20, min_chunk_length=20)

    processed = chunker.process(document)

    assert processed.document is document
    assert processed.id == "abc"
    assert isinstance(processed.chunks, tuple)
    assert len(processed.chunks) > 1
    assert chunker.process_all([document, document])[1].chunks == processed.chunks
