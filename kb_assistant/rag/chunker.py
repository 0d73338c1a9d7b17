"""Sentence-packing text chunker with character overlap.

Sentence boundaries are detected with a fixed set of terminators (". ", "! ", "? "
and their newline forms). This is a heuristic: abbreviations such as "e.g. " and
decimals followed by a space split sentences too.
"""

import logging
import re

from ..models import Document, ProcessedDocument
from .config import ChunkerConfig

logger = logging.getLogger(__name__)

# Common English stopwords
DEFAULT_STOPWORDS = frozenset(
    [
        "a", "an", "and", "are", "as", "at", "be", "by", "for",
        "from", "has", "he", "in", "is", "it", "its", "of", "on",
        "that", "the", "to", "was", "were", "will", "with",
    ]
)  # fmt: skip

SENTENCE_TERMINATOR = re.compile(r"[.!?][ \n]")


class Chunker:
    """Turn document text into ordered, overlapping, size-bounded chunks."""

    def __init__(self, config: ChunkerConfig | None = None):
        self.config = config or ChunkerConfig()
        self.stopwords = DEFAULT_STOPWORDS | frozenset(self.config.custom_stopwords)

    def process(self, document: Document) -> ProcessedDocument:
        """Chunk a single document."""
        chunks = self.split_into_chunks(self.clean_text(document.content))
        logger.debug(f"[CHUNKER] {document.url}: {len(chunks)} chunks")
        return ProcessedDocument(document=document, chunks=tuple(chunks))

    def process_all(self, documents: list[Document]) -> list[ProcessedDocument]:
        return [self.process(doc) for doc in documents]

    def clean_text(self, text: str) -> str:
        """Normalize case and whitespace, then drop stopwords if configured."""
        if not self.config.preserve_line_breaks:
            text = text.lower()

        text = " ".join(text.split())

        if self.config.remove_stopwords:
            text = " ".join(word for word in text.split() if word not in self.stopwords)

        return text.strip()

    def split_sentences(self, text: str) -> list[str]:
        """Split text after every terminator; trailing text forms a final sentence."""
        sentences = []
        start = 0
        for match in SENTENCE_TERMINATOR.finditer(text):
            sentence = text[start : match.end()].strip()
            if sentence:
                sentences.append(sentence)
            start = match.end()

        remainder = text[start:].strip()
        if remainder:
            sentences.append(remainder)
        return sentences

    def split_into_chunks(self, text: str) -> list[str]:
        """Greedily pack sentences into chunks of at most chunk_size characters.

        When a sentence does not fit, the current chunk is closed (and kept if it
        reaches min_chunk_length) and the next chunk is seeded with the last
        chunk_overlap characters of the closed one. A single sentence longer than
        chunk_size is never split, so a chunk may overrun by one sentence.
        """
        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        min_length = self.config.min_chunk_length

        chunks: list[str] = []
        current = ""

        for sentence in self.split_sentences(text):
            separator = " " if current else ""
            if current and len(current) + len(separator) + len(sentence) > size:
                if len(current.strip()) >= min_length:
                    chunks.append(current)

                if overlap > 0 and len(current) >= overlap:
                    current = current[-overlap:]
                else:
                    current = ""
                separator = " " if current else ""

            current = f"{current}{separator}{sentence}"

        if len(current.strip()) >= min_length:
            chunks.append(current)

        return chunks
