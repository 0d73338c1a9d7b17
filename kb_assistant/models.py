"""Data model for crawled pages, chunked pages and indexed chunks."""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Document:
    """A fetched page (or, at query time, a retrieved chunk standing in for one).

    Attributes:
        id: Identifier unique within a crawl session
        url: Canonical fetch address
        title: Page title, empty string if the page has none
        content: Cleaned main-content text
        metadata: Open mapping; the crawler sets depth, fetched_at, content_type, last_modified
    """

    id: str
    url: str
    title: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProcessedDocument:
    """A document together with its ordered chunk texts."""

    document: Document
    chunks: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.document.id

    @property
    def url(self) -> str:
        return self.document.url

    @property
    def title(self) -> str:
        return self.document.title

    @property
    def metadata(self) -> dict[str, Any]:
        return self.document.metadata


def compound_id(document_id: str, chunk_index: int) -> str:
    """Stable key of one chunk in the vector index."""
    return f"{document_id}_{chunk_index}"


@dataclass
class IndexedChunk:
    """One row of the vector index."""

    document_id: str
    chunk_index: int
    url: str
    title: str
    text: str
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def compound_id(self) -> str:
        return compound_id(self.document_id, self.chunk_index)

    def to_document(self) -> Document:
        """Present the chunk as a Document with the chunk text as content."""
        return Document(
            id=self.compound_id,
            url=self.url,
            title=self.title,
            content=self.text,
            metadata=dict(self.metadata),
        )


def format_sources(documents: list[Document]) -> str:
    """List the distinct source URLs of the given documents, in first-seen order."""
    seen: set[str] = set()
    sources = []
    for doc in documents or []:
        if doc.url and doc.url not in seen:
            seen.add(doc.url)
            sources.append(doc.url)

    if not sources:
        return ""
    return "\nSources:\n" + "\n".join(sources)


def build_context(documents: list[Document]) -> str:
    """Render retrieved documents as the context block handed to the chat backend."""
    return "".join(f"Source: {doc.url}\n{doc.content}\n\n" for doc in documents)
