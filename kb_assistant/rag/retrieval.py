"""Retrieval facade: embed chunks into the vector index and query it by text."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from ..errors import BackendError
from ..models import Document, IndexedChunk, ProcessedDocument
from .config import RetrievalConfig

logger = logging.getLogger(__name__)


class SupportsEmbed(Protocol):
    def embed(self, texts: list[str]) -> list[list[float]]: ...


class VectorIndex(Protocol):
    def upsert_many(self, chunks: list[IndexedChunk]) -> int: ...

    def nearest(self, vector: list[float], k: int) -> list[IndexedChunk]: ...


class RetrievalClient:
    """Combine an embedder and a vector index into index/query operations."""

    def __init__(self, embedder: SupportsEmbed, index: VectorIndex, config: RetrievalConfig | None = None):
        self.embedder = embedder
        self.vector_index = index
        self.config = config or RetrievalConfig()

    def index(self, documents: list[ProcessedDocument]) -> int:
        """Embed and upsert every chunk of every document, all or nothing.

        Embeddings are computed first (concurrently, bounded by embed_concurrency);
        the rows are then written in a single transaction.

        Returns:
            Number of chunks stored

        Raises:
            BackendError: If any embedding or the write fails; nothing is committed
        """
        chunks = [
            IndexedChunk(
                document_id=doc.id,
                chunk_index=i,
                url=doc.url,
                title=doc.title,
                text=text,
                metadata=dict(doc.metadata),
            )
            for doc in documents
            for i, text in enumerate(doc.chunks)
        ]
        if not chunks:
            return 0

        embeddings = self._embed_all([chunk.text for chunk in chunks])
        for chunk, embedding in zip(chunks, embeddings):
            chunk.embedding = embedding

        stored = self.vector_index.upsert_many(chunks)
        logger.debug(f"[RETRIEVAL] Indexed {stored} chunks from {len(documents)} documents")
        return stored

    def query(self, text: str, k: int | None = None) -> list[Document]:
        """Return the k chunks nearest to text, nearest first, as Documents."""
        if k is None:
            k = self.config.search_limit

        vectors = self.embedder.embed([text])
        if len(vectors) != 1:
            raise BackendError(f"expected 1 query embedding, got {len(vectors)}", operation="embed query")

        results = self.vector_index.nearest(vectors[0], k)
        logger.debug(f"[RETRIEVAL] {len(results)} results for query: {text[:80]}")
        return [chunk.to_document() for chunk in results]

    def _embed_all(self, texts: list[str]) -> list[list[float]]:
        size = self.config.embed_batch_size
        batches = [texts[i : i + size] for i in range(0, len(texts), size)]

        if len(batches) == 1:
            results = [self._embed_batch(batches[0])]
        else:
            with ThreadPoolExecutor(max_workers=self.config.embed_concurrency) as executor:
                # map preserves batch order; the first failure propagates
                results = list(executor.map(self._embed_batch, batches))

        return [vector for batch in results for vector in batch]

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        vectors = self.embedder.embed(texts)
        if len(vectors) != len(texts):
            raise BackendError(f"expected {len(texts)} embeddings, got {len(vectors)}", operation="embed")
        return vectors
