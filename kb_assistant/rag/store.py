"""SQLite-backed vector index with upsert and cosine nearest-neighbor search."""

import json
import logging
import re
import sqlite3
import threading
from pathlib import Path

import numpy as np

from ..errors import BackendError, ConfigurationError
from ..models import IndexedChunk

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def sanitize_text(text: str) -> str:
    """Drop characters that cannot be encoded as UTF-8 (lone surrogates)."""
    return text.encode("utf-8", errors="ignore").decode("utf-8")


class SQLiteVectorIndex:
    """Vector index storing one row per chunk, keyed by compound id.

    Embeddings are stored as float32 blobs; nearest-neighbor search computes
    cosine distance over all rows with numpy.
    """

    def __init__(self, db_path: str | Path = ":memory:", table_name: str = "documents", vector_dim: int | None = None):
        """Open (and create if needed) the index.

        Args:
            db_path: SQLite database file, or ":memory:"
            table_name: Table holding the chunks
            vector_dim: Expected embedding dimensionality (None = accept the first seen)

        Raises:
            ConfigurationError: If the table name is not a plain identifier
            BackendError: If the database cannot be opened or initialized
        """
        if not _TABLE_NAME.match(table_name):
            raise ConfigurationError(f"invalid table name: {table_name!r}")
        if vector_dim is not None and vector_dim <= 0:
            raise ConfigurationError(f"vector_dim must be positive, got {vector_dim}")

        self.db_path = str(db_path)
        self.table_name = table_name
        self.vector_dim = vector_dim
        self._lock = threading.Lock()

        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._initialize()
        except sqlite3.Error as e:
            raise BackendError("failed to open vector index", operation="initialize", url=self.db_path, cause=e) from e

        logger.info(f"[STORE] Vector index ready: {self.db_path} (table: {self.table_name})")

    def _initialize(self):
        with self.conn:
            self.conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table_name} (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT,
                    content TEXT,
                    embedding BLOB NOT NULL,
                    metadata TEXT
                )
                """
            )

    def upsert(self, chunk: IndexedChunk):
        """Insert or overwrite a single chunk."""
        self.upsert_many([chunk])

    def upsert_many(self, chunks: list[IndexedChunk]) -> int:
        """Insert or overwrite chunks inside one transaction.

        Either every row is written or none is.

        Returns:
            Number of rows written

        Raises:
            BackendError: On dimension mismatch or database failure (nothing committed)
        """
        expected_dim = self.vector_dim
        try:
            rows = [self._to_row(chunk) for chunk in chunks]
        except BackendError:
            # The dimension learned from a rejected batch is not kept
            self.vector_dim = expected_dim
            raise
        if not rows:
            return 0

        statement = f"""
            INSERT INTO {self.table_name} (id, document_id, chunk_index, url, title, content, embedding, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                content = excluded.content,
                embedding = excluded.embedding,
                metadata = excluded.metadata,
                title = excluded.title,
                url = excluded.url
        """

        with self._lock:
            try:
                with self.conn:
                    self.conn.executemany(statement, rows)
            except sqlite3.Error as e:
                self.vector_dim = expected_dim
                raise BackendError("failed to upsert chunks", operation="upsert", cause=e) from e

        logger.debug(f"[STORE] Upserted {len(rows)} chunks")
        return len(rows)

    def nearest(self, vector: list[float], k: int) -> list[IndexedChunk]:
        """Return the k stored chunks closest to vector, nearest first."""
        query = self._check_vector(vector, learn=False)
        if k <= 0:
            return []

        with self._lock:
            try:
                rows = self.conn.execute(
                    f"SELECT id, document_id, chunk_index, url, title, content, embedding, metadata FROM {self.table_name}"
                ).fetchall()
            except sqlite3.Error as e:
                raise BackendError("failed to query chunks", operation="query", cause=e) from e

        if not rows:
            return []

        try:
            matrix = np.vstack([np.frombuffer(row["embedding"], dtype=np.float32) for row in rows])
        except ValueError as e:
            raise BackendError("stored embeddings have mixed dimensions", operation="query", cause=e) from e
        if matrix.shape[1] != query.size:
            raise BackendError(
                f"query has dimension {query.size}, stored embeddings have {matrix.shape[1]}", operation="query"
            )

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        distances = 1.0 - (matrix @ query) / norms

        # Stable sort keeps insertion order among equal distances
        order = np.argsort(distances, kind="stable")[:k]
        return [self._from_row(rows[i]) for i in order]

    def count(self) -> int:
        with self._lock:
            return self.conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]

    def ids(self) -> set[str]:
        with self._lock:
            return {row[0] for row in self.conn.execute(f"SELECT id FROM {self.table_name}")}

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None
            logger.info("[STORE] Vector index closed")

    def _check_vector(self, vector, learn: bool = True) -> np.ndarray:
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise BackendError("embedding is not a numeric vector", operation="validate embedding", cause=e) from e
        if array.ndim != 1 or array.size == 0:
            raise BackendError("embedding must be a non-empty vector", operation="validate embedding")
        if self.vector_dim is None:
            if learn:
                self.vector_dim = int(array.size)
        elif array.size != self.vector_dim:
            raise BackendError(
                f"embedding has dimension {array.size}, index expects {self.vector_dim}",
                operation="validate embedding",
            )
        return array

    def _to_row(self, chunk: IndexedChunk) -> tuple:
        if chunk.embedding is None:
            raise BackendError("chunk has no embedding", operation="upsert", url=chunk.url)
        embedding = self._check_vector(chunk.embedding)
        return (
            chunk.compound_id,
            chunk.document_id,
            chunk.chunk_index,
            chunk.url,
            sanitize_text(chunk.title),
            sanitize_text(chunk.text),
            embedding.tobytes(),
            json.dumps(chunk.metadata, default=str),
        )

    def _from_row(self, row: sqlite3.Row) -> IndexedChunk:
        return IndexedChunk(
            document_id=row["document_id"],
            chunk_index=row["chunk_index"],
            url=row["url"],
            title=row["title"] or "",
            text=row["content"] or "",
            embedding=np.frombuffer(row["embedding"], dtype=np.float32).tolist(),
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )
