"""Ingestion building blocks: crawling, chunking, vector storage and retrieval."""

from .chunker import Chunker
from .config import ChunkerConfig, CrawlerConfig, RetrievalConfig
from .crawler import Crawler
from .rate_limiter import RateLimiter
from .retrieval import RetrievalClient
from .store import SQLiteVectorIndex

__all__ = [
    "Chunker",
    "ChunkerConfig",
    "Crawler",
    "CrawlerConfig",
    "RateLimiter",
    "RetrievalClient",
    "RetrievalConfig",
    "SQLiteVectorIndex",
]
