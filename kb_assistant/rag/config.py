"""Component configuration dataclasses for crawling, chunking and retrieval."""

from collections.abc import Callable
from dataclasses import dataclass, field

from ..errors import ConfigurationError

DEFAULT_USER_AGENT = "KB-Assistant/1.0 (Respectful documentation crawler)"
DEFAULT_ALLOWED_EXTENSIONS = [".html", ".htm", "/", ""]


@dataclass
class CrawlerConfig:
    """Configuration for the same-origin documentation crawler.

    Attributes:
        max_depth: Maximum link depth from the start URL (start URL is depth 0)
        rate_limit: Maximum requests per second (strict pacing, burst of 1)
        allowed_extensions: Path suffixes to accept. "" matches extension-less paths,
            "/" matches directory paths.
        ignore_patterns: Substrings; a URL containing any of them is never fetched
        timeout: HTTP request timeout in seconds
        user_agent: User agent string for requests
        on_progress: Optional callback invoked with each admitted URL, on the crawling thread
    """

    max_depth: int = 3
    rate_limit: float = 2.0
    allowed_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    ignore_patterns: list[str] = field(default_factory=list)
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    on_progress: Callable[[str], None] | None = None

    def __post_init__(self):
        """Validate crawl bounds."""
        errors = []
        if self.max_depth < 1:
            errors.append(("max_depth", "must be positive"))
        if self.rate_limit <= 0:
            errors.append(("rate_limit", "must be positive"))
        if self.timeout <= 0:
            errors.append(("timeout", "must be positive"))
        if not self.allowed_extensions:
            self.allowed_extensions = list(DEFAULT_ALLOWED_EXTENSIONS)
        for ext in self.allowed_extensions:
            if ext not in ("", "/") and not ext.startswith("."):
                errors.append(("allowed_extensions", f"invalid extension format: {ext}"))
        if errors:
            raise ConfigurationError.from_errors(errors)


@dataclass
class ChunkerConfig:
    """Configuration for sentence-packing text chunking.

    Attributes:
        chunk_size: Maximum characters per chunk before overlap carry-forward
        chunk_overlap: Characters carried from the end of one chunk into the next
        min_chunk_length: Chunks shorter than this (after trimming) are dropped
        remove_stopwords: Drop common English stopwords (plus custom_stopwords)
        custom_stopwords: Extra stopwords, matched case-sensitively after normalization
        preserve_line_breaks: When False, text is lowercased during normalization
    """

    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_length: int = 100
    remove_stopwords: bool = False
    custom_stopwords: list[str] = field(default_factory=list)
    preserve_line_breaks: bool = False

    def __post_init__(self):
        """Validate size and overlap relationships."""
        errors = []
        if self.chunk_size <= 0:
            errors.append(("chunk_size", "must be positive"))
        if self.min_chunk_length <= 0:
            errors.append(("min_chunk_length", "must be positive"))
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            errors.append(("chunk_overlap", "must be non-negative and less than chunk_size"))
        if errors:
            raise ConfigurationError.from_errors(errors)


@dataclass
class RetrievalConfig:
    """Configuration for embedding and nearest-neighbor retrieval.

    Attributes:
        search_limit: Default number of chunks returned per query (k)
        embed_batch_size: Texts per embedding request
        embed_concurrency: Maximum embedding requests in flight
    """

    search_limit: int = 5
    embed_batch_size: int = 16
    embed_concurrency: int = 4

    def __post_init__(self):
        errors = []
        if self.search_limit <= 0:
            errors.append(("search_limit", "must be positive"))
        if self.embed_batch_size <= 0:
            errors.append(("embed_batch_size", "must be positive"))
        if self.embed_concurrency <= 0:
            errors.append(("embed_concurrency", "must be positive"))
        if errors:
            raise ConfigurationError.from_errors(errors)
