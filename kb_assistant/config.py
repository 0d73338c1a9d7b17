"""Configuration for the knowledge-base assistant."""

from typing import Literal, Optional

from .errors import ConfigurationError
from .rag.config import DEFAULT_USER_AGENT, ChunkerConfig, CrawlerConfig, RetrievalConfig

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant with access to the following documentation. "
    "Answer questions based on this context."
)
DEFAULT_CONTEXT_TEMPLATE = "\nRelevant documentation:\n{context}\n\nQuestion: {query}"


def _parse_list(value: str) -> list:
    """Split a comma-separated env value, keeping empty entries (e.g. extension-less paths)."""
    return [item.strip() for item in value.split(",")]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


class AssistantConfig:
    """Configuration for crawling, chunking, storage, backends and front-ends.

    Projects can subclass this and override class attributes, or load
    everything from the environment with ``from_env``.
    """

    # Backend configuration
    BACKEND_TYPE: Literal["ollama", "lmstudio"] = "ollama"
    OLLAMA_ENDPOINT: str = "http://localhost:11434"
    LMSTUDIO_ENDPOINT: str = "http://localhost:1234/v1"
    CHAT_MODEL: str = "mistral"
    EMBEDDING_MODEL: str = "nomic-embed-text:latest"
    MAX_TOKENS: int = 2000
    DEFAULT_TEMPERATURE: float = 0.7
    TEMPERATURE: float = 0.0  # 0 means unset: DEFAULT_TEMPERATURE applies
    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT
    CONTEXT_TEMPLATE: str = DEFAULT_CONTEXT_TEMPLATE

    # Backend timeout settings (in seconds)
    BACKEND_CONNECT_TIMEOUT: int = 10
    BACKEND_READ_TIMEOUT: int = 300

    # Health check settings
    HEALTH_CHECK_ON_STARTUP: bool = True
    HEALTH_CHECK_TIMEOUT: int = 5

    # Crawl settings
    MAX_DEPTH: int = 3
    RATE_LIMIT: float = 2.0  # requests per second
    ALLOWED_EXTENSIONS: Optional[list] = None  # None = .html, .htm, directories, extension-less
    IGNORE_PATTERNS: Optional[list] = None
    REQUEST_TIMEOUT: float = 30.0
    USER_AGENT: str = DEFAULT_USER_AGENT

    # Chunking settings
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200
    MIN_CHUNK_LENGTH: int = 100
    REMOVE_STOPWORDS: bool = False
    CUSTOM_STOPWORDS: Optional[list] = None
    PRESERVE_LINE_BREAKS: bool = False

    # Storage settings
    DATABASE_PATH: str = "kb_assistant.db"
    TABLE_NAME: str = "documents"
    VECTOR_DIM: int = 768
    BATCH_SIZE: int = 100
    SEARCH_LIMIT: int = 5
    EMBED_CONCURRENCY: int = 4
    EMBED_BATCH_SIZE: int = 16

    # UI settings
    STREAMING: bool = True
    SHOW_PROGRESS: bool = True
    PROGRESS_INTERVAL: float = 0.1

    # Server configuration
    DEFAULT_HOST: str = "127.0.0.1"  # Default to localhost for security (use 0.0.0.0 for all interfaces)
    DEFAULT_PORT: int = 8000

    # Debug logging
    DEBUG_LOG: bool = False
    DEBUG_LOG_FILE: str = "kb_assistant_debug.log"
    DEBUG_LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB default
    DEBUG_LOG_BACKUP_COUNT: int = 5

    def effective_temperature(self) -> float:
        """Temperature sent to the backend; exactly 0 means use the default."""
        return self.TEMPERATURE if self.TEMPERATURE else self.DEFAULT_TEMPERATURE

    def validate(self):
        """Check every setting and raise one ConfigurationError listing all problems."""
        errors = []

        if self.BACKEND_TYPE not in ("ollama", "lmstudio"):
            errors.append(("backend_type", f"unsupported backend: {self.BACKEND_TYPE}"))
        base_url = self.OLLAMA_ENDPOINT if self.BACKEND_TYPE == "ollama" else self.LMSTUDIO_ENDPOINT
        if not base_url:
            errors.append(("backend.base_url", "backend base URL is required"))
        elif not base_url.startswith(("http://", "https://")):
            errors.append(("backend.base_url", f"invalid backend base URL: {base_url}"))

        if self.MAX_TOKENS < 1 or self.MAX_TOKENS > 4096:
            errors.append(("max_tokens", "max_tokens must be between 1 and 4096"))
        temperature = self.effective_temperature()
        if temperature <= 0 or temperature > 2:
            errors.append(("temperature", "temperature must be greater than 0 and at most 2"))

        if self.VECTOR_DIM < 1:
            errors.append(("vector_dim", "vector_dim must be positive"))
        if self.BATCH_SIZE < 1:
            errors.append(("batch_size", "batch_size must be positive"))
        if self.SEARCH_LIMIT < 1:
            errors.append(("search_limit", "search_limit must be positive"))

        if self.MAX_DEPTH < 1:
            errors.append(("max_depth", "max_depth must be positive"))
        if self.RATE_LIMIT <= 0:
            errors.append(("rate_limit", "rate_limit must be positive"))
        for ext in self.ALLOWED_EXTENSIONS or []:
            if not ext.startswith(".") and ext not in ("", "/"):
                errors.append(("allowed_extensions", f"invalid extension format: {ext}"))

        if self.CHUNK_SIZE < 1:
            errors.append(("chunk_size", "chunk_size must be positive"))
        if self.MIN_CHUNK_LENGTH < 1:
            errors.append(("min_chunk_length", "min_chunk_length must be positive"))
        if self.CHUNK_OVERLAP < 0 or self.CHUNK_OVERLAP >= self.CHUNK_SIZE:
            errors.append(("chunk_overlap", "chunk_overlap must be non-negative and less than chunk_size"))

        if errors:
            raise ConfigurationError.from_errors(errors)

    def crawler_config(self, on_progress=None) -> CrawlerConfig:
        return CrawlerConfig(
            max_depth=self.MAX_DEPTH,
            rate_limit=self.RATE_LIMIT,
            allowed_extensions=list(self.ALLOWED_EXTENSIONS or []),
            ignore_patterns=list(self.IGNORE_PATTERNS or []),
            timeout=self.REQUEST_TIMEOUT,
            user_agent=self.USER_AGENT,
            on_progress=on_progress,
        )

    def chunker_config(self) -> ChunkerConfig:
        return ChunkerConfig(
            chunk_size=self.CHUNK_SIZE,
            chunk_overlap=self.CHUNK_OVERLAP,
            min_chunk_length=self.MIN_CHUNK_LENGTH,
            remove_stopwords=self.REMOVE_STOPWORDS,
            custom_stopwords=list(self.CUSTOM_STOPWORDS or []),
            preserve_line_breaks=self.PRESERVE_LINE_BREAKS,
        )

    def retrieval_config(self) -> RetrievalConfig:
        return RetrievalConfig(
            search_limit=self.SEARCH_LIMIT,
            embed_batch_size=self.EMBED_BATCH_SIZE,
            embed_concurrency=self.EMBED_CONCURRENCY,
        )

    @classmethod
    def from_env(cls, env_prefix: str = ""):
        """Create config from environment variables with optional prefix.

        Args:
            env_prefix: Prefix for environment variables (e.g., "KB_")

        Returns:
            AssistantConfig instance populated from environment
        """
        import os

        from dotenv import load_dotenv

        load_dotenv()

        config = cls()

        # Helper to get env var with prefix
        def get_env(name: str, default):
            # Try with prefix first, then without
            prefixed = os.getenv(f"{env_prefix}{name}", None)
            if prefixed is not None:
                return prefixed
            return os.getenv(name, default)

        def get_list(name: str, default):
            value = get_env(name, None)
            return _parse_list(value) if value is not None else default

        def get_bool(name: str, default: bool) -> bool:
            value = get_env(name, None)
            return _parse_bool(value) if value is not None else default

        try:
            config.BACKEND_TYPE = get_env("BACKEND", cls.BACKEND_TYPE)
            config.OLLAMA_ENDPOINT = get_env("OLLAMA_ENDPOINT", get_env("OLLAMA_BASE_URL", cls.OLLAMA_ENDPOINT))
            config.LMSTUDIO_ENDPOINT = get_env("LMSTUDIO_ENDPOINT", cls.LMSTUDIO_ENDPOINT)
            config.CHAT_MODEL = get_env("CHAT_MODEL", cls.CHAT_MODEL)
            config.EMBEDDING_MODEL = get_env("EMBEDDING_MODEL", cls.EMBEDDING_MODEL)
            config.MAX_TOKENS = int(get_env("MAX_TOKENS", str(cls.MAX_TOKENS)))
            config.TEMPERATURE = float(get_env("TEMPERATURE", str(cls.TEMPERATURE)))
            config.SYSTEM_PROMPT = get_env("SYSTEM_PROMPT", cls.SYSTEM_PROMPT)
            config.BACKEND_CONNECT_TIMEOUT = int(get_env("BACKEND_CONNECT_TIMEOUT", str(cls.BACKEND_CONNECT_TIMEOUT)))
            config.BACKEND_READ_TIMEOUT = int(get_env("BACKEND_READ_TIMEOUT", str(cls.BACKEND_READ_TIMEOUT)))
            config.HEALTH_CHECK_ON_STARTUP = get_bool("HEALTH_CHECK_ON_STARTUP", cls.HEALTH_CHECK_ON_STARTUP)
            config.HEALTH_CHECK_TIMEOUT = int(get_env("HEALTH_CHECK_TIMEOUT", str(cls.HEALTH_CHECK_TIMEOUT)))

            config.MAX_DEPTH = int(get_env("MAX_DEPTH", str(cls.MAX_DEPTH)))
            config.RATE_LIMIT = float(get_env("RATE_LIMIT", str(cls.RATE_LIMIT)))
            config.ALLOWED_EXTENSIONS = get_list("ALLOWED_EXTENSIONS", cls.ALLOWED_EXTENSIONS)
            config.IGNORE_PATTERNS = get_list("IGNORE_PATTERNS", cls.IGNORE_PATTERNS)
            config.REQUEST_TIMEOUT = float(get_env("REQUEST_TIMEOUT", str(cls.REQUEST_TIMEOUT)))
            config.USER_AGENT = get_env("USER_AGENT", cls.USER_AGENT)

            config.CHUNK_SIZE = int(get_env("CHUNK_SIZE", str(cls.CHUNK_SIZE)))
            config.CHUNK_OVERLAP = int(get_env("CHUNK_OVERLAP", str(cls.CHUNK_OVERLAP)))
            config.MIN_CHUNK_LENGTH = int(get_env("MIN_CHUNK_LENGTH", str(cls.MIN_CHUNK_LENGTH)))
            config.REMOVE_STOPWORDS = get_bool("REMOVE_STOPWORDS", cls.REMOVE_STOPWORDS)
            config.CUSTOM_STOPWORDS = get_list("CUSTOM_STOPWORDS", cls.CUSTOM_STOPWORDS)
            config.PRESERVE_LINE_BREAKS = get_bool("PRESERVE_LINE_BREAKS", cls.PRESERVE_LINE_BREAKS)

            config.DATABASE_PATH = get_env("DATABASE_PATH", get_env("DATABASE_URL", cls.DATABASE_PATH))
            config.TABLE_NAME = get_env("TABLE_NAME", cls.TABLE_NAME)
            config.VECTOR_DIM = int(get_env("VECTOR_DIM", str(cls.VECTOR_DIM)))
            config.BATCH_SIZE = int(get_env("BATCH_SIZE", str(cls.BATCH_SIZE)))
            config.SEARCH_LIMIT = int(get_env("SEARCH_LIMIT", str(cls.SEARCH_LIMIT)))
            config.EMBED_CONCURRENCY = int(get_env("EMBED_CONCURRENCY", str(cls.EMBED_CONCURRENCY)))
            config.EMBED_BATCH_SIZE = int(get_env("EMBED_BATCH_SIZE", str(cls.EMBED_BATCH_SIZE)))

            config.STREAMING = get_bool("STREAMING", cls.STREAMING)
            config.SHOW_PROGRESS = get_bool("SHOW_PROGRESS", cls.SHOW_PROGRESS)
            config.PROGRESS_INTERVAL = float(get_env("PROGRESS_INTERVAL", str(cls.PROGRESS_INTERVAL)))

            config.DEFAULT_HOST = get_env("HOST", cls.DEFAULT_HOST)
            config.DEFAULT_PORT = int(get_env("PORT", str(cls.DEFAULT_PORT)))

            config.DEBUG_LOG = get_bool("DEBUG_LOG", cls.DEBUG_LOG)
            config.DEBUG_LOG_FILE = get_env("DEBUG_LOG_FILE", cls.DEBUG_LOG_FILE)
            config.DEBUG_LOG_MAX_BYTES = int(get_env("DEBUG_LOG_MAX_BYTES", str(cls.DEBUG_LOG_MAX_BYTES)))
            config.DEBUG_LOG_BACKUP_COUNT = int(get_env("DEBUG_LOG_BACKUP_COUNT", str(cls.DEBUG_LOG_BACKUP_COUNT)))
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment value: {e}", operation="load config", cause=e) from e

        return config
