"""Error taxonomy shared by the crawler, chunker, retrieval and pipeline layers."""

from typing import Any


class KBAssistantError(Exception):
    """Base class for all knowledge-base assistant errors.

    Carries optional context (URL, operation, underlying cause) so that every
    recoverable error can be reported with enough detail to retry manually.
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        operation: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.url = url
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        parts = []
        if self.operation:
            parts.append(f"{self.operation} failed")
        if self.url:
            parts.append(f"for {self.url}")
        prefix = " ".join(parts)
        text = f"{prefix}: {self.message}" if prefix else self.message
        if self.cause is not None:
            text = f"{text} ({type(self.cause).__name__}: {self.cause})"
        return text


class ConfigurationError(KBAssistantError, ValueError):
    """Invalid construction parameters. Raised before any work begins."""

    def __init__(self, message: str, errors: list[tuple[str, str]] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.errors = errors or []

    @classmethod
    def from_errors(cls, errors: list[tuple[str, str]]) -> "ConfigurationError":
        """Build a single error from a list of (field, message) problems."""
        details = "; ".join(f"{field}: {msg}" for field, msg in errors)
        return cls(f"Invalid configuration: {details}", errors=errors)


class FetchError(KBAssistantError):
    """Network or HTTP status failure for a single URL."""

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        kwargs.setdefault("operation", "fetch")
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ParseError(KBAssistantError):
    """Malformed HTML or URL."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("operation", "parse")
        super().__init__(message, **kwargs)


class BackendError(KBAssistantError):
    """Embedding, generation or storage backend failure."""


class CancelledError(KBAssistantError):
    """An operation was interrupted by a cancellation signal."""

    def __init__(self, message: str = "operation cancelled", *, partial: list | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        # Work completed before cancellation (e.g. documents crawled so far)
        self.partial = partial if partial is not None else []


__all__ = [
    "BackendError",
    "CancelledError",
    "ConfigurationError",
    "FetchError",
    "KBAssistantError",
    "ParseError",
]
