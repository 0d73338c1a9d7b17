"""KB Assistant - Chat with a documentation site through a local LLM backend."""

from .config import AssistantConfig
from .errors import BackendError, CancelledError, ConfigurationError, FetchError, KBAssistantError, ParseError
from .models import Document, ProcessedDocument, format_sources
from .pipeline import (
    Answer,
    IngestionReport,
    PipelineOrchestrator,
    PipelineState,
    ProgressReporter,
    ResponseStream,
    create_orchestrator,
)
from .tools import create_doc_search_tool

# The HTTP server is not imported by default:
# - from kb_assistant.server import KBServer

__version__ = "0.1.0"
__all__ = [
    "Answer",
    "AssistantConfig",
    "BackendError",
    "CancelledError",
    "ConfigurationError",
    "Document",
    "FetchError",
    "IngestionReport",
    "KBAssistantError",
    "ParseError",
    "PipelineOrchestrator",
    "PipelineState",
    "ProcessedDocument",
    "ProgressReporter",
    "ResponseStream",
    "create_doc_search_tool",
    "create_orchestrator",
    "format_sources",
]
