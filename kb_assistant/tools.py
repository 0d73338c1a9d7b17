"""LangChain tool exposing the knowledge base to tool-calling LLM servers."""

from typing import Optional

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from .errors import KBAssistantError
from .models import build_context, format_sources
from .rag.retrieval import RetrievalClient


class DocSearchInput(BaseModel):
    """Input schema for documentation search tool."""

    query: str = Field(description="Natural-language question or keywords to look up in the ingested documentation")
    top_k: Optional[int] = Field(default=None, description="Maximum number of passages to return. Defaults to the configured search limit.")


def create_doc_search_tool(retrieval: RetrievalClient, top_k: int = 5) -> StructuredTool:
    """Create a tool that searches the ingested documentation.

    Args:
        retrieval: RetrievalClient backed by an already populated index
        top_k: Default number of passages returned per search

    Returns:
        LangChain StructuredTool named "search_docs"

    Example:
        >>> search_docs = create_doc_search_tool(retrieval)
        >>> tools = [search_docs]
    """

    default_top_k = top_k

    def _search_docs(query: str, top_k: Optional[int] = None) -> str:
        try:
            documents = retrieval.query(query, top_k or default_top_k)
        except KBAssistantError as e:
            return f"Error searching documentation: {e}"

        if not documents:
            return "No relevant documentation found."
        return build_context(documents) + format_sources(documents)

    return StructuredTool.from_function(
        name="search_docs",
        description="Search the ingested documentation for passages relevant to a question. Returns matching passages with their source URLs.",
        func=_search_docs,
        args_schema=DocSearchInput,
    )


__all__ = ["DocSearchInput", "create_doc_search_tool"]
