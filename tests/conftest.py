"""Shared pytest fixtures for KB Assistant tests."""

import threading
import time

import pytest
import requests

from kb_assistant.config import AssistantConfig
from kb_assistant.errors import BackendError
from kb_assistant.pipeline import PipelineOrchestrator
from kb_assistant.rag.chunker import Chunker
from kb_assistant.rag.crawler import Crawler
from kb_assistant.rag.rate_limiter import RateLimiter
from kb_assistant.rag.retrieval import RetrievalClient
from kb_assistant.rag.store import SQLiteVectorIndex

KEYWORDS = ["install", "configure", "api", "error", "deploy", "auth", "cache", "log"]

ROOT_URL = "http://docs.example.com/"


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without network or backend access")


def html_page(title="", body="", links=()):
    """Build a small HTML page with a <main> region and anchors in document order."""
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    title_tag = f"<title>{title}</title>" if title else ""
    return f"<html><head>{title_tag}</head><body><nav>Menu</nav><main><p>{body}</p>{anchors}</main></body></html>"


class FakeResponse:
    """Minimal stand-in for requests.Response as used by the crawler."""

    def __init__(self, text="", status_code=200, headers=None):
        self.text = text
        self.status_code = status_code
        self.headers = headers if headers is not None else {"Content-Type": "text/html; charset=utf-8"}


class FakeSession:
    """Serve canned pages by URL and record every GET."""

    def __init__(self, pages=None, errors=None):
        self.pages = pages or {}
        self.errors = errors or {}
        self.requested = []

    def get(self, url, headers=None, timeout=None):
        self.requested.append(url)
        if url in self.errors:
            raise self.errors[url]
        page = self.pages.get(url)
        if page is None:
            return FakeResponse("not found", status_code=404)
        if isinstance(page, FakeResponse):
            return page
        return FakeResponse(page)


def keyword_vector(text):
    """Deterministic embedding: a constant component plus keyword counts."""
    lowered = text.lower()
    return [1.0] + [float(lowered.count(word)) for word in KEYWORDS]


class FakeEmbedder:
    """Embedder returning keyword vectors; fails for texts containing fail_on."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []
        self._lock = threading.Lock()

    def embed(self, texts):
        with self._lock:
            self.calls.append(list(texts))
        if self.fail_on and any(self.fail_on in text for text in texts):
            raise BackendError("embedding model unavailable", operation="embed")
        return [keyword_vector(text) for text in texts]


class FakeChat:
    """Generation backend with scripted answers and optional failures."""

    def __init__(self, fragments=("Hello", " from", " the docs."), fail_times=0, fail_after=None, delay=0.0):
        self.fragments = list(fragments)
        self.fail_times = fail_times
        self.fail_after = fail_after
        self.delay = delay
        self.calls = []

    def _maybe_fail(self):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise BackendError("model overloaded", operation="generate")

    def generate(self, system_prompt, query, context_text):
        self.calls.append((system_prompt, query, context_text))
        self._maybe_fail()
        return "".join(self.fragments)

    def generate_stream(self, system_prompt, query, context_text):
        self.calls.append((system_prompt, query, context_text))
        self._maybe_fail()
        for i, fragment in enumerate(self.fragments):
            if self.fail_after is not None and i == self.fail_after:
                raise BackendError("stream interrupted", operation="generate")
            if self.delay:
                time.sleep(self.delay)
            yield fragment


@pytest.fixture
def fast_limiter():
    """Rate limiter that never waits noticeably."""
    return RateLimiter(10000.0)


@pytest.fixture
def site_pages():
    """A small documentation site on docs.example.com."""
    return {
        ROOT_URL: html_page(
            "Docs Home",
            "Welcome. Read how to install the tool and configure it before you deploy anything to production.",
            links=["/install.html", "/api/", "http://other.example.com/external.html"],
        ),
        "http://docs.example.com/install.html": html_page(
            "Install",
            "To install the package run the installer. The install step downloads everything you need to get started.",
            links=["/", "/api/"],
        ),
        "http://docs.example.com/api/": html_page(
            "API",
            "The api reference lists every endpoint. Each api call returns JSON and reports an error code on failure.",
        ),
    }


@pytest.fixture
def session(site_pages):
    return FakeSession(site_pages)


@pytest.fixture
def test_config():
    """AssistantConfig tuned for small test pages."""
    config = AssistantConfig()
    config.CHUNK_SIZE = 200
    config.CHUNK_OVERLAP = 20
    config.MIN_CHUNK_LENGTH = 10
    config.BATCH_SIZE = 1
    config.STREAMING = False
    config.SHOW_PROGRESS = False
    config.HEALTH_CHECK_ON_STARTUP = False
    config.PROGRESS_INTERVAL = 0.01
    return config


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def vector_index():
    index = SQLiteVectorIndex(":memory:")
    yield index
    index.close()


@pytest.fixture
def retrieval(embedder, vector_index):
    return RetrievalClient(embedder, vector_index)


@pytest.fixture
def progress_events():
    return []


@pytest.fixture
def orchestrator(test_config, session, retrieval, chat, fast_limiter, progress_events):
    """Orchestrator wired to fakes: canned site, keyword embedder, scripted chat."""
    return PipelineOrchestrator(
        test_config,
        chunker=Chunker(test_config.chunker_config()),
        retrieval=retrieval,
        chat=chat,
        crawler_factory=lambda crawler_config: Crawler(crawler_config, session=session, rate_limiter=fast_limiter),
        on_progress=progress_events.append,
    )


@pytest.fixture
def connection_error():
    return requests.ConnectionError("connection refused")
