"""Same-origin documentation crawler.

Walks hyperlinks depth-first from a start URL, one request at a time, and turns
every admitted HTML page into a Document. Traversal uses an explicit worklist so
that deep sites cannot exhaust the call stack; the visit order is the pre-order
a recursive descent would produce.
"""

import hashlib
import logging
import threading
from datetime import datetime, timezone
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from ..errors import CancelledError, FetchError, ParseError
from ..models import Document
from .config import CrawlerConfig
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Probed in order; the first selector that matches supplies the main content
CONTENT_SELECTORS = [
    "main",
    "article",
    ".content",
    "#content",
    ".documentation",
    "#documentation",
]

BOILERPLATE_PHRASES = [
    "Cookie Policy",
    "Accept Cookies",
    "Privacy Policy",
    "Terms of Service",
]


def document_id(url: str) -> str:
    """Stable document identifier derived from the URL."""
    return hashlib.sha256(url.encode()).hexdigest()[:16]


def clean_content(content: str) -> str:
    """Collapse whitespace and strip boilerplate notices."""
    content = " ".join(content.split())
    for phrase in BOILERPLATE_PHRASES:
        content = content.replace(phrase, "")
    return " ".join(content.split())


def extract_main_content(soup: BeautifulSoup) -> str:
    """Extract the primary content region of a parsed page.

    Falls back to the full body text (or the whole document) when no content
    selector matches or the matched region is empty.
    """
    content = ""
    for selector in CONTENT_SELECTORS:
        selected = soup.select(selector)
        if selected:
            content = " ".join(el.get_text(separator=" ") for el in selected)
            break

    if not content.strip():
        body = soup.body if soup.body is not None else soup
        content = body.get_text(separator=" ")

    return clean_content(content)


def extract_title(soup: BeautifulSoup) -> str:
    if soup.title is None:
        return ""
    return " ".join(soup.title.get_text().split())


class Crawler:
    """Bounded-depth, deduplicated, same-host page fetcher."""

    def __init__(
        self,
        config: CrawlerConfig,
        session: requests.Session | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        """Initialize the crawler.

        Args:
            config: Crawl bounds, filters and callbacks
            session: HTTP session used for every GET (defaults to a new requests.Session)
            rate_limiter: Shared limiter; one is created from config.rate_limit if omitted
        """
        self.config = config
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self.allowed_extensions = [ext.lower() for ext in config.allowed_extensions]
        self.errors: list[Exception] = []

    def scrape(self, start_url: str, cancel_event: threading.Event | None = None) -> list[Document]:
        """Crawl from start_url and return documents in pre-order of first visit.

        Args:
            start_url: Absolute http(s) URL; its host bounds the crawl
            cancel_event: Optional event that aborts the crawl when set

        Returns:
            Documents for every admitted page that was fetched and parsed

        Raises:
            ParseError: If start_url is not an absolute http(s) URL
            FetchError: If the start page itself cannot be fetched
            CancelledError: If cancel_event fires; ``partial`` holds the documents so far
        """
        start_url = urldefrag(start_url.strip())[0]
        parsed = urlparse(start_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ParseError("start URL must be an absolute http(s) URL", url=start_url)

        base_host = parsed.netloc
        visited: set[str] = set()
        documents: list[Document] = []
        self.errors = []

        # (url, depth) pairs; popped from the end so the first link is explored first
        worklist: list[tuple[str, int]] = [(start_url, 0)]

        logger.info(f"[CRAWLER] Starting crawl from {start_url} (max depth: {self.config.max_depth})")

        while worklist:
            url, depth = worklist.pop()

            if not self.should_process_url(url, depth, base_host, visited):
                continue

            visited.add(url)
            if self.config.on_progress is not None:
                self.config.on_progress(url)

            try:
                self.rate_limiter.acquire(cancel_event)
            except CancelledError as e:
                logger.info(f"[CRAWLER] Crawl cancelled after {len(documents)} pages")
                raise CancelledError("crawl cancelled", url=url, operation="crawl", partial=documents) from e

            try:
                document, links = self._fetch_page(url, depth)
            except (FetchError, ParseError) as e:
                if url == start_url:
                    raise
                self.errors.append(e)
                logger.warning(f"[CRAWLER] Skipping {url}: {e}")
                continue

            documents.append(document)

            children = []
            for link in links:
                try:
                    absolute = urldefrag(urljoin(url, link))[0]
                except ValueError as e:
                    error = ParseError(f"malformed href {link!r}", url=url, cause=e)
                    self.errors.append(error)
                    logger.debug(f"[CRAWLER] {error}")
                    continue
                children.append((absolute, depth + 1))

            worklist.extend(reversed(children))

        logger.info(f"[CRAWLER] Crawl complete: {len(documents)} documents, {len(self.errors)} errors")
        return documents

    def should_process_url(self, url: str, depth: int, base_host: str, visited: set[str]) -> bool:
        """Admission test for a candidate URL.

        Args:
            url: Absolute candidate URL
            depth: Link depth at which it was discovered
            base_host: Host of the start URL (exact match required)
            visited: URLs already admitted in this crawl

        Returns:
            True if the URL should be fetched
        """
        if depth > self.config.max_depth or url in visited:
            return False

        try:
            parsed = urlparse(url)
        except ValueError:
            return False

        if parsed.netloc != base_host:
            return False

        if not self._extension_allowed(parsed.path):
            logger.debug(f"[CRAWLER] Extension not allowed: {url}")
            return False

        for pattern in self.config.ignore_patterns:
            if pattern and pattern in url:
                logger.debug(f"[CRAWLER] Ignored by pattern {pattern!r}: {url}")
                return False

        return True

    def _extension_allowed(self, path: str) -> bool:
        path = path.lower()
        last_segment = path.rsplit("/", 1)[-1]
        for ext in self.allowed_extensions:
            if ext == "/":
                if path == "" or path.endswith("/"):
                    return True
            elif ext == "":
                if "." not in last_segment:
                    return True
            elif path.endswith(ext):
                return True
        return False

    def _fetch_page(self, url: str, depth: int) -> tuple[Document, list[str]]:
        """Fetch and parse one page.

        Returns:
            Tuple of (document, raw href values in document order)
        """
        logger.debug(f"[CRAWLER] Fetching: {url}")
        try:
            response = self.session.get(
                url, headers={"User-Agent": self.config.user_agent}, timeout=self.config.timeout
            )
        except requests.RequestException as e:
            raise FetchError("request failed", url=url, cause=e) from e

        if not 200 <= response.status_code < 300:
            raise FetchError(f"received status code {response.status_code}", url=url, status_code=response.status_code)

        content_type = response.headers.get("Content-Type", "")
        if content_type and "html" not in content_type.lower():
            raise ParseError(f"not an HTML page ({content_type})", url=url)

        try:
            soup = BeautifulSoup(response.text, "html.parser")
        except Exception as e:
            raise ParseError("failed to parse HTML", url=url, cause=e) from e

        document = Document(
            id=document_id(url),
            url=url,
            title=extract_title(soup),
            content=extract_main_content(soup),
            metadata={
                "depth": depth,
                "fetched_at": datetime.now(timezone.utc),
                "content_type": content_type,
                "last_modified": response.headers.get("Last-Modified", ""),
            },
        )
        links = [anchor["href"] for anchor in soup.find_all("a", href=True)]
        return document, links
