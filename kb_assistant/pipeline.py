"""Pipeline orchestration: ingestion (crawl, chunk, index) and query answering.

The orchestrator owns one interactive session. Its states are::

    IDLE -> INGESTING -> IDLE -> AWAITING_QUERY -> RETRIEVING -> GENERATING -> AWAITING_QUERY ... -> TERMINATED

Progress counters are lock-protected because the crawler increments them on the
calling thread while a ProgressReporter thread reads them for display.
"""

import logging
import queue
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from .errors import BackendError, CancelledError, KBAssistantError
from .models import Document, build_context, format_sources
from .rag.chunker import Chunker
from .rag.config import CrawlerConfig
from .rag.crawler import Crawler
from .rag.retrieval import RetrievalClient

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s]+")
_URL_TRAILING = ".,;:!?)]}'\""

# Seconds of history behind ProgressEvent.throughput
THROUGHPUT_WINDOW = 5.0


class PipelineState(str, Enum):
    IDLE = "idle"
    INGESTING = "ingesting"
    AWAITING_QUERY = "awaiting_query"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    TERMINATED = "terminated"


class ProgressCounter:
    """Integer counter safe to increment and read from different threads."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def reset(self):
        with self._lock:
            self._value = 0


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of ingestion progress.

    throughput is the rolling rate, in items per second over roughly the last
    THROUGHPUT_WINDOW seconds, of the current phase: pages while crawling,
    documents while processing, chunks while indexing.
    """

    phase: str
    pages_scraped: int
    documents_processed: int
    chunks_stored: int
    throughput: float
    elapsed: float


class ProgressReporter:
    """Poll a progress snapshot on a fixed interval and hand it to a renderer.

    Runs on its own daemon thread; the snapshot callable must be thread-safe.
    """

    def __init__(
        self,
        snapshot: Callable[[], ProgressEvent],
        render: Callable[[ProgressEvent], None],
        interval: float = 0.1,
    ):
        self.snapshot = snapshot
        self.render = render
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> "ProgressReporter":
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="progress-reporter", daemon=True)
        self._thread.start()
        return self

    def stop(self):
        """Stop polling and render one final snapshot."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.render(self.snapshot())

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.render(self.snapshot())
            except Exception as e:
                logger.debug(f"[PIPELINE] Progress render failed: {e}")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()


@dataclass
class IngestionReport:
    url: str
    pages_scraped: int = 0
    documents_processed: int = 0
    chunks_stored: int = 0
    failed_batches: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)
    elapsed: float = 0.0

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "pages_scraped": self.pages_scraped,
            "documents_processed": self.documents_processed,
            "chunks_stored": self.chunks_stored,
            "failed_batches": self.failed_batches,
            "cancelled": self.cancelled,
            "errors": list(self.errors),
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class Answer:
    query: str
    text: str
    sources: list[Document] = field(default_factory=list)

    @property
    def sources_text(self) -> str:
        return format_sources(self.sources)


class _StreamFailure:
    def __init__(self, error: BaseException):
        self.error = error


_DONE = object()


class ResponseStream:
    """Cancellable, finite, non-restartable iterator over response fragments.

    A producer thread drains the fragment source into an unbounded queue, so it
    never blocks on a consumer that stopped reading. The end of the queue (or a
    failure) is the consumer's only termination signal.
    """

    def __init__(
        self,
        source: Callable[[], Iterable[str]],
        on_close: Callable[[], None] | None = None,
        sources: list[Document] | None = None,
    ):
        self.sources = sources or []
        self._queue: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._closed = False
        self._close_lock = threading.Lock()
        self._on_close = on_close
        self._parts: list[str] = []
        self._producer = threading.Thread(target=self._produce, args=(source,), name="response-stream", daemon=True)
        self._producer.start()

    def _produce(self, source: Callable[[], Iterable[str]]):
        iterator = None
        try:
            iterator = iter(source())
            for fragment in iterator:
                if self._cancel.is_set():
                    break
                self._queue.put(fragment)
        except Exception as e:
            self._queue.put(_StreamFailure(e))
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
            self._queue.put(_DONE)

    def __iter__(self):
        return self

    def __next__(self) -> str:
        if self._closed:
            raise StopIteration

        item = self._queue.get()
        if item is _DONE:
            self._finish()
            raise StopIteration
        if isinstance(item, _StreamFailure):
            self._finish()
            if isinstance(item.error, KBAssistantError):
                raise item.error
            raise BackendError("response stream failed", operation="generate", cause=item.error) from item.error

        self._parts.append(item)
        return item

    def close(self):
        """Stop consuming; the producer stops at its next fragment."""
        self._cancel.set()
        self._finish()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        """Everything consumed so far."""
        return "".join(self._parts)

    @property
    def sources_text(self) -> str:
        return format_sources(self.sources)

    def _finish(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


@dataclass
class QueryOutcome:
    """Result of one interactive turn.

    kind is one of "exit", "empty", "ingested", "answer", "stream" or "error".
    """

    kind: str
    ingestion: IngestionReport | None = None
    answer: Answer | None = None
    stream: ResponseStream | None = None
    error: KBAssistantError | None = None


def find_urls(text: str) -> list[str]:
    """Return every http(s) URL embedded in text, without trailing punctuation."""
    return [match.rstrip(_URL_TRAILING) for match in URL_PATTERN.findall(text)]


def find_url(text: str) -> str | None:
    """Return the first http(s) URL embedded in text."""
    urls = find_urls(text)
    return urls[0] if urls else None


def strip_urls(text: str) -> str:
    """What remains of text once its URLs are removed."""
    return URL_PATTERN.sub("", text).strip(" " + _URL_TRAILING)


class PipelineOrchestrator:
    """Drive ingestion and query answering for one session."""

    def __init__(
        self,
        config,
        chunker: Chunker,
        retrieval: RetrievalClient,
        chat,
        crawler_factory: Callable[[CrawlerConfig], Crawler] | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: AssistantConfig (batch size, search limit, streaming, prompts)
            chunker: Chunker applied to every crawled document
            retrieval: RetrievalClient used to index chunks and query them
            chat: Generation backend with generate() and generate_stream()
            crawler_factory: Builds a crawler from a CrawlerConfig (defaults to Crawler)
            on_progress: Called with a ProgressEvent at each ingestion batch boundary
        """
        self.config = config
        self.chunker = chunker
        self.retrieval = retrieval
        self.chat = chat
        self.crawler_factory = crawler_factory or Crawler
        self.on_progress = on_progress

        self.pages_scraped = ProgressCounter()
        self.documents_processed = ProgressCounter()
        self.chunks_stored = ProgressCounter()

        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._phase = "idle"
        self._samples_lock = threading.Lock()
        self._samples: deque = deque([(time.monotonic(), 0)])
        self._ingest_started = time.monotonic()
        self._active_stream: ResponseStream | None = None

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: PipelineState):
        with self._state_lock:
            if self._state is not state:
                logger.debug(f"[PIPELINE] {self._state.value} -> {state.value}")
            self._state = state

    def _require_active(self):
        if self.state is PipelineState.TERMINATED:
            raise KBAssistantError("session terminated")

    def progress(self) -> ProgressEvent:
        """Current progress snapshot (safe to call from any thread)."""
        pages = self.pages_scraped.value
        docs = self.documents_processed.value
        chunks = self.chunks_stored.value
        now = time.monotonic()

        with self._samples_lock:
            phase = self._phase
            current = {"crawl": pages, "process": docs, "index": chunks}.get(phase, 0)
            samples = self._samples
            samples.append((now, current))
            # Keep the newest sample at least one window old as the baseline
            while len(samples) > 2 and samples[1][0] <= now - THROUGHPUT_WINDOW:
                samples.popleft()
            since, baseline = samples[0]

        throughput = (current - baseline) / (now - since) if now > since else 0.0
        return ProgressEvent(
            phase=phase,
            pages_scraped=pages,
            documents_processed=docs,
            chunks_stored=chunks,
            throughput=max(throughput, 0.0),
            elapsed=now - self._ingest_started,
        )

    def _start_phase(self, phase: str):
        with self._samples_lock:
            self._phase = phase
            self._samples = deque([(time.monotonic(), 0)])

    def _emit(self):
        if self.on_progress is not None:
            self.on_progress(self.progress())

    def _on_page(self, url: str):
        self.pages_scraped.increment()

    def ingest(self, url: str, cancel_event: threading.Event | None = None) -> IngestionReport:
        """Crawl url, chunk every page and index the chunks in batches.

        Per-page and per-batch failures are recorded in the report and skipped.

        Raises:
            ConfigurationError: If the crawler cannot be built
            ParseError: If url is not a valid start URL
            FetchError: If the start page cannot be fetched
        """
        self._require_active()
        if not url or not url.strip():
            raise KBAssistantError("a non-empty seed URL is required", operation="ingest")

        with self._state_lock:
            resting = self._state if self._state in (PipelineState.IDLE, PipelineState.AWAITING_QUERY) else PipelineState.IDLE
        self._set_state(PipelineState.INGESTING)

        report = IngestionReport(url=url)
        self.pages_scraped.reset()
        self.documents_processed.reset()
        self.chunks_stored.reset()
        self._ingest_started = time.monotonic()

        logger.info(f"[PIPELINE] Starting ingestion of {url}")
        try:
            crawler = self.crawler_factory(self.config.crawler_config(on_progress=self._on_page))

            self._start_phase("crawl")
            try:
                documents = crawler.scrape(url, cancel_event)
            except CancelledError as e:
                report.cancelled = True
                report.pages_scraped = len(e.partial)
                report.errors.append(str(e))
                logger.info(f"[PIPELINE] Ingestion cancelled after {len(e.partial)} pages")
                return report

            report.errors.extend(str(error) for error in getattr(crawler, "errors", []))
            report.pages_scraped = len(documents)
            self._emit()

            self._start_phase("process")
            processed = []
            for document in documents:
                try:
                    processed.append(self.chunker.process(document))
                except Exception as e:
                    report.errors.append(f"process failed for {document.url}: {e}")
                    logger.warning(f"[PIPELINE] Failed to process {document.url}: {e}")
                    continue
                self.documents_processed.increment()
            report.documents_processed = len(processed)
            self._emit()

            self._start_phase("index")
            batch_size = self.config.BATCH_SIZE
            for start in range(0, len(processed), batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    report.cancelled = True
                    break
                batch = processed[start : start + batch_size]
                try:
                    stored = self.retrieval.index(batch)
                except BackendError as e:
                    report.failed_batches += 1
                    report.errors.append(f"index batch {start // batch_size + 1} failed: {e}")
                    logger.warning(f"[PIPELINE] Failed to store batch of {len(batch)} documents: {e}")
                    continue
                self.chunks_stored.increment(stored)
                self._emit()

            report.chunks_stored = self.chunks_stored.value
        finally:
            report.elapsed = time.monotonic() - self._ingest_started
            self._start_phase("idle")
            self._set_state(resting)

        logger.info(
            f"[PIPELINE] Ingested {url}: {report.pages_scraped} pages, {report.documents_processed} documents, "
            f"{report.chunks_stored} chunks in {report.elapsed:.1f}s"
        )
        return report

    def retrieve(self, query: str) -> list[Document]:
        self._set_state(PipelineState.RETRIEVING)
        return self.retrieval.query(query, self.config.SEARCH_LIMIT)

    def answer(self, query: str) -> Answer:
        """Retrieve context for query and generate one complete response."""
        self._require_active()
        try:
            documents = self.retrieve(query)
            self._set_state(PipelineState.GENERATING)
            text = self.chat.generate(self.config.SYSTEM_PROMPT, query, build_context(documents))
        finally:
            self._set_state(PipelineState.AWAITING_QUERY)
        return Answer(query=query, text=text, sources=documents)

    def answer_stream(self, query: str) -> ResponseStream:
        """Retrieve context for query and start streaming the response.

        The session stays in GENERATING until the stream is exhausted or closed.
        """
        self._require_active()
        try:
            documents = self.retrieve(query)
        except Exception:
            self._set_state(PipelineState.AWAITING_QUERY)
            raise

        self._set_state(PipelineState.GENERATING)
        context_text = build_context(documents)
        stream = ResponseStream(
            lambda: self.chat.generate_stream(self.config.SYSTEM_PROMPT, query, context_text),
            on_close=lambda: self._set_state(PipelineState.AWAITING_QUERY),
            sources=documents,
        )
        self._active_stream = stream
        return stream

    def ingest_query_url(
        self, query: str, cancel_event: threading.Event | None = None
    ) -> tuple[IngestionReport | None, bool]:
        """Ingest the URL embedded in a query before it is answered.

        Only the first URL is crawled; any further URLs are reported as skipped
        in the ingestion report.

        Returns:
            Tuple of (report, or None when the query has no URL; whether the
            query still needs an answer)

        Raises:
            KBAssistantError: If ingestion of the URL fails fatally
        """
        urls = find_urls(query)
        if not urls:
            return None, True

        report = self.ingest(urls[0], cancel_event)
        for skipped in dict.fromkeys(urls[1:]):
            if skipped == urls[0]:
                continue
            message = f"only the first URL in a query is ingested; skipped {skipped}"
            logger.warning(f"[PIPELINE] {message}")
            report.errors.append(message)

        needs_answer = bool(strip_urls(query)) and not report.cancelled
        return report, needs_answer

    def handle_query(
        self, text: str, stream: bool | None = None, cancel_event: threading.Event | None = None
    ) -> QueryOutcome:
        """Handle one interactive turn; domain errors are returned, never raised.

        Args:
            text: Raw user input
            stream: Override config.STREAMING for this turn
            cancel_event: Aborts the ingestion of a URL embedded in the query

        Returns:
            QueryOutcome describing what happened
        """
        if self._active_stream is not None and not self._active_stream.closed:
            self._active_stream.close()
        self._active_stream = None

        query = text.strip()
        if self.state is PipelineState.TERMINATED:
            return QueryOutcome(kind="exit")
        if query.lower() == "exit":
            self._set_state(PipelineState.TERMINATED)
            return QueryOutcome(kind="exit")
        if not query:
            return QueryOutcome(kind="empty")

        if self.state is PipelineState.IDLE:
            self._set_state(PipelineState.AWAITING_QUERY)

        try:
            report, needs_answer = self.ingest_query_url(query, cancel_event)
        except KBAssistantError as e:
            logger.warning(f"[PIPELINE] Ingestion for query failed: {e}")
            return QueryOutcome(kind="error", error=e)
        if not needs_answer:
            return QueryOutcome(kind="ingested", ingestion=report)

        use_stream = self.config.STREAMING if stream is None else stream
        try:
            if use_stream:
                return QueryOutcome(kind="stream", ingestion=report, stream=self.answer_stream(query))
            return QueryOutcome(kind="answer", ingestion=report, answer=self.answer(query))
        except KBAssistantError as e:
            logger.warning(f"[PIPELINE] Query failed: {e}")
            return QueryOutcome(kind="error", ingestion=report, error=e)


def create_orchestrator(config, on_progress: Callable[[ProgressEvent], None] | None = None) -> PipelineOrchestrator:
    """Wire the default collaborators (SQLite index, backend embedder and chat) from config."""
    from .backends import ChatBackend, Embedder
    from .rag.store import SQLiteVectorIndex

    config.validate()
    index = SQLiteVectorIndex(config.DATABASE_PATH, table_name=config.TABLE_NAME, vector_dim=config.VECTOR_DIM)
    retrieval = RetrievalClient(Embedder(config), index, config.retrieval_config())
    return PipelineOrchestrator(
        config,
        chunker=Chunker(config.chunker_config()),
        retrieval=retrieval,
        chat=ChatBackend(config),
        on_progress=on_progress,
    )
