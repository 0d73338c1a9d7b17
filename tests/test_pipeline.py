"""Tests for the pipeline orchestrator, progress reporting and response streams."""

import threading
import time
from types import SimpleNamespace

import pytest

from conftest import ROOT_URL, FakeChat, FakeEmbedder, FakeSession
from kb_assistant import pipeline as pipeline_module
from kb_assistant.errors import BackendError, FetchError, KBAssistantError
from kb_assistant.pipeline import (
    PipelineOrchestrator,
    PipelineState,
    ProgressCounter,
    ProgressEvent,
    ProgressReporter,
    ResponseStream,
    find_url,
    find_urls,
    strip_urls,
)
from kb_assistant.rag.chunker import Chunker
from kb_assistant.rag.crawler import Crawler, document_id
from kb_assistant.rag.retrieval import RetrievalClient


def build_orchestrator(config, session, limiter, index, embedder=None, chat=None):
    return PipelineOrchestrator(
        config,
        chunker=Chunker(config.chunker_config()),
        retrieval=RetrievalClient(embedder or FakeEmbedder(), index),
        chat=chat or FakeChat(),
        crawler_factory=lambda crawler_config: Crawler(crawler_config, session=session, rate_limiter=limiter),
    )


@pytest.mark.unit
class TestIngest:
    """Crawl, chunk and index in batches."""

    def test_ingest_report(self, orchestrator, vector_index):
        report = orchestrator.ingest(ROOT_URL)

        assert report.pages_scraped == 3
        assert report.documents_processed == 3
        assert report.chunks_stored == vector_index.count() > 0
        assert report.failed_batches == 0
        assert not report.cancelled
        assert orchestrator.state is PipelineState.IDLE

    def test_progress_events_at_batch_boundaries(self, orchestrator, progress_events):
        orchestrator.ingest(ROOT_URL)

        assert [event.phase for event in progress_events] == ["crawl", "process", "index", "index", "index"]
        assert progress_events[-1].pages_scraped == 3
        assert progress_events[-1].documents_processed == 3
        chunks = [event.chunks_stored for event in progress_events if event.phase == "index"]
        assert chunks == sorted(chunks)
        assert all(event.throughput >= 0 for event in progress_events)

    def test_failed_batch_is_skipped(self, test_config, session, fast_limiter, vector_index):
        orchestrator = build_orchestrator(
            test_config, session, fast_limiter, vector_index, embedder=FakeEmbedder(fail_on="installer")
        )

        report = orchestrator.ingest(ROOT_URL)

        assert report.failed_batches == 1
        assert report.chunks_stored == vector_index.count() > 0
        assert any("index batch" in error for error in report.errors)
        install_id = document_id("http://docs.example.com/install.html")
        assert not any(chunk_id.startswith(install_id) for chunk_id in vector_index.ids())

    def test_branch_errors_are_reported(self, test_config, site_pages, fast_limiter, vector_index):
        site_pages.pop("http://docs.example.com/api/")
        orchestrator = build_orchestrator(test_config, FakeSession(site_pages), fast_limiter, vector_index)

        report = orchestrator.ingest(ROOT_URL)

        assert report.pages_scraped == 2
        assert any("404" in error for error in report.errors)

    def test_fatal_error_returns_to_idle(self, test_config, fast_limiter, vector_index):
        orchestrator = build_orchestrator(test_config, FakeSession(), fast_limiter, vector_index)

        with pytest.raises(FetchError):
            orchestrator.ingest(ROOT_URL)

        assert orchestrator.state is PipelineState.IDLE

    def test_empty_url_rejected(self, orchestrator):
        with pytest.raises(KBAssistantError):
            orchestrator.ingest("  ")

    def test_cancelled_ingestion(self, orchestrator, vector_index):
        cancel = threading.Event()
        cancel.set()

        report = orchestrator.ingest(ROOT_URL, cancel)

        assert report.cancelled
        assert vector_index.count() == 0
        assert orchestrator.state is PipelineState.IDLE

    def test_reingest_is_idempotent(self, orchestrator, vector_index):
        orchestrator.ingest(ROOT_URL)
        count = vector_index.count()

        orchestrator.ingest(ROOT_URL)

        assert vector_index.count() == count


@pytest.mark.unit
class TestHandleQuery:
    """The interactive turn never raises domain errors."""

    def test_url_only_query_ingests_without_generation(self, orchestrator, chat):
        outcome = orchestrator.handle_query(ROOT_URL)

        assert outcome.kind == "ingested"
        assert outcome.ingestion.pages_scraped == 3
        assert chat.calls == []
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_url_with_trailing_punctuation_only(self, orchestrator, chat):
        outcome = orchestrator.handle_query(f"{ROOT_URL}.")

        assert outcome.kind == "ingested"
        assert chat.calls == []

    def test_second_url_is_reported_as_skipped(self, orchestrator, session, chat):
        other = "http://docs.example.com/api/"

        outcome = orchestrator.handle_query(f"{ROOT_URL} {other}")

        assert outcome.kind == "ingested"
        assert any(other in error and "skipped" in error for error in outcome.ingestion.errors)
        assert chat.calls == []

    def test_repeated_url_is_not_reported(self, orchestrator):
        outcome = orchestrator.handle_query(f"{ROOT_URL} {ROOT_URL}")

        assert outcome.kind == "ingested"
        assert not any("skipped" in error for error in outcome.ingestion.errors)

    def test_cancelled_url_ingestion_skips_answer(self, orchestrator, chat, vector_index):
        cancel = threading.Event()
        cancel.set()

        outcome = orchestrator.handle_query(f"{ROOT_URL} how do I install?", cancel_event=cancel)

        assert outcome.kind == "ingested"
        assert outcome.ingestion.cancelled
        assert chat.calls == []
        assert vector_index.count() == 0
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_url_and_question_ingests_then_answers(self, orchestrator, chat):
        outcome = orchestrator.handle_query(f"Using {ROOT_URL} how do I install it?")

        assert outcome.kind == "answer"
        assert outcome.ingestion is not None
        assert len(chat.calls) == 1

    def test_answer_uses_retrieved_context(self, orchestrator, chat):
        orchestrator.ingest(ROOT_URL)

        outcome = orchestrator.handle_query("how do I install?")

        assert outcome.kind == "answer"
        assert outcome.answer.text == "Hello from the docs."
        system_prompt, query, context_text = chat.calls[0]
        assert system_prompt == orchestrator.config.SYSTEM_PROMPT
        assert query == "how do I install?"
        assert "Source: http://docs.example.com/install.html" in context_text
        assert "Sources:" in outcome.answer.sources_text

    def test_generation_error_then_recovery(self, test_config, session, fast_limiter, vector_index):
        chat = FakeChat(fail_times=1)
        orchestrator = build_orchestrator(test_config, session, fast_limiter, vector_index, chat=chat)
        orchestrator.ingest(ROOT_URL)

        failed = orchestrator.handle_query("how do I install?")

        assert failed.kind == "error"
        assert isinstance(failed.error, BackendError)
        assert orchestrator.state is PipelineState.AWAITING_QUERY

        recovered = orchestrator.handle_query("how do I install?")

        assert recovered.kind == "answer"
        assert recovered.answer.text == "Hello from the docs."
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_retrieval_error_is_recovered(self, test_config, session, fast_limiter, vector_index):
        orchestrator = build_orchestrator(
            test_config, session, fast_limiter, vector_index, embedder=FakeEmbedder(fail_on="explode")
        )

        outcome = orchestrator.handle_query("explode please")

        assert outcome.kind == "error"
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_malformed_query_embedding_is_recovered(self, orchestrator, chat):
        class GarbledEmbedder:
            def embed(self, texts):
                return [[None, "x"] for _ in texts]

        orchestrator.ingest(ROOT_URL)
        orchestrator.retrieval.embedder = GarbledEmbedder()

        outcome = orchestrator.handle_query("how do I install?")

        assert outcome.kind == "error"
        assert isinstance(outcome.error, BackendError)
        assert chat.calls == []
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_failed_ingestion_is_recovered(self, test_config, fast_limiter, vector_index):
        orchestrator = build_orchestrator(test_config, FakeSession(), fast_limiter, vector_index)

        outcome = orchestrator.handle_query("http://missing.example.com/")

        assert outcome.kind == "error"
        assert isinstance(outcome.error, FetchError)
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    @pytest.mark.parametrize("text", ["exit", "EXIT", "  Exit  "])
    def test_exit_terminates(self, orchestrator, text):
        outcome = orchestrator.handle_query(text)

        assert outcome.kind == "exit"
        assert orchestrator.state is PipelineState.TERMINATED

    def test_terminated_session(self, orchestrator, chat):
        orchestrator.handle_query("exit")

        assert orchestrator.handle_query("how do I install?").kind == "exit"
        assert chat.calls == []
        with pytest.raises(KBAssistantError):
            orchestrator.ingest(ROOT_URL)

    def test_empty_query(self, orchestrator):
        assert orchestrator.handle_query("   ").kind == "empty"


@pytest.mark.unit
class TestStreaming:
    """Streaming answers through ResponseStream."""

    def test_stream_outcome(self, orchestrator):
        orchestrator.ingest(ROOT_URL)

        outcome = orchestrator.handle_query("how do I install?", stream=True)

        assert outcome.kind == "stream"
        assert orchestrator.state is PipelineState.GENERATING
        assert list(outcome.stream) == ["Hello", " from", " the docs."]
        assert outcome.stream.text == "Hello from the docs."
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_stream_failure_surfaces_after_delivered_fragments(
        self, test_config, session, fast_limiter, vector_index
    ):
        orchestrator = build_orchestrator(test_config, session, fast_limiter, vector_index, chat=FakeChat(fail_after=1))

        stream = orchestrator.answer_stream("how do I install?")
        received = []
        with pytest.raises(BackendError):
            for fragment in stream:
                received.append(fragment)

        assert received == ["Hello"]
        assert orchestrator.state is PipelineState.AWAITING_QUERY

    def test_close_stops_stream(self, test_config, session, fast_limiter, vector_index):
        chat = FakeChat(fragments=["tick"] * 1000, delay=0.01)
        orchestrator = build_orchestrator(test_config, session, fast_limiter, vector_index, chat=chat)

        stream = orchestrator.answer_stream("anything")
        assert next(stream) == "tick"
        stream.close()

        assert stream.closed
        assert orchestrator.state is PipelineState.AWAITING_QUERY
        with pytest.raises(StopIteration):
            next(stream)

    def test_next_query_closes_abandoned_stream(self, orchestrator):
        first = orchestrator.handle_query("install", stream=True)

        orchestrator.handle_query("api", stream=False)

        assert first.stream.closed
        assert orchestrator.state is PipelineState.AWAITING_QUERY


@pytest.mark.unit
class TestResponseStream:
    def test_iterates_source_and_calls_on_close_once(self):
        closed = []
        stream = ResponseStream(lambda: iter(["a", "b"]), on_close=lambda: closed.append(True))

        assert list(stream) == ["a", "b"]
        stream.close()

        assert closed == [True]

    def test_unexpected_error_becomes_backend_error(self):
        def source():
            yield "partial"
            raise ValueError("bad chunk")

        stream = ResponseStream(source)

        assert next(stream) == "partial"
        with pytest.raises(BackendError):
            next(stream)

    def test_context_manager_closes(self):
        with ResponseStream(lambda: iter(["a"])) as stream:
            pass

        assert stream.closed


@pytest.mark.unit
class TestProgress:
    def test_counter_is_thread_safe(self):
        counter = ProgressCounter()

        def work():
            for _ in range(1000):
                counter.increment()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter.value == 8000
        counter.reset()
        assert counter.value == 0

    def test_reporter_polls_and_renders_final_snapshot(self):
        counter = ProgressCounter()
        rendered = []

        def snapshot():
            return ProgressEvent("crawl", counter.value, 0, 0, 0.0, 0.0)

        with ProgressReporter(snapshot, rendered.append, interval=0.01):
            counter.increment(5)
            time.sleep(0.05)

        assert rendered
        assert rendered[-1].pages_scraped == 5

    def test_throughput_is_rolling(self, orchestrator, monkeypatch):
        clock = SimpleNamespace(now=0.0)
        monkeypatch.setattr(pipeline_module, "time", SimpleNamespace(monotonic=lambda: clock.now))
        orchestrator._start_phase("index")

        clock.now = 10.0
        orchestrator.chunks_stored.increment(100)
        assert orchestrator.progress().throughput == pytest.approx(10.0)

        clock.now = 20.0
        orchestrator.chunks_stored.increment(10)
        # Only the last window counts, not the average since the phase began
        assert orchestrator.progress().throughput == pytest.approx(1.0)

        clock.now = 21.0
        orchestrator.chunks_stored.increment(30)
        assert orchestrator.progress().throughput == pytest.approx(40 / 11)

    def test_orchestrator_progress_snapshot(self, orchestrator):
        orchestrator.ingest(ROOT_URL)

        snapshot = orchestrator.progress()

        assert snapshot.pages_scraped == 3
        assert snapshot.documents_processed == 3
        assert snapshot.chunks_stored > 0


@pytest.mark.unit
def test_find_urls_and_strip_urls():
    text = "compare https://a.example.com/x, and (http://b.example.com/) please"

    assert find_urls(text) == ["https://a.example.com/x", "http://b.example.com/"]
    assert strip_urls(text) == "compare  and ( please"
    assert strip_urls("https://a.example.com/.") == ""


@pytest.mark.unit
@pytest.mark.parametrize(
    "text,expected",
    [
        ("see https://docs.example.com/guide.", "https://docs.example.com/guide"),
        ("(http://docs.example.com/)", "http://docs.example.com/"),
        ("no links here", None),
    ],
)
def test_find_url(text, expected):
    assert find_url(text) == expected
