"""HTTP front-end for a single knowledge-base session."""

import json
import logging
import threading
from typing import Optional

from flask import Flask, Response, jsonify, request, stream_with_context
from flask_cors import CORS

from .backends import check_backend_health
from .errors import KBAssistantError
from .pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class KBServer:
    """Flask server exposing ingestion and question answering over HTTP."""

    def __init__(self, config, orchestrator: PipelineOrchestrator, name: str = "kb-assistant"):
        """Initialize the server.

        Args:
            config: AssistantConfig instance
            orchestrator: Session the routes operate on
            name: Flask application name
        """
        self.name = name
        self.config = config
        self.orchestrator = orchestrator

        # One session: requests touching it run one at a time
        self._session_lock = threading.Lock()

        self.app = Flask(name)
        CORS(self.app)

        self._register_routes()

    def _register_routes(self):
        """Register Flask routes."""
        self.app.route("/health", methods=["GET"])(self.health)
        self.app.route("/v1/ingest", methods=["POST"])(self.ingest)
        self.app.route("/v1/query", methods=["POST"])(self.query)

    def _chunk_count(self) -> Optional[int]:
        index = self.orchestrator.retrieval.vector_index
        count = getattr(index, "count", None)
        return count() if count is not None else None

    def health(self):
        """Health check endpoint."""
        return jsonify(
            {
                "status": "healthy",
                "backend": self.config.BACKEND_TYPE,
                "model": self.config.CHAT_MODEL,
                "chunks": self._chunk_count(),
            }
        )

    def ingest(self):
        """Crawl and index a documentation site."""
        data = request.get_json(silent=True)
        if data is None:
            return jsonify({"error": "Invalid JSON in request body"}), 400

        url = data.get("url")
        if not url or not isinstance(url, str):
            return jsonify({"error": "Missing required field: 'url'"}), 400

        with self._session_lock:
            try:
                report = self.orchestrator.ingest(url)
            except KBAssistantError as e:
                logger.error(f"[SERVER] Ingestion of {url} failed: {e}")
                return jsonify({"error": str(e)}), 500

        return jsonify(report.to_dict())

    def query(self):
        """Answer a question from the indexed documentation.

        A URL in the query is crawled and indexed first; a query made only of
        a URL is not answered.
        """
        data = request.get_json(silent=True)
        if data is None:
            return jsonify({"error": "Invalid JSON in request body"}), 400

        query = data.get("query")
        if not query or not isinstance(query, str) or not query.strip():
            return jsonify({"error": "Missing required field: 'query'"}), 400

        stream = data.get("stream", False)
        if stream:
            return Response(
                stream_with_context(self.stream_answer(query.strip())),
                mimetype="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        with self._session_lock:
            try:
                report, needs_answer = self.orchestrator.ingest_query_url(query.strip())
                answer = self.orchestrator.answer(query.strip()) if needs_answer else None
            except KBAssistantError as e:
                logger.error(f"[SERVER] Query failed: {e}")
                return jsonify({"error": str(e)}), 500

        result = {}
        if report is not None:
            result["ingestion"] = report.to_dict()
        if answer is not None:
            result["answer"] = answer.text
            result["sources"] = list(dict.fromkeys(doc.url for doc in answer.sources))
        return jsonify(result)

    def stream_answer(self, query: str):
        """Yield the answer as server-sent events, ending with [DONE]."""
        with self._session_lock:
            try:
                report, needs_answer = self.orchestrator.ingest_query_url(query)
                if report is not None:
                    yield _sse({"ingestion": report.to_dict()})
                stream = self.orchestrator.answer_stream(query) if needs_answer else None
            except KBAssistantError as e:
                logger.error(f"[SERVER] Query failed: {e}")
                yield _sse({"error": str(e)})
                yield "data: [DONE]\n\n"
                return

            if stream is None:
                yield "data: [DONE]\n\n"
                return

            # Closing the stream (also on client disconnect) stops generation
            with stream:
                try:
                    for fragment in stream:
                        yield _sse({"content": fragment})
                except KBAssistantError as e:
                    logger.error(f"[SERVER] Stream failed: {e}")
                    yield _sse({"error": str(e)})

            sources = list(dict.fromkeys(doc.url for doc in stream.sources))
            if sources:
                yield _sse({"sources": sources})
            yield "data: [DONE]\n\n"

    def check_backend_health(self) -> bool:
        """Check backend health and print the result."""
        is_healthy, message = check_backend_health(self.config)
        print(f"{'✓' if is_healthy else '✗'} {message}")
        return is_healthy

    def run(self, port: Optional[int] = None, host: Optional[str] = None, debug: bool = False):
        """Serve the API until interrupted.

        Args:
            port: Listening port (config.DEFAULT_PORT when omitted)
            host: Bind address (config.DEFAULT_HOST when omitted)
            debug: Run Flask in debug mode
        """
        port = port or self.config.DEFAULT_PORT
        host = host or self.config.DEFAULT_HOST

        print(
            f"""
Knowledge base assistant

Backend:    {self.config.BACKEND_TYPE} ({self.config.CHAT_MODEL})
Embeddings: {self.config.EMBEDDING_MODEL}
Database:   {self.config.DATABASE_PATH}
Listening:  http://{host}:{port}
Endpoints:  /health, /v1/ingest, /v1/query
"""
        )

        if host == "0.0.0.0":
            print("⚠️  Listening on every network interface. The API has no authentication;")
            print("   set HOST=127.0.0.1 to keep it on this machine.\n")

        if self.config.HEALTH_CHECK_ON_STARTUP and not self.check_backend_health():
            print("⚠️  Backend is not ready; ingestion and queries will fail until it is.")
            print("   Set HEALTH_CHECK_ON_STARTUP=false to skip this check.\n")

        self.app.run(host=host, port=port, debug=debug, threaded=True)
