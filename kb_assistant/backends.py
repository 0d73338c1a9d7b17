"""Backend communication for Ollama and LM Studio (embeddings and chat)."""

import json
import logging
from collections.abc import Iterator
from typing import Any, Dict, List, Tuple

import requests

from .errors import BackendError

logger = logging.getLogger(__name__)


def _endpoint(config) -> str:
    if config.BACKEND_TYPE == "ollama":
        return config.OLLAMA_ENDPOINT.rstrip("/")
    return config.LMSTUDIO_ENDPOINT.rstrip("/")


def _post(url: str, payload: Dict[str, Any], config, operation: str, stream: bool = False) -> requests.Response:
    """POST to a backend, converting transport and status failures to BackendError."""
    # Set timeout as tuple (connect_timeout, read_timeout)
    timeout = (config.BACKEND_CONNECT_TIMEOUT, config.BACKEND_READ_TIMEOUT)
    logger.debug(f"[BACKEND] {operation}: POST {url} (model: {payload.get('model')})")
    try:
        response = requests.post(url, json=payload, stream=stream, timeout=timeout)
        response.raise_for_status()
    except requests.Timeout as e:
        raise BackendError(
            f"backend request timed out after {config.BACKEND_READ_TIMEOUT}s", url=url, operation=operation, cause=e
        ) from e
    except requests.ConnectionError as e:
        raise BackendError(
            f"could not connect to {config.BACKEND_TYPE} backend. Is it running?", url=url, operation=operation, cause=e
        ) from e
    except requests.RequestException as e:
        raise BackendError("backend request failed", url=url, operation=operation, cause=e) from e
    return response


def _json(response: requests.Response, operation: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise BackendError("backend returned invalid JSON", operation=operation, cause=e) from e
    if not isinstance(data, dict):
        raise BackendError(f"expected a JSON object, got {type(data).__name__}", operation=operation)
    return data


def _dig(data, *keys):
    """Follow nested keys and list indexes; None when the reply has another shape."""
    for key in keys:
        if isinstance(key, int):
            if not isinstance(data, list) or len(data) <= key:
                return None
        elif not isinstance(data, dict):
            return None
        data = data[key] if isinstance(key, int) else data.get(key)
    return data


def _fragment(content, operation: str) -> str:
    if content is None:
        return ""
    if not isinstance(content, str):
        raise BackendError(f"expected text content, got {type(content).__name__}", operation=operation)
    return content


def _is_vector(value) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value)
    )


class Embedder:
    """Embedding collaborator: one vector per input text."""

    def __init__(self, config):
        self.config = config

    def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts with the configured embedding model.

        Raises:
            BackendError: On unreachable service, invalid model or a malformed reply
        """
        if not texts:
            return []

        payload = {"model": self.config.EMBEDDING_MODEL, "input": list(texts)}
        if self.config.BACKEND_TYPE == "ollama":
            response = _post(f"{_endpoint(self.config)}/api/embed", payload, self.config, "embed")
            data = _json(response, "embed")
            vectors = data.get("embeddings")
        else:  # lmstudio
            response = _post(f"{_endpoint(self.config)}/embeddings", payload, self.config, "embed")
            data = _json(response, "embed")
            items = data.get("data")
            if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
                raise BackendError("malformed embeddings reply", operation="embed")
            items = sorted(items, key=lambda item: item.get("index", 0))
            vectors = [item.get("embedding") for item in items]

        if not isinstance(vectors, list) or len(vectors) != len(texts) or not all(_is_vector(v) for v in vectors):
            raise BackendError(
                f"expected {len(texts)} embeddings from model '{self.config.EMBEDDING_MODEL}'", operation="embed"
            )
        return vectors


class ChatBackend:
    """Generation collaborator: blocking and streaming chat completions."""

    def __init__(self, config):
        self.config = config

    def build_messages(self, system_prompt: str, query: str, context_text: str) -> List[Dict[str, str]]:
        user_content = self.config.CONTEXT_TEMPLATE.format(context=context_text, query=query)
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]

    def _payload(self, messages: List[Dict], stream: bool) -> Dict[str, Any]:
        temperature = self.config.effective_temperature()
        if self.config.BACKEND_TYPE == "ollama":
            return {
                "model": self.config.CHAT_MODEL,
                "messages": messages,
                "stream": stream,
                "options": {"temperature": temperature, "num_predict": self.config.MAX_TOKENS},
            }
        return {
            "model": self.config.CHAT_MODEL,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": self.config.MAX_TOKENS,
            "stream": stream,
        }

    def _chat_url(self) -> str:
        if self.config.BACKEND_TYPE == "ollama":
            return f"{_endpoint(self.config)}/api/chat"
        return f"{_endpoint(self.config)}/chat/completions"

    def generate(self, system_prompt: str, query: str, context_text: str) -> str:
        """Return one complete response."""
        messages = self.build_messages(system_prompt, query, context_text)
        response = _post(self._chat_url(), self._payload(messages, stream=False), self.config, "generate")
        data = _json(response, "generate")

        if "error" in data:
            raise BackendError(str(data["error"]), operation="generate")

        if self.config.BACKEND_TYPE == "ollama":
            content = _dig(data, "message", "content")
        else:
            content = _dig(data, "choices", 0, "message", "content")
        if not isinstance(content, str):
            raise BackendError("reply has no message content", operation="generate")
        return content

    def generate_stream(self, system_prompt: str, query: str, context_text: str) -> Iterator[str]:
        """Yield response fragments as the backend produces them.

        Closing the generator closes the HTTP response.

        Raises:
            BackendError: On request failure or an error reported mid-stream
        """
        messages = self.build_messages(system_prompt, query, context_text)
        response = _post(self._chat_url(), self._payload(messages, stream=True), self.config, "generate", stream=True)

        try:
            if self.config.BACKEND_TYPE == "ollama":
                yield from self._iter_ollama(response)
            else:
                yield from self._iter_lmstudio(response)
        except requests.RequestException as e:
            raise BackendError("stream interrupted", operation="generate", cause=e) from e
        finally:
            response.close()

    def _iter_ollama(self, response: requests.Response) -> Iterator[str]:
        # Newline-delimited JSON objects
        for line in response.iter_lines(decode_unicode=True):
            if not line:
                continue
            try:
                data = json.loads(line)
            except ValueError as e:
                raise BackendError("malformed stream line", operation="generate", cause=e) from e
            if not isinstance(data, dict):
                raise BackendError("malformed stream line", operation="generate")
            if "error" in data:
                raise BackendError(str(data["error"]), operation="generate")
            content = _fragment(_dig(data, "message", "content"), "generate")
            if content:
                yield content
            if data.get("done"):
                return

    def _iter_lmstudio(self, response: requests.Response) -> Iterator[str]:
        # Server-sent events: "data: {...}" lines ending with "data: [DONE]"
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data:"):
                continue
            body = line[len("data:") :].strip()
            if body == "[DONE]":
                return
            try:
                data = json.loads(body)
            except ValueError as e:
                raise BackendError("malformed stream event", operation="generate", cause=e) from e
            if not isinstance(data, dict):
                raise BackendError("malformed stream event", operation="generate")
            if "error" in data:
                raise BackendError(str(data["error"]), operation="generate")
            content = _fragment(_dig(data, "choices", 0, "delta", "content"), "generate")
            if content:
                yield content


def check_ollama_health(config, timeout: int = 5) -> Tuple[bool, str]:
    """Check if Ollama backend is healthy and serves the configured models.

    Args:
        config: AssistantConfig instance
        timeout: Request timeout in seconds

    Returns:
        Tuple of (is_healthy: bool, message: str)
    """
    try:
        endpoint = f"{config.OLLAMA_ENDPOINT.rstrip('/')}/api/tags"
        response = requests.get(endpoint, timeout=timeout)
        response.raise_for_status()

        data = response.json()
        model_names = [model.get("name", "") for model in data.get("models", [])]

        def available(name: str) -> bool:
            # Ollama reports "mistral:latest" for a model requested as "mistral"
            return name in model_names or f"{name}:latest" in model_names

        missing = [name for name in (config.CHAT_MODEL, config.EMBEDDING_MODEL) if not available(name)]
        if not missing:
            return True, f"Ollama is healthy. Models '{config.CHAT_MODEL}' and '{config.EMBEDDING_MODEL}' are available."

        listed = ", ".join(model_names) if model_names else "none"
        return False, f"Ollama is reachable but model(s) {', '.join(missing)} not found. Available models: {listed}"

    except requests.Timeout:
        return False, f"Ollama health check timed out after {timeout}s. Backend may be unresponsive."
    except requests.ConnectionError:
        return False, f"Cannot connect to Ollama at {config.OLLAMA_ENDPOINT}. Is it running?"
    except Exception as e:
        return False, f"Ollama health check failed: {e!s}"


def check_lmstudio_health(config, timeout: int = 5) -> Tuple[bool, str]:
    """Check if LM Studio backend is healthy and has models loaded.

    Args:
        config: AssistantConfig instance
        timeout: Request timeout in seconds

    Returns:
        Tuple of (is_healthy: bool, message: str)
    """
    try:
        endpoint = f"{config.LMSTUDIO_ENDPOINT.rstrip('/')}/models"
        response = requests.get(endpoint, timeout=timeout)
        response.raise_for_status()

        models = response.json().get("data", [])
        if models:
            model_ids = [model.get("id", "") for model in models]
            return True, f"LM Studio is healthy. {len(models)} model(s) loaded: {', '.join(model_ids)}"
        return False, "LM Studio is reachable but no models are loaded. Please load a model in LM Studio."

    except requests.Timeout:
        return False, f"LM Studio health check timed out after {timeout}s. Backend may be unresponsive."
    except requests.ConnectionError:
        return False, f"Cannot connect to LM Studio at {config.LMSTUDIO_ENDPOINT}. Is it running?"
    except Exception as e:
        return False, f"LM Studio health check failed: {e!s}"


def check_backend_health(config) -> Tuple[bool, str]:
    if config.BACKEND_TYPE == "ollama":
        return check_ollama_health(config, timeout=config.HEALTH_CHECK_TIMEOUT)
    return check_lmstudio_health(config, timeout=config.HEALTH_CHECK_TIMEOUT)
