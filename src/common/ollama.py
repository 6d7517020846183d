from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from .config import LLMSettings


logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:11434"
DEFAULT_MODEL = "llama3.1:8b"


class OllamaError(RuntimeError):
    """Base error for the Ollama client."""


class OllamaApiError(OllamaError):
    """HTTP error or unexpected payload from the Ollama API."""


class OllamaTimeoutError(OllamaError):
    """The model did not answer within the configured timeout."""


class OllamaClient:
    """
    Minimal client for a local Ollama server's `/api/generate`.

    Notes
    - Non-streaming: one request, one complete text response.
    - Transport errors, 429 and 5xx are retried with exponential backoff;
      other HTTP errors fail immediately.
    - Generation can take a while on CPU-only hosts; the default timeout is
      generous.
    """

    def __init__(
        self,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout: float = 60.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not model:
            raise ValueError("model is required")
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        self._endpoint = endpoint.rstrip("/")
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=self._endpoint, timeout=self._timeout)

    @classmethod
    def from_settings(cls, settings: LLMSettings, **kwargs: Any) -> "OllamaClient":
        return cls(
            endpoint=settings.endpoint,
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
            **kwargs,
        )

    @property
    def model(self) -> str:
        return self._model

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Public API ---------------
    def generate(self, prompt: str) -> str:
        """Send `prompt` and return the model's full text response."""
        if not prompt:
            raise ValueError("prompt is required")
        body = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self._temperature,
                "num_predict": self._max_tokens,
            },
        }
        logger.debug("Sending prompt to Ollama (%d chars, model=%s)", len(prompt), self._model)
        data = self._request("/api/generate", body)
        text = data.get("response")
        if not isinstance(text, str):
            raise OllamaApiError("Ollama response missing 'response' text")
        logger.debug("Ollama response received (%d chars)", len(text))
        return text

    # --------------- Internal ---------------
    def _request(self, path: str, json_body: Dict[str, Any]) -> Dict[str, Any]:
        attempt = 0
        backoff = 1.0
        last_exc: Optional[Exception] = None
        while attempt < self._max_attempts:
            try:
                resp = self._client.post(path, json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        payload = resp.json()
                    except ValueError as exc:
                        raise OllamaApiError("Failed to parse JSON from Ollama API") from exc
                    if not isinstance(payload, dict):
                        raise OllamaApiError("Malformed response from Ollama API")
                    if payload.get("error"):
                        raise OllamaApiError(str(payload["error"]))
                    return payload
                if resp.status_code in (429, 500, 502, 503, 504):
                    last_exc = OllamaApiError(f"HTTP {resp.status_code} from Ollama")
                else:
                    raise OllamaApiError(f"HTTP {resp.status_code} from Ollama: {resp.text[:200]}")

            attempt += 1
            if attempt < self._max_attempts:
                logger.warning("Ollama request failed (%s); retrying in %.1fs", last_exc, backoff)
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)

        if isinstance(last_exc, httpx.TimeoutException):
            raise OllamaTimeoutError(f"Ollama did not respond within {self._timeout}s") from last_exc
        if isinstance(last_exc, OllamaError):
            raise last_exc
        raise OllamaError("Failed request after retries") from last_exc


__all__ = [
    "OllamaClient",
    "OllamaError",
    "OllamaApiError",
    "OllamaTimeoutError",
]
