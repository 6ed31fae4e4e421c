"""Adapters for the external text generator used to phrase answers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import requests

from tutor.config import GenerationSettings, get_settings
from tutor.errors import GenerationError, GenerationRateLimited, GenerationTimeout

LOGGER = logging.getLogger(__name__)

INSUFFICIENT_CONTEXT_SENTINEL = "INSUFFICIENT_CONTEXT"


@dataclass(slots=True)
class GeneratorStatus:
    """Structured status information about the configured generator."""

    available: bool
    model_name: str
    endpoint: Optional[str] = None
    error: Optional[str] = None


class Generator:
    """Common interface exposed by text generator implementations."""

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> str:
        """Generate a response for the provided prompt."""

        raise NotImplementedError

    @property
    def model_name(self) -> str:
        return "stub"

    @property
    def endpoint(self) -> Optional[str]:
        return None

    @property
    def available(self) -> bool:
        return False

    @property
    def last_error(self) -> Optional[str]:
        return None

    def status(self) -> GeneratorStatus:
        return GeneratorStatus(
            available=self.available,
            model_name=self.model_name,
            endpoint=self.endpoint,
            error=self.last_error,
        )


class GeneratorStub(Generator):
    """Fallback used when no generator endpoint is configured.

    With a fixed ``response`` it echoes that text; otherwise every call fails
    with :class:`GenerationError`, which the answerer turns into an
    ungrounded "generation unavailable" answer.
    """

    def __init__(self, response: str | None = None, *, reason: str | None = None) -> None:
        self._response = response
        self._reason = reason or "Generator stub is active (GENERATOR_URL not configured)."

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> str:
        if self._response is None:
            raise GenerationError(self._reason)
        return self._response

    @property
    def available(self) -> bool:
        return self._response is not None

    @property
    def last_error(self) -> Optional[str]:
        return None if self._response is not None else self._reason


class HTTPGenerator(Generator):
    """Client for an Ollama-style ``/api/generate`` endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = session or requests.Session()
        self._last_error: Optional[str] = None

    @property
    def model_name(self) -> str:
        return self.model

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    @property
    def available(self) -> bool:
        return True

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> str:
        payload: dict[str, object] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_tokens, "temperature": temperature},
        }
        if system:
            payload["system"] = system

        LOGGER.info("Sending prompt to generator model '%s'", self.model)
        try:
            response = self._session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as error:
            self._last_error = f"Generator request timed out after {self.timeout} seconds"
            raise GenerationTimeout(self._last_error) from error
        except requests.exceptions.RequestException as error:
            self._last_error = f"Cannot reach generator at {self.base_url}: {error}"
            raise GenerationError(self._last_error) from error

        if response.status_code == 429:
            self._last_error = "Generator rate limit exceeded"
            raise GenerationRateLimited(self._last_error)
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as error:
            self._last_error = f"Generator returned HTTP {response.status_code}"
            raise GenerationError(self._last_error) from error

        try:
            body = response.json()
        except ValueError as error:
            self._last_error = "Generator returned malformed JSON"
            raise GenerationError(self._last_error) from error

        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            self._last_error = "Generator returned an empty response"
            raise GenerationError(self._last_error)
        self._last_error = None
        return text.strip()


_GLOBAL_GENERATOR: Optional[Generator] = None
_GENERATOR_LOCK = threading.Lock()


def build_generator(settings: GenerationSettings) -> Generator:
    if not settings.url:
        LOGGER.warning("GENERATOR_URL is not set; using generator stub.")
        return GeneratorStub()
    return HTTPGenerator(settings.url, settings.model, timeout=settings.timeout_seconds)


def get_generator() -> Generator:
    """Return a lazily initialised generator or the stub fallback."""

    global _GLOBAL_GENERATOR

    if _GLOBAL_GENERATOR is not None:
        return _GLOBAL_GENERATOR
    with _GENERATOR_LOCK:
        if _GLOBAL_GENERATOR is None:
            _GLOBAL_GENERATOR = build_generator(get_settings().generation)
        return _GLOBAL_GENERATOR


def set_generator(generator: Generator | None) -> None:
    """Install ``generator`` as the process-wide instance (``None`` clears it)."""

    global _GLOBAL_GENERATOR
    with _GENERATOR_LOCK:
        _GLOBAL_GENERATOR = generator


def reset_generator_cache() -> None:
    set_generator(None)


def get_generator_status() -> GeneratorStatus:
    return get_generator().status()


__all__ = [
    "Generator",
    "GeneratorStatus",
    "GeneratorStub",
    "HTTPGenerator",
    "INSUFFICIENT_CONTEXT_SENTINEL",
    "build_generator",
    "get_generator",
    "get_generator_status",
    "reset_generator_cache",
    "set_generator",
]
