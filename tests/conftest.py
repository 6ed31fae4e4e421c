"""Shared fixtures: deterministic embedders, in-memory stores and a wired service."""
from __future__ import annotations

import math
import re
import threading
from typing import Callable, List, Sequence

import pytest

from tutor.config import TutorSettings
from tutor.conversation import ConversationStore
from tutor.embeddings import EmbeddingModel
from tutor.ingest.models import ExtractedDocument, ExtractedPage
from tutor.ingest.versions import InMemoryDocumentVersionStore
from tutor.llm_provider import Generator, reset_generator_cache
from tutor.services.tutor import TutorService
from tutor.vectorstore import InMemoryVectorIndex

VOCABULARY = (
    "velocity",
    "speed",
    "acceleration",
    "force",
    "mass",
    "newton",
    "photosynthesis",
    "chlorophyll",
    "light",
    "energy",
    "sound",
    "wave",
)
_WORD_RE = re.compile(r"[a-z]+")


class KeywordEmbeddingBackend:
    """One axis per vocabulary word, so similarities are easy to reason about."""

    def __init__(self, vocabulary: Sequence[str] = VOCABULARY) -> None:
        self.vocabulary = tuple(vocabulary)
        self.dimension = len(self.vocabulary)
        self.name = "keyword"
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        with self._lock:
            self.calls.append(list(texts))
        vectors: List[List[float]] = []
        for text in texts:
            words = _WORD_RE.findall(text.lower())
            vector = [float(words.count(word)) for word in self.vocabulary]
            norm = math.sqrt(sum(value * value for value in vector))
            vectors.append([value / norm for value in vector] if norm else vector)
        return vectors

    @property
    def texts_encoded(self) -> int:
        with self._lock:
            return sum(len(batch) for batch in self.calls)


class FlakyBackend:
    """Raises ``failures`` times before delegating to ``inner``."""

    def __init__(self, inner, failures: int, error: Callable[[], Exception] = lambda: RuntimeError("boom")):
        self.inner = inner
        self.failures = failures
        self.error = error
        self.dimension = inner.dimension
        self.name = inner.name
        self.attempts = 0

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error()
        return self.inner.encode(texts)


class ScriptedGenerator(Generator):
    """Generator returning queued responses (or raising queued exceptions)."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.systems: List[str | None] = []

    def generate(self, prompt, *, system=None, max_tokens=512, temperature=0.0) -> str:
        self.prompts.append(prompt)
        self.systems.append(system)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(prompt)
        return item

    @property
    def model_name(self) -> str:
        return "scripted"

    @property
    def available(self) -> bool:
        return True


def make_embedder(backend=None, **kwargs) -> EmbeddingModel:
    kwargs.setdefault("timeout_seconds", 0)
    kwargs.setdefault("max_attempts", 1)
    kwargs.setdefault("backoff_seconds", 0)
    return EmbeddingModel(backend or KeywordEmbeddingBackend(), **kwargs)


def make_settings() -> TutorSettings:
    settings = TutorSettings()
    settings.generation.backoff_seconds = 0
    settings.generation.backoff_max_seconds = 0
    return settings


def physics_document(document_id: str = "physics-9", **overrides) -> ExtractedDocument:
    pages = overrides.pop(
        "pages",
        [
            ExtractedPage(
                page_number=1,
                text=(
                    "# Chapter 1: Motion\n\n"
                    "## 1.1 Speed and velocity\n\n"
                    "Speed tells how fast a body moves. Velocity is speed in a given direction.\n\n"
                    "## 1.2 Acceleration\n\n"
                    "Acceleration is the rate of change of velocity."
                ),
            ),
            ExtractedPage(
                page_number=2,
                text=(
                    "# Chapter 2: Force and laws of motion\n\n"
                    "## 2.1 Newton's second law\n\n"
                    "Force equals mass times acceleration, measured in newton."
                ),
            ),
        ],
    )
    values = {"board": "CBSE", "grade": "9", "subject": "physics"}
    values.update(overrides)
    return ExtractedDocument(document_id=document_id, pages=pages, **values)


@pytest.fixture(autouse=True)
def _reset_global_generator():
    reset_generator_cache()
    yield
    reset_generator_cache()


@pytest.fixture
def keyword_backend() -> KeywordEmbeddingBackend:
    return KeywordEmbeddingBackend()


@pytest.fixture
def embedder(keyword_backend) -> EmbeddingModel:
    return make_embedder(keyword_backend)


@pytest.fixture
def index() -> InMemoryVectorIndex:
    return InMemoryVectorIndex()


@pytest.fixture
def settings() -> TutorSettings:
    return make_settings()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator("Velocity is speed in a given direction [S1].")


@pytest.fixture
def service(settings, embedder, index, generator) -> TutorService:
    return TutorService(
        settings=settings,
        embedder=embedder,
        index=index,
        versions=InMemoryDocumentVersionStore(),
        generator=generator,
        conversations=ConversationStore(settings.conversation),
    )
