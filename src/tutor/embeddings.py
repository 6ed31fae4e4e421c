"""Embedding model shared by the ingestion and query paths.

One :class:`EmbeddingModel` instance (backend identity plus dimension) is
created per process through :func:`get_embedding_model` and injected into
both the ingestion coordinator and the question path, so content vectors and
question vectors always live in the same space.
"""
from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from functools import lru_cache
from typing import Callable, List, Optional, Protocol, Sequence

import numpy as np
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tutor.config import EmbeddingSettings, get_settings
from tutor.errors import EmbeddingError
from tutor.ingest.normalization import normalize_question
from tutor.telemetry import emit_embeddings_event, emit_question_cache_event

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = "sentence-transformers/all-MiniLM-L6-v2"
FALLBACK_DIMENSION = 384

_TOKEN_RE = re.compile(r"[^\W_]+")
_STOPWORDS = frozenset(
    """
    a an and are as at be by can do does for from has have how in into is it its
    of on or that the their then there these this to was what when where which
    who why will with you your we our i me my explain tell describe give
    """.split()
)


class EmbeddingBackend(Protocol):
    name: str
    dimension: int

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class HashingEmbeddingBackend:
    """Deterministic feature-hashing embeddings computed with NumPy.

    Every token is hashed with SHA-256 into one of ``dimension`` buckets
    with a hash-derived sign; rows are L2-normalised. Rows are computed
    independently, so batch and single calls return identical vectors.
    """

    def __init__(self, dimension: int = FALLBACK_DIMENSION) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be a positive integer")
        self.dimension = dimension
        self.name = f"hashing-{dimension}"

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        matrix = np.zeros((len(texts), self.dimension), dtype=np.float64)
        for row, text in enumerate(texts):
            for token in self._tokens(str(text)):
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                bucket = int.from_bytes(digest[:8], "big") % self.dimension
                matrix[row, bucket] += 1.0 if digest[8] & 1 else -1.0
            norm = np.linalg.norm(matrix[row])
            if norm > 0:
                matrix[row] /= norm
        return matrix.tolist()

    @staticmethod
    def _tokens(text: str) -> List[str]:
        tokens: List[str] = []
        for token in _TOKEN_RE.findall(text.casefold()):
            if token in _STOPWORDS:
                continue
            if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
                token = token[:-1]
            tokens.append(token)
        return tokens


class SentenceTransformerBackend:
    """Backend wrapping a ``sentence-transformers`` model."""

    def __init__(self, model_name_or_path: str, *, device: str | None = None) -> None:
        try:
            from sentence_transformers import SentenceTransformer  # type: ignore import-not-found
        except ImportError as error:
            raise EmbeddingError(
                "EMBEDDING_BACKEND=sentence-transformers requires the 'models' extra "
                "(pip install curriculum-tutor[models])",
                cause=error,
            ) from error
        self._model = SentenceTransformer(model_name_or_path, device=device)
        self.dimension = int(self._model.get_sentence_embedding_dimension())
        self.name = model_name_or_path

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        embeddings = self._model.encode(
            list(texts),
            convert_to_numpy=True,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return embeddings.tolist()


class QuestionEmbeddingCache:
    """Bounded TTL cache of question vectors keyed by normalised question text.

    Expired entries are kept (until evicted by size) so they can serve as the
    fallback when the embedding call itself fails.
    """

    def __init__(
        self,
        ttl_seconds: float = 600.0,
        max_entries: int = 1024,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, List[float]]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, *, allow_stale: bool = False) -> Optional[List[float]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, vector = entry
            if not allow_stale and self._clock() - stored_at > self.ttl_seconds:
                return None
            self._entries.move_to_end(key)
            return list(vector)

    def put(self, key: str, vector: Sequence[float]) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), list(vector))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class EmbeddingModel:
    """Pure text-to-vector function with timeouts, retries and a question cache."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        *,
        timeout_seconds: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        question_cache: Optional[QuestionEmbeddingCache] = None,
        max_workers: int = 8,
    ) -> None:
        self._backend = backend
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.question_cache = question_cache or QuestionEmbeddingCache()
        self._executor: Optional[ThreadPoolExecutor] = None
        if timeout_seconds > 0:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embed")

    @classmethod
    def from_settings(cls, settings: EmbeddingSettings) -> "EmbeddingModel":
        if settings.backend in {"sentence-transformers", "sentence_transformers", "st"}:
            backend: EmbeddingBackend = SentenceTransformerBackend(
                settings.model_path, device=settings.device
            )
        elif settings.backend == "hashing":
            backend = HashingEmbeddingBackend(settings.dimension)
        else:
            raise ValueError(f"Unsupported EMBEDDING_BACKEND: {settings.backend!r}")
        LOGGER.info("Embedding backend %s (dimension %s)", backend.name, backend.dimension)
        return cls(
            backend,
            timeout_seconds=settings.timeout_seconds,
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            question_cache=QuestionEmbeddingCache(
                settings.question_cache_ttl, settings.question_cache_size
            ),
        )

    @property
    def dimension(self) -> int:
        return int(self._backend.dimension)

    @property
    def model_name(self) -> str:
        return self._backend.name

    @property
    def identity(self) -> str:
        return f"{self.model_name}:{self.dimension}"

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return self.embed_texts(texts)

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        started = time.perf_counter()
        try:
            vectors = self._encode_with_retry(list(texts))
        except Exception as error:
            emit_embeddings_event(
                model=self.model_name,
                count=len(texts),
                duration_ms=(time.perf_counter() - started) * 1000.0,
                errors=[str(error)],
            )
            if isinstance(error, EmbeddingError):
                raise
            raise EmbeddingError(
                f"Embedding failed after {self.max_attempts} attempts", cause=error
            ) from error

        emit_embeddings_event(
            model=self.model_name,
            count=len(texts),
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return vectors

    def encode(self, texts: Sequence[str]) -> List[List[float]]:
        """Compatibility method mirroring the sentence-transformers API."""

        return self.embed_texts(texts)

    def embed_question(self, question: str) -> List[float]:
        """Embed the normalised question, served from the TTL cache when possible."""

        key = normalize_question(question)
        cached = self.question_cache.get(key)
        if cached is not None:
            emit_question_cache_event(hit=True, size=len(self.question_cache))
            return cached

        try:
            vector = self.embed(key)
        except EmbeddingError:
            stale = self.question_cache.get(key, allow_stale=True)
            if stale is None:
                raise
            LOGGER.warning("Embedding failed; serving cached vector for question")
            emit_question_cache_event(hit=True, stale=True, size=len(self.question_cache))
            return stale

        emit_question_cache_event(hit=False, size=len(self.question_cache))
        self.question_cache.put(key, vector)
        return vector

    def _encode_with_retry(self, texts: List[str]) -> List[List[float]]:
        retrying = Retrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=max(self.backoff_seconds * 8, 0.0)),
            before_sleep=lambda state: LOGGER.warning(
                "Embedding attempt %s/%s failed: %s",
                state.attempt_number,
                self.max_attempts,
                state.outcome.exception() if state.outcome else None,
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                vectors = self._encode_once(texts)
        return self._validate(texts, vectors)

    def _encode_once(self, texts: List[str]) -> List[List[float]]:
        if self._executor is None:
            return self._backend.encode(texts)
        future = self._executor.submit(self._backend.encode, texts)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FuturesTimeoutError as error:
            future.cancel()
            raise TimeoutError(
                f"Embedding call exceeded {self.timeout_seconds:.1f}s"
            ) from error

    def _validate(self, texts: List[str], vectors: List[List[float]]) -> List[List[float]]:
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise EmbeddingError(
                    f"Embedding backend returned a vector of length {len(vector)}, expected {self.dimension}"
                )
        return [list(map(float, vector)) for vector in vectors]

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)


@lru_cache()
def get_embedding_model() -> EmbeddingModel:
    """Return the process-wide embedding model."""

    return EmbeddingModel.from_settings(get_settings().embedding)


def reset_embedding_model_cache() -> None:
    """Clear the cached embedding model instance (primarily for testing)."""

    get_embedding_model.cache_clear()  # type: ignore[attr-defined]


__all__ = [
    "DEFAULT_MODEL_NAME",
    "EmbeddingBackend",
    "EmbeddingModel",
    "FALLBACK_DIMENSION",
    "HashingEmbeddingBackend",
    "QuestionEmbeddingCache",
    "SentenceTransformerBackend",
    "get_embedding_model",
    "reset_embedding_model_cache",
]
