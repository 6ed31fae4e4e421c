"""Runtime settings resolved from environment variables."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache

LOGGER = logging.getLogger(__name__)


def _str_from_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _int_from_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        LOGGER.warning("Invalid integer for %s: %s; using default %s", name, value, default)
        return default


def _float_from_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        LOGGER.warning("Invalid float for %s: %s; using default %s", name, value, default)
        return default


def _optional_from_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(slots=True)
class EmbeddingSettings:
    backend: str = "hashing"
    model_path: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    device: str | None = None
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    question_cache_ttl: float = 600.0
    question_cache_size: int = 1024


@dataclass(slots=True)
class IndexSettings:
    backend: str = "memory"
    persist_dir: str = "vector_db"
    collection_name: str = "curriculum_units"


@dataclass(slots=True)
class IngestSettings:
    max_unit_chars: int = 1200
    batch_size: int = 32
    embed_concurrency: int = 4
    lock_timeout: float = 0.0
    version_store_path: str | None = None


@dataclass(slots=True)
class RetrievalSettings:
    top_k: int = 5
    overfetch_factor: int = 4
    similarity_threshold: float = 0.3
    chapter_priority_margin: float = 0.1
    dedup_window: int = 1


@dataclass(slots=True)
class ConversationSettings:
    max_turns: int = 10
    max_chars: int = 4000


@dataclass(slots=True)
class GenerationSettings:
    url: str | None = None
    model: str = "llama3"
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    max_tokens: int = 512
    temperature: float = 0.0
    max_citations: int = 8


@dataclass(slots=True)
class TutorSettings:
    """Aggregated configuration for every core component."""

    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)
    index: IndexSettings = field(default_factory=IndexSettings)
    ingest: IngestSettings = field(default_factory=IngestSettings)
    retrieval: RetrievalSettings = field(default_factory=RetrievalSettings)
    conversation: ConversationSettings = field(default_factory=ConversationSettings)
    generation: GenerationSettings = field(default_factory=GenerationSettings)

    @classmethod
    def from_env(cls) -> "TutorSettings":
        return cls(
            embedding=EmbeddingSettings(
                backend=_str_from_env("EMBEDDING_BACKEND", "hashing").lower(),
                model_path=_str_from_env(
                    "EMBEDDING_MODEL_PATH", "sentence-transformers/all-MiniLM-L6-v2"
                ),
                dimension=_int_from_env("EMBEDDING_DIMENSION", 384),
                device=_optional_from_env("EMBEDDING_DEVICE"),
                timeout_seconds=_float_from_env("EMBEDDING_TIMEOUT", 30.0),
                max_attempts=_int_from_env("EMBEDDING_MAX_ATTEMPTS", 3),
                backoff_seconds=_float_from_env("EMBEDDING_BACKOFF", 0.5),
                question_cache_ttl=_float_from_env("QUESTION_CACHE_TTL", 600.0),
                question_cache_size=_int_from_env("QUESTION_CACHE_SIZE", 1024),
            ),
            index=IndexSettings(
                backend=_str_from_env("VECTOR_STORE", "memory").lower(),
                persist_dir=_str_from_env("VECTOR_PERSIST_DIR", "vector_db"),
                collection_name=_str_from_env("VECTOR_COLLECTION", "curriculum_units"),
            ),
            ingest=IngestSettings(
                max_unit_chars=_int_from_env("MAX_UNIT_CHARS", 1200),
                batch_size=_int_from_env("INGEST_BATCH_SIZE", 32),
                embed_concurrency=_int_from_env("EMBED_CONCURRENCY", 4),
                lock_timeout=_float_from_env("INGEST_LOCK_TIMEOUT", 0.0),
                version_store_path=_optional_from_env("VERSION_STORE_PATH"),
            ),
            retrieval=RetrievalSettings(
                top_k=_int_from_env("RETRIEVAL_TOP_K", 5),
                overfetch_factor=_int_from_env("RETRIEVAL_OVERFETCH", 4),
                similarity_threshold=_float_from_env("SIMILARITY_THRESHOLD", 0.3),
                chapter_priority_margin=_float_from_env("CHAPTER_PRIORITY_MARGIN", 0.1),
                dedup_window=_int_from_env("DEDUP_WINDOW", 1),
            ),
            conversation=ConversationSettings(
                max_turns=_int_from_env("CONVERSATION_MAX_TURNS", 10),
                max_chars=_int_from_env("CONVERSATION_MAX_CHARS", 4000),
            ),
            generation=GenerationSettings(
                url=_optional_from_env("GENERATOR_URL"),
                model=_str_from_env("GENERATOR_MODEL", "llama3"),
                timeout_seconds=_float_from_env("GENERATOR_TIMEOUT", 30.0),
                max_attempts=_int_from_env("GENERATOR_MAX_ATTEMPTS", 3),
                backoff_seconds=_float_from_env("GENERATOR_BACKOFF", 0.5),
                backoff_max_seconds=_float_from_env("GENERATOR_BACKOFF_MAX", 8.0),
                max_tokens=_int_from_env("LLM_MAX_TOKENS", 512),
                temperature=_float_from_env("LLM_TEMPERATURE", 0.0),
                max_citations=_int_from_env("MAX_CITATIONS", 8),
            ),
        )


@lru_cache()
def get_settings() -> TutorSettings:
    """Return settings resolved once per process."""

    return TutorSettings.from_env()


def reset_settings_cache() -> None:
    """Clear the cached settings (primarily for testing)."""

    get_settings.cache_clear()  # type: ignore[attr-defined]


__all__ = [
    "ConversationSettings",
    "EmbeddingSettings",
    "GenerationSettings",
    "IndexSettings",
    "IngestSettings",
    "RetrievalSettings",
    "TutorSettings",
    "get_settings",
    "reset_settings_cache",
]
