"""Vector index helpers backed by pluggable backends."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from tutor.config import IndexSettings, get_settings

from .base import EmbeddingRecord, IndexHit, VectorIndex, matches_filter, unit_metadata
from .errors import DimensionMismatchError, IndexWriteError, VectorStoreUnavailableError
from .memory_store import DEFAULT_COLLECTION_NAME, InMemoryVectorIndex, PersistentVectorIndex


def build_vector_index(settings: IndexSettings) -> VectorIndex:
    """Create the index backend named by ``settings.backend``."""

    backend = settings.backend.strip().lower()

    if backend in {"memory", "mock"}:
        return InMemoryVectorIndex(collection_name=settings.collection_name)

    if backend == "local":
        return PersistentVectorIndex(Path(settings.persist_dir), collection_name=settings.collection_name)

    if backend == "chroma":
        try:
            from .chroma_store import ChromaVectorIndex
        except ImportError as exc:  # pragma: no cover - depends on installed packages
            raise VectorStoreUnavailableError(
                "VECTOR_STORE=chroma requires the 'chromadb' package to be installed",
                cause=exc,
            ) from exc
        return ChromaVectorIndex(settings.persist_dir, collection_name=settings.collection_name)

    raise ValueError(f"Unsupported VECTOR_STORE backend: {backend!r}")


@lru_cache()
def get_vector_index() -> VectorIndex:
    """Return a lazily initialised vector index based on configuration."""

    return build_vector_index(get_settings().index)


def reset_vector_index_cache() -> None:
    """Clear the cached vector index (primarily for testing)."""

    get_vector_index.cache_clear()  # type: ignore[attr-defined]


__all__ = [
    "DEFAULT_COLLECTION_NAME",
    "DimensionMismatchError",
    "EmbeddingRecord",
    "InMemoryVectorIndex",
    "IndexHit",
    "IndexWriteError",
    "PersistentVectorIndex",
    "VectorIndex",
    "VectorStoreUnavailableError",
    "build_vector_index",
    "get_vector_index",
    "matches_filter",
    "reset_vector_index_cache",
    "unit_metadata",
]
