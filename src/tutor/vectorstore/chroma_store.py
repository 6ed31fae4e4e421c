"""Chroma vector index adapter."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence

import chromadb

from tutor.telemetry import emit_vectorstore_event

from .base import EmbeddingRecord, IndexHit, MetadataValue, clean_filter
from .errors import DimensionMismatchError, IndexWriteError, VectorStoreUnavailableError
from .memory_store import DEFAULT_COLLECTION_NAME

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from chromadb.api import ClientAPI
    from chromadb.api.models.Collection import Collection

LOGGER = logging.getLogger(__name__)

DEFAULT_DISTANCE_METRIC = "cosine"


def build_where(where: Optional[Mapping[str, MetadataValue]]) -> Optional[Dict[str, Any]]:
    """Translate an equality filter into Chroma's ``where`` syntax."""

    cleaned = clean_filter(where)
    if not cleaned:
        return None
    if len(cleaned) == 1:
        return dict(cleaned)
    return {"$and": [{key: value} for key, value in cleaned.items()]}


def _column(result: Mapping[str, Any], key: str) -> List[Any]:
    value = result.get(key)
    if value is None:
        return []
    return list(value)


class ChromaVectorIndex:
    """Adapter around a persistent Chroma collection using cosine distance."""

    backend_name = "chroma"

    def __init__(
        self,
        persist_dir: str | Path,
        *,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        client: Optional["ClientAPI"] = None,
    ) -> None:
        self.persist_dir = Path(persist_dir)
        self.persist_dir.mkdir(parents=True, exist_ok=True)
        self.collection_name = collection_name
        try:
            self._client = client or chromadb.PersistentClient(path=str(self.persist_dir))
            self._collection: "Collection" = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": DEFAULT_DISTANCE_METRIC},
            )
        except Exception as exc:  # pragma: no cover - depends on chromadb runtime
            raise VectorStoreUnavailableError(
                "Failed to initialise Chroma persistent client",
                cause=exc,
            ) from exc
        self._dimension: Optional[int] = None

    @property
    def dimension(self) -> Optional[int]:
        if self._dimension is None and self.count():
            sample = self._collection.get(limit=1, include=["embeddings"])
            embeddings = _column(sample, "embeddings")
            if embeddings:
                self._dimension = len(embeddings[0])
        return self._dimension

    def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        records = list(records)
        if not records:
            return
        dimension = self.dimension or records[0].dimension
        for record in records:
            if record.dimension != dimension:
                raise DimensionMismatchError(dimension, record.dimension, unit_id=record.unit_id)
        try:
            self._collection.upsert(
                ids=[record.unit_id for record in records],
                embeddings=[list(record.vector) for record in records],
                documents=[record.text for record in records],
                metadatas=[dict(record.metadata) for record in records],
            )
        except Exception as exc:
            emit_vectorstore_event(
                "vectorstore.upsert",
                collection=self.collection_name,
                count=len(records),
                backend=self.backend_name,
                error=exc,
            )
            raise IndexWriteError("Failed to upsert records into Chroma", cause=exc) from exc
        self._dimension = dimension
        emit_vectorstore_event(
            "vectorstore.upsert", collection=self.collection_name, count=len(records), backend=self.backend_name
        )

    def delete_by_document(self, document_id: str) -> List[str]:
        try:
            existing = self._collection.get(where={"document_id": document_id}, include=["metadatas"])
            ids = _column(existing, "ids")
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise IndexWriteError(
                f"Failed to delete records of {document_id} from Chroma", document_id=document_id, cause=exc
            ) from exc
        emit_vectorstore_event(
            "vectorstore.delete", collection=self.collection_name, count=len(ids), backend=self.backend_name
        )
        return [str(item) for item in ids]

    def delete_by_unit_ids(self, unit_ids: Iterable[str]) -> None:
        ids = list(unit_ids)
        if not ids:
            return
        try:
            self._collection.delete(ids=ids)
        except Exception as exc:
            raise IndexWriteError("Failed to delete records from Chroma", cause=exc) from exc
        emit_vectorstore_event(
            "vectorstore.delete", collection=self.collection_name, count=len(ids), backend=self.backend_name
        )

    def update_metadata(
        self, unit_ids: Sequence[str], metadatas: Sequence[Mapping[str, MetadataValue]]
    ) -> None:
        if len(unit_ids) != len(metadatas):
            raise ValueError("unit_ids and metadatas must be of the same length")
        if not unit_ids:
            return
        try:
            self._collection.update(ids=list(unit_ids), metadatas=[dict(item) for item in metadatas])
        except Exception as exc:
            raise IndexWriteError("Failed to update metadata in Chroma", cause=exc) from exc

    def query(
        self,
        vector: Sequence[float],
        k: int,
        where: Optional[Mapping[str, MetadataValue]] = None,
    ) -> List[IndexHit]:
        if k <= 0:
            return []
        total = self.count()
        if total == 0:
            return []
        try:
            result = self._collection.query(
                query_embeddings=[list(map(float, vector))],
                n_results=min(k, total),
                where=build_where(where),
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise VectorStoreUnavailableError("Chroma query failed", cause=exc) from exc

        ids = (_column(result, "ids") or [[]])[0]
        documents = (_column(result, "documents") or [[]])[0]
        metadatas = (_column(result, "metadatas") or [[]])[0]
        distances = (_column(result, "distances") or [[]])[0]

        hits: List[IndexHit] = []
        for unit_id, document, metadata, distance in zip(ids, documents, metadatas, distances):
            similarity = 1.0 - float(distance) if distance is not None else 0.0
            hits.append(
                IndexHit(
                    unit_id=str(unit_id),
                    similarity=max(-1.0, min(1.0, similarity)),
                    metadata=dict(metadata or {}),
                    text=str(document or ""),
                )
            )
        hits.sort(key=lambda hit: hit.similarity, reverse=True)
        return hits

    def get(self, unit_ids: Iterable[str]) -> List[EmbeddingRecord]:
        ids = list(unit_ids)
        if not ids:
            return []
        try:
            result = self._collection.get(ids=ids, include=["embeddings", "documents", "metadatas"])
        except Exception as exc:
            raise VectorStoreUnavailableError("Chroma get failed", cause=exc) from exc
        records: List[EmbeddingRecord] = []
        for unit_id, embedding, document, metadata in zip(
            _column(result, "ids"),
            _column(result, "embeddings"),
            _column(result, "documents"),
            _column(result, "metadatas"),
        ):
            records.append(
                EmbeddingRecord(
                    unit_id=str(unit_id),
                    vector=tuple(float(value) for value in embedding),
                    text=str(document or ""),
                    metadata=dict(metadata or {}),
                )
            )
        return records

    def count(self) -> int:
        try:
            return int(self._collection.count())
        except Exception as exc:  # pragma: no cover - depends on chromadb runtime
            raise VectorStoreUnavailableError("Chroma count failed", cause=exc) from exc


__all__ = ["ChromaVectorIndex", "DEFAULT_DISTANCE_METRIC", "build_where"]
