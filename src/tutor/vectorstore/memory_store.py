"""In-memory and JSON-file backed vector indexes."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np

from tutor.telemetry import emit_vectorstore_event

from .base import EmbeddingRecord, IndexHit, MetadataValue, matches_filter
from .errors import DimensionMismatchError, IndexWriteError, VectorStoreUnavailableError

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION_NAME = "curriculum_units"


class InMemoryVectorIndex:
    """Cosine-similarity index held in a dictionary of records.

    Writers build a new record map and swap it in under a lock; readers take
    a reference to the current map and never see a half-applied update.
    """

    backend_name = "memory"

    def __init__(
        self,
        *,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        dimension: Optional[int] = None,
    ) -> None:
        self.collection_name = collection_name
        self._dimension = dimension
        self._records: Dict[str, EmbeddingRecord] = {}
        self._write_lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        records = list(records)
        if not records:
            return
        with self._write_lock:
            dimension = self._dimension
            for record in records:
                if dimension is None:
                    dimension = record.dimension
                if record.dimension != dimension:
                    raise DimensionMismatchError(dimension, record.dimension, unit_id=record.unit_id)
            updated = dict(self._records)
            for record in records:
                updated[record.unit_id] = record
            self._commit(updated)
            self._dimension = dimension
        emit_vectorstore_event(
            "vectorstore.upsert", collection=self.collection_name, count=len(records), backend=self.backend_name
        )

    def delete_by_document(self, document_id: str) -> List[str]:
        with self._write_lock:
            removed = [unit_id for unit_id, record in self._records.items() if record.document_id == document_id]
            if removed:
                doomed = set(removed)
                self._commit({key: value for key, value in self._records.items() if key not in doomed})
        emit_vectorstore_event(
            "vectorstore.delete", collection=self.collection_name, count=len(removed), backend=self.backend_name
        )
        return removed

    def delete_by_unit_ids(self, unit_ids: Iterable[str]) -> None:
        doomed = set(unit_ids)
        if not doomed:
            return
        with self._write_lock:
            self._commit({key: value for key, value in self._records.items() if key not in doomed})
        emit_vectorstore_event(
            "vectorstore.delete", collection=self.collection_name, count=len(doomed), backend=self.backend_name
        )

    def update_metadata(
        self, unit_ids: Sequence[str], metadatas: Sequence[Mapping[str, MetadataValue]]
    ) -> None:
        if len(unit_ids) != len(metadatas):
            raise ValueError("unit_ids and metadatas must be of the same length")
        if not unit_ids:
            return
        with self._write_lock:
            updated = dict(self._records)
            for unit_id, metadata in zip(unit_ids, metadatas):
                record = updated.get(unit_id)
                if record is None:
                    raise IndexWriteError(f"Unknown unit {unit_id}", unit_id=unit_id)
                updated[unit_id] = record.with_metadata(metadata)
            self._commit(updated)

    def query(
        self,
        vector: Sequence[float],
        k: int,
        where: Optional[Mapping[str, MetadataValue]] = None,
    ) -> List[IndexHit]:
        if k <= 0:
            return []
        records = self._records
        candidates = [record for record in records.values() if matches_filter(record.metadata, where)]
        if not candidates:
            return []

        query = np.asarray(vector, dtype=np.float64)
        if self._dimension is not None and query.shape[0] != self._dimension:
            raise VectorStoreUnavailableError(
                f"Query vector has dimension {query.shape[0]}, index expects {self._dimension}"
            )
        matrix = np.asarray([record.vector for record in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        similarities = np.divide(
            matrix @ query, norms, out=np.zeros(len(candidates), dtype=np.float64), where=norms > 0
        )
        order = np.argsort(-similarities, kind="stable")[:k]
        return [
            IndexHit(
                unit_id=candidates[position].unit_id,
                similarity=float(np.clip(similarities[position], -1.0, 1.0)),
                metadata=dict(candidates[position].metadata),
                text=candidates[position].text,
            )
            for position in order
        ]

    def get(self, unit_ids: Iterable[str]) -> List[EmbeddingRecord]:
        records = self._records
        return [records[unit_id] for unit_id in unit_ids if unit_id in records]

    def all_records(self) -> List[EmbeddingRecord]:
        return list(self._records.values())

    def count(self) -> int:
        return len(self._records)

    def _commit(self, records: Dict[str, EmbeddingRecord]) -> None:
        self._records = records


class PersistentVectorIndex(InMemoryVectorIndex):
    """In-memory index that persists its state on disk for reuse."""

    backend_name = "local"

    def __init__(
        self,
        persist_dir: str | Path,
        *,
        collection_name: str = DEFAULT_COLLECTION_NAME,
        dimension: Optional[int] = None,
    ) -> None:
        super().__init__(collection_name=collection_name, dimension=dimension)
        self._persist_dir = Path(persist_dir)
        self._persist_dir.mkdir(parents=True, exist_ok=True)
        self._data_path = self._persist_dir / f"{collection_name}.json"
        self._load()

    @property
    def data_path(self) -> Path:
        return self._data_path

    def _load(self) -> None:
        if not self._data_path.exists():
            return
        try:
            payload = json.loads(self._data_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise VectorStoreUnavailableError(
                f"Failed to load vector index from {self._data_path}", cause=exc
            ) from exc

        records: Dict[str, EmbeddingRecord] = {}
        for item in payload.get("records", []):
            record = EmbeddingRecord.from_dict(item)
            records[record.unit_id] = record
        self._records = records
        stored_dimension = payload.get("dimension")
        if stored_dimension is not None:
            self._dimension = int(stored_dimension)
        LOGGER.info("Loaded %s records from %s", len(records), self._data_path)

    def _commit(self, records: Dict[str, EmbeddingRecord]) -> None:
        payload = {
            "collection": self.collection_name,
            "dimension": self._dimension if self._dimension is not None else self._infer_dimension(records),
            "records": [record.to_dict() for record in records.values()],
        }
        tmp_path = self._data_path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(self._data_path)
        except OSError as exc:
            raise IndexWriteError(f"Failed to persist vector index to {self._data_path}", cause=exc) from exc
        self._records = records

    @staticmethod
    def _infer_dimension(records: Dict[str, EmbeddingRecord]) -> Optional[int]:
        for record in records.values():
            return record.dimension
        return None


__all__ = ["DEFAULT_COLLECTION_NAME", "InMemoryVectorIndex", "PersistentVectorIndex"]
