"""Records, hits and the protocol every vector index backend implements."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from tutor.ingest.models import ContentUnit

MetadataValue = str | int | float | bool
Metadata = Dict[str, MetadataValue]

FILTER_KEYS = ("board", "grade", "subject", "chapter_id", "document_id")


def unit_metadata(
    unit: ContentUnit,
    *,
    board: str = "",
    grade: str = "",
    subject: str = "",
    version_number: int = 0,
    ingested_at: float | None = None,
) -> Metadata:
    """Flat metadata snapshot stored next to a unit's vector.

    Values are limited to scalars so every backend (Chroma included) accepts
    them; ``image_refs`` is joined with ``|``.
    """

    return {
        "document_id": unit.document_id,
        "chapter_id": unit.chapter_id,
        "section_title": unit.section_title,
        "page_number": int(unit.page_number),
        "unit_type": unit.unit_type.value,
        "content_hash": unit.content_hash,
        "ordinal": int(unit.ordinal),
        "image_refs": "|".join(unit.image_refs),
        "board": board,
        "grade": grade,
        "subject": subject,
        "version_number": int(version_number),
        "ingested_at": float(ingested_at if ingested_at is not None else time.time()),
    }


@dataclass(frozen=True, slots=True)
class EmbeddingRecord:
    """Vector plus metadata snapshot for one content unit."""

    unit_id: str
    vector: Tuple[float, ...]
    text: str
    metadata: Metadata = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vector", tuple(float(value) for value in self.vector))

    @property
    def document_id(self) -> str:
        return str(self.metadata.get("document_id", ""))

    @property
    def dimension(self) -> int:
        return len(self.vector)

    def with_metadata(self, updates: Mapping[str, MetadataValue]) -> "EmbeddingRecord":
        merged = dict(self.metadata)
        merged.update(updates)
        return EmbeddingRecord(unit_id=self.unit_id, vector=self.vector, text=self.text, metadata=merged)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.unit_id,
            "embedding": list(self.vector),
            "document": self.text,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "EmbeddingRecord":
        return cls(
            unit_id=str(payload.get("id", "")),
            vector=tuple(float(value) for value in payload.get("embedding", []) or []),  # type: ignore[union-attr]
            text=str(payload.get("document", "")),
            metadata=dict(payload.get("metadata", {}) or {}),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class IndexHit:
    """Single similarity search result, ``similarity`` is cosine in ``[-1, 1]``."""

    unit_id: str
    similarity: float
    metadata: Metadata
    text: str


class VectorIndex(Protocol):
    backend_name: str
    collection_name: str

    @property
    def dimension(self) -> Optional[int]:
        ...

    def upsert(self, records: Sequence[EmbeddingRecord]) -> None:
        ...

    def delete_by_document(self, document_id: str) -> List[str]:
        ...

    def delete_by_unit_ids(self, unit_ids: Iterable[str]) -> None:
        ...

    def query(
        self, vector: Sequence[float], k: int, where: Optional[Mapping[str, MetadataValue]] = None
    ) -> List[IndexHit]:
        ...

    def get(self, unit_ids: Iterable[str]) -> List[EmbeddingRecord]:
        ...

    def update_metadata(self, unit_ids: Sequence[str], metadatas: Sequence[Mapping[str, MetadataValue]]) -> None:
        ...

    def count(self) -> int:
        ...


def clean_filter(where: Optional[Mapping[str, object]]) -> Dict[str, MetadataValue]:
    """Drop empty values so an unset scope key does not filter everything out."""

    if not where:
        return {}
    return {key: value for key, value in where.items() if value not in (None, "")}  # type: ignore[misc]


def matches_filter(metadata: Mapping[str, object], where: Optional[Mapping[str, object]]) -> bool:
    for key, expected in clean_filter(where).items():
        if metadata.get(key) != expected:
            return False
    return True


__all__ = [
    "EmbeddingRecord",
    "FILTER_KEYS",
    "IndexHit",
    "Metadata",
    "MetadataValue",
    "VectorIndex",
    "clean_filter",
    "matches_filter",
    "unit_metadata",
]
