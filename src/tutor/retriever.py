"""Similarity search with threshold, chapter priority and deduplication."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from tutor.config import RetrievalSettings
from tutor.telemetry import emit_retriever_event
from tutor.vectorstore import IndexHit, VectorIndex

LOGGER = logging.getLogger(__name__)

NEAR_DUPLICATE_OVERLAP = 0.8
_WORD_RE = re.compile(r"[^\W_]+")


def _token_overlap(first: str, second: str) -> float:
    """Jaccard overlap of the word sets of two texts."""

    left = set(_WORD_RE.findall(first.casefold()))
    right = set(_WORD_RE.findall(second.casefold()))
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


@dataclass(frozen=True, slots=True)
class SubjectScope:
    """Equality filter restricting retrieval to one curriculum slice."""

    board: Optional[str] = None
    grade: Optional[str] = None
    subject: Optional[str] = None
    document_id: Optional[str] = None

    def as_filter(self) -> Dict[str, str]:
        return {
            key: value
            for key, value in (
                ("board", self.board),
                ("grade", self.grade),
                ("subject", self.subject),
                ("document_id", self.document_id),
            )
            if value
        }


@dataclass(frozen=True, slots=True)
class RetrievedSegment:
    unit_id: str
    similarity_score: float
    chapter_id: str
    is_current_chapter: bool
    document_id: str = ""
    section_title: str = ""
    page_number: int = 0
    unit_type: str = "paragraph"
    text: str = ""
    content_hash: str = ""
    ordinal: int = 0
    version_number: int = 0
    ingested_at: float = 0.0
    image_refs: Tuple[str, ...] = ()

    @classmethod
    def from_hit(cls, hit: IndexHit, active_chapter_id: Optional[str]) -> "RetrievedSegment":
        metadata = hit.metadata
        chapter_id = str(metadata.get("chapter_id", ""))
        image_refs = str(metadata.get("image_refs", "") or "")
        return cls(
            unit_id=hit.unit_id,
            similarity_score=float(hit.similarity),
            chapter_id=chapter_id,
            is_current_chapter=bool(active_chapter_id) and chapter_id == active_chapter_id,
            document_id=str(metadata.get("document_id", "")),
            section_title=str(metadata.get("section_title", "")),
            page_number=int(metadata.get("page_number", 0) or 0),
            unit_type=str(metadata.get("unit_type", "paragraph")),
            text=hit.text,
            content_hash=str(metadata.get("content_hash", "")),
            ordinal=int(metadata.get("ordinal", 0) or 0),
            version_number=int(metadata.get("version_number", 0) or 0),
            ingested_at=float(metadata.get("ingested_at", 0.0) or 0.0),
            image_refs=tuple(ref for ref in image_refs.split("|") if ref),
        )

    @property
    def source_key(self) -> Tuple[str, str]:
        return (self.chapter_id, self.section_title)

    def citation(self) -> Dict[str, object]:
        return {
            "chapter_id": self.chapter_id,
            "section_title": self.section_title,
            "page_number": self.page_number,
        }


@dataclass(frozen=True, slots=True)
class RetrievalResult:
    """Outcome of one retrieval call.

    An empty ``segments`` tuple with ``query_issued=True`` means the index was
    searched and nothing cleared the threshold; that is the insufficient
    context signal, not an error.
    """

    segments: Tuple[RetrievedSegment, ...] = ()
    candidates: int = 0
    below_threshold: int = 0
    query_issued: bool = True

    @classmethod
    def not_queried(cls) -> "RetrievalResult":
        return cls(query_issued=False)

    @property
    def is_empty(self) -> bool:
        return not self.segments

    def __iter__(self) -> Iterator[RetrievedSegment]:
        return iter(self.segments)

    def __len__(self) -> int:
        return len(self.segments)


class Retriever:
    def __init__(self, index: VectorIndex, settings: RetrievalSettings | None = None) -> None:
        self.index = index
        self.settings = settings or RetrievalSettings()

    def retrieve(
        self,
        query_vector: Sequence[float],
        active_chapter_id: Optional[str],
        subject_scope: SubjectScope | None = None,
        k: int | None = None,
    ) -> RetrievalResult:
        k = self.settings.top_k if k is None else k
        if k <= 0:
            return RetrievalResult()
        started = time.perf_counter()
        fetch = max(k * max(1, self.settings.overfetch_factor), k + 5)
        where = subject_scope.as_filter() if subject_scope else None

        hits = self.index.query(query_vector, fetch, where)
        segments = [RetrievedSegment.from_hit(hit, active_chapter_id) for hit in hits]
        threshold = self.settings.similarity_threshold
        survivors = [segment for segment in segments if segment.similarity_score >= threshold]
        ranked = sorted(survivors, key=self._rank_key)
        selected = self._deduplicate(ranked)[:k]

        result = RetrievalResult(
            segments=tuple(selected),
            candidates=len(segments),
            below_threshold=len(segments) - len(survivors),
        )
        emit_retriever_event(
            chapter_id=active_chapter_id or "",
            top_k=k,
            candidates=result.candidates,
            below_threshold=result.below_threshold,
            results=[
                {
                    "unit_id": segment.unit_id,
                    "similarity": round(segment.similarity_score, 4),
                    "current": segment.is_current_chapter,
                }
                for segment in selected
            ],
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return result

    def _rank_key(self, segment: RetrievedSegment) -> Tuple[float, int, float, int, float, str]:
        boost = self.settings.chapter_priority_margin if segment.is_current_chapter else 0.0
        return (
            -(segment.similarity_score + boost),
            0 if segment.is_current_chapter else 1,
            -segment.similarity_score,
            -segment.version_number,
            -segment.ingested_at,
            segment.unit_id,
        )

    def _deduplicate(self, ranked: List[RetrievedSegment]) -> List[RetrievedSegment]:
        window = self.settings.dedup_window
        kept: List[RetrievedSegment] = []
        for segment in ranked:
            if any(self._is_duplicate(segment, other, window) for other in kept):
                LOGGER.debug("Dropping near-duplicate segment %s", segment.unit_id)
                continue
            kept.append(segment)
        return kept

    @staticmethod
    def _is_duplicate(candidate: RetrievedSegment, kept: RetrievedSegment, window: int) -> bool:
        if candidate.content_hash and candidate.content_hash == kept.content_hash:
            return True
        if window <= 0:
            return False
        if not (
            candidate.document_id == kept.document_id
            and candidate.section_title == kept.section_title
            and candidate.unit_type == kept.unit_type
            and abs(candidate.ordinal - kept.ordinal) <= window
        ):
            return False
        return _token_overlap(candidate.text, kept.text) >= NEAR_DUPLICATE_OVERLAP


__all__ = ["RetrievalResult", "RetrievedSegment", "Retriever", "SubjectScope"]
