"""Incremental, idempotent ingestion of extracted documents into the vector index."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, TypeVar

from tutor.config import IngestSettings
from tutor.embeddings import EmbeddingModel
from tutor.errors import EmbeddingError, IngestionError, IngestionInProgressError
from tutor.telemetry import emit_exception, emit_ingest_event, emit_ingest_state, traced_duration
from tutor.vectorstore import EmbeddingRecord, VectorIndex, unit_metadata
from tutor.vectorstore.errors import VectorStoreUnavailableError

from .models import ContentUnit, DocumentVersion, ExtractedDocument
from .segmenter import Segmenter, SegmenterConfig
from .versions import DocumentVersionStore, InMemoryDocumentVersionStore

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class IngestionState(str, Enum):
    NOT_INGESTED = "not_ingested"
    DIFFING = "diffing"
    SEGMENTING = "segmenting"
    EMBEDDING = "embedding"
    STORING = "storing"
    READY = "ready"
    FAILED = "failed"


@dataclass(slots=True)
class UnitDiff:
    """Classification of a new unit list against the committed one."""

    unchanged: List[ContentUnit] = field(default_factory=list)
    moved: List[ContentUnit] = field(default_factory=list)
    added: List[ContentUnit] = field(default_factory=list)
    changed: List[ContentUnit] = field(default_factory=list)
    removed: List[ContentUnit] = field(default_factory=list)

    @property
    def pending(self) -> List[ContentUnit]:
        return self.changed + self.added

    @property
    def is_noop(self) -> bool:
        return not (self.added or self.changed or self.removed or self.moved)


def diff_units(previous: Sequence[ContentUnit], current: Sequence[ContentUnit]) -> UnitDiff:
    """Match units by content hash, then classify the rest by identity key.

    A new unit whose ``(chapter_id, section_title, page_number)`` matches a
    unit that disappeared is *changed*; otherwise it is *added*. Unchanged
    units whose citation fields differ are reported as *moved*. A shifted
    ordinal alone does not move a unit, so stored ordinals keep the position
    a unit had when it was embedded.
    """

    diff = UnitDiff()
    previous_by_hash = {unit.content_hash: unit for unit in previous}
    current_hashes = {unit.content_hash for unit in current}
    diff.removed = [unit for unit in previous if unit.content_hash not in current_hashes]
    superseded_keys = {unit.identity_key for unit in diff.removed}

    for unit in current:
        old = previous_by_hash.get(unit.content_hash)
        if old is not None:
            diff.unchanged.append(unit)
            if old.citation_fields() != unit.citation_fields():
                diff.moved.append(unit)
        elif unit.identity_key in superseded_keys:
            diff.changed.append(unit)
        else:
            diff.added.append(unit)
    return diff


@dataclass(slots=True)
class IngestionReport:
    document_id: str
    version: DocumentVersion
    added: int = 0
    changed: int = 0
    removed: int = 0
    unchanged: int = 0
    metadata_updated: int = 0
    embedded: int = 0
    duration_seconds: float = 0.0
    skipped: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "document_id": self.document_id,
            "version_number": self.version.version_number,
            "units": len(self.version.unit_ids),
            "added": self.added,
            "changed": self.changed,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "metadata_updated": self.metadata_updated,
            "embedded": self.embedded,
            "duration_seconds": round(self.duration_seconds, 6),
            "skipped": self.skipped,
        }


@dataclass(slots=True)
class DocumentStatus:
    document_id: str
    state: IngestionState
    version: Optional[DocumentVersion] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "document_id": self.document_id,
            "state": self.state.value,
            "version": self.version.to_dict() if self.version else None,
        }


@dataclass(slots=True)
class _DocumentLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


def _batched(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start : start + size]


class IngestionCoordinator:
    """Drive a document through segmentation, embedding and storage.

    At most one run per ``document_id`` is active; the committed
    :class:`DocumentVersion` only changes after every index write of a run
    succeeded.
    """

    def __init__(
        self,
        *,
        embedder: EmbeddingModel,
        index: VectorIndex,
        versions: DocumentVersionStore | None = None,
        segmenter: Segmenter | None = None,
        settings: IngestSettings | None = None,
    ) -> None:
        self.settings = settings or IngestSettings()
        self.embedder = embedder
        self.index = index
        self.versions = versions or InMemoryDocumentVersionStore()
        self.segmenter = segmenter or Segmenter(SegmenterConfig(max_unit_chars=self.settings.max_unit_chars))
        self._states: Dict[str, IngestionState] = {}
        self._document_locks: Dict[str, _DocumentLock] = {}
        self._registry_lock = threading.Lock()

    def ingest(self, document: ExtractedDocument) -> IngestionReport:
        entry = self._acquire(document.document_id)
        try:
            return self._run(document)
        finally:
            self._release(document.document_id, entry)

    def remove_document(self, document_id: str) -> Optional[DocumentVersion]:
        entry = self._acquire(document_id)
        try:
            removed_ids = self.index.delete_by_document(document_id)
            version = self.versions.remove(document_id)
            self._set_state(document_id, IngestionState.NOT_INGESTED)
            with self._registry_lock:
                self._states.pop(document_id, None)
            emit_ingest_event(
                "ingest.document.removed",
                document_id=document_id,
                version_number=version.version_number if version else None,
                removed=len(removed_ids),
            )
            return version
        finally:
            self._release(document_id, entry)

    def tracked_documents(self) -> List[str]:
        """Document ids with a recorded state or a held lock."""

        with self._registry_lock:
            return sorted(set(self._states) | set(self._document_locks))

    def status(self, document_id: str) -> DocumentStatus:
        version = self.versions.get_latest(document_id)
        with self._registry_lock:
            state = self._states.get(document_id)
        if state is None:
            state = IngestionState.READY if version is not None else IngestionState.NOT_INGESTED
        return DocumentStatus(document_id=document_id, state=state, version=version)

    def _acquire(self, document_id: str) -> _DocumentLock:
        with self._registry_lock:
            entry = self._document_locks.setdefault(document_id, _DocumentLock())
            entry.users += 1
        timeout = self.settings.lock_timeout
        acquired = entry.lock.acquire(timeout=timeout) if timeout > 0 else entry.lock.acquire(blocking=False)
        if not acquired:
            self._forget(document_id, entry)
            raise IngestionInProgressError(
                f"Ingestion of {document_id} is already in progress",
                document_id=document_id,
            )
        return entry

    def _release(self, document_id: str, entry: _DocumentLock) -> None:
        entry.lock.release()
        self._forget(document_id, entry)

    def _forget(self, document_id: str, entry: _DocumentLock) -> None:
        # Entries live only while a run holds or waits for them.
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0 and self._document_locks.get(document_id) is entry:
                del self._document_locks[document_id]

    def _set_state(self, document_id: str, state: IngestionState) -> None:
        with self._registry_lock:
            previous = self._states.get(document_id, IngestionState.NOT_INGESTED)
            self._states[document_id] = state
        emit_ingest_state(document_id=document_id, previous=previous.value, state=state.value)

    def _run(self, document: ExtractedDocument) -> IngestionReport:
        document_id = document.document_id
        started = time.perf_counter()
        previous = self.versions.get_latest(document_id)
        emit_ingest_event(
            "ingest.document.start",
            document_id=document_id,
            version_number=previous.version_number if previous else None,
        )

        try:
            if previous is not None:
                self._set_state(document_id, IngestionState.DIFFING)
            self._set_state(document_id, IngestionState.SEGMENTING)
            with traced_duration("ingest.segment", logger=LOGGER, document_id=document_id):
                units = self.segmenter.segment(document)
            previous_units = self.versions.get_units(document_id) if previous is not None else []
            diff = diff_units(previous_units, units)
            scope_changed = previous is not None and (previous.board, previous.grade, previous.subject) != (
                document.board,
                document.grade,
                document.subject,
            )
            if scope_changed:
                diff.moved = list(diff.unchanged)

            if previous is not None and diff.is_noop:
                self._set_state(document_id, IngestionState.READY)
                report = IngestionReport(
                    document_id=document_id,
                    version=previous,
                    unchanged=len(diff.unchanged),
                    duration_seconds=time.perf_counter() - started,
                    skipped=True,
                )
                self._emit_report("ingest.document.unchanged", report)
                return report

            version = DocumentVersion(
                document_id=document_id,
                board=document.board,
                grade=document.grade,
                subject=document.subject,
                version_number=previous.version_number + 1 if previous is not None else 1,
                unit_ids=tuple(unit.unit_id for unit in units),
            )

            self._set_state(document_id, IngestionState.EMBEDDING)
            pending = diff.pending
            vectors = self._embed_units(document_id, pending)
            records = [
                EmbeddingRecord(
                    unit_id=unit.unit_id,
                    vector=tuple(vector),
                    text=unit.text,
                    metadata=self._metadata(unit, version),
                )
                for unit, vector in zip(pending, vectors)
            ]

            self._set_state(document_id, IngestionState.STORING)
            self._store(document_id, version, units, records, diff)
        except (IngestionError, VectorStoreUnavailableError) as error:
            self._fail(document_id, error)
            if isinstance(error, IngestionError) and error.document_id is None:
                error.document_id = document_id
            raise
        except Exception as error:
            self._fail(document_id, error)
            raise IngestionError(
                f"Ingestion of {document_id} failed: {error}", document_id=document_id, cause=error
            ) from error

        self._set_state(document_id, IngestionState.READY)
        report = IngestionReport(
            document_id=document_id,
            version=version,
            added=len(diff.added),
            changed=len(diff.changed),
            removed=len(diff.removed),
            unchanged=len(diff.unchanged),
            metadata_updated=len(diff.moved),
            embedded=len(records),
            duration_seconds=time.perf_counter() - started,
        )
        self._emit_report("ingest.document.complete", report)
        LOGGER.info(
            "Ingested %s v%s: %s added, %s changed, %s removed, %s unchanged",
            document_id,
            version.version_number,
            report.added,
            report.changed,
            report.removed,
            report.unchanged,
        )
        return report

    def _embed_units(self, document_id: str, units: Sequence[ContentUnit]) -> List[List[float]]:
        batches = list(_batched(units, self.settings.batch_size))
        if not batches:
            return []

        def embed(batch: Sequence[ContentUnit]) -> List[List[float]]:
            try:
                return self.embedder.embed_batch([unit.text for unit in batch])
            except EmbeddingError as error:
                raise EmbeddingError(
                    str(error), document_id=document_id, unit_id=batch[0].unit_id, cause=error
                ) from error

        workers = max(1, min(self.settings.embed_concurrency, len(batches)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ingest-embed") as pool:
            results = list(pool.map(embed, batches))
        return [vector for batch_vectors in results for vector in batch_vectors]

    def _store(
        self,
        document_id: str,
        version: DocumentVersion,
        units: Sequence[ContentUnit],
        records: Sequence[EmbeddingRecord],
        diff: UnitDiff,
    ) -> None:
        removed_ids = [unit.unit_id for unit in diff.removed]
        moved_ids = [unit.unit_id for unit in diff.moved]
        snapshot = self.index.get(removed_ids + moved_ids)
        upserted: List[str] = []
        try:
            for batch in _batched(records, self.settings.batch_size):
                upserted.extend(record.unit_id for record in batch)
                self.index.upsert(batch)
            if diff.moved:
                self.index.update_metadata(moved_ids, [self._metadata(unit, version) for unit in diff.moved])
            if removed_ids:
                self.index.delete_by_unit_ids(removed_ids)
            self.versions.commit(version, units)
        except Exception:
            self._rollback(document_id, upserted, snapshot)
            raise

    def _rollback(self, document_id: str, upserted: List[str], snapshot: List[EmbeddingRecord]) -> None:
        LOGGER.warning(
            "Rolling back ingestion of %s: %s new records, %s restored", document_id, len(upserted), len(snapshot)
        )
        try:
            if upserted:
                self.index.delete_by_unit_ids(upserted)
            if snapshot:
                self.index.upsert(snapshot)
        except Exception as error:
            emit_exception(
                module=f"{__name__}.rollback",
                error=error,
                document_id=document_id,
                suggestion="Re-run ingestion for this document to repair the index",
            )

    def _fail(self, document_id: str, error: BaseException) -> None:
        self._set_state(document_id, IngestionState.FAILED)
        emit_exception(module=__name__, error=error, document_id=document_id)

    @staticmethod
    def _metadata(unit: ContentUnit, version: DocumentVersion) -> Dict[str, object]:
        return unit_metadata(
            unit,
            board=version.board,
            grade=version.grade,
            subject=version.subject,
            version_number=version.version_number,
            ingested_at=version.created_at,
        )

    def _emit_report(self, step: str, report: IngestionReport) -> None:
        emit_ingest_event(
            step,
            document_id=report.document_id,
            version_number=report.version.version_number,
            duration_ms=report.duration_seconds * 1000.0,
            units=len(report.version.unit_ids),
            added=report.added,
            changed=report.changed,
            removed=report.removed,
            unchanged=report.unchanged,
            embedded=report.embedded,
        )


__all__ = [
    "DocumentStatus",
    "IngestionCoordinator",
    "IngestionReport",
    "IngestionState",
    "UnitDiff",
    "diff_units",
]
