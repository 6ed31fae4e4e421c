from __future__ import annotations

import logging
import time
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from tutor.answerer import REASON_RETRIEVAL_UNAVAILABLE, Answer, GroundedAnswerer
from tutor.config import TutorSettings, get_settings
from tutor.conversation import ConversationStore, Role, Turn
from tutor.embeddings import EmbeddingModel, get_embedding_model
from tutor.errors import EmbeddingError, IngestionError
from tutor.ingest.coordinator import DocumentStatus, IngestionCoordinator, IngestionReport
from tutor.ingest.models import DocumentVersion, ExtractedDocument, ExtractedPage
from tutor.ingest.versions import DocumentVersionStore, InMemoryDocumentVersionStore, JsonDocumentVersionStore
from tutor.llm_provider import Generator
from tutor.logging_config import AUDIT_LOGGER_NAME
from tutor.retriever import Retriever, SubjectScope
from tutor.telemetry import emit_exception
from tutor.vectorstore import VectorIndex, VectorStoreUnavailableError, get_vector_index

LOGGER = logging.getLogger(__name__)
AUDIT_LOGGER = logging.getLogger(AUDIT_LOGGER_NAME)

DocumentSource = ExtractedDocument | Sequence[ExtractedPage] | Mapping[str, Any]


def pages_from_payload(pages: Sequence[Mapping[str, Any]]) -> List[ExtractedPage]:
    return [
        ExtractedPage(
            page_number=int(page.get("page_number", position)),
            text=str(page.get("text", "") or ""),
            chapter_id=page.get("chapter_id") or None,
            image_refs=[str(ref) for ref in page.get("image_refs", []) or []],
        )
        for position, page in enumerate(pages, start=1)
    ]


def build_document(
    document_id: str,
    board: str,
    grade: str,
    subject: str,
    source: DocumentSource,
) -> ExtractedDocument:
    """Normalise the accepted source shapes into an :class:`ExtractedDocument`."""

    if isinstance(source, ExtractedDocument):
        return ExtractedDocument(
            document_id=document_id,
            pages=list(source.pages),
            board=board,
            grade=grade,
            subject=subject,
            title=source.title,
            default_chapter_id=source.default_chapter_id,
        )
    if isinstance(source, Mapping):
        return ExtractedDocument(
            document_id=document_id,
            pages=pages_from_payload(source.get("pages", []) or []),
            board=board,
            grade=grade,
            subject=subject,
            title=source.get("title"),
            default_chapter_id=source.get("default_chapter_id") or source.get("chapter_id"),
        )
    return ExtractedDocument(document_id=document_id, pages=list(source), board=board, grade=grade, subject=subject)


def _scope_from_mapping(payload: Mapping[str, Any] | None) -> SubjectScope:
    payload = payload or {}
    return SubjectScope(
        board=payload.get("board") or None,
        grade=payload.get("grade") or None,
        subject=payload.get("subject") or None,
        document_id=payload.get("document_id") or None,
    )


def _build_version_store(settings: TutorSettings) -> DocumentVersionStore:
    if settings.ingest.version_store_path:
        return JsonDocumentVersionStore(Path(settings.ingest.version_store_path))
    return InMemoryDocumentVersionStore()


class TutorService:
    """Facade over ingestion, retrieval, conversation state and answering.

    One :class:`EmbeddingModel` instance is shared by the ingestion
    coordinator and the question path.
    """

    def __init__(
        self,
        *,
        settings: TutorSettings | None = None,
        embedder: EmbeddingModel | None = None,
        index: VectorIndex | None = None,
        versions: DocumentVersionStore | None = None,
        generator: Generator | None = None,
        conversations: ConversationStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.embedder = embedder or get_embedding_model()
        self.index = index or get_vector_index()
        self.versions = versions or _build_version_store(self.settings)
        self.coordinator = IngestionCoordinator(
            embedder=self.embedder,
            index=self.index,
            versions=self.versions,
            settings=self.settings.ingest,
        )
        self.retriever = Retriever(self.index, self.settings.retrieval)
        self.answerer = GroundedAnswerer(generator, self.settings.generation)
        self.conversations = conversations or ConversationStore(self.settings.conversation)

    def ingest(self, document: ExtractedDocument) -> IngestionReport:
        try:
            report = self.coordinator.ingest(document)
        except IngestionError as error:
            AUDIT_LOGGER.info(
                {
                    "event": "ingest_failed",
                    "document_id": document.document_id,
                    "error": type(error).__name__,
                    "unit_id": error.unit_id,
                }
            )
            raise
        AUDIT_LOGGER.info({"event": "ingest", **report.to_dict()})
        return report

    def ingest_document(
        self,
        document_id: str,
        board: str,
        grade: str,
        subject: str,
        source: DocumentSource,
    ) -> DocumentVersion:
        document = build_document(document_id, board, grade, subject, source)
        return self.ingest(document).version

    def remove_document(self, document_id: str) -> Optional[DocumentVersion]:
        version = self.coordinator.remove_document(document_id)
        AUDIT_LOGGER.info(
            {
                "event": "remove",
                "document_id": document_id,
                "version_number": version.version_number if version else None,
            }
        )
        return version

    def document_status(self, document_id: str) -> DocumentStatus:
        return self.coordinator.status(document_id)

    def ask_question(
        self,
        student_id: str,
        chapter_id: str,
        subject_scope: SubjectScope | Mapping[str, Any] | None,
        question_text: str,
        language: str | None = None,
    ) -> Answer:
        """Answer a student question; query-path failures degrade to an ungrounded answer."""

        started = time.perf_counter()
        req_id = uuid.uuid4().hex
        session_id = f"{student_id}:{chapter_id}"
        key = (student_id, chapter_id)
        scope = subject_scope if isinstance(subject_scope, SubjectScope) else _scope_from_mapping(subject_scope)

        self.conversations.activate(student_id, chapter_id)
        history = self.conversations.get_context(key)
        resolved_language = self.answerer.resolve_language(question_text, language)
        related_topics = self.versions.chapter_topics(chapter_id)

        sources: List[str] = []
        try:
            query_vector = self.embedder.embed_question(question_text)
            retrieval = self.retriever.retrieve(query_vector, chapter_id, scope)
        except (EmbeddingError, VectorStoreUnavailableError) as error:
            emit_exception(module=f"{__name__}.retrieve", error=error, req_id=req_id, session_id=session_id)
            answer = self.answerer.insufficient(
                resolved_language, related_topics, reason=REASON_RETRIEVAL_UNAVAILABLE
            )
        else:
            sources = [segment.unit_id for segment in retrieval.segments]
            answer = self.answerer.answer(
                question_text,
                retrieval,
                history,
                resolved_language,
                related_topics,
                req_id=req_id,
                session_id=session_id,
            )

        self.conversations.append_turn(key, Turn(role=Role.STUDENT, text=question_text))
        self.conversations.append_turn(key, Turn(role=Role.TUTOR, text=answer.text))
        AUDIT_LOGGER.info(
            {
                "event": "query",
                "req_id": req_id,
                "student_id": student_id,
                "chapter_id": chapter_id,
                "question": question_text,
                "sources": sources,
                "grounded": answer.grounded,
                "reason": answer.reason,
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
            }
        )
        return answer

    def reset_conversation(self, student_id: str, chapter_id: str) -> None:
        self.conversations.reset((student_id, chapter_id))

    def get_conversation(self, student_id: str, chapter_id: str) -> List[Turn]:
        return self.conversations.get_context((student_id, chapter_id))


@lru_cache()
def get_tutor_service() -> TutorService:
    """FastAPI dependency returning the shared :class:`TutorService` instance."""

    return TutorService()


def reset_tutor_service_cache() -> None:
    get_tutor_service.cache_clear()  # type: ignore[attr-defined]


__all__ = [
    "TutorService",
    "build_document",
    "get_tutor_service",
    "pages_from_payload",
    "reset_tutor_service_cache",
]
