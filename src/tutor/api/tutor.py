"""API routers exposing ingestion and tutoring endpoints."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from tutor.answerer import Answer
from tutor.errors import (
    EmbeddingError,
    IndexWriteError,
    IngestionError,
    IngestionInProgressError,
    SegmentationError,
)
from tutor.ingest.models import ExtractedDocument, ExtractedPage
from tutor.retriever import SubjectScope
from tutor.services.tutor import TutorService, get_tutor_service
from tutor.vectorstore import VectorStoreUnavailableError

documents_router = APIRouter(prefix="/documents", tags=["ingestion"])
students_router = APIRouter(prefix="/students", tags=["tutor"])


class PagePayload(BaseModel):
    page_number: int = Field(..., ge=1)
    text: str = ""
    chapter_id: str | None = None
    image_refs: list[str] = Field(default_factory=list)


class IngestRequest(BaseModel):
    """Already-extracted document submitted for ingestion."""

    board: str = Field(..., min_length=1)
    grade: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    title: str | None = None
    default_chapter_id: str | None = None
    pages: list[PagePayload] = Field(default_factory=list)


class IngestResponse(BaseModel):
    document_id: str
    version_number: int
    unit_ids: list[str]
    added: int
    changed: int
    removed: int
    unchanged: int
    metadata_updated: int
    embedded: int
    skipped: bool
    duration_seconds: float


class DocumentStatusResponse(BaseModel):
    document_id: str
    state: str
    version: dict[str, Any] | None = None


class QuestionRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Student question about the open chapter.")
    language: str | None = Field(None, max_length=16)
    board: str | None = None
    grade: str | None = None
    subject: str | None = None
    document_id: str | None = None


class CitationPayload(BaseModel):
    chapter_id: str
    section_title: str
    page_number: int | None = None


class AnswerResponse(BaseModel):
    text: str
    language: str
    citations: list[CitationPayload]
    grounded: bool
    reason: str | None = None


class TurnPayload(BaseModel):
    role: str
    text: str
    timestamp: float


class ConversationResponse(BaseModel):
    student_id: str
    chapter_id: str
    turns: list[TurnPayload]


def _ingestion_http_error(error: IngestionError) -> HTTPException:
    if isinstance(error, SegmentationError):
        return HTTPException(status_code=422, detail=error.to_dict())
    if isinstance(error, IngestionInProgressError):
        return HTTPException(status_code=409, detail=error.to_dict())
    if isinstance(error, (EmbeddingError, IndexWriteError)):
        return HTTPException(status_code=503, detail=error.to_dict())
    return HTTPException(status_code=500, detail=error.to_dict())


def _serialise_answer(answer: Answer) -> AnswerResponse:
    return AnswerResponse(
        text=answer.text,
        language=answer.language,
        citations=[CitationPayload(**citation.to_dict()) for citation in answer.citations],
        grounded=answer.grounded,
        reason=answer.reason,
    )


@documents_router.post("/{document_id}/ingest", response_model=IngestResponse)
def ingest_document(
    document_id: str,
    request: IngestRequest,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> IngestResponse:
    """Ingest or re-ingest an extracted document."""

    document = ExtractedDocument(
        document_id=document_id,
        pages=[
            ExtractedPage(
                page_number=page.page_number,
                text=page.text,
                chapter_id=page.chapter_id,
                image_refs=list(page.image_refs),
            )
            for page in request.pages
        ],
        board=request.board,
        grade=request.grade,
        subject=request.subject,
        title=request.title,
        default_chapter_id=request.default_chapter_id,
    )
    try:
        report = tutor_service.ingest(document)
    except IngestionError as exc:
        raise _ingestion_http_error(exc) from exc
    except VectorStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return IngestResponse(
        document_id=document_id,
        version_number=report.version.version_number,
        unit_ids=list(report.version.unit_ids),
        added=report.added,
        changed=report.changed,
        removed=report.removed,
        unchanged=report.unchanged,
        metadata_updated=report.metadata_updated,
        embedded=report.embedded,
        skipped=report.skipped,
        duration_seconds=report.duration_seconds,
    )


@documents_router.get("/{document_id}", response_model=DocumentStatusResponse)
def document_status(
    document_id: str,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> DocumentStatusResponse:
    status = tutor_service.document_status(document_id)
    return DocumentStatusResponse(**status.to_dict())


@documents_router.delete("/{document_id}", response_model=DocumentStatusResponse)
def remove_document(
    document_id: str,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> DocumentStatusResponse:
    try:
        removed = tutor_service.remove_document(document_id)
    except IngestionError as exc:
        raise _ingestion_http_error(exc) from exc
    except VectorStoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if removed is None:
        raise HTTPException(status_code=404, detail=f"Document {document_id} is not ingested")
    return DocumentStatusResponse(**tutor_service.document_status(document_id).to_dict())


@students_router.post("/{student_id}/chapters/{chapter_id}/questions", response_model=AnswerResponse)
def ask_question(
    student_id: str,
    chapter_id: str,
    request: QuestionRequest,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> AnswerResponse:
    """Answer a question asked from within a chapter."""

    if not request.question.strip():
        raise HTTPException(status_code=422, detail="Question must not be empty")

    scope = SubjectScope(
        board=request.board,
        grade=request.grade,
        subject=request.subject,
        document_id=request.document_id,
    )
    answer = tutor_service.ask_question(student_id, chapter_id, scope, request.question, request.language)
    return _serialise_answer(answer)


@students_router.get("/{student_id}/chapters/{chapter_id}/conversation", response_model=ConversationResponse)
def get_conversation(
    student_id: str,
    chapter_id: str,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> ConversationResponse:
    turns = tutor_service.get_conversation(student_id, chapter_id)
    return ConversationResponse(
        student_id=student_id,
        chapter_id=chapter_id,
        turns=[TurnPayload(**turn.to_dict()) for turn in turns],
    )


@students_router.delete("/{student_id}/chapters/{chapter_id}/conversation", status_code=204)
def reset_conversation(
    student_id: str,
    chapter_id: str,
    tutor_service: TutorService = Depends(get_tutor_service),
) -> None:
    tutor_service.reset_conversation(student_id, chapter_id)


__all__ = ["documents_router", "students_router"]
