from __future__ import annotations

import logging

import pytest

from tutor.answerer import (
    REASON_GENERATION_UNAVAILABLE,
    REASON_INSUFFICIENT_CONTEXT,
    REASON_RETRIEVAL_UNAVAILABLE,
)
from tutor.conversation import Role
from tutor.ingest.models import ExtractedPage
from tutor.ingest.versions import InMemoryDocumentVersionStore
from tutor.logging_config import AUDIT_LOGGER_NAME
from tutor.retriever import SubjectScope
from tutor.services.tutor import TutorService
from tutor.vectorstore import InMemoryVectorIndex, VectorStoreUnavailableError

from conftest import FlakyBackend, KeywordEmbeddingBackend, ScriptedGenerator, make_embedder, make_settings

FORMULA = "force = mass × acceleration"
EDITED_INERTIA = "A body keeps its state of motion until a force acts on it."
SCOPE = SubjectScope(board="CBSE", grade="9", subject="physics")


def _laws_page(inertia: str = "A body at rest stays at rest unless a force acts on it.") -> list[ExtractedPage]:
    return [
        ExtractedPage(
            page_number=12,
            text=(
                "# Chapter 2: Force and laws of motion\n\n"
                "## 2.1 Newton's second law\n\n"
                "The net force on a body changes its velocity.\n\n"
                f"{FORMULA}\n\n"
                "## 2.2 Inertia\n\n"
                f"{inertia}"
            ),
        )
    ]


class _AuditCollector(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[dict] = []

    def emit(self, record: logging.LogRecord) -> None:
        if isinstance(record.msg, dict):
            self.events.append(record.msg)


@pytest.fixture
def audit_events():
    collector = _AuditCollector()
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    previous_level = logger.level
    logger.addHandler(collector)
    logger.setLevel(logging.INFO)
    yield collector.events
    logger.removeHandler(collector)
    logger.setLevel(previous_level)


def test_ingest_then_ask_follows_the_chapter(service, keyword_backend, generator, audit_events) -> None:
    generator.responses = [f"{FORMULA} [S1]."]

    first = service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page())
    assert len(first.unit_ids) == 3

    calls_before = len(keyword_backend.calls)
    second = service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page(EDITED_INERTIA))
    assert keyword_backend.calls[calls_before:] == [[EDITED_INERTIA]]
    assert len(set(first.unit_ids) & set(second.unit_ids)) == 2
    assert len(second.unit_ids) == 3

    retrieval = service.retriever.retrieve(
        service.embedder.embed_question("What is force in terms of mass and acceleration?"), "chapter-2", SCOPE
    )
    top = retrieval.segments[0]
    assert top.text == FORMULA
    assert top.unit_type == "formula"
    assert top.is_current_chapter

    answer = service.ask_question(
        "student-1", "chapter-2", SCOPE, "What is force in terms of mass and acceleration?", language="en-US"
    )

    assert answer.grounded
    assert answer.language == "en"
    assert [(c.chapter_id, c.section_title, c.page_number) for c in answer.citations] == [
        ("chapter-2", "2.1 Newton's second law", 12)
    ]
    assert [event["event"] for event in audit_events] == ["ingest", "ingest", "query"]
    assert audit_events[-1]["grounded"] is True


def test_unrelated_question_is_insufficient_without_generator_call(service, generator) -> None:
    service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page())

    answer = service.ask_question("student-1", "chapter-2", SCOPE, "Explain photosynthesis in green plants")

    assert not answer.grounded
    assert answer.citations == []
    assert answer.reason == REASON_INSUFFICIENT_CONTEXT
    assert generator.prompts == []
    assert "2.1 Newton's second law" in answer.text


def test_conversation_is_recorded_and_fed_back(service, generator) -> None:
    service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page())

    service.ask_question("student-1", "chapter-2", SCOPE, "What does a net force change?")
    service.ask_question("student-1", "chapter-2", SCOPE, "And what is the force formula with mass?")

    turns = service.get_conversation("student-1", "chapter-2")
    assert [turn.role for turn in turns] == [Role.STUDENT, Role.TUTOR, Role.STUDENT, Role.TUTOR]
    assert "Student: What does a net force change?" in generator.prompts[-1]

    service.ask_question("student-1", "chapter-1", SCOPE, "What is velocity?")
    assert service.get_conversation("student-1", "chapter-2") == []

    service.reset_conversation("student-1", "chapter-1")
    assert service.get_conversation("student-1", "chapter-1") == []


def test_embedding_outage_degrades_to_retrieval_unavailable(index) -> None:
    backend = FlakyBackend(KeywordEmbeddingBackend(), failures=0)
    settings = make_settings()
    service = TutorService(
        settings=settings,
        embedder=make_embedder(backend),
        index=index,
        versions=InMemoryDocumentVersionStore(),
        generator=ScriptedGenerator(AssertionError("generator must not be called")),
    )
    service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page())
    backend.failures = 1000

    answer = service.ask_question("student-1", "chapter-2", None, "Is force mass times acceleration?")

    assert answer.reason == REASON_RETRIEVAL_UNAVAILABLE
    assert not answer.grounded
    assert len(service.get_conversation("student-1", "chapter-2")) == 2


def test_index_outage_degrades_to_retrieval_unavailable(embedder) -> None:
    class OfflineIndex(InMemoryVectorIndex):
        def query(self, *args, **kwargs):
            raise VectorStoreUnavailableError("index offline")

    service = TutorService(
        settings=make_settings(),
        embedder=embedder,
        index=OfflineIndex(),
        versions=InMemoryDocumentVersionStore(),
        generator=ScriptedGenerator("unused"),
    )

    answer = service.ask_question("student-1", "chapter-2", {"board": "CBSE", "unknown": "x"}, "What is force?")

    assert answer.reason == REASON_RETRIEVAL_UNAVAILABLE


def test_mapping_source_and_removal(service, index) -> None:
    payload = {"title": "Physics 9", "pages": [{"page_number": 1, "text": "Sound is a mechanical wave."}]}

    version = service.ingest_document("sound", "CBSE", "9", "physics", payload)

    assert index.count() == 1
    assert service.document_status("sound").state.value == "ready"
    assert service.remove_document("sound") == version
    assert index.count() == 0
    assert service.document_status("sound").state.value == "not_ingested"


def test_broken_generator_adapter_still_yields_an_answer(embedder, index) -> None:
    service = TutorService(
        settings=make_settings(),
        embedder=embedder,
        index=index,
        versions=InMemoryDocumentVersionStore(),
        generator=ScriptedGenerator(ConnectionResetError("socket closed")),
    )
    service.ingest_document("physics-9", "CBSE", "9", "physics", _laws_page())

    answer = service.ask_question("student-1", "chapter-2", SCOPE, "What is force in terms of mass and acceleration?")

    assert not answer.grounded
    assert answer.reason == REASON_GENERATION_UNAVAILABLE
    assert [turn.role for turn in service.get_conversation("student-1", "chapter-2")] == [Role.STUDENT, Role.TUTOR]
