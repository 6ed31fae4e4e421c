from __future__ import annotations

import pytest

from tutor.answerer import (
    REASON_GENERATION_UNAVAILABLE,
    REASON_INSUFFICIENT_CONTEXT,
    REASON_NO_CITATIONS,
    REASON_UNGROUNDED_CITATION,
    GroundedAnswerer,
    normalise_language,
)
from tutor.config import GenerationSettings
from tutor.errors import GenerationRateLimited, GenerationTimeout
from tutor.llm_provider import GeneratorStub
from tutor.retriever import RetrievalResult, RetrievedSegment

from conftest import ScriptedGenerator


def _segment(unit_id: str = "u1", section: str = "1.1 Speed and velocity") -> RetrievedSegment:
    return RetrievedSegment(
        unit_id=unit_id,
        similarity_score=0.8,
        chapter_id="chapter-1",
        is_current_chapter=True,
        section_title=section,
        page_number=1,
        text="Velocity is speed in a given direction.",
    )


def _answerer(generator, **settings) -> GroundedAnswerer:
    values = {"backoff_seconds": 0, "backoff_max_seconds": 0}
    values.update(settings)
    return GroundedAnswerer(generator, GenerationSettings(**values))


def test_grounded_answer_with_valid_citation() -> None:
    generator = ScriptedGenerator("Velocity is speed with a direction [S1].")

    answer = _answerer(generator).answer("What is velocity?", [_segment()], language="en")

    assert answer.grounded
    assert answer.reason is None
    assert [citation.section_title for citation in answer.citations] == ["1.1 Speed and velocity"]
    assert "Velocity is speed in a given direction." in generator.prompts[0]
    assert "INSUFFICIENT_CONTEXT" in generator.systems[0]


def test_empty_retrieval_never_calls_generator() -> None:
    generator = ScriptedGenerator(AssertionError("generator must not be called"))

    answer = _answerer(generator).answer("What is velocity?", RetrievalResult(), language="en")

    assert not answer.grounded
    assert answer.reason == REASON_INSUFFICIENT_CONTEXT
    assert answer.citations == []
    assert generator.prompts == []


def test_related_topics_are_suggested() -> None:
    answer = _answerer(ScriptedGenerator("unused")).answer(
        "What is velocity?", [], language="en", related_topics=["Speed", "Acceleration"]
    )

    assert "Speed, Acceleration" in answer.text


def test_invented_citation_is_flagged_ungrounded() -> None:
    generator = ScriptedGenerator("Force is mass times acceleration [source: chapter-2 | Laws | p. 9].")

    answer = _answerer(generator).answer("What is force?", [_segment()], language="en")

    assert not answer.grounded
    assert answer.reason == REASON_UNGROUNDED_CITATION
    assert "chapter-2" not in answer.text


def test_answer_without_citations_is_not_grounded() -> None:
    answer = _answerer(ScriptedGenerator("Velocity is speed.")).answer("What?", [_segment()], language="en")

    assert not answer.grounded
    assert answer.reason == REASON_NO_CITATIONS


def test_generator_sentinel_becomes_insufficient_answer() -> None:
    answer = _answerer(ScriptedGenerator("INSUFFICIENT_CONTEXT")).answer(
        "What is love?", [_segment()], language="en"
    )

    assert answer.reason == REASON_INSUFFICIENT_CONTEXT
    assert not answer.grounded


def test_generator_failure_degrades_to_unavailable_answer() -> None:
    answer = _answerer(GeneratorStub()).answer("What is velocity?", [_segment()], language="en")

    assert not answer.grounded
    assert answer.reason == REASON_GENERATION_UNAVAILABLE
    assert answer.text


@pytest.mark.parametrize("error", [ConnectionResetError("socket closed"), KeyError("response")])
def test_unexpected_generator_errors_degrade_without_retry(error) -> None:
    generator = ScriptedGenerator(error)

    answer = _answerer(generator, max_attempts=3).answer("What is velocity?", [_segment()], language="en")

    assert not answer.grounded
    assert answer.citations == []
    assert answer.reason == REASON_GENERATION_UNAVAILABLE
    assert len(generator.prompts) == 1


def test_transient_generator_errors_are_retried() -> None:
    generator = ScriptedGenerator(
        GenerationTimeout("slow"),
        GenerationRateLimited("429"),
        "Velocity has direction [S1].",
    )

    answer = _answerer(generator, max_attempts=3).answer("What is velocity?", [_segment()], language="en")

    assert answer.grounded
    assert len(generator.prompts) == 3


def test_retries_are_bounded() -> None:
    generator = ScriptedGenerator(GenerationTimeout("slow"))

    answer = _answerer(generator, max_attempts=2).answer("What is velocity?", [_segment()], language="en")

    assert answer.reason == REASON_GENERATION_UNAVAILABLE
    assert len(generator.prompts) == 2


def test_language_falls_back_to_detection_and_hindi_templates() -> None:
    answerer = _answerer(ScriptedGenerator("unused"))

    answer = answerer.answer("वेग क्या होता है?", [])

    assert answer.language == "hi"
    assert answer.text != answerer.insufficient("en").text


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("en-US", "en"), ("HI_in", "hi"), ("  ", None), (None, None)],
)
def test_normalise_language(raw, expected) -> None:
    assert normalise_language(raw) == expected
