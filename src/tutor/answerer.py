"""Grounded answer generation over retrieved curriculum segments."""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tutor.citations import Citation, validate_citations
from tutor.config import GenerationSettings
from tutor.conversation import Turn
from tutor.errors import GenerationError, GenerationRateLimited, GenerationTimeout
from tutor.ingest.language import LanguageDetector
from tutor.llm_provider import INSUFFICIENT_CONTEXT_SENTINEL, Generator, get_generator
from tutor.prompt_builder import (
    DEFAULT_LANGUAGE,
    build_prompt,
    generation_unavailable_message,
    insufficient_context_message,
)
from tutor.retriever import RetrievalResult, RetrievedSegment
from tutor.telemetry import (
    emit_citation_event,
    emit_exception,
    emit_inference_request,
    emit_inference_result,
)

LOGGER = logging.getLogger(__name__)

REASON_INSUFFICIENT_CONTEXT = "insufficient_context"
REASON_UNGROUNDED_CITATION = "ungrounded_citation"
REASON_NO_CITATIONS = "no_citations"
REASON_GENERATION_UNAVAILABLE = "generation_unavailable"
REASON_RETRIEVAL_UNAVAILABLE = "retrieval_unavailable"


@dataclass(slots=True)
class Answer:
    text: str
    language: str
    citations: List[Citation] = field(default_factory=list)
    grounded: bool = False
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "text": self.text,
            "language": self.language,
            "citations": [citation.to_dict() for citation in self.citations],
            "grounded": self.grounded,
            "reason": self.reason,
        }


def normalise_language(language: str | None) -> Optional[str]:
    if not language or not language.strip():
        return None
    return language.strip().lower().replace("_", "-").split("-")[0]


class GroundedAnswerer:
    """Turn retrieved segments into a citation-checked :class:`Answer`.

    The generator is never called when no segment survived retrieval, and a
    generator failure never escapes: it degrades to an ungrounded answer.
    """

    def __init__(
        self,
        generator: Generator | None = None,
        settings: GenerationSettings | None = None,
        *,
        language_detector: LanguageDetector | None = None,
    ) -> None:
        self._generator = generator
        self.settings = settings or GenerationSettings()
        self.language_detector = language_detector or LanguageDetector(DEFAULT_LANGUAGE)

    @property
    def generator(self) -> Generator:
        return self._generator or get_generator()

    def resolve_language(self, question: str, language: str | None) -> str:
        return normalise_language(language) or normalise_language(
            self.language_detector.detect_or_default(question)
        ) or DEFAULT_LANGUAGE

    def insufficient(
        self, language: str, related_topics: Sequence[str] = (), *, reason: str = REASON_INSUFFICIENT_CONTEXT
    ) -> Answer:
        if reason in {REASON_GENERATION_UNAVAILABLE, REASON_RETRIEVAL_UNAVAILABLE}:
            text = generation_unavailable_message(language, related_topics)
        else:
            text = insufficient_context_message(language, related_topics)
        return Answer(text=text, language=language, citations=[], grounded=False, reason=reason)

    def answer(
        self,
        question: str,
        retrieved: RetrievalResult | Sequence[RetrievedSegment],
        history: Sequence[Turn] = (),
        language: str | None = None,
        related_topics: Sequence[str] = (),
        *,
        req_id: str | None = None,
        session_id: str | None = None,
    ) -> Answer:
        language = self.resolve_language(question, language)
        segments = list(retrieved.segments if isinstance(retrieved, RetrievalResult) else retrieved)
        if not segments:
            return self.insufficient(language, related_topics)

        req_id = req_id or uuid.uuid4().hex
        bundle = build_prompt(question, segments, history=history, language=language)
        generator = self.generator
        started = time.perf_counter()
        try:
            generated = self._generate(generator, bundle.prompt, bundle.system, req_id, session_id, segments)
        except GenerationError as error:
            LOGGER.warning("Generation failed for request %s: %s", req_id, error)
            return self._unavailable(error, language, related_topics, req_id, session_id, started, generator)
        except Exception as error:
            # Adapters outside the GenerationError hierarchy.
            LOGGER.exception("Generator raised %s for request %s", type(error).__name__, req_id)
            return self._unavailable(error, language, related_topics, req_id, session_id, started, generator)

        if INSUFFICIENT_CONTEXT_SENTINEL in generated:
            answer = self.insufficient(language, related_topics)
            self._emit_result(req_id, session_id, started, generator, answer, fallback=True)
            return answer

        check = validate_citations(generated, bundle.sources, max_citations=self.settings.max_citations)
        emit_citation_event(
            req_id=req_id, session_id=session_id, stripped=check.stripped, accepted=len(check.citations)
        )
        if check.stripped:
            reason: Optional[str] = REASON_UNGROUNDED_CITATION
        elif not check.citations:
            reason = REASON_NO_CITATIONS
        else:
            reason = None
        answer = Answer(
            text=check.text,
            language=language,
            citations=check.citations,
            grounded=reason is None,
            reason=reason,
        )
        self._emit_result(req_id, session_id, started, generator, answer, fallback=False)
        return answer

    def _unavailable(
        self,
        error: BaseException,
        language: str,
        related_topics: Sequence[str],
        req_id: str,
        session_id: str | None,
        started: float,
        generator: Generator,
    ) -> Answer:
        emit_exception(module=f"{__name__}.generate", error=error, req_id=req_id, session_id=session_id)
        answer = self.insufficient(language, related_topics, reason=REASON_GENERATION_UNAVAILABLE)
        self._emit_result(req_id, session_id, started, generator, answer, fallback=True)
        return answer

    def _generate(
        self,
        generator: Generator,
        prompt: str,
        system: str,
        req_id: str,
        session_id: str | None,
        segments: Sequence[RetrievedSegment],
    ) -> str:
        retrying = Retrying(
            retry=retry_if_exception_type((GenerationTimeout, GenerationRateLimited)),
            stop=stop_after_attempt(max(1, self.settings.max_attempts)),
            wait=wait_exponential(
                multiplier=self.settings.backoff_seconds, max=self.settings.backoff_max_seconds
            ),
            before_sleep=lambda state: LOGGER.warning(
                "Generation attempt %s failed for request %s; retrying", state.attempt_number, req_id
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                emit_inference_request(
                    req_id=req_id,
                    session_id=session_id,
                    prompt_preview=prompt,
                    prompt_len=len(prompt),
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens,
                    attempt=attempt.retry_state.attempt_number,
                    sources=[segment.unit_id for segment in segments],
                )
                return generator.generate(
                    prompt,
                    system=system,
                    max_tokens=self.settings.max_tokens,
                    temperature=self.settings.temperature,
                )
        raise GenerationError("Generator produced no result")  # pragma: no cover - Retrying always yields

    @staticmethod
    def _emit_result(
        req_id: str,
        session_id: str | None,
        started: float,
        generator: Generator,
        answer: Answer,
        *,
        fallback: bool,
    ) -> None:
        emit_inference_result(
            req_id=req_id,
            session_id=session_id,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            model_used=generator.model_name,
            answer_preview=answer.text,
            fallback=fallback,
            grounded=answer.grounded,
            citations=len(answer.citations),
        )


__all__ = [
    "Answer",
    "GroundedAnswerer",
    "REASON_GENERATION_UNAVAILABLE",
    "REASON_INSUFFICIENT_CONTEXT",
    "REASON_NO_CITATIONS",
    "REASON_RETRIEVAL_UNAVAILABLE",
    "REASON_UNGROUNDED_CITATION",
    "normalise_language",
]
