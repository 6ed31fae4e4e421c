"""Utilities for constructing grounded tutoring prompts and fixed replies."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Sequence

from tutor.conversation import Role, Turn
from tutor.retriever import RetrievedSegment
from tutor.telemetry import emit_prompt_event

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
DEFAULT_LANGUAGE = "en"
_LANGUAGE_RE = re.compile(r"[a-z]{2,3}")


@lru_cache(maxsize=None)
def _load_template(language: str, name: str) -> str:
    """Read and trim a template, falling back to the English variant."""

    if not _LANGUAGE_RE.fullmatch(language or ""):
        language = DEFAULT_LANGUAGE
    path = _PROMPTS_DIR / language / name
    if not path.exists():
        path = _PROMPTS_DIR / DEFAULT_LANGUAGE / name
    return path.read_text(encoding="utf-8").strip()


def system_prompt() -> str:
    return _load_template(DEFAULT_LANGUAGE, "system.txt")


def source_label(position: int) -> str:
    return f"S{position}"


@dataclass(slots=True)
class PromptBundle:
    system: str
    prompt: str
    sources: Dict[str, RetrievedSegment] = field(default_factory=dict)


def format_source(label: str, segment: RetrievedSegment) -> str:
    header = (
        f"[{label}] chapter: {segment.chapter_id} | section: {segment.section_title} | "
        f"p. {segment.page_number} | {segment.unit_type}"
    )
    return f"{header}\n{segment.text.strip()}"


def format_history(turns: Sequence[Turn]) -> str:
    lines: List[str] = []
    for turn in turns:
        speaker = "Student" if turn.role is Role.STUDENT else "Tutor"
        lines.append(f"{speaker}: {turn.text.strip()}")
    return "\n".join(lines)


def build_prompt(
    question: str,
    segments: Sequence[RetrievedSegment],
    *,
    history: Sequence[Turn] = (),
    language: str = DEFAULT_LANGUAGE,
) -> PromptBundle:
    """Compose the prompt that presents ``segments`` as the only factual source."""

    if question is None:
        raise ValueError("question must not be None")

    sources: Dict[str, RetrievedSegment] = {}
    blocks: List[str] = []
    for position, segment in enumerate(segments, start=1):
        label = source_label(position)
        sources[label] = segment
        blocks.append(format_source(label, segment))

    sections = ["Sources:\n" + "\n\n".join(blocks)]
    if history:
        sections.append("Conversation so far:\n" + format_history(history))
    sections.append(_load_template(DEFAULT_LANGUAGE, "user.md").format(question=question.strip(), language=language))
    prompt = "\n\n".join(sections).strip()

    system = system_prompt()
    emit_prompt_event(
        system_prompt=system,
        sources=[segment.unit_id for segment in segments],
        context_chars=sum(len(block) for block in blocks),
        history_turns=len(history),
    )
    return PromptBundle(system=system, prompt=prompt, sources=sources)


def insufficient_context_message(language: str, related_topics: Sequence[str] = ()) -> str:
    message = _load_template(language, "insufficient.txt")
    topics = [topic for topic in related_topics if topic]
    if topics:
        message = f"{message} {_load_template(language, 'related.txt').format(topics=', '.join(topics))}"
    return message


def generation_unavailable_message(language: str, related_topics: Sequence[str] = ()) -> str:
    message = _load_template(language, "unavailable.txt")
    topics = [topic for topic in related_topics if topic]
    if topics:
        message = f"{message} {_load_template(language, 'related.txt').format(topics=', '.join(topics))}"
    return message


__all__ = [
    "DEFAULT_LANGUAGE",
    "PromptBundle",
    "build_prompt",
    "format_history",
    "format_source",
    "generation_unavailable_message",
    "insufficient_context_message",
    "source_label",
    "system_prompt",
]
