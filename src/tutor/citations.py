"""Extraction and structural validation of citation markers in generated text."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from tutor.retriever import RetrievedSegment

SOURCE_MARKER_RE = re.compile(
    r"\[source:\s*(?P<chapter>[^|\]]+?)\s*\|\s*(?P<section>[^|\]]+?)\s*"
    r"(?:\|\s*(?:p\.|page|pg\.?)?\s*(?P<page>\d+)\s*)?\]",
    re.IGNORECASE,
)
LABEL_MARKER_RE = re.compile(r"\[(?P<labels>S\d+(?:\s*,\s*S\d+)*)\]", re.IGNORECASE)
_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([.,;:!?])")
_MULTI_SPACE_RE = re.compile(r"[ \t]{2,}")


@dataclass(frozen=True, slots=True)
class Citation:
    chapter_id: str
    section_title: str
    page_number: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "chapter_id": self.chapter_id,
            "section_title": self.section_title,
            "page_number": self.page_number,
        }


@dataclass(slots=True)
class CitationCheck:
    text: str
    citations: List[Citation] = field(default_factory=list)
    stripped: List[str] = field(default_factory=list)

    @property
    def all_valid(self) -> bool:
        return not self.stripped


def _key(chapter_id: str, section_title: str) -> Tuple[str, str]:
    return (" ".join(chapter_id.split()).casefold(), " ".join(section_title.split()).casefold())


def _tidy(text: str) -> str:
    text = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", text)
    text = _MULTI_SPACE_RE.sub(" ", text)
    return "\n".join(line.rstrip() for line in text.splitlines()).strip()


def validate_citations(
    text: str,
    sources: Mapping[str, RetrievedSegment],
    *,
    max_citations: int = 8,
) -> CitationCheck:
    """Keep markers that point at a supplied segment, strip every other one.

    ``sources`` maps prompt labels (``S1``, ``S2`` ...) to the segments that
    were shown to the generator. A ``[source: ...]`` marker is valid when its
    ``(chapter_id, section_title)`` pair belongs to one of those segments.
    """

    by_key: Dict[Tuple[str, str], List[RetrievedSegment]] = {}
    for segment in sources.values():
        by_key.setdefault(_key(segment.chapter_id, segment.section_title), []).append(segment)
    labels = {label.upper(): segment for label, segment in sources.items()}

    citations: List[Citation] = []
    stripped: List[str] = []

    def accept(segment: RetrievedSegment, page: Optional[int] = None) -> None:
        citation = Citation(
            chapter_id=segment.chapter_id,
            section_title=segment.section_title,
            page_number=page if page is not None else segment.page_number,
        )
        if citation not in citations:
            citations.append(citation)

    def replace_source(match: "re.Match[str]") -> str:
        candidates = by_key.get(_key(match.group("chapter"), match.group("section")))
        if not candidates:
            stripped.append(match.group(0))
            return ""
        page = int(match.group("page")) if match.group("page") else None
        matching_page = next((segment for segment in candidates if segment.page_number == page), None)
        accept(matching_page or candidates[0])
        return match.group(0)

    def replace_labels(match: "re.Match[str]") -> str:
        kept: List[str] = []
        for raw in match.group("labels").split(","):
            label = raw.strip().upper()
            segment = labels.get(label)
            if segment is None:
                stripped.append(f"[{label}]")
                continue
            accept(segment)
            kept.append(label)
        return f"[{', '.join(kept)}]" if kept else ""

    cleaned = SOURCE_MARKER_RE.sub(replace_source, text)
    cleaned = LABEL_MARKER_RE.sub(replace_labels, cleaned)
    return CitationCheck(
        text=_tidy(cleaned) if stripped else cleaned.strip(),
        citations=citations[: max(0, max_citations)],
        stripped=stripped,
    )


__all__ = ["Citation", "CitationCheck", "LABEL_MARKER_RE", "SOURCE_MARKER_RE", "validate_citations"]
