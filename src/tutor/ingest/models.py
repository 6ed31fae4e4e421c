"""Data models used by the ingestion pipeline."""
from __future__ import annotations

import hashlib
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple


class UnitType(str, Enum):
    PARAGRAPH = "paragraph"
    FORMULA = "formula"
    EXAMPLE = "example"
    FIGURE_CAPTION = "figure_caption"


def content_hash(text: str, unit_type: UnitType | str, section_title: str) -> str:
    """Return the stable change-detection hash of a content unit."""

    kind = unit_type.value if isinstance(unit_type, UnitType) else str(unit_type)
    digest = hashlib.sha256()
    for part in (kind, section_title, text):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


def make_unit_id(document_id: str, unit_hash: str) -> str:
    return uuid.uuid5(uuid.NAMESPACE_URL, f"{document_id}:{unit_hash}").hex


@dataclass(slots=True)
class ExtractedPage:
    """Text of one page as delivered by the extraction service."""

    page_number: int
    text: str
    chapter_id: Optional[str] = None
    image_refs: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ExtractedDocument:
    """Already-extracted document handed to the segmenter."""

    document_id: str
    pages: List[ExtractedPage]
    board: str = ""
    grade: str = ""
    subject: str = ""
    title: Optional[str] = None
    default_chapter_id: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return any(page.text.strip() for page in self.pages)


@dataclass(frozen=True, slots=True)
class ContentUnit:
    """Smallest retrievable slice of ingested curriculum text."""

    unit_id: str
    document_id: str
    chapter_id: str
    section_title: str
    page_number: int
    unit_type: UnitType
    text: str
    content_hash: str
    image_refs: Tuple[str, ...] = ()
    ordinal: int = 0

    @classmethod
    def create(
        cls,
        *,
        document_id: str,
        chapter_id: str,
        section_title: str,
        page_number: int,
        unit_type: UnitType,
        text: str,
        image_refs: Tuple[str, ...] = (),
        ordinal: int = 0,
    ) -> "ContentUnit":
        unit_hash = content_hash(text, unit_type, section_title)
        return cls(
            unit_id=make_unit_id(document_id, unit_hash),
            document_id=document_id,
            chapter_id=chapter_id,
            section_title=section_title,
            page_number=page_number,
            unit_type=unit_type,
            text=text,
            content_hash=unit_hash,
            image_refs=tuple(image_refs),
            ordinal=ordinal,
        )

    @property
    def identity_key(self) -> Tuple[str, str, int]:
        """Position-independent key used to match units across versions."""

        return (self.chapter_id, self.section_title, self.page_number)

    def citation_fields(self) -> Dict[str, object]:
        """Fields a citation or caption depends on; reading order is not one of them."""

        return {
            "chapter_id": self.chapter_id,
            "section_title": self.section_title,
            "page_number": self.page_number,
            "image_refs": self.image_refs,
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "unit_id": self.unit_id,
            "document_id": self.document_id,
            "chapter_id": self.chapter_id,
            "section_title": self.section_title,
            "page_number": self.page_number,
            "unit_type": self.unit_type.value,
            "text": self.text,
            "content_hash": self.content_hash,
            "image_refs": list(self.image_refs),
            "ordinal": self.ordinal,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "ContentUnit":
        return cls(
            unit_id=str(payload["unit_id"]),
            document_id=str(payload["document_id"]),
            chapter_id=str(payload["chapter_id"]),
            section_title=str(payload["section_title"]),
            page_number=int(payload["page_number"]),  # type: ignore[arg-type]
            unit_type=UnitType(str(payload["unit_type"])),
            text=str(payload["text"]),
            content_hash=str(payload["content_hash"]),
            image_refs=tuple(payload.get("image_refs") or ()),  # type: ignore[arg-type]
            ordinal=int(payload.get("ordinal", 0)),  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class DocumentVersion:
    """Committed record of which units make up a document."""

    document_id: str
    board: str
    grade: str
    subject: str
    version_number: int
    unit_ids: Tuple[str, ...]
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "document_id": self.document_id,
            "board": self.board,
            "grade": self.grade,
            "subject": self.subject,
            "version_number": self.version_number,
            "unit_ids": list(self.unit_ids),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, object]) -> "DocumentVersion":
        return cls(
            document_id=str(payload["document_id"]),
            board=str(payload.get("board", "")),
            grade=str(payload.get("grade", "")),
            subject=str(payload.get("subject", "")),
            version_number=int(payload["version_number"]),  # type: ignore[arg-type]
            unit_ids=tuple(str(item) for item in payload.get("unit_ids", [])),  # type: ignore[union-attr]
            created_at=float(payload.get("created_at", 0.0)),  # type: ignore[arg-type]
        )
