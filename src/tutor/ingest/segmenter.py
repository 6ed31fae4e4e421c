"""Split extracted textbook pages into typed content units."""
from __future__ import annotations

import dataclasses
import logging
import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from tutor.errors import EmptyDocumentError, UnsegmentableDocumentError

from .chunking import ChunkingConfig, SemanticTextChunker
from .models import ContentUnit, ExtractedDocument, ExtractedPage, UnitType
from .normalization import normalize_text

LOGGER = logging.getLogger(__name__)

DEFAULT_SECTION_TITLE = "General"

_CHAPTER_MD_RE = re.compile(r"^#\s+(?P<title>\S.*)$")
_CHAPTER_WORD_RE = re.compile(
    r"^(?:#\s+)?chapter\s+(?P<number>\d+|[ivxlc]+)\b[\s:.\-–]*(?P<title>.*)$",
    re.IGNORECASE,
)
_SECTION_MD_RE = re.compile(r"^#{2,6}\s+(?P<title>\S.*)$")
_SECTION_NUMBERED_RE = re.compile(r"^(?P<number>\d+(?:\.\d+)+)\.?\s+(?P<title>[A-Z][^.?!]{0,80})$")
_IMAGE_RE = re.compile(r"^!\[[^\]]*\]\((?P<ref>[^)\s]+)[^)]*\)$")
_FIGURE_RE = re.compile(r"^(?:fig\.?|figure)\s*\d+(?:[.\-]\d+)*\b", re.IGNORECASE)
_EXAMPLE_RE = re.compile(r"^(?:worked\s+)?(?:example|illustration)\s*\d+(?:\.\d+)*\b", re.IGNORECASE)
_SOLUTION_RE = re.compile(r"^(?:solution|sol\.|answer|ans\.)", re.IGNORECASE)
_RELATION_RE = re.compile(r"[=≈∝≤≥→]")
_LONG_WORD_RE = re.compile(r"[^\W\d_]{4,}")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _slugify(value: str) -> str:
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def _looks_like_formula(line: str) -> bool:
    stripped = line.strip()
    if not stripped or len(stripped) > 160 or stripped.endswith("?"):
        return False
    if not _RELATION_RE.search(stripped):
        return False
    return len(_LONG_WORD_RE.findall(stripped)) <= 4


@dataclass(slots=True)
class _Block:
    kind: str
    text: str = ""
    title: str = ""
    number: Optional[str] = None


@dataclass(slots=True)
class SegmenterConfig:
    max_unit_chars: int = 1200


@dataclass(slots=True)
class _Cursor:
    """Structural position while walking the document in reading order."""

    chapter_id: str
    chapter_title: Optional[str] = None
    section_title: str = DEFAULT_SECTION_TITLE
    ordinal: int = 0
    units: List[ContentUnit] = field(default_factory=list)


class Segmenter:
    """Turn an :class:`ExtractedDocument` into ordered :class:`ContentUnit` objects."""

    def __init__(self, config: Optional[SegmenterConfig] = None) -> None:
        self.config = config or SegmenterConfig()
        self._chunker = SemanticTextChunker(ChunkingConfig(max_chars=self.config.max_unit_chars))

    def segment(self, document: ExtractedDocument) -> List[ContentUnit]:
        if not document.pages or not document.has_text:
            raise EmptyDocumentError(
                f"Document {document.document_id} contains no text",
                document_id=document.document_id,
            )

        cursor = _Cursor(chapter_id=document.default_chapter_id or document.document_id)
        for page in document.pages:
            self._segment_page(document, page, cursor)

        units = self._drop_duplicate_hashes(cursor.units)
        if not units:
            raise UnsegmentableDocumentError(
                f"Document {document.document_id} has text but yielded no content units",
                document_id=document.document_id,
            )
        LOGGER.info("Segmented document %s into %s units", document.document_id, len(units))
        return units

    def _segment_page(self, document: ExtractedDocument, page: ExtractedPage, cursor: _Cursor) -> None:
        if page.chapter_id and page.chapter_id != cursor.chapter_id:
            cursor.chapter_id = page.chapter_id
            cursor.chapter_title = None
            cursor.section_title = DEFAULT_SECTION_TITLE

        page_start = len(cursor.units)
        pending_images: List[str] = []
        page_images = list(page.image_refs)
        open_example: List[str] | None = None
        example_has_solution = False

        def flush_example() -> None:
            nonlocal open_example, example_has_solution
            if open_example:
                self._emit_prose(document, page, cursor, "\n\n".join(open_example), UnitType.EXAMPLE)
            open_example = None
            example_has_solution = False

        for block in self._blocks(normalize_text(page.text)):
            if open_example is not None and block.kind == "paragraph":
                if _SOLUTION_RE.match(block.text):
                    open_example.append(block.text)
                    example_has_solution = True
                    continue
                if example_has_solution and self._is_formula_block(block.text):
                    open_example.append(block.text)
                    continue
            if open_example is not None and block.kind == "formula" and example_has_solution:
                open_example.append(block.text)
                continue
            flush_example()

            if block.kind == "chapter":
                cursor.chapter_id = page.chapter_id or self._chapter_id(block)
                cursor.chapter_title = block.title or None
                cursor.section_title = block.title or DEFAULT_SECTION_TITLE
            elif block.kind == "section":
                cursor.section_title = block.title
            elif block.kind == "image":
                pending_images.append(block.text)
            elif block.kind == "formula":
                self._emit(document, page, cursor, block.text, UnitType.FORMULA)
            elif _EXAMPLE_RE.match(block.text):
                open_example = [block.text]
            elif _FIGURE_RE.match(block.text):
                refs = pending_images or page_images[:1]
                if not pending_images and page_images:
                    page_images.pop(0)
                self._emit(document, page, cursor, block.text, UnitType.FIGURE_CAPTION, tuple(refs))
                pending_images = []
            elif self._is_formula_block(block.text):
                self._emit(document, page, cursor, block.text, UnitType.FORMULA)
            else:
                self._emit_prose(document, page, cursor, block.text, UnitType.PARAGRAPH)
        flush_example()

        leftovers = pending_images + page_images
        if leftovers and len(cursor.units) > page_start:
            last = cursor.units[-1]
            cursor.units[-1] = dataclasses.replace(last, image_refs=last.image_refs + tuple(leftovers))

    def _emit_prose(
        self,
        document: ExtractedDocument,
        page: ExtractedPage,
        cursor: _Cursor,
        text: str,
        unit_type: UnitType,
    ) -> None:
        for piece in self._chunker.split(text):
            self._emit(document, page, cursor, piece, unit_type)

    def _emit(
        self,
        document: ExtractedDocument,
        page: ExtractedPage,
        cursor: _Cursor,
        text: str,
        unit_type: UnitType,
        image_refs: tuple[str, ...] = (),
    ) -> None:
        stripped = text.strip()
        if not stripped:
            return
        unit = ContentUnit.create(
            document_id=document.document_id,
            chapter_id=cursor.chapter_id,
            section_title=cursor.section_title,
            page_number=page.page_number,
            unit_type=unit_type,
            text=stripped,
            image_refs=image_refs,
            ordinal=cursor.ordinal,
        )
        cursor.units.append(unit)
        cursor.ordinal += 1

    @staticmethod
    def _chapter_id(block: _Block) -> str:
        if block.number:
            return f"chapter-{block.number.lower()}"
        return _slugify(block.title) or "chapter"

    @staticmethod
    def _is_formula_block(text: str) -> bool:
        lines = [line for line in text.splitlines() if line.strip()]
        return bool(lines) and all(_looks_like_formula(line) for line in lines)

    @staticmethod
    def _drop_duplicate_hashes(units: List[ContentUnit]) -> List[ContentUnit]:
        seen: set[str] = set()
        unique: List[ContentUnit] = []
        for unit in units:
            if unit.content_hash in seen:
                LOGGER.debug("Dropping duplicate unit %s on page %s", unit.unit_id, unit.page_number)
                continue
            seen.add(unit.content_hash)
            unique.append(unit)
        return unique

    @staticmethod
    def _blocks(text: str) -> Iterator[_Block]:
        """Yield headings, images, display formulas and blank-line separated paragraphs."""

        buffer: List[str] = []
        formula: List[str] | None = None
        closing = ""

        def flush() -> Iterator[_Block]:
            if buffer:
                yield _Block(kind="paragraph", text="\n".join(buffer))
                buffer.clear()

        for raw_line in text.split("\n"):
            line = raw_line.strip()

            if formula is not None:
                if line.endswith(closing):
                    formula.append(line[: -len(closing)].rstrip())
                    body = "\n".join(part for part in formula if part)
                    if body:
                        yield _Block(kind="formula", text=body)
                    formula = None
                else:
                    formula.append(line)
                continue

            if not line:
                yield from flush()
                continue

            if line.startswith("$$") or line.startswith("\\["):
                yield from flush()
                opening, closing = ("$$", "$$") if line.startswith("$$") else ("\\[", "\\]")
                rest = line[len(opening):]
                if rest.rstrip().endswith(closing):
                    body = rest.rstrip()[: -len(closing)].strip()
                    if body:
                        yield _Block(kind="formula", text=body)
                else:
                    formula = [rest.strip()]
                continue

            chapter_match = _CHAPTER_WORD_RE.match(line)
            if chapter_match and len(line) <= 120 and not line.endswith("."):
                yield from flush()
                yield _Block(
                    kind="chapter",
                    title=chapter_match.group("title").strip() or line.lstrip("# ").strip(),
                    number=chapter_match.group("number"),
                )
                continue
            section_match = _SECTION_MD_RE.match(line)
            if section_match:
                yield from flush()
                yield _Block(kind="section", title=section_match.group("title").strip())
                continue
            chapter_md = _CHAPTER_MD_RE.match(line)
            if chapter_md:
                yield from flush()
                yield _Block(kind="chapter", title=chapter_md.group("title").strip())
                continue
            if not buffer and _SECTION_NUMBERED_RE.match(line):
                yield from flush()
                yield _Block(kind="section", title=line)
                continue
            image_match = _IMAGE_RE.match(line)
            if image_match:
                yield from flush()
                yield _Block(kind="image", text=image_match.group("ref"))
                continue
            if _FIGURE_RE.match(line) or _EXAMPLE_RE.match(line):
                yield from flush()
            buffer.append(line)

        if formula:
            body = "\n".join(part for part in formula if part)
            if body:
                yield _Block(kind="formula", text=body)
        yield from flush()


__all__ = ["DEFAULT_SECTION_TITLE", "Segmenter", "SegmenterConfig"]
