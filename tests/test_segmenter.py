from __future__ import annotations

import pytest

from tutor.errors import EmptyDocumentError, SegmentationError, UnsegmentableDocumentError
from tutor.ingest.models import ExtractedDocument, ExtractedPage, UnitType
from tutor.ingest.segmenter import DEFAULT_SECTION_TITLE, Segmenter, SegmenterConfig

from conftest import physics_document

MOTION_PAGE = (
    "# Chapter 1: Motion\n\n"
    "## 1.1 Speed\n\n"
    "Speed is distance per time.\n\n"
    "v = d / t\n\n"
    "Figure 1.1 A car moving along a road\n\n"
    "Example 1.1 A car travels 100 m in 10 s. Find its speed.\n\n"
    "Solution: v = 100/10 = 10 m/s"
)


def _document(*pages: ExtractedPage, **kwargs) -> ExtractedDocument:
    return ExtractedDocument(document_id=kwargs.pop("document_id", "doc-1"), pages=list(pages), **kwargs)


def test_segment_types_and_structure() -> None:
    document = _document(ExtractedPage(page_number=4, text=MOTION_PAGE, image_refs=["fig1_1.png"]))

    units = Segmenter().segment(document)

    assert [unit.unit_type for unit in units] == [
        UnitType.PARAGRAPH,
        UnitType.FORMULA,
        UnitType.FIGURE_CAPTION,
        UnitType.EXAMPLE,
    ]
    assert {unit.chapter_id for unit in units} == {"chapter-1"}
    assert {unit.section_title for unit in units} == {"1.1 Speed"}
    assert all(unit.page_number == 4 for unit in units)
    assert [unit.ordinal for unit in units] == [0, 1, 2, 3]
    assert units[1].text == "v = d / t"
    assert units[2].image_refs == ("fig1_1.png",)
    assert "Solution" in units[3].text
    assert units[3].text.startswith("Example 1.1")


def test_worked_example_keeps_solution_with_problem() -> None:
    text = "Example 2 Find the force.\n\nSolution: F = m a\n\nF = 2 × 3 = 6 N\n\nThe next topic is friction."
    units = Segmenter().segment(_document(ExtractedPage(page_number=1, text=text)))

    example = units[0]
    assert example.unit_type is UnitType.EXAMPLE
    assert "F = 2 × 3 = 6 N" in example.text
    assert units[-1].unit_type is UnitType.PARAGRAPH
    assert units[-1].text == "The next topic is friction."


def test_display_math_block_is_a_formula_unit() -> None:
    text = "Kinetic energy is given below.\n\n$$\nE_k = \\frac{1}{2} m v^2\n$$"
    units = Segmenter().segment(_document(ExtractedPage(page_number=1, text=text)))

    assert units[-1].unit_type is UnitType.FORMULA
    assert units[-1].text == "E_k = \\frac{1}{2} m v^2"


def test_page_chapter_id_and_default_chapter() -> None:
    document = _document(
        ExtractedPage(page_number=1, text="Plants make food using light."),
        ExtractedPage(page_number=2, text="Chlorophyll absorbs light.", chapter_id="life-processes"),
        default_chapter_id="intro",
    )

    units = Segmenter().segment(document)

    assert units[0].chapter_id == "intro"
    assert units[0].section_title == DEFAULT_SECTION_TITLE
    assert units[1].chapter_id == "life-processes"


def test_document_id_is_the_fallback_chapter() -> None:
    units = Segmenter().segment(_document(ExtractedPage(page_number=1, text="Sound is a wave.")))
    assert units[0].chapter_id == "doc-1"


def test_empty_document_raises() -> None:
    with pytest.raises(EmptyDocumentError) as excinfo:
        Segmenter().segment(_document(ExtractedPage(page_number=1, text="   \n\n ")))
    assert excinfo.value.document_id == "doc-1"

    with pytest.raises(SegmentationError):
        Segmenter().segment(_document())


def test_headings_only_document_is_unsegmentable() -> None:
    document = _document(ExtractedPage(page_number=1, text="# Chapter 2: Light\n\n## Reflection"))
    with pytest.raises(UnsegmentableDocumentError):
        Segmenter().segment(document)


def test_long_paragraph_is_split_without_shared_text() -> None:
    text = " ".join(f"Sentence {number} explains how sound travels as a wave." for number in range(20))
    document = _document(ExtractedPage(page_number=1, text=text))

    units = Segmenter(SegmenterConfig(max_unit_chars=200)).segment(document)

    assert len(units) > 1
    assert all(len(unit.text) <= 200 for unit in units)
    rebuilt = " ".join(unit.text for unit in units)
    assert rebuilt.split() == text.split()


def test_segmentation_is_deterministic() -> None:
    first = Segmenter().segment(physics_document())
    second = Segmenter().segment(physics_document())

    assert [unit.unit_id for unit in first] == [unit.unit_id for unit in second]
    assert len({unit.unit_id for unit in first}) == len(first)


def test_repeated_paragraph_in_same_section_is_dropped() -> None:
    text = "Light travels in straight lines.\n\nLight travels in straight lines."
    units = Segmenter().segment(_document(ExtractedPage(page_number=1, text=text)))
    assert len(units) == 1


def test_leftover_images_attach_to_last_unit_of_page() -> None:
    document = _document(
        ExtractedPage(page_number=1, text="A ray diagram shows reflection.", image_refs=["ray.png"])
    )
    units = Segmenter().segment(document)
    assert units[-1].image_refs == ("ray.png",)


def test_markdown_image_binds_to_following_caption() -> None:
    text = "![ray](images/ray.png)\n\nFig. 3 Reflection at a plane mirror"
    units = Segmenter().segment(_document(ExtractedPage(page_number=1, text=text)))
    assert units[0].unit_type is UnitType.FIGURE_CAPTION
    assert units[0].image_refs == ("images/ray.png",)
