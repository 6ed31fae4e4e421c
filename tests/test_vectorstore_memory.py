from __future__ import annotations

import math

import pytest

from tutor.config import IndexSettings
from tutor.errors import IndexWriteError
from tutor.vectorstore import (
    DimensionMismatchError,
    EmbeddingRecord,
    InMemoryVectorIndex,
    PersistentVectorIndex,
    VectorStoreUnavailableError,
    build_vector_index,
)


def _record(unit_id: str, similarity: float, *, document_id: str = "doc", **metadata) -> EmbeddingRecord:
    """Record whose cosine similarity with ``(1, 0)`` equals ``similarity``."""

    vector = (similarity, math.sqrt(max(0.0, 1.0 - similarity * similarity)))
    return EmbeddingRecord(
        unit_id=unit_id,
        vector=vector,
        text=f"text of {unit_id}",
        metadata={"document_id": document_id, "chapter_id": "ch-1", **metadata},
    )


def test_query_orders_by_cosine_similarity() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("low", 0.2), _record("high", 0.9), _record("mid", 0.5)])

    hits = index.query([1.0, 0.0], k=2)

    assert [hit.unit_id for hit in hits] == ["high", "mid"]
    assert hits[0].similarity == pytest.approx(0.9)
    assert hits[0].text == "text of high"


def test_query_applies_equality_filter_and_ignores_empty_values() -> None:
    index = InMemoryVectorIndex()
    index.upsert(
        [
            _record("cbse", 0.9, board="CBSE", grade="9"),
            _record("icse", 0.95, board="ICSE", grade="9"),
        ]
    )

    hits = index.query([1.0, 0.0], k=5, where={"board": "CBSE", "grade": "9", "subject": None})

    assert [hit.unit_id for hit in hits] == ["cbse"]


def test_upsert_replaces_by_unit_id() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("a", 0.1)])
    index.upsert([_record("a", 0.8)])

    assert index.count() == 1
    assert index.query([1.0, 0.0], k=1)[0].similarity == pytest.approx(0.8)


def test_dimension_mismatch_is_rejected_atomically() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("a", 0.5)])
    bad = EmbeddingRecord(unit_id="b", vector=(1.0, 0.0, 0.0), text="b", metadata={"document_id": "doc"})

    with pytest.raises(DimensionMismatchError) as excinfo:
        index.upsert([_record("c", 0.4), bad])

    assert isinstance(excinfo.value, IndexWriteError)
    assert excinfo.value.unit_id == "b"
    assert index.count() == 1


def test_query_with_wrong_dimension_is_unavailable() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("a", 0.5)])

    with pytest.raises(VectorStoreUnavailableError):
        index.query([1.0, 0.0, 0.0], k=1)


def test_delete_by_document_returns_removed_ids() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("a", 0.5, document_id="one"), _record("b", 0.5, document_id="two")])

    removed = index.delete_by_document("one")

    assert removed == ["a"]
    assert [record.unit_id for record in index.all_records()] == ["b"]
    assert index.delete_by_document("missing") == []


def test_update_metadata_keeps_vector() -> None:
    index = InMemoryVectorIndex()
    index.upsert([_record("a", 0.5, page_number=3)])

    index.update_metadata(["a"], [{"page_number": 4}])

    record = index.get(["a"])[0]
    assert record.metadata["page_number"] == 4
    assert record.vector == pytest.approx((0.5, math.sqrt(0.75)))

    with pytest.raises(IndexWriteError):
        index.update_metadata(["missing"], [{"page_number": 1}])


def test_persistent_index_survives_reload(tmp_path) -> None:
    index = PersistentVectorIndex(tmp_path, collection_name="units")
    index.upsert([_record("a", 0.7), _record("b", 0.2, document_id="other")])
    index.delete_by_unit_ids(["b"])

    reloaded = PersistentVectorIndex(tmp_path, collection_name="units")

    assert reloaded.count() == 1
    assert reloaded.dimension == 2
    assert reloaded.query([1.0, 0.0], k=1)[0].unit_id == "a"
    assert reloaded.data_path.name == "units.json"


def test_persistent_index_reports_corrupt_file(tmp_path) -> None:
    (tmp_path / "units.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(VectorStoreUnavailableError):
        PersistentVectorIndex(tmp_path, collection_name="units")


def test_build_vector_index_backends(tmp_path) -> None:
    assert isinstance(build_vector_index(IndexSettings(backend="memory")), InMemoryVectorIndex)
    local = build_vector_index(IndexSettings(backend="local", persist_dir=str(tmp_path)))
    assert isinstance(local, PersistentVectorIndex)
    with pytest.raises(ValueError):
        build_vector_index(IndexSettings(backend="nope"))
