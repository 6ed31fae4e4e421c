"""System of record for committed document versions and their units."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .models import ContentUnit, DocumentVersion

LOGGER = logging.getLogger(__name__)


class DocumentVersionStore(Protocol):
    def get_latest(self, document_id: str) -> Optional[DocumentVersion]:
        ...

    def get_units(self, document_id: str) -> List[ContentUnit]:
        ...

    def history(self, document_id: str) -> List[DocumentVersion]:
        ...

    def commit(self, version: DocumentVersion, units: Sequence[ContentUnit]) -> None:
        ...

    def remove(self, document_id: str) -> Optional[DocumentVersion]:
        ...

    def list_documents(self) -> List[str]:
        ...

    def chapter_topics(self, chapter_id: str, *, limit: int = 5) -> List[str]:
        ...


class InMemoryDocumentVersionStore:
    """Keeps every committed version and the unit list of the latest one."""

    def __init__(self) -> None:
        self._history: Dict[str, List[DocumentVersion]] = {}
        self._units: Dict[str, List[ContentUnit]] = {}
        self._lock = threading.RLock()

    def get_latest(self, document_id: str) -> Optional[DocumentVersion]:
        with self._lock:
            versions = self._history.get(document_id)
            return versions[-1] if versions else None

    def get_units(self, document_id: str) -> List[ContentUnit]:
        with self._lock:
            return list(self._units.get(document_id, []))

    def history(self, document_id: str) -> List[DocumentVersion]:
        with self._lock:
            return list(self._history.get(document_id, []))

    def commit(self, version: DocumentVersion, units: Sequence[ContentUnit]) -> None:
        unit_ids = tuple(unit.unit_id for unit in units)
        if unit_ids != tuple(version.unit_ids):
            raise ValueError("Version unit_ids must match the committed units")
        with self._lock:
            latest = self.get_latest(version.document_id)
            if latest is not None and version.version_number <= latest.version_number:
                raise ValueError(
                    f"Version {version.version_number} of {version.document_id} is not newer than "
                    f"{latest.version_number}"
                )
            history = dict(self._history)
            history[version.document_id] = history.get(version.document_id, []) + [version]
            committed_units = dict(self._units)
            committed_units[version.document_id] = list(units)
            self._swap(history, committed_units)
        LOGGER.debug("Committed %s v%s", version.document_id, version.version_number)

    def remove(self, document_id: str) -> Optional[DocumentVersion]:
        with self._lock:
            latest = self.get_latest(document_id)
            if latest is None:
                return None
            history = {key: value for key, value in self._history.items() if key != document_id}
            committed_units = {key: value for key, value in self._units.items() if key != document_id}
            self._swap(history, committed_units)
            return latest

    def list_documents(self) -> List[str]:
        with self._lock:
            return sorted(self._history)

    def chapter_topics(self, chapter_id: str, *, limit: int = 5) -> List[str]:
        """Distinct section titles of a chapter, in reading order."""

        topics: List[str] = []
        with self._lock:
            for units in self._units.values():
                for unit in units:
                    if unit.chapter_id != chapter_id or unit.section_title in topics:
                        continue
                    topics.append(unit.section_title)
                    if len(topics) >= limit:
                        return topics
        return topics

    def _swap(
        self, history: Dict[str, List[DocumentVersion]], units: Dict[str, List[ContentUnit]]
    ) -> None:
        # The new state only becomes visible once it is durable.
        self._persist(history, units)
        self._history = history
        self._units = units

    def _persist(
        self, history: Dict[str, List[DocumentVersion]], units: Dict[str, List[ContentUnit]]
    ) -> None:
        """Hook for durable subclasses."""


class JsonDocumentVersionStore(InMemoryDocumentVersionStore):
    """Version store persisted to a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        for document_id, entry in payload.items():
            self._history[document_id] = [DocumentVersion.from_dict(item) for item in entry.get("versions", [])]
            self._units[document_id] = [ContentUnit.from_dict(item) for item in entry.get("units", [])]
        LOGGER.info("Loaded %s document versions from %s", len(self._history), self._path)

    def _persist(
        self, history: Dict[str, List[DocumentVersion]], units: Dict[str, List[ContentUnit]]
    ) -> None:
        payload = {
            document_id: {
                "versions": [version.to_dict() for version in versions],
                "units": [unit.to_dict() for unit in units.get(document_id, [])],
            }
            for document_id, versions in history.items()
        }
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)


__all__ = ["DocumentVersionStore", "InMemoryDocumentVersionStore", "JsonDocumentVersionStore"]
