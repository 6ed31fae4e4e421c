"""Exception hierarchy shared by the ingestion and query paths."""
from __future__ import annotations


class TutorError(Exception):
    """Base class for errors raised by the tutor core."""


class IngestionError(TutorError):
    """Raised when an ingestion run cannot complete.

    The previous :class:`~tutor.ingest.models.DocumentVersion` stays
    authoritative whenever this is raised.
    """

    def __init__(
        self,
        message: str,
        *,
        document_id: str | None = None,
        unit_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.unit_id = unit_id
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, str | None]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "document_id": self.document_id,
            "unit_id": self.unit_id,
        }


class SegmentationError(IngestionError):
    """The document yields no usable content units."""


class EmptyDocumentError(SegmentationError):
    """The extracted document carries no text at all."""


class UnsegmentableDocumentError(SegmentationError):
    """The document has text, but none of it forms a content unit."""


class EmbeddingError(IngestionError):
    """Embedding failed after exhausting retries."""


class IndexWriteError(IngestionError):
    """The vector index rejected an upsert, delete or metadata update."""


class IngestionInProgressError(IngestionError):
    """Another ingestion run for the same document is active."""


class GenerationError(TutorError):
    """The external text generator failed."""


class GenerationTimeout(GenerationError):
    """The generator did not answer within the configured timeout."""


class GenerationRateLimited(GenerationError):
    """The generator rejected the call because of rate limiting."""


__all__ = [
    "EmbeddingError",
    "EmptyDocumentError",
    "GenerationError",
    "GenerationRateLimited",
    "GenerationTimeout",
    "IndexWriteError",
    "IngestionError",
    "IngestionInProgressError",
    "SegmentationError",
    "TutorError",
    "UnsegmentableDocumentError",
]
