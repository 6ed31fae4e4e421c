"""Segmentation, versioning and ingestion of extracted curriculum documents."""

from .models import ContentUnit, DocumentVersion, ExtractedDocument, ExtractedPage, UnitType

__all__ = ["ContentUnit", "DocumentVersion", "ExtractedDocument", "ExtractedPage", "UnitType"]
