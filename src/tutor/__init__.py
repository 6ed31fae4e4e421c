"""Curriculum tutor: incremental ingestion and grounded question answering."""

__version__ = "0.1.0"
