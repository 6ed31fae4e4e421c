"""Language detection helpers."""
from __future__ import annotations

import logging
import re
from typing import Optional

from langdetect import DetectorFactory, LangDetectException, detect

LOGGER = logging.getLogger(__name__)
DetectorFactory.seed = 0

DEFAULT_LANGUAGE = "en"
_MIN_RELIABLE_CHARS = 12
_DEVANAGARI_RE = re.compile(r"[ऀ-ॿ]")


class LanguageDetector:
    """Wraps langdetect providing a robust API."""

    def __init__(self, default: str = DEFAULT_LANGUAGE) -> None:
        self.default = default

    def detect(self, text: str) -> Optional[str]:
        cleaned = text.strip()
        if not cleaned:
            return None
        if _DEVANAGARI_RE.search(cleaned):
            return "hi"
        if len(cleaned) < _MIN_RELIABLE_CHARS:
            return None
        try:
            language = detect(cleaned)
            LOGGER.debug("Detected language: %s", language)
            return language
        except LangDetectException:
            LOGGER.info("Unable to determine language for text of length %s", len(text))
            return None

    def detect_or_default(self, text: str) -> str:
        return self.detect(text) or self.default
