"""Length-bounded splitting of prose that respects semantic boundaries."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterator, Tuple

_FALLBACK_SENTENCE_RE = re.compile(r"(.+?(?:[.!?](?=\s)|$))", re.DOTALL)
LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ChunkingConfig:
    max_chars: int
    overlap_chars: int = 0


class SemanticTextChunker:
    """Split text into pieces no longer than ``max_chars``.

    Breaks are placed, in order of preference, on paragraph breaks, sentence
    ends and word boundaries; a hard cut is used only when none of those
    appear in the window. Content units must not share text, so the
    segmenter runs this with ``overlap_chars=0``.
    """

    def __init__(self, config: ChunkingConfig) -> None:
        if config.max_chars <= 0:
            raise ValueError("max_chars must be a positive integer")
        if config.overlap_chars < 0:
            raise ValueError("overlap_chars must be a non-negative integer")
        self.config = config

    def split(self, text: str) -> Iterator[str]:
        for piece, _start, _end in self.split_with_offsets(text):
            yield piece

    def split_with_offsets(self, text: str) -> Iterator[Tuple[str, int, int]]:
        if not text:
            return
        max_chars = self.config.max_chars
        overlap_chars = self.config.overlap_chars
        text_length = len(text)
        start = 0
        while start < text_length:
            tentative_end = min(start + max_chars, text_length)
            chunk_end = self._find_semantic_break(text, start, tentative_end)
            if chunk_end <= start:
                chunk_end = tentative_end
            raw_chunk = text[start:chunk_end]
            if not raw_chunk.strip():
                start = chunk_end
                continue
            leading_ws = len(raw_chunk) - len(raw_chunk.lstrip())
            trailing_ws = len(raw_chunk) - len(raw_chunk.rstrip())
            final_start = start + leading_ws
            final_end = chunk_end - trailing_ws
            LOGGER.debug("Chunk offsets %s-%s", final_start, final_end)
            yield text[final_start:final_end], final_start, final_end
            if chunk_end >= text_length:
                break
            next_start = final_end - overlap_chars
            if next_start <= final_start:
                next_start = chunk_end
            start = max(next_start, start + 1)

    def _find_semantic_break(self, text: str, start: int, tentative_end: int) -> int:
        if tentative_end >= len(text):
            return len(text)
        segment = text[start:tentative_end]
        paragraph_break = segment.rfind("\n\n")
        if paragraph_break != -1 and paragraph_break >= self.config.max_chars // 3:
            return start + paragraph_break + 2
        sentence_break = self._find_sentence_break(segment)
        if sentence_break is not None and sentence_break >= self.config.max_chars // 4:
            return start + sentence_break
        word_break = segment.rfind(" ")
        if word_break != -1 and word_break >= self.config.max_chars // 4:
            return start + word_break
        return tentative_end

    @staticmethod
    def _find_sentence_break(segment: str) -> int | None:
        matches = [match for match in _FALLBACK_SENTENCE_RE.finditer(segment) if match.group(0).rstrip()[-1:] in ".!?"]
        if not matches:
            return None
        return matches[-1].end()
