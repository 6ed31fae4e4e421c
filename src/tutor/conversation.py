"""Bounded per-student, per-chapter conversation history."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional, Tuple

from tutor.config import ConversationSettings

LOGGER = logging.getLogger(__name__)

SessionKey = Tuple[str, str]


class Role(str, Enum):
    STUDENT = "student"
    TUTOR = "tutor"


@dataclass(frozen=True, slots=True)
class Turn:
    role: Role
    text: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {"role": self.role.value, "text": self.text, "timestamp": self.timestamp}


@dataclass(slots=True)
class ConversationSession:
    student_id: str
    chapter_id: str
    turns: Deque[Turn] = field(default_factory=deque)

    @property
    def total_chars(self) -> int:
        return sum(len(turn.text) for turn in self.turns)


class ConversationStore:
    """Keyed store of ``(student_id, chapter_id) -> bounded turn sequence``.

    History is trimmed from the oldest end, a whole turn at a time, until both
    ``max_turns`` and ``max_chars`` hold; the newest turn is always retained.
    """

    def __init__(self, settings: ConversationSettings | None = None) -> None:
        self.settings = settings or ConversationSettings()
        self._sessions: Dict[SessionKey, ConversationSession] = {}
        self._active_chapter: Dict[str, str] = {}
        self._lock = threading.Lock()

    def activate(self, student_id: str, chapter_id: str) -> None:
        """Record the student's open chapter, dropping the session of the previous one."""

        with self._lock:
            previous = self._active_chapter.get(student_id)
            if previous is not None and previous != chapter_id:
                self._sessions.pop((student_id, previous), None)
                LOGGER.debug("Student %s switched from %s to %s", student_id, previous, chapter_id)
            self._active_chapter[student_id] = chapter_id

    def active_chapter(self, student_id: str) -> Optional[str]:
        with self._lock:
            return self._active_chapter.get(student_id)

    def append_turn(self, key: SessionKey, turn: Turn) -> None:
        student_id, chapter_id = key
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = ConversationSession(student_id=student_id, chapter_id=chapter_id)
                self._sessions[key] = session
            session.turns.append(turn)
            self._trim(session)

    def get_context(self, key: SessionKey) -> List[Turn]:
        with self._lock:
            session = self._sessions.get(key)
            return list(session.turns) if session else []

    def reset(self, key: SessionKey) -> None:
        with self._lock:
            self._sessions.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _trim(self, session: ConversationSession) -> None:
        max_turns = max(1, self.settings.max_turns)
        max_chars = self.settings.max_chars
        total_chars = session.total_chars
        while len(session.turns) > 1 and (
            len(session.turns) > max_turns or (max_chars > 0 and total_chars > max_chars)
        ):
            dropped = session.turns.popleft()
            total_chars -= len(dropped.text)


__all__ = ["ConversationSession", "ConversationStore", "Role", "SessionKey", "Turn"]
