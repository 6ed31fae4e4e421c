from __future__ import annotations

from tutor.config import ConversationSettings
from tutor.conversation import ConversationStore, Role, Turn


def _store(max_turns: int = 10, max_chars: int = 4000) -> ConversationStore:
    return ConversationStore(ConversationSettings(max_turns=max_turns, max_chars=max_chars))


def test_turns_are_kept_in_order_per_chapter() -> None:
    store = _store()
    key = ("s1", "ch-1")
    store.append_turn(key, Turn(role=Role.STUDENT, text="What is speed?"))
    store.append_turn(key, Turn(role=Role.TUTOR, text="Distance per time."))

    assert [turn.role for turn in store.get_context(key)] == [Role.STUDENT, Role.TUTOR]
    assert store.get_context(("s1", "ch-2")) == []
    assert store.get_context(("s2", "ch-1")) == []


def test_oldest_turns_are_dropped_over_turn_limit() -> None:
    store = _store(max_turns=3)
    key = ("s1", "ch-1")
    for position in range(5):
        store.append_turn(key, Turn(role=Role.STUDENT, text=f"question {position}"))

    assert [turn.text for turn in store.get_context(key)] == ["question 2", "question 3", "question 4"]


def test_character_budget_trims_whole_turns_but_keeps_newest() -> None:
    store = _store(max_chars=20)
    key = ("s1", "ch-1")
    store.append_turn(key, Turn(role=Role.STUDENT, text="a" * 12))
    store.append_turn(key, Turn(role=Role.TUTOR, text="b" * 12))

    assert [turn.text for turn in store.get_context(key)] == ["b" * 12]

    store.append_turn(key, Turn(role=Role.STUDENT, text="c" * 50))
    assert [turn.text for turn in store.get_context(key)] == ["c" * 50]


def test_switching_chapter_clears_previous_session() -> None:
    store = _store()
    store.activate("s1", "ch-1")
    store.append_turn(("s1", "ch-1"), Turn(role=Role.STUDENT, text="hello"))

    store.activate("s1", "ch-1")
    assert len(store.get_context(("s1", "ch-1"))) == 1

    store.activate("s1", "ch-2")
    assert store.get_context(("s1", "ch-1")) == []
    assert store.active_chapter("s1") == "ch-2"


def test_reset_drops_one_session_only() -> None:
    store = _store()
    store.append_turn(("s1", "ch-1"), Turn(role=Role.STUDENT, text="one"))
    store.append_turn(("s2", "ch-1"), Turn(role=Role.STUDENT, text="two"))

    store.reset(("s1", "ch-1"))

    assert store.get_context(("s1", "ch-1")) == []
    assert len(store) == 1


def test_turn_serialises_role_value() -> None:
    turn = Turn(role=Role.TUTOR, text="ok", timestamp=1.5)
    assert turn.to_dict() == {"role": "tutor", "text": "ok", "timestamp": 1.5}
