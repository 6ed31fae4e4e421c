from tutor.conversation import Role, Turn
from tutor.prompt_builder import (
    build_prompt,
    generation_unavailable_message,
    insufficient_context_message,
    system_prompt,
)
from tutor.retriever import RetrievedSegment


def _segment(unit_id: str, section: str, text: str) -> RetrievedSegment:
    return RetrievedSegment(
        unit_id=unit_id,
        similarity_score=0.7,
        chapter_id="chapter-1",
        is_current_chapter=True,
        section_title=section,
        page_number=3,
        unit_type="formula",
        text=text,
    )


def test_build_prompt_labels_sources_and_keeps_formulas_verbatim():
    segments = [_segment("u1", "Speed", "v = d / t"), _segment("u2", "Acceleration", "a = (v - u) / t")]

    bundle = build_prompt("What is acceleration?", segments, language="en")

    assert list(bundle.sources) == ["S1", "S2"]
    assert bundle.sources["S2"].unit_id == "u2"
    assert "[S1] chapter: chapter-1 | section: Speed | p. 3 | formula" in bundle.prompt
    assert "a = (v - u) / t" in bundle.prompt
    assert "Student question: What is acceleration?" in bundle.prompt
    assert bundle.system == system_prompt()


def test_build_prompt_includes_history_in_order():
    history = [
        Turn(role=Role.STUDENT, text="What is speed?"),
        Turn(role=Role.TUTOR, text="Distance per unit time [S1]."),
    ]

    bundle = build_prompt("And velocity?", [_segment("u1", "Speed", "v = d / t")], history=history)

    conversation = bundle.prompt.split("Conversation so far:\n", 1)[1]
    assert conversation.index("Student: What is speed?") < conversation.index("Tutor: Distance per unit time")


def test_fixed_messages_fall_back_to_english():
    assert insufficient_context_message("fr") == insufficient_context_message("en")
    assert insufficient_context_message("../../etc") == insufficient_context_message("en")
    assert generation_unavailable_message("hi") != generation_unavailable_message("en")


def test_related_topics_are_listed():
    message = insufficient_context_message("en", ["Speed", "", "Velocity"])
    assert message.endswith("Speed, Velocity.")
