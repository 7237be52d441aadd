from __future__ import annotations

from context_utils import (
    apply_clarification_answers,
    build_context_instruction,
    derive_context_value_for_area,
    describe_context_gaps,
)


def test_apply_answers_fills_areas_without_mutating_base():
    base = {"perspective": "their_messages", "user": {"role": "Girlfriend"}}
    questions = [
        {"id": "q1", "area": "relationshipType"},
        {"id": "q2", "area": "partnerGender"},
    ]
    result = apply_clarification_answers(base, questions, {"q1": "dating", "q2": "man"})

    assert result == {
        "perspective": "their_messages",
        "relationshipType": "dating",
        "user": {"role": "Girlfriend"},
        "partner": {"gender": "man"},
    }
    assert "partner" not in base


def test_blank_answer_clears_area():
    base = {"perspective": "my_messages", "user": {"role": "Boyfriend"}}
    questions = [
        {"id": "q1", "area": "perspective"},
        {"id": "q2", "area": "userRole"},
    ]
    result = apply_clarification_answers(base, questions, {"q1": " ", "q2": ""})
    assert result == {"perspective": "their_messages"}


def test_apply_answers_without_base_context():
    result = apply_clarification_answers(None, [{"id": "q1", "area": "userGender"}], {"q1": "woman"})
    assert result == {"perspective": "their_messages", "user": {"gender": "woman"}}


def test_derive_context_value_for_area():
    context = {"relationshipType": "friends", "partner": {"role": "Coworker"}}
    assert derive_context_value_for_area(context, "relationshipType") == "friends"
    assert derive_context_value_for_area(context, "partnerRole") == "Coworker"
    assert derive_context_value_for_area(context, "userGender") is None
    assert derive_context_value_for_area(None, "perspective") is None


def test_context_instruction_lists_participants():
    text = build_context_instruction(
        {
            "perspective": "both",
            "relationshipType": "situationship",
            "user": {"role": "Crush", "gender": "unknown"},
            "partner": {"gender": "non_binary"},
        }
    )
    assert "Relationship snapshot:" in text
    assert "User: Crush" in text
    assert "Other person:" in text


def test_context_gaps():
    assert describe_context_gaps(None) == ["No conversation context provided."]
    gaps = describe_context_gaps({"perspective": "unsure", "relationshipType": "dating"})
    assert "relationshipType missing" not in gaps
    assert "perspective marked as unsure" in gaps
    assert "user role unknown" in gaps
