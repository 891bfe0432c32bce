from datetime import datetime, timezone

import pytest

import cleo
import db
import llm


MARCH = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$\\frac{1}{2} + x^2$", "1 over 2 + x squared"),
        ("\\sqrt{16} = 4", "the square root of 16 = 4"),
        ("\\sqrt[3]{27}", "the 3 root of 27"),
        ("y = x^3 - x^{10}", "y = x cubed - x to the power of 10"),
        ("3 \\times 4 \\leq 12", "3 times 4 less than or equal to 12"),
        ("An angle of 90^\\circ", "An angle of 90 degrees"),
        ("", ""),
    ],
)
def test_latex_to_speech(text, expected):
    assert cleo.latex_to_speech(text) == expected


def test_format_content_block_question_lists_correct_answer():
    block = {
        "block_type": "question",
        "title": "Quick check",
        "data": {
            "question": "Roots of x^2 - 4?",
            "options": [{"id": "a", "text": "2 and -2", "isCorrect": True}, {"id": "b", "text": "4", "isCorrect": False}],
            "explanation": "Difference of two squares.",
        },
        "teaching_notes": "Ask for the factorisation first.",
    }
    assert cleo.format_content_block(block) == (
        "[QUESTION] Quick check\n"
        "Roots of x^2 - 4?\n"
        "a) 2 and -2\n"
        "b) 4\n"
        "Correct answer: 2 and -2\n"
        "Explanation: Difference of two squares.\n"
        "Teaching notes: Ask for the factorisation first."
    )


def test_system_prompt_gathers_missing_details_first():
    prompt = cleo.build_system_prompt({"topic": "Surds"}, has_greeting=True)
    assert "Known info: topic: Surds" in prompt
    assert "Missing: year group, learning goal" in prompt
    assert "Do not greet again" in prompt


def test_system_prompt_embeds_lesson_plan():
    plan = {
        "learning_objectives": ["Simplify surds"],
        "content_blocks": [{"block_type": "text", "title": "Recap", "data": {"text": "A surd is an irrational root."}}],
    }
    prompt = cleo.build_system_prompt({"topic": "Surds", "year_group": "Year 10"}, has_greeting=False, plan=plan)
    assert 'learn about "Surds"' in prompt
    assert "- Simplify surds" in prompt
    assert "[TEXT] Recap\nA surd is an irrational root." in prompt


def test_chat_extracts_details_then_teaches(temp_db, monkeypatch):
    tool_calls = []
    sent = []

    def fake_tool_call(messages, tool_name, parameters, **kwargs):
        tool_calls.append(tool_name)
        return {"topic": "Surds", "year_group": "Year 10"}

    def fake_chat_completion(messages, **kwargs):
        sent.append(messages)
        return "Let's start with what a surd is."

    monkeypatch.setattr(llm, "tool_call", fake_tool_call)
    monkeypatch.setattr(llm, "chat_completion", fake_chat_completion)

    first = cleo.chat("pupil", "I want to learn surds, I'm in Year 10", now=MARCH)
    assert tool_calls == [cleo.EXTRACTION_TOOL]
    assert first["topic"] == "Surds"
    assert first["year_group"] == "Year 10"
    assert first["greeting"] is None
    assert 'learn about "Surds"' in sent[0][0]["content"]

    second = cleo.chat("pupil", "Is root 4 a surd?", conversation_id=first["conversation_id"])
    assert second["conversation_id"] == first["conversation_id"]
    assert tool_calls == [cleo.EXTRACTION_TOOL]
    assert [m["role"] for m in sent[1]] == ["system", "user", "assistant", "user"]
    assert db.list_messages(first["conversation_id"])[-1]["content"] == "Let's start with what a surd is."


def test_chat_for_lesson_greets_once(temp_db, monkeypatch):
    org = db.create_organization("Riverside Tutors")
    tutor = db.create_tutor(org["id"], "Priya")
    lesson = db.create_lesson(
        org["id"], "Photosynthesis", tutor["id"], "2026-03-02T16:00:00Z", "2026-03-02T17:00:00Z"
    )
    sent = []

    def failing_tool_call(*args, **kwargs):
        raise llm.LLMError("LLM-HTTP 500: boom")

    def fake_chat_completion(messages, **kwargs):
        sent.append(messages)
        return "Which year are you in?"

    monkeypatch.setattr(llm, "tool_call", failing_tool_call)
    monkeypatch.setattr(llm, "chat_completion", fake_chat_completion)

    result = cleo.chat("pupil", "hello", lesson_id=lesson["id"], user_name="Sam", now=MARCH)
    assert result["greeting"].startswith("Hi Sam! I'm Cleo")
    assert '"Photosynthesis"' in result["greeting"]
    assert "Do not greet again" in sent[0][0]["content"]

    again = cleo.chat("pupil", "Year 9", lesson_id=lesson["id"], now=MARCH)
    assert again["conversation_id"] == result["conversation_id"]
    assert again["greeting"] is None


def test_chat_rejects_someone_elses_conversation(temp_db, monkeypatch):
    monkeypatch.setattr(llm, "tool_call", lambda *a, **k: {"topic": "Cells", "year_group": "Year 9"})
    monkeypatch.setattr(llm, "chat_completion", lambda *a, **k: "Hi!")
    mine = cleo.chat("pupil", "cells please", now=MARCH)
    with pytest.raises(LookupError):
        cleo.chat("intruder", "hello", conversation_id=mine["conversation_id"])


def test_voice_quota_consumes_free_then_bonus_minutes(temp_db, monkeypatch):
    monkeypatch.delenv("VOICE_FREE_MINUTES", raising=False)
    quota = cleo.check_voice_quota("pupil", now=MARCH)
    assert quota["minutes_remaining"] == 10
    assert quota["message"] == "You have 10 free minutes remaining"
    assert quota["period_end"] == "2026-03-31T23:59:59+00:00"

    cleo.add_bonus_minutes("pupil", 5, now=MARCH)
    after = cleo.record_voice_usage("pupil", 12, now=MARCH)
    assert after["minutes_remaining"] == 3
    row = db.get_voice_quota("pupil", MARCH)
    assert (row["minutes_remaining"], row["bonus_minutes"], row["minutes_used"]) == (0, 3, 12)

    exhausted = cleo.record_voice_usage("pupil", 10, now=MARCH)
    assert exhausted["can_start"] is False
    assert exhausted["message"] == "Free minutes used. Subscribe to continue learning!"

    april = cleo.check_voice_quota("pupil", now=datetime(2026, 4, 2, tzinfo=timezone.utc))
    assert april["minutes_remaining"] == 10


def test_subscribers_have_unlimited_voice(temp_db):
    db.upsert_platform_subscription("member", status="trialing", stripe_customer_id="cus_1")
    quota = cleo.record_voice_usage("member", 30, now=MARCH)
    assert quota["unlimited"] is True
    assert quota["can_start"] is True
    assert db.get_voice_quota("member", MARCH) is None


def test_voice_usage_must_be_positive(temp_db):
    with pytest.raises(ValueError):
        cleo.record_voice_usage("pupil", 0)
    with pytest.raises(ValueError):
        cleo.add_bonus_minutes("pupil", -5)
