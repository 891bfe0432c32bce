import pytest

import db
import lesson_plans
import llm
from prompts.lesson_plans import DEFAULT_TEMPLATE_ID, get_template, load_templates


def _draft():
    return {
        "objectives": ["Factorise quadratics", "Solve by factorising"],
        "steps": [
            {
                "id": 1,
                "title": "Warm up",
                "duration_minutes": 3,
                "content_blocks": [
                    {"type": "text", "title": "Recap", "data": {"text": "A quadratic has an x^2 term."}},
                    {"type": "definition", "title": "Root", "data": {"term": "Root", "definition": ""}},
                ],
            },
            {
                "id": "s2",
                "title": "Check",
                "content_blocks": [
                    {
                        "type": "question",
                        "title": "Quick check",
                        "data": {
                            "id": "q1",
                            "question": "Roots of x^2 - 4?",
                            "options": [
                                {"id": "a", "text": "2 and -2", "isCorrect": True},
                                {"id": "b", "text": "4", "isCorrect": False},
                            ],
                        },
                        "prerequisites": ["Recap"],
                    },
                    {"type": "video", "title": "Unsupported", "data": {"url": "https://example.com"}},
                    {"type": "table", "title": "Empty", "data": {}},
                ],
            },
        ],
    }


def test_templates_load_with_general_default():
    templates = load_templates()
    assert DEFAULT_TEMPLATE_ID in templates
    assert get_template(None).id == "general"
    assert get_template("Underwater basket weaving").id == "general"


def test_longest_keyword_wins():
    assert get_template("GCSE English Literature").id == "english_literature"
    assert get_template("GCSE English").id == "english_language"
    assert get_template("A-Level Physics").id == "science"
    assert get_template("Further Maths").id == "maths"


@pytest.mark.parametrize(
    "block_type, data, expected",
    [
        ("text", {"text": "Hello"}, True),
        ("text", {"text": "   "}, False),
        ("table", {"headers": ["a"], "rows": [["1"]]}, True),
        ("table", {"headers": ["a"], "rows": []}, False),
        ("definition", {"term": "Root", "definition": "Where y = 0"}, True),
        ("question", {"question": "Q?", "options": [{"text": "A", "isCorrect": "yes"}]}, False),
        ("diagram", {"description": "Parabola", "elements": []}, True),
        ("video", {"url": "x"}, False),
    ],
)
def test_validate_block_data(block_type, data, expected):
    assert lesson_plans.validate_block_data(block_type, data) is expected


def test_system_prompt_includes_subject_and_tier_guidance():
    prompt = lesson_plans.build_system_prompt("Year 10", "GCSE Maths", "higher")
    assert "SUBJECT GUIDANCE (Mathematics)" in prompt
    assert "Higher tier (Grades 6-9)" in prompt
    assert "Year 10" in prompt


def test_generate_lesson_plan_keeps_valid_blocks(temp_db, monkeypatch):
    captured = {}

    def fake_tool_call(messages, tool_name, parameters, **kwargs):
        captured.update(kwargs)
        captured["tool"] = tool_name
        return _draft()

    monkeypatch.setattr(llm, "tool_call", fake_tool_call)
    plan = lesson_plans.generate_lesson_plan(
        "Quadratics", "Year 10", subject="GCSE Maths", lesson_id="missing-lesson", user_id="pupil"
    )

    assert captured["tool"] == lesson_plans.PLAN_TOOL
    assert captured["prompt_version"] == "lesson_plan_maths_v1"
    assert plan["status"] == "ready"
    assert plan["lesson_id"] is None
    assert plan["created_by"] == "pupil"
    assert plan["learning_objectives"] == ["Factorise quadratics", "Solve by factorising"]
    assert [step["id"] for step in plan["teaching_sequence"]] == ["1", "s2"]
    blocks = plan["content_blocks"]
    assert [(b["block_type"], b["sequence_order"]) for b in blocks] == [("text", 0), ("question", 1)]
    assert blocks[1]["prerequisites"] == ["Recap"]

    summary = lesson_plans.plan_summary(plan)
    assert summary == {
        "lesson_plan_id": plan["id"],
        "status": "ready",
        "objectives": ["Factorise quadratics", "Solve by factorising"],
        "steps_count": 2,
        "content_blocks_count": 2,
    }


def test_failed_generation_marks_plan_failed(temp_db, monkeypatch):
    def broken_tool_call(*args, **kwargs):
        raise llm.LLMError("Payment required, please add funds to the AI gateway workspace.", status_code=402)

    monkeypatch.setattr(llm, "tool_call", broken_tool_call)
    with pytest.raises(llm.LLMError):
        lesson_plans.generate_lesson_plan("Cells", "Year 9", subject="Biology")

    rows = db._query("SELECT status, error FROM cleo_lesson_plans")
    assert len(rows) == 1
    assert rows[0]["status"] == "failed"
    assert "Payment required" in rows[0]["error"]


def test_storage_failure_still_marks_plan_failed(temp_db, monkeypatch):
    monkeypatch.setattr(llm, "tool_call", lambda *args, **kwargs: _draft())

    def broken_insert(plan_id, blocks):
        raise RuntimeError("disk I/O error")

    monkeypatch.setattr(db, "insert_content_blocks", broken_insert)
    with pytest.raises(RuntimeError):
        lesson_plans.generate_lesson_plan("Quadratics", "Year 10", subject="GCSE Maths")

    rows = db._query("SELECT status, error FROM cleo_lesson_plans")
    assert [(row["status"], row["error"]) for row in rows] == [("failed", "disk I/O error")]


def test_generate_lesson_plan_validates_inputs(temp_db):
    with pytest.raises(ValueError):
        lesson_plans.generate_lesson_plan("  ", "Year 10")
    with pytest.raises(ValueError):
        lesson_plans.generate_lesson_plan("Quadratics", "Year 10", difficulty_tier="extreme")
