import json

import pytest
from pydantic import ValidationError

from schemas import GeneratedAssessment, LessonPlanDraft, MarkingToolOutput, parse_json_safe


def _sample_payload() -> dict[str, object]:
    return {
        "title": "Forces",
        "questions": [
            {
                "question_text": "State Newton's second law.",
                "question_type": "short-answer",
                "marks_available": 2,
                "keywords": "force, mass, acceleration",
            }
        ],
    }


def test_parse_json_safe_rejects_trailing_payload():
    noisy_text = (
        "The model responded as follows:\n"
        "```json\n"
        f"{json.dumps(_sample_payload())}\n"
        "```\nThanks."
    )

    with pytest.raises(ValidationError):
        parse_json_safe(noisy_text, GeneratedAssessment)


def test_parse_json_safe_accepts_clean_json():
    result = parse_json_safe(json.dumps(_sample_payload()), GeneratedAssessment)

    assert result.title == "Forces"
    question = result.questions[0]
    assert question.question_type == "short_answer"
    assert question.keywords == ["force", "mass", "acceleration"]


def test_parse_json_safe_accepts_fenced_json():
    text = f"```json\n{json.dumps(_sample_payload())}\n```"
    assert parse_json_safe(text, GeneratedAssessment).questions[0].marks_available == 2


def test_generated_assessment_needs_questions():
    with pytest.raises(ValidationError):
        GeneratedAssessment.model_validate({"title": "Empty", "questions": []})
    with pytest.raises(ValidationError):
        GeneratedAssessment.model_validate({"questions": [{"question_text": "Q", "question_type": "essay"}]})


def test_marking_output_clamps_confidence():
    assert MarkingToolOutput.model_validate({"marks_awarded": 1, "confidence": -2}).confidence == 0.0
    assert MarkingToolOutput.model_validate({"marks_awarded": 1, "confidence": "high"}).confidence is None


def test_lesson_plan_draft_stringifies_step_ids():
    draft = LessonPlanDraft.model_validate(
        {"objectives": ["Factorise"], "steps": [{"id": 1, "title": "Warm up"}], "summary": "extra is kept"}
    )
    assert draft.steps[0].id == "1"
    assert draft.model_extra == {"summary": "extra is kept"}
