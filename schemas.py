"""Pydantic schemas for validated model outputs and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

__all__ = [
    "QuestionType",
    "TopicAnalysis",
    "MarkingToolOutput",
    "MarkingResult",
    "GeneratedQuestion",
    "GeneratedAssessment",
    "LessonStep",
    "LessonPlanDraft",
    "LessonSummaryOutput",
    "ConversationDetails",
    "parse_json_safe",
]

QuestionType = Literal["multiple_choice", "short_answer", "extended_writing", "calculation"]


class TopicAnalysis(BaseModel):
    topics: List[str] = Field(default_factory=list, description="Curriculum topics the question covers.")
    knowledge_gaps: List[str] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    concepts_to_review: List[str] = Field(default_factory=list)


class MarkingToolOutput(BaseModel):
    """Arguments of the ``submit_marking`` tool call."""

    marks_awarded: float
    feedback: str = ""
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    topic_analysis: TopicAnalysis = Field(default_factory=TopicAnalysis)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return min(1.0, max(0.0, number))


class MarkingResult(BaseModel):
    marks_awarded: float
    max_marks: int
    is_correct: bool
    feedback: str
    confidence: float | None = None
    topic_analysis: TopicAnalysis = Field(default_factory=TopicAnalysis)
    source: Literal["ai", "fallback"] = Field(
        description="ai=validated submit_marking tool output, fallback=keyword heuristic.",
    )
    marked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class GeneratedQuestion(BaseModel):
    question_text: str = Field(min_length=1)
    question_type: QuestionType = "short_answer"
    marks_available: int = Field(default=1, ge=1)
    correct_answer: str | None = None
    marking_scheme: Any = None
    keywords: List[str] = Field(default_factory=list)

    @field_validator("question_type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value

    @field_validator("keywords", mode="before")
    @classmethod
    def _split_keywords(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class GeneratedAssessment(BaseModel):
    title: str | None = None
    description: str | None = None
    questions: List[GeneratedQuestion] = Field(min_length=1)


class LessonStep(BaseModel):
    id: str
    title: str = ""
    duration_minutes: float | None = None
    content_blocks: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class LessonPlanDraft(BaseModel):
    """Arguments of the ``create_lesson_plan`` tool call.

    Content blocks stay loosely typed here; each block is validated by its
    own type before it is stored.
    """

    objectives: List[str] = Field(default_factory=list)
    steps: List[LessonStep] = Field(min_length=1)

    model_config = {
        "extra": "allow",
    }


class LessonSummaryOutput(BaseModel):
    """Arguments of the ``submit_lesson_summary`` tool call for one student."""

    topics_covered: List[str] = Field(default_factory=list)
    student_contributions: str = ""
    what_went_well: str = ""
    areas_for_improvement: str = ""
    engagement_level: Literal["Low", "Medium", "High"] | None = None
    engagement_score: float | None = None
    confidence_score: float | None = None
    overall_summary: str = ""

    @field_validator("engagement_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            level = value.strip().capitalize()
            return level if level in ("Low", "Medium", "High") else None
        return value

    @field_validator("engagement_score", "confidence_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return min(10.0, max(0.0, number))


class ConversationDetails(BaseModel):
    topic: str | None = None
    year_group: str | None = None
    learning_goal: str | None = None


_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:].strip()
    if trailing and trailing.strip("`").strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise
