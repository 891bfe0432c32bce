"""AI assessments: authoring, sessions and marking."""

import logging
import math
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

import db
import llm
from schemas import (
    GeneratedAssessment,
    MarkingResult,
    MarkingToolOutput,
    TopicAnalysis,
    parse_json_safe,
)

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("multiple_choice", "short_answer", "extended_writing", "calculation")
ASSESSMENT_STATUSES = ("draft", "published", "archived")
CORRECT_THRESHOLD = 0.5
MIN_FALLBACK_ANSWER_CHARS = 10
MAX_SOURCE_CHARS = 12000

MARKING_TOOL = "submit_marking"
MARKING_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "marks_awarded": {"type": "number", "description": "Marks to award, from 0 to the marks available"},
        "feedback": {"type": "string", "description": "Brief feedback for the student (1-2 sentences)"},
        "confidence": {"type": "number", "description": "Confidence in the mark between 0 and 1"},
        "topic_analysis": {
            "type": "object",
            "properties": {
                "topics": {"type": "array", "items": {"type": "string"}},
                "knowledge_gaps": {"type": "array", "items": {"type": "string"}},
                "strengths": {"type": "array", "items": {"type": "string"}},
                "concepts_to_review": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["topics", "knowledge_gaps", "strengths", "concepts_to_review"],
        },
    },
    "required": ["marks_awarded", "feedback", "topic_analysis"],
}

_ENGLISH_GUIDANCE = """For English answers:
- Focus on quality of analysis, not keyword matching
- Look for evidence of understanding the text
- Value interpretation and personal response
- Check for relevant quotes or textual references"""

_SCIENCE_GUIDANCE = """For Science answers:
- Check for correct scientific terminology
- Look for clear cause-and-effect explanations
- Value accuracy of facts and processes
- Check calculations if present"""

_MATHS_GUIDANCE = """For Maths answers:
- Check the final answer is correct
- Award method marks for correct working even if the final answer is wrong
- Look for clear logical steps and correct notation"""


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def correct_threshold(max_marks: int) -> int:
    return int(math.ceil(max_marks * CORRECT_THRESHOLD))


# -------------- authoring --------------
def _require_assessment(assessment_id: str) -> Dict[str, Any]:
    assessment = db.get_assessment(assessment_id)
    if not assessment:
        raise LookupError(f"Assessment {assessment_id} not found")
    return assessment


def _validate_question_fields(fields: Mapping[str, Any]) -> None:
    if "question_type" in fields and fields["question_type"] not in QUESTION_TYPES:
        raise ValueError(f"Unknown question type: {fields['question_type']}")
    if "marks_available" in fields and int(fields["marks_available"]) < 1:
        raise ValueError("A question must be worth at least one mark")
    if "question_text" in fields and not str(fields["question_text"] or "").strip():
        raise ValueError("Question text is required")


def create_assessment(organization_id: Optional[str], title: str, **fields: Any) -> Dict[str, Any]:
    if not title or not title.strip():
        raise ValueError("Assessment title is required")
    if fields.get("status", "draft") not in ASSESSMENT_STATUSES:
        raise ValueError(f"Unknown assessment status: {fields['status']}")
    return db.create_assessment(title.strip(), organization_id=organization_id, **fields)


def update_assessment(assessment_id: str, **fields: Any) -> Dict[str, Any]:
    _require_assessment(assessment_id)
    status = fields.get("status")
    if status is not None:
        if status not in ASSESSMENT_STATUSES:
            raise ValueError(f"Unknown assessment status: {status}")
        if status == "published" and not db.list_questions(assessment_id):
            raise ValueError("Cannot publish an assessment without questions")
    return db.update_assessment(assessment_id, **fields)


def add_question(assessment_id: str, question_text: str, question_type: str, marks_available: int, **fields: Any) -> Dict[str, Any]:
    _require_assessment(assessment_id)
    _validate_question_fields(
        {"question_text": question_text, "question_type": question_type, "marks_available": marks_available}
    )
    return db.create_question(assessment_id, question_text.strip(), question_type, int(marks_available), **fields)


def update_question(question_id: str, **fields: Any) -> Dict[str, Any]:
    if not db.get_question(question_id):
        raise LookupError(f"Question {question_id} not found")
    _validate_question_fields(fields)
    return db.update_question(question_id, **fields)


# -------------- sessions --------------
def start_session(assessment_id: str, user_id: str, student_id: Optional[int] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    assessment = _require_assessment(assessment_id)
    if assessment["status"] != "published":
        raise ValueError("Only published assessments can be started")
    session = db.create_assessment_session(assessment_id, user_id, student_id, now or db.utcnow())
    return db.update_assessment_session(session["id"], total_marks_available=assessment["total_marks"])


def _require_session(session_id: str) -> Dict[str, Any]:
    session = db.get_assessment_session(session_id)
    if not session:
        raise LookupError(f"Assessment session {session_id} not found")
    return session


def submit_answer(session_id: str, question_id: str, answer: str) -> None:
    session = _require_session(session_id)
    if session["status"] != "in_progress":
        raise ValueError(f"Session {session_id} is {session['status']}")
    question = db.get_question(question_id)
    if not question or question["assessment_id"] != session["assessment_id"]:
        raise LookupError(f"Question {question_id} is not part of this assessment")
    db.upsert_response(session_id, question_id, answer or "")


# -------------- marking --------------
def _system_prompt(subject: str, question_type: str, marks: int) -> str:
    lowered = (subject or "").lower()
    if "english" in lowered:
        guidance = _ENGLISH_GUIDANCE
    elif any(name in lowered for name in ("biology", "chemistry", "physics", "science")):
        guidance = _SCIENCE_GUIDANCE
    elif "math" in lowered:
        guidance = _MATHS_GUIDANCE
    else:
        guidance = ""

    sanity = ""
    if question_type == "multiple_choice" and marks > 4:
        sanity = (
            f"NOTE: This multiple choice question is worth {marks} marks, which is high; "
            "multiple choice is usually 1-2 marks. Mark fairly and mention it in feedback."
        )
    elif question_type == "short_answer" and marks > 6:
        sanity = (
            f"NOTE: This short answer question is worth {marks} marks, which is high; "
            "short answers are usually 2-4 marks. Mark fairly and mention it in feedback."
        )
    elif question_type == "extended_writing" and marks < 4:
        sanity = (
            f"NOTE: This extended writing question is worth only {marks} marks; "
            "mark against the marks actually available."
        )

    return f"""You are an expert GCSE examiner marking a {question_type} question worth {marks} marks.
{guidance}
{sanity}

Marking rules:
- Award the marks the student genuinely deserves; partial credit is allowed
- A blank or irrelevant answer scores 0
- Each mark requires a specific point or skill demonstrated
- Never award full marks unless every required point is addressed
- Keep feedback encouraging but honest
- Name the curriculum topics, any knowledge gaps, strengths and concepts to review

You MUST use the {MARKING_TOOL} tool to return your marking."""


def _user_prompt(question: Mapping[str, Any], answer: str, exam_board: Optional[str]) -> str:
    marks = int(question["marks_available"])
    parts = [f"QUESTION ({marks} marks):\n{question['question_text']}", f"STUDENT'S ANSWER:\n{answer}"]
    if question.get("correct_answer"):
        parts.append(f"MODEL ANSWER:\n{question['correct_answer']}")
    scheme = question.get("marking_scheme")
    if scheme:
        parts.append(f"MARK SCHEME:\n{scheme if isinstance(scheme, str) else db.json_dumps(scheme)}")
    keywords = question.get("keywords") or []
    if keywords:
        parts.append(f"KEY POINTS TO LOOK FOR:\n{', '.join(keywords)}")
    if exam_board:
        parts.append(f"EXAM BOARD: {exam_board}")
    parts.append(f"Mark this answer out of {marks}.")
    return "\n\n".join(parts)


def fallback_mark(question: Mapping[str, Any], answer: str) -> MarkingResult:
    """Keyword heuristic used whenever AI marking is unavailable."""
    max_marks = int(question["marks_available"])
    text = (answer or "").strip()
    lowered = text.lower()
    keywords = [k for k in (question.get("keywords") or []) if str(k).strip()]
    correct = (question.get("correct_answer") or "").strip()

    if not text:
        marks, feedback = 0, "No answer was given."
    elif question.get("question_type") == "multiple_choice" and correct:
        is_match = lowered == correct.lower()
        marks = max_marks if is_match else 0
        feedback = "Correct answer." if is_match else f"The correct answer was {correct}."
    elif keywords:
        matched = [k for k in keywords if str(k).lower() in lowered]
        marks = round_half_up(max_marks * len(matched) / len(keywords))
        feedback = f"Marked automatically: {len(matched)} of {len(keywords)} key points found."
    elif len(text) > MIN_FALLBACK_ANSWER_CHARS:
        marks = int(math.ceil(max_marks / 2))
        feedback = "Marked automatically; a tutor will review this answer."
    else:
        marks, feedback = 0, "The answer is too short to award marks automatically."

    marks = max(0, min(max_marks, marks))
    return MarkingResult(
        marks_awarded=marks,
        max_marks=max_marks,
        is_correct=marks >= correct_threshold(max_marks),
        feedback=feedback,
        confidence=None,
        source="fallback",
    )


def mark_answer(
    question: Mapping[str, Any],
    answer: str,
    *,
    subject: Optional[str] = None,
    exam_board: Optional[str] = None,
    user_id: Optional[str] = None,
) -> MarkingResult:
    max_marks = int(question["marks_available"])
    if not (answer or "").strip():
        return fallback_mark(question, answer)

    messages = [
        {"role": "system", "content": _system_prompt(subject or "", question.get("question_type", ""), max_marks)},
        {"role": "user", "content": _user_prompt(question, answer, exam_board)},
    ]
    try:
        arguments = llm.tool_call(
            messages,
            MARKING_TOOL,
            MARKING_PARAMETERS,
            description="Submit the marking result for the student's answer",
            user_id=user_id,
            prompt_version="assessment_marking_v1",
        )
        output = MarkingToolOutput.model_validate(arguments)
    except (llm.LLMError, ValidationError) as exc:
        logger.warning("AI marking failed for question %s; using keyword fallback: %s", question.get("id"), exc)
        return fallback_mark(question, answer)

    marks = max(0, min(max_marks, round_half_up(output.marks_awarded)))
    return MarkingResult(
        marks_awarded=marks,
        max_marks=max_marks,
        is_correct=marks >= correct_threshold(max_marks),
        feedback=output.feedback.strip() or "Good effort!",
        confidence=output.confidence,
        topic_analysis=output.topic_analysis,
        source="ai",
    )


def mark_session(session_id: str, now: Optional[datetime] = None, user_id: Optional[str] = None) -> Dict[str, Any]:
    """Mark every answered question and complete the session."""
    session = _require_session(session_id)
    if session["status"] == "abandoned":
        raise ValueError("Abandoned sessions cannot be marked")
    assessment = _require_assessment(session["assessment_id"])
    questions = {q["id"]: q for q in db.list_questions(assessment["id"])}
    moment = now or db.utcnow()

    results = []
    total = 0.0
    for response in db.list_responses(session_id):
        question = questions.get(response["question_id"])
        if not question:
            continue
        result = mark_answer(
            question,
            response.get("student_answer") or "",
            subject=assessment.get("subject"),
            exam_board=assessment.get("exam_board"),
            user_id=user_id or session["user_id"],
        )
        db.save_response_marking(
            session_id,
            question["id"],
            marks_awarded=result.marks_awarded,
            feedback=result.feedback,
            breakdown={
                "is_correct": result.is_correct,
                "source": result.source,
                **result.topic_analysis.model_dump(),
            },
            confidence=result.confidence,
            marked_at=moment,
        )
        total += result.marks_awarded
        results.append({"question_id": question["id"], **result.model_dump(mode="json")})

    started = db.parse_timestamp(session["started_at"])
    elapsed = max(0, int(math.ceil((db.parse_timestamp(moment) - started).total_seconds() / 60)))
    available = sum(int(q["marks_available"]) for q in questions.values())
    updated = db.update_assessment_session(
        session_id,
        status="completed",
        completed_at=db.to_iso(moment),
        total_marks_achieved=total,
        total_marks_available=available,
        time_taken_minutes=elapsed,
    )
    return {"session": updated, "results": results}


# -------------- generation --------------
def _generation_prompt(text: str, num_questions: int, subject: Optional[str], exam_board: Optional[str]) -> str:
    context = ", ".join(part for part in (subject, exam_board) if part) or "GCSE"
    return f"""Create {num_questions} exam-style questions ({context}) from the source material below.

Return ONLY a JSON object of the form:
{{"title": "...", "description": "...", "questions": [
  {{"question_text": "...", "question_type": "multiple_choice|short_answer|extended_writing|calculation",
    "marks_available": 1, "correct_answer": "...", "marking_scheme": "...", "keywords": ["..."]}}
]}}

Use realistic GCSE mark allocations and list the key points a marker should look for as keywords.

SOURCE MATERIAL:
{text[:MAX_SOURCE_CHARS]}"""


def generate_assessment_from_text(
    organization_id: Optional[str],
    text: str,
    *,
    title: Optional[str] = None,
    subject: Optional[str] = None,
    exam_board: Optional[str] = None,
    num_questions: int = 10,
    created_by: Optional[str] = None,
) -> Dict[str, Any]:
    if not (text or "").strip():
        raise ValueError("Source text is required to generate an assessment")
    reply = llm.chat_completion(
        [
            {"role": "system", "content": "You write accurate UK exam questions and answer only with JSON."},
            {"role": "user", "content": _generation_prompt(text, num_questions, subject, exam_board)},
        ],
        user_id=created_by,
        prompt_version="assessment_generation_v1",
    )
    try:
        generated = parse_json_safe(reply, GeneratedAssessment)
    except (ValidationError, ValueError) as exc:
        try:
            generated = GeneratedAssessment.model_validate(llm.extract_json_object(reply))
        except (ValidationError, ValueError):
            logger.error("Generated assessment could not be parsed: %s", reply[:300])
            raise llm.LLMError("AI returned an invalid assessment") from exc

    assessment = db.create_assessment(
        title or generated.title or "Generated assessment",
        organization_id=organization_id,
        description=generated.description,
        subject=subject,
        exam_board=exam_board,
        created_by=created_by,
        status="draft",
    )
    for position, question in enumerate(generated.questions):
        db.create_question(
            assessment["id"],
            question.question_text.strip(),
            question.question_type,
            question.marks_available,
            question_number=position + 1,
            position=position,
            correct_answer=question.correct_answer,
            marking_scheme=question.marking_scheme,
            keywords=question.keywords,
        )
    assessment = db.get_assessment(assessment["id"])
    assessment["questions"] = db.list_questions(assessment["id"])
    logger.info("Generated assessment %s with %d question(s)", assessment["id"], len(assessment["questions"]))
    return assessment


def session_improvement_summary(session_id: str, limit: int = 5) -> Dict[str, Any]:
    session = _require_session(session_id)
    gaps: Counter = Counter()
    strengths: Counter = Counter()
    review: Counter = Counter()
    topics: Counter = Counter()
    marked = 0
    for response in db.list_responses(session_id):
        breakdown = response.get("marking_breakdown")
        if not isinstance(breakdown, dict):
            continue
        marked += 1
        analysis = TopicAnalysis.model_validate({k: breakdown.get(k) or [] for k in TopicAnalysis.model_fields})
        gaps.update(analysis.knowledge_gaps)
        strengths.update(analysis.strengths)
        review.update(analysis.concepts_to_review)
        topics.update(analysis.topics)

    available = session.get("total_marks_available") or 0
    achieved = session.get("total_marks_achieved") or 0
    percentage = round(100.0 * achieved / available, 1) if available else 0.0
    return {
        "session_id": session_id,
        "status": session["status"],
        "marks_achieved": achieved,
        "marks_available": available,
        "percentage": percentage,
        "responses_marked": marked,
        "topics": [name for name, _ in topics.most_common(limit)],
        "strengths": [name for name, _ in strengths.most_common(limit)],
        "knowledge_gaps": [name for name, _ in gaps.most_common(limit)],
        "concepts_to_review": [name for name, _ in review.most_common(limit)],
    }
