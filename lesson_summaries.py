"""Per-student lesson summaries generated from session transcripts."""

import logging
import re
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

import db
import llm
import video_rooms
from schemas import LessonSummaryOutput

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_BYTES = 100_000
CHUNK_BYTES = 80_000

SUMMARY_TOOL = "submit_lesson_summary"
SUMMARY_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "topics_covered": {"type": "array", "items": {"type": "string"}},
        "student_contributions": {"type": "string", "description": "The student's questions, answers and participation"},
        "what_went_well": {"type": "string"},
        "areas_for_improvement": {"type": "string"},
        "engagement_level": {"type": "string", "enum": ["Low", "Medium", "High"]},
        "engagement_score": {"type": "number", "description": "Engagement from 0 to 10"},
        "confidence_score": {"type": "number", "description": "Confidence from 0 to 10"},
        "overall_summary": {"type": "string"},
    },
    "required": ["topics_covered", "student_contributions", "engagement_level", "overall_summary"],
}

_SYSTEM_PROMPT = (
    "You are an experienced tutor reviewing a lesson transcript. Summarise one student's learning, "
    "citing specific moments from the transcript. If the student is not mentioned, say so."
)


def _byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def chunk_transcript(text: str, chunk_bytes: int = CHUNK_BYTES) -> List[str]:
    """Split on sentence ends into chunks of at most ``chunk_bytes`` where possible."""
    chunks: List[str] = []
    current = ""
    for sentence in (part.strip() for part in re.split(r"[.!?]+", text)):
        if not sentence:
            continue
        candidate = f"{current}{sentence}. "
        if current and _byte_size(candidate) > chunk_bytes:
            chunks.append(current.strip())
            current = f"{sentence}. "
        else:
            current = candidate
    if current.strip():
        chunks.append(current.strip())
    return chunks


def _user_prompt(lesson: Mapping[str, Any], student_name: str, transcript: str, part: Optional[str]) -> str:
    header = f"Lesson: {lesson['title']}\nSubject: {lesson.get('subject') or 'Not specified'}\nStudent: {student_name}"
    if part:
        header += f"\nTranscript section: {part}"
    return f"{header}\n\nTranscript:\n{transcript}"


def _summarise_text(
    lesson: Mapping[str, Any], student_name: str, transcript: str, part: Optional[str], user_id: Optional[str]
) -> LessonSummaryOutput:
    arguments = llm.tool_call(
        [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": _user_prompt(lesson, student_name, transcript, part)},
        ],
        SUMMARY_TOOL,
        SUMMARY_PARAMETERS,
        description="Submit the lesson summary for one student",
        user_id=user_id,
        prompt_version="lesson_summary_v1",
    )
    return LessonSummaryOutput.model_validate(arguments)


def _mean(values: List[Optional[float]]) -> Optional[float]:
    present = [value for value in values if value is not None]
    return round(sum(present) / len(present), 1) if present else None


def merge_summaries(parts: List[LessonSummaryOutput]) -> LessonSummaryOutput:
    """Combine the summaries of consecutive transcript chunks."""
    if len(parts) == 1:
        return parts[0]
    topics: List[str] = []
    for part in parts:
        topics.extend(topic for topic in part.topics_covered if topic not in topics)
    levels = Counter(part.engagement_level for part in parts if part.engagement_level)

    def joined(field: str) -> str:
        return " ".join(text for text in (getattr(part, field).strip() for part in parts) if text)

    return LessonSummaryOutput(
        topics_covered=topics,
        student_contributions=joined("student_contributions"),
        what_went_well=joined("what_went_well"),
        areas_for_improvement=joined("areas_for_improvement"),
        engagement_level=levels.most_common(1)[0][0] if levels else None,
        engagement_score=_mean([part.engagement_score for part in parts]),
        confidence_score=_mean([part.confidence_score for part in parts]),
        overall_summary=joined("overall_summary"),
    )


def _stored_fields(summary: LessonSummaryOutput) -> Dict[str, Any]:
    return {
        "topics_covered": summary.topics_covered,
        "student_contributions": summary.student_contributions,
        "what_went_well": summary.what_went_well,
        "areas_for_improvement": summary.areas_for_improvement,
        "engagement_level": summary.engagement_level or "Unknown",
        "engagement_score": summary.engagement_score,
        "confidence_score": summary.confidence_score,
        "ai_summary": summary.overall_summary or "Analysis completed",
    }


def generate_lesson_summaries(
    lesson_id: str,
    *,
    transcript: Optional[str] = None,
    transcript_url: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Summarise a lesson transcript for every enrolled student.

    Transcripts over ``MAX_TRANSCRIPT_BYTES`` are summarised chunk by chunk
    and merged. A student whose summary fails is reported in ``errors``;
    the others are still stored.
    """
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    if not lesson["students"]:
        raise ValueError("Lesson has no students to summarise")
    if not (transcript or "").strip():
        if not transcript_url:
            raise ValueError("A transcript or transcript_url is required")
        transcript = video_rooms.fetch_transcript(transcript_url)
    text = transcript.strip()
    if not text:
        raise ValueError("Transcript is empty")

    size = _byte_size(text)
    chunks = [text] if size <= MAX_TRANSCRIPT_BYTES else chunk_transcript(text, CHUNK_BYTES)
    strategy = "standard" if len(chunks) == 1 else "chunked"
    logger.info("Summarising lesson %s (%d bytes, %s)", lesson_id, size, strategy)

    summaries: List[Dict[str, Any]] = []
    errors: List[str] = []
    for student in lesson["students"]:
        name = student.get("name") or f"Student {student['id']}"
        try:
            parts = [
                _summarise_text(
                    lesson, name, chunk, f"{index} of {len(chunks)}" if len(chunks) > 1 else None, user_id
                )
                for index, chunk in enumerate(chunks, start=1)
            ]
        except (llm.LLMError, ValidationError) as exc:
            logger.warning("Summary for student %s in lesson %s failed: %s", student["id"], lesson_id, exc)
            errors.append(f"{name}: {exc}")
            continue
        summaries.append(db.upsert_lesson_summary(lesson_id, student["id"], _stored_fields(merge_summaries(parts))))

    return {
        "lesson_id": lesson_id,
        "strategy": strategy,
        "transcript_bytes": size,
        "summaries": summaries,
        "errors": errors,
    }
