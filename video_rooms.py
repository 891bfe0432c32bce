"""TheLessonSpace video rooms for lessons."""

import json
import logging
from typing import Any, Dict, Mapping, Optional

import requests

import db
from env_validation import get_env_int, get_env_str

logger = logging.getLogger(__name__)


class VideoRoomError(RuntimeError):
    """The video provider rejected a request or is not configured."""


def space_id_for(lesson: Mapping[str, Any], student_id: Optional[int] = None) -> str:
    """Stable space id: one per group lesson, one per tutor/student pair otherwise."""
    tutor_part = str(lesson["tutor_id"]).replace("-", "")[:8]
    if lesson.get("is_group"):
        lesson_part = str(lesson["id"]).replace("-", "")[:8]
        return f"group_{lesson_part}_t{tutor_part}"
    if student_id is None:
        students = lesson.get("students") or []
        if not students:
            raise ValueError("A one-to-one lesson needs a student to derive its space id")
        student_id = students[0]["id"]
    return f"t{tutor_part}_s{student_id}"


def _launch(space_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    api_key = get_env_str("LESSONSPACE_API_KEY")
    if not api_key:
        raise VideoRoomError("LESSONSPACE_API_KEY is not configured")
    url = get_env_str("LESSONSPACE_API_URL").rstrip("/") + "/spaces/launch/"
    body = {
        "id": space_id,
        "transcribe": True,
        "record_av": True,
        "user": user,
    }
    try:
        response = requests.post(
            url,
            json=body,
            headers={"Authorization": f"Organisation {api_key}", "Content-Type": "application/json"},
            timeout=get_env_int("LESSONSPACE_TIMEOUT", 30),
        )
    except requests.RequestException as exc:
        logger.error("LessonSpace launch failed for %s", space_id, exc_info=True)
        raise VideoRoomError(f"LessonSpace request failed: {exc}") from exc
    if response.status_code >= 400:
        logger.error("LessonSpace launch for %s returned %s: %s", space_id, response.status_code, response.text[:300])
        raise VideoRoomError(f"LessonSpace API error {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise VideoRoomError("LessonSpace returned a non-JSON body") from exc


def _student_user(student: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": f"student_{student['id']}",
        "name": student.get("name") or f"Student {student['id']}",
        "role": "student",
        "leader": False,
    }


def create_room(lesson_id: str) -> Dict[str, Any]:
    """Launch the lesson's space with the tutor as leader and store every join URL."""
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    if not lesson["students"]:
        raise ValueError("Cannot create a video room for a lesson without students")

    space_id = space_id_for(lesson)
    tutor = lesson["tutor"]
    data = _launch(
        space_id,
        {
            "id": f"tutor_{tutor['id']}",
            "name": tutor["name"],
            "role": "teacher",
            "leader": True,
        },
    )
    room_id = data.get("room_id")
    room_url = data.get("client_url")
    db.update_lesson(
        lesson_id,
        lesson_space_room_id=room_id,
        lesson_space_room_url=room_url,
        lesson_space_space_id=space_id,
    )

    db.clear_participant_urls(lesson_id)
    participant_urls: Dict[int, str] = {}
    for student in lesson["students"]:
        student_data = _launch(space_id, _student_user(student))
        student_url = student_data.get("client_url")
        if not student_url:
            logger.warning("LessonSpace returned no client_url for student %s", student["id"])
            continue
        db.upsert_participant_url(lesson_id, student["id"], student_url)
        participant_urls[student["id"]] = student_url

    logger.info("Video room %s ready for lesson %s (%d participants)", room_id, lesson_id, len(participant_urls))
    return {
        "room_id": room_id,
        "room_url": room_url,
        "space_id": space_id,
        "participant_urls": participant_urls,
    }


def join_url(lesson_id: str, student_id: int) -> str:
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    student = next((s for s in lesson["students"] if s["id"] == int(student_id)), None)
    if not student:
        raise LookupError(f"Student {student_id} is not enrolled in lesson {lesson_id}")
    stored = db.get_participant_url(lesson_id, student["id"])
    if stored:
        return stored
    if not lesson.get("lesson_space_space_id"):
        raise ValueError("Lesson has no video room yet")
    data = _launch(lesson["lesson_space_space_id"], _student_user(student))
    url = data.get("client_url")
    if not url:
        raise VideoRoomError("LessonSpace returned no client_url")
    db.upsert_participant_url(lesson_id, student["id"], url)
    return url


def delete_room(lesson_id: str) -> bool:
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    had_room = bool(lesson.get("lesson_space_room_id") or lesson.get("lesson_space_space_id"))
    db.update_lesson(
        lesson_id,
        lesson_space_room_id=None,
        lesson_space_room_url=None,
        lesson_space_space_id=None,
    )
    db.clear_participant_urls(lesson_id)
    return had_room


def fetch_transcript(transcript_url: str) -> str:
    """Download a LessonSpace session transcript and return its text."""
    try:
        response = requests.get(transcript_url, timeout=get_env_int("LESSONSPACE_TIMEOUT", 30))
    except requests.RequestException as exc:
        logger.error("Transcript download from %s failed", transcript_url, exc_info=True)
        raise VideoRoomError(f"Transcript request failed: {exc}") from exc
    if response.status_code == 404:
        raise VideoRoomError("Transcript not available (too large or still processing)")
    if response.status_code >= 400:
        raise VideoRoomError(f"Transcript download returned {response.status_code}")
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, str):
        return data
    for key in ("transcript", "text", "transcription"):
        if isinstance(data, dict) and isinstance(data.get(key), str):
            return data[key]
    logger.warning("Unknown transcript structure from %s; using raw JSON", transcript_url)
    return json.dumps(data)
