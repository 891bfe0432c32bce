"""Lesson scheduling: recurring series, time off, availability and reassignment."""

import calendar
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import db
import video_rooms
from db import Timestamp, parse_timestamp, to_iso

logger = logging.getLogger(__name__)

RECURRENCE_INTERVALS = ("daily", "weekly", "biweekly", "monthly")
MAX_INSTANCES_PER_BATCH = 20
INFINITE_HORIZON_MONTHS = 3
CANCELLED_SERIES_DAYS = 21
EXTENSION_LEAD = timedelta(days=30)

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_STEP_DAYS = {"daily": 1, "weekly": 7, "biweekly": 14}

# Fields an instance copies from the lesson it is generated from.
_TEMPLATE_FIELDS = (
    "organization_id",
    "title",
    "description",
    "subject",
    "tutor_id",
    "is_group",
    "lesson_type",
    "lesson_space_room_id",
    "lesson_space_room_url",
    "lesson_space_space_id",
)


class TimeOffConflictError(ValueError):
    """Approval refused because scheduled lessons fall inside the period."""

    def __init__(self, conflicts: List[Dict[str, Any]]):
        super().__init__(f"{len(conflicts)} scheduled lesson(s) conflict with this time off")
        self.conflicts = conflicts


def overlaps(a_start: Timestamp, a_end: Timestamp, b_start: Timestamp, b_end: Timestamp) -> bool:
    """Half-open overlap: touching intervals do not overlap."""
    return parse_timestamp(a_start) < parse_timestamp(b_end) and parse_timestamp(a_end) > parse_timestamp(b_start)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _occurrence(start: datetime, interval: str, step: int) -> datetime:
    if interval == "monthly":
        return add_months(start, step)
    return start + timedelta(days=_STEP_DAYS[interval] * step)


def _require_lesson(lesson_id: str) -> Dict[str, Any]:
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    return lesson


# -------------- recurring lessons --------------
def series_end_limit(end_date: Timestamp) -> datetime:
    """Last moment a finite series may start; a bare date covers that whole day."""
    limit = parse_timestamp(end_date)
    if isinstance(end_date, str) and len(end_date.strip()) == 10:
        limit = limit.replace(hour=23, minute=59, second=59)
    return limit


def build_recurring_instances(
    template: Mapping[str, Any],
    interval: str,
    end_date: Optional[Timestamp] = None,
    is_infinite: bool = False,
    max_instances: int = MAX_INSTANCES_PER_BATCH,
    *,
    parent_lesson_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Lesson rows following ``template`` at ``interval``.

    The template itself is not repeated; the first instance falls one
    interval after it. Finite series stop at ``end_date`` (inclusive),
    infinite ones three months past ``now`` or the template, whichever is
    later. At most ``max_instances`` rows are produced.
    """
    if interval not in RECURRENCE_INTERVALS:
        raise ValueError(f"Unsupported recurrence interval: {interval}")
    if not is_infinite and end_date is None:
        raise ValueError("A finite recurring series needs an end date")

    start = parse_timestamp(template["start_time"])
    duration = parse_timestamp(template["end_time"]) - start
    if is_infinite:
        anchor = max(start, parse_timestamp(now) if now else db.utcnow())
        limit = add_months(anchor, INFINITE_HORIZON_MONTHS)
    else:
        limit = series_end_limit(end_date)

    parent_id = parent_lesson_id or template["id"]
    instances: List[Dict[str, Any]] = []
    step = 1
    while len(instances) < max_instances:
        occurrence = _occurrence(start, interval, step)
        if occurrence > limit:
            break
        row = {field: template.get(field) for field in _TEMPLATE_FIELDS}
        row.update(
            {
                "start_time": to_iso(occurrence),
                "end_time": to_iso(occurrence + duration),
                "status": "scheduled",
                "is_recurring": False,
                "is_recurring_instance": True,
                "parent_lesson_id": parent_id,
                "instance_date": db.iso_date(occurrence),
                "recurrence_interval": interval,
            }
        )
        instances.append(row)
        step += 1
    return instances


def _next_extension_date(instances: Sequence[Mapping[str, Any]], is_infinite: bool) -> Optional[str]:
    if not is_infinite or not instances:
        return None
    return to_iso(parse_timestamp(instances[-1]["start_time"]) - EXTENSION_LEAD)


def _persist_instances(instances: Sequence[Dict[str, Any]], student_ids: Sequence[int]) -> List[str]:
    ids = db.insert_lessons(instances)
    if student_ids:
        for lesson_id in ids:
            db.add_lesson_students(lesson_id, student_ids)
    return ids


def generate_recurring_lessons(
    lesson_id: str,
    interval: str,
    end_date: Optional[Timestamp] = None,
    is_infinite: bool = False,
    *,
    max_instances: int = MAX_INSTANCES_PER_BATCH,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    lesson = _require_lesson(lesson_id)
    if lesson.get("is_recurring_instance"):
        raise ValueError("Recurring instances cannot start a new series")
    instances = build_recurring_instances(
        lesson,
        interval,
        end_date,
        is_infinite,
        max_instances,
        now=now,
    )
    stored_end = None if is_infinite or end_date is None else to_iso(series_end_limit(end_date))
    student_ids = [student["id"] for student in lesson["students"]]
    ids = _persist_instances(instances, student_ids)
    db.update_lesson(
        lesson_id,
        is_recurring=True,
        recurrence_interval=interval,
        recurrence_end_date=stored_end,
    )
    generated_until = instances[-1]["instance_date"] if instances else None
    db.create_recurring_group(
        lesson_id,
        lesson["title"],
        {
            "interval": interval,
            "end_date": stored_end,
            "is_infinite": bool(is_infinite),
        },
        generated_until=generated_until,
        total_instances=len(ids),
        is_infinite=is_infinite,
        next_extension_date=_next_extension_date(instances, is_infinite),
    )
    logger.info("Generated %d recurring instance(s) for lesson %s (%s)", len(ids), lesson_id, interval)
    return {
        "original_lesson_id": lesson_id,
        "instances_created": len(ids),
        "instance_ids": ids,
        "generated_until": generated_until,
    }


def extend_recurring_series(
    original_lesson_id: str,
    batch_size: int = MAX_INSTANCES_PER_BATCH,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Generate the next batch of an infinite series.

    A series whose generated range reaches into the last three weeks but
    which has no instance left in that window had its lessons deleted and
    is treated as cancelled.
    """
    group = db.get_recurring_group(original_lesson_id)
    if not group:
        raise LookupError(f"No recurring series for lesson {original_lesson_id}")
    moment = parse_timestamp(now) if now else db.utcnow()
    pattern = group.get("recurrence_pattern") or {}
    result: Dict[str, Any] = {"original_lesson_id": original_lesson_id, "extended": False, "instances_created": 0}

    cutoff = db.iso_date(moment - timedelta(days=CANCELLED_SERIES_DAYS))
    generated_until = group.get("instances_generated_until")
    if generated_until and generated_until >= cutoff:
        if not db.has_recurring_instances_since(original_lesson_id, cutoff):
            logger.info("Recurring series %s has no recent instances; treating as cancelled", original_lesson_id)
            result["reason"] = "cancelled"
            return result

    template = db.latest_recurring_instance(original_lesson_id) or _require_lesson(original_lesson_id)
    instances = build_recurring_instances(
        template,
        pattern.get("interval") or template.get("recurrence_interval") or "weekly",
        pattern.get("end_date"),
        bool(group.get("is_infinite")),
        batch_size,
        parent_lesson_id=original_lesson_id,
        now=moment,
    )
    if not instances:
        result["reason"] = "horizon_reached"
        return result

    student_ids = db.list_lesson_student_ids(template["id"])
    ids = _persist_instances(instances, student_ids)
    db.create_recurring_group(
        original_lesson_id,
        group["group_name"],
        pattern,
        generated_until=instances[-1]["instance_date"],
        total_instances=len(ids),
        is_infinite=bool(group.get("is_infinite")),
        next_extension_date=_next_extension_date(instances, bool(group.get("is_infinite"))),
    )
    logger.info("Extended recurring series %s by %d instance(s)", original_lesson_id, len(ids))
    result.update(
        {
            "extended": True,
            "instances_created": len(ids),
            "instance_ids": ids,
            "generated_until": instances[-1]["instance_date"],
        }
    )
    return result


def extend_due_series(now: Optional[datetime] = None, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Extend every infinite series whose next extension date has passed."""
    moment = parse_timestamp(now) if now else db.utcnow()
    results = []
    for group in db.list_due_recurring_groups(moment):
        if organization_id:
            original = db.get_lesson(group["original_lesson_id"])
            if not original or original["organization_id"] != organization_id:
                continue
        results.append(extend_recurring_series(group["original_lesson_id"], now=moment))
    return results


# -------------- time off --------------
def _tutor_lessons_overlapping(
    tutor_id: str,
    start: Timestamp,
    end: Timestamp,
    exclude_lesson_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    # Lessons never span more than a day, so widening the lower bound by a
    # day catches lessons that started before the window.
    lower = parse_timestamp(start) - timedelta(days=1)
    lessons = db.list_lessons(start=lower, end=end, tutor_id=tutor_id, status="scheduled")
    return [
        lesson
        for lesson in lessons
        if lesson["id"] != exclude_lesson_id and overlaps(lesson["start_time"], lesson["end_time"], start, end)
    ]


def check_time_off_conflicts(tutor_id: str, start: Timestamp, end: Timestamp) -> List[Dict[str, Any]]:
    conflicts = []
    for lesson in _tutor_lessons_overlapping(tutor_id, start, end):
        conflicts.append(
            {
                "lesson_id": lesson["id"],
                "title": lesson["title"],
                "start_time": lesson["start_time"],
                "end_time": lesson["end_time"],
                "students": [student["name"] for student in lesson["students"]],
            }
        )
    return conflicts


def request_time_off(tutor_id: str, start: Timestamp, end: Timestamp, reason: Optional[str] = None) -> Dict[str, Any]:
    if not db.get_tutor(tutor_id):
        raise LookupError(f"Tutor {tutor_id} not found")
    if parse_timestamp(end) <= parse_timestamp(start):
        raise ValueError("Time off must end after it starts")
    request = db.create_time_off(tutor_id, start, end, reason)
    return {"request": request, "conflicts": check_time_off_conflicts(tutor_id, start, end)}


def _pending_request(request_id: int) -> Dict[str, Any]:
    request = db.get_time_off(request_id)
    if not request:
        raise LookupError(f"Time off request {request_id} not found")
    if request["status"] != "pending":
        raise ValueError(f"Time off request {request_id} is already {request['status']}")
    return request


def approve_time_off(request_id: int, admin_user_id: Optional[str], force: bool = False) -> Dict[str, Any]:
    request = _pending_request(request_id)
    conflicts = check_time_off_conflicts(request["tutor_id"], request["start_date"], request["end_date"])
    if conflicts and not force:
        raise TimeOffConflictError(conflicts)
    if conflicts:
        logger.warning(
            "Time off %s approved by %s with %d conflicting lesson(s)", request_id, admin_user_id, len(conflicts)
        )
    return db.set_time_off_status(request_id, "approved", admin_user_id)


def reject_time_off(request_id: int, admin_user_id: Optional[str]) -> Dict[str, Any]:
    _pending_request(request_id)
    return db.set_time_off_status(request_id, "rejected", admin_user_id)


# -------------- lesson changes --------------
def reassign_lesson(
    lesson_id: str,
    new_tutor_id: str,
    reason: Optional[str] = None,
    admin_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    lesson = _require_lesson(lesson_id)
    tutor = db.get_tutor(new_tutor_id)
    if not tutor or tutor["organization_id"] != lesson["organization_id"]:
        raise LookupError(f"Tutor {new_tutor_id} not found")
    if lesson["tutor_id"] == new_tutor_id:
        return lesson
    db.update_lesson(lesson_id, tutor_id=new_tutor_id)
    logger.info(
        "Lesson %s reassigned from %s to %s by %s: %s",
        lesson_id,
        lesson["tutor_id"],
        new_tutor_id,
        admin_user_id,
        reason or "no reason given",
    )
    if lesson.get("lesson_space_room_id") or lesson["students"]:
        try:
            video_rooms.create_room(lesson_id)
        except (video_rooms.VideoRoomError, ValueError):
            logger.warning("Could not re-provision video room for lesson %s", lesson_id, exc_info=True)
    return db.get_lesson(lesson_id)


def cancel_lesson(lesson_id: str, reason: Optional[str] = None, admin_user_id: Optional[str] = None) -> Dict[str, Any]:
    lesson = _require_lesson(lesson_id)
    if lesson["status"] == "completed":
        raise ValueError("Completed lessons cannot be cancelled")
    if lesson["status"] == "cancelled":
        return lesson
    logger.info("Lesson %s cancelled by %s: %s", lesson_id, admin_user_id, reason or "no reason given")
    return db.update_lesson(lesson_id, status="cancelled", cancellation_reason=reason)


def complete_lesson(lesson_id: str, attendance: Optional[Mapping[Any, str]] = None) -> Dict[str, Any]:
    lesson = _require_lesson(lesson_id)
    if lesson["status"] == "cancelled":
        raise ValueError("Cancelled lessons cannot be completed")
    enrolled = {student["id"] for student in lesson["students"]}
    records = {}
    for raw_student_id, status in (attendance or {}).items():
        student_id = int(raw_student_id)
        if student_id not in enrolled:
            raise ValueError(f"Student {student_id} is not enrolled in lesson {lesson_id}")
        if status not in ATTENDANCE_STATUSES:
            raise ValueError(f"Unknown attendance status: {status}")
        records[student_id] = status
    for student_id, status in records.items():
        db.record_attendance(lesson_id, student_id, status)
    return db.update_lesson(lesson_id, status="completed")


# -------------- availability --------------
def _normalise_day(day: str) -> str:
    value = (day or "").strip().capitalize()
    if value not in WEEKDAYS:
        raise ValueError(f"Unknown weekday: {day}")
    return value


def set_tutor_availability(tutor_id: str, windows: Iterable[Mapping[str, str]]) -> List[Dict[str, Any]]:
    """Replace the tutor's weekly availability windows."""
    if not db.get_tutor(tutor_id):
        raise LookupError(f"Tutor {tutor_id} not found")
    cleaned = []
    for window in windows:
        day = _normalise_day(window.get("day_of_week", ""))
        start, end = window.get("start_time", ""), window.get("end_time", "")
        if not _HHMM_RE.match(start) or not _HHMM_RE.match(end):
            raise ValueError("Availability times must be HH:MM")
        if end <= start:
            raise ValueError("Availability window must end after it starts")
        cleaned.append((day, start, end))
    db.clear_tutor_availability(tutor_id)
    for day, start, end in cleaned:
        db.add_tutor_availability(tutor_id, day, start, end)
    return db.list_tutor_availability([tutor_id])


def _within_availability(windows: Sequence[Mapping[str, str]], start: datetime, end: datetime) -> bool:
    if start.date() != end.date() and end.time() != datetime.min.time():
        return False
    day = WEEKDAYS[start.weekday()]
    start_hm = start.strftime("%H:%M")
    end_hm = "24:00" if end.date() != start.date() else end.strftime("%H:%M")
    return any(
        window["day_of_week"] == day and window["start_time"] <= start_hm and end_hm <= window["end_time"]
        for window in windows
    )


def is_tutor_available(
    tutor_id: str,
    start: Timestamp,
    end: Timestamp,
    exclude_lesson_id: Optional[str] = None,
) -> bool:
    """Inside a weekly window, no clashing lesson and no approved time off.

    Availability windows are compared against UTC wall-clock times.
    """
    start_dt, end_dt = parse_timestamp(start), parse_timestamp(end)
    windows = db.list_tutor_availability([tutor_id])
    if not _within_availability(windows, start_dt, end_dt):
        return False
    if _tutor_lessons_overlapping(tutor_id, start_dt, end_dt, exclude_lesson_id):
        return False
    return not db.has_approved_time_off(tutor_id, start_dt, end_dt)


def _teaches(subject_names: Iterable[str], subject: str) -> bool:
    wanted = subject.strip().lower()
    for name in subject_names:
        lowered = name.lower()
        if wanted in lowered or lowered in wanted:
            return True
    return False


def find_alternative_tutors(
    exclude_tutor_id: str,
    start: Timestamp,
    end: Timestamp,
    subject: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Active tutors in the same organisation who are free for the slot."""
    excluded = db.get_tutor(exclude_tutor_id)
    if not excluded:
        raise LookupError(f"Tutor {exclude_tutor_id} not found")
    subjects_by_tutor: Dict[str, List[str]] = {}
    for row in db.list_tutor_subjects(excluded["organization_id"]):
        subjects_by_tutor.setdefault(row["tutor_id"], []).append(row["subject_name"])

    alternatives = []
    for tutor in db.list_tutors(excluded["organization_id"], status="active"):
        if tutor["id"] == exclude_tutor_id:
            continue
        tutor_subjects = subjects_by_tutor.get(tutor["id"], [])
        if subject and not _teaches(tutor_subjects, subject):
            continue
        if not is_tutor_available(tutor["id"], start, end):
            continue
        alternatives.append({**tutor, "subjects": tutor_subjects})
    return alternatives
