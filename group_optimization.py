"""Merge under-filled group lessons without double-booking students.

The optimiser looks at a group lesson with one or two students and asks two
questions: is there another scheduled group in the same subject the
students could move into, and are there free tutor availability windows
that would let a new, fuller group form? Every student commitment is loaded
once into a :class:`StudentScheduleIndex`; all conflict checks then run in
memory against half-open time intervals.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import db
from db import Timestamp, parse_timestamp

logger = logging.getLogger(__name__)

MAX_GROUP_CAPACITY = 6
LOOKAHEAD_WEEKS = 4
TARGET_GROUP_SIZE = 3
SINGLETON_SAVING_GBP = 12.50
UNDERFILLED_SIZES = (1, 2)

MAX_MERGE_OPPORTUNITIES = 10
MAX_ALTERNATIVE_SLOTS = 20
SLOTS_FOR_RECOMMENDATIONS = 10

CORE_SUBJECTS = ("physics", "chemistry", "biology", "maths", "math", "english", "science", "history", "geography")
LEVELS = ("gcse", "a-level", "alevel", "ks3", "ks2", "11+", "11 plus")

_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass
class StudentConflict:
    student_id: int
    student_name: str
    conflicting_lesson_id: str
    conflicting_lesson_title: str
    conflict_time: str


@dataclass
class TargetLesson:
    id: str
    title: str
    subject: str
    start_time: str
    end_time: str
    tutor: Dict[str, str]
    current_students: int
    max_capacity: int
    student_names: List[str]


@dataclass
class MergeOpportunity:
    target_lesson: TargetLesson
    student_conflicts: List[StudentConflict]
    can_merge: bool
    available_spots: int
    resulting_size: int

    @property
    def priority(self) -> int:
        if self.can_merge and self.resulting_size == TARGET_GROUP_SIZE:
            return 0
        if self.can_merge:
            return 1
        return 2


@dataclass
class ExistingGroup:
    lesson_id: str
    title: str
    current_students: int
    student_names: List[str]


@dataclass
class AlternativeSlot:
    day_of_week: str
    date: str
    start_time: str
    end_time: str
    tutor: Dict[str, str]
    conflicts: List[StudentConflict]
    existing_group_at_time: Optional[ExistingGroup] = None

    @property
    def is_new_slot(self) -> bool:
        return self.existing_group_at_time is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_new_slot"] = self.is_new_slot
        return data


@dataclass
class LessonDetails:
    id: str
    title: str
    subject: str
    start_time: str
    end_time: str
    tutor: Dict[str, str]
    students: List[Dict[str, Any]]


@dataclass
class GroupOptimizationResult:
    current_lesson: LessonDetails
    merge_opportunities: List[MergeOpportunity] = field(default_factory=list)
    alternative_slots: List[AlternativeSlot] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def viable_merges(self) -> List[MergeOpportunity]:
        return [m for m in self.merge_opportunities if m.can_merge and m.available_spots > 0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_lesson": asdict(self.current_lesson),
            "merge_opportunities": [
                {**asdict(m), "priority": m.priority} for m in self.merge_opportunities
            ],
            "alternative_slots": [slot.to_dict() for slot in self.alternative_slots],
            "recommendations": list(self.recommendations),
        }


def extract_subject_keywords(subject: str) -> List[str]:
    """Core subjects and levels named in ``subject``; the text itself if none."""
    normalized = (subject or "").lower()
    keywords = [core for core in CORE_SUBJECTS if core in normalized]
    keywords.extend(level for level in LEVELS if level in normalized)
    if not keywords:
        keywords.append(subject or "")
    return keywords


def _matches_keywords(text: str, keywords: Sequence[str]) -> bool:
    lowered = (text or "").lower()
    return any(keyword.lower() in lowered for keyword in keywords if keyword)


class StudentScheduleIndex:
    """Student id -> scheduled commitments, sorted by start time."""

    def __init__(self, schedules: Mapping[int, Iterable[Mapping[str, Any]]]):
        self._entries: Dict[int, List[Tuple[datetime, datetime, Mapping[str, Any]]]] = {}
        for student_id, lessons in schedules.items():
            entries = [
                (parse_timestamp(lesson["start_time"]), parse_timestamp(lesson["end_time"]), lesson)
                for lesson in lessons
            ]
            entries.sort(key=lambda entry: entry[0])
            self._entries[int(student_id)] = entries

    @classmethod
    def build(cls, student_ids: Iterable[int]) -> "StudentScheduleIndex":
        return cls(db.list_student_schedules(sorted({int(sid) for sid in student_ids})))

    def __contains__(self, student_id: object) -> bool:
        return student_id in self._entries

    def lessons_for(self, student_id: int) -> List[Mapping[str, Any]]:
        return [entry[2] for entry in self._entries.get(int(student_id), [])]

    def conflicts(
        self,
        student_ids: Iterable[int],
        start: Timestamp,
        end: Timestamp,
        exclude_lesson_id: Optional[str] = None,
    ) -> List[StudentConflict]:
        slot_start, slot_end = parse_timestamp(start), parse_timestamp(end)
        found: List[StudentConflict] = []
        for student_id in student_ids:
            for lesson_start, lesson_end, lesson in self._entries.get(int(student_id), []):
                if lesson_start >= slot_end:
                    break
                if lesson.get("status", "scheduled") != "scheduled":
                    continue
                if exclude_lesson_id and lesson["lesson_id"] == exclude_lesson_id:
                    continue
                if lesson_start < slot_end and lesson_end > slot_start:
                    found.append(
                        StudentConflict(
                            student_id=int(student_id),
                            student_name=lesson.get("student_name", ""),
                            conflicting_lesson_id=lesson["lesson_id"],
                            conflicting_lesson_title=lesson.get("title", ""),
                            conflict_time=lesson["start_time"],
                        )
                    )
        return found


def _window(now: Optional[datetime]) -> Tuple[datetime, datetime]:
    start = parse_timestamp(now) if now else db.utcnow()
    return start, start + timedelta(weeks=LOOKAHEAD_WEEKS)


def _lesson_details(lesson: Mapping[str, Any]) -> LessonDetails:
    return LessonDetails(
        id=lesson["id"],
        title=lesson["title"],
        subject=lesson.get("subject") or lesson["title"],
        start_time=lesson["start_time"],
        end_time=lesson["end_time"],
        tutor={"id": lesson["tutor"]["id"], "name": lesson["tutor"]["name"]},
        students=[{"id": s["id"], "name": s["name"]} for s in lesson["students"]],
    )


def _candidate_targets(
    lesson: Mapping[str, Any],
    keywords: Sequence[str],
    window_start: datetime,
    window_end: datetime,
) -> List[TargetLesson]:
    groups = db.list_lessons(
        lesson["organization_id"],
        window_start,
        window_end,
        status="scheduled",
        is_group=True,
    )
    targets = []
    for group in groups:
        if group["id"] == lesson["id"]:
            continue
        if not _matches_keywords(group.get("subject") or group["title"], keywords):
            continue
        if len(group["students"]) >= MAX_GROUP_CAPACITY:
            continue
        targets.append(
            TargetLesson(
                id=group["id"],
                title=group["title"],
                subject=group.get("subject") or "",
                start_time=group["start_time"],
                end_time=group["end_time"],
                tutor={"id": group["tutor"]["id"], "name": group["tutor"]["name"]},
                current_students=len(group["students"]),
                max_capacity=MAX_GROUP_CAPACITY,
                student_names=[s["name"] for s in group["students"]],
            )
        )
    return targets


def rank_merge_opportunities(opportunities: Iterable[MergeOpportunity]) -> List[MergeOpportunity]:
    """Exactly-three merges first, then other viable merges, then blocked ones; earliest first."""
    return sorted(
        opportunities,
        key=lambda m: (m.priority, parse_timestamp(m.target_lesson.start_time), m.target_lesson.id),
    )


def _merge_opportunities(
    lesson: Mapping[str, Any],
    student_ids: Sequence[int],
    targets: Sequence[TargetLesson],
    index: StudentScheduleIndex,
) -> List[MergeOpportunity]:
    opportunities = []
    for target in targets:
        conflicts = index.conflicts(student_ids, target.start_time, target.end_time, exclude_lesson_id=lesson["id"])
        available = target.max_capacity - target.current_students
        opportunities.append(
            MergeOpportunity(
                target_lesson=target,
                student_conflicts=conflicts,
                can_merge=not conflicts and available >= len(student_ids),
                available_spots=available,
                resulting_size=target.current_students + len(student_ids),
            )
        )
    return rank_merge_opportunities(opportunities)


def _days(start: datetime, end: datetime) -> Iterable[date]:
    current = start.date()
    while current <= end.date():
        yield current
        current += timedelta(days=1)


def _at(day: date, hhmm: str) -> datetime:
    hours, minutes = (int(part) for part in hhmm[:5].split(":"))
    return datetime.combine(day, time(hours, minutes), tzinfo=timezone.utc)


def find_alternative_slots(
    lesson: Mapping[str, Any],
    student_ids: Sequence[int],
    keywords: Sequence[str],
    index: StudentScheduleIndex,
    window_start: datetime,
    window_end: datetime,
) -> List[AlternativeSlot]:
    """Weekly availability windows of matching tutors, expanded over the look-ahead window.

    Availability is read as UTC wall-clock time. Slots that already started
    are skipped.
    """
    tutors: Dict[str, Dict[str, str]] = {}
    for row in db.list_tutor_subjects(lesson["organization_id"]):
        if row["status"] != "active" or not _matches_keywords(row["subject_name"], keywords):
            continue
        name = f"{row['first_name'] or ''} {row['last_name'] or ''}".strip()
        tutors.setdefault(row["tutor_id"], {"id": row["tutor_id"], "name": name})
    if not tutors:
        return []

    tutor_ids = list(tutors)
    availability: Dict[Tuple[str, str], List[Mapping[str, Any]]] = {}
    for window in db.list_tutor_availability(tutor_ids):
        availability.setdefault((window["tutor_id"], window["day_of_week"]), []).append(window)

    existing: Dict[Tuple[str, str, str], Mapping[str, Any]] = {}
    for other in db.list_lessons(
        lesson["organization_id"],
        window_start,
        window_end,
        tutor_ids=tutor_ids,
        status="scheduled",
    ):
        if other["id"] == lesson["id"]:
            continue
        key = (other["tutor_id"], other["start_time"][:10], other["start_time"][11:16])
        existing.setdefault(key, other)

    slots: List[AlternativeSlot] = []
    for day in _days(window_start, window_end):
        day_name = _WEEKDAYS[day.weekday()]
        date_str = day.isoformat()
        for tutor_id, tutor in tutors.items():
            for window in availability.get((tutor_id, day_name), []):
                slot_start = _at(day, window["start_time"])
                slot_end = _at(day, window["end_time"])
                if slot_start < window_start or slot_end <= slot_start:
                    continue
                group = existing.get((tutor_id, date_str, window["start_time"][:5]))
                conflicts = index.conflicts(student_ids, slot_start, slot_end, exclude_lesson_id=lesson["id"])
                joinable = bool(group and group.get("is_group") and len(group["students"]) < MAX_GROUP_CAPACITY)
                if conflicts and not joinable:
                    continue
                if group and not _matches_keywords(f"{group.get('subject') or ''} {group['title']}", keywords):
                    continue
                slots.append(
                    AlternativeSlot(
                        day_of_week=day_name,
                        date=date_str,
                        start_time=window["start_time"],
                        end_time=window["end_time"],
                        tutor=dict(tutor),
                        conflicts=conflicts,
                        existing_group_at_time=(
                            ExistingGroup(
                                lesson_id=group["id"],
                                title=group["title"],
                                current_students=len(group["students"]),
                                student_names=[s["name"] for s in group["students"]],
                            )
                            if group
                            else None
                        ),
                    )
                )
    slots.sort(key=lambda slot: (slot.is_new_slot, slot.date, slot.start_time))
    return slots


def _day_time(value: str) -> str:
    moment = parse_timestamp(value)
    return f"{_WEEKDAYS[moment.weekday()]} {moment.strftime('%H:%M')}"


def generate_recommendations(
    current: LessonDetails,
    merges: Sequence[MergeOpportunity],
    slots: Sequence[AlternativeSlot],
) -> List[str]:
    recommendations: List[str] = []
    student_names = ", ".join(student["name"] for student in current.students)

    viable = [m for m in merges if m.can_merge and m.available_spots > 0]
    if viable:
        best = viable[0]
        recommendations.append(
            f"BEST: Move {student_names} to {_day_time(best.target_lesson.start_time)} group with "
            f"{best.target_lesson.tutor['name']} (joins {best.target_lesson.current_students} students, "
            f"group of {best.resulting_size})"
        )

    with_groups = [s for s in slots if s.existing_group_at_time and not s.conflicts]
    if with_groups and not viable:
        slot = with_groups[0]
        recommendations.append(
            f"OPTION: Could join {slot.existing_group_at_time.title} on {slot.day_of_week} {slot.start_time} "
            f"with {slot.tutor['name']} ({slot.existing_group_at_time.current_students} students)"
        )

    new_slots = [s for s in slots if s.is_new_slot and not s.conflicts]
    if new_slots:
        times: List[str] = []
        for slot in new_slots[:3]:
            label = f"{slot.day_of_week} {slot.start_time}"
            if label not in times:
                times.append(label)
        recommendations.append(f"ALTERNATIVE: Time slots available: {', '.join(times)}")

    blocked = [m for m in merges if not m.can_merge]
    if blocked:
        recommendations.append(f"WARNING: {len(blocked)} potential merge(s) blocked by student schedule conflicts")

    if len(current.students) == 1 and viable:
        recommendations.append(
            f"SAVING: Merging removes a single-student group, saving about £{SINGLETON_SAVING_GBP:.2f} per week"
        )

    if not recommendations:
        recommendations.append(
            "INFO: No immediate optimisation opportunities found. Consider expanding the search range."
        )
    return recommendations


def find_group_optimizations(
    lesson_id: str,
    now: Optional[datetime] = None,
    *,
    index: Optional[StudentScheduleIndex] = None,
) -> Optional[GroupOptimizationResult]:
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        return None
    current = _lesson_details(lesson)
    student_ids = [student["id"] for student in current.students]
    keywords = extract_subject_keywords(current.subject)
    window_start, window_end = _window(now)
    if index is None or any(sid not in index for sid in student_ids):
        index = StudentScheduleIndex.build(student_ids)

    targets = _candidate_targets(lesson, keywords, window_start, window_end)
    merges = _merge_opportunities(lesson, student_ids, targets, index)
    slots = find_alternative_slots(lesson, student_ids, keywords, index, window_start, window_end)
    recommendations = generate_recommendations(current, merges, slots[:SLOTS_FOR_RECOMMENDATIONS])
    logger.debug(
        "Optimiser for lesson %s: %d target(s), %d viable, %d slot(s)",
        lesson_id,
        len(merges),
        sum(1 for m in merges if m.can_merge),
        len(slots),
    )
    return GroupOptimizationResult(
        current_lesson=current,
        merge_opportunities=merges[:MAX_MERGE_OPPORTUNITIES],
        alternative_slots=slots[:MAX_ALTERNATIVE_SLOTS],
        recommendations=recommendations,
    )


def find_batch_optimizations(
    lesson_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> Dict[str, GroupOptimizationResult]:
    results: Dict[str, GroupOptimizationResult] = {}
    for lesson_id in lesson_ids:
        result = find_group_optimizations(lesson_id, now)
        if result:
            results[lesson_id] = result
    return results


def scan_underfilled_groups(organization_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Analyse every under-filled scheduled group lesson in the look-ahead window.

    A single-student group counts as eliminated when it has a viable merge
    into a lesson that is not itself already counted as eliminated.
    """
    window_start, window_end = _window(now)
    lessons = [
        lesson
        for lesson in db.list_lessons(organization_id, window_start, window_end, status="scheduled", is_group=True)
        if len(lesson["students"]) in UNDERFILLED_SIZES
    ]
    index = StudentScheduleIndex.build(s["id"] for lesson in lessons for s in lesson["students"])

    results: List[GroupOptimizationResult] = []
    eliminated: List[str] = []
    for lesson in lessons:
        result = find_group_optimizations(lesson["id"], window_start, index=index)
        if not result:
            continue
        results.append(result)
        if len(lesson["students"]) != 1:
            continue
        for merge in result.viable_merges:
            if merge.target_lesson.id not in eliminated:
                eliminated.append(lesson["id"])
                break

    logger.info(
        "Scanned %d under-filled group(s) for %s; %d single-student group(s) can be removed",
        len(results),
        organization_id,
        len(eliminated),
    )
    return {
        "organization_id": organization_id,
        "window_start": db.to_iso(window_start),
        "window_end": db.to_iso(window_end),
        "lessons_analysed": len(results),
        "singleton_groups_eliminated": len(eliminated),
        "eliminated_lesson_ids": eliminated,
        "weekly_saving_gbp": round(len(eliminated) * SINGLETON_SAVING_GBP, 2),
        "results": [result.to_dict() for result in results],
    }
