"""Tutor earnings and earning goals."""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Tuple

import db

logger = logging.getLogger(__name__)

PERIODS = ("weekly", "monthly")


def _money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def get_earnings_period(now: datetime, period: str = "weekly") -> Tuple[datetime, datetime]:
    """Bounds of the week (Monday start) or calendar month containing ``now``.

    The start is inclusive and the end exclusive.
    """
    if period not in PERIODS:
        raise ValueError(f"period must be one of {', '.join(PERIODS)}")
    now = db.parse_timestamp(now)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "weekly":
        start = midnight - timedelta(days=midnight.weekday())
        return start, start + timedelta(days=7)
    start = midnight.replace(day=1)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def lesson_earnings(lesson: Dict[str, Any]) -> float:
    hours = (db.parse_timestamp(lesson["end_time"]) - db.parse_timestamp(lesson["start_time"])).total_seconds() / 3600
    return max(0.0, hours) * float(lesson.get("normal_hourly_rate") or 0)


def calculate_tutor_earnings(tutor_id: str, period: str = "weekly", now: Optional[datetime] = None) -> float:
    start, end = get_earnings_period(now or db.utcnow(), period)
    lessons = db.list_completed_lessons(start, end, tutor_id=tutor_id)
    return _money(sum(lesson_earnings(lesson) for lesson in lessons))


def set_earning_goal(
    tutor_id: str, amount: float, period: str = "weekly", now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Store the goal for the period that contains ``now``."""
    if not db.get_tutor(tutor_id):
        raise LookupError(f"Tutor {tutor_id} not found")
    if amount is None or float(amount) < 0:
        raise ValueError("Goal amount must be zero or more")
    start, _ = get_earnings_period(now or db.utcnow(), period)
    goal = db.upsert_earning_goal(tutor_id, _money(float(amount)), period, db.iso_date(start))
    logger.info("Earning goal for tutor %s set to %.2f (%s)", tutor_id, float(amount), period)
    return goal


def get_earning_goal(tutor_id: str, period: str = "weekly", now: Optional[datetime] = None) -> Optional[float]:
    """Latest goal that started on or before the current period."""
    start, _ = get_earnings_period(now or db.utcnow(), period)
    goal = db.get_earning_goal(tutor_id, period, db.iso_date(start))
    return float(goal["goal_amount"]) if goal else None


def get_tutor_earnings_data(tutor_id: str, period: str = "weekly", now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or db.utcnow()
    start, end = get_earnings_period(now, period)
    earnings = calculate_tutor_earnings(tutor_id, period, now)
    goal = get_earning_goal(tutor_id, period, now)
    progress = 0.0
    remaining = None
    if goal:
        progress = min(100.0, round(earnings / goal * 100, 1))
        remaining = _money(max(0.0, goal - earnings))
    return {
        "tutor_id": tutor_id,
        "period": period,
        "period_start": db.to_iso(start),
        "period_end": db.to_iso(end),
        "earnings": earnings,
        "goal": goal,
        "progress_percent": progress,
        "remaining": remaining,
    }


def organization_earnings_summary(
    organization_id: str, start: db.Timestamp, end: db.Timestamp
) -> Dict[str, Any]:
    """Per-tutor totals of completed lessons starting in ``[start, end)``."""
    if db.parse_timestamp(end) <= db.parse_timestamp(start):
        raise ValueError("end must be after start")
    totals: Dict[str, Dict[str, Any]] = {}
    for lesson in db.list_completed_lessons(start, end, organization_id=organization_id):
        entry = totals.setdefault(
            lesson["tutor_id"],
            {
                "tutor_id": lesson["tutor_id"],
                "tutor_name": f"{lesson['first_name']} {lesson['last_name']}".strip(),
                "lessons": 0,
                "hours": 0.0,
                "earnings": 0.0,
            },
        )
        hours = (db.parse_timestamp(lesson["end_time"]) - db.parse_timestamp(lesson["start_time"])).total_seconds() / 3600
        entry["lessons"] += 1
        entry["hours"] += hours
        entry["earnings"] += lesson_earnings(lesson)
    tutors = sorted(totals.values(), key=lambda item: (-item["earnings"], item["tutor_name"]))
    for entry in tutors:
        entry["hours"] = round(entry["hours"], 2)
        entry["earnings"] = _money(entry["earnings"])
    return {
        "organization_id": organization_id,
        "start": db.to_iso(start),
        "end": db.to_iso(end),
        "tutors": tutors,
        "total_earnings": _money(sum(entry["earnings"] for entry in tutors)),
    }
