"""Lesson reminder and cancellation emails sent through Resend."""

import html
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

import requests

import db
from env_validation import get_env_int, get_env_str

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
MAX_ATTEMPTS = 3
UK_TZ = ZoneInfo("Europe/London")
TIMEFRAMES = ("today", "tomorrow")


class EmailDeliveryError(RuntimeError):
    """Resend refused the message or could not be reached."""


def send_email(to: str, subject: str, html_body: str, *, lesson_id: Optional[str] = None) -> str:
    """Send one email, retrying rate-limited attempts with a linear back-off.

    Every outcome is written to ``email_log``. Returns the Resend message id.
    """
    api_key = get_env_str("RESEND_API_KEY")
    if not api_key:
        db.log_email(to, subject, "failed", error="RESEND_API_KEY not configured", lesson_id=lesson_id)
        raise EmailDeliveryError("RESEND_API_KEY is not configured")

    payload = {"from": get_env_str("EMAIL_FROM"), "to": [to], "subject": subject, "html": html_body}
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    error = ""
    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            response = requests.post(
                RESEND_URL, json=payload, headers=headers, timeout=get_env_int("RESEND_TIMEOUT", 30)
            )
        except requests.RequestException as exc:
            logger.error("Resend request to %s failed", to, exc_info=True)
            error = str(exc)
            break
        if response.status_code == 429 and attempt < MAX_ATTEMPTS:
            logger.warning("Resend rate limited; retrying in %ss (attempt %d/%d)", attempt, attempt, MAX_ATTEMPTS)
            time.sleep(attempt)
            continue
        if response.status_code >= 400:
            error = f"Resend API error {response.status_code}: {(response.text or '')[:300]}"
            logger.error("Email to %s failed: %s", to, error)
            break
        try:
            message_id = (response.json() or {}).get("id")
        except ValueError:
            message_id = None
        db.log_email(to, subject, "sent", provider_id=message_id, lesson_id=lesson_id)
        logger.info("Email sent to %s (%s)", to, message_id)
        return message_id or ""

    db.log_email(to, subject, "failed", error=error[:500], lesson_id=lesson_id)
    raise EmailDeliveryError(error or "Email delivery failed")


def uk_day_bounds(day) -> tuple:
    """UTC bounds of a UK calendar day: inclusive start, inclusive end."""
    start_local = datetime(day.year, day.month, day.day, tzinfo=UK_TZ)
    next_local = start_local.replace(tzinfo=None) + timedelta(days=1)
    end_local = next_local.replace(tzinfo=UK_TZ)
    start = start_local.astimezone(timezone.utc)
    end = end_local.astimezone(timezone.utc) - timedelta(seconds=1)
    return start, end


def format_uk(value: db.Timestamp, pattern: str) -> str:
    return db.parse_timestamp(value).astimezone(UK_TZ).strftime(pattern)


def _reminder_html(lesson: Mapping[str, Any], student: Mapping[str, Any], is_today: bool) -> str:
    parent_name = f"{student.get('parent_first_name') or ''} {student.get('parent_last_name') or ''}".strip()
    when = "today" if is_today else "tomorrow"
    lesson_date = format_uk(lesson["start_time"], "%A, %d %B %Y")
    lesson_time = f"{format_uk(lesson['start_time'], '%H:%M')} - {format_uk(lesson['end_time'], '%H:%M')}"
    esc = html.escape
    return (
        f"<p>Hi {esc(parent_name or 'there')},</p>"
        f"<p>This is a reminder that {esc(student['name'])} has a lesson {when}.</p>"
        f"<p><strong>{esc(lesson['title'])}</strong> ({esc(lesson.get('subject') or 'Tutoring Session')})<br>"
        f"{esc(lesson_date)}<br>{esc(lesson_time)} (UK time)</p>"
        f"<p><a href=\"{esc(get_env_str('DASHBOARD_URL'))}\">Open the dashboard</a></p>"
    )


def send_lesson_reminders(timeframe: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Email parents about regular lessons on the UK date ``timeframe`` refers to.

    Lessons whose students are all excused are skipped entirely; otherwise
    only excused students are left out.
    """
    if timeframe not in TIMEFRAMES:
        raise ValueError(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
    now = db.parse_timestamp(now or db.utcnow())
    is_today = timeframe == "today"
    target = now.astimezone(UK_TZ).date()
    if not is_today:
        target += timedelta(days=1)
    start, end = uk_day_bounds(target)

    lessons = db.list_lessons(start=start, end=end, status="scheduled", lesson_type="regular")
    emails_sent = 0
    skipped_lessons = 0
    excused_students = 0
    errors: List[str] = []
    for lesson in lessons:
        students = lesson.get("students") or []
        attendance = db.get_attendance(lesson["id"])
        excused = [s for s in students if attendance.get(int(s["id"])) == "excused"]
        if students and len(excused) == len(students):
            logger.info("Skipping lesson %s: all %d students excused", lesson["id"], len(students))
            skipped_lessons += 1
            continue
        excused_students += len(excused)
        for student in students:
            if student in excused:
                continue
            recipient = student.get("parent_email")
            if not recipient:
                logger.warning("No parent email for student %s", student["id"])
                continue
            subject = f"Lesson Reminder - {lesson.get('subject') or 'Tutoring'} {'Today' if is_today else 'Tomorrow'}"
            try:
                send_email(recipient, subject, _reminder_html(lesson, student, is_today), lesson_id=lesson["id"])
                emails_sent += 1
            except EmailDeliveryError as exc:
                errors.append(f"Failed to send to {recipient}: {exc}")

    logger.info(
        "Reminders for %s (%s): %d sent, %d lessons skipped, %d errors",
        timeframe,
        target.isoformat(),
        emails_sent,
        skipped_lessons,
        len(errors),
    )
    return {
        "timeframe": timeframe,
        "date": target.isoformat(),
        "lessons_found": len(lessons),
        "lessons_skipped": skipped_lessons,
        "excused_students": excused_students,
        "emails_sent": emails_sent,
        "errors": errors,
    }


def send_cancellation_notice(lesson_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    lesson = db.get_lesson(lesson_id)
    if not lesson:
        raise LookupError(f"Lesson {lesson_id} not found")
    subject = f"Lesson Cancelled - {lesson['title']}"
    when = f"{format_uk(lesson['start_time'], '%A, %d %B %Y at %H:%M')} (UK time)"
    sent = 0
    errors: List[str] = []
    for student in lesson.get("students") or []:
        recipient = student.get("parent_email")
        if not recipient:
            continue
        body = (
            f"<p>{html.escape(student['name'])}'s lesson <strong>{html.escape(lesson['title'])}</strong> "
            f"on {html.escape(when)} has been cancelled.</p>"
        )
        if reason:
            body += f"<p>Reason: {html.escape(reason)}</p>"
        try:
            send_email(recipient, subject, body, lesson_id=lesson_id)
            sent += 1
        except EmailDeliveryError as exc:
            errors.append(f"Failed to send to {recipient}: {exc}")
    return {"lesson_id": lesson_id, "emails_sent": sent, "errors": errors}
