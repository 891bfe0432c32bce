from datetime import date, datetime, timezone

import pytest

import db
import notifications


class _FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


@pytest.fixture
def outbox(monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    sent = []

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append({"url": url, "json": json, "headers": headers})
        return _FakeResponse(200, {"id": f"em_{len(sent)}"})

    monkeypatch.setattr(notifications.requests, "post", fake_post)
    monkeypatch.setattr(notifications.time, "sleep", lambda seconds: None)
    return sent


def test_uk_day_bounds_follow_british_summer_time():
    start, end = notifications.uk_day_bounds(date(2026, 7, 1))
    assert start == datetime(2026, 6, 30, 23, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 7, 1, 22, 59, 59, tzinfo=timezone.utc)

    # Clocks go forward on 29 March 2026, so the day is 23 hours long.
    start, end = notifications.uk_day_bounds(date(2026, 3, 29))
    assert start == datetime(2026, 3, 29, 0, 0, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 29, 22, 59, 59, tzinfo=timezone.utc)


def test_reminders_skip_excused_students_and_missing_parents(temp_db, outbox):
    org = db.create_organization("Riverside Tutors")
    tutor = db.create_tutor(org["id"], "Priya", "Shah")
    ada = db.create_student(org["id"], "Ada", "Lovelace", parent_first_name="Ann", parent_email="ann@example.com")
    ben = db.create_student(org["id"], "Ben", "Ng")
    cat = db.create_student(org["id"], "Cat", "Jones", parent_email="cj@example.com")

    group = db.create_lesson(
        org["id"],
        "Algebra group",
        tutor["id"],
        "2026-03-10T16:00:00Z",
        "2026-03-10T17:00:00Z",
        subject="Maths",
        student_ids=[ada["id"], ben["id"], cat["id"]],
    )
    db.record_attendance(group["id"], cat["id"], "excused")
    excused = db.create_lesson(
        org["id"], "Excused", tutor["id"], "2026-03-10T18:00:00Z", "2026-03-10T19:00:00Z", student_ids=[cat["id"]]
    )
    db.record_attendance(excused["id"], cat["id"], "excused")
    db.create_lesson(
        org["id"],
        "Cancelled",
        tutor["id"],
        "2026-03-10T09:00:00Z",
        "2026-03-10T10:00:00Z",
        status="cancelled",
        student_ids=[ada["id"]],
    )
    db.create_lesson(
        org["id"], "Next week", tutor["id"], "2026-03-17T16:00:00Z", "2026-03-17T17:00:00Z", student_ids=[ada["id"]]
    )

    result = notifications.send_lesson_reminders("tomorrow", now=datetime(2026, 3, 9, 18, 0, tzinfo=timezone.utc))

    assert result == {
        "timeframe": "tomorrow",
        "date": "2026-03-10",
        "lessons_found": 2,
        "lessons_skipped": 1,
        "excused_students": 1,
        "emails_sent": 1,
        "errors": [],
    }
    assert len(outbox) == 1
    message = outbox[0]["json"]
    assert message["to"] == ["ann@example.com"]
    assert message["subject"] == "Lesson Reminder - Maths Tomorrow"
    assert "Hi Ann," in message["html"]
    assert "Ada Lovelace has a lesson tomorrow" in message["html"]
    assert "16:00 - 17:00 (UK time)" in message["html"]
    assert outbox[0]["headers"]["Authorization"] == "Bearer re_test"

    log = db.list_email_log(group["id"])
    assert [(row["status"], row["provider_id"]) for row in log] == [("sent", "em_1")]


def test_reminders_reject_unknown_timeframe(temp_db):
    with pytest.raises(ValueError):
        notifications.send_lesson_reminders("yesterday")


def test_rate_limited_send_is_retried(temp_db, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    responses = [_FakeResponse(429, text="slow down"), _FakeResponse(200, {"id": "em_9"})]
    sleeps = []
    monkeypatch.setattr(notifications.requests, "post", lambda *a, **k: responses.pop(0))
    monkeypatch.setattr(notifications.time, "sleep", sleeps.append)

    assert notifications.send_email("p@example.com", "Hello", "<p>Hi</p>") == "em_9"
    assert sleeps == [1]


def test_failed_send_is_logged_and_raised(temp_db, monkeypatch):
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    monkeypatch.setattr(
        notifications.requests, "post", lambda *a, **k: _FakeResponse(422, text="invalid recipient")
    )

    with pytest.raises(notifications.EmailDeliveryError) as excinfo:
        notifications.send_email("bad", "Hello", "<p>Hi</p>", lesson_id="lesson-1")
    assert "422" in str(excinfo.value)
    log = db.list_email_log("lesson-1")
    assert log[0]["status"] == "failed"
    assert "invalid recipient" in log[0]["error"]


def test_missing_api_key_fails_without_calling_resend(temp_db, monkeypatch):
    monkeypatch.delenv("RESEND_API_KEY", raising=False)

    def unexpected_post(*args, **kwargs):
        raise AssertionError("Resend should not be called")

    monkeypatch.setattr(notifications.requests, "post", unexpected_post)
    with pytest.raises(notifications.EmailDeliveryError):
        notifications.send_email("p@example.com", "Hello", "<p>Hi</p>")
    assert db.list_email_log()[0]["error"] == "RESEND_API_KEY not configured"


def test_cancellation_notice_includes_reason(temp_db, outbox):
    org = db.create_organization("Riverside Tutors")
    tutor = db.create_tutor(org["id"], "Priya")
    ada = db.create_student(org["id"], "Ada", parent_email="ann@example.com")
    ben = db.create_student(org["id"], "Ben")
    lesson = db.create_lesson(
        org["id"],
        "Fractions",
        tutor["id"],
        "2026-07-01T15:00:00Z",
        "2026-07-01T16:00:00Z",
        student_ids=[ada["id"], ben["id"]],
    )

    result = notifications.send_cancellation_notice(lesson["id"], reason="Tutor unwell")

    assert result == {"lesson_id": lesson["id"], "emails_sent": 1, "errors": []}
    body = outbox[0]["json"]["html"]
    assert "Wednesday, 01 July 2026 at 16:00 (UK time)" in body
    assert "Reason: Tutor unwell" in body
    with pytest.raises(LookupError):
        notifications.send_cancellation_notice("missing")
