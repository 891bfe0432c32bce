from datetime import datetime, timezone

import pytest

import db
import earnings


NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


def _completed(org_id, tutor_id, start, end, status="completed"):
    return db.create_lesson(org_id, "Lesson", tutor_id, start, end, status=status)


@pytest.fixture
def tutors(temp_db):
    org = db.create_organization("Riverside Tutors")
    priya = db.create_tutor(org["id"], "Priya", "Shah", hourly_rate=30)
    tom = db.create_tutor(org["id"], "Tom", "Reed", hourly_rate=20)
    _completed(org["id"], priya["id"], "2026-03-09T16:00:00Z", "2026-03-09T17:30:00Z")
    _completed(org["id"], priya["id"], "2026-03-13T10:00:00Z", "2026-03-13T10:45:00Z")
    _completed(org["id"], priya["id"], "2026-03-10T10:00:00Z", "2026-03-10T11:00:00Z", status="scheduled")
    _completed(org["id"], priya["id"], "2026-03-16T00:00:00Z", "2026-03-16T01:00:00Z")
    _completed(org["id"], tom["id"], "2026-03-12T15:00:00Z", "2026-03-12T17:00:00Z")
    return org, priya, tom


def test_earnings_periods():
    start, end = earnings.get_earnings_period(NOW, "weekly")
    assert (start, end) == (
        datetime(2026, 3, 9, tzinfo=timezone.utc),
        datetime(2026, 3, 16, tzinfo=timezone.utc),
    )
    start, end = earnings.get_earnings_period(datetime(2026, 12, 31, 23, 0, tzinfo=timezone.utc), "monthly")
    assert (start, end) == (
        datetime(2026, 12, 1, tzinfo=timezone.utc),
        datetime(2027, 1, 1, tzinfo=timezone.utc),
    )
    with pytest.raises(ValueError):
        earnings.get_earnings_period(NOW, "yearly")


def test_only_completed_lessons_in_period_count(tutors):
    _, priya, _ = tutors
    assert earnings.calculate_tutor_earnings(priya["id"], "weekly", NOW) == 67.5
    assert earnings.calculate_tutor_earnings(priya["id"], "monthly", NOW) == 97.5


def test_goal_progress_uses_latest_goal(tutors):
    _, priya, _ = tutors
    earnings.set_earning_goal(priya["id"], 80, "weekly", now=datetime(2026, 3, 2, tzinfo=timezone.utc))
    assert earnings.get_earning_goal(priya["id"], "weekly", NOW) == 80.0

    earnings.set_earning_goal(priya["id"], 100, "weekly", now=NOW)
    data = earnings.get_tutor_earnings_data(priya["id"], "weekly", NOW)
    assert data == {
        "tutor_id": priya["id"],
        "period": "weekly",
        "period_start": "2026-03-09T00:00:00+00:00",
        "period_end": "2026-03-16T00:00:00+00:00",
        "earnings": 67.5,
        "goal": 100.0,
        "progress_percent": 67.5,
        "remaining": 32.5,
    }


def test_progress_is_capped_without_negative_remaining(tutors):
    _, _, tom = tutors
    earnings.set_earning_goal(tom["id"], 25, "weekly", now=NOW)
    data = earnings.get_tutor_earnings_data(tom["id"], "weekly", NOW)
    assert data["earnings"] == 40.0
    assert data["progress_percent"] == 100.0
    assert data["remaining"] == 0.0


def test_no_goal_means_zero_progress(tutors):
    _, priya, _ = tutors
    data = earnings.get_tutor_earnings_data(priya["id"], "monthly", NOW)
    assert data["goal"] is None
    assert data["progress_percent"] == 0.0
    assert data["remaining"] is None


def test_goal_validation(tutors):
    _, priya, _ = tutors
    with pytest.raises(LookupError):
        earnings.set_earning_goal("missing", 50)
    with pytest.raises(ValueError):
        earnings.set_earning_goal(priya["id"], -1)


def test_organization_summary_orders_by_earnings(tutors):
    org, priya, tom = tutors
    summary = earnings.organization_earnings_summary(org["id"], "2026-03-09T00:00:00Z", "2026-03-16T00:00:00Z")

    assert [entry["tutor_name"] for entry in summary["tutors"]] == ["Priya Shah", "Tom Reed"]
    assert summary["tutors"][0] == {
        "tutor_id": priya["id"],
        "tutor_name": "Priya Shah",
        "lessons": 2,
        "hours": 2.25,
        "earnings": 67.5,
    }
    assert summary["tutors"][1]["earnings"] == 40.0
    assert summary["total_earnings"] == 107.5

    with pytest.raises(ValueError):
        earnings.organization_earnings_summary(org["id"], "2026-03-16T00:00:00Z", "2026-03-09T00:00:00Z")
