"""Test cases for db operations."""

from datetime import datetime, timezone

import pytest

import db


def _org_with_tutor():
    org = db.create_organization("Riverside Tutors")
    tutor = db.create_tutor(org["id"], "Priya", "Shah", email="priya@example.com", hourly_rate=25)
    return org, tutor


def test_timestamps_normalise_to_utc():
    assert db.to_iso("2026-03-02T16:00:00Z") == "2026-03-02T16:00:00+00:00"
    assert db.to_iso("2026-03-02T17:00:00+01:00") == "2026-03-02T16:00:00+00:00"
    naive = db.parse_timestamp("2026-03-02T16:00:00")
    assert naive.tzinfo == timezone.utc


def test_create_lesson_hydrates_tutor_and_students(temp_db):
    org, tutor = _org_with_tutor()
    ada = db.create_student(org["id"], "Ada", "Lovelace", parent_email="ada.parent@example.com")
    alan = db.create_student(org["id"], "Alan", "Turing")

    lesson = db.create_lesson(
        org["id"],
        "GCSE Maths group",
        tutor["id"],
        "2026-03-02T16:00:00Z",
        "2026-03-02T17:00:00Z",
        student_ids=[ada["id"], alan["id"]],
        subject="GCSE Maths",
        is_group=True,
    )

    assert lesson["status"] == "scheduled"
    assert lesson["lesson_type"] == "regular"
    assert lesson["is_group"] is True
    assert lesson["start_time"] == "2026-03-02T16:00:00+00:00"
    assert lesson["tutor"]["name"] == "Priya Shah"
    assert [s["name"] for s in lesson["students"]] == ["Ada Lovelace", "Alan Turing"]
    assert lesson["students"][0]["parent_email"] == "ada.parent@example.com"


def test_create_lesson_rejects_inverted_times(temp_db):
    org, tutor = _org_with_tutor()
    with pytest.raises(ValueError):
        db.create_lesson(org["id"], "Broken", tutor["id"], "2026-03-02T17:00:00Z", "2026-03-02T16:00:00Z")


def test_list_lessons_filters_by_window_and_status(temp_db):
    org, tutor = _org_with_tutor()
    early = db.create_lesson(org["id"], "Early", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z")
    late = db.create_lesson(org["id"], "Late", tutor["id"], "2026-03-04T09:00:00Z", "2026-03-04T10:00:00Z")
    db.update_lesson(late["id"], status="cancelled")

    window = db.list_lessons(org["id"], "2026-03-01T00:00:00Z", "2026-03-05T00:00:00Z")
    assert [lesson["id"] for lesson in window] == [early["id"], late["id"]]

    scheduled = db.list_lessons(org["id"], status="scheduled")
    assert [lesson["id"] for lesson in scheduled] == [early["id"]]
    assert db.list_lessons(org["id"], tutor_ids=[]) == []


def test_update_lesson_rejects_unknown_fields(temp_db):
    org, tutor = _org_with_tutor()
    lesson = db.create_lesson(org["id"], "Physics", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z")
    with pytest.raises(ValueError):
        db.update_lesson(lesson["id"], organization_id="elsewhere")


def test_student_schedules_only_include_scheduled_lessons(temp_db):
    org, tutor = _org_with_tutor()
    ada = db.create_student(org["id"], "Ada", "Lovelace")
    kept = db.create_lesson(
        org["id"], "Kept", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z", student_ids=[ada["id"]]
    )
    dropped = db.create_lesson(
        org["id"], "Dropped", tutor["id"], "2026-03-03T09:00:00Z", "2026-03-03T10:00:00Z", student_ids=[ada["id"]]
    )
    db.update_lesson(dropped["id"], status="cancelled")

    schedules = db.list_student_schedules([ada["id"], 9999])
    assert [entry["lesson_id"] for entry in schedules[ada["id"]]] == [kept["id"]]
    assert schedules[ada["id"]][0]["student_name"] == "Ada Lovelace"
    assert schedules[9999] == []


def test_attendance_upsert_keeps_latest_status(temp_db):
    org, tutor = _org_with_tutor()
    ada = db.create_student(org["id"], "Ada")
    lesson = db.create_lesson(
        org["id"], "Maths", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z", student_ids=[ada["id"]]
    )
    db.record_attendance(lesson["id"], ada["id"], "absent")
    db.record_attendance(lesson["id"], ada["id"], "excused")
    assert db.get_attendance(lesson["id"]) == {ada["id"]: "excused"}


def test_deleting_lesson_cascades_to_enrolments(temp_db):
    org, tutor = _org_with_tutor()
    ada = db.create_student(org["id"], "Ada")
    lesson = db.create_lesson(
        org["id"], "Maths", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z", student_ids=[ada["id"]]
    )
    assert db.delete_lesson(lesson["id"]) is True
    assert db.get_lesson(lesson["id"]) is None
    assert db.list_lesson_student_ids(lesson["id"]) == []


def test_recurring_group_upsert_accumulates_instances(temp_db):
    org, tutor = _org_with_tutor()
    lesson = db.create_lesson(org["id"], "Weekly", tutor["id"], "2026-03-02T09:00:00Z", "2026-03-02T10:00:00Z")
    pattern = {"interval": "weekly", "end_date": None, "is_infinite": True}
    db.create_recurring_group(
        lesson["id"], "Weekly", pattern,
        generated_until="2026-05-25", total_instances=12, is_infinite=True,
        next_extension_date="2026-04-25T09:00:00+00:00",
    )
    db.create_recurring_group(
        lesson["id"], "Weekly", pattern,
        generated_until="2026-08-17", total_instances=12, is_infinite=True,
        next_extension_date="2026-07-18T09:00:00+00:00",
    )

    group = db.get_recurring_group(lesson["id"])
    assert group["total_instances_generated"] == 24
    assert group["instances_generated_until"] == "2026-08-17"
    assert group["recurrence_pattern"] == pattern
    assert group["is_infinite"] is True

    assert db.list_due_recurring_groups("2026-07-01T00:00:00Z") == []
    due = db.list_due_recurring_groups("2026-07-20T00:00:00Z")
    assert [g["original_lesson_id"] for g in due] == [lesson["id"]]


def test_approved_time_off_uses_overlap(temp_db):
    _, tutor = _org_with_tutor()
    request = db.create_time_off(tutor["id"], "2026-03-02T00:00:00Z", "2026-03-04T00:00:00Z", "Holiday")
    assert request["status"] == "pending"
    assert not db.has_approved_time_off(tutor["id"], "2026-03-03T09:00:00Z", "2026-03-03T10:00:00Z")

    db.set_time_off_status(request["id"], "approved", "owner")
    assert db.has_approved_time_off(tutor["id"], "2026-03-03T09:00:00Z", "2026-03-03T10:00:00Z")
    # Touching the end of the period is not an overlap.
    assert not db.has_approved_time_off(tutor["id"], "2026-03-04T00:00:00Z", "2026-03-04T01:00:00Z")


def test_earning_goal_lookup_returns_latest_started_goal(temp_db):
    _, tutor = _org_with_tutor()
    db.upsert_earning_goal(tutor["id"], 200, "weekly", "2026-03-02")
    db.upsert_earning_goal(tutor["id"], 250, "weekly", "2026-03-09")
    db.upsert_earning_goal(tutor["id"], 300, "weekly", "2026-03-09")

    assert db.get_earning_goal(tutor["id"], "weekly", "2026-03-05")["goal_amount"] == 200
    assert db.get_earning_goal(tutor["id"], "weekly", "2026-03-20")["goal_amount"] == 300
    assert db.get_earning_goal(tutor["id"], "weekly", "2026-02-01") is None


def test_purchase_lifecycle_by_setup_intent_and_subscription(temp_db):
    course = db.create_course("GCSE Maths revision", 49.0)
    purchase_id = db.create_purchase(
        "student1", course["id"], status="pending", stripe_customer_id="cus_1", stripe_setup_intent_id="seti_1"
    )
    assert not db.user_has_used_trial("student1")

    db.update_purchase(purchase_id, status="trialing", stripe_subscription_id="sub_1", has_used_trial=True)
    purchase = db.get_purchase_by_setup_intent("seti_1")
    assert purchase["status"] == "trialing"
    assert purchase["has_used_trial"] is True
    assert db.user_has_used_trial("student1")

    assert db.update_purchases_by_subscription("sub_1", "cancelled") == 1
    assert db.find_purchase("student1", course["id"], ("trialing", "active")) is None
    assert db.find_purchase("student1", course["id"], ("cancelled",))["id"] == purchase_id


def test_llm_metrics_are_recorded(temp_db):
    db.record_llm_metric("alice", "gpt-4o-mini", "marking", 120, 200, None, outcome="ok")
    rows = db._query("SELECT user_id, prompt_version, tokens_in, tokens_out, outcome FROM llm_metrics")
    assert len(rows) == 1
    assert dict(rows[0]) == {
        "user_id": "alice",
        "prompt_version": "marking",
        "tokens_in": 200,
        "tokens_out": None,
        "outcome": "ok",
    }


def test_iso_date_formats_dates_and_datetimes():
    assert db.iso_date(datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc)) == "2026-03-02"


def test_pool_reuses_and_closes_connections(temp_db):
    db.list_subjects("org")
    db.list_subjects("org")
    assert db._pool.created_connections == 1

    db.close()
    assert db._pool.created_connections == 0
    assert db.list_subjects("org") == []
