import asyncio
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
import llm


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    token: Optional[str] = None,
):
    body = b""
    headers = [(b"host", b"testserver")]
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _request(method: str, path: str, token: Optional[str] = None, payload: Optional[dict] = None, query: Optional[dict] = None):
    return asyncio.run(_call_app(method, path, payload=payload, query=query, token=token))


@pytest.fixture
def owner(temp_db):
    status, data = _request(
        "POST",
        "/organizations",
        payload={
            "name": "Riverside Tutors",
            "owner_user_id": "owner",
            "owner_email": "owner@riverside.test",
            "password": "owner-password",
            "first_name": "Dana",
        },
    )
    assert status == 200
    return {"token": data["token"], "organization_id": data["organization"]["id"]}


def _member(owner: dict, user_id: str, role: str, email: Optional[str] = None) -> str:
    status, _ = _request(
        "POST",
        "/organizations/members",
        owner["token"],
        {"user_id": user_id, "email": email, "password": "member-password", "role": role},
    )
    assert status == 200
    return app.auth_login(app.LoginBody(user_id=user_id, password="member-password"))["token"]


def _seed_lesson(token: str, **overrides):
    status, tutor = _request(
        "POST", "/tutors", token,
        {"first_name": "Priya", "last_name": "Shah", "email": "priya@riverside.test",
         "normal_hourly_rate": 30, "subjects": ["GCSE Maths"]},
    )
    assert status == 200
    status, student = _request(
        "POST", "/students", token,
        {"first_name": "Ada", "last_name": "Lovelace", "parent_email": "parent@riverside.test"},
    )
    assert status == 200
    payload = {
        "title": "GCSE Maths group",
        "subject": "GCSE Maths",
        "tutor_id": tutor["id"],
        "start_time": "2026-03-02T16:00:00Z",
        "end_time": "2026-03-02T17:00:00Z",
        "is_group": True,
        "student_ids": [student["id"]],
    }
    payload.update(overrides)
    status, lesson = _request("POST", "/lessons", token, payload)
    assert status == 200, lesson
    return tutor, student, lesson


def test_public_routes_do_not_need_a_token(temp_db):
    assert _request("GET", "/health") == (200, {"status": "ok"})
    status, data = _request("GET", "/")
    assert status == 200
    assert data["version"] == app.APP_VERSION


def test_protected_routes_require_a_token(temp_db):
    status, data = _request("GET", "/lessons")
    assert status == 401
    assert data["detail"] == "missing or invalid token"
    assert _request("GET", "/lessons", token="not-a-token")[0] == 401


def test_organization_signup_rejects_duplicate_owner(owner):
    status, data = _request(
        "POST",
        "/organizations",
        payload={
            "name": "Copycat",
            "owner_user_id": "owner",
            "owner_email": "other@riverside.test",
            "password": "owner-password",
        },
    )
    assert status == 400
    assert data["detail"] == "user_id exists"


def test_owner_creates_lesson_and_lists_it(owner):
    tutor, student, lesson = _seed_lesson(owner["token"])

    assert lesson["tutor"]["id"] == tutor["id"]
    assert [s["id"] for s in lesson["students"]] == [student["id"]]
    # No availability windows were set, so the tutor is not marked free.
    assert lesson["tutor_available"] is False

    status, listing = _request("GET", "/lessons", owner["token"], query={"status": "scheduled"})
    assert status == 200
    assert listing["count"] == 1
    assert listing["lessons"][0]["id"] == lesson["id"]


def test_lesson_with_inverted_times_is_rejected(owner):
    status, data = _request(
        "POST", "/tutors", owner["token"], {"first_name": "Tom"}
    )
    status, data = _request(
        "POST", "/lessons", owner["token"],
        {"title": "Broken", "tutor_id": data["id"],
         "start_time": "2026-03-02T17:00:00Z", "end_time": "2026-03-02T16:00:00Z"},
    )
    assert status == 400


def test_students_cannot_manage_tutors(owner):
    token = _member(owner, "pupil", "student")
    status, data = _request("POST", "/tutors", token, {"first_name": "Sneaky"})
    assert status == 403
    assert data["detail"] == "admin role required"


def test_lessons_are_scoped_to_the_callers_organization(owner):
    _, _, lesson = _seed_lesson(owner["token"])
    status, other = _request(
        "POST",
        "/organizations",
        payload={
            "name": "Hilltop",
            "owner_user_id": "rival",
            "owner_email": "rival@hilltop.test",
            "password": "rival-password",
        },
    )
    assert status == 200
    status, data = _request("GET", f"/lessons/{lesson['id']}", other["token"])
    assert status == 404
    assert data["detail"] == "lesson not found"


def test_complete_lesson_records_attendance(owner):
    _, student, lesson = _seed_lesson(owner["token"])
    status, data = _request(
        "POST", f"/lessons/{lesson['id']}/complete", owner["token"],
        {"attendance": {str(student["id"]): "present"}},
    )
    assert status == 200
    assert data["status"] == "completed"
    assert data["attendance"] == {str(student["id"]): "present"}


def test_time_off_conflict_returns_409_with_conflicts(owner):
    tutor, _, lesson = _seed_lesson(owner["token"])
    status, created = _request(
        "POST", "/time-off", owner["token"],
        {"tutor_id": tutor["id"], "start_date": "2026-03-02T00:00:00Z", "end_date": "2026-03-03T00:00:00Z"},
    )
    assert status == 200
    request_id = created["request"]["id"]

    status, data = _request("POST", f"/time-off/{request_id}/approve", owner["token"], {})
    assert status == 409
    assert [c["lesson_id"] for c in data["detail"]["conflicts"]] == [lesson["id"]]

    status, data = _request("POST", f"/time-off/{request_id}/approve", owner["token"], {"force": True})
    assert status == 200
    assert data["status"] == "approved"


def test_tutor_sees_own_earnings_only(owner):
    tutor, _, lesson = _seed_lesson(owner["token"])
    db.update_lesson(lesson["id"], status="completed")
    tutor_token = _member(owner, "priya", "tutor", email="priya@riverside.test")
    other_token = _member(owner, "tom", "tutor", email="tom@riverside.test")

    status, data = _request("PUT", f"/tutors/{tutor['id']}/earning-goal", tutor_token, {"amount": 120})
    assert status == 200
    assert data["goal_amount"] == 120

    status, data = _request("GET", f"/tutors/{tutor['id']}/earnings", tutor_token)
    assert status == 200
    assert data["tutor_id"] == tutor["id"]
    assert data["goal"] == 120

    status, _ = _request("GET", f"/tutors/{tutor['id']}/earnings", other_token)
    assert status == 403


def test_students_only_see_published_assessments_without_answers(owner):
    status, assessment = _request(
        "POST", "/assessments", owner["token"], {"title": "Quadratics", "subject": "GCSE Maths"}
    )
    assert status == 200
    status, _ = _request(
        "POST", f"/assessments/{assessment['id']}/questions", owner["token"],
        {"question_text": "Solve x^2 = 9", "question_type": "short_answer", "marks_available": 2,
         "correct_answer": "x = 3 or x = -3", "keywords": ["3", "-3"]},
    )
    assert status == 200
    token = _member(owner, "pupil", "student")

    assert _request("GET", f"/assessments/{assessment['id']}", token)[0] == 404
    assert _request("GET", "/assessments", token)[1]["assessments"] == []

    status, _ = _request("PATCH", f"/assessments/{assessment['id']}", owner["token"], {"status": "published"})
    assert status == 200
    status, data = _request("GET", f"/assessments/{assessment['id']}", token)
    assert status == 200
    assert data["total_marks"] == 2
    question = data["questions"][0]
    assert "correct_answer" not in question
    assert "keywords" not in question


def test_webhook_without_signing_secret_is_unavailable(temp_db, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    status, data = _request("POST", "/billing/webhook", payload={"type": "ping"})
    assert status == 503


def _rival() -> str:
    status, data = _request(
        "POST",
        "/organizations",
        payload={
            "name": "Hilltop",
            "owner_user_id": "rival",
            "owner_email": "rival@hilltop.test",
            "password": "rival-password",
        },
    )
    assert status == 200
    return data["token"]


def test_self_registration_cannot_reach_organization_data(owner):
    _seed_lesson(owner["token"])
    join_attempt = {"user_id": "intruder", "password": "pw", "organization_id": owner["organization_id"]}

    status, _ = _request("POST", "/auth/register", payload={**join_attempt, "role": "tutor"})
    assert status == 422
    status, _ = _request("POST", "/auth/register", payload=join_attempt)
    assert status == 200

    token = app.auth_login(app.LoginBody(user_id="intruder", password="pw"))["token"]
    status, data = _request("GET", "/students", token)
    assert status == 403
    assert data["detail"] == "account is not part of an organization"


def test_members_are_added_by_admins_and_admins_by_the_owner(owner):
    pupil = _member(owner, "pupil", "student")
    status, _ = _request(
        "POST", "/organizations/members", pupil, {"user_id": "mole", "password": "member-password", "role": "tutor"}
    )
    assert status == 403

    deputy = _member(owner, "deputy", "admin")
    status, data = _request(
        "POST", "/organizations/members", deputy, {"user_id": "boss", "password": "member-password", "role": "admin"}
    )
    assert status == 403
    assert data["detail"] == "only the owner can add admins"

    status, data = _request(
        "POST", "/organizations/members", deputy,
        {"user_id": "priya", "email": "priya@riverside.test", "password": "member-password", "role": "tutor"},
    )
    assert status == 200
    assert data == {"user_id": "priya", "role": "tutor", "organization_id": owner["organization_id"]}


def _fake_plan(*args, **kwargs):
    return {
        "objectives": ["Simplify surds"],
        "steps": [
            {
                "id": 1,
                "title": "Surds",
                "content_blocks": [{"type": "text", "title": "Intro", "data": {"text": "A surd is an irrational root."}}],
            }
        ],
    }


def test_lesson_plans_are_private_to_their_creator(owner, monkeypatch):
    monkeypatch.setattr(llm, "tool_call", _fake_plan)
    status, created = _request("POST", "/cleo/lesson-plans", owner["token"], {"topic": "Surds", "year_group": "Year 11"})
    assert status == 200
    path = f"/cleo/lesson-plans/{created['lesson_plan_id']}"

    status, plan = _request("GET", path, owner["token"])
    assert status == 200
    assert plan["topic"] == "Surds"
    assert _request("GET", path, _member(owner, "pupil", "student"))[0] == 404
    status, data = _request("GET", path, _rival())
    assert status == 404
    assert data["detail"] == "lesson plan not found"


def test_lesson_linked_plans_are_shared_within_the_organization(owner, monkeypatch):
    monkeypatch.setattr(llm, "tool_call", _fake_plan)
    _, _, lesson = _seed_lesson(owner["token"])
    status, created = _request(
        "POST", "/cleo/lesson-plans", owner["token"],
        {"topic": "Surds", "year_group": "Year 11", "lesson_id": lesson["id"]},
    )
    assert status == 200
    path = f"/cleo/lesson-plans/{created['lesson_plan_id']}"

    assert _request("GET", path, _member(owner, "pupil", "student"))[0] == 200
    assert _request("GET", path, _rival())[0] == 404


def test_only_the_lessons_tutor_or_an_admin_takes_attendance(owner):
    _, student, lesson = _seed_lesson(owner["token"])
    pupil = _member(owner, "pupil", "student")
    other_tutor = _member(owner, "tom", "tutor", email="tom@riverside.test")
    priya = _member(owner, "priya", "tutor", email="priya@riverside.test")
    attendance = {"student_id": student["id"], "status": "present"}

    for token in (pupil, other_tutor):
        status, data = _request("POST", f"/lessons/{lesson['id']}/attendance", token, attendance)
        assert status == 403
        assert data["detail"] == "only the lesson's tutor or an admin can do this"
        assert _request("POST", f"/lessons/{lesson['id']}/complete", token, {})[0] == 403

    status, data = _request("POST", f"/lessons/{lesson['id']}/attendance", priya, attendance)
    assert status == 200
    assert data["attendance"] == {str(student["id"]): "present"}
    status, data = _request("POST", f"/lessons/{lesson['id']}/complete", priya, {})
    assert status == 200
    assert data["status"] == "completed"


def test_course_outline_is_scoped_and_locks_paid_lessons(owner):
    status, course = _request("POST", "/courses", owner["token"], {"title": "GCSE Maths revision", "price": 19.99})
    assert status == 200
    status, module = _request("POST", f"/courses/{course['id']}/modules", owner["token"], {"title": "Algebra"})
    assert status == 200
    assert module["position"] == 0
    lessons_path = f"/courses/{course['id']}/modules/{module['id']}/lessons"
    status, _ = _request(
        "POST", lessons_path, owner["token"],
        {"title": "Welcome", "content_type": "video", "content_url": "https://videos.test/welcome", "is_preview": True},
    )
    assert status == 200
    status, _ = _request(
        "POST", lessons_path, owner["token"], {"title": "Factorising", "content_text": "Look for common factors first."}
    )
    assert status == 200
    status, data = _request("POST", lessons_path, owner["token"], {"title": "Clip", "content_type": "video"})
    assert status == 400
    assert data["detail"] == "A video lesson needs a content_url"

    pupil = _member(owner, "pupil", "student")
    status, listing = _request("GET", "/courses", pupil)
    assert status == 200
    assert [c["id"] for c in listing["courses"]] == [course["id"]]
    status, outline = _request("GET", f"/courses/{course['id']}", pupil)
    assert status == 200
    assert outline["has_access"] is False
    assert outline["lesson_count"] == 2
    lessons = outline["modules"][0]["lessons"]
    assert [(lesson["title"], lesson["locked"]) for lesson in lessons] == [("Welcome", False), ("Factorising", True)]
    assert lessons[0]["content_url"] == "https://videos.test/welcome"
    assert lessons[1]["content_text"] is None
    assert _request("POST", f"/courses/{course['id']}/modules", pupil, {"title": "Sneaky"})[0] == 403

    status, outline = _request("GET", f"/courses/{course['id']}", owner["token"])
    assert outline["has_access"] is True
    assert outline["modules"][0]["lessons"][1]["content_text"] == "Look for common factors first."

    rival = _rival()
    assert _request("GET", f"/courses/{course['id']}", rival)[0] == 404
    assert _request("GET", "/courses", rival)[1]["courses"] == []


def test_lesson_summaries_are_generated_by_staff(owner, monkeypatch):
    _, student, lesson = _seed_lesson(owner["token"])
    monkeypatch.setattr(
        llm,
        "tool_call",
        lambda *args, **kwargs: {
            "topics_covered": ["Quadratics"],
            "student_contributions": "Asked whether the roots were 2 and -2.",
            "engagement_level": "high",
            "engagement_score": 8,
            "overall_summary": "Confident with factorising.",
        },
    )
    path = f"/lessons/{lesson['id']}/summaries"
    payload = {"transcript": "Tutor: Today we factorise quadratics. Ada: Are the roots 2 and -2?"}

    assert _request("POST", path, _member(owner, "pupil", "student"), payload)[0] == 403
    status, data = _request("POST", path, owner["token"], payload)
    assert status == 200
    assert data["strategy"] == "standard"
    assert data["errors"] == []
    assert [summary["student_id"] for summary in data["summaries"]] == [student["id"]]

    status, data = _request("GET", path, owner["token"])
    assert status == 200
    stored = data["summaries"][0]
    assert stored["engagement_level"] == "High"
    assert stored["topics_covered"] == ["Quadratics"]
    assert stored["first_name"] == "Ada"
    assert _request("POST", path, owner["token"], {})[0] == 400
