# app.py: Cleo Hub tutoring platform API
# - Token auth via process-local TOKENS map
# - Domain modules raise LookupError/ValueError; endpoints map them to HTTP codes

import hashlib
import hmac
import json
import logging
import os
import secrets
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

import assessments
import billing
import cleo
import db
import earnings
import group_optimization
import learning_hub
import lesson_plans
import lesson_summaries
import llm
import notifications
import scheduling
import video_rooms

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "LLM params in use: model=%s %s | SEND_MAX_TOKENS: %s",
            llm.model_id(),
            llm.base_params(),
            llm.SEND_MAX_TOKENS,
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        db.close()


app = FastAPI(title="Cleo Hub", version=APP_VERSION, lifespan=_lifespan)

TOKENS: Dict[str, str] = {}

_PUBLIC_PATHS = frozenset({"/", "/health", "/billing/webhook"})
_PUBLIC_PREFIXES = ("/auth/",)
_ADMIN_ROLES = frozenset({"owner", "admin"})
_LESSON_TUTOR_ONLY = "only the lesson's tutor or an admin can do this"


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _is_public(method: str, path: str) -> bool:
    if path in _PUBLIC_PATHS or path.startswith(_PUBLIC_PREFIXES):
        return True
    return method == "POST" and path == "/organizations"


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() in {"bearer", "token"}:
            candidate = token.strip()
        else:
            candidate = token.strip() or prefix.strip()
    return candidate or None


def _authenticate_request(request: Request) -> Optional[str]:
    header_token = _extract_token(request.headers.get("authorization"))
    if header_token and header_token in TOKENS:
        return TOKENS[header_token]
    alt_header = request.headers.get("x-token")
    if alt_header and alt_header in TOKENS:
        return TOKENS[alt_header]
    query_token = request.query_params.get("token")
    if query_token and query_token in TOKENS:
        return TOKENS[query_token]
    return None


def _unauthorized() -> Response:
    return Response(
        status_code=401,
        content=json.dumps({"detail": "missing or invalid token"}),
        media_type="application/json",
    )


@app.middleware("http")
async def _enforce_token(request: Request, call_next):
    normalized_path = _normalize_path(request.url.path)
    if not _is_public(request.method, normalized_path):
        user_id = _authenticate_request(request)
        if not user_id:
            return _unauthorized()
        row = db.get_user_auth(user_id)
        if not row:
            return _unauthorized()
        request.state.user_id = user_id
        request.state.role = row["role"]
        request.state.organization_id = row["organization_id"]
        request.state.email = row["email"]
    return await call_next(request)


_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"


# ---------- Helpers ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def _hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def _verify_password(
    password: str,
    stored_hash: str,
    stored_salt: Optional[str],
) -> tuple[bool, Optional[tuple[str, str]]]:
    if stored_salt:
        try:
            derived = _pbkdf2_hash(password, stored_salt)
        except ValueError:
            return False, None
        return hmac.compare_digest(stored_hash or "", derived), None

    legacy_salt = os.getenv("AUTH_SALT", "local_salt")
    legacy_hash = hmac.new(
        legacy_salt.encode("utf-8"),
        password.encode("utf-8"),
        digestmod="sha256",
    ).hexdigest()
    if hmac.compare_digest(stored_hash or "", legacy_hash):
        new_hash, new_salt = _hash_password(password)
        return True, (new_hash, new_salt)
    return False, None


def _issue_token(user_id: str) -> str:
    token = secrets.token_urlsafe(24)
    TOKENS[token] = user_id
    return token


@contextmanager
def _domain_errors():
    """Translate domain exceptions raised inside the block into HTTP errors."""
    try:
        yield
    except HTTPException:
        raise
    except scheduling.TimeOffConflictError as exc:
        raise HTTPException(status_code=409, detail={"message": str(exc), "conflicts": exc.conflicts})
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc).strip("'\""))
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except llm.LLMError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except billing.BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    except (video_rooms.VideoRoomError, notifications.EmailDeliveryError) as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _caller(request: Request) -> Dict[str, Any]:
    return {
        "user_id": request.state.user_id,
        "role": request.state.role,
        "organization_id": request.state.organization_id,
        "email": request.state.email,
    }


def _require_org(request: Request) -> str:
    organization_id = request.state.organization_id
    if not organization_id:
        raise HTTPException(status_code=403, detail="account is not part of an organization")
    return organization_id


def _require_admin(request: Request) -> str:
    if request.state.role not in _ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="admin role required")
    return _require_org(request)


def _check_org(request: Request, record: Optional[Dict[str, Any]], label: str) -> Dict[str, Any]:
    """404 unless ``record`` exists and belongs to the caller's organization."""
    if not record or record.get("organization_id") != request.state.organization_id:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return record


def _lesson_for(request: Request, lesson_id: str) -> Dict[str, Any]:
    return _check_org(request, db.get_lesson(lesson_id), "lesson")


def _tutor_for(request: Request, tutor_id: str) -> Dict[str, Any]:
    return _check_org(request, db.get_tutor(tutor_id), "tutor")


def _assessment_for(request: Request, assessment_id: str) -> Dict[str, Any]:
    return _check_org(request, db.get_assessment(assessment_id), "assessment")


def _session_for(request: Request, session_id: str) -> Dict[str, Any]:
    session = db.get_assessment_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="session not found")
    if session["user_id"] != request.state.user_id and request.state.role not in _ADMIN_ROLES:
        raise HTTPException(status_code=404, detail="session not found")
    return session


def _require_tutor_access(
    request: Request, tutor: Dict[str, Any], detail: str = "not allowed to view this tutor"
) -> None:
    if request.state.role in _ADMIN_ROLES:
        return
    own_email = (request.state.email or "").lower()
    if request.state.role == "tutor" and own_email and own_email == (tutor.get("email") or "").lower():
        return
    raise HTTPException(status_code=403, detail=detail)


# ---------- Schemas ----------
class RegisterBody(BaseModel):
    user_id: str = Field(min_length=1)
    email: Optional[str] = None
    password: str = Field(min_length=1)
    role: Literal["student", "parent"] = "student"
    first_name: Optional[str] = None


class MemberBody(BaseModel):
    user_id: str = Field(min_length=1)
    email: Optional[str] = None
    password: str = Field(min_length=8)
    role: Literal["student", "parent", "tutor", "admin"] = "student"
    first_name: Optional[str] = None


class LoginBody(BaseModel):
    user_id: str
    password: str


class OrganizationBody(BaseModel):
    name: str = Field(min_length=1)
    owner_user_id: str = Field(min_length=1)
    owner_email: str = Field(min_length=3)
    password: str = Field(min_length=8)
    first_name: Optional[str] = None


class TutorBody(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    email: Optional[str] = None
    normal_hourly_rate: float = Field(default=0.0, ge=0)
    status: Literal["active", "inactive"] = "active"
    subjects: List[str] = Field(default_factory=list)


class TutorUpdateBody(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    normal_hourly_rate: Optional[float] = Field(default=None, ge=0)
    status: Optional[Literal["active", "inactive"]] = None


class AvailabilityWindow(BaseModel):
    day_of_week: str
    start_time: str
    end_time: str


class AvailabilityBody(BaseModel):
    windows: List[AvailabilityWindow]


class SubjectBody(BaseModel):
    name: str = Field(min_length=1)


class StudentBody(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = ""
    email: Optional[str] = None
    year_group: Optional[str] = None
    parent_first_name: Optional[str] = None
    parent_last_name: Optional[str] = None
    parent_email: Optional[str] = None


class LessonBody(BaseModel):
    title: str = Field(min_length=1)
    tutor_id: str
    start_time: datetime
    end_time: datetime
    subject: Optional[str] = None
    description: Optional[str] = None
    is_group: bool = False
    lesson_type: Literal["regular", "trial"] = "regular"
    student_ids: List[int] = Field(default_factory=list)


class LessonUpdateBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    is_group: Optional[bool] = None
    lesson_type: Optional[Literal["regular", "trial"]] = None


class LessonStudentsBody(BaseModel):
    student_ids: List[int] = Field(min_length=1)


class AttendanceBody(BaseModel):
    student_id: int
    status: Literal["present", "absent", "late", "excused"]


class CompleteLessonBody(BaseModel):
    attendance: Dict[int, Literal["present", "absent", "late", "excused"]] = Field(default_factory=dict)


class CancelLessonBody(BaseModel):
    reason: Optional[str] = None
    notify: bool = False


class ReassignBody(BaseModel):
    new_tutor_id: str
    reason: Optional[str] = None


class RecurringBody(BaseModel):
    interval: Literal["daily", "weekly", "biweekly", "monthly"]
    end_date: Optional[str] = None
    is_infinite: bool = False
    max_instances: int = Field(default=scheduling.MAX_INSTANCES_PER_BATCH, ge=1, le=200)


class TimeOffBody(BaseModel):
    tutor_id: str
    start_date: datetime
    end_date: datetime
    reason: Optional[str] = None


class TimeOffDecisionBody(BaseModel):
    force: bool = False


class BatchOptimizationBody(BaseModel):
    lesson_ids: List[str] = Field(min_length=1, max_length=100)


class AssessmentBody(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    subject: Optional[str] = None
    exam_board: Optional[str] = None
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)


class AssessmentUpdateBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[str] = None
    exam_board: Optional[str] = None
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)
    status: Optional[Literal["draft", "published", "archived"]] = None


class QuestionBody(BaseModel):
    question_text: str = Field(min_length=1)
    question_type: str = "short_answer"
    marks_available: int = Field(default=1, ge=1)
    question_number: Optional[int] = None
    correct_answer: Optional[str] = None
    marking_scheme: Any = None
    keywords: List[str] = Field(default_factory=list)
    position: Optional[int] = None


class QuestionUpdateBody(BaseModel):
    question_text: Optional[str] = None
    question_type: Optional[str] = None
    marks_available: Optional[int] = Field(default=None, ge=1)
    question_number: Optional[int] = None
    correct_answer: Optional[str] = None
    marking_scheme: Any = None
    keywords: Optional[List[str]] = None
    position: Optional[int] = None


class GenerateAssessmentBody(BaseModel):
    text: str = Field(min_length=20)
    title: Optional[str] = None
    subject: Optional[str] = None
    exam_board: Optional[str] = None
    num_questions: int = Field(default=10, ge=1, le=30)


class StartSessionBody(BaseModel):
    student_id: Optional[int] = None


class AnswerBody(BaseModel):
    question_id: str
    answer: str = ""


class CleoChatBody(BaseModel):
    message: str = Field(min_length=1)
    conversation_id: Optional[str] = None
    lesson_id: Optional[str] = None
    topic: Optional[str] = None
    year_group: Optional[str] = None
    learning_goal: Optional[str] = None


class LessonPlanBody(BaseModel):
    topic: str = Field(min_length=1)
    year_group: str = Field(min_length=1)
    subject: Optional[str] = None
    learning_goal: Optional[str] = None
    lesson_id: Optional[str] = None
    conversation_id: Optional[str] = None
    difficulty_tier: Optional[Literal["foundation", "intermediate", "higher"]] = None


class VoiceUsageBody(BaseModel):
    minutes: int = Field(ge=1)


class VoiceBonusBody(BaseModel):
    user_id: str
    minutes: int = Field(ge=1)


class CourseBody(BaseModel):
    title: str = Field(min_length=1)
    price: float = Field(ge=0)
    stripe_price_id: Optional[str] = None


class CourseModuleBody(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    position: Optional[int] = Field(default=None, ge=0)


class CourseLessonBody(BaseModel):
    title: str = Field(min_length=1)
    content_type: Literal["video", "quiz", "text", "ai-assessment"] = "text"
    description: Optional[str] = None
    content_url: Optional[str] = None
    content_text: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1)
    is_preview: bool = False
    position: Optional[int] = Field(default=None, ge=0)


class LessonSummaryBody(BaseModel):
    transcript: Optional[str] = None
    transcript_url: Optional[str] = None


class CoursePaymentBody(BaseModel):
    course_id: str


class ReminderBody(BaseModel):
    timeframe: Literal["today", "tomorrow"] = "tomorrow"


class EarningGoalBody(BaseModel):
    amount: float = Field(ge=0)
    period: Literal["weekly", "monthly"] = "weekly"


# ---------- Service ----------
@app.get("/")
def root():
    return {"name": "Cleo Hub", "version": APP_VERSION}


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------- Auth ----------
def _check_new_account(user_id: str, email: Optional[str]) -> None:
    if db.get_user_auth(user_id):
        raise HTTPException(status_code=400, detail="user_id exists")
    if email and db.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="email exists")


def _create_account(
    user_id: str,
    email: Optional[str],
    password: str,
    *,
    role: str,
    organization_id: Optional[str],
    first_name: Optional[str],
) -> None:
    pw_hash, pw_salt = _hash_password(password)
    db.create_user(
        user_id,
        email,
        pw_hash,
        pw_salt,
        role=role,
        organization_id=organization_id,
        first_name=first_name,
    )


@app.post("/auth/register")
def auth_register(body: RegisterBody):
    """Self-service signup; accounts start outside any organisation."""
    email = (body.email or "").strip() or None
    _check_new_account(body.user_id, email)
    _create_account(
        body.user_id, email, body.password, role=body.role, organization_id=None, first_name=body.first_name
    )
    return {"ok": True}


@app.post("/auth/login")
def auth_login(body: LoginBody):
    row = db.get_user_auth(body.user_id)
    if not row:
        raise HTTPException(status_code=401, detail="invalid credentials")

    valid, upgrade = _verify_password(body.password, row["pw_hash"], row["pw_salt"])
    if not valid:
        raise HTTPException(status_code=401, detail="invalid credentials")
    if upgrade:
        db.update_user_password(body.user_id, upgrade[0], upgrade[1])
    return {
        "token": _issue_token(body.user_id),
        "user_id": body.user_id,
        "role": row["role"],
        "organization_id": row["organization_id"],
    }


@app.post("/organizations")
def create_organization(body: OrganizationBody):
    _check_new_account(body.owner_user_id, body.owner_email)
    organization = db.create_organization(body.name)
    _create_account(
        body.owner_user_id,
        body.owner_email,
        body.password,
        role="owner",
        organization_id=organization["id"],
        first_name=body.first_name,
    )
    logger.info("Organization %s registered by %s", organization["id"], body.owner_user_id)
    return {"organization": organization, "token": _issue_token(body.owner_user_id)}


@app.post("/organizations/members")
def add_organization_member(body: MemberBody, request: Request):
    organization_id = _require_admin(request)
    if body.role == "admin" and request.state.role != "owner":
        raise HTTPException(status_code=403, detail="only the owner can add admins")
    email = (body.email or "").strip() or None
    _check_new_account(body.user_id, email)
    _create_account(
        body.user_id,
        email,
        body.password,
        role=body.role,
        organization_id=organization_id,
        first_name=body.first_name,
    )
    logger.info("User %s joined organization %s as %s", body.user_id, organization_id, body.role)
    return {"user_id": body.user_id, "role": body.role, "organization_id": organization_id}


# ---------- Tutors & subjects ----------
@app.post("/tutors")
def create_tutor(body: TutorBody, request: Request):
    organization_id = _require_admin(request)
    tutor = db.create_tutor(
        organization_id,
        body.first_name,
        body.last_name,
        email=body.email,
        hourly_rate=body.normal_hourly_rate,
        status=body.status,
    )
    for name in body.subjects:
        if name.strip():
            db.assign_tutor_subject(tutor["id"], db.upsert_subject(organization_id, name))
    return tutor


@app.get("/tutors")
def list_tutors(request: Request, status: Optional[Literal["active", "inactive"]] = None):
    return {"tutors": db.list_tutors(_require_org(request), status=status)}


@app.patch("/tutors/{tutor_id}")
def update_tutor(tutor_id: str, body: TutorUpdateBody, request: Request):
    _require_admin(request)
    _tutor_for(request, tutor_id)
    return db.update_tutor(tutor_id, **body.model_dump(exclude_none=True))


@app.put("/tutors/{tutor_id}/availability")
def set_availability(tutor_id: str, body: AvailabilityBody, request: Request):
    tutor = _tutor_for(request, tutor_id)
    _require_tutor_access(request, tutor)
    with _domain_errors():
        windows = scheduling.set_tutor_availability(tutor_id, [w.model_dump() for w in body.windows])
    return {"tutor_id": tutor_id, "windows": windows}


@app.get("/tutors/{tutor_id}/availability")
def get_availability(tutor_id: str, request: Request):
    _tutor_for(request, tutor_id)
    return {"tutor_id": tutor_id, "windows": db.list_tutor_availability([tutor_id])}


@app.post("/tutors/{tutor_id}/subjects")
def add_tutor_subject(tutor_id: str, body: SubjectBody, request: Request):
    organization_id = _require_admin(request)
    _tutor_for(request, tutor_id)
    subject_id = db.upsert_subject(organization_id, body.name)
    db.assign_tutor_subject(tutor_id, subject_id)
    return {"tutor_id": tutor_id, "subject_id": subject_id, "name": body.name.strip()}


@app.get("/subjects")
def list_subjects(request: Request):
    return {"subjects": db.list_subjects(_require_org(request))}


# ---------- Students ----------
@app.post("/students")
def create_student(body: StudentBody, request: Request):
    organization_id = _require_admin(request)
    return db.create_student(organization_id, **body.model_dump())


@app.get("/students")
def list_students(request: Request):
    return {"students": db.list_students(_require_org(request))}


@app.get("/students/{student_id}")
def get_student(student_id: int, request: Request):
    return _check_org(request, db.get_student(student_id), "student")


# ---------- Lessons ----------
def _check_students(request: Request, student_ids: List[int]) -> None:
    for student_id in student_ids:
        _check_org(request, db.get_student(student_id), f"student {student_id}")


@app.post("/lessons")
def create_lesson(body: LessonBody, request: Request):
    organization_id = _require_admin(request)
    _tutor_for(request, body.tutor_id)
    _check_students(request, body.student_ids)
    with _domain_errors():
        lesson = db.create_lesson(
            organization_id,
            body.title,
            body.tutor_id,
            body.start_time,
            body.end_time,
            student_ids=body.student_ids,
            subject=body.subject,
            description=body.description,
            is_group=body.is_group,
            lesson_type=body.lesson_type,
        )
    lesson["tutor_available"] = scheduling.is_tutor_available(
        body.tutor_id, body.start_time, body.end_time, exclude_lesson_id=lesson["id"]
    )
    return lesson


@app.get("/lessons")
def list_lessons(
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    tutor_id: Optional[str] = None,
    status: Optional[Literal["scheduled", "completed", "cancelled"]] = None,
):
    lessons = db.list_lessons(_require_org(request), start, end, tutor_id=tutor_id, status=status)
    return {"lessons": lessons, "count": len(lessons)}


@app.get("/lessons/{lesson_id}")
def get_lesson(lesson_id: str, request: Request):
    return _lesson_for(request, lesson_id)


@app.patch("/lessons/{lesson_id}")
def update_lesson(lesson_id: str, body: LessonUpdateBody, request: Request):
    _require_admin(request)
    lesson = _lesson_for(request, lesson_id)
    fields = body.model_dump(exclude_none=True)
    start = db.parse_timestamp(fields.get("start_time", lesson["start_time"]))
    end = db.parse_timestamp(fields.get("end_time", lesson["end_time"]))
    if end <= start:
        raise HTTPException(status_code=400, detail="lesson end_time must be after start_time")
    return db.update_lesson(lesson_id, **fields)


@app.delete("/lessons/{lesson_id}")
def delete_lesson(lesson_id: str, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    return {"lesson_id": lesson_id, "deleted": db.delete_lesson(lesson_id)}


@app.post("/lessons/{lesson_id}/students")
def add_lesson_students(lesson_id: str, body: LessonStudentsBody, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    _check_students(request, body.student_ids)
    db.add_lesson_students(lesson_id, body.student_ids)
    return db.get_lesson(lesson_id)


@app.delete("/lessons/{lesson_id}/students/{student_id}")
def remove_lesson_student(lesson_id: str, student_id: int, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    if not db.remove_lesson_student(lesson_id, student_id):
        raise HTTPException(status_code=404, detail="student not enrolled in lesson")
    return db.get_lesson(lesson_id)


@app.post("/lessons/{lesson_id}/attendance")
def record_attendance(lesson_id: str, body: AttendanceBody, request: Request):
    lesson = _lesson_for(request, lesson_id)
    _require_tutor_access(request, lesson["tutor"], _LESSON_TUTOR_ONLY)
    if body.student_id not in {student["id"] for student in lesson["students"]}:
        raise HTTPException(status_code=400, detail="student not enrolled in lesson")
    db.record_attendance(lesson_id, body.student_id, body.status)
    return {"lesson_id": lesson_id, "attendance": db.get_attendance(lesson_id)}


@app.post("/lessons/{lesson_id}/complete")
def complete_lesson(lesson_id: str, body: CompleteLessonBody, request: Request):
    _require_tutor_access(request, _lesson_for(request, lesson_id)["tutor"], _LESSON_TUTOR_ONLY)
    with _domain_errors():
        lesson = scheduling.complete_lesson(lesson_id, body.attendance)
    lesson["attendance"] = db.get_attendance(lesson_id)
    return lesson


@app.post("/lessons/{lesson_id}/cancel")
def cancel_lesson(lesson_id: str, body: CancelLessonBody, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        lesson = scheduling.cancel_lesson(lesson_id, body.reason, request.state.user_id)
    notice = None
    if body.notify:
        with _domain_errors():
            notice = notifications.send_cancellation_notice(lesson_id, body.reason)
    return {"lesson": lesson, "notification": notice}


@app.post("/lessons/{lesson_id}/reassign")
def reassign_lesson(lesson_id: str, body: ReassignBody, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return scheduling.reassign_lesson(lesson_id, body.new_tutor_id, body.reason, request.state.user_id)


@app.get("/lessons/{lesson_id}/alternative-tutors")
def alternative_tutors(lesson_id: str, request: Request):
    _require_admin(request)
    lesson = _lesson_for(request, lesson_id)
    with _domain_errors():
        tutors = scheduling.find_alternative_tutors(
            lesson["tutor_id"], lesson["start_time"], lesson["end_time"], lesson.get("subject")
        )
    return {"lesson_id": lesson_id, "tutors": tutors}


@app.post("/lessons/{lesson_id}/recurring")
def generate_recurring(lesson_id: str, body: RecurringBody, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return scheduling.generate_recurring_lessons(
            lesson_id,
            body.interval,
            body.end_date,
            body.is_infinite,
            max_instances=body.max_instances,
        )


@app.post("/lessons/{lesson_id}/recurring/extend")
def extend_recurring(lesson_id: str, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return scheduling.extend_recurring_series(lesson_id)


@app.post("/recurring/extend-due")
def extend_due_series(request: Request):
    organization_id = _require_admin(request)
    with _domain_errors():
        results = scheduling.extend_due_series(organization_id=organization_id)
    return {"series": results, "count": len(results)}


# ---------- Video rooms ----------
@app.post("/lessons/{lesson_id}/video-room")
def create_video_room(lesson_id: str, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return video_rooms.create_room(lesson_id)


@app.get("/lessons/{lesson_id}/video-room/join")
def join_video_room(lesson_id: str, student_id: int, request: Request):
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return {"lesson_id": lesson_id, "student_id": student_id, "url": video_rooms.join_url(lesson_id, student_id)}


@app.delete("/lessons/{lesson_id}/video-room")
def delete_video_room(lesson_id: str, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        return {"lesson_id": lesson_id, "deleted": video_rooms.delete_room(lesson_id)}


# ---------- Lesson summaries ----------
@app.post("/lessons/{lesson_id}/summaries")
def generate_lesson_summaries(lesson_id: str, body: LessonSummaryBody, request: Request):
    lesson = _lesson_for(request, lesson_id)
    _require_tutor_access(request, lesson["tutor"], _LESSON_TUTOR_ONLY)
    with _domain_errors():
        return lesson_summaries.generate_lesson_summaries(
            lesson_id,
            transcript=body.transcript,
            transcript_url=body.transcript_url,
            user_id=request.state.user_id,
        )


@app.get("/lessons/{lesson_id}/summaries")
def list_lesson_summaries(lesson_id: str, request: Request):
    lesson = _lesson_for(request, lesson_id)
    _require_tutor_access(request, lesson["tutor"], _LESSON_TUTOR_ONLY)
    return {"lesson_id": lesson_id, "summaries": db.list_lesson_summaries(lesson_id)}


# ---------- Time off ----------
@app.post("/time-off")
def request_time_off(body: TimeOffBody, request: Request):
    tutor = _tutor_for(request, body.tutor_id)
    _require_tutor_access(request, tutor)
    with _domain_errors():
        return scheduling.request_time_off(body.tutor_id, body.start_date, body.end_date, body.reason)


@app.get("/time-off")
def list_time_off(
    request: Request,
    tutor_id: Optional[str] = None,
    status: Optional[Literal["pending", "approved", "rejected"]] = None,
):
    organization_id = _require_admin(request)
    own_tutors = {tutor["id"] for tutor in db.list_tutors(organization_id)}
    items = [r for r in db.list_time_off(tutor_id, status) if r["tutor_id"] in own_tutors]
    return {"requests": items}


def _time_off_for(request: Request, request_id: int) -> Dict[str, Any]:
    time_off = db.get_time_off(request_id)
    if not time_off:
        raise HTTPException(status_code=404, detail="time off request not found")
    _tutor_for(request, time_off["tutor_id"])
    return time_off


@app.post("/time-off/{request_id}/approve")
def approve_time_off(request_id: int, body: TimeOffDecisionBody, request: Request):
    _require_admin(request)
    _time_off_for(request, request_id)
    with _domain_errors():
        return scheduling.approve_time_off(request_id, request.state.user_id, force=body.force)


@app.post("/time-off/{request_id}/reject")
def reject_time_off(request_id: int, request: Request):
    _require_admin(request)
    _time_off_for(request, request_id)
    with _domain_errors():
        return scheduling.reject_time_off(request_id, request.state.user_id)


# ---------- Group optimiser ----------
@app.get("/optimiser/lessons/{lesson_id}")
def optimise_lesson(lesson_id: str, request: Request):
    _require_admin(request)
    _lesson_for(request, lesson_id)
    with _domain_errors():
        result = group_optimization.find_group_optimizations(lesson_id)
    if result is None:
        raise HTTPException(status_code=404, detail="lesson has no students to optimise")
    return result.to_dict()


@app.post("/optimiser/batch")
def optimise_batch(body: BatchOptimizationBody, request: Request):
    _require_admin(request)
    for lesson_id in body.lesson_ids:
        _lesson_for(request, lesson_id)
    with _domain_errors():
        results = group_optimization.find_batch_optimizations(body.lesson_ids)
    return {"results": {lesson_id: result.to_dict() for lesson_id, result in results.items()}}


@app.post("/optimiser/scan")
def optimise_scan(request: Request):
    organization_id = _require_admin(request)
    with _domain_errors():
        return group_optimization.scan_underfilled_groups(organization_id)


# ---------- Assessments ----------
@app.post("/assessments")
def create_assessment(body: AssessmentBody, request: Request):
    organization_id = _require_admin(request)
    with _domain_errors():
        return assessments.create_assessment(
            organization_id, body.title, created_by=request.state.user_id, **body.model_dump(exclude={"title"})
        )


@app.get("/assessments")
def list_assessments(request: Request, status: Optional[Literal["draft", "published", "archived"]] = None):
    if request.state.role not in _ADMIN_ROLES:
        status = "published"
    return {"assessments": db.list_assessments(_require_org(request), status=status)}


@app.post("/assessments/generate")
def generate_assessment(body: GenerateAssessmentBody, request: Request):
    organization_id = _require_admin(request)
    with _domain_errors():
        return assessments.generate_assessment_from_text(
            organization_id,
            body.text,
            title=body.title,
            subject=body.subject,
            exam_board=body.exam_board,
            num_questions=body.num_questions,
            created_by=request.state.user_id,
        )


@app.get("/assessments/{assessment_id}")
def get_assessment(assessment_id: str, request: Request):
    assessment = _assessment_for(request, assessment_id)
    questions = db.list_questions(assessment_id)
    if request.state.role not in _ADMIN_ROLES:
        if assessment["status"] != "published":
            raise HTTPException(status_code=404, detail="assessment not found")
        questions = [
            {k: v for k, v in q.items() if k not in ("correct_answer", "marking_scheme", "keywords")}
            for q in questions
        ]
    return {**assessment, "questions": questions}


@app.patch("/assessments/{assessment_id}")
def update_assessment(assessment_id: str, body: AssessmentUpdateBody, request: Request):
    _require_admin(request)
    _assessment_for(request, assessment_id)
    with _domain_errors():
        return assessments.update_assessment(assessment_id, **body.model_dump(exclude_none=True))


@app.delete("/assessments/{assessment_id}")
def delete_assessment(assessment_id: str, request: Request):
    _require_admin(request)
    _assessment_for(request, assessment_id)
    return {"assessment_id": assessment_id, "deleted": db.delete_assessment(assessment_id)}


@app.post("/assessments/{assessment_id}/questions")
def add_question(assessment_id: str, body: QuestionBody, request: Request):
    _require_admin(request)
    _assessment_for(request, assessment_id)
    fields = body.model_dump(exclude={"question_text", "question_type", "marks_available"})
    with _domain_errors():
        return assessments.add_question(
            assessment_id, body.question_text, body.question_type, body.marks_available, **fields
        )


def _question_for(request: Request, question_id: str) -> Dict[str, Any]:
    question = db.get_question(question_id)
    if not question:
        raise HTTPException(status_code=404, detail="question not found")
    _assessment_for(request, question["assessment_id"])
    return question


@app.patch("/questions/{question_id}")
def update_question(question_id: str, body: QuestionUpdateBody, request: Request):
    _require_admin(request)
    _question_for(request, question_id)
    with _domain_errors():
        return assessments.update_question(question_id, **body.model_dump(exclude_none=True))


@app.delete("/questions/{question_id}")
def delete_question(question_id: str, request: Request):
    _require_admin(request)
    question = _question_for(request, question_id)
    deleted = db.delete_question(question_id)
    db.recompute_total_marks(question["assessment_id"])
    return {"question_id": question_id, "deleted": deleted}


@app.post("/assessments/{assessment_id}/sessions")
def start_session(assessment_id: str, body: StartSessionBody, request: Request):
    _assessment_for(request, assessment_id)
    with _domain_errors():
        return assessments.start_session(assessment_id, request.state.user_id, body.student_id)


@app.post("/sessions/{session_id}/answers")
def submit_answer(session_id: str, body: AnswerBody, request: Request):
    _session_for(request, session_id)
    with _domain_errors():
        assessments.submit_answer(session_id, body.question_id, body.answer)
    return {"ok": True}


@app.post("/sessions/{session_id}/mark")
def mark_session(session_id: str, request: Request):
    _session_for(request, session_id)
    with _domain_errors():
        return assessments.mark_session(session_id, user_id=request.state.user_id)


@app.get("/sessions/{session_id}/summary")
def session_summary(session_id: str, request: Request, limit: int = 5):
    _session_for(request, session_id)
    with _domain_errors():
        return assessments.session_improvement_summary(session_id, limit=limit)


# ---------- Cleo ----------
@app.post("/cleo/chat")
def cleo_chat(body: CleoChatBody, request: Request):
    user = db.get_user_auth(request.state.user_id)
    if body.lesson_id:
        _lesson_for(request, body.lesson_id)
    with _domain_errors():
        return cleo.chat(
            request.state.user_id,
            body.message,
            conversation_id=body.conversation_id,
            lesson_id=body.lesson_id,
            topic=body.topic,
            year_group=body.year_group,
            learning_goal=body.learning_goal,
            user_name=user["first_name"] if user else None,
        )


@app.post("/cleo/lesson-plans")
def create_lesson_plan(body: LessonPlanBody, request: Request):
    if body.lesson_id:
        _lesson_for(request, body.lesson_id)
    with _domain_errors():
        plan = lesson_plans.generate_lesson_plan(
            body.topic,
            body.year_group,
            subject=body.subject,
            learning_goal=body.learning_goal,
            lesson_id=body.lesson_id,
            conversation_id=body.conversation_id,
            difficulty_tier=body.difficulty_tier,
            user_id=request.state.user_id,
        )
    return {**lesson_plans.plan_summary(plan), "plan": plan}


def _can_read_plan(request: Request, plan: Dict[str, Any]) -> bool:
    caller = request.state.user_id
    if plan.get("created_by") == caller:
        return True
    if plan.get("conversation_id"):
        conversation = db.get_conversation(plan["conversation_id"])
        if conversation and conversation["user_id"] == caller:
            return True
    if plan.get("lesson_id") and request.state.organization_id:
        lesson = db.get_lesson(plan["lesson_id"])
        return bool(lesson) and lesson["organization_id"] == request.state.organization_id
    return False


@app.get("/cleo/lesson-plans/{plan_id}")
def get_lesson_plan(plan_id: str, request: Request):
    plan = db.get_lesson_plan(plan_id)
    if not plan or not _can_read_plan(request, plan):
        raise HTTPException(status_code=404, detail="lesson plan not found")
    return plan


@app.get("/cleo/voice-quota")
def voice_quota(request: Request):
    return cleo.check_voice_quota(request.state.user_id)


@app.post("/cleo/voice-usage")
def voice_usage(body: VoiceUsageBody, request: Request):
    with _domain_errors():
        return cleo.record_voice_usage(request.state.user_id, body.minutes)


@app.post("/cleo/voice-bonus")
def voice_bonus(body: VoiceBonusBody, request: Request):
    organization_id = _require_admin(request)
    target = db.get_user_auth(body.user_id)
    if not target or target["organization_id"] != organization_id:
        raise HTTPException(status_code=404, detail="user not found")
    with _domain_errors():
        return cleo.add_bonus_minutes(body.user_id, body.minutes)


# ---------- Learning Hub ----------
def _course_for(request: Request, course_id: str) -> Dict[str, Any]:
    course = db.get_course(course_id)
    if not course or course["organization_id"] not in (None, request.state.organization_id):
        raise HTTPException(status_code=404, detail="course not found")
    return course


def _managed_course(request: Request, course_id: str) -> Dict[str, Any]:
    organization_id = _require_admin(request)
    course = _course_for(request, course_id)
    if course["organization_id"] != organization_id:
        raise HTTPException(status_code=403, detail="platform courses are read-only")
    return course


def _module_for(course_id: str, module_id: str) -> Dict[str, Any]:
    module = db.get_course_module(module_id)
    if not module or module["course_id"] != course_id:
        raise HTTPException(status_code=404, detail="module not found")
    return module


@app.post("/courses")
def create_course(body: CourseBody, request: Request):
    organization_id = _require_admin(request)
    return db.create_course(
        body.title, body.price, organization_id=organization_id, stripe_price_id=body.stripe_price_id
    )


@app.get("/courses")
def list_courses(request: Request):
    return {"courses": db.list_courses(request.state.organization_id)}


@app.get("/courses/{course_id}")
def get_course(course_id: str, request: Request):
    _course_for(request, course_id)
    with _domain_errors():
        return learning_hub.course_outline(course_id, _caller(request))


@app.post("/courses/{course_id}/modules")
def create_course_module(course_id: str, body: CourseModuleBody, request: Request):
    _managed_course(request, course_id)
    with _domain_errors():
        return learning_hub.add_module(course_id, body.title, description=body.description, position=body.position)


@app.delete("/courses/{course_id}/modules/{module_id}")
def delete_course_module(course_id: str, module_id: str, request: Request):
    _managed_course(request, course_id)
    _module_for(course_id, module_id)
    return {"module_id": module_id, "deleted": db.delete_course_module(module_id)}


@app.post("/courses/{course_id}/modules/{module_id}/lessons")
def create_course_lesson(course_id: str, module_id: str, body: CourseLessonBody, request: Request):
    _managed_course(request, course_id)
    _module_for(course_id, module_id)
    fields = body.model_dump(exclude={"title", "content_type"})
    with _domain_errors():
        return learning_hub.add_lesson(module_id, body.title, body.content_type, **fields)


@app.delete("/courses/{course_id}/modules/{module_id}/lessons/{lesson_id}")
def delete_course_lesson(course_id: str, module_id: str, lesson_id: str, request: Request):
    _managed_course(request, course_id)
    _module_for(course_id, module_id)
    lesson = db.get_course_lesson(lesson_id)
    if not lesson or lesson["module_id"] != module_id:
        raise HTTPException(status_code=404, detail="course lesson not found")
    return {"lesson_id": lesson_id, "deleted": db.delete_course_lesson(lesson_id)}


# ---------- Billing ----------
@app.post("/billing/course-payment")
def course_payment(body: CoursePaymentBody, request: Request):
    _course_for(request, body.course_id)
    with _domain_errors():
        return billing.create_course_payment(_caller(request), body.course_id)


@app.get("/billing/learning-hub-access")
def learning_hub_access(request: Request):
    with _domain_errors():
        return billing.check_learning_hub_access(_caller(request))


@app.post("/billing/webhook")
async def billing_webhook(request: Request):
    payload = await request.body()
    with _domain_errors():
        return billing.handle_webhook(payload, request.headers.get("stripe-signature"))


# ---------- Notifications ----------
@app.post("/reminders/send")
def send_reminders(body: ReminderBody, request: Request):
    _require_admin(request)
    with _domain_errors():
        return notifications.send_lesson_reminders(body.timeframe)


# ---------- Earnings ----------
@app.get("/tutors/{tutor_id}/earnings")
def tutor_earnings(tutor_id: str, request: Request, period: Literal["weekly", "monthly"] = "weekly"):
    tutor = _tutor_for(request, tutor_id)
    _require_tutor_access(request, tutor)
    with _domain_errors():
        return earnings.get_tutor_earnings_data(tutor_id, period)


@app.put("/tutors/{tutor_id}/earning-goal")
def set_earning_goal(tutor_id: str, body: EarningGoalBody, request: Request):
    tutor = _tutor_for(request, tutor_id)
    _require_tutor_access(request, tutor)
    with _domain_errors():
        return earnings.set_earning_goal(tutor_id, body.amount, body.period)


@app.get("/earnings/summary")
def earnings_summary(start: datetime, end: datetime, request: Request):
    organization_id = _require_admin(request)
    with _domain_errors():
        return earnings.organization_earnings_summary(organization_id, start, end)
