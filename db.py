import json
import os
import sqlite3
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union
from uuid import uuid4

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

Timestamp = Union[str, datetime]


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def close() -> None:
    """Close idle pooled connections (application shutdown)."""
    _pool.close_all()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        con.commit()
        return cur


def _exec_many(sql: str, rows: Sequence[Sequence[Any]]) -> None:
    if not rows:
        return
    with _pool.get_connection() as con:
        con.executemany(sql, rows)
        con.commit()


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, tuple(params))
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def new_id() -> str:
    return str(uuid4())


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


# -------------- time helpers --------------
def parse_timestamp(value: Timestamp) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(value: Timestamp) -> str:
    """Normalise to ``YYYY-MM-DDTHH:MM:SS+00:00`` so string order is time order."""
    return parse_timestamp(value).isoformat(timespec="seconds")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _row_dict(row: Optional[sqlite3.Row], json_fields: Sequence[str] = (), bool_fields: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for key in json_fields:
        if key in data:
            data[key] = _decode_json_field(data[key])
    for key in bool_fields:
        if key in data and data[key] is not None:
            data[key] = bool(data[key])
    return data


# -------------- schema helpers --------------
def _add_column_if_missing(con: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        info = con.execute(f"PRAGMA table_info({table})").fetchall()
        existing = {row[1] for row in info}
        if column not in existing:
            con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        # Table missing on very old files; init() creates it afterwards.
        pass


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS organizations (
              id          TEXT PRIMARY KEY,
              name        TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS users (
              user_id          TEXT PRIMARY KEY,
              email            TEXT UNIQUE,
              pw_hash          TEXT NOT NULL,
              pw_salt          TEXT,
              role             TEXT NOT NULL DEFAULT 'student'
                               CHECK (role IN ('owner','admin','tutor','student','parent')),
              organization_id  TEXT REFERENCES organizations(id) ON DELETE SET NULL,
              first_name       TEXT,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS tutors (
              id                  TEXT PRIMARY KEY,
              organization_id     TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
              first_name          TEXT NOT NULL,
              last_name           TEXT NOT NULL DEFAULT '',
              email               TEXT,
              status              TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active','inactive')),
              normal_hourly_rate  REAL NOT NULL DEFAULT 0,
              created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_tutors_org ON tutors(organization_id);

            CREATE TABLE IF NOT EXISTS subjects (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              organization_id  TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
              name             TEXT NOT NULL,
              UNIQUE(organization_id, name)
            );

            CREATE TABLE IF NOT EXISTS tutor_subjects (
              tutor_id    TEXT NOT NULL REFERENCES tutors(id) ON DELETE CASCADE,
              subject_id  INTEGER NOT NULL REFERENCES subjects(id) ON DELETE CASCADE,
              PRIMARY KEY (tutor_id, subject_id)
            );

            CREATE TABLE IF NOT EXISTS tutor_availability (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              tutor_id     TEXT NOT NULL REFERENCES tutors(id) ON DELETE CASCADE,
              day_of_week  TEXT NOT NULL,
              start_time   TEXT NOT NULL,
              end_time     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_availability_tutor ON tutor_availability(tutor_id, day_of_week);

            CREATE TABLE IF NOT EXISTS students (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              organization_id    TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
              first_name         TEXT NOT NULL,
              last_name          TEXT NOT NULL DEFAULT '',
              email              TEXT,
              year_group         TEXT,
              parent_first_name  TEXT,
              parent_last_name   TEXT,
              parent_email       TEXT,
              created_at         TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_students_org ON students(organization_id);

            CREATE TABLE IF NOT EXISTS lessons (
              id                     TEXT PRIMARY KEY,
              organization_id        TEXT NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
              title                  TEXT NOT NULL,
              description            TEXT,
              subject                TEXT,
              tutor_id               TEXT NOT NULL REFERENCES tutors(id),
              start_time             TEXT NOT NULL,
              end_time               TEXT NOT NULL,
              is_group               INTEGER NOT NULL DEFAULT 0,
              status                 TEXT NOT NULL DEFAULT 'scheduled'
                                     CHECK (status IN ('scheduled','completed','cancelled')),
              lesson_type            TEXT NOT NULL DEFAULT 'regular',
              is_recurring           INTEGER NOT NULL DEFAULT 0,
              is_recurring_instance  INTEGER NOT NULL DEFAULT 0,
              parent_lesson_id       TEXT,
              instance_date          TEXT,
              recurrence_interval    TEXT,
              recurrence_end_date    TEXT,
              lesson_space_room_id   TEXT,
              lesson_space_room_url  TEXT,
              lesson_space_space_id  TEXT,
              cancellation_reason    TEXT,
              created_at             TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at             TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_lessons_org_start ON lessons(organization_id, start_time);
            CREATE INDEX IF NOT EXISTS idx_lessons_tutor_start ON lessons(tutor_id, start_time);
            CREATE INDEX IF NOT EXISTS idx_lessons_parent ON lessons(parent_lesson_id, instance_date);

            CREATE TABLE IF NOT EXISTS lesson_students (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              lesson_id   TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
              student_id  INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
              UNIQUE(lesson_id, student_id)
            );

            CREATE INDEX IF NOT EXISTS idx_lesson_students_student ON lesson_students(student_id);

            CREATE TABLE IF NOT EXISTS lesson_attendance (
              lesson_id          TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
              student_id         INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
              attendance_status  TEXT NOT NULL CHECK (attendance_status IN ('present','absent','late','excused')),
              recorded_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (lesson_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS lesson_participant_urls (
              lesson_id        TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
              student_id       INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
              participant_url  TEXT NOT NULL,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (lesson_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS lesson_student_summaries (
              id                     INTEGER PRIMARY KEY AUTOINCREMENT,
              lesson_id              TEXT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
              student_id             INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
              topics_covered         TEXT,
              student_contributions  TEXT,
              what_went_well         TEXT,
              areas_for_improvement  TEXT,
              engagement_level       TEXT,
              engagement_score       REAL,
              confidence_score       REAL,
              ai_summary             TEXT,
              created_at             TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at             TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(lesson_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS recurring_lesson_groups (
              original_lesson_id         TEXT PRIMARY KEY REFERENCES lessons(id) ON DELETE CASCADE,
              group_name                 TEXT NOT NULL,
              recurrence_pattern         TEXT NOT NULL,
              instances_generated_until  TEXT,
              total_instances_generated  INTEGER NOT NULL DEFAULT 0,
              is_infinite                INTEGER NOT NULL DEFAULT 0,
              next_extension_date        TEXT,
              created_at                 TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS time_off_requests (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              tutor_id     TEXT NOT NULL REFERENCES tutors(id) ON DELETE CASCADE,
              start_date   TEXT NOT NULL,
              end_date     TEXT NOT NULL,
              reason       TEXT,
              status       TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','approved','rejected')),
              reviewed_by  TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS tutor_earning_goals (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              tutor_id         TEXT NOT NULL REFERENCES tutors(id) ON DELETE CASCADE,
              goal_amount      REAL NOT NULL,
              goal_period      TEXT NOT NULL CHECK (goal_period IN ('weekly','monthly')),
              goal_start_date  TEXT NOT NULL,
              updated_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              UNIQUE(tutor_id, goal_period, goal_start_date)
            );

            CREATE TABLE IF NOT EXISTS courses (
              id               TEXT PRIMARY KEY,
              organization_id  TEXT REFERENCES organizations(id) ON DELETE CASCADE,
              title            TEXT NOT NULL,
              price            REAL NOT NULL DEFAULT 0,
              stripe_price_id  TEXT,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS course_modules (
              id           TEXT PRIMARY KEY,
              course_id    TEXT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
              title        TEXT NOT NULL,
              description  TEXT,
              position     INTEGER NOT NULL,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_modules_course ON course_modules(course_id, position);

            CREATE TABLE IF NOT EXISTS course_lessons (
              id                TEXT PRIMARY KEY,
              module_id         TEXT NOT NULL REFERENCES course_modules(id) ON DELETE CASCADE,
              title             TEXT NOT NULL,
              description       TEXT,
              content_type      TEXT NOT NULL DEFAULT 'text',
              content_url       TEXT,
              content_text      TEXT,
              duration_minutes  INTEGER,
              is_preview        INTEGER NOT NULL DEFAULT 0,
              position          INTEGER NOT NULL,
              created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_course_lessons_module ON course_lessons(module_id, position);

            CREATE TABLE IF NOT EXISTS course_purchases (
              id                      INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id                 TEXT NOT NULL,
              course_id               TEXT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
              status                  TEXT NOT NULL DEFAULT 'pending',
              stripe_customer_id      TEXT,
              stripe_setup_intent_id  TEXT,
              stripe_subscription_id  TEXT,
              has_used_trial          INTEGER NOT NULL DEFAULT 0,
              trial_end               TEXT,
              created_at              TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at              TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_purchases_user ON course_purchases(user_id, course_id);

            CREATE TABLE IF NOT EXISTS platform_subscriptions (
              user_id                 TEXT PRIMARY KEY,
              stripe_customer_id      TEXT,
              stripe_subscription_id  TEXT,
              status                  TEXT NOT NULL DEFAULT 'inactive',
              subscription_tier       TEXT NOT NULL DEFAULT 'learning_hub',
              current_period_end      TEXT,
              trial_end               TEXT,
              updated_at              TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS voice_session_quotas (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id            TEXT NOT NULL,
              period_start       TEXT NOT NULL,
              period_end         TEXT NOT NULL,
              minutes_remaining  INTEGER NOT NULL DEFAULT 0,
              bonus_minutes      INTEGER NOT NULL DEFAULT 0,
              minutes_used       INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_voice_quota_user ON voice_session_quotas(user_id, period_start);

            CREATE TABLE IF NOT EXISTS ai_assessments (
              id                  TEXT PRIMARY KEY,
              organization_id     TEXT REFERENCES organizations(id) ON DELETE CASCADE,
              title               TEXT NOT NULL,
              description         TEXT,
              subject             TEXT,
              exam_board          TEXT,
              total_marks         INTEGER NOT NULL DEFAULT 0,
              time_limit_minutes  INTEGER,
              created_by          TEXT,
              status              TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ('draft','published','archived')),
              created_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at          TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS assessment_questions (
              id               TEXT PRIMARY KEY,
              assessment_id    TEXT NOT NULL REFERENCES ai_assessments(id) ON DELETE CASCADE,
              question_number  INTEGER NOT NULL,
              question_text    TEXT NOT NULL,
              question_type    TEXT NOT NULL
                               CHECK (question_type IN ('multiple_choice','short_answer','extended_writing','calculation')),
              marks_available  INTEGER NOT NULL DEFAULT 1,
              correct_answer   TEXT,
              marking_scheme   TEXT,
              keywords         TEXT,
              position         INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_questions_assessment ON assessment_questions(assessment_id, position);

            CREATE TABLE IF NOT EXISTS assessment_sessions (
              id                     TEXT PRIMARY KEY,
              assessment_id          TEXT NOT NULL REFERENCES ai_assessments(id) ON DELETE CASCADE,
              user_id                TEXT NOT NULL,
              student_id             INTEGER,
              started_at             TEXT NOT NULL,
              completed_at           TEXT,
              total_marks_achieved   REAL NOT NULL DEFAULT 0,
              total_marks_available  INTEGER NOT NULL DEFAULT 0,
              time_taken_minutes     INTEGER,
              status                 TEXT NOT NULL DEFAULT 'in_progress'
                                     CHECK (status IN ('in_progress','completed','abandoned'))
            );

            CREATE TABLE IF NOT EXISTS student_responses (
              id                 INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id         TEXT NOT NULL REFERENCES assessment_sessions(id) ON DELETE CASCADE,
              question_id        TEXT NOT NULL REFERENCES assessment_questions(id) ON DELETE CASCADE,
              student_answer     TEXT,
              marks_awarded      REAL NOT NULL DEFAULT 0,
              ai_feedback        TEXT,
              marking_breakdown  TEXT,
              confidence_score   REAL,
              submitted_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              marked_at          TEXT,
              UNIQUE(session_id, question_id)
            );

            CREATE TABLE IF NOT EXISTS cleo_conversations (
              id              TEXT PRIMARY KEY,
              user_id         TEXT NOT NULL,
              lesson_id       TEXT,
              lesson_plan_id  TEXT,
              topic           TEXT,
              year_group      TEXT,
              learning_goal   TEXT,
              status          TEXT NOT NULL DEFAULT 'active',
              created_at      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cleo_conv_user ON cleo_conversations(user_id, status, created_at);

            CREATE TABLE IF NOT EXISTS cleo_messages (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              conversation_id  TEXT NOT NULL REFERENCES cleo_conversations(id) ON DELETE CASCADE,
              role             TEXT NOT NULL CHECK (role IN ('user','assistant','system')),
              content          TEXT NOT NULL,
              created_at       TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cleo_lesson_plans (
              id                   TEXT PRIMARY KEY,
              created_by           TEXT,
              lesson_id            TEXT,
              conversation_id      TEXT,
              topic                TEXT NOT NULL,
              year_group           TEXT,
              subject              TEXT,
              difficulty_tier      TEXT,
              learning_objectives  TEXT,
              teaching_sequence    TEXT,
              status               TEXT NOT NULL DEFAULT 'generating'
                                   CHECK (status IN ('generating','ready','failed')),
              error                TEXT,
              created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              updated_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cleo_content_blocks (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              lesson_plan_id  TEXT NOT NULL REFERENCES cleo_lesson_plans(id) ON DELETE CASCADE,
              block_type      TEXT NOT NULL,
              sequence_order  INTEGER NOT NULL,
              step_id         TEXT,
              title           TEXT,
              data            TEXT NOT NULL,
              teaching_notes  TEXT,
              prerequisites   TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_blocks_plan ON cleo_content_blocks(lesson_plan_id, sequence_order);

            CREATE TABLE IF NOT EXISTS email_log (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              recipient    TEXT NOT NULL,
              subject      TEXT NOT NULL,
              status       TEXT NOT NULL,
              provider_id  TEXT,
              error        TEXT,
              lesson_id    TEXT,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS llm_metrics (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id         TEXT,
              model_id        TEXT NOT NULL,
              prompt_version  TEXT NOT NULL,
              latency_ms      INTEGER NOT NULL,
              tokens_in       INTEGER,
              tokens_out      INTEGER,
              outcome         TEXT NOT NULL DEFAULT 'ok',
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            """
        )
        _add_column_if_missing(con, "users", "first_name", "TEXT")
        _add_column_if_missing(con, "lessons", "cancellation_reason", "TEXT")
        _add_column_if_missing(con, "cleo_lesson_plans", "created_by", "TEXT")
        con.commit()


# -------------- organisations & auth --------------
def create_organization(name: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
    org_id = organization_id or new_id()
    _exec("INSERT INTO organizations(id, name) VALUES (?, ?)", (org_id, name.strip()))
    return get_organization(org_id)


def get_organization(organization_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT id, name, created_at FROM organizations WHERE id = ?", (organization_id,))
    return _row_dict(rows[0]) if rows else None


def get_user_auth(user_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT * FROM users WHERE user_id = ?", (user_id,))
    return rows[0] if rows else None


def get_user_by_email(email: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT * FROM users WHERE lower(email) = lower(?)", (email,))
    return rows[0] if rows else None


def create_user(
    user_id: str,
    email: Optional[str],
    pw_hash: str,
    pw_salt: Optional[str] = None,
    *,
    role: str = "student",
    organization_id: Optional[str] = None,
    first_name: Optional[str] = None,
):
    _exec(
        """
        INSERT INTO users(user_id, email, pw_hash, pw_salt, role, organization_id, first_name)
        VALUES (?,?,?,?,?,?,?)
        """,
        (user_id, email, pw_hash, pw_salt, role, organization_id, first_name),
    )


def update_user_password(user_id: str, pw_hash: str, pw_salt: Optional[str]) -> None:
    _exec(
        "UPDATE users SET pw_hash = ?, pw_salt = ? WHERE user_id = ?",
        (pw_hash, pw_salt, user_id),
    )


# -------------- tutors, subjects & availability --------------
def create_tutor(
    organization_id: str,
    first_name: str,
    last_name: str = "",
    *,
    email: Optional[str] = None,
    hourly_rate: float = 0.0,
    status: str = "active",
    tutor_id: Optional[str] = None,
) -> Dict[str, Any]:
    tid = tutor_id or new_id()
    _exec(
        """
        INSERT INTO tutors(id, organization_id, first_name, last_name, email, status, normal_hourly_rate)
        VALUES (?,?,?,?,?,?,?)
        """,
        (tid, organization_id, first_name.strip(), (last_name or "").strip(), email, status, float(hourly_rate)),
    )
    return get_tutor(tid)


def _tutor_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["name"] = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    return data


def get_tutor(tutor_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM tutors WHERE id = ?", (tutor_id,))
    return _tutor_row(rows[0]) if rows else None


def list_tutors(organization_id: str, status: Optional[str] = None) -> list[Dict[str, Any]]:
    sql = "SELECT * FROM tutors WHERE organization_id = ?"
    params: list[Any] = [organization_id]
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY first_name, last_name"
    return [_tutor_row(row) for row in _query(sql, params)]


def update_tutor(tutor_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {"first_name", "last_name", "email", "status", "normal_hourly_rate"}
    _update_row("tutors", "id", tutor_id, fields, allowed, touch=False)
    return get_tutor(tutor_id)


def upsert_subject(organization_id: str, name: str) -> int:
    clean = name.strip()
    _exec(
        "INSERT OR IGNORE INTO subjects(organization_id, name) VALUES (?, ?)",
        (organization_id, clean),
    )
    rows = _query("SELECT id FROM subjects WHERE organization_id = ? AND name = ?", (organization_id, clean))
    return int(rows[0]["id"])


def list_subjects(organization_id: str) -> list[Dict[str, Any]]:
    rows = _query("SELECT id, name FROM subjects WHERE organization_id = ? ORDER BY name", (organization_id,))
    return [dict(row) for row in rows]


def assign_tutor_subject(tutor_id: str, subject_id: int) -> None:
    _exec(
        "INSERT OR IGNORE INTO tutor_subjects(tutor_id, subject_id) VALUES (?, ?)",
        (tutor_id, int(subject_id)),
    )


def list_tutor_subjects(organization_id: str) -> list[Dict[str, Any]]:
    """Tutor/subject pairs with the tutor's name and status."""
    rows = _query(
        """
        SELECT ts.tutor_id, s.id AS subject_id, s.name AS subject_name,
               t.first_name, t.last_name, t.status
          FROM tutor_subjects ts
          JOIN subjects s ON s.id = ts.subject_id
          JOIN tutors t ON t.id = ts.tutor_id
         WHERE t.organization_id = ?
         ORDER BY t.first_name, t.last_name, s.name
        """,
        (organization_id,),
    )
    return [dict(row) for row in rows]


def add_tutor_availability(tutor_id: str, day_of_week: str, start_time: str, end_time: str) -> int:
    cur = _exec(
        "INSERT INTO tutor_availability(tutor_id, day_of_week, start_time, end_time) VALUES (?,?,?,?)",
        (tutor_id, day_of_week, start_time, end_time),
    )
    return int(cur.lastrowid)


def clear_tutor_availability(tutor_id: str) -> None:
    _exec("DELETE FROM tutor_availability WHERE tutor_id = ?", (tutor_id,))


def list_tutor_availability(tutor_ids: Sequence[str]) -> list[Dict[str, Any]]:
    if not tutor_ids:
        return []
    ids = list(tutor_ids)
    rows = _query(
        f"""
        SELECT id, tutor_id, day_of_week, start_time, end_time
          FROM tutor_availability
         WHERE tutor_id IN ({_placeholders(ids)})
         ORDER BY tutor_id, day_of_week, start_time
        """,
        ids,
    )
    return [dict(row) for row in rows]


# -------------- students --------------
def create_student(
    organization_id: str,
    first_name: str,
    last_name: str = "",
    *,
    email: Optional[str] = None,
    year_group: Optional[str] = None,
    parent_first_name: Optional[str] = None,
    parent_last_name: Optional[str] = None,
    parent_email: Optional[str] = None,
) -> Dict[str, Any]:
    cur = _exec(
        """
        INSERT INTO students(organization_id, first_name, last_name, email, year_group,
                             parent_first_name, parent_last_name, parent_email)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            organization_id,
            first_name.strip(),
            (last_name or "").strip(),
            email,
            year_group,
            parent_first_name,
            parent_last_name,
            parent_email,
        ),
    )
    return get_student(int(cur.lastrowid))


def _student_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    data = dict(row)
    data["name"] = f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip()
    return data


def get_student(student_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM students WHERE id = ?", (int(student_id),))
    return _student_row(rows[0]) if rows else None


def list_students(organization_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM students WHERE organization_id = ? ORDER BY first_name, last_name",
        (organization_id,),
    )
    return [_student_row(row) for row in rows]


# -------------- lessons --------------
_LESSON_BOOL_FIELDS = ("is_group", "is_recurring", "is_recurring_instance")
_LESSON_INSERT_FIELDS = (
    "id",
    "organization_id",
    "title",
    "description",
    "subject",
    "tutor_id",
    "start_time",
    "end_time",
    "is_group",
    "status",
    "lesson_type",
    "is_recurring",
    "is_recurring_instance",
    "parent_lesson_id",
    "instance_date",
    "recurrence_interval",
    "recurrence_end_date",
    "lesson_space_room_id",
    "lesson_space_room_url",
    "lesson_space_space_id",
)
_LESSON_UPDATABLE = frozenset(_LESSON_INSERT_FIELDS) - {"id", "organization_id"} | {"cancellation_reason"}


def _lesson_values(row: Mapping[str, Any]) -> tuple:
    values = []
    for field in _LESSON_INSERT_FIELDS:
        value = row.get(field)
        if field in ("start_time", "end_time") and value is not None:
            value = to_iso(value)
        elif field in _LESSON_BOOL_FIELDS:
            value = int(bool(value))
        elif field == "status" and value is None:
            value = "scheduled"
        elif field == "lesson_type" and value is None:
            value = "regular"
        values.append(value)
    return tuple(values)


def insert_lessons(rows: Sequence[Dict[str, Any]]) -> list[str]:
    """Insert lesson rows in one transaction and return their ids."""
    prepared = []
    ids: list[str] = []
    for row in rows:
        data = dict(row)
        data.setdefault("id", new_id())
        ids.append(data["id"])
        prepared.append(_lesson_values(data))
    _exec_many(
        f"INSERT INTO lessons({', '.join(_LESSON_INSERT_FIELDS)}) VALUES ({_placeholders(_LESSON_INSERT_FIELDS)})",
        prepared,
    )
    return ids


def create_lesson(
    organization_id: str,
    title: str,
    tutor_id: str,
    start_time: Timestamp,
    end_time: Timestamp,
    *,
    student_ids: Sequence[int] = (),
    **fields: Any,
) -> Dict[str, Any]:
    if parse_timestamp(end_time) <= parse_timestamp(start_time):
        raise ValueError("lesson end_time must be after start_time")
    row = dict(fields)
    row.update(
        {
            "organization_id": organization_id,
            "title": title,
            "tutor_id": tutor_id,
            "start_time": start_time,
            "end_time": end_time,
        }
    )
    lesson_id = insert_lessons([row])[0]
    if student_ids:
        add_lesson_students(lesson_id, student_ids)
    return get_lesson(lesson_id)


def lesson_exists(lesson_id: str) -> bool:
    return bool(_query("SELECT 1 FROM lessons WHERE id = ?", (lesson_id,)))


def _hydrate_lessons(rows: Sequence[sqlite3.Row]) -> list[Dict[str, Any]]:
    lessons = [_row_dict(row, bool_fields=_LESSON_BOOL_FIELDS) for row in rows]
    if not lessons:
        return []
    ids = [lesson["id"] for lesson in lessons]
    student_rows = _query(
        f"""
        SELECT ls.lesson_id, s.*
          FROM lesson_students ls
          JOIN students s ON s.id = ls.student_id
         WHERE ls.lesson_id IN ({_placeholders(ids)})
         ORDER BY ls.id
        """,
        ids,
    )
    by_lesson: Dict[str, list[Dict[str, Any]]] = {lesson_id: [] for lesson_id in ids}
    for row in student_rows:
        data = _student_row(row)
        by_lesson[data.pop("lesson_id")].append(data)
    for lesson in lessons:
        lesson["tutor"] = {
            "id": lesson["tutor_id"],
            "first_name": lesson.pop("tutor_first_name", None) or "",
            "last_name": lesson.pop("tutor_last_name", None) or "",
            "email": lesson.pop("tutor_email", None),
        }
        lesson["tutor"]["name"] = f"{lesson['tutor']['first_name']} {lesson['tutor']['last_name']}".strip()
        lesson["students"] = by_lesson.get(lesson["id"], [])
    return lessons


_LESSON_SELECT = """
    SELECT l.*, t.first_name AS tutor_first_name, t.last_name AS tutor_last_name, t.email AS tutor_email
      FROM lessons l
      JOIN tutors t ON t.id = l.tutor_id
"""


def get_lesson(lesson_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(_LESSON_SELECT + " WHERE l.id = ?", (lesson_id,))
    lessons = _hydrate_lessons(rows)
    return lessons[0] if lessons else None


def list_lessons(
    organization_id: Optional[str] = None,
    start: Optional[Timestamp] = None,
    end: Optional[Timestamp] = None,
    *,
    tutor_id: Optional[str] = None,
    tutor_ids: Optional[Sequence[str]] = None,
    status: Optional[str] = None,
    is_group: Optional[bool] = None,
    lesson_type: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Lessons whose start time falls in ``[start, end]``, ordered by start."""
    clauses: list[str] = []
    params: list[Any] = []
    if organization_id:
        clauses.append("l.organization_id = ?")
        params.append(organization_id)
    if start is not None:
        clauses.append("l.start_time >= ?")
        params.append(to_iso(start))
    if end is not None:
        clauses.append("l.start_time <= ?")
        params.append(to_iso(end))
    if tutor_id:
        clauses.append("l.tutor_id = ?")
        params.append(tutor_id)
    if tutor_ids is not None:
        if not tutor_ids:
            return []
        clauses.append(f"l.tutor_id IN ({_placeholders(tutor_ids)})")
        params.extend(tutor_ids)
    if status:
        clauses.append("l.status = ?")
        params.append(status)
    if is_group is not None:
        clauses.append("l.is_group = ?")
        params.append(int(is_group))
    if lesson_type:
        clauses.append("l.lesson_type = ?")
        params.append(lesson_type)
    sql = _LESSON_SELECT
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY l.start_time, l.id"
    return _hydrate_lessons(_query(sql, params))


def _update_row(
    table: str,
    key_column: str,
    key: Any,
    fields: Mapping[str, Any],
    allowed: Iterable[str],
    *,
    touch: bool = True,
    json_fields: Sequence[str] = (),
) -> None:
    allowed_set = set(allowed)
    unknown = set(fields) - allowed_set
    if unknown:
        raise ValueError(f"Unsupported {table} fields: {', '.join(sorted(unknown))}")
    assignments = []
    params: list[Any] = []
    for name, value in fields.items():
        if name in json_fields and value is not None:
            value = json_dumps(value)
        assignments.append(f"{name} = ?")
        params.append(value)
    if not assignments:
        return
    if touch:
        assignments.append("updated_at = CURRENT_TIMESTAMP")
    params.append(key)
    _exec(f"UPDATE {table} SET {', '.join(assignments)} WHERE {key_column} = ?", params)


def update_lesson(lesson_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    values = dict(fields)
    for key in ("start_time", "end_time"):
        if values.get(key) is not None:
            values[key] = to_iso(values[key])
    for key in _LESSON_BOOL_FIELDS:
        if key in values:
            values[key] = int(bool(values[key]))
    _update_row("lessons", "id", lesson_id, values, _LESSON_UPDATABLE)
    return get_lesson(lesson_id)


def delete_lesson(lesson_id: str) -> bool:
    cur = _exec("DELETE FROM lessons WHERE id = ?", (lesson_id,))
    return cur.rowcount > 0


def add_lesson_students(lesson_id: str, student_ids: Iterable[int]) -> None:
    _exec_many(
        "INSERT OR IGNORE INTO lesson_students(lesson_id, student_id) VALUES (?, ?)",
        [(lesson_id, int(student_id)) for student_id in student_ids],
    )


def remove_lesson_student(lesson_id: str, student_id: int) -> bool:
    cur = _exec(
        "DELETE FROM lesson_students WHERE lesson_id = ? AND student_id = ?",
        (lesson_id, int(student_id)),
    )
    return cur.rowcount > 0


def list_lesson_student_ids(lesson_id: str) -> list[int]:
    rows = _query("SELECT student_id FROM lesson_students WHERE lesson_id = ? ORDER BY id", (lesson_id,))
    return [int(row["student_id"]) for row in rows]


def list_student_schedules(
    student_ids: Sequence[int],
    statuses: Sequence[str] = ("scheduled",),
) -> Dict[int, list[Dict[str, Any]]]:
    """Every lesson each student is enrolled in, keyed by student id."""
    schedules: Dict[int, list[Dict[str, Any]]] = {int(sid): [] for sid in student_ids}
    if not schedules:
        return schedules
    ids = list(schedules)
    params: list[Any] = list(ids)
    sql = f"""
        SELECT ls.student_id, s.first_name, s.last_name,
               l.id AS lesson_id, l.title, l.start_time, l.end_time, l.status
          FROM lesson_students ls
          JOIN lessons l ON l.id = ls.lesson_id
          JOIN students s ON s.id = ls.student_id
         WHERE ls.student_id IN ({_placeholders(ids)})
    """
    if statuses:
        sql += f" AND l.status IN ({_placeholders(statuses)})"
        params.extend(statuses)
    sql += " ORDER BY l.start_time"
    for row in _query(sql, params):
        data = dict(row)
        data["student_name"] = f"{data.pop('first_name') or ''} {data.pop('last_name') or ''}".strip()
        schedules[int(data["student_id"])].append(data)
    return schedules


def record_attendance(lesson_id: str, student_id: int, status: str) -> None:
    _exec(
        """
        INSERT INTO lesson_attendance(lesson_id, student_id, attendance_status)
        VALUES (?,?,?)
        ON CONFLICT(lesson_id, student_id) DO UPDATE SET
            attendance_status = excluded.attendance_status,
            recorded_at = CURRENT_TIMESTAMP
        """,
        (lesson_id, int(student_id), status),
    )


def get_attendance(lesson_id: str) -> Dict[int, str]:
    rows = _query(
        "SELECT student_id, attendance_status FROM lesson_attendance WHERE lesson_id = ?",
        (lesson_id,),
    )
    return {int(row["student_id"]): row["attendance_status"] for row in rows}


def upsert_participant_url(lesson_id: str, student_id: int, url: str) -> None:
    _exec(
        """
        INSERT INTO lesson_participant_urls(lesson_id, student_id, participant_url)
        VALUES (?,?,?)
        ON CONFLICT(lesson_id, student_id) DO UPDATE SET participant_url = excluded.participant_url
        """,
        (lesson_id, int(student_id), url),
    )


def get_participant_url(lesson_id: str, student_id: int) -> Optional[str]:
    rows = _query(
        "SELECT participant_url FROM lesson_participant_urls WHERE lesson_id = ? AND student_id = ?",
        (lesson_id, int(student_id)),
    )
    return rows[0]["participant_url"] if rows else None


def clear_participant_urls(lesson_id: str) -> None:
    _exec("DELETE FROM lesson_participant_urls WHERE lesson_id = ?", (lesson_id,))


def list_completed_lessons(
    start: Timestamp,
    end: Timestamp,
    *,
    tutor_id: Optional[str] = None,
    organization_id: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Completed lessons starting in ``[start, end)``."""
    sql = """
        SELECT l.id, l.tutor_id, l.title, l.subject, l.start_time, l.end_time,
               t.first_name, t.last_name, t.normal_hourly_rate
          FROM lessons l
          JOIN tutors t ON t.id = l.tutor_id
         WHERE l.status = 'completed' AND l.start_time >= ? AND l.start_time < ?
    """
    params: list[Any] = [to_iso(start), to_iso(end)]
    if tutor_id:
        sql += " AND l.tutor_id = ?"
        params.append(tutor_id)
    if organization_id:
        sql += " AND l.organization_id = ?"
        params.append(organization_id)
    sql += " ORDER BY l.start_time"
    return [dict(row) for row in _query(sql, params)]


# -------------- lesson summaries --------------
_SUMMARY_FIELDS = (
    "topics_covered",
    "student_contributions",
    "what_went_well",
    "areas_for_improvement",
    "engagement_level",
    "engagement_score",
    "confidence_score",
    "ai_summary",
)


def upsert_lesson_summary(lesson_id: str, student_id: int, summary: Mapping[str, Any]) -> Dict[str, Any]:
    columns = ", ".join(_SUMMARY_FIELDS)
    updates = ", ".join(f"{name} = excluded.{name}" for name in _SUMMARY_FIELDS)
    values = [json_dumps(summary.get("topics_covered") or [])]
    values.extend(summary.get(name) for name in _SUMMARY_FIELDS[1:])
    _exec(
        f"""
        INSERT INTO lesson_student_summaries(lesson_id, student_id, {columns})
        VALUES (?,?,{_placeholders(_SUMMARY_FIELDS)})
        ON CONFLICT(lesson_id, student_id) DO UPDATE SET {updates}, updated_at = CURRENT_TIMESTAMP
        """,
        [lesson_id, int(student_id), *values],
    )
    rows = _query(
        "SELECT * FROM lesson_student_summaries WHERE lesson_id = ? AND student_id = ?",
        (lesson_id, int(student_id)),
    )
    return _row_dict(rows[0], json_fields=("topics_covered",))


def list_lesson_summaries(lesson_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT ss.*, s.first_name, s.last_name
          FROM lesson_student_summaries ss
          JOIN students s ON s.id = ss.student_id
         WHERE ss.lesson_id = ?
         ORDER BY ss.student_id
        """,
        (lesson_id,),
    )
    return [_row_dict(row, json_fields=("topics_covered",)) for row in rows]


# -------------- recurring series --------------
def create_recurring_group(
    original_lesson_id: str,
    group_name: str,
    pattern: Dict[str, Any],
    *,
    generated_until: Optional[str],
    total_instances: int,
    is_infinite: bool,
    next_extension_date: Optional[str],
) -> None:
    _exec(
        """
        INSERT INTO recurring_lesson_groups(original_lesson_id, group_name, recurrence_pattern,
            instances_generated_until, total_instances_generated, is_infinite, next_extension_date)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(original_lesson_id) DO UPDATE SET
            recurrence_pattern = excluded.recurrence_pattern,
            instances_generated_until = excluded.instances_generated_until,
            total_instances_generated = recurring_lesson_groups.total_instances_generated
                                        + excluded.total_instances_generated,
            is_infinite = excluded.is_infinite,
            next_extension_date = excluded.next_extension_date
        """,
        (
            original_lesson_id,
            group_name,
            json_dumps(pattern),
            generated_until,
            int(total_instances),
            int(bool(is_infinite)),
            next_extension_date,
        ),
    )


def get_recurring_group(original_lesson_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM recurring_lesson_groups WHERE original_lesson_id = ?", (original_lesson_id,))
    return _row_dict(rows[0], json_fields=("recurrence_pattern",), bool_fields=("is_infinite",)) if rows else None


def list_due_recurring_groups(now: Timestamp) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM recurring_lesson_groups
         WHERE is_infinite = 1 AND next_extension_date IS NOT NULL AND next_extension_date <= ?
         ORDER BY next_extension_date
        """,
        (to_iso(now),),
    )
    return [_row_dict(row, json_fields=("recurrence_pattern",), bool_fields=("is_infinite",)) for row in rows]


def latest_recurring_instance(original_lesson_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id FROM lessons
         WHERE parent_lesson_id = ? AND is_recurring_instance = 1
         ORDER BY instance_date DESC, start_time DESC
         LIMIT 1
        """,
        (original_lesson_id,),
    )
    return get_lesson(rows[0]["id"]) if rows else None


def has_recurring_instances_since(original_lesson_id: str, since_date: str) -> bool:
    rows = _query(
        """
        SELECT 1 FROM lessons
         WHERE parent_lesson_id = ? AND is_recurring_instance = 1 AND instance_date >= ?
         LIMIT 1
        """,
        (original_lesson_id, since_date),
    )
    return bool(rows)


# -------------- time off --------------
def create_time_off(tutor_id: str, start: Timestamp, end: Timestamp, reason: Optional[str] = None) -> Dict[str, Any]:
    cur = _exec(
        "INSERT INTO time_off_requests(tutor_id, start_date, end_date, reason) VALUES (?,?,?,?)",
        (tutor_id, to_iso(start), to_iso(end), reason),
    )
    return get_time_off(int(cur.lastrowid))


def get_time_off(request_id: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM time_off_requests WHERE id = ?", (int(request_id),))
    return _row_dict(rows[0]) if rows else None


def set_time_off_status(request_id: int, status: str, reviewed_by: Optional[str]) -> Optional[Dict[str, Any]]:
    _exec(
        "UPDATE time_off_requests SET status = ?, reviewed_by = ? WHERE id = ?",
        (status, reviewed_by, int(request_id)),
    )
    return get_time_off(request_id)


def list_time_off(tutor_id: Optional[str] = None, status: Optional[str] = None) -> list[Dict[str, Any]]:
    sql = "SELECT * FROM time_off_requests WHERE 1 = 1"
    params: list[Any] = []
    if tutor_id:
        sql += " AND tutor_id = ?"
        params.append(tutor_id)
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY start_date"
    return [dict(row) for row in _query(sql, params)]


def has_approved_time_off(tutor_id: str, start: Timestamp, end: Timestamp) -> bool:
    rows = _query(
        """
        SELECT 1 FROM time_off_requests
         WHERE tutor_id = ? AND status = 'approved' AND start_date < ? AND end_date > ?
         LIMIT 1
        """,
        (tutor_id, to_iso(end), to_iso(start)),
    )
    return bool(rows)


# -------------- earnings --------------
def get_earning_goal(tutor_id: str, period: str, on_or_before: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM tutor_earning_goals
         WHERE tutor_id = ? AND goal_period = ? AND goal_start_date <= ?
         ORDER BY goal_start_date DESC
         LIMIT 1
        """,
        (tutor_id, period, on_or_before),
    )
    return _row_dict(rows[0]) if rows else None


def upsert_earning_goal(tutor_id: str, amount: float, period: str, start_date: str) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO tutor_earning_goals(tutor_id, goal_amount, goal_period, goal_start_date)
        VALUES (?,?,?,?)
        ON CONFLICT(tutor_id, goal_period, goal_start_date) DO UPDATE SET
            goal_amount = excluded.goal_amount,
            updated_at = CURRENT_TIMESTAMP
        """,
        (tutor_id, float(amount), period, start_date),
    )
    return get_earning_goal(tutor_id, period, start_date)


# -------------- courses & subscriptions --------------
def create_course(
    title: str,
    price: float,
    *,
    organization_id: Optional[str] = None,
    stripe_price_id: Optional[str] = None,
    course_id: Optional[str] = None,
) -> Dict[str, Any]:
    cid = course_id or new_id()
    _exec(
        "INSERT INTO courses(id, organization_id, title, price, stripe_price_id) VALUES (?,?,?,?,?)",
        (cid, organization_id, title, float(price), stripe_price_id),
    )
    return get_course(cid)


def get_course(course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM courses WHERE id = ?", (course_id,))
    return _row_dict(rows[0]) if rows else None


def list_courses(organization_id: Optional[str]) -> list[Dict[str, Any]]:
    """Courses of ``organization_id`` plus platform-wide ones (no organisation)."""
    rows = _query(
        """
        SELECT * FROM courses
         WHERE organization_id IS NULL OR organization_id = ?
         ORDER BY created_at, title
        """,
        (organization_id,),
    )
    return [_row_dict(row) for row in rows]


def _next_position(table: str, parent_column: str, parent_id: str) -> int:
    rows = _query(f"SELECT COALESCE(MAX(position) + 1, 0) AS next FROM {table} WHERE {parent_column} = ?", (parent_id,))
    return int(rows[0]["next"])


def create_course_module(
    course_id: str,
    title: str,
    *,
    description: Optional[str] = None,
    position: Optional[int] = None,
) -> Dict[str, Any]:
    module_id = new_id()
    if position is None:
        position = _next_position("course_modules", "course_id", course_id)
    _exec(
        "INSERT INTO course_modules(id, course_id, title, description, position) VALUES (?,?,?,?,?)",
        (module_id, course_id, title.strip(), description, int(position)),
    )
    return get_course_module(module_id)


def get_course_module(module_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM course_modules WHERE id = ?", (module_id,))
    return _row_dict(rows[0]) if rows else None


def delete_course_module(module_id: str) -> bool:
    return _exec("DELETE FROM course_modules WHERE id = ?", (module_id,)).rowcount > 0


_COURSE_LESSON_FIELDS = ("description", "content_type", "content_url", "content_text", "duration_minutes", "is_preview")


def create_course_lesson(module_id: str, title: str, *, position: Optional[int] = None, **fields: Any) -> Dict[str, Any]:
    unknown = set(fields) - set(_COURSE_LESSON_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported course lesson fields: {', '.join(sorted(unknown))}")
    lesson_id = new_id()
    if position is None:
        position = _next_position("course_lessons", "module_id", module_id)
    _exec(
        """
        INSERT INTO course_lessons(id, module_id, title, description, content_type, content_url, content_text,
                                   duration_minutes, is_preview, position)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            lesson_id,
            module_id,
            title.strip(),
            fields.get("description"),
            fields.get("content_type") or "text",
            fields.get("content_url"),
            fields.get("content_text"),
            fields.get("duration_minutes"),
            1 if fields.get("is_preview") else 0,
            int(position),
        ),
    )
    return get_course_lesson(lesson_id)


def get_course_lesson(lesson_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM course_lessons WHERE id = ?", (lesson_id,))
    return _row_dict(rows[0], bool_fields=("is_preview",)) if rows else None


def delete_course_lesson(lesson_id: str) -> bool:
    return _exec("DELETE FROM course_lessons WHERE id = ?", (lesson_id,)).rowcount > 0


def list_course_modules(course_id: str) -> list[Dict[str, Any]]:
    """Modules of a course in position order, each with its ordered ``lessons``."""
    modules = [
        _row_dict(row)
        for row in _query("SELECT * FROM course_modules WHERE course_id = ? ORDER BY position, created_at", (course_id,))
    ]
    if not modules:
        return []
    by_module: Dict[str, list[Dict[str, Any]]] = {module["id"]: [] for module in modules}
    lesson_rows = _query(
        f"""
        SELECT * FROM course_lessons
         WHERE module_id IN ({_placeholders(modules)})
         ORDER BY position, created_at
        """,
        [module["id"] for module in modules],
    )
    for row in lesson_rows:
        lesson = _row_dict(row, bool_fields=("is_preview",))
        by_module[lesson["module_id"]].append(lesson)
    for module in modules:
        module["lessons"] = by_module[module["id"]]
    return modules


def find_purchase(user_id: str, course_id: str, statuses: Sequence[str]) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"""
        SELECT * FROM course_purchases
         WHERE user_id = ? AND course_id = ? AND status IN ({_placeholders(statuses)})
         ORDER BY id DESC LIMIT 1
        """,
        [user_id, course_id, *statuses],
    )
    return _row_dict(rows[0], bool_fields=("has_used_trial",)) if rows else None


def user_has_used_trial(user_id: str) -> bool:
    rows = _query(
        "SELECT 1 FROM course_purchases WHERE user_id = ? AND has_used_trial = 1 LIMIT 1",
        (user_id,),
    )
    return bool(rows)


def create_purchase(
    user_id: str,
    course_id: str,
    *,
    status: str,
    stripe_customer_id: Optional[str] = None,
    stripe_setup_intent_id: Optional[str] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO course_purchases(user_id, course_id, status, stripe_customer_id, stripe_setup_intent_id)
        VALUES (?,?,?,?,?)
        """,
        (user_id, course_id, status, stripe_customer_id, stripe_setup_intent_id),
    )
    return int(cur.lastrowid)


def get_purchase_by_setup_intent(setup_intent_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM course_purchases WHERE stripe_setup_intent_id = ? ORDER BY id DESC LIMIT 1",
        (setup_intent_id,),
    )
    return _row_dict(rows[0], bool_fields=("has_used_trial",)) if rows else None


def update_purchase(purchase_id: int, **fields: Any) -> None:
    if "has_used_trial" in fields:
        fields["has_used_trial"] = int(bool(fields["has_used_trial"]))
    allowed = {"status", "stripe_subscription_id", "has_used_trial", "trial_end", "stripe_customer_id"}
    _update_row("course_purchases", "id", int(purchase_id), fields, allowed)


def update_purchases_by_subscription(subscription_id: str, status: str) -> int:
    cur = _exec(
        "UPDATE course_purchases SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE stripe_subscription_id = ?",
        (status, subscription_id),
    )
    return cur.rowcount


def upsert_platform_subscription(
    user_id: str,
    *,
    status: str,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    current_period_end: Optional[str] = None,
    trial_end: Optional[str] = None,
    subscription_tier: str = "learning_hub",
) -> None:
    _exec(
        """
        INSERT INTO platform_subscriptions(user_id, stripe_customer_id, stripe_subscription_id, status,
                                           subscription_tier, current_period_end, trial_end, updated_at)
        VALUES (?,?,?,?,?,?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(user_id) DO UPDATE SET
            stripe_customer_id = excluded.stripe_customer_id,
            stripe_subscription_id = excluded.stripe_subscription_id,
            status = excluded.status,
            subscription_tier = excluded.subscription_tier,
            current_period_end = excluded.current_period_end,
            trial_end = excluded.trial_end,
            updated_at = CURRENT_TIMESTAMP
        """,
        (user_id, stripe_customer_id, stripe_subscription_id, status, subscription_tier, current_period_end, trial_end),
    )


def get_platform_subscription(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM platform_subscriptions WHERE user_id = ?", (user_id,))
    return _row_dict(rows[0]) if rows else None


def get_platform_subscription_by_stripe_id(subscription_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM platform_subscriptions WHERE stripe_subscription_id = ?", (subscription_id,))
    return _row_dict(rows[0]) if rows else None


def get_voice_quota(user_id: str, at: Timestamp) -> Optional[Dict[str, Any]]:
    moment = to_iso(at)
    rows = _query(
        """
        SELECT * FROM voice_session_quotas
         WHERE user_id = ? AND period_start <= ? AND period_end >= ?
         ORDER BY period_start DESC LIMIT 1
        """,
        (user_id, moment, moment),
    )
    return _row_dict(rows[0]) if rows else None


def create_voice_quota(user_id: str, period_start: Timestamp, period_end: Timestamp, minutes: int) -> Dict[str, Any]:
    cur = _exec(
        """
        INSERT INTO voice_session_quotas(user_id, period_start, period_end, minutes_remaining)
        VALUES (?,?,?,?)
        """,
        (user_id, to_iso(period_start), to_iso(period_end), int(minutes)),
    )
    rows = _query("SELECT * FROM voice_session_quotas WHERE id = ?", (int(cur.lastrowid),))
    return _row_dict(rows[0])


def update_voice_quota(quota_id: int, **fields: Any) -> None:
    _update_row(
        "voice_session_quotas",
        "id",
        int(quota_id),
        fields,
        {"minutes_remaining", "bonus_minutes", "minutes_used"},
        touch=False,
    )


# -------------- assessments --------------
_QUESTION_JSON_FIELDS = ("marking_scheme", "keywords")


def create_assessment(
    title: str,
    *,
    organization_id: Optional[str] = None,
    description: Optional[str] = None,
    subject: Optional[str] = None,
    exam_board: Optional[str] = None,
    time_limit_minutes: Optional[int] = None,
    created_by: Optional[str] = None,
    status: str = "draft",
) -> Dict[str, Any]:
    assessment_id = new_id()
    _exec(
        """
        INSERT INTO ai_assessments(id, organization_id, title, description, subject, exam_board,
                                   time_limit_minutes, created_by, status)
        VALUES (?,?,?,?,?,?,?,?,?)
        """,
        (assessment_id, organization_id, title, description, subject, exam_board, time_limit_minutes, created_by, status),
    )
    return get_assessment(assessment_id)


def get_assessment(assessment_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM ai_assessments WHERE id = ?", (assessment_id,))
    return _row_dict(rows[0]) if rows else None


def list_assessments(organization_id: Optional[str], status: Optional[str] = None) -> list[Dict[str, Any]]:
    sql = "SELECT * FROM ai_assessments WHERE (organization_id = ? OR organization_id IS NULL)"
    params: list[Any] = [organization_id]
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY created_at DESC, id"
    return [dict(row) for row in _query(sql, params)]


def update_assessment(assessment_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {"title", "description", "subject", "exam_board", "time_limit_minutes", "status", "total_marks"}
    _update_row("ai_assessments", "id", assessment_id, fields, allowed)
    return get_assessment(assessment_id)


def delete_assessment(assessment_id: str) -> bool:
    return _exec("DELETE FROM ai_assessments WHERE id = ?", (assessment_id,)).rowcount > 0


def create_question(
    assessment_id: str,
    question_text: str,
    question_type: str,
    marks_available: int,
    *,
    question_number: Optional[int] = None,
    correct_answer: Optional[str] = None,
    marking_scheme: Any = None,
    keywords: Optional[Sequence[str]] = None,
    position: Optional[int] = None,
) -> Dict[str, Any]:
    if question_number is None or position is None:
        rows = _query(
            "SELECT COUNT(*) AS n FROM assessment_questions WHERE assessment_id = ?",
            (assessment_id,),
        )
        count = int(rows[0]["n"])
        question_number = question_number if question_number is not None else count + 1
        position = position if position is not None else count
    question_id = new_id()
    _exec(
        """
        INSERT INTO assessment_questions(id, assessment_id, question_number, question_text, question_type,
                                         marks_available, correct_answer, marking_scheme, keywords, position)
        VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            question_id,
            assessment_id,
            int(question_number),
            question_text,
            question_type,
            int(marks_available),
            correct_answer,
            json_dumps(marking_scheme) if marking_scheme is not None else None,
            json_dumps(list(keywords or [])),
            int(position),
        ),
    )
    recompute_total_marks(assessment_id)
    return get_question(question_id)


def get_question(question_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM assessment_questions WHERE id = ?", (question_id,))
    return _row_dict(rows[0], json_fields=_QUESTION_JSON_FIELDS) if rows else None


def list_questions(assessment_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM assessment_questions WHERE assessment_id = ? ORDER BY position, question_number",
        (assessment_id,),
    )
    return [_row_dict(row, json_fields=_QUESTION_JSON_FIELDS) for row in rows]


def update_question(question_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {
        "question_number",
        "question_text",
        "question_type",
        "marks_available",
        "correct_answer",
        "marking_scheme",
        "keywords",
        "position",
    }
    _update_row("assessment_questions", "id", question_id, fields, allowed, touch=False, json_fields=_QUESTION_JSON_FIELDS)
    question = get_question(question_id)
    if question:
        recompute_total_marks(question["assessment_id"])
    return question


def delete_question(question_id: str) -> bool:
    question = get_question(question_id)
    if not question:
        return False
    _exec("DELETE FROM assessment_questions WHERE id = ?", (question_id,))
    recompute_total_marks(question["assessment_id"])
    return True


def recompute_total_marks(assessment_id: str) -> int:
    rows = _query(
        "SELECT COALESCE(SUM(marks_available), 0) AS total FROM assessment_questions WHERE assessment_id = ?",
        (assessment_id,),
    )
    total = int(rows[0]["total"])
    _exec(
        "UPDATE ai_assessments SET total_marks = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (total, assessment_id),
    )
    return total


def create_assessment_session(assessment_id: str, user_id: str, student_id: Optional[int], started_at: Timestamp) -> Dict[str, Any]:
    session_id = new_id()
    _exec(
        """
        INSERT INTO assessment_sessions(id, assessment_id, user_id, student_id, started_at)
        VALUES (?,?,?,?,?)
        """,
        (session_id, assessment_id, user_id, student_id, to_iso(started_at)),
    )
    return get_assessment_session(session_id)


def get_assessment_session(session_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM assessment_sessions WHERE id = ?", (session_id,))
    return _row_dict(rows[0]) if rows else None


def latest_assessment_session(assessment_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM assessment_sessions
         WHERE assessment_id = ? AND user_id = ?
         ORDER BY started_at DESC LIMIT 1
        """,
        (assessment_id, user_id),
    )
    return _row_dict(rows[0]) if rows else None


def update_assessment_session(session_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {"completed_at", "total_marks_achieved", "total_marks_available", "time_taken_minutes", "status"}
    _update_row("assessment_sessions", "id", session_id, fields, allowed, touch=False)
    return get_assessment_session(session_id)


def upsert_response(session_id: str, question_id: str, answer: str) -> None:
    _exec(
        """
        INSERT INTO student_responses(session_id, question_id, student_answer)
        VALUES (?,?,?)
        ON CONFLICT(session_id, question_id) DO UPDATE SET
            student_answer = excluded.student_answer,
            submitted_at = CURRENT_TIMESTAMP
        """,
        (session_id, question_id, answer),
    )


def list_responses(session_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        """
        SELECT r.* FROM student_responses r
          JOIN assessment_questions q ON q.id = r.question_id
         WHERE r.session_id = ?
         ORDER BY q.position, q.question_number
        """,
        (session_id,),
    )
    return [_row_dict(row, json_fields=("marking_breakdown",)) for row in rows]


def save_response_marking(
    session_id: str,
    question_id: str,
    *,
    marks_awarded: float,
    feedback: str,
    breakdown: Dict[str, Any],
    confidence: Optional[float],
    marked_at: Timestamp,
) -> None:
    _exec(
        """
        UPDATE student_responses
           SET marks_awarded = ?, ai_feedback = ?, marking_breakdown = ?, confidence_score = ?, marked_at = ?
         WHERE session_id = ? AND question_id = ?
        """,
        (float(marks_awarded), feedback, json_dumps(breakdown), confidence, to_iso(marked_at), session_id, question_id),
    )


# -------------- cleo conversations & lesson plans --------------
def create_conversation(
    user_id: str,
    *,
    created_at: Timestamp,
    lesson_id: Optional[str] = None,
    topic: Optional[str] = None,
    year_group: Optional[str] = None,
    learning_goal: Optional[str] = None,
) -> Dict[str, Any]:
    conversation_id = new_id()
    _exec(
        """
        INSERT INTO cleo_conversations(id, user_id, lesson_id, topic, year_group, learning_goal, created_at)
        VALUES (?,?,?,?,?,?,?)
        """,
        (conversation_id, user_id, lesson_id, topic, year_group, learning_goal, to_iso(created_at)),
    )
    return get_conversation(conversation_id)


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM cleo_conversations WHERE id = ?", (conversation_id,))
    return _row_dict(rows[0]) if rows else None


def find_active_conversation(user_id: str, lesson_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if lesson_id:
        rows = _query(
            """
            SELECT * FROM cleo_conversations
             WHERE user_id = ? AND lesson_id = ? AND status = 'active'
             ORDER BY created_at DESC LIMIT 1
            """,
            (user_id, lesson_id),
        )
    else:
        rows = _query(
            """
            SELECT * FROM cleo_conversations
             WHERE user_id = ? AND lesson_id IS NULL AND status = 'active'
             ORDER BY created_at DESC LIMIT 1
            """,
            (user_id,),
        )
    return _row_dict(rows[0]) if rows else None


def update_conversation(conversation_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {"topic", "year_group", "learning_goal", "status", "lesson_plan_id"}
    _update_row("cleo_conversations", "id", conversation_id, fields, allowed, touch=False)
    return get_conversation(conversation_id)


def add_message(conversation_id: str, role: str, content: str) -> None:
    _exec(
        "INSERT INTO cleo_messages(conversation_id, role, content) VALUES (?,?,?)",
        (conversation_id, role, content),
    )


def list_messages(conversation_id: str) -> list[Dict[str, str]]:
    rows = _query(
        "SELECT role, content FROM cleo_messages WHERE conversation_id = ? ORDER BY id",
        (conversation_id,),
    )
    return [{"role": row["role"], "content": row["content"]} for row in rows]


def create_lesson_plan(
    topic: str,
    *,
    year_group: Optional[str],
    subject: Optional[str],
    difficulty_tier: Optional[str],
    lesson_id: Optional[str],
    conversation_id: Optional[str],
    created_by: Optional[str] = None,
) -> Dict[str, Any]:
    plan_id = new_id()
    _exec(
        """
        INSERT INTO cleo_lesson_plans(id, created_by, lesson_id, conversation_id, topic, year_group, subject,
                                      difficulty_tier)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        (plan_id, created_by, lesson_id, conversation_id, topic, year_group, subject, difficulty_tier),
    )
    return get_lesson_plan(plan_id)


def update_lesson_plan(plan_id: str, **fields: Any) -> None:
    allowed = {"learning_objectives", "teaching_sequence", "status", "error"}
    _update_row(
        "cleo_lesson_plans",
        "id",
        plan_id,
        fields,
        allowed,
        json_fields=("learning_objectives", "teaching_sequence"),
    )


def insert_content_blocks(plan_id: str, blocks: Sequence[Dict[str, Any]]) -> None:
    _exec_many(
        """
        INSERT INTO cleo_content_blocks(lesson_plan_id, block_type, sequence_order, step_id, title,
                                        data, teaching_notes, prerequisites)
        VALUES (?,?,?,?,?,?,?,?)
        """,
        [
            (
                plan_id,
                block["block_type"],
                int(block["sequence_order"]),
                block.get("step_id"),
                block.get("title") or "",
                json_dumps(block["data"]),
                block.get("teaching_notes") or "",
                json_dumps(list(block.get("prerequisites") or [])),
            )
            for block in blocks
        ],
    )


def get_lesson_plan(plan_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM cleo_lesson_plans WHERE id = ?", (plan_id,))
    if not rows:
        return None
    plan = _row_dict(rows[0], json_fields=("learning_objectives", "teaching_sequence"))
    block_rows = _query(
        "SELECT * FROM cleo_content_blocks WHERE lesson_plan_id = ? ORDER BY sequence_order",
        (plan_id,),
    )
    plan["content_blocks"] = [_row_dict(row, json_fields=("data", "prerequisites")) for row in block_rows]
    return plan


def latest_plan_for_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        """
        SELECT id FROM cleo_lesson_plans
         WHERE conversation_id = ? AND status = 'ready'
         ORDER BY created_at DESC LIMIT 1
        """,
        (conversation_id,),
    )
    return get_lesson_plan(rows[0]["id"]) if rows else None


# -------------- email & metrics --------------
def log_email(
    recipient: str,
    subject: str,
    status: str,
    *,
    provider_id: Optional[str] = None,
    error: Optional[str] = None,
    lesson_id: Optional[str] = None,
) -> None:
    _exec(
        "INSERT INTO email_log(recipient, subject, status, provider_id, error, lesson_id) VALUES (?,?,?,?,?,?)",
        (recipient, subject, status, provider_id, error, lesson_id),
    )


def list_email_log(lesson_id: Optional[str] = None) -> list[Dict[str, Any]]:
    if lesson_id:
        rows = _query("SELECT * FROM email_log WHERE lesson_id = ? ORDER BY id", (lesson_id,))
    else:
        rows = _query("SELECT * FROM email_log ORDER BY id")
    return [dict(row) for row in rows]


def record_llm_metric(
    user_id: Optional[str],
    model_id: str,
    prompt_version: str,
    latency_ms: int,
    tokens_in: Optional[int],
    tokens_out: Optional[int],
    *,
    outcome: str = "ok",
) -> None:
    _exec(
        """
        INSERT INTO llm_metrics(user_id, model_id, prompt_version, latency_ms, tokens_in, tokens_out, outcome)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            user_id,
            model_id,
            prompt_version,
            int(latency_ms),
            None if tokens_in is None else int(tokens_in),
            None if tokens_out is None else int(tokens_out),
            outcome,
        ),
    )


def iso_date(value: Union[date, datetime]) -> str:
    return value.strftime("%Y-%m-%d")
