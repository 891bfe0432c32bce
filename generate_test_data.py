import requests
import random
from datetime import datetime, timedelta, timezone

BASE_URL = "http://127.0.0.1:8000"

OWNER = {
    "name": "Demo Tutoring",
    "owner_user_id": "demo_owner",
    "owner_email": "owner@demo-tutoring.test",
    "password": "demo-password",
    "first_name": "Dana",
}

TUTORS = [
    {"first_name": "Priya", "last_name": "Shah", "email": "priya@demo-tutoring.test",
     "normal_hourly_rate": 25.0, "subjects": ["GCSE Maths", "A-Level Maths"]},
    {"first_name": "Tom", "last_name": "Okafor", "email": "tom@demo-tutoring.test",
     "normal_hourly_rate": 22.5, "subjects": ["GCSE Chemistry", "GCSE Physics"]},
    {"first_name": "Ellen", "last_name": "Marsh", "email": "ellen@demo-tutoring.test",
     "normal_hourly_rate": 24.0, "subjects": ["GCSE English Literature"]},
]

STUDENT_NAMES = [
    ("Amira", "Khan"), ("Ben", "Lowe"), ("Chloe", "Price"), ("Dev", "Patel"),
    ("Ella", "Frost"), ("Finn", "Hughes"), ("Grace", "Owusu"), ("Harry", "Nolan"),
]

WEEKDAY_WINDOWS = [
    {"day_of_week": day, "start_time": "15:00", "end_time": "20:00"}
    for day in ("Monday", "Tuesday", "Wednesday", "Thursday")
]


def test_connection():
    try:
        r = requests.get(f"{BASE_URL}/health")
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def create_organization():
    r = requests.post(f"{BASE_URL}/organizations", json=OWNER)
    if r.status_code == 200:
        data = r.json()
        print(f"Organization {data['organization']['id']} created.")
        return data["token"]
    print(f"Organization exists or failed ({r.status_code}); logging in instead.")
    r = requests.post(f"{BASE_URL}/auth/login", json={
        "user_id": OWNER["owner_user_id"],
        "password": OWNER["password"],
    })
    r.raise_for_status()
    return r.json()["token"]


def post(token, path, payload):
    r = requests.post(f"{BASE_URL}{path}", json=payload, headers={"Authorization": f"Bearer {token}"})
    if not r.ok:
        print(f" → {path} failed: {r.status_code} {r.text[:200]}")
        return None
    return r.json()


def seed_tutors(token):
    tutors = []
    for tutor in TUTORS:
        created = post(token, "/tutors", tutor)
        if not created:
            continue
        requests.put(
            f"{BASE_URL}/tutors/{created['id']}/availability",
            json={"windows": WEEKDAY_WINDOWS},
            headers={"Authorization": f"Bearer {token}"},
        )
        tutors.append({**created, "subjects": tutor["subjects"]})
        print(f"Tutor {created['first_name']} created.")
    return tutors


def seed_students(token):
    students = []
    for first, last in STUDENT_NAMES:
        created = post(token, "/students", {
            "first_name": first,
            "last_name": last,
            "year_group": random.choice(["Year 10", "Year 11"]),
            "parent_first_name": "Parent",
            "parent_last_name": last,
            "parent_email": f"{first.lower()}.parent@demo-tutoring.test",
        })
        if created:
            students.append(created)
    print(f"{len(students)} students created.")
    return students


def seed_lessons(token, tutors, students):
    # Small groups on purpose so the optimiser has something to merge.
    base = (datetime.now(timezone.utc) + timedelta(days=7)).replace(hour=16, minute=0, second=0, microsecond=0)
    lessons = []
    for i, tutor in enumerate(tutors):
        group = random.sample(students, k=random.choice([1, 2]))
        start = base + timedelta(days=i)
        lesson = post(token, "/lessons", {
            "title": f"{tutor['subjects'][0]} group",
            "subject": tutor["subjects"][0],
            "tutor_id": tutor["id"],
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=1)).isoformat(),
            "is_group": True,
            "student_ids": [s["id"] for s in group],
        })
        if not lesson:
            continue
        lessons.append(lesson)
        post(token, f"/lessons/{lesson['id']}/recurring", {"interval": "weekly", "is_infinite": True})
    print(f"{len(lessons)} recurring lessons created.")
    return lessons


def seed_assessment(token):
    assessment = post(token, "/assessments", {
        "title": "Quadratics check-in",
        "subject": "GCSE Maths",
        "exam_board": "AQA",
        "time_limit_minutes": 20,
    })
    if not assessment:
        return None
    post(token, f"/assessments/{assessment['id']}/questions", {
        "question_text": "Solve x^2 - 5x + 6 = 0",
        "question_type": "calculation",
        "marks_available": 2,
        "correct_answer": "x = 2 or x = 3",
        "keywords": ["factorise", "x = 2", "x = 3"],
    })
    post(token, f"/assessments/{assessment['id']}/questions", {
        "question_text": "Which of these is the vertex of y = (x - 1)^2 + 4?",
        "question_type": "multiple_choice",
        "marks_available": 1,
        "correct_answer": "(1, 4)",
    })
    r = requests.patch(
        f"{BASE_URL}/assessments/{assessment['id']}",
        json={"status": "published"},
        headers={"Authorization": f"Bearer {token}"},
    )
    print(f"Assessment {assessment['id']} published: {r.ok}")
    return assessment


def run_seed():
    if not test_connection():
        return

    token = create_organization()
    tutors = seed_tutors(token)
    students = seed_students(token)
    seed_lessons(token, tutors, students)
    seed_assessment(token)

    r = requests.post(f"{BASE_URL}/optimiser/scan", headers={"Authorization": f"Bearer {token}"})
    if r.ok:
        scan = r.json()
        print(f"Optimiser: {scan['lessons_analysed']} groups analysed, "
              f"{scan['singleton_groups_eliminated']} single-student groups removable")
    else:
        print("Failed to run optimiser scan")


if __name__ == "__main__":
    run_seed()
