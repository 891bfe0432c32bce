import pytest

import db
import learning_hub


LEARNER = {"user_id": "pupil", "role": "student", "organization_id": None}


@pytest.fixture
def course(temp_db):
    org = db.create_organization("Riverside Tutors")
    return db.create_course("GCSE Maths revision", 19.99, organization_id=org["id"])


def test_modules_and_lessons_keep_their_order(course):
    second = learning_hub.add_module(course["id"], "Geometry", position=1)
    first = learning_hub.add_module(course["id"], "Algebra", position=0)
    appended = learning_hub.add_module(course["id"], "Statistics")
    assert appended["position"] == 2

    learning_hub.add_lesson(first["id"], "Factorising", content_text="Common factors first.", position=1)
    learning_hub.add_lesson(first["id"], "Expanding", content_text="Multiply every term.", position=0)

    modules = db.list_course_modules(course["id"])
    assert [m["title"] for m in modules] == ["Algebra", "Geometry", "Statistics"]
    assert [lesson["title"] for lesson in modules[0]["lessons"]] == ["Expanding", "Factorising"]
    assert modules[1]["id"] == second["id"]
    assert modules[1]["lessons"] == []


@pytest.mark.parametrize(
    "content_type, fields, message",
    [
        ("podcast", {}, "Unsupported content type: podcast"),
        ("video", {}, "A video lesson needs a content_url"),
        ("text", {"content_text": "   "}, "A text lesson needs content_text"),
    ],
)
def test_add_lesson_validates_content(course, content_type, fields, message):
    module = learning_hub.add_module(course["id"], "Algebra")
    with pytest.raises(ValueError) as excinfo:
        learning_hub.add_lesson(module["id"], "Lesson", content_type, **fields)
    assert str(excinfo.value) == message


def test_unknown_course_or_module(temp_db):
    with pytest.raises(LookupError):
        learning_hub.add_module("missing", "Algebra")
    with pytest.raises(LookupError):
        learning_hub.add_lesson("missing", "Factorising", content_text="x")


def test_outline_unlocks_content_after_purchase(course):
    module = learning_hub.add_module(course["id"], "Algebra")
    learning_hub.add_lesson(module["id"], "Quiz", "quiz", is_preview=True)
    learning_hub.add_lesson(module["id"], "Worked example", content_text="Solve x^2 = 9.")

    outline = learning_hub.course_outline(course["id"], LEARNER)
    assert outline["has_access"] is False
    assert [lesson["locked"] for lesson in outline["modules"][0]["lessons"]] == [False, True]
    assert outline["modules"][0]["lessons"][1]["content_text"] is None

    db.create_purchase("pupil", course["id"], status="trialing")
    outline = learning_hub.course_outline(course["id"], LEARNER)
    assert outline["has_access"] is True
    assert outline["modules"][0]["lessons"][1]["content_text"] == "Solve x^2 = 9."


def test_staff_of_another_organization_have_no_access(course):
    other = db.create_organization("Hilltop")
    own_staff = {"user_id": "owner", "role": "owner", "organization_id": course["organization_id"]}
    rival_staff = {"user_id": "rival", "role": "owner", "organization_id": other["id"]}
    assert learning_hub.has_course_access(own_staff, course)
    assert not learning_hub.has_course_access(rival_staff, course)


def test_deleting_a_module_removes_its_lessons(course):
    module = learning_hub.add_module(course["id"], "Algebra")
    lesson = learning_hub.add_lesson(module["id"], "Factorising", content_text="Common factors first.")
    assert db.delete_course_module(module["id"]) is True
    assert db.get_course_lesson(lesson["id"]) is None
    assert db.list_course_modules(course["id"]) == []
