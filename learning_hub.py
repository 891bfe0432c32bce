"""Learning Hub course content: modules, lessons and who may open them."""

import logging
from typing import Any, Dict, Mapping, Optional

import billing
import db

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("video", "quiz", "text", "ai-assessment")
_ADMIN_ROLES = ("owner", "admin")
_LOCKED_FIELDS = ("content_url", "content_text")


def _require_course(course_id: str) -> Dict[str, Any]:
    course = db.get_course(course_id)
    if not course:
        raise LookupError(f"Course {course_id} not found")
    return course


def add_module(course_id: str, title: str, *, description: Optional[str] = None, position: Optional[int] = None) -> Dict[str, Any]:
    _require_course(course_id)
    if not title.strip():
        raise ValueError("A module needs a title")
    return db.create_course_module(course_id, title, description=description, position=position)


def add_lesson(module_id: str, title: str, content_type: str = "text", **fields: Any) -> Dict[str, Any]:
    if not db.get_course_module(module_id):
        raise LookupError(f"Module {module_id} not found")
    if not title.strip():
        raise ValueError("A lesson needs a title")
    if content_type not in CONTENT_TYPES:
        raise ValueError(f"Unsupported content type: {content_type}")
    if content_type == "video" and not fields.get("content_url"):
        raise ValueError("A video lesson needs a content_url")
    if content_type == "text" and not (fields.get("content_text") or "").strip():
        raise ValueError("A text lesson needs content_text")
    position = fields.pop("position", None)
    lesson = db.create_course_lesson(module_id, title, position=position, content_type=content_type, **fields)
    logger.info("Course lesson %s added to module %s", lesson["id"], module_id)
    return lesson


def has_course_access(user: Mapping[str, Any], course: Mapping[str, Any]) -> bool:
    """Staff of the owning organisation, or a learner with a live purchase."""
    if user.get("role") in _ADMIN_ROLES and course.get("organization_id") == user.get("organization_id"):
        return True
    return db.find_purchase(user["user_id"], course["id"], billing.PAID_PURCHASE_STATUSES) is not None


def course_outline(course_id: str, user: Mapping[str, Any]) -> Dict[str, Any]:
    """The course with its modules and lessons; locked lessons hide their content."""
    course = _require_course(course_id)
    access = has_course_access(user, course)
    modules = db.list_course_modules(course_id)
    for module in modules:
        for lesson in module["lessons"]:
            lesson["locked"] = not (access or lesson["is_preview"])
            if lesson["locked"]:
                for field in _LOCKED_FIELDS:
                    lesson[field] = None
    return {
        **course,
        "has_access": access,
        "modules": modules,
        "lesson_count": sum(len(module["lessons"]) for module in modules),
    }
