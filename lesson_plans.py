"""Cleo lesson plan generation."""

import logging
from typing import Any, Dict, List, Mapping, Optional

import db
import llm
from prompts.lesson_plans import get_template
from schemas import LessonPlanDraft

logger = logging.getLogger(__name__)

PLAN_TOOL = "create_lesson_plan"
BLOCK_TYPES = ("text", "table", "definition", "question", "diagram")

DIFFICULTY_TIERS: Dict[str, str] = {
    "foundation": (
        "DIFFICULTY: Foundation tier (Grades 1-4). Use simple language and short sentences, "
        "build confidence with straightforward recall questions, and break every method into small steps."
    ),
    "intermediate": (
        "DIFFICULTY: Intermediate (Grades 4-6). Mix recall with application, introduce multi-step "
        "problems gradually, and connect ideas across the topic."
    ),
    "higher": (
        "DIFFICULTY: Higher tier (Grades 6-9). Include challenging multi-step and unfamiliar-context "
        "questions, expect precise terminology, and stretch the student with analysis and evaluation."
    ),
}

PLAN_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "objectives": {
            "type": "array",
            "items": {"type": "string"},
            "description": "3-5 clear learning objectives",
        },
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "title": {"type": "string"},
                    "duration_minutes": {"type": "number"},
                    "content_blocks": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "type": {"type": "string", "enum": list(BLOCK_TYPES)},
                                "title": {"type": "string"},
                                "data": {
                                    "type": "object",
                                    "description": (
                                        "TEXT: {text}, TABLE: {headers, rows}, "
                                        "DEFINITION: {term, definition, example?}, "
                                        "QUESTION: {id, question, options: [{id, text, isCorrect}], explanation?}, "
                                        "DIAGRAM: {description, elements}"
                                    ),
                                    "additionalProperties": True,
                                },
                                "teaching_notes": {"type": "string"},
                                "prerequisites": {"type": "array", "items": {"type": "string"}},
                            },
                            "required": ["type", "data", "title"],
                        },
                    },
                },
                "required": ["id", "title", "content_blocks"],
            },
        },
    },
    "required": ["objectives", "steps"],
}

_BASE_SYSTEM_PROMPT = """You are an expert curriculum designer creating detailed lesson plans for students.

Create an engaging lesson plan that pre-generates ALL teaching materials:
1. Learning objectives (3-5 clear, measurable goals)
2. Teaching sequence (10-15 micro-steps, each 2-3 minutes)
3. Content blocks (text, table, definition, question, diagram) with complete data fields:
   - text: {{"text": "..."}}
   - table: {{"headers": ["..."], "rows": [["..."]]}}
   - definition: {{"term": "...", "definition": "...", "example": "..."}}
   - question: {{"id": "q1", "question": "...", "options": [{{"id": "a", "text": "...", "isCorrect": true}}], "explanation": "..."}}
   - diagram: {{"description": "...", "elements": ["..."]}}

For each block give teaching notes and the ids of any blocks that must be shown first.
Make the content rich, accurate and age-appropriate for {year_group}.

{subject_guidance}
{tier_guidance}"""


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def validate_block_data(block_type: str, data: Any) -> bool:
    if not isinstance(data, dict) or not data:
        return False
    if block_type == "text":
        return _non_empty_str(data.get("text"))
    if block_type == "table":
        headers, rows = data.get("headers"), data.get("rows")
        return isinstance(headers, list) and isinstance(rows, list) and bool(headers) and bool(rows)
    if block_type == "definition":
        return _non_empty_str(data.get("term")) and _non_empty_str(data.get("definition"))
    if block_type == "question":
        options = data.get("options")
        return (
            _non_empty_str(data.get("question"))
            and isinstance(options, list)
            and bool(options)
            and all(
                isinstance(option, dict)
                and isinstance(option.get("text"), str)
                and isinstance(option.get("isCorrect"), bool)
                for option in options
            )
        )
    if block_type == "diagram":
        return _non_empty_str(data.get("description"))
    return False


def build_system_prompt(year_group: str, subject: Optional[str], difficulty_tier: Optional[str]) -> str:
    template = get_template(subject)
    return _BASE_SYSTEM_PROMPT.format(
        year_group=year_group or "the student's year group",
        subject_guidance=f"SUBJECT GUIDANCE ({template.label}): {template.system_guidance}",
        tier_guidance=DIFFICULTY_TIERS.get(difficulty_tier or "", ""),
    ).strip()


def _collect_blocks(draft: LessonPlanDraft) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for step in draft.steps:
        for block in step.content_blocks:
            block_type = block.get("type")
            data = block.get("data")
            if not data:
                logger.warning("Empty data for %s block in step %s; skipping", block_type, step.id)
                continue
            if block_type not in BLOCK_TYPES or not validate_block_data(block_type, data):
                logger.warning("Invalid %s block in step %s; skipping", block_type, step.id)
                continue
            blocks.append(
                {
                    "block_type": block_type,
                    "sequence_order": len(blocks),
                    "step_id": step.id,
                    "title": block.get("title") or "",
                    "data": data,
                    "teaching_notes": block.get("teaching_notes") or "",
                    "prerequisites": block.get("prerequisites") or [],
                }
            )
    return blocks


def generate_lesson_plan(
    topic: str,
    year_group: str,
    *,
    subject: Optional[str] = None,
    learning_goal: Optional[str] = None,
    lesson_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    difficulty_tier: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Generate and store a lesson plan; its status ends ``ready`` or ``failed``."""
    if not _non_empty_str(topic):
        raise ValueError("A topic is required to generate a lesson plan")
    if difficulty_tier and difficulty_tier not in DIFFICULTY_TIERS:
        raise ValueError(f"Unknown difficulty tier: {difficulty_tier}")
    if lesson_id and not db.lesson_exists(lesson_id):
        logger.info("Lesson %s not found; lesson plan will not be linked", lesson_id)
        lesson_id = None

    plan = db.create_lesson_plan(
        topic.strip(),
        year_group=year_group,
        subject=subject,
        difficulty_tier=difficulty_tier,
        lesson_id=lesson_id,
        conversation_id=conversation_id,
        created_by=user_id,
    )
    template = get_template(subject or topic)
    user_prompt = f"Create a lesson plan for teaching: {topic}\nYear Group: {year_group}"
    if learning_goal:
        user_prompt += f"\nLearning Goal: {learning_goal}"
    user_prompt += "\n\nGenerate a complete lesson with all necessary tables, definitions, diagrams and questions."

    try:
        arguments = llm.tool_call(
            [
                {"role": "system", "content": build_system_prompt(year_group, subject or topic, difficulty_tier)},
                {"role": "user", "content": user_prompt},
            ],
            PLAN_TOOL,
            PLAN_PARAMETERS,
            description="Create a structured lesson plan with pre-generated content",
            user_id=user_id,
            prompt_version=template.prompt_version,
        )
        draft = LessonPlanDraft.model_validate(arguments)
        blocks = _collect_blocks(draft)
        db.insert_content_blocks(plan["id"], blocks)
    except Exception as exc:
        db.update_lesson_plan(plan["id"], status="failed", error=str(exc)[:500])
        logger.error("Lesson plan %s failed: %s", plan["id"], exc)
        raise

    db.update_lesson_plan(
        plan["id"],
        learning_objectives=draft.objectives,
        teaching_sequence=[
            {"id": step.id, "title": step.title, "duration_minutes": step.duration_minutes} for step in draft.steps
        ],
        status="ready",
    )
    if conversation_id and db.get_conversation(conversation_id):
        db.update_conversation(conversation_id, lesson_plan_id=plan["id"])
    logger.info("Lesson plan %s ready with %d content block(s)", plan["id"], len(blocks))
    return db.get_lesson_plan(plan["id"])


def plan_summary(plan: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "lesson_plan_id": plan["id"],
        "status": plan["status"],
        "objectives": plan.get("learning_objectives") or [],
        "steps_count": len(plan.get("teaching_sequence") or []),
        "content_blocks_count": len(plan.get("content_blocks") or []),
    }
