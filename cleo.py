"""Cleo, the AI tutoring companion: chat, speech formatting and voice quota."""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

import db
import llm
from env_validation import get_env_int
from schemas import ConversationDetails

logger = logging.getLogger(__name__)

EXTRACTION_TOOL = "extract_learning_info"
EXTRACTION_PARAMETERS: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "topic": {"type": "string", "description": "The specific topic, e.g. surds, photosynthesis, World War 2"},
        "year_group": {"type": "string", "description": "School year or level, e.g. Year 10, GCSE, A-Level"},
        "learning_goal": {"type": "string", "description": "What the student wants to achieve"},
    },
}

UNLIMITED_STATUSES = ("active", "trialing")

_GATHERING_PROMPT = """You are Cleo, a friendly and encouraging AI tutor.

Known info: {known}
Missing: {missing}

Rules:
- {greeting_rule}
- Ask for exactly ONE missing item at a time (topic, year group or learning goal). If none are missing, start teaching.
- Never repeat a question the student already answered. Acknowledge their answer and move forward.
- Keep replies concise (1-3 short sentences)."""

_TEACHING_PROMPT = """You are Cleo, an expert AI tutor helping a {year_group} student learn about "{topic}".

Learning goal: {learning_goal}

Teaching guidelines:
- Do not restart or re-introduce the topic. Continue from the last assistant message.
- Explain one concept in 2-3 sentences, then ask a question to check understanding.
- If the answer is wrong, correct gently and re-explain with a different approach.
- If the answer is right, praise briefly and move to the next concept.
- Never give direct answers to homework; guide the student to discover them.
- Keep responses concise and build on previous concepts."""

# Ordered: fractions and roots are rewritten before bare symbols.
_LATEX_PATTERNS = (
    (re.compile(r"\\[dt]?frac\s*\{([^{}]*)\}\s*\{([^{}]*)\}"), r"\1 over \2"),
    (re.compile(r"\\sqrt\s*\[([^\]]*)\]\s*\{([^{}]*)\}"), r"the \1 root of \2"),
    (re.compile(r"\\sqrt\s*\{([^{}]*)\}"), r"the square root of \1"),
    (re.compile(r"\^\s*(?:\{\s*2\s*\}|2(?!\d))"), " squared"),
    (re.compile(r"\^\s*(?:\{\s*3\s*\}|3(?!\d))"), " cubed"),
    (re.compile(r"\^\s*\{([^{}]*)\}"), r" to the power of \1"),
    (re.compile(r"\^\s*(-?\w+)"), r" to the power of \1"),
    (re.compile(r"_\s*\{([^{}]*)\}"), r" sub \1"),
)

_LATEX_SYMBOLS = {
    r"\times": " times ",
    r"\cdot": " times ",
    r"\div": " divided by ",
    r"\pm": " plus or minus ",
    r"\leq": " less than or equal to ",
    r"\le": " less than or equal to ",
    r"\geq": " greater than or equal to ",
    r"\ge": " greater than or equal to ",
    r"\neq": " not equal to ",
    r"\approx": " approximately ",
    r"\pi": "pi",
    r"\theta": "theta",
    r"\alpha": "alpha",
    r"\beta": "beta",
    r"\infty": "infinity",
    r"\%": " percent",
    r"\degree": " degrees",
    r"^\circ": " degrees",
}


def latex_to_speech(text: str) -> str:
    """Rewrite LaTeX notation as words a voice model can read aloud."""
    if not text:
        return ""
    spoken = re.sub(r"\$\$?|\\\(|\\\)|\\\[|\\\]", "", text)
    spoken = spoken.replace(r"\left", "").replace(r"\right", "")
    for symbol in sorted(_LATEX_SYMBOLS, key=len, reverse=True):
        spoken = spoken.replace(symbol, _LATEX_SYMBOLS[symbol])
    changed = True
    while changed:
        changed = False
        for pattern, replacement in _LATEX_PATTERNS:
            updated = pattern.sub(replacement, spoken)
            if updated != spoken:
                spoken, changed = updated, True
    spoken = re.sub(r"\\[a-zA-Z]+", "", spoken)
    spoken = spoken.replace("{", "").replace("}", "")
    return re.sub(r"\s+", " ", spoken).strip()


def format_content_block(block: Mapping[str, Any]) -> str:
    block_type = block.get("block_type") or block.get("type") or "text"
    data = block.get("data") or {}
    title = block.get("title") or ""
    header = f"[{block_type.upper()}] {title}".strip()
    if block_type == "text":
        body = data.get("text", "")
    elif block_type == "table":
        lines = [" | ".join(str(h) for h in data.get("headers", []))]
        lines.extend(" | ".join(str(cell) for cell in row) for row in data.get("rows", []))
        body = "\n".join(lines)
    elif block_type == "definition":
        body = f"{data.get('term', '')}: {data.get('definition', '')}"
        if data.get("example"):
            body += f"\nExample: {data['example']}"
    elif block_type == "question":
        options = data.get("options") or []
        lines = [data.get("question", "")]
        lines.extend(f"{option.get('id', '-')}) {option.get('text', '')}" for option in options)
        correct = [option.get("text", "") for option in options if option.get("isCorrect")]
        if correct:
            lines.append(f"Correct answer: {', '.join(correct)}")
        if data.get("explanation"):
            lines.append(f"Explanation: {data['explanation']}")
        body = "\n".join(lines)
    elif block_type == "diagram":
        body = data.get("description", "")
        if data.get("elements"):
            body += "\nElements: " + ", ".join(str(e) for e in data["elements"])
    else:
        body = db.json_dumps(data)
    notes = block.get("teaching_notes")
    if notes:
        body += f"\nTeaching notes: {notes}"
    return f"{header}\n{body}".strip()


# -------------- chat --------------
def _resolve_conversation(
    user_id: str,
    conversation_id: Optional[str],
    lesson_id: Optional[str],
    topic: Optional[str],
    year_group: Optional[str],
    learning_goal: Optional[str],
    user_name: Optional[str],
    now: datetime,
) -> tuple[Dict[str, Any], Optional[str]]:
    if conversation_id:
        conversation = db.get_conversation(conversation_id)
        if not conversation or conversation["user_id"] != user_id:
            raise LookupError(f"Conversation {conversation_id} not found")
        return conversation, None

    conversation = db.find_active_conversation(user_id, lesson_id)
    if conversation:
        return conversation, None

    conversation = db.create_conversation(
        user_id,
        created_at=now,
        lesson_id=lesson_id,
        topic=topic,
        year_group=year_group,
        learning_goal=learning_goal,
    )
    greeting = None
    if lesson_id:
        lesson = db.get_lesson(lesson_id)
        lesson_title = (lesson or {}).get("title") or topic or "this topic"
        description = (lesson or {}).get("description") or ""
        greeting = (
            f"Hi {user_name or 'there'}! I'm Cleo, your AI tutor.\n\n"
            f"I'm excited to help you learn about \"{lesson_title}\"!{' ' + description if description else ''}\n\n"
            "I'll guide you through this lesson step by step, checking your understanding as we go. "
            "Ask questions any time.\n\nReady to get started?"
        )
        db.add_message(conversation["id"], "assistant", greeting)
    return conversation, greeting


def _extract_details(conversation: Dict[str, Any], message: str, user_id: str) -> Dict[str, Any]:
    context = ", ".join(
        f"{key}={conversation.get(key) or 'none'}" for key in ("topic", "year_group", "learning_goal")
    )
    try:
        arguments = llm.tool_call(
            [
                {
                    "role": "system",
                    "content": "Extract the topic, year group and learning goal the student mentions. "
                    "Leave a field out when it is not stated.",
                },
                {"role": "user", "content": f'User message: "{message}"\n\nPrevious context: {context}'},
            ],
            EXTRACTION_TOOL,
            EXTRACTION_PARAMETERS,
            description="Extract topic, year group and learning goal from the user message",
            user_id=user_id,
            prompt_version="cleo_extraction_v1",
        )
        details = ConversationDetails.model_validate(arguments)
    except (llm.LLMError, ValidationError) as exc:
        logger.warning("Learning info extraction failed for conversation %s: %s", conversation["id"], exc)
        return conversation

    updates = {
        key: value.strip()
        for key, value in details.model_dump().items()
        if isinstance(value, str) and value.strip() and not conversation.get(key)
    }
    if updates:
        conversation = db.update_conversation(conversation["id"], **updates)
    return conversation


def _plan_for(conversation: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    if conversation.get("lesson_plan_id"):
        plan = db.get_lesson_plan(conversation["lesson_plan_id"])
        if plan:
            return plan
    return db.latest_plan_for_conversation(conversation["id"])


def build_system_prompt(conversation: Mapping[str, Any], has_greeting: bool, plan: Optional[Mapping[str, Any]] = None) -> str:
    if not conversation.get("topic") or not conversation.get("year_group"):
        labels = {"topic": "topic", "year_group": "year group", "learning_goal": "learning goal"}
        known = [f"{label}: {conversation[key]}" for key, label in labels.items() if conversation.get(key)]
        missing = [label for key, label in labels.items() if not conversation.get(key)]
        return _GATHERING_PROMPT.format(
            known=", ".join(known) or "none yet",
            missing=", ".join(missing) or "none",
            greeting_rule=(
                "You have already introduced yourself. Do not greet again."
                if has_greeting
                else "This is your first message; greet warmly."
            ),
        )

    prompt = _TEACHING_PROMPT.format(
        year_group=conversation["year_group"],
        topic=conversation["topic"],
        learning_goal=conversation.get("learning_goal") or "General understanding",
    )
    if plan and plan.get("content_blocks"):
        objectives = plan.get("learning_objectives") or []
        sections = ["\n\nLESSON PLAN"]
        if objectives:
            sections.append("Objectives:\n" + "\n".join(f"- {objective}" for objective in objectives))
        sections.append("Content blocks, in teaching order:")
        sections.extend(format_content_block(block) for block in plan["content_blocks"])
        prompt += "\n\n".join(sections)
    return prompt


def chat(
    user_id: str,
    message: str,
    *,
    conversation_id: Optional[str] = None,
    lesson_id: Optional[str] = None,
    topic: Optional[str] = None,
    year_group: Optional[str] = None,
    learning_goal: Optional[str] = None,
    user_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not (message or "").strip():
        raise ValueError("Message is required")
    conversation, greeting = _resolve_conversation(
        user_id,
        conversation_id,
        lesson_id,
        topic,
        year_group,
        learning_goal,
        user_name,
        now or db.utcnow(),
    )
    history = db.list_messages(conversation["id"])
    db.add_message(conversation["id"], "user", message)

    if not conversation.get("topic") or not conversation.get("year_group"):
        conversation = _extract_details(conversation, message, user_id)

    has_greeting = any(entry["role"] == "assistant" for entry in history)
    system_prompt = build_system_prompt(conversation, has_greeting, _plan_for(conversation))
    messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}, *history]
    messages.append({"role": "user", "content": message})
    reply = llm.chat_completion(messages, user_id=user_id, prompt_version="cleo_chat_v1")
    db.add_message(conversation["id"], "assistant", reply)

    return {
        "conversation_id": conversation["id"],
        "reply": reply,
        "greeting": greeting,
        "topic": conversation.get("topic"),
        "year_group": conversation.get("year_group"),
        "learning_goal": conversation.get("learning_goal"),
        "lesson_plan_id": conversation.get("lesson_plan_id"),
    }


# -------------- voice quota --------------
def _free_minutes() -> int:
    return get_env_int("VOICE_FREE_MINUTES", 10)


def _month_bounds(moment: datetime) -> tuple[datetime, datetime]:
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end - timedelta(seconds=1)


def _current_quota(user_id: str, moment: datetime) -> Dict[str, Any]:
    quota = db.get_voice_quota(user_id, moment)
    if quota:
        return quota
    start, end = _month_bounds(moment)
    return db.create_voice_quota(user_id, start, end, _free_minutes())


def _is_subscribed(user_id: str) -> bool:
    subscription = db.get_platform_subscription(user_id)
    return bool(subscription and subscription["status"] in UNLIMITED_STATUSES)


def check_voice_quota(user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Whether a voice session may start, and how many minutes are left.

    Subscribers are unlimited. Everyone else gets a monthly free allowance
    plus any bonus minutes an admin granted.
    """
    moment = db.parse_timestamp(now) if now else db.utcnow()
    if _is_subscribed(user_id):
        return {
            "can_start": True,
            "unlimited": True,
            "minutes_remaining": None,
            "quota_id": None,
            "message": "Unlimited voice sessions with your subscription",
        }
    quota = _current_quota(user_id, moment)
    remaining = int(quota["minutes_remaining"] or 0) + int(quota["bonus_minutes"] or 0)
    if remaining > 0:
        message = f"You have {remaining} free minute{'s' if remaining != 1 else ''} remaining"
    else:
        message = "Free minutes used. Subscribe to continue learning!"
    return {
        "can_start": remaining > 0,
        "unlimited": False,
        "minutes_remaining": remaining,
        "quota_id": quota["id"],
        "period_end": quota["period_end"],
        "message": message,
    }


def record_voice_usage(user_id: str, minutes: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Consume free minutes first, then bonus minutes."""
    if int(minutes) <= 0:
        raise ValueError("Usage must be a positive number of minutes")
    moment = db.parse_timestamp(now) if now else db.utcnow()
    if _is_subscribed(user_id):
        return check_voice_quota(user_id, moment)
    quota = _current_quota(user_id, moment)
    free = int(quota["minutes_remaining"] or 0)
    bonus = int(quota["bonus_minutes"] or 0)
    used_free = min(free, int(minutes))
    used_bonus = min(bonus, int(minutes) - used_free)
    db.update_voice_quota(
        quota["id"],
        minutes_remaining=free - used_free,
        bonus_minutes=bonus - used_bonus,
        minutes_used=int(quota["minutes_used"] or 0) + int(minutes),
    )
    if used_free + used_bonus < int(minutes):
        logger.info("User %s exceeded voice quota by %d minute(s)", user_id, int(minutes) - used_free - used_bonus)
    return check_voice_quota(user_id, moment)


def add_bonus_minutes(user_id: str, minutes: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    if int(minutes) <= 0:
        raise ValueError("Bonus minutes must be positive")
    moment = db.parse_timestamp(now) if now else db.utcnow()
    quota = _current_quota(user_id, moment)
    db.update_voice_quota(quota["id"], bonus_minutes=int(quota["bonus_minutes"] or 0) + int(minutes))
    logger.info("Added %d bonus voice minute(s) for %s", int(minutes), user_id)
    return check_voice_quota(user_id, moment)
