"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_DEFAULTS: Dict[str, str] = {
    "DB_PATH": "data.db",
    "LLM_API_URL": "https://api.openai.com/v1/chat/completions",
    "MODEL_ID": "gpt-4o-mini",
    "LESSONSPACE_API_URL": "https://api.thelessonspace.com/v2",
    "EMAIL_FROM": "Cleo Hub <lessons@cleohub.app>",
    "DASHBOARD_URL": "https://app.cleohub.app/",
}

_OPTIONAL_INTEGRATIONS: Dict[str, str] = {
    "LLM_API_KEY": "LLM gateway bearer key (marking, lesson plans, Cleo chat)",
    "STRIPE_SECRET_KEY": "Stripe secret key (course payments, learning hub access)",
    "STRIPE_WEBHOOK_SECRET": "Stripe webhook signing secret",
    "LESSONSPACE_API_KEY": "TheLessonSpace organisation key (video rooms)",
    "RESEND_API_KEY": "Resend API key (lesson reminder emails)",
}

_URL_VARS = ("LLM_API_URL", "LESSONSPACE_API_URL", "DASHBOARD_URL")
_INT_VARS = ("LLM_TIMEOUT",)
_FLOAT_VARS = ("LLM_TEMPERATURE",)


def validate_environment() -> None:
    """Apply defaults and validate configuration.

    Raises EnvironmentError if a URL or numeric setting is malformed.
    """
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    for var in _URL_VARS:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in _INT_VARS:
        value = os.getenv(var)
        if value:
            try:
                int(value)
            except ValueError:
                raise EnvironmentError(f"{var} must be an integer, got {value!r}") from None

    for var in _FLOAT_VARS:
        value = os.getenv(var)
        if value:
            try:
                float(value)
            except ValueError:
                raise EnvironmentError(f"{var} must be a number, got {value!r}") from None

    for var, description in _OPTIONAL_INTEGRATIONS.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, value, default)
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default


def get_env_str(name: str) -> str:
    """Return the variable or its documented default."""
    return os.getenv(name) or _DEFAULTS.get(name, "")
