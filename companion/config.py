import logging
import os
import re
from dataclasses import dataclass, asdict
from decimal import Decimal

from .errors import ValidationError

logger = logging.getLogger(__name__)

# Get DATABASE_URL, but validate it; fallback to SQLite if invalid
_raw_db_url = os.getenv("DATABASE_URL", "sqlite:///companion.db")

# If DATABASE_URL looks malformed, use SQLite instead
if _raw_db_url and not _raw_db_url.startswith(("sqlite://", "postgresql://", "postgres://")):
    logger.warning("Invalid DATABASE_URL detected. Using SQLite fallback.")
    DATABASE_URL = "sqlite:///companion.db"
else:
    DATABASE_URL = _raw_db_url


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-integer %s=%r", name, raw_value)
        return default


OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_URL = os.getenv("OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions")
AI_MODEL = os.getenv("AI_MODEL", "medium")

GENERATION_TIMEOUT_SECONDS = _env_int("GENERATION_TIMEOUT_SECONDS", 20)
INITIAL_POINTS = Decimal(_env_int("INITIAL_POINTS", 10))
REVEAL_COST = Decimal(_env_int("REVEAL_COST", 2))

AI_MODELS = {
    "low": "google/gemini-flash-1.5",
    "medium": "deepseek/deepseek-chat-v3-0324",
    "high": "google/gemini-2.5-pro-exp-03-25:free",
}

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass
class UserSettings:
    """User preferences the core consumes. Persisting them is the caller's job."""

    active_time_start: str = "09:00"
    active_time_end: str = "18:00"
    daily_budget_minutes: int = 120
    rest_time_short: int = _env_int("REST_TIME_SHORT", 5)
    rest_time_long: int = _env_int("REST_TIME_LONG", 30)
    ai_model: str = AI_MODEL

    def validate(self) -> "UserSettings":
        errors = []
        for name in ("active_time_start", "active_time_end"):
            if not _HHMM.match(getattr(self, name) or ""):
                errors.append(f"{name} must be HH:MM")
        if not isinstance(self.daily_budget_minutes, int) or self.daily_budget_minutes <= 0:
            errors.append("daily_budget_minutes must be a positive integer")
        if not isinstance(self.rest_time_short, int) or not 1 <= self.rest_time_short <= 60:
            errors.append("rest_time_short must be between 1 and 60 minutes")
        if not isinstance(self.rest_time_long, int) or not 10 <= self.rest_time_long <= 180:
            errors.append("rest_time_long must be between 10 and 180 minutes")
        if self.ai_model not in AI_MODELS:
            errors.append(f"ai_model must be one of {sorted(AI_MODELS)}")
        if errors:
            raise ValidationError("; ".join(errors))
        return self

    def preferences(self) -> dict:
        """The subset of settings handed to the content generator."""
        return {
            "activeTimeStart": self.active_time_start,
            "activeTimeEnd": self.active_time_end,
            "dailyBudgetMinutes": self.daily_budget_minutes,
        }

    def as_dict(self) -> dict:
        return asdict(self)


def get_diagnostics():
    return {
        "Database": "SQLite (Default)" if "sqlite" in DATABASE_URL else "Postgres",
        "OpenRouter API Key": "Configured" if OPENROUTER_API_KEY else "Missing (Fallback Mode)",
        "Model": AI_MODELS.get(AI_MODEL, AI_MODEL),
        "Initial points": str(INITIAL_POINTS),
    }
