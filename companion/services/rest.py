import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .policy import EconomyPolicy


def _normalize_datetime(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class GateStatus:
    allowed: bool
    remaining_minutes: int = 0
    is_short_break: bool = False

    @property
    def notice(self) -> str:
        if self.allowed:
            return "A new mission can be generated."
        if self.is_short_break:
            return f"Short break: {self.remaining_minutes} minutes of rest before the next mission"
        return f"Rest time: {self.remaining_minutes} minutes before the next mission"


@dataclass(frozen=True)
class RestWindow:
    completed_at: datetime
    rest_minutes: int
    next_allowed_at: datetime


class RestScheduler:
    """Cooldown between a completion and the next generated mission. Holds no state of its own."""

    def __init__(self, rest_time_short: int, rest_time_long: int, policy: EconomyPolicy = None):
        self.rest_time_short = rest_time_short
        self.rest_time_long = rest_time_long
        self.policy = policy or EconomyPolicy()

    def next_allowed_at(self, completed_at: datetime) -> RestWindow:
        minutes = self.policy.rest_minutes(self.rest_time_short, self.rest_time_long)
        completed_at = _normalize_datetime(completed_at)
        return RestWindow(
            completed_at=completed_at,
            rest_minutes=minutes,
            next_allowed_at=completed_at + timedelta(minutes=minutes),
        )

    def check(self, now: datetime, next_allowed_at: Optional[datetime]) -> GateStatus:
        return check_gate(now, next_allowed_at, self.rest_time_short)


def check_gate(now: datetime, next_allowed_at: Optional[datetime], rest_time_short: int) -> GateStatus:
    """
    Whether a new mission may be requested at ``now``.

    Args:
        now: Current time
        next_allowed_at: End of the rest period, or None if nothing was completed yet
        rest_time_short: Short rest length in minutes, only used to pick the wording

    Returns:
        GateStatus; remaining_minutes is rounded up to the whole minute
    """
    if next_allowed_at is None:
        return GateStatus(allowed=True)
    now = _normalize_datetime(now)
    next_allowed_at = _normalize_datetime(next_allowed_at)
    if now >= next_allowed_at:
        return GateStatus(allowed=True)
    remaining = math.ceil((next_allowed_at - now).total_seconds() / 60)
    return GateStatus(allowed=False, remaining_minutes=remaining, is_short_break=remaining <= rest_time_short)
