"""
Rate limit and quiet-hours checks for outbound notifications.

Everything here is a pure function of its arguments. The last-sent time is
read from the notification log by the caller, so there is no process-wide
state to share between workers.
"""

import logging
from datetime import datetime, time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_SECONDS = 60


class GateDecision(str, Enum):
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    QUIET_HOURS = "quiet_hours"


def parse_wall_clock(value) -> Optional[time]:
    """Accept a time, 'HH:MM' or 'HH:MM:SS'; None/empty stays None."""
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(value)


def is_rate_limited(last_sent_at: Optional[datetime], now: datetime, rate_limit_seconds: int) -> bool:
    """True while fewer than rate_limit_seconds have passed since the last send."""
    if last_sent_at is None:
        return False
    elapsed = (now - last_sent_at).total_seconds()
    return elapsed < rate_limit_seconds


def in_quiet_hours(start, end, current) -> bool:
    """
    Check whether a wall-clock time falls inside a quiet window.

    A window with start <= end covers [start, end) on the same day. A window
    with start > end runs overnight: [start, midnight) plus [midnight, end).
    Missing bounds mean the user has no quiet hours.
    """
    start = parse_wall_clock(start)
    end = parse_wall_clock(end)
    if start is None or end is None:
        return False

    current = parse_wall_clock(current)
    if start <= end:
        return start <= current < end
    return current >= start or current < end


def local_wall_clock(now: datetime, tz_name: Optional[str]) -> time:
    """Time of day of `now` in the user's timezone (or now's own zone)."""
    if tz_name:
        try:
            now = now.astimezone(ZoneInfo(tz_name))
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone '{tz_name}', using server time")
    return now.time().replace(tzinfo=None)


def evaluate(user_id: str, preference, last_sent_at: Optional[datetime], now: datetime) -> GateDecision:
    """
    Decide whether a user may be notified now.

    Quiet hours are checked independently of the rate limit and never
    touch the last-sent clock.
    """
    rate_limit_seconds = preference.rate_limit_seconds
    if rate_limit_seconds is None:
        rate_limit_seconds = DEFAULT_RATE_LIMIT_SECONDS

    if is_rate_limited(last_sent_at, now, rate_limit_seconds):
        logger.debug(f"Rate limited for user {user_id}")
        return GateDecision.RATE_LIMITED

    current = local_wall_clock(now, getattr(preference, "timezone", None))
    if in_quiet_hours(preference.quiet_hours_start, preference.quiet_hours_end, current):
        logger.debug(f"Quiet hours for user {user_id}")
        return GateDecision.QUIET_HOURS

    return GateDecision.ALLOWED


def can_notify(user_id: str, preference, last_sent_at: Optional[datetime], now: datetime) -> bool:
    return evaluate(user_id, preference, last_sent_at, now) is GateDecision.ALLOWED
