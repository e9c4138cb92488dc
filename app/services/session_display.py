"""
Human-readable session timing, for status lines and dashboards.

All timestamps are unix epoch milliseconds, the unit used by signedInAt.
"""

import time
from typing import Optional

from app.models.auth import SessionData

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


def _now_ms() -> int:
    return int(time.time() * 1000)


def session_max_age_ms(days: int) -> int:
    """Session lifetime in milliseconds, matches the cookie max_age."""
    return days * MS_PER_DAY


def time_ago(timestamp_ms: int, now_ms: Optional[int] = None) -> str:
    """e.g. "just now", "2 min ago", "1 hour ago", "3 days ago" """
    now_ms = _now_ms() if now_ms is None else now_ms
    seconds = (now_ms - timestamp_ms) // 1000

    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60} min ago"
    if seconds < 86400:
        hours = seconds // 3600
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    days = seconds // 86400
    return f"{days} day{'s' if days > 1 else ''} ago"


def session_time_remaining(signed_in_at_ms: int, max_age_ms: int, now_ms: Optional[int] = None) -> str:
    """Time left before the session expires, e.g. "6d 23h 45m", or "Expired"."""
    now_ms = _now_ms() if now_ms is None else now_ms
    remaining = signed_in_at_ms + max_age_ms - now_ms
    if remaining <= 0:
        return "Expired"

    days = remaining // MS_PER_DAY
    hours = (remaining % MS_PER_DAY) // MS_PER_HOUR
    minutes = (remaining % MS_PER_HOUR) // MS_PER_MINUTE

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or not parts:
        parts.append(f"{minutes}m")
    return " ".join(parts)


def is_authenticated(session: SessionData) -> bool:
    return session.is_authenticated
