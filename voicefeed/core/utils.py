"""Shared formatting helpers for VoiceFeed."""

from datetime import UTC, datetime


def format_duration(seconds: int) -> str:
    """Render a duration as ``m:ss``."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def time_ago(moment: datetime, now: datetime | None = None) -> str:
    """Coarse relative time ("just now", "5 minutes ago", "2 days ago")."""
    now = now or datetime.now(UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    delta = int((now - moment).total_seconds())
    if delta < 60:
        return "just now"
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if delta >= size:
            count = delta // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"
