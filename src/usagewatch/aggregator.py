from datetime import datetime, timezone, tzinfo
from enum import Enum

from usagewatch.models import (
    LIMIT_FIELDS,
    LIMIT_NAMES,
    NamedLimit,
    ResetDisplay,
    UsageSnapshot,
)


class UsageLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def _now() -> "datetime":
    return datetime.now(timezone.utc)


def present_limits(snapshot: "UsageSnapshot | None") -> "list[NamedLimit]":
    """
    returns the limits present in the snapshot, in canonical order:
    session, weekly, then each optional window.
    """
    if snapshot is None:
        return []

    limits: "list[NamedLimit]" = []
    for key in LIMIT_FIELDS:
        limit = getattr(snapshot, key)
        if limit is not None:
            limits.append(NamedLimit(key=key, name=LIMIT_NAMES[key], limit=limit))
    return limits


def highest_utilization(snapshot: "UsageSnapshot | None") -> "float":
    """
    max utilization across all present limits, 0 without a snapshot.
    """
    return max(
        (item.limit.utilization for item in present_limits(snapshot)),
        default=0.0,
    )


def highest_reset_limit(snapshot: "UsageSnapshot | None") -> "NamedLimit | None":
    """
    returns the limit with the highest utilization. Only a strictly
    greater value replaces the current best, so on a tie the limit
    listed first wins.
    """
    best: "NamedLimit | None" = None
    for item in present_limits(snapshot):
        if best is None or item.limit.utilization > best.limit.utilization:
            best = item
    return best


def highest_reset_time(snapshot: "UsageSnapshot | None") -> "datetime | None":
    best = highest_reset_limit(snapshot)
    if best is None:
        return None
    return best.limit.resets_at


def clamp_percentage(utilization: "float") -> "float":
    return min(max(utilization, 0.0), 100.0)


def usage_level(utilization: "float") -> "UsageLevel":
    percentage = clamp_percentage(utilization)
    if percentage >= 80:
        return UsageLevel.HIGH
    if percentage >= 50:
        return UsageLevel.MEDIUM
    return UsageLevel.LOW


def format_time_since(then: "datetime", now: "datetime | None" = None) -> "str":
    seconds = int(((now or _now()) - then).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


def format_time_remaining(reset: "datetime", now: "datetime | None" = None) -> "str":
    seconds = int((reset - (now or _now())).total_seconds())
    if seconds <= 0:
        return "Now"

    hours, rest = divmod(seconds, 3600)
    minutes = rest // 60
    if hours > 0 and minutes > 0:
        return f"{hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h"
    if minutes == 0:
        return "<1m"
    return f"{minutes}m"


def _clock(moment: "datetime") -> "str":
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def format_reset_time(
    reset: "datetime",
    now: "datetime | None" = None,
    tz: "tzinfo | None" = None,
) -> "str":
    """
    formats a reset moment as a wall clock time in tz (local time by
    default): "3:05 PM" when it is on the same day as now, otherwise
    prefixed with the weekday, "Mon 3:05 PM".
    """
    local_reset = reset.astimezone(tz)
    local_now = (now or _now()).astimezone(tz)
    if local_reset.date() == local_now.date():
        return _clock(local_reset)
    return f"{local_reset.strftime('%a')} {_clock(local_reset)}"


def menu_bar_text(
    snapshot: "UsageSnapshot | None",
    display: "ResetDisplay" = ResetDisplay.RESET_TIME,
    now: "datetime | None" = None,
    tz: "tzinfo | None" = None,
) -> "str":
    """
    builds the compact status line for the session window, e.g.
    "17% · 3:05 PM" or "17% · 2h 5m".
    """
    if snapshot is None:
        return "0%"

    session = snapshot.five_hour
    pct = int(session.utilization)
    if session.resets_at is None:
        return f"{pct}%"

    if display is ResetDisplay.COUNTDOWN:
        when = format_time_remaining(session.resets_at, now)
    else:
        when = format_reset_time(session.resets_at, now, tz)
    return f"{pct}% · {when}"
