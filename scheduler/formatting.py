"""
Schedule parsing and human-readable formatting.

parse_schedule() turns the strings accepted on the command line into
Schedule objects; the format_* helpers render schedules back for listings.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from croniter import croniter

from scheduler.errors import ValidationError
from scheduler.models import Conditional, Job, OneTime, Recurring, Schedule, ensure_utc, utcnow


# =============================================================================
# Parsing
# =============================================================================

def parse_duration(s: str) -> int:
    """
    Parse duration string into minutes.

    Examples:
        "30m" → 30
        "2h" → 120
        "1d" → 1440
    """
    s = s.strip().lower()
    match = re.match(r'^(\d+)\s*(m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)$', s)
    if not match:
        raise ValidationError(f"Invalid duration: '{s}'. Use format like '30m', '2h', or '1d'")

    value = int(match.group(1))
    unit = match.group(2)[0]

    multipliers = {'m': 1, 'h': 60, 'd': 1440}
    return value * multipliers[unit]


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        # Naive timestamps are wall-clock times on this machine
        dt = dt.astimezone()
    return ensure_utc(dt)


def parse_schedule(schedule: str, now: Optional[Callable[[], datetime]] = None) -> Schedule:
    """
    Parse a schedule string.

    Examples:
        "30m"              → once, 30 minutes from now
        "every 2h"         → recurring every 120 minutes
        "0 9 * * *"        → recurring, cron expression
        "2026-02-03T14:00" → once at that (local) time
        "conditional"      → conditional
    """
    clock = now or utcnow
    schedule = schedule.strip()
    schedule_lower = schedule.lower()

    if schedule_lower == Conditional.kind:
        return Conditional()

    if schedule_lower.startswith("every "):
        return Recurring(interval_minutes=parse_duration(schedule[6:]))

    # 5 space-separated cron fields: minute hour day month weekday
    parts = schedule.split()
    if len(parts) == 5 and all(re.match(r'^[\w\*\-,/]+$', p) for p in parts):
        if not croniter.is_valid(schedule):
            raise ValidationError(f"Invalid cron expression '{schedule}'")
        return Recurring(cron_expression=schedule)

    if 'T' in schedule or re.match(r'^\d{4}-\d{2}-\d{2}', schedule):
        try:
            return OneTime(execute_at=_parse_timestamp(schedule))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp '{schedule}': {e}") from e

    try:
        minutes = parse_duration(schedule)
    except ValidationError:
        raise ValidationError(
            f"Invalid schedule '{schedule}'. Use:\n"
            "  - Duration: '30m', '2h', '1d' (one-shot)\n"
            "  - Interval: 'every 30m', 'every 2h' (recurring)\n"
            "  - Cron: '0 9 * * *' (cron expression)\n"
            "  - Timestamp: '2026-02-03T14:00:00' (one-shot at time)"
        ) from None
    return OneTime(execute_at=clock() + timedelta(minutes=minutes))


# =============================================================================
# Formatting
# =============================================================================

_DAY_NAMES = {
    "MON": "Monday", "1": "Monday",
    "TUE": "Tuesday", "2": "Tuesday",
    "WED": "Wednesday", "3": "Wednesday",
    "THU": "Thursday", "4": "Thursday",
    "FRI": "Friday", "5": "Friday",
    "SAT": "Saturday", "6": "Saturday",
    "SUN": "Sunday", "0": "Sunday", "7": "Sunday",
}

_MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def _format_time(hour: int, minute: int) -> str:
    am_pm = "AM" if hour < 12 else "PM"
    display_hour = 12 if hour == 0 else hour - 12 if hour > 12 else hour
    return f"{display_hour}:{minute:02d} {am_pm}"


def _ordinal(n: int) -> str:
    if 11 <= n % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"


def format_interval_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"Every {minutes} min"
    if minutes == 60:
        return "Every hour"
    if minutes % 1440 == 0:
        days = minutes // 1440
        if days == 1:
            return "Every day"
        if days == 7:
            return "Every week"
        return f"Every {days} days"
    if minutes % 60 == 0:
        return f"Every {minutes // 60} hours"
    return f"Every {minutes} min"


def format_cron_expression(expression: str) -> str:
    """Describe common cron patterns in words; anything else is returned as-is."""
    parts = expression.split()
    if len(parts) != 5:
        return expression
    minute, hour, dom, month, dow = parts
    rest_wild = dom == "*" and month == "*" and dow == "*"

    try:
        if minute == "*" and hour == "*" and rest_wild:
            return "Every minute"
        if minute.startswith("*/") and hour == "*" and rest_wild:
            return f"Every {int(minute[2:])} minutes"
        if minute == "0" and hour == "*" and rest_wild:
            return "Every hour"
        if minute == "0" and hour.startswith("*/") and rest_wild:
            return f"Every {int(hour[2:])} hours"

        if minute.isdigit() and hour.isdigit():
            time_str = _format_time(int(hour), int(minute))
            if dom.isdigit() and month.isdigit() and dow == "*":
                month_name = _MONTH_NAMES[int(month) - 1] if 1 <= int(month) <= 12 else month
                return f"Yearly on {month_name} {int(dom)} at {time_str}"
            if dom.isdigit() and month == "*" and dow == "*":
                return f"Monthly on the {_ordinal(int(dom))} at {time_str}"
            if dom == "*" and month == "*" and dow != "*":
                days = [_DAY_NAMES.get(d.strip().upper(), d.strip()) for d in dow.split(",")]
                return f"Every {', '.join(days)} at {time_str}"
            if rest_wild:
                return f"Daily at {time_str}"
    except ValueError:
        pass
    return expression


def format_schedule(job_or_schedule) -> str:
    """One-line description of a job's (or a bare schedule's) timing."""
    schedule = job_or_schedule.schedule if isinstance(job_or_schedule, Job) else job_or_schedule
    if isinstance(schedule, OneTime):
        local = schedule.execute_at.astimezone()
        return f"Once at {local.strftime('%Y-%m-%d %H:%M')}"
    if isinstance(schedule, Recurring):
        if schedule.cron_expression:
            return format_cron_expression(schedule.cron_expression)
        if schedule.interval_minutes is not None:
            return format_interval_minutes(schedule.interval_minutes)
        return "Recurring"
    return "Conditional"
