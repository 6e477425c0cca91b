"""Recurrence evaluator: next occurrence of a 5-field cron expression."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

# Cron numbers weekdays from Sunday (0, and 7 again); APScheduler numbers them
# from Monday, so the day-of-week field is always handed over as names.
_CRON_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


class InvalidRecurrenceExpression(ValueError):
    """A cron expression could not be parsed or never matches."""

    def __init__(self, expression: str, detail: str) -> None:
        self.expression = expression
        self.detail = detail
        super().__init__(f"Invalid cron expression {expression!r}: {detail}")


def _day_number(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if not 0 <= value <= 7:
            raise ValueError(f"day-of-week value {value} out of range 0-7")
        return value
    try:
        return _CRON_DAY_NAMES.index(token[:3])
    except ValueError:
        raise ValueError(f"unknown day-of-week {token!r}") from None


def translate_day_of_week(field: str) -> str:
    """Rewrite a cron day-of-week field as APScheduler weekday names.

    Supports ``*``, single days, ranges, lists and steps (``*/2``, ``1-5/2``).
    """
    field = field.strip().lower()
    if field in ("*", "?"):
        return "*"
    days: set[int] = set()
    for part in field.split(","):
        rng, has_step, step_text = part.partition("/")
        step = int(step_text) if has_step else 1
        if step < 1:
            raise ValueError(f"step must be positive in {part!r}")
        if rng == "*":
            start, end = 0, 6
        elif "-" in rng:
            first, last = rng.split("-", 1)
            start, end = _day_number(first), _day_number(last)
        elif rng:
            start = _day_number(rng)
            end = 6 if has_step else start
        else:
            raise ValueError(f"empty day-of-week entry in {field!r}")
        if start > end:
            raise ValueError(f"day-of-week range {rng!r} is reversed")
        days.update(day % 7 for day in range(start, end + 1, step))
    return ",".join(_CRON_DAY_NAMES[day] for day in sorted(days))


def _build_triggers(expression: str, timezone: str = "UTC") -> list[CronTrigger]:
    parts = expression.strip().split()
    if len(parts) != 5:
        raise InvalidRecurrenceExpression(
            expression,
            f"expected 5 fields (minute hour day month weekday), got {len(parts)}",
        )
    minute, hour, day, month, day_of_week = parts
    try:
        dow = translate_day_of_week(day_of_week)
        # Classic cron: when both day fields are restricted, either may match.
        if day not in ("*", "?") and dow != "*":
            combos = [(day, "*"), ("*", dow)]
        else:
            combos = [(day if day != "?" else "*", dow)]
        return [
            CronTrigger(
                minute=minute,
                hour=hour,
                day=d,
                month=month,
                day_of_week=w,
                timezone=timezone,
            )
            for d, w in combos
        ]
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidRecurrenceExpression(expression, str(exc)) from exc


def next_occurrence(expression: str, reference: datetime, timezone: str = "UTC") -> datetime:
    """Return the earliest instant strictly after ``reference`` matching ``expression``."""
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=UTC)
    # Triggers match at whole seconds; nudging past the reference makes the result strictly later.
    start = reference + timedelta(microseconds=1)
    candidates = [
        fire_time
        for trigger in _build_triggers(expression, timezone)
        if (fire_time := trigger.get_next_fire_time(None, start)) is not None
    ]
    if not candidates:
        raise InvalidRecurrenceExpression(expression, "expression never matches")
    return min(candidates).astimezone(UTC)


def upcoming_occurrences(
    expression: str, reference: datetime, count: int, timezone: str = "UTC"
) -> list[datetime]:
    occurrences: list[datetime] = []
    cursor = reference
    for _ in range(count):
        cursor = next_occurrence(expression, cursor, timezone)
        occurrences.append(cursor)
    return occurrences


def validate_cron_expression(expression: str) -> tuple[bool, str]:
    """Validate a 5-part cron expression. Returns (is_valid, error_message)."""
    try:
        _build_triggers(expression)
    except InvalidRecurrenceExpression as exc:
        return False, str(exc)
    return True, ""


def cron_to_human(expression: str) -> str:
    """Convert a 5-part cron expression to a human-readable description."""
    parts = expression.strip().split()
    if len(parts) != 5:
        return expression

    minute, hour, day, month, dow = parts

    # Common patterns
    if parts == ["*", "*", "*", "*", "*"]:
        return "Every minute"
    if minute.startswith("*/"):
        n = minute[2:]
        if hour == "*" and day == "*" and month == "*" and dow == "*":
            return f"Every {n} minutes"
    if hour.startswith("*/"):
        n = hour[2:]
        if minute == "0" and day == "*" and month == "*" and dow == "*":
            return f"Every {n} hours"
    if minute != "*" and hour != "*" and day == "*" and month == "*":
        try:
            time_str = f"{int(hour):d}:{int(minute):02d} UTC"
        except ValueError:
            return expression
        if dow == "*":
            return f"Every day at {time_str}"
        if dow.lower() in ("1-5", "mon-fri"):
            return f"Weekdays at {time_str}"
        if dow.lower() in ("0,6", "6,0", "sat,sun", "sun,sat"):
            return f"Weekends at {time_str}"
        try:
            names = translate_day_of_week(dow).split(",")
        except ValueError:
            return expression
        labels = [_DAY_LABELS[name] for name in names]
        return f"Every {', '.join(labels)} at {time_str}"
    if minute != "*" and hour != "*" and day != "*" and month == "*" and dow == "*":
        try:
            time_str = f"{int(hour):d}:{int(minute):02d} UTC"
            suffix = _ordinal(int(day))
        except ValueError:
            return expression
        return f"{suffix} of every month at {time_str}"

    return expression


_DAY_LABELS = {
    "sun": "Sunday",
    "mon": "Monday",
    "tue": "Tuesday",
    "wed": "Wednesday",
    "thu": "Thursday",
    "fri": "Friday",
    "sat": "Saturday",
}


def _ordinal(n: int) -> str:
    """Return ordinal string for a number (1st, 2nd, 3rd, etc.)."""
    if 11 <= n % 100 <= 13:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
    return f"{n}{suffix}"
