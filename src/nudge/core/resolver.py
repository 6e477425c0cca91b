"""Event-time resolution for one-time and recurring reminders."""

from __future__ import annotations

import logging
from datetime import datetime

from nudge.core.recurrence import InvalidRecurrenceExpression, next_occurrence
from nudge.core.reminder import Reminder

logger = logging.getLogger(__name__)


def resolve_event_time(
    reminder: Reminder, now: datetime, timezone: str = "UTC"
) -> datetime | None:
    """Return the instant the reminder's upcoming event happens.

    Recurring reminders resolve to the next occurrence strictly after ``now``;
    ``None`` means the expression could not be evaluated and the reminder should
    be skipped this cycle. One-time reminders always resolve to ``date``, even
    when it lies in the past.
    """
    if reminder.is_recurring and reminder.recurrence:
        try:
            return next_occurrence(reminder.recurrence, now, timezone)
        except InvalidRecurrenceExpression as exc:
            logger.warning("Reminder %s has an unusable recurrence: %s", reminder.id, exc)
            return None
    return reminder.date
