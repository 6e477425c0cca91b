"""Deactivation policy for stale one-time and exhausted recurring reminders."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from nudge.core.alerts import STALE_THRESHOLD_MS
from nudge.core.reminder import Reminder


@dataclass(frozen=True)
class DeactivationDecision:
    should_deactivate: bool
    reason: str | None = None


KEEP = DeactivationDecision(False)


def evaluate_one_time(
    reminder: Reminder, now: datetime, stale_threshold_ms: int = STALE_THRESHOLD_MS
) -> DeactivationDecision:
    if reminder.last_alert_time is not None:
        return DeactivationDecision(True, "already alerted")
    missed_by = now - reminder.date
    if missed_by > timedelta(milliseconds=stale_threshold_ms):
        return DeactivationDecision(True, f"stale: missed by {int(missed_by.total_seconds())} seconds")
    return KEEP


def evaluate_recurring(reminder: Reminder, next_event_time: datetime) -> DeactivationDecision:
    if not reminder.recurrence or reminder.end_date is None:
        return KEEP
    if next_event_time > reminder.end_date:
        return DeactivationDecision(True, "next occurrence exceeds end_date")
    return KEEP


def evaluate_deactivation(
    reminder: Reminder,
    event_time: datetime,
    now: datetime,
    stale_threshold_ms: int = STALE_THRESHOLD_MS,
) -> DeactivationDecision:
    """Route to the recurring or one-time rule; checked before any alert is selected."""
    if reminder.is_recurring and reminder.recurrence:
        return evaluate_recurring(reminder, event_time)
    return evaluate_one_time(reminder, now, stale_threshold_ms)
