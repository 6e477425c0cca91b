"""Alert selection: which alert, if any, fires in the current cycle."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from nudge.core.reminder import Alert, Reminder

logger = logging.getLogger(__name__)

STALE_THRESHOLD_MS = 60 * 60 * 1000

_UNITS = (
    ("day", 24 * 60 * 60 * 1000),
    ("hour", 60 * 60 * 1000),
    ("minute", 60 * 1000),
    ("second", 1000),
)


@dataclass(frozen=True)
class AlertContext:
    """What a transport needs to know about the alert being delivered."""

    name: str
    offset_ms: int
    # The occurrence being alerted; a recurring reminder's ``date`` is only its anchor.
    event_time: datetime | None = None

    @classmethod
    def for_alert(cls, alert: Alert, event_time: datetime | None = None) -> AlertContext:
        return cls(
            name=format_alert_name(alert.offset_ms),
            offset_ms=alert.offset_ms,
            event_time=event_time,
        )


def format_alert_name(offset_ms: int) -> str:
    """Render an alert offset as e.g. ``"30 minutes before"`` or ``"At event time"``."""
    if offset_ms <= 0:
        return "At event time"
    for unit, size in _UNITS:
        if offset_ms >= size:
            count = offset_ms // size
            return f"{count} {unit}{'s' if count != 1 else ''} before"
    return "At event time"


def alert_time_for(event_time: datetime, alert: Alert) -> datetime:
    return event_time - timedelta(milliseconds=max(alert.offset_ms, 0))


def has_already_alerted_for_event(reminder: Reminder, alert_time: datetime) -> bool:
    """True when a recurring reminder has already fired for this alert instant.

    One-time reminders are never considered here; their single firing is
    handled by deactivation.
    """
    if not reminder.is_recurring or reminder.last_alert_time is None:
        return False
    return reminder.last_alert_time >= alert_time


def select_firing_alert(
    reminder: Reminder,
    event_time: datetime,
    now: datetime,
    evaluation_window_ms: int,
    stale_threshold_ms: int = STALE_THRESHOLD_MS,
) -> Alert | None:
    """Return the first alert in list order that is due now, or ``None``.

    An alert is due once its instant has passed and for less than
    ``stale_threshold_ms`` afterwards. At most one alert is returned per call.
    """
    threshold = timedelta(milliseconds=stale_threshold_ms)
    window = timedelta(milliseconds=evaluation_window_ms)
    for alert in reminder.alerts:
        alert_time = alert_time_for(event_time, alert)
        diff = now - alert_time
        if timedelta(0) <= diff < threshold:
            if has_already_alerted_for_event(reminder, alert_time):
                continue
            return alert
        if -window <= diff < timedelta(0):
            logger.debug(
                "Alert %s of reminder %s due in %.1fs",
                alert.id,
                reminder.id,
                -diff.total_seconds(),
            )
    return None
