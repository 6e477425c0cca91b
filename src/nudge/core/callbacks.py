"""Webhook-mode callbacks: inbound alert triggers and outbound delayed registration."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from nudge.core.alerts import alert_time_for
from nudge.core.recurrence import next_occurrence
from nudge.core.reminder import Reminder, as_utc

logger = logging.getLogger(__name__)

FIRE_ALERT_TASK = "nudge.queue.workers.fire_reminder_alert"


@dataclass(frozen=True)
class AlertTrigger:
    """One delayed callback arriving for a reminder alert."""

    reminder_id: int
    alert_id: str | None = None
    alert_time: datetime | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> AlertTrigger:
        """Parse ``{"reminderId", "alertId"?, "alertTime"?}``; raises ValueError if unusable."""
        if not isinstance(payload, Mapping):
            raise ValueError("Trigger payload must be an object")
        raw_id = payload.get("reminderId")
        if raw_id is None or isinstance(raw_id, bool):
            raise ValueError("Trigger payload is missing reminderId")
        try:
            reminder_id = int(raw_id)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid reminderId: {raw_id!r}") from None

        alert_id = payload.get("alertId")
        raw_time = payload.get("alertTime")
        if not alert_id and not raw_time:
            raise ValueError("Trigger payload needs alertId or alertTime")

        alert_time = None
        if raw_time:
            if isinstance(raw_time, datetime):
                alert_time = as_utc(raw_time)
            else:
                try:
                    alert_time = as_utc(datetime.fromisoformat(str(raw_time).replace("Z", "+00:00")))
                except ValueError:
                    raise ValueError(f"Invalid alertTime: {raw_time!r}") from None
        return cls(reminder_id=reminder_id, alert_id=str(alert_id) if alert_id else None, alert_time=alert_time)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"reminderId": self.reminder_id}
        if self.alert_id:
            payload["alertId"] = self.alert_id
        if self.alert_time:
            payload["alertTime"] = self.alert_time.isoformat()
        return payload


@dataclass(frozen=True)
class CallbackConfirmation:
    success: bool
    reminder_id: int
    alert_id: str
    fire_at: datetime
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PlannedCallback:
    alert_id: str
    fire_at: datetime


class CallbackScheduler(ABC):
    """Registers a delayed callback that comes back as an AlertTrigger."""

    @abstractmethod
    def schedule_callback(
        self, reminder_id: int, alert_id: str, fire_at: datetime
    ) -> CallbackConfirmation: ...

    @abstractmethod
    def cancel(self, message_id: str) -> bool: ...


class CeleryCallbackScheduler(CallbackScheduler):
    """Delayed callbacks as Celery tasks enqueued with an ``eta``."""

    def __init__(self, app: Any = None, queue: str = "alerts") -> None:
        self._app = app
        self.queue = queue

    @property
    def app(self) -> Any:
        if self._app is None:
            from nudge.queue.celery_app import celery_app

            self._app = celery_app
        return self._app

    def schedule_callback(
        self, reminder_id: int, alert_id: str, fire_at: datetime
    ) -> CallbackConfirmation:
        fire_at = as_utc(fire_at)
        payload = AlertTrigger(reminder_id, alert_id, fire_at).to_payload()
        try:
            result = self.app.send_task(
                FIRE_ALERT_TASK, kwargs={"payload": payload}, eta=fire_at, queue=self.queue
            )
        except Exception as exc:
            logger.error(
                "Failed to schedule alert %s for reminder %s: %s", alert_id, reminder_id, exc
            )
            return CallbackConfirmation(False, reminder_id, alert_id, fire_at, error=str(exc))
        logger.info(
            "Scheduled alert %s for reminder %s at %s (task %s)",
            alert_id,
            reminder_id,
            fire_at.isoformat(),
            result.id,
        )
        return CallbackConfirmation(True, reminder_id, alert_id, fire_at, message_id=result.id)

    def cancel(self, message_id: str) -> bool:
        try:
            self.app.control.revoke(message_id)
        except Exception as exc:
            logger.error("Failed to cancel callback %s: %s", message_id, exc)
            return False
        return True


def plan_callbacks(
    reminder: Reminder,
    now: datetime,
    *,
    stale_threshold_ms: int,
    timezone: str = "UTC",
) -> list[PlannedCallback]:
    """One callback per alert for the reminder's upcoming event.

    A recurring alert whose instant is already past moves to the following
    occurrence; a one-time alert that is already stale is dropped.
    """
    if not reminder.is_active:
        return []
    planned: list[PlannedCallback] = []
    if reminder.is_recurring and reminder.recurrence:
        event_time = next_occurrence(reminder.recurrence, now, timezone)
        for alert in reminder.alerts:
            fire_at = alert_time_for(event_time, alert)
            if fire_at <= now:
                fire_at = alert_time_for(next_occurrence(reminder.recurrence, event_time, timezone), alert)
            if reminder.end_date is not None and fire_at + timedelta(milliseconds=alert.offset_ms) > reminder.end_date:
                continue
            planned.append(PlannedCallback(alert.id, fire_at))
        return planned

    threshold = timedelta(milliseconds=stale_threshold_ms)
    for alert in reminder.alerts:
        fire_at = alert_time_for(reminder.date, alert)
        if now - fire_at >= threshold:
            logger.debug("Skipping stale alert %s of reminder %s", alert.id, reminder.id)
            continue
        planned.append(PlannedCallback(alert.id, fire_at))
    return planned
