"""Tests for nudge.core.callbacks (webhook-mode triggers and registration)."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from nudge.core.callbacks import (
    FIRE_ALERT_TASK,
    AlertTrigger,
    CeleryCallbackScheduler,
    PlannedCallback,
    plan_callbacks,
)
from nudge.core.reminder import Reminder

T = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
HOUR_MS = 3_600_000


def make_reminder(**kwargs) -> Reminder:
    data = {
        "id": 1,
        "title": "Dentist",
        "date": T + timedelta(hours=2),
        "alerts": [{"id": "a1", "offset_ms": HOUR_MS}],
    }
    data.update(kwargs)
    return Reminder(**data)


# ── AlertTrigger ──────────────────────────────────────────────────────────────


def test_trigger_from_payload_with_alert_id():
    trigger = AlertTrigger.from_payload({"reminderId": "12", "alertId": "a1"})
    assert trigger == AlertTrigger(reminder_id=12, alert_id="a1")


def test_trigger_from_payload_with_alert_time():
    trigger = AlertTrigger.from_payload({"reminderId": 3, "alertTime": "2026-03-02T12:00:00Z"})
    assert trigger.alert_time == T
    assert trigger.alert_id is None


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"alertId": "a1"},
        {"reminderId": "abc", "alertId": "a1"},
        {"reminderId": True, "alertId": "a1"},
        {"reminderId": 1},
        {"reminderId": 1, "alertTime": "yesterday"},
        ["reminderId", 1],
    ],
)
def test_trigger_from_payload_rejects(payload):
    with pytest.raises(ValueError):
        AlertTrigger.from_payload(payload)


def test_trigger_to_payload():
    trigger = AlertTrigger(reminder_id=5, alert_id="a1", alert_time=T)
    assert trigger.to_payload() == {
        "reminderId": 5,
        "alertId": "a1",
        "alertTime": "2026-03-02T12:00:00+00:00",
    }
    assert AlertTrigger(reminder_id=5).to_payload() == {"reminderId": 5}


# ── CeleryCallbackScheduler ───────────────────────────────────────────────────


def test_schedule_callback_sends_eta_task():
    app = MagicMock()
    app.send_task.return_value = MagicMock(id="task-1")
    scheduler = CeleryCallbackScheduler(app, queue="alerts")

    confirmation = scheduler.schedule_callback(1, "a1", T)

    assert confirmation.success is True
    assert confirmation.message_id == "task-1"
    app.send_task.assert_called_once_with(
        FIRE_ALERT_TASK,
        kwargs={"payload": {"reminderId": 1, "alertId": "a1", "alertTime": T.isoformat()}},
        eta=T,
        queue="alerts",
    )


def test_schedule_callback_failure_is_reported():
    app = MagicMock()
    app.send_task.side_effect = ConnectionError("broker down")
    confirmation = CeleryCallbackScheduler(app).schedule_callback(1, "a1", T)
    assert confirmation.success is False
    assert confirmation.error == "broker down"
    assert confirmation.message_id is None


def test_cancel_revokes_task():
    app = MagicMock()
    scheduler = CeleryCallbackScheduler(app)
    assert scheduler.cancel("task-1") is True
    app.control.revoke.assert_called_once_with("task-1")

    app.control.revoke.side_effect = RuntimeError("no broker")
    assert scheduler.cancel("task-2") is False


# ── plan_callbacks ────────────────────────────────────────────────────────────


def test_plan_one_time_alerts():
    reminder = make_reminder(
        alerts=[{"id": "hour", "offset_ms": HOUR_MS}, {"id": "soon", "offset_ms": 300_000}]
    )
    planned = plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS)
    assert planned == [
        PlannedCallback("hour", T + timedelta(hours=1)),
        PlannedCallback("soon", T + timedelta(hours=1, minutes=55)),
    ]


def test_plan_one_time_skips_stale_alerts():
    reminder = make_reminder(date=T - timedelta(hours=1), alerts=[{"id": "a1", "offset_ms": 3000}])
    assert plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS) == []


def test_plan_one_time_keeps_recently_past_alert():
    reminder = make_reminder(date=T, alerts=[{"id": "a1", "offset_ms": 60_000}])
    planned = plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS)
    assert planned == [PlannedCallback("a1", T - timedelta(minutes=1))]


def test_plan_inactive_reminder():
    assert plan_callbacks(make_reminder(is_active=False), T, stale_threshold_ms=HOUR_MS) == []


def test_plan_recurring_uses_next_occurrence():
    reminder = make_reminder(
        is_recurring=True,
        recurrence="0 14 * * *",
        start_date=T - timedelta(days=1),
        alerts=[{"id": "a1", "offset_ms": 1_800_000}],
    )
    planned = plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS)
    assert planned == [PlannedCallback("a1", T + timedelta(hours=1, minutes=30))]


def test_plan_recurring_past_alert_moves_to_following_occurrence():
    reminder = make_reminder(
        is_recurring=True,
        recurrence="30 12 * * *",
        start_date=T - timedelta(days=1),
        alerts=[{"id": "a1", "offset_ms": HOUR_MS}],
    )
    planned = plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS)
    assert planned == [PlannedCallback("a1", T + timedelta(days=1, minutes=-30))]


def test_plan_recurring_skips_alerts_past_end_date():
    reminder = make_reminder(
        is_recurring=True,
        recurrence="0 14 * * *",
        start_date=T - timedelta(days=1),
        end_date=T + timedelta(hours=1),
    )
    assert plan_callbacks(reminder, T, stale_threshold_ms=HOUR_MS) == []
