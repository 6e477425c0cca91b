"""Tests for event resolution, alert selection and deactivation rules."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from nudge.core.alerts import (
    AlertContext,
    format_alert_name,
    has_already_alerted_for_event,
    select_firing_alert,
)
from nudge.core.deactivation import (
    evaluate_deactivation,
    evaluate_one_time,
    evaluate_recurring,
)
from nudge.core.reminder import Alert, Reminder
from nudge.core.resolver import resolve_event_time

T = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
HOUR_MS = 3_600_000
WINDOW_MS = 3000


def make_reminder(**kwargs) -> Reminder:
    data = {
        "id": 1,
        "title": "Dentist",
        "date": T + timedelta(hours=1),
        "alerts": [{"id": "a1", "offset_ms": 1_800_000}],
    }
    data.update(kwargs)
    return Reminder(**data)


def recurring(**kwargs) -> Reminder:
    data = {
        "is_recurring": True,
        "recurrence": "0 13 * * *",
        "start_date": T - timedelta(days=1),
        "date": T - timedelta(days=1),
    }
    data.update(kwargs)
    return make_reminder(**data)


# ── Scenarios ─────────────────────────────────────────────────────────────────


def test_scenario_a_alert_due_exactly_now():
    reminder = make_reminder()
    now = T + timedelta(minutes=30)
    event_time = resolve_event_time(reminder, now)
    alert = select_firing_alert(reminder, event_time, now, WINDOW_MS)
    assert alert is not None
    assert alert.id == "a1"


def test_scenario_b_one_time_deactivates_after_firing():
    reminder = make_reminder(last_alert_time=T + timedelta(minutes=30))
    decision = evaluate_one_time(reminder, T + timedelta(minutes=30, seconds=3))
    assert decision.should_deactivate is True
    assert decision.reason == "already alerted"


def test_scenario_c_recurrence_exhausted():
    reminder = recurring(recurrence="0 9 * * 1-5", end_date=T + timedelta(days=7))
    decision = evaluate_recurring(reminder, T + timedelta(days=8))
    assert decision.should_deactivate is True
    assert "end_date" in decision.reason


def test_scenario_d_invalid_cron_resolves_to_none():
    reminder = recurring(recurrence="not a cron")
    assert resolve_event_time(reminder, T) is None


def test_scenario_e_only_the_due_alert_is_selected():
    reminder = make_reminder(
        alerts=[{"id": "hour", "offset_ms": HOUR_MS}, {"id": "half", "offset_ms": 1_800_000}]
    )
    now = T + timedelta(minutes=30)
    alert = select_firing_alert(reminder, T + timedelta(hours=1), now, WINDOW_MS)
    assert alert.id == "half"


# ── Event-time resolution ─────────────────────────────────────────────────────


def test_resolve_one_time_returns_date_even_when_past():
    reminder = make_reminder(date=T - timedelta(days=3))
    assert resolve_event_time(reminder, T) == T - timedelta(days=3)


def test_resolve_recurring_returns_next_occurrence_after_now():
    reminder = recurring()
    assert resolve_event_time(reminder, T) == T + timedelta(hours=1)
    assert resolve_event_time(reminder, T + timedelta(hours=1)) == T + timedelta(days=1, hours=1)


def test_resolve_recurring_flag_without_expression_uses_date():
    reminder = make_reminder(is_recurring=True, recurrence=None)
    assert resolve_event_time(reminder, T) == reminder.date


def test_resolve_then_select_round_trip():
    reminder = recurring()
    now = T + timedelta(minutes=30)
    event_time = resolve_event_time(reminder, now)
    alert = select_firing_alert(reminder, event_time, now, WINDOW_MS)
    assert event_time - timedelta(milliseconds=alert.offset_ms) == now


# ── Alert selection ───────────────────────────────────────────────────────────


def test_alert_not_yet_due():
    reminder = make_reminder()
    now = T + timedelta(minutes=29, seconds=59)
    assert select_firing_alert(reminder, reminder.date, now, WINDOW_MS) is None


def test_evaluation_window_does_not_widen_candidates():
    reminder = make_reminder()
    now = T + timedelta(minutes=30) - timedelta(milliseconds=1000)
    assert select_firing_alert(reminder, reminder.date, now, WINDOW_MS) is None


def test_alert_just_inside_stale_threshold():
    reminder = make_reminder()
    alert_time = T + timedelta(minutes=30)
    now = alert_time + timedelta(milliseconds=HOUR_MS - 1)
    assert select_firing_alert(reminder, reminder.date, now, WINDOW_MS) is not None


def test_alert_at_stale_threshold_is_not_a_candidate():
    reminder = make_reminder()
    now = T + timedelta(minutes=30) + timedelta(milliseconds=HOUR_MS)
    assert select_firing_alert(reminder, reminder.date, now, WINDOW_MS) is None


def test_at_most_one_alert_per_cycle_list_order_wins():
    reminder = make_reminder(
        alerts=[{"id": "first", "offset_ms": 1_800_000}, {"id": "second", "offset_ms": 1_200_000}]
    )
    now = T + timedelta(minutes=45)
    alert = select_firing_alert(reminder, reminder.date, now, WINDOW_MS)
    assert alert.id == "first"


def test_recurring_already_alerted_is_skipped():
    alert_time = T + timedelta(minutes=30)
    reminder = recurring(last_alert_time=alert_time)
    now = alert_time + timedelta(seconds=3)
    event_time = resolve_event_time(reminder, now)
    assert select_firing_alert(reminder, event_time, now, WINDOW_MS) is None


def test_recurring_fires_again_for_next_occurrence():
    reminder = recurring(last_alert_time=T + timedelta(minutes=30))
    now = T + timedelta(days=1, minutes=30)
    event_time = resolve_event_time(reminder, now)
    alert = select_firing_alert(reminder, event_time, now, WINDOW_MS)
    assert alert is not None


def test_skipped_alert_lets_next_candidate_fire():
    reminder = recurring(
        alerts=[{"id": "early", "offset_ms": 1_800_000}, {"id": "late", "offset_ms": 600_000}],
        last_alert_time=T + timedelta(minutes=30),
    )
    now = T + timedelta(minutes=50)
    event_time = resolve_event_time(reminder, now)
    alert = select_firing_alert(reminder, event_time, now, WINDOW_MS)
    assert alert.id == "late"


def test_has_already_alerted_only_for_recurring():
    one_time = make_reminder(last_alert_time=T + timedelta(hours=2))
    assert has_already_alerted_for_event(one_time, T) is False
    rec = recurring(last_alert_time=T)
    assert has_already_alerted_for_event(rec, T) is True
    assert has_already_alerted_for_event(rec, T + timedelta(milliseconds=1)) is False
    assert has_already_alerted_for_event(recurring(), T) is False


@pytest.mark.parametrize(
    "offset_ms, expected",
    [
        (0, "At event time"),
        (3000, "3 seconds before"),
        (1000, "1 second before"),
        (90_000, "1 minute before"),
        (1_800_000, "30 minutes before"),
        (3_600_000, "1 hour before"),
        (7_200_000, "2 hours before"),
        (172_800_000, "2 days before"),
        (500, "At event time"),
    ],
)
def test_format_alert_name(offset_ms, expected):
    assert format_alert_name(offset_ms) == expected


def test_alert_context_for_alert():
    ctx = AlertContext.for_alert(Alert(id="a", offset_ms=3_600_000))
    assert ctx == AlertContext(name="1 hour before", offset_ms=3_600_000)


# ── Deactivation ──────────────────────────────────────────────────────────────


def test_one_time_exactly_at_stale_threshold_is_kept():
    reminder = make_reminder()
    now = reminder.date + timedelta(milliseconds=HOUR_MS)
    assert evaluate_one_time(reminder, now).should_deactivate is False


def test_one_time_past_stale_threshold_deactivates():
    reminder = make_reminder()
    now = reminder.date + timedelta(milliseconds=HOUR_MS + 1)
    decision = evaluate_one_time(reminder, now)
    assert decision.should_deactivate is True
    assert decision.reason == "stale: missed by 3600 seconds"


def test_one_time_custom_threshold():
    reminder = make_reminder()
    now = reminder.date + timedelta(minutes=2)
    assert evaluate_one_time(reminder, now, stale_threshold_ms=60_000).should_deactivate is True


def test_recurring_next_equal_to_end_date_is_kept():
    end = T + timedelta(days=7)
    reminder = recurring(end_date=end)
    assert evaluate_recurring(reminder, end).should_deactivate is False


def test_recurring_without_end_date_is_kept():
    assert evaluate_recurring(recurring(), T + timedelta(days=3650)).should_deactivate is False


def test_evaluate_deactivation_routes_recurring():
    reminder = recurring(end_date=T, last_alert_time=T)
    decision = evaluate_deactivation(reminder, T + timedelta(hours=1), T)
    assert decision.reason == "next occurrence exceeds end_date"


def test_evaluate_deactivation_routes_one_time():
    reminder = make_reminder(last_alert_time=T)
    decision = evaluate_deactivation(reminder, reminder.date, T)
    assert decision.reason == "already alerted"
