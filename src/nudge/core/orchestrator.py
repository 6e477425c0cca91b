"""Reminder scheduler: polling cycles, webhook callbacks and stale cleanup.

Both invocation models go through the same pure decisions (event-time
resolution, deactivation, alert selection) so a reminder reaches the same
verdict whichever path evaluates it. Every state change for one reminder
happens under its lock, after re-reading the row.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from nudge.core.alerts import (
    STALE_THRESHOLD_MS,
    AlertContext,
    alert_time_for,
    has_already_alerted_for_event,
    select_firing_alert,
)
from nudge.core.callbacks import (
    AlertTrigger,
    CallbackConfirmation,
    CallbackScheduler,
    plan_callbacks,
)
from nudge.core.clock import Clock, SystemClock
from nudge.core.deactivation import DeactivationDecision, evaluate_deactivation
from nudge.core.dispatcher import DispatchReport, NotificationDispatcher
from nudge.core.locks import LocalLockRegistry, LockRegistry
from nudge.core.recurrence import InvalidRecurrenceExpression, next_occurrence
from nudge.core.reminder import Alert, Reminder
from nudge.core.resolver import resolve_event_time

if TYPE_CHECKING:
    from nudge.config import Settings
    from nudge.db.store import ReminderStore

logger = logging.getLogger(__name__)


class OutcomeStatus(enum.StrEnum):
    FIRED = "fired"
    DEACTIVATED = "deactivated"
    IDLE = "idle"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReminderOutcome:
    reminder_id: int
    status: OutcomeStatus
    reason: str | None = None
    alert_id: str | None = None
    deliveries: DispatchReport | None = None
    error: str | None = None
    persisted: bool = True
    deactivated: bool = False


@dataclass
class CycleReport:
    started_at: datetime
    overlapped: bool = False
    error: str | None = None
    outcomes: list[ReminderOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def fired(self) -> int:
        return self.count(OutcomeStatus.FIRED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeStatus.FAILED)

    @property
    def deactivated(self) -> int:
        return sum(1 for o in self.outcomes if o.deactivated)


@dataclass
class CleanupReport:
    checked: int = 0
    deactivated: int = 0
    failed: int = 0


@dataclass(frozen=True)
class Plan:
    """What one evaluation decided for a reminder, before any side effect."""

    reminder: Reminder
    event_time: datetime | None = None
    deactivation: DeactivationDecision | None = None
    alert: Alert | None = None
    skip_reason: str | None = None

    @property
    def should_deactivate(self) -> bool:
        return self.deactivation is not None and self.deactivation.should_deactivate

    @property
    def mutates(self) -> bool:
        return self.should_deactivate or self.alert is not None


class ReminderScheduler:
    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        clock: Clock | None = None,
        *,
        interval_ms: int = 3000,
        stale_threshold_ms: int = STALE_THRESHOLD_MS,
        timezone: str = "UTC",
        locks: LockRegistry | None = None,
        callbacks: CallbackScheduler | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.interval_ms = interval_ms
        self.stale_threshold_ms = stale_threshold_ms
        self.timezone = timezone
        self.locks = locks or LocalLockRegistry()
        self.callbacks = callbacks
        self._cycle_lock = asyncio.Lock()

    # ── Pure evaluation ──────────────────────────────────────────────────────

    def plan(self, reminder: Reminder, now: datetime) -> Plan:
        if not reminder.is_active:
            return Plan(reminder, skip_reason="reminder inactive")
        if not reminder.alerts:
            return Plan(reminder, skip_reason="no alerts")
        event_time = resolve_event_time(reminder, now, self.timezone)
        if event_time is None:
            return Plan(reminder, skip_reason="unresolvable recurrence")
        decision = evaluate_deactivation(reminder, event_time, now, self.stale_threshold_ms)
        if decision.should_deactivate:
            return Plan(reminder, event_time, deactivation=decision)
        alert = select_firing_alert(
            reminder, event_time, now, self.interval_ms, self.stale_threshold_ms
        )
        return Plan(reminder, event_time, deactivation=decision, alert=alert)

    def evaluate(self, reminder: Reminder, now: datetime | None = None) -> Plan:
        return self.plan(reminder, now or self.clock.now())

    # ── Polling ──────────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleReport:
        """Evaluate every active reminder once. Overlapping calls return immediately."""
        if self._cycle_lock.locked():
            logger.debug("Previous reminder cycle still running, skipping")
            return CycleReport(started_at=self.clock.now(), overlapped=True)

        async with self._cycle_lock:
            now = self.clock.now()
            report = CycleReport(started_at=now)
            try:
                reminders = await self.store.find_active()
            except Exception as exc:
                logger.exception("Failed to load active reminders")
                report.error = str(exc)
                return report

            for reminder in reminders:
                report.outcomes.append(await self.process_reminder(reminder, now))

            if report.fired or report.deactivated or report.failed:
                logger.info(
                    "Reminder cycle: checked=%d fired=%d deactivated=%d failed=%d",
                    len(report.outcomes),
                    report.fired,
                    report.deactivated,
                    report.failed,
                )
            return report

    async def process_reminder(self, reminder: Reminder, now: datetime) -> ReminderOutcome:
        try:
            plan = self.plan(reminder, now)
            if not plan.mutates:
                return self._passive_outcome(plan)
            async with self.locks.hold(reminder.id):
                fresh = await self.store.find_by_id(reminder.id)
                if fresh is None:
                    return ReminderOutcome(reminder.id, OutcomeStatus.SKIPPED, "reminder not found")
                return await self._act(self.plan(fresh, now), now)
        except Exception as exc:
            logger.exception("Processing reminder %s failed", reminder.id)
            return ReminderOutcome(reminder.id, OutcomeStatus.FAILED, error=str(exc))

    def _passive_outcome(self, plan: Plan) -> ReminderOutcome:
        if plan.skip_reason:
            return ReminderOutcome(plan.reminder.id, OutcomeStatus.SKIPPED, plan.skip_reason)
        return ReminderOutcome(plan.reminder.id, OutcomeStatus.IDLE)

    async def _act(self, plan: Plan, now: datetime) -> ReminderOutcome:
        reminder = plan.reminder
        if plan.should_deactivate:
            reason = plan.deactivation.reason
            ok = await self._deactivate(reminder, reason)
            return ReminderOutcome(
                reminder.id,
                OutcomeStatus.DEACTIVATED,
                reason,
                persisted=ok,
                deactivated=ok,
            )
        if plan.alert is None:
            return self._passive_outcome(plan)
        return await self._fire(reminder, plan.alert, now, plan.event_time)

    async def _fire(
        self,
        reminder: Reminder,
        alert: Alert,
        now: datetime,
        event_time: datetime | None = None,
    ) -> ReminderOutcome:
        context = AlertContext.for_alert(alert, event_time)
        logger.info("Firing alert %s (%s) for reminder %s", alert.id, context.name, reminder.id)
        deliveries = await self.dispatcher.dispatch(reminder, context, reminder.contacts)
        persisted = await self._record_fired(reminder, now)
        return ReminderOutcome(
            reminder.id,
            OutcomeStatus.FIRED,
            context.name,
            alert_id=alert.id,
            deliveries=deliveries,
            persisted=persisted,
        )

    async def _record_fired(self, reminder: Reminder, instant: datetime) -> bool:
        if reminder.last_alert_time is not None and reminder.last_alert_time >= instant:
            logger.debug(
                "Not moving last_alert_time of reminder %s backward to %s",
                reminder.id,
                instant.isoformat(),
            )
            return True
        try:
            await self.store.update_last_alert_time(reminder.id, instant)
        except Exception as exc:
            logger.warning("Failed to persist last_alert_time for reminder %s: %s", reminder.id, exc)
            return False
        return True

    async def _deactivate(self, reminder: Reminder, reason: str | None) -> bool:
        try:
            await self.store.deactivate(reminder.id)
        except Exception as exc:
            logger.warning("Failed to deactivate reminder %s: %s", reminder.id, exc)
            return False
        logger.info("Deactivated reminder %s: %s", reminder.id, reason)
        return True

    # ── Webhook ──────────────────────────────────────────────────────────────

    async def handle_callback(self, trigger: AlertTrigger) -> ReminderOutcome:
        """Deliver one delayed alert callback. Storage read failures propagate."""
        now = self.clock.now()
        rid = trigger.reminder_id
        async with self.locks.hold(rid):
            reminder = await self.store.find_by_id(rid)
            if reminder is None:
                logger.warning("Reminder %s not found for callback", rid)
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "reminder not found")
            if not reminder.is_active:
                logger.info("Reminder %s is inactive, skipping callback", rid)
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "reminder inactive")

            try:
                matched = self._match_trigger(reminder, trigger, now)
            except InvalidRecurrenceExpression as exc:
                logger.warning("Reminder %s has an unusable recurrence: %s", rid, exc)
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "unresolvable recurrence")
            if matched is None:
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "alert not found")
            alert, alert_time = matched

            recurring = bool(reminder.is_recurring and reminder.recurrence)
            if recurring and has_already_alerted_for_event(reminder, alert_time):
                return ReminderOutcome(
                    rid, OutcomeStatus.SKIPPED, "already alerted for this occurrence", alert.id
                )
            if not recurring and reminder.last_alert_time is not None:
                ok = await self._deactivate(reminder, "already alerted")
                return ReminderOutcome(
                    rid, OutcomeStatus.SKIPPED, "already alerted", alert.id, deactivated=ok
                )

            # Same retirement rules as a polling cycle, checked before anything is sent.
            event_time = resolve_event_time(reminder, now, self.timezone)
            if event_time is None:
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "unresolvable recurrence", alert.id)
            decision = evaluate_deactivation(reminder, event_time, now, self.stale_threshold_ms)
            if decision.should_deactivate:
                ok = await self._deactivate(reminder, decision.reason)
                return ReminderOutcome(
                    rid,
                    OutcomeStatus.DEACTIVATED,
                    decision.reason,
                    alert.id,
                    persisted=ok,
                    deactivated=ok,
                )
            if not recurring and now - alert_time >= timedelta(milliseconds=self.stale_threshold_ms):
                logger.info("Alert %s of reminder %s is stale, not sending", alert.id, rid)
                return ReminderOutcome(rid, OutcomeStatus.SKIPPED, "stale alert", alert.id)

            outcome = await self._fire(
                reminder, alert, now, alert_time + timedelta(milliseconds=alert.offset_ms)
            )
            fired_at = max(now, reminder.last_alert_time or now)
            updated = reminder.model_copy(update={"last_alert_time": fired_at})

            event_time = resolve_event_time(updated, now, self.timezone)
            if event_time is not None:
                decision = evaluate_deactivation(updated, event_time, now, self.stale_threshold_ms)
                if decision.should_deactivate:
                    outcome.deactivated = await self._deactivate(updated, decision.reason)
                    if not outcome.deactivated:
                        outcome.persisted = False

            if recurring and not outcome.deactivated and self.callbacks is not None:
                self._rearm(updated, alert, alert_time)
            return outcome

    def _match_trigger(
        self, reminder: Reminder, trigger: AlertTrigger, now: datetime
    ) -> tuple[Alert, datetime] | None:
        """Find the alert a callback is for, and the instant it was meant to fire."""
        recurring = reminder.is_recurring and reminder.recurrence
        by_id = None
        if trigger.alert_id:
            by_id = next((a for a in reminder.alerts if a.id == trigger.alert_id), None)

        if by_id is not None:
            if trigger.alert_time is not None:
                return by_id, trigger.alert_time
            if not recurring:
                return by_id, alert_time_for(reminder.date, by_id)
            # Earliest occurrence whose alert instant is still inside the staleness window.
            earliest = now - timedelta(milliseconds=self.stale_threshold_ms)
            event_time = next_occurrence(
                reminder.recurrence,
                earliest + timedelta(milliseconds=by_id.offset_ms),
                self.timezone,
            )
            return by_id, alert_time_for(event_time, by_id)

        if trigger.alert_time is None:
            logger.warning("Alert %s not found on reminder %s", trigger.alert_id, reminder.id)
            return None

        if recurring:
            event_time = next_occurrence(
                reminder.recurrence, trigger.alert_time - timedelta(seconds=1), self.timezone
            )
        else:
            event_time = reminder.date
        offset_ms = max(int((event_time - trigger.alert_time).total_seconds() * 1000), 0)
        alert = next((a for a in reminder.alerts if a.offset_ms == offset_ms), None)
        if alert is None:
            alert = Alert(id=trigger.alert_id or f"adhoc-{offset_ms}", offset_ms=offset_ms)
        return alert, trigger.alert_time

    def _rearm(self, reminder: Reminder, alert: Alert, alert_time: datetime) -> CallbackConfirmation | None:
        event_time = alert_time + timedelta(milliseconds=alert.offset_ms)
        try:
            following = next_occurrence(reminder.recurrence, event_time, self.timezone)
        except InvalidRecurrenceExpression as exc:
            logger.warning("Cannot re-arm reminder %s: %s", reminder.id, exc)
            return None
        if reminder.end_date is not None and following > reminder.end_date:
            logger.info("Reminder %s has no occurrence left before end_date", reminder.id)
            return None
        return self.callbacks.schedule_callback(
            reminder.id, alert.id, alert_time_for(following, alert)
        )

    # ── Registration ─────────────────────────────────────────────────────────

    def register_callbacks(self, reminder: Reminder) -> list[CallbackConfirmation]:
        """Ask the callback scheduler for one delayed trigger per alert of the upcoming event."""
        if self.callbacks is None:
            raise RuntimeError("No callback scheduler configured")
        try:
            planned = plan_callbacks(
                reminder,
                self.clock.now(),
                stale_threshold_ms=self.stale_threshold_ms,
                timezone=self.timezone,
            )
        except InvalidRecurrenceExpression as exc:
            logger.warning("Cannot register callbacks for reminder %s: %s", reminder.id, exc)
            return []
        return [
            self.callbacks.schedule_callback(reminder.id, p.alert_id, p.fire_at) for p in planned
        ]

    # ── Cleanup ──────────────────────────────────────────────────────────────

    async def cleanup(self) -> CleanupReport:
        """Deactivate stale and exhausted reminders without firing anything."""
        now = self.clock.now()
        report = CleanupReport()
        for reminder in await self.store.find_active():
            report.checked += 1
            try:
                if await self._retire(reminder, now):
                    report.deactivated += 1
            except Exception:
                logger.exception("Cleanup of reminder %s failed", reminder.id)
                report.failed += 1
        logger.info(
            "Cleanup checked %d reminders, deactivated %d, failed %d",
            report.checked,
            report.deactivated,
            report.failed,
        )
        return report

    def _retirement(self, reminder: Reminder, now: datetime) -> DeactivationDecision | None:
        if not reminder.is_active:
            return None
        event_time = resolve_event_time(reminder, now, self.timezone)
        if event_time is None:
            return None
        decision = evaluate_deactivation(reminder, event_time, now, self.stale_threshold_ms)
        return decision if decision.should_deactivate else None

    async def _retire(self, reminder: Reminder, now: datetime) -> bool:
        if self._retirement(reminder, now) is None:
            return False
        async with self.locks.hold(reminder.id):
            fresh = await self.store.find_by_id(reminder.id)
            decision = self._retirement(fresh, now) if fresh is not None else None
            if decision is None:
                return False
            return await self._deactivate(fresh, decision.reason)

    async def close(self) -> None:
        await self.dispatcher.close()
        await self.locks.close()


def build_scheduler(settings: Settings | None = None) -> ReminderScheduler:
    """Wire the production scheduler from settings."""
    from nudge.channels.base import build_transports
    from nudge.config import get_settings
    from nudge.db.store import SqlReminderStore

    settings = settings or get_settings()

    locks: LockRegistry
    # Webhook callbacks run in separate Celery processes; only Redis locks span them.
    if settings.reminder_lock_backend == "redis" or settings.scheduler_mode == "webhook":
        from nudge.core.locks import RedisLockRegistry

        locks = RedisLockRegistry.from_url(settings.redis_url, settings.reminder_lock_timeout_s)
    else:
        locks = LocalLockRegistry()

    callbacks = None
    if settings.scheduler_mode == "webhook":
        from nudge.core.callbacks import CeleryCallbackScheduler

        callbacks = CeleryCallbackScheduler(queue=settings.callback_queue)

    return ReminderScheduler(
        SqlReminderStore(),
        NotificationDispatcher(build_transports(settings)),
        SystemClock(),
        interval_ms=settings.scheduler_interval_ms,
        stale_threshold_ms=settings.stale_threshold_ms,
        timezone=settings.recurrence_timezone,
        locks=locks,
        callbacks=callbacks,
    )
