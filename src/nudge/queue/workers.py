"""Celery workers: delayed alert callbacks, callback registration and stale cleanup."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import shared_task

from nudge.core.callbacks import AlertTrigger
from nudge.db.session import reset_engine

logger = logging.getLogger(__name__)


async def _fire(trigger: AlertTrigger) -> dict[str, Any]:
    from nudge.core.orchestrator import build_scheduler

    reset_engine()
    scheduler = build_scheduler()
    try:
        outcome = await scheduler.handle_callback(trigger)
    finally:
        await scheduler.close()

    result: dict[str, Any] = {
        "status": outcome.status.value,
        "reminder_id": outcome.reminder_id,
        "alert_id": outcome.alert_id,
        "reason": outcome.reason,
        "deactivated": outcome.deactivated,
        "persisted": outcome.persisted,
    }
    if outcome.deliveries is not None:
        result["delivered"] = outcome.deliveries.delivered
        result["failed"] = outcome.deliveries.failed
    return result


async def _register(reminder_id: int) -> dict[str, Any]:
    from nudge.core.orchestrator import build_scheduler

    reset_engine()
    scheduler = build_scheduler()
    try:
        reminder = await scheduler.store.find_by_id(reminder_id)
        if reminder is None:
            return {"status": "not_found", "reminder_id": reminder_id}
        confirmations = scheduler.register_callbacks(reminder)
    finally:
        await scheduler.close()
    return {
        "status": "ok",
        "reminder_id": reminder_id,
        "scheduled": [c.message_id for c in confirmations if c.success],
        "errors": [c.error for c in confirmations if not c.success],
    }


async def _cleanup() -> dict[str, Any]:
    from nudge.core.orchestrator import build_scheduler

    reset_engine()
    scheduler = build_scheduler()
    try:
        report = await scheduler.cleanup()
    finally:
        await scheduler.close()
    return {
        "status": "ok",
        "checked": report.checked,
        "deactivated": report.deactivated,
        "failed": report.failed,
    }


@shared_task(bind=True, name="nudge.queue.workers.fire_reminder_alert", max_retries=3)
def fire_reminder_alert(self, payload: dict[str, Any]) -> dict[str, Any]:
    """Deliver one delayed alert callback for a reminder."""
    try:
        trigger = AlertTrigger.from_payload(payload)
    except ValueError as exc:
        logger.error("Invalid alert callback payload %r: %s", payload, exc)
        return {"status": "invalid", "error": str(exc)}

    logger.info("Processing alert callback for reminder %s", trigger.reminder_id)
    try:
        return asyncio.run(_fire(trigger))
    except Exception as exc:
        logger.exception("Alert callback for reminder %s failed: %s", trigger.reminder_id, exc)
        raise self.retry(exc=exc, countdown=2**self.request.retries) from exc


@shared_task(bind=True, name="nudge.queue.workers.register_reminder_callbacks", max_retries=3)
def register_reminder_callbacks(self, reminder_id: int) -> dict[str, Any]:
    """Schedule the delayed callbacks for a newly created or updated reminder."""
    try:
        return asyncio.run(_register(reminder_id))
    except Exception as exc:
        logger.exception("Registering callbacks for reminder %s failed: %s", reminder_id, exc)
        raise self.retry(exc=exc, countdown=2**self.request.retries) from exc


@shared_task(bind=True, name="nudge.queue.workers.cleanup_stale_reminders", max_retries=1)
def cleanup_stale_reminders(self) -> dict[str, Any]:
    """Deactivate stale one-time and exhausted recurring reminders."""
    logger.info("Running stale reminder cleanup")
    try:
        return asyncio.run(_cleanup())
    except Exception as exc:
        logger.exception("Stale reminder cleanup failed: %s", exc)
        raise self.retry(exc=exc, countdown=60) from exc
