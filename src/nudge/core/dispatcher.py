"""Notification dispatcher: fans one alert out to every contact of a reminder."""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from nudge.channels.base import BaseTransport
from nudge.core.alerts import AlertContext
from nudge.core.reminder import Contact, ContactMode, Reminder

logger = logging.getLogger(__name__)

# Accepted on reminders but no transport exists for them yet.
UNIMPLEMENTED_MODES = frozenset({ContactMode.SMS, ContactMode.CALL, ContactMode.ICAL})


class DeliveryStatus(enum.StrEnum):
    DELIVERED = "delivered"
    FAILED = "failed"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class DeliveryResult:
    contact_id: str
    mode: ContactMode
    status: DeliveryStatus
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


@dataclass
class DispatchReport:
    reminder_id: int
    alert_name: str
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def delivered(self) -> int:
        return sum(1 for r in self.results if r.delivered)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.status == DeliveryStatus.FAILED)


class NotificationDispatcher:
    def __init__(self, transports: Mapping[ContactMode, BaseTransport]) -> None:
        self.transports = dict(transports)

    async def dispatch(
        self, reminder: Reminder, context: AlertContext, contacts: Iterable[Contact]
    ) -> DispatchReport:
        """Send to each contact in order. Failures are recorded, never raised."""
        contacts = list(contacts)
        report = DispatchReport(reminder_id=reminder.id, alert_name=context.name)
        logger.info(
            "Sending notifications for reminder %s (%s) to %d contact(s): %s",
            reminder.id,
            context.name,
            len(contacts),
            ", ".join(c.mode for c in contacts),
        )
        for contact in contacts:
            report.results.append(await self._deliver(reminder, context, contact))
        return report

    async def _deliver(
        self, reminder: Reminder, context: AlertContext, contact: Contact
    ) -> DeliveryResult:
        transport = self.transports.get(contact.mode)
        if transport is None:
            if contact.mode in UNIMPLEMENTED_MODES:
                logger.warning(
                    "Notification mode %s not yet implemented (reminder %s)",
                    contact.mode,
                    reminder.id,
                )
            else:
                logger.warning(
                    "No transport configured for %s (reminder %s)", contact.mode, reminder.id
                )
            return DeliveryResult(contact.id, contact.mode, DeliveryStatus.UNSUPPORTED)

        try:
            ok = await transport.send(contact.address, reminder, context)
        except Exception as exc:
            logger.exception(
                "Failed to send %s notification for reminder %s", contact.mode, reminder.id
            )
            return DeliveryResult(contact.id, contact.mode, DeliveryStatus.FAILED, error=str(exc))

        if not ok:
            logger.warning(
                "%s transport reported failure for reminder %s", contact.mode, reminder.id
            )
            return DeliveryResult(
                contact.id, contact.mode, DeliveryStatus.FAILED, error="transport returned failure"
            )
        return DeliveryResult(contact.id, contact.mode, DeliveryStatus.DELIVERED)

    async def close(self) -> None:
        for transport in self.transports.values():
            try:
                await transport.close()
            except Exception as exc:
                logger.warning("Closing %s transport failed: %s", transport.mode, exc)
