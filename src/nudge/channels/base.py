"""BaseTransport interface and transport registry construction."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from nudge.core.reminder import ContactMode

if TYPE_CHECKING:
    from nudge.config import Settings
    from nudge.core.alerts import AlertContext
    from nudge.core.reminder import Reminder

logger = logging.getLogger(__name__)


class BaseTransport(ABC):
    """Abstract base for all outbound notification transports."""

    mode: ContactMode

    @abstractmethod
    async def send(self, address: str, reminder: Reminder, context: AlertContext) -> bool:
        """Deliver one notification. Return False on delivery failure instead of raising."""
        ...

    async def health_check(self) -> bool:
        """Return True if the transport is usable.

        Subclasses should override with platform-specific checks.
        """
        return True

    async def close(self) -> None:
        return None


def build_transports(settings: Settings) -> dict[ContactMode, BaseTransport]:
    """Instantiate every configured transport, keyed by the contact mode it serves."""
    transports: dict[ContactMode, BaseTransport] = {}

    if settings.email_smtp_host:
        from nudge.channels.email import EmailTransport

        transports[ContactMode.EMAIL] = EmailTransport(settings)

    if settings.telegram_bot_token:
        from nudge.channels.telegram import TelegramTransport

        transports[ContactMode.TELEGRAM] = TelegramTransport(settings)

    if settings.vapid_public_key and settings.vapid_private_key:
        from nudge.channels.push import PushTransport

        transports[ContactMode.PUSH] = PushTransport(settings)
    else:
        logger.warning("VAPID keys not configured - push notifications disabled")

    logger.debug("Configured transports: %s", ", ".join(sorted(transports)) or "none")
    return transports
