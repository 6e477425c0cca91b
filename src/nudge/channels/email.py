"""Email transport (SMTP send)."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText

from nudge.channels.base import BaseTransport
from nudge.channels.formatting import email_subject, plain_text
from nudge.config import Settings
from nudge.core.alerts import AlertContext
from nudge.core.reminder import ContactMode, Reminder

logger = logging.getLogger(__name__)


class EmailTransport(BaseTransport):
    mode = ContactMode.EMAIL

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def send(self, address: str, reminder: Reminder, context: AlertContext) -> bool:
        s = self.settings
        if not s.email_smtp_host:
            logger.warning("Email transport not configured")
            return False

        msg = MIMEText(plain_text(reminder, context))
        msg["Subject"] = email_subject(reminder, context)
        msg["From"] = self._sender
        msg["To"] = address

        try:
            await asyncio.get_running_loop().run_in_executor(None, self._smtp_send, msg, address)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email to %s failed for reminder %s: %s", address, reminder.id, exc)
            return False
        logger.info("Email sent to %s for reminder %s", address, reminder.id)
        return True

    @property
    def _sender(self) -> str:
        return self.settings.email_from or self.settings.email_username or "no-reply@localhost"

    def _smtp_send(self, msg: MIMEText, to: str) -> None:
        s = self.settings
        with smtplib.SMTP(s.email_smtp_host, s.email_smtp_port, timeout=s.transport_timeout_s) as server:
            server.starttls()
            if s.email_username:
                server.login(s.email_username, s.email_password or "")
            server.sendmail(self._sender, to, msg.as_string())
