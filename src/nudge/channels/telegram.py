"""Telegram transport using the Bot API ``sendMessage`` method."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from nudge.channels.base import BaseTransport
from nudge.channels.formatting import telegram_markdown
from nudge.config import Settings
from nudge.core.alerts import AlertContext
from nudge.core.reminder import ContactMode, Reminder

logger = logging.getLogger(__name__)


class TelegramTransport(BaseTransport):
    mode = ContactMode.TELEGRAM

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _url(self, method: str) -> str:
        s = self.settings
        return f"{s.telegram_api_base.rstrip('/')}/bot{s.telegram_bot_token}/{method}"

    async def send(self, address: str, reminder: Reminder, context: AlertContext) -> bool:
        return await self.send_message(address, telegram_markdown(reminder, context))

    async def send_message(
        self, chat_id: str, text: str, parse_mode: str | None = "MarkdownV2"
    ) -> bool:
        if not self.settings.telegram_bot_token:
            logger.error("Telegram bot token not configured")
            return False

        body: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            body["parse_mode"] = parse_mode

        try:
            async with httpx.AsyncClient(timeout=self.settings.transport_timeout_s) as client:
                resp = await client.post(self._url("sendMessage"), json=body)
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Error sending Telegram message to %s: %s", chat_id, exc)
            return False

        if data.get("ok"):
            logger.info(
                "Telegram message sent to %s (message_id=%s)",
                chat_id,
                (data.get("result") or {}).get("message_id"),
            )
            return True

        code = data.get("error_code")
        description = data.get("description") or ""
        logger.error("Failed to send Telegram message to %s: %s %s", chat_id, code, description)
        if code == 403:
            logger.warning("Bot was blocked by user %s", chat_id)
        elif code == 400 and "chat not found" in description:
            logger.warning("Chat %s not found - user needs to start the bot first", chat_id)
        return False

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.settings.transport_timeout_s) as client:
                resp = await client.get(self._url("getMe"))
                return bool(resp.json().get("ok"))
        except (httpx.HTTPError, ValueError):
            return False
