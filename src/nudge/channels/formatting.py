"""Message bodies for each transport."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from nudge.core.alerts import AlertContext
from nudge.core.reminder import Reminder

_MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown(text: str) -> str:
    """Escape Telegram MarkdownV2 control characters."""
    return _MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)


def _when(reminder: Reminder, context: AlertContext) -> datetime:
    return context.event_time or reminder.date


def _long_date(when: datetime) -> str:
    return when.strftime("%A, %B %d, %Y")


def _short_date(when: datetime) -> str:
    return when.strftime("%a, %b %d")


def _time(when: datetime) -> str:
    return when.strftime("%H:%M UTC")


def email_subject(reminder: Reminder, context: AlertContext) -> str:
    return f"Reminder: {reminder.title} ({context.name})"


def plain_text(reminder: Reminder, context: AlertContext) -> str:
    when = _when(reminder, context)
    lines = [
        reminder.title,
        "",
        context.name,
        f"When: {_long_date(when)} at {_time(when)}",
    ]
    if reminder.location:
        lines.append(f"Where: {reminder.location}")
    if reminder.is_recurring:
        lines.append("This is a recurring reminder.")
    if reminder.description:
        lines += ["", reminder.description]
    return "\n".join(lines)


def telegram_markdown(reminder: Reminder, context: AlertContext) -> str:
    when = _when(reminder, context)
    parts = [
        f"🔔 *{escape_markdown(reminder.title)}*",
        "",
        f"⏰ _{escape_markdown(context.name)}_",
        "",
        f"📅 {escape_markdown(_long_date(when))}",
        f"🕐 {escape_markdown(_time(when))}",
    ]
    if reminder.location:
        parts.append(f"📍 {escape_markdown(reminder.location)}")
    if reminder.is_recurring:
        parts.append("🔄 _Recurring reminder_")
    if reminder.description:
        parts += ["", escape_markdown("───────────────"), escape_markdown(reminder.description)]
    return "\n".join(parts)


def push_payload(reminder: Reminder, context: AlertContext) -> dict[str, Any]:
    when = _when(reminder, context)
    return {
        "title": reminder.title,
        "body": f"{context.name} - {_short_date(when)} at {_time(when)}",
        "icon": "/pwa-192x192.png",
        "badge": "/pwa-64x64.png",
        "tag": f"reminder-{reminder.id}",
        "data": {"url": f"/reminders/{reminder.id}", "reminderId": reminder.id},
        "actions": [
            {"action": "view", "title": "View"},
            {"action": "dismiss", "title": "Dismiss"},
        ],
    }
