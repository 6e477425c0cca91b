"""Web Push transport (VAPID) delivering to every subscription of the reminder's owner."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pywebpush import WebPushException, webpush

from nudge.channels.base import BaseTransport
from nudge.channels.formatting import push_payload
from nudge.config import Settings
from nudge.core.alerts import AlertContext
from nudge.core.reminder import ContactMode, Reminder
from nudge.db.store import PushSubscriptionStore

logger = logging.getLogger(__name__)

PUSH_TTL_S = 60 * 60 * 24


class PushTransport(BaseTransport):
    mode = ContactMode.PUSH

    def __init__(
        self, settings: Settings, subscriptions: PushSubscriptionStore | None = None
    ) -> None:
        self.settings = settings
        self.subscriptions = subscriptions or PushSubscriptionStore()

    @property
    def configured(self) -> bool:
        return bool(self.settings.vapid_public_key and self.settings.vapid_private_key)

    async def send(self, address: str, reminder: Reminder, context: AlertContext) -> bool:
        # Push contacts target the reminder's owner; the address is a fallback user id.
        user_id = reminder.user_id or address
        if not self.configured:
            logger.warning("Push notifications not configured")
            return False
        if not user_id:
            logger.warning("Cannot send push for reminder %s without a user id", reminder.id)
            return False

        subs = await self.subscriptions.list_for_user(user_id)
        if not subs:
            logger.info("No push subscriptions for user %s", user_id)
            return False

        data = json.dumps(push_payload(reminder, context))
        sent = failed = 0
        loop = asyncio.get_running_loop()
        for sub in subs:
            outcome = await loop.run_in_executor(None, self._push, sub.subscription_info, data)
            if outcome == "sent":
                sent += 1
                await self.subscriptions.touch(sub.endpoint)
            else:
                failed += 1
                if outcome == "gone":
                    logger.info("Removing expired push subscription %s...", sub.endpoint[:50])
                    await self.subscriptions.delete_by_endpoint(sub.endpoint)

        logger.info("Push batch complete for user %s: sent=%d failed=%d", user_id, sent, failed)
        return sent > 0

    def _push(self, subscription_info: dict[str, Any], data: str) -> str:
        s = self.settings
        try:
            webpush(
                subscription_info=subscription_info,
                data=data,
                vapid_private_key=s.vapid_private_key,
                vapid_claims={"sub": s.vapid_subject},
                ttl=PUSH_TTL_S,
                headers={"Urgency": "high"},
                timeout=s.transport_timeout_s,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            logger.error("Failed to send push notification (status=%s): %s", status, exc)
            if status in (404, 410):
                return "gone"
            return "failed"
        return "sent"
