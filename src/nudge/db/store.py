"""Reminder, preset and push-subscription stores."""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from sqlalchemy import delete as sa_delete
from sqlalchemy import or_, select
from sqlalchemy import update as sa_update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from nudge.core.reminder import (
    ContactMode,
    Reminder,
    ReminderCreate,
    ReminderUpdate,
    as_utc,
    check_schedule,
)
from nudge.db.repository import Repository
from nudge.models.preset import AlertPreset, ContactModePreset
from nudge.models.push_subscription import PushSubscription
from nudge.models.reminder import ReminderRecord

logger = logging.getLogger(__name__)

_SCHEDULE_FIELDS = ("is_recurring", "recurrence", "start_date")


def _db_time(value: datetime | None) -> datetime | None:
    """MySQL DATETIME columns hold naive UTC."""
    value = as_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _normalize_fields(fields: ReminderUpdate | Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(fields, ReminderUpdate):
        fields = fields.changes()
    return {key: _jsonable(value) for key, value in fields.items()}


def _to_reminder(record: ReminderRecord) -> Reminder:
    return Reminder.model_validate(record)


class ReminderStore(ABC):
    """Persistence the scheduler reads reminders from and writes firing state to."""

    @abstractmethod
    async def find_active(self) -> list[Reminder]: ...

    @abstractmethod
    async def find_by_id(self, reminder_id: int) -> Reminder | None: ...

    @abstractmethod
    async def update_last_alert_time(self, reminder_id: int, instant: datetime) -> bool:
        """Set ``last_alert_time`` unless the stored value is already at or past ``instant``."""
        ...

    @abstractmethod
    async def deactivate(self, reminder_id: int) -> bool: ...

    @abstractmethod
    async def update(
        self, reminder_id: int, fields: ReminderUpdate | Mapping[str, Any]
    ) -> bool: ...

    @abstractmethod
    async def create(self, data: ReminderCreate) -> Reminder: ...

    @abstractmethod
    async def delete(self, reminder_id: int) -> bool: ...


class SqlReminderStore(ReminderStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from nudge.db.session import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    async def find_active(self) -> list[Reminder]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ReminderRecord)
                .where(ReminderRecord.is_active.is_(True))
                .order_by(ReminderRecord.id)
            )
            return [_to_reminder(r) for r in result.scalars().all()]

    async def find_by_id(self, reminder_id: int) -> Reminder | None:
        async with self.session_factory() as session:
            record = await session.get(ReminderRecord, reminder_id)
            return _to_reminder(record) if record else None

    async def update_last_alert_time(self, reminder_id: int, instant: datetime) -> bool:
        stamp = _db_time(instant)
        async with self.session_factory() as session:
            result = await session.execute(
                sa_update(ReminderRecord)
                .where(
                    ReminderRecord.id == reminder_id,
                    or_(
                        ReminderRecord.last_alert_time.is_(None),
                        ReminderRecord.last_alert_time < stamp,
                    ),
                )
                .values(last_alert_time=stamp)
            )
            await session.commit()
            return bool(result.rowcount)

    async def deactivate(self, reminder_id: int) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sa_update(ReminderRecord)
                .where(ReminderRecord.id == reminder_id, ReminderRecord.is_active.is_(True))
                .values(is_active=False)
            )
            await session.commit()
            return bool(result.rowcount)

    async def update(self, reminder_id: int, fields: ReminderUpdate | Mapping[str, Any]) -> bool:
        values = _normalize_fields(fields)
        if not values:
            return False
        async with self.session_factory() as session:
            record = await session.get(ReminderRecord, reminder_id)
            if record is None:
                return False
            merged = {name: values.get(name, getattr(record, name)) for name in _SCHEDULE_FIELDS}
            check_schedule(merged["is_recurring"], merged["recurrence"], merged["start_date"])
            for key, value in values.items():
                if isinstance(value, datetime):
                    value = _db_time(value)
                setattr(record, key, value)
            await session.commit()
            return True

    async def create(self, data: ReminderCreate) -> Reminder:
        values = data.model_dump(mode="python")
        values["alerts"] = _jsonable(data.alerts)
        values["contacts"] = _jsonable(data.contacts)
        for key in ("date", "start_date", "end_date"):
            values[key] = _db_time(values[key])
        async with self.session_factory() as session:
            record = await Repository(ReminderRecord, session).create(**values)
            await session.commit()
            return _to_reminder(record)

    async def delete(self, reminder_id: int) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sa_delete(ReminderRecord).where(ReminderRecord.id == reminder_id)
            )
            await session.commit()
            return bool(result.rowcount)


class MemoryReminderStore(ReminderStore):
    """In-process store with the same write semantics as the SQL one."""

    def __init__(self, reminders: list[Reminder] | None = None) -> None:
        self._rows: dict[int, Reminder] = {}
        for reminder in reminders or []:
            self._rows[reminder.id] = reminder.model_copy(deep=True)
        self._ids = itertools.count(max(self._rows, default=0) + 1)

    async def find_active(self) -> list[Reminder]:
        return [r.model_copy(deep=True) for _, r in sorted(self._rows.items()) if r.is_active]

    async def find_by_id(self, reminder_id: int) -> Reminder | None:
        row = self._rows.get(reminder_id)
        return row.model_copy(deep=True) if row else None

    async def update_last_alert_time(self, reminder_id: int, instant: datetime) -> bool:
        row = self._rows.get(reminder_id)
        instant = as_utc(instant)
        if row is None or (row.last_alert_time is not None and row.last_alert_time >= instant):
            return False
        self._rows[reminder_id] = row.model_copy(update={"last_alert_time": instant})
        return True

    async def deactivate(self, reminder_id: int) -> bool:
        row = self._rows.get(reminder_id)
        if row is None or not row.is_active:
            return False
        self._rows[reminder_id] = row.model_copy(update={"is_active": False})
        return True

    async def update(self, reminder_id: int, fields: ReminderUpdate | Mapping[str, Any]) -> bool:
        row = self._rows.get(reminder_id)
        values = _normalize_fields(fields)
        if row is None or not values:
            return False
        merged = row.model_dump() | values
        check_schedule(merged["is_recurring"], merged["recurrence"], merged["start_date"])
        self._rows[reminder_id] = Reminder.model_validate(merged)
        return True

    async def create(self, data: ReminderCreate) -> Reminder:
        reminder = Reminder.model_validate({"id": next(self._ids), **data.model_dump()})
        self._rows[reminder.id] = reminder
        return reminder.model_copy(deep=True)

    async def delete(self, reminder_id: int) -> bool:
        return self._rows.pop(reminder_id, None) is not None


class PushSubscriptionStore:
    """Web Push endpoints per user."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from nudge.db.session import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    async def list_for_user(self, user_id: str) -> list[PushSubscription]:
        async with self.session_factory() as session:
            return await Repository(PushSubscription, session).list_by(user_id=user_id)

    async def subscribe(self, user_id: str, endpoint: str, p256dh: str, auth: str) -> PushSubscription:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                existing.user_id, existing.p256dh, existing.auth = user_id, p256dh, auth
                await session.commit()
                return existing
            sub = await Repository(PushSubscription, session).create(
                user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth
            )
            await session.commit()
            return sub

    async def touch(self, endpoint: str) -> None:
        async with self.session_factory() as session:
            await session.execute(
                sa_update(PushSubscription)
                .where(PushSubscription.endpoint == endpoint)
                .values(last_used_at=_db_time(datetime.now(UTC)))
            )
            await session.commit()

    async def delete_by_endpoint(self, endpoint: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                sa_delete(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            await session.commit()
            return bool(result.rowcount)


class PresetStore:
    """Alert and contact-mode presets scoped to their owner."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from nudge.db.session import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    async def list_alert_presets(self, user_id: str) -> list[AlertPreset]:
        async with self.session_factory() as session:
            repo = Repository(AlertPreset, session)
            return await repo.list_by(order_by=AlertPreset.offset_ms, user_id=user_id)

    async def create_alert_preset(self, user_id: str, name: str, offset_ms: int) -> AlertPreset:
        async with self.session_factory() as session:
            preset = await Repository(AlertPreset, session).create(
                user_id=user_id, name=name, offset_ms=offset_ms
            )
            await session.commit()
            return preset

    async def delete_alert_preset(self, user_id: str, preset_id: int) -> bool:
        return await self._delete_owned(AlertPreset, user_id, preset_id)

    async def list_contact_modes(self, user_id: str) -> list[ContactModePreset]:
        async with self.session_factory() as session:
            repo = Repository(ContactModePreset, session)
            return await repo.list_by(order_by=ContactModePreset.id, user_id=user_id)

    async def create_contact_mode(
        self, user_id: str, mode: ContactMode, address: str
    ) -> ContactModePreset:
        async with self.session_factory() as session:
            preset = await Repository(ContactModePreset, session).create(
                user_id=user_id, mode=ContactMode(mode), address=address
            )
            await session.commit()
            return preset

    async def delete_contact_mode(self, user_id: str, preset_id: int) -> bool:
        return await self._delete_owned(ContactModePreset, user_id, preset_id)

    async def _delete_owned(self, model: type, user_id: str, preset_id: int) -> bool:
        async with self.session_factory() as session:
            repo = Repository(model, session)
            obj = await repo.get(preset_id)
            if obj is None or obj.user_id != user_id:
                return False
            await repo.delete(obj)
            await session.commit()
            return True
