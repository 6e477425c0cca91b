"""Reminder domain types, validated once at the boundary."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# Sub-3-second alerts are rejected on ingress; the core itself tolerates any offset >= 0.
MIN_ALERT_OFFSET_MS = 3000


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime. Naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ContactMode(enum.StrEnum):
    EMAIL = "email"
    SMS = "sms"
    CALL = "call"
    PUSH = "push"
    ICAL = "ical"
    TELEGRAM = "telegram"


class Alert(BaseModel):
    """Fire ``offset_ms`` milliseconds before the event instant."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    offset_ms: int = Field(ge=0, validation_alias=AliasChoices("offset_ms", "offsetMs", "time"))


class Contact(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    mode: ContactMode
    address: str


def _default_alerts() -> list[Alert]:
    return [Alert(id="alert-default", offset_ms=MIN_ALERT_OFFSET_MS)]


class Reminder(BaseModel):
    """A stored reminder as the scheduling core sees it."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    user_id: str = ""
    title: str
    description: str = ""
    location: str | None = None

    date: datetime
    is_recurring: bool = False
    recurrence: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    alerts: list[Alert] = Field(default_factory=list)
    last_alert_time: datetime | None = None
    is_active: bool = True

    contacts: list[Contact] = Field(
        default_factory=list, validation_alias=AliasChoices("contacts", "reminders")
    )

    @field_validator("date", "start_date", "end_date", "last_alert_time")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @field_validator("alerts", "contacts", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def __repr__(self) -> str:
        return f"<Reminder {self.title[:30]!r} id={self.id!r}>"


def check_schedule(is_recurring: bool, recurrence: str | None, start_date: Any) -> None:
    if not is_recurring:
        return
    if not recurrence or start_date is None:
        raise ValueError("Recurring reminders must have a recurrence expression and start_date")

    from nudge.core.recurrence import validate_cron_expression

    valid, err = validate_cron_expression(recurrence)
    if not valid:
        raise ValueError(err)


def _check_offsets(alerts: list[Alert] | None) -> None:
    for alert in alerts or []:
        if alert.offset_ms < MIN_ALERT_OFFSET_MS:
            raise ValueError(
                f"Alert {alert.id!r} must be at least {MIN_ALERT_OFFSET_MS} milliseconds"
            )


class ReminderCreate(BaseModel):
    """Ingress payload for a new reminder; defaults follow the public API."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = ""
    title: str
    description: str = ""
    location: str | None = None
    date: datetime
    is_recurring: bool = False
    recurrence: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    alerts: list[Alert] = Field(default_factory=_default_alerts)
    contacts: list[Contact] = Field(
        default_factory=list, validation_alias=AliasChoices("contacts", "reminders")
    )
    is_active: bool = True

    @field_validator("date", "start_date", "end_date")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def _validate_schedule(self) -> ReminderCreate:
        check_schedule(self.is_recurring, self.recurrence, self.start_date)
        _check_offsets(self.alerts)
        return self


class ReminderUpdate(BaseModel):
    """Partial update; only explicitly set fields are applied."""

    model_config = ConfigDict(populate_by_name=True)

    title: str | None = None
    description: str | None = None
    location: str | None = None
    date: datetime | None = None
    is_recurring: bool | None = None
    recurrence: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    alerts: list[Alert] | None = None
    contacts: list[Contact] | None = Field(
        default=None, validation_alias=AliasChoices("contacts", "reminders")
    )
    is_active: bool | None = None

    @field_validator("date", "start_date", "end_date")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def _validate_schedule(self) -> ReminderUpdate:
        # Recurring-ness is checked against the merged row by the store.
        if self.recurrence:
            from nudge.core.recurrence import validate_cron_expression

            valid, err = validate_cron_expression(self.recurrence)
            if not valid:
                raise ValueError(err)
        _check_offsets(self.alerts)
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
