"""SQLAlchemy models package."""

from nudge.models.base import TimestampMixin
from nudge.models.preset import AlertPreset, ContactModePreset
from nudge.models.push_subscription import PushSubscription
from nudge.models.reminder import ReminderRecord

__all__ = [
    "TimestampMixin",
    "ReminderRecord",
    "AlertPreset",
    "ContactModePreset",
    "PushSubscription",
]
