"""Owner-scoped presets for alert offsets and contact targets."""

from sqlalchemy import Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from nudge.core.reminder import ContactMode
from nudge.db.session import Base
from nudge.models.base import TimestampMixin


class AlertPreset(Base, TimestampMixin):
    __tablename__ = "alert_presets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    offset_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<AlertPreset {self.name!r} offset_ms={self.offset_ms!r}>"


class ContactModePreset(Base, TimestampMixin):
    __tablename__ = "contact_modes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    mode: Mapped[ContactMode] = mapped_column(
        Enum(ContactMode, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    address: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<ContactModePreset mode={self.mode!r} address={self.address!r}>"
