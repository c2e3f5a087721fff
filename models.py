from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

# One label per starting hour, 12:00 to 23:00.
HOUR_CATALOG = tuple(f"{h:02d}:00" for h in range(12, 24))


class Role(str, Enum):
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"


class SessionKind(str, Enum):
    REHEARSAL = "rehearsal"
    RECORDING = "recording"
    SHOOT = "shoot"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(SQLModel, table=True):
    __tablename__ = "accounts"

    id: Optional[int] = Field(default=None, primary_key=True)
    telegram_id: int = Field(sa_column=Column(BigInteger, unique=True, index=True, nullable=False))
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    role: str = Field(default=Role.GUEST.value, max_length=16)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.username or self.first_name

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class DayLedger(SQLModel, table=True):
    __tablename__ = "day_ledgers"

    day: date = Field(primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)


class SlotBooking(SQLModel, table=True):
    __tablename__ = "slot_bookings"
    __table_args__ = (
        # CRITICAL: Database-level protection against double booking
        UniqueConstraint("day", "hour", name="unique_day_hour"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    day: date = Field(foreign_key="day_ledgers.day", index=True)
    hour: str = Field(max_length=5)

    # Snapshot of the author at booking time, never joined to live account data
    account_id: int = Field(index=True)
    display_name: str
    avatar_url: Optional[str] = None

    band_name: Optional[str] = None
    session_kind: str = Field(default=SessionKind.REHEARSAL.value, max_length=16)
    created_at: datetime = Field(default_factory=utcnow)
