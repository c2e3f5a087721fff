from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from days import format_day
from models import Account, SlotBooking


class CamelModel(BaseModel):
    """camelCase on the wire; snake_case field names are accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# Requests


class InitDataRequest(CamelModel):
    init_data: Optional[str] = None


class BookingCreate(CamelModel):
    date: str
    hours: List[str]
    band_name: Optional[str] = None
    session_kind: Optional[str] = None


class BookingCancel(CamelModel):
    date: str
    hours: List[str]


class RoleUpdate(CamelModel):
    role: str


# Responses


class SlotBookingOut(CamelModel):
    hour: str
    account_id: int
    display_name: str
    avatar_url: Optional[str] = None
    band_name: Optional[str] = None
    session_kind: str


class LedgerOut(CamelModel):
    date: str
    hours: List[SlotBookingOut]

    @classmethod
    def build(cls, day, bookings: List[SlotBooking]) -> "LedgerOut":
        return cls(date=format_day(day), hours=[SlotBookingOut.model_validate(b) for b in bookings])


class CancellationOut(CamelModel):
    message: str
    ledger_deleted: bool = False
    ledger: Optional[LedgerOut] = None


class HoursOut(CamelModel):
    hours: List[SlotBookingOut]


class TimetableOut(CamelModel):
    result: List[str]


class AccountOut(CamelModel):
    id: Optional[int] = None
    telegram_id: int
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None
    role: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_registered: bool = True

    @classmethod
    def from_account(cls, account: Account) -> "AccountOut":
        return cls.model_validate(account)


class AuthResponse(CamelModel):
    valid: bool = True
    token: Optional[str] = None
    user: AccountOut


class MessageOut(CamelModel):
    message: str


# Telegram webhook updates, snake_case as the Bot API sends them


class TelegramChat(BaseModel):
    id: int


class TelegramMessage(BaseModel):
    chat: TelegramChat
    text: Optional[str] = None


class TelegramUpdate(BaseModel):
    update_id: int
    message: Optional[TelegramMessage] = None
