from __future__ import annotations

import calendar
from datetime import date, datetime
from typing import Iterable

from errors import ValidationError
from models import HOUR_CATALOG, SessionKind

DAY_FORMAT = "%d/%m/%Y"


def parse_day(value: str | date | datetime) -> date:
    """Normalize a DD/MM/YYYY string (or a date) to its calendar day."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Invalid date format. Please use DD/MM/YYYY.")
    try:
        return datetime.strptime(value.strip(), DAY_FORMAT).date()
    except ValueError as e:
        raise ValidationError("Invalid date format. Please use DD/MM/YYYY.") from e


def format_day(day: date) -> str:
    return day.strftime(DAY_FORMAT)


def month_bounds(anchor: date) -> tuple[date, date]:
    last = calendar.monthrange(anchor.year, anchor.month)[1]
    return anchor.replace(day=1), anchor.replace(day=last)


def normalize_hours(hours: Iterable[str] | None) -> list[str]:
    """Deduplicate requested hours and return them in catalog order.

    Raises ValidationError for an empty request or a label outside the catalog.
    """
    if hours is None or isinstance(hours, str):
        raise ValidationError("Missing or invalid hours.")
    requested = set(hours)
    if not requested:
        raise ValidationError("Missing or invalid hours.")
    unknown = sorted(str(h) for h in requested if h not in HOUR_CATALOG)
    if unknown:
        raise ValidationError(f"Unknown hours: {', '.join(unknown)}")
    return [h for h in HOUR_CATALOG if h in requested]


def catalog_position(hour: str) -> int:
    return HOUR_CATALOG.index(hour)


def normalize_session_kind(value: str | SessionKind | None) -> str:
    if value is None:
        return SessionKind.REHEARSAL.value
    try:
        return SessionKind(value).value
    except ValueError as e:
        allowed = ", ".join(k.value for k in SessionKind)
        raise ValidationError(f"Invalid session kind {value!r}. Expected one of: {allowed}") from e


def normalize_band_name(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None
