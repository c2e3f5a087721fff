"""
Reservation engine: booking and releasing catalog hours on the studio's
day ledgers.

Rules enforced here, independent of the HTTP layer:
- guests can neither book nor cancel, whatever they send;
- a multi-hour booking is all or nothing, and a conflict reports exactly the
  requested hours that are already taken;
- users cancel only their own bookings, admins cancel any;
- a ledger left without bookings is deleted in the same transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

import accounts
from days import month_bounds, normalize_band_name, normalize_hours, normalize_session_kind, parse_day
from errors import AuthorizationError, ConflictError, NotFoundError
from ledger_store import HoursTaken, LedgerInUse, LedgerStore
from models import Account, Role, SlotBooking
from notifier import Notifier

logger = logging.getLogger(__name__)


class StaleLedger(Exception):
    """The insert failed but none of the requested hours is booked; safe to retry."""


@dataclass(frozen=True)
class Ledger:
    day: date
    bookings: list[SlotBooking] = field(default_factory=list)

    @property
    def hours(self) -> list[str]:
        return [b.hour for b in self.bookings]


@dataclass(frozen=True)
class Cancellation:
    day: date
    removed: list[SlotBooking]
    ledger: Optional[Ledger]

    @property
    def ledger_deleted(self) -> bool:
        return self.ledger is None


class ReservationEngine:
    def __init__(self, session_factory: sessionmaker, notifier: Notifier, *, booking_attempts: int = 3):
        self._sessions = session_factory
        self._ledgers = LedgerStore(session_factory)
        self._notifier = notifier
        self._booking_attempts = booking_attempts

    async def book(
        self,
        day,
        hours,
        actor: Account,
        band_name: Optional[str] = None,
        session_kind: Optional[str] = None,
    ) -> Ledger:
        if actor.role == Role.GUEST.value:
            raise AuthorizationError("Guests cannot book rehearsals.")

        booking_day = parse_day(day)
        requested = normalize_hours(hours)
        kind = normalize_session_kind(session_kind)
        band = normalize_band_name(band_name)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._booking_attempts),
            retry=retry_if_exception_type(StaleLedger),
            reraise=True,
        ):
            with attempt:
                await self._append(booking_day, requested, actor, band, kind)

        logger.info("Account %s booked %s at %s", actor.id, booking_day.isoformat(), ",".join(requested))
        await self._notifier.booked(booking_day, requested, actor)
        return await self.ledger(booking_day)

    async def _append(self, day: date, hours: list[str], actor: Account, band: Optional[str], kind: str) -> None:
        # Fresh instances per attempt; a failed flush leaves the old ones bound to a dead session.
        bookings = [
            SlotBooking(
                day=day,
                hour=hour,
                account_id=actor.id,
                display_name=actor.display_name,
                avatar_url=actor.photo_url,
                band_name=band,
                session_kind=kind,
            )
            for hour in hours
        ]
        try:
            await self._ledgers.append(day, bookings)
        except HoursTaken as e:
            current = await self._ledgers.get(day) or []
            booked = {b.hour for b in current}
            conflicting = [h for h in hours if h in booked]
            if conflicting:
                logger.info("Booking conflict on %s: %s", day.isoformat(), ",".join(conflicting))
                raise ConflictError(conflicting) from e
            logger.warning("Booking on %s hit a stale ledger, retrying (%s)", day.isoformat(), e)
            raise StaleLedger(str(e)) from e

    async def cancel(self, day, hours, actor: Account) -> Cancellation:
        if actor.role == Role.GUEST.value:
            requested_hours = list(hours) if isinstance(hours, (list, tuple)) else None
            raise AuthorizationError("Guests cannot cancel rehearsals.", requested_hours=requested_hours)

        cancel_day = parse_day(day)
        requested = normalize_hours(hours)

        current = await self._ledgers.get(cancel_day)
        if current is None:
            raise NotFoundError("No bookings found for this day.")

        is_admin = actor.is_admin
        by_hour = {b.hour: b for b in current}
        authorized = [h for h in requested if h in by_hour and (is_admin or by_hour[h].account_id == actor.id)]
        if not authorized:
            logger.info(
                "Cancel refused for account %s on %s, requested %s",
                actor.id,
                cancel_day.isoformat(),
                ",".join(requested),
            )
            raise AuthorizationError(
                "You are not authorized to cancel any of the selected bookings or they do not exist.",
                requested_hours=requested,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._booking_attempts),
            retry=retry_if_exception_type(LedgerInUse),
            reraise=True,
        ):
            with attempt:
                removed, ledger_deleted = await self._ledgers.remove(
                    cancel_day, authorized, owner_id=None if is_admin else actor.id
                )
        if not removed:
            raise NotFoundError("Booking not found or already canceled.")
        logger.info(
            "Account %s cancelled %s at %s%s",
            actor.id,
            cancel_day.isoformat(),
            ",".join(b.hour for b in removed),
            " (ledger deleted)" if ledger_deleted else "",
        )

        await self._notify_cancellation(cancel_day, removed, actor)

        ledger = None if ledger_deleted else await self.ledger(cancel_day)
        return Cancellation(day=cancel_day, removed=removed, ledger=ledger)

    async def _notify_cancellation(self, day: date, removed: list[SlotBooking], actor: Account) -> None:
        if not actor.is_admin:
            await self._notifier.cancelled_by_owner(day, [b.hour for b in removed], actor)
            return

        hours_by_owner: dict[int, list[str]] = {}
        for booking in removed:
            hours_by_owner.setdefault(booking.account_id, []).append(booking.hour)
        try:
            async with self._sessions() as session:
                owners = await accounts.get_accounts(session, hours_by_owner)
        except SQLAlchemyError as e:
            logger.warning("Could not load owners to notify about cancellation on %s (%s)", day.isoformat(), e)
            return
        await self._notifier.cancelled_by_admin(day, hours_by_owner, owners)

    async def ledger(self, day) -> Ledger:
        ledger_day = parse_day(day)
        return Ledger(day=ledger_day, bookings=await self.hours_for_day(ledger_day))

    async def hours_for_day(self, day) -> list[SlotBooking]:
        return await self._ledgers.get(parse_day(day)) or []

    async def summary(self, month_anchor) -> list[date]:
        start, end = month_bounds(parse_day(month_anchor))
        return await self._ledgers.booked_days(start, end)
