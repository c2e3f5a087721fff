"""Day ledger persistence.

Each public method is one transaction, so every "decide and commit" step
collapses into a single atomic unit per day ledger. Double booking is
prevented by the UNIQUE(day, hour) constraint on slot_bookings, never by an
in-process lock.
"""

import logging
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import delete, exists, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from days import catalog_position
from models import DayLedger, SlotBooking, utcnow

logger = logging.getLogger(__name__)


class HoursTaken(Exception):
    """The append violated an integrity constraint; nothing was written."""


class LedgerInUse(Exception):
    """The ledger could not be dropped because a booking landed concurrently; nothing was removed."""


def _ledger_upsert(session: AsyncSession, day: date):
    dialect = session.get_bind().dialect.name
    values = {"day": day, "created_at": utcnow()}
    if dialect == "postgresql":
        return pg_insert(DayLedger).values(**values).on_conflict_do_nothing(index_elements=["day"])
    if dialect == "sqlite":
        return sqlite_insert(DayLedger).values(**values).on_conflict_do_nothing(index_elements=["day"])
    raise RuntimeError(f"Unsupported database dialect for ledger upsert: {dialect}")


def _in_catalog_order(bookings: Sequence[SlotBooking]) -> list[SlotBooking]:
    return sorted(bookings, key=lambda b: catalog_position(b.hour))


class LedgerStore:
    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    async def get(self, day: date) -> Optional[list[SlotBooking]]:
        """Bookings of the day in catalog order, or None when no ledger exists."""
        async with self._sessions() as session:
            ledger = await session.get(DayLedger, day)
            if ledger is None:
                return None
            result = await session.execute(select(SlotBooking).where(SlotBooking.day == day))
            return _in_catalog_order(result.scalars().all())

    async def append(self, day: date, bookings: list[SlotBooking]) -> None:
        """Create the ledger if needed and insert all bookings, or nothing at all.

        The ledger upsert is the first statement so the transaction takes the
        write lock before touching anything else.
        """
        async with self._sessions() as session:
            try:
                async with session.begin():
                    await session.execute(_ledger_upsert(session, day))
                    session.add_all(bookings)
                    await session.flush()
            except IntegrityError as e:
                raise HoursTaken(str(e.orig)) from e
        logger.debug("Appended %d bookings to %s", len(bookings), day.isoformat())

    async def remove(self, day: date, hours: list[str], owner_id: Optional[int]) -> tuple[list[SlotBooking], bool]:
        """Delete bookings for ``hours``; scoped to ``owner_id`` unless it is None.

        Drops the ledger in the same transaction when nothing is left.
        Returns (removed bookings in catalog order, ledger deleted). The removed
        bookings are the rows the DELETE actually hit, not a prior read.
        """
        predicate = [SlotBooking.day == day, SlotBooking.hour.in_(hours)]
        if owner_id is not None:
            predicate.append(SlotBooking.account_id == owner_id)

        async with self._sessions() as session:
            try:
                async with session.begin():
                    result = await session.scalars(
                        delete(SlotBooking)
                        .where(*predicate)
                        .returning(SlotBooking)
                        .execution_options(synchronize_session=False)
                    )
                    removed = list(result.all())
                    if not removed:
                        return [], False
                    remaining = exists().where(SlotBooking.day == day)
                    dropped = (
                        await session.execute(delete(DayLedger).where(DayLedger.day == day, ~remaining))
                    ).rowcount
            except IntegrityError as e:
                # A booking committed into the ledger after our NOT EXISTS check
                raise LedgerInUse(str(e.orig)) from e
        return _in_catalog_order(removed), bool(dropped)

    async def booked_days(self, start: date, end: date) -> list[date]:
        async with self._sessions() as session:
            has_bookings = exists().where(SlotBooking.day == DayLedger.day)
            result = await session.execute(
                select(DayLedger.day)
                .where(DayLedger.day >= start, DayLedger.day <= end, has_bookings)
                .order_by(DayLedger.day)
            )
            return list(result.scalars().all())
