"""Account store: the mapping from Telegram identity to account record."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Account, Role, utcnow

if TYPE_CHECKING:
    from identity import TelegramUser


async def get_account(session: AsyncSession, account_id: int) -> Optional[Account]:
    return await session.get(Account, account_id)


async def find_by_telegram_id(session: AsyncSession, telegram_id: int) -> Optional[Account]:
    result = await session.execute(select(Account).where(Account.telegram_id == telegram_id))
    return result.scalars().first()


async def get_accounts(session: AsyncSession, account_ids: Iterable[int]) -> list[Account]:
    ids = list(set(account_ids))
    if not ids:
        return []
    result = await session.execute(select(Account).where(Account.id.in_(ids)).order_by(Account.id))
    return list(result.scalars().all())


async def list_accounts(session: AsyncSession) -> list[Account]:
    result = await session.execute(select(Account).order_by(Account.created_at))
    return list(result.scalars().all())


def _apply_profile(account: Account, tg_user: TelegramUser) -> None:
    account.first_name = tg_user.first_name
    account.last_name = tg_user.last_name
    account.username = tg_user.username
    account.photo_url = tg_user.photo_url
    account.updated_at = utcnow()


async def register(session: AsyncSession, tg_user: TelegramUser) -> Account:
    """Create a guest account. IntegrityError propagates if the identity already exists."""
    account = Account(telegram_id=tg_user.id, first_name=tg_user.first_name, role=Role.GUEST.value)
    _apply_profile(account, tg_user)
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


async def refresh_profile(session: AsyncSession, account: Account, tg_user: TelegramUser) -> Account:
    _apply_profile(account, tg_user)
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


async def set_role(session: AsyncSession, account: Account, role: Role) -> Account:
    account.role = role.value
    account.updated_at = utcnow()
    session.add(account)
    await session.commit()
    await session.refresh(account)
    return account


async def delete_account(session: AsyncSession, account: Account) -> None:
    await session.delete(account)
    await session.commit()
