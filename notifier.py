from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

import httpx

from days import format_day
from models import Account

logger = logging.getLogger(__name__)


async def send_telegram_message(
    *,
    bot_token: str,
    chat_id: str | int,
    text: str,
    reply_markup: dict | None = None,
    timeout_seconds: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }
    if reply_markup is not None:
        payload["reply_markup"] = reply_markup

    async with httpx.AsyncClient(timeout=timeout_seconds, transport=transport) as client:
        r = await client.post(url, json=payload)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok", False):
            raise RuntimeError(f"Telegram API error: {data}")


def _dotted(day: date) -> str:
    return format_day(day).replace("/", ".")


class Notifier:
    """Best-effort delivery of studio events to Telegram.

    Every public method swallows and logs delivery failures: a notification
    must never fail or roll back the reservation that triggered it.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        operator_chat_id: str | None,
        mini_app_url: str | None = None,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.operator_chat_id = operator_chat_id
        self.mini_app_url = mini_app_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def _deliver(self, chat_id: str | int | None, text: str, reply_markup: dict | None = None) -> bool:
        if not self.bot_token or chat_id is None:
            logger.debug("Telegram delivery skipped (bot token or chat id not configured)")
            return False
        try:
            await send_telegram_message(
                bot_token=self.bot_token,
                chat_id=chat_id,
                text=text,
                reply_markup=reply_markup,
                timeout_seconds=self.timeout_seconds,
                transport=self._transport,
            )
        except Exception as e:
            logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
            return False
        return True

    async def booked(self, day: date, hours: list[str], actor: Account) -> None:
        text = f"@{actor.display_name} booked the studio on {_dotted(day)} at {', '.join(hours)}"
        await self._deliver(self.operator_chat_id, text)

    async def cancelled_by_owner(self, day: date, hours: list[str], actor: Account) -> None:
        text = f"@{actor.display_name} cancelled the booking on {_dotted(day)} at {', '.join(hours)}"
        await self._deliver(self.operator_chat_id, text)

    async def cancelled_by_admin(self, day: date, hours_by_owner: dict[int, list[str]], owners: Iterable[Account]) -> None:
        for owner in owners:
            hours = hours_by_owner.get(owner.id, [])
            text = f"Your booking on {_dotted(day)} at {', '.join(hours)} was cancelled by an administrator"
            await self._deliver(owner.telegram_id, text)

    async def access_requested(self, account: Account) -> None:
        await self._deliver(self.operator_chat_id, f"@{account.display_name} requests access to booking.")

    def _timetable_button(self) -> dict | None:
        if not self.mini_app_url:
            return None
        return {"inline_keyboard": [[{"text": "Open the timetable", "web_app": {"url": self.mini_app_url}}]]}

    async def welcome(self, chat_id: int) -> None:
        await self._deliver(chat_id, "Rehearsal studio timetable", self._timetable_button())

    async def access_granted(self, account: Account) -> None:
        text = "Your access is approved. You can now book rehearsals from the studio Mini App."
        await self._deliver(account.telegram_id, text, self._timetable_button())
