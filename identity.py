"""
Identity gate.

Telegram Mini App sessions start from a signed ``initData`` query string.
It is validated with the bot token (HMAC-SHA256, key derived from
"WebAppData"), and the account it resolves to receives a short-lived HS256
bearer token carrying its id and role. The role inside the token is only
informational; authorization always reads the role from the database.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import parse_qsl, urlencode

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_session
from models import Account

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"

bearer = HTTPBearer(auto_error=False)


class InvalidInitData(Exception):
    """Raised when Telegram initData is malformed, stale or not signed by our bot."""


@dataclass(frozen=True)
class TelegramUser:
    id: int
    first_name: str
    last_name: Optional[str] = None
    username: Optional[str] = None
    photo_url: Optional[str] = None


def _signature(fields: dict[str, str], bot_token: str) -> str:
    data_check_string = "\n".join(f"{key}={value}" for key, value in sorted(fields.items()))
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(secret, data_check_string.encode(), hashlib.sha256).hexdigest()


def sign_init_data(fields: dict[str, str], bot_token: str) -> str:
    """Return ``fields`` as a query string with the hash Telegram would attach."""
    return urlencode({**fields, "hash": _signature(fields, bot_token)})


def verify_init_data(
    init_data: str, bot_token: str, *, max_age_seconds: int = 0, now: float | None = None
) -> TelegramUser:
    if not bot_token:
        raise InvalidInitData("Bot token is not configured")

    fields = dict(parse_qsl(init_data or "", keep_blank_values=True))
    received_hash = fields.pop("hash", None)
    if not received_hash:
        raise InvalidInitData("initData has no hash")
    if not hmac.compare_digest(_signature(fields, bot_token), received_hash):
        raise InvalidInitData("Invalid Telegram data signature")

    if max_age_seconds:
        try:
            auth_date = int(fields.get("auth_date", ""))
        except ValueError as e:
            raise InvalidInitData("initData has no valid auth_date") from e
        current = time.time() if now is None else now
        if current - auth_date > max_age_seconds:
            raise InvalidInitData("initData is expired")

    try:
        raw_user = json.loads(fields["user"])
        return TelegramUser(
            id=int(raw_user["id"]),
            first_name=raw_user.get("first_name") or "",
            last_name=raw_user.get("last_name") or None,
            username=raw_user.get("username") or None,
            photo_url=raw_user.get("photo_url") or None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidInitData("initData has no valid user") from e


def create_access_token(account: Account, *, secret: str, ttl_hours: int, now: datetime | None = None) -> str:
    issued = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(account.id),
        "telegramId": account.telegram_id,
        "role": account.role,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(hours=ttl_hours)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, *, secret: str) -> Optional[dict]:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM], options={"require": ["exp", "iat", "sub"]})
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except jwt.InvalidTokenError:
        return None


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    session: AsyncSession = Depends(get_session),
) -> Account:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")

    claims = decode_access_token(credentials.credentials, secret=get_settings().jwt_secret)
    if claims is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.")

    try:
        account_id = int(claims["sub"])
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token.") from e

    account = await session.get(Account, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return account
