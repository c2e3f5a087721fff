from __future__ import annotations

import os
import warnings
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

INSECURE_JWT_SECRET = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - dev fallback only


@dataclass(frozen=True)
class Settings:
    database_url: str

    telegram_token: str = ""
    telegram_admin_id: str | None = None
    mini_app_url: str | None = None
    # Shared secret Telegram echoes in X-Telegram-Bot-Api-Secret-Token; unset accepts any caller.
    telegram_webhook_secret: str | None = None

    jwt_secret: str = INSECURE_JWT_SECRET
    jwt_ttl_hours: int = 24

    # Telegram initData older than this is rejected; 0 disables the check.
    init_data_max_age_seconds: int = 86400

    # Attempts for a booking whose insert failed without a conflicting hour
    # (the day ledger was removed by a concurrent cancellation), and for a
    # cancellation whose ledger cleanup raced a concurrent booking.
    booking_attempts: int = 3

    notify_timeout_seconds: float = 10.0
    cors_origins: tuple[str, ...] = ("*",)


def _int_env(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected an integer.") from e
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return value


def _parse_origins(raw: str) -> tuple[str, ...]:
    parts = [p.strip() for p in raw.split(",")]
    return tuple(p for p in parts if p) or ("*",)


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Real environment wins over .env; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL is not set. Please check your .env file.")

    jwt_secret = os.getenv("JWT_SECRET")
    if not jwt_secret:
        warnings.warn(
            "JWT_SECRET not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
        )
        jwt_secret = INSECURE_JWT_SECRET

    admin_id = os.getenv("TELEGRAM_ADMIN_ID", "").strip() or None
    if admin_id is not None:
        try:
            int(admin_id)
        except ValueError as e:
            raise RuntimeError(f"Invalid TELEGRAM_ADMIN_ID value: {admin_id!r}. Expected integer chat id.") from e

    timeout_raw = os.getenv("NOTIFY_TIMEOUT_SECONDS", "10").strip()
    try:
        notify_timeout_seconds = float(timeout_raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid NOTIFY_TIMEOUT_SECONDS value: {timeout_raw!r}") from e
    if notify_timeout_seconds <= 0:
        raise RuntimeError("NOTIFY_TIMEOUT_SECONDS must be > 0")

    return Settings(
        database_url=database_url,
        telegram_token=os.getenv("TELEGRAM_TOKEN", "").strip(),
        telegram_admin_id=admin_id,
        mini_app_url=os.getenv("MINI_APP_URL", "").strip() or None,
        telegram_webhook_secret=os.getenv("TELEGRAM_WEBHOOK_SECRET", "").strip() or None,
        jwt_secret=jwt_secret,
        jwt_ttl_hours=_int_env("JWT_TTL_HOURS", 24, minimum=1),
        init_data_max_age_seconds=_int_env("INIT_DATA_MAX_AGE_SECONDS", 86400, minimum=0),
        booking_attempts=_int_env("BOOKING_ATTEMPTS", 3, minimum=1),
        notify_timeout_seconds=notify_timeout_seconds,
        cors_origins=_parse_origins(os.getenv("CORS_ORIGINS", "*")),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
