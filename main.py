import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

import accounts
from config import get_settings
from database import async_session, get_session, init_db
from days import format_day
from errors import AuthorizationError, ConflictError, NotFoundError, ReservationError, ValidationError
from identity import InvalidInitData, create_access_token, get_current_account, require_admin, verify_init_data
from live_updates import BOOKING_CANCEL, BOOKING_UPDATE, live_updates
from models import Account, Role
from notifier import Notifier
from reservations import ReservationEngine
from schemas import (
    AccountOut,
    AuthResponse,
    BookingCancel,
    BookingCreate,
    CancellationOut,
    HoursOut,
    InitDataRequest,
    LedgerOut,
    MessageOut,
    RoleUpdate,
    SlotBookingOut,
    TelegramUpdate,
    TimetableOut,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

settings = get_settings()

notifier = Notifier(
    bot_token=settings.telegram_token,
    operator_chat_id=settings.telegram_admin_id,
    mini_app_url=settings.mini_app_url,
    timeout_seconds=settings.notify_timeout_seconds,
)
reservations = ReservationEngine(async_session, notifier, booking_attempts=settings.booking_attempts)

NO_STORE = {"Cache-Control": "no-store, no-cache, must-revalidate, private", "Pragma": "no-cache"}


def get_notifier() -> Notifier:
    return notifier


def get_reservations() -> ReservationEngine:
    return reservations


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    await init_db()
    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Rehearsal Studio Booking", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)


# 1. Error mapping

ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    AuthorizationError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
}


@app.exception_handler(ReservationError)
async def reservation_error_handler(request: Request, exc: ReservationError):
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST,
    )
    return JSONResponse(status_code=status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Missing or invalid request data.", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An internal server error occurred."},
    )


@app.get("/")
async def health():
    return {"status": "ok"}


# 2. Identity

def _verified_user(body: InitDataRequest):
    if not body.init_data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Telegram initialization data")
    try:
        return verify_init_data(
            body.init_data, settings.telegram_token, max_age_seconds=settings.init_data_max_age_seconds
        )
    except InvalidInitData as e:
        logger.info("Rejected Telegram initData: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Telegram data signature") from e


def _token_for(account: Account) -> str:
    return create_access_token(account, secret=settings.jwt_secret, ttl_hours=settings.jwt_ttl_hours)


@app.post("/api/users/auth", response_model=AuthResponse)
async def authenticate(body: InitDataRequest, response: Response, session: AsyncSession = Depends(get_session)):
    response.headers.update(NO_STORE)
    tg_user = _verified_user(body)

    account = await accounts.find_by_telegram_id(session, tg_user.id)
    if account is None:
        # Unknown identity: describe the would-be guest without persisting it
        guest = AccountOut(
            telegram_id=tg_user.id,
            first_name=tg_user.first_name,
            last_name=tg_user.last_name,
            username=tg_user.username,
            photo_url=tg_user.photo_url,
            role=Role.GUEST.value,
            is_registered=False,
        )
        return AuthResponse(token=None, user=guest)

    account = await accounts.refresh_profile(session, account, tg_user)
    return AuthResponse(token=_token_for(account), user=AccountOut.from_account(account))


@app.post("/api/users/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: InitDataRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    response.headers.update(NO_STORE)
    tg_user = _verified_user(body)

    if await accounts.find_by_telegram_id(session, tg_user.id) is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already registered")
    try:
        account = await accounts.register(session, tg_user)
    except IntegrityError as e:
        # This catches the unique telegram_id violation from a concurrent registration
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already registered") from e

    logger.info("Registered guest account %s (telegram_id=%s)", account.id, account.telegram_id)
    await notifier.access_requested(account)
    return AuthResponse(token=_token_for(account), user=AccountOut.from_account(account))


# 3. Moderation

@app.get("/api/users/me", response_model=AccountOut)
async def current_user(account: Account = Depends(get_current_account)):
    return AccountOut.from_account(account)


@app.get("/api/users", response_model=List[AccountOut])
async def list_users(_admin: Account = Depends(require_admin), session: AsyncSession = Depends(get_session)):
    return [AccountOut.from_account(a) for a in await accounts.list_accounts(session)]


@app.put("/api/users/{account_id}/role", response_model=AccountOut)
async def change_role(
    account_id: int,
    body: RoleUpdate,
    admin: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        role = Role(body.role)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid role provided.") from e

    account = await accounts.get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")

    old_role = account.role
    account = await accounts.set_role(session, account, role)
    logger.info("Admin %s changed role of account %s: %s -> %s", admin.id, account.id, old_role, account.role)

    if old_role == Role.GUEST.value and role == Role.USER:
        await notifier.access_granted(account)
    return AccountOut.from_account(account)


@app.delete("/api/users/{account_id}", response_model=MessageOut)
async def delete_user(
    account_id: int, admin: Account = Depends(require_admin), session: AsyncSession = Depends(get_session)
):
    account = await accounts.get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    await accounts.delete_account(session, account)
    logger.info("Admin %s deleted account %s", admin.id, account_id)
    return MessageOut(message="User deleted successfully.")


# 4. Reservations

def _wire_hours(bookings) -> list:
    return [SlotBookingOut.model_validate(b).model_dump(by_alias=True) for b in bookings]


@app.post("/api/book", response_model=LedgerOut, status_code=status.HTTP_201_CREATED)
async def book_slots(
    body: BookingCreate,
    account: Account = Depends(get_current_account),
    engine: ReservationEngine = Depends(get_reservations),
):
    ledger = await engine.book(
        body.date, body.hours, account, band_name=body.band_name, session_kind=body.session_kind
    )
    await live_updates.publish(BOOKING_UPDATE, format_day(ledger.day), _wire_hours(ledger.bookings))
    return LedgerOut.build(ledger.day, ledger.bookings)


@app.delete("/api/cancel", response_model=CancellationOut)
async def cancel_slots(
    body: BookingCancel,
    account: Account = Depends(get_current_account),
    engine: ReservationEngine = Depends(get_reservations),
):
    cancellation = await engine.cancel(body.date, body.hours, account)
    remaining = cancellation.ledger.bookings if cancellation.ledger else []
    await live_updates.publish(BOOKING_CANCEL, format_day(cancellation.day), _wire_hours(remaining))

    if cancellation.ledger_deleted:
        return CancellationOut(message="All bookings for this day canceled, document deleted.", ledger_deleted=True)
    return CancellationOut(
        message="Bookings canceled successfully.",
        ledger=LedgerOut.build(cancellation.day, cancellation.ledger.bookings),
    )


@app.get("/api/timetable", response_model=TimetableOut)
async def timetable(
    response: Response, date: Optional[str] = None, engine: ReservationEngine = Depends(get_reservations)
):
    response.headers.update(NO_STORE)
    if not date:
        raise ValidationError("Date query parameter is required.")
    days = await engine.summary(date)
    return TimetableOut(result=[format_day(d) for d in days])


@app.get("/api/hours", response_model=HoursOut)
async def hours(response: Response, date: Optional[str] = None, engine: ReservationEngine = Depends(get_reservations)):
    response.headers.update(NO_STORE)
    if not date:
        raise ValidationError("Date query parameter is required.")
    bookings = await engine.hours_for_day(date)
    return HoursOut(hours=[SlotBookingOut.model_validate(b) for b in bookings])


# 5. Bot

@app.post("/telegram/webhook")
async def telegram_webhook(
    update: TelegramUpdate, request: Request, notifier: Notifier = Depends(get_notifier)
):
    secret = settings.telegram_webhook_secret
    if secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    message = update.message
    words = (message.text or "").split() if message else []
    # Group chats send "/start@botname"
    if words and words[0].split("@", 1)[0] == "/start":
        await notifier.welcome(message.chat.id)
    return {"ok": True}


@app.websocket("/ws")
async def timetable_updates(websocket: WebSocket):
    await live_updates.connect(websocket)
    try:
        while True:
            # Inbound frames, text or binary, are ignored; the loop only detects disconnects
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    finally:
        live_updates.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
