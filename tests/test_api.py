"""
HTTP contract tests, driven through the ASGI app with storage and
notifications swapped for per-test fixtures.
"""

import json
from dataclasses import replace

import pytest

import main
from identity import sign_init_data
from models import Role

pytestmark = pytest.mark.asyncio

BOT_TOKEN = "TEST_TOKEN"


def _init_data(telegram_id: int = 4242, **profile) -> str:
    user = {"id": telegram_id, "first_name": "Kim", "username": "kim_keys", **profile}
    return sign_init_data({"auth_date": "1700000000", "user": json.dumps(user)}, BOT_TOKEN)


async def _cancel(api, headers, body):
    return await api.request("DELETE", "/api/cancel", json=body, headers=headers)


# Reservations


async def test_booking_and_cancellation_scenario(api, auth, user1, user2):
    first = await api.post(
        "/api/book",
        json={"date": "10/03/2025", "hours": ["18:00", "19:00"], "bandName": "Seals"},
        headers=auth(user1),
    )
    assert first.status_code == 201
    body = first.json()
    assert body["date"] == "10/03/2025"
    assert [h["hour"] for h in body["hours"]] == ["18:00", "19:00"]
    assert body["hours"][0]["accountId"] == user1.id
    assert body["hours"][0]["bandName"] == "Seals"
    assert body["hours"][0]["sessionKind"] == "rehearsal"

    conflict = await api.post(
        "/api/book", json={"date": "10/03/2025", "hours": ["19:00", "20:00"]}, headers=auth(user2)
    )
    assert conflict.status_code == 409
    assert conflict.json()["conflictingHours"] == ["19:00"]

    hours = await api.get("/api/hours", params={"date": "10/03/2025"})
    assert [h["accountId"] for h in hours.json()["hours"]] == [user1.id, user1.id]

    foreign = await _cancel(api, auth(user2), {"date": "10/03/2025", "hours": ["18:00"]})
    assert foreign.status_code == 403
    assert foreign.json()["requestedHours"] == ["18:00"]

    own = await _cancel(api, auth(user1), {"date": "10/03/2025", "hours": ["18:00", "19:00"]})
    assert own.status_code == 200
    assert own.json()["ledgerDeleted"] is True
    assert own.json()["ledger"] is None

    hours = await api.get("/api/hours", params={"date": "10/03/2025"})
    assert hours.json() == {"hours": []}


async def test_partial_cancel_returns_remaining_ledger(api, auth, user1):
    await api.post("/api/book", json={"date": "10/03/2025", "hours": ["18:00", "19:00"]}, headers=auth(user1))

    response = await _cancel(api, auth(user1), {"date": "10/03/2025", "hours": ["18:00"]})

    assert response.status_code == 200
    assert response.json()["ledgerDeleted"] is False
    assert [h["hour"] for h in response.json()["ledger"]["hours"]] == ["19:00"]


async def test_snake_case_booking_fields_are_accepted(api, auth, user1):
    response = await api.post(
        "/api/book",
        json={"date": "10/03/2025", "hours": ["12:00"], "band_name": "Seals", "session_kind": "shoot"},
        headers=auth(user1),
    )

    assert response.status_code == 201
    assert response.json()["hours"][0]["sessionKind"] == "shoot"


async def test_guest_booking_is_forbidden(api, auth, guest):
    response = await api.post("/api/book", json={"date": "10/03/2025", "hours": ["18:00"]}, headers=auth(guest))

    assert response.status_code == 403
    assert (await api.get("/api/timetable", params={"date": "10/03/2025"})).json() == {"result": []}


async def test_guest_with_malformed_booking_is_still_forbidden(api, auth, guest):
    response = await api.post("/api/book", json={"date": "2025-03-10", "hours": ["09:00"]}, headers=auth(guest))

    assert response.status_code == 403


async def test_cancel_on_empty_day_is_not_found(api, auth, user1):
    response = await _cancel(api, auth(user1), {"date": "12/03/2025", "hours": ["18:00"]})

    assert response.status_code == 404


@pytest.mark.parametrize(
    "body",
    [
        {"date": "2025-03-10", "hours": ["18:00"]},
        {"date": "10/03/2025", "hours": []},
        {"date": "10/03/2025", "hours": ["09:00"]},
        {"date": "10/03/2025"},
        {"hours": ["18:00"]},
    ],
)
async def test_invalid_booking_payload_is_bad_request(api, auth, user1, body):
    response = await api.post("/api/book", json=body, headers=auth(user1))

    assert response.status_code == 400
    assert "error" in response.json()


async def test_admin_cancels_foreign_booking(api, auth, user1, admin, notifier):
    await api.post("/api/book", json={"date": "10/03/2025", "hours": ["18:00"]}, headers=auth(user1))

    response = await _cancel(api, auth(admin), {"date": "10/03/2025", "hours": ["18:00"]})

    assert response.status_code == 200
    assert notifier.kinds() == ["booked", "cancelled_by_admin"]


async def test_timetable_lists_booked_days_of_month(api, auth, user1):
    for day in ("05/03/2025", "20/03/2025", "01/04/2025"):
        await api.post("/api/book", json={"date": day, "hours": ["12:00"]}, headers=auth(user1))

    response = await api.get("/api/timetable", params={"date": "15/03/2025"})

    assert response.status_code == 200
    assert response.json() == {"result": ["05/03/2025", "20/03/2025"]}
    assert "no-store" in response.headers["cache-control"]


@pytest.mark.parametrize("path", ["/api/timetable", "/api/hours"])
async def test_read_endpoints_require_a_valid_date(api, path):
    assert (await api.get(path)).status_code == 400
    assert (await api.get(path, params={"date": "March"})).status_code == 400


# Sessions


async def test_missing_or_invalid_token_is_unauthorized(api):
    body = {"date": "10/03/2025", "hours": ["18:00"]}

    assert (await api.post("/api/book", json=body)).status_code == 401
    bad = await api.post("/api/book", json=body, headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


async def test_token_of_deleted_account_is_not_found(api, auth, user1, admin):
    headers = auth(user1)
    assert (await api.delete(f"/api/users/{user1.id}", headers=auth(admin))).status_code == 200

    response = await api.get("/api/users/me", headers=headers)

    assert response.status_code == 404
    assert response.json() == {"error": "User not found."}


async def test_role_comes_from_database_not_token(api, auth, guest, admin):
    guest_headers = auth(guest)
    promoted = await api.put(f"/api/users/{guest.id}/role", json={"role": "user"}, headers=auth(admin))
    assert promoted.status_code == 200

    response = await api.post("/api/book", json={"date": "10/03/2025", "hours": ["18:00"]}, headers=guest_headers)

    assert response.status_code == 201


# Identity gate


async def test_unknown_identity_gets_unregistered_guest_without_token(api):
    response = await api.post("/api/users/auth", json={"initData": _init_data()})

    assert response.status_code == 200
    body = response.json()
    assert body["token"] is None
    assert body["user"]["isRegistered"] is False
    assert body["user"]["role"] == "guest"
    assert body["user"]["telegramId"] == 4242


async def test_register_then_authenticate(api, notifier):
    registered = await api.post("/api/users/register", json={"initData": _init_data()})
    assert registered.status_code == 201
    assert registered.json()["user"]["role"] == "guest"
    assert registered.json()["token"]
    assert notifier.kinds() == ["access_requested"]

    again = await api.post("/api/users/register", json={"initData": _init_data()})
    assert again.status_code == 400

    login = await api.post("/api/users/auth", json={"initData": _init_data(username="kim_new")})
    assert login.status_code == 200
    assert login.json()["user"]["username"] == "kim_new"
    assert login.json()["user"]["isRegistered"] is True

    me = await api.get("/api/users/me", headers={"Authorization": f"Bearer {login.json()['token']}"})
    assert me.json()["telegramId"] == 4242


async def test_identity_gate_rejects_bad_input(api):
    assert (await api.post("/api/users/auth", json={})).status_code == 400
    forged = _init_data().replace("kim_keys", "admin")
    assert (await api.post("/api/users/auth", json={"initData": forged})).status_code == 401
    assert (await api.post("/api/users/register", json={"initData": forged})).status_code == 401


# Moderation


async def test_only_admin_lists_accounts(api, auth, user1, admin):
    assert (await api.get("/api/users", headers=auth(user1))).status_code == 403

    response = await api.get("/api/users", headers=auth(admin))

    assert response.status_code == 200
    assert {a["id"] for a in response.json()} == {user1.id, admin.id}


async def test_approving_guest_notifies_them(api, auth, guest, admin, notifier):
    response = await api.put(f"/api/users/{guest.id}/role", json={"role": "user"}, headers=auth(admin))

    assert response.status_code == 200
    assert response.json()["role"] == Role.USER.value
    assert notifier.events == [("access_granted", guest.id)]


async def test_role_change_errors(api, auth, user1, admin):
    bad_role = await api.put(f"/api/users/{user1.id}/role", json={"role": "owner"}, headers=auth(admin))
    assert bad_role.status_code == 400

    missing = await api.put("/api/users/99999/role", json={"role": "user"}, headers=auth(admin))
    assert missing.status_code == 404

    not_admin = await api.put(f"/api/users/{user1.id}/role", json={"role": "admin"}, headers=auth(user1))
    assert not_admin.status_code == 403


async def test_delete_unknown_account_is_not_found(api, auth, admin):
    assert (await api.delete("/api/users/99999", headers=auth(admin))).status_code == 404


# Bot webhook


def _update(text, chat_id=777):
    return {"update_id": 1, "message": {"message_id": 5, "chat": {"id": chat_id, "type": "private"}, "text": text}}


@pytest.mark.parametrize("text", ["/start", "/start@studio_bot", "/start ref42"])
async def test_start_command_gets_timetable_button(api, notifier, text):
    response = await api.post("/telegram/webhook", json=_update(text))

    assert response.status_code == 200
    assert notifier.events == [("welcome", 777)]


async def test_other_updates_are_acknowledged_silently(api, notifier):
    assert (await api.post("/telegram/webhook", json=_update("hello"))).status_code == 200
    assert (await api.post("/telegram/webhook", json=_update(""))).status_code == 200
    assert (await api.post("/telegram/webhook", json={"update_id": 2})).status_code == 200
    assert notifier.events == []


async def test_webhook_secret_is_enforced_when_configured(api, notifier, monkeypatch):
    monkeypatch.setattr(main, "settings", replace(main.settings, telegram_webhook_secret="hook-secret"))

    denied = await api.post("/telegram/webhook", json=_update("/start"))
    allowed = await api.post(
        "/telegram/webhook", json=_update("/start"), headers={"X-Telegram-Bot-Api-Secret-Token": "hook-secret"}
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert notifier.events == [("welcome", 777)]
