from datetime import UTC, datetime

import pytest
from freezegun import freeze_time
from httpx import AsyncClient

from app.database import InMemoryDocumentStore
from app.models import BOOKINGS, PAYMENTS, Booking, Payment


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _as(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def _dump_db(app) -> None:
    db: InMemoryDocumentStore = app.state.database
    bookings: list[Booking] = db.all(BOOKINGS)
    payments: list[Payment] = db.all(PAYMENTS)

    _p("db bookings:")
    for b in sorted(bookings, key=lambda x: (x.date, x.start_time)):
        _p(
            f"  - {b.id[:8]} | {b.date} {b.start_time}-{b.end_time} | "
            f"status={b.status} rate={b.hourly_rate} "
            f"employer={b.employer_id} nanny={b.nanny_id}"
        )

    _p("db payments:")
    for p in sorted(payments, key=lambda x: x.date):
        _p(
            f"  - {p.id[:8]} | {p.amount} {p.method} | status={p.status} "
            f"employer={p.employer_id} nanny={p.nanny_id}"
        )


async def _register(client: AsyncClient) -> None:
    users = [
        {
            "id": "emma-id",
            "email": "emma@example.com",
            "displayName": "Emma Employer",
            "role": "employer",
        },
        {
            "id": "nina-id",
            "email": "nina@example.com",
            "displayName": "Nina Nanny",
            "role": "nanny",
            "hourlyRate": 20,
        },
        {
            "id": "nadia-id",
            "email": "nadia@example.com",
            "displayName": "Nadia Novak",
            "role": "nanny",
            "hourlyRate": 25,
        },
    ]
    for body in users:
        resp = await client.post("/users", json=body)
        assert resp.status_code == 201, resp.json()


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    _p(f"GET /health -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_register_uses_camel_case_fields(client: AsyncClient) -> None:
    _banner("users serialize with the camelCase storage contract")
    await _register(client)

    resp = await client.get("/users/nina-id")
    _p(f"GET /users/nina-id -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["displayName"] == "Nina Nanny"
    assert data["hourlyRate"] == 20
    assert data["linkedEmployers"] == []
    assert data["pendingEmployers"] == []


@pytest.mark.asyncio
async def test_register_nanny_without_rate_is_rejected(client: AsyncClient) -> None:
    _banner("a nanny must register with a positive rate")
    resp = await client.post(
        "/users",
        json={"email": "x@example.com", "displayName": "X", "role": "nanny"},
    )
    _p(f"POST /users -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 409
    assert "rate" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_link_flow_over_http(client: AsyncClient) -> None:
    _banner("employer proposes, nanny accepts, both sides see the link")
    await _register(client)

    resp = await client.get("/users/search", params={"term": "nin"}, headers=_as("emma-id"))
    _p(f"search 'nin' -> {[u['id'] for u in resp.json()]}")
    assert [u["id"] for u in resp.json()] == ["nina-id"]

    resp = await client.post(
        "/links", json={"counterpartyId": "nina-id"}, headers=_as("emma-id")
    )
    _p(f"POST /links -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 201
    assert resp.json()["state"] == "proposed"

    resp = await client.get("/notifications", headers=_as("nina-id"))
    _p(f"nina notifications -> {resp.json()}")
    assert [n["type"] for n in resp.json()] == ["link_request"]

    resp = await client.post("/links/nina-id/accept", headers=_as("emma-id"))
    _p(f"emma accepting own request -> status={resp.status_code}")
    assert resp.status_code == 403

    resp = await client.post("/links/emma-id/accept", headers=_as("nina-id"))
    _p(f"nina accepts -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["state"] == "linked"

    emma = (await client.get("/users/emma-id")).json()
    nina = (await client.get("/users/nina-id")).json()
    _p(f"emma.linkedNannies={emma['linkedNannies']} nina.linkedEmployers={nina['linkedEmployers']}")
    assert emma["linkedNannies"] == ["nina-id"]
    assert nina["linkedEmployers"] == ["emma-id"]

    resp = await client.get("/users/search", params={"term": "nin"}, headers=_as("emma-id"))
    assert resp.json() == []

    resp = await client.delete("/links", headers=_as("nina-id"))
    _p(f"DELETE /links (reset) -> {resp.json()}")
    assert resp.json()["unlinked"] == ["emma-id"]
    emma = (await client.get("/users/emma-id")).json()
    assert emma["linkedNannies"] == []


@pytest.mark.asyncio
async def test_end_to_end_booking_and_payment(client: AsyncClient) -> None:
    _banner("book 09:00-13:00 at $20, approve, pay $50 cash, confirm => $30 left")
    app = client._transport.app
    await _register(client)

    with freeze_time("2024-05-30 12:00:00", real_asyncio=True):
        app.state.now_fn = lambda: datetime.now(UTC)

        resp = await client.post(
            "/bookings",
            json={
                "nannyId": "nina-id",
                "dates": ["2024-06-01"],
                "startTime": "09:00",
                "endTime": "13:00",
            },
            headers=_as("emma-id"),
        )
        _p(f"POST /bookings -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 201
        (booking,) = resp.json()
        assert booking["status"] == "pending"
        assert booking["hourlyRate"] == 20
        assert booking["createdAt"].startswith("2024-05-30T12:00:00")

        resp = await client.post(
            f"/bookings/{booking['id']}/status",
            json={"status": "approved"},
            headers=_as("nina-id"),
        )
        _p(f"nina approves -> status={resp.status_code}, body={resp.json()}")
        assert resp.json()["status"] == "approved"

        resp = await client.get("/balance", headers=_as("emma-id"))
        _p(f"emma balance -> {resp.json()}")
        assert resp.json()["totalOwed"] == 80

        resp = await client.post(
            "/payments",
            json={"nannyId": "nina-id", "amount": 50, "method": "cash"},
            headers=_as("emma-id"),
        )
        _p(f"POST /payments -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 201
        payment = resp.json()
        assert payment["status"] == "pending"
        assert payment["employerName"] == "Emma Employer"

        resp = await client.post(
            f"/payments/{payment['id']}/confirm", headers=_as("nina-id")
        )
        _p(f"nina confirms -> status={resp.status_code}, body={resp.json()}")
        assert resp.json()["status"] == "confirmed"

        _dump_db(app)

        for user in ("emma-id", "nina-id"):
            resp = await client.get("/balance", headers=_as(user))
            data = resp.json()
            _p(f"{user} balance -> {data}")
            assert data["totalOwed"] == 80
            assert data["totalPaid"] == 50
            assert data["remainingBalance"] == 30

        resp = await client.get(
            "/balance", params={"counterpartyId": "nadia-id"}, headers=_as("emma-id")
        )
        assert resp.json()["totalOwed"] == 0


@pytest.mark.asyncio
async def test_error_mapping(client: AsyncClient) -> None:
    _banner("domain errors map onto 403/404/409/503")
    app = client._transport.app
    await _register(client)

    resp = await client.post(
        "/bookings",
        json={
            "nannyId": "nina-id",
            "dates": ["2024-06-01"],
            "startTime": "13:00",
            "endTime": "09:00",
        },
        headers=_as("emma-id"),
    )
    _p(f"end before start -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 409

    resp = await client.post(
        "/bookings",
        json={
            "nannyId": "nina-id",
            "dates": ["2024-06-01"],
            "startTime": "09:00",
            "endTime": "13:00",
        },
        headers=_as("emma-id"),
    )
    booking_id = resp.json()[0]["id"]

    resp = await client.post(
        f"/bookings/{booking_id}/status",
        json={"status": "approved"},
        headers=_as("nadia-id"),
    )
    _p(f"wrong nanny approves -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 403

    resp = await client.post(
        "/bookings/nope/status", json={"status": "approved"}, headers=_as("nina-id")
    )
    _p(f"unknown booking -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 404
    assert "not found" in resp.json()["detail"].lower()

    resp = await client.get("/bookings", headers=_as("emma-id"))
    assert len(resp.json()) == 1

    app.state.database.set_offline(BOOKINGS)
    resp = await client.get("/bookings", headers=_as("emma-id"))
    _p(f"store offline -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 503

    resp = await client.get("/balance", headers=_as("emma-id"))
    _p(f"balance with bookings offline -> {resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["totalOwed"] is None
    assert resp.json()["remainingBalance"] is None


@pytest.mark.asyncio
async def test_missing_caller_header_is_rejected(client: AsyncClient) -> None:
    _banner("routes acting for a user need X-User-Id")
    resp = await client.get("/bookings")
    _p(f"GET /bookings without header -> status={resp.status_code}")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_reset_balances_over_http(client: AsyncClient) -> None:
    _banner("balance reset reverts approvals and deletes payments")
    await _register(client)

    resp = await client.post(
        "/bookings",
        json={
            "nannyId": "nina-id",
            "dates": ["2024-06-01", "2024-06-02"],
            "startTime": "09:00",
            "endTime": "17:00",
        },
        headers=_as("emma-id"),
    )
    for booking in resp.json():
        await client.post(
            f"/bookings/{booking['id']}/status",
            json={"status": "approved"},
            headers=_as("nina-id"),
        )
    await client.post(
        "/payments",
        json={"nannyId": "nina-id", "amount": 100, "method": "bank_transfer"},
        headers=_as("emma-id"),
    )

    resp = await client.post("/payments/reset", headers=_as("emma-id"))
    _p(f"POST /payments/reset -> status={resp.status_code}, body={resp.json()}")
    assert resp.json() == {"status": "reset", "bookingsReverted": 2, "paymentsDeleted": 1}

    resp = await client.get("/balance", headers=_as("nina-id"))
    assert resp.json()["totalOwed"] == 0
    assert resp.json()["pendingPayments"] == 0


@pytest.mark.asyncio
async def test_notifications_over_http(client: AsyncClient) -> None:
    _banner("nina reads her link request; nobody else can")
    await _register(client)
    await client.post("/links", json={"counterpartyId": "nina-id"}, headers=_as("emma-id"))

    resp = await client.get("/notifications", params={"unread": "true"}, headers=_as("nina-id"))
    _p(f"nina unread -> {resp.json()}")
    (note,) = resp.json()
    assert note["status"] == "unread"
    assert note["fromUserId"] == "emma-id"

    resp = await client.post(f"/notifications/{note['id']}/read", headers=_as("emma-id"))
    _p(f"emma marks nina's notification -> status={resp.status_code}")
    assert resp.status_code == 403

    resp = await client.post("/notifications/nope/read", headers=_as("nina-id"))
    assert resp.status_code == 404

    resp = await client.post(f"/notifications/{note['id']}/read", headers=_as("nina-id"))
    _p(f"nina marks read -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "read"

    resp = await client.get("/notifications", params={"unread": "true"}, headers=_as("nina-id"))
    assert resp.json() == []
    resp = await client.get("/notifications", headers=_as("nina-id"))
    assert [n["status"] for n in resp.json()] == ["read"]


@pytest.mark.asyncio
async def test_update_rate_over_http(client: AsyncClient) -> None:
    _banner("a nanny changes her own rate only")
    await _register(client)

    resp = await client.patch(
        "/users/nina-id/rate", json={"hourlyRate": 30}, headers=_as("nina-id")
    )
    _p(f"nina sets rate -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json()["hourlyRate"] == 30

    resp = await client.patch(
        "/users/nina-id/rate", json={"hourlyRate": 5}, headers=_as("emma-id")
    )
    _p(f"emma sets nina's rate -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 403

    resp = await client.patch(
        "/users/emma-id/rate", json={"hourlyRate": 30}, headers=_as("emma-id")
    )
    assert resp.status_code == 403

    resp = await client.get("/users/nina-id")
    assert resp.json()["hourlyRate"] == 30
