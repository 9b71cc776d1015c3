"""HTTP surface, driven through the ASGI app without a live server."""

import httpx
import pytest
from fastapi import FastAPI

from cryptolotto.app import create_app
from cryptolotto.health import create_health_router

from conftest import checkout_completed_event, stripe_signature

ALICE = {"X-User-Id": "alice", "X-User-Email": "alice@example.com"}
ADMIN = {"X-User-Id": "ops", "X-User-Role": "admin"}
SIGNATURE = "5KtPn1LGuxhFqnXGKxgVPc"


@pytest.fixture
async def client(settings, db, http_client):
    app = create_app(settings, database=db, http_client=http_client)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://lotto") as client:
        yield client


async def open_round(client):
    response = await client.post("/api/admin/lottery/create", headers=ADMIN)
    assert response.status_code == 200
    return response.json()


async def test_liveness(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_readiness(client):
    response = await client.get("/health/ready")

    assert response.status_code == 200
    assert response.json()["checks"] == {"ledger": True}


async def test_readiness_reports_failing_component():
    async def ledger_down():
        raise ConnectionError("ledger unreachable")

    app = FastAPI()
    app.include_router(create_health_router({"ledger": ledger_down}))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://lotto") as client:
        response = await client.get("/health/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"
    assert response.json()["checks"] == {"ledger": False}


async def test_current_round_is_null_until_created(client):
    assert (await client.get("/api/lottery/current")).json() is None

    created = await open_round(client)

    current = (await client.get("/api/lottery/current")).json()
    assert current["id"] == created["id"]
    assert current["round"] == 1
    assert current["status"] == "ACTIVE"
    assert current["tickets_sold"] == 0


async def test_admin_routes_require_admin_role(client):
    assert (await client.post("/api/admin/lottery/create")).status_code == 401
    response = await client.post("/api/admin/lottery/create", headers=ALICE)
    assert response.status_code == 403
    assert response.json() == {"detail": "Admin access required"}


async def test_second_active_round_conflicts(client):
    await open_round(client)

    response = await client.post("/api/admin/lottery/create", headers=ADMIN)

    assert response.status_code == 409


async def test_unknown_round_is_404(client):
    response = await client.get("/api/lottery/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"detail": "Lottery round not found"}


async def test_crypto_purchase_and_ticket_listing(client):
    lottery = await open_round(client)

    response = await client.post(
        "/api/payment/crypto",
        json={"lottery_id": lottery["id"], "quantity": 2, "transaction_signature": SIGNATURE},
        headers=ALICE,
    )

    assert response.status_code == 200
    tickets = response.json()
    assert [t["ticket_number"] for t in tickets] == [1, 2]
    assert {t["payment_method"] for t in tickets} == {"on-chain"}
    assert {t["transaction_reference"] for t in tickets} == {SIGNATURE}

    mine = (await client.get("/api/user/tickets", headers=ALICE)).json()
    assert sorted(t["ticket_number"] for t in mine) == [1, 2]
    payments = (await client.get("/api/payment/history", headers=ALICE)).json()
    assert [p["status"] for p in payments] == ["COMPLETED"]


async def test_short_signature_is_400(client):
    lottery = await open_round(client)

    response = await client.post(
        "/api/payment/crypto",
        json={"lottery_id": lottery["id"], "quantity": 1, "transaction_signature": "abc"},
        headers=ALICE,
    )

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid transaction signature"}


async def test_quantity_out_of_range_is_rejected(client):
    lottery = await open_round(client)

    response = await client.post(
        "/api/payment/stripe/create-session",
        json={"lottery_id": lottery["id"], "quantity": 0},
        headers=ALICE,
    )

    assert response.status_code == 422


async def test_stripe_session_and_webhook(client):
    lottery = await open_round(client)

    session = await client.post(
        "/api/payment/stripe/create-session",
        json={"lottery_id": lottery["id"], "quantity": 1},
        headers=ALICE,
    )
    assert session.status_code == 200
    session_id = session.json()["session_id"]

    payload = checkout_completed_event(session_id, "alice", lottery["id"], 1)
    forged = await client.post(
        "/api/payment/stripe/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=00"}
    )
    assert forged.status_code == 400

    response = await client.post(
        "/api/payment/stripe/webhook", content=payload, headers={"Stripe-Signature": stripe_signature(payload)}
    )
    assert response.status_code == 200
    assert response.json() == {"received": True}

    current = (await client.get("/api/lottery/current")).json()
    assert current["tickets_sold"] == 1
    assert current["total_pool"] == "1.00"


async def test_paypal_order_and_capture(client):
    lottery = await open_round(client)

    order = await client.post(
        "/api/payment/paypal/create-order", json={"lottery_id": lottery["id"], "quantity": 3}, headers=ALICE
    )
    assert order.status_code == 200
    order_id = order.json()["order_id"]

    captured = await client.post(
        "/api/payment/paypal/capture-order", json={"order_id": order_id}, headers=ALICE
    )
    assert captured.status_code == 200
    assert [t["ticket_number"] for t in captured.json()] == [1, 2, 3]
    assert {t["payment_method"] for t in captured.json()} == {"two-step-order"}


async def test_draw_and_history(client):
    lottery = await open_round(client)
    await client.post(
        "/api/payment/crypto",
        json={"lottery_id": lottery["id"], "quantity": 3, "transaction_signature": SIGNATURE},
        headers=ALICE,
    )

    drawn = await client.post(f"/api/admin/lottery/{lottery['id']}/draw", headers=ADMIN)

    assert drawn.status_code == 200
    body = drawn.json()
    assert body["drawn"] is True
    assert body["winner_ticket_number"] in (1, 2, 3)
    assert body["round"]["status"] == "COMPLETED"

    history = (await client.get("/api/lottery/history")).json()
    assert [r["id"] for r in history] == [lottery["id"]]
    tickets = (await client.get(f"/api/lottery/{lottery['id']}/tickets")).json()
    assert sum(t["is_winner"] for t in tickets) == 1

    again = (await client.post(f"/api/admin/lottery/{lottery['id']}/draw", headers=ADMIN)).json()
    assert again["drawn"] is False
    assert again["winner_ticket_number"] == body["winner_ticket_number"]


async def test_stats_endpoints(client):
    lottery = await open_round(client)
    await client.post(
        "/api/payment/crypto",
        json={"lottery_id": lottery["id"], "quantity": 2, "transaction_signature": SIGNATURE},
        headers=ALICE,
    )

    stats = (await client.get("/api/lottery/stats")).json()
    dashboard = (await client.get("/api/admin/dashboard", headers=ADMIN)).json()

    assert stats == dashboard
    assert stats["total_rounds"] == 1
    assert stats["total_tickets_sold"] == 2
    assert stats["active_users"] == 1
    assert stats["average_tickets_per_round"] == 2.0


async def test_late_webhook_is_acknowledged_on_every_delivery(client, monkeypatch):
    flagged = []

    async def record(payment_method, reference, reason, properties=None):
        flagged.append(reference)
        return True

    monkeypatch.setattr("cryptolotto.payments.adapter.send_reconciliation_event", record)
    lottery = await open_round(client)
    await client.post(
        "/api/payment/crypto",
        json={"lottery_id": lottery["id"], "quantity": 1, "transaction_signature": SIGNATURE},
        headers=ALICE,
    )
    await client.post(f"/api/admin/lottery/{lottery['id']}/draw", headers=ADMIN)

    payload = checkout_completed_event("sess_late", "bob", lottery["id"], 1)
    codes = []
    for _ in range(3):
        response = await client.post(
            "/api/payment/stripe/webhook", content=payload, headers={"Stripe-Signature": stripe_signature(payload)}
        )
        codes.append(response.status_code)

    assert codes == [200, 200, 200]
    assert flagged == ["sess_late"]
