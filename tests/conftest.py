"""Pytest configuration and fixtures."""

import hashlib
import hmac
import json
import random
import time
from decimal import Decimal

import httpx
import pytest

from cryptolotto.config import Settings
from cryptolotto.database import Database
from cryptolotto.payments import CardCheckoutRail, OnChainRail, OrderCaptureRail, PaymentAdapter
from cryptolotto.rounds import RoundManager
from cryptolotto.tickets import TicketIssuer

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        otel_enabled=False,
        scheduler_enabled=False,
        ticket_price=Decimal("1.00"),
        max_tickets=10000,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_api_base="https://stripe.test",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_base_url="https://paypal.test",
        frontend_url="https://lotto.test",
    )


@pytest.fixture
async def db(settings):
    """Fresh file-backed SQLite ledger per test."""
    database = Database(settings.database_url)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def rounds(db, settings):
    return RoundManager(db, settings, rng=random.Random(1234))


@pytest.fixture
def issuer(db):
    return TicketIssuer(db)


@pytest.fixture
async def active_round(rounds):
    return await rounds.create_round()


class FakeProvider:
    """Records requests and answers Stripe / PayPal / Solana RPC calls."""

    def __init__(self):
        self.requests = []
        self.paypal_orders = {}
        self.stripe_sessions = {}
        self.capture_status = "COMPLETED"
        self.solana_result = {"meta": {"err": None}}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "stripe.test":
            if request.method == "POST" and path == "/v1/checkout/sessions":
                session_id = f"cs_test_{len(self.stripe_sessions) + 1}"
                self.stripe_sessions[session_id] = {"id": session_id, "status": "open"}
                return httpx.Response(200, json={"id": session_id, "url": f"https://checkout.test/{session_id}"})
            session_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.stripe_sessions[session_id])

        if host == "paypal.test":
            if path == "/v1/oauth2/token":
                return httpx.Response(200, json={"access_token": "A21-token"})
            if request.method == "POST" and path == "/v2/checkout/orders":
                body = json.loads(request.content)
                order_id = f"ORDER-{len(self.paypal_orders) + 1}"
                self.paypal_orders[order_id] = body["purchase_units"][0]
                return httpx.Response(201, json={
                    "id": order_id,
                    "status": "CREATED",
                    "links": [{"rel": "approve", "href": f"https://paypal.test/approve/{order_id}"}],
                })
            if path.endswith("/capture"):
                order_id = path.split("/")[-2]
                unit = self.paypal_orders[order_id]
                return httpx.Response(201, json={
                    "id": order_id,
                    "status": self.capture_status,
                    "purchase_units": [{
                        "payments": {"captures": [{
                            "id": f"CAPTURE-{order_id}",
                            "custom_id": unit["custom_id"],
                            "amount": unit["amount"],
                        }]},
                    }],
                })
            order_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": order_id, "status": "APPROVED"})

        if host == "solana.test":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": self.solana_result})

        return httpx.Response(404)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def http_client(provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))
    yield client
    await client.aclose()


@pytest.fixture
def payments(db, issuer, settings, http_client):
    return PaymentAdapter(
        db,
        issuer,
        card=CardCheckoutRail(settings, http_client),
        order=OrderCaptureRail(settings, http_client),
        on_chain=OnChainRail(settings, http_client),
    )


def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_completed_event(session_id: str, user_id: str, lottery_id: str, quantity: int) -> bytes:
    return json.dumps({
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "payment_intent": f"pi_{session_id}",
            "amount_total": quantity * 100,
            "status": "complete",
            "payment_status": "paid",
            "metadata": {"user_id": user_id, "lottery_id": lottery_id, "quantity": str(quantity)},
        }},
    }).encode()
