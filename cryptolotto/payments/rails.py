"""
Payment rails.

Each rail talks to one provider and turns its confirmation into a
`Confirmation`: who paid, for which round, how many tickets, and the
identifiers to tag the minted tickets with. Rails never touch the ledger.
"""
import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx

from ..config import Settings
from ..errors import (
    ExternalProviderError, MalformedSignature, PaymentNotCompleted, ValidationError,
    WebhookVerificationError,
)
from ..models import PaymentMethod

logger = logging.getLogger(__name__)

MIN_SIGNATURE_LENGTH = 10
WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass
class Confirmation:
    payment_method: PaymentMethod
    user_id: str
    lottery_id: str
    quantity: int
    payment_reference: str
    metadata: dict = field(default_factory=dict)


@dataclass
class CheckoutHandle:
    reference: str
    redirect_url: Optional[str] = None


class ProviderStatus:
    COMPLETED = "completed"
    EXPIRED = "expired"
    PENDING = "pending"


class PaymentRail(ABC):
    payment_method: PaymentMethod

    @abstractmethod
    async def create_checkout(
        self, user_id: str, email: Optional[str], lottery_id: str, round_number: int,
        unit_price: Decimal, quantity: int,
    ) -> CheckoutHandle: ...

    @abstractmethod
    async def poll(self, reference: str) -> tuple[str, Optional[Confirmation]]:
        """Provider-side state of a pending payment, with its confirmation once paid."""


def parse_quantity(raw) -> int:
    try:
        quantity = int(raw)
    except (TypeError, ValueError):
        raise ExternalProviderError(f"Unparseable quantity in payment metadata: {raw!r}")
    if quantity < 1:
        raise ExternalProviderError(f"Non-positive quantity in payment metadata: {quantity}")
    return quantity


class CardCheckoutRail(PaymentRail):
    """Stripe Checkout over its REST API."""

    payment_method = PaymentMethod.CARD

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    async def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        try:
            response = await self.http.request(
                method,
                f"{self.settings.stripe_api_base}{path}",
                data=data,
                auth=(self.settings.stripe_secret_key, ""),
                timeout=15.0,
            )
        except httpx.HTTPError as e:
            raise ExternalProviderError(f"Stripe request failed: {e}", path=path) from e
        if response.status_code >= 400:
            raise ExternalProviderError(
                f"Stripe API error: {response.status_code}", path=path
            )
        return response.json()

    async def create_checkout(self, user_id, email, lottery_id, round_number, unit_price, quantity):
        form = {
            "mode": "payment",
            "payment_method_types[0]": "card",
            "line_items[0][price_data][currency]": "usd",
            "line_items[0][price_data][product_data][name]": f"CryptoLotto Ticket - Round #{round_number}",
            "line_items[0][price_data][unit_amount]": str(int(unit_price * 100)),
            "line_items[0][quantity]": str(quantity),
            "success_url": f"{self.settings.frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.settings.frontend_url}/lottery",
            "metadata[user_id]": user_id,
            "metadata[lottery_id]": lottery_id,
            "metadata[quantity]": str(quantity),
            "metadata[type]": "lottery_ticket",
        }
        if email:
            form["customer_email"] = email
        session = await self._request("POST", "/v1/checkout/sessions", form)
        return CheckoutHandle(reference=session["id"], redirect_url=session.get("url"))

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> dict:
        """Check the Stripe-Signature header (t=<ts>,v1=<hex hmac>) and parse the event."""
        if not signature_header or not self.settings.stripe_webhook_secret:
            raise WebhookVerificationError()

        timestamp = None
        signatures = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            raise WebhookVerificationError("Malformed signature header")

        signed_payload = timestamp.encode() + b"." + payload
        expected = hmac.new(
            self.settings.stripe_webhook_secret.encode(), signed_payload, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise WebhookVerificationError()

        try:
            age = abs(time.time() - int(timestamp))
        except ValueError:
            raise WebhookVerificationError("Malformed signature timestamp")
        if age > WEBHOOK_TOLERANCE_SECONDS:
            raise WebhookVerificationError("Webhook timestamp outside tolerance")

        try:
            return json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise WebhookVerificationError("Invalid JSON payload")

    def confirmation_from_session(self, session: dict) -> Confirmation:
        metadata = session.get("metadata") or {}
        if not metadata.get("user_id") or not metadata.get("lottery_id"):
            raise ExternalProviderError(
                "Checkout session is missing lottery metadata", reference=session.get("id")
            )
        amount_total = session.get("amount_total")
        return Confirmation(
            payment_method=self.payment_method,
            user_id=metadata["user_id"],
            lottery_id=metadata["lottery_id"],
            quantity=parse_quantity(metadata.get("quantity", 1)),
            payment_reference=session["id"],
            metadata={
                "stripe_session_id": session["id"],
                "stripe_payment_intent_id": session.get("payment_intent"),
                "amount": str(Decimal(amount_total) / 100) if amount_total is not None else None,
            },
        )

    async def poll(self, reference):
        session = await self._request("GET", f"/v1/checkout/sessions/{reference}")
        if session.get("status") == "complete" and session.get("payment_status") == "paid":
            return ProviderStatus.COMPLETED, self.confirmation_from_session(session)
        if session.get("status") == "expired":
            return ProviderStatus.EXPIRED, None
        return ProviderStatus.PENDING, None


class OrderCaptureRail(PaymentRail):
    """PayPal Orders v2: the buyer approves an order, then we capture it."""

    payment_method = PaymentMethod.TWO_STEP_ORDER

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    async def _access_token(self) -> str:
        try:
            response = await self.http.post(
                f"{self.settings.paypal_base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
                timeout=15.0,
            )
        except httpx.HTTPError as e:
            raise ExternalProviderError(f"PayPal auth failed: {e}") from e
        if response.status_code >= 400:
            raise ExternalProviderError(f"PayPal auth error: {response.status_code}")
        return response.json()["access_token"]

    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        token = await self._access_token()
        try:
            response = await self.http.request(
                method,
                f"{self.settings.paypal_base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=15.0,
            )
        except httpx.HTTPError as e:
            raise ExternalProviderError(f"PayPal request failed: {e}", path=path) from e
        if response.status_code >= 400:
            raise ExternalProviderError(f"PayPal API error: {response.status_code}", path=path)
        return response.json()

    @staticmethod
    def composite_id(user_id: str, lottery_id: str, quantity: int) -> str:
        return f"{user_id}:{lottery_id}:{quantity}"

    @staticmethod
    def parse_composite_id(custom_id: str) -> tuple[str, str, int]:
        # rsplit so user ids may contain the separator
        parts = (custom_id or "").rsplit(":", 2)
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise ExternalProviderError(f"Unparseable order custom_id: {custom_id!r}")
        return parts[0], parts[1], parse_quantity(parts[2])

    async def create_checkout(self, user_id, email, lottery_id, round_number, unit_price, quantity):
        total = (unit_price * quantity).quantize(Decimal("0.01"))
        order = await self._request("POST", "/v2/checkout/orders", {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": "USD", "value": str(total)},
                "description": f"CryptoLotto Tickets - Round #{round_number} ({quantity} tickets)",
                "custom_id": self.composite_id(user_id, lottery_id, quantity),
            }],
            "application_context": {
                "return_url": f"{self.settings.frontend_url}/success",
                "cancel_url": f"{self.settings.frontend_url}/lottery",
                "brand_name": "CryptoLotto",
                "user_action": "PAY_NOW",
            },
        })
        approval_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return CheckoutHandle(reference=order["id"], redirect_url=approval_url)

    def confirmation_from_order(self, order_id: str, order: dict) -> Confirmation:
        if order.get("status") != "COMPLETED":
            raise PaymentNotCompleted(reference=order_id, status=order.get("status"))
        try:
            capture = order["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            raise ExternalProviderError("Capture response has no capture record", reference=order_id)

        custom_id = capture.get("custom_id") or order["purchase_units"][0].get("custom_id")
        user_id, lottery_id, quantity = self.parse_composite_id(custom_id)
        return Confirmation(
            payment_method=self.payment_method,
            user_id=user_id,
            lottery_id=lottery_id,
            quantity=quantity,
            payment_reference=order_id,
            metadata={
                "paypal_order_id": order_id,
                "paypal_capture_id": capture["id"],
                "amount": (capture.get("amount") or {}).get("value"),
            },
        )

    async def capture(self, order_id: str) -> Confirmation:
        order = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        return self.confirmation_from_order(order_id, order)

    async def poll(self, reference):
        order = await self._request("GET", f"/v2/checkout/orders/{reference}")
        status = order.get("status")
        if status == "APPROVED":
            return ProviderStatus.COMPLETED, await self.capture(reference)
        if status == "COMPLETED":
            return ProviderStatus.COMPLETED, self.confirmation_from_order(reference, order)
        if status == "VOIDED":
            return ProviderStatus.EXPIRED, None
        return ProviderStatus.PENDING, None


class OnChainRail:
    """Client-submitted Solana transaction signatures."""

    payment_method = PaymentMethod.ON_CHAIN

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http = http_client

    @staticmethod
    def check_shape(signature: Optional[str]) -> str:
        signature = (signature or "").strip()
        if len(signature) < MIN_SIGNATURE_LENGTH:
            raise MalformedSignature()
        return signature

    async def verify_on_chain(self, signature: str) -> None:
        """Confirm the transaction landed without error, when an RPC endpoint is configured."""
        if not self.settings.solana_rpc_url:
            return
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getTransaction",
            "params": [signature, {"encoding": "json", "maxSupportedTransactionVersion": 0}],
        }
        try:
            response = await self.http.post(self.settings.solana_rpc_url, json=payload, timeout=10.0)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalProviderError(f"Solana RPC request failed: {e}", reference=signature) from e

        result = data.get("result")
        if result is None:
            raise ValidationError("Transaction not found on chain")
        if (result.get("meta") or {}).get("err") is not None:
            raise ValidationError("Transaction failed on chain")

    def confirmation(self, user_id: str, lottery_id: str, quantity: int, signature: str,
                     unit_price: Decimal) -> Confirmation:
        return Confirmation(
            payment_method=self.payment_method,
            user_id=user_id,
            lottery_id=lottery_id,
            quantity=quantity,
            payment_reference=signature,
            metadata={
                "transaction_signature": signature,
                "amount": str(unit_price),
                "blockchain": "solana",
            },
        )
