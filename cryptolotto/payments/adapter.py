import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update

from .. import metrics
from ..database import Database
from ..errors import (
    CapacityExceeded, LottoError, NotFoundError, RoundNotFound,
    NoActiveRound, ValidationError,
)
from ..models import LotteryRound, Payment, PaymentMethod, PaymentStatus, RoundStatus, Ticket
from ..splunk_events import send_reconciliation_event
from ..telemetry import get_tracer
from ..tickets import TicketIssuer
from .rails import (
    CardCheckoutRail, CheckoutHandle, Confirmation, OnChainRail, OrderCaptureRail,
    PaymentRail, ProviderStatus,
)

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class PaymentAdapter:
    """
    Turns payment confirmations from any rail into minted tickets.

    Every confirmed unit is one `issue_ticket` call keyed by
    (payment_method, transaction reference, sequence), so retried webhooks
    and captures never mint twice.
    """

    def __init__(
        self,
        db: Database,
        issuer: TicketIssuer,
        card: CardCheckoutRail,
        order: OrderCaptureRail,
        on_chain: OnChainRail,
    ):
        self.db = db
        self.issuer = issuer
        self.card = card
        self.order = order
        self.on_chain = on_chain
        self.rails: dict[PaymentMethod, PaymentRail] = {
            PaymentMethod.CARD: card,
            PaymentMethod.TWO_STEP_ORDER: order,
        }

    async def _purchasable_round(self, lottery_id: str, quantity: int) -> LotteryRound:
        async with self.db.session() as session:
            lottery = await session.get(LotteryRound, lottery_id)
        if lottery is None:
            raise RoundNotFound(lottery_id=lottery_id)
        if lottery.status != RoundStatus.ACTIVE:
            raise NoActiveRound(f"Round {lottery.round} is not accepting tickets", lottery_id=lottery_id)
        if lottery.tickets_sold + quantity > lottery.max_tickets:
            raise CapacityExceeded(lottery_id=lottery_id, quantity=quantity)
        return lottery

    async def _record_payment(
        self, user_id: str, lottery: LotteryRound, quantity: int,
        payment_method: PaymentMethod, reference: str, status: PaymentStatus,
    ) -> Payment:
        now = datetime.utcnow()
        payment = Payment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            lottery_id=lottery.id,
            quantity=quantity,
            amount=lottery.ticket_price * quantity,
            payment_method=payment_method,
            external_reference=reference,
            status=status,
            created_at=now,
            updated_at=now,
        )
        async with self.db.session() as session:
            session.add(payment)
        return payment

    async def _start_checkout(
        self, rail: PaymentRail, user_id: str, email: Optional[str], lottery_id: str, quantity: int
    ) -> CheckoutHandle:
        lottery = await self._purchasable_round(lottery_id, quantity)
        with tracer.start_as_current_span("payment.create_checkout") as span:
            span.set_attribute("payment.method", rail.payment_method.value)
            span.set_attribute("payment.quantity", quantity)
            handle = await rail.create_checkout(
                user_id, email, lottery.id, lottery.round, lottery.ticket_price, quantity
            )
        await self._record_payment(
            user_id, lottery, quantity, rail.payment_method, handle.reference, PaymentStatus.PENDING
        )
        logger.info(
            "Checkout created",
            extra={"lottery_id": lottery_id, "user_id": user_id, "quantity": quantity,
                   "payment_method": rail.payment_method.value, "reference": handle.reference}
        )
        return handle

    async def create_card_checkout(self, user_id: str, email: Optional[str], lottery_id: str, quantity: int):
        return await self._start_checkout(self.card, user_id, email, lottery_id, quantity)

    async def create_order(self, user_id: str, email: Optional[str], lottery_id: str, quantity: int):
        return await self._start_checkout(self.order, user_id, email, lottery_id, quantity)

    async def handle_card_webhook(self, payload: bytes, signature_header: Optional[str]) -> list[Ticket]:
        """Verify and act on a card-checkout callback. Returns tickets minted (or replayed)."""
        try:
            event = self.card.verify_webhook(payload, signature_header)
        except ValidationError:
            metrics.PAYMENTS_REJECTED.labels(payment_method="card", reason="signature").inc()
            logger.warning("Rejected card webhook with invalid signature")
            raise

        event_type = event.get("type")
        session = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            confirmation = self.card.confirmation_from_session(session)
            try:
                return await self.fulfil(confirmation)
            except (ValidationError, NotFoundError) as e:
                # The payment is now FAILED and flagged; a redelivery cannot change that.
                logger.warning(
                    f"Acknowledging unfulfillable card payment: {e.message}",
                    extra={"lottery_id": confirmation.lottery_id, "reference": confirmation.payment_reference}
                )
                return []

        if event_type == "checkout.session.expired":
            await self._set_status(PaymentMethod.CARD, session.get("id"), PaymentStatus.EXPIRED)
        elif event_type == "payment_intent.payment_failed":
            logger.error("Card payment failed", extra={"reference": session.get("id")})
        else:
            logger.info(f"Unhandled card webhook event: {event_type}")
        return []

    async def capture_order(self, order_id: str) -> list[Ticket]:
        try:
            confirmation = await self.order.capture(order_id)
        except ValidationError:
            metrics.PAYMENTS_REJECTED.labels(payment_method="two-step-order", reason="not_completed").inc()
            raise
        return await self.fulfil(confirmation)

    async def confirm_on_chain(
        self, user_id: str, lottery_id: str, quantity: int, signature: str
    ) -> list[Ticket]:
        try:
            signature = self.on_chain.check_shape(signature)
        except ValidationError:
            metrics.PAYMENTS_REJECTED.labels(payment_method="on-chain", reason="malformed").inc()
            raise

        async with self.db.session() as session:
            result = await session.execute(
                select(Ticket).where(
                    Ticket.payment_method == PaymentMethod.ON_CHAIN,
                    Ticket.transaction_reference == signature,
                ).order_by(Ticket.batch_sequence)
            )
            already_minted = list(result.scalars().all())
        if already_minted:
            # Resubmitted signature: the units it paid for are already tickets.
            TicketIssuer.ensure_same_purchase(already_minted[0], user_id, lottery_id)
            return already_minted

        lottery = await self._purchasable_round(lottery_id, quantity)
        await self.on_chain.verify_on_chain(signature)
        confirmation = self.on_chain.confirmation(
            user_id, lottery.id, quantity, signature, lottery.ticket_price
        )
        return await self.fulfil(confirmation)

    async def fulfil(self, confirmation: Confirmation) -> list[Ticket]:
        """Mint one ticket per confirmed unit and settle the payment record."""
        method = confirmation.payment_method
        tickets = []
        with tracer.start_as_current_span("payment.fulfil") as span:
            span.set_attribute("payment.method", method.value)
            span.set_attribute("payment.quantity", confirmation.quantity)
            try:
                for sequence in range(confirmation.quantity):
                    ticket = await self.issuer.issue_ticket(
                        confirmation.user_id,
                        confirmation.lottery_id,
                        method,
                        confirmation.metadata,
                        sequence=sequence,
                    )
                    tickets.append(ticket)
            except (ValidationError, NotFoundError) as e:
                # Money was taken but the round can no longer honour it.
                previous = await self._settle(confirmation, PaymentStatus.FAILED)
                if previous != PaymentStatus.FAILED:
                    await self._flag_for_reconciliation(confirmation, e, minted=len(tickets))
                metrics.PAYMENTS_REJECTED.labels(payment_method=method.value, reason="unfulfillable").inc()
                raise

        await self._settle(confirmation, PaymentStatus.COMPLETED)
        metrics.PAYMENTS_CONFIRMED.labels(payment_method=method.value).inc()
        logger.info(
            f"Payment fulfilled with {len(tickets)} tickets",
            extra={"lottery_id": confirmation.lottery_id, "user_id": confirmation.user_id,
                   "payment_method": method.value, "reference": confirmation.payment_reference,
                   "quantity": confirmation.quantity}
        )
        return tickets

    async def _flag_for_reconciliation(self, confirmation: Confirmation, error: LottoError, minted: int):
        logger.error(
            f"Captured payment could not be fulfilled: {error.message}",
            extra={"lottery_id": confirmation.lottery_id, "user_id": confirmation.user_id,
                   "payment_method": confirmation.payment_method.value,
                   "reference": confirmation.payment_reference, "quantity": confirmation.quantity}
        )
        await send_reconciliation_event(
            confirmation.payment_method.value,
            confirmation.payment_reference,
            error.message,
            {"user_id": confirmation.user_id, "lottery_id": confirmation.lottery_id,
             "quantity": confirmation.quantity, "minted": minted},
        )

    async def _settle(self, confirmation: Confirmation, status: PaymentStatus) -> Optional[PaymentStatus]:
        """Record the outcome on the payment row. Returns its prior status, None if it had none."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Payment).where(
                    Payment.payment_method == confirmation.payment_method,
                    Payment.external_reference == confirmation.payment_reference,
                )
            )
            payment = result.scalar_one_or_none()
            now = datetime.utcnow()
            if payment is None:
                lottery = await session.get(LotteryRound, confirmation.lottery_id)
                price = lottery.ticket_price if lottery else Decimal("0")
                session.add(Payment(
                    id=str(uuid.uuid4()),
                    user_id=confirmation.user_id,
                    lottery_id=confirmation.lottery_id,
                    quantity=confirmation.quantity,
                    amount=price * confirmation.quantity,
                    payment_method=confirmation.payment_method,
                    external_reference=confirmation.payment_reference,
                    status=status,
                    created_at=now,
                    updated_at=now,
                ))
                return None

            previous = payment.status
            if previous != PaymentStatus.COMPLETED:
                payment.status = status
                payment.updated_at = now
        return previous

    async def _set_status(self, method: PaymentMethod, reference: Optional[str], status: PaymentStatus):
        if not reference:
            return
        async with self.db.session() as session:
            await session.execute(
                update(Payment)
                .where(
                    Payment.payment_method == method,
                    Payment.external_reference == reference,
                    Payment.status == PaymentStatus.PENDING,
                )
                .values(status=status, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Payment marked {status.value}", extra={"payment_method": method.value, "reference": reference})

    async def list_user_payments(self, user_id: str) -> list[Payment]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Payment).where(Payment.user_id == user_id).order_by(Payment.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_payments(self, limit: int = 200) -> list[Payment]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Payment).order_by(Payment.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def sweep_pending_payments(self, older_than: timedelta) -> dict:
        """Re-check stale PENDING checkouts with their provider. Returns outcome counts."""
        cutoff = datetime.utcnow() - older_than
        async with self.db.session() as session:
            result = await session.execute(
                select(Payment).where(
                    Payment.status == PaymentStatus.PENDING,
                    Payment.created_at < cutoff,
                )
            )
            pending = list(result.scalars().all())

        outcomes = {"completed": 0, "expired": 0, "pending": 0, "error": 0}
        for payment in pending:
            rail = self.rails.get(payment.payment_method)
            if rail is None:
                continue
            logger.info(
                "Processing pending payment",
                extra={"payment_method": payment.payment_method.value, "reference": payment.external_reference}
            )
            try:
                status, confirmation = await rail.poll(payment.external_reference)
                if status == ProviderStatus.COMPLETED:
                    await self.fulfil(confirmation)
                    outcome = "completed"
                elif status == ProviderStatus.EXPIRED:
                    await self._set_status(payment.payment_method, payment.external_reference, PaymentStatus.EXPIRED)
                    outcome = "expired"
                else:
                    outcome = "pending"
            except LottoError as e:
                logger.error(
                    f"Pending payment check failed: {e}",
                    extra={"payment_method": payment.payment_method.value, "reference": payment.external_reference}
                )
                outcome = "error"
            outcomes[outcome] += 1
            metrics.PAYMENTS_SWEPT.labels(outcome=outcome).inc()
        return outcomes
