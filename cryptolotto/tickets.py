import asyncio
import json
import logging
import uuid
import weakref
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from . import metrics
from .database import Database
from .errors import (
    CapacityExceeded, NoActiveRound, ReferenceConflict, RoundNotFound, StoreError, ValidationError,
)
from .models import LotteryRound, PaymentMethod, RoundStatus, Ticket
from .redis_streams import RedisStreamClient, emit, STREAM_TICKETS_ISSUED

logger = logging.getLogger(__name__)

# Provider-specific metadata keys carrying the external payment identifier.
REFERENCE_KEYS = (
    "transaction_reference",
    "stripe_session_id",
    "paypal_capture_id",
    "transaction_signature",
)


def transaction_reference(payment_metadata: dict) -> str:
    for key in REFERENCE_KEYS:
        value = payment_metadata.get(key)
        if value:
            return str(value)
    raise ValidationError("Payment metadata carries no transaction reference")


class TicketIssuer:
    """Records confirmed ticket purchases against a round."""

    def __init__(self, db: Database, events: Optional[RedisStreamClient] = None):
        self.db = db
        self.events = events
        # Held only while issuance against the round is in flight.
        self._round_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _round_lock(self, lottery_id: str) -> asyncio.Lock:
        lock = self._round_locks.get(lottery_id)
        if lock is None:
            lock = asyncio.Lock()
            self._round_locks[lottery_id] = lock
        return lock

    async def issue_ticket(
        self,
        user_id: str,
        lottery_id: str,
        payment_method: PaymentMethod,
        payment_metadata: dict,
        sequence: int = 0,
    ) -> Ticket:
        """
        Mint one ticket for a confirmed payment unit.

        The counter increment and the ticket insert commit together, and
        (payment_method, reference, sequence) identifies the unit, so a
        retried confirmation returns the ticket it already minted.
        """
        payment_method = PaymentMethod(payment_method)
        reference = transaction_reference(payment_metadata)

        async with self._round_lock(lottery_id):
            existing = await self._find_by_payment_unit(payment_method, reference, sequence)
            if existing is not None:
                self.ensure_same_purchase(existing, user_id, lottery_id)
                metrics.TICKETS_REPLAYED.labels(payment_method=payment_method.value).inc()
                logger.info(
                    "Payment unit already fulfilled, returning existing ticket",
                    extra={"lottery_id": lottery_id, "reference": reference,
                           "ticket_number": existing.ticket_number}
                )
                return existing

            try:
                ticket = await self._claim_and_insert(
                    user_id, lottery_id, payment_method, payment_metadata, reference, sequence
                )
            except IntegrityError as e:
                existing = await self._find_by_payment_unit(payment_method, reference, sequence)
                if existing is not None:
                    self.ensure_same_purchase(existing, user_id, lottery_id)
                    metrics.TICKETS_REPLAYED.labels(payment_method=payment_method.value).inc()
                    return existing
                logger.error(
                    f"Ticket insert conflict: {e}",
                    extra={"lottery_id": lottery_id, "reference": reference}
                )
                raise StoreError("Ticket write conflict, retry the request") from e

        metrics.TICKETS_ISSUED.labels(payment_method=payment_method.value).inc()
        metrics.ACTIVE_ROUND_TICKETS.set(ticket.ticket_number)
        logger.info(
            "Ticket issued",
            extra={
                "lottery_id": lottery_id,
                "user_id": user_id,
                "ticket_number": ticket.ticket_number,
                "payment_method": payment_method.value,
                "reference": reference,
            }
        )

        await emit(self.events, STREAM_TICKETS_ISSUED, {
            "ticket_id": ticket.id,
            "lottery_id": lottery_id,
            "user_id": user_id,
            "ticket_number": ticket.ticket_number,
            "payment_method": payment_method.value,
        })
        return ticket

    @staticmethod
    def ensure_same_purchase(existing: Ticket, user_id: str, lottery_id: str):
        """A payment unit replays only into the purchase that minted it."""
        if existing.lottery_id != lottery_id or existing.user_id != user_id:
            metrics.TICKETS_REJECTED.labels(reason="reference_conflict").inc()
            logger.warning(
                "Payment reference already minted for another purchase",
                extra={"lottery_id": lottery_id, "user_id": user_id,
                       "reference": existing.transaction_reference}
            )
            raise ReferenceConflict(lottery_id=lottery_id, reference=existing.transaction_reference)

    async def _claim_and_insert(
        self, user_id, lottery_id, payment_method, payment_metadata, reference, sequence
    ) -> Ticket:
        async with self.db.session() as session:
            result = await session.execute(
                update(LotteryRound)
                .where(
                    LotteryRound.id == lottery_id,
                    LotteryRound.status == RoundStatus.ACTIVE,
                    LotteryRound.tickets_sold < LotteryRound.max_tickets,
                )
                .values(
                    tickets_sold=LotteryRound.tickets_sold + 1,
                    total_pool=LotteryRound.total_pool + LotteryRound.ticket_price,
                )
                .returning(LotteryRound.tickets_sold, LotteryRound.ticket_price)
                .execution_options(synchronize_session=False)
            )
            claimed = result.one_or_none()
            if claimed is None:
                await self._raise_rejection(session, lottery_id)

            ticket_number, price = claimed
            ticket = Ticket(
                id=str(uuid.uuid4()),
                lottery_id=lottery_id,
                user_id=user_id,
                ticket_number=ticket_number,
                purchase_time=datetime.utcnow(),
                price=price,
                payment_method=payment_method,
                transaction_reference=reference,
                batch_sequence=sequence,
                payment_data=json.dumps(payment_metadata, default=str),
                is_winner=False,
            )
            session.add(ticket)
            await session.flush()
            return ticket

    async def _raise_rejection(self, session, lottery_id: str):
        lottery = await session.get(LotteryRound, lottery_id)
        if lottery is None:
            metrics.TICKETS_REJECTED.labels(reason="not_found").inc()
            raise RoundNotFound(lottery_id=lottery_id)
        if lottery.status != RoundStatus.ACTIVE:
            metrics.TICKETS_REJECTED.labels(reason="not_active").inc()
            raise NoActiveRound(
                f"Round {lottery.round} is not accepting tickets", lottery_id=lottery_id
            )
        metrics.TICKETS_REJECTED.labels(reason="capacity").inc()
        raise CapacityExceeded(
            f"Round {lottery.round} is sold out", lottery_id=lottery_id
        )

    async def _find_by_payment_unit(
        self, payment_method: PaymentMethod, reference: str, sequence: int
    ) -> Optional[Ticket]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Ticket).where(
                    Ticket.payment_method == payment_method,
                    Ticket.transaction_reference == reference,
                    Ticket.batch_sequence == sequence,
                )
            )
            return result.scalar_one_or_none()

    async def list_user_tickets(self, user_id: str) -> list[Ticket]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Ticket)
                .where(Ticket.user_id == user_id)
                .order_by(Ticket.purchase_time.desc())
            )
            return list(result.scalars().all())

    async def list_round_tickets(self, lottery_id: str) -> list[Ticket]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Ticket)
                .where(Ticket.lottery_id == lottery_id)
                .order_by(Ticket.ticket_number)
            )
            return list(result.scalars().all())
