import logging
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from . import metrics
from .config import Settings
from .database import Database
from .errors import NoActiveRound, RoundConflict, RoundNotFound
from .models import LotteryRound, RoundStatus, Ticket
from .redis_streams import RedisStreamClient, emit, STREAM_ROUNDS_CREATED, STREAM_ROUNDS_DRAWN

logger = logging.getLogger(__name__)

# A purchase landing between reading tickets_sold and completing the round
# forces a re-read; bounded so a busy round cannot pin the draw forever.
MAX_DRAW_ATTEMPTS = 5


@dataclass
class DrawResult:
    round: LotteryRound
    drawn: bool
    winner_ticket_number: Optional[int] = None
    reason: Optional[str] = None


class RoundManager:
    """Lifecycle of lottery rounds: creation, lookup and the draw."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        events: Optional[RedisStreamClient] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.settings = settings
        self.events = events
        self.rng = rng or random.SystemRandom()

    async def get_active_round(self) -> Optional[LotteryRound]:
        """Return the ACTIVE round, or None between a draw and the next creation."""
        async with self.db.session() as session:
            result = await session.execute(
                select(LotteryRound).where(LotteryRound.status == RoundStatus.ACTIVE)
            )
            return result.scalar_one_or_none()

    async def get_round(self, round_id: str) -> LotteryRound:
        async with self.db.session() as session:
            lottery = await session.get(LotteryRound, round_id)
            if lottery is None:
                raise RoundNotFound(lottery_id=round_id)
            return lottery

    async def list_rounds(self, status: Optional[RoundStatus] = None, limit: int = 50) -> list[LotteryRound]:
        async with self.db.session() as session:
            query = select(LotteryRound)
            if status:
                query = query.where(LotteryRound.status == status)
            result = await session.execute(query.order_by(LotteryRound.round.desc()).limit(limit))
            return list(result.scalars().all())

    async def create_round(self) -> LotteryRound:
        """Open the next round. Fails with RoundConflict while another round is ACTIVE."""
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(LotteryRound).where(LotteryRound.status == RoundStatus.ACTIVE)
                )
                active = result.scalar_one_or_none()
                if active is not None:
                    raise RoundConflict(
                        f"Round {active.round} is still active", lottery_id=active.id
                    )

                result = await session.execute(select(func.max(LotteryRound.round)))
                previous = result.scalar() or 0

                now = datetime.utcnow()
                lottery = LotteryRound(
                    id=str(uuid.uuid4()),
                    round=previous + 1,
                    start_time=now,
                    end_time=now + timedelta(days=self.settings.round_duration_days),
                    ticket_price=self.settings.ticket_price,
                    total_pool=0,
                    tickets_sold=0,
                    max_tickets=self.settings.max_tickets,
                    status=RoundStatus.ACTIVE,
                )
                session.add(lottery)
                await session.flush()
        except IntegrityError as e:
            # Lost a concurrent creation to the single-active / unique round index
            raise RoundConflict("Another round was created concurrently") from e

        logger.info(
            f"New lottery round created: Round {lottery.round}",
            extra={"lottery_id": lottery.id, "round": lottery.round}
        )
        metrics.ROUNDS_CREATED.inc()
        metrics.ACTIVE_ROUND_TICKETS.set(0)

        await emit(self.events, STREAM_ROUNDS_CREATED, {
            "lottery_id": lottery.id,
            "round": lottery.round,
            "end_time": lottery.end_time.isoformat(),
            "ticket_price": str(lottery.ticket_price),
            "max_tickets": lottery.max_tickets,
        })
        return lottery

    async def draw_round(self, round_id: Optional[str] = None) -> DrawResult:
        """
        Draw the winner of a round (the ACTIVE one when no id is given).

        The ACTIVE -> COMPLETED transition is a conditional update that also
        pins tickets_sold, so exactly one concurrent caller completes the round
        and the winner is always among the tickets actually sold.
        """
        start_time = time.time()

        for _ in range(MAX_DRAW_ATTEMPTS):
            async with self.db.session() as session:
                lottery = await self._resolve(session, round_id)

                if lottery.status != RoundStatus.ACTIVE:
                    logger.info(
                        f"Round {lottery.round} is {lottery.status.value}, nothing to draw",
                        extra={"lottery_id": lottery.id, "status": lottery.status.value}
                    )
                    metrics.DRAWS_SKIPPED.labels(reason="not_active").inc()
                    return DrawResult(lottery, drawn=False, reason="not_active")

                sold = lottery.tickets_sold
                if sold == 0:
                    logger.info(
                        f"No tickets sold in round {lottery.round}, draw skipped",
                        extra={"lottery_id": lottery.id, "round": lottery.round}
                    )
                    metrics.DRAWS_SKIPPED.labels(reason="no_sales").inc()
                    return DrawResult(lottery, drawn=False, reason="no_sales")

                winner_number = self.rng.randint(1, sold)
                result = await session.execute(
                    select(Ticket.user_id).where(
                        Ticket.lottery_id == lottery.id,
                        Ticket.ticket_number == winner_number,
                    )
                )
                winner_user_id = result.scalar_one_or_none()

                completed_at = datetime.utcnow()
                result = await session.execute(
                    update(LotteryRound)
                    .where(
                        LotteryRound.id == lottery.id,
                        LotteryRound.status == RoundStatus.ACTIVE,
                        LotteryRound.tickets_sold == sold,
                    )
                    .values(
                        status=RoundStatus.COMPLETED,
                        winner_ticket_number=winner_number,
                        winner_user_id=winner_user_id,
                        completed_at=completed_at,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Either another draw won the transition or a sale landed; re-read.
                    round_id = lottery.id
                    continue

                await session.execute(
                    update(Ticket)
                    .where(Ticket.lottery_id == lottery.id, Ticket.ticket_number == winner_number)
                    .values(is_winner=True)
                    .execution_options(synchronize_session=False)
                )
                await session.refresh(lottery)
                break
        else:
            raise RoundConflict("Round kept changing during the draw", lottery_id=round_id)

        duration = time.time() - start_time
        metrics.ROUNDS_COMPLETED.inc()
        metrics.DRAW_DURATION.observe(duration)

        logger.info(
            f"Draw completed: winning ticket {winner_number} of {sold}",
            extra={
                "lottery_id": lottery.id,
                "round": lottery.round,
                "winner_ticket_number": winner_number,
                "tickets_sold": sold,
            }
        )

        await emit(self.events, STREAM_ROUNDS_DRAWN, {
            "lottery_id": lottery.id,
            "round": lottery.round,
            "winner_ticket_number": winner_number,
            "winner_user_id": winner_user_id,
            "total_pool": str(lottery.total_pool),
        })
        return DrawResult(lottery, drawn=True, winner_ticket_number=winner_number)

    async def _resolve(self, session, round_id: Optional[str]) -> LotteryRound:
        if round_id is None:
            result = await session.execute(
                select(LotteryRound).where(LotteryRound.status == RoundStatus.ACTIVE)
            )
            lottery = result.scalar_one_or_none()
            if lottery is None:
                raise NoActiveRound()
            return lottery

        lottery = await session.get(LotteryRound, round_id)
        if lottery is None:
            raise RoundNotFound(lottery_id=round_id)
        return lottery
