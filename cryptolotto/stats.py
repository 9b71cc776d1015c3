import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select, func, distinct

from .database import Database
from .errors import StatsUnavailable, StoreError
from .models import LotteryRound, RoundStatus, Ticket

logger = logging.getLogger(__name__)


@dataclass
class LotteryStats:
    total_rounds: int
    total_tickets_sold: int
    total_prizes_paid: Decimal
    active_users: int
    average_tickets_per_round: float


class StatsAggregator:
    """Read-only summary counters across every round."""

    def __init__(self, db: Database):
        self.db = db

    async def get_stats(self) -> LotteryStats:
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(
                        func.count(LotteryRound.id),
                        func.coalesce(func.sum(LotteryRound.tickets_sold), 0),
                    )
                )
                total_rounds, total_tickets = result.one()

                result = await session.execute(
                    select(func.coalesce(func.sum(LotteryRound.total_pool), 0)).where(
                        LotteryRound.status == RoundStatus.COMPLETED,
                        LotteryRound.winner_ticket_number.is_not(None),
                    )
                )
                prizes_paid = result.scalar()

                result = await session.execute(select(func.count(distinct(Ticket.user_id))))
                active_users = result.scalar()
        except StoreError as e:
            logger.error(f"Failed to aggregate lottery stats: {e}")
            raise StatsUnavailable() from e

        total_rounds = int(total_rounds)
        total_tickets = int(total_tickets)
        return LotteryStats(
            total_rounds=total_rounds,
            total_tickets_sold=total_tickets,
            total_prizes_paid=Decimal(str(prizes_paid)).quantize(Decimal("0.01")),
            active_users=int(active_users),
            average_tickets_per_round=round(total_tickets / total_rounds, 2) if total_rounds else 0.0,
        )
