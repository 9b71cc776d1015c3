import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from .errors import LottoError, RoundConflict
from .models import LotteryRound
from .payments import PaymentAdapter
from .rounds import RoundManager

logger = logging.getLogger(__name__)


class RoundRollover:
    """Draws rounds whose end_time has passed and opens the next one."""

    def __init__(self, rounds: RoundManager):
        self.rounds = rounds
        self._reported_unsold: Optional[str] = None

    async def tick(self, now: Optional[datetime] = None) -> Optional[LotteryRound]:
        """One scheduler pass. Returns the round opened during this pass, if any."""
        now = now or datetime.utcnow()
        active = await self.rounds.get_active_round()

        if active is None:
            return await self._open_next()

        if active.end_time > now:
            return None

        result = await self.rounds.draw_round(active.id)
        if not result.drawn and result.reason == "no_sales":
            # Round stays open until someone buys a ticket; report once.
            if self._reported_unsold != active.id:
                logger.info(
                    f"Round {active.round} ended with no sales and stays active",
                    extra={"lottery_id": active.id, "round": active.round}
                )
                self._reported_unsold = active.id
            return None

        return await self._open_next()

    async def _open_next(self) -> Optional[LotteryRound]:
        try:
            return await self.rounds.create_round()
        except RoundConflict:
            logger.info("Another worker opened the next round")
            return None


async def round_rollover_loop(rollover: RoundRollover, interval: int):
    """Background job that checks for expired rounds every `interval` seconds."""
    while True:
        try:
            await rollover.tick()
        except LottoError as e:
            logger.error(f"Error in round rollover: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error in round rollover: {e}")
        await asyncio.sleep(interval)


async def pending_payment_loop(adapter: PaymentAdapter, interval: int, older_than: timedelta):
    """Background job that re-checks stale pending payments."""
    while True:
        await asyncio.sleep(interval)
        try:
            outcomes = await adapter.sweep_pending_payments(older_than)
            if any(outcomes.values()):
                logger.info(f"Pending payment sweep: {outcomes}")
        except LottoError as e:
            logger.error(f"Error processing pending payments: {e.message}")
        except Exception as e:
            logger.exception(f"Unexpected error processing pending payments: {e}")
