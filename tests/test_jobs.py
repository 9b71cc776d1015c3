from datetime import timedelta

from cryptolotto.jobs import RoundRollover
from cryptolotto.models import PaymentMethod, RoundStatus


async def test_tick_opens_first_round(rounds):
    opened = await RoundRollover(rounds).tick()

    assert opened is not None
    assert opened.round == 1
    assert (await rounds.get_active_round()).id == opened.id


async def test_tick_leaves_unexpired_round_alone(rounds, active_round):
    assert await RoundRollover(rounds).tick() is None

    assert (await rounds.get_active_round()).id == active_round.id


async def test_expired_round_is_drawn_and_replaced(rounds, issuer, active_round):
    await issuer.issue_ticket("alice", active_round.id, PaymentMethod.CARD, {"stripe_session_id": "s1"})

    opened = await RoundRollover(rounds).tick(now=active_round.end_time + timedelta(seconds=1))

    assert opened.round == active_round.round + 1
    drawn = await rounds.get_round(active_round.id)
    assert drawn.status == RoundStatus.COMPLETED
    assert drawn.winner_ticket_number == 1


async def test_expired_round_without_sales_stays_active(rounds, active_round, caplog):
    rollover = RoundRollover(rounds)
    later = active_round.end_time + timedelta(hours=1)

    with caplog.at_level("INFO", logger="cryptolotto.jobs"):
        assert await rollover.tick(now=later) is None
        assert await rollover.tick(now=later) is None

    assert (await rounds.get_active_round()).id == active_round.id
    assert sum("no sales" in r.getMessage() for r in caplog.records) == 1
