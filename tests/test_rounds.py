"""Round lifecycle: creation, lookup and the draw."""

import asyncio
import random
from datetime import timedelta
from decimal import Decimal

import pytest

from cryptolotto.errors import NoActiveRound, RoundConflict, RoundNotFound
from cryptolotto.models import PaymentMethod, RoundStatus
from cryptolotto.rounds import RoundManager


async def sell(issuer, lottery_id, count):
    for n in range(count):
        await issuer.issue_ticket(
            f"user-{n}", lottery_id, PaymentMethod.CARD, {"stripe_session_id": f"sess_{lottery_id}_{n}"}
        )


async def test_no_active_round_is_not_an_error(rounds):
    assert await rounds.get_active_round() is None


async def test_create_first_round_uses_configured_defaults(rounds):
    lottery = await rounds.create_round()

    assert lottery.round == 1
    assert lottery.status == RoundStatus.ACTIVE
    assert lottery.ticket_price == Decimal("1.00")
    assert lottery.max_tickets == 10000
    assert lottery.tickets_sold == 0
    assert lottery.total_pool == 0
    assert lottery.winner_ticket_number is None
    assert lottery.end_time - lottery.start_time == timedelta(days=7)

    active = await rounds.get_active_round()
    assert active.id == lottery.id


async def test_create_round_refuses_while_one_is_active(rounds, active_round):
    with pytest.raises(RoundConflict):
        await rounds.create_round()


async def test_concurrent_creation_yields_one_active_round(rounds):
    results = await asyncio.gather(
        rounds.create_round(), rounds.create_round(), return_exceptions=True
    )

    created = [r for r in results if not isinstance(r, Exception)]
    assert len(created) == 1
    assert all(isinstance(r, RoundConflict) for r in results if isinstance(r, Exception))


async def test_round_number_increments_after_completed_round(rounds, issuer, active_round):
    await sell(issuer, active_round.id, 2)
    result = await rounds.draw_round(active_round.id)
    assert result.drawn

    next_round = await rounds.create_round()
    assert next_round.round == active_round.round + 1


async def test_get_round_unknown_id(rounds):
    with pytest.raises(RoundNotFound):
        await rounds.get_round("missing")


async def test_draw_without_active_round(rounds):
    with pytest.raises(NoActiveRound):
        await rounds.draw_round()


async def test_draw_with_no_sales_leaves_round_active(rounds, active_round):
    result = await rounds.draw_round(active_round.id)

    assert not result.drawn
    assert result.reason == "no_sales"
    lottery = await rounds.get_round(active_round.id)
    assert lottery.status == RoundStatus.ACTIVE
    assert lottery.winner_ticket_number is None


async def test_draw_marks_exactly_one_winner(rounds, issuer, active_round):
    await sell(issuer, active_round.id, 5)

    result = await rounds.draw_round()

    assert result.drawn
    assert 1 <= result.winner_ticket_number <= 5
    lottery = await rounds.get_round(active_round.id)
    assert lottery.status == RoundStatus.COMPLETED
    assert lottery.winner_ticket_number == result.winner_ticket_number
    assert lottery.completed_at is not None

    tickets = await issuer.list_round_tickets(active_round.id)
    winners = [t for t in tickets if t.is_winner]
    assert len(winners) == 1
    assert winners[0].ticket_number == result.winner_ticket_number
    assert lottery.winner_user_id == winners[0].user_id


async def test_winner_always_within_sold_range(db, settings, issuer):
    for seed in range(5):
        manager = RoundManager(db, settings, rng=random.Random(seed))
        lottery = await manager.create_round()
        await sell(issuer, lottery.id, 3)
        result = await manager.draw_round(lottery.id)
        assert result.winner_ticket_number in {1, 2, 3}


async def test_drawing_a_completed_round_is_a_no_op(rounds, issuer, active_round):
    await sell(issuer, active_round.id, 2)
    first = await rounds.draw_round(active_round.id)

    second = await rounds.draw_round(active_round.id)

    assert not second.drawn
    assert second.reason == "not_active"
    assert second.round.winner_ticket_number == first.winner_ticket_number


async def test_concurrent_draws_complete_the_round_once(rounds, issuer, active_round):
    await sell(issuer, active_round.id, 4)

    results = await asyncio.gather(
        rounds.draw_round(active_round.id), rounds.draw_round(active_round.id)
    )

    assert sorted(r.drawn for r in results) == [False, True]
    tickets = await issuer.list_round_tickets(active_round.id)
    assert sum(t.is_winner for t in tickets) == 1


async def test_list_rounds_newest_first(rounds, issuer, active_round):
    await sell(issuer, active_round.id, 1)
    await rounds.draw_round(active_round.id)
    await rounds.create_round()

    all_rounds = await rounds.list_rounds()
    completed = await rounds.list_rounds(RoundStatus.COMPLETED)

    assert [r.round for r in all_rounds] == [2, 1]
    assert [r.round for r in completed] == [1]
