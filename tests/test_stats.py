from decimal import Decimal

import pytest

from cryptolotto.errors import StatsUnavailable, StoreError
from cryptolotto.models import PaymentMethod
from cryptolotto.stats import StatsAggregator


async def test_stats_on_empty_ledger(db):
    stats = await StatsAggregator(db).get_stats()

    assert stats.total_rounds == 0
    assert stats.total_tickets_sold == 0
    assert stats.total_prizes_paid == Decimal("0.00")
    assert stats.active_users == 0
    assert stats.average_tickets_per_round == 0.0


async def test_stats_across_rounds(db, rounds, issuer, active_round):
    for n, user in enumerate(["alice", "bob", "alice", "carol"]):
        await issuer.issue_ticket(user, active_round.id, PaymentMethod.CARD, {"stripe_session_id": f"s{n}"})
    await rounds.draw_round(active_round.id)

    second = await rounds.create_round()
    await issuer.issue_ticket("dave", second.id, PaymentMethod.ON_CHAIN, {"transaction_signature": "sig-0000000001"})

    stats = await StatsAggregator(db).get_stats()

    assert stats.total_rounds == 2
    assert stats.total_tickets_sold == 5
    assert stats.total_prizes_paid == Decimal("4.00")
    assert stats.active_users == 4
    assert stats.average_tickets_per_round == 2.5


async def test_unsold_round_pays_no_prize(db, rounds, active_round):
    await rounds.draw_round(active_round.id)

    stats = await StatsAggregator(db).get_stats()

    assert stats.total_rounds == 1
    assert stats.total_prizes_paid == Decimal("0.00")
    assert stats.average_tickets_per_round == 0.0


async def test_store_failure_is_reported_as_unavailable(db, monkeypatch):
    def broken_session():
        raise StoreError()

    monkeypatch.setattr(db, "session", broken_session)

    with pytest.raises(StatsUnavailable):
        await StatsAggregator(db).get_stats()
