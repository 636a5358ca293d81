from datetime import timedelta

import pytest

from fakes import START, WEI, amm_address, token_address
from jamm_indexer.database import Swap, Token
from jamm_indexer.ingestors import LaunchIngestor, SwapIngestor
from jamm_indexer.tiers import (
    TierScheduler,
    classify,
    get_entities_for_tier,
    recompute_tiers,
    record_activity,
    tier_policies,
)


def add_token(db, n, tier="dormant", last_activity=None, swap_count=0, last_checked=100):
    with db.get_session() as session:
        session.add(
            Token(
                token_address=token_address(n),
                amm_address=amm_address(n),
                block_number=50,
                activity_tier=tier,
                last_activity_at=last_activity,
                swap_count_24h=swap_count,
                last_checked_block=last_checked,
            )
        )
        session.commit()


@pytest.mark.parametrize(
    "age, tier",
    [
        (timedelta(minutes=5), "hot"),
        (timedelta(hours=2), "warm"),
        (timedelta(days=3), "cold"),
        (timedelta(days=8), "dormant"),
    ],
)
def test_classify_by_last_activity(age, tier):
    assert classify(START - age, START) == tier


def test_never_traded_is_dormant():
    assert classify(None, START) == "dormant"


def test_record_activity_promotes_to_hot():
    token = Token(token_address=token_address(1), activity_tier="cold")
    traded_at = START - timedelta(minutes=5)

    assert record_activity(token, traded_at, START) is True
    assert token.activity_tier == "hot"
    assert token.last_activity_at == traded_at
    assert record_activity(token, traded_at, START) is False


def test_old_trade_does_not_promote_or_rewind_activity():
    recent = START - timedelta(days=2)
    token = Token(token_address=token_address(1), activity_tier="cold", last_activity_at=recent)

    assert record_activity(token, START - timedelta(days=9), START) is False
    assert token.activity_tier == "cold"
    assert token.last_activity_at == recent

    assert record_activity(token, START - timedelta(hours=3), START) is True
    assert token.activity_tier == "warm"
    assert token.last_activity_at == START - timedelta(hours=3)


def test_record_activity_never_demotes():
    token = Token(token_address=token_address(1), activity_tier="hot", last_activity_at=START - timedelta(hours=5))

    assert record_activity(token, START - timedelta(hours=4), START) is False
    assert token.activity_tier == "hot"


def test_trade_promotes_token_immediately(db, chain, settings, clock):
    chain.add_launch(100, token_address(1), amm_address(1))
    chain.add_swap(101, amm_address(1), eth_in=WEI // 10, token_out=300 * WEI)
    LaunchIngestor(db, chain, settings, clock=clock).ingest(100, 100)
    assert db.get_token(token_address(1)).activity_tier == "dormant"

    SwapIngestor(db, chain, settings, clock=clock).ingest_tokens(db.get_tokens(), to_block=110)

    assert db.get_token(token_address(1)).activity_tier == "hot"


def test_recompute_demotes_and_counts(db, clock):
    now = clock.now()
    add_token(db, 1, tier="hot", last_activity=now - timedelta(minutes=10))
    add_token(db, 2, tier="hot", last_activity=now - timedelta(hours=3))
    add_token(db, 3, tier="warm", last_activity=now - timedelta(days=2))
    add_token(db, 4, tier="cold", last_activity=None)
    with db.get_session() as session:
        session.add(
            Swap(
                token_address=token_address(1),
                block_number=99,
                tx_hash="0x01",
                log_index=0,
                timestamp=now - timedelta(minutes=10),
            )
        )
        session.commit()

    counts = recompute_tiers(db, now)

    assert counts == {"hot": 1, "warm": 1, "cold": 1, "dormant": 1, "changed": 3}
    assert db.get_token(token_address(2)).activity_tier == "warm"
    assert db.get_token(token_address(3)).activity_tier == "cold"
    assert db.get_token(token_address(4)).activity_tier == "dormant"
    assert db.get_token(token_address(1)).swap_count_24h == 1
    assert db.get_token(token_address(2)).last_tier_update == now


def test_hot_tier_ordering(db, clock):
    now = clock.now()
    add_token(db, 1, tier="hot", last_activity=now - timedelta(minutes=30), swap_count=2)
    add_token(db, 2, tier="hot", last_activity=now - timedelta(minutes=5), swap_count=9)
    add_token(db, 3, tier="hot", last_activity=now - timedelta(minutes=1), swap_count=2)
    add_token(db, 4, tier="warm", last_activity=now - timedelta(hours=2))

    hot = get_entities_for_tier(db, "hot")

    assert [t.token_address for t in hot] == [token_address(2), token_address(3), token_address(1)]
    assert len(get_entities_for_tier(db, "hot", limit=1)) == 1


def test_colder_tiers_ordered_by_staleness(db):
    add_token(db, 1, tier="cold", last_checked=300)
    add_token(db, 2, tier="cold", last_checked=100)

    cold = get_entities_for_tier(db, "cold")

    assert [t.token_address for t in cold] == [token_address(2), token_address(1)]


def test_unknown_tier_is_rejected(db):
    with pytest.raises(ValueError):
        get_entities_for_tier(db, "lukewarm")


def test_policies_follow_settings(settings):
    policies = tier_policies(settings)

    assert policies["hot"].interval_seconds == 10
    assert policies["dormant"].batch_size == 100
    assert policies["hot"].parallelism > policies["cold"].parallelism


def test_scheduler_due_tiers(settings):
    scheduler = TierScheduler(settings)
    assert scheduler.due_tiers(START) == ["hot", "warm", "cold", "dormant"]
    assert scheduler.recompute_due(START) is True

    for tier in scheduler.due_tiers(START):
        scheduler.mark_run(tier, START)
    scheduler.mark_run("recompute", START)

    assert scheduler.due_tiers(START + timedelta(seconds=5)) == []
    assert scheduler.due_tiers(START + timedelta(seconds=15)) == ["hot"]
    assert scheduler.due_tiers(START + timedelta(seconds=121)) == ["hot", "warm"]
    assert scheduler.recompute_due(START + timedelta(seconds=301)) is True
