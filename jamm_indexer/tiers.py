"""
Activity tiering: how often each tracked token is polled.

A token is hot for an hour after its last trade, warm for a day, cold for a
week and dormant after that (or if it never traded).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func

from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import Database, Swap, Token

logger = logging.getLogger(__name__)

TIERS = ("hot", "warm", "cold", "dormant")

TIER_THRESHOLDS = (
    ("hot", timedelta(hours=1)),
    ("warm", timedelta(hours=24)),
    ("cold", timedelta(days=7)),
)

TIER_PARALLELISM = {"hot": 6, "warm": 4, "cold": 2, "dormant": 2}


@dataclass(frozen=True)
class TierPolicy:
    name: str
    interval_seconds: int
    batch_size: int
    parallelism: int


def tier_policies(settings: IndexerSettings) -> Dict[str, TierPolicy]:
    """Polling policy per tier from settings."""
    return {
        tier: TierPolicy(
            name=tier,
            interval_seconds=settings.tier_intervals[tier],
            batch_size=settings.tier_batches[tier],
            parallelism=TIER_PARALLELISM[tier],
        )
        for tier in TIERS
    }


def classify(last_activity_at: Optional[datetime], now: datetime) -> str:
    """Tier for a token whose last trade was at last_activity_at."""
    if last_activity_at is None:
        return "dormant"
    age = now - last_activity_at
    for tier, limit in TIER_THRESHOLDS:
        if age < limit:
            return tier
    return "dormant"


def record_activity(token: Token, traded_at: datetime, now: datetime) -> bool:
    """
    Note a trade on a token and promote it immediately if the trade is recent.

    last_activity_at only moves forward, so ingesting old history never makes a
    token look active. Demotion is left to recompute_tiers().

    Args:
        token: Token row (attached to the caller's session)
        traded_at: Block time of the trade
        now: Current time

    Returns:
        True if the tier changed
    """
    if token.last_activity_at is None or traded_at > token.last_activity_at:
        token.last_activity_at = traded_at
    tier = classify(token.last_activity_at, now)
    current = token.activity_tier if token.activity_tier in TIERS else "dormant"
    if TIERS.index(tier) >= TIERS.index(current):
        return False
    logger.info(f"Promoting {token.symbol or token.token_address} from {current} to {tier}")
    token.activity_tier = tier
    token.last_tier_update = now
    return True


def recompute_tiers(db: Database, now: datetime) -> Dict[str, int]:
    """
    Reclassify every token from its last activity and refresh 24h swap counts.

    Returns:
        Counts: tokens per tier plus "changed"
    """
    counts = {tier: 0 for tier in TIERS}
    counts["changed"] = 0
    since = now - timedelta(hours=24)

    with db.get_session() as session:
        recent = dict(
            session.query(Swap.token_address, func.count(Swap.id))
            .filter(Swap.timestamp >= since)
            .group_by(Swap.token_address)
            .all()
        )
        for token in session.query(Token).all():
            tier = classify(token.last_activity_at, now)
            token.swap_count_24h = recent.get(token.token_address, 0)
            if tier != token.activity_tier:
                logger.debug(f"{token.token_address}: {token.activity_tier} -> {tier}")
                token.activity_tier = tier
                token.last_tier_update = now
                counts["changed"] += 1
            counts[tier] += 1
        session.commit()

    logger.info(
        f"Activity tiers: {counts['hot']} hot, {counts['warm']} warm, {counts['cold']} cold, "
        f"{counts['dormant']} dormant ({counts['changed']} changed)"
    )
    return counts


def get_entities_for_tier(db: Database, tier: str, limit: Optional[int] = None) -> List[Token]:
    """
    Tokens in a tier, most urgent first.

    Args:
        db: Database
        tier: Tier name
        limit: Maximum tokens (defaults to the tier's batch size)

    Returns:
        List of tokens
    """
    if tier not in TIERS:
        raise ValueError(f"Unknown tier {tier!r}")
    with db.get_session() as session:
        query = session.query(Token).filter(Token.activity_tier == tier)
        if tier == "hot":
            query = query.order_by(
                Token.swap_count_24h.desc(),
                Token.last_activity_at.desc().nulls_last(),
                Token.last_checked_block.asc(),
            )
        else:
            query = query.order_by(
                Token.last_checked_block.asc(),
                Token.last_activity_at.desc().nulls_last(),
            )
        if limit:
            query = query.limit(limit)
        return query.all()


class TierScheduler:
    """Tracks when each tier (and the tier recompute) last ran."""

    def __init__(self, settings: IndexerSettings):
        self.policies = tier_policies(settings)
        self.recompute_interval = settings.tier_recompute_interval
        self.last_run: Dict[str, datetime] = {}

    def due_tiers(self, now: datetime) -> List[str]:
        """Tiers whose polling interval has elapsed, hottest first."""
        due = []
        for tier in TIERS:
            last = self.last_run.get(tier)
            if last is None or (now - last).total_seconds() >= self.policies[tier].interval_seconds:
                due.append(tier)
        return due

    def recompute_due(self, now: datetime) -> bool:
        last = self.last_run.get("recompute")
        return last is None or (now - last).total_seconds() >= self.recompute_interval

    def mark_run(self, name: str, now: datetime) -> None:
        self.last_run[name] = now
