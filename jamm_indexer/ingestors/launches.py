"""
Token launch ingestion from the factory's TokenLaunched events.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from jamm_indexer.abis import TOKEN_LAUNCHED_TOPIC
from jamm_indexer.database import INSERTED, PriceSnapshot, Token, upsert
from jamm_indexer.decoder import LaunchEvent, decode_launch
from jamm_indexer.errors import DecodeError, PersistenceError
from jamm_indexer.ingestors.base import BaseIngestor, IngestResult
from jamm_indexer.node_pool import LogEntry
from jamm_indexer.utils import format_ether, safe_division

logger = logging.getLogger(__name__)

HISTORY_INTERVAL_SECONDS = 300
HISTORY_MAX_DEVIATION = 0.25


def launch_reserves(event: LaunchEvent, total_supply: int) -> tuple[float, float, float]:
    """
    Initial pool state of a launch.

    Returns:
        (eth_reserve, token_reserve, price_eth)
    """
    eth_reserve = format_ether(event.initial_liquidity_wei)
    token_reserve = total_supply * event.liquidity_percent / 100
    return eth_reserve, token_reserve, safe_division(eth_reserve, token_reserve)


def price_walk(initial_price: float, points: int, rng: random.Random, max_deviation: float = HISTORY_MAX_DEVIATION) -> List[float]:
    """
    Bounded random walk that ends back at the initial price.

    Args:
        initial_price: Anchor price
        points: Number of prices
        rng: Random source
        max_deviation: Maximum relative distance from the anchor

    Returns:
        List of prices
    """
    if points <= 0:
        return []
    low = initial_price * (1 - max_deviation)
    high = initial_price * (1 + max_deviation)
    prices = [initial_price]
    current = initial_price
    for _ in range(1, points):
        volatility = 0.02 + rng.random() * 0.03
        current = min(high, max(low, current + current * volatility * (rng.random() - 0.5) * 2))
        prices.append(current)

    # Ease the last points back to the anchor
    tail = min(10, points)
    gap = initial_price - prices[-1]
    for i in range(len(prices) - tail, len(prices)):
        steps_done = i - (len(prices) - tail) + 1
        prices[i] += gap * steps_done / tail
    return prices


class LaunchIngestor(BaseIngestor):
    """Creates tracked tokens from TokenLaunched logs."""

    indexer_type = "launch"

    def ingest(self, from_block: int, to_block: int, force: bool = False) -> IngestResult:
        """
        Ingest launches in an inclusive block range.

        Args:
            from_block: First block
            to_block: Last block
            force: Overwrite launch fields of already known tokens

        Returns:
            IngestResult
        """
        result = IngestResult(blocks_scanned=to_block - from_block + 1)
        logs = self.pool.chunked_logs(
            {"address": self.settings.factory_address, "topics": [TOKEN_LAUNCHED_TOPIC]},
            from_block,
            to_block,
        )
        logs = self.drop_skipped(logs, from_block, to_block)
        if logs:
            logger.info(f"Found {len(logs)} token launches in blocks {from_block}-{to_block}")

        for log in logs:
            try:
                event = decode_launch(log)
            except DecodeError as e:
                logger.warning(str(e))
                result.errors.append(str(e))
                continue

            try:
                status = self._store(event, log, force)
            except PersistenceError as e:
                logger.error(str(e))
                result.errors.append(str(e))
                continue

            result.count(status)
            if status == INSERTED:
                result.tokens_processed += 1
                logger.info(f"Indexed launch of {event.symbol} ({event.token_address}) at block {log.block_number}")
                self.generate_history(event.token_address)
        return result

    def _store(self, event: LaunchEvent, log: LogEntry, force: bool) -> str:
        eth_reserve, token_reserve, price = launch_reserves(event, self.settings.total_supply)
        launched_at = self.block_time(log.block_number)
        launch_fields = {
            "amm_address": event.amm_address,
            "name": event.name,
            "symbol": event.symbol,
            "creator_address": event.creator,
            "liquidity_percent": event.liquidity_percent,
            "initial_liquidity_eth": eth_reserve,
            "launch_price_eth": price,
            "block_number": log.block_number,
            "block_hash": log.block_hash,
            "tx_hash": log.tx_hash,
        }
        initial_state = {
            "current_eth_reserve": eth_reserve,
            "current_token_reserve": token_reserve,
            "total_volume_eth": 0.0,
            "created_at": launched_at,
            "last_checked_block": log.block_number,
            "activity_tier": "dormant",
            "swap_count_24h": 0,
            "last_tier_update": self.clock.now(),
        }

        with self.db.get_session() as session:
            try:
                known = session.get(Token, event.token_address) is not None
                values = launch_fields if known else {**launch_fields, **initial_state}
                status = upsert(session, Token, {"token_address": event.token_address}, values, force)
                self.db.record_block_hash(session, log.block_number, log.block_hash)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to store launch {log.tx_hash}:{log.log_index}: {e}") from e
        return status

    def generate_history(self, token_address: str, hours: Optional[int] = None, seed: Optional[int] = None) -> int:
        """
        Seed synthetic price history ending at the token's launch.

        Best effort: failures are logged and reported as zero rows.

        Args:
            token_address: Token to seed
            hours: Hours of history (defaults to settings.initial_history_hours)
            seed: Random seed (defaults to one derived from the address)

        Returns:
            Number of interpolated snapshots written
        """
        hours = hours if hours is not None else self.settings.initial_history_hours
        try:
            with self.db.get_session() as session:
                token = session.get(Token, token_address.lower())
                if token is None or not token.launch_price_eth:
                    return 0
                existing = (
                    session.query(PriceSnapshot)
                    .filter_by(token_address=token.token_address, is_interpolated=True)
                    .first()
                )
                if existing is not None:
                    return 0

                rng = random.Random(seed if seed is not None else int(token.token_address, 16))
                points = int(hours * 3600 // HISTORY_INTERVAL_SECONDS)
                launched_at: datetime = token.created_at or self.clock.now()
                start = launched_at - timedelta(hours=hours)
                eth_reserve = token.initial_liquidity_eth or 0.0
                snapshots = []
                for i, price in enumerate(price_walk(token.launch_price_eth, points, rng)):
                    jittered_eth = eth_reserve * (0.95 + rng.random() * 0.1)
                    snapshots.append(
                        PriceSnapshot(
                            token_address=token.token_address,
                            block_number=None,
                            price_eth=price,
                            eth_reserve=jittered_eth,
                            token_reserve=safe_division(jittered_eth, price),
                            is_interpolated=True,
                            timestamp=start + timedelta(seconds=i * HISTORY_INTERVAL_SECONDS),
                        )
                    )
                session.add_all(snapshots)
                session.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Could not generate initial history for {token_address}: {e}")
            return 0

        logger.info(f"Generated {len(snapshots)} history snapshots for {token_address}")
        return len(snapshots)
