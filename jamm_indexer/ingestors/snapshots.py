"""
Periodic price snapshots from live pool reserves.
"""

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from jamm_indexer.database import PriceSnapshot, Token, upsert
from jamm_indexer.ingestors.base import BaseIngestor, IngestResult, read_reserves_many
from jamm_indexer.utils import safe_division

logger = logging.getLogger(__name__)


class SnapshotIngestor(BaseIngestor):
    """One snapshot per (token, block), read concurrently for a batch of tokens."""

    def __init__(self, *args, price_feed=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.price_feed = price_feed

    def snapshot(self, tokens: List[Token], block_number: Optional[int] = None, force: bool = False) -> IngestResult:
        """
        Snapshot current reserves of tokens.

        Args:
            tokens: Tokens to snapshot
            block_number: Block to label the snapshot with (defaults to chain height)
            force: Overwrite an existing snapshot at the same block

        Returns:
            IngestResult
        """
        result = IngestResult()
        if not tokens:
            return result
        if block_number is None:
            block_number = self.pool.height()
        header = self.block_cache.get(block_number)
        taken_at = self.block_time(block_number)
        eth_price = self.price_feed.get_eth_price() if self.price_feed else None
        reserves = read_reserves_many(self.pool, [t.amm_address for t in tokens])

        with self.db.get_session() as session:
            for token in tokens:
                value = reserves.get(token.amm_address)
                if isinstance(value, Exception) or value is None:
                    result.errors.append(f"Failed to read reserves for {token.token_address}: {value}")
                    continue
                eth_reserve, token_reserve = value
                result.tokens_processed += 1
                if eth_reserve <= 0 or token_reserve <= 0:
                    logger.debug(f"Skipping snapshot of {token.token_address}: empty reserves")
                    result.skipped += 1
                    continue
                try:
                    status = upsert(
                        session,
                        PriceSnapshot,
                        {"token_address": token.token_address, "block_number": block_number},
                        {
                            "block_hash": header.hash if header else None,
                            "price_eth": safe_division(eth_reserve, token_reserve),
                            "eth_reserve": eth_reserve,
                            "token_reserve": token_reserve,
                            "eth_price_usd": eth_price,
                            "is_interpolated": False,
                            "timestamp": taken_at,
                        },
                        force,
                    )
                    row = session.get(Token, token.token_address)
                    row.current_eth_reserve = eth_reserve
                    row.current_token_reserve = token_reserve
                    if header is not None:
                        self.db.record_block_hash(session, block_number, header.hash)
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    message = f"Failed to store snapshot for {token.token_address}: {e}"
                    logger.error(message)
                    result.errors.append(message)
                    continue
                result.count(status)

        logger.info(f"Stored {result.inserted} price snapshots at block {block_number}")
        return result
