"""
Per-stream indexing cursors and chain reorganization handling.

A cursor records the last indexed block and its hash. Before a run the stored
hash is compared with the canonical chain; on mismatch the detector walks back
through the hashes stored alongside indexed rows to the newest block that is
still canonical and rolls the mirror back to it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

from sqlalchemy.orm import Session

from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import (
    Database,
    IndexedBlock,
    IndexerCursor,
    PriceSnapshot,
    Swap,
    Token,
    TokenBurn,
    TokenLock,
    recompute_swap_aggregates,
)
from jamm_indexer.errors import ProviderUnavailable, ReorgDetected
from jamm_indexer.ingestors.base import read_reserves
from jamm_indexer.node_pool import BlockCache
from jamm_indexer.utils import SystemClock

logger = logging.getLogger(__name__)

# Rows whose block_hash doubles as a stored per-block hash.
HASHED_MODELS = (IndexedBlock, Swap, TokenBurn, PriceSnapshot, TokenLock)


@dataclass
class ReorgResult:
    detected: bool
    block_number: Optional[int] = None
    rollback_to_block: Optional[int] = None
    rollback_hash: Optional[str] = None
    deleted: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Optional[dict]:
        if not self.detected:
            return None
        return {
            "detectedAtBlock": self.block_number,
            "rollbackToBlock": self.rollback_to_block,
            "rollbackBlockHash": self.rollback_hash,
            "deleted": self.deleted,
        }


class CursorStore:
    """Reads and writes indexer_cursors rows."""

    def __init__(self, db: Database, settings: IndexerSettings, clock=None):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()

    def get(self, stream_id: str) -> IndexerCursor:
        """Get a stream's cursor, creating it at the configured start block."""
        with self.db.get_session() as session:
            cursor = session.get(IndexerCursor, stream_id)
            if cursor is None:
                cursor = IndexerCursor(
                    stream_id=stream_id,
                    last_indexed_block=self.settings.start_block,
                    last_block_hash=None,
                    confirmation_depth=self.settings.confirmation_depth,
                    updated_at=self.clock.now(),
                )
                session.add(cursor)
                session.commit()
                logger.info(f"Created cursor {stream_id} at block {self.settings.start_block}")
            return cursor

    def advance(self, stream_id: str, block_number: int, block_hash: Optional[str]) -> None:
        """Move a cursor forward to a block whose canonical hash was just observed."""
        with self.db.get_session() as session:
            cursor = session.get(IndexerCursor, stream_id)
            if cursor is None:
                cursor = IndexerCursor(stream_id=stream_id, confirmation_depth=self.settings.confirmation_depth)
                session.add(cursor)
            cursor.last_indexed_block = block_number
            cursor.last_block_hash = block_hash
            cursor.updated_at = self.clock.now()
            if block_hash:
                self.db.record_block_hash(session, block_number, block_hash)
            session.commit()
        logger.info(f"Cursor {stream_id} advanced to block {block_number}")


class ReorgDetector:
    """Detects reorganizations under a cursor and rolls the mirror back."""

    def __init__(
        self,
        db: Database,
        pool,
        settings: IndexerSettings,
        block_cache: Optional[BlockCache] = None,
        clock=None,
    ):
        self.db = db
        self.pool = pool
        self.settings = settings
        self.block_cache = block_cache or BlockCache(pool)
        self.clock = clock or SystemClock()
        self.cursors = CursorStore(db, settings, self.clock)

    def check(self, stream_id: str) -> ReorgResult:
        """
        Verify a stream's cursor against the canonical chain, rolling back on mismatch.

        Args:
            stream_id: Cursor id

        Returns:
            ReorgResult
        """
        cursor = self.cursors.get(stream_id)
        last = cursor.last_indexed_block
        if last == 0 or not cursor.last_block_hash:
            logger.debug(f"No reorg check for {stream_id}: nothing indexed yet")
            return ReorgResult(detected=False)

        canonical = self.block_cache.get(last)
        if canonical is not None and canonical.hash == cursor.last_block_hash:
            return ReorgResult(detected=False)

        rollback_to = self.find_common_ancestor(last)
        header = self.block_cache.get(rollback_to) if rollback_to > 0 else None
        rollback_hash = header.hash if header else None
        logger.warning(str(ReorgDetected(stream_id, last, rollback_to)))

        deleted = self.rollback(rollback_to, rollback_hash)
        return ReorgResult(
            detected=True,
            block_number=last,
            rollback_to_block=rollback_to,
            rollback_hash=rollback_hash,
            deleted=deleted,
        )

    def stored_hash(self, session: Session, block_number: int) -> Optional[str]:
        """Hash this mirror recorded for a block, if any row carries one."""
        for model in HASHED_MODELS:
            value = (
                session.query(model.block_hash)
                .filter(model.block_number == block_number, model.block_hash.isnot(None))
                .limit(1)
                .scalar()
            )
            if value:
                return value
        return None

    def find_common_ancestor(self, from_block: int) -> int:
        """
        Walk back from the block below from_block to the newest block whose stored
        hash is canonical. Blocks without a stored hash are skipped.

        Returns:
            Matching block, or the lookback bound if none matched
        """
        lower = max(0, from_block - self.settings.reorg_lookback_blocks)
        with self.db.get_session() as session:
            for number in range(from_block - 1, lower - 1, -1):
                stored = self.stored_hash(session, number)
                if stored is None:
                    continue
                canonical = self.block_cache.get(number)
                if canonical is not None and canonical.hash == stored:
                    logger.info(f"Found common ancestor at block {number}")
                    return number
        logger.warning(f"No matching block within {self.settings.reorg_lookback_blocks} blocks of {from_block}")
        return lower

    def rollback(self, rollback_to: int, rollback_hash: Optional[str]) -> Dict[str, int]:
        """
        Delete everything above rollback_to and rewind every cursor past it.

        Tracked tokens are kept; their aggregates are rebuilt from the remaining swaps.

        Returns:
            Rows removed per table
        """
        now = self.clock.now()
        deleted: Dict[str, int] = {}
        with self.db.get_session() as session:
            affected: Set[str] = set()
            for model in (Swap, TokenBurn, PriceSnapshot):
                affected.update(
                    row[0]
                    for row in session.query(model.token_address)
                    .filter(model.block_number > rollback_to)
                    .distinct()
                )

            for model in (Swap, TokenBurn, PriceSnapshot, TokenLock):
                deleted[model.__tablename__] = (
                    session.query(model)
                    .filter(model.block_number > rollback_to)
                    .delete(synchronize_session=False)
                )

            deleted["withdrawals_reverted"] = (
                session.query(TokenLock)
                .filter(TokenLock.withdrawn_block_number > rollback_to)
                .update(
                    {
                        TokenLock.is_withdrawn: False,
                        TokenLock.withdrawn_block_number: None,
                        TokenLock.withdrawn_tx_hash: None,
                        TokenLock.withdrawn_at: None,
                    },
                    synchronize_session=False,
                )
            )

            session.query(IndexedBlock).filter(IndexedBlock.block_number > rollback_to).delete(
                synchronize_session=False
            )

            for token in session.query(Token).filter(Token.last_checked_block > rollback_to):
                token.last_checked_block = max(rollback_to, token.block_number or 0)
                affected.add(token.token_address)

            for token in session.query(Token).filter(Token.token_address.in_(affected)):
                recompute_swap_aggregates(session, token, now)

            session.query(IndexerCursor).filter(IndexerCursor.last_indexed_block > rollback_to).update(
                {
                    IndexerCursor.last_indexed_block: rollback_to,
                    IndexerCursor.last_block_hash: rollback_hash,
                    IndexerCursor.updated_at: now,
                },
                synchronize_session=False,
            )
            if rollback_hash:
                self.db.record_block_hash(session, rollback_to, rollback_hash)
            session.commit()

        self._refresh_reserves(affected)
        logger.warning(f"Rolled back to block {rollback_to}: {deleted}")
        return deleted

    def _refresh_reserves(self, token_addresses: Set[str]) -> None:
        if not token_addresses:
            return
        with self.db.get_session() as session:
            for token in session.query(Token).filter(Token.token_address.in_(token_addresses)):
                try:
                    token.current_eth_reserve, token.current_token_reserve = read_reserves(
                        self.pool, token.amm_address
                    )
                except ProviderUnavailable:
                    raise
                except Exception as e:
                    logger.warning(f"Could not refresh reserves for {token.token_address}: {e}")
            session.commit()

