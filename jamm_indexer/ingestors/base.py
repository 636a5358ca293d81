"""
Shared plumbing for event ingestors.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from jamm_indexer.abis import AMM_ABI
from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import Database
from jamm_indexer.node_pool import BlockCache, LogEntry
from jamm_indexer.utils import SystemClock, format_ether, from_timestamp

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of one ingestion pass."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    tokens_processed: int = 0
    blocks_scanned: int = 0
    timed_out: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def records(self) -> int:
        return self.inserted + self.updated

    def merge(self, other: "IngestResult") -> "IngestResult":
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.tokens_processed += other.tokens_processed
        self.blocks_scanned += other.blocks_scanned
        self.timed_out = self.timed_out or other.timed_out
        self.errors.extend(other.errors)
        return self

    def count(self, status: str) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        else:
            self.skipped += 1


class BaseIngestor:
    """Bounded range -> fetch logs -> decode -> upsert by natural key -> derived state."""

    indexer_type = "all"

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

    def drop_skipped(self, logs: Sequence[LogEntry], from_block: int, to_block: int) -> List[LogEntry]:
        """Remove logs in operator-excluded blocks."""
        excluded = self.db.get_skip_blocks(self.indexer_type, from_block, to_block)
        if not excluded:
            return list(logs)
        kept = [log for log in logs if log.block_number not in excluded]
        if len(kept) != len(logs):
            logger.info(
                f"Skipped {len(logs) - len(kept)} {self.indexer_type} logs in excluded blocks "
                f"{sorted(excluded)}"
            )
        return kept

    def block_time(self, block_number: int) -> datetime:
        """Block timestamp as naive UTC, or now if the header is unavailable."""
        header = self.block_cache.get(block_number)
        if header is None:
            return self.clock.now()
        return from_timestamp(header.timestamp)


def read_reserves(pool, amm_address: str) -> Tuple[float, float]:
    """
    Read live pool reserves.

    Returns:
        (eth_reserve, token_reserve) in whole units
    """
    eth_reserve = pool.call(amm_address, AMM_ABI, "reserveETH")
    token_reserve = pool.call(amm_address, AMM_ABI, "reserveToken")
    return format_ether(eth_reserve), format_ether(token_reserve)


def read_reserves_many(pool, amm_addresses: Iterable[str]) -> Dict[str, object]:
    """
    Read reserves for many pools concurrently.

    Returns:
        amm_address -> (eth_reserve, token_reserve), or the exception raised for that pool
    """
    amms = list(dict.fromkeys(amm_addresses))
    calls = []
    for amm in amms:
        calls.append((amm, AMM_ABI, "reserveETH", ()))
        calls.append((amm, AMM_ABI, "reserveToken", ()))
    results = pool.call_many(calls)

    reserves: Dict[str, object] = {}
    for i, amm in enumerate(amms):
        eth_raw, token_raw = results[2 * i], results[2 * i + 1]
        if isinstance(eth_raw, Exception):
            reserves[amm] = eth_raw
        elif isinstance(token_raw, Exception):
            reserves[amm] = token_raw
        else:
            reserves[amm] = (format_ether(eth_raw), format_ether(token_raw))
    return reserves
