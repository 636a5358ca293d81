"""
Gap detection and backfill.

Audits the mirror independently of the cursors: for each fixed-size block
window of a token's history the number of Swap logs on chain is compared with
the number of stored swaps. Windows that disagree are re-ingested.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from jamm_indexer.abis import SWAP_TOPIC
from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import Database, Token, recompute_swap_aggregates
from jamm_indexer.errors import InvalidBlockRange, ProviderUnavailable, UnknownToken
from jamm_indexer.ingestors.base import IngestResult
from jamm_indexer.ingestors.swaps import SwapIngestor
from jamm_indexer.utils import RunBudget, SystemClock, chunk_range

logger = logging.getLogger(__name__)


@dataclass
class Gap:
    start_block: int
    end_block: int
    on_chain_count: int
    stored_count: int
    missing: int


@dataclass
class GapReport:
    token_address: str
    symbol: Optional[str]
    from_block: int
    to_block: int
    ranges_checked: int = 0
    gaps: List[Gap] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def missing_swaps(self) -> int:
        return sum(gap.missing for gap in self.gaps)

    def to_dict(self) -> dict:
        return {
            "tokenAddress": self.token_address,
            "symbol": self.symbol,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "rangesChecked": self.ranges_checked,
            "gapsFound": len(self.gaps),
            "missingSwaps": self.missing_swaps,
            "gaps": [asdict(gap) for gap in self.gaps],
            "errors": self.errors,
            "timedOut": self.timed_out,
        }


class GapDetector:
    """Compares on-chain swap counts with stored swap counts per block window."""

    def __init__(self, db: Database, pool, settings: IndexerSettings):
        self.db = db
        self.pool = pool
        self.settings = settings

    def detect(
        self,
        token_address: str,
        range_size: Optional[int] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        budget: Optional[RunBudget] = None,
    ) -> GapReport:
        """
        Find windows where the mirror disagrees with the chain.

        Args:
            token_address: Tracked token
            range_size: Window size in blocks (defaults to settings.gap_range_size)
            from_block: First block (defaults to the launch block)
            to_block: Last block (defaults to the token's last_checked_block)
            budget: Stop scanning once exhausted

        Returns:
            GapReport

        Raises:
            UnknownToken: The token is not tracked
        """
        token = self.db.get_token(token_address)
        if token is None:
            raise UnknownToken(token_address)
        size = range_size or self.settings.gap_range_size
        start = from_block if from_block is not None else (token.block_number or 0)
        end = to_block if to_block is not None else (token.last_checked_block or start)
        report = GapReport(
            token_address=token.token_address, symbol=token.symbol, from_block=start, to_block=end
        )

        for window_start, window_end in chunk_range(start, end, size):
            if budget is not None and budget.exceeded():
                report.timed_out = True
                break
            report.ranges_checked += 1
            try:
                on_chain = self.count_on_chain(token, window_start, window_end)
            except (ProviderUnavailable, InvalidBlockRange) as e:
                message = f"Failed to count swaps for {token.token_address} in {window_start}-{window_end}: {e}"
                logger.warning(message)
                report.errors.append(message)
                continue
            stored = self.db.count_swaps(token.token_address, window_start, window_end)
            if on_chain != stored:
                gap = Gap(window_start, window_end, on_chain, stored, on_chain - stored)
                logger.info(
                    f"Gap in {token.symbol or token.token_address} blocks {window_start}-{window_end}: "
                    f"{on_chain} on chain, {stored} stored"
                )
                report.gaps.append(gap)

        logger.info(
            f"Checked {report.ranges_checked} ranges for {token.token_address}: "
            f"{len(report.gaps)} gaps, {report.missing_swaps} missing swaps"
        )
        return report

    def count_on_chain(self, token: Token, from_block: int, to_block: int) -> int:
        """Swap logs on chain in a window, excluding operator-skipped blocks."""
        logs = self.pool.chunked_logs(
            {"address": token.amm_address, "topics": [SWAP_TOPIC]}, from_block, to_block
        )
        excluded = self.db.get_skip_blocks("swap", from_block, to_block)
        return sum(1 for log in logs if log.block_number not in excluded)

    def candidates(self, max_tokens: int) -> List[Token]:
        """Tokens most worth auditing: most recently active first."""
        with self.db.get_session() as session:
            return (
                session.query(Token)
                .order_by(Token.last_activity_at.desc().nulls_last(), Token.block_number.desc())
                .limit(max_tokens)
                .all()
            )


class Backfiller:
    """Re-ingests flagged windows and rebuilds the token's aggregates."""

    def __init__(self, db: Database, pool, settings: IndexerSettings, swap_ingestor: SwapIngestor, clock=None):
        self.db = db
        self.pool = pool
        self.settings = settings
        self.swaps = swap_ingestor
        self.clock = clock or SystemClock()
        self.detector = GapDetector(db, pool, settings)

    def backfill(
        self,
        token_address: str,
        gaps: Optional[List[Gap]] = None,
        force: bool = True,
        range_size: Optional[int] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        budget: Optional[RunBudget] = None,
    ) -> dict:
        """
        Re-run swap ingestion over gap windows.

        Args:
            token_address: Tracked token
            gaps: Windows to refill (detected when omitted)
            force: Overwrite existing rows in the windows
            range_size: Window size used for detection
            from_block: First block audited when detecting
            to_block: Last block audited when detecting
            budget: Stop starting new windows once exhausted

        Returns:
            Summary dict
        """
        token = self.db.get_token(token_address)
        if token is None:
            raise UnknownToken(token_address)
        errors: List[str] = []
        if gaps is None:
            report = self.detector.detect(
                token.token_address,
                range_size=range_size,
                from_block=from_block,
                to_block=to_block,
                budget=budget,
            )
            gaps = report.gaps
            errors.extend(report.errors)

        result = IngestResult()
        for gap in gaps:
            if budget is not None and budget.exceeded():
                result.timed_out = True
                break
            logger.info(f"Backfilling {token.token_address} blocks {gap.start_block}-{gap.end_block}")
            result.merge(self.swaps.ingest_token(token, gap.start_block, gap.end_block, force=force))

        with self.db.get_session() as session:
            row = session.get(Token, token.token_address)
            recompute_swap_aggregates(session, row, self.clock.now())
            session.commit()
        errors.extend(result.errors)
        errors.extend(self.swaps.refresh_reserves([token]))

        return {
            "tokenAddress": token.token_address,
            "gapsProcessed": len(gaps),
            "swapsInserted": result.inserted,
            "swapsUpdated": result.updated,
            "errors": errors,
            "timedOut": result.timed_out,
        }
