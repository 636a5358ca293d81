"""
Indexing jobs.

Every job runs under its datastore lock and a wall-clock budget, records a
metrics row and returns a JSON-ready summary. The HTTP surface and the CLI
both go through JobRunner.run().
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from jamm_indexer.config import IndexerSettings
from jamm_indexer.cursor import CursorStore, ReorgDetector, ReorgResult
from jamm_indexer.database import Database
from jamm_indexer.errors import UnknownToken
from jamm_indexer.gaps import Backfiller, GapDetector
from jamm_indexer.ingestors import (
    BurnIngestor,
    LaunchIngestor,
    LockIngestor,
    SnapshotIngestor,
    SwapIngestor,
    TokenMetadataCache,
    WithdrawalSync,
)
from jamm_indexer.lock_manager import LockManager, hold_lock
from jamm_indexer.node_pool import BlockCache, NodeClientPool
from jamm_indexer.price_feed import PriceFeed
from jamm_indexer.tiers import TIERS, get_entities_for_tier, recompute_tiers
from jamm_indexer.utils import RunBudget, SystemClock

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Cursor-less starts begin this far below the safe head.
FRESH_START_DEPTH = 10_000
STALE_CURSOR_DEPTH = 100_000

# Jobs that write tokens, event rows or cursors share one lock. A rollback
# started by any of them rewrites rows and cursors owned by the others.
MIRROR_LOCK_KEY = "chain-mirror"
MIRROR_JOBS = frozenset(
    {
        "event-indexer",
        "price-snapshot",
        "lock-event-indexer",
        "burn-event-indexer",
        "backfill-missing-swaps",
        "update-activity-tiers",
        "sync-lock-withdrawals",
    }
)


def lock_key_for(job_name: str) -> str:
    """Datastore lock a job runs under."""
    return MIRROR_LOCK_KEY if job_name in MIRROR_JOBS else job_name


def adaptive_range(blocks_behind: int, min_range: int, max_range: int) -> int:
    """Blocks to scan in one run given how far the cursor trails the safe head."""
    if blocks_behind > 10_000:
        size = max_range
    elif blocks_behind > 5_000:
        size = 1_000
    elif blocks_behind > 1_000:
        size = 500
    elif blocks_behind > 500:
        size = 300
    else:
        size = min_range
    return max(1, min(size, max_range))


@dataclass
class JobParams:
    """Validated request body."""

    from_block: Optional[int] = None
    to_block: Optional[int] = None
    index_launches: bool = True
    index_swaps: bool = True
    tier: Optional[str] = None
    force: bool = False
    skip_reorg_check: bool = False
    token_address: Optional[str] = None
    block_range_size: Optional[int] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_body(cls, body: Optional[Dict[str, Any]]) -> "JobParams":
        """
        Parse a camelCase JSON body.

        Raises:
            ValueError: A field has the wrong type or an impossible value
        """
        body = body or {}
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")

        params = cls(
            from_block=_optional_int(body, "fromBlock"),
            to_block=_optional_int(body, "toBlock"),
            index_launches=_flag(body, "indexTokenLaunches", True),
            index_swaps=_flag(body, "indexSwaps", True),
            tier=body.get("tier"),
            force=_flag(body, "force", False),
            skip_reorg_check=_flag(body, "skipReorgCheck", False),
            token_address=body.get("tokenAddress"),
            block_range_size=_optional_int(body, "blockRangeSize", minimum=1),
            max_tokens=_optional_int(body, "maxTokens", minimum=1),
        )
        if params.from_block is not None and params.to_block is not None and params.from_block > params.to_block:
            raise ValueError("fromBlock must not be greater than toBlock")
        if params.tier is not None and params.tier not in TIERS:
            raise ValueError(f"tier must be one of {', '.join(TIERS)}")
        if params.token_address is not None:
            if not isinstance(params.token_address, str) or not ADDRESS_RE.match(params.token_address):
                raise ValueError("tokenAddress must be a 0x-prefixed 20-byte hex address")
            params.token_address = params.token_address.lower()
        return params


def _optional_int(body: dict, key: str, minimum: int = 0) -> Optional[int]:
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}")
    return value


def _flag(body: dict, key: str, default: bool) -> bool:
    value = body.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


class JobRunner:
    """Builds per-run components and executes jobs under their locks."""

    def __init__(
        self,
        db: Database,
        settings: IndexerSettings,
        pool_factory: Optional[Callable[[], Any]] = None,
        price_feed: Optional[PriceFeed] = None,
        clock=None,
    ):
        self.db = db
        self.settings = settings
        self.pool_factory = pool_factory or (lambda: NodeClientPool(settings))
        self.clock = clock or SystemClock()
        self.price_feed = price_feed or PriceFeed(
            database=db,
            cache_ttl=settings.price_cache_ttl,
            default_price=settings.default_eth_price_usd,
        )
        self.locks = LockManager(db, settings, self.clock)
        self.metadata = TokenMetadataCache(db, None)
        self.jobs: Dict[str, Callable[[JobParams], dict]] = {
            "event-indexer": self.event_indexer,
            "price-snapshot": self.price_snapshot,
            "lock-event-indexer": self.lock_event_indexer,
            "burn-event-indexer": self.burn_event_indexer,
            "detect-indexer-gaps": self.detect_indexer_gaps,
            "backfill-missing-swaps": self.backfill_missing_swaps,
            "update-activity-tiers": self.update_activity_tiers,
            "track-eth-price": self.track_eth_price,
            "sync-lock-withdrawals": self.sync_lock_withdrawals,
        }

    def run(self, job_name: str, body: Optional[Dict[str, Any]] = None) -> dict:
        """
        Run a job by name.

        Args:
            job_name: One of self.jobs
            body: Request body (camelCase keys)

        Returns:
            Job summary

        Raises:
            KeyError: Unknown job
            ValueError: Invalid body
            LockBusy: The job's lock is held
            ProviderUnavailable: Every node endpoint failed
            UnknownToken: tokenAddress is not tracked
        """
        if job_name not in self.jobs:
            raise KeyError(job_name)
        params = JobParams.from_body(body)
        logger.info(f"Running {job_name}")
        return self.jobs[job_name](params)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _execute(self, run_type: str, work: Callable[[Any, RunBudget], dict]) -> dict:
        budget = RunBudget(self.settings.max_execution_seconds, self.clock)
        with hold_lock(self.locks, lock_key_for(run_type), timeout_seconds=self.settings.lock_wait_seconds):
            pool = self.pool_factory()
            summary = work(pool, budget)

        summary.setdefault("errors", [])
        summary.setdefault("timedOut", False)
        summary["success"] = True
        summary["executionTimeMs"] = budget.elapsed_ms()
        self.db.save_metrics(
            run_type=run_type,
            tokens_processed=summary.get("tokensProcessed", 0),
            blocks_scanned=summary.get("blocksScanned", 0),
            records_found=summary.get("recordsFound", 0),
            rpc_calls_made=getattr(pool, "rpc_calls", 0),
            processing_time_ms=summary["executionTimeMs"],
            errors=summary["errors"],
        )
        if summary["errors"]:
            logger.warning(f"{run_type} finished with {len(summary['errors'])} errors")
        logger.info(f"{run_type} finished in {summary['executionTimeMs']}ms")
        return summary

    def _cursor_range(self, pool, stream_id: str, params: JobParams) -> tuple[int, int]:
        """Block range for a cursor-driven run."""
        cursor = CursorStore(self.db, self.settings, self.clock).get(stream_id)
        safe_head = max(0, pool.height() - self.settings.confirmation_depth)

        if params.from_block is not None:
            from_block = params.from_block
        else:
            from_block = cursor.last_indexed_block + 1
            if cursor.last_indexed_block == 0 or from_block < safe_head - STALE_CURSOR_DEPTH:
                from_block = max(0, safe_head - FRESH_START_DEPTH)
                logger.info(f"{stream_id}: starting from recent block {from_block}")

        if params.to_block is not None:
            to_block = min(params.to_block, safe_head)
        else:
            size = params.block_range_size or adaptive_range(
                safe_head - from_block, self.settings.min_block_range, self.settings.max_block_range
            )
            to_block = min(safe_head, from_block + size - 1)
        return from_block, to_block

    def _advance(self, cache: BlockCache, stream_id: str, to_block: int) -> None:
        cursors = CursorStore(self.db, self.settings, self.clock)
        if to_block <= cursors.get(stream_id).last_indexed_block:
            return
        header = cache.get(to_block)
        cursors.advance(stream_id, to_block, header.hash if header else None)

    def _reorg_check(self, pool, cache: BlockCache, stream_id: str, params: JobParams) -> ReorgResult:
        if params.skip_reorg_check:
            logger.info(f"{stream_id}: reorg check skipped")
            return ReorgResult(detected=False)
        return ReorgDetector(self.db, pool, self.settings, cache, self.clock).check(stream_id)

    def _tokens(self, params: JobParams) -> list:
        if params.token_address:
            token = self.db.get_token(params.token_address)
            return [token] if token else []
        if params.tier:
            return get_entities_for_tier(
                self.db, params.tier, params.max_tokens or self.settings.tier_batches[params.tier]
            )
        return self.db.get_tokens(limit=params.max_tokens)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def event_indexer(self, params: JobParams) -> dict:
        """Launches over the cursor range, then swaps per tracked token."""
        stream_id = "event-indexer"

        def work(pool, budget):
            cache = BlockCache(pool)
            reorg = self._reorg_check(pool, cache, stream_id, params)
            from_block, to_block = self._cursor_range(pool, stream_id, params)
            summary = {
                "fromBlock": from_block,
                "toBlock": to_block,
                "tier": params.tier,
                "launchesIndexed": 0,
                "swapsIndexed": 0,
                "tokensProcessed": 0,
                "blocksScanned": 0,
                "recordsFound": 0,
                "errors": [],
                "timedOut": False,
                "reorgDetected": reorg.detected,
                "rollbackData": reorg.to_dict(),
            }
            if from_block > to_block:
                logger.info(f"{stream_id}: up to date at block {to_block}")
                return summary
            summary["blocksScanned"] = to_block - from_block + 1

            if params.index_launches:
                launches = LaunchIngestor(self.db, pool, self.settings, cache, self.clock).ingest(
                    from_block, to_block, force=params.force
                )
                summary["launchesIndexed"] = launches.records
                summary["errors"].extend(launches.errors)

            if params.index_swaps and not budget.exceeded():
                swap_ingestor = SwapIngestor(self.db, pool, self.settings, cache, self.clock)
                tokens = self._tokens(params)
                swaps = swap_ingestor.ingest_tokens(
                    tokens,
                    to_block,
                    from_block=None if params.tier else from_block,
                    force=params.force,
                    budget=budget,
                )
                summary["swapsIndexed"] = swaps.records
                summary["tokensProcessed"] = swaps.tokens_processed
                summary["errors"].extend(swaps.errors)
                summary["timedOut"] = swaps.timed_out

            summary["timedOut"] = summary["timedOut"] or budget.exceeded()
            summary["recordsFound"] = summary["launchesIndexed"] + summary["swapsIndexed"]
            # The cursor tracks the launch scan; swap progress lives on each token.
            if params.index_launches and not summary["timedOut"]:
                self._advance(cache, stream_id, to_block)
            return summary

        return self._execute("event-indexer", work)

    def price_snapshot(self, params: JobParams) -> dict:
        def work(pool, budget):
            tokens = self._tokens(params)
            result = SnapshotIngestor(
                self.db, pool, self.settings, BlockCache(pool), self.clock, price_feed=self.price_feed
            ).snapshot(tokens, force=params.force)
            return {
                "snapshotsCreated": result.records,
                "tokensProcessed": result.tokens_processed,
                "recordsFound": result.records,
                "errors": result.errors,
            }

        return self._execute("price-snapshot", work)

    def lock_event_indexer(self, params: JobParams) -> dict:
        stream_id = "lock-event-indexer"

        def work(pool, budget):
            cache = BlockCache(pool)
            reorg = self._reorg_check(pool, cache, stream_id, params)
            from_block, to_block = self._cursor_range(pool, stream_id, params)
            summary = {
                "fromBlock": from_block,
                "toBlock": to_block,
                "locksIndexed": 0,
                "blocksScanned": 0,
                "recordsFound": 0,
                "errors": [],
                "reorgDetected": reorg.detected,
                "rollbackData": reorg.to_dict(),
            }
            if from_block > to_block:
                return summary
            self.metadata.pool = pool
            result = LockIngestor(
                self.db, pool, self.settings, cache, self.clock, metadata=self.metadata
            ).ingest(from_block, to_block, force=params.force)
            summary.update(
                locksIndexed=result.records,
                blocksScanned=result.blocks_scanned,
                recordsFound=result.records,
                errors=result.errors,
                timedOut=budget.exceeded(),
            )
            if not summary["timedOut"]:
                self._advance(cache, stream_id, to_block)
            return summary

        return self._execute("lock-event-indexer", work)

    def burn_event_indexer(self, params: JobParams) -> dict:
        stream_id = "burn-event-indexer"

        def work(pool, budget):
            cache = BlockCache(pool)
            reorg = self._reorg_check(pool, cache, stream_id, params)
            from_block, to_block = self._cursor_range(pool, stream_id, params)
            summary = {
                "fromBlock": from_block,
                "toBlock": to_block,
                "burnsIndexed": 0,
                "tokensProcessed": 0,
                "blocksScanned": 0,
                "recordsFound": 0,
                "errors": [],
                "reorgDetected": reorg.detected,
                "rollbackData": reorg.to_dict(),
            }
            if from_block > to_block:
                return summary
            result = BurnIngestor(
                self.db, pool, self.settings, cache, self.clock, price_feed=self.price_feed
            ).ingest(self._tokens(params), from_block, to_block, force=params.force, budget=budget)
            summary.update(
                burnsIndexed=result.records,
                tokensProcessed=result.tokens_processed,
                blocksScanned=result.blocks_scanned,
                recordsFound=result.records,
                errors=result.errors,
                timedOut=result.timed_out or budget.exceeded(),
            )
            if not summary["timedOut"]:
                self._advance(cache, stream_id, to_block)
            return summary

        return self._execute("burn-event-indexer", work)

    def detect_indexer_gaps(self, params: JobParams) -> dict:
        def work(pool, budget):
            detector = GapDetector(self.db, pool, self.settings)
            tokens = self._gap_tokens(detector, params)
            reports = []
            errors: List[str] = []
            for token in tokens:
                if budget.exceeded():
                    break
                report = detector.detect(
                    token.token_address,
                    range_size=params.block_range_size,
                    from_block=params.from_block,
                    to_block=params.to_block,
                    budget=budget,
                )
                reports.append(report.to_dict())
                errors.extend(report.errors)
            return {
                "tokensChecked": len(reports),
                "tokensProcessed": len(reports),
                "gapsFound": sum(r["gapsFound"] for r in reports),
                "missingSwaps": sum(r["missingSwaps"] for r in reports),
                "recordsFound": sum(r["gapsFound"] for r in reports),
                "results": reports,
                "errors": errors,
                "timedOut": budget.exceeded(),
            }

        return self._execute("detect-indexer-gaps", work)

    def backfill_missing_swaps(self, params: JobParams) -> dict:
        def work(pool, budget):
            swap_ingestor = SwapIngestor(self.db, pool, self.settings, BlockCache(pool), self.clock)
            backfiller = Backfiller(self.db, pool, self.settings, swap_ingestor, self.clock)
            tokens = self._gap_tokens(backfiller.detector, params)
            results = []
            errors: List[str] = []
            for token in tokens:
                if budget.exceeded():
                    break
                outcome = backfiller.backfill(
                    token.token_address,
                    force=True,
                    range_size=params.block_range_size,
                    from_block=params.from_block,
                    to_block=params.to_block,
                    budget=budget,
                )
                results.append(outcome)
                errors.extend(outcome["errors"])
            inserted = sum(r["swapsInserted"] for r in results)
            return {
                "tokensProcessed": len(results),
                "swapsInserted": inserted,
                "swapsUpdated": sum(r["swapsUpdated"] for r in results),
                "recordsFound": inserted,
                "results": results,
                "errors": errors,
                "timedOut": budget.exceeded() or any(r["timedOut"] for r in results),
            }

        return self._execute("backfill-missing-swaps", work)

    def _gap_tokens(self, detector: GapDetector, params: JobParams) -> list:
        if params.token_address:
            token = self.db.get_token(params.token_address)
            if token is None:
                raise UnknownToken(params.token_address)
            return [token]
        return detector.candidates(params.max_tokens or 10)

    def update_activity_tiers(self, params: JobParams) -> dict:
        def work(pool, budget):
            counts = recompute_tiers(self.db, self.clock.now())
            return {
                "tiers": {tier: counts[tier] for tier in TIERS},
                "tokensUpdated": counts["changed"],
                "tokensProcessed": sum(counts[tier] for tier in TIERS),
                "errors": [],
            }

        return self._execute("update-activity-tiers", work)

    def track_eth_price(self, params: JobParams) -> dict:
        def work(pool, budget):
            price = self.price_feed.track()
            errors = [] if price is not None else ["Failed to fetch ETH price"]
            return {"priceUsd": price, "recordsFound": 1 if price is not None else 0, "errors": errors}

        return self._execute("track-eth-price", work)

    def sync_lock_withdrawals(self, params: JobParams) -> dict:
        def work(pool, budget):
            outcome = WithdrawalSync(self.db, pool, self.settings, self.clock).sync(limit=params.max_tokens)
            return {
                "locksChecked": outcome["checked"],
                "locksUpdated": outcome["updated"],
                "recordsFound": outcome["updated"],
                "errors": outcome["errors"],
            }

        return self._execute("sync-lock-withdrawals", work)
