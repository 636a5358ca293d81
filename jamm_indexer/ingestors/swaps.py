"""
Swap ingestion from each tracked token's AMM pool.
"""

import logging
from datetime import timedelta
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from jamm_indexer.abis import SWAP_TOPIC
from jamm_indexer.database import INSERTED, Swap, Token, upsert
from jamm_indexer.decoder import SwapEvent, decode_swap
from jamm_indexer.errors import DecodeError, PersistenceError
from jamm_indexer.ingestors.base import BaseIngestor, IngestResult, read_reserves_many
from jamm_indexer.node_pool import LogEntry
from jamm_indexer.tiers import record_activity
from jamm_indexer.utils import RunBudget, format_ether, safe_division

logger = logging.getLogger(__name__)


def swap_fields(event: SwapEvent) -> dict:
    """Column values of a decoded swap (amounts in whole units)."""
    eth_in = format_ether(event.eth_in_wei)
    token_in = format_ether(event.token_in_wei)
    eth_out = format_ether(event.eth_out_wei)
    token_out = format_ether(event.token_out_wei)
    is_buy = event.eth_in_wei > 0
    price = safe_division(eth_in, token_out) if is_buy else safe_division(eth_out, token_in)
    return {
        "user_address": event.user,
        "eth_in": eth_in,
        "token_in": token_in,
        "eth_out": eth_out,
        "token_out": token_out,
        "is_buy": is_buy,
        "price_eth": price,
    }


class SwapIngestor(BaseIngestor):
    """Mirrors Swap events and keeps reserves, volume and activity current."""

    indexer_type = "swap"

    def ingest_tokens(
        self,
        tokens: Iterable[Token],
        to_block: int,
        from_block: Optional[int] = None,
        force: bool = False,
        budget: Optional[RunBudget] = None,
    ) -> IngestResult:
        """
        Ingest swaps for a batch of tokens, then refresh their reserves concurrently.

        Args:
            tokens: Tokens to scan
            to_block: Last block (inclusive)
            from_block: First block; defaults to each token's last_checked_block + 1
            force: Overwrite existing swap rows
            budget: Stop starting new tokens once exhausted

        Returns:
            IngestResult
        """
        result = IngestResult()
        touched: List[Token] = []

        for token in tokens:
            if budget is not None and budget.exceeded():
                logger.warning(f"Execution budget exhausted after {result.tokens_processed} tokens")
                result.timed_out = True
                break
            start = from_block if from_block is not None else (token.last_checked_block or token.block_number or 0) + 1
            start = max(start, token.block_number or 0)
            if start > to_block:
                continue
            token_result = self.ingest_token(token, start, to_block, force=force)
            result.merge(token_result)
            result.tokens_processed += 1
            if token_result.inserted or token_result.updated:
                touched.append(token)

        if touched:
            result.errors.extend(self.refresh_reserves(touched))
        return result

    def ingest_token(self, token: Token, from_block: int, to_block: int, force: bool = False) -> IngestResult:
        """
        Ingest swaps of one token in an inclusive range and advance its last_checked_block.

        Reserves are not refreshed here; see refresh_reserves().
        """
        result = IngestResult(blocks_scanned=to_block - from_block + 1)
        logs = self.pool.chunked_logs(
            {"address": token.amm_address, "topics": [SWAP_TOPIC]}, from_block, to_block
        )
        logs = self.drop_skipped(logs, from_block, to_block)

        first_unsaved: Optional[int] = None
        for log in logs:
            try:
                event = decode_swap(log)
            except DecodeError as e:
                # Undecodable logs stay undecodable; they are reported, not retried.
                logger.warning(f"Skipping swap log at block {log.block_number} ({log.tx_hash}): {e}")
                result.errors.append(str(e))
                continue
            try:
                status = self._store(token.token_address, event, log, force)
            except PersistenceError as e:
                logger.error(str(e))
                result.errors.append(str(e))
                if first_unsaved is None or log.block_number < first_unsaved:
                    first_unsaved = log.block_number
                continue
            result.count(status)

        checked_to = to_block
        if first_unsaved is not None:
            checked_to = first_unsaved - 1
            logger.warning(
                f"Holding {token.token_address} at block {checked_to}: "
                f"swaps from block {first_unsaved} were not saved"
            )

        with self.db.get_session() as session:
            row = session.get(Token, token.token_address)
            if row is not None and (row.last_checked_block or 0) < checked_to:
                row.last_checked_block = checked_to
                session.commit()
        token.last_checked_block = max(token.last_checked_block or 0, checked_to)

        if result.inserted:
            logger.info(f"Indexed {result.inserted} new swaps for {token.symbol or token.token_address} in blocks {from_block}-{to_block}")
        return result

    def _store(self, token_address: str, event: SwapEvent, log: LogEntry, force: bool) -> str:
        fields = swap_fields(event)
        traded_at = self.block_time(log.block_number)
        now = self.clock.now()

        with self.db.get_session() as session:
            try:
                token = session.get(Token, token_address)
                status = upsert(
                    session,
                    Swap,
                    {"tx_hash": log.tx_hash, "log_index": log.log_index},
                    {
                        **fields,
                        "token_address": token_address,
                        "amm_address": log.address,
                        "block_number": log.block_number,
                        "block_hash": log.block_hash,
                        "timestamp": traded_at,
                    },
                    force,
                )
                if status == INSERTED and token is not None:
                    token.total_volume_eth = (token.total_volume_eth or 0.0) + fields["eth_in"] + fields["eth_out"]
                    if now - traded_at < timedelta(hours=24):
                        token.swap_count_24h = (token.swap_count_24h or 0) + 1
                    record_activity(token, traded_at, now)
                self.db.record_block_hash(session, log.block_number, log.block_hash)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to store swap {log.tx_hash}:{log.log_index}: {e}") from e
        return status

    def refresh_reserves(self, tokens: List[Token]) -> List[str]:
        """
        Read live reserves for tokens concurrently and store them.

        Returns:
            Error messages for pools whose reserves could not be read
        """
        errors: List[str] = []
        reserves = read_reserves_many(self.pool, [t.amm_address for t in tokens])
        with self.db.get_session() as session:
            for token in tokens:
                value = reserves.get(token.amm_address)
                if isinstance(value, Exception) or value is None:
                    message = f"Failed to read reserves for {token.token_address}: {value}"
                    logger.warning(message)
                    errors.append(message)
                    continue
                row = session.get(Token, token.token_address)
                row.current_eth_reserve, row.current_token_reserve = value
                token.current_eth_reserve, token.current_token_reserve = value
            session.commit()
        return errors
