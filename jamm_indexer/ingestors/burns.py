"""
Burn ingestion: Transfer events of tracked tokens to the burn address.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from jamm_indexer.abis import TRANSFER_TOPIC, address_topic
from jamm_indexer.database import TokenBurn, upsert
from jamm_indexer.decoder import TransferEvent, decode_transfer
from jamm_indexer.errors import DecodeError, PersistenceError
from jamm_indexer.ingestors.base import BaseIngestor, IngestResult
from jamm_indexer.node_pool import LogEntry
from jamm_indexer.utils import RunBudget, format_ether

logger = logging.getLogger(__name__)


class BurnIngestor(BaseIngestor):
    """Mirrors burns and prices them at the block's reference ETH price."""

    indexer_type = "burn"

    def __init__(self, *args, price_feed=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.price_feed = price_feed

    def ingest(
        self,
        tokens: Iterable,
        from_block: int,
        to_block: int,
        force: bool = False,
        budget: Optional[RunBudget] = None,
    ) -> IngestResult:
        """
        Ingest burns of the given tokens in an inclusive block range.

        Args:
            tokens: Tracked tokens
            from_block: First block
            to_block: Last block
            force: Overwrite existing burn rows
            budget: Stop starting new tokens once exhausted

        Returns:
            IngestResult
        """
        result = IngestResult(blocks_scanned=to_block - from_block + 1)
        burn_topic = address_topic(self.settings.burn_address)

        for token in tokens:
            if budget is not None and budget.exceeded():
                logger.warning(f"Execution budget exhausted after {result.tokens_processed} tokens")
                result.timed_out = True
                break
            logs = self.pool.chunked_logs(
                {"address": token.token_address, "topics": [TRANSFER_TOPIC, None, burn_topic]},
                from_block,
                to_block,
            )
            logs = self.drop_skipped(logs, from_block, to_block)
            result.tokens_processed += 1

            for log in logs:
                try:
                    status = self._store(token.token_address, decode_transfer(log), log, force)
                except (DecodeError, PersistenceError) as e:
                    logger.warning(str(e))
                    result.errors.append(str(e))
                    continue
                result.count(status)

        if result.inserted:
            logger.info(f"Indexed {result.inserted} burns in blocks {from_block}-{to_block}")
        return result

    def _store(self, token_address: str, event: TransferEvent, log: LogEntry, force: bool) -> str:
        burned_at = self.block_time(log.block_number)
        eth_price = self.price_feed.get_price_at(burned_at) if self.price_feed else None
        with self.db.get_session() as session:
            try:
                status = upsert(
                    session,
                    TokenBurn,
                    {"tx_hash": log.tx_hash, "log_index": log.log_index},
                    {
                        "token_address": token_address,
                        "from_address": event.from_address,
                        "amount": format_ether(event.value_wei),
                        "amount_wei": str(event.value_wei),
                        "eth_price_usd": eth_price,
                        "block_number": log.block_number,
                        "block_hash": log.block_hash,
                        "timestamp": burned_at,
                    },
                    force,
                )
                self.db.record_block_hash(session, log.block_number, log.block_hash)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to store burn {log.tx_hash}:{log.log_index}: {e}") from e
        return status
