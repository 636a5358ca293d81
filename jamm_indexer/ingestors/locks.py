"""
Token lock ingestion from the locker's TokensLocked / TokensUnlocked events,
plus the token metadata cache and the withdrawal sync.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from jamm_indexer.abis import ERC20_ABI, LOCKER_ABI, TOKENS_LOCKED_TOPIC, TOKENS_UNLOCKED_TOPIC
from jamm_indexer.database import SKIPPED, UPDATED, Database, TokenLock, TokenMetadata, upsert
from jamm_indexer.decoder import LockEvent, UnlockEvent, decode_lock, decode_unlock
from jamm_indexer.errors import DecodeError, PersistenceError, ProviderUnavailable
from jamm_indexer.ingestors.base import BaseIngestor, IngestResult
from jamm_indexer.node_pool import LogEntry
from jamm_indexer.utils import SystemClock, from_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    name: str
    symbol: str
    decimals: int


UNKNOWN_TOKEN = TokenInfo(name="Unknown", symbol="???", decimals=18)


class TokenMetadataCache:
    """
    name/symbol/decimals per token address.

    Lookups go memory -> token_metadata table -> RPC; each address is fetched
    over RPC at most once per process.
    """

    def __init__(self, db: Database, pool, max_size: int = 1024):
        self.db = db
        self.pool = pool
        self.max_size = max_size
        self._entries: "OrderedDict[str, TokenInfo]" = OrderedDict()
        self.rpc_fetches = 0

    def get(self, token_address: str) -> TokenInfo:
        address = token_address.lower()
        if address in self._entries:
            self._entries.move_to_end(address)
            return self._entries[address]

        info = self._load(address)
        if info is None:
            info = self._fetch(address)
            if info is None:
                return UNKNOWN_TOKEN
            self._save(address, info)
        self._remember(address, info)
        return info

    def _remember(self, address: str, info: TokenInfo) -> None:
        self._entries[address] = info
        self._entries.move_to_end(address)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def _load(self, address: str) -> Optional[TokenInfo]:
        with self.db.get_session() as session:
            row = session.get(TokenMetadata, address)
            if row is None:
                return None
            return TokenInfo(name=row.name, symbol=row.symbol, decimals=row.decimals)

    def _fetch(self, address: str) -> Optional[TokenInfo]:
        self.rpc_fetches += 1
        try:
            name = self.pool.call(address, ERC20_ABI, "name")
            symbol = self.pool.call(address, ERC20_ABI, "symbol")
            decimals = self.pool.call(address, ERC20_ABI, "decimals")
        except ProviderUnavailable:
            raise
        except Exception as e:
            logger.warning(f"Failed to fetch metadata for {address}: {e}")
            return None
        return TokenInfo(name=name, symbol=symbol, decimals=int(decimals))

    def _save(self, address: str, info: TokenInfo) -> None:
        with self.db.get_session() as session:
            session.merge(
                TokenMetadata(
                    token_address=address,
                    name=info.name,
                    symbol=info.symbol,
                    decimals=info.decimals,
                )
            )
            session.commit()


class LockIngestor(BaseIngestor):
    """Mirrors locker positions and their withdrawals."""

    indexer_type = "lock"

    def __init__(self, *args, metadata: Optional[TokenMetadataCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.metadata = metadata or TokenMetadataCache(self.db, self.pool)

    def ingest(self, from_block: int, to_block: int, force: bool = False) -> IngestResult:
        """
        Ingest lock and unlock events in an inclusive block range.

        Args:
            from_block: First block
            to_block: Last block
            force: Overwrite existing lock rows

        Returns:
            IngestResult
        """
        result = IngestResult(blocks_scanned=to_block - from_block + 1)
        locker = self.settings.locker_address
        logs = self.pool.chunked_logs({"address": locker, "topics": [TOKENS_LOCKED_TOPIC]}, from_block, to_block)
        logs += self.pool.chunked_logs({"address": locker, "topics": [TOKENS_UNLOCKED_TOPIC]}, from_block, to_block)
        logs = sorted(self.drop_skipped(logs, from_block, to_block), key=lambda l: (l.block_number, l.log_index))
        if logs:
            logger.info(f"Found {len(logs)} lock events in blocks {from_block}-{to_block}")

        for log in logs:
            try:
                if log.topics and log.topics[0] == TOKENS_UNLOCKED_TOPIC:
                    status = self._store_unlock(decode_unlock(log), log)
                else:
                    status = self._store_lock(decode_lock(log), log, force)
            except (DecodeError, PersistenceError) as e:
                logger.warning(str(e))
                result.errors.append(str(e))
                continue
            result.count(status)
        return result

    def _store_lock(self, event: LockEvent, log: LogEntry, force: bool) -> str:
        info = self.metadata.get(event.token_address)
        with self.db.get_session() as session:
            try:
                status = upsert(
                    session,
                    TokenLock,
                    {"lock_id": event.lock_id},
                    {
                        "token_address": event.token_address,
                        "owner_address": event.owner,
                        "amount": event.amount_wei / 10**info.decimals,
                        "amount_wei": str(event.amount_wei),
                        "unlock_time": from_timestamp(event.unlock_time),
                        "token_name": info.name,
                        "token_symbol": info.symbol,
                        "token_decimals": info.decimals,
                        "block_number": log.block_number,
                        "block_hash": log.block_hash,
                        "tx_hash": log.tx_hash,
                    },
                    force,
                )
                self.db.record_block_hash(session, log.block_number, log.block_hash)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to store lock {event.lock_id}: {e}") from e
        return status

    def _store_unlock(self, event: UnlockEvent, log: LogEntry) -> str:
        withdrawn_at = self.block_time(log.block_number)
        with self.db.get_session() as session:
            try:
                lock = session.get(TokenLock, event.lock_id)
                if lock is None:
                    logger.warning(f"Unlock for unknown lock {event.lock_id} in {log.tx_hash}")
                    return SKIPPED
                if lock.is_withdrawn and lock.withdrawn_tx_hash == log.tx_hash:
                    return SKIPPED
                lock.is_withdrawn = True
                lock.withdrawn_block_number = log.block_number
                lock.withdrawn_tx_hash = log.tx_hash
                lock.withdrawn_at = withdrawn_at
                self.db.record_block_hash(session, log.block_number, log.block_hash)
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise PersistenceError(f"Failed to mark lock {event.lock_id} withdrawn: {e}") from e
        logger.info(f"Lock {event.lock_id} withdrawn at block {log.block_number}")
        return UPDATED


class WithdrawalSync:
    """Reconciles the withdrawn flag of open locks against the locker's getLock view."""

    def __init__(self, db: Database, pool, settings, clock=None):
        self.db = db
        self.pool = pool
        self.settings = settings
        self.clock = clock or SystemClock()

    def sync(self, limit: Optional[int] = None) -> Dict[str, object]:
        """
        Check open locks on chain.

        Returns:
            {"checked": n, "updated": n, "errors": [...]}
        """
        with self.db.get_session() as session:
            query = session.query(TokenLock).filter(TokenLock.is_withdrawn.is_(False)).order_by(TokenLock.lock_id)
            if limit:
                query = query.limit(limit)
            open_locks: List[TokenLock] = query.all()

        calls = [(self.settings.locker_address, LOCKER_ABI, "getLock", (lock.lock_id,)) for lock in open_locks]
        results = self.pool.call_many(calls)
        errors: List[str] = []
        updated = 0
        now = self.clock.now()

        with self.db.get_session() as session:
            for lock, onchain in zip(open_locks, results):
                if isinstance(onchain, Exception):
                    errors.append(f"getLock({lock.lock_id}) failed: {onchain}")
                    continue
                if not onchain[4]:
                    continue
                row = session.get(TokenLock, lock.lock_id)
                row.is_withdrawn = True
                row.withdrawn_at = row.withdrawn_at or now
                updated += 1
                logger.info(f"Lock {lock.lock_id} is withdrawn on chain")
            session.commit()

        return {"checked": len(open_locks), "updated": updated, "errors": errors}
