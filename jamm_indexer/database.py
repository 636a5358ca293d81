"""
Database module for the ledger mirror.
Uses SQLite (or any SQLAlchemy URL) with SQLAlchemy ORM.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    desc,
    func,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from jamm_indexer.utils import utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"

SKIP_BLOCK_TYPES = ("all", "launch", "swap", "lock", "burn")


class Token(Base):
    """Tracked entity: a launched token and its AMM pool."""

    __tablename__ = "tokens"

    token_address = Column(String, primary_key=True)
    amm_address = Column(String, index=True, nullable=False)
    name = Column(String)
    symbol = Column(String)
    creator_address = Column(String)
    liquidity_percent = Column(Integer)
    initial_liquidity_eth = Column(Float)
    launch_price_eth = Column(Float)
    current_eth_reserve = Column(Float, default=0.0)
    current_token_reserve = Column(Float, default=0.0)
    total_volume_eth = Column(Float, default=0.0)
    block_number = Column(Integer, index=True)  # Launch block
    block_hash = Column(String)
    tx_hash = Column(String)
    created_at = Column(DateTime, default=utcnow)
    last_checked_block = Column(Integer)
    activity_tier = Column(String, default="dormant", index=True)
    last_activity_at = Column(DateTime)
    swap_count_24h = Column(Integer, default=0)
    last_tier_update = Column(DateTime)

    def __repr__(self) -> str:
        return f"<Token(address={self.token_address[:10]}..., symbol={self.symbol}, tier={self.activity_tier})>"


class Swap(Base):
    """Swap events on a token's AMM pool."""

    __tablename__ = "swaps"
    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_swaps_tx_log"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String, index=True, nullable=False)
    amm_address = Column(String)
    user_address = Column(String)
    eth_in = Column(Float, default=0.0)
    token_in = Column(Float, default=0.0)
    eth_out = Column(Float, default=0.0)
    token_out = Column(Float, default=0.0)
    is_buy = Column(Boolean)
    price_eth = Column(Float)
    block_number = Column(Integer, index=True, nullable=False)
    block_hash = Column(String)
    tx_hash = Column(String, nullable=False)
    log_index = Column(Integer, nullable=False)
    timestamp = Column(DateTime)  # Block time
    observed_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Swap(token={self.token_address[:10]}..., block={self.block_number}, tx={self.tx_hash[:10]}...)>"


class TokenLock(Base):
    """Locker positions, keyed by the locker's lock id."""

    __tablename__ = "token_locks"

    lock_id = Column(Integer, primary_key=True, autoincrement=False)
    token_address = Column(String, index=True)
    owner_address = Column(String, index=True)
    amount = Column(Float)
    amount_wei = Column(String)  # Raw amount (string to avoid overflow)
    unlock_time = Column(DateTime)
    token_name = Column(String)
    token_symbol = Column(String)
    token_decimals = Column(Integer)
    block_number = Column(Integer, index=True)
    block_hash = Column(String)
    tx_hash = Column(String)
    is_withdrawn = Column(Boolean, default=False)
    withdrawn_block_number = Column(Integer)
    withdrawn_tx_hash = Column(String)
    withdrawn_at = Column(DateTime)
    observed_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<TokenLock(id={self.lock_id}, token={self.token_address[:10]}..., withdrawn={self.is_withdrawn})>"


class TokenBurn(Base):
    """Transfers of tracked tokens to the burn address."""

    __tablename__ = "token_burns"
    __table_args__ = (UniqueConstraint("tx_hash", "log_index", name="uq_burns_tx_log"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String, index=True, nullable=False)
    from_address = Column(String)
    amount = Column(Float)
    amount_wei = Column(String)
    eth_price_usd = Column(Float)
    block_number = Column(Integer, index=True, nullable=False)
    block_hash = Column(String)
    tx_hash = Column(String, nullable=False)
    log_index = Column(Integer, nullable=False)
    timestamp = Column(DateTime)
    observed_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<TokenBurn(token={self.token_address[:10]}..., amount={self.amount})>"


class PriceSnapshot(Base):
    """Point-in-time pool price. Synthetic launch history has no block number."""

    __tablename__ = "price_snapshots"
    __table_args__ = (
        UniqueConstraint("token_address", "block_number", name="uq_snapshots_token_block"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String, index=True, nullable=False)
    block_number = Column(Integer, index=True)
    block_hash = Column(String)
    price_eth = Column(Float)
    eth_reserve = Column(Float)
    token_reserve = Column(Float)
    eth_price_usd = Column(Float)
    is_interpolated = Column(Boolean, default=False)
    timestamp = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<PriceSnapshot(token={self.token_address[:10]}..., block={self.block_number}, price={self.price_eth})>"


class IndexerCursor(Base):
    """Progress marker per indexing stream."""

    __tablename__ = "indexer_cursors"

    stream_id = Column(String, primary_key=True)
    last_indexed_block = Column(Integer, default=0, nullable=False)
    last_block_hash = Column(String)
    confirmation_depth = Column(Integer, default=2)
    updated_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<IndexerCursor(stream={self.stream_id}, block={self.last_indexed_block})>"


class IndexedBlock(Base):
    """Canonical block hashes observed while indexing."""

    __tablename__ = "indexed_blocks"

    block_number = Column(Integer, primary_key=True, autoincrement=False)
    block_hash = Column(String, nullable=False)
    recorded_at = Column(DateTime, default=utcnow)


class IndexerLock(Base):
    """Current holder of a job lock. The primary key admits one holder per key."""

    __tablename__ = "indexer_locks"

    lock_key = Column(String, primary_key=True)
    request_id = Column(String, nullable=False)
    locked_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<IndexerLock(key={self.lock_key}, request={self.request_id[:8]}, expires={self.expires_at})>"


class LockRequest(Base):
    """FIFO queue entry for a job lock."""

    __tablename__ = "lock_requests"

    requested_seq = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String, unique=True, nullable=False)
    lock_key = Column(String, index=True, nullable=False)
    status = Column(String, default="queued", index=True)  # queued/acquired/released/expired
    requested_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime)  # Wait deadline while queued, hold deadline once acquired
    acquired_at = Column(DateTime)
    released_at = Column(DateTime)

    def __repr__(self) -> str:
        return f"<LockRequest(key={self.lock_key}, request={self.request_id[:8]}, status={self.status})>"


class SkipBlock(Base):
    """Operator exclusion list: blocks whose logs are never ingested."""

    __tablename__ = "skip_blocks"
    __table_args__ = (
        UniqueConstraint("block_number", "indexer_type", name="uq_skip_blocks_block_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    block_number = Column(Integer, index=True, nullable=False)
    indexer_type = Column(String, default="all", nullable=False)
    reason = Column(String)
    created_by = Column(String)
    created_at = Column(DateTime, default=utcnow)


class TokenMetadata(Base):
    """Cached token metadata (name, symbol, decimals)."""

    __tablename__ = "token_metadata"

    token_address = Column(String, primary_key=True)
    name = Column(String)
    symbol = Column(String)
    decimals = Column(Integer)
    updated_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<TokenMetadata(token={self.token_address[:10]}..., symbol={self.symbol}, decimals={self.decimals})>"


class EthPriceHistory(Base):
    """Reference ETH/USD price observations."""

    __tablename__ = "eth_price_history"

    timestamp = Column(DateTime, primary_key=True)
    price_usd = Column(Float, nullable=False)
    source = Column(String, default="coingecko")


class IndexerMetrics(Base):
    """One row per job run."""

    __tablename__ = "indexer_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_type = Column(String, index=True)
    tokens_processed = Column(Integer, default=0)
    blocks_scanned = Column(Integer, default=0)
    records_found = Column(Integer, default=0)
    rpc_calls_made = Column(Integer, default=0)
    processing_time_ms = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    error_details = Column(JSON)
    created_at = Column(DateTime, default=utcnow)


def upsert(session: Session, model, key: Dict, values: Dict, force: bool = False) -> str:
    """
    Insert a row by natural key, leaving (or under force, overwriting) an existing one.

    Args:
        session: Open session (caller commits)
        model: Mapped class
        key: Natural key columns
        values: Remaining columns
        force: Overwrite an existing row instead of ignoring it

    Returns:
        INSERTED, UPDATED or SKIPPED
    """
    existing = session.query(model).filter_by(**key).one_or_none()
    if existing is not None:
        if not force:
            return SKIPPED
        for column, value in values.items():
            setattr(existing, column, value)
        return UPDATED

    session.add(model(**key, **values))
    session.flush()
    return INSERTED


def recompute_swap_aggregates(session: Session, token: Token, now: datetime) -> None:
    """Rebuild volume and 24h swap count of a token from its stored swaps."""
    volume = (
        session.query(func.coalesce(func.sum(Swap.eth_in + Swap.eth_out), 0.0))
        .filter(Swap.token_address == token.token_address)
        .scalar()
    )
    token.total_volume_eth = float(volume or 0.0)
    token.swap_count_24h = (
        session.query(func.count(Swap.id))
        .filter(
            Swap.token_address == token.token_address,
            Swap.timestamp >= now - timedelta(hours=24),
        )
        .scalar()
    )


class Database:
    """Database interface for the ledger mirror."""

    def __init__(self, url: str):
        """
        Initialize database connection.

        Args:
            url: SQLAlchemy URL, or a path to a SQLite database file
        """
        if "://" not in url:
            url = f"sqlite:///{url}"
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.url = url
        self.engine = create_engine(url, connect_args=connect_args)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Database initialized: {url}")

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables created")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.Session()

    # Token operations
    def get_token(self, token_address: str) -> Optional[Token]:
        """Get token by address."""
        with self.get_session() as session:
            return session.get(Token, token_address.lower())

    def get_tokens(self, tier: Optional[str] = None, limit: Optional[int] = None) -> List[Token]:
        """Get tracked tokens, oldest launch first."""
        with self.get_session() as session:
            query = session.query(Token)
            if tier:
                query = query.filter(Token.activity_tier == tier)
            query = query.order_by(Token.block_number, Token.token_address)
            if limit:
                query = query.limit(limit)
            return query.all()

    def count_swaps(self, token_address: str, from_block: int, to_block: int) -> int:
        """Count stored swaps for a token within an inclusive block range."""
        with self.get_session() as session:
            return (
                session.query(func.count(Swap.id))
                .filter(
                    Swap.token_address == token_address.lower(),
                    Swap.block_number >= from_block,
                    Swap.block_number <= to_block,
                )
                .scalar()
            )

    # Block hash ledger
    def record_block_hash(self, session: Session, block_number: int, block_hash: str) -> None:
        """Remember the canonical hash seen for a block (caller commits)."""
        row = session.get(IndexedBlock, block_number)
        if row is None:
            session.add(IndexedBlock(block_number=block_number, block_hash=block_hash))
        elif row.block_hash != block_hash:
            row.block_hash = block_hash
            row.recorded_at = utcnow()

    # Skip block operations
    def add_skip_block(
        self,
        block_number: int,
        indexer_type: str = "all",
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> bool:
        """
        Exclude a block from ingestion.

        Returns:
            True if added, False if already excluded
        """
        if indexer_type not in SKIP_BLOCK_TYPES:
            raise ValueError(f"indexer_type must be one of {', '.join(SKIP_BLOCK_TYPES)}")
        with self.get_session() as session:
            session.add(
                SkipBlock(
                    block_number=block_number,
                    indexer_type=indexer_type,
                    reason=reason,
                    created_by=created_by,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        logger.info(f"Added skip block {block_number} ({indexer_type})")
        return True

    def remove_skip_block(self, block_number: int, indexer_type: str = "all") -> bool:
        """Remove an exclusion. Returns True if one existed."""
        with self.get_session() as session:
            deleted = (
                session.query(SkipBlock)
                .filter_by(block_number=block_number, indexer_type=indexer_type)
                .delete()
            )
            session.commit()
        return bool(deleted)

    def get_skip_blocks(self, indexer_type: str, from_block: int, to_block: int) -> Set[int]:
        """Blocks in range excluded for an indexer type (or for all indexers)."""
        with self.get_session() as session:
            rows = (
                session.query(SkipBlock.block_number)
                .filter(
                    SkipBlock.indexer_type.in_(["all", indexer_type]),
                    SkipBlock.block_number >= from_block,
                    SkipBlock.block_number <= to_block,
                )
                .all()
            )
        return {row[0] for row in rows}

    def list_skip_blocks(self) -> List[SkipBlock]:
        with self.get_session() as session:
            return session.query(SkipBlock).order_by(SkipBlock.block_number).all()

    # Reference price operations
    def save_eth_price(self, price_usd: float, timestamp: Optional[datetime] = None, source: str = "coingecko") -> None:
        """Save a reference price observation."""
        with self.get_session() as session:
            session.merge(
                EthPriceHistory(timestamp=timestamp or utcnow(), price_usd=price_usd, source=source)
            )
            session.commit()

    def get_eth_price_at(self, timestamp: datetime) -> Optional[float]:
        """Latest reference price observed at or before a timestamp."""
        with self.get_session() as session:
            row = (
                session.query(EthPriceHistory)
                .filter(EthPriceHistory.timestamp <= timestamp)
                .order_by(desc(EthPriceHistory.timestamp))
                .first()
            )
            return row.price_usd if row else None

    def get_latest_eth_price(self) -> Optional[float]:
        with self.get_session() as session:
            row = session.query(EthPriceHistory).order_by(desc(EthPriceHistory.timestamp)).first()
            return row.price_usd if row else None

    # Metrics
    def save_metrics(
        self,
        run_type: str,
        tokens_processed: int = 0,
        blocks_scanned: int = 0,
        records_found: int = 0,
        rpc_calls_made: int = 0,
        processing_time_ms: int = 0,
        errors: Optional[List[str]] = None,
    ) -> None:
        """Record one job run."""
        errors = errors or []
        with self.get_session() as session:
            session.add(
                IndexerMetrics(
                    run_type=run_type,
                    tokens_processed=tokens_processed,
                    blocks_scanned=blocks_scanned,
                    records_found=records_found,
                    rpc_calls_made=rpc_calls_made,
                    processing_time_ms=processing_time_ms,
                    errors_count=len(errors),
                    error_details=errors[:50] if errors else None,
                )
            )
            session.commit()

    def get_recent_metrics(self, count: int = 20) -> List[IndexerMetrics]:
        with self.get_session() as session:
            return (
                session.query(IndexerMetrics)
                .order_by(desc(IndexerMetrics.created_at), desc(IndexerMetrics.id))
                .limit(count)
                .all()
            )

    def get_cursors(self) -> List[IndexerCursor]:
        with self.get_session() as session:
            return session.query(IndexerCursor).order_by(IndexerCursor.stream_id).all()
