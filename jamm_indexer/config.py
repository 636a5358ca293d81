"""
Configuration module for the JAMM ledger indexer.
Loads environment variables and defines constants.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _split_urls(raw: str) -> List[str]:
    return [url.strip() for url in (raw or "").split(",") if url.strip()]


class Config:
    """Application configuration."""

    # RPC Configuration (comma separated, failover order)
    RPC_URLS: List[str] = _split_urls(
        os.getenv(
            "RPC_URLS",
            "https://ethereum-sepolia-rpc.publicnode.com,"
            "https://rpc.sepolia.org,"
            "https://ethereum-sepolia.blockpi.network/v1/rpc/public",
        )
    )
    RPC_TIMEOUT: int = int(os.getenv("RPC_TIMEOUT", "30"))

    # Retry / backoff
    RETRY_ATTEMPTS: int = int(os.getenv("RETRY_ATTEMPTS", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    RETRY_MULTIPLIER: float = float(os.getenv("RETRY_MULTIPLIER", "2.0"))
    RETRY_MAX_DELAY: float = float(os.getenv("RETRY_MAX_DELAY", "10.0"))
    RATE_LIMIT_MULTIPLIER: float = float(os.getenv("RATE_LIMIT_MULTIPLIER", "3.0"))
    RATE_LIMIT_MAX_DELAY: float = float(os.getenv("RATE_LIMIT_MAX_DELAY", "60.0"))

    # Contract Addresses
    FACTORY_ADDRESS: str = os.getenv(
        "FACTORY_ADDRESS", "0xDE377c1C3280C2De18479Acbe40a06a79E0B3831"
    )
    LOCKER_ADDRESS: str = os.getenv(
        "LOCKER_ADDRESS", "0x1277b6E3f4407AD44A9b33641b51848c0098368f"
    )
    BURN_ADDRESS: str = os.getenv(
        "BURN_ADDRESS", "0x0000000000000000000000000000000000000000"
    )

    # Database
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "jamm_indexer.db")
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

    # Indexing
    START_BLOCK: int = int(os.getenv("START_BLOCK", "0"))
    CONFIRMATION_DEPTH: int = int(os.getenv("CONFIRMATION_DEPTH", "2"))
    MIN_BLOCK_RANGE: int = int(os.getenv("MIN_BLOCK_RANGE", "100"))
    MAX_BLOCK_RANGE: int = int(os.getenv("MAX_BLOCK_RANGE", "2000"))
    MAX_EXECUTION_SECONDS: float = float(os.getenv("MAX_EXECUTION_SECONDS", "23"))
    PARALLEL_TOKEN_LIMIT: int = int(os.getenv("PARALLEL_TOKEN_LIMIT", "6"))
    REORG_LOOKBACK_BLOCKS: int = int(os.getenv("REORG_LOOKBACK_BLOCKS", "100"))
    GAP_RANGE_SIZE: int = int(os.getenv("GAP_RANGE_SIZE", "1000"))
    TOTAL_SUPPLY: int = int(os.getenv("TOTAL_SUPPLY", "1000000"))
    INITIAL_HISTORY_HOURS: int = int(os.getenv("INITIAL_HISTORY_HOURS", "24"))

    # Lock manager
    LOCK_TTL_SECONDS: int = int(os.getenv("LOCK_TTL_SECONDS", "300"))
    LOCK_WAIT_SECONDS: int = int(os.getenv("LOCK_WAIT_SECONDS", "20"))
    LOCK_POLL_SECONDS: float = float(os.getenv("LOCK_POLL_SECONDS", "3"))
    LOCK_RENEW_INTERVAL_SECONDS: float = float(os.getenv("LOCK_RENEW_INTERVAL_SECONDS", "30"))

    # Activity tiers: interval seconds / batch size / parallelism
    HOT_INTERVAL: int = int(os.getenv("HOT_INTERVAL", "10"))
    WARM_INTERVAL: int = int(os.getenv("WARM_INTERVAL", "120"))
    COLD_INTERVAL: int = int(os.getenv("COLD_INTERVAL", "900"))
    DORMANT_INTERVAL: int = int(os.getenv("DORMANT_INTERVAL", "3600"))
    HOT_BATCH: int = int(os.getenv("HOT_BATCH", "10"))
    WARM_BATCH: int = int(os.getenv("WARM_BATCH", "25"))
    COLD_BATCH: int = int(os.getenv("COLD_BATCH", "50"))
    DORMANT_BATCH: int = int(os.getenv("DORMANT_BATCH", "100"))
    TIER_RECOMPUTE_INTERVAL: int = int(os.getenv("TIER_RECOMPUTE_INTERVAL", "300"))

    # Reference price feed
    COINGECKO_API_KEY: Optional[str] = os.getenv("COINGECKO_API_KEY")
    PRICE_CACHE_TTL: int = int(os.getenv("PRICE_CACHE_TTL", "60"))
    DEFAULT_ETH_PRICE_USD: float = float(os.getenv("DEFAULT_ETH_PRICE_USD", "3000"))

    # HTTP surface
    HTTP_HOST: str = os.getenv("HTTP_HOST", "127.0.0.1")
    HTTP_PORT: int = int(os.getenv("HTTP_PORT", "8080"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: str = os.getenv("LOG_FILE", "jamm_indexer.log")

    @classmethod
    def database_url(cls) -> str:
        """SQLAlchemy URL, falling back to the SQLite file path."""
        return cls.DATABASE_URL or f"sqlite:///{cls.DATABASE_PATH}"

    # Validation
    @classmethod
    def validate(cls) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of error messages, empty if valid
        """
        errors = []

        if not cls.RPC_URLS:
            errors.append("RPC_URLS not set in .env")

        if not cls.FACTORY_ADDRESS:
            errors.append("FACTORY_ADDRESS not set in .env")

        if cls.CONFIRMATION_DEPTH < 0:
            errors.append("CONFIRMATION_DEPTH must not be negative")

        if cls.MIN_BLOCK_RANGE <= 0 or cls.MAX_BLOCK_RANGE < cls.MIN_BLOCK_RANGE:
            errors.append("MIN_BLOCK_RANGE/MAX_BLOCK_RANGE are inconsistent")

        if cls.MAX_BLOCK_RANGE > 50000:
            errors.append("MAX_BLOCK_RANGE must not exceed 50000")

        if cls.LOCK_TTL_SECONDS <= 0:
            errors.append("LOCK_TTL_SECONDS must be positive")

        return errors

    @classmethod
    def settings(cls) -> "IndexerSettings":
        """Snapshot the environment-driven values into an IndexerSettings."""
        return IndexerSettings(
            rpc_urls=list(cls.RPC_URLS),
            rpc_timeout=cls.RPC_TIMEOUT,
            retry_attempts=cls.RETRY_ATTEMPTS,
            retry_base_delay=cls.RETRY_BASE_DELAY,
            retry_multiplier=cls.RETRY_MULTIPLIER,
            retry_max_delay=cls.RETRY_MAX_DELAY,
            rate_limit_multiplier=cls.RATE_LIMIT_MULTIPLIER,
            rate_limit_max_delay=cls.RATE_LIMIT_MAX_DELAY,
            factory_address=cls.FACTORY_ADDRESS,
            locker_address=cls.LOCKER_ADDRESS,
            burn_address=cls.BURN_ADDRESS,
            start_block=cls.START_BLOCK,
            confirmation_depth=cls.CONFIRMATION_DEPTH,
            min_block_range=cls.MIN_BLOCK_RANGE,
            max_block_range=cls.MAX_BLOCK_RANGE,
            max_execution_seconds=cls.MAX_EXECUTION_SECONDS,
            parallel_token_limit=cls.PARALLEL_TOKEN_LIMIT,
            reorg_lookback_blocks=cls.REORG_LOOKBACK_BLOCKS,
            gap_range_size=cls.GAP_RANGE_SIZE,
            total_supply=cls.TOTAL_SUPPLY,
            initial_history_hours=cls.INITIAL_HISTORY_HOURS,
            lock_ttl_seconds=cls.LOCK_TTL_SECONDS,
            lock_wait_seconds=cls.LOCK_WAIT_SECONDS,
            lock_poll_seconds=cls.LOCK_POLL_SECONDS,
            lock_renew_interval_seconds=cls.LOCK_RENEW_INTERVAL_SECONDS,
            tier_intervals={
                "hot": cls.HOT_INTERVAL,
                "warm": cls.WARM_INTERVAL,
                "cold": cls.COLD_INTERVAL,
                "dormant": cls.DORMANT_INTERVAL,
            },
            tier_batches={
                "hot": cls.HOT_BATCH,
                "warm": cls.WARM_BATCH,
                "cold": cls.COLD_BATCH,
                "dormant": cls.DORMANT_BATCH,
            },
            tier_recompute_interval=cls.TIER_RECOMPUTE_INTERVAL,
            price_cache_ttl=cls.PRICE_CACHE_TTL,
            default_eth_price_usd=cls.DEFAULT_ETH_PRICE_USD,
        )


@dataclass
class IndexerSettings:
    """Tunables handed to the indexing components."""

    rpc_urls: List[str] = field(default_factory=list)
    rpc_timeout: int = 30
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 10.0
    rate_limit_multiplier: float = 3.0
    rate_limit_max_delay: float = 60.0
    factory_address: str = "0xDE377c1C3280C2De18479Acbe40a06a79E0B3831"
    locker_address: str = "0x1277b6E3f4407AD44A9b33641b51848c0098368f"
    burn_address: str = "0x0000000000000000000000000000000000000000"
    start_block: int = 0
    confirmation_depth: int = 2
    min_block_range: int = 100
    max_block_range: int = 2000
    max_execution_seconds: float = 23.0
    parallel_token_limit: int = 6
    reorg_lookback_blocks: int = 100
    gap_range_size: int = 1000
    total_supply: int = 1_000_000
    initial_history_hours: int = 24
    lock_ttl_seconds: int = 300
    lock_wait_seconds: int = 20
    lock_poll_seconds: float = 3.0
    lock_renew_interval_seconds: float = 30.0
    tier_intervals: Dict[str, int] = field(
        default_factory=lambda: {"hot": 10, "warm": 120, "cold": 900, "dormant": 3600}
    )
    tier_batches: Dict[str, int] = field(
        default_factory=lambda: {"hot": 10, "warm": 25, "cold": 50, "dormant": 100}
    )
    tier_recompute_interval: int = 300
    price_cache_ttl: int = 60
    default_eth_price_usd: float = 3000.0
