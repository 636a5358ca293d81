"""
ETH/USD reference price feed using CoinGecko API.
Includes caching to avoid rate limits.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Optional

import requests
from pycoingecko import CoinGeckoAPI

from jamm_indexer.database import Database

logger = logging.getLogger(__name__)


class PriceFeed:
    """Fetches and caches the ETH/USD price from CoinGecko."""

    COINGECKO_ID = "ethereum"

    def __init__(
        self,
        database: Optional[Database] = None,
        api_key: Optional[str] = None,
        cache_ttl: int = 60,
        default_price: float = 3000.0,
        api=None,
        time_fn: Callable[[], float] = time.time,
    ):
        """
        Initialize price feed with CoinGecko API.

        Args:
            database: Optional database for persisted price history
            api_key: Optional CoinGecko API key for higher rate limits
            cache_ttl: Seconds a fetched price stays fresh
            default_price: Last-resort price when nothing else is known
            api: Optional pre-built client exposing get_price()
            time_fn: Clock used for cache expiry
        """
        if api is not None:
            self.api = api
        else:
            self.api = CoinGeckoAPI(api_key=api_key) if api_key else CoinGeckoAPI()
        self.database = database
        self.cache_ttl = cache_ttl
        self.default_price = default_price
        self.time_fn = time_fn
        self._cached: Optional[tuple[float, float]] = None  # (price, fetched_at)
        logger.info("Price feed initialized")

    def get_eth_price(self) -> float:
        """
        Get the current ETH/USD price.

        Falls back to the last cached value, then the latest stored observation,
        then the configured default.

        Returns:
            USD price of one ETH
        """
        now = self.time_fn()
        if self._cached is not None:
            price, fetched_at = self._cached
            if now - fetched_at < self.cache_ttl:
                logger.debug(f"Memory cache hit for ETH: ${price}")
                return price

        price = self.fetch_live_price()
        if price is not None:
            self._cached = (price, now)
            return price

        if self._cached is not None:
            logger.warning(f"Using stale cached ETH price ${self._cached[0]}")
            return self._cached[0]

        if self.database:
            stored = self.database.get_latest_eth_price()
            if stored is not None:
                logger.warning(f"Using stored ETH price ${stored}")
                return stored

        logger.warning(f"No ETH price available, using default ${self.default_price}")
        return self.default_price

    def fetch_live_price(self) -> Optional[float]:
        """Ask CoinGecko for the current price. Returns None on failure."""
        try:
            data = self.api.get_price(ids=self.COINGECKO_ID, vs_currencies="usd")
            if self.COINGECKO_ID in data and "usd" in data[self.COINGECKO_ID]:
                price = float(data[self.COINGECKO_ID]["usd"])
                logger.debug(f"Fetched ETH price: ${price}")
                return price
            logger.warning(f"Unexpected CoinGecko response: {data}")
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.warning(f"Failed to fetch ETH price: {e}")
        return None

    def get_price_at(self, timestamp: datetime) -> float:
        """
        Get the ETH price observed at or before a moment.

        Args:
            timestamp: Naive UTC moment (e.g. a block timestamp)

        Returns:
            Stored historical price, or the current price if none is stored
        """
        if self.database:
            stored = self.database.get_eth_price_at(timestamp)
            if stored is not None:
                return stored
        return self.get_eth_price()

    def track(self) -> Optional[float]:
        """Fetch the live price and append it to the stored history."""
        price = self.fetch_live_price()
        if price is None:
            return None
        self._cached = (price, self.time_fn())
        if self.database:
            self.database.save_eth_price(price)
        logger.info(f"Tracked ETH price ${price:,.2f}")
        return price
