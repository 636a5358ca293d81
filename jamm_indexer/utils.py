"""
Utility functions for the JAMM ledger indexer.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Iterator, Optional, Tuple


WEI_PER_ETH = 10**18

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests", "-32005")
TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout", "econnreset", "connection aborted")
RANGE_MARKERS = (
    "query returned more than",
    "block range",
    "range too large",
    "range is too large",
    "too many blocks",
)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
    """
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def utcnow() -> datetime:
    """Naive UTC now, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(timestamp: int) -> datetime:
    """Convert a block's unix timestamp to naive UTC."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock used by runs, lock waits and schedules."""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class RunBudget:
    """Hard wall-clock execution budget for a single run."""

    def __init__(self, max_seconds: float, clock: Optional[SystemClock] = None):
        self.clock = clock or SystemClock()
        self.max_seconds = max_seconds
        self.started = self.clock.monotonic()

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def exceeded(self) -> bool:
        return self.elapsed() > self.max_seconds


def is_rate_limit_error(error: BaseException) -> bool:
    """True for HTTP 429 / JSON-RPC -32005 style responses."""
    code = getattr(error, "code", None)
    if code in (429, -32005):
        return True
    response = getattr(error, "response", None)
    if getattr(response, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, TimeoutError):
        return True
    message = f"{type(error).__name__} {error}".lower()
    return any(marker in message for marker in TIMEOUT_MARKERS)


def is_range_error(error: BaseException) -> bool:
    """A provider refusing a log query because the range or result set is too large."""
    message = str(error).lower()
    return any(marker in message for marker in RANGE_MARKERS)


def backoff_delay(
    attempt: int,
    base_delay: float,
    multiplier: float,
    max_delay: float,
) -> float:
    """Delay before retry number ``attempt`` (0-based): base * multiplier**attempt, capped."""
    return min(base_delay * (multiplier**attempt), max_delay)


def chunk_range(from_block: int, to_block: int, size: int) -> Iterator[Tuple[int, int]]:
    """
    Split an inclusive block range into inclusive chunks of at most ``size`` blocks.

    Args:
        from_block: First block
        to_block: Last block
        size: Maximum number of blocks per chunk

    Returns:
        Iterator of (start, end) pairs
    """
    if size <= 0:
        raise ValueError("chunk size must be positive")
    start = from_block
    while start <= to_block:
        end = min(start + size - 1, to_block)
        yield start, end
        start = end + 1


def format_ether(amount_wei: int) -> float:
    """
    Format wei amount to ether units.

    Args:
        amount_wei: Amount in wei

    Returns:
        Amount in ether
    """
    return int(amount_wei) / WEI_PER_ETH


def truncate_address(address: str, chars: int = 6) -> str:
    """
    Truncate Ethereum address for display.

    Args:
        address: Ethereum address
        chars: Number of characters to show on each end

    Returns:
        Truncated address (e.g., "0xabc...123")
    """
    if len(address) <= chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


def safe_division(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division by zero

    Returns:
        Division result or default
    """
    if denominator == 0:
        return default
    return numerator / denominator

