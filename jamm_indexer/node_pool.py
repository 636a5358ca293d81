"""
Failover-capable pool of ledger node clients.

Wraps several JSON-RPC endpoints behind one object. Every call is attempted on
the preferred endpoint first; recoverable errors (timeouts, rate limits) are
retried there with exponential backoff, anything else moves the same call on to
the next endpoint. When every endpoint has failed the call raises
ProviderUnavailable, which is fatal for the current run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from web3 import Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    BlockNotFound,
    ContractLogicError,
    MismatchedABI,
    Web3ValidationError,
)

from jamm_indexer.config import IndexerSettings
from jamm_indexer.errors import InvalidBlockRange, ProviderUnavailable, TransientNetworkError
from jamm_indexer.utils import (
    backoff_delay,
    chunk_range,
    is_range_error,
    is_rate_limit_error,
    is_timeout_error,
)

logger = logging.getLogger(__name__)

# Errors that mean "the call itself is wrong", identical on every endpoint.
NON_FAILOVER_ERRORS = (
    ContractLogicError,
    BadFunctionCallOutput,
    MismatchedABI,
    Web3ValidationError,
    InvalidBlockRange,
)


@dataclass(frozen=True)
class BlockHeader:
    number: int
    hash: str
    timestamp: int
    parent_hash: Optional[str] = None


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: Tuple[bytes, ...]
    data: bytes
    block_number: int
    block_hash: str
    tx_hash: str
    log_index: int


@dataclass
class Endpoint:
    url: str
    w3: Any = None
    healthy: Optional[bool] = None
    failures: int = 0


class NodeClientPool:
    """Health-checked round-robin pool of web3 clients."""

    def __init__(
        self,
        settings: IndexerSettings,
        clients: Optional[Sequence[Tuple[str, Any]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the pool.

        Args:
            settings: Indexer settings (endpoint list, backoff and range limits)
            clients: Optional pre-built (url, web3) pairs, used instead of settings.rpc_urls
            sleep: Sleep function used between retries
        """
        self.settings = settings
        self.sleep = sleep
        if clients is not None:
            self.endpoints = [Endpoint(url=url, w3=w3) for url, w3 in clients]
        else:
            self.endpoints = [Endpoint(url=url) for url in settings.rpc_urls]
        if not self.endpoints:
            raise ValueError("NodeClientPool needs at least one endpoint")
        self.max_block_range = settings.max_block_range
        self.rpc_calls = 0
        self._current = 0
        self._lock = threading.Lock()
        logger.info(f"Node pool initialized with {len(self.endpoints)} endpoints")

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def height(self) -> int:
        """Current chain height."""
        return self._execute("eth_blockNumber", lambda w3: int(w3.eth.block_number))

    def block(self, number: int) -> Optional[BlockHeader]:
        """
        Get a block header.

        Args:
            number: Block number

        Returns:
            BlockHeader, or None if the node does not know the block
        """

        def _get(w3):
            try:
                raw = w3.eth.get_block(number)
            except BlockNotFound:
                return None
            if raw is None:
                return None
            return BlockHeader(
                number=int(raw["number"]),
                hash=Web3.to_hex(raw["hash"]),
                timestamp=int(raw["timestamp"]),
                parent_hash=Web3.to_hex(raw["parentHash"]) if raw.get("parentHash") else None,
            )

        return self._execute(f"eth_getBlockByNumber({number})", _get)

    def logs(self, filter_params: Dict[str, Any], from_block: int, to_block: int) -> List[LogEntry]:
        """
        Fetch logs for a bounded block range.

        Args:
            filter_params: {"address": ..., "topics": [...]} (topics as bytes or None)
            from_block: First block (inclusive)
            to_block: Last block (inclusive)

        Returns:
            Logs ordered as the node returned them
        """
        self._check_range(from_block, to_block)
        params: Dict[str, Any] = {"fromBlock": int(from_block), "toBlock": int(to_block)}
        address = filter_params.get("address")
        if address:
            if isinstance(address, (list, tuple)):
                params["address"] = [Web3.to_checksum_address(a) for a in address]
            else:
                params["address"] = Web3.to_checksum_address(address)
        topics = filter_params.get("topics")
        if topics:
            params["topics"] = [Web3.to_hex(t) if isinstance(t, bytes) else t for t in topics]

        def _get(w3):
            return [self._to_log_entry(raw) for raw in w3.eth.get_logs(params)]

        return self._execute(f"eth_getLogs({from_block}-{to_block})", _get)

    def call(self, address: str, abi: List[dict], method: str, *args, block_identifier="latest") -> Any:
        """
        Call a contract view function.

        Args:
            address: Contract address
            abi: Contract ABI
            method: Function name
            *args: Function arguments
            block_identifier: Block to read state at

        Returns:
            ABI-decoded return value
        """

        checksummed = Web3.to_checksum_address(address)

        def _call(w3):
            contract = w3.eth.contract(address=checksummed, abi=abi)
            return getattr(contract.functions, method)(*args).call(
                block_identifier=block_identifier
            )

        return self._execute(f"{method}@{address}", _call)

    def call_many(
        self,
        calls: Sequence[Tuple[str, List[dict], str, tuple]],
        max_workers: Optional[int] = None,
    ) -> List[Any]:
        """
        Issue independent view calls concurrently and wait for all of them.

        Args:
            calls: (address, abi, method, args) tuples
            max_workers: Thread count (defaults to settings.parallel_token_limit)

        Returns:
            Results in call order; a failed call yields its exception object
        """
        if not calls:
            return []
        workers = max(1, min(len(calls), max_workers or self.settings.parallel_token_limit))

        def _one(request):
            address, abi, method, args = request
            try:
                return self.call(address, abi, method, *args)
            except ProviderUnavailable:
                raise
            except Exception as e:
                return e

        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(_one, calls))

    def chunked_logs(self, filter_params: Dict[str, Any], from_block: int, to_block: int) -> List[LogEntry]:
        """Fetch logs for an arbitrarily large range in max_block_range chunks."""
        results: List[LogEntry] = []
        for start, end in chunk_range(from_block, to_block, self.max_block_range):
            results.extend(self.logs(filter_params, start, end))
        return results

    # ------------------------------------------------------------------
    # Failover machinery
    # ------------------------------------------------------------------

    def _check_range(self, from_block: int, to_block: int) -> None:
        if from_block < 0 or from_block > to_block:
            raise InvalidBlockRange(f"Invalid block range {from_block}-{to_block}")
        if to_block - from_block >= self.max_block_range:
            raise InvalidBlockRange(
                f"Block range {from_block}-{to_block} exceeds maximum of {self.max_block_range}"
            )

    def _client(self, endpoint: Endpoint):
        if endpoint.w3 is None:
            endpoint.w3 = Web3(
                Web3.HTTPProvider(
                    endpoint.url, request_kwargs={"timeout": self.settings.rpc_timeout}
                )
            )
        return endpoint.w3

    def _execute(self, operation: str, fn: Callable[[Any], Any]) -> Any:
        with self._lock:
            start = self._current
        last_error: Optional[BaseException] = None

        for offset in range(len(self.endpoints)):
            index = (start + offset) % len(self.endpoints)
            endpoint = self.endpoints[index]
            try:
                result = self._call_with_backoff(endpoint, operation, fn)
            except NON_FAILOVER_ERRORS:
                raise
            except Exception as e:
                last_error = e
                endpoint.failures += 1
                endpoint.healthy = False
                logger.warning(f"RPC provider {endpoint.url} failed for {operation}, trying next: {e}")
                continue

            if not endpoint.healthy:
                endpoint.healthy = True
                logger.debug(f"RPC provider {endpoint.url} marked healthy")
            with self._lock:
                self._current = index
            return result

        logger.error(f"All RPC providers failed for {operation}")
        raise ProviderUnavailable(operation, last_error)

    def _call_with_backoff(self, endpoint: Endpoint, operation: str, fn: Callable[[Any], Any]) -> Any:
        client = self._client(endpoint)
        attempts = max(1, self.settings.retry_attempts)
        for attempt in range(attempts):
            with self._lock:
                self.rpc_calls += 1
            try:
                return fn(client)
            except NON_FAILOVER_ERRORS:
                raise
            except Exception as e:
                if is_range_error(e):
                    raise InvalidBlockRange(f"{operation} refused by {endpoint.url}: {e}") from e
                rate_limited = is_rate_limit_error(e)
                if not (rate_limited or is_timeout_error(e)):
                    raise
                if attempt >= attempts - 1:
                    raise TransientNetworkError(
                        f"{operation} on {endpoint.url} failed after {attempts} attempts: {e}",
                        rate_limited=rate_limited,
                    ) from e
                if rate_limited:
                    delay = backoff_delay(
                        attempt,
                        self.settings.retry_base_delay,
                        self.settings.rate_limit_multiplier,
                        self.settings.rate_limit_max_delay,
                    )
                    logger.info(f"Rate limit detected on {endpoint.url}, waiting {delay:.1f}s ({attempt + 1}/{attempts})")
                else:
                    delay = backoff_delay(
                        attempt,
                        self.settings.retry_base_delay,
                        self.settings.retry_multiplier,
                        self.settings.retry_max_delay,
                    )
                    logger.info(f"Timeout on {endpoint.url}, retrying in {delay:.1f}s ({attempt + 1}/{attempts})")
                self.sleep(delay)
        raise TransientNetworkError(f"{operation} on {endpoint.url} exhausted retries")

    @staticmethod
    def _to_log_entry(raw) -> LogEntry:
        return LogEntry(
            address=str(raw["address"]).lower(),
            topics=tuple(bytes(topic) for topic in raw["topics"]),
            data=bytes(raw["data"]),
            block_number=int(raw["blockNumber"]),
            block_hash=Web3.to_hex(raw["blockHash"]),
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            log_index=int(raw["logIndex"]),
        )


class BlockCache:
    """Per-run memo of block headers."""

    def __init__(self, pool):
        self.pool = pool
        self._headers: Dict[int, Optional[BlockHeader]] = {}

    def get(self, number: int) -> Optional[BlockHeader]:
        if number not in self._headers:
            self._headers[number] = self.pool.block(number)
        return self._headers[number]

    def clear(self) -> None:
        self._headers.clear()
