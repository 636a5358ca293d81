"""
In-memory stand-ins for the ledger node, the clock and CoinGecko.
"""

import hashlib
from datetime import datetime, timedelta, timezone

import requests
from eth_abi import encode

from jamm_indexer.abis import (
    SWAP_TOPIC,
    TOKEN_LAUNCHED_TOPIC,
    TOKENS_LOCKED_TOPIC,
    TOKENS_UNLOCKED_TOPIC,
    TRANSFER_TOPIC,
    address_topic,
)
from jamm_indexer.errors import ProviderUnavailable
from jamm_indexer.node_pool import BlockHeader, LogEntry

START = datetime(2026, 1, 1, 12, 0, 0)
BLOCK_TIME = 12
# Block 0 is mined an hour before START so every test block is in the past 24h.
GENESIS_TIMESTAMP = int(START.replace(tzinfo=timezone.utc).timestamp()) - 3600

FACTORY = "0x" + "fa" * 20
LOCKER = "0x" + "10" * 20
BURN = "0x" + "00" * 20
CREATOR = "0x" + "cc" * 20
USER = "0x" + "ab" * 20
OTHER = "0x" + "ee" * 20

WEI = 10**18


def token_address(n: int) -> str:
    return "0x" + f"{n:02x}" * 20


def amm_address(n: int) -> str:
    return "0x" + "a0" * 19 + f"{n:02x}"


def block_hash(number: int, fork: int = 0) -> str:
    return "0x" + hashlib.sha256(f"{fork}:{number}".encode()).hexdigest()


def uint_topic(value: int) -> bytes:
    return int(value).to_bytes(32, "big")


class ManualClock:
    """Clock that only moves when told to (sleep() advances it)."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.mono = 0.0
        self.sleeps = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self.mono += seconds


class FakeCoinGecko:
    def __init__(self, price: float = 3100.0, fail: bool = False):
        self.price = price
        self.fail = fail
        self.requests = 0

    def get_price(self, ids, vs_currencies):
        self.requests += 1
        if self.fail:
            raise requests.ConnectionError("coingecko unreachable")
        return {ids: {vs_currencies: self.price}}


class FakeChain:
    """
    A scripted chain exposing the NodeClientPool interface.

    Block hashes derive from (fork, number); reorg(n) bumps the fork of every
    block from n upwards while keeping the logs, so re-mined events keep their
    tx hash and log index but carry a new block hash.
    """

    def __init__(self, head: int = 200):
        self.head = head
        self.reorg_points = []
        self.reserves = {}
        self.erc20 = {}
        self.locks = {}
        self.failing_ranges = []
        self.rpc_calls = 0
        self.calls = []
        self._logs = []
        self._tx = 0

    # Chain state

    def fork(self, number: int) -> int:
        return sum(1 for point in self.reorg_points if number >= point)

    def hash(self, number: int) -> str:
        return block_hash(number, self.fork(number))

    def timestamp(self, number: int) -> int:
        return GENESIS_TIMESTAMP + number * BLOCK_TIME

    def block_datetime(self, number: int) -> datetime:
        return datetime.fromtimestamp(self.timestamp(number), tz=timezone.utc).replace(tzinfo=None)

    def mine(self, blocks: int) -> None:
        self.head += blocks

    def reorg(self, from_block: int) -> None:
        self.reorg_points.append(from_block)

    # Scripting logs

    def add_log(self, block: int, address: str, topics, data: bytes) -> str:
        self._tx += 1
        tx_hash = "0x" + f"{self._tx:064x}"
        log_index = sum(1 for log in self._logs if log["block"] == block)
        self._logs.append(
            {
                "block": block,
                "address": address.lower(),
                "topics": tuple(topics),
                "data": data,
                "tx_hash": tx_hash,
                "log_index": log_index,
            }
        )
        return tx_hash

    def add_launch(
        self,
        block: int,
        token: str,
        amm: str,
        name: str = "Test Token",
        symbol: str = "TEST",
        liquidity_percent: int = 75,
        initial_liquidity_wei: int = 2 * 10**17,
    ) -> str:
        data = encode(
            ["string", "string", "uint256", "uint256"],
            [name, symbol, liquidity_percent, initial_liquidity_wei],
        )
        topics = [TOKEN_LAUNCHED_TOPIC, address_topic(token), address_topic(amm), address_topic(CREATOR)]
        return self.add_log(block, FACTORY, topics, data)

    def add_swap(self, block: int, amm: str, eth_in=0, token_in=0, eth_out=0, token_out=0, user: str = USER) -> str:
        data = encode(["uint256"] * 4, [eth_in, token_in, eth_out, token_out])
        return self.add_log(block, amm, [SWAP_TOPIC, address_topic(user)], data)

    def add_lock(self, block: int, lock_id: int, token: str, amount: int, unlock_time: int, owner: str = USER) -> str:
        data = encode(["uint256", "uint256"], [amount, unlock_time])
        topics = [TOKENS_LOCKED_TOPIC, uint_topic(lock_id), address_topic(owner), address_topic(token)]
        return self.add_log(block, LOCKER, topics, data)

    def add_unlock(self, block: int, lock_id: int, token: str, amount: int, owner: str = USER) -> str:
        data = encode(["uint256"], [amount])
        topics = [TOKENS_UNLOCKED_TOPIC, uint_topic(lock_id), address_topic(owner), address_topic(token)]
        return self.add_log(block, LOCKER, topics, data)

    def add_transfer(self, block: int, token: str, to: str, value: int, sender: str = USER) -> str:
        data = encode(["uint256"], [value])
        return self.add_log(block, token, [TRANSFER_TOPIC, address_topic(sender), address_topic(to)], data)

    # Pool interface

    def height(self) -> int:
        self.rpc_calls += 1
        return self.head

    def block(self, number: int):
        self.rpc_calls += 1
        if number < 0 or number > self.head:
            return None
        return BlockHeader(
            number=number,
            hash=self.hash(number),
            timestamp=self.timestamp(number),
            parent_hash=self.hash(number - 1) if number > 0 else None,
        )

    def logs(self, filter_params, from_block: int, to_block: int):
        self.rpc_calls += 1
        for start, end in self.failing_ranges:
            if start <= to_block and from_block <= end:
                raise ProviderUnavailable(f"eth_getLogs({from_block}-{to_block})")
        address = (filter_params.get("address") or "").lower()
        topics = filter_params.get("topics") or []
        entries = []
        for log in self._logs:
            if not from_block <= log["block"] <= min(to_block, self.head):
                continue
            if address and log["address"] != address:
                continue
            if not self._topics_match(topics, log["topics"]):
                continue
            entries.append(
                LogEntry(
                    address=log["address"],
                    topics=log["topics"],
                    data=log["data"],
                    block_number=log["block"],
                    block_hash=self.hash(log["block"]),
                    tx_hash=log["tx_hash"],
                    log_index=log["log_index"],
                )
            )
        return sorted(entries, key=lambda entry: (entry.block_number, entry.log_index))

    def chunked_logs(self, filter_params, from_block: int, to_block: int):
        return self.logs(filter_params, from_block, to_block)

    def call(self, address: str, abi, method: str, *args, block_identifier="latest"):
        self.rpc_calls += 1
        address = address.lower()
        self.calls.append((address, method, args))
        if method in ("reserveETH", "reserveToken"):
            if address not in self.reserves:
                raise ValueError(f"execution reverted: no pool at {address}")
            eth, token = self.reserves[address]
            return eth if method == "reserveETH" else token
        if method in ("name", "symbol", "decimals"):
            if address not in self.erc20:
                raise ValueError(f"execution reverted: {address} is not a token")
            name, symbol, decimals = self.erc20[address]
            return {"name": name, "symbol": symbol, "decimals": decimals}[method]
        if method == "getLock":
            return self.locks[args[0]]
        raise ValueError(f"unknown method {method}")

    def call_many(self, calls, max_workers=None):
        results = []
        for address, abi, method, args in calls:
            try:
                results.append(self.call(address, abi, method, *args))
            except ProviderUnavailable:
                raise
            except Exception as e:
                results.append(e)
        return results

    @staticmethod
    def _topics_match(wanted, actual) -> bool:
        for i, topic in enumerate(wanted):
            if topic is None:
                continue
            if i >= len(actual) or actual[i] != topic:
                return False
        return True
