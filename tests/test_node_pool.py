import json

import pytest
import requests
from web3.exceptions import BlockNotFound

from fakes import FACTORY
from jamm_indexer.abis import SWAP_TOPIC
from jamm_indexer.errors import InvalidBlockRange, ProviderUnavailable
from jamm_indexer.node_pool import BlockCache, NodeClientPool


class FakeEth:
    def __init__(self, height=0, fail_with=None, errors=None, logs_error=None):
        self._height = height
        self.fail_with = fail_with
        self.errors = list(errors or [])
        self.logs_error = logs_error
        self.blocks = {}
        self.height_calls = 0
        self.get_logs_calls = []

    @property
    def block_number(self):
        self.height_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.errors:
            raise self.errors.pop(0)
        return self._height

    def get_block(self, number):
        if number not in self.blocks:
            raise BlockNotFound(f"Block {number} not found")
        return self.blocks[number]

    def get_logs(self, params):
        self.get_logs_calls.append(params)
        if self.logs_error is not None:
            raise self.logs_error
        return []


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


def make_pool(settings, *eths):
    sleeps = []
    clients = [(f"http://node-{i}", FakeWeb3(eth)) for i, eth in enumerate(eths)]
    return NodeClientPool(settings, clients=clients, sleep=sleeps.append), sleeps


def test_height_fails_over_to_next_endpoint(settings):
    broken = FakeEth(fail_with=ConnectionError("connection refused"))
    healthy = FakeEth(height=123)
    pool, sleeps = make_pool(settings, broken, healthy)

    assert pool.height() == 123
    assert pool.endpoints[0].healthy is False
    assert pool.endpoints[1].healthy is True
    assert sleeps == []

    # The endpoint that answered stays preferred.
    assert pool.height() == 123
    assert broken.height_calls == 1


def test_all_endpoints_failing_raises_provider_unavailable(settings):
    pool, _ = make_pool(
        settings,
        FakeEth(fail_with=ConnectionError("connection refused")),
        FakeEth(fail_with=RuntimeError("bad gateway")),
    )

    with pytest.raises(ProviderUnavailable) as excinfo:
        pool.height()

    assert "eth_blockNumber" in str(excinfo.value)
    assert isinstance(excinfo.value.last_error, RuntimeError)


def test_rate_limit_is_retried_on_same_endpoint(settings):
    eth = FakeEth(height=7, errors=[Exception("429 Client Error: Too Many Requests")])
    pool, sleeps = make_pool(settings, eth, FakeEth(height=999))

    assert pool.height() == 7
    assert sleeps == [1.0]
    assert pool.rpc_calls == 2


def test_timeout_backoff_uses_retry_multiplier(settings):
    eth = FakeEth(height=7, errors=[TimeoutError("read timed out"), TimeoutError("read timed out")])
    pool, sleeps = make_pool(settings, eth)

    assert pool.height() == 7
    assert sleeps == [1.0, 2.0]


def test_persistent_rate_limit_moves_to_next_endpoint(settings):
    limited = FakeEth(fail_with=Exception("rate limit exceeded"))
    pool, sleeps = make_pool(settings, limited, FakeEth(height=55))

    assert pool.height() == 55
    assert limited.height_calls == settings.retry_attempts
    assert sleeps == [1.0, 3.0]


def test_logs_rejects_invalid_ranges(settings):
    pool, _ = make_pool(settings, FakeEth())

    with pytest.raises(ValueError):
        pool.logs({}, 10, 9)
    with pytest.raises(InvalidBlockRange):
        pool.logs({}, 0, settings.max_block_range)
    assert pool.logs({}, 0, settings.max_block_range - 1) == []


def test_range_refusals_are_not_failed_over(settings):
    first = FakeEth(logs_error=RuntimeError("query returned more than 10000 results"))
    second = FakeEth()
    pool, _ = make_pool(settings, first, second)

    with pytest.raises(InvalidBlockRange):
        pool.logs({}, 0, 10)
    assert second.get_logs_calls == []


@pytest.mark.parametrize(
    "error",
    [
        json.JSONDecodeError("Expecting value", "<html>502 Bad Gateway</html>", 0),
        requests.exceptions.JSONDecodeError("Expecting value", "<html>", 0),
        ValueError("Could not decode response"),
    ],
)
def test_garbled_responses_fail_over(settings, error):
    garbled = FakeEth(fail_with=error)
    pool, _ = make_pool(settings, garbled, FakeEth(height=123))

    assert pool.height() == 123
    assert garbled.height_calls == 1
    assert pool.endpoints[0].healthy is False


def test_invalid_call_address_is_rejected_before_any_request(settings):
    pool, _ = make_pool(settings, FakeEth())

    with pytest.raises(ValueError):
        pool.call("0x1234", [], "getReserves")
    assert pool.rpc_calls == 0


def test_chunked_logs_splits_range(settings):
    settings.max_block_range = 10
    eth = FakeEth()
    pool, _ = make_pool(settings, eth)

    pool.chunked_logs({"address": FACTORY, "topics": [SWAP_TOPIC, None]}, 0, 25)

    ranges = [(p["fromBlock"], p["toBlock"]) for p in eth.get_logs_calls]
    assert ranges == [(0, 9), (10, 19), (20, 25)]
    params = eth.get_logs_calls[0]
    assert params["address"].lower() == FACTORY
    assert params["topics"][0] == "0x" + SWAP_TOPIC.hex()
    assert params["topics"][1] is None


def test_block_header_and_missing_block(settings):
    eth = FakeEth()
    eth.blocks[5] = {"number": 5, "hash": b"\x11" * 32, "timestamp": 1000, "parentHash": b"\x22" * 32}
    pool, _ = make_pool(settings, eth)

    header = pool.block(5)
    assert header.number == 5
    assert header.hash == "0x" + "11" * 32
    assert header.parent_hash == "0x" + "22" * 32
    assert pool.block(6) is None


def test_block_cache_memoizes_headers(settings):
    eth = FakeEth()
    eth.blocks[5] = {"number": 5, "hash": b"\x11" * 32, "timestamp": 1000, "parentHash": b"\x22" * 32}
    pool, _ = make_pool(settings, eth)
    cache = BlockCache(pool)

    cache.get(5)
    cache.get(5)

    assert pool.rpc_calls == 1
