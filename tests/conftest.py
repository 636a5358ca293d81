import pytest

from fakes import BURN, FACTORY, LOCKER, FakeChain, FakeCoinGecko, ManualClock
from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import Database
from jamm_indexer.jobs import JobRunner
from jamm_indexer.price_feed import PriceFeed


@pytest.fixture
def settings():
    return IndexerSettings(
        rpc_urls=["http://node-a", "http://node-b"],
        retry_attempts=3,
        retry_base_delay=1.0,
        factory_address=FACTORY,
        locker_address=LOCKER,
        burn_address=BURN,
        start_block=0,
        confirmation_depth=2,
        lock_wait_seconds=5,
        lock_poll_seconds=1.0,
    )


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "indexer_test.db"))
    database.create_tables()
    yield database
    database.engine.dispose()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def chain():
    return FakeChain(head=200)


@pytest.fixture
def coingecko():
    return FakeCoinGecko(price=3100.0)


@pytest.fixture
def price_feed(db, coingecko):
    return PriceFeed(database=db, api=coingecko, cache_ttl=60, default_price=3000.0)


@pytest.fixture
def runner(db, settings, chain, price_feed, clock):
    return JobRunner(db, settings, pool_factory=lambda: chain, price_feed=price_feed, clock=clock)
