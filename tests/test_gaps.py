import pytest

from fakes import WEI, amm_address, token_address
from jamm_indexer.database import Swap
from jamm_indexer.errors import UnknownToken
from jamm_indexer.gaps import Backfiller, GapDetector
from jamm_indexer.ingestors import LaunchIngestor, SwapIngestor

TOKEN = token_address(3)
AMM = amm_address(3)


@pytest.fixture
def traded(db, chain, settings, clock):
    """A token with ten swaps in blocks 101-110, three of which are missing from the mirror."""
    chain.add_launch(100, TOKEN, AMM)
    chain.reserves[AMM] = (2 * 10**17, 750_000 * WEI)
    for block in range(101, 111):
        chain.add_swap(block, AMM, eth_in=WEI // 100, token_out=10 * WEI)
    LaunchIngestor(db, chain, settings, clock=clock).ingest(100, 100)
    SwapIngestor(db, chain, settings, clock=clock).ingest_tokens(db.get_tokens(), to_block=110)
    with db.get_session() as session:
        session.query(Swap).filter(Swap.block_number.in_([102, 106, 107])).delete(synchronize_session=False)
        session.commit()
    return db.get_token(TOKEN)


def test_detect_reports_missing_swaps(db, chain, settings, traded):
    report = GapDetector(db, chain, settings).detect(TOKEN, range_size=5)

    assert report.from_block == 100
    assert report.to_block == 110
    assert report.ranges_checked == 3
    assert report.missing_swaps == 3
    assert [(g.start_block, g.end_block, g.missing) for g in report.gaps] == [(100, 104, 1), (105, 109, 2)]
    summary = report.to_dict()
    assert summary["gapsFound"] == 2
    assert summary["missingSwaps"] == 3


def test_backfill_closes_gaps(db, chain, settings, clock, traded):
    swaps = SwapIngestor(db, chain, settings, clock=clock)
    backfiller = Backfiller(db, chain, settings, swaps, clock)

    outcome = backfiller.backfill(TOKEN, range_size=5)

    assert outcome["gapsProcessed"] == 2
    assert outcome["swapsInserted"] == 3
    assert outcome["errors"] == []
    assert db.count_swaps(TOKEN, 101, 110) == 10
    assert GapDetector(db, chain, settings).detect(TOKEN, range_size=5).missing_swaps == 0
    token = db.get_token(TOKEN)
    assert token.total_volume_eth == pytest.approx(0.1)
    assert token.last_checked_block == 110


def test_skip_blocks_are_not_gaps(db, chain, settings, traded):
    for block in (102, 106, 107):
        db.add_skip_block(block, "swap")

    assert GapDetector(db, chain, settings).detect(TOKEN, range_size=5).gaps == []


def test_failing_window_is_recorded_and_skipped(db, chain, settings, traded):
    chain.failing_ranges.append((100, 104))

    report = GapDetector(db, chain, settings).detect(TOKEN, range_size=5)

    assert len(report.errors) == 1
    assert [(g.start_block, g.missing) for g in report.gaps] == [(105, 2)]


def test_unknown_token(db, chain, settings):
    with pytest.raises(UnknownToken):
        GapDetector(db, chain, settings).detect(token_address(9))
