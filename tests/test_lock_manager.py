import threading

import pytest

from jamm_indexer.database import LockRequest
from jamm_indexer.errors import LockBusy
from jamm_indexer.lock_manager import JobLock, LockManager, LockWaiter, hold_lock


@pytest.fixture
def manager(db, settings, clock):
    return LockManager(db, settings, clock)


def test_first_request_acquires_and_second_queues(manager):
    first = manager.acquire("event-indexer")
    second = manager.acquire("event-indexer")

    assert first.acquired is True
    assert first.queue_position == 0
    assert second.acquired is False
    assert second.queue_position >= 1
    assert manager.holder("event-indexer").request_id == first.request_id


def test_locks_with_different_keys_are_independent(manager):
    assert manager.acquire("event-indexer").acquired
    assert manager.acquire("price-snapshot").acquired


def test_release_hands_off_to_head_of_queue(manager):
    first = manager.acquire("event-indexer")
    second = manager.acquire("event-indexer")
    third = manager.acquire("event-indexer")
    assert manager.queue_position(third.request_id) == 2

    assert manager.release(first.request_id) is True

    assert manager.holder("event-indexer").request_id == second.request_id
    assert manager.check_ready(second.request_id).acquired is True
    status = manager.check_ready(third.request_id)
    assert status.acquired is False
    assert status.queue_position == 1


def test_expired_holder_is_reclaimed(manager, settings, clock):
    stale = manager.acquire("event-indexer")
    clock.advance(settings.lock_ttl_seconds + 1)

    fresh = manager.acquire("event-indexer")

    assert fresh.acquired is True
    assert manager.holder("event-indexer").request_id == fresh.request_id
    with manager.db.get_session() as session:
        row = session.query(LockRequest).filter_by(request_id=stale.request_id).one()
        assert row.status == "expired"


def test_renew_extends_expiry(manager, clock):
    held = manager.acquire("event-indexer")
    before = manager.holder("event-indexer").expires_at
    clock.advance(60)

    assert manager.renew(held.request_id) is True
    assert manager.holder("event-indexer").expires_at > before
    assert manager.renew("not-a-request") is False


def test_queued_request_times_out(manager, clock):
    manager.acquire("event-indexer")
    waiting = manager.acquire("event-indexer", timeout_seconds=5)
    clock.advance(6)

    status = manager.check_ready(waiting.request_id)

    assert status.timed_out is True
    assert status.acquired is False


def test_hold_lock_raises_lock_busy_and_keeps_holder(manager):
    holder = manager.acquire("event-indexer")

    with pytest.raises(LockBusy) as excinfo:
        with hold_lock(manager, "event-indexer", timeout_seconds=3):
            pytest.fail("lock should not have been acquired")

    assert excinfo.value.lock_key == "event-indexer"
    assert excinfo.value.queue_position == 1
    assert manager.holder("event-indexer").request_id == holder.request_id


def test_hold_lock_releases_on_error(manager):
    with pytest.raises(RuntimeError):
        with hold_lock(manager, "event-indexer"):
            raise RuntimeError("boom")

    assert manager.holder("event-indexer") is None


def test_waiter_acquires_after_holder_releases(manager, clock):
    holder = manager.acquire("event-indexer")
    waiter = LockWaiter(manager, "event-indexer", timeout_seconds=10, poll_seconds=1)

    assert waiter.step() == "waiting"
    manager.release(holder.request_id)

    assert waiter.step() == "acquired"
    assert manager.holder("event-indexer").request_id == waiter.request_id


def test_cancelled_waiter_withdraws_request(manager):
    manager.acquire("event-indexer")
    cancel = threading.Event()
    waiter = LockWaiter(manager, "event-indexer", timeout_seconds=10, poll_seconds=1, cancel=cancel)
    waiter.step()

    cancel.set()

    assert waiter.step() == "cancelled"
    assert manager.queue_position(waiter.request_id) == 0


def test_job_lock_round_trip(manager, clock):
    lock = JobLock(manager, "track-eth-price")

    assert lock.acquire_or_wait(timeout_seconds=1) is True
    assert lock.renew() is True
    assert lock.release() is True
    assert manager.holder("track-eth-price") is None
    assert clock.sleeps == []
