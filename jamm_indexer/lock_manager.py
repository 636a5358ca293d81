"""
Datastore-backed mutual exclusion for indexing jobs.

Each lock key has at most one holder (the indexer_locks primary key) and a FIFO
queue of waiters (lock_requests ordered by requested_seq). Holders carry an
expiry so a crashed run is reclaimed; a release hands the lock straight to the
head of the queue.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterator, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from jamm_indexer.config import IndexerSettings
from jamm_indexer.database import Database, IndexerLock, LockRequest
from jamm_indexer.errors import LockBusy
from jamm_indexer.utils import SystemClock

logger = logging.getLogger(__name__)

QUEUED = "queued"
ACQUIRED = "acquired"
RELEASED = "released"
EXPIRED = "expired"


@dataclass
class LockResult:
    request_id: str
    acquired: bool
    queue_position: int


@dataclass
class LockStatus:
    acquired: bool
    queue_position: int
    timed_out: bool


class LockManager:
    """Lock queue operations, addressed by request id."""

    def __init__(self, db: Database, settings: IndexerSettings, clock=None):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()

    def acquire(self, lock_key: str, timeout_seconds: Optional[float] = None) -> LockResult:
        """
        Enqueue a request for a lock and take it if nobody holds or awaits it.

        Args:
            lock_key: Job lock key
            timeout_seconds: How long the request may wait in the queue

        Returns:
            LockResult with the request id, whether it was acquired and the queue position
        """
        wait = timeout_seconds if timeout_seconds is not None else self.settings.lock_wait_seconds
        now = self.clock.now()
        request_id = str(uuid.uuid4())

        with self.db.get_session() as session:
            self._reclaim_expired(session, lock_key, now)
            self._expire_stale_waiters(session, lock_key, now)
            session.add(
                LockRequest(
                    request_id=request_id,
                    lock_key=lock_key,
                    status=QUEUED,
                    requested_at=now,
                    expires_at=now + timedelta(seconds=wait),
                )
            )
            session.commit()

        if self._try_promote(lock_key, request_id):
            logger.info(f"Lock {lock_key} acquired immediately by {request_id[:8]}")
            return LockResult(request_id=request_id, acquired=True, queue_position=0)

        position = self.queue_position(request_id)
        logger.info(f"Lock {lock_key} is busy. Added to queue at position {position}")
        return LockResult(request_id=request_id, acquired=False, queue_position=position)

    def check_ready(self, request_id: str) -> LockStatus:
        """
        Poll a queued request, promoting it if it has reached the head of a free lock.

        Args:
            request_id: Request id returned by acquire()

        Returns:
            LockStatus
        """
        now = self.clock.now()
        with self.db.get_session() as session:
            request = session.query(LockRequest).filter_by(request_id=request_id).one_or_none()
            if request is None:
                return LockStatus(acquired=False, queue_position=0, timed_out=True)
            if request.status == ACQUIRED:
                return LockStatus(acquired=True, queue_position=0, timed_out=False)
            if request.status != QUEUED:
                return LockStatus(acquired=False, queue_position=0, timed_out=True)
            if request.expires_at is not None and now > request.expires_at:
                request.status = EXPIRED
                session.commit()
                logger.warning(f"Lock request {request_id[:8]} for {request.lock_key} timed out in queue")
                return LockStatus(acquired=False, queue_position=0, timed_out=True)
            lock_key = request.lock_key
            self._reclaim_expired(session, lock_key, now)
            self._expire_stale_waiters(session, lock_key, now)
            session.commit()

        if self._try_promote(lock_key, request_id):
            logger.info(f"Lock {lock_key} acquired by queued request {request_id[:8]}")
            return LockStatus(acquired=True, queue_position=0, timed_out=False)
        return LockStatus(acquired=False, queue_position=self.queue_position(request_id), timed_out=False)

    def renew(self, request_id: str, extend_minutes: Optional[float] = None) -> bool:
        """
        Push out the expiry of a held lock.

        Returns:
            True if the request still holds its lock
        """
        extend = timedelta(minutes=extend_minutes) if extend_minutes else timedelta(
            seconds=self.settings.lock_ttl_seconds
        )
        now = self.clock.now()
        with self.db.get_session() as session:
            holder = session.query(IndexerLock).filter_by(request_id=request_id).one_or_none()
            if holder is None:
                return False
            holder.expires_at = now + extend
            session.query(LockRequest).filter_by(request_id=request_id).update(
                {LockRequest.expires_at: holder.expires_at}
            )
            session.commit()
        logger.debug(f"Renewed lock {holder.lock_key} until {holder.expires_at}")
        return True

    def release(self, request_id: str) -> bool:
        """
        Release a held lock (or withdraw a queued request) and hand off to the next waiter.

        Returns:
            True if the request was held or queued
        """
        now = self.clock.now()
        with self.db.get_session() as session:
            request = session.query(LockRequest).filter_by(request_id=request_id).one_or_none()
            if request is None or request.status not in (QUEUED, ACQUIRED):
                return False
            lock_key = request.lock_key
            was_holder = (
                session.query(IndexerLock)
                .filter_by(lock_key=lock_key, request_id=request_id)
                .delete()
            )
            request.status = RELEASED
            request.released_at = now
            session.commit()

        if was_holder:
            logger.info(f"Released lock {lock_key}")
            self._hand_off(lock_key)
        return True

    def queue_position(self, request_id: str) -> int:
        """1-based position among queued requests for the key; 0 if not queued."""
        with self.db.get_session() as session:
            request = session.query(LockRequest).filter_by(request_id=request_id).one_or_none()
            if request is None or request.status != QUEUED:
                return 0
            return (
                session.query(func.count(LockRequest.requested_seq))
                .filter(
                    LockRequest.lock_key == request.lock_key,
                    LockRequest.status == QUEUED,
                    LockRequest.requested_seq <= request.requested_seq,
                )
                .scalar()
            )

    def holder(self, lock_key: str) -> Optional[IndexerLock]:
        with self.db.get_session() as session:
            return session.get(IndexerLock, lock_key)

    def _reclaim_expired(self, session: Session, lock_key: str, now) -> None:
        holder = session.get(IndexerLock, lock_key)
        if holder is None or holder.expires_at >= now:
            return
        logger.warning(f"Reclaiming expired lock {lock_key} held by {holder.request_id[:8]}")
        session.query(LockRequest).filter_by(request_id=holder.request_id).update(
            {LockRequest.status: EXPIRED, LockRequest.released_at: now}
        )
        session.query(IndexerLock).filter(
            IndexerLock.lock_key == lock_key, IndexerLock.expires_at < now
        ).delete()

    def _expire_stale_waiters(self, session: Session, lock_key: str, now) -> None:
        session.query(LockRequest).filter(
            LockRequest.lock_key == lock_key,
            LockRequest.status == QUEUED,
            LockRequest.expires_at < now,
        ).update({LockRequest.status: EXPIRED}, synchronize_session=False)

    def _head_waiter(self, session: Session, lock_key: str) -> Optional[LockRequest]:
        return (
            session.query(LockRequest)
            .filter_by(lock_key=lock_key, status=QUEUED)
            .order_by(LockRequest.requested_seq)
            .first()
        )

    def _try_promote(self, lock_key: str, request_id: str) -> bool:
        """Take the lock for request_id if it heads the queue and the lock is free."""
        now = self.clock.now()
        with self.db.get_session() as session:
            head = self._head_waiter(session, lock_key)
            if head is None or head.request_id != request_id:
                return False
            if session.get(IndexerLock, lock_key) is not None:
                return False
            return self._grant(session, lock_key, head, now)

    def _hand_off(self, lock_key: str) -> None:
        now = self.clock.now()
        with self.db.get_session() as session:
            self._expire_stale_waiters(session, lock_key, now)
            session.flush()
            head = self._head_waiter(session, lock_key)
            if head is None or session.get(IndexerLock, lock_key) is not None:
                session.commit()
                return
            if self._grant(session, lock_key, head, now):
                logger.info(f"Handed lock {lock_key} to queued request {head.request_id[:8]}")

    def _grant(self, session: Session, lock_key: str, request: LockRequest, now) -> bool:
        expires_at = now + timedelta(seconds=self.settings.lock_ttl_seconds)
        session.add(
            IndexerLock(lock_key=lock_key, request_id=request.request_id, locked_at=now, expires_at=expires_at)
        )
        request.status = ACQUIRED
        request.acquired_at = now
        request.expires_at = expires_at
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True


class LockWaiter:
    """
    Polls a queued request until it holds the lock, its deadline passes or it is cancelled.

    States: pending -> waiting -> acquired | timed_out | cancelled | failed
    """

    def __init__(
        self,
        manager: LockManager,
        lock_key: str,
        timeout_seconds: float,
        poll_seconds: float,
        cancel: Optional[threading.Event] = None,
    ):
        self.manager = manager
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds
        self.cancel = cancel or threading.Event()
        self.clock = manager.clock
        self.state = "pending"
        self.request_id: Optional[str] = None
        self.queue_position = 0
        self.attempts = 0
        self._deadline: Optional[float] = None

    @property
    def done(self) -> bool:
        return self.state in ("acquired", "timed_out", "cancelled", "failed")

    def step(self) -> str:
        """Advance the state machine by one transition."""
        if self.done:
            return self.state
        if self.cancel.is_set():
            self._abandon("cancelled")
            return self.state

        try:
            if self.state == "pending":
                result = self.manager.acquire(self.lock_key, self.timeout_seconds)
                self.request_id = result.request_id
                self.queue_position = result.queue_position
                self._deadline = self.clock.monotonic() + self.timeout_seconds
                self.state = "acquired" if result.acquired else "waiting"
                return self.state

            self.attempts += 1
            status = self.manager.check_ready(self.request_id)
        except SQLAlchemyError as e:
            logger.error(f"Error checking lock status for {self.lock_key}: {e}")
            self._abandon("failed")
            return self.state

        if status.acquired:
            logger.info(f"Lock {self.lock_key} acquired after {self.attempts} attempts")
            self.state = "acquired"
        elif status.timed_out:
            logger.error(f"Lock wait timeout exceeded for {self.lock_key}")
            self.state = "timed_out"
        else:
            self.queue_position = status.queue_position
            if self.clock.monotonic() >= self._deadline:
                logger.error(f"Maximum wait time exceeded for lock {self.lock_key}")
                self._abandon("timed_out")
            else:
                logger.info(f"Still waiting for lock {self.lock_key}. Queue position: {self.queue_position}")
        return self.state

    def run(self) -> bool:
        """Drive the machine to a terminal state. Returns True if the lock is held."""
        while not self.done:
            state = self.step()
            if state == "waiting":
                self.clock.sleep(self.poll_seconds)
        return self.state == "acquired"

    def _abandon(self, state: str) -> None:
        if self.request_id is not None:
            try:
                self.manager.release(self.request_id)
            except SQLAlchemyError as e:
                logger.error(f"Could not withdraw lock request for {self.lock_key}: {e}")
        self.state = state


class JobLock:
    """The lock held by one job invocation."""

    def __init__(self, manager: LockManager, lock_key: str):
        self.manager = manager
        self.lock_key = lock_key
        self.request_id: Optional[str] = None
        self.queue_position = 0
        self._renewal_stop: Optional[threading.Event] = None
        self._renewal_thread: Optional[threading.Thread] = None

    def acquire_or_wait(
        self,
        timeout_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Acquire immediately or wait in the queue.

        Args:
            timeout_seconds: Maximum wait
            poll_seconds: Delay between queue checks
            cancel: Set to abandon the wait

        Returns:
            True if acquired; False on timeout, cancellation or storage error
        """
        settings = self.manager.settings
        waiter = LockWaiter(
            self.manager,
            self.lock_key,
            timeout_seconds if timeout_seconds is not None else settings.lock_wait_seconds,
            poll_seconds if poll_seconds is not None else settings.lock_poll_seconds,
            cancel=cancel,
        )
        acquired = waiter.run()
        self.request_id = waiter.request_id
        self.queue_position = waiter.queue_position
        return acquired

    def renew(self, extend_minutes: Optional[float] = None) -> bool:
        if self.request_id is None:
            return False
        try:
            return self.manager.renew(self.request_id, extend_minutes)
        except SQLAlchemyError as e:
            logger.error(f"Exception renewing lock {self.lock_key}: {e}")
            return False

    def release(self) -> bool:
        self.stop_renewal()
        if self.request_id is None:
            return False
        try:
            return self.manager.release(self.request_id)
        except SQLAlchemyError as e:
            logger.error(f"Exception releasing lock {self.lock_key}: {e}")
            return False

    def start_auto_renewal(self, interval_seconds: Optional[float] = None, extend_minutes: Optional[float] = None) -> None:
        """Renew the lock from a background thread until released or a renewal fails."""
        if self._renewal_thread is not None:
            logger.warning(f"Auto-renewal already started for lock {self.lock_key}")
            return
        interval = interval_seconds or self.manager.settings.lock_renew_interval_seconds
        stop = threading.Event()

        def _loop():
            while not stop.wait(interval):
                if not self.renew(extend_minutes):
                    logger.warning(f"Failed to renew lock {self.lock_key}. Stopping auto-renewal.")
                    return

        self._renewal_stop = stop
        self._renewal_thread = threading.Thread(
            target=_loop, name=f"lock-renewal-{self.lock_key}", daemon=True
        )
        self._renewal_thread.start()
        logger.info(f"Starting auto-renewal for lock {self.lock_key} every {interval}s")

    def stop_renewal(self) -> None:
        if self._renewal_thread is None:
            return
        self._renewal_stop.set()
        self._renewal_thread.join(timeout=5)
        self._renewal_thread = None
        self._renewal_stop = None
        logger.info(f"Stopped auto-renewal for lock {self.lock_key}")


@contextmanager
def hold_lock(
    manager: LockManager,
    lock_key: str,
    timeout_seconds: Optional[float] = None,
    auto_renew: bool = False,
    cancel: Optional[threading.Event] = None,
) -> Iterator[JobLock]:
    """
    Run a block while holding a job lock.

    Raises:
        LockBusy: The lock could not be acquired within the timeout
    """
    lock = JobLock(manager, lock_key)
    try:
        if not lock.acquire_or_wait(timeout_seconds, cancel=cancel):
            raise LockBusy(lock_key, lock.queue_position)
        if auto_renew:
            lock.start_auto_renewal()
        yield lock
    finally:
        lock.release()
