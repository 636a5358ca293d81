"""
Error taxonomy for indexing runs.

Fatal errors (ProviderUnavailable) abort a run and propagate to the caller.
Per-item errors (DecodeError, PersistenceError) are recorded in the run's error
list and never abort a batch.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexer errors."""


class ProviderUnavailable(IndexerError):
    """Every node endpoint failed for a call. Fatal for the current run."""

    def __init__(self, operation: str, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.last_error = last_error
        message = f"All RPC providers failed for {operation}"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class TransientNetworkError(IndexerError):
    """Timeout or rate-limit response; retried in-run with backoff."""

    def __init__(self, message: str, rate_limited: bool = False):
        self.rate_limited = rate_limited
        super().__init__(message)


class LockBusy(IndexerError):
    """The job's lock could not be acquired in time. Retryable."""

    def __init__(self, lock_key: str, queue_position: Optional[int] = None):
        self.lock_key = lock_key
        self.queue_position = queue_position
        super().__init__(f"Lock {lock_key} is busy")


class InvalidBlockRange(IndexerError, ValueError):
    """A log query range that the pool or a provider refuses. Never failed over."""


class ReorgDetected(IndexerError):
    """Chain reorganization detected; handled by rolling back."""

    def __init__(self, stream_id: str, block_number: int, rollback_to_block: int):
        self.stream_id = stream_id
        self.block_number = block_number
        self.rollback_to_block = rollback_to_block
        super().__init__(
            f"Reorg detected on {stream_id} at block {block_number}, "
            f"rolling back to {rollback_to_block}"
        )


class DecodeError(IndexerError):
    """A log payload could not be decoded into a typed record."""


class PersistenceError(IndexerError):
    """Writing a single record to the datastore failed."""


class UnknownToken(IndexerError):
    """A job named a token that is not tracked."""

    def __init__(self, token_address: str):
        self.token_address = token_address
        super().__init__(f"Token {token_address} is not tracked")
