from jamm_indexer.ingestors.base import IngestResult, read_reserves, read_reserves_many
from jamm_indexer.ingestors.burns import BurnIngestor
from jamm_indexer.ingestors.launches import LaunchIngestor
from jamm_indexer.ingestors.locks import LockIngestor, TokenMetadataCache, WithdrawalSync
from jamm_indexer.ingestors.snapshots import SnapshotIngestor
from jamm_indexer.ingestors.swaps import SwapIngestor

__all__ = [
    "BurnIngestor",
    "IngestResult",
    "LaunchIngestor",
    "LockIngestor",
    "SnapshotIngestor",
    "SwapIngestor",
    "TokenMetadataCache",
    "WithdrawalSync",
    "read_reserves",
    "read_reserves_many",
]
