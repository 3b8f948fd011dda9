"""Local cache storage: key-value stores and crash-recovery records."""

from swapagg.storage.base import KeyValueStore, MemoryStore
from swapagg.storage.pending import (
    OutstandingClaims,
    PendingTransactionCache,
    PendingTransferRecord,
)
from swapagg.storage.sql import SqlStore

__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "SqlStore",
    "PendingTransferRecord",
    "PendingTransactionCache",
    "OutstandingClaims",
]
