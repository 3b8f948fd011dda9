"""Crash-recovery records for transfer-then-swap executions.

A record is written the moment a direct (icrc1) transfer to a DEX is
confirmed and before the dependent swap call is made. It is deleted only
after that swap call succeeds, so anything left here after a crash
represents funds that have left the user's control without a swap.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from swapagg.storage.base import KeyValueStore

logger = logging.getLogger(__name__)

PENDING_PREFIX = "pending_tx:"
UNCLAIMED_PREFIX = "unclaimed:"


@dataclass
class PendingTransferRecord:
    """A confirmed transfer whose dependent swap call is not yet acknowledged."""

    key: str
    tx_ref: int  # ledger block index of the transfer
    dex_id: str
    input_token: str
    output_token: str
    amount: int
    timestamp: float = field(default_factory=time.time)
    pool_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingTransferRecord":
        return cls(
            key=data["key"],
            tx_ref=int(data["tx_ref"]),
            dex_id=data["dex_id"],
            input_token=data["input_token"],
            output_token=data["output_token"],
            amount=int(data["amount"]),
            timestamp=float(data.get("timestamp", 0.0)),
            pool_id=data.get("pool_id"),
        )


class PendingTransactionCache:
    """Durable store of PendingTransferRecords, keyed by record key."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def add(self, record: PendingTransferRecord) -> None:
        await self.store.set(PENDING_PREFIX + record.key, record.to_dict())
        logger.debug(
            f"Recorded pending transfer {record.key} "
            f"(block {record.tx_ref}, {record.amount} of {record.input_token})"
        )

    async def get(self, key: str) -> Optional[PendingTransferRecord]:
        data = await self.store.get(PENDING_PREFIX + key)
        return PendingTransferRecord.from_dict(data) if data else None

    async def remove(self, key: str) -> None:
        await self.store.remove(PENDING_PREFIX + key)
        logger.debug(f"Cleared pending transfer {key}")

    async def all(self, dex_id: Optional[str] = None) -> list[PendingTransferRecord]:
        """List records, oldest first, optionally for a single DEX."""
        entries = await self.store.all(PENDING_PREFIX)
        records = [PendingTransferRecord.from_dict(v) for v in entries.values()]
        if dex_id is not None:
            records = [r for r in records if r.dex_id == dex_id]
        return sorted(records, key=lambda r: r.timestamp)

    async def is_empty(self) -> bool:
        return not await self.store.all(PENDING_PREFIX)


class OutstandingClaims:
    """Claim IDs whose post-swap claim call failed and must be retried."""

    def __init__(self, store: KeyValueStore, dex_id: str):
        self.store = store
        self._key = f"{UNCLAIMED_PREFIX}{dex_id}"

    async def add(self, claim_id: int) -> None:
        ids = await self.all()
        if claim_id not in ids:
            ids.append(claim_id)
            await self.store.set(self._key, [str(i) for i in ids])

    async def remove(self, claim_id: int) -> None:
        ids = [i for i in await self.all() if i != claim_id]
        await self.store.set(self._key, [str(i) for i in ids])

    async def all(self) -> list[int]:
        raw = await self.store.get(self._key)
        return [int(i) for i in raw] if raw else []
