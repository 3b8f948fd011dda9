"""Token metadata lookup and transfer-standard selection."""

import asyncio
import logging
import re
from typing import Any, Iterable, Optional

from swapagg.backends.base import Allowance, LedgerBackend
from swapagg.errors import IncompatibleStandard
from swapagg.routing.base import TokenInfo, TokenStandard
from swapagg.storage.base import KeyValueStore, MemoryStore

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "token_info:"

DEFAULT_SYMBOL = "UNKNOWN"
DEFAULT_DECIMALS = 8


def normalize_standard(name: str) -> Optional[TokenStandard]:
    """Collapse "ICRC-1", "icrc1", "ICRC1" etc. into a TokenStandard."""
    compact = re.sub(r"[^a-z0-9]", "", name.lower())
    if compact == "icrc1":
        return TokenStandard.ICRC1
    if compact == "icrc2":
        return TokenStandard.ICRC2
    return None


def _metadata_value(value: Any) -> Any:
    """Unwrap a tagged metadata value ({"Text": ...}, {"Nat": ...})."""
    if isinstance(value, dict) and len(value) == 1:
        tag, inner = next(iter(value.items()))
        if tag in ("Text", "Nat", "Int", "Blob"):
            return inner
    return value


class TokenStandardResolver:
    """Fetches and caches TokenInfo and picks the transfer standard per DEX.

    TokenInfo is cached in memory for the life of the resolver and mirrored
    to the key-value store, so a restart does not refetch known tokens.
    Only clear_cache() refreshes an entry.
    """

    def __init__(self, ledger: LedgerBackend, store: Optional[KeyValueStore] = None):
        self.ledger = ledger
        self.store = store or MemoryStore()
        self._tokens: dict[str, TokenInfo] = {}
        self._store_loaded = False

    async def _load_store(self) -> None:
        if self._store_loaded:
            return
        entries = await self.store.all(TOKEN_PREFIX)
        for data in entries.values():
            info = TokenInfo.from_dict(data)
            self._tokens.setdefault(info.ledger_id, info)
        self._store_loaded = True
        logger.debug(f"Loaded {len(entries)} cached tokens")

    async def get_token_info(self, ledger_id: str) -> TokenInfo:
        """
        Get metadata for a token ledger.

        Args:
            ledger_id: Ledger canister ID

        Returns:
            TokenInfo with symbol, decimals, fee and supported standards
        """
        cached = self._tokens.get(ledger_id)
        if cached is not None:
            return cached

        await self._load_store()
        cached = self._tokens.get(ledger_id)
        if cached is not None:
            return cached

        metadata, standards, fee = await asyncio.gather(
            self.ledger.metadata(ledger_id),
            self.ledger.supported_standards(ledger_id),
            self.ledger.fee(ledger_id),
        )

        values = {key: _metadata_value(value) for key, value in metadata}
        parsed = []
        for entry in standards:
            standard = normalize_standard(entry.get("name", ""))
            if standard is not None and standard not in parsed:
                parsed.append(standard)
        if not parsed:
            parsed = [TokenStandard.ICRC1]

        info = TokenInfo(
            ledger_id=ledger_id,
            symbol=str(values.get("icrc1:symbol", DEFAULT_SYMBOL)),
            decimals=int(values.get("icrc1:decimals", DEFAULT_DECIMALS)),
            fee=int(fee),
            supported_standards=tuple(sorted(parsed, key=lambda s: s.value)),
            logo=values.get("icrc1:logo"),
        )

        self._tokens[ledger_id] = info
        await self.store.set(TOKEN_PREFIX + ledger_id, info.to_dict())
        logger.debug(
            f"Fetched token {info.symbol} ({ledger_id}): decimals={info.decimals}, "
            f"fee={info.fee}, standards={[s.value for s in info.supported_standards]}"
        )
        return info

    def resolve_standard(
        self,
        token_info: TokenInfo,
        dex_standards: Iterable[TokenStandard],
        preference: Optional[TokenStandard] = None,
    ) -> TokenStandard:
        """
        Choose the transfer standard for a token on a DEX.

        Order: caller preference if both sides support it, else icrc2,
        else whatever the two sides share.

        Raises:
            IncompatibleStandard: token and DEX share no standard
        """
        dex_set = set(dex_standards)
        common = [s for s in token_info.supported_standards if s in dex_set]
        if not common:
            raise IncompatibleStandard(
                f"{token_info.symbol} supports "
                f"{[s.value for s in token_info.supported_standards]}, "
                f"DEX supports {sorted(s.value for s in dex_set)}"
            )
        if preference is not None and preference in common:
            return preference
        if TokenStandard.ICRC2 in common:
            return TokenStandard.ICRC2
        return common[0]

    async def check_allowance(self, ledger_id: str, owner: str, spender: str) -> Allowance:
        return await self.ledger.allowance(ledger_id, owner, spender)

    async def approve(self, ledger_id: str, spender: str, amount: int) -> int:
        block = await self.ledger.approve(ledger_id, spender, amount)
        logger.debug(f"Approved {spender} for {amount} on {ledger_id} (block {block})")
        return block

    async def transfer(
        self, ledger_id: str, to: str, amount: int, subaccount: Optional[bytes] = None
    ) -> int:
        block = await self.ledger.transfer(ledger_id, to, amount, subaccount)
        logger.debug(f"Transferred {amount} on {ledger_id} to {to} (block {block})")
        return block

    async def clear_cache(self) -> None:
        """Forget every cached TokenInfo, in memory and in the store."""
        self._tokens.clear()
        await self.store.clear(TOKEN_PREFIX)
        self._store_loaded = True

    def cached_tokens(self) -> dict[str, TokenInfo]:
        return dict(self._tokens)
