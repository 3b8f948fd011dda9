"""Abstract RPC contracts for the canisters the aggregator talks to.

The aggregator never speaks to a canister directly: a ledger, a pool-style
DEX and a routed-swap DEX are each reached through one of these interfaces.
Implementations translate an ``Err`` reply into ``BackendError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Allowance:
    """ICRC-2 allowance granted by an owner to a spender."""

    allowance: int
    expires_at: Optional[int] = None  # nanoseconds since epoch


@dataclass
class PoolRecord:
    """A pool as listed by a pool factory."""

    token0: str
    token1: str
    canister_id: str
    fee: int = 3000


@dataclass
class PoolMetadata:
    """Live pool state needed for spot pricing."""

    token0: str
    token1: str
    sqrt_price_x96: int
    fee: int = 3000


@dataclass
class PoolSwapArgs:
    """Arguments for the combined deposit+swap+withdraw pool calls."""

    amount_in: int
    zero_for_one: bool
    amount_out_minimum: int
    token_in_fee: int
    token_out_fee: int


@dataclass
class RoutedPool:
    """A pool listed by a routed-swap DEX."""

    address_0: str
    address_1: str
    price: float  # token_1 per token_0, human units
    lp_fee_bps: Optional[int] = None
    symbol: str = ""


@dataclass
class SwapAmountsTx:
    """One hop of a routed-swap quote."""

    pay_address: str
    pay_amount: int
    receive_address: str
    receive_amount: int
    lp_fee: int = 0


@dataclass
class SwapAmountsReply:
    """Quote reply from a routed-swap DEX."""

    receive_amount: int
    mid_price: Optional[float] = None
    slippage: Optional[float] = None  # percent, e.g. 1.9 means 1.9%
    txs: list[SwapAmountsTx] = field(default_factory=list)


@dataclass
class RoutedSwapArgs:
    """Arguments for a routed swap.

    ``pay_tx_id`` is the block index of a prior direct transfer (icrc1 flow);
    leave it unset for the approve+pull (icrc2) flow.
    """

    pay_token: str
    pay_amount: int
    receive_token: str
    receive_amount: Optional[int] = None
    pay_tx_id: Optional[int] = None
    max_slippage: Optional[float] = None  # percent


@dataclass
class SwapReply:
    """Result of a routed swap."""

    receive_amount: int
    tx_id: int
    claim_ids: list[int] = field(default_factory=list)


class LedgerBackend(ABC):
    """ICRC-1/ICRC-2 token ledger."""

    @abstractmethod
    async def metadata(self, ledger_id: str) -> list[tuple[str, Any]]:
        """Return ``icrc1_metadata`` key/value pairs."""
        pass

    @abstractmethod
    async def supported_standards(self, ledger_id: str) -> list[dict]:
        """Return ``icrc1_supported_standards`` entries (each has a ``name``)."""
        pass

    @abstractmethod
    async def fee(self, ledger_id: str) -> int:
        """Return the ledger transfer fee in base units."""
        pass

    @abstractmethod
    async def allowance(self, ledger_id: str, owner: str, spender: str) -> Allowance:
        pass

    @abstractmethod
    async def approve(self, ledger_id: str, spender: str, amount: int) -> int:
        """Approve spender for amount; returns the approval block index."""
        pass

    @abstractmethod
    async def transfer(
        self,
        ledger_id: str,
        to: str,
        amount: int,
        subaccount: Optional[bytes] = None,
    ) -> int:
        """Transfer amount to (to, subaccount); returns the block index."""
        pass


class PoolBackend(ABC):
    """Pool-style DEX: a factory plus one canister per pool."""

    @abstractmethod
    async def get_pool(self, token0: str, token1: str, fee: int) -> Optional[str]:
        """Look up the pool canister for a sorted pair and fee tier."""
        pass

    @abstractmethod
    async def get_pools(self) -> list[PoolRecord]:
        pass

    @abstractmethod
    async def metadata(self, pool_id: str) -> PoolMetadata:
        pass

    @abstractmethod
    async def quote(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int = 0
    ) -> int:
        pass

    @abstractmethod
    async def deposit_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        """Deposit from the caller's pool subaccount, swap, withdraw (icrc1)."""
        pass

    @abstractmethod
    async def deposit_from_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        """Pull via transfer_from, swap, withdraw (icrc2)."""
        pass

    @abstractmethod
    async def deposit(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        pass

    @abstractmethod
    async def swap(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int
    ) -> int:
        pass

    @abstractmethod
    async def withdraw(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        pass


class RoutedSwapBackend(ABC):
    """Single-canister DEX that routes multi-hop swaps internally."""

    @abstractmethod
    async def swap_amounts(
        self, pay_token: str, pay_amount: int, receive_token: str
    ) -> SwapAmountsReply:
        pass

    @abstractmethod
    async def swap(self, args: RoutedSwapArgs) -> SwapReply:
        pass

    @abstractmethod
    async def claim(self, claim_id: int) -> None:
        pass

    @abstractmethod
    async def pools(self) -> list[RoutedPool]:
        pass
