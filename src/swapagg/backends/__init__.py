"""Backend contracts for ledgers and DEX canisters, with gateway and simulated implementations."""

from swapagg.backends.base import (
    Allowance,
    LedgerBackend,
    PoolBackend,
    PoolMetadata,
    PoolRecord,
    PoolSwapArgs,
    RoutedPool,
    RoutedSwapArgs,
    RoutedSwapBackend,
    SwapAmountsReply,
    SwapAmountsTx,
    SwapReply,
)

__all__ = [
    "Allowance",
    "LedgerBackend",
    "PoolBackend",
    "PoolMetadata",
    "PoolRecord",
    "PoolSwapArgs",
    "RoutedPool",
    "RoutedSwapArgs",
    "RoutedSwapBackend",
    "SwapAmountsReply",
    "SwapAmountsTx",
    "SwapReply",
]
