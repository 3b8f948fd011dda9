"""Routing module for swap quote aggregation.

DEXes:
- ICPSwap: per-pool canisters behind a factory, subaccount deposits
- KongSwap: single routing canister, multi-hop routes, claim fallback
"""

from swapagg.routing.aggregator import DexAggregator, DistributionQuote, SplitSearchResult
from swapagg.routing.base import (
    DexAdapter,
    FeeBreakdown,
    LegResult,
    RouteStep,
    SwapProgress,
    SwapQuote,
    SwapResult,
    SwapStep,
    TokenInfo,
    TokenStandard,
)
from swapagg.routing.factory import create_aggregator, create_backends, create_store
from swapagg.routing.icpswap import ICPSwapDex
from swapagg.routing.kong import KongDex
from swapagg.routing.token_standard import TokenStandardResolver

__all__ = [
    # Types
    "TokenStandard",
    "TokenInfo",
    "RouteStep",
    "FeeBreakdown",
    "SwapQuote",
    "SwapStep",
    "SwapProgress",
    "SwapResult",
    "LegResult",
    "DistributionQuote",
    "SplitSearchResult",
    # Components
    "DexAdapter",
    "DexAggregator",
    "TokenStandardResolver",
    "ICPSwapDex",
    "KongDex",
    # Factory functions
    "create_aggregator",
    "create_backends",
    "create_store",
]
