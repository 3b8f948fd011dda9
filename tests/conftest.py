"""Pytest configuration and fixtures."""

import os
from typing import Callable, Optional

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DRY_RUN"] = "true"
os.environ["DEBUG"] = "true"

from swapagg.backends.dry_run import (
    ANONYMOUS_PRINCIPAL,
    SimulatedLedger,
    SimulatedPoolDex,
    SimulatedRoutedDex,
    SimulatedToken,
)
from swapagg.errors import QuoteFailed
from swapagg.routing.aggregator import DexAggregator
from swapagg.routing.base import (
    DEFAULT_SLIPPAGE,
    DexAdapter,
    ProgressReporter,
    RouteStep,
    SwapQuote,
    SwapResult,
    SwapStep,
    TokenStandard,
    apply_slippage,
    build_fee_breakdown,
)
from swapagg.routing.icpswap import ICPSwapDex
from swapagg.routing.kong import KongDex
from swapagg.routing.token_standard import TokenStandardResolver
from swapagg.storage.base import MemoryStore

OWNER = ANONYMOUS_PRINCIPAL
ICP = "ryjl3-tyaaa-aaaaa-aaaba-cai"
CKUSDC = "xevnm-gaaaa-aaaar-qafnq-cai"
SNEED = "hvgxa-wqaaa-aaaaq-aacia-cai"
KONG_CANISTER = "kong-swap"


class StubDex(DexAdapter):
    """Deterministic adapter whose output is a function of the input amount."""

    def __init__(
        self,
        dex_id: str,
        output_fn: Optional[Callable[[int], int]] = None,
        name: Optional[str] = None,
        standards: tuple = (TokenStandard.ICRC1, TokenStandard.ICRC2),
        fail_quote: bool = False,
        swap_error: Optional[str] = None,
    ):
        self._id = dex_id
        self._name = name or dex_id.title()
        self._standards = standards
        self.output_fn = output_fn or (lambda amount: amount)
        self.fail_quote = fail_quote
        self.swap_error = swap_error
        self.quote_calls: list[int] = []
        self.executed: list[SwapQuote] = []

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def supported_standards(self) -> tuple:
        return self._standards

    async def has_pair(self, token_a, token_b):
        if self.fail_quote:
            raise QuoteFailed("unreachable", dex_id=self.id)
        return True

    async def get_pairs_for_token(self, token):
        return [{"input_token": token, "output_token": CKUSDC, "pool_id": f"{self.id}-pool"}]

    async def get_spot_price(self, token_in, token_out):
        return 1.0

    async def get_quote(self, input_token, output_token, amount, standard=None, slippage=DEFAULT_SLIPPAGE):
        self.quote_calls.append(amount)
        if self.fail_quote:
            raise QuoteFailed("backend rejected quote", dex_id=self.id)
        output = self.output_fn(amount)
        return SwapQuote(
            dex_id=self.id,
            dex_name=self.name,
            input_token=input_token,
            output_token=output_token,
            input_amount=amount,
            effective_input_amount=amount,
            expected_output=output,
            minimum_output=apply_slippage(output, slippage),
            spot_price=1.0,
            price_impact=0.0,
            dex_fee_percent=0.003,
            fee_breakdown=build_fee_breakdown(0, 0, 0, 0),
            standard=standard or TokenStandard.ICRC1,
            route=(RouteStep(self.id, f"{self.id}-pool", input_token, output_token, amount, output),),
        )

    def get_input_fee_count(self, standard):
        return 0

    def get_output_fee_count(self, standard):
        return 0

    async def execute_swap(self, quote, slippage=DEFAULT_SLIPPAGE, on_progress=None):
        self.executed.append(quote)
        reporter = ProgressReporter(on_progress, 1)
        await reporter.step(SwapStep.SWAPPING, "Swapping", 0)
        if self.swap_error:
            await reporter.fail(self.swap_error)
            return SwapResult(success=False, amount_out=0, error=self.swap_error)
        tx_id = f"{self.id}-tx"
        await reporter.complete("Done", tx_id=tx_id)
        return SwapResult(success=True, amount_out=quote.expected_output, tx_id=tx_id)


@pytest.fixture
def store() -> MemoryStore:
    """Fresh in-memory cache store."""
    return MemoryStore()


@pytest.fixture
def ledger() -> SimulatedLedger:
    """Simulated ledger with ICP, ckUSDC (both ICRC-2) and SNEED (ICRC-1 only)."""
    sim = SimulatedLedger(owner=OWNER)
    sim.add_token(SimulatedToken(ICP, "ICP", decimals=8, fee=10_000))
    sim.add_token(SimulatedToken(CKUSDC, "ckUSDC", decimals=6, fee=10_000))
    sim.add_token(SimulatedToken(SNEED, "SNEED", decimals=8, fee=1_000, standards=("ICRC-1",)))
    for token in sim.tokens.values():
        sim.mint(token.ledger_id, OWNER, 10_000 * 10**token.decimals)
    return sim


@pytest.fixture
def pool_dex(ledger) -> SimulatedPoolDex:
    """ICPSwap-style pools: deep ICP/ckUSDC, shallow SNEED/ICP."""
    dex = SimulatedPoolDex(ledger)
    dex.add_pool(ICP, CKUSDC, 100_000 * 10**8, 500_000 * 10**6)
    dex.add_pool(SNEED, ICP, 20_000 * 10**8, 10_000 * 10**8)
    return dex


@pytest.fixture
def routed_dex(ledger) -> SimulatedRoutedDex:
    """Kong-style DEX: ICP/ckUSDC plus SNEED/ICP for two-hop routes."""
    dex = SimulatedRoutedDex(ledger, canister_id=KONG_CANISTER)
    dex.add_pool(ICP, CKUSDC, 40_000 * 10**8, 201_000 * 10**6)
    dex.add_pool(SNEED, ICP, 5_000 * 10**8, 2_600 * 10**8)
    return dex


@pytest.fixture
def resolver(ledger, store) -> TokenStandardResolver:
    return TokenStandardResolver(ledger, store)


@pytest.fixture
def icpswap(pool_dex, resolver, store) -> ICPSwapDex:
    return ICPSwapDex(pool_dex, resolver, owner=OWNER, store=store)


@pytest.fixture
def kong(routed_dex, resolver, store) -> KongDex:
    return KongDex(routed_dex, resolver, owner=OWNER, canister_id=KONG_CANISTER, store=store)


@pytest_asyncio.fixture
async def aggregator(resolver, icpswap, kong) -> DexAggregator:
    """Aggregator with both simulated DEXes registered."""
    agg = DexAggregator(resolver)
    agg.register_dex(icpswap)
    agg.register_dex(kong)
    return agg


@pytest.fixture
def progress_log() -> list:
    """Collects SwapProgress events; pass ``progress_log.append`` as callback."""
    return []
