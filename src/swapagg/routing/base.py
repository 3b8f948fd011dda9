"""Shared quote types and the DEX adapter interface."""

import inspect
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from swapagg.errors import PendingTransferNotFound

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE = 0.01


class TokenStandard(str, Enum):
    """Token transfer standards a ledger or DEX can support."""

    ICRC1 = "icrc1"  # direct single transfer
    ICRC2 = "icrc2"  # approve, then the DEX pulls


@dataclass(frozen=True)
class TokenInfo:
    """Ledger metadata for a token. Immutable once fetched."""

    ledger_id: str
    symbol: str
    decimals: int
    fee: int
    supported_standards: tuple[TokenStandard, ...]
    logo: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ledger_id": self.ledger_id,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "fee": str(self.fee),
            "supported_standards": [s.value for s in self.supported_standards],
            "logo": self.logo,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TokenInfo":
        return cls(
            ledger_id=data["ledger_id"],
            symbol=data["symbol"],
            decimals=int(data["decimals"]),
            fee=int(data["fee"]),
            supported_standards=tuple(TokenStandard(s) for s in data["supported_standards"]),
            logo=data.get("logo"),
        )


@dataclass(frozen=True)
class RouteStep:
    """One hop of a quote: pool_id swaps amount_in of input for amount_out of output."""

    dex_id: str
    pool_id: str
    input_token: str
    output_token: str
    amount_in: int
    amount_out: int


@dataclass(frozen=True)
class FeeBreakdown:
    """Fees a quote accounts for.

    Transfer fees are in base units of the input and output tokens;
    ``dex_trading_fee`` is the pool's trading fee in input base units.
    """

    input_transfer_fees: int
    output_withdrawal_fees: int
    dex_trading_fee: int
    input_fee_count: int
    output_fee_count: int


def _json_safe(items: list[tuple[str, Any]]) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in items}


@dataclass(frozen=True)
class SwapQuote:
    """A comparable swap quote from one adapter, or a composite split quote."""

    dex_id: str
    dex_name: str
    input_token: str
    output_token: str
    input_amount: int
    effective_input_amount: int  # input_amount minus input-side transfer fees
    expected_output: int
    minimum_output: int
    spot_price: float
    price_impact: float  # fraction, DEX fee excluded
    dex_fee_percent: float  # fraction, 0.003 = 0.3%
    fee_breakdown: FeeBreakdown
    standard: TokenStandard
    route: tuple[RouteStep, ...] = ()
    timestamp: float = field(default_factory=time.time)
    is_split_quote: bool = False
    distribution: Optional[int] = None  # percent routed to the second leg
    legs: tuple["SwapQuote", ...] = ()

    @property
    def is_routed(self) -> bool:
        """True when the adapter chains more than one pool."""
        return len(self.route) > 1

    def to_dict(self) -> dict:
        """Convert to a JSON-safe dictionary."""
        return asdict(self, dict_factory=_json_safe)


class SwapStep(str, Enum):
    """Execution states reported through SwapProgress."""

    CHECKING_ALLOWANCE = "checking_allowance"
    APPROVING = "approving"
    TRANSFERRING = "transferring"
    DEPOSITING = "depositing"
    SWAPPING = "swapping"
    WITHDRAWING = "withdrawing"
    CLAIMING = "claiming"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class SwapProgress:
    """One progress event of a swap execution."""

    step: SwapStep
    message: str
    step_index: int
    total_steps: int
    completed: bool = False
    failed: bool = False
    error: Optional[str] = None
    tx_id: Optional[str] = None
    # per-leg state for split swaps, by leg position; None until that leg reports
    legs: tuple[Optional["SwapProgress"], ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.completed or self.failed


@dataclass
class LegResult:
    """Outcome of one leg of a split swap."""

    quote: SwapQuote
    success: bool
    amount_out: int = 0
    tx_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SwapResult:
    """Outcome of a swap execution."""

    success: bool
    amount_out: int = 0
    tx_id: Optional[str] = None
    error: Optional[str] = None
    legs: list[LegResult] = field(default_factory=list)

    @property
    def failed_legs(self) -> list[LegResult]:
        return [leg for leg in self.legs if not leg.success]


ProgressCallback = Callable[[SwapProgress], Any]


async def emit_progress(callback: Optional[ProgressCallback], progress: SwapProgress) -> None:
    """Deliver a progress event to a sync or async callback."""
    if callback is None:
        return
    result = callback(progress)
    if inspect.isawaitable(result):
        await result


class ProgressReporter:
    """Emits SwapProgress for a single-leg execution with a fixed step count."""

    def __init__(self, callback: Optional[ProgressCallback], total_steps: int):
        self.callback = callback
        self.total_steps = total_steps
        self.step_index = 0

    async def step(self, step: SwapStep, message: str, index: int, tx_id: Optional[str] = None) -> None:
        self.step_index = index
        await emit_progress(
            self.callback,
            SwapProgress(step=step, message=message, step_index=index, total_steps=self.total_steps, tx_id=tx_id),
        )

    async def complete(self, message: str, tx_id: Optional[str] = None) -> None:
        await emit_progress(
            self.callback,
            SwapProgress(
                step=SwapStep.COMPLETE,
                message=message,
                step_index=self.step_index,
                total_steps=self.total_steps,
                completed=True,
                tx_id=tx_id,
            ),
        )

    async def fail(self, error: str) -> None:
        await emit_progress(
            self.callback,
            SwapProgress(
                step=SwapStep.FAILED,
                message=f"Swap failed: {error}",
                step_index=self.step_index,
                total_steps=self.total_steps,
                failed=True,
                error=error,
            ),
        )


def apply_slippage(expected_output: int, slippage: float) -> int:
    """Minimum acceptable output: expected minus ceil(expected * slippage), floored at 0."""
    if expected_output <= 0:
        return 0
    tolerance = math.ceil(Decimal(str(slippage)) * expected_output)
    return max(0, expected_output - tolerance)


def build_fee_breakdown(
    input_fee_count: int,
    input_fee: int,
    output_fee_count: int,
    output_fee: int,
    dex_trading_fee: int = 0,
) -> FeeBreakdown:
    return FeeBreakdown(
        input_transfer_fees=input_fee_count * input_fee,
        output_withdrawal_fees=output_fee_count * output_fee,
        dex_trading_fee=dex_trading_fee,
        input_fee_count=input_fee_count,
        output_fee_count=output_fee_count,
    )


def market_price_impact(
    amount_in: int,
    amount_out: int,
    input_decimals: int,
    output_decimals: int,
    spot_price: float,
    dex_fee_percent: float,
) -> float:
    """Deviation of the realised rate from the fee-adjusted spot price.

    The pool's trading fee is removed from the spot price first, so the
    result reflects market depth only. Returns 0 when no spot is known.
    """
    fee_adjusted_spot = spot_price * (1 - dex_fee_percent)
    if amount_in <= 0 or fee_adjusted_spot <= 0:
        return 0.0
    actual_rate = (amount_out / 10**output_decimals) / (amount_in / 10**input_decimals)
    return max(0.0, 1 - actual_rate / fee_adjusted_spot)


class DexAdapter(ABC):
    """Capability interface every DEX adapter implements."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Stable registry identifier, e.g. "icpswap"."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable DEX name."""
        pass

    @property
    @abstractmethod
    def supported_standards(self) -> tuple[TokenStandard, ...]:
        """Transfer standards the DEX can accept input with."""
        pass

    @abstractmethod
    async def has_pair(self, token_a: str, token_b: str) -> bool:
        """Check whether the DEX can swap between two tokens."""
        pass

    @abstractmethod
    async def get_pairs_for_token(self, token: str) -> list[dict]:
        """List ``{input_token, output_token, pool_id}`` pairs involving token."""
        pass

    @abstractmethod
    async def get_spot_price(self, token_in: str, token_out: str) -> float:
        """Instantaneous price of token_in in token_out, decimal-adjusted."""
        pass

    @abstractmethod
    async def get_quote(
        self,
        input_token: str,
        output_token: str,
        amount: int,
        standard: Optional[TokenStandard] = None,
        slippage: float = DEFAULT_SLIPPAGE,
    ) -> SwapQuote:
        """
        Quote a swap.

        Args:
            input_token: Input ledger canister ID
            output_token: Output ledger canister ID
            amount: Input amount in base units, before transfer fees
            standard: Transfer standard to quote for (resolved when omitted)
            slippage: Tolerance used for minimum_output (0.01 = 1%)

        Returns:
            SwapQuote with fees already deducted from both sides

        Raises:
            AmountTooSmall: input does not cover the input-side fees
            NoPoolForPair: no pool or route exists
            QuoteFailed: the backend rejected the quote
        """
        pass

    @abstractmethod
    def get_input_fee_count(self, standard: TokenStandard) -> int:
        """Number of input-token ledger fees the standard costs."""
        pass

    @abstractmethod
    def get_output_fee_count(self, standard: TokenStandard) -> int:
        """Number of output-token ledger fees deducted from proceeds."""
        pass

    @abstractmethod
    async def execute_swap(
        self,
        quote: SwapQuote,
        slippage: float = DEFAULT_SLIPPAGE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SwapResult:
        """
        Execute a quote.

        Never raises for remote failures: they are reported as a FAILED
        progress event and an unsuccessful SwapResult.
        """
        pass

    async def pending_transfers(self) -> list:
        """Transfers made by this adapter whose swap was not acknowledged."""
        return []

    async def resume_pending_swap(
        self, key: str, on_progress: Optional[ProgressCallback] = None
    ) -> SwapResult:
        """Replay the swap for a recorded transfer without re-transferring."""
        raise PendingTransferNotFound(f"No pending transfer {key}", dex_id=self.id)
