"""DEX aggregator: quote fan-out, ranking, split optimization and execution."""

import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from swapagg.errors import (
    AdapterNotRegistered,
    DuplicateAdapter,
    NoAdaptersRegistered,
    PendingTransferNotFound,
)
from swapagg.routing.base import (
    DEFAULT_SLIPPAGE,
    DexAdapter,
    FeeBreakdown,
    ProgressCallback,
    SwapProgress,
    SwapQuote,
    SwapResult,
    SwapStep,
    LegResult,
    TokenStandard,
    emit_progress,
)
from swapagg.routing.token_standard import TokenStandardResolver
from swapagg.storage.pending import PendingTransferRecord
from swapagg.utils.concurrency import gather_settled

logger = logging.getLogger(__name__)

SPLIT_DEX_ID = "split"

SplitProgressCallback = Callable[[int, int], Any]


@dataclass
class DistributionQuote:
    """Combined output of routing ``distribution`` percent to B and the rest to A."""

    distribution: int
    total_out: int
    quote_a: Optional[SwapQuote] = None
    quote_b: Optional[SwapQuote] = None


@dataclass
class SplitSearchResult:
    """Best distribution found by the split search."""

    distribution: int
    amount: int
    quote_a: Optional[SwapQuote]
    quote_b: Optional[SwapQuote]
    tested: dict[int, int] = field(default_factory=dict)
    iterations: int = 0


class DexAggregator:
    """Registry of DEX adapters plus quoting and execution across them."""

    def __init__(
        self,
        resolver: TokenStandardResolver,
        default_slippage: float = DEFAULT_SLIPPAGE,
        max_split_iterations: int = 10,
    ):
        self.resolver = resolver
        self.default_slippage = default_slippage
        self.max_split_iterations = max_split_iterations
        self._adapters: dict[str, DexAdapter] = {}

    # Registry

    def register_dex(self, adapter: DexAdapter) -> None:
        if adapter.id in self._adapters:
            raise DuplicateAdapter(f"Adapter {adapter.id} is already registered", dex_id=adapter.id)
        self._adapters[adapter.id] = adapter
        logger.info(f"Registered DEX adapter {adapter.name} ({adapter.id})")

    def unregister_dex(self, dex_id: str) -> None:
        if self._adapters.pop(dex_id, None) is not None:
            logger.info(f"Unregistered DEX adapter {dex_id}")

    def get_dex(self, dex_id: str) -> Optional[DexAdapter]:
        return self._adapters.get(dex_id)

    def get_supported_dexes(self) -> list[dict]:
        return [
            {"id": a.id, "name": a.name, "standards": [s.value for s in a.supported_standards]}
            for a in self._adapters.values()
        ]

    def _require(self, dex_id: str) -> DexAdapter:
        adapter = self._adapters.get(dex_id)
        if adapter is None:
            raise AdapterNotRegistered(f"No adapter registered for {dex_id}", dex_id=dex_id)
        return adapter

    # Quoting

    async def get_quotes(
        self,
        input_token: str,
        output_token: str,
        amount: int,
        slippage: Optional[float] = None,
        preferred_standard: Optional[TokenStandard] = None,
        dex_ids: Optional[list[str]] = None,
    ) -> list[SwapQuote]:
        """
        Quote a swap on every eligible adapter.

        Args:
            input_token: Input ledger canister ID
            output_token: Output ledger canister ID
            amount: Input amount in base units
            slippage: Tolerance for minimum_output (defaults to the aggregator's)
            preferred_standard: Transfer standard to use where both sides allow it
            dex_ids: Restrict quoting to these adapters

        Returns:
            Quotes sorted by expected_output, best first. Adapters that fail
            are logged and left out; the list may be empty.

        Raises:
            NoAdaptersRegistered: the registry is empty
        """
        if not self._adapters:
            raise NoAdaptersRegistered()
        slippage = self.default_slippage if slippage is None else slippage

        info = await self.resolver.get_token_info(input_token)
        token_standards = set(info.supported_standards)

        adapters = [
            a
            for a in self._adapters.values()
            if (dex_ids is None or a.id in dex_ids) and token_standards & set(a.supported_standards)
        ]
        logger.debug(
            f"Quoting {amount} {info.symbol} -> {output_token} on {[a.id for a in adapters]}"
        )

        settled = await gather_settled(
            *(
                a.get_quote(
                    input_token,
                    output_token,
                    amount,
                    self.resolver.resolve_standard(info, a.supported_standards, preferred_standard),
                    slippage,
                )
                for a in adapters
            )
        )

        quotes = []
        for adapter, outcome in zip(adapters, settled):
            if outcome.ok:
                quotes.append(outcome.value)
            else:
                logger.warning(
                    f"{adapter.name} quote failed: {type(outcome.error).__name__}: {outcome.error}"
                )

        # Stable: equal outputs keep registration order
        quotes.sort(key=lambda q: q.expected_output, reverse=True)

        if quotes:
            best = quotes[0]
            logger.info(
                f"Got {len(quotes)} quote(s) for {info.symbol} -> {output_token}. "
                f"Best: {best.dex_name} ({best.expected_output})"
            )
        return quotes

    async def get_best_quote(
        self,
        input_token: str,
        output_token: str,
        amount: int,
        slippage: Optional[float] = None,
        preferred_standard: Optional[TokenStandard] = None,
        dex_ids: Optional[list[str]] = None,
    ) -> Optional[SwapQuote]:
        quotes = await self.get_quotes(
            input_token, output_token, amount, slippage, preferred_standard, dex_ids
        )
        return quotes[0] if quotes else None

    async def get_available_dexes(self, token_in: str, token_out: str) -> list[str]:
        adapters = list(self._adapters.values())
        settled = await gather_settled(*(a.has_pair(token_in, token_out) for a in adapters))
        return [a.id for a, outcome in zip(adapters, settled) if outcome.ok and outcome.value]

    async def get_all_pairs_for_token(self, token: str) -> list[dict]:
        adapters = list(self._adapters.values())
        settled = await gather_settled(*(a.get_pairs_for_token(token) for a in adapters))
        pairs = []
        for adapter, outcome in zip(adapters, settled):
            if not outcome.ok:
                logger.warning(f"{adapter.name} pair discovery failed: {outcome.error}")
                continue
            pairs.extend({**pair, "dex_id": adapter.id} for pair in outcome.value)
        return pairs

    # Execution

    async def swap(
        self,
        quote: SwapQuote,
        slippage: Optional[float] = None,
        standard: Optional[TokenStandard] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SwapResult:
        """
        Execute a quote from get_quotes or get_split_quote.

        Raises:
            AdapterNotRegistered: the quote's adapter (or a split leg's) is unknown
        """
        slippage = self.default_slippage if slippage is None else slippage
        if quote.is_split_quote:
            return await self._execute_split(quote, slippage, on_progress)

        adapter = self._require(quote.dex_id)
        if standard is not None and standard != quote.standard:
            quote = dataclasses.replace(quote, standard=standard)
        return await adapter.execute_swap(quote, slippage, on_progress)

    async def _execute_split(
        self,
        quote: SwapQuote,
        slippage: float,
        on_progress: Optional[ProgressCallback],
    ) -> SwapResult:
        legs = [leg for leg in quote.legs if leg.input_amount > 0]
        adapters = [self._require(leg.dex_id) for leg in legs]
        states: list[Optional[SwapProgress]] = [None] * len(legs)

        def leg_callback(index: int) -> ProgressCallback:
            async def report(progress: SwapProgress) -> None:
                states[index] = progress
                done = sum(1 for s in states if s is not None and s.is_terminal)
                if done == len(legs):
                    return  # final event is emitted once every leg has settled
                await emit_progress(
                    on_progress,
                    SwapProgress(
                        step=SwapStep.SWAPPING,
                        message=f"Swapping on {len(legs)} DEXes ({done}/{len(legs)} done)",
                        step_index=done,
                        total_steps=len(legs),
                        legs=tuple(states),
                    ),
                )

            return report

        settled = await gather_settled(
            *(
                adapter.execute_swap(leg, slippage, leg_callback(i))
                for i, (adapter, leg) in enumerate(zip(adapters, legs))
            )
        )

        results: list[LegResult] = []
        for adapter, leg, outcome in zip(adapters, legs, settled):
            if outcome.ok:
                r = outcome.value
                results.append(LegResult(leg, r.success, r.amount_out if r.success else 0, r.tx_id, r.error))
            else:
                logger.error(f"{adapter.name} leg raised: {outcome.error}")
                results.append(LegResult(leg, False, 0, None, str(outcome.error)))

        failures = [f"{leg.quote.dex_name}: {leg.error}" for leg in results if not leg.success]
        success = bool(results) and not failures
        amount_out = sum(leg.amount_out for leg in results)
        error = "; ".join(failures) if failures else None

        final = SwapProgress(
            step=SwapStep.COMPLETE if success else SwapStep.FAILED,
            message="Split swap complete" if success else f"Split swap failed: {error}",
            step_index=len(legs),
            total_steps=len(legs),
            completed=success,
            failed=not success,
            error=error,
            legs=tuple(states),
        )
        await emit_progress(on_progress, final)

        if success:
            logger.info(f"Split swap complete: {amount_out} across {len(legs)} legs")
        else:
            logger.error(f"Split swap finished with failures: {error}")
        return SwapResult(success=success, amount_out=amount_out, error=error, legs=results)

    # Crash recovery

    async def get_pending_transfers(self) -> list[PendingTransferRecord]:
        """Transfers across all adapters whose swap was never acknowledged."""
        adapters = list(self._adapters.values())
        settled = await gather_settled(*(a.pending_transfers() for a in adapters))
        records = []
        for adapter, outcome in zip(adapters, settled):
            if outcome.ok:
                records.extend(outcome.value)
            else:
                logger.warning(f"{adapter.name} pending transfer listing failed: {outcome.error}")
        return sorted(records, key=lambda r: r.timestamp)

    async def resume_pending(
        self, key: str, on_progress: Optional[ProgressCallback] = None
    ) -> SwapResult:
        """Resume a pending transfer on the adapter that made it."""
        for record in await self.get_pending_transfers():
            if record.key == key:
                return await self._require(record.dex_id).resume_pending_swap(key, on_progress)
        raise PendingTransferNotFound(f"No pending transfer {key}")

    # Split optimization

    async def _leg_quote(
        self,
        adapter: DexAdapter,
        input_token: str,
        output_token: str,
        amount: int,
        slippage: float,
        preferred_standard: Optional[TokenStandard],
    ) -> Optional[SwapQuote]:
        if amount <= 0:
            return None
        try:
            info = await self.resolver.get_token_info(input_token)
            standard = self.resolver.resolve_standard(info, adapter.supported_standards, preferred_standard)
            return await adapter.get_quote(input_token, output_token, amount, standard, slippage)
        except Exception as e:
            logger.debug(f"{adapter.name} split quote for {amount} failed: {e}")
            return None

    async def get_quote_for_distribution(
        self,
        dex_a: str,
        dex_b: str,
        input_token: str,
        output_token: str,
        total_amount: int,
        distribution: int,
        slippage: Optional[float] = None,
        preferred_standard: Optional[TokenStandard] = None,
    ) -> DistributionQuote:
        """Quote routing ``distribution`` percent to dex_b and the remainder to dex_a."""
        adapter_a = self._require(dex_a)
        adapter_b = self._require(dex_b)
        slippage = self.default_slippage if slippage is None else slippage

        amount_b = total_amount * distribution // 100
        amount_a = total_amount - amount_b

        settled = await gather_settled(
            self._leg_quote(adapter_a, input_token, output_token, amount_a, slippage, preferred_standard),
            self._leg_quote(adapter_b, input_token, output_token, amount_b, slippage, preferred_standard),
        )
        quote_a, quote_b = (s.value if s.ok else None for s in settled)
        total_out = sum(q.expected_output for q in (quote_a, quote_b) if q is not None)
        return DistributionQuote(distribution, total_out, quote_a, quote_b)

    async def find_best_split(
        self,
        dex_a: str,
        dex_b: str,
        input_token: str,
        output_token: str,
        total_amount: int,
        slippage: Optional[float] = None,
        preferred_standard: Optional[TokenStandard] = None,
        quote_a: Optional[SwapQuote] = None,
        quote_b: Optional[SwapQuote] = None,
        on_progress: Optional[SplitProgressCallback] = None,
    ) -> SplitSearchResult:
        """
        Ternary search for the distribution (percent to dex_b) maximizing output.

        Output is treated as unimodal over [0, 100]. When an endpoint beats
        both samples and the other endpoint, the bracket moves toward it
        instead, since fees can make the curve non-unimodal near 0% or 100%.
        The result is the best of every point tested, ties to the lowest
        distribution. This is a heuristic, not a global-optimum guarantee.

        Args:
            quote_a: Existing 100% quote from dex_a, reused for distribution 0
            quote_b: Existing 100% quote from dex_b, reused for distribution 100
            on_progress: Called as (distribution, amount) for each new best
                interior point
        """
        tested: dict[int, int] = {}
        found: dict[int, DistributionQuote] = {}
        if quote_a is not None:
            tested[0] = quote_a.expected_output
            found[0] = DistributionQuote(0, quote_a.expected_output, quote_a, None)
        if quote_b is not None:
            tested[100] = quote_b.expected_output
            found[100] = DistributionQuote(100, quote_b.expected_output, None, quote_b)

        best_interior: Optional[int] = None

        async def sample(points: list[int]) -> None:
            nonlocal best_interior
            missing = [p for p in dict.fromkeys(points) if p not in tested]
            settled = await gather_settled(
                *(
                    self.get_quote_for_distribution(
                        dex_a, dex_b, input_token, output_token, total_amount, p, slippage, preferred_standard
                    )
                    for p in missing
                )
            )
            for p, outcome in zip(missing, settled):
                result = outcome.value if outcome.ok else DistributionQuote(p, 0)
                tested[p] = result.total_out
                found[p] = result
                if 0 < p < 100 and (best_interior is None or result.total_out > tested[best_interior]):
                    best_interior = p
                    if on_progress is not None:
                        ret = on_progress(p, result.total_out)
                        if inspect.isawaitable(ret):
                            await ret

        await sample([0, 100])

        left, right = 0, 100
        iterations = 0
        while right - left > 1 and iterations < self.max_split_iterations:
            iterations += 1
            third = (right - left) // 3
            m1 = left + third
            m2 = right - third
            await sample([m1, m2])

            f0, f100, f1, f2 = tested[0], tested[100], tested[m1], tested[m2]
            if f1 < f2:
                if f0 > f1 and f0 > f2 and f0 > f100:
                    right = m2
                else:
                    left = m1
            elif f1 > f2:
                if f100 > f1 and f100 > f2 and f100 > f0:
                    left = m1
                else:
                    right = m2
            else:
                right = m2

        best = min(tested, key=lambda d: (-tested[d], d))
        logger.debug(
            f"Split search {dex_a}/{dex_b}: best {best}% -> {tested[best]} "
            f"after {iterations} iterations, {len(tested)} points"
        )
        return SplitSearchResult(
            distribution=best,
            amount=tested[best],
            quote_a=found[best].quote_a,
            quote_b=found[best].quote_b,
            tested=dict(tested),
            iterations=iterations,
        )

    async def get_split_quote(
        self,
        quote_a: SwapQuote,
        quote_b: SwapQuote,
        slippage: Optional[float] = None,
        preferred_standard: Optional[TokenStandard] = None,
        on_progress: Optional[SplitProgressCallback] = None,
    ) -> Optional[SwapQuote]:
        """
        Build a split quote from two adapters' full quotes.

        Returns None when the best split is an endpoint or does not beat
        the better single quote.
        """
        if quote_a.dex_id == quote_b.dex_id:
            raise ValueError("Split quotes need two different DEXes")
        if (quote_a.input_token, quote_a.output_token) != (quote_b.input_token, quote_b.output_token):
            raise ValueError("Split quotes need the same token pair")
        self._require(quote_a.dex_id)
        self._require(quote_b.dex_id)

        search = await self.find_best_split(
            quote_a.dex_id,
            quote_b.dex_id,
            quote_a.input_token,
            quote_a.output_token,
            quote_a.input_amount,
            slippage=slippage,
            preferred_standard=preferred_standard,
            quote_a=quote_a,
            quote_b=quote_b,
            on_progress=on_progress,
        )

        best_single = max(quote_a.expected_output, quote_b.expected_output)
        if search.distribution in (0, 100) or search.amount <= best_single:
            logger.info(
                f"No profitable split for {quote_a.dex_name}/{quote_b.dex_name} "
                f"(best {search.distribution}% -> {search.amount}, single {best_single})"
            )
            return None
        if search.quote_a is None or search.quote_b is None:
            return None

        split = combine_split_quote(search.quote_a, search.quote_b, search.distribution)
        logger.info(
            f"Split {100 - search.distribution}% {quote_a.dex_name} / "
            f"{search.distribution}% {quote_b.dex_name}: {split.expected_output} vs {best_single}"
        )
        return split


def combine_split_quote(leg_a: SwapQuote, leg_b: SwapQuote, distribution: int) -> SwapQuote:
    """Aggregate two leg quotes into one composite split quote."""
    legs = (leg_a, leg_b)
    input_amount = sum(q.input_amount for q in legs)

    def weighted(attr: str) -> float:
        if input_amount <= 0:
            return 0.0
        return sum(getattr(q, attr) * q.input_amount for q in legs) / input_amount

    fee_breakdown = FeeBreakdown(
        input_transfer_fees=sum(q.fee_breakdown.input_transfer_fees for q in legs),
        output_withdrawal_fees=sum(q.fee_breakdown.output_withdrawal_fees for q in legs),
        dex_trading_fee=sum(q.fee_breakdown.dex_trading_fee for q in legs),
        input_fee_count=sum(q.fee_breakdown.input_fee_count for q in legs),
        output_fee_count=sum(q.fee_breakdown.output_fee_count for q in legs),
    )
    return SwapQuote(
        dex_id=SPLIT_DEX_ID,
        dex_name=f"{leg_a.dex_name} + {leg_b.dex_name}",
        input_token=leg_a.input_token,
        output_token=leg_a.output_token,
        input_amount=input_amount,
        effective_input_amount=sum(q.effective_input_amount for q in legs),
        expected_output=sum(q.expected_output for q in legs),
        minimum_output=sum(q.minimum_output for q in legs),
        spot_price=weighted("spot_price"),
        price_impact=max(q.price_impact for q in legs),
        dex_fee_percent=weighted("dex_fee_percent"),
        fee_breakdown=fee_breakdown,
        standard=leg_a.standard,
        route=leg_a.route + leg_b.route,
        is_split_quote=True,
        distribution=distribution,
        legs=legs,
    )
