"""KongSwap adapter: one canister that routes multi-hop swaps internally.

Input is paid either by a direct transfer to the Kong canister whose block
index is handed to ``swap`` (icrc1), or by an approval Kong pulls itself
(icrc2). Proceeds are sent by Kong, so no output fee is charged; when the
send fails Kong returns claim IDs instead.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict
from typing import Optional

from swapagg.backends.base import RoutedPool, RoutedSwapArgs, RoutedSwapBackend, SwapReply
from swapagg.errors import (
    AmountTooSmall,
    BackendError,
    ClaimFailed,
    NoPoolForPair,
    PendingTransferNotFound,
    QuoteFailed,
    SwapFailed,
)
from swapagg.routing.base import (
    DEFAULT_SLIPPAGE,
    DexAdapter,
    ProgressCallback,
    ProgressReporter,
    RouteStep,
    SwapQuote,
    SwapResult,
    SwapStep,
    TokenStandard,
    apply_slippage,
    build_fee_breakdown,
    market_price_impact,
)
from swapagg.routing.token_standard import TokenStandardResolver
from swapagg.storage.base import KeyValueStore, MemoryStore
from swapagg.storage.pending import OutstandingClaims, PendingTransactionCache, PendingTransferRecord

logger = logging.getLogger(__name__)

POOLS_KEY = "kong_pools"
DEFAULT_LP_FEE = 0.003


class KongDex(DexAdapter):
    """Adapter for the KongSwap routed-swap canister."""

    def __init__(
        self,
        backend: RoutedSwapBackend,
        resolver: TokenStandardResolver,
        owner: str,
        canister_id: str,
        store: Optional[KeyValueStore] = None,
        pools_ttl: float = 300.0,
    ):
        self.backend = backend
        self.resolver = resolver
        self.owner = owner
        self.canister_id = canister_id
        self.store = store or MemoryStore()
        self.pools_ttl = pools_ttl
        self.pending = PendingTransactionCache(self.store)
        self.claims = OutstandingClaims(self.store, self.id)
        self._pools: Optional[list[RoutedPool]] = None
        self._pools_timestamp = 0.0

    @property
    def id(self) -> str:
        return "kong"

    @property
    def name(self) -> str:
        return "KongSwap"

    @property
    def supported_standards(self) -> tuple[TokenStandard, ...]:
        return (TokenStandard.ICRC1, TokenStandard.ICRC2)

    async def _get_pools(self) -> list[RoutedPool]:
        now = time.time()
        if self._pools is not None and now - self._pools_timestamp < self.pools_ttl:
            return self._pools

        stored = await self.store.get(POOLS_KEY)
        if stored and now - stored.get("ts", 0) < self.pools_ttl:
            self._pools = [RoutedPool(**p) for p in stored["pools"]]
            self._pools_timestamp = stored["ts"]
            logger.debug(f"Kong pools loaded from cache ({len(self._pools)})")
            return self._pools

        pools = await self.backend.pools()
        self._pools = pools
        self._pools_timestamp = now
        await self.store.set(POOLS_KEY, {"pools": [asdict(p) for p in pools], "ts": now})
        logger.debug(f"Fetched {len(pools)} Kong pools")
        return pools

    async def _find_pool(self, token_a: str, token_b: str) -> Optional[RoutedPool]:
        a = token_a.lower()
        b = token_b.lower()
        for pool in await self._get_pools():
            pa = pool.address_0.lower()
            pb = pool.address_1.lower()
            if (pa == a and pb == b) or (pa == b and pb == a):
                return pool
        return None

    async def has_pair(self, token_a: str, token_b: str) -> bool:
        try:
            if await self._find_pool(token_a, token_b):
                return True
            # Multi-hop routes have no direct pool; quote one base unit
            await self.backend.swap_amounts(token_a, 1, token_b)
            return True
        except BackendError as e:
            logger.debug(f"Kong has no route {token_a} -> {token_b}: {e}")
            return False

    async def get_pairs_for_token(self, token: str) -> list[dict]:
        wanted = token.lower()
        pairs = []
        for pool in await self._get_pools():
            if pool.address_0.lower() == wanted:
                pairs.append({"input_token": pool.address_0, "output_token": pool.address_1, "pool_id": self.canister_id})
            elif pool.address_1.lower() == wanted:
                pairs.append({"input_token": pool.address_1, "output_token": pool.address_0, "pool_id": self.canister_id})
        return pairs

    async def get_spot_price(self, token_in: str, token_out: str) -> float:
        pool = await self._find_pool(token_in, token_out)
        if pool is not None and pool.price > 0:
            # pool.price is token_1 per token_0
            return pool.price if pool.address_0.lower() == token_in.lower() else 1 / pool.price

        info_in, info_out = await asyncio.gather(
            self.resolver.get_token_info(token_in),
            self.resolver.get_token_info(token_out),
        )
        sample_in = 10 ** max(0, info_in.decimals - 4)
        reply = await self.backend.swap_amounts(token_in, sample_in, token_out)
        if reply.mid_price:
            return reply.mid_price
        return (reply.receive_amount / 10**info_out.decimals) / (sample_in / 10**info_in.decimals)

    def get_input_fee_count(self, standard: TokenStandard) -> int:
        # icrc1: transfer to Kong; icrc2: approve + transferFrom
        return 2 if standard == TokenStandard.ICRC2 else 1

    def get_output_fee_count(self, standard: TokenStandard) -> int:
        return 0

    async def get_quote(
        self,
        input_token: str,
        output_token: str,
        amount: int,
        standard: Optional[TokenStandard] = None,
        slippage: float = DEFAULT_SLIPPAGE,
    ) -> SwapQuote:
        info_in, info_out = await asyncio.gather(
            self.resolver.get_token_info(input_token),
            self.resolver.get_token_info(output_token),
        )
        if standard is None:
            standard = self.resolver.resolve_standard(info_in, self.supported_standards)

        input_fee_count = self.get_input_fee_count(standard)
        output_fee_count = self.get_output_fee_count(standard)
        input_fees = input_fee_count * info_in.fee
        effective_input = amount - input_fees
        if effective_input <= 0:
            raise AmountTooSmall(
                f"Input amount {amount} too small to cover {input_fee_count} fee(s) of {info_in.fee}",
                dex_id=self.id,
            )

        try:
            reply = await self.backend.swap_amounts(input_token, effective_input, output_token)
        except BackendError as e:
            if "route" in str(e.detail).lower() or "pool" in str(e.detail).lower():
                raise NoPoolForPair(f"No Kong route for {input_token}/{output_token}", dex_id=self.id) from e
            raise QuoteFailed(f"Kong quote failed: {e.detail}", dex_id=self.id) from e

        raw_output = reply.receive_amount
        expected_output = max(0, raw_output - output_fee_count * info_out.fee)

        pool = await self._find_pool(input_token, output_token)
        if pool is not None and pool.lp_fee_bps is not None:
            dex_fee_percent = pool.lp_fee_bps / 10_000
        else:
            total_fee = sum(tx.lp_fee for tx in reply.txs)
            total_pay = sum(tx.pay_amount for tx in reply.txs)
            dex_fee_percent = total_fee / total_pay if total_pay > 0 else DEFAULT_LP_FEE

        spot_price = reply.mid_price or 0.0
        if not spot_price:
            try:
                spot_price = await self.get_spot_price(input_token, output_token)
            except BackendError as e:
                logger.debug(f"Kong spot price unavailable: {e}")
                spot_price = 0.0

        if reply.slippage is not None:
            # Kong reports its own deviation from mid price, in percent
            price_impact = abs(reply.slippage) / 100
        else:
            price_impact = market_price_impact(
                effective_input, raw_output, info_in.decimals, info_out.decimals, spot_price, dex_fee_percent
            )

        route = tuple(
            RouteStep(self.id, self.canister_id, tx.pay_address, tx.receive_address, tx.pay_amount, tx.receive_amount)
            for tx in reply.txs
        ) or (RouteStep(self.id, self.canister_id, input_token, output_token, effective_input, raw_output),)

        return SwapQuote(
            dex_id=self.id,
            dex_name=self.name,
            input_token=input_token,
            output_token=output_token,
            input_amount=amount,
            effective_input_amount=effective_input,
            expected_output=expected_output,
            minimum_output=apply_slippage(expected_output, slippage),
            spot_price=spot_price,
            price_impact=price_impact,
            dex_fee_percent=dex_fee_percent,
            fee_breakdown=build_fee_breakdown(
                input_fee_count,
                info_in.fee,
                output_fee_count,
                info_out.fee,
                dex_trading_fee=sum(tx.lp_fee for tx in reply.txs),
            ),
            standard=standard,
            route=route,
        )

    async def execute_swap(
        self,
        quote: SwapQuote,
        slippage: float = DEFAULT_SLIPPAGE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SwapResult:
        total_steps = 3 if quote.standard == TokenStandard.ICRC2 else 2
        reporter = ProgressReporter(on_progress, total_steps)

        try:
            fresh = await self.backend.swap_amounts(
                quote.input_token, quote.effective_input_amount, quote.output_token
            )
            minimum_output = apply_slippage(fresh.receive_amount, slippage)
            # Kong checks total deviation from mid price, fee included
            max_slippage = (quote.price_impact + quote.dex_fee_percent + slippage) * 100
            args = RoutedSwapArgs(
                pay_token=quote.input_token,
                pay_amount=quote.effective_input_amount,
                receive_token=quote.output_token,
                receive_amount=minimum_output,
                max_slippage=max_slippage,
            )

            if quote.standard == TokenStandard.ICRC2:
                reply = await self._execute_icrc2(quote, args, reporter)
            else:
                reply = await self._execute_icrc1(quote, args, reporter)
        except SwapFailed as e:
            logger.warning(f"Kong swap {quote.input_token} -> {quote.output_token} rejected: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))
        except Exception as e:
            logger.error(f"Kong swap {quote.input_token} -> {quote.output_token} failed: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))

        await self._handle_claims(reply.claim_ids, reporter)
        tx_id = str(reply.tx_id)
        logger.info(f"Kong swap complete: {quote.effective_input_amount} -> {reply.receive_amount} (tx {tx_id})")
        await reporter.complete("Swap complete", tx_id=tx_id)
        return SwapResult(success=True, amount_out=reply.receive_amount, tx_id=tx_id)

    async def _execute_icrc2(
        self, quote: SwapQuote, args: RoutedSwapArgs, reporter: ProgressReporter
    ) -> SwapReply:
        info_in = await self.resolver.get_token_info(quote.input_token)

        await reporter.step(SwapStep.CHECKING_ALLOWANCE, "Checking token approval", 0)
        allowance = await self.resolver.check_allowance(quote.input_token, self.owner, self.canister_id)

        needed = args.pay_amount + info_in.fee
        current = allowance.allowance
        if allowance.expires_at is not None and allowance.expires_at <= time.time_ns():
            current = 0

        if current < needed:
            await reporter.step(SwapStep.APPROVING, "Approving token spend", 1)
            await self.resolver.approve(quote.input_token, self.canister_id, needed)

        await reporter.step(SwapStep.SWAPPING, "Executing swap on KongSwap", 2)
        return await self._routed_swap(args)

    async def _execute_icrc1(
        self, quote: SwapQuote, args: RoutedSwapArgs, reporter: ProgressReporter
    ) -> SwapReply:
        await reporter.step(SwapStep.TRANSFERRING, "Transferring tokens to KongSwap", 0)
        block = await self.resolver.transfer(quote.input_token, self.canister_id, args.pay_amount)

        record = PendingTransferRecord(
            key=f"{self.id}:{quote.input_token}:{uuid.uuid4().hex[:12]}",
            tx_ref=block,
            dex_id=self.id,
            input_token=quote.input_token,
            output_token=quote.output_token,
            amount=args.pay_amount,
        )
        await self.pending.add(record)

        await reporter.step(SwapStep.SWAPPING, "Executing swap on KongSwap", 1)
        args.pay_tx_id = block
        reply = await self._routed_swap(args)
        await self.pending.remove(record.key)
        return reply

    async def _routed_swap(self, args: RoutedSwapArgs) -> SwapReply:
        """Submit the swap; a rejection raises SwapFailed."""
        try:
            return await self.backend.swap(args)
        except BackendError as e:
            raise SwapFailed(f"Kong rejected swap: {e.detail}", dex_id=self.id) from e

    async def _claim(self, claim_id: int) -> None:
        try:
            await self.backend.claim(claim_id)
        except Exception as e:
            raise ClaimFailed(f"Kong claim {claim_id} failed: {e}", dex_id=self.id) from e

    async def _handle_claims(self, claim_ids: list[int], reporter: ProgressReporter) -> None:
        """Claim proceeds Kong could not send. Failures are kept for retry."""
        for claim_id in claim_ids:
            await reporter.step(SwapStep.CLAIMING, f"Claiming proceeds ({claim_id})", reporter.step_index)
            try:
                await self._claim(claim_id)
            except ClaimFailed as e:
                logger.warning(f"{e}, keeping for retry")
                try:
                    await self.claims.add(claim_id)
                except Exception as store_err:
                    # The swap already settled; the claim id is only in this log line now
                    logger.error(f"Could not record Kong claim {claim_id} for retry: {store_err}")

    async def get_unclaimed_ids(self) -> list[int]:
        return await self.claims.all()

    async def retry_claim(self, claim_id: int) -> bool:
        """Retry an outstanding claim. Returns True once it succeeds."""
        try:
            await self._claim(claim_id)
        except ClaimFailed as e:
            logger.warning(f"Retry failed: {e}")
            return False
        await self.claims.remove(claim_id)
        logger.info(f"Kong claim {claim_id} settled")
        return True

    async def pending_transfers(self) -> list[PendingTransferRecord]:
        return await self.pending.all(dex_id=self.id)

    async def resume_pending_swap(
        self, key: str, on_progress: Optional[ProgressCallback] = None
    ) -> SwapResult:
        """
        Finish a swap whose transfer to Kong went through.

        The swap is replayed with the recorded block index and without
        receive_amount or max_slippage, so price movement since the crash
        cannot strand the transferred funds.
        """
        record = await self.pending.get(key)
        if record is None or record.dex_id != self.id:
            raise PendingTransferNotFound(f"No pending transfer {key}", dex_id=self.id)

        reporter = ProgressReporter(on_progress, 1)
        try:
            await reporter.step(SwapStep.SWAPPING, "Resuming swap on KongSwap", 0)
            reply = await self._routed_swap(
                RoutedSwapArgs(
                    pay_token=record.input_token,
                    pay_amount=record.amount,
                    receive_token=record.output_token,
                    pay_tx_id=record.tx_ref,
                )
            )
        except Exception as e:
            logger.error(f"Kong resume of {key} failed: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))

        await self.pending.remove(key)
        await self._handle_claims(reply.claim_ids, reporter)
        tx_id = str(reply.tx_id)
        logger.info(f"Resumed Kong swap {key}: received {reply.receive_amount} (tx {tx_id})")
        await reporter.complete("Swap complete", tx_id=tx_id)
        return SwapResult(success=True, amount_out=reply.receive_amount, tx_id=tx_id)
