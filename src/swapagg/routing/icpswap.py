"""ICPSwap adapter: a factory canister plus one canister per pool.

Input reaches the pool either by a direct transfer into the caller's pool
subaccount followed by ``depositAndSwap`` (icrc1), or by an approval that the
pool pulls in ``depositFromAndSwap`` (icrc2). Proceeds are withdrawn to the
caller inside the same call, which costs one output-token fee.
"""

import asyncio
import logging
import time
import uuid
from typing import Optional

from swapagg.backends.base import PoolBackend, PoolRecord, PoolSwapArgs
from swapagg.errors import (
    AmountTooSmall,
    BackendError,
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
from swapagg.storage.pending import PendingTransactionCache, PendingTransferRecord
from swapagg.utils.ic import is_zero_for_one, pair_key, principal_to_subaccount

logger = logging.getLogger(__name__)

POOL_PREFIX = "icpswap_pool:"
Q96 = 2**96


class ICPSwapDex(DexAdapter):
    """Adapter for ICPSwap's constant-fee-tier pools."""

    def __init__(
        self,
        backend: PoolBackend,
        resolver: TokenStandardResolver,
        owner: str,
        store: Optional[KeyValueStore] = None,
        fee_tier: int = 3000,
    ):
        self.backend = backend
        self.resolver = resolver
        self.owner = owner
        self.store = store or MemoryStore()
        self.fee_tier = fee_tier
        self.pending = PendingTransactionCache(self.store)
        self._pool_ids: dict[str, str] = {}
        self._pools: Optional[list[PoolRecord]] = None

    @property
    def id(self) -> str:
        return "icpswap"

    @property
    def name(self) -> str:
        return "ICPSwap"

    @property
    def supported_standards(self) -> tuple[TokenStandard, ...]:
        return (TokenStandard.ICRC1, TokenStandard.ICRC2)

    @property
    def dex_fee_percent(self) -> float:
        return self.fee_tier / 1_000_000

    async def _get_pool_id(self, token_a: str, token_b: str) -> Optional[str]:
        key = pair_key(token_a, token_b)
        cached = self._pool_ids.get(key)
        if cached:
            return cached

        stored = await self.store.get(POOL_PREFIX + key)
        if stored:
            self._pool_ids[key] = stored
            return stored

        token0, token1 = sorted((token_a, token_b), key=str.lower)
        pool_id = await self.backend.get_pool(token0, token1, self.fee_tier)
        if pool_id:
            self._pool_ids[key] = pool_id
            await self.store.set(POOL_PREFIX + key, pool_id)
            logger.debug(f"ICPSwap pool for {key}: {pool_id}")
        return pool_id

    async def _require_pool(self, token_a: str, token_b: str) -> str:
        pool_id = await self._get_pool_id(token_a, token_b)
        if not pool_id:
            raise NoPoolForPair(f"No ICPSwap pool for {token_a}/{token_b}", dex_id=self.id)
        return pool_id

    async def load_all_pools(self) -> int:
        """Preload every pool of the configured fee tier from the factory."""
        pools = [p for p in await self.backend.get_pools() if p.fee == self.fee_tier]
        for pool in pools:
            key = pair_key(pool.token0, pool.token1)
            self._pool_ids[key] = pool.canister_id
            await self.store.set(POOL_PREFIX + key, pool.canister_id)
        self._pools = pools
        logger.info(f"Loaded {len(pools)} ICPSwap pools")
        return len(pools)

    async def has_pair(self, token_a: str, token_b: str) -> bool:
        try:
            return bool(await self._get_pool_id(token_a, token_b))
        except BackendError as e:
            logger.debug(f"ICPSwap pool lookup failed for {token_a}/{token_b}: {e}")
            return False

    async def get_pairs_for_token(self, token: str) -> list[dict]:
        if self._pools is None:
            await self.load_all_pools()

        wanted = token.lower()
        pairs = []
        for pool in self._pools:
            if pool.token0.lower() == wanted:
                pairs.append({"input_token": pool.token0, "output_token": pool.token1, "pool_id": pool.canister_id})
            elif pool.token1.lower() == wanted:
                pairs.append({"input_token": pool.token1, "output_token": pool.token0, "pool_id": pool.canister_id})
        return pairs

    async def get_spot_price(self, token_in: str, token_out: str) -> float:
        pool_id = await self._require_pool(token_in, token_out)
        metadata, info_in, info_out = await asyncio.gather(
            self.backend.metadata(pool_id),
            self.resolver.get_token_info(token_in),
            self.resolver.get_token_info(token_out),
        )
        # sqrtPriceX96 encodes sqrt(token1 / token0) in raw units
        price = (metadata.sqrt_price_x96 / Q96) ** 2
        if token_in.lower() != metadata.token0.lower():
            price = 1 / price if price > 0 else 0.0
        return price * 10 ** (info_in.decimals - info_out.decimals)

    def get_input_fee_count(self, standard: TokenStandard) -> int:
        # icrc1: transfer to subaccount + deposit; icrc2: approve + transferFrom
        return 2

    def get_output_fee_count(self, standard: TokenStandard) -> int:
        # withdraw
        return 1

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

        pool_id = await self._require_pool(input_token, output_token)
        zero_for_one = is_zero_for_one(input_token, output_token)
        try:
            raw_output = await self.backend.quote(pool_id, effective_input, zero_for_one, 0)
        except BackendError as e:
            raise QuoteFailed(f"ICPSwap quote failed: {e.detail}", dex_id=self.id) from e

        expected_output = max(0, raw_output - output_fee_count * info_out.fee)

        try:
            spot_price = await self.get_spot_price(input_token, output_token)
        except BackendError as e:
            logger.debug(f"ICPSwap spot price unavailable for {pool_id}: {e}")
            spot_price = 0.0

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
            price_impact=market_price_impact(
                effective_input,
                raw_output,
                info_in.decimals,
                info_out.decimals,
                spot_price,
                self.dex_fee_percent,
            ),
            dex_fee_percent=self.dex_fee_percent,
            fee_breakdown=build_fee_breakdown(
                input_fee_count,
                info_in.fee,
                output_fee_count,
                info_out.fee,
                dex_trading_fee=effective_input * self.fee_tier // 1_000_000,
            ),
            standard=standard,
            route=(RouteStep(self.id, pool_id, input_token, output_token, effective_input, raw_output),),
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
            info_in, info_out = await asyncio.gather(
                self.resolver.get_token_info(quote.input_token),
                self.resolver.get_token_info(quote.output_token),
            )
            pool_id = quote.route[0].pool_id if quote.route else await self._require_pool(
                quote.input_token, quote.output_token
            )
            zero_for_one = is_zero_for_one(quote.input_token, quote.output_token)
            effective_input = quote.effective_input_amount

            # Fresh bound from the live pool, never the quote's
            fresh_output = await self.backend.quote(pool_id, effective_input, zero_for_one, 0)
            fresh_net = max(0, fresh_output - self.get_output_fee_count(quote.standard) * info_out.fee)
            args = PoolSwapArgs(
                amount_in=effective_input,
                zero_for_one=zero_for_one,
                amount_out_minimum=apply_slippage(fresh_net, slippage),
                token_in_fee=info_in.fee,
                token_out_fee=info_out.fee,
            )

            if quote.standard == TokenStandard.ICRC2:
                amount_out = await self._execute_icrc2(quote, pool_id, args, info_in.fee, reporter)
            else:
                amount_out = await self._execute_icrc1(quote, pool_id, args, reporter)
        except SwapFailed as e:
            logger.warning(f"ICPSwap swap {quote.input_token} -> {quote.output_token} rejected: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))
        except Exception as e:
            logger.error(f"ICPSwap swap {quote.input_token} -> {quote.output_token} failed: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))

        logger.info(f"ICPSwap swap complete: {quote.effective_input_amount} -> {amount_out}")
        await reporter.complete("Swap complete")
        return SwapResult(success=True, amount_out=amount_out)

    async def _execute_icrc2(
        self, quote: SwapQuote, pool_id: str, args: PoolSwapArgs, input_fee: int, reporter: ProgressReporter
    ) -> int:
        await reporter.step(SwapStep.CHECKING_ALLOWANCE, "Checking token approval", 0)
        allowance = await self.resolver.check_allowance(quote.input_token, self.owner, pool_id)

        # The pool pulls effective input and pays one fee for the transferFrom
        needed = args.amount_in + input_fee
        current = allowance.allowance
        if allowance.expires_at is not None and allowance.expires_at <= time.time_ns():
            current = 0

        if current < needed:
            await reporter.step(SwapStep.APPROVING, "Approving token spend", 1)
            await self.resolver.approve(quote.input_token, pool_id, needed)

        await reporter.step(SwapStep.SWAPPING, "Executing swap", 2)
        return await self._pool_swap(pool_id, args, pull=True)

    async def _execute_icrc1(
        self, quote: SwapQuote, pool_id: str, args: PoolSwapArgs, reporter: ProgressReporter
    ) -> int:
        await reporter.step(SwapStep.TRANSFERRING, "Transferring tokens to ICPSwap pool", 0)
        subaccount = principal_to_subaccount(self.owner)
        block = await self.resolver.transfer(quote.input_token, pool_id, args.amount_in, subaccount)

        record = PendingTransferRecord(
            key=f"{self.id}:{quote.input_token}:{uuid.uuid4().hex[:12]}",
            tx_ref=block,
            dex_id=self.id,
            input_token=quote.input_token,
            output_token=quote.output_token,
            amount=args.amount_in,
            pool_id=pool_id,
        )
        await self.pending.add(record)

        await reporter.step(SwapStep.SWAPPING, "Executing swap", 1)
        amount_out = await self._pool_swap(pool_id, args, pull=False)
        await self.pending.remove(record.key)
        return amount_out

    async def _pool_swap(self, pool_id: str, args: PoolSwapArgs, pull: bool) -> int:
        """Deposit+swap+withdraw in one pool call; a rejection raises SwapFailed."""
        call = self.backend.deposit_from_and_swap if pull else self.backend.deposit_and_swap
        try:
            return await call(pool_id, args)
        except BackendError as e:
            raise SwapFailed(f"ICPSwap rejected swap: {e.detail}", dex_id=self.id) from e

    async def pending_transfers(self) -> list[PendingTransferRecord]:
        return await self.pending.all(dex_id=self.id)

    async def resume_pending_swap(
        self, key: str, on_progress: Optional[ProgressCallback] = None
    ) -> SwapResult:
        """
        Finish a swap whose subaccount transfer went through.

        The deposit is replayed with no output floor: the funds are already
        in the pool subaccount, and a rejected swap would strand them.
        """
        record = await self.pending.get(key)
        if record is None or record.dex_id != self.id:
            raise PendingTransferNotFound(f"No pending transfer {key}", dex_id=self.id)

        reporter = ProgressReporter(on_progress, 1)
        try:
            info_in, info_out = await asyncio.gather(
                self.resolver.get_token_info(record.input_token),
                self.resolver.get_token_info(record.output_token),
            )
            pool_id = record.pool_id or await self._require_pool(record.input_token, record.output_token)
            args = PoolSwapArgs(
                amount_in=record.amount,
                zero_for_one=is_zero_for_one(record.input_token, record.output_token),
                amount_out_minimum=0,
                token_in_fee=info_in.fee,
                token_out_fee=info_out.fee,
            )
            await reporter.step(SwapStep.SWAPPING, "Resuming swap", 0)
            amount_out = await self._pool_swap(pool_id, args, pull=False)
        except Exception as e:
            logger.error(f"ICPSwap resume of {key} failed: {e}")
            await reporter.fail(str(e))
            return SwapResult(success=False, amount_out=0, error=str(e))

        await self.pending.remove(key)
        logger.info(f"Resumed ICPSwap swap {key}: received {amount_out}")
        await reporter.complete("Swap complete")
        return SwapResult(success=True, amount_out=amount_out)

    async def legacy_deposit(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        """Credit a prior subaccount transfer to the caller's pool balance."""
        return await self.backend.deposit(pool_id, token, amount, fee)

    async def legacy_swap(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int
    ) -> int:
        """Swap against the caller's deposited pool balance."""
        return await self.backend.swap(pool_id, amount_in, zero_for_one, amount_out_minimum)

    async def legacy_withdraw(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        return await self.backend.withdraw(pool_id, token, amount, fee)
