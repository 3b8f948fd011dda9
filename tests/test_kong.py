"""Tests for the KongSwap adapter."""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import CKUSDC, ICP, KONG_CANISTER, OWNER, SNEED
from swapagg.backends.base import RoutedPool, RoutedSwapBackend, SwapAmountsReply, SwapAmountsTx
from swapagg.backends.dry_run import SimulatedToken
from swapagg.errors import (
    AmountTooSmall,
    BackendError,
    ClaimFailed,
    NoPoolForPair,
    PendingTransferNotFound,
    QuoteFailed,
    SwapFailed,
)
from swapagg.routing.base import SwapStep, TokenStandard
from swapagg.routing.kong import KongDex
from swapagg.storage.base import MemoryStore


@pytest.fixture
def mock_routed_backend() -> AsyncMock:
    backend = AsyncMock(spec=RoutedSwapBackend)
    backend.pools.return_value = [RoutedPool(ICP, CKUSDC, price=5.0, lp_fee_bps=30)]
    backend.swap_amounts.return_value = SwapAmountsReply(
        receive_amount=4_900_000,
        mid_price=5.0,
        slippage=1.9,
        txs=[SwapAmountsTx(ICP, 999_990_000, CKUSDC, 4_900_000, lp_fee=2_999_970)],
    )
    return backend


class TestKongQuote:
    """Tests for KongDex.get_quote."""

    def test_fee_counts(self, kong):
        """icrc1 costs one transfer, icrc2 approve + pull; output is free."""
        assert kong.get_input_fee_count(TokenStandard.ICRC1) == 1
        assert kong.get_input_fee_count(TokenStandard.ICRC2) == 2
        assert kong.get_output_fee_count(TokenStandard.ICRC1) == 0
        assert kong.get_output_fee_count(TokenStandard.ICRC2) == 0

    @pytest.mark.asyncio
    async def test_reported_slippage_used_as_impact(self, mock_routed_backend, resolver):
        """Kong's own slippage percent becomes price_impact."""
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER)

        quote = await dex.get_quote(ICP, CKUSDC, 10**9, TokenStandard.ICRC1)

        assert quote.effective_input_amount == 10**9 - 10_000
        assert quote.expected_output == 4_900_000
        assert quote.price_impact == pytest.approx(0.019)
        assert quote.dex_fee_percent == pytest.approx(0.003)
        assert quote.spot_price == 5.0
        mock_routed_backend.swap_amounts.assert_awaited_with(ICP, 10**9 - 10_000, CKUSDC)

    @pytest.mark.asyncio
    async def test_fee_from_txs_without_pool(self, mock_routed_backend, resolver):
        """Without a direct pool the LP fee comes from the tx breakdown."""
        mock_routed_backend.pools.return_value = []
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER)

        quote = await dex.get_quote(ICP, CKUSDC, 10**9, TokenStandard.ICRC1)

        assert quote.dex_fee_percent == pytest.approx(2_999_970 / 999_990_000)

    @pytest.mark.asyncio
    async def test_single_hop_route_fallback(self, mock_routed_backend, resolver):
        """A reply with no txs still yields one route step."""
        mock_routed_backend.swap_amounts.return_value = SwapAmountsReply(receive_amount=4_900_000)
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER)

        quote = await dex.get_quote(ICP, CKUSDC, 10**9, TokenStandard.ICRC1)

        assert len(quote.route) == 1
        assert quote.route[0].amount_in == quote.effective_input_amount

    @pytest.mark.asyncio
    async def test_amount_too_small(self, kong):
        with pytest.raises(AmountTooSmall):
            await kong.get_quote(ICP, CKUSDC, 20_000, TokenStandard.ICRC2)

    @pytest.mark.asyncio
    async def test_rejection_maps_to_quote_failed(self, mock_routed_backend, resolver):
        mock_routed_backend.swap_amounts.side_effect = BackendError("swap_amounts", "canister stopped")
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER)

        with pytest.raises(QuoteFailed) as exc_info:
            await dex.get_quote(ICP, CKUSDC, 10**9, TokenStandard.ICRC1)

        assert exc_info.value.dex_id == "kong"

    @pytest.mark.asyncio
    async def test_two_hop_route(self, kong):
        """SNEED -> ckUSDC is routed through ICP."""
        quote = await kong.get_quote(SNEED, CKUSDC, 100 * 10**8, TokenStandard.ICRC1)

        assert quote.is_routed
        assert [s.input_token for s in quote.route] == [SNEED, ICP]
        assert quote.route[0].amount_out == quote.route[1].amount_in
        assert quote.expected_output == quote.route[-1].amount_out

    @pytest.mark.asyncio
    async def test_no_route(self, kong, ledger):
        """A token Kong cannot reach raises NoPoolForPair."""
        ledger.add_token(SimulatedToken("orphan-ledger", "ORPH"))
        with pytest.raises(NoPoolForPair):
            await kong.get_quote("orphan-ledger", CKUSDC, 10**8, TokenStandard.ICRC1)


class TestKongDiscovery:
    """Tests for pair discovery and the pools cache."""

    @pytest.mark.asyncio
    async def test_has_pair_direct_and_routed(self, kong):
        assert await kong.has_pair(ICP, CKUSDC) is True
        assert await kong.has_pair(SNEED, CKUSDC) is True  # via one-unit quote
        assert await kong.has_pair(SNEED, "orphan-ledger") is False

    @pytest.mark.asyncio
    async def test_pairs_for_token(self, kong):
        pairs = await kong.get_pairs_for_token(ICP)

        assert {p["output_token"] for p in pairs} == {CKUSDC, SNEED}
        assert all(p["pool_id"] == KONG_CANISTER for p in pairs)

    @pytest.mark.asyncio
    async def test_pools_cached_with_ttl(self, mock_routed_backend, resolver):
        """The pools list is fetched once within the TTL and persisted."""
        store = MemoryStore()
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER, store=store)

        await dex.get_pairs_for_token(ICP)
        await dex.get_pairs_for_token(CKUSDC)
        assert mock_routed_backend.pools.await_count == 1
        assert (await store.get("kong_pools"))["pools"][0]["address_0"] == ICP

        # A second adapter on the same store reuses the persisted list
        other = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER, store=store)
        await other.get_pairs_for_token(ICP)
        assert mock_routed_backend.pools.await_count == 1

    @pytest.mark.asyncio
    async def test_pools_refetched_after_ttl(self, mock_routed_backend, resolver):
        dex = KongDex(mock_routed_backend, resolver, owner=OWNER, canister_id=KONG_CANISTER, pools_ttl=0)

        await dex.get_pairs_for_token(ICP)
        await dex.get_pairs_for_token(ICP)

        assert mock_routed_backend.pools.await_count == 2

    @pytest.mark.asyncio
    async def test_spot_price_from_pool(self, kong):
        price = await kong.get_spot_price(ICP, CKUSDC)
        inverse = await kong.get_spot_price(CKUSDC, ICP)

        assert price == pytest.approx(5.025)
        assert inverse == pytest.approx(1 / 5.025)


class TestKongExecute:
    """Tests for KongDex.execute_swap on the simulated DEX."""

    @pytest.mark.asyncio
    async def test_icrc2_swap(self, kong, ledger, progress_log):
        before = ledger.balance_of(CKUSDC, OWNER)
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC2)

        result = await kong.execute_swap(quote, on_progress=progress_log.append)

        assert result.success is True
        assert result.tx_id == "1"
        assert result.amount_out == quote.expected_output
        assert ledger.balance_of(CKUSDC, OWNER) - before == result.amount_out
        assert [p.step for p in progress_log] == [
            SwapStep.CHECKING_ALLOWANCE,
            SwapStep.APPROVING,
            SwapStep.SWAPPING,
            SwapStep.COMPLETE,
        ]
        assert progress_log[-1].tx_id == "1"

    @pytest.mark.asyncio
    async def test_icrc1_swap_uses_block_index(self, kong, routed_dex, progress_log):
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC1)

        result = await kong.execute_swap(quote, on_progress=progress_log.append)

        assert result.success is True
        assert len(routed_dex.consumed_blocks) == 1
        assert [p.step for p in progress_log] == [SwapStep.TRANSFERRING, SwapStep.SWAPPING, SwapStep.COMPLETE]
        assert await kong.pending_transfers() == []

    @pytest.mark.asyncio
    async def test_stale_quote_uses_fresh_minimum(self, kong, routed_dex):
        """The swap floor is recomputed from a fresh quote, not the stale one."""
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC2)

        with patch.object(routed_dex, "swap", wraps=routed_dex.swap) as swap:
            await kong.execute_swap(quote, slippage=0.02)

        args = swap.await_args.args[0]
        assert args.receive_amount == quote.expected_output - -(-quote.expected_output * 2 // 100)
        assert args.max_slippage == pytest.approx((quote.price_impact + quote.dex_fee_percent + 0.02) * 100)

    @pytest.mark.asyncio
    async def test_swap_failure_keeps_pending_record(self, kong, routed_dex, progress_log):
        """A rejected icrc1 swap reports FAILED and keeps the transfer for recovery."""
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC1)

        with patch.object(routed_dex, "swap", AsyncMock(side_effect=BackendError("swap", "Slippage exceeded"))):
            result = await kong.execute_swap(quote, on_progress=progress_log.append)

        assert result.success is False
        assert result.amount_out == 0
        assert result.error.startswith("[kong] Kong rejected swap")
        assert "Slippage exceeded" in result.error
        assert progress_log[-1].step == SwapStep.FAILED
        assert len(await kong.pending_transfers()) == 1

    @pytest.mark.asyncio
    async def test_interrupted_transfer_then_resume(self, kong, routed_dex, ledger):
        """Resume replays the swap with the recorded block index."""
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC1)
        before = ledger.balance_of(CKUSDC, OWNER)

        with patch.object(routed_dex, "swap", AsyncMock(side_effect=ConnectionError("connection reset"))):
            await kong.execute_swap(quote)

        (record,) = await kong.pending_transfers()
        assert record.dex_id == "kong"

        with patch.object(routed_dex, "swap", wraps=routed_dex.swap) as swap:
            result = await kong.resume_pending_swap(record.key)

        args = swap.await_args.args[0]
        assert args.pay_tx_id == record.tx_ref
        assert args.receive_amount is None
        assert args.max_slippage is None
        assert result.success is True
        assert ledger.balance_of(CKUSDC, OWNER) - before == result.amount_out
        assert await kong.pending_transfers() == []

    @pytest.mark.asyncio
    async def test_resume_unknown_key(self, kong):
        with pytest.raises(PendingTransferNotFound):
            await kong.resume_pending_swap("kong:missing")


class TestKongClaims:
    """Tests for the claim fallback when Kong cannot send proceeds."""

    @pytest.mark.asyncio
    async def test_claims_processed_after_swap(self, kong, routed_dex, ledger, progress_log):
        routed_dex.defer_delivery = True
        before = ledger.balance_of(CKUSDC, OWNER)
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC2)

        result = await kong.execute_swap(quote, on_progress=progress_log.append)

        assert result.success is True
        assert SwapStep.CLAIMING in [p.step for p in progress_log]
        assert ledger.balance_of(CKUSDC, OWNER) - before == result.amount_out
        assert await kong.get_unclaimed_ids() == []

    @pytest.mark.asyncio
    async def test_failed_claim_cached_and_retried(self, kong, routed_dex):
        """A failing claim does not fail the swap and can be retried later."""
        routed_dex.defer_delivery = True
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC2)

        with patch.object(routed_dex, "claim", AsyncMock(side_effect=BackendError("claim", "busy"))):
            result = await kong.execute_swap(quote)

        assert result.success is True
        assert await kong.get_unclaimed_ids() == [1]

        assert await kong.retry_claim(1) is True
        assert await kong.get_unclaimed_ids() == []

    @pytest.mark.asyncio
    async def test_retry_claim_failure(self, kong):
        """Retrying an unknown claim reports False."""
        assert await kong.retry_claim(99) is False

    @pytest.mark.asyncio
    async def test_unrecorded_claim_does_not_fail_swap(self, kong, routed_dex):
        """A settled swap stays successful when the failed claim cannot be stored."""
        routed_dex.defer_delivery = True
        quote = await kong.get_quote(ICP, CKUSDC, 10 * 10**8, TokenStandard.ICRC2)

        store_error = AsyncMock(side_effect=RuntimeError("database is locked"))
        with patch.object(routed_dex, "claim", AsyncMock(side_effect=BackendError("claim", "busy"))):
            with patch.object(kong.claims, "add", store_error):
                result = await kong.execute_swap(quote)

        assert result.success is True
        assert result.tx_id is not None

    @pytest.mark.asyncio
    async def test_claim_failure_is_typed(self, kong, routed_dex):
        with patch.object(routed_dex, "claim", AsyncMock(side_effect=ConnectionError("reset"))):
            with pytest.raises(ClaimFailed, match=r"^\[kong\] Kong claim 7 failed"):
                await kong._claim(7)

    @pytest.mark.asyncio
    async def test_swap_rejection_is_typed(self, kong, routed_dex):
        with patch.object(routed_dex, "swap", AsyncMock(side_effect=BackendError("swap", "Slippage exceeded"))):
            with pytest.raises(SwapFailed, match="Slippage exceeded"):
                await kong._routed_swap(None)
