"""Tests for the HTTP gateway backends using a mocked transport."""

import json

import httpx
import pytest

from conftest import CKUSDC, ICP, KONG_CANISTER
from swapagg.backends.base import PoolSwapArgs, RoutedSwapArgs
from swapagg.backends.gateway import (
    GatewayClient,
    GatewayLedgerBackend,
    GatewayPoolBackend,
    GatewayRoutedSwapBackend,
)
from swapagg.errors import BackendError


class FakeGateway:
    """Answers gateway calls from a (canister, method) -> reply table."""

    def __init__(self, replies: dict, status_code: int = 200):
        self.replies = replies
        self.status_code = status_code
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        reply = self.replies.get((body["canister_id"], body["method"]), {"err": "unknown method"})
        return httpx.Response(self.status_code, json=reply)

    def client(self) -> GatewayClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return GatewayClient("https://gateway.test/", client=http)


class TestGatewayClient:
    """Tests for GatewayClient.call."""

    @pytest.mark.asyncio
    async def test_unwraps_ok_variants(self):
        gateway = FakeGateway({("c", "a"): {"ok": 1}, ("c", "b"): {"Ok": [2]}, ("c", "raw"): 3})
        client = gateway.client()

        assert await client.call("c", "a") == 1
        assert await client.call("c", "b") == [2]
        assert await client.call("c", "raw") == 3
        assert gateway.requests[0] == {"canister_id": "c", "method": "a", "args": {}}

    @pytest.mark.asyncio
    async def test_err_variant_raises(self):
        client = FakeGateway({("c", "m"): {"Err": {"InsufficientFunds": {"balance": 0}}}}).client()

        with pytest.raises(BackendError) as exc_info:
            await client.call("c", "m")

        assert exc_info.value.method == "m"
        assert exc_info.value.detail == {"InsufficientFunds": {"balance": 0}}

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = FakeGateway({("c", "m"): {"ok": 1}}, status_code=500).client()

        with pytest.raises(BackendError, match="HTTP 500"):
            await client.call("c", "m")

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        client = GatewayClient("https://gateway.test", client=http)

        with pytest.raises(BackendError, match="ConnectError"):
            await client.call("c", "m")


class TestGatewayLedger:
    """Tests for GatewayLedgerBackend."""

    @pytest.mark.asyncio
    async def test_allowance_with_optional_expiry(self):
        gateway = FakeGateway(
            {(ICP, "icrc2_allowance"): {"allowance": "500", "expires_at": [1_700_000_000_000_000_000]}}
        )
        ledger = GatewayLedgerBackend(gateway.client())

        allowance = await ledger.allowance(ICP, "owner-principal", "pool-principal")

        assert allowance.allowance == 500
        assert allowance.expires_at == 1_700_000_000_000_000_000
        assert gateway.requests[0]["args"]["spender"] == {"owner": "pool-principal", "subaccount": []}

    @pytest.mark.asyncio
    async def test_allowance_without_expiry(self):
        gateway = FakeGateway({(ICP, "icrc2_allowance"): {"allowance": 0, "expires_at": []}})

        allowance = await GatewayLedgerBackend(gateway.client()).allowance(ICP, "o", "s")

        assert allowance.expires_at is None

    @pytest.mark.asyncio
    async def test_transfer_to_subaccount(self):
        gateway = FakeGateway({(ICP, "icrc1_transfer"): {"Ok": 42}})
        ledger = GatewayLedgerBackend(gateway.client())

        block = await ledger.transfer(ICP, "pool-principal", 1000, subaccount=bytes([1]) + bytes(31))

        assert block == 42
        to = gateway.requests[0]["args"]["to"]
        assert to["owner"] == "pool-principal"
        assert to["subaccount"] == ["01" + "00" * 31]

    @pytest.mark.asyncio
    async def test_metadata_pairs(self):
        gateway = FakeGateway({(ICP, "icrc1_metadata"): [["icrc1:symbol", {"Text": "ICP"}]]})

        metadata = await GatewayLedgerBackend(gateway.client()).metadata(ICP)

        assert metadata == [("icrc1:symbol", {"Text": "ICP"})]


class TestGatewayPool:
    """Tests for GatewayPoolBackend."""

    @pytest.mark.asyncio
    async def test_get_pool(self):
        gateway = FakeGateway(
            {("factory", "getPool"): {"ok": {"canisterId": {"__principal__": "pool-1"}}}}
        )
        backend = GatewayPoolBackend(gateway.client(), "factory")

        assert await backend.get_pool(CKUSDC, ICP, 3000) == "pool-1"
        assert gateway.requests[0]["args"]["token0"] == {"address": CKUSDC, "standard": "ICRC1"}

    @pytest.mark.asyncio
    async def test_get_pool_err_means_no_pool(self):
        gateway = FakeGateway({("factory", "getPool"): {"err": {"InternalError": "pool not found"}}})

        assert await GatewayPoolBackend(gateway.client(), "factory").get_pool(ICP, "x", 3000) is None

    @pytest.mark.asyncio
    async def test_amounts_sent_as_strings(self):
        gateway = FakeGateway({("pool-1", "depositFromAndSwap"): {"ok": "1975050"}})
        backend = GatewayPoolBackend(gateway.client(), "factory")
        args = PoolSwapArgs(
            amount_in=10**8, zero_for_one=True, amount_out_minimum=99, token_in_fee=10_000, token_out_fee=10
        )

        assert await backend.deposit_from_and_swap("pool-1", args) == 1_975_050
        sent = gateway.requests[0]["args"]
        assert sent["amountIn"] == "100000000"
        assert sent["amountOutMinimum"] == "99"
        assert sent["tokenInFee"] == 10_000


class TestGatewayRoutedSwap:
    """Tests for GatewayRoutedSwapBackend."""

    @pytest.mark.asyncio
    async def test_swap_amounts_parsing(self):
        gateway = FakeGateway(
            {
                (KONG_CANISTER, "swap_amounts"): {
                    "Ok": {
                        "receive_amount": "4900000",
                        "mid_price": 5.0,
                        "slippage": 1.9,
                        "txs": [
                            {
                                "pay_address": ICP,
                                "pay_amount": 10**8,
                                "receive_address": CKUSDC,
                                "receive_amount": 4_900_000,
                                "lp_fee": 300_000,
                            }
                        ],
                    }
                }
            }
        )
        backend = GatewayRoutedSwapBackend(gateway.client(), KONG_CANISTER)

        reply = await backend.swap_amounts(ICP, 10**8, CKUSDC)

        assert reply.receive_amount == 4_900_000
        assert reply.slippage == 1.9
        assert reply.txs[0].lp_fee == 300_000

    @pytest.mark.asyncio
    async def test_swap_encodes_optionals(self):
        gateway = FakeGateway(
            {(KONG_CANISTER, "swap"): {"Ok": {"receive_amount": 4_800_000, "tx_id": 7, "claim_ids": [3]}}}
        )
        backend = GatewayRoutedSwapBackend(gateway.client(), KONG_CANISTER)

        reply = await backend.swap(RoutedSwapArgs(ICP, 10**8, CKUSDC, pay_tx_id=12))

        sent = gateway.requests[0]["args"]
        assert sent["pay_tx_id"] == [{"BlockIndex": 12}]
        assert sent["receive_amount"] == []
        assert sent["max_slippage"] == []
        assert reply.tx_id == 7
        assert reply.claim_ids == [3]

    @pytest.mark.asyncio
    async def test_pools(self):
        gateway = FakeGateway(
            {
                (KONG_CANISTER, "pools"): {
                    "Ok": [{"address_0": ICP, "address_1": CKUSDC, "price": "5.02", "lp_fee_bps": 30}]
                }
            }
        )

        pools = await GatewayRoutedSwapBackend(gateway.client(), KONG_CANISTER).pools()

        assert pools[0].price == pytest.approx(5.02)
        assert pools[0].lp_fee_bps == 30
