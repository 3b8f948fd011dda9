"""HTTP JSON gateway backends.

Canister calls are posted to a JSON gateway that performs the actual IC
agent call (signing, Candid encoding) and relays the reply:

    POST {gateway_url}/call
    {"canister_id": "...", "method": "icrc1_fee", "args": {...}}

Replies are the canister's Result variant as JSON: ``{"ok": ...}`` /
``{"Ok": ...}`` on success and ``{"err": ...}`` / ``{"Err": ...}`` on failure.
"""

import logging
from typing import Any, Optional

import httpx

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
from swapagg.errors import BackendError

logger = logging.getLogger(__name__)


def _opt(value: Any) -> list:
    """Encode a Candid ``opt`` as an empty or single-element list."""
    return [] if value is None else [value]


def _unopt(value: Any) -> Any:
    """Decode a Candid ``opt`` that may arrive as a list or a bare value."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _principal_text(value: Any) -> str:
    if isinstance(value, dict):
        return value.get("__principal__") or value.get("text") or ""
    return str(value)


class GatewayClient:
    """Minimal async client for the canister JSON gateway."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def call(self, canister_id: str, method: str, args: Any = None) -> Any:
        """Call a canister method and unwrap its Result variant."""
        client = await self._get_client()
        payload = {"canister_id": canister_id, "method": method, "args": args or {}}

        try:
            response = await client.post(f"{self.base_url}/call", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Gateway call {canister_id}.{method} failed: {e}")
            raise BackendError(method, f"{type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise BackendError(method, f"HTTP {response.status_code}: {response.text[:200]}")

        data = response.json()
        if isinstance(data, dict):
            for key in ("err", "Err"):
                if key in data:
                    raise BackendError(method, data[key])
            for key in ("ok", "Ok"):
                if key in data:
                    return data[key]
        return data

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class GatewayLedgerBackend(LedgerBackend):
    """ICRC ledgers reached through the gateway."""

    def __init__(self, client: GatewayClient):
        self.client = client

    async def metadata(self, ledger_id: str) -> list[tuple[str, Any]]:
        raw = await self.client.call(ledger_id, "icrc1_metadata")
        return [(k, v) for k, v in raw]

    async def supported_standards(self, ledger_id: str) -> list[dict]:
        return await self.client.call(ledger_id, "icrc1_supported_standards")

    async def fee(self, ledger_id: str) -> int:
        return int(await self.client.call(ledger_id, "icrc1_fee"))

    async def allowance(self, ledger_id: str, owner: str, spender: str) -> Allowance:
        raw = await self.client.call(
            ledger_id,
            "icrc2_allowance",
            {
                "account": {"owner": owner, "subaccount": []},
                "spender": {"owner": spender, "subaccount": []},
            },
        )
        expires_at = _unopt(raw.get("expires_at"))
        return Allowance(
            allowance=int(raw["allowance"]),
            expires_at=int(expires_at) if expires_at is not None else None,
        )

    async def approve(self, ledger_id: str, spender: str, amount: int) -> int:
        result = await self.client.call(
            ledger_id,
            "icrc2_approve",
            {
                "spender": {"owner": spender, "subaccount": []},
                "amount": amount,
                "fee": [],
                "memo": [],
                "from_subaccount": [],
                "created_at_time": [],
                "expected_allowance": [],
                "expires_at": [],
            },
        )
        return int(result)

    async def transfer(
        self,
        ledger_id: str,
        to: str,
        amount: int,
        subaccount: Optional[bytes] = None,
    ) -> int:
        result = await self.client.call(
            ledger_id,
            "icrc1_transfer",
            {
                "to": {
                    "owner": to,
                    "subaccount": _opt(subaccount.hex() if subaccount else None),
                },
                "amount": amount,
                "fee": [],
                "memo": [],
                "from_subaccount": [],
                "created_at_time": [],
            },
        )
        return int(result)


class GatewayPoolBackend(PoolBackend):
    """ICPSwap factory and pool canisters reached through the gateway."""

    def __init__(self, client: GatewayClient, factory_canister: str):
        self.client = client
        self.factory_canister = factory_canister

    async def get_pool(self, token0: str, token1: str, fee: int) -> Optional[str]:
        try:
            pool = await self.client.call(
                self.factory_canister,
                "getPool",
                {
                    "token0": {"address": token0, "standard": "ICRC1"},
                    "token1": {"address": token1, "standard": "ICRC1"},
                    "fee": fee,
                },
            )
        except BackendError as e:
            # The factory answers err for unknown pairs
            logger.debug(f"ICPSwap getPool({token0}, {token1}) -> {e.detail}")
            return None
        if not pool:
            return None
        return _principal_text(pool["canisterId"])

    async def get_pools(self) -> list[PoolRecord]:
        raw = await self.client.call(self.factory_canister, "getPools")
        return [
            PoolRecord(
                token0=p["token0"]["address"],
                token1=p["token1"]["address"],
                canister_id=_principal_text(p["canisterId"]),
                fee=int(p.get("fee", 3000)),
            )
            for p in raw
        ]

    async def metadata(self, pool_id: str) -> PoolMetadata:
        raw = await self.client.call(pool_id, "metadata")
        return PoolMetadata(
            token0=raw["token0"]["address"],
            token1=raw["token1"]["address"],
            sqrt_price_x96=int(raw["sqrtPriceX96"]),
            fee=int(raw.get("fee", 3000)),
        )

    async def quote(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int = 0
    ) -> int:
        result = await self.client.call(
            pool_id,
            "quote",
            {
                "amountIn": str(amount_in),
                "zeroForOne": zero_for_one,
                "amountOutMinimum": str(amount_out_minimum),
            },
        )
        return int(result)

    @staticmethod
    def _swap_args(args: PoolSwapArgs) -> dict:
        return {
            "amountIn": str(args.amount_in),
            "zeroForOne": args.zero_for_one,
            "amountOutMinimum": str(args.amount_out_minimum),
            "tokenInFee": args.token_in_fee,
            "tokenOutFee": args.token_out_fee,
        }

    async def deposit_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        return int(await self.client.call(pool_id, "depositAndSwap", self._swap_args(args)))

    async def deposit_from_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        return int(
            await self.client.call(pool_id, "depositFromAndSwap", self._swap_args(args))
        )

    async def deposit(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        result = await self.client.call(
            pool_id, "deposit", {"token": token, "amount": amount, "fee": fee}
        )
        return int(result)

    async def swap(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int
    ) -> int:
        result = await self.client.call(
            pool_id,
            "swap",
            {
                "amountIn": str(amount_in),
                "zeroForOne": zero_for_one,
                "amountOutMinimum": str(amount_out_minimum),
            },
        )
        return int(result)

    async def withdraw(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        result = await self.client.call(
            pool_id, "withdraw", {"token": token, "amount": amount, "fee": fee}
        )
        return int(result)


class GatewayRoutedSwapBackend(RoutedSwapBackend):
    """KongSwap canister reached through the gateway."""

    def __init__(self, client: GatewayClient, canister_id: str):
        self.client = client
        self.canister_id = canister_id

    async def swap_amounts(
        self, pay_token: str, pay_amount: int, receive_token: str
    ) -> SwapAmountsReply:
        raw = await self.client.call(
            self.canister_id,
            "swap_amounts",
            {"pay_token": pay_token, "pay_amount": pay_amount, "receive_token": receive_token},
        )
        txs = [
            SwapAmountsTx(
                pay_address=tx.get("pay_address", pay_token),
                pay_amount=int(tx.get("pay_amount", 0)),
                receive_address=tx.get("receive_address", receive_token),
                receive_amount=int(tx.get("receive_amount", 0)),
                lp_fee=int(tx.get("lp_fee", 0)),
            )
            for tx in raw.get("txs", [])
        ]
        return SwapAmountsReply(
            receive_amount=int(raw["receive_amount"]),
            mid_price=raw.get("mid_price"),
            slippage=raw.get("slippage"),
            txs=txs,
        )

    async def swap(self, args: RoutedSwapArgs) -> SwapReply:
        raw = await self.client.call(
            self.canister_id,
            "swap",
            {
                "pay_token": args.pay_token,
                "pay_amount": args.pay_amount,
                "receive_token": args.receive_token,
                "receive_amount": _opt(args.receive_amount),
                "receive_address": [],
                "pay_tx_id": _opt(
                    {"BlockIndex": args.pay_tx_id} if args.pay_tx_id is not None else None
                ),
                "max_slippage": _opt(args.max_slippage),
                "referred_by": [],
            },
        )
        return SwapReply(
            receive_amount=int(raw["receive_amount"]),
            tx_id=int(raw["tx_id"]),
            claim_ids=[int(c) for c in raw.get("claim_ids", [])],
        )

    async def claim(self, claim_id: int) -> None:
        await self.client.call(self.canister_id, "claim", {"claim_id": claim_id})

    async def pools(self) -> list[RoutedPool]:
        raw = await self.client.call(self.canister_id, "pools", {"symbol": []})
        return [
            RoutedPool(
                address_0=p.get("address_0", ""),
                address_1=p.get("address_1", ""),
                price=float(p.get("price", 0.0)),
                lp_fee_bps=int(p["lp_fee_bps"]) if p.get("lp_fee_bps") is not None else None,
                symbol=p.get("symbol", ""),
            )
            for p in raw
        ]
