"""Simulated backends for dry-run mode and tests.

Provides an in-process ICRC ledger, a constant-product pool DEX shaped like
ICPSwap (factory + per-pool canisters, subaccount deposits) and a routed DEX
shaped like KongSwap (single canister, direct or two-hop routes, block-index
payments, claims). Swaps move real simulated balances, so fee accounting and
crash recovery can be exercised end to end without a network.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

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
from swapagg.utils.ic import pair_key, principal_to_subaccount

logger = logging.getLogger(__name__)

# Anonymous principal, used when no owner is configured
ANONYMOUS_PRINCIPAL = "2vxsx-fae"

# Well-known ledgers used to seed the default dry-run market
ICP_LEDGER = "ryjl3-tyaaa-aaaaa-aaaba-cai"
CKBTC_LEDGER = "mxzaz-hqaaa-aaaar-qaada-cai"
CKUSDC_LEDGER = "xevnm-gaaaa-aaaar-qafnq-cai"
SNEED_LEDGER = "hvgxa-wqaaa-aaaaq-aacia-cai"


@dataclass
class SimulatedToken:
    """Ledger configuration for a simulated token."""

    ledger_id: str
    symbol: str
    decimals: int = 8
    fee: int = 10_000
    standards: tuple[str, ...] = ("ICRC-1", "ICRC-2")
    logo: Optional[str] = None


@dataclass
class Block:
    """A ledger block recorded by the simulated ledger."""

    index: int
    ledger_id: str
    kind: str  # "transfer", "approve", "transfer_from"
    from_account: str
    to_account: str
    amount: int


class SimulatedLedger(LedgerBackend):
    """In-memory ICRC-1/ICRC-2 ledger shared by every simulated token.

    Calls through the LedgerBackend interface act on behalf of ``owner``;
    the simulated DEXes use ``move`` and ``transfer_from`` to act as canisters.
    """

    def __init__(self, owner: str = ANONYMOUS_PRINCIPAL):
        self.owner = owner
        self.tokens: dict[str, SimulatedToken] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}
        self.blocks: list[Block] = []

    @staticmethod
    def account(owner: str, subaccount: Optional[bytes] = None) -> str:
        """Flatten (owner, subaccount) into a balance key."""
        if not subaccount or not any(subaccount):
            return owner
        return f"{owner}.{subaccount.hex()}"

    def add_token(self, token: SimulatedToken) -> SimulatedToken:
        self.tokens[token.ledger_id] = token
        return token

    def mint(self, ledger_id: str, account: str, amount: int) -> None:
        self._token(ledger_id, "mint")
        key = (ledger_id, account)
        self.balances[key] = self.balances.get(key, 0) + amount

    def balance_of(self, ledger_id: str, account: str) -> int:
        return self.balances.get((ledger_id, account), 0)

    def find_block(self, index: int) -> Optional[Block]:
        if 0 <= index < len(self.blocks):
            return self.blocks[index]
        return None

    def _token(self, ledger_id: str, method: str) -> SimulatedToken:
        token = self.tokens.get(ledger_id)
        if token is None:
            raise BackendError(method, f"unknown ledger {ledger_id}")
        return token

    def _append_block(self, ledger_id: str, kind: str, src: str, dst: str, amount: int) -> int:
        block = Block(len(self.blocks), ledger_id, kind, src, dst, amount)
        self.blocks.append(block)
        return block.index

    def move(self, ledger_id: str, src: str, dst: str, amount: int, method: str = "transfer") -> int:
        """Move amount from src to dst, charging the ledger fee to src."""
        token = self._token(ledger_id, method)
        debit = amount + token.fee
        available = self.balance_of(ledger_id, src)
        if available < debit:
            raise BackendError(
                method, {"InsufficientFunds": {"balance": available, "needed": debit}}
            )
        self.balances[(ledger_id, src)] = available - debit
        self.balances[(ledger_id, dst)] = self.balance_of(ledger_id, dst) + amount
        return self._append_block(ledger_id, "transfer", src, dst, amount)

    def transfer_from(self, ledger_id: str, spender: str, owner: str, dst: str, amount: int) -> int:
        """ICRC-2 pull by spender; consumes amount + fee of allowance."""
        token = self._token(ledger_id, "icrc2_transfer_from")
        key = (ledger_id, owner, spender)
        allowed = self.allowances.get(key, 0)
        if allowed < amount + token.fee:
            raise BackendError(
                "icrc2_transfer_from", {"InsufficientAllowance": {"allowance": allowed}}
            )
        index = self.move(ledger_id, owner, dst, amount, method="icrc2_transfer_from")
        self.allowances[key] = allowed - amount - token.fee
        self.blocks[index].kind = "transfer_from"
        return index

    async def metadata(self, ledger_id: str) -> list[tuple[str, Any]]:
        token = self._token(ledger_id, "icrc1_metadata")
        meta: list[tuple[str, Any]] = [
            ("icrc1:symbol", {"Text": token.symbol}),
            ("icrc1:name", {"Text": token.symbol}),
            ("icrc1:decimals", {"Nat": token.decimals}),
            ("icrc1:fee", {"Nat": token.fee}),
        ]
        if token.logo:
            meta.append(("icrc1:logo", {"Text": token.logo}))
        return meta

    async def supported_standards(self, ledger_id: str) -> list[dict]:
        token = self._token(ledger_id, "icrc1_supported_standards")
        return [{"name": name, "url": "https://github.com/dfinity/ICRC-1"} for name in token.standards]

    async def fee(self, ledger_id: str) -> int:
        return self._token(ledger_id, "icrc1_fee").fee

    async def allowance(self, ledger_id: str, owner: str, spender: str) -> Allowance:
        self._token(ledger_id, "icrc2_allowance")
        return Allowance(allowance=self.allowances.get((ledger_id, owner, spender), 0))

    async def approve(self, ledger_id: str, spender: str, amount: int) -> int:
        token = self._token(ledger_id, "icrc2_approve")
        if "ICRC-2" not in token.standards:
            raise BackendError("icrc2_approve", "ledger does not support ICRC-2")
        available = self.balance_of(ledger_id, self.owner)
        if available < token.fee:
            raise BackendError("icrc2_approve", {"InsufficientFunds": {"balance": available}})
        self.balances[(ledger_id, self.owner)] = available - token.fee
        self.allowances[(ledger_id, self.owner, spender)] = amount
        return self._append_block(ledger_id, "approve", self.owner, spender, amount)

    async def transfer(
        self,
        ledger_id: str,
        to: str,
        amount: int,
        subaccount: Optional[bytes] = None,
    ) -> int:
        return self.move(ledger_id, self.owner, self.account(to, subaccount), amount, "icrc1_transfer")


@dataclass
class SimulatedPool:
    """Constant-product pool with a ppm fee, sorted token0 < token1."""

    canister_id: str
    token0: str
    token1: str
    reserve0: int
    reserve1: int
    fee: int = 3000  # ppm

    def amount_out(self, amount_in: int, zero_for_one: bool) -> int:
        if amount_in <= 0:
            return 0
        in_after_fee = amount_in * (1_000_000 - self.fee) // 1_000_000
        r_in, r_out = (self.reserve0, self.reserve1) if zero_for_one else (self.reserve1, self.reserve0)
        return r_out * in_after_fee // (r_in + in_after_fee)

    def apply(self, amount_in: int, amount_out: int, zero_for_one: bool) -> None:
        if zero_for_one:
            self.reserve0 += amount_in
            self.reserve1 -= amount_out
        else:
            self.reserve1 += amount_in
            self.reserve0 -= amount_out

    @property
    def sqrt_price_x96(self) -> int:
        return math.isqrt((self.reserve1 << 192) // self.reserve0)


class SimulatedPoolDex(PoolBackend):
    """ICPSwap-style factory and pools over a SimulatedLedger."""

    def __init__(self, ledger: SimulatedLedger):
        self.ledger = ledger
        self.pools: dict[str, SimulatedPool] = {}
        self._by_pair: dict[tuple[str, int], str] = {}
        # Legacy flow: per-user balances held inside each pool
        self.internal: dict[tuple[str, str, str], int] = {}

    def add_pool(
        self,
        token_a: str,
        token_b: str,
        reserve_a: int,
        reserve_b: int,
        fee: int = 3000,
        canister_id: Optional[str] = None,
    ) -> str:
        """Create a pool and fund its ledger accounts with the reserves."""
        canister_id = canister_id or f"icpswap-pool-{len(self.pools) + 1}"
        if token_a.lower() < token_b.lower():
            pool = SimulatedPool(canister_id, token_a, token_b, reserve_a, reserve_b, fee)
        else:
            pool = SimulatedPool(canister_id, token_b, token_a, reserve_b, reserve_a, fee)
        self.pools[canister_id] = pool
        self._by_pair[(pair_key(token_a, token_b), fee)] = canister_id
        self.ledger.mint(pool.token0, canister_id, pool.reserve0)
        self.ledger.mint(pool.token1, canister_id, pool.reserve1)
        return canister_id

    def _pool(self, pool_id: str, method: str) -> SimulatedPool:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise BackendError(method, f"unknown pool {pool_id}")
        return pool

    def _swap_and_withdraw(
        self, pool: SimulatedPool, amount_in: int, zero_for_one: bool, minimum: int, method: str
    ) -> int:
        amount_out = pool.amount_out(amount_in, zero_for_one)
        if amount_out < minimum:
            raise BackendError(method, f"Slippage: {amount_out} < minimum {minimum}")
        pool.apply(amount_in, amount_out, zero_for_one)
        token_out = pool.token1 if zero_for_one else pool.token0
        fee = self.ledger.tokens[token_out].fee
        self.ledger.move(token_out, pool.canister_id, self.ledger.owner, amount_out - fee, method)
        return amount_out

    async def get_pool(self, token0: str, token1: str, fee: int) -> Optional[str]:
        return self._by_pair.get((pair_key(token0, token1), fee))

    async def get_pools(self) -> list[PoolRecord]:
        return [
            PoolRecord(token0=p.token0, token1=p.token1, canister_id=p.canister_id, fee=p.fee)
            for p in self.pools.values()
        ]

    async def metadata(self, pool_id: str) -> PoolMetadata:
        pool = self._pool(pool_id, "metadata")
        return PoolMetadata(
            token0=pool.token0, token1=pool.token1, sqrt_price_x96=pool.sqrt_price_x96, fee=pool.fee
        )

    async def quote(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int = 0
    ) -> int:
        return self._pool(pool_id, "quote").amount_out(amount_in, zero_for_one)

    async def deposit_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        pool = self._pool(pool_id, "depositAndSwap")
        token_in = pool.token0 if args.zero_for_one else pool.token1
        subaccount = principal_to_subaccount(self.ledger.owner)
        source = self.ledger.account(pool_id, subaccount)
        deposited = self.ledger.balance_of(token_in, source)
        if deposited < args.amount_in:
            raise BackendError(
                "depositAndSwap", f"Insufficient deposit: {deposited} < {args.amount_in}"
            )
        self.ledger.balances[(token_in, source)] = deposited - args.amount_in
        self.ledger.mint(token_in, pool_id, args.amount_in)
        return self._swap_and_withdraw(
            pool, args.amount_in, args.zero_for_one, args.amount_out_minimum, "depositAndSwap"
        )

    async def deposit_from_and_swap(self, pool_id: str, args: PoolSwapArgs) -> int:
        pool = self._pool(pool_id, "depositFromAndSwap")
        token_in = pool.token0 if args.zero_for_one else pool.token1
        self.ledger.transfer_from(token_in, pool_id, self.ledger.owner, pool_id, args.amount_in)
        return self._swap_and_withdraw(
            pool, args.amount_in, args.zero_for_one, args.amount_out_minimum, "depositFromAndSwap"
        )

    async def deposit(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        self._pool(pool_id, "deposit")
        source = self.ledger.account(pool_id, principal_to_subaccount(self.ledger.owner))
        self.ledger.move(token, source, pool_id, amount - fee, "deposit")
        key = (pool_id, token, self.ledger.owner)
        self.internal[key] = self.internal.get(key, 0) + amount - fee
        return amount - fee

    async def swap(
        self, pool_id: str, amount_in: int, zero_for_one: bool, amount_out_minimum: int
    ) -> int:
        pool = self._pool(pool_id, "swap")
        token_in = pool.token0 if zero_for_one else pool.token1
        token_out = pool.token1 if zero_for_one else pool.token0
        key_in = (pool_id, token_in, self.ledger.owner)
        if self.internal.get(key_in, 0) < amount_in:
            raise BackendError("swap", "Insufficient internal balance")
        amount_out = pool.amount_out(amount_in, zero_for_one)
        if amount_out < amount_out_minimum:
            raise BackendError("swap", f"Slippage: {amount_out} < minimum {amount_out_minimum}")
        pool.apply(amount_in, amount_out, zero_for_one)
        self.internal[key_in] -= amount_in
        key_out = (pool_id, token_out, self.ledger.owner)
        self.internal[key_out] = self.internal.get(key_out, 0) + amount_out
        return amount_out

    async def withdraw(self, pool_id: str, token: str, amount: int, fee: int) -> int:
        self._pool(pool_id, "withdraw")
        key = (pool_id, token, self.ledger.owner)
        if self.internal.get(key, 0) < amount:
            raise BackendError("withdraw", "Insufficient internal balance")
        self.internal[key] -= amount
        self.ledger.move(token, pool_id, self.ledger.owner, amount - fee, "withdraw")
        return amount - fee


@dataclass
class SimulatedRoutedPool:
    """Constant-product pool inside the routed DEX, fee in basis points."""

    token0: str
    token1: str
    reserve0: int
    reserve1: int
    lp_fee_bps: int = 30

    def hop(self, pay_token: str, amount: int) -> tuple[int, int]:
        """Return (amount_out, lp_fee) for paying amount of pay_token."""
        forward = pay_token.lower() == self.token0.lower()
        r_in, r_out = (self.reserve0, self.reserve1) if forward else (self.reserve1, self.reserve0)
        lp_fee = amount * self.lp_fee_bps // 10_000
        net = amount - lp_fee
        return r_out * net // (r_in + net), lp_fee

    def apply(self, pay_token: str, amount_in: int, amount_out: int) -> None:
        if pay_token.lower() == self.token0.lower():
            self.reserve0 += amount_in
            self.reserve1 -= amount_out
        else:
            self.reserve1 += amount_in
            self.reserve0 -= amount_out


class SimulatedRoutedDex(RoutedSwapBackend):
    """KongSwap-style routed DEX over a SimulatedLedger."""

    def __init__(self, ledger: SimulatedLedger, canister_id: str = "kong-swap"):
        self.ledger = ledger
        self.canister_id = canister_id
        self._pools: list[SimulatedRoutedPool] = []
        self.consumed_blocks: set[int] = set()
        self.pending_claims: dict[int, tuple[str, int]] = {}
        # When True, proceeds are parked as claims instead of sent directly
        self.defer_delivery = False
        self._next_tx_id = 1
        self._next_claim_id = 1

    def add_pool(
        self, token_a: str, token_b: str, reserve_a: int, reserve_b: int, lp_fee_bps: int = 30
    ) -> SimulatedRoutedPool:
        pool = SimulatedRoutedPool(token_a, token_b, reserve_a, reserve_b, lp_fee_bps)
        self._pools.append(pool)
        self.ledger.mint(token_a, self.canister_id, reserve_a)
        self.ledger.mint(token_b, self.canister_id, reserve_b)
        return pool

    def _find(self, token_a: str, token_b: str) -> Optional[SimulatedRoutedPool]:
        key = pair_key(token_a, token_b)
        for pool in self._pools:
            if pair_key(pool.token0, pool.token1) == key:
                return pool
        return None

    def _path(self, pay_token: str, receive_token: str) -> list[str]:
        if self._find(pay_token, receive_token):
            return [pay_token, receive_token]
        for pool in self._pools:
            for hub in (pool.token0, pool.token1):
                if hub in (pay_token, receive_token):
                    continue
                if self._find(pay_token, hub) and self._find(hub, receive_token):
                    return [pay_token, hub, receive_token]
        raise BackendError("swap_amounts", f"No route for {pay_token} -> {receive_token}")

    def _human_price(self, pool: SimulatedRoutedPool, pay_token: str) -> float:
        dec0 = self.ledger.tokens[pool.token0].decimals
        dec1 = self.ledger.tokens[pool.token1].decimals
        price = (pool.reserve1 / 10**dec1) / (pool.reserve0 / 10**dec0)
        return price if pay_token.lower() == pool.token0.lower() else 1 / price

    def _simulate(self, pay_token: str, pay_amount: int, receive_token: str) -> SwapAmountsReply:
        path = self._path(pay_token, receive_token)
        txs: list[SwapAmountsTx] = []
        amount = pay_amount
        mid_price = 1.0
        for src, dst in zip(path, path[1:]):
            pool = self._find(src, dst)
            out, lp_fee = pool.hop(src, amount)
            mid_price *= self._human_price(pool, src)
            txs.append(SwapAmountsTx(src, amount, dst, out, lp_fee))
            amount = out

        pay_dec = self.ledger.tokens[pay_token].decimals
        recv_dec = self.ledger.tokens[receive_token].decimals
        actual = (amount / 10**recv_dec) / (pay_amount / 10**pay_dec) if pay_amount else 0.0
        slippage = max(0.0, (1 - actual / mid_price) * 100) if mid_price > 0 else 0.0
        return SwapAmountsReply(
            receive_amount=amount, mid_price=mid_price, slippage=round(slippage, 4), txs=txs
        )

    def _deliver(self, token: str, amount: int) -> None:
        fee = self.ledger.tokens[token].fee
        self.ledger.mint(token, self.canister_id, fee)  # canister absorbs the outbound fee
        self.ledger.move(token, self.canister_id, self.ledger.owner, amount, "swap")

    async def swap_amounts(
        self, pay_token: str, pay_amount: int, receive_token: str
    ) -> SwapAmountsReply:
        if pay_amount <= 0:
            raise BackendError("swap_amounts", "Pay amount is zero")
        return self._simulate(pay_token, pay_amount, receive_token)

    async def swap(self, args: RoutedSwapArgs) -> SwapReply:
        if args.pay_tx_id is not None:
            block = self.ledger.find_block(args.pay_tx_id)
            if (
                block is None
                or block.ledger_id != args.pay_token
                or block.to_account != self.canister_id
                or block.amount < args.pay_amount
            ):
                raise BackendError("swap", f"Invalid pay_tx_id {args.pay_tx_id}")
            if args.pay_tx_id in self.consumed_blocks:
                raise BackendError("swap", f"pay_tx_id {args.pay_tx_id} already used")
            self.consumed_blocks.add(args.pay_tx_id)
        else:
            self.ledger.transfer_from(
                args.pay_token, self.canister_id, self.ledger.owner, self.canister_id, args.pay_amount
            )

        reply = self._simulate(args.pay_token, args.pay_amount, args.receive_token)
        if args.receive_amount is not None and reply.receive_amount < args.receive_amount:
            raise BackendError(
                "swap", f"Receive amount {reply.receive_amount} below minimum {args.receive_amount}"
            )
        if args.max_slippage is not None and reply.slippage > args.max_slippage:
            raise BackendError(
                "swap", f"Slippage {reply.slippage}% exceeds max {args.max_slippage}%"
            )

        for tx in reply.txs:
            self._find(tx.pay_address, tx.receive_address).apply(
                tx.pay_address, tx.pay_amount, tx.receive_amount
            )

        tx_id = self._next_tx_id
        self._next_tx_id += 1

        claim_ids: list[int] = []
        if self.defer_delivery:
            claim_id = self._next_claim_id
            self._next_claim_id += 1
            self.pending_claims[claim_id] = (args.receive_token, reply.receive_amount)
            claim_ids.append(claim_id)
        else:
            self._deliver(args.receive_token, reply.receive_amount)

        return SwapReply(receive_amount=reply.receive_amount, tx_id=tx_id, claim_ids=claim_ids)

    async def claim(self, claim_id: int) -> None:
        entry = self.pending_claims.pop(claim_id, None)
        if entry is None:
            raise BackendError("claim", f"Unknown claim {claim_id}")
        self._deliver(*entry)

    async def pools(self) -> list[RoutedPool]:
        result = []
        for pool in self._pools:
            t0 = self.ledger.tokens[pool.token0]
            t1 = self.ledger.tokens[pool.token1]
            result.append(
                RoutedPool(
                    address_0=pool.token0,
                    address_1=pool.token1,
                    price=self._human_price(pool, pool.token0),
                    lp_fee_bps=pool.lp_fee_bps,
                    symbol=f"{t0.symbol}_{t1.symbol}",
                )
            )
        return result


def seed_default_market(
    ledger: SimulatedLedger,
    pool_dex: SimulatedPoolDex,
    routed_dex: SimulatedRoutedDex,
) -> None:
    """Populate a small dry-run market with realistic depth differences."""
    ledger.add_token(SimulatedToken(ICP_LEDGER, "ICP", decimals=8, fee=10_000))
    ledger.add_token(SimulatedToken(CKBTC_LEDGER, "ckBTC", decimals=8, fee=10))
    ledger.add_token(SimulatedToken(CKUSDC_LEDGER, "ckUSDC", decimals=6, fee=10_000))
    ledger.add_token(SimulatedToken(SNEED_LEDGER, "SNEED", decimals=8, fee=1_000, standards=("ICRC-1",)))

    # ICPSwap: deep ICP/ckUSDC, shallow SNEED/ICP
    pool_dex.add_pool(ICP_LEDGER, CKUSDC_LEDGER, 2_000_000 * 10**8, 10_000_000 * 10**6)
    pool_dex.add_pool(ICP_LEDGER, CKBTC_LEDGER, 500_000 * 10**8, 25 * 10**8)
    pool_dex.add_pool(SNEED_LEDGER, ICP_LEDGER, 40_000 * 10**8, 20_000 * 10**8)

    # KongSwap: everything quoted against ckUSDC, SNEED reachable by two hops
    routed_dex.add_pool(ICP_LEDGER, CKUSDC_LEDGER, 800_000 * 10**8, 4_020_000 * 10**6)
    routed_dex.add_pool(CKBTC_LEDGER, CKUSDC_LEDGER, 40 * 10**8, 4_000_000 * 10**6)
    routed_dex.add_pool(SNEED_LEDGER, ICP_LEDGER, 10_000 * 10**8, 5_100 * 10**8)

    for token in ledger.tokens.values():
        ledger.mint(token.ledger_id, ledger.owner, 1_000 * 10**token.decimals)
    logger.debug(f"Seeded dry-run market with {len(ledger.tokens)} tokens")
