"""Factory for creating DEX adapters and a wired aggregator.

Creates gateway-backed adapters when dry-run is off, otherwise falls back to
simulated backends seeded with a small market.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from swapagg.backends.base import LedgerBackend, PoolBackend, RoutedSwapBackend
from swapagg.config import Settings, get_settings
from swapagg.routing.aggregator import DexAggregator
from swapagg.routing.base import DexAdapter
from swapagg.routing.icpswap import ICPSwapDex
from swapagg.routing.kong import KongDex
from swapagg.routing.token_standard import TokenStandardResolver
from swapagg.storage.base import KeyValueStore, MemoryStore
from swapagg.storage.sql import SqlStore

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    """The three backend contracts an aggregator needs."""

    ledger: LedgerBackend
    pools: PoolBackend
    routed: RoutedSwapBackend
    owner: str


def create_backends(settings: Optional[Settings] = None) -> Backends:
    """Create gateway backends, or seeded simulated ones in dry-run mode."""
    settings = settings or get_settings()

    if not settings.dry_run:
        if not settings.owner_principal:
            logger.warning("OWNER_PRINCIPAL is not set; falling back to simulated backends")
        else:
            from swapagg.backends.gateway import (
                GatewayClient,
                GatewayLedgerBackend,
                GatewayPoolBackend,
                GatewayRoutedSwapBackend,
            )

            client = GatewayClient(settings.gateway_url, timeout=settings.gateway_timeout)
            return Backends(
                ledger=GatewayLedgerBackend(client),
                pools=GatewayPoolBackend(client, settings.icpswap_factory_canister),
                routed=GatewayRoutedSwapBackend(client, settings.kong_swap_canister),
                owner=settings.owner_principal,
            )

    # Fallback to simulated
    from swapagg.backends.dry_run import (
        ANONYMOUS_PRINCIPAL,
        SimulatedLedger,
        SimulatedPoolDex,
        SimulatedRoutedDex,
        seed_default_market,
    )

    ledger = SimulatedLedger(owner=settings.owner_principal or ANONYMOUS_PRINCIPAL)
    pools = SimulatedPoolDex(ledger)
    routed = SimulatedRoutedDex(ledger, canister_id=settings.kong_swap_canister)
    seed_default_market(ledger, pools, routed)
    logger.info("Using simulated DEX backends (dry run)")
    return Backends(ledger=ledger, pools=pools, routed=routed, owner=ledger.owner)


def create_store(settings: Optional[Settings] = None) -> KeyValueStore:
    """Durable SQL store in production, in-memory store in dry-run mode."""
    settings = settings or get_settings()
    if settings.dry_run:
        return MemoryStore()
    return SqlStore(settings.cache_database_url, echo=False)


def create_icpswap_dex(
    backends: Backends,
    resolver: TokenStandardResolver,
    store: KeyValueStore,
    settings: Optional[Settings] = None,
) -> ICPSwapDex:
    settings = settings or get_settings()
    return ICPSwapDex(
        backends.pools,
        resolver,
        owner=backends.owner,
        store=store,
        fee_tier=settings.icpswap_fee_tier,
    )


def create_kong_dex(
    backends: Backends,
    resolver: TokenStandardResolver,
    store: KeyValueStore,
    settings: Optional[Settings] = None,
) -> KongDex:
    settings = settings or get_settings()
    return KongDex(
        backends.routed,
        resolver,
        owner=backends.owner,
        canister_id=settings.kong_swap_canister,
        store=store,
        pools_ttl=settings.kong_pools_ttl_seconds,
    )


ADAPTER_FACTORIES = {
    "icpswap": create_icpswap_dex,
    "kong": create_kong_dex,
}


def create_aggregator(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    backends: Optional[Backends] = None,
) -> DexAggregator:
    """Create an aggregator with every DEX named in ``enabled_dexes``.

    Args:
        settings: Settings to use (defaults to get_settings())
        store: Cache store shared by the resolver and adapters
        backends: Pre-built backends, e.g. simulated ones in tests
    """
    settings = settings or get_settings()
    store = store or create_store(settings)
    backends = backends or create_backends(settings)

    resolver = TokenStandardResolver(backends.ledger, store)
    aggregator = DexAggregator(
        resolver,
        default_slippage=settings.default_slippage,
        max_split_iterations=settings.split_max_iterations,
    )

    for dex_id in settings.dex_ids:
        factory = ADAPTER_FACTORIES.get(dex_id)
        if factory is None:
            logger.warning(f"Unknown DEX in enabled_dexes: {dex_id}")
            continue
        adapter: DexAdapter = factory(backends, resolver, store, settings)
        aggregator.register_dex(adapter)

    logger.info(f"Created aggregator with {len(aggregator.get_supported_dexes())} DEX(es)")
    return aggregator
