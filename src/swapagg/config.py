"""Application configuration using pydantic-settings.

Every knob of the aggregator (backend endpoints, canister IDs, cache
location, quoting defaults) is read from environment variables or `.env`.
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug logging")
    dry_run: bool = Field(
        default=True, description="Use simulated backends instead of the IC gateway"
    )

    # ======================
    # IC Gateway
    # ======================
    gateway_url: str = Field(
        default="https://ic0.app", description="JSON gateway used to reach IC canisters"
    )
    gateway_timeout: float = Field(default=30.0, description="Gateway request timeout (seconds)")
    owner_principal: str = Field(
        default="", description="Principal of the identity that signs swaps"
    )

    # ======================
    # Local Cache
    # ======================
    cache_database_url: str = Field(
        default="sqlite+aiosqlite:///./data/swapagg.db",
        description="Database URL for the pool/token/pending-transfer caches",
    )

    # ======================
    # Quoting
    # ======================
    default_slippage: float = Field(
        default=0.01, description="Default slippage tolerance (1%)"
    )
    split_max_iterations: int = Field(
        default=10, description="Hard cap on ternary-search rounds for split orders"
    )
    enabled_dexes: str = Field(
        default="icpswap,kong", description="Comma-separated list of DEX adapters to register"
    )

    # ======================
    # ICPSwap
    # ======================
    icpswap_factory_canister: str = Field(
        default="4mmnk-kiaaa-aaaag-qbllq-cai", description="ICPSwap factory canister ID"
    )
    icpswap_fee_tier: int = Field(default=3000, description="ICPSwap pool fee tier (ppm)")

    # ======================
    # KongSwap
    # ======================
    kong_swap_canister: str = Field(
        default="2ipq2-uqaaa-aaaar-qailq-cai", description="KongSwap swap canister ID"
    )
    kong_pools_ttl_seconds: int = Field(
        default=300, description="How long the KongSwap pools list stays fresh"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def dex_ids(self) -> list[str]:
        """Parse enabled DEX IDs into a list."""
        return [d.strip().lower() for d in self.enabled_dexes.split(",") if d.strip()]

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "gateway_url": self.gateway_url,
            "owner_principal": self.owner_principal or "(not set)",
            "cache_database_url": self._redact_url(self.cache_database_url),
            "dex": {
                "enabled": self.dex_ids,
                "slippage": self.default_slippage,
                "split_max_iterations": self.split_max_iterations,
                "icpswap": {
                    "factory": self.icpswap_factory_canister,
                    "fee_tier": self.icpswap_fee_tier,
                },
                "kong": {
                    "canister": self.kong_swap_canister,
                    "pools_ttl_seconds": self.kong_pools_ttl_seconds,
                },
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging for processes embedding the aggregator."""
    settings = settings or get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
