"""Application configuration using pydantic-settings.

Covers the two monitored chains (source and destination), the Bridge-Me-Not
contract addresses and the timing knobs of the watcher and scan loops.
"""

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
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/bmn_resolver.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    log_level: str = Field(default="INFO", description="Log level when debug is off")
    dry_run: bool = Field(
        default=True, description="Use simulated chains and a dry-run transaction submitter"
    )

    # ======================
    # Chains
    # ======================
    src_chain_id: int = Field(default=8453, description="Source chain id (Base)")
    dst_chain_id: int = Field(default=10, description="Destination chain id (Optimism)")
    base_rpc_url: str = Field(
        default="https://erpc.up.railway.app/main/evm/8453", description="Base RPC URL"
    )
    optimism_rpc_url: str = Field(
        default="https://erpc.up.railway.app/main/evm/10", description="Optimism RPC URL"
    )
    ankr_api_key: Optional[str] = Field(
        default=None, description="Ankr API key (overrides the public RPC URLs)"
    )

    # ======================
    # Contracts
    # ======================
    escrow_factory_address: str = Field(
        default="0xdebE6F4bC7BaAD2266603Ba7AfEB3BB6dDA9FE0A",
        description="SimplifiedEscrowFactory (same address on both chains)",
    )
    limit_order_protocol_base: str = Field(
        default="0xe767105dcfB3034a346578afd2aFD8e583171489",
        description="Limit order protocol on Base",
    )
    limit_order_protocol_optimism: str = Field(
        default="0xe767105dcfB3034a346578afd2aFD8e583171489",
        description="Limit order protocol on Optimism",
    )

    # ======================
    # Watcher
    # ======================
    catchup_blocks: int = Field(
        default=100, description="Blocks re-scanned on startup to close restart gaps"
    )
    subscription_poll_interval: float = Field(
        default=2.0, description="Seconds between eth_getFilterChanges calls"
    )
    rpc_timeout_seconds: float = Field(default=30.0, description="RPC request timeout")

    # ======================
    # Coordination
    # ======================
    scan_interval_seconds: float = Field(
        default=5.0, description="Seconds between next-action scans"
    )
    swap_timeout_seconds: int = Field(
        default=3600, description="Age after which an unfinished swap expires"
    )
    retention_days: int = Field(
        default=7, description="Days completed swaps are kept before cleanup"
    )
    cleanup_interval_seconds: int = Field(
        default=3600, description="Seconds between completed-swap cleanups"
    )
    lock_timeout_seconds: float = Field(
        default=30.0, description="Maximum wait for a per-swap lock"
    )

    # ======================
    # Retry / backoff
    # ======================
    retry_base_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    retry_max_delay: float = Field(default=60.0, description="Backoff ceiling in seconds")
    retry_max_attempts: int = Field(
        default=5, description="Attempts for bounded retries (catch-up, store conflicts)"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, chain_id: int) -> str:
        """Get RPC URL for a chain id."""
        if self.ankr_api_key:
            ankr_names = {8453: "base", 10: "optimism"}
            if chain_id in ankr_names:
                return f"https://rpc.ankr.com/{ankr_names[chain_id]}/{self.ankr_api_key}"

        rpc_map = {
            8453: self.base_rpc_url,
            10: self.optimism_rpc_url,
        }
        return rpc_map.get(chain_id, "")

    def get_limit_order_protocol(self, chain_id: int) -> str:
        """Get the limit order protocol address for a chain id."""
        lop_map = {
            8453: self.limit_order_protocol_base,
            10: self.limit_order_protocol_optimism,
        }
        return lop_map.get(chain_id, "")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "log_level": self.log_level,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "chains": {
                str(self.src_chain_id): {"role": "source", "rpc": self._redact_rpc(self.src_chain_id)},
                str(self.dst_chain_id): {"role": "destination", "rpc": self._redact_rpc(self.dst_chain_id)},
            },
            "contracts": {
                "escrow_factory": self.escrow_factory_address,
                "limit_order_protocol_base": self.limit_order_protocol_base,
                "limit_order_protocol_optimism": self.limit_order_protocol_optimism,
            },
            "timing": {
                "catchup_blocks": self.catchup_blocks,
                "scan_interval_seconds": self.scan_interval_seconds,
                "swap_timeout_seconds": self.swap_timeout_seconds,
                "retention_days": self.retention_days,
            },
        }

    def _redact_rpc(self, chain_id: int) -> str:
        url = self.get_rpc_url(chain_id)
        if self.ankr_api_key and self.ankr_api_key in url:
            return url.replace(self.ankr_api_key, "***")
        return url

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
