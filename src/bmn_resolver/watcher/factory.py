"""Factory for creating chain clients and watchers."""

from bmn_resolver.chains import ChainConfig
from bmn_resolver.config import Settings
from bmn_resolver.utils.retry import RetryPolicy
from bmn_resolver.watcher.chain import ChainWatcher
from bmn_resolver.watcher.client import ChainClient, JsonRpcChainClient, SimulatedChainClient


def get_chain_client(chain: ChainConfig, settings: Settings) -> ChainClient:
    """Get an RPC client for a chain.

    Args:
        chain: Chain configuration
        settings: Application settings

    Returns:
        SimulatedChainClient in dry-run mode, JsonRpcChainClient otherwise
    """
    # In dry-run mode, use simulated chain
    if settings.dry_run:
        return SimulatedChainClient(chain.chain_id)

    return JsonRpcChainClient(
        chain.chain_id,
        chain.rpc_url,
        timeout=settings.rpc_timeout_seconds,
        poll_interval=settings.subscription_poll_interval,
    )


def create_watcher(chain: ChainConfig, client: ChainClient, settings: Settings) -> ChainWatcher:
    """Create a watcher with retry settings from configuration."""
    return ChainWatcher(
        chain,
        client,
        catchup_blocks=settings.catchup_blocks,
        retry=RetryPolicy.from_settings(settings),
    )
