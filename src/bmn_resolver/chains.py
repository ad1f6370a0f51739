"""Chain configuration for the two monitored networks.

Bridge-Me-Not runs between Base and Optimism. The escrow factory is deployed
at the same CREATE3 address on both chains; the limit order protocol may
differ per chain.
"""

from dataclasses import dataclass
from typing import Optional

from bmn_resolver.config import Settings

CHAIN_NAMES: dict[int, str] = {
    8453: "Base",
    10: "Optimism",
}


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for one monitored chain."""

    chain_id: int
    name: str
    rpc_url: str
    escrow_factory: str
    limit_order_protocol: str
    is_source: bool = False


def build_chain_configs(settings: Settings) -> dict[int, ChainConfig]:
    """Build the source and destination chain configs from settings."""
    configs = {}
    for chain_id, is_source in (
        (settings.src_chain_id, True),
        (settings.dst_chain_id, False),
    ):
        configs[chain_id] = ChainConfig(
            chain_id=chain_id,
            name=CHAIN_NAMES.get(chain_id, f"chain-{chain_id}"),
            rpc_url=settings.get_rpc_url(chain_id),
            escrow_factory=settings.escrow_factory_address,
            limit_order_protocol=settings.get_limit_order_protocol(chain_id),
            is_source=is_source,
        )
    return configs


def counterpart_chain(configs: dict[int, ChainConfig], chain_id: int) -> Optional[int]:
    """Return the other monitored chain id, or None if chain_id is not monitored."""
    if chain_id not in configs:
        return None
    for other in configs:
        if other != chain_id:
            return other
    return None
