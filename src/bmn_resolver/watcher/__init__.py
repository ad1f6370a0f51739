"""Chain event watching for both swap chains."""

from bmn_resolver.watcher.chain import ChainWatcher, WatcherState
from bmn_resolver.watcher.client import (
    ChainClient,
    ChainClientError,
    JsonRpcChainClient,
    LogSubscription,
    SimulatedChainClient,
)
from bmn_resolver.watcher.events import (
    EVENT_SPECS,
    ChainEvent,
    DestinationEscrowCreated,
    EscrowWithdrawn,
    Event,
    EventDecodeError,
    LogFilter,
    OrderFilled,
    PostInteractionExecuted,
    PostInteractionFailed,
    SourceEscrowCreated,
    build_filters,
    build_raw_log,
    decode_log,
)
from bmn_resolver.watcher.factory import create_watcher, get_chain_client

__all__ = [
    "ChainWatcher",
    "WatcherState",
    "ChainClient",
    "ChainClientError",
    "JsonRpcChainClient",
    "LogSubscription",
    "SimulatedChainClient",
    "EVENT_SPECS",
    "ChainEvent",
    "DestinationEscrowCreated",
    "EscrowWithdrawn",
    "Event",
    "EventDecodeError",
    "LogFilter",
    "OrderFilled",
    "PostInteractionExecuted",
    "PostInteractionFailed",
    "SourceEscrowCreated",
    "build_filters",
    "build_raw_log",
    "decode_log",
    "create_watcher",
    "get_chain_client",
]
