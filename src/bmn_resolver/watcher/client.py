"""Chain clients: the RPC surface the watcher needs.

Implementations:
- JsonRpcChainClient: any EVM JSON-RPC endpoint over HTTP (httpx)
- SimulatedChainClient: in-memory chain for dry-run mode and tests
"""

import asyncio
import itertools
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from bmn_resolver.watcher.events import LogFilter, build_raw_log

logger = logging.getLogger(__name__)


class ChainClientError(Exception):
    """Transient RPC failure (network error, node error response)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class LogSubscription(ABC):
    """Live stream of raw logs matching one filter.

    Iterate with ``async for``; iteration ends after unsubscribe() and raises
    ChainClientError if the stream breaks.
    """

    def __aiter__(self) -> "LogSubscription":
        return self

    @abstractmethod
    async def __anext__(self) -> dict[str, Any]:
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Release the subscription. Safe to call more than once."""
        pass


class ChainClient(ABC):
    """Abstract RPC client for one chain."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id

    @abstractmethod
    async def get_block_number(self) -> int:
        """Get the latest block number."""
        pass

    @abstractmethod
    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        """Get logs matching a filter in an inclusive block range."""
        pass

    @abstractmethod
    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        """Open a live subscription for a filter."""
        pass

    async def close(self) -> None:
        """Release client resources."""
        pass


class PollingLogSubscription(LogSubscription):
    """Subscription built on eth_newFilter / eth_getFilterChanges."""

    def __init__(self, client: "JsonRpcChainClient", log_filter: LogFilter, poll_interval: float):
        self._client = client
        self._filter = log_filter
        self._poll_interval = poll_interval
        self._filter_id: Optional[str] = None
        self._buffer: list[dict[str, Any]] = []
        self._closed = False

    async def install(self) -> None:
        self._filter_id = await self._client.rpc("eth_newFilter", [self._filter.as_params()])
        logger.debug(f"[{self._client.chain_id}] Installed filter {self._filter_id}")

    async def __anext__(self) -> dict[str, Any]:
        while not self._buffer:
            if self._closed:
                raise StopAsyncIteration
            if self._filter_id is None:
                await self.install()
            try:
                changes = await self._client.rpc("eth_getFilterChanges", [self._filter_id])
            except ChainClientError as e:
                if "filter not found" in str(e).lower():
                    # node dropped the filter (restart or idle timeout)
                    logger.warning(f"[{self._client.chain_id}] Filter {self._filter_id} lost, reinstalling")
                    self._filter_id = None
                    continue
                raise
            if changes:
                self._buffer.extend(changes)
            else:
                await asyncio.sleep(self._poll_interval)
        return self._buffer.pop(0)

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        if self._filter_id is not None:
            filter_id, self._filter_id = self._filter_id, None
            try:
                await self._client.rpc("eth_uninstallFilter", [filter_id])
            except ChainClientError as e:
                logger.warning(f"[{self._client.chain_id}] Failed to uninstall filter {filter_id}: {e}")


class JsonRpcChainClient(ChainClient):
    """EVM JSON-RPC client over HTTP."""

    def __init__(
        self,
        chain_id: int,
        rpc_url: str,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
    ):
        """Initialize the client.

        Args:
            chain_id: Chain this endpoint serves
            rpc_url: JSON-RPC endpoint URL
            timeout: HTTP timeout in seconds
            poll_interval: Seconds between eth_getFilterChanges polls
        """
        super().__init__(chain_id)
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._client: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def rpc(self, method: str, params: list) -> Any:
        """Make a JSON-RPC call and return its result.

        Raises:
            ChainClientError: on transport errors or an error response
        """
        client = await self._get_client()
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}

        try:
            response = await client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ChainClientError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise ChainClientError(f"{method} returned invalid JSON: {e}") from e

        error = body.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise ChainClientError(f"{method} error: {message}", code=code)
        return body.get("result")

    async def get_block_number(self) -> int:
        result = await self.rpc("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        params = {**log_filter.as_params(), "fromBlock": hex(from_block), "toBlock": hex(to_block)}
        return list(await self.rpc("eth_getLogs", [params]) or [])

    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        subscription = PollingLogSubscription(self, log_filter, self.poll_interval)
        await subscription.install()
        return subscription

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None


_CLOSED = object()


class SimulatedSubscription(LogSubscription):
    """Queue-backed subscription fed by SimulatedChainClient.emit()."""

    def __init__(self, client: "SimulatedChainClient", log_filter: LogFilter):
        self._client = client
        self.log_filter = log_filter
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def __anext__(self) -> dict[str, Any]:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def unsubscribe(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._client._detach(self)
        self._queue.put_nowait(_CLOSED)


class SimulatedChainClient(ChainClient):
    """In-memory chain for dry-run mode and tests (no real RPC calls)."""

    def __init__(self, chain_id: int, block_number: int = 1000):
        super().__init__(chain_id)
        self.block_number = block_number
        self.logs: list[dict[str, Any]] = []
        self._subscriptions: list[SimulatedSubscription] = []
        self._failures: dict[str, int] = {}
        self.calls: dict[str, int] = {}

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    def fail_next(self, method: str, count: int = 1) -> None:
        """Make the next `count` calls to `method` raise ChainClientError."""
        self._failures[method] = self._failures.get(method, 0) + count

    def _call(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        if self._failures.get(method):
            self._failures[method] -= 1
            raise ChainClientError(f"simulated {method} failure")

    async def get_block_number(self) -> int:
        self._call("get_block_number")
        return self.block_number

    async def get_logs(
        self, log_filter: LogFilter, from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        self._call("get_logs")
        return [
            log for log in self.logs
            if log_filter.matches(log) and from_block <= int(log["blockNumber"], 16) <= to_block
        ]

    async def subscribe(self, log_filter: LogFilter) -> LogSubscription:
        self._call("subscribe")
        subscription = SimulatedSubscription(self, log_filter)
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: SimulatedSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def emit(self, log: dict[str, Any], live: bool = True) -> dict[str, Any]:
        """Append a log to the chain and push it to matching subscriptions.

        Args:
            log: Raw log (see build_raw_log)
            live: False to only record it in history (visible to catch-up)
        """
        self.logs.append(log)
        self.block_number = max(self.block_number, int(log["blockNumber"], 16))
        if live:
            for subscription in list(self._subscriptions):
                if subscription.log_filter.matches(log):
                    subscription.deliver(log)
        return log

    def emit_event(
        self,
        name: str,
        address: str,
        indexed: list,
        data: list,
        block_number: Optional[int] = None,
        tx_hash: Optional[str] = None,
        log_index: int = 0,
        live: bool = True,
    ) -> dict[str, Any]:
        """Build and emit an event log; mines a new block by default."""
        if block_number is None:
            block_number = self.block_number + 1
        log = build_raw_log(
            name,
            address,
            indexed,
            data,
            block_number=block_number,
            tx_hash=tx_hash or "0x" + secrets.token_hex(32),
            log_index=log_index,
        )
        return self.emit(log, live=live)

    def break_subscriptions(self, message: str = "simulated connection drop") -> None:
        """Make every live subscription raise ChainClientError."""
        for subscription in list(self._subscriptions):
            subscription.deliver(ChainClientError(message))

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
