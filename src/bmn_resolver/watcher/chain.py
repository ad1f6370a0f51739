"""Per-chain event watcher.

Opens one live subscription per watched event and, concurrently, replays the
last N blocks so events emitted while the resolver was down are not lost.
Both paths put decoded events on a shared queue; duplicates between them are
left for the consumer to drop.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Optional

from bmn_resolver.chains import ChainConfig
from bmn_resolver.utils.retry import RetryPolicy
from bmn_resolver.watcher.client import ChainClient, ChainClientError, LogSubscription
from bmn_resolver.watcher.events import EventDecodeError, LogFilter, build_filters, decode_log

logger = logging.getLogger(__name__)


class WatcherState(str, Enum):
    STOPPED = "stopped"
    CATCHING_UP = "catching_up"
    LIVE = "live"


def _log_position(log: dict[str, Any]) -> tuple[int, int]:
    def as_int(value: Any) -> int:
        if isinstance(value, int):
            return value
        try:
            return int(value, 16)
        except (TypeError, ValueError):
            return 0

    return as_int(log.get("blockNumber")), as_int(log.get("logIndex"))


class ChainWatcher:
    """Watches one chain and feeds normalized events into a queue."""

    def __init__(
        self,
        chain: ChainConfig,
        client: ChainClient,
        catchup_blocks: int = 100,
        retry: Optional[RetryPolicy] = None,
    ):
        """Initialize the watcher.

        Args:
            chain: Chain configuration (contract addresses)
            client: RPC client for the chain
            catchup_blocks: How many recent blocks to replay on start
            retry: Backoff for RPC errors; catch-up honours max_attempts,
                live subscriptions retry forever
        """
        self.chain = chain
        self.client = client
        self.catchup_blocks = catchup_blocks
        self.retry = retry or RetryPolicy()
        self._subscription_retry = RetryPolicy(
            base_delay=self.retry.base_delay,
            max_delay=self.retry.max_delay,
            factor=self.retry.factor,
            max_attempts=None,
        )

        self._state = WatcherState.STOPPED
        self._sink: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self._subscriptions: set[LogSubscription] = set()
        self._live = asyncio.Event()

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def name(self) -> str:
        return f"{self.chain.name}:{self.chain.chain_id}"

    async def start(self, sink: asyncio.Queue) -> None:
        """Start subscriptions and catch-up; events go to sink."""
        if self._state != WatcherState.STOPPED:
            logger.warning(f"[{self.name}] Watcher already running ({self._state.value})")
            return

        self._sink = sink
        self._state = WatcherState.CATCHING_UP
        self._live.clear()

        filters = build_filters(self.chain)
        for log_filter in filters:
            self._tasks.append(
                asyncio.create_task(
                    self._run_subscription(log_filter),
                    name=f"watch-{self.chain.chain_id}-{log_filter.topic[:10]}",
                )
            )
        self._tasks.append(
            asyncio.create_task(self._catch_up(filters), name=f"catchup-{self.chain.chain_id}")
        )
        logger.info(f"[{self.name}] Watcher started ({len(filters)} subscriptions)")

    async def wait_live(self, timeout: Optional[float] = None) -> None:
        """Wait until catch-up has finished."""
        await asyncio.wait_for(self._live.wait(), timeout=timeout)

    async def _catch_up(self, filters: list[LogFilter]) -> None:
        try:
            latest = await self.retry.call_with_retry(
                self.client.get_block_number,
                (ChainClientError,),
                operation=f"[{self.name}] get_block_number",
            )
            from_block = max(0, latest - self.catchup_blocks)

            logs: list[dict[str, Any]] = []
            for log_filter in filters:

                async def fetch(log_filter: LogFilter = log_filter) -> list[dict[str, Any]]:
                    return await self.client.get_logs(log_filter, from_block, latest)

                logs.extend(
                    await self.retry.call_with_retry(
                        fetch, (ChainClientError,), operation=f"[{self.name}] get_logs"
                    )
                )

            logs.sort(key=_log_position)
            for log in logs:
                await self._emit(log)
            logger.info(
                f"[{self.name}] Catch-up replayed {len(logs)} log(s) from blocks {from_block}-{latest}"
            )
        except ChainClientError as e:
            logger.error(f"[{self.name}] Catch-up abandoned: {e}")
        finally:
            if self._state == WatcherState.CATCHING_UP:
                self._state = WatcherState.LIVE
                self._live.set()
                logger.info(f"[{self.name}] Watcher live")

    async def _run_subscription(self, log_filter: LogFilter) -> None:
        attempt = 0
        while self._state != WatcherState.STOPPED:
            try:
                subscription = await self.client.subscribe(log_filter)
            except ChainClientError as e:
                delay = self._subscription_retry.delay(attempt)
                attempt += 1
                logger.warning(f"[{self.name}] Subscribe failed: {e}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            self._subscriptions.add(subscription)
            try:
                async for log in subscription:
                    attempt = 0
                    await self._emit(log)
            except ChainClientError as e:
                logger.warning(f"[{self.name}] Subscription dropped: {e}")
            finally:
                self._subscriptions.discard(subscription)
                await subscription.unsubscribe()

            if self._state != WatcherState.STOPPED:
                delay = self._subscription_retry.delay(attempt)
                attempt += 1
                logger.info(f"[{self.name}] Resubscribing in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def _emit(self, log: dict[str, Any]) -> None:
        if log.get("removed"):
            logger.info(f"[{self.name}] Skipping removed log {log.get('transactionHash')}")
            return
        try:
            event = decode_log(self.chain.chain_id, log)
        except EventDecodeError as e:
            logger.warning(f"[{self.name}] Skipping undecodable log {log.get('transactionHash')}: {e}")
            return
        logger.debug(f"[{self.name}] {event.kind} at block {event.block_number}")
        await self._sink.put(event)

    async def stop(self) -> None:
        """Cancel watcher tasks and release all subscriptions (idempotent)."""
        if self._state == WatcherState.STOPPED and not self._tasks:
            return

        self._state = WatcherState.STOPPED
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
        self._subscriptions.clear()
        logger.info(f"[{self.name}] Watcher stopped")
