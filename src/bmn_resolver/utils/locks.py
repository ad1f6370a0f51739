"""Per-key concurrency control.

Serializes read-modify-write cycles and outbound actions for a single swap
(keyed by order hash) while letting different swaps proceed concurrently.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyLockRegistry:
    """Registry of asyncio locks, one per key.

    Example:
        locks = KeyLockRegistry("ledger")
        async with locks.lock(order_hash, operation="update_status"):
            record = await repo.get_swap(order_hash)
            ...
    """

    def __init__(self, name: str = "keys", timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            name: Registry name used in log messages
            timeout: Default maximum wait for a lock (None = wait forever)
        """
        self.name = name
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()

    async def get_lock(self, key: str) -> asyncio.Lock:
        """Get or create the lock for a key."""
        async with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    @asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: Optional[float] = None,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Hold the lock for a key, waiting up to timeout seconds.

        Raises:
            LockTimeoutError: if the lock is not acquired in time
        """
        timeout = self.timeout if timeout is None else timeout
        lock = await self.get_lock(key)

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] Lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire {self.name} lock for {key} within {timeout}s"
            )

        logger.debug(f"[{self.name}] Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"[{self.name}] Lock released for {key}: {operation}")

    @asynccontextmanager
    async def try_lock(self, key: str, operation: str = "operation") -> AsyncIterator[bool]:
        """Acquire the lock only if it is free right now.

        Yields:
            True if the lock is held for the duration of the block, False if
            another task holds it (the block should then skip its work)
        """
        lock = await self.get_lock(key)
        if lock.locked():
            logger.debug(f"[{self.name}] {key} busy, skipping {operation}")
            yield False
            return

        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()

    def is_locked(self, key: str) -> bool:
        """Check whether a key is currently locked."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, keys: Iterable[str]) -> int:
        """Drop the locks of keys that are not currently held.

        Returns:
            Number of locks dropped
        """
        dropped = 0
        for key in keys:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]
                dropped += 1
        if dropped:
            logger.debug(f"[{self.name}] Pruned {dropped} lock(s)")
        return dropped

    def clear(self) -> None:
        """Drop all locks (useful for testing)."""
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)
