"""Action scanner: periodically finds swaps with a due action and submits it.

Each pass expires stale swaps, then dispatches, in order:
- destination escrow creation for swaps where Alice has deposited
- secret reveal once both escrows are funded
- withdrawals (source side first) once the secret is public, including the
  destination side of swaps that failed or expired after the reveal

Every dispatch holds the per-order action lock through a non-blocking
try-lock, so an order busy in the engine or a previous dispatch is skipped
rather than submitted twice.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from bmn_resolver.config import Settings
from bmn_resolver.ledger.models import Swap, SwapStatus, utcnow
from bmn_resolver.ledger.swaps import SIDE_DESTINATION, SIDE_SOURCE, SwapLedger, withdrawal_sides_due
from bmn_resolver.ledger.vault import SecretVault
from bmn_resolver.services.submitter import SubmissionError, TransactionSubmitter
from bmn_resolver.utils.locks import KeyLockRegistry
from bmn_resolver.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ACTION_CREATE_DST_ESCROW = "create_destination_escrow"
ACTION_REVEAL_SECRET = "reveal_secret"
ACTION_WITHDRAW_SOURCE = "withdraw_source"
ACTION_WITHDRAW_DESTINATION = "withdraw_destination"


def _needs_destination_escrow(swap: Swap) -> bool:
    # a submitted creation without a returned address waits for DstEscrowCreated
    return (
        swap.status == SwapStatus.ALICE_DEPOSITED
        and swap.src_escrow is not None
        and swap.dst_escrow is None
        and "dst_escrow_tx_hash" not in (swap.meta or {})
    )


def _needs_secret_reveal(swap: Swap) -> bool:
    return (
        swap.status == SwapStatus.BOB_DEPOSITED
        and swap.dst_escrow is not None
        and swap.secret is not None
        and swap.secret_revealed_at is None
    )


class ActionScanner:
    """Drives every in-flight swap toward its next on-chain action."""

    def __init__(
        self,
        ledger: SwapLedger,
        vault: SecretVault,
        submitter: TransactionSubmitter,
        action_locks: Optional[KeyLockRegistry] = None,
        scan_interval: float = 5.0,
        swap_timeout: int = 3600,
        retention_days: int = 7,
        cleanup_interval: float = 3600.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self.ledger = ledger
        self.vault = vault
        self.submitter = submitter
        self.action_locks = action_locks if action_locks is not None else KeyLockRegistry("actions")
        self.scan_interval = scan_interval
        self.swap_timeout = swap_timeout
        self.retention_days = retention_days
        self.cleanup_interval = cleanup_interval
        self.retry = retry or RetryPolicy(max_attempts=None)

        self._scan_lock = asyncio.Lock()
        self._backoff_until: dict[str, float] = {}
        self._last_cleanup: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger: SwapLedger,
        vault: SecretVault,
        submitter: TransactionSubmitter,
        action_locks: KeyLockRegistry,
    ) -> "ActionScanner":
        return cls(
            ledger,
            vault,
            submitter,
            action_locks=action_locks,
            scan_interval=settings.scan_interval_seconds,
            swap_timeout=settings.swap_timeout_seconds,
            retention_days=settings.retention_days,
            cleanup_interval=settings.cleanup_interval_seconds,
            retry=RetryPolicy.from_settings(settings, max_attempts=None),
        )

    # Lifecycle
    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name="action-scanner")
        return self._task

    async def run(self) -> None:
        """Run scan passes until stopped."""
        logger.info(f"Action scanner started (interval: {self.scan_interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.scan_once()
            except Exception:
                logger.exception("Scan pass failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.scan_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Action scanner stopped")

    async def stop(self) -> None:
        """Stop after the current pass completes."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    # Scanning
    async def scan_once(self) -> Optional[dict[str, int]]:
        """Run one pass over the ledger.

        Returns:
            Counts for the pass, or None if a pass was already running
        """
        if self._scan_lock.locked():
            logger.debug("Scan pass already running, skipping")
            return None

        async with self._scan_lock:
            stats = {"expired": 0, "submitted": 0, "skipped": 0, "retried": 0, "failed": 0}
            stats["expired"] = await self.ledger.check_expired(self.swap_timeout)

            for swap in await self.ledger.awaiting_destination_escrow():
                if not _needs_destination_escrow(swap):
                    continue
                await self._dispatch(
                    swap.order_hash, ACTION_CREATE_DST_ESCROW,
                    _needs_destination_escrow, self._create_destination_escrow, stats,
                )

            for swap in await self.ledger.awaiting_secret_reveal():
                await self._dispatch(
                    swap.order_hash, ACTION_REVEAL_SECRET,
                    _needs_secret_reveal, self._reveal_secret, stats,
                )

            for swap in await self.ledger.awaiting_withdrawal():
                for side in withdrawal_sides_due(swap):
                    if side == SIDE_SOURCE:
                        action, submit = ACTION_WITHDRAW_SOURCE, self._withdraw_source
                    else:
                        action, submit = ACTION_WITHDRAW_DESTINATION, self._withdraw_destination
                    await self._dispatch(
                        swap.order_hash, action,
                        lambda s, side=side: side in withdrawal_sides_due(s), submit, stats,
                    )

            await self._maybe_cleanup()

        if stats["submitted"] or stats["failed"] or stats["expired"]:
            logger.info(f"Scan pass: {stats}")
        return stats

    async def _dispatch(
        self,
        order_hash: str,
        action: str,
        still_due: Callable[[Swap], bool],
        submit: Callable[[Swap], Awaitable[None]],
        stats: dict[str, int],
    ) -> None:
        if self._backoff_until.get(order_hash, 0) > time.monotonic():
            stats["skipped"] += 1
            return

        async with self.action_locks.try_lock(order_hash, operation=action) as acquired:
            if not acquired:
                stats["skipped"] += 1
                return

            # re-read under the lock; an event may have moved the swap on
            swap = await self.ledger.get_swap(order_hash)
            if swap is None or not still_due(swap):
                return

            try:
                await submit(swap)
            except SubmissionError as e:
                if e.recoverable:
                    await self._schedule_retry(order_hash, action, str(e))
                    stats["retried"] += 1
                elif swap.is_terminal:
                    # already failed or expired; keep trying at the slowest pace
                    logger.error(f"{action} for {swap.status.value} swap {order_hash} failed: {e}")
                    self._backoff_until[order_hash] = time.monotonic() + self.retry.max_delay
                    stats["failed"] += 1
                else:
                    logger.error(f"{action} for {order_hash} failed permanently: {e}")
                    await self.ledger.mark_failed(order_hash, f"{action} failed: {e}")
                    stats["failed"] += 1
                return
            except Exception as e:
                logger.exception(f"Unexpected error in {action} for {order_hash}")
                await self._schedule_retry(order_hash, action, f"{type(e).__name__}: {e}")
                stats["retried"] += 1
                return

            self._backoff_until.pop(order_hash, None)
            stats["submitted"] += 1

    async def _schedule_retry(self, order_hash: str, action: str, error: str) -> None:
        swap = await self.ledger.increment_retry(order_hash, f"{action} failed: {error}")
        attempt = swap.retry_count if swap else 1
        delay = self.retry.delay(max(attempt - 1, 0))
        self._backoff_until[order_hash] = time.monotonic() + delay
        logger.warning(f"{action} for {order_hash} failed (attempt {attempt}): {error}; backing off {delay:.1f}s")

    async def _maybe_cleanup(self) -> None:
        now = time.monotonic()
        if self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval:
            return
        self._last_cleanup = now
        await self.ledger.cleanup_old(self.retention_days, on_deleted=self._release_locks)
        self._backoff_until = {
            order_hash: until for order_hash, until in self._backoff_until.items() if until > now
        }

    def _release_locks(self, deleted: list[tuple[str, str]]) -> None:
        self.action_locks.discard(order_hash for order_hash, _ in deleted)
        self.vault.discard_locks(hashlock for _, hashlock in deleted)
        for order_hash, _ in deleted:
            self._backoff_until.pop(order_hash, None)

    # Actions
    async def _secret_for(self, swap: Swap) -> str:
        secret = swap.secret or await self.vault.get_by_order_hash(swap.order_hash)
        if secret is None:
            raise SubmissionError(f"No secret known for {swap.order_hash}", recoverable=True)
        return secret

    async def _create_destination_escrow(self, swap: Swap) -> None:
        result = await self.submitter.create_destination_escrow(swap)
        meta = {**(swap.meta or {}), "dst_escrow_tx_hash": result.tx_hash}
        if not result.escrow_address:
            # address arrives with the DstEscrowCreated event
            await self.ledger.update_status(swap.order_hash, swap.status, {"meta": meta})
            return

        now = utcnow()
        await self.ledger.update_status(
            swap.order_hash,
            SwapStatus.BOB_DEPOSITED,
            {
                "dst_escrow": result.escrow_address,
                "dst_escrow_created_at": now,
                "dst_deposited_at": now,
                "meta": meta,
            },
        )
        logger.info(f"Destination escrow {result.escrow_address} created for {swap.order_hash}")

    async def _reveal_secret(self, swap: Swap) -> None:
        secret = await self._secret_for(swap)
        result = await self.submitter.reveal_secret(swap, secret)

        await self.ledger.update_status(
            swap.order_hash,
            SwapStatus.SECRET_REVEALED,
            {"secret_revealed_at": utcnow(), "secret_reveal_tx_hash": result.tx_hash},
        )
        await self.vault.store(secret, swap.order_hash, swap.dst_escrow, swap.dst_chain_id)
        await self.vault.confirm(swap.hashlock, result.tx_hash, result.gas_used)
        logger.info(f"Secret revealed for {swap.order_hash} in {result.tx_hash}")

    async def _withdraw_source(self, swap: Swap) -> None:
        secret = await self._secret_for(swap)
        result = await self.submitter.withdraw_source(swap, secret)
        await self.ledger.update_status(
            swap.order_hash, SwapStatus.SOURCE_WITHDRAWN, {"src_withdrawn_at": utcnow()}
        )
        logger.info(f"Withdrew source escrow for {swap.order_hash} in {result.tx_hash}")

    async def _withdraw_destination(self, swap: Swap) -> None:
        secret = await self._secret_for(swap)
        result = await self.submitter.withdraw_destination(swap, secret)
        if swap.is_terminal:
            await self.ledger.record_terminal_withdrawal(swap.order_hash, SIDE_DESTINATION)
        else:
            await self.ledger.update_status(
                swap.order_hash, SwapStatus.DEST_WITHDRAWN, {"dst_withdrawn_at": utcnow()}
            )
        logger.info(f"Withdrew destination escrow for {swap.order_hash} in {result.tx_hash}")
