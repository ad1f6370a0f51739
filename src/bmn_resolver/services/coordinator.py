"""Coordination engine: applies chain events to the swap ledger and vault.

A single consumer drains the shared event queue. Each event is checked
against the processed-event journal, applied under the per-order action lock
and then journaled, so redeliveries (catch-up racing live subscriptions,
restarts) are harmless.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from bmn_resolver.chains import ChainConfig, counterpart_chain
from bmn_resolver.crypto import ZERO_ADDRESS, ZERO_HASH, normalize_hex32, validate_secret
from bmn_resolver.ledger.models import TERMINAL_STATUSES, SecretStatus, Swap, SwapStatus, utcnow
from bmn_resolver.ledger.swaps import SIDE_DESTINATION, SIDE_SOURCE, SwapLedger, status_rank
from bmn_resolver.ledger.vault import SecretVault
from bmn_resolver.utils.locks import KeyLockRegistry
from bmn_resolver.watcher.events import (
    ChainEvent,
    DestinationEscrowCreated,
    EscrowWithdrawn,
    OrderFilled,
    PostInteractionExecuted,
    PostInteractionFailed,
    SourceEscrowCreated,
)

logger = logging.getLogger(__name__)

_STOP = object()


class CoordinationEngine:
    """Turns observed chain facts into ledger and vault updates."""

    def __init__(
        self,
        ledger: SwapLedger,
        vault: SecretVault,
        chains: dict[int, ChainConfig],
        action_locks: Optional[KeyLockRegistry] = None,
        queue: Optional[asyncio.Queue] = None,
    ):
        """Initialize the engine.

        Args:
            ledger: Swap ledger
            vault: Secret vault
            chains: Configured chains by chain id
            action_locks: Per-order locks shared with the action scanner
            queue: Event queue fed by the chain watchers
        """
        self.ledger = ledger
        self.vault = vault
        self.chains = chains
        self.action_locks = action_locks if action_locks is not None else KeyLockRegistry("actions")
        self.queue: asyncio.Queue = queue or asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

        self._handlers: dict[str, Callable[[Any, Swap], Awaitable[None]]] = {
            OrderFilled.kind: self._on_order_filled,
            SourceEscrowCreated.kind: self._on_source_escrow_created,
            PostInteractionExecuted.kind: self._on_post_interaction_executed,
            PostInteractionFailed.kind: self._on_post_interaction_failed,
            DestinationEscrowCreated.kind: self._on_destination_escrow_created,
            EscrowWithdrawn.kind: self._on_escrow_withdrawn,
        }

    # Lifecycle
    def start(self) -> asyncio.Task:
        """Start consuming the event queue."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="coordination-engine")
        return self._task

    async def run(self) -> None:
        logger.info("Coordination engine started")
        while True:
            event = await self.queue.get()
            try:
                if event is _STOP:
                    break
                await self.handle_event(event)
            except Exception:
                logger.exception(f"Error handling {getattr(event, 'kind', event)} event")
            finally:
                self.queue.task_done()
        logger.info("Coordination engine stopped")

    async def stop(self) -> None:
        """Drain queued events, then stop."""
        if self._task is None or self._task.done():
            return
        await self.queue.put(_STOP)
        await self._task
        self._task = None

    # Event application
    async def handle_event(self, event: ChainEvent) -> bool:
        """Apply one event.

        Returns:
            True if the event was applied, False if it was a duplicate or
            could not be correlated with a swap
        """
        if await self.ledger.is_event_processed(event.key):
            logger.debug(f"Duplicate {event.kind} event {event.key}, dropping")
            return False

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning(f"No handler for event kind {event.kind}")
            return False

        order_hash = await self._correlate(event)
        if order_hash is None:
            logger.warning(f"Uncorrelated {event.kind} event on chain {event.chain_id} tx {event.tx_hash}")
            return False

        async with self.action_locks.lock(order_hash, operation=event.kind):
            swap = await self._load_or_track(order_hash, event)
            await handler(event, swap)

        await self.ledger.mark_event_processed(event.key, event.kind, order_hash)
        return True

    async def _correlate(self, event: ChainEvent) -> Optional[str]:
        """Find the order hash an event belongs to."""
        order_hash = getattr(event, "order_hash", None)
        if order_hash:
            return order_hash

        if isinstance(event, (SourceEscrowCreated, DestinationEscrowCreated)) and event.hashlock:
            swap = await self.ledger.get_swap_by_hashlock(event.hashlock)
            return swap.order_hash if swap else None

        if isinstance(event, EscrowWithdrawn):
            swap = await self.ledger.get_swap_by_escrow(event.chain_id, event.escrow)
            return swap.order_hash if swap else None

        return None

    async def _load_or_track(self, order_hash: str, event: ChainEvent) -> Swap:
        swap = await self.ledger.get_swap(order_hash)
        if swap is not None:
            return swap
        # First sighting of an order on its source chain
        return await self.ledger.track(
            order_hash,
            src_chain_id=event.chain_id,
            dst_chain_id=counterpart_chain(self.chains, event.chain_id) or 0,
        )

    async def _advance(
        self, swap: Swap, target: SwapStatus, patch: Optional[dict[str, Any]] = None
    ) -> Optional[Swap]:
        """Move forward to target, or just merge patch if the swap is already past it."""
        if swap.status in TERMINAL_STATUSES:
            logger.warning(
                f"Ignoring {target.value} for {swap.order_hash}: swap already {swap.status.value}"
            )
            return None
        if status_rank(target) < status_rank(swap.status):
            if not patch:
                return swap
            target = swap.status
        updated = await self.ledger.update_status(swap.order_hash, target, patch)
        return updated

    # Handlers
    async def _on_order_filled(self, event: OrderFilled, swap: Swap) -> None:
        await self._advance(swap, SwapStatus.ORDER_FILLED)

    async def _record_source_escrow(
        self, swap: Swap, chain_id: int, escrow: str, taker: str, extra: dict[str, Any]
    ) -> None:
        now = utcnow()
        patch: dict[str, Any] = {
            "src_escrow": escrow,
            "src_escrow_created_at": swap.src_escrow_created_at or now,
            "src_deposited_at": swap.src_deposited_at or now,
            "bob": taker,
            **extra,
        }
        if not swap.src_chain_id:
            patch["src_chain_id"] = chain_id

        updated = await self._advance(swap, SwapStatus.SOURCE_ESCROW_CREATED, patch)
        if updated is not None:
            # the factory pulls the maker's tokens in the same transaction
            await self._advance(updated, SwapStatus.ALICE_DEPOSITED)

    async def _on_source_escrow_created(self, event: SourceEscrowCreated, swap: Swap) -> None:
        extra: dict[str, Any] = {}
        if event.amount:
            extra["src_amount"] = event.amount
        if event.maker:
            extra["alice"] = event.maker
        if event.hashlock and swap.hashlock == ZERO_HASH:
            extra["hashlock"] = event.hashlock
        await self._record_source_escrow(swap, event.chain_id, event.escrow, event.taker, extra)

    async def _on_post_interaction_executed(self, event: PostInteractionExecuted, swap: Swap) -> None:
        # dst escrow address is precomputed; it is recorded once the escrow exists
        extra = {"meta": {**(swap.meta or {}), "expected_dst_escrow": event.dst_escrow}}
        await self._record_source_escrow(swap, event.chain_id, event.src_escrow, event.taker, extra)

    async def _on_post_interaction_failed(self, event: PostInteractionFailed, swap: Swap) -> None:
        logger.error(f"PostInteraction failed for {swap.order_hash}: {event.reason}")
        if swap.status in TERMINAL_STATUSES:
            return
        await self.ledger.mark_failed(swap.order_hash, f"PostInteraction failed: {event.reason}")

    async def _on_destination_escrow_created(
        self, event: DestinationEscrowCreated, swap: Swap
    ) -> None:
        now = utcnow()
        patch: dict[str, Any] = {
            "dst_escrow": event.escrow,
            "dst_escrow_created_at": swap.dst_escrow_created_at or now,
            "dst_deposited_at": swap.dst_deposited_at or now,
        }
        if not swap.dst_chain_id:
            patch["dst_chain_id"] = event.chain_id
        if swap.bob == ZERO_ADDRESS:
            patch["bob"] = event.taker

        updated = await self._advance(swap, SwapStatus.DEST_ESCROW_CREATED, patch)
        if updated is not None:
            await self._advance(updated, SwapStatus.BOB_DEPOSITED)

    async def _on_escrow_withdrawn(self, event: EscrowWithdrawn, swap: Swap) -> None:
        if not validate_secret(event.secret, swap.hashlock):
            logger.error(
                f"Invariant violation: secret revealed by {event.escrow} in {event.tx_hash} "
                f"does not hash to {swap.hashlock} (order {swap.order_hash}); ignoring"
            )
            return

        if swap.src_chain_id == event.chain_id and swap.src_escrow == event.escrow:
            side_field, target = "src_withdrawn_at", SwapStatus.SOURCE_WITHDRAWN
        elif swap.dst_chain_id == event.chain_id and swap.dst_escrow == event.escrow:
            side_field, target = "dst_withdrawn_at", SwapStatus.DEST_WITHDRAWN
        else:
            logger.warning(f"Escrow {event.escrow} is not part of swap {swap.order_hash}")
            return

        record = await self.vault.store(event.secret, swap.order_hash, event.escrow, event.chain_id)

        now = utcnow()
        patch: dict[str, Any] = {side_field: getattr(swap, side_field) or now}
        if swap.secret is None:
            patch["secret"] = event.secret
        if swap.secret_revealed_at is None:
            patch["secret_revealed_at"] = now
            patch["secret_reveal_tx_hash"] = event.tx_hash
            logger.info(f"Secret for {swap.order_hash} revealed on chain {event.chain_id}")

        if record.status != SecretStatus.CONFIRMED:
            await self.vault.confirm(swap.hashlock, event.tx_hash)
        if swap.is_terminal:
            side = SIDE_SOURCE if side_field == "src_withdrawn_at" else SIDE_DESTINATION
            await self.ledger.record_terminal_withdrawal(swap.order_hash, side)
            return
        await self._advance(swap, target, patch)

    # API boundary
    async def register_order(
        self, order_hash: str, secret: Optional[str] = None, **fields: Any
    ) -> Swap:
        """Track a new order, storing the maker's secret when supplied.

        Args:
            order_hash: Limit order hash
            secret: Maker's secret (hashlock is derived from it if not given)
            **fields: Initial swap fields (alice, src_chain_id, src_token, ...)
        """
        order_hash = normalize_hex32(order_hash)
        if secret is not None:
            fields["secret"] = secret
        async with self.action_locks.lock(order_hash, operation="register_order"):
            swap = await self.ledger.track(order_hash, **fields)
            if secret is not None:
                if swap.secret is None:
                    updated = await self.ledger.update_status(
                        swap.order_hash, swap.status, {"secret": secret}
                    )
                    swap = updated or swap
                await self.vault.store(
                    secret,
                    swap.order_hash,
                    swap.src_escrow or ZERO_ADDRESS,
                    swap.src_chain_id,
                )
        return swap
