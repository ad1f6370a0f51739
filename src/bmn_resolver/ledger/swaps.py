"""Swap ledger: durable per-swap state machine.

Every mutation is a read-modify-write under a per-order-hash lock, inside
its own transaction. The version column guards against writers in other
processes; a stale write is retried from a fresh read.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from bmn_resolver.crypto import (
    ZERO_ADDRESS,
    ZERO_HASH,
    compute_hashlock,
    normalize_address,
    normalize_hex32,
    validate_secret,
)
from bmn_resolver.ledger.database import Database
from bmn_resolver.ledger.models import TERMINAL_STATUSES, Swap, SwapStatus, utcnow
from bmn_resolver.ledger.repository import EventKey, LedgerRepository
from bmn_resolver.utils.locks import KeyLockRegistry

logger = logging.getLogger(__name__)

# Forward progress order; the two withdrawals may land in either order.
STATUS_RANK = {
    SwapStatus.CREATED: 0,
    SwapStatus.ORDER_FILLED: 1,
    SwapStatus.SOURCE_ESCROW_CREATED: 2,
    SwapStatus.ALICE_DEPOSITED: 3,
    SwapStatus.DEST_ESCROW_CREATED: 4,
    SwapStatus.BOB_DEPOSITED: 5,
    SwapStatus.SECRET_REVEALED: 6,
    SwapStatus.SOURCE_WITHDRAWN: 7,
    SwapStatus.DEST_WITHDRAWN: 7,
    SwapStatus.COMPLETED: 8,
}

_ADDRESS_FIELDS = frozenset(
    {"alice", "bob", "src_token", "src_escrow", "dst_token", "dst_escrow"}
)
_HASH_FIELDS = frozenset({"hashlock", "secret", "secret_reveal_tx_hash"})

PATCHABLE_FIELDS = frozenset(
    {
        "hashlock",
        "alice",
        "bob",
        "src_chain_id",
        "src_token",
        "src_amount",
        "src_escrow",
        "src_escrow_created_at",
        "src_deposited_at",
        "src_withdrawn_at",
        "dst_chain_id",
        "dst_token",
        "dst_amount",
        "dst_escrow",
        "dst_escrow_created_at",
        "dst_deposited_at",
        "dst_withdrawn_at",
        "secret",
        "secret_revealed_at",
        "secret_reveal_tx_hash",
        "last_error",
        "retry_count",
        "meta",
    }
)

SIDE_SOURCE = "src"
SIDE_DESTINATION = "dst"


def status_rank(status: SwapStatus) -> int:
    """Rank of a non-terminal status (terminal failures rank -1)."""
    return STATUS_RANK.get(status, -1)


def can_transition(current: SwapStatus, target: SwapStatus) -> bool:
    """Whether the transition table allows current -> target.

    COMPLETED also needs both withdrawal timestamps; the ledger checks that.
    """
    if current in TERMINAL_STATUSES:
        return False
    if target in (SwapStatus.FAILED, SwapStatus.EXPIRED):
        return True
    return status_rank(target) >= status_rank(current)


def normalize_patch(patch: dict[str, Any]) -> dict[str, Any]:
    """Validate patch keys and normalize hex values.

    Raises:
        ValueError: on an unknown field or malformed hex value
    """
    unknown = set(patch) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown swap fields: {', '.join(sorted(unknown))}")

    normalized = {}
    for key, value in patch.items():
        if value is not None and key in _ADDRESS_FIELDS:
            value = normalize_address(value)
        elif value is not None and key in _HASH_FIELDS:
            value = normalize_hex32(value)
        normalized[key] = value
    return normalized


def withdrawal_sides_due(swap: Swap) -> list[str]:
    """Which sides of a swap are ready to withdraw, source first."""
    sides = []
    if (
        swap.status in (SwapStatus.SECRET_REVEALED, SwapStatus.DEST_WITHDRAWN)
        and swap.src_escrow
        and swap.secret
        and swap.src_withdrawn_at is None
    ):
        sides.append(SIDE_SOURCE)
    if (
        swap.secret_revealed_at is not None
        and swap.dst_escrow
        and swap.dst_withdrawn_at is None
    ):
        sides.append(SIDE_DESTINATION)
    return sides


class SwapLedger:
    """Durable record of every swap the resolver coordinates."""

    def __init__(
        self,
        database: Database,
        locks: Optional[KeyLockRegistry] = None,
        max_conflict_retries: int = 3,
    ):
        self.db = database
        self._locks = locks if locks is not None else KeyLockRegistry("ledger")
        self.max_conflict_retries = max_conflict_retries

    async def track(self, order_hash: str, **fields: Any) -> Swap:
        """Start tracking a swap, or return the existing record unchanged.

        Args:
            order_hash: Limit order hash identifying the swap
            **fields: Initial swap fields (hashlock, alice, src_chain_id, ...)

        Raises:
            ValueError: on unknown fields, malformed hex, or a secret that
                does not hash to the given hashlock
        """
        order_hash = normalize_hex32(order_hash)
        fields = normalize_patch(fields)

        secret = fields.get("secret")
        if secret:
            hashlock = fields.get("hashlock") or compute_hashlock(secret)
            fields["hashlock"] = hashlock
            if not validate_secret(secret, hashlock):
                raise ValueError(f"Secret does not match hashlock {hashlock} for {order_hash}")

        async with self._locks.lock(order_hash, operation="track"):
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                existing = await repo.get_swap(order_hash)
                if existing is not None:
                    logger.debug(f"Swap {order_hash} already tracked ({existing.status.value})")
                    return existing

                now = utcnow()
                values = {
                    "hashlock": ZERO_HASH,
                    "alice": ZERO_ADDRESS,
                    "bob": ZERO_ADDRESS,
                    "src_chain_id": 0,
                    "src_token": ZERO_ADDRESS,
                    "src_amount": 0,
                    "dst_chain_id": 0,
                    "dst_token": ZERO_ADDRESS,
                    "dst_amount": 0,
                    "retry_count": 0,
                    "meta": {},
                }
                values.update({k: v for k, v in fields.items() if v is not None})
                swap = Swap(
                    order_hash=order_hash,
                    status=SwapStatus.CREATED,
                    created_at=now,
                    last_update_at=now,
                    **values,
                )
                await repo.add_swap(swap)

        logger.info(f"Tracking swap {order_hash} (hashlock {swap.hashlock[:10]})")
        return swap

    async def _mutate(
        self,
        order_hash: str,
        mutator: Callable[[Swap], bool],
        operation: str,
    ) -> Optional[Swap]:
        """Apply mutator to a fresh copy of the record and commit.

        The mutator returns False to leave the record untouched.
        """
        order_hash = normalize_hex32(order_hash)

        async with self._locks.lock(order_hash, operation=operation):
            attempt = 0
            while True:
                try:
                    async with self.db.session() as session:
                        repo = LedgerRepository(session)
                        swap = await repo.get_swap(order_hash)
                        if swap is None:
                            logger.warning(f"{operation}: unknown swap {order_hash}")
                            return None
                        if not mutator(swap):
                            await session.rollback()
                            return None
                        swap.last_update_at = utcnow()
                    return swap
                except StaleDataError:
                    attempt += 1
                    if attempt >= self.max_conflict_retries:
                        logger.error(f"{operation}: gave up on {order_hash} after {attempt} conflicts")
                        raise
                    logger.warning(f"{operation}: concurrent write on {order_hash}, retrying")

    async def update_status(
        self,
        order_hash: str,
        status: SwapStatus,
        patch: Optional[dict[str, Any]] = None,
    ) -> Optional[Swap]:
        """Merge patch into the record and move it to status.

        Returns:
            The updated record, or None if the swap is unknown or the
            transition was refused

        Raises:
            ValueError: on unknown patch fields or malformed hex values
        """
        status = SwapStatus(status)
        changes = normalize_patch(patch or {})

        def apply(swap: Swap) -> bool:
            current = swap.status
            if current in TERMINAL_STATUSES:
                logger.error(
                    f"Refused transition {current.value} -> {status.value} for "
                    f"{swap.order_hash}: status is terminal"
                )
                return False

            if "secret" in changes or "hashlock" in changes:
                secret = changes.get("secret", swap.secret)
                hashlock = changes.get("hashlock", swap.hashlock)
                if secret and not validate_secret(secret, hashlock):
                    logger.error(
                        f"Invariant violation on {swap.order_hash}: secret does not hash "
                        f"to hashlock {hashlock}; update ignored"
                    )
                    return False

            src_withdrawn = changes.get("src_withdrawn_at", swap.src_withdrawn_at)
            dst_withdrawn = changes.get("dst_withdrawn_at", swap.dst_withdrawn_at)
            both_withdrawn = src_withdrawn is not None and dst_withdrawn is not None

            if status == SwapStatus.COMPLETED and not both_withdrawn:
                logger.error(
                    f"Refused transition {current.value} -> completed for "
                    f"{swap.order_hash}: both sides must be withdrawn"
                )
                return False
            if not can_transition(current, status):
                logger.error(
                    f"Refused transition {current.value} -> {status.value} for {swap.order_hash}"
                )
                return False

            for key, value in changes.items():
                setattr(swap, key, value)

            target = status
            if both_withdrawn and target not in (SwapStatus.FAILED, SwapStatus.EXPIRED):
                target = SwapStatus.COMPLETED
            swap.status = target
            if target == SwapStatus.COMPLETED and swap.completed_at is None:
                swap.completed_at = utcnow()

            if target != current:
                logger.info(f"Swap {swap.order_hash}: {current.value} -> {target.value}")
            return True

        return await self._mutate(order_hash, apply, f"update_status({status.value})")

    async def mark_failed(self, order_hash: str, error: str) -> Optional[Swap]:
        """Mark a swap as failed with the given error."""
        return await self.update_status(order_hash, SwapStatus.FAILED, {"last_error": error})

    async def increment_retry(
        self, order_hash: str, error: Optional[str] = None
    ) -> Optional[Swap]:
        """Count a failed attempt without changing status."""

        def apply(swap: Swap) -> bool:
            if swap.status in TERMINAL_STATUSES:
                logger.debug(f"Not counting retry on terminal swap {swap.order_hash}")
                return False
            swap.retry_count += 1
            if error is not None:
                swap.last_error = error
            return True

        return await self._mutate(order_hash, apply, "increment_retry")

    async def record_terminal_withdrawal(
        self, order_hash: str, side: str, at: Optional[datetime] = None
    ) -> Optional[Swap]:
        """Record a withdrawal on a FAILED or EXPIRED swap, keeping its status.

        A swap can fail or expire after the secret is public; its escrows
        are still withdrawn and the timestamps still have to be kept.
        """
        field = "src_withdrawn_at" if side == SIDE_SOURCE else "dst_withdrawn_at"

        def apply(swap: Swap) -> bool:
            if swap.status not in TERMINAL_STATUSES:
                logger.error(
                    f"record_terminal_withdrawal on {swap.order_hash}: status "
                    f"{swap.status.value} is not terminal"
                )
                return False
            if getattr(swap, field) is not None:
                return False
            setattr(swap, field, at or utcnow())
            logger.info(f"Swap {swap.order_hash} ({swap.status.value}): {side} side withdrawn")
            return True

        return await self._mutate(order_hash, apply, "record_terminal_withdrawal")

    # Queries
    async def get_swap(self, order_hash: str) -> Optional[Swap]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swap(normalize_hex32(order_hash))

    async def get_swap_by_hashlock(self, hashlock: str) -> Optional[Swap]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swap_by_hashlock(normalize_hex32(hashlock))

    async def get_swap_by_escrow(self, chain_id: int, escrow: str) -> Optional[Swap]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swap_by_escrow(
                chain_id, normalize_address(escrow)
            )

    async def get_pending_swaps(self) -> list[Swap]:
        """All swaps not yet in a terminal status."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_active_swaps()

    async def get_swaps_by_status(self, status: SwapStatus) -> list[Swap]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swaps_by_status(SwapStatus(status))

    async def awaiting_destination_escrow(self) -> list[Swap]:
        """Alice has deposited; Bob's destination escrow is not there yet."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swaps_awaiting_destination_escrow()

    async def awaiting_secret_reveal(self) -> list[Swap]:
        """Both escrows funded and the secret is known but not revealed."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swaps_awaiting_secret_reveal()

    async def awaiting_withdrawal(self) -> list[Swap]:
        """Swaps with a side ready to withdraw; see withdrawal_sides_due()."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_swaps_awaiting_withdrawal()

    def withdrawal_sides_due(self, swap: Swap) -> list[str]:
        return withdrawal_sides_due(swap)

    # Maintenance
    async def check_expired(self, timeout_seconds: int, now: Optional[datetime] = None) -> int:
        """Expire non-terminal swaps older than timeout_seconds.

        Returns:
            Number of swaps moved to EXPIRED
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        message = f"Swap expired after {timeout_seconds} seconds"

        async with self.db.session() as session:
            stale = await LedgerRepository(session).get_stale_swaps(cutoff)

        def apply(swap: Swap) -> bool:
            if swap.status in TERMINAL_STATUSES or swap.created_at >= cutoff:
                return False
            logger.info(f"Swap {swap.order_hash}: {swap.status.value} -> expired")
            swap.status = SwapStatus.EXPIRED
            swap.last_error = message
            return True

        expired = 0
        for swap in stale:
            if await self._mutate(swap.order_hash, apply, "check_expired") is not None:
                expired += 1

        if expired:
            logger.warning(f"Expired {expired} swap(s) older than {timeout_seconds}s")
        return expired

    async def get_statistics(self) -> dict[str, Any]:
        """Swap counts and success rate."""
        async with self.db.session() as session:
            counts = await LedgerRepository(session).count_swaps_by_status()

        total = sum(counts.values())
        completed = counts.get(SwapStatus.COMPLETED, 0)
        failed = counts.get(SwapStatus.FAILED, 0)
        expired = counts.get(SwapStatus.EXPIRED, 0)
        return {
            "total": total,
            "completed": completed,
            "pending": total - completed - failed - expired,
            "failed": failed,
            "expired": expired,
            "success_rate": (completed / total * 100) if total else 0.0,
        }

    async def cleanup_old(
        self,
        retention_days: int,
        now: Optional[datetime] = None,
        on_deleted: Optional[Callable[[list[tuple[str, str]]], None]] = None,
    ) -> int:
        """Delete completed swaps finished more than retention_days ago.

        Args:
            retention_days: How long completed swaps are kept
            now: Reference time (defaults to the current UTC time)
            on_deleted: Called with the (order_hash, hashlock) pairs removed,
                so other per-key lock registries can be pruned

        Returns:
            Number of swaps deleted
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=retention_days)
        async with self.db.session() as session:
            deleted = await LedgerRepository(session).delete_completed_before(cutoff)
        if deleted:
            self._locks.discard(order_hash for order_hash, _ in deleted)
            if on_deleted is not None:
                on_deleted(deleted)
            logger.info(f"Cleaned up {len(deleted)} completed swap(s) older than {retention_days} days")
        return len(deleted)

    # Event journal
    async def is_event_processed(self, key: EventKey) -> bool:
        async with self.db.session() as session:
            return await LedgerRepository(session).is_event_processed(key)

    async def mark_event_processed(
        self, key: EventKey, kind: str, order_hash: Optional[str] = None
    ) -> bool:
        """Journal an applied event. Returns False if it was already journaled."""
        try:
            async with self.db.session() as session:
                await LedgerRepository(session).mark_event_processed(key, kind, order_hash)
        except IntegrityError:
            logger.debug(f"Event {key} already journaled")
            return False
        return True
