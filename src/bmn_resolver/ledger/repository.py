"""Repository for ledger queries."""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bmn_resolver.ledger.models import (
    TERMINAL_STATUSES,
    ProcessedEvent,
    Secret,
    SecretOrderIndex,
    SecretStatus,
    Swap,
    SwapStatus,
)

EventKey = tuple[int, str, int]

_TERMINAL = tuple(TERMINAL_STATUSES)


class LedgerRepository:
    """Database operations for swaps, secrets and the event journal.

    Works inside a caller-supplied session; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Swap operations
    async def get_swap(self, order_hash: str) -> Optional[Swap]:
        """Get swap by order hash."""
        return await self.session.get(Swap, order_hash)

    async def get_swap_by_hashlock(self, hashlock: str) -> Optional[Swap]:
        """Get the oldest swap locked under a hashlock."""
        stmt = select(Swap).where(Swap.hashlock == hashlock).order_by(Swap.created_at).limit(1)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_swap_by_escrow(self, chain_id: int, escrow: str) -> Optional[Swap]:
        """Get swap by escrow address on either side."""
        stmt = (
            select(Swap)
            .where(
                or_(
                    and_(Swap.src_chain_id == chain_id, Swap.src_escrow == escrow),
                    and_(Swap.dst_chain_id == chain_id, Swap.dst_escrow == escrow),
                )
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_swap(self, swap: Swap) -> Swap:
        self.session.add(swap)
        await self.session.flush()
        return swap

    async def get_swaps_by_status(self, *statuses: SwapStatus) -> list[Swap]:
        stmt = select(Swap).where(Swap.status.in_(statuses)).order_by(Swap.created_at)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_swaps(self) -> list[Swap]:
        """Get swaps that are not in a terminal status."""
        stmt = (
            select(Swap)
            .where(Swap.status.not_in(_TERMINAL))
            .order_by(Swap.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_stale_swaps(self, created_before: datetime) -> list[Swap]:
        """Get non-terminal swaps created before a cutoff."""
        stmt = (
            select(Swap)
            .where(Swap.status.not_in(_TERMINAL), Swap.created_at < created_before)
            .order_by(Swap.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_swaps_awaiting_destination_escrow(self) -> list[Swap]:
        stmt = (
            select(Swap)
            .where(
                Swap.status == SwapStatus.ALICE_DEPOSITED,
                Swap.src_escrow.is_not(None),
                Swap.dst_escrow.is_(None),
            )
            .order_by(Swap.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_swaps_awaiting_secret_reveal(self) -> list[Swap]:
        stmt = (
            select(Swap)
            .where(
                Swap.status == SwapStatus.BOB_DEPOSITED,
                Swap.dst_escrow.is_not(None),
                Swap.secret.is_not(None),
                Swap.secret_revealed_at.is_(None),
            )
            .order_by(Swap.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_swaps_awaiting_withdrawal(self) -> list[Swap]:
        """Swaps with at least one side ready to withdraw, each listed once."""
        stmt = (
            select(Swap)
            .where(
                or_(
                    and_(
                        Swap.status.in_((SwapStatus.SECRET_REVEALED, SwapStatus.DEST_WITHDRAWN)),
                        Swap.src_escrow.is_not(None),
                        Swap.secret.is_not(None),
                        Swap.src_withdrawn_at.is_(None),
                    ),
                    and_(
                        Swap.secret_revealed_at.is_not(None),
                        Swap.dst_escrow.is_not(None),
                        Swap.dst_withdrawn_at.is_(None),
                    ),
                )
            )
            .order_by(Swap.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_swaps_by_status(self) -> dict[SwapStatus, int]:
        stmt = select(Swap.status, func.count()).group_by(Swap.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    async def delete_completed_before(self, cutoff: datetime) -> list[tuple[str, str]]:
        """Delete completed swaps finished before cutoff.

        Returns:
            (order_hash, hashlock) of every deleted swap
        """
        stmt = select(Swap.order_hash, Swap.hashlock).where(
            Swap.status == SwapStatus.COMPLETED,
            Swap.completed_at.is_not(None),
            Swap.completed_at < cutoff,
        )
        result = await self.session.execute(stmt)
        deleted = [(order_hash, hashlock) for order_hash, hashlock in result.all()]
        if deleted:
            await self.session.execute(
                delete(Swap).where(Swap.order_hash.in_([order_hash for order_hash, _ in deleted]))
            )
        return deleted

    # Secret operations
    async def get_secret(self, hashlock: str) -> Optional[Secret]:
        """Get secret record by hashlock."""
        return await self.session.get(Secret, hashlock)

    async def add_secret(self, record: Secret) -> Secret:
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_order_index(self, order_hash: str) -> Optional[SecretOrderIndex]:
        return await self.session.get(SecretOrderIndex, order_hash)

    async def add_order_index(self, order_hash: str, hashlock: str) -> SecretOrderIndex:
        entry = SecretOrderIndex(order_hash=order_hash, hashlock=hashlock)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_secrets_by_status(self, status: SecretStatus) -> list[Secret]:
        stmt = select(Secret).where(Secret.status == status).order_by(Secret.revealed_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_all_secrets(self) -> list[Secret]:
        """Get all secrets, newest first."""
        stmt = select(Secret).order_by(Secret.revealed_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_secrets_by_status(self) -> dict[SecretStatus, int]:
        stmt = select(Secret.status, func.count()).group_by(Secret.status)
        result = await self.session.execute(stmt)
        return {status: count for status, count in result.all()}

    # Event journal
    async def is_event_processed(self, key: EventKey) -> bool:
        """Check if a chain event was already applied."""
        chain_id, tx_hash, log_index = key
        stmt = select(ProcessedEvent.id).where(
            ProcessedEvent.chain_id == chain_id,
            ProcessedEvent.tx_hash == tx_hash,
            ProcessedEvent.log_index == log_index,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_event_processed(
        self,
        key: EventKey,
        kind: str,
        order_hash: Optional[str] = None,
    ) -> ProcessedEvent:
        """Mark a chain event as applied."""
        chain_id, tx_hash, log_index = key
        processed = ProcessedEvent(
            chain_id=chain_id,
            tx_hash=tx_hash,
            log_index=log_index,
            kind=kind,
            order_hash=order_hash,
        )
        self.session.add(processed)
        await self.session.flush()
        return processed
