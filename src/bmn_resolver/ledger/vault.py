"""Secret vault: durable store of revealed secrets keyed by hashlock.

A record's hashlock is always keccak256 of its secret. Several orders may
share one secret, so an order hash -> hashlock index sits beside the primary
records. The primary record is written first; a crash between the two writes
leaves an unindexed record, never an index entry pointing at nothing.
"""

import logging
from typing import Any, Callable, Iterable, Optional, Union

from bmn_resolver.crypto import compute_hashlock, normalize_address, normalize_hex32
from bmn_resolver.ledger.database import Database
from bmn_resolver.ledger.models import Secret, SecretStatus, utcnow
from bmn_resolver.ledger.repository import LedgerRepository
from bmn_resolver.utils.locks import KeyLockRegistry

logger = logging.getLogger(__name__)


class SecretConflictError(ValueError):
    """Raised when an order hash is already indexed to a different hashlock."""

    def __init__(self, order_hash: str, existing: str, attempted: str):
        self.order_hash = order_hash
        self.existing = existing
        self.attempted = attempted
        super().__init__(
            f"Order {order_hash} already maps to hashlock {existing}, refusing {attempted}"
        )


class SecretVault:
    """Stores secrets and tracks whether their reveal was confirmed on chain."""

    def __init__(self, database: Database, locks: Optional[KeyLockRegistry] = None):
        self.db = database
        self._locks = locks if locks is not None else KeyLockRegistry("vault")

    async def store(
        self,
        secret: Union[str, bytes],
        order_hash: str,
        escrow_address: str,
        chain_id: int,
    ) -> Secret:
        """Store a secret for an order.

        Re-storing a known secret leaves the primary record as it is and only
        adds the order index entry.

        Args:
            secret: 32-byte secret (hex or bytes)
            order_hash: Order the secret unlocks
            escrow_address: Escrow the secret was revealed to (or will be)
            chain_id: Chain of that escrow

        Returns:
            The primary secret record

        Raises:
            SecretConflictError: if order_hash is indexed to another hashlock
            InvalidHexError: on malformed secret, order hash or address
        """
        secret = normalize_hex32(secret)
        order_hash = normalize_hex32(order_hash)
        escrow_address = normalize_address(escrow_address)
        hashlock = compute_hashlock(secret)

        async with self._locks.lock(hashlock, operation="store"):
            async with self.db.session() as session:
                repo = LedgerRepository(session)
                record = await repo.get_secret(hashlock)
                if record is None:
                    record = await repo.add_secret(
                        Secret(
                            hashlock=hashlock,
                            secret=secret,
                            order_hash=order_hash,
                            escrow_address=escrow_address,
                            chain_id=chain_id,
                            revealed_at=utcnow(),
                            status=SecretStatus.PENDING,
                        )
                    )
                    logger.info(f"Stored secret for hashlock {hashlock[:10]} (order {order_hash[:10]})")

            async with self.db.session() as session:
                repo = LedgerRepository(session)
                entry = await repo.get_order_index(order_hash)
                if entry is None:
                    await repo.add_order_index(order_hash, hashlock)
                elif entry.hashlock != hashlock:
                    raise SecretConflictError(order_hash, entry.hashlock, hashlock)

        return record

    async def get_by_hashlock(self, hashlock: str) -> Optional[str]:
        """Get the secret for a hashlock."""
        record = await self.get_record(hashlock)
        return record.secret if record else None

    async def get_by_order_hash(self, order_hash: str) -> Optional[str]:
        """Get the secret for an order, via the order index."""
        async with self.db.session() as session:
            repo = LedgerRepository(session)
            entry = await repo.get_order_index(normalize_hex32(order_hash))
            if entry is None:
                return None
            record = await repo.get_secret(entry.hashlock)
            return record.secret if record else None

    async def get_record(self, hashlock: str) -> Optional[Secret]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_secret(normalize_hex32(hashlock))

    async def has_secret(self, hashlock: str) -> bool:
        return await self.get_record(hashlock) is not None

    async def _transition(
        self,
        hashlock: str,
        operation: str,
        apply: Callable[[Secret], Optional[bool]],
    ) -> Optional[Secret]:
        """Run apply on the stored record.

        apply returns True to write, None for an idempotent no-op (the record
        is returned as is) and False to refuse (None is returned).
        """
        hashlock = normalize_hex32(hashlock)
        async with self._locks.lock(hashlock, operation=operation):
            async with self.db.session() as session:
                record = await LedgerRepository(session).get_secret(hashlock)
                if record is None:
                    logger.warning(f"{operation}: no secret stored for hashlock {hashlock}")
                    return None
                outcome = apply(record)
                if outcome is False:
                    return None
            return record

    async def confirm(
        self, hashlock: str, tx_hash: str, gas_used: Optional[int] = None
    ) -> Optional[Secret]:
        """Record that the reveal transaction was confirmed on chain.

        Returns:
            The updated record, or None if the hashlock is unknown or the
            transition was refused
        """
        tx_hash = normalize_hex32(tx_hash)

        def apply(record: Secret) -> Optional[bool]:
            if record.status == SecretStatus.CONFIRMED:
                if record.tx_hash != tx_hash:
                    logger.warning(
                        f"Secret {record.hashlock[:10]} already confirmed in "
                        f"{record.tx_hash}, ignoring {tx_hash}"
                    )
                return None
            if record.status == SecretStatus.FAILED:
                logger.info(f"Late confirmation for failed secret {record.hashlock[:10]}")
            record.status = SecretStatus.CONFIRMED
            record.tx_hash = tx_hash
            record.gas_used = gas_used
            record.failure_reason = None
            return True

        return await self._transition(hashlock, "confirm", apply)

    async def mark_failed(
        self, hashlock: str, reason: str, reorg_correction: bool = False
    ) -> Optional[Secret]:
        """Mark a secret's reveal as failed.

        A confirmed reveal only fails as a reorg correction.
        """

        def apply(record: Secret) -> Optional[bool]:
            if record.status == SecretStatus.FAILED:
                return None
            if record.status == SecretStatus.CONFIRMED:
                if not reorg_correction:
                    logger.error(
                        f"Refused confirmed -> failed for secret {record.hashlock[:10]}: "
                        f"not a reorg correction"
                    )
                    return False
                logger.warning(
                    f"Reorg correction: secret {record.hashlock[:10]} reveal in "
                    f"{record.tx_hash} no longer canonical"
                )
            record.status = SecretStatus.FAILED
            record.failure_reason = reason
            return True

        return await self._transition(hashlock, "mark_failed", apply)

    async def list_pending(self) -> list[Secret]:
        async with self.db.session() as session:
            return await LedgerRepository(session).get_secrets_by_status(SecretStatus.PENDING)

    async def list_all(self) -> list[Secret]:
        """All secrets, newest first."""
        async with self.db.session() as session:
            return await LedgerRepository(session).get_all_secrets()

    def discard_locks(self, hashlocks: Iterable[str]) -> int:
        """Prune the per-hashlock locks of swaps that are no longer tracked."""
        return self._locks.discard(hashlocks)

    async def get_statistics(self) -> dict[str, Any]:
        async with self.db.session() as session:
            counts = await LedgerRepository(session).count_secrets_by_status()
        return {
            "total": sum(counts.values()),
            "pending": counts.get(SecretStatus.PENDING, 0),
            "confirmed": counts.get(SecretStatus.CONFIRMED, 0),
            "failed": counts.get(SecretStatus.FAILED, 0),
        }
