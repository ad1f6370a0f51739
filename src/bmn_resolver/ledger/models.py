"""SQLAlchemy models for the swap ledger and secret vault."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String, Text, TypeDecorator
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from bmn_resolver.crypto import ZERO_ADDRESS, ZERO_HASH


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form SQLite hands back)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Uint256(TypeDecorator):
    """uint256 stored as a decimal string; SQLite integers stop at 2**63."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: Optional[int], dialect) -> Optional[str]:
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value: Optional[str], dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class SwapStatus(str, Enum):
    """Lifecycle status of a cross-chain swap."""

    CREATED = "created"
    ORDER_FILLED = "order_filled"
    SOURCE_ESCROW_CREATED = "source_escrow_created"
    ALICE_DEPOSITED = "alice_deposited"
    DEST_ESCROW_CREATED = "dest_escrow_created"
    BOB_DEPOSITED = "bob_deposited"
    SECRET_REVEALED = "secret_revealed"
    SOURCE_WITHDRAWN = "source_withdrawn"
    DEST_WITHDRAWN = "dest_withdrawn"
    COMPLETED = "completed"      # Both sides withdrawn
    FAILED = "failed"            # Business failure, see last_error
    EXPIRED = "expired"          # Timed out before completion


class SecretStatus(str, Enum):
    """Status of a revealed secret."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.EXPIRED})


def _enum_column(enum_cls: type[Enum]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Swap(Base):
    """One cross-chain swap, keyed by the limit order hash."""

    __tablename__ = "swaps"

    order_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(66), default=ZERO_HASH, index=True)
    status: Mapped[SwapStatus] = mapped_column(
        _enum_column(SwapStatus), default=SwapStatus.CREATED, nullable=False, index=True
    )
    alice: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)  # maker
    bob: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)  # taker / resolver

    # Source side (Alice locks)
    src_chain_id: Mapped[int] = mapped_column(default=0)
    src_token: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)
    src_amount: Mapped[int] = mapped_column(Uint256, default=0)
    src_escrow: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)
    src_escrow_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    src_deposited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    src_withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Destination side (Bob locks)
    dst_chain_id: Mapped[int] = mapped_column(default=0)
    dst_token: Mapped[str] = mapped_column(String(42), default=ZERO_ADDRESS)
    dst_amount: Mapped[int] = mapped_column(Uint256, default=0)
    dst_escrow: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)
    dst_escrow_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dst_deposited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dst_withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    secret: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    secret_revealed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    secret_reveal_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(default=0)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    last_update_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    version: Mapped[int] = mapped_column(nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<Swap {self.order_hash[:10]} {self.status.value}>"


class Secret(Base):
    """A revealed secret, keyed by its hashlock (keccak256 of the secret)."""

    __tablename__ = "secrets"

    hashlock: Mapped[str] = mapped_column(String(66), primary_key=True)
    secret: Mapped[str] = mapped_column(String(66), nullable=False)
    order_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    escrow_address: Mapped[str] = mapped_column(String(42), nullable=False)
    chain_id: Mapped[int] = mapped_column(nullable=False)
    revealed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    status: Mapped[SecretStatus] = mapped_column(
        _enum_column(SecretStatus), default=SecretStatus.PENDING, nullable=False, index=True
    )
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Secret {self.hashlock[:10]} {self.status.value}>"


class SecretOrderIndex(Base):
    """Secondary index: order hash -> hashlock.

    Several orders may share one secret; an order never maps to two hashlocks.
    """

    __tablename__ = "secret_order_index"

    order_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ProcessedEvent(Base):
    """Tracks chain events already applied, for idempotent event handling.

    Prevents double application when catch-up and live subscription both
    deliver the same log, or when a restart replays recent blocks.
    """

    __tablename__ = "processed_events"
    __table_args__ = (
        Index("ix_processed_events_key", "chain_id", "tx_hash", "log_index", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    order_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
