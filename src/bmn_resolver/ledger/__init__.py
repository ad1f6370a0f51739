"""Ledger module for swap state, secrets and the processed event journal."""

from bmn_resolver.ledger.database import Database, normalize_database_url
from bmn_resolver.ledger.models import (
    TERMINAL_STATUSES,
    ProcessedEvent,
    Secret,
    SecretOrderIndex,
    SecretStatus,
    Swap,
    SwapStatus,
    utcnow,
)
from bmn_resolver.ledger.repository import LedgerRepository
from bmn_resolver.ledger.swaps import (
    SIDE_DESTINATION,
    SIDE_SOURCE,
    SwapLedger,
    can_transition,
    status_rank,
    withdrawal_sides_due,
)
from bmn_resolver.ledger.vault import SecretConflictError, SecretVault

__all__ = [
    # Models
    "ProcessedEvent",
    "Secret",
    "SecretOrderIndex",
    "Swap",
    # Enums
    "SecretStatus",
    "SwapStatus",
    "TERMINAL_STATUSES",
    # Database
    "Database",
    "normalize_database_url",
    "LedgerRepository",
    "utcnow",
    # Services
    "SwapLedger",
    "SecretVault",
    "SecretConflictError",
    "SIDE_SOURCE",
    "SIDE_DESTINATION",
    "can_transition",
    "status_rank",
    "withdrawal_sides_due",
]
