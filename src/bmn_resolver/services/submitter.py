"""Transaction submitter interface and submission error classification.

Signing and broadcasting live outside this package; the scanner only talks to
a TransactionSubmitter. DryRunSubmitter fakes successful submissions.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from eth_utils import keccak

from bmn_resolver.ledger.models import Swap

logger = logging.getLogger(__name__)


class SubmissionErrorType(str, Enum):
    """Known failure modes of escrow transactions."""

    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RESOLVER_NOT_WHITELISTED = "resolver_not_whitelisted"
    FACTORY_PAUSED = "factory_paused"
    INVALID_EXTENSION_DATA = "invalid_extension_data"
    ESCROW_ALREADY_EXISTS = "escrow_already_exists"
    INVALID_HASHLOCK = "invalid_hashlock"
    INVALID_TIMELOCKS = "invalid_timelocks"
    NETWORK_ERROR = "network_error"
    TRANSACTION_REVERTED = "transaction_reverted"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    type: SubmissionErrorType
    recoverable: bool
    suggested_action: str


# Checked in order; the first matching pattern wins.
_ERROR_PATTERNS: list[tuple[tuple[str, ...], ErrorClassification]] = [
    (
        ("insufficient allowance", "transfer amount exceeds allowance"),
        ErrorClassification(
            SubmissionErrorType.INSUFFICIENT_ALLOWANCE, True,
            "Approve the factory contract for token transfers",
        ),
    ),
    (
        ("insufficient balance", "transfer amount exceeds balance", "transfer exceeds balance"),
        ErrorClassification(
            SubmissionErrorType.INSUFFICIENT_BALANCE, False,
            "Ensure sufficient token balance before retrying",
        ),
    ),
    (
        ("not whitelisted", "unauthorized resolver", "resolver not authorized"),
        ErrorClassification(
            SubmissionErrorType.RESOLVER_NOT_WHITELISTED, False,
            "Ask the factory owner to whitelist the resolver address",
        ),
    ),
    (
        ("paused",),
        ErrorClassification(
            SubmissionErrorType.FACTORY_PAUSED, True,
            "Wait for the factory to be unpaused and retry",
        ),
    ),
    (
        ("invalid extension", "invalid data", "decode error", "abi decode"),
        ErrorClassification(
            SubmissionErrorType.INVALID_EXTENSION_DATA, False,
            "Check the extension data encoding",
        ),
    ),
    (
        ("escrow already exists", "already initialized", "duplicate escrow"),
        ErrorClassification(
            SubmissionErrorType.ESCROW_ALREADY_EXISTS, False,
            "Use a different nonce or parameters",
        ),
    ),
    (
        ("invalid hashlock", "zero hashlock"),
        ErrorClassification(
            SubmissionErrorType.INVALID_HASHLOCK, False,
            "Ensure the hashlock is keccak256 of the secret",
        ),
    ),
    (
        ("invalid timelock", "timelock expired", "timelock too short"),
        ErrorClassification(
            SubmissionErrorType.INVALID_TIMELOCKS, False,
            "Check timelock values are in the future",
        ),
    ),
    (
        ("timeout", "timed out", "connection", "nonce too low", "underpriced", "rate limit"),
        ErrorClassification(
            SubmissionErrorType.NETWORK_ERROR, True,
            "Retry after backoff",
        ),
    ),
    (
        ("revert",),
        ErrorClassification(
            SubmissionErrorType.TRANSACTION_REVERTED, False,
            "Check all parameters and contract state",
        ),
    ),
]

_UNKNOWN = ErrorClassification(
    SubmissionErrorType.UNKNOWN, False, "Review transaction details and logs"
)


def classify_submission_error(message: str) -> ErrorClassification:
    """Map revert or RPC error text to an error type and recoverability."""
    lowered = message.lower()
    for patterns, classification in _ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return classification
    return _UNKNOWN


class SubmissionError(Exception):
    """Raised by a submitter when a transaction could not be landed.

    Recoverable errors are retried with backoff; the others fail the swap.
    """

    def __init__(
        self,
        message: str,
        recoverable: Optional[bool] = None,
        error_type: Optional[SubmissionErrorType] = None,
    ):
        super().__init__(message)
        classification = classify_submission_error(message)
        self.error_type = error_type or classification.type
        self.recoverable = classification.recoverable if recoverable is None else recoverable


@dataclass
class SubmissionResult:
    """Outcome of a landed transaction."""

    tx_hash: str
    gas_used: Optional[int] = None
    escrow_address: Optional[str] = None


class TransactionSubmitter(ABC):
    """Abstract submitter for the resolver's on-chain actions."""

    @abstractmethod
    async def create_destination_escrow(self, swap: Swap) -> SubmissionResult:
        """Deploy and fund the destination escrow; result carries its address."""
        raise NotImplementedError()

    @abstractmethod
    async def reveal_secret(self, swap: Swap, secret: str) -> SubmissionResult:
        """Reveal the secret on the destination chain."""
        raise NotImplementedError()

    @abstractmethod
    async def withdraw_source(self, swap: Swap, secret: str) -> SubmissionResult:
        """Withdraw from the source escrow with the secret."""
        raise NotImplementedError()

    @abstractmethod
    async def withdraw_destination(self, swap: Swap, secret: str) -> SubmissionResult:
        """Withdraw from the destination escrow with the secret."""
        raise NotImplementedError()

    @property
    @abstractmethod
    def name(self) -> str:
        """Submitter name."""
        raise NotImplementedError()


@dataclass
class DryRunSubmitter(TransactionSubmitter):
    """Simulated submitter: every action succeeds with a fake transaction."""

    gas_used: int = 100_000
    calls: list[tuple[str, str]] = field(default_factory=list)

    @property
    def name(self) -> str:
        return "dryrun"

    def _result(self, action: str, swap: Swap, escrow_address: Optional[str] = None) -> SubmissionResult:
        self.calls.append((action, swap.order_hash))
        tx_hash = "0x" + secrets.token_hex(32)
        logger.info(f"[dry-run] {action} for {swap.order_hash[:10]}: {tx_hash}")
        return SubmissionResult(tx_hash=tx_hash, gas_used=self.gas_used, escrow_address=escrow_address)

    async def create_destination_escrow(self, swap: Swap) -> SubmissionResult:
        # Deterministic fake escrow address for dev/test
        escrow = "0x" + keccak(text=f"dst-escrow:{swap.order_hash}")[-20:].hex()
        return self._result("create_destination_escrow", swap, escrow_address=escrow)

    async def reveal_secret(self, swap: Swap, secret: str) -> SubmissionResult:
        return self._result("reveal_secret", swap)

    async def withdraw_source(self, swap: Swap, secret: str) -> SubmissionResult:
        return self._result("withdraw_source", swap)

    async def withdraw_destination(self, swap: Swap, secret: str) -> SubmissionResult:
        return self._result("withdraw_destination", swap)
