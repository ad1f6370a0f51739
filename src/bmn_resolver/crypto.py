"""Hashlock and secret utilities.

A hashlock is keccak256 over the raw 32 secret bytes, matching what the escrow
contracts check on withdrawal. Secrets, hashlocks and order hashes travel as
lowercase 0x-prefixed hex strings; addresses are stored lowercased.
"""

import logging
import re
import secrets
from typing import Union

from eth_utils import is_address, keccak, to_checksum_address

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_HASH = "0x" + "00" * 32

_HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

class InvalidHexError(ValueError):
    """Raised when a value is not a well-formed hex hash or address."""

    pass


def normalize_hex32(value: Union[str, bytes]) -> str:
    """Normalize a 32-byte value (secret, hashlock, order hash) to lowercase hex.

    Raises:
        InvalidHexError: if the value is not exactly 32 bytes
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise InvalidHexError(f"Expected 32 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()

    if not isinstance(value, str) or not _HEX32_RE.match(value):
        raise InvalidHexError(f"Invalid 32-byte hex value: {value!r}")
    return value.lower()


def normalize_address(value: str) -> str:
    """Validate an address and return it lowercased.

    Raises:
        InvalidHexError: if the value is not a 20-byte hex address
    """
    if not isinstance(value, str) or not is_address(value):
        raise InvalidHexError(f"Invalid address: {value!r}")
    return value.lower()


def checksum_address(value: str) -> str:
    """Validate an address and return its EIP-55 checksum form."""
    if not isinstance(value, str) or not is_address(value):
        raise InvalidHexError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


def generate_secret() -> str:
    """Generate a random 32-byte secret."""
    return "0x" + secrets.token_bytes(32).hex()


def compute_hashlock(secret: Union[str, bytes]) -> str:
    """Compute the keccak256 hashlock of a secret."""
    secret_hex = normalize_hex32(secret)
    return "0x" + keccak(bytes.fromhex(secret_hex[2:])).hex()


def validate_secret(secret: Union[str, bytes], hashlock: str) -> bool:
    """Check that a secret is the pre-image of a hashlock.

    Malformed inputs are reported as a mismatch rather than raised.
    """
    try:
        return compute_hashlock(secret) == normalize_hex32(hashlock)
    except InvalidHexError:
        return False

