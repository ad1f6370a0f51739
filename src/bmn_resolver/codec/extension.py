"""PostInteraction extension data codec.

The escrow factory's postInteraction hook receives the factory address (20
bytes) followed by the ABI encoding of the escrow creation parameters:

    address srcImplementation, address dstImplementation, uint256 timelocks,
    bytes32 hashlock, address srcMaker, address srcTaker, address srcToken,
    uint256 srcAmount, uint256 srcSafetyDeposit, address dstReceiver,
    address dstToken, uint256 dstAmount, uint256 dstSafetyDeposit,
    uint256 nonce

All fields are static, so every field occupies exactly one 32-byte word.
"""

import logging
import threading
import time
from dataclasses import astuple, dataclass, fields
from typing import Optional, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError

from bmn_resolver.crypto import InvalidHexError, checksum_address, normalize_hex32

logger = logging.getLogger(__name__)

ESCROW_PARAM_TYPES = [
    "address",  # srcImplementation
    "address",  # dstImplementation
    "uint256",  # timelocks
    "bytes32",  # hashlock
    "address",  # srcMaker
    "address",  # srcTaker
    "address",  # srcToken
    "uint256",  # srcAmount
    "uint256",  # srcSafetyDeposit
    "address",  # dstReceiver
    "address",  # dstToken
    "uint256",  # dstAmount
    "uint256",  # dstSafetyDeposit
    "uint256",  # nonce
]

ADDRESS_LENGTH = 20
WORD_LENGTH = 32
PARAMS_LENGTH = len(ESCROW_PARAM_TYPES) * WORD_LENGTH
MIN_POST_INTERACTION_LENGTH = ADDRESS_LENGTH + PARAMS_LENGTH

UINT128_MAX = (1 << 128) - 1
UINT256_MAX = (1 << 256) - 1

_ADDRESS_FIELDS = (
    "src_implementation",
    "dst_implementation",
    "src_maker",
    "src_taker",
    "src_token",
    "dst_receiver",
    "dst_token",
)
_UINT_FIELDS = (
    "timelocks",
    "src_amount",
    "src_safety_deposit",
    "dst_amount",
    "dst_safety_deposit",
    "nonce",
)


class ExtensionDataError(ValueError):
    """Raised when escrow parameters cannot be encoded."""

    pass


class ExtensionDecodeError(ExtensionDataError):
    """Raised when extension bytes are malformed or belong to another factory."""

    pass


class MakerTraits:
    """Maker traits flags for the limit order protocol (MakerTraitsLib)."""

    HAS_EXTENSION = 1 << 249
    POST_INTERACTION = 1 << 251

    @classmethod
    def for_post_interaction(cls) -> int:
        """Traits for an order that carries an extension and calls postInteraction."""
        return cls.HAS_EXTENSION | cls.POST_INTERACTION


@dataclass
class EscrowParams:
    """Escrow creation parameters, in wire order.

    Addresses are normalized to checksum form and the hashlock to lowercase hex
    on construction, so equal values always compare equal.
    """

    src_implementation: str
    dst_implementation: str
    timelocks: int
    hashlock: str
    src_maker: str
    src_taker: str
    src_token: str
    src_amount: int
    src_safety_deposit: int
    dst_receiver: str
    dst_token: str
    dst_amount: int
    dst_safety_deposit: int
    nonce: int

    def __post_init__(self):
        try:
            for name in _ADDRESS_FIELDS:
                setattr(self, name, checksum_address(getattr(self, name)))
            self.hashlock = normalize_hex32(self.hashlock)
        except InvalidHexError as e:
            raise ExtensionDataError(str(e)) from e

        for name in _UINT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ExtensionDataError(f"{name} must be an integer, got {type(value).__name__}")
            if not 0 <= value <= UINT256_MAX:
                raise ExtensionDataError(f"{name} out of uint256 range: {value}")

    def as_abi_values(self) -> list:
        """Values in wire order, with the hashlock as raw bytes."""
        values = list(astuple(self))
        values[3] = bytes.fromhex(self.hashlock[2:])
        return values


def _to_bytes(data: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        body = data[2:] if data[:2].lower() == "0x" else data
        try:
            return bytes.fromhex(body)
        except ValueError as e:
            raise ExtensionDecodeError(f"Invalid hex data: {e}") from e
    raise ExtensionDecodeError(f"Unsupported data type: {type(data).__name__}")


def encode_post_interaction_data(factory_address: str, params: EscrowParams) -> bytes:
    """Encode postInteraction data: factory address followed by escrow parameters."""
    try:
        factory = checksum_address(factory_address)
    except InvalidHexError as e:
        raise ExtensionDataError(str(e)) from e

    try:
        escrow_data = abi_encode(ESCROW_PARAM_TYPES, params.as_abi_values())
    except EncodingError as e:
        raise ExtensionDataError(f"Failed to encode escrow parameters: {e}") from e

    return bytes.fromhex(factory[2:]) + escrow_data


def decode_post_interaction_data(
    data: Union[bytes, str], expected_factory: str
) -> EscrowParams:
    """Decode postInteraction data produced by encode_post_interaction_data.

    Raises:
        ExtensionDecodeError: on short input, a foreign factory prefix or
            malformed parameter words
    """
    raw = _to_bytes(data)

    if len(raw) < MIN_POST_INTERACTION_LENGTH:
        raise ExtensionDecodeError(
            f"PostInteraction data too short: {len(raw)} bytes, "
            f"need at least {MIN_POST_INTERACTION_LENGTH}"
        )

    try:
        expected = checksum_address(expected_factory)
    except InvalidHexError as e:
        raise ExtensionDecodeError(f"Invalid expected factory: {e}") from e

    prefix = checksum_address("0x" + raw[:ADDRESS_LENGTH].hex())
    if prefix != expected:
        raise ExtensionDecodeError(
            f"Factory prefix mismatch: got {prefix}, expected {expected}"
        )

    body = raw[ADDRESS_LENGTH:MIN_POST_INTERACTION_LENGTH]
    try:
        values = list(abi_decode(ESCROW_PARAM_TYPES, body))
    except DecodingError as e:
        raise ExtensionDecodeError(f"Malformed escrow parameters: {e}") from e

    values[3] = "0x" + values[3].hex()
    names = [f.name for f in fields(EscrowParams)]
    try:
        return EscrowParams(**dict(zip(names, values)))
    except ExtensionDataError as e:
        raise ExtensionDecodeError(str(e)) from e


def encode_extension(post_interaction_data: bytes) -> bytes:
    """Wrap postInteraction data into a limit order extension blob.

    The extension starts with a 32-byte offsets word. Every field except the
    postInteraction data is empty, so the only non-zero entry is the
    postInteraction end offset held in the low four bytes.
    """
    length = len(post_interaction_data)
    if length > 0xFFFFFFFF:
        raise ExtensionDataError(f"PostInteraction data too long: {length} bytes")

    offsets = bytearray(WORD_LENGTH)
    offsets[28:32] = length.to_bytes(4, "big")
    return bytes(offsets) + bytes(post_interaction_data)


def extract_post_interaction_data(extension: Union[bytes, str]) -> bytes:
    """Extract the postInteraction data from an extension built by encode_extension."""
    raw = _to_bytes(extension)
    if len(raw) < WORD_LENGTH:
        raise ExtensionDecodeError(f"Extension too short: {len(raw)} bytes")

    length = int.from_bytes(raw[28:32], "big")
    payload = raw[WORD_LENGTH:]
    if length > len(payload):
        raise ExtensionDecodeError(
            f"Extension offset {length} exceeds payload of {len(payload)} bytes"
        )
    return payload[:length]


def _check_uint128(name: str, value: int) -> None:
    if not 0 <= value <= UINT128_MAX:
        raise ExtensionDataError(f"{name} out of uint128 range: {value}")


def pack_timelocks(
    src_cancellation_delay: int,
    dst_withdrawal_delay: int,
    now: Optional[int] = None,
) -> int:
    """Pack absolute deadlines: source cancellation high, destination withdrawal low.

    Args:
        src_cancellation_delay: Seconds from now until source cancellation
        dst_withdrawal_delay: Seconds from now until destination withdrawal
        now: Unix timestamp to count from (defaults to the current time)
    """
    if now is None:
        now = int(time.time())
    src_cancellation = now + src_cancellation_delay
    dst_withdrawal = now + dst_withdrawal_delay
    _check_uint128("src cancellation deadline", src_cancellation)
    _check_uint128("dst withdrawal deadline", dst_withdrawal)
    return (src_cancellation << 128) | dst_withdrawal


def unpack_timelocks(timelocks: int) -> tuple[int, int]:
    """Return (src_cancellation_deadline, dst_withdrawal_deadline)."""
    return timelocks >> 128, timelocks & UINT128_MAX


def pack_deposits(src_safety_deposit: int, dst_safety_deposit: int) -> int:
    """Pack safety deposits: destination high, source low."""
    _check_uint128("src safety deposit", src_safety_deposit)
    _check_uint128("dst safety deposit", dst_safety_deposit)
    return (dst_safety_deposit << 128) | src_safety_deposit


def unpack_deposits(deposits: int) -> tuple[int, int]:
    """Return (src_safety_deposit, dst_safety_deposit)."""
    return deposits & UINT128_MAX, deposits >> 128


class NonceGenerator:
    """Monotonic nonce source: (epoch milliseconds << 20) | sequence.

    Up to 2**20 distinct nonces per millisecond within one process.
    """

    SEQUENCE_BITS = 20

    def __init__(self):
        self._lock = threading.Lock()
        self._last_ms = 0
        self._sequence = 0

    def next(self) -> int:
        with self._lock:
            now_ms = int(time.time() * 1000)
            if now_ms <= self._last_ms:
                now_ms = self._last_ms
                self._sequence += 1
                if self._sequence >> self.SEQUENCE_BITS:
                    # sequence exhausted for this millisecond, borrow the next one
                    now_ms += 1
                    self._sequence = 0
            else:
                self._sequence = 0
            self._last_ms = now_ms
            return (now_ms << self.SEQUENCE_BITS) | self._sequence


_default_nonces = NonceGenerator()


def generate_nonce() -> int:
    """Generate a process-unique nonce for escrow address derivation."""
    return _default_nonces.next()
