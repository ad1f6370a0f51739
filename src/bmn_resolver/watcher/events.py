"""Chain events the resolver reacts to, and decoding of raw logs into them.

Raw logs use the JSON-RPC shape (``address``, ``topics``, ``data``,
``blockNumber``, ``transactionHash``, ``logIndex``, ``removed``); quantities
may be hex strings or ints.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Optional, Union

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from bmn_resolver.chains import ChainConfig
from bmn_resolver.crypto import InvalidHexError, normalize_address, normalize_hex32

logger = logging.getLogger(__name__)


class EventDecodeError(ValueError):
    """Raised when a raw log cannot be decoded into a known event."""

    pass


@dataclass(frozen=True)
class ChainEvent:
    """Base for normalized chain events."""

    chain_id: int
    block_number: int
    tx_hash: str
    log_index: int

    kind: ClassVar[str] = "unknown"

    @property
    def key(self) -> tuple[int, str, int]:
        """Identity of the underlying log, used for deduplication."""
        return (self.chain_id, self.tx_hash, self.log_index)


@dataclass(frozen=True)
class OrderFilled(ChainEvent):
    order_hash: str
    remaining_amount: int

    kind: ClassVar[str] = "order_filled"


@dataclass(frozen=True)
class SourceEscrowCreated(ChainEvent):
    """Source escrow deployed by the factory.

    SrcEscrowCreated carries the order hash and maker; the postInteraction
    flavour carries the hashlock and the calling protocol instead.
    """

    escrow: str
    taker: str
    amount: int
    order_hash: Optional[str] = None
    hashlock: Optional[str] = None
    maker: Optional[str] = None
    protocol: Optional[str] = None

    kind: ClassVar[str] = "source_escrow_created"


@dataclass(frozen=True)
class DestinationEscrowCreated(ChainEvent):
    escrow: str
    hashlock: str
    taker: str

    kind: ClassVar[str] = "destination_escrow_created"


@dataclass(frozen=True)
class PostInteractionExecuted(ChainEvent):
    order_hash: str
    taker: str
    src_escrow: str
    dst_escrow: str

    kind: ClassVar[str] = "post_interaction_executed"


@dataclass(frozen=True)
class PostInteractionFailed(ChainEvent):
    order_hash: str
    taker: str
    reason: str

    kind: ClassVar[str] = "post_interaction_failed"


@dataclass(frozen=True)
class EscrowWithdrawn(ChainEvent):
    """EscrowWithdrawal from an escrow; reveals the secret on chain.

    The log carries only the secret; the escrow is the emitting address.
    """

    escrow: str
    secret: str
    receiver: Optional[str] = None

    kind: ClassVar[str] = "escrow_withdrawn"


Event = Union[
    OrderFilled,
    SourceEscrowCreated,
    DestinationEscrowCreated,
    PostInteractionExecuted,
    PostInteractionFailed,
    EscrowWithdrawn,
]


def event_topic(signature: str) -> str:
    """topic0 for a canonical event signature."""
    return "0x" + keccak(text=signature).hex()


# Contract that emits an event: limit order protocol, escrow factory or any address.
SOURCE_LOP = "limit_order_protocol"
SOURCE_FACTORY = "escrow_factory"
SOURCE_ANY = "any"


@dataclass(frozen=True)
class EventSpec:
    """How to recognize and decode one event signature."""

    name: str
    indexed_types: tuple[str, ...]
    data_types: tuple[str, ...]
    emitter: str
    build: Callable[[dict[str, Any], str, list, list], ChainEvent]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.indexed_types + self.data_types)})"

    @property
    def topic(self) -> str:
        return event_topic(self.signature)


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _addr(value: str) -> str:
    return normalize_address(value)


EVENT_SPECS: tuple[EventSpec, ...] = (
    EventSpec(
        name="OrderFilled",
        indexed_types=(),
        data_types=("bytes32", "uint256"),
        emitter=SOURCE_LOP,
        build=lambda base, address, topics, data: OrderFilled(
            **base, order_hash=_hex(data[0]), remaining_amount=data[1]
        ),
    ),
    EventSpec(
        name="SrcEscrowCreated",
        indexed_types=("address", "bytes32", "address"),
        data_types=("address", "uint256"),
        emitter=SOURCE_FACTORY,
        build=lambda base, address, topics, data: SourceEscrowCreated(
            **base,
            escrow=_addr(topics[0]),
            order_hash=_hex(topics[1]),
            maker=_addr(topics[2]),
            taker=_addr(data[0]),
            amount=data[1],
        ),
    ),
    EventSpec(
        name="PostInteractionEscrowCreated",
        indexed_types=("address", "bytes32", "address"),
        data_types=("address", "uint256"),
        emitter=SOURCE_FACTORY,
        build=lambda base, address, topics, data: SourceEscrowCreated(
            **base,
            escrow=_addr(topics[0]),
            hashlock=_hex(topics[1]),
            protocol=_addr(topics[2]),
            taker=_addr(data[0]),
            amount=data[1],
        ),
    ),
    EventSpec(
        name="DstEscrowCreated",
        indexed_types=("address", "bytes32", "address"),
        data_types=(),
        emitter=SOURCE_FACTORY,
        build=lambda base, address, topics, data: DestinationEscrowCreated(
            **base,
            escrow=_addr(topics[0]),
            hashlock=_hex(topics[1]),
            taker=_addr(topics[2]),
        ),
    ),
    EventSpec(
        name="PostInteractionExecuted",
        indexed_types=("bytes32", "address"),
        data_types=("address", "address"),
        emitter=SOURCE_FACTORY,
        build=lambda base, address, topics, data: PostInteractionExecuted(
            **base,
            order_hash=_hex(topics[0]),
            taker=_addr(topics[1]),
            src_escrow=_addr(data[0]),
            dst_escrow=_addr(data[1]),
        ),
    ),
    EventSpec(
        name="PostInteractionFailed",
        indexed_types=("bytes32", "address"),
        data_types=("string",),
        emitter=SOURCE_FACTORY,
        build=lambda base, address, topics, data: PostInteractionFailed(
            **base,
            order_hash=_hex(topics[0]),
            taker=_addr(topics[1]),
            reason=data[0],
        ),
    ),
    EventSpec(
        name="EscrowWithdrawal",
        indexed_types=(),
        data_types=("bytes32",),
        emitter=SOURCE_ANY,
        build=lambda base, address, topics, data: EscrowWithdrawn(
            **base,
            escrow=_addr(address),
            secret=_hex(data[0]),
        ),
    ),
)

SPECS_BY_TOPIC: dict[str, EventSpec] = {spec.topic: spec for spec in EVENT_SPECS}


@dataclass(frozen=True)
class LogFilter:
    """eth_getLogs / eth_newFilter filter for one event."""

    topic: str
    address: Optional[str] = None

    def as_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"topics": [self.topic]}
        if self.address:
            params["address"] = self.address
        return params

    def matches(self, log: dict[str, Any]) -> bool:
        topics = log.get("topics") or []
        if not topics or str(topics[0]).lower() != self.topic:
            return False
        if self.address and str(log.get("address", "")).lower() != self.address.lower():
            return False
        return True


def build_filters(chain: ChainConfig) -> list[LogFilter]:
    """One filter per watched event on a chain."""
    emitters = {
        SOURCE_LOP: chain.limit_order_protocol,
        SOURCE_FACTORY: chain.escrow_factory,
        SOURCE_ANY: None,
    }
    return [LogFilter(topic=spec.topic, address=emitters[spec.emitter]) for spec in EVENT_SPECS]


def _to_int(value: Union[int, str, None], field: str) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError:
            pass
    raise EventDecodeError(f"Invalid {field}: {value!r}")


def _to_bytes(value: Union[str, bytes], field: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    body = value[2:] if value[:2].lower() == "0x" else value
    try:
        return bytes.fromhex(body)
    except ValueError as e:
        raise EventDecodeError(f"Invalid {field}: {e}") from e


def decode_log(chain_id: int, log: dict[str, Any]) -> ChainEvent:
    """Decode a raw log into a normalized event.

    Raises:
        EventDecodeError: unknown topic, wrong topic count or malformed data
    """
    topics = log.get("topics") or []
    if not topics:
        raise EventDecodeError("Log has no topics")

    spec = SPECS_BY_TOPIC.get(str(topics[0]).lower())
    if spec is None:
        raise EventDecodeError(f"Unknown event topic {topics[0]}")

    if len(topics) - 1 != len(spec.indexed_types):
        raise EventDecodeError(
            f"{spec.name}: expected {len(spec.indexed_types)} indexed topics, got {len(topics) - 1}"
        )

    try:
        decoded_topics = [
            abi_decode([typ], _to_bytes(topic, "topic"))[0]
            for typ, topic in zip(spec.indexed_types, topics[1:])
        ]
        data = list(abi_decode(list(spec.data_types), _to_bytes(log.get("data") or "0x", "data")))
    except (DecodingError, UnicodeDecodeError) as e:
        raise EventDecodeError(f"{spec.name}: malformed log data: {e}") from e

    tx_hash = log.get("transactionHash")
    try:
        tx_hash = normalize_hex32(tx_hash)
    except (InvalidHexError, TypeError) as e:
        raise EventDecodeError(f"Invalid transactionHash: {tx_hash!r}") from e

    base = {
        "chain_id": chain_id,
        "block_number": _to_int(log.get("blockNumber"), "blockNumber"),
        "tx_hash": tx_hash,
        "log_index": _to_int(log.get("logIndex"), "logIndex"),
    }

    try:
        return spec.build(base, log.get("address") or "", decoded_topics, data)
    except InvalidHexError as e:
        raise EventDecodeError(f"{spec.name}: {e}") from e


SPECS_BY_NAME: dict[str, EventSpec] = {spec.name: spec for spec in EVENT_SPECS}


def _abi_value(typ: str, value: Any) -> Any:
    if typ == "bytes32" and isinstance(value, str):
        return _to_bytes(value, typ)
    return value


def build_raw_log(
    name: str,
    address: str,
    indexed: list,
    data: list,
    block_number: int,
    tx_hash: str,
    log_index: int = 0,
) -> dict[str, Any]:
    """Build a JSON-RPC shaped log for an event (simulated chains and tests)."""
    spec = SPECS_BY_NAME[name]
    topics = [spec.topic] + [
        "0x" + abi_encode([typ], [_abi_value(typ, value)]).hex()
        for typ, value in zip(spec.indexed_types, indexed)
    ]
    data = [_abi_value(typ, value) for typ, value in zip(spec.data_types, data)]
    return {
        "address": address.lower(),
        "topics": topics,
        "data": "0x" + abi_encode(list(spec.data_types), data).hex(),
        "blockNumber": hex(block_number),
        "transactionHash": tx_hash,
        "logIndex": hex(log_index),
        "removed": False,
    }
