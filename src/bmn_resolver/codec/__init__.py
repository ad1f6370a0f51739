"""Extension data codec for escrow creation via postInteraction."""

from bmn_resolver.codec.extension import (
    MIN_POST_INTERACTION_LENGTH,
    EscrowParams,
    ExtensionDataError,
    ExtensionDecodeError,
    MakerTraits,
    NonceGenerator,
    decode_post_interaction_data,
    encode_extension,
    encode_post_interaction_data,
    extract_post_interaction_data,
    generate_nonce,
    pack_deposits,
    pack_timelocks,
    unpack_deposits,
    unpack_timelocks,
)

__all__ = [
    "MIN_POST_INTERACTION_LENGTH",
    "EscrowParams",
    "ExtensionDataError",
    "ExtensionDecodeError",
    "MakerTraits",
    "NonceGenerator",
    "decode_post_interaction_data",
    "encode_extension",
    "encode_post_interaction_data",
    "extract_post_interaction_data",
    "generate_nonce",
    "pack_deposits",
    "pack_timelocks",
    "unpack_deposits",
    "unpack_timelocks",
]
