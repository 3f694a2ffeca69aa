# Chain access module
from trusted_stake.services.chain.fixed_point import (
    FixedPointDecodeError,
    decode,
    decode_fixed_u128,
)
from trusted_stake.services.chain.reader import ChainReader, ChainReadError, SubtensorChainReader

__all__ = [
    "FixedPointDecodeError",
    "decode",
    "decode_fixed_u128",
    "ChainReader",
    "ChainReadError",
    "SubtensorChainReader",
]
