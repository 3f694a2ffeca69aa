"""U64F64 fixed-point decoding for Subtensor share values.

Alpha shares and hotkey share totals are stored on chain as 128-bit
fixed-point numbers: the high 64 bits are the integer part and the low
64 bits are the fraction. Depending on the client they surface as a hex
string, a ``{"bits": ...}`` mapping, a scale object wrapping either of
those, or the raw bits as an int.
"""

from typing import Any, Mapping, Optional

import structlog

from trusted_stake.core.config import get_settings

logger = structlog.get_logger()

U64_MAX = 2**64 - 1
HEX_DIGITS = 32  # 128 bits


class FixedPointDecodeError(ValueError):
    """Raised for malformed fixed-point input when decoding strictly."""


def _normalize(value: Any) -> str:
    """Reduce every accepted input shape to a bare hex string."""
    # Scale objects from the substrate client carry the payload in .value
    if not isinstance(value, (str, bytes, int, Mapping)) and hasattr(value, "value"):
        value = value.value

    if isinstance(value, Mapping):
        if "bits" not in value:
            raise FixedPointDecodeError(f"Mapping without 'bits': {value!r}")
        value = value["bits"]

    if isinstance(value, bool):
        raise FixedPointDecodeError(f"Invalid fixed-point input: {value!r}")

    if isinstance(value, int):
        if value < 0:
            raise FixedPointDecodeError(f"Negative fixed-point bits: {value}")
        hex_string = format(value, "x")
    elif isinstance(value, bytes):
        hex_string = value.hex()
    elif isinstance(value, str):
        hex_string = value.strip()
        if hex_string[:2].lower() == "0x":
            hex_string = hex_string[2:]
    else:
        raise FixedPointDecodeError(f"Invalid fixed-point input type: {type(value).__name__}")

    if len(hex_string) > HEX_DIGITS:
        raise FixedPointDecodeError(f"Fixed-point value wider than 128 bits: {hex_string!r}")
    try:
        int(hex_string or "0", 16)
    except ValueError:
        raise FixedPointDecodeError(f"Not a hex string: {hex_string!r}") from None

    return hex_string.rjust(HEX_DIGITS, "0")


def decode_fixed_u128(value: Any, strict: Optional[bool] = None) -> float:
    """Decode a U64F64 value into a float.

    Args:
        value: Hex string (optionally ``0x`` prefixed), ``{"bits": ...}``
            mapping, scale object, raw-bits int or big-endian bytes.
        strict: Raise FixedPointDecodeError on malformed input instead of
            returning 0.0. Defaults to ``Settings.strict_fixed_point_decode``.

    Returns:
        integer part + fractional part / (2**64 - 1)
    """
    try:
        hex_string = _normalize(value)
    except FixedPointDecodeError as e:
        if strict is None:
            strict = get_settings().strict_fixed_point_decode
        if strict:
            raise
        logger.warning("Fixed-point decode failed, reading as zero", error=str(e))
        return 0.0

    high_bits = int(hex_string[:16], 16)
    low_bits = int(hex_string[16:], 16)
    return high_bits + low_bits / U64_MAX


decode = decode_fixed_u128
