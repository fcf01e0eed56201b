"""
Field Element Helpers

Quantized tensor values are signed integers. Memory cells hold field
elements in [0, p), with negative integers represented as p - |x|.
"""

# BN254 scalar field
DEFAULT_MODULUS = 21888242871839275222246405745257275088548364400416034343698204186575808495617


def fits_field(value: int, modulus: int = DEFAULT_MODULUS) -> bool:
    """True if a signed integer has an unambiguous field representation."""
    return -(modulus // 2) <= value <= modulus // 2


def to_field(value: int, modulus: int = DEFAULT_MODULUS) -> int:
    """Canonical field representation of a signed integer."""
    return value % modulus


def from_field(element: int, modulus: int = DEFAULT_MODULUS) -> int:
    """Centred (signed) integer for a field element."""
    element %= modulus
    if element > modulus // 2:
        return element - modulus
    return element


def parse_value(raw, modulus: int = DEFAULT_MODULUS) -> int:
    """Parse a witness entry into a signed integer.

    Accepts ints, decimal strings ("-5") and hex field elements ("0x..."),
    which are centred into the signed range. Floats and bools are rejected.
    """
    if isinstance(raw, bool):
        raise ValueError(f"boolean is not a field value: {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        text = raw.strip()
        if text.lower().startswith("0x"):
            return from_field(int(text, 16), modulus)
        return int(text, 10)
    raise ValueError(f"not an integer value: {raw!r}")


def round_half_away(numerator: int, denominator: int) -> int:
    """Integer division rounding half away from zero."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    q, r = divmod(abs(numerator), denominator)
    if 2 * r >= denominator:
        q += 1
    return q if numerator >= 0 else -q


def rescale_int(value: int, shift: int) -> int:
    """Move a quantized value down by `shift` bits (up when negative)."""
    if shift == 0:
        return value
    if shift < 0:
        return value << -shift
    return round_half_away(value, 1 << shift)
