"""Money and identifier primitives.

Every amount is an ``int`` count of the smallest currency unit (fils for AED).
Commission rates are basis points, where 10000 bps is 100%.
"""

from __future__ import annotations

import secrets

BPS_DENOMINATOR = 10_000
MINOR_UNITS_PER_MAJOR = 100

# Crockford-style alphabet without I, L, O, U so refs survive being read aloud.
REFERENCE_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
REFERENCE_LENGTH = 8


def ensure_fils(value: object, field: str = "amount") -> int:
    # bool is an int subclass; reject it along with floats and Decimals.
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{field} must be an integer count of minor units, got {type(value).__name__}")
    return value


def validate_bps(rate_bps: int) -> int:
    ensure_fils(rate_bps, field="rate_bps")
    if not 0 <= rate_bps <= BPS_DENOMINATOR:
        raise ValueError(f"rate_bps must be within 0..{BPS_DENOMINATOR}, got {rate_bps}")
    return rate_bps


def apply_bps(amount: int, rate_bps: int) -> int:
    """Commission on ``amount`` at ``rate_bps``, rounded down."""
    ensure_fils(amount)
    validate_bps(rate_bps)
    return (amount * rate_bps) // BPS_DENOMINATOR


def round_half_up(numerator: int, denominator: int) -> int:
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    if numerator < 0:
        return -round_half_up(-numerator, denominator)
    return (2 * numerator + denominator) // (2 * denominator)


def prorate(amount: int, part: int, whole: int) -> int:
    """``round(amount * part / whole)`` in exact integer arithmetic, halves rounded up."""
    ensure_fils(amount)
    ensure_fils(part, field="part")
    ensure_fils(whole, field="whole")
    return round_half_up(amount * part, whole)


def format_fils(amount: int, currency: str = "AED") -> str:
    ensure_fils(amount)
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), MINOR_UNITS_PER_MAJOR)
    return f"{sign}{major}.{minor:02d} {currency}"


def new_reference(prefix: str) -> str:
    body = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{prefix}-{body}"
