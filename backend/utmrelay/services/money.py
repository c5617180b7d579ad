"""Monetary value normalization.

WHAT:
    Converts inbound amounts to the canonical representation stored on
    sales: a Decimal in major currency units with two decimal places.

WHY:
    Gateways send cents, chat messages send "R$ 49,90", and destinations
    want either major units (Meta, TikTok, Kwai) or cents (UTMify). A value
    converted twice is off by a factor of 100, so the only place that
    decides "is this already cents?" is `looks_like_minor_units`.

RULES:
    - MAJOR: value kept as is
    - MINOR: integral representations are divided by 100; a value that
      already carries decimals is treated as major (never divided twice)
    - UNKNOWN: divided by 100 only when `looks_like_minor_units` says so
    - Output is quantized to cents and written with an explicit fraction,
      so normalizing an output again is a no-op under every unit
"""

import enum
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from ..exceptions import ValidationError

Number = Union[int, float, str, Decimal]

CENTS = Decimal("0.01")
HUNDRED = Decimal("100")

# Integral amounts at or above this are read as cents when the unit is unknown
MINOR_UNIT_THRESHOLD = 10000

# First number-looking token, e.g. "1.234,56" in "R$ 1.234,56 (liquido)"
_AMOUNT_RE = re.compile(r"\d[\d.,]*")


class AmountUnit(str, enum.Enum):
    MAJOR = "major"
    MINOR = "minor"
    UNKNOWN = "unknown"


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr() keeps the shortest round-tripping form (49.9 -> "49.9")
        return Decimal(repr(value))
    try:
        return Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc


def has_fractional_representation(value: Number) -> bool:
    """True when the value is written with a decimal part (49.90, "150.00", 49.9).

    An int, or a string/Decimal without a decimal point, has none.
    """
    if isinstance(value, float):
        return True
    if isinstance(value, int):
        return False
    return _to_decimal(value).as_tuple().exponent < 0


def looks_like_minor_units(value: Number, threshold: int) -> bool:
    """Heuristic: integral amount at or above `threshold` is probably cents.

    Known ambiguity: a genuine R$ 15000 charge written without cents also
    matches. Callers that know the source unit should pass MINOR/MAJOR to
    `normalize_amount` instead of relying on this.
    """
    if has_fractional_representation(value):
        return False
    return _to_decimal(value) >= threshold


def normalize_amount(
    value: Optional[Number],
    unit: AmountUnit = AmountUnit.UNKNOWN,
    threshold: int = MINOR_UNIT_THRESHOLD,
) -> Optional[Decimal]:
    """Normalize an amount to major units, quantized to cents.

    Args:
        value: Raw amount (int cents, float, "49.90", Decimal); None passes through
        unit: What the source says the unit is
        threshold: Cut-off for the UNKNOWN heuristic

    Returns:
        Decimal with two decimal places, or None

    Raises:
        ValidationError: If the value is not a number

    Examples:
        normalize_amount(4990, AmountUnit.MINOR)     -> Decimal("49.90")
        normalize_amount(49.90, AmountUnit.MINOR)    -> Decimal("49.90")
        normalize_amount(Decimal("49.90"))           -> Decimal("49.90")
    """
    if value is None:
        return None

    amount = _to_decimal(value)
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")

    if unit == AmountUnit.MINOR:
        is_minor = not has_fractional_representation(value)
    elif unit == AmountUnit.UNKNOWN:
        is_minor = looks_like_minor_units(value, threshold)
    else:
        is_minor = False

    if is_minor:
        amount = amount / HUNDRED

    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Optional[Decimal]) -> int:
    """Major units -> integer cents (None -> 0)."""
    if amount is None:
        return 0
    return int((_to_decimal(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_brl_amount(text: Optional[str]) -> Optional[Decimal]:
    """Parse a human-written BRL amount ("R$ 1.234,56", "49,90", "49.90").

    Returns None when no number can be read.
    """
    if not text:
        return None

    match = _AMOUNT_RE.search(text)
    if not match:
        return None
    cleaned = match.group(0).strip(",.")

    if "," in cleaned and "." in cleaned:
        # The right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        cleaned = head.replace(",", "") + "." + tail
    elif cleaned.count(".") > 1 or (("." in cleaned) and len(cleaned.rpartition(".")[2]) == 3):
        # "1.234" / "1.234.567" use dots as thousands separators
        cleaned = cleaned.replace(".", "")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return normalize_amount(amount, AmountUnit.MAJOR)
