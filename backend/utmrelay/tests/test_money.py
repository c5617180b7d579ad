from decimal import Decimal

import pytest

from utmrelay.exceptions import ValidationError
from utmrelay.services.money import (
    AmountUnit,
    looks_like_minor_units,
    normalize_amount,
    parse_brl_amount,
    to_minor_units,
)


def test_minor_integer_is_divided_by_100():
    assert normalize_amount(4990, AmountUnit.MINOR) == Decimal("49.90")
    assert normalize_amount("4990", AmountUnit.MINOR) == Decimal("49.90")


def test_minor_value_with_decimals_is_not_divided_again():
    assert normalize_amount(49.90, AmountUnit.MINOR) == Decimal("49.90")
    assert normalize_amount("150.00", AmountUnit.MINOR) == Decimal("150.00")


def test_major_value_is_kept():
    assert normalize_amount(4990, AmountUnit.MAJOR) == Decimal("4990.00")
    assert normalize_amount(Decimal("49.9"), AmountUnit.MAJOR) == Decimal("49.90")


def test_unknown_unit_uses_threshold_heuristic():
    assert normalize_amount(15000, AmountUnit.UNKNOWN, threshold=10000) == Decimal("150.00")
    assert normalize_amount(9999, AmountUnit.UNKNOWN, threshold=10000) == Decimal("9999.00")
    assert looks_like_minor_units(10000, 10000)
    assert not looks_like_minor_units(15000.0, 10000)


def test_normalizing_a_normalized_value_is_a_no_op():
    once = normalize_amount(4990, AmountUnit.MINOR)
    for unit in AmountUnit:
        assert normalize_amount(once, unit) == once


def test_none_passes_through_and_garbage_is_rejected():
    assert normalize_amount(None) is None
    with pytest.raises(ValidationError):
        normalize_amount("abc")
    with pytest.raises(ValidationError):
        normalize_amount(True)


def test_to_minor_units():
    assert to_minor_units(Decimal("49.90")) == 4990
    assert to_minor_units(Decimal("0.005")) == 1
    assert to_minor_units(None) == 0


@pytest.mark.parametrize(
    "text,expected",
    [
        ("R$ 49,90", Decimal("49.90")),
        ("R$ 1.234,56", Decimal("1234.56")),
        ("49.90", Decimal("49.90")),
        ("1,234.56", Decimal("1234.56")),
        ("R$ 1.234", Decimal("1234.00")),
        ("*R$ 97,00*", Decimal("97.00")),
    ],
)
def test_parse_brl_amount(text, expected):
    assert parse_brl_amount(text) == expected


def test_parse_brl_amount_without_number():
    assert parse_brl_amount("sem valor") is None
    assert parse_brl_amount("") is None
    assert parse_brl_amount(None) is None
