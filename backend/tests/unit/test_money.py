"""
Unit tests for money parsing.

WHAT: Test amount parsing, quantization and formatting
WHY: Prices must be exact two-place decimals and never go through float math
HOW: Feed representative inputs to parse_amount / format_amount
"""

from decimal import Decimal

import pytest

from marketplace.utils.exceptions import InvalidAmountError
from marketplace.utils.money import MAX_AMOUNT, format_amount, parse_amount


@pytest.mark.unit
class TestParseAmount:

    @pytest.mark.parametrize("raw, expected", [
        ("50", Decimal("50.00")),
        (50, Decimal("50.00")),
        ("49.99", Decimal("49.99")),
        (19.99, Decimal("19.99")),
        (Decimal("10.005"), Decimal("10.01")),
        (" 7.5 ", Decimal("7.50")),
    ])
    def test_valid_amounts_are_quantized(self, raw, expected):
        amount = parse_amount(raw)
        assert amount == expected
        assert amount.as_tuple().exponent == -2

    @pytest.mark.parametrize("raw", [0, "0", "-5", -0.01, "abc", "", None, True, "NaN", "Infinity", "0.001"])
    def test_invalid_amounts_rejected(self, raw):
        with pytest.raises(InvalidAmountError) as exc_info:
            parse_amount(raw)
        assert exc_info.value.code == "INVALID_AMOUNT"

    @pytest.mark.parametrize("raw", ["1e27", "1e30", 1e30, "1000000000000"])
    def test_huge_amounts_rejected(self, raw):
        with pytest.raises(InvalidAmountError):
            parse_amount(raw)

    def test_upper_bound_is_inclusive(self):
        assert parse_amount(str(MAX_AMOUNT)) == MAX_AMOUNT


@pytest.mark.unit
def test_format_amount():
    assert format_amount(Decimal("50"), "GBP") == "50.00 GBP"
