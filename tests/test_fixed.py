"""Fixed-point arithmetic: truncation direction, ingress parsing, type safety."""

import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from rebase_fixed import (
    ONE,
    Fixed,
    FixedError,
    SemanticType,
    TypeMismatchError,
    div_truncate,
    index,
    mul_div,
    rate,
    ratio,
)


class TestDivTruncate:
    def test_positive(self):
        assert div_truncate(7, 2) == 3

    def test_negative_numerator_truncates_toward_zero(self):
        assert div_truncate(-7, 2) == -3
        assert -7 // 2 == -4

    def test_negative_denominator(self):
        assert div_truncate(7, -2) == -3
        assert div_truncate(-7, -2) == 3

    def test_exact(self):
        assert div_truncate(-300, 30) == -10

    def test_zero_denominator_raises(self):
        with pytest.raises(FixedError):
            div_truncate(1, 0)


def test_mul_div_has_no_intermediate_rounding():
    # 1000 * (-3e17) / 1e18 = -300 exactly
    assert mul_div(1000, -3 * 10 ** 17, ONE) == -300
    assert mul_div(10, 1, 3) == 3
    assert mul_div(-10, 1, 3) == -3


class TestIngress:
    def test_from_str(self):
        assert rate("1.3").value == 13 * 10 ** 17
        assert index("251.712").value == 251712 * 10 ** 15
        assert ratio("0.05").value == 5 * 10 ** 16

    def test_from_str_truncates_beyond_scale(self):
        f = Fixed.from_str("0.0000000000000000019", SemanticType.RATE)
        assert f.value == 1

    def test_from_str_rejects_garbage(self):
        with pytest.raises(FixedError):
            Fixed.from_str("abc", SemanticType.RATE)

    def test_from_str_rejects_non_finite(self):
        with pytest.raises(FixedError):
            Fixed.from_str("NaN", SemanticType.RATE)
        with pytest.raises(FixedError):
            Fixed.from_str("Infinity", SemanticType.INDEX)

    def test_from_int(self):
        assert Fixed.from_int(100, SemanticType.INDEX).value == 100 * ONE

    def test_value_must_be_int(self):
        with pytest.raises(FixedError):
            Fixed(1.5, SemanticType.RATE)
        with pytest.raises(FixedError):
            Fixed(True, SemanticType.RATE)

    def test_to_decimal(self):
        assert rate("1.05").to_decimal() == Decimal("1.05")

    def test_from_str_out_of_range_raises_fixed_error(self):
        with pytest.raises(FixedError):
            Fixed.from_str("1e999999", SemanticType.RATE)
        with pytest.raises(FixedError):
            rate("-1e999999")

    def test_from_decimal_out_of_range_raises_fixed_error(self):
        with pytest.raises(FixedError):
            Fixed.from_decimal(Decimal("9e999998"), SemanticType.INDEX)


class TestTypeSafety:
    def test_add_mismatch_raises(self):
        with pytest.raises(TypeMismatchError):
            rate("1") + ratio("0.05")

    def test_compare_mismatch_raises(self):
        with pytest.raises(TypeMismatchError):
            rate("1") < index("1")

    def test_equality_across_types_is_false(self):
        assert rate("1") != index("1")

    def test_mul_ratio_requires_ratio(self):
        with pytest.raises(TypeMismatchError):
            rate("1").mul_ratio(rate("0.05"))

    def test_mul_ratio_truncates(self):
        assert rate("1").mul_ratio(ratio("0.05")) == rate("0.05")
        assert Fixed(-7, SemanticType.RATE).mul_ratio(ratio("0.5")).value == -3

    def test_min_and_abs(self):
        assert rate("2").min(rate("3")) == rate("2")
        assert (rate("1") - rate("1.3")).abs() == rate("0.3")
        assert (-rate("1")).is_negative()
