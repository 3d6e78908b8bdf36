"""
Rebase Engine — Fixed-Point Arithmetic (Pure Integer)

All authoritative arithmetic in the delta path is integer math at a common
18-decimal scale.  Decimal is used ONLY for:
  - Ingress (parsing operator / feed input)
  - Display (human-readable output)

Every division in the policy goes through div_truncate() so the rounding
direction (toward zero) is the same at each call site.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, getcontext
from enum import Enum, auto
from typing import Final

getcontext().prec = 96  # For ingress parsing only


# =============================================================================
# SCALES
# =============================================================================

DECIMALS: Final[int] = 18
ONE: Final[int] = 10 ** DECIMALS


class SemanticType(Enum):
    """
    Semantic types for fixed-point values.

    - RATE: market exchange rate (quote units per token)
    - INDEX: price index reading (e.g. CPI)
    - RATIO: dimensionless ratio (deviation threshold)

    All three share the DECIMALS scale so cross-type products only ever need
    a single ONE rescale.  They stay distinct types so a threshold can never
    be added to a rate by accident.
    """
    RATE = auto()
    INDEX = auto()
    RATIO = auto()


class FixedError(Exception):
    """Base exception for Fixed operations."""


class TypeMismatchError(FixedError):
    """Raised when semantic types don't match for same-type operations."""


# =============================================================================
# INTEGER DIVISION
# =============================================================================

def div_truncate(numerator: int, denominator: int) -> int:
    """
    Integer division rounding toward zero.

    Python's // floors, which changes sign-dependent results:
        -7 // 2 == -4
        div_truncate(-7, 2) == -3
    """
    if denominator == 0:
        raise FixedError("division by zero")
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        return -quotient
    return quotient


def mul_div(a: int, b: int, denominator: int) -> int:
    """(a * b) / denominator, truncated toward zero.  No intermediate rounding."""
    return div_truncate(a * b, denominator)


# =============================================================================
# FIXED
# =============================================================================

@dataclass(frozen=True, slots=True)
class Fixed:
    """
    Fixed-point decimal with semantic type.

    INVARIANTS:
    - value is always an integer scaled by 10**DECIMALS
    - All arithmetic is pure integer math
    """
    value: int
    sem: SemanticType

    def __post_init__(self) -> None:
        if not isinstance(self.value, int) or isinstance(self.value, bool):
            raise FixedError(f"value must be int, got {type(self.value).__name__}")

    # =========================================================================
    # INGRESS
    # =========================================================================

    @classmethod
    def from_decimal(cls, x: Decimal, sem: SemanticType) -> Fixed:
        """INGRESS ONLY: Convert external Decimal to Fixed, truncating toward zero."""
        try:
            scaled = x * Decimal(ONE)
            int_val = int(scaled.to_integral_value(rounding=ROUND_DOWN))
        except ArithmeticError as exc:
            raise FixedError(f"{x} is out of range: {exc!r}") from exc
        return cls(value=int_val, sem=sem)

    @classmethod
    def from_str(cls, s: str, sem: SemanticType) -> Fixed:
        """INGRESS: Parse a decimal string ("251.712", "0.05")."""
        try:
            parsed = Decimal(str(s).strip())
        except ArithmeticError as exc:
            raise FixedError(f"not a decimal number: {s!r}") from exc
        if not parsed.is_finite():
            raise FixedError(f"not a finite number: {s!r}")
        return cls.from_decimal(parsed, sem)

    @classmethod
    def from_int(cls, n: int, sem: SemanticType) -> Fixed:
        """Whole number (e.g. index 100 -> 100 * 10**18)."""
        return cls(value=n * ONE, sem=sem)

    @classmethod
    def zero(cls, sem: SemanticType) -> Fixed:
        return cls(value=0, sem=sem)

    # =========================================================================
    # DISPLAY
    # =========================================================================

    def to_decimal(self) -> Decimal:
        """DISPLAY ONLY: Convert to Decimal for human output."""
        return Decimal(self.value) / Decimal(ONE)

    def __repr__(self) -> str:
        return f"Fixed({self.to_decimal()}, {self.sem.name})"

    # =========================================================================
    # SAME-TYPE ARITHMETIC
    # =========================================================================

    def _check_same(self, other: Fixed, op: str) -> None:
        if self.sem != other.sem:
            raise TypeMismatchError(f"Cannot {op} {self.sem.name} and {other.sem.name}")

    def __add__(self, other: Fixed) -> Fixed:
        self._check_same(other, "add")
        return Fixed(value=self.value + other.value, sem=self.sem)

    def __sub__(self, other: Fixed) -> Fixed:
        self._check_same(other, "subtract")
        return Fixed(value=self.value - other.value, sem=self.sem)

    def __neg__(self) -> Fixed:
        return Fixed(value=-self.value, sem=self.sem)

    def abs(self) -> Fixed:
        return Fixed(value=abs(self.value), sem=self.sem)

    def mul_ratio(self, ratio: Fixed) -> Fixed:
        """self * ratio, truncated toward zero (ratio must be RATIO)."""
        if ratio.sem != SemanticType.RATIO:
            raise TypeMismatchError(f"Expected RATIO, got {ratio.sem.name}")
        return Fixed(value=mul_div(self.value, ratio.value, ONE), sem=self.sem)

    def min(self, other: Fixed) -> Fixed:
        self._check_same(other, "compare")
        return self if self.value <= other.value else other

    # =========================================================================
    # COMPARISON
    # =========================================================================

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fixed):
            return NotImplemented
        if self.sem != other.sem:
            return NotImplemented
        return self.value == other.value

    def __hash__(self) -> int:
        return hash((self.value, self.sem))

    def __lt__(self, other: Fixed) -> bool:
        if not isinstance(other, Fixed):
            return NotImplemented
        self._check_same(other, "compare")
        return self.value < other.value

    def __le__(self, other: Fixed) -> bool:
        if not isinstance(other, Fixed):
            return NotImplemented
        self._check_same(other, "compare")
        return self.value <= other.value

    def __gt__(self, other: Fixed) -> bool:
        if not isinstance(other, Fixed):
            return NotImplemented
        self._check_same(other, "compare")
        return self.value > other.value

    def __ge__(self, other: Fixed) -> bool:
        if not isinstance(other, Fixed):
            return NotImplemented
        self._check_same(other, "compare")
        return self.value >= other.value

    def is_zero(self) -> bool:
        return self.value == 0

    def is_positive(self) -> bool:
        return self.value > 0

    def is_negative(self) -> bool:
        return self.value < 0


def rate(s: str) -> Fixed:
    """Shorthand: Fixed RATE from a decimal string."""
    return Fixed.from_str(s, SemanticType.RATE)


def index(s: str) -> Fixed:
    """Shorthand: Fixed INDEX from a decimal string."""
    return Fixed.from_str(s, SemanticType.INDEX)


def ratio(s: str) -> Fixed:
    """Shorthand: Fixed RATIO from a decimal string."""
    return Fixed.from_str(s, SemanticType.RATIO)
