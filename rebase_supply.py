"""
Rebase Engine — Supply Delta Calculator

(exchange_rate, price_index, current_supply) -> signed supply delta.

    target   = price_index * ONE / base_index
    rate     = min(exchange_rate, MAX_RATE)
    raw      = supply * (rate - target) / target     (0 inside the dead-band)
    damped   = raw / rebase_lag
    delta    = damped, clamped so supply + delta <= MAX_SUPPLY (growth only)

Every division truncates toward zero.  No floating point.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from rebase_fixed import (
    ONE,
    Fixed,
    SemanticType,
    TypeMismatchError,
    div_truncate,
    mul_div,
)

# Reported rates above this are treated as exactly this (1,000,000x the peg).
MAX_RATE = 10 ** 6 * ONE

# Largest supply for which supply * MAX_RATE still fits a signed 256-bit word.
MAX_SUPPLY = (2 ** 255 - 1) // MAX_RATE


@dataclass(frozen=True)
class SupplyDeltaComputation:
    """Every intermediate of one delta computation."""
    target_rate: Fixed              # RATE
    exchange_rate: Fixed            # RATE, after MAX_RATE clamp
    within_threshold: bool
    raw_delta: int
    damped_delta: int
    supply_delta: int               # final, after MAX_SUPPLY clamp

    @property
    def rate_clamped(self) -> bool:
        return self.exchange_rate.value == MAX_RATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_rate": self.target_rate.value,
            "exchange_rate": self.exchange_rate.value,
            "within_threshold": self.within_threshold,
            "raw_delta": self.raw_delta,
            "damped_delta": self.damped_delta,
            "supply_delta": self.supply_delta,
        }


def compute_target_rate(price_index: Fixed, base_index: Fixed) -> Fixed:
    """Peg rate implied by the price index relative to the base index."""
    if price_index.sem != SemanticType.INDEX or base_index.sem != SemanticType.INDEX:
        raise TypeMismatchError("price_index and base_index must be INDEX")
    return Fixed(value=mul_div(price_index.value, ONE, base_index.value), sem=SemanticType.RATE)


def clamp_exchange_rate(exchange_rate: Fixed) -> Fixed:
    return exchange_rate.min(Fixed(MAX_RATE, SemanticType.RATE))


def within_deviation_threshold(
    exchange_rate: Fixed,
    target_rate: Fixed,
    deviation_threshold: Fixed,
) -> bool:
    """True when |rate - target| is strictly below threshold * target."""
    absolute_threshold = target_rate.mul_ratio(deviation_threshold)
    return (exchange_rate - target_rate).abs() < absolute_threshold


def compute_raw_supply_delta(
    exchange_rate: Fixed,
    target_rate: Fixed,
    current_supply: int,
) -> int:
    """supply * (rate - target) / target, truncated toward zero."""
    return mul_div(current_supply, exchange_rate.value - target_rate.value, target_rate.value)


def clamp_to_max_supply(delta: int, current_supply: int, max_supply: int = MAX_SUPPLY) -> int:
    """Growth-only clamp.  Contraction passes through untouched."""
    if delta > 0 and current_supply + delta > max_supply:
        return max(max_supply - current_supply, 0)
    return delta


def compute_supply_delta(
    exchange_rate: Fixed,
    price_index: Fixed,
    current_supply: int,
    *,
    base_index: Fixed,
    deviation_threshold: Fixed,
    rebase_lag: int,
    max_supply: int = MAX_SUPPLY,
) -> SupplyDeltaComputation:
    """
    Full delta computation.

    Callers must pass a price_index whose target rate is > 0; the policy and
    the callability oracle screen that as an invalid index reading first.
    """
    target = compute_target_rate(price_index, base_index)
    if not target.is_positive():
        raise ValueError(f"target rate must be > 0, got {target.value}")
    if rebase_lag < 1:
        raise ValueError(f"rebase_lag must be >= 1, got {rebase_lag}")

    rate = clamp_exchange_rate(exchange_rate)

    if within_deviation_threshold(rate, target, deviation_threshold):
        return SupplyDeltaComputation(
            target_rate=target,
            exchange_rate=rate,
            within_threshold=True,
            raw_delta=0,
            damped_delta=0,
            supply_delta=0,
        )

    raw = compute_raw_supply_delta(rate, target, current_supply)
    damped = div_truncate(raw, rebase_lag)
    return SupplyDeltaComputation(
        target_rate=target,
        exchange_rate=rate,
        within_threshold=False,
        raw_delta=raw,
        damped_delta=damped,
        supply_delta=clamp_to_max_supply(damped, current_supply, max_supply),
    )
