"""
Rebase Engine — Callability Oracle

Read-only replica of the rebase preconditions.  Re-derives, without touching
policy state, whether a rebase would currently go through and why not.

Evaluation order (first failure wins):
    1. market feed invalid
    2. price-index feed invalid
    3. not in rebase window
    4. not enough time elapsed since last rebase
    5. supply delta == 0 (informational)
    6. OK

Nothing raises out of check(): feed failures become verdicts, and a failed
ledger read is reported in supply_error with no computation attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Optional

from rebase_fixed import Fixed, SemanticType
from rebase_supply import (
    MAX_SUPPLY,
    SupplyDeltaComputation,
    compute_supply_delta,
    compute_target_rate,
)
from rebase_types import (
    DataFeed,
    FeedReading,
    PolicyState,
    RateSnapshot,
    RebaseCallability,
)
from rebase_window import timing_verdict, window_phase

if TYPE_CHECKING:
    from rebase_policy import RebasePolicy

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallabilityReport:
    """Outcome of one callability evaluation."""
    verdict: RebaseCallability
    now: int
    epoch: int
    computation: Optional[SupplyDeltaComputation] = None
    supply_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.verdict == RebaseCallability.OK

    @property
    def supply_delta(self) -> Optional[int]:
        return self.computation.supply_delta if self.computation else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "now": self.now,
            "epoch": self.epoch,
            "computation": self.computation.to_dict() if self.computation else None,
            "supply_error": self.supply_error,
        }


def screen_readings(snapshot: RateSnapshot, base_index: Fixed) -> Optional[RebaseCallability]:
    """
    Feed-validity verdict, market first.

    A reading flagged valid but unusable (negative rate, non-positive index,
    or an index so small the target rate truncates to zero) counts as invalid.
    """
    market = snapshot.exchange_rate
    if not market.valid or market.value.sem != SemanticType.RATE or market.value.is_negative():
        return RebaseCallability.MARKET_FEED_INVALID

    cpi = snapshot.price_index
    if not cpi.valid or cpi.value.sem != SemanticType.INDEX or not cpi.value.is_positive():
        return RebaseCallability.INDEX_FEED_INVALID
    if not compute_target_rate(cpi.value, base_index).is_positive():
        return RebaseCallability.INDEX_FEED_INVALID
    return None


def compute_for_state(
    state: PolicyState,
    snapshot: RateSnapshot,
    max_supply: int = MAX_SUPPLY,
) -> SupplyDeltaComputation:
    return compute_supply_delta(
        snapshot.exchange_rate.value,
        snapshot.price_index.value,
        snapshot.current_supply,
        base_index=state.base_index,
        deviation_threshold=state.deviation_threshold,
        rebase_lag=state.rebase_lag,
        max_supply=max_supply,
    )


def evaluate_callability(
    state: PolicyState,
    snapshot: RateSnapshot,
    now: int,
    max_supply: int = MAX_SUPPLY,
) -> CallabilityReport:
    """Pure evaluation over a state snapshot and a rate snapshot."""
    feed_verdict = screen_readings(snapshot, state.base_index)
    if feed_verdict is not None:
        return CallabilityReport(verdict=feed_verdict, now=now, epoch=state.epoch)

    verdict = timing_verdict(state, now)
    if verdict is not None:
        return CallabilityReport(verdict=verdict, now=now, epoch=state.epoch)

    computation = compute_for_state(state, snapshot, max_supply)
    if computation.supply_delta == 0:
        verdict = RebaseCallability.ZERO_SUPPLY_DELTA
    else:
        verdict = RebaseCallability.OK
    return CallabilityReport(
        verdict=verdict, now=now, epoch=state.epoch, computation=computation,
    )


def safe_fetch(feed: DataFeed, sem: SemanticType, name: str) -> FeedReading:
    """fetch() for the read path: a raising feed reads as invalid."""
    try:
        return feed.fetch()
    except Exception as e:
        _log.warning("Feed %s failed during callability check: %s", name, e)
        return FeedReading(value=Fixed.zero(sem), valid=False)


class RebaseCondition:
    """
    Advisory oracle in front of a RebasePolicy.

    Reads the policy's current state reference once per check, so it never
    observes a half-applied rebase and never blocks on the policy lock.
    """

    def __init__(self, policy: "RebasePolicy") -> None:
        self._policy = policy

    def check(self, now: Optional[int] = None) -> CallabilityReport:
        policy = self._policy
        state = policy.state
        if now is None:
            now = policy.now()

        market = safe_fetch(policy.market_feed, SemanticType.RATE, "market")
        cpi = safe_fetch(policy.index_feed, SemanticType.INDEX, "price-index")

        supply_error = None
        try:
            supply = policy.ledger.current_supply()
        except Exception as e:
            _log.warning("Ledger read failed during callability check: %s", e)
            supply, supply_error = 0, str(e)

        snapshot = RateSnapshot(exchange_rate=market, price_index=cpi, current_supply=supply)
        report = evaluate_callability(state, snapshot, now, policy.max_supply)
        if supply_error is not None:
            # A delta against a supply we could not read is meaningless
            report = replace(report, computation=None, supply_error=supply_error)
        _log.debug(
            "Callability at %d (%s): %s",
            now, window_phase(state.timing, now).value, report.verdict.value,
        )
        return report

    def is_rebase_callable(self, now: Optional[int] = None) -> str:
        """The advisory verdict literal."""
        return self.check(now).verdict.value
