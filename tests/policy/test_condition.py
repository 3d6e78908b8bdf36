"""Callability oracle: verdict literals, evaluation order, read-only behaviour."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from rebase_access import RoleRegistry
from rebase_condition import RebaseCondition, evaluate_callability
from rebase_feeds import StaticFeed
from rebase_fixed import Fixed, SemanticType, index, rate, ratio
from rebase_ledger import InMemorySupplyLedger
from rebase_policy import RebasePolicy
from rebase_supply import MAX_SUPPLY
from rebase_types import (
    PolicyState,
    RateSnapshot,
    FeedReading,
    RebaseCallability,
    RebaseRejectedError,
    Role,
    TimingParameters,
)

ORCH = "orchestrator"
T0 = 1_700_000_040          # multiple of 60

INITIAL_CPI = index("251.712")
INITIAL_RATE = rate("2.51712")


def _pct(f, numerator, denominator=100):
    return Fixed(f.value * numerator // denominator, f.sem)


def _make_policy(
    exchange_rate=INITIAL_RATE,
    cpi=INITIAL_CPI,
    supply=1000,
    timing=(60, 0, 60),
    threshold="0.05",
):
    market = StaticFeed("market", SemanticType.RATE, exchange_rate.value)
    cpi_feed = StaticFeed("cpi", SemanticType.INDEX, cpi.value)
    ledger = InMemorySupplyLedger(supply)
    state = PolicyState(
        timing=TimingParameters(*timing),
        deviation_threshold=ratio(threshold),
        rebase_lag=30,
        base_index=index("100"),
    )
    access = RoleRegistry({ORCH: [Role.ORCHESTRATOR, Role.CONTROLLER]})
    policy = RebasePolicy(state, ledger, market, cpi_feed, access)
    return policy, market, cpi_feed, ledger


def _verdict(policy, now):
    return RebaseCondition(policy).is_rebase_callable(now)


class TestLiterals:
    def test_exact_strings(self):
        assert RebaseCallability.OK.value == "OK"
        assert RebaseCallability.NOT_ENOUGH_TIME.value == "not enough time elapsed since last rebase"
        assert RebaseCallability.NOT_IN_WINDOW.value == "not in rebase window"
        assert RebaseCallability.ZERO_SUPPLY_DELTA.value == "rebase with supply delta 0"
        assert RebaseCallability.MARKET_FEED_INVALID.value == "market aggregated value failed to compute"
        assert RebaseCallability.INDEX_FEED_INVALID.value == "price-index aggregated value failed to compute"


class TestElapsed:
    def test_not_enough_time_since_last_rebase(self):
        policy, market, _, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130), supply=1010)
        policy.rebase(ORCH, T0)
        assert _verdict(policy, T0 + 30) == "not enough time elapsed since last rebase"
        assert _verdict(policy, T0 + 60) == "OK"


class TestDeltaZero:
    def test_within_threshold_then_rebase_anyway(self):
        policy, market, _, ledger = _make_policy(
            exchange_rate=Fixed(INITIAL_RATE.value - 1, SemanticType.RATE),
        )
        assert _verdict(policy, T0) == "rebase with supply delta 0"

        record = policy.rebase(ORCH, T0)
        assert record.requested_supply_adjustment == 0
        assert policy.epoch == 1
        assert ledger.current_supply() == 1000
        assert _verdict(policy, T0 + 1) == "not enough time elapsed since last rebase"

    def test_max_supply_does_not_grow(self):
        policy, _, _, _ = _make_policy(
            exchange_rate=_pct(INITIAL_RATE, 200), supply=MAX_SUPPLY,
        )
        assert _verdict(policy, T0) == "rebase with supply delta 0"
        record = policy.rebase(ORCH, T0)
        assert record.requested_supply_adjustment == 0

    def test_max_supply_minus_one_grows_by_one(self):
        policy, _, _, ledger = _make_policy(
            exchange_rate=_pct(INITIAL_RATE, 200), supply=MAX_SUPPLY - 1,
        )
        assert _verdict(policy, T0) == "OK"
        record = policy.rebase(ORCH, T0)
        assert record.requested_supply_adjustment == 1
        assert ledger.current_supply() == MAX_SUPPLY


class TestFeeds:
    def test_market_invalid(self):
        policy, market, _, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130))
        market.store_validity(False)
        assert _verdict(policy, T0) == "market aggregated value failed to compute"
        market.store_validity(True)
        assert _verdict(policy, T0) == "OK"

    def test_index_invalid(self):
        policy, _, cpi, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130))
        cpi.store_validity(False)
        assert _verdict(policy, T0) == "price-index aggregated value failed to compute"
        cpi.store_validity(True)
        assert _verdict(policy, T0) == "OK"

    def test_market_reported_before_index(self):
        policy, market, cpi, _ = _make_policy()
        market.store_validity(False)
        cpi.store_validity(False)
        assert _verdict(policy, T0) == "market aggregated value failed to compute"

    def test_feed_checked_before_window(self):
        policy, market, _, _ = _make_policy(timing=(86400, 72000, 900))
        market.store_validity(False)
        assert _verdict(policy, 1_700_006_400) == "market aggregated value failed to compute"

    def test_zero_index_is_invalid(self):
        policy, _, cpi, _ = _make_policy()
        cpi.store_data(0)
        assert _verdict(policy, T0) == "price-index aggregated value failed to compute"

    def test_negative_rate_is_invalid(self):
        policy, market, _, _ = _make_policy()
        market.store_data(-1)
        assert _verdict(policy, T0) == "market aggregated value failed to compute"

    def test_raising_feed_reads_as_invalid(self):
        class BrokenFeed:
            def fetch(self):
                raise ConnectionError("oracle down")

        policy, _, _, _ = _make_policy()
        policy.set_market_feed(ORCH, BrokenFeed())
        assert _verdict(policy, T0) == "market aggregated value failed to compute"


class TestWindow:
    DAY_START = 1_700_006_400
    OPEN = DAY_START + 72000
    CLOSE = OPEN + 900

    def _policy(self):
        cpi_25_more = _pct(INITIAL_CPI, 125)
        return _make_policy(cpi=cpi_25_more, timing=(86400, 72000, 900))

    def test_5s_after_window_closes(self):
        policy, _, _, _ = self._policy()
        assert _verdict(policy, self.CLOSE + 5) == "not in rebase window"
        assert not policy.in_rebase_window(self.CLOSE + 5)
        with pytest.raises(RebaseRejectedError):
            policy.rebase(ORCH, self.CLOSE + 5)

    def test_5s_before_window_opens(self):
        policy, _, _, _ = self._policy()
        assert _verdict(policy, self.OPEN - 5) == "not in rebase window"
        assert not policy.in_rebase_window(self.OPEN - 5)
        with pytest.raises(RebaseRejectedError):
            policy.rebase(ORCH, self.OPEN - 5)

    def test_5s_after_window_opens(self):
        policy, _, _, _ = self._policy()
        assert _verdict(policy, self.OPEN + 5) == "OK"
        assert policy.in_rebase_window(self.OPEN + 5)
        policy.rebase(ORCH, self.OPEN + 5)
        assert policy.last_rebase_timestamp_sec == self.OPEN

    def test_5s_before_window_closes(self):
        policy, _, _, _ = self._policy()
        assert _verdict(policy, self.CLOSE - 5) == "OK"
        policy.rebase(ORCH, self.CLOSE - 5)
        assert policy.last_rebase_timestamp_sec == self.OPEN


class TestReadOnly:
    def test_check_does_not_mutate(self):
        policy, _, _, ledger = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130))
        before = policy.state
        report = RebaseCondition(policy).check(T0)
        assert report.ok
        assert report.supply_delta == 10
        assert policy.state is before
        assert ledger.changes == []
        assert len(policy.adjustment_log) == 0

    def test_raising_ledger_is_reported_not_raised(self):
        class UnreadableLedger(InMemorySupplyLedger):
            def current_supply(self):
                raise ConnectionError("ledger unreachable")

        policy, market, cpi, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130))
        access = RoleRegistry({ORCH: [Role.ORCHESTRATOR]})
        policy = RebasePolicy(policy.state, UnreadableLedger(1000), market, cpi, access)

        report = RebaseCondition(policy).check(T0)
        assert report.supply_error == "ledger unreachable"
        assert report.computation is None
        assert report.to_dict()["supply_error"] == "ledger unreachable"
        assert isinstance(RebaseCondition(policy).is_rebase_callable(T0), str)

    def test_supply_error_absent_on_healthy_ledger(self):
        policy, _, _, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 130))
        assert RebaseCondition(policy).check(T0).to_dict()["supply_error"] is None

    def test_oracle_agrees_with_rebase(self):
        policy, _, _, _ = _make_policy(exchange_rate=_pct(INITIAL_RATE, 70))
        report = RebaseCondition(policy).check(T0)
        record = policy.rebase(ORCH, T0)
        assert record.requested_supply_adjustment == report.supply_delta == -10

    def test_pure_evaluation(self):
        state = PolicyState(
            timing=TimingParameters(60, 0, 60),
            deviation_threshold=ratio("0"),
            rebase_lag=1,
            base_index=index("100"),
        )
        snapshot = RateSnapshot(
            exchange_rate=FeedReading(rate("1.1"), True),
            price_index=FeedReading(index("100"), True),
            current_supply=1000,
        )
        report = evaluate_callability(state, snapshot, T0)
        assert report.verdict == RebaseCallability.OK
        assert report.supply_delta == 100
        assert report.to_dict()["verdict"] == "OK"
