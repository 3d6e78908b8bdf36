"""
Rebase Engine — Policy

RebasePolicy owns PolicyState and is the only thing that mutates it.
Every mutation (rebase and every configuration setter) runs under one lock;
readers take the current frozen state reference and never block.

Rebase path:
    authorize -> window/interval -> feed validity -> compute delta
    -> log order check -> ledger.apply_supply_change -> append AdjustmentRecord
    -> advance epoch + snapped timestamp

If the log append fails the ledger change is reversed and state is left as it
was, so state, ledger and log never disagree about the epoch.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Optional

from rebase_condition import compute_for_state, screen_readings
from rebase_fixed import Fixed, SemanticType
from rebase_log import AdjustmentLog
from rebase_supply import MAX_SUPPLY
from rebase_types import (
    AccessControl,
    AdjustmentRecord,
    AuthorizationError,
    ConfigurationError,
    DataFeed,
    PolicyState,
    RateSnapshot,
    RebaseCallability,
    RebaseRejectedError,
    Role,
    SupplyLedger,
    TimingParameters,
    WindowPhase,
    describe_verdict,
)
from rebase_window import (
    in_rebase_window,
    next_admissible_time,
    snapped_rebase_timestamp,
    time_since_last_rebase,
    timing_verdict,
    window_phase,
)

_log = logging.getLogger(__name__)


def unix_now() -> int:
    return int(time.time())


class RebasePolicy:
    """
    Elastic-supply rebase policy.

    Collaborators are injected: ledger, market feed, price-index feed and
    access control.  Timestamps are integer seconds; `now` may be passed
    explicitly (replay, tests) or taken from the injected clock.
    """

    def __init__(
        self,
        state: PolicyState,
        ledger: SupplyLedger,
        market_feed: DataFeed,
        index_feed: DataFeed,
        access: AccessControl,
        *,
        adjustment_log: Optional[AdjustmentLog] = None,
        clock: Callable[[], int] = unix_now,
        max_supply: int = MAX_SUPPLY,
    ) -> None:
        errors = state.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

        self._state = state
        self._ledger = ledger
        self._market_feed = market_feed
        self._index_feed = index_feed
        self._access = access
        self._log = adjustment_log if adjustment_log is not None else AdjustmentLog()
        self._clock = clock
        self._max_supply = max_supply
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> PolicyState:
        """Current state (a frozen snapshot)."""
        return self._state

    @property
    def epoch(self) -> int:
        return self._state.epoch

    @property
    def last_rebase_timestamp_sec(self) -> int:
        return self._state.last_rebase_timestamp_sec

    @property
    def timing(self) -> TimingParameters:
        return self._state.timing

    @property
    def max_supply(self) -> int:
        return self._max_supply

    @property
    def ledger(self) -> SupplyLedger:
        return self._ledger

    @property
    def market_feed(self) -> DataFeed:
        return self._market_feed

    @property
    def index_feed(self) -> DataFeed:
        return self._index_feed

    @property
    def adjustment_log(self) -> AdjustmentLog:
        return self._log

    def now(self) -> int:
        return int(self._clock())

    def in_rebase_window(self, now: Optional[int] = None) -> bool:
        return in_rebase_window(self._state.timing, self.now() if now is None else now)

    def window_phase(self, now: Optional[int] = None) -> WindowPhase:
        return window_phase(self._state.timing, self.now() if now is None else now)

    def next_admissible_time(self, now: Optional[int] = None) -> int:
        return next_admissible_time(self._state, self.now() if now is None else now)

    def read_snapshot(self) -> RateSnapshot:
        """Fetch both feeds and the ledger supply."""
        return RateSnapshot(
            exchange_rate=self._market_feed.fetch(),
            price_index=self._index_feed.fetch(),
            current_supply=self._ledger.current_supply(),
        )

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def _require_role(self, caller: str, role: Role) -> None:
        if not self._access.has_role(caller, role):
            _log.warning("Rejected %r: missing role %s", caller, role.value)
            raise AuthorizationError(f"{caller!r} lacks role {role.value!r}")

    # ------------------------------------------------------------------
    # Configuration (controller)
    # ------------------------------------------------------------------

    def _replace_state(self, new_state: PolicyState, what: str) -> None:
        """Validate and swap.  Caller holds the lock."""
        errors = new_state.validate()
        if errors:
            _log.warning("Rejected %s update: %s", what, "; ".join(errors))
            raise ConfigurationError("; ".join(errors))
        self._state = new_state
        _log.info("Updated %s", what)

    def set_rebase_timing_parameters(
        self,
        caller: str,
        min_rebase_time_interval_sec: int,
        rebase_window_offset_sec: int,
        rebase_window_length_sec: int,
    ) -> None:
        with self._lock:
            self._require_role(caller, Role.CONTROLLER)
            timing = TimingParameters(
                min_rebase_time_interval_sec=min_rebase_time_interval_sec,
                rebase_window_offset_sec=rebase_window_offset_sec,
                rebase_window_length_sec=rebase_window_length_sec,
            )
            self._replace_state(replace(self._state, timing=timing), "rebase timing parameters")

    def set_deviation_threshold(self, caller: str, deviation_threshold: Fixed) -> None:
        with self._lock:
            self._require_role(caller, Role.CONTROLLER)
            if deviation_threshold.sem != SemanticType.RATIO:
                raise ConfigurationError("deviation_threshold must be RATIO")
            self._replace_state(
                replace(self._state, deviation_threshold=deviation_threshold),
                "deviation threshold",
            )

    def set_rebase_lag(self, caller: str, rebase_lag: int) -> None:
        with self._lock:
            self._require_role(caller, Role.CONTROLLER)
            self._replace_state(replace(self._state, rebase_lag=rebase_lag), "rebase lag")

    def set_market_feed(self, caller: str, feed: DataFeed) -> None:
        with self._lock:
            self._require_role(caller, Role.CONTROLLER)
            self._market_feed = feed
            _log.info("Updated market feed")

    def set_index_feed(self, caller: str, feed: DataFeed) -> None:
        with self._lock:
            self._require_role(caller, Role.CONTROLLER)
            self._index_feed = feed
            _log.info("Updated price-index feed")

    # ------------------------------------------------------------------
    # Rebase (orchestrator)
    # ------------------------------------------------------------------

    def _reject(self, verdict: RebaseCallability, now: int, detail: str = "") -> None:
        _log.warning("Rebase rejected at %d: %s", now, describe_verdict(verdict, detail))
        raise RebaseRejectedError(verdict, detail)

    def rebase(self, caller: str, now: Optional[int] = None) -> AdjustmentRecord:
        """
        Attempt one rebase.

        Raises AuthorizationError or RebaseRejectedError without touching
        state.  A zero delta within an admissible window is still a rebase:
        the epoch advances and a record with adjustment 0 is appended.
        """
        with self._lock:
            self._require_role(caller, Role.ORCHESTRATOR)
            state = self._state
            if now is None:
                now = self.now()

            verdict = timing_verdict(state, now)
            if verdict == RebaseCallability.NOT_IN_WINDOW:
                self._reject(verdict, now, window_phase(state.timing, now).value)
            elif verdict is not None:
                self._reject(
                    verdict, now,
                    f"{time_since_last_rebase(state, now)}s of "
                    f"{state.timing.min_rebase_time_interval_sec}s",
                )

            snapshot = self.read_snapshot()
            verdict = screen_readings(snapshot, state.base_index)
            if verdict is not None:
                self._reject(verdict, now)

            computation = compute_for_state(state, snapshot, self._max_supply)
            new_state = state.advanced(snapped_rebase_timestamp(state.timing, now))
            self._log.check_next(new_state.epoch)

            supply_after = self._ledger.apply_supply_change(
                new_state.epoch, computation.supply_delta,
            )

            record = AdjustmentRecord(
                epoch=new_state.epoch,
                exchange_rate=computation.exchange_rate.value,
                price_index=snapshot.price_index.value.value,
                requested_supply_adjustment=computation.supply_delta,
                timestamp_sec=now,
                details={
                    "target_rate": computation.target_rate.value,
                    "supply_before": snapshot.current_supply,
                    "supply_after": supply_after,
                    "rate_clamped": computation.rate_clamped,
                    "last_rebase_timestamp_sec": new_state.last_rebase_timestamp_sec,
                },
            )
            try:
                self._log.append(record)
            except Exception:
                self._ledger.apply_supply_change(
                    new_state.epoch, snapshot.current_supply - supply_after,
                )
                _log.error(
                    "Epoch %d: adjustment log append failed; supply restored to %d",
                    new_state.epoch, snapshot.current_supply,
                )
                raise
            self._state = new_state

        _log.info(
            "Rebase epoch=%d rate=%s index=%s delta=%d supply=%d",
            record.epoch,
            computation.exchange_rate.to_decimal(),
            snapshot.price_index.value.to_decimal(),
            record.requested_supply_adjustment,
            supply_after,
        )
        return record
