"""
Rebase Simulation — replay an observation series through a real RebasePolicy.

Input: DataFrame with one row per observation
    timestamp       int seconds
    exchange_rate   decimal (string preferred; parsed to Fixed at ingress)
    price_index     decimal
    rate_valid      optional bool (default True)
    index_valid     optional bool (default True)

At every row the feeds are set to the observation, the callability verdict is
recorded, and a rebase is attempted.  Deterministic: same inputs, same frame.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import pandas as pd

from rebase_access import RoleRegistry
from rebase_condition import RebaseCondition
from rebase_config import PolicyConfig, initial_state
from rebase_feeds import StaticFeed
from rebase_fixed import Fixed, SemanticType
from rebase_ledger import InMemorySupplyLedger
from rebase_policy import RebasePolicy
from rebase_types import RebaseRejectedError, Role

_log = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("timestamp", "exchange_rate", "price_index")

SIMULATION_COLUMNS = [
    "timestamp",
    "window_phase",
    "verdict",
    "rebased",
    "epoch",
    "exchange_rate",
    "price_index",
    "target_rate",
    "supply_before",
    "supply_delta",
    "supply_after",
]

_OPERATOR = "simulation"


def _scaled(value: Any, sem: SemanticType) -> int:
    return Fixed.from_str(str(value), sem).value


def _flag(row: Any, column: str) -> bool:
    value = getattr(row, column, True)
    if pd.isna(value):
        return True
    return bool(value)


def load_observations(path: str) -> pd.DataFrame:
    """Read a CSV of observations, keeping decimal columns as strings."""
    frame = pd.read_csv(
        path,
        dtype={"exchange_rate": str, "price_index": str},
    )
    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise ValueError(f"{path}: missing columns {', '.join(missing)}")
    return frame


def simulate_rebases(
    observations: pd.DataFrame,
    config: PolicyConfig,
    initial_supply: int,
) -> pd.DataFrame:
    """Run every observation through a fresh policy.  Returns one row per observation."""
    missing = [c for c in REQUIRED_COLUMNS if c not in observations.columns]
    if missing:
        raise ValueError(f"observations missing columns {', '.join(missing)}")

    market = StaticFeed("market", SemanticType.RATE)
    cpi = StaticFeed("price-index", SemanticType.INDEX)
    ledger = InMemorySupplyLedger(initial_supply)
    access = RoleRegistry({_OPERATOR: [Role.ORCHESTRATOR, Role.CONTROLLER]})
    policy = RebasePolicy(initial_state(config), ledger, market, cpi, access)
    condition = RebaseCondition(policy)

    rows: List[Dict[str, Any]] = []
    ordered = observations.sort_values("timestamp", kind="mergesort")
    for obs in ordered.itertuples(index=False):
        now = int(obs.timestamp)
        market.store_data(_scaled(obs.exchange_rate, SemanticType.RATE))
        market.store_validity(_flag(obs, "rate_valid"))
        cpi.store_data(_scaled(obs.price_index, SemanticType.INDEX))
        cpi.store_validity(_flag(obs, "index_valid"))

        supply_before = ledger.current_supply()
        report = condition.check(now)
        rebased = False
        delta = 0
        target = report.computation.target_rate.to_decimal() if report.computation else None
        try:
            record = policy.rebase(_OPERATOR, now)
            rebased = True
            delta = record.requested_supply_adjustment
        except RebaseRejectedError as e:
            _log.debug("t=%d rejected: %s", now, e.reason.value)

        rows.append({
            "timestamp": now,
            "window_phase": policy.window_phase(now).value,
            "verdict": report.verdict.value,
            "rebased": rebased,
            "epoch": policy.epoch,
            "exchange_rate": str(obs.exchange_rate),
            "price_index": str(obs.price_index),
            "target_rate": str(target) if target is not None else None,
            "supply_before": supply_before,
            "supply_delta": delta,
            "supply_after": ledger.current_supply(),
        })

    return pd.DataFrame(rows, columns=SIMULATION_COLUMNS)


def summarize_simulation(frame: pd.DataFrame) -> Dict[str, Any]:
    """Counts and totals over a simulate_rebases() frame."""
    rebased = frame.loc[frame["rebased"].astype(bool)]
    deltas = [int(d) for d in rebased["supply_delta"]]
    return {
        "observations": int(len(frame)),
        "rebases": int(len(rebased)),
        "expansions": sum(1 for d in deltas if d > 0),
        "contractions": sum(1 for d in deltas if d < 0),
        "zero_rebases": sum(1 for d in deltas if d == 0),
        "total_expansion": sum(d for d in deltas if d > 0),
        "total_contraction": sum(d for d in deltas if d < 0),
        "final_supply": int(frame["supply_after"].iloc[-1]) if len(frame) else None,
        "verdict_counts": {str(k): int(v) for k, v in frame["verdict"].value_counts().items()},
    }
