"""Observation replay through a real policy (pandas frames in, frames out)."""

import os
import sys

import pandas as pd
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from rebase_config import PolicyConfig
from rebase_simulation import (
    SIMULATION_COLUMNS,
    load_observations,
    simulate_rebases,
    summarize_simulation,
)

T0 = 1_700_000_040      # multiple of 60
FAST = PolicyConfig(
    min_rebase_time_interval_sec=60,
    rebase_window_offset_sec=0,
    rebase_window_length_sec=60,
)


def _make_observations(rows):
    return pd.DataFrame(rows, columns=["timestamp", "exchange_rate", "price_index"])


def test_one_rebase_per_interval():
    obs = _make_observations([
        (T0, "1.3", "100"),
        (T0 + 30, "1.3", "100"),
        (T0 + 60, "1.3", "100"),
    ])
    frame = simulate_rebases(obs, FAST, 1000)
    assert list(frame.columns) == SIMULATION_COLUMNS
    assert list(frame["rebased"]) == [True, False, True]
    assert list(frame["verdict"]) == [
        "OK", "not enough time elapsed since last rebase", "OK",
    ]
    assert list(frame["epoch"]) == [1, 1, 2]
    assert list(frame["supply_after"]) == [1010, 1010, 1020]


def test_rows_sorted_by_timestamp():
    obs = _make_observations([
        (T0 + 60, "0.7", "100"),
        (T0, "1.3", "100"),
    ])
    frame = simulate_rebases(obs, FAST, 1000)
    assert list(frame["timestamp"]) == [T0, T0 + 60]
    assert list(frame["supply_delta"]) == [10, -10]


def test_zero_delta_rebase_counted():
    obs = _make_observations([(T0, "1.01", "100")])
    frame = simulate_rebases(obs, FAST, 1000)
    summary = summarize_simulation(frame)
    assert summary["rebases"] == 1
    assert summary["zero_rebases"] == 1
    assert summary["verdict_counts"] == {"rebase with supply delta 0": 1}


def test_validity_columns():
    obs = _make_observations([(T0, "1.3", "100"), (T0 + 60, "1.3", "100")])
    obs["rate_valid"] = [False, True]
    frame = simulate_rebases(obs, FAST, 1000)
    assert frame["verdict"].iloc[0] == "market aggregated value failed to compute"
    assert list(frame["rebased"]) == [False, True]


def test_summary():
    obs = _make_observations([
        (T0, "1.3", "100"),
        (T0 + 60, "0.7", "100"),
        (T0 + 120, "1.3", "100"),
    ])
    summary = summarize_simulation(simulate_rebases(obs, FAST, 1000))
    assert summary["observations"] == 3
    assert summary["expansions"] == 2
    assert summary["contractions"] == 1
    assert summary["total_expansion"] == 20
    assert summary["total_contraction"] == -10
    assert summary["final_supply"] == 1010


def test_deterministic():
    obs = _make_observations([(T0 + i * 30, "1.2", "101") for i in range(10)])
    a = simulate_rebases(obs, FAST, 10_000)
    b = simulate_rebases(obs, FAST, 10_000)
    pd.testing.assert_frame_equal(a, b)


def test_missing_columns():
    with pytest.raises(ValueError):
        simulate_rebases(pd.DataFrame({"timestamp": [T0]}), FAST, 1000)


def test_load_observations(tmp_path):
    path = tmp_path / "obs.csv"
    path.write_text("timestamp,exchange_rate,price_index\n1700000040,1.30,100\n")
    frame = load_observations(str(path))
    assert frame["exchange_rate"].iloc[0] == "1.30"


def test_load_observations_missing_column(tmp_path):
    path = tmp_path / "obs.csv"
    path.write_text("timestamp,exchange_rate\n1700000040,1.30\n")
    with pytest.raises(ValueError):
        load_observations(str(path))
