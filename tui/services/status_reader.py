"""Status reader — reads policy status from a state directory.

ISOLATION: This module does NOT import rebase_policy, rebase_cli, or any
engine module. It only reads status.json and adjustments.jsonl.
"""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

STATUS_FILE = "status.json"
LOG_FILE = "adjustments.jsonl"

_SCALE = Decimal(10) ** 18


@dataclass
class PolicyStatus:
    """Policy status read from filesystem."""
    epoch: int = 0
    last_rebase_timestamp_sec: int = 0
    now: int = 0
    window_phase: str = "UNKNOWN"
    in_rebase_window: bool = False
    next_admissible_time: Optional[int] = None
    current_supply: int = 0
    deviation_threshold: str = ""
    rebase_lag: int = 0
    timing: Dict[str, Any] = field(default_factory=dict)
    last_adjustment: Optional[Dict[str, Any]] = None
    updated_at: str = ""
    error: Optional[str] = None

    @property
    def seconds_to_next(self) -> Optional[int]:
        if self.next_admissible_time is None:
            return None
        return max(self.next_admissible_time - self.now, 0)

    @property
    def last_delta(self) -> Optional[int]:
        if not self.last_adjustment:
            return None
        return self.last_adjustment.get("requested_supply_adjustment")


def read_policy_status(state_dir: str) -> PolicyStatus:
    """Read {state_dir}/status.json as written by the CLI."""
    path = os.path.join(state_dir, STATUS_FILE)
    try:
        with open(path) as f:
            data = json.load(f)
    except (json.JSONDecodeError, FileNotFoundError, PermissionError) as e:
        return PolicyStatus(error=str(e))

    return PolicyStatus(
        epoch=data.get("epoch", 0),
        last_rebase_timestamp_sec=data.get("last_rebase_timestamp_sec", 0),
        now=data.get("now", 0),
        window_phase=data.get("window_phase", "UNKNOWN"),
        in_rebase_window=bool(data.get("in_rebase_window", False)),
        next_admissible_time=data.get("next_admissible_time"),
        current_supply=data.get("current_supply", 0),
        deviation_threshold=data.get("deviation_threshold", ""),
        rebase_lag=data.get("rebase_lag", 0),
        timing=data.get("timing", {}),
        last_adjustment=data.get("last_adjustment"),
        updated_at=data.get("updated_at", ""),
    )


def read_adjustments(state_dir: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Most recent adjustment records, newest first.  Unparseable lines are skipped."""
    path = os.path.join(state_dir, LOG_FILE)
    if not os.path.exists(path):
        return []

    rows = []
    with open(path) as f:
        for line in f:
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    rows.reverse()
    return rows[:limit]


def format_scaled(value: Any) -> str:
    """18-decimal scaled integer -> plain decimal string."""
    if not isinstance(value, int):
        return "—"
    return format((Decimal(value) / _SCALE).normalize(), "f")


def format_countdown(seconds: Optional[int]) -> str:
    if seconds is None:
        return "—"
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h:d}:{m:02d}:{s:02d}"
