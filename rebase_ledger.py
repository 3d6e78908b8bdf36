"""
Rebase Engine — In-Memory Supply Ledger

Reference SupplyLedger: holds only the total supply.  Applies signed deltas
with a floor at 0 and a ceiling at max_supply, and records every call so
tests can assert what the policy asked for.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List

from rebase_supply import MAX_SUPPLY

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupplyChange:
    epoch: int
    delta: int
    supply_before: int
    supply_after: int


class InMemorySupplyLedger:
    """Total-supply ledger for tests, simulation and the CLI."""

    def __init__(self, initial_supply: int = 0, max_supply: int = MAX_SUPPLY) -> None:
        if initial_supply < 0:
            raise ValueError("initial_supply must be >= 0")
        if initial_supply > max_supply:
            raise ValueError(f"initial_supply must be <= max_supply ({max_supply})")
        self._supply = initial_supply
        self._max_supply = max_supply
        self._lock = threading.Lock()
        self.changes: List[SupplyChange] = []

    def current_supply(self) -> int:
        return self._supply

    def store_supply(self, supply: int) -> None:
        """Overwrite supply directly (test injection)."""
        if supply < 0:
            raise ValueError("supply must be >= 0")
        if supply > self._max_supply:
            raise ValueError(f"supply must be <= max_supply ({self._max_supply})")
        with self._lock:
            self._supply = int(supply)

    def apply_supply_change(self, epoch: int, delta: int) -> int:
        with self._lock:
            before = self._supply
            after = min(max(before + delta, 0), self._max_supply)
            if after != before + delta:
                _log.warning(
                    "Epoch %d: supply %d%+d bounded to %d", epoch, before, delta, after,
                )
            self._supply = after
            self.changes.append(SupplyChange(epoch, delta, before, after))
        return after
