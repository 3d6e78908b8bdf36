"""
Rebase Engine — Types

Window phases, callability verdicts, PolicyState, snapshots, AdjustmentRecord,
collaborator Protocols and the exception hierarchy.
Monetary quantities are Fixed in state; persisted records hold scaled ints.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from rebase_fixed import Fixed, SemanticType


# ---------------------------------------------------------------------------
# Window phase (derived from `now`, never stored)
# ---------------------------------------------------------------------------

class WindowPhase(Enum):
    BEFORE_WINDOW = "BEFORE_WINDOW"
    IN_WINDOW = "IN_WINDOW"
    AFTER_WINDOW = "AFTER_WINDOW"


# ---------------------------------------------------------------------------
# Callability verdicts
# ---------------------------------------------------------------------------

class RebaseCallability(Enum):
    """Advisory result of a callability check.  Values are the exact literals."""
    OK = "OK"
    NOT_ENOUGH_TIME = "not enough time elapsed since last rebase"
    NOT_IN_WINDOW = "not in rebase window"
    ZERO_SUPPLY_DELTA = "rebase with supply delta 0"
    MARKET_FEED_INVALID = "market aggregated value failed to compute"
    INDEX_FEED_INVALID = "price-index aggregated value failed to compute"


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

class Role(Enum):
    CONTROLLER = "controller"       # timing / threshold / lag / feed configuration
    ORCHESTRATOR = "orchestrator"   # triggers rebase


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RebaseError(Exception):
    """Base exception for the rebase engine."""


class AuthorizationError(RebaseError):
    """Raised when the caller lacks the role required by an operation."""


class ConfigurationError(RebaseError):
    """Raised when a configuration change fails validation."""


class RebaseRejectedError(RebaseError):
    """Raised when a rebase precondition fails.  Policy state is unchanged."""

    def __init__(self, reason: RebaseCallability, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = reason.value if not detail else f"{reason.value} ({detail})"
        super().__init__(message)


class LogOrderError(RebaseError):
    """Raised when an adjustment record would break epoch ordering."""


class LogIntegrityError(RebaseError):
    """Raised when the persisted adjustment log hash chain is broken."""


# ---------------------------------------------------------------------------
# Timing parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimingParameters:
    """
    Rebase timing triple.

    The timeline is cut into periods of min_rebase_time_interval_sec; each
    period opens a window [offset, offset + length) measured from its start.
    """
    min_rebase_time_interval_sec: int
    rebase_window_offset_sec: int
    rebase_window_length_sec: int

    def validate(self) -> List[str]:
        """Returns list of errors (empty = valid)."""
        errors: List[str] = []
        interval = self.min_rebase_time_interval_sec
        offset = self.rebase_window_offset_sec
        length = self.rebase_window_length_sec

        for name, v in (
            ("min_rebase_time_interval_sec", interval),
            ("rebase_window_offset_sec", offset),
            ("rebase_window_length_sec", length),
        ):
            if not isinstance(v, int) or isinstance(v, bool):
                errors.append(f"{name} must be int, got {type(v).__name__}")
        if errors:
            return errors

        if interval <= 0:
            errors.append(f"min_rebase_time_interval_sec must be > 0, got {interval}")
        if offset < 0:
            errors.append(f"rebase_window_offset_sec must be >= 0, got {offset}")
        if length <= 0:
            errors.append(f"rebase_window_length_sec must be > 0, got {length}")
        if offset + length > interval:
            errors.append(
                f"rebase window [{offset}, {offset + length}) does not fit "
                f"inside interval {interval}"
            )
        return errors

    def to_dict(self) -> Dict[str, int]:
        return {
            "min_rebase_time_interval_sec": self.min_rebase_time_interval_sec,
            "rebase_window_offset_sec": self.rebase_window_offset_sec,
            "rebase_window_length_sec": self.rebase_window_length_sec,
        }


# ---------------------------------------------------------------------------
# PolicyState
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PolicyState:
    """
    Persistent policy state.  Frozen: every change produces a new instance,
    so a reader holding a reference always sees a consistent epoch/timestamp
    pair.
    """
    timing: TimingParameters
    deviation_threshold: Fixed          # RATIO
    rebase_lag: int
    base_index: Fixed                   # INDEX
    epoch: int = 0
    last_rebase_timestamp_sec: int = 0

    def validate(self) -> List[str]:
        """Returns list of errors (empty = valid)."""
        errors = self.timing.validate()
        if self.deviation_threshold.sem != SemanticType.RATIO:
            errors.append("deviation_threshold must be RATIO")
        elif self.deviation_threshold.value < 0:
            errors.append("deviation_threshold must be >= 0")
        if not isinstance(self.rebase_lag, int) or self.rebase_lag < 1:
            errors.append(f"rebase_lag must be a positive int, got {self.rebase_lag!r}")
        if self.base_index.sem != SemanticType.INDEX:
            errors.append("base_index must be INDEX")
        elif self.base_index.value <= 0:
            errors.append("base_index must be > 0")
        if self.epoch < 0:
            errors.append(f"epoch must be >= 0, got {self.epoch}")
        if self.last_rebase_timestamp_sec < 0:
            errors.append("last_rebase_timestamp_sec must be >= 0")
        return errors

    def advanced(self, timestamp_sec: int) -> PolicyState:
        """State after one successful rebase."""
        return replace(
            self,
            epoch=self.epoch + 1,
            last_rebase_timestamp_sec=timestamp_sec,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch": self.epoch,
            "last_rebase_timestamp_sec": self.last_rebase_timestamp_sec,
            "timing": self.timing.to_dict(),
            "deviation_threshold": self.deviation_threshold.value,
            "rebase_lag": self.rebase_lag,
            "base_index": self.base_index.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> PolicyState:
        return cls(
            timing=TimingParameters(**d["timing"]),
            deviation_threshold=Fixed(int(d["deviation_threshold"]), SemanticType.RATIO),
            rebase_lag=int(d["rebase_lag"]),
            base_index=Fixed(int(d["base_index"]), SemanticType.INDEX),
            epoch=int(d["epoch"]),
            last_rebase_timestamp_sec=int(d["last_rebase_timestamp_sec"]),
        )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeedReading:
    """One fetch from a data feed."""
    value: Fixed
    valid: bool


@dataclass(frozen=True)
class RateSnapshot:
    """Fresh per evaluation.  Never persisted."""
    exchange_rate: FeedReading          # RATE
    price_index: FeedReading            # INDEX
    current_supply: int


# ---------------------------------------------------------------------------
# Adjustment record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AdjustmentRecord:
    """Immutable record of one successful rebase."""
    epoch: int
    exchange_rate: int                  # RATE scaled int (after MAX_RATE clamp)
    price_index: int                    # INDEX scaled int
    requested_supply_adjustment: int
    timestamp_sec: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch": self.epoch,
            "exchange_rate": self.exchange_rate,
            "price_index": self.price_index,
            "requested_supply_adjustment": self.requested_supply_adjustment,
            "timestamp_sec": self.timestamp_sec,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AdjustmentRecord:
        return cls(
            epoch=int(d["epoch"]),
            exchange_rate=int(d["exchange_rate"]),
            price_index=int(d["price_index"]),
            requested_supply_adjustment=int(d["requested_supply_adjustment"]),
            timestamp_sec=int(d["timestamp_sec"]),
            details=dict(d.get("details", {})),
        )


# ---------------------------------------------------------------------------
# Collaborator Protocols
# ---------------------------------------------------------------------------

class DataFeed(Protocol):
    """Market-rate or price-index feed."""

    def fetch(self) -> FeedReading:
        """Current aggregated value with its validity flag."""
        ...


class SupplyLedger(Protocol):
    """Token ledger as seen by the policy."""

    def current_supply(self) -> int:
        ...

    def apply_supply_change(self, epoch: int, delta: int) -> int:
        """Apply a signed supply delta.  Returns the supply after the change."""
        ...


class AccessControl(Protocol):
    """Role checks for controller / orchestrator."""

    def has_role(self, principal: str, role: Role) -> bool:
        ...


def describe_verdict(verdict: RebaseCallability, detail: Optional[str] = None) -> str:
    """Verdict literal with optional detail, for log lines."""
    return verdict.value if not detail else f"{verdict.value}: {detail}"
