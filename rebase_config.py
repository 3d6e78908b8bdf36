"""
Rebase Engine — Policy Configuration

PolicyConfig is the immutable initialization record for a policy: timing,
dead-band, lag and the base price index.  Loaded from JSON; decimal
quantities are parsed to scaled integers at ingress.

JSON example:
    {
      "min_rebase_time_interval_sec": 86400,
      "rebase_window_offset_sec": 72000,
      "rebase_window_length_sec": 900,
      "deviation_threshold": "0.05",
      "rebase_lag": 30,
      "base_index": "100"
    }
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, fields
from typing import Any, Dict, List

from rebase_fixed import ONE, Fixed, FixedError, SemanticType
from rebase_types import ConfigurationError, PolicyState, TimingParameters

DEFAULT_MIN_REBASE_TIME_INTERVAL_SEC = 86400      # 1 day
DEFAULT_REBASE_WINDOW_OFFSET_SEC = 72000          # 20:00 UTC
DEFAULT_REBASE_WINDOW_LENGTH_SEC = 900            # 15 minutes
DEFAULT_DEVIATION_THRESHOLD = 5 * 10 ** 16        # 5%
DEFAULT_REBASE_LAG = 30
DEFAULT_BASE_INDEX = 100 * ONE

# Fields given as decimal strings in JSON, with their semantic type
_DECIMAL_FIELDS = {
    "deviation_threshold": SemanticType.RATIO,
    "base_index": SemanticType.INDEX,
}


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable policy configuration.  Scaled ints for decimal quantities."""
    min_rebase_time_interval_sec: int = DEFAULT_MIN_REBASE_TIME_INTERVAL_SEC
    rebase_window_offset_sec: int = DEFAULT_REBASE_WINDOW_OFFSET_SEC
    rebase_window_length_sec: int = DEFAULT_REBASE_WINDOW_LENGTH_SEC
    deviation_threshold: int = DEFAULT_DEVIATION_THRESHOLD     # RATIO scaled
    rebase_lag: int = DEFAULT_REBASE_LAG
    base_index: int = DEFAULT_BASE_INDEX                       # INDEX scaled

    @property
    def timing(self) -> TimingParameters:
        return TimingParameters(
            min_rebase_time_interval_sec=self.min_rebase_time_interval_sec,
            rebase_window_offset_sec=self.rebase_window_offset_sec,
            rebase_window_length_sec=self.rebase_window_length_sec,
        )

    def validate(self) -> List[str]:
        """Returns list of errors (empty = valid)."""
        return initial_state(self, validate=False).validate()


def initial_state(config: PolicyConfig, *, validate: bool = True) -> PolicyState:
    """Fresh PolicyState: epoch 0, no rebase yet."""
    state = PolicyState(
        timing=config.timing,
        deviation_threshold=Fixed(config.deviation_threshold, SemanticType.RATIO),
        rebase_lag=config.rebase_lag,
        base_index=Fixed(config.base_index, SemanticType.INDEX),
    )
    if validate:
        errors = state.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
    return state


def config_to_dict(config: PolicyConfig) -> Dict[str, Any]:
    """Canonical dict form: decimal quantities as decimal strings."""
    d: Dict[str, Any] = {}
    for f in fields(config):
        value = getattr(config, f.name)
        if f.name in _DECIMAL_FIELDS:
            value = format(Fixed(value, _DECIMAL_FIELDS[f.name]).to_decimal().normalize(), "f")
        d[f.name] = value
    return d


def config_from_dict(d: Dict[str, Any]) -> PolicyConfig:
    """Build from a JSON-style dict.  Unknown keys are rejected."""
    known = {f.name for f in fields(PolicyConfig)}
    unknown = sorted(set(d) - known)
    if unknown:
        raise ConfigurationError(f"unknown config keys: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for key, value in d.items():
        if key in _DECIMAL_FIELDS:
            try:
                kwargs[key] = Fixed.from_str(str(value), _DECIMAL_FIELDS[key]).value
            except FixedError as e:
                raise ConfigurationError(f"{key}: {e}") from e
        else:
            if not isinstance(value, int) or isinstance(value, bool):
                raise ConfigurationError(f"{key} must be an integer, got {value!r}")
            kwargs[key] = value

    config = PolicyConfig(**kwargs)
    errors = config.validate()
    if errors:
        raise ConfigurationError("; ".join(errors))
    return config


def load_policy_config(path: str) -> PolicyConfig:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a JSON object")
    return config_from_dict(data)


def compute_config_hash(config: PolicyConfig) -> str:
    """SHA256 of canonical PolicyConfig JSON (sorted keys, compact separators)."""
    js = json.dumps(config_to_dict(config), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(js.encode("utf-8")).hexdigest()
