"""
Rebase Engine — Operator CLI (8 subcommands via argparse)

Commands: init, status, check, rebase, configure, log, verify, simulate
All output as JSON envelope.  Policy state lives in a state directory
(see rebase_store); feed values are passed on the command line.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from rebase_access import RoleRegistry
from rebase_condition import RebaseCondition
from rebase_config import (
    PolicyConfig,
    compute_config_hash,
    config_from_dict,
    config_to_dict,
    initial_state,
    load_policy_config,
)
from rebase_feeds import StaticFeed
from rebase_fixed import Fixed, FixedError, SemanticType
from rebase_ledger import InMemorySupplyLedger
from rebase_log import FileAdjustmentLog
from rebase_policy import RebasePolicy
from rebase_simulation import load_observations, simulate_rebases, summarize_simulation
from rebase_supply import MAX_SUPPLY
from rebase_store import PolicyStateStore, StateStoreError
from rebase_types import (
    AuthorizationError,
    ConfigurationError,
    LogIntegrityError,
    LogOrderError,
    PolicyState,
    RebaseRejectedError,
    Role,
)
from rebase_window import snapped_rebase_timestamp

_log = logging.getLogger(__name__)

OPERATOR = "cli-operator"
DEFAULT_STATE_DIR = "./rebase_state"


# ---------------------------------------------------------------------------
# JSON envelope helper
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _envelope(command: str, state_dir: Optional[str], result: Any) -> str:
    """Format standard JSON output envelope."""
    d = {
        "command": command,
        "timestamp": _now_iso(),
        "state_dir": state_dir,
        "result": result,
    }
    return json.dumps(d, indent=2, sort_keys=False)


def _error(command: str, state_dir: Optional[str], message: str) -> str:
    return _envelope(command, state_dir, {"error": message})


# ---------------------------------------------------------------------------
# Policy assembly
# ---------------------------------------------------------------------------

def _now(args: argparse.Namespace) -> int:
    return int(args.now) if getattr(args, "now", None) is not None else int(time.time())


def _reconcile(
    store: PolicyStateStore,
    state: PolicyState,
    supply: int,
    adjustment_log: FileAdjustmentLog,
) -> tuple[PolicyState, int]:
    """
    Bring state.json in line with the adjustment log.

    The log is appended before state.json is saved, so a crash in between
    leaves the log one record ahead; that record carries what is needed to
    roll state forward.  State ahead of the log cannot be repaired here.
    """
    latest = adjustment_log.latest()
    logged_epoch = latest.epoch if latest is not None else 0
    if logged_epoch == state.epoch:
        return state, supply
    if logged_epoch < state.epoch:
        raise StateStoreError(
            f"state epoch {state.epoch} is ahead of adjustment log epoch {logged_epoch}"
        )

    details = latest.details
    snapped = details.get("last_rebase_timestamp_sec")
    if snapped is None:
        snapped = snapped_rebase_timestamp(state.timing, latest.timestamp_sec)
    state = replace(state, epoch=latest.epoch, last_rebase_timestamp_sec=int(snapped))
    supply = int(details.get("supply_after", supply))
    _log.warning(
        "State epoch behind adjustment log; rolled forward to epoch %d (supply %d)",
        state.epoch, supply,
    )
    store.save_state(state, supply)
    return state, supply


def _open_policy(
    args: argparse.Namespace,
) -> tuple[PolicyStateStore, RebasePolicy, InMemorySupplyLedger]:
    """Rebuild the policy from the state directory and command-line feed values."""
    store = PolicyStateStore(args.state_dir)
    loaded = store.load_state()
    if loaded is None:
        raise StateStoreError(f"{args.state_dir} is not initialised (run init)")
    state, supply = loaded
    adjustment_log = FileAdjustmentLog(store.log_path)
    state, supply = _reconcile(store, state, supply, adjustment_log)

    market = StaticFeed("market", SemanticType.RATE)
    cpi = StaticFeed("price-index", SemanticType.INDEX)
    rate_arg = getattr(args, "rate", None)
    index_arg = getattr(args, "index", None)
    if rate_arg is not None:
        market.store_data(Fixed.from_str(rate_arg, SemanticType.RATE).value)
    market.store_validity(rate_arg is not None and not getattr(args, "rate_invalid", False))
    if index_arg is not None:
        cpi.store_data(Fixed.from_str(index_arg, SemanticType.INDEX).value)
    cpi.store_validity(index_arg is not None and not getattr(args, "index_invalid", False))

    ledger = InMemorySupplyLedger(supply)
    access = RoleRegistry({OPERATOR: [Role.CONTROLLER, Role.ORCHESTRATOR]})
    policy = RebasePolicy(
        state, ledger, market, cpi, access,
        adjustment_log=adjustment_log,
    )
    return store, policy, ledger


def build_status(policy: RebasePolicy, now: int) -> Dict[str, Any]:
    """Operator status dict (also written to status.json for the console)."""
    state = policy.state
    latest = policy.adjustment_log.latest()
    return {
        "epoch": state.epoch,
        "last_rebase_timestamp_sec": state.last_rebase_timestamp_sec,
        "timing": state.timing.to_dict(),
        "deviation_threshold": str(state.deviation_threshold.to_decimal()),
        "rebase_lag": state.rebase_lag,
        "base_index": str(state.base_index.to_decimal()),
        "now": now,
        "window_phase": policy.window_phase(now).value,
        "in_rebase_window": policy.in_rebase_window(now),
        "next_admissible_time": policy.next_admissible_time(now),
        "current_supply": policy.ledger.current_supply(),
        "adjustment_count": len(policy.adjustment_log),
        "last_adjustment": latest.to_dict() if latest else None,
        "updated_at": _now_iso(),
    }


def _persist(store: PolicyStateStore, policy: RebasePolicy, now: int) -> Dict[str, Any]:
    store.save_state(policy.state, policy.ledger.current_supply())
    status = build_status(policy, now)
    store.write_status(status)
    return status


# ---------------------------------------------------------------------------
# Command implementations
# ---------------------------------------------------------------------------

def cmd_init(args: argparse.Namespace) -> str:
    """init --state-dir <dir> [--config <path>] [--supply <n>] [--force]"""
    store = PolicyStateStore(args.state_dir)
    if store.exists() and not args.force:
        return _error("init", args.state_dir, "state already initialised (use --force)")
    if args.supply < 0:
        return _error("init", args.state_dir, "--supply must be >= 0")
    if args.supply > MAX_SUPPLY:
        return _error("init", args.state_dir, f"--supply must be <= {MAX_SUPPLY}")

    config = load_policy_config(args.config) if args.config else PolicyConfig()
    state = initial_state(config)
    if os.path.exists(store.log_path):
        os.remove(store.log_path)
        _log.warning("Removed existing adjustment log %s", store.log_path)
    store.write_config(config_to_dict(config))
    store.save_state(state, args.supply)

    _, policy, _ = _open_policy(args)
    status = build_status(policy, _now(args))
    store.write_status(status)
    return _envelope("init", args.state_dir, {
        "config": config_to_dict(config),
        "config_hash": compute_config_hash(config),
        "status": status,
    })


def cmd_status(args: argparse.Namespace) -> str:
    """status --state-dir <dir> [--now <ts>]"""
    store, policy, _ = _open_policy(args)
    status = build_status(policy, _now(args))
    store.write_status(status)
    return _envelope("status", args.state_dir, status)


def cmd_check(args: argparse.Namespace) -> str:
    """check --state-dir <dir> --rate <r> --index <i> [--now <ts>]"""
    _, policy, _ = _open_policy(args)
    report = RebaseCondition(policy).check(_now(args))
    return _envelope("check", args.state_dir, report.to_dict())


def cmd_rebase(args: argparse.Namespace) -> str:
    """rebase --state-dir <dir> --rate <r> --index <i> [--now <ts>]"""
    store, policy, _ = _open_policy(args)
    now = _now(args)
    try:
        record = policy.rebase(OPERATOR, now)
    except RebaseRejectedError as e:
        return _envelope("rebase", args.state_dir, {
            "rebased": False,
            "reason": e.reason.value,
            "detail": e.detail,
        })
    status = _persist(store, policy, now)
    return _envelope("rebase", args.state_dir, {
        "rebased": True,
        "record": record.to_dict(),
        "status": status,
    })


def cmd_configure(args: argparse.Namespace) -> str:
    """configure --state-dir <dir> [--interval --offset --length] [--threshold] [--lag]"""
    store, policy, _ = _open_policy(args)
    timing_args = (args.interval, args.offset, args.length)
    changed = []

    if any(v is not None for v in timing_args):
        if any(v is None for v in timing_args):
            return _error("configure", args.state_dir,
                          "--interval, --offset and --length must be given together")
        policy.set_rebase_timing_parameters(OPERATOR, *timing_args)
        changed.append("timing")
    if args.threshold is not None:
        policy.set_deviation_threshold(
            OPERATOR, Fixed.from_str(args.threshold, SemanticType.RATIO),
        )
        changed.append("deviation_threshold")
    if args.lag is not None:
        policy.set_rebase_lag(OPERATOR, args.lag)
        changed.append("rebase_lag")

    if not changed:
        return _error("configure", args.state_dir, "nothing to configure")
    status = _persist(store, policy, _now(args))
    return _envelope("configure", args.state_dir, {"changed": changed, "status": status})


def cmd_log(args: argparse.Namespace) -> str:
    """log --state-dir <dir> [--from-epoch <n>] [--to-epoch <n>]"""
    store = PolicyStateStore(args.state_dir)
    if not store.exists():
        raise StateStoreError(f"{args.state_dir} is not initialised (run init)")
    log = FileAdjustmentLog(store.log_path)
    records = log.records(args.from_epoch, args.to_epoch)
    return _envelope("log", args.state_dir, {
        "count": len(records),
        "records": [r.to_dict() for r in records],
    })


def cmd_verify(args: argparse.Namespace) -> str:
    """verify --state-dir <dir>"""
    store = PolicyStateStore(args.state_dir)
    config = config_from_dict(store.read_config())
    try:
        log = FileAdjustmentLog(store.log_path)
    except LogIntegrityError as e:
        ok, err, count = False, str(e), None
    else:
        ok, err = log.verify_chain_integrity()
        count = len(log)
    return _envelope("verify", args.state_dir, {
        "config_hash": compute_config_hash(config),
        "chain_integrity": {"valid": ok, "error": err},
        "records": count,
    })


def cmd_simulate(args: argparse.Namespace) -> str:
    """simulate --observations <csv> [--config <path>] [--supply <n>] [--output <csv>]"""
    config = load_policy_config(args.config) if args.config else PolicyConfig()
    frame = simulate_rebases(load_observations(args.observations), config, args.supply)
    if args.output:
        frame.to_csv(args.output, index=False)
    return _envelope("simulate", None, {
        "summary": summarize_simulation(frame),
        "output": args.output,
    })


# ---------------------------------------------------------------------------
# CLI parser
# ---------------------------------------------------------------------------

def _add_state_dir(p: argparse.ArgumentParser) -> None:
    p.add_argument("--state-dir", default=DEFAULT_STATE_DIR)


def _add_now(p: argparse.ArgumentParser) -> None:
    p.add_argument("--now", type=int, default=None, help="Unix seconds (default: wall clock)")


def _add_feeds(p: argparse.ArgumentParser) -> None:
    p.add_argument("--rate", required=True, help="Market exchange rate (decimal)")
    p.add_argument("--index", required=True, help="Price index (decimal)")
    p.add_argument("--rate-invalid", action="store_true", help="Mark market reading invalid")
    p.add_argument("--index-invalid", action="store_true", help="Mark index reading invalid")


def build_parser() -> argparse.ArgumentParser:
    """Build argparse parser with 8 subcommands."""
    parser = argparse.ArgumentParser(
        prog="rebase_cli",
        description="Elastic-supply rebase policy CLI",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_init = subparsers.add_parser("init", help="Initialise a state directory")
    _add_state_dir(p_init)
    _add_now(p_init)
    p_init.add_argument("--config", default=None, help="PolicyConfig JSON")
    p_init.add_argument("--supply", type=int, default=0, help="Initial ledger supply")
    p_init.add_argument("--force", action="store_true")

    p_status = subparsers.add_parser("status", help="Epoch, window phase, supply")
    _add_state_dir(p_status)
    _add_now(p_status)

    p_check = subparsers.add_parser("check", help="Would a rebase go through now?")
    _add_state_dir(p_check)
    _add_now(p_check)
    _add_feeds(p_check)

    p_rebase = subparsers.add_parser("rebase", help="Attempt a rebase")
    _add_state_dir(p_rebase)
    _add_now(p_rebase)
    _add_feeds(p_rebase)

    p_conf = subparsers.add_parser("configure", help="Change timing / threshold / lag")
    _add_state_dir(p_conf)
    _add_now(p_conf)
    p_conf.add_argument("--interval", type=int, default=None)
    p_conf.add_argument("--offset", type=int, default=None)
    p_conf.add_argument("--length", type=int, default=None)
    p_conf.add_argument("--threshold", default=None, help="Deviation threshold (decimal ratio)")
    p_conf.add_argument("--lag", type=int, default=None)

    p_log = subparsers.add_parser("log", help="List adjustment records")
    _add_state_dir(p_log)
    p_log.add_argument("--from-epoch", type=int, default=None)
    p_log.add_argument("--to-epoch", type=int, default=None)

    p_verify = subparsers.add_parser("verify", help="Verify the adjustment log hash chain")
    _add_state_dir(p_verify)

    p_sim = subparsers.add_parser("simulate", help="Replay an observation CSV")
    p_sim.add_argument("--observations", required=True)
    p_sim.add_argument("--config", default=None)
    p_sim.add_argument("--supply", type=int, required=True)
    p_sim.add_argument("--output", default=None)

    return parser


# ---------------------------------------------------------------------------
# Main dispatch
# ---------------------------------------------------------------------------

COMMAND_HANDLERS: Dict[str, Callable[[argparse.Namespace], str]] = {
    "init": cmd_init,
    "status": cmd_status,
    "check": cmd_check,
    "rebase": cmd_rebase,
    "configure": cmd_configure,
    "log": cmd_log,
    "verify": cmd_verify,
    "simulate": cmd_simulate,
}

# Expected failures reported in the envelope instead of a traceback
_REPORTED_ERRORS = (
    AuthorizationError,
    ConfigurationError,
    FixedError,
    LogIntegrityError,
    LogOrderError,
    StateStoreError,
    FileNotFoundError,
    ValueError,
)


def main(argv: Optional[list] = None) -> str:
    """Parse args and dispatch to handler.  Returns JSON output."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    handler = COMMAND_HANDLERS[args.command]
    try:
        return handler(args)
    except _REPORTED_ERRORS as e:
        _log.error("%s failed: %s", args.command, e)
        return _error(args.command, getattr(args, "state_dir", None), str(e))


def run() -> None:
    print(main())


if __name__ == "__main__":
    run()
