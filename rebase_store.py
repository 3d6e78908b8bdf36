"""
Rebase Engine — State Directory

Durable files for one policy instance:

    <state_dir>/
        config.json          PolicyConfig (written once at init)
        state.json           PolicyState + ledger supply
        status.json          operator status (read by the console)
        adjustments.jsonl    FileAdjustmentLog

state.json and status.json are replaced atomically.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import uuid
from typing import Any, Dict, Optional, Tuple

from rebase_types import PolicyState

_log = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
STATE_FILE = "state.json"
STATUS_FILE = "status.json"
LOG_FILE = "adjustments.jsonl"

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when a state file is missing or unreadable."""


def _fsync_directory(dir_path: str) -> None:
    """fsync a directory to ensure rename durability (POSIX only)."""
    if platform.system() == "Windows":
        return
    fd = os.open(dir_path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write(target_path: str, data: bytes, *, fsync_parent: bool = False) -> None:
    """
    Write to a temp file in the target's directory, fsync, then os.replace.
    Optionally fsync the parent directory.
    """
    parent = os.path.dirname(target_path) or "."
    tmp_path = os.path.join(parent, f"_tmp_{uuid.uuid4().hex}")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
    try:
        os.write(fd, data)
        os.fsync(fd)
    finally:
        os.close(fd)
    os.replace(tmp_path, target_path)
    if fsync_parent:
        _fsync_directory(parent)


def _dump(d: Dict[str, Any]) -> bytes:
    return json.dumps(d, indent=2, sort_keys=True).encode("utf-8")


class PolicyStateStore:
    """Reads and writes the files of one state directory."""

    def __init__(self, state_dir: str) -> None:
        self._state_dir = state_dir

    @property
    def state_dir(self) -> str:
        return self._state_dir

    def path(self, name: str) -> str:
        return os.path.join(self._state_dir, name)

    @property
    def log_path(self) -> str:
        return self.path(LOG_FILE)

    def exists(self) -> bool:
        return os.path.exists(self.path(STATE_FILE))

    def ensure_dir(self) -> None:
        os.makedirs(self._state_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # config.json
    # ------------------------------------------------------------------

    def write_config(self, config_dict: Dict[str, Any]) -> None:
        self.ensure_dir()
        atomic_write(self.path(CONFIG_FILE), _dump(config_dict), fsync_parent=True)

    def read_config(self) -> Dict[str, Any]:
        return self._read_json(CONFIG_FILE)

    # ------------------------------------------------------------------
    # state.json
    # ------------------------------------------------------------------

    def save_state(self, state: PolicyState, supply: int) -> None:
        self.ensure_dir()
        payload = {
            "format_version": STATE_FORMAT_VERSION,
            "policy": state.to_dict(),
            "ledger_supply": supply,
        }
        atomic_write(self.path(STATE_FILE), _dump(payload), fsync_parent=True)
        _log.debug("Saved state epoch=%d to %s", state.epoch, self._state_dir)

    def load_state(self) -> Optional[Tuple[PolicyState, int]]:
        """(state, ledger supply), or None if the directory was never initialised."""
        if not self.exists():
            return None
        payload = self._read_json(STATE_FILE)
        version = payload.get("format_version")
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(f"unsupported state format_version {version!r}")
        try:
            return PolicyState.from_dict(payload["policy"]), int(payload["ledger_supply"])
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"malformed {STATE_FILE}: {e}") from e

    # ------------------------------------------------------------------
    # status.json
    # ------------------------------------------------------------------

    def write_status(self, status: Dict[str, Any]) -> None:
        self.ensure_dir()
        atomic_write(self.path(STATUS_FILE), _dump(status))

    # ------------------------------------------------------------------

    def _read_json(self, name: str) -> Dict[str, Any]:
        p = self.path(name)
        try:
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise StateStoreError(f"{p} not found") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"{p}: invalid JSON: {e}") from e
