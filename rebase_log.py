"""
Rebase Engine — Append-Only Adjustment Log

AdjustmentLog: in-memory, epoch-ordered, with subscription and range query.
FileAdjustmentLog: same contract persisted as JSON lines, each line chained to
the previous one by SHA-256 (prev_hash -> record_hash).

File layout:
    <path>                  one canonical JSON object per line
        {"epoch": .., ..., "prev_hash": "<64 hex | empty>", "record_hash": "<64 hex>"}
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from rebase_types import AdjustmentRecord, LogIntegrityError, LogOrderError

_log = logging.getLogger(__name__)

Subscriber = Callable[[AdjustmentRecord], None]


# ---------------------------------------------------------------------------
# Canonical hashing
# ---------------------------------------------------------------------------

def compute_record_hash(record_dict: dict) -> str:
    """
    THE canonical record hash.

    record_hash is forced to "" before hashing; prev_hash is included, which
    is what chains each line to its predecessor.
    """
    d = dict(record_dict)
    d["record_hash"] = ""
    canonical_json = json.dumps(d, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# In-memory log
# ---------------------------------------------------------------------------

class AdjustmentLog:
    """Epoch-ordered append-only log of AdjustmentRecords."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: List[AdjustmentRecord] = []
        self._subscribers: List[Subscriber] = []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[AdjustmentRecord]:
        return iter(list(self._records))

    def latest(self) -> Optional[AdjustmentRecord]:
        records = self._records
        return records[-1] if records else None

    def records(
        self,
        from_epoch: Optional[int] = None,
        to_epoch: Optional[int] = None,
    ) -> List[AdjustmentRecord]:
        """Records with from_epoch <= epoch <= to_epoch (bounds optional)."""
        return [
            r for r in list(self._records)
            if (from_epoch is None or r.epoch >= from_epoch)
            and (to_epoch is None or r.epoch <= to_epoch)
        ]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every future append.  Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def check_next(self, epoch: int) -> None:
        """Raise LogOrderError unless epoch would follow the last record."""
        last = self._records[-1] if self._records else None
        if last is not None and epoch <= last.epoch:
            raise LogOrderError(f"epoch {epoch} does not follow last epoch {last.epoch}")

    def append(self, record: AdjustmentRecord) -> None:
        with self._lock:
            self.check_next(record.epoch)
            self._persist(record)
            self._records.append(record)
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(record)
            except Exception as e:
                _log.error("Adjustment log subscriber failed (epoch %d): %s", record.epoch, e)

    def _persist(self, record: AdjustmentRecord) -> None:
        """Hook for durable subclasses.  Called under the log lock."""


# ---------------------------------------------------------------------------
# File-backed log
# ---------------------------------------------------------------------------

class FileAdjustmentLog(AdjustmentLog):
    """
    JSON-lines adjustment log with a SHA-256 hash chain.

    The file is the source of truth: it is read and verified on open, and a
    broken chain refuses to load (LogIntegrityError).
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = path
        self._last_hash = ""
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._load()

    @property
    def path(self) -> str:
        return self._path

    def _read_lines(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self._path):
            return []
        rows = []
        with open(self._path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    rows.append(json.loads(line))
                except json.JSONDecodeError as exc:
                    raise LogIntegrityError(f"{self._path}:{lineno}: invalid JSON") from exc
        return rows

    def _load(self) -> None:
        ok, err = self.verify_chain_integrity()
        if not ok:
            raise LogIntegrityError(err)
        for row in self._read_lines():
            self._records.append(AdjustmentRecord.from_dict(row))
            self._last_hash = row["record_hash"]
        if self._records:
            _log.info(
                "Loaded %d adjustment records from %s (last epoch %d)",
                len(self._records), self._path, self._records[-1].epoch,
            )

    def verify_chain_integrity(self) -> Tuple[bool, Optional[str]]:
        """Walk the whole file.  Returns (ok, error message)."""
        try:
            rows = self._read_lines()
        except LogIntegrityError as e:
            return False, str(e)

        prev_hash = ""
        prev_epoch: Optional[int] = None
        for i, row in enumerate(rows):
            if row.get("prev_hash") != prev_hash:
                return False, f"line {i + 1}: prev_hash mismatch"
            expected = compute_record_hash(row)
            if row.get("record_hash") != expected:
                return False, f"line {i + 1}: record_hash mismatch"
            epoch = row.get("epoch")
            if prev_epoch is not None and (not isinstance(epoch, int) or epoch <= prev_epoch):
                return False, f"line {i + 1}: epoch {epoch} out of order"
            prev_epoch = epoch
            prev_hash = row["record_hash"]
        return True, None

    def _persist(self, record: AdjustmentRecord) -> None:
        row = record.to_dict()
        row["prev_hash"] = self._last_hash
        row["record_hash"] = compute_record_hash(row)
        line = json.dumps(row, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._last_hash = row["record_hash"]
