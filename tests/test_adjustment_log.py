"""Adjustment log: epoch ordering, subscriptions, range queries, hash-chained file."""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from rebase_log import AdjustmentLog, FileAdjustmentLog, compute_record_hash
from rebase_types import AdjustmentRecord, LogIntegrityError, LogOrderError


def _make_record(epoch, delta=10):
    return AdjustmentRecord(
        epoch=epoch,
        exchange_rate=13 * 10 ** 17,
        price_index=100 * 10 ** 18,
        requested_supply_adjustment=delta,
        timestamp_sec=1_700_000_000 + epoch * 60,
        details={"supply_before": 1000},
    )


class TestInMemory:
    def test_append_and_query(self):
        log = AdjustmentLog()
        for e in (1, 2, 3, 5):
            log.append(_make_record(e))
        assert len(log) == 4
        assert log.latest().epoch == 5
        assert [r.epoch for r in log.records(2, 3)] == [2, 3]
        assert [r.epoch for r in log.records(from_epoch=3)] == [3, 5]
        assert [r.epoch for r in log.records(to_epoch=1)] == [1]
        assert [r.epoch for r in log] == [1, 2, 3, 5]

    def test_rejects_non_increasing_epoch(self):
        log = AdjustmentLog()
        log.append(_make_record(2))
        with pytest.raises(LogOrderError):
            log.append(_make_record(2))
        with pytest.raises(LogOrderError):
            log.append(_make_record(1))
        assert len(log) == 1

    def test_empty(self):
        log = AdjustmentLog()
        assert log.latest() is None
        assert log.records() == []

    def test_subscribe_and_unsubscribe(self):
        log = AdjustmentLog()
        seen = []
        unsubscribe = log.subscribe(seen.append)
        log.append(_make_record(1))
        unsubscribe()
        log.append(_make_record(2))
        assert [r.epoch for r in seen] == [1]

    def test_failing_subscriber_does_not_block_append(self):
        log = AdjustmentLog()
        seen = []

        def broken(_record):
            raise RuntimeError("boom")

        log.subscribe(broken)
        log.subscribe(seen.append)
        log.append(_make_record(1))
        assert len(log) == 1
        assert len(seen) == 1


class TestFileLog:
    def test_persists_and_reloads(self, tmp_path):
        path = str(tmp_path / "adjustments.jsonl")
        log = FileAdjustmentLog(path)
        log.append(_make_record(1))
        log.append(_make_record(2, delta=-4))

        reloaded = FileAdjustmentLog(path)
        assert [r.epoch for r in reloaded] == [1, 2]
        assert reloaded.latest().requested_supply_adjustment == -4
        assert reloaded.verify_chain_integrity() == (True, None)

        reloaded.append(_make_record(3))
        assert FileAdjustmentLog(path).verify_chain_integrity() == (True, None)

    def test_chain_links(self, tmp_path):
        path = str(tmp_path / "adjustments.jsonl")
        log = FileAdjustmentLog(path)
        log.append(_make_record(1))
        log.append(_make_record(2))
        with open(path) as f:
            rows = [json.loads(line) for line in f]
        assert rows[0]["prev_hash"] == ""
        assert rows[1]["prev_hash"] == rows[0]["record_hash"]
        assert rows[1]["record_hash"] == compute_record_hash(rows[1])

    def test_tampered_file_refuses_to_load(self, tmp_path):
        path = str(tmp_path / "adjustments.jsonl")
        log = FileAdjustmentLog(path)
        log.append(_make_record(1))
        log.append(_make_record(2))

        with open(path) as f:
            lines = f.readlines()
        row = json.loads(lines[0])
        row["requested_supply_adjustment"] = 999
        lines[0] = json.dumps(row) + "\n"
        with open(path, "w") as f:
            f.writelines(lines)

        with pytest.raises(LogIntegrityError):
            FileAdjustmentLog(path)

    def test_truncated_line_refuses_to_load(self, tmp_path):
        path = str(tmp_path / "adjustments.jsonl")
        FileAdjustmentLog(path).append(_make_record(1))
        with open(path, "a") as f:
            f.write('{"epoch": 2, "exch')
        with pytest.raises(LogIntegrityError):
            FileAdjustmentLog(path)

    def test_out_of_order_append_not_written(self, tmp_path):
        path = str(tmp_path / "adjustments.jsonl")
        log = FileAdjustmentLog(path)
        log.append(_make_record(3))
        with pytest.raises(LogOrderError):
            log.append(_make_record(3))
        with open(path) as f:
            assert len(f.readlines()) == 1
