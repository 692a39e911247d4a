"""Unit tests for roster_reconcile.decisions."""

from __future__ import annotations

import csv
import textwrap
from pathlib import Path

import pytest

from roster_reconcile.conflict_resolution import ImportSession, Resolution
from roster_reconcile.conflicts import detect_conflicts
from roster_reconcile.decisions import (
    load_conflict_decisions,
    load_dedup_decisions,
    write_conflicts_csv,
    write_dedup_candidates_csv,
)
from roster_reconcile.dedup_score import run_dedup_pass
from roster_reconcile.records import ExistingEntity, IncomingRecord
from roster_reconcile.reconcile_rules import load_rules


def _write(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def _read(path: Path) -> list[dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


# ---------------------------------------------------------------------------
# Conflict decisions
# ---------------------------------------------------------------------------

class TestLoadConflictDecisions:
    def test_spellings_and_counters(self, tmp_path):
        path = _write(tmp_path, "conflicts.csv", """\
            pair_id,resolution,actor
            identifier:25012345:row:0:row:1,keepA,arbiter
            name_dob:asha nair::2010-01-01:row:2:row:5,KEEP_BOTH,
            sequence:4:existing:e-1:row:7,merge,
        """)
        decisions, ctrs = load_conflict_decisions(path)
        assert decisions == {
            "identifier:25012345:row:0:row:1": Resolution.KEEP_A,
            "name_dob:asha nair::2010-01-01:row:2:row:5": Resolution.KEEP_BOTH,
            "sequence:4:existing:e-1:row:7": Resolution.MERGE,
        }
        assert ctrs.rows_read == 3
        assert ctrs.rows_valid == 3
        assert ctrs.rows_invalid == 0

    def test_bad_rows_are_counted(self, tmp_path):
        path = _write(tmp_path, "conflicts.csv", """\
            Pair_ID,Resolution
            p1,discard
            ,keep_a
            p2,keep-b
        """)
        decisions, ctrs = load_conflict_decisions(path)
        assert decisions == {"p2": Resolution.KEEP_B}
        assert ctrs.rows_invalid == 2
        assert "unknown resolution='discard'" in ctrs.warnings[0]
        assert "missing required field" in ctrs.warnings[1]

    def test_last_decision_wins(self, tmp_path):
        path = _write(tmp_path, "conflicts.csv", """\
            pair_id,resolution
            p1,keep_a
            p1,keep_b
        """)
        decisions, ctrs = load_conflict_decisions(path)
        assert decisions == {"p1": Resolution.KEEP_B}
        assert "decided twice" in ctrs.warnings[0]

    def test_missing_columns(self, tmp_path):
        path = _write(tmp_path, "conflicts.csv", "pair_id,actor\np1,me\n")
        with pytest.raises(ValueError, match="missing required columns"):
            load_conflict_decisions(path)

    def test_empty_file(self, tmp_path):
        path = _write(tmp_path, "conflicts.csv", "")
        with pytest.raises(ValueError, match="empty or has no header"):
            load_conflict_decisions(path)


# ---------------------------------------------------------------------------
# Dedup decisions
# ---------------------------------------------------------------------------

class TestLoadDedupDecisions:
    def test_valid_rows(self, tmp_path):
        path = _write(tmp_path, "dedup.csv", """\
            row,action,existing_id,actor
            0,Update,e-7,arbiter
            3,create,,
        """)
        choices, ctrs = load_dedup_decisions(path)
        assert choices == {
            0: {"action": "update", "existing_id": "e-7", "actor": "arbiter"},
            3: {"action": "create", "existing_id": None, "actor": None},
        }
        assert ctrs.rows_valid == 2

    def test_bad_rows_are_counted(self, tmp_path):
        path = _write(tmp_path, "dedup.csv", """\
            row,action
            x,create
            1,delete
            2,
            4,skip
        """)
        choices, ctrs = load_dedup_decisions(path)
        assert list(choices) == [4]
        assert ctrs.rows_invalid == 3
        assert ctrs.to_dict()["rows_read"] == 4

    def test_missing_columns(self, tmp_path):
        path = _write(tmp_path, "dedup.csv", "row,existing_id\n0,e-1\n")
        with pytest.raises(ValueError, match="dedup decisions CSV missing"):
            load_dedup_decisions(path)


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

class TestExports:
    def test_conflicts_csv(self, tmp_path):
        records = [
            IncomingRecord(0, name="Alice Adams", rank=1, identifier="25012345"),
            IncomingRecord(1, name="Alicia Adams", rank=2, identifier="25012345"),
            IncomingRecord(2, name="Bob Brown", rank=3, sequence_no=9),
        ]
        pairs = detect_conflicts(records, [ExistingEntity(id="e-1", name="Rob Brown", sequence_no=9)])
        session = ImportSession("c-1", "h")
        session.register(pairs)
        session.resolve(pairs[0].pair_id, "keep_a")

        out = tmp_path / "review" / "conflicts.csv"
        assert write_conflicts_csv(out, pairs, session) == 2
        rows = _read(out)
        assert [r["key_kind"] for r in rows] == ["identifier", "sequence"]
        assert rows[0]["status"] == "resolved"
        assert rows[0]["resolution"] == "keep_a"
        assert rows[1]["a"] == "existing:e-1"
        assert rows[1]["status"] == "pending_resolution"
        assert rows[1]["resolution"] == ""

    def test_exported_conflicts_load_back(self, tmp_path):
        records = [
            IncomingRecord(0, name="Alice Adams", rank=1, identifier="25012345"),
            IncomingRecord(1, name="Alicia Adams", rank=2, identifier="25012345"),
        ]
        pairs = detect_conflicts(records)
        session = ImportSession("c-1", "h")
        session.register(pairs)
        session.resolve(pairs[0].pair_id, Resolution.MERGE)
        out = tmp_path / "conflicts.csv"
        write_conflicts_csv(out, pairs, session)
        decisions, _ = load_conflict_decisions(out)
        assert decisions == {pairs[0].pair_id: Resolution.MERGE}

    def test_dedup_candidates_csv(self, tmp_path):
        plan = run_dedup_pass(
            [
                IncomingRecord(0, name="Alice Adams", rank=1, city="Pune"),
                IncomingRecord(1, name="Bob Brown", rank=2),
            ],
            [ExistingEntity(id="e-1", name="Alice Adams")],
            load_rules(),
        )
        out = tmp_path / "dedup.csv"
        assert write_dedup_candidates_csv(out, plan) == 1
        (row,) = _read(out)
        assert row["row"] == "0"
        assert row["existing_id"] == "e-1"
        assert row["changed_fields"] == "city"
        assert row["needs_review"] == "True"
        assert row["action"] == "create"
