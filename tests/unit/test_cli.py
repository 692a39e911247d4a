"""Unit tests for the roster_reconcile CLI paths that never reach the database."""

from __future__ import annotations

from unittest.mock import patch

from click.testing import CliRunner

from roster_reconcile.cli import main


def _invoke(*args):
    return CliRunner().invoke(main, ["--run-id", "unit-run", *args])


class TestValidateDecisions:
    def test_requires_a_path(self):
        result = _invoke("--mode", "validate_decisions")
        assert result.exit_code == 1
        assert "requires --conflict-decisions-path" in result.output

    def test_valid_files(self, tmp_path):
        conflicts = tmp_path / "conflicts.csv"
        conflicts.write_text("pair_id,resolution\np1,keepA\np2,merge\n", encoding="utf-8")
        dedup = tmp_path / "dedup.csv"
        dedup.write_text("row,action,existing_id\n0,update,e-1\n", encoding="utf-8")
        result = _invoke(
            "--mode", "validate_decisions",
            "--conflict-decisions-path", str(conflicts),
            "--dedup-decisions-path", str(dedup),
        )
        assert result.exit_code == 0, result.output
        assert '"rows_valid": 2' in result.output
        assert "Decision files are valid." in result.output

    def test_invalid_rows_exit_non_zero(self, tmp_path):
        dedup = tmp_path / "dedup.csv"
        dedup.write_text("row,action\n0,delete\n1,create\n", encoding="utf-8")
        result = _invoke("--mode", "validate_decisions", "--dedup-decisions-path", str(dedup))
        assert result.exit_code == 1
        assert "1 invalid decision row(s)" in result.output

    def test_missing_columns_are_fatal(self, tmp_path):
        conflicts = tmp_path / "conflicts.csv"
        conflicts.write_text("pair_id\np1\n", encoding="utf-8")
        result = _invoke("--mode", "validate_decisions", "--conflict-decisions-path", str(conflicts))
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_missing_file_is_fatal(self, tmp_path):
        result = _invoke(
            "--mode", "validate_decisions",
            "--conflict-decisions-path", str(tmp_path / "nope.csv"),
        )
        assert result.exit_code == 1
        assert "FATAL" in result.output


class TestPlanFlags:
    def test_missing_flags(self):
        result = _invoke("--mode", "plan")
        assert result.exit_code == 1
        assert "--db-dsn, --collection-id, --input-path" in result.output

    def test_missing_input(self, tmp_path):
        result = _invoke(
            "--db-dsn", "dbname=x", "--collection-id", "c-1",
            "--input-path", str(tmp_path / "missing.xlsx"),
        )
        assert result.exit_code == 1
        assert "--input-path not found" in result.output

    def test_bad_rules_file_fails_before_connecting(self, tmp_path):
        roster = tmp_path / "roster.csv"
        roster.write_text("Rank,Name,Rtg\n1,Asha Nair,1500\n", encoding="utf-8")
        rules = tmp_path / "rules.yml"
        rules.write_text("version: 1\n", encoding="utf-8")
        with patch("roster_reconcile.cli.psycopg.connect") as connect:
            result = _invoke(
                "--db-dsn", "dbname=x", "--collection-id", "c-1",
                "--input-path", str(roster), "--rules-file", str(rules),
            )
        assert result.exit_code == 1
        assert "rules file:" in result.output
        connect.assert_not_called()

    def test_unparseable_input_fails_before_connecting(self, tmp_path):
        roster = tmp_path / "roster.pdf"
        roster.write_bytes(b"%PDF-1.4")
        with patch("roster_reconcile.cli.psycopg.connect") as connect:
            result = _invoke(
                "--db-dsn", "dbname=x", "--collection-id", "c-1",
                "--input-path", str(roster),
            )
        assert result.exit_code == 1
        assert "could not parse" in result.output
        connect.assert_not_called()
