"""roster_reconcile.cli

Command-line entrypoint for roster imports.

Modes (--mode):
  plan                parse, map, normalize, detect conflicts, score; write
                      conflicts / dedup-candidate CSVs for operator review
  apply               as plan, then apply operator decisions and commit
  validate_decisions  check decision CSVs without touching the database

Usage (plan):
    roster-reconcile --mode plan \\
        --db-dsn "$DB_DSN" \\
        --collection-id 6d1c... \\
        --input-path "rawEvidence/open_2025_final_ranks.xlsx" \\
        --review-dir artifacts/review

Usage (apply, after editing the review CSVs):
    roster-reconcile --mode apply \\
        --db-dsn "$DB_DSN" \\
        --collection-id 6d1c... \\
        --input-path "rawEvidence/open_2025_final_ranks.xlsx" \\
        --conflict-decisions-path artifacts/review/conflicts.csv \\
        --dedup-decisions-path artifacts/review/dedup_candidates.csv

Exit code is 1 on configuration errors, unresolved conflicts, invalid
decision rows (validate_decisions), or any failed row at apply.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import psycopg

from roster_reconcile.apply_commit import IMPORT_MODES, MODE_APPEND, ImportLedger
from roster_reconcile.conflict_resolution import Resolution, parse_resolution
from roster_reconcile.decisions import (
    load_conflict_decisions,
    load_dedup_decisions,
    write_conflicts_csv,
    write_dedup_candidates_csv,
)
from roster_reconcile.pipeline import (
    ReconcilePlan,
    build_plan,
    build_reconcile_report,
    resolve_plan,
    run_reconcile,
)
from roster_reconcile.reconcile_rules import RulesValidationError, load_rules
from roster_reconcile.session_store import InMemoryKeyValueStore, JsonFileKeyValueStore
from roster_reconcile.shared import (
    ConfigurationError,
    ParseError,
    RejectWriter,
    RunCounters,
    utc_now_iso,
    write_run_report,
)
from roster_reconcile.store import RosterStore
from roster_reconcile.workbook import parse_with_fallback
from roster_reconcile.write_policy import STATUS_VALIDATION


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _fill_counters(
    counters: RunCounters,
    plan: ReconcilePlan,
    ledger: ImportLedger | None = None,
) -> None:
    norm = plan.normalized.summary
    counters.rows_read = norm.rows_in
    counters.rows_footer_dropped = norm.footer_dropped
    counters.rows_invalid = len(plan.normalized.errors)
    counters.conflicts_detected = len(plan.conflicts)
    counters.conflicts_pending = len(plan.pending_conflicts)
    if plan.resolution:
        counters.rows_dropped_by_resolution = len(plan.resolution.dropped)
    if plan.dedup:
        summary = plan.dedup.summary()
        counters.dedup_creates = summary["creates"]
        counters.dedup_updates = summary["updates"]
        counters.dedup_skips = summary["skips"]
        counters.dedup_review = summary["needs_review"]
    if ledger:
        counters.rows_created = len(ledger.created)
        counters.rows_updated = len(ledger.updated)
        counters.rows_skipped = len(ledger.skipped)
        counters.rows_failed = len(ledger.failed)
        counters.merges_tolerated = len(ledger.tolerated)
        invalid = {err.original_index for err in plan.normalized.errors}
        counters.db_phase_errors = sum(
            1 for f in ledger.failed
            if f["status"] != "preflight"
            and not (f["status"] == STATUS_VALIDATION and f["row"] in invalid)
        )
    counters.warnings.extend(plan.warnings)


def _validate_plan_flags(
    db_dsn: str | None,
    collection_id: str | None,
    input_path: str | None,
    run_id: str,
) -> None:
    missing = [
        flag for flag, value in (
            ("--db-dsn", db_dsn),
            ("--collection-id", collection_id),
            ("--input-path", input_path),
        ) if not value
    ]
    if missing:
        _fatal(run_id, f"plan/apply modes require: {', '.join(missing)}")
    if not Path(input_path).exists():  # type: ignore[arg-type]
        _fatal(run_id, f"--input-path not found: {input_path}")


def _run_validate_decisions(
    conflict_decisions_path: str | None,
    dedup_decisions_path: str | None,
    run_id: str,
) -> None:
    if not conflict_decisions_path and not dedup_decisions_path:
        _fatal(
            run_id,
            "validate_decisions mode requires --conflict-decisions-path "
            "and/or --dedup-decisions-path",
        )
    invalid = 0
    for label, path, loader in (
        ("conflict decisions", conflict_decisions_path, load_conflict_decisions),
        ("dedup decisions", dedup_decisions_path, load_dedup_decisions),
    ):
        if not path:
            continue
        try:
            _, ctrs = loader(Path(path))
        except (OSError, ValueError) as exc:
            _fatal(run_id, str(exc))
        click.echo(f"[{run_id}] {label}: {json.dumps(ctrs.to_dict(), indent=2)}")
        invalid += ctrs.rows_invalid
    if invalid:
        click.echo(f"[{run_id}] {invalid} invalid decision row(s)", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Decision files are valid.")


@click.command()
@click.option(
    "--mode",
    default="plan",
    type=click.Choice(["plan", "apply", "validate_decisions"]),
    show_default=True,
    help="Run mode",
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN")
@click.option("--collection-id", default=None, help="Target roster collection id")
@click.option("--input-path", default=None, type=click.Path(), help="Roster CSV or XLSX file")
@click.option("--rules-file", default=None, type=click.Path(), help="Reconcile rules YAML (default: config/reconcile_rules/default.yml)")
@click.option(
    "--import-mode",
    default=MODE_APPEND,
    type=click.Choice(list(IMPORT_MODES)),
    show_default=True,
    help="append reconciles against the collection; replace swaps it wholesale",
)
@click.option("--conflict-decisions-path", default=None, type=click.Path(), help="CSV of pair_id,resolution")
@click.option("--dedup-decisions-path", default=None, type=click.Path(), help="CSV of row,action[,existing_id]")
@click.option(
    "--default-resolution",
    default=None,
    type=click.Choice([r.value for r in Resolution]),
    help="Resolution applied to every conflict still pending",
)
@click.option("--session-dir", default=None, type=click.Path(), help="Directory that persists conflict resolutions between runs")
@click.option("--review-dir", default="artifacts/review", type=click.Path(), show_default=True, help="Where conflicts.csv and dedup_candidates.csv are written")
@click.option("--remote-parse-url", default=None, help="Parse endpoint used when local parsing fails or times out")
@click.option("--parse-timeout-seconds", default=30.0, type=float, show_default=True)
@click.option("--dry-run", is_flag=True, default=False, help="[apply] Roll back instead of committing")
@click.option(
    "--rejects-path",
    default="artifacts/rejects/roster_rejects.csv",
    type=click.Path(),
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--verbose", is_flag=True, default=False, help="Log at INFO level")
def main(
    mode: str,
    db_dsn: str | None,
    collection_id: str | None,
    input_path: str | None,
    rules_file: str | None,
    import_mode: str,
    conflict_decisions_path: str | None,
    dedup_decisions_path: str | None,
    default_resolution: str | None,
    session_dir: str | None,
    review_dir: str,
    remote_parse_url: str | None,
    parse_timeout_seconds: float,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    verbose: bool,
) -> None:
    """Roster import reconciliation CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now_iso()
    counters = RunCounters()

    click.echo(f"[{run_id}] Starting {mode} run (import_mode={import_mode}, dry_run={dry_run})")

    if mode == "validate_decisions":
        _run_validate_decisions(conflict_decisions_path, dedup_decisions_path, run_id)
        return

    _validate_plan_flags(db_dsn, collection_id, input_path, run_id)

    # Configuration errors abort before any network call.
    try:
        rules = load_rules(Path(rules_file) if rules_file else None)
    except (OSError, RulesValidationError) as exc:
        _fatal(run_id, f"rules file: {exc}")
    click.echo(f"[{run_id}] Rules {rules.version} (sha256 {rules.yaml_hash[:12]})")

    conflict_decisions: dict[str, Resolution] = {}
    dedup_choices: dict[int, dict[str, Any]] = {}
    try:
        if conflict_decisions_path:
            conflict_decisions, ctrs = load_conflict_decisions(Path(conflict_decisions_path))
            counters.warnings.extend(ctrs.warnings)
        if dedup_decisions_path and mode == "apply":
            dedup_choices, ctrs = load_dedup_decisions(Path(dedup_decisions_path))
            counters.warnings.extend(ctrs.warnings)
    except (OSError, ValueError) as exc:
        _fatal(run_id, str(exc))

    data = Path(input_path).read_bytes()  # type: ignore[arg-type]
    try:
        table = parse_with_fallback(
            data,
            Path(input_path).name,  # type: ignore[arg-type]
            remote_url=remote_parse_url,
            timeout_seconds=parse_timeout_seconds,
        )
    except ParseError as exc:
        _fatal(run_id, f"could not parse {input_path}: {exc}")
    click.echo(
        f"[{run_id}] Parsed sheet {table.sheet_name!r}: header row {table.header_row_index}, "
        f"{len(table.rows)} data row(s), source={table.source}, parsed_by={table.parsed_by}"
    )

    kv_store = JsonFileKeyValueStore(Path(session_dir)) if session_dir else InMemoryKeyValueStore()
    rejects = RejectWriter(Path(rejects_path))
    ledger: ImportLedger | None = None
    conn = psycopg.connect(db_dsn, autocommit=False)  # type: ignore[arg-type]
    try:
        store = RosterStore(conn)
        if not store.collection_exists(collection_id):  # type: ignore[arg-type]
            _fatal(run_id, f"collection {collection_id} does not exist")
        existing = store.fetch_existing(collection_id)  # type: ignore[arg-type]
        click.echo(f"[{run_id}] {len(existing)} existing entr(y/ies) in collection")

        try:
            plan = build_plan(
                table,
                existing,
                rules,
                mode=import_mode,
                collection_id=collection_id,
                session_store=kv_store,
            )
        except ConfigurationError as exc:
            _fatal(run_id, str(exc))

        for err in plan.normalized.errors:
            rejects.write({"_row": err.original_index, **table.rows[err.original_index]}, err.reason)

        if conflict_decisions or default_resolution:
            resolve_plan(
                plan,
                conflict_decisions,
                default=parse_resolution(default_resolution) if default_resolution else None,
            )

        review = Path(review_dir)
        if plan.conflicts:
            write_conflicts_csv(review / "conflicts.csv", plan.conflicts, plan.session)
            click.echo(f"[{run_id}] Conflicts: {review / 'conflicts.csv'}")
        if plan.dedup and plan.dedup.candidates:
            write_dedup_candidates_csv(review / "dedup_candidates.csv", plan.dedup)
            click.echo(f"[{run_id}] Dedup candidates: {review / 'dedup_candidates.csv'}")

        if mode == "apply":
            if plan.pending_conflicts:
                click.echo(build_reconcile_report(plan, dry_run=dry_run))
                _fatal(
                    run_id,
                    f"{len(plan.pending_conflicts)} conflict(s) unresolved; "
                    "supply --conflict-decisions-path or --default-resolution",
                )
            ledger = run_reconcile(
                store, plan, run_id, dedup_choices=dedup_choices,
                meta={"input_path": input_path, "dry_run": dry_run},
            )
            already_rejected = {err.original_index for err in plan.normalized.errors}
            for f in ledger.failed:
                row = f["row"]
                if f["status"] == STATUS_VALIDATION and row in already_rejected:
                    continue
                source_row = table.rows[row] if row is not None and 0 <= row < len(table.rows) else {}
                rejects.write({"_row": row, **source_row}, f["cause"])
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] Dry run: rolled back.")
            else:
                conn.commit()
                click.echo(f"[{run_id}] Committed.")
        else:
            conn.rollback()

        click.echo(build_reconcile_report(plan, ledger, dry_run=dry_run))
        _fill_counters(counters, plan, ledger)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, f"{mode}:{import_mode}", dry_run,
        {"input_path": input_path, "collection_id": collection_id},
        counters,
        extra={"plan": plan.summary(), "ledger": ledger.to_dict() if ledger else None},
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected row(s): {rejects_path}")

    if ledger is not None and not ledger.ok:
        click.echo(
            f"[{run_id}] Run completed with {len(ledger.failed)} failed row(s); exiting non-zero",
            err=True,
        )
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
