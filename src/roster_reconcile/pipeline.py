"""roster_reconcile.pipeline

End-to-end orchestration of one import batch against one collection.

  build_plan      mapping → normalization → conflict detection →
                  resolution → dedup scoring; returns a ReconcilePlan.
                  Stops after detection while any conflict is pending.
  resolve_plan    record operator resolutions and finish the plan
  run_reconcile   commit a finished plan through the store

The report also counts rows eligible for each category configured under
`categories:` in the rules file, for prize allocation downstream.

The existing-entity snapshot is read once by the caller and handed to
build_plan; nothing is written before run_reconcile, so discarding a plan
cancels the import.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from roster_reconcile.apply_commit import (
    IMPORT_MODES,
    MODE_APPEND,
    CollectionStore,
    ImportLedger,
    commit_batch,
)
from roster_reconcile.batch_normalize import NormalizeResult, normalize_rows
from roster_reconcile.column_mapping import (
    ColumnMapping,
    apply_overrides,
    map_columns,
    require_mapping,
)
from roster_reconcile.conflict_resolution import (
    ImportSession,
    Resolution,
    ResolutionOutcome,
    apply_resolutions,
)
from roster_reconcile.conflicts import ConflictPair, detect_conflicts
from roster_reconcile.dedup_score import DedupPlan, apply_operator_choices, run_dedup_pass
from roster_reconcile.eligibility import is_eligible
from roster_reconcile.records import ExistingEntity
from roster_reconcile.reconcile_rules import ReconcileRules
from roster_reconcile.session_store import KeyValueStore
from roster_reconcile.shared import ConfigurationError
from roster_reconcile.workbook import ParsedTable

log = logging.getLogger(__name__)


@dataclass
class ReconcilePlan:
    collection_id: str | None
    mode: str
    table: ParsedTable
    rules: ReconcileRules
    mapping: ColumnMapping
    normalized: NormalizeResult
    existing: list[ExistingEntity]
    conflicts: list[ConflictPair]
    session: ImportSession
    resolution: ResolutionOutcome | None = None
    dedup: DedupPlan | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def pending_conflicts(self) -> list[str]:
        return self.session.pending

    @property
    def ready(self) -> bool:
        return self.dedup is not None and not self.pending_conflicts

    def eligible_counts(self) -> dict[str, int]:
        """Rows eligible for each configured category, after resolution."""
        records = self.resolution.records if self.resolution else self.normalized.records
        return {
            name: sum(1 for rec in records if is_eligible(rec, criteria))
            for name, criteria in self.rules.categories.items()
        }

    def summary(self) -> dict[str, Any]:
        return {
            "collection_id": self.collection_id,
            "mode": self.mode,
            "table": self.table.to_dict(),
            "mapping": self.mapping.to_dict(),
            "normalize": self.normalized.summary.to_dict(),
            "validation_errors": [e.to_dict() for e in self.normalized.errors[:50]],
            "conflicts": {
                "detected": len(self.conflicts),
                "cross_store": sum(1 for p in self.conflicts if p.is_cross_store),
                "pending": len(self.pending_conflicts),
            },
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "dedup": self.dedup.summary() if self.dedup else None,
            "eligible": self.eligible_counts(),
            "warnings": self.warnings[:50],
        }


def _finish(plan: ReconcilePlan) -> ReconcilePlan:
    outcome = apply_resolutions(
        plan.normalized.records, plan.session, plan.rules.tie_break
    )
    plan.resolution = outcome
    plan.warnings.extend(outcome.warnings)
    scored_against = plan.existing if plan.mode == MODE_APPEND else []
    plan.dedup = run_dedup_pass(outcome.records, scored_against, plan.rules, outcome.predecided)
    return plan


def build_plan(
    table: ParsedTable,
    existing: list[ExistingEntity],
    rules: ReconcileRules,
    mode: str = MODE_APPEND,
    session: ImportSession | None = None,
    overrides: dict[str, str | None] | None = None,
    collection_id: str | None = None,
    session_store: KeyValueStore | None = None,
) -> ReconcilePlan:
    """Run every stage that does not write.

    Raises:
        ConfigurationError: unknown mode, bad overrides, or required
            columns not mapped.
    """
    if mode not in IMPORT_MODES:
        raise ConfigurationError(f"unknown import mode {mode!r}")

    mapping = map_columns(table.headers, table.rows)
    if overrides:
        mapping = apply_overrides(mapping, overrides)
    require_mapping(mapping)

    normalized = normalize_rows(table.rows, mapping, rules)
    # Replace mode discards the collection, so only intra-batch pairs matter.
    cross = existing if mode == MODE_APPEND else []
    conflicts = detect_conflicts(normalized.records, cross)

    if session is None:
        session = ImportSession(collection_id or "", table.file_hash, store=session_store)
    session.register(conflicts)

    plan = ReconcilePlan(
        collection_id=collection_id,
        mode=mode,
        table=table,
        rules=rules,
        mapping=mapping,
        normalized=normalized,
        existing=list(existing),
        conflicts=conflicts,
        session=session,
        warnings=list(mapping.warnings) + list(normalized.summary.warnings),
    )
    if session.pending:
        log.info("%d conflict(s) awaiting resolution", len(session.pending))
        return plan
    return _finish(plan)


def resolve_plan(
    plan: ReconcilePlan,
    resolutions: dict[str, Resolution | str],
    default: Resolution | str | None = None,
) -> ReconcilePlan:
    """Record resolutions by pair_id (and an optional default), then finish.

    Unknown pair ids are reported in plan.warnings.
    """
    known = {p.pair_id for p in plan.session.pairs}
    for pair_id, resolution in resolutions.items():
        if pair_id not in known:
            plan.warnings.append(f"{pair_id}: not a detected conflict; ignored")
            continue
        plan.session.resolve(pair_id, resolution)
    if default is not None:
        plan.session.resolve_all(default, only_pending=True)
    if plan.session.pending:
        return plan
    return _finish(plan)


def run_reconcile(
    store: CollectionStore,
    plan: ReconcilePlan,
    run_id: str,
    dedup_choices: dict[int, dict[str, Any]] | None = None,
    meta: dict[str, Any] | None = None,
) -> ImportLedger:
    """Commit a finished plan.

    Raises:
        ConfigurationError: no target collection.
        ConflictUnresolved: conflicts are still pending.
    """
    if not plan.collection_id:
        raise ConfigurationError("no target collection selected")
    plan.session.ensure_resolved()
    if plan.dedup is None:
        _finish(plan)
    assert plan.dedup is not None
    if plan.dedup.is_stale(plan.rules.merge_policy):
        plan.dedup = run_dedup_pass(
            plan.resolution.records if plan.resolution else [],
            plan.existing if plan.mode == MODE_APPEND else [],
            plan.rules,
            plan.resolution.predecided if plan.resolution else None,
        )
    if dedup_choices:
        apply_operator_choices(plan.dedup, dedup_choices, plan.rules.merge_policy)
        plan.warnings.extend(plan.dedup.warnings)

    audit_meta = {
        "rules_yaml_hash": plan.rules.yaml_hash,
        "source": plan.table.source,
        "sheet_name": plan.table.sheet_name,
        "validation_errors": len(plan.normalized.errors),
        "conflicts": len(plan.conflicts),
        **(meta or {}),
    }
    return commit_batch(
        store,
        plan.collection_id,
        plan.mode,
        plan.dedup,
        plan.rules,
        run_id,
        file_hash=plan.table.file_hash,
        meta=audit_meta,
        total_rows=plan.normalized.summary.rows_in,
        validation_errors=plan.normalized.errors,
    )


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_reconcile_report(
    plan: ReconcilePlan,
    ledger: ImportLedger | None = None,
    dry_run: bool = False,
) -> str:
    norm = plan.normalized.summary
    lines = [
        "=" * 60,
        "Roster Import Reconciliation Report",
        f"  collection: {plan.collection_id}",
        f"  mode:       {plan.mode}",
        f"  dry_run:    {dry_run}",
        "=" * 60,
        f"  sheet / header row:             {plan.table.sheet_name} / {plan.table.header_row_index}",
        f"  detected source:                {plan.table.source}",
        f"  rows read:                      {norm.rows_in}",
        f"  footer rows dropped:            {norm.footer_dropped}",
        f"  invalid rows:                   {len(plan.normalized.errors)}",
        f"  tie ranks imputed:              {norm.tie_ranks.total_imputed}",
        f"  ranks auto-filled:              {norm.rank_autofilled + norm.single_gap_filled}",
        f"  DOBs imputed from year:         {len(norm.dob_imputed)}",
        f"  conflicts detected:             {len(plan.conflicts)}",
        f"  conflicts pending:              {len(plan.pending_conflicts)}",
    ]
    if plan.resolution:
        lines.append(f"  rows dropped by resolution:     {len(plan.resolution.dropped)}")
        lines.append(f"  merges:                         {len(plan.resolution.merges)}")
    if plan.dedup:
        s = plan.dedup.summary()
        lines += [
            f"  dedup creates:                  {s['creates']}",
            f"  dedup updates:                  {s['updates']}",
            f"  dedup skips:                    {s['skips']}",
            f"  needs review:                   {s['needs_review']}",
        ]
    for name, count in plan.eligible_counts().items():
        lines.append(f"  eligible {name + ':':<22} {count}")
    if ledger:
        counts = ledger.counts()
        lines += [
            "-" * 60,
            f"  created:                        {counts['created']}",
            f"  updated:                        {counts['updated']}",
            f"  skipped:                        {counts['skipped']}",
            f"  tolerated merges:               {counts['tolerated']}",
            f"  failed:                         {counts['failed']}",
            f"  duration_ms:                    {ledger.duration_ms}",
        ]
        limit = plan.rules.sample_error_limit
        for f in ledger.failed[:limit]:
            lines.append(f"    row {f['row']}: {f['cause']}")
        if len(ledger.failed) > limit:
            lines.append(f"    ... and {len(ledger.failed) - limit} more")
    if plan.warnings:
        lines.append(f"\nWarnings ({len(plan.warnings)}):")
        for w in plan.warnings[:20]:
            lines.append(f"  {w}")
        if len(plan.warnings) > 20:
            lines.append(f"  ... and {len(plan.warnings) - 20} more")
    if plan.pending_conflicts:
        lines.append(
            "\nNote: resolve the pending conflicts (--conflict-decisions-path) before apply."
        )
    lines.append("=" * 60)
    return "\n".join(lines)
