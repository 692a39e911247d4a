"""roster_reconcile.apply_commit

Commits a reconciled batch to the store.

Responsibilities:
  - Preflight: warn on ranks that collide with existing entries; reject
    creates whose ranks collide with each other
  - replace mode: hand every surviving record to the store's all-or-nothing
    replace; any rejected row means zero writes
  - append mode: creates in chunks through the RetryPolicy (bulk, then per
    row); a create reusing a persisted sequence_no is a plain insert that
    fails as a conflict instead of upserting over that entry; updates keyed
    by existing id; no-op updates become skips
  - rows rejected during normalization enter the ledger as validation
    failures before any write
  - ImportLedger: per-row outcome (created / updated / skipped / failed /
    tolerated) plus the audit record written to import_log

The store is duck-typed: RosterStore in production, an in-memory fake in
unit tests.  Neither commit nor rollback happens here.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol

from roster_reconcile.dedup_score import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DedupDecision,
    DedupPlan,
)
from roster_reconcile.records import ExistingEntity, IncomingRecord
from roster_reconcile.reconcile_rules import ReconcileRules
from roster_reconcile.shared import (
    ConfigurationError,
    PartialApplyFailure,
    RowValidationError,
    utc_now_iso,
)
from roster_reconcile.write_policy import (
    STATUS_VALIDATION,
    STRATEGY_PER_ROW,
    RetryPolicy,
    WriteError,
    classify_write_error,
)

log = logging.getLogger(__name__)

MODE_APPEND = "append"
MODE_REPLACE = "replace"
IMPORT_MODES = (MODE_APPEND, MODE_REPLACE)


class CollectionStore(Protocol):
    def collection_exists(self, collection_id: str) -> bool: ...

    def bulk_upsert(self, collection_id: str, payloads: list[dict[str, Any]]) -> int: ...

    def insert_one(self, collection_id: str, payload: dict[str, Any]) -> str: ...

    def update_one(self, collection_id: str, entry_id: str, changes: dict[str, Any]) -> bool: ...

    def replace_all(
        self, collection_id: str, rows: list[dict[str, Any]]
    ) -> tuple[int, list[dict[str, Any]]]: ...

    def insert_import_log(self, record: dict[str, Any]) -> str: ...


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@dataclass
class ImportLedger:
    mode: str
    total_rows: int = 0
    created: list[int] = field(default_factory=list)
    updated: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    tolerated: list[int] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    preflight_warnings: list[str] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    duration_ms: int = 0
    audit_id: str | None = None

    def fail(self, row: int | None, cause: str, status: str = "validation") -> None:
        self.failed.append({"row": row, "cause": cause, "status": status})

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def accepted(self) -> int:
        return len(self.created) + len(self.updated) + len(self.tolerated)

    def counts(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "created": len(self.created),
            "updated": len(self.updated),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "tolerated": len(self.tolerated),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            **self.counts(),
            "accepted": self.accepted,
            "failed_rows": self.failed[:50],
            "preflight_warnings": self.preflight_warnings[:50],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "audit_id": self.audit_id,
        }

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialApplyFailure(self.failed)


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------

@dataclass
class Preflight:
    warnings: list[str] = field(default_factory=list)
    rejected: dict[int, str] = field(default_factory=dict)


def preflight(
    decisions: list[DedupDecision],
    records: dict[int, IncomingRecord],
    existing: list[ExistingEntity],
) -> Preflight:
    """Check create ranks before anything is written.

    A create whose rank matches an existing entry is a warning (the store
    may still reject it).  Creates that share a rank with an earlier create
    in the same batch are rejected; the first occurrence goes ahead.
    """
    result = Preflight()
    existing_ranks = {e.rank: e for e in existing if e.rank is not None}
    first_by_rank: dict[int, int] = {}

    for d in decisions:
        if d.action != ACTION_CREATE:
            continue
        rank = records[d.original_index].rank
        if rank is None:
            continue
        holder = existing_ranks.get(rank)
        if holder is not None:
            result.warnings.append(
                f"row {d.original_index}: rank {rank} already held by {holder.name!r}"
            )
        if rank in first_by_rank:
            result.rejected[d.original_index] = (
                f"rank {rank} duplicates row {first_by_rank[rank]} in this batch"
            )
        else:
            first_by_rank[rank] = d.original_index
    return result


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def _failure_cause(err: WriteError) -> str:
    return f"{err.status}: {err.message}"


def _sequence_taken(exc: BaseException) -> WriteError:
    """Classifier for creates whose sequence_no is already persisted.

    The merge target there belongs to another entity, so the collision is a
    fatal conflict rather than a tolerated merge.
    """
    err = classify_write_error(exc)
    if not err.is_expected_merge_target:
        return err
    return dataclasses.replace(
        err,
        is_expected_merge_target=False,
        message=f"sequence_no held by an existing entry; {err.message}",
    )


def apply_replace(
    store: CollectionStore,
    collection_id: str,
    records: list[IncomingRecord],
    ledger: ImportLedger,
) -> None:
    rows = [{"original_index": r.original_index, **r.to_payload()} for r in records]
    inserted, errors = store.replace_all(collection_id, rows)
    if errors:
        for err in errors:
            ledger.fail(err.get("row"), str(err.get("reason") or "rejected"))
        log.warning("replace rejected: %d error row(s); collection unchanged", len(errors))
        return
    ledger.created.extend(r.original_index for r in records)
    log.info("replace wrote %d row(s) to %s", inserted, collection_id)


def apply_append(
    store: CollectionStore,
    collection_id: str,
    plan: DedupPlan,
    rules: ReconcileRules,
    ledger: ImportLedger,
) -> None:
    decisions = plan.ordered_decisions()
    checks = preflight(decisions, plan.records, list(plan.existing.values()))
    ledger.preflight_warnings.extend(checks.warnings)
    for w in checks.warnings:
        log.warning("preflight: %s", w)

    policy = RetryPolicy(strategies=tuple(rules.retry_strategies))
    persisted_sequences = {
        e.sequence_no for e in plan.existing.values() if e.sequence_no is not None
    }

    creates: list[IncomingRecord] = []
    # Creates that would upsert onto a persisted entry: plain inserts only.
    held: list[IncomingRecord] = []
    updates: list[DedupDecision] = []
    for d in decisions:
        if d.original_index in checks.rejected:
            ledger.fail(d.original_index, checks.rejected[d.original_index], "preflight")
        elif d.action == ACTION_CREATE:
            rec = plan.records[d.original_index]
            if rec.sequence_no is not None and rec.sequence_no in persisted_sequences:
                held.append(rec)
            else:
                creates.append(rec)
        elif d.action == ACTION_UPDATE and d.payload:
            updates.append(d)
        elif d.action in (ACTION_UPDATE, ACTION_SKIP):
            ledger.skipped.append(d.original_index)

    def insert(rec: IncomingRecord) -> str:
        return store.insert_one(collection_id, rec.to_payload())

    def record_creates(result) -> None:
        ledger.created.extend(r.original_index for r in result.succeeded)
        ledger.tolerated.extend(r.original_index for r in result.tolerated)
        for rec, err in result.failed:
            ledger.fail(rec.original_index, _failure_cause(err), err.status)

    for chunk in _chunks(creates, rules.chunk_size):
        record_creates(policy.run(
            chunk,
            single=insert,
            bulk=lambda recs: store.bulk_upsert(collection_id, [r.to_payload() for r in recs]),
        ))

    if held:
        log.warning("%d create(s) reuse a persisted sequence_no; inserting row by row", len(held))
        strict = RetryPolicy(strategies=(STRATEGY_PER_ROW,), classifier=_sequence_taken)
        record_creates(strict.run(held, single=insert))

    def update(d: DedupDecision) -> None:
        if not store.update_one(collection_id, d.existing_id, d.payload):
            ledger.fail(d.original_index, f"existing entry {d.existing_id} not found", "missing")
            return
        ledger.updated.append(d.original_index)

    result = policy.run(updates, single=update)
    ledger.tolerated.extend(d.original_index for d in result.tolerated)
    for d, err in result.failed:
        ledger.fail(d.original_index, _failure_cause(err), err.status)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

TOP_REASONS_LIMIT = 10


def top_reasons(failed: list[dict[str, Any]], limit: int = TOP_REASONS_LIMIT) -> list[dict[str, Any]]:
    """Failure causes grouped and counted, most frequent first."""
    counts = Counter(f["cause"] for f in failed)
    return [{"reason": reason, "count": n} for reason, n in counts.most_common(limit)]


def build_audit_record(
    collection_id: str,
    run_id: str,
    ledger: ImportLedger,
    file_hash: str | None,
    rules: ReconcileRules,
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "collection_id": collection_id,
        "run_id": run_id,
        "import_mode": ledger.mode,
        "file_hash": file_hash,
        "rules_version": rules.version,
        "policy_fingerprint": rules.merge_policy.fingerprint(),
        "merge_policy_snapshot": rules.merge_policy.to_dict(),
        "started_at": ledger.started_at,
        "finished_at": ledger.finished_at,
        "duration_ms": ledger.duration_ms,
        **ledger.counts(),
        "accepted_rows": ledger.accepted,
        "skipped_rows": len(ledger.skipped),
        "top_reasons": top_reasons(ledger.failed),
        "sample_errors": [
            {"row": f["row"], "reason": f["cause"]}
            for f in ledger.failed[:rules.sample_error_limit]
        ],
        "error_rows": ledger.failed,
        "meta": meta or {},
    }


def commit_batch(
    store: CollectionStore,
    collection_id: str | None,
    mode: str,
    plan: DedupPlan,
    rules: ReconcileRules,
    run_id: str,
    file_hash: str | None = None,
    meta: dict[str, Any] | None = None,
    total_rows: int | None = None,
    validation_errors: list[RowValidationError] | None = None,
) -> ImportLedger:
    """Write the plan's decisions and record an audit row.

    Args:
        total_rows: Rows read from the source before validation; defaults to
            the rows reaching this stage.
        validation_errors: Rows rejected during normalization.  They enter
            the ledger as failures before any write, so the run is never
            reported as clean while input rows were refused.

    Raises:
        ConfigurationError: no target collection, unknown mode, or the
            collection does not exist.  Raised before any write.
    """
    if not collection_id:
        raise ConfigurationError("no target collection selected")
    if mode not in IMPORT_MODES:
        raise ConfigurationError(f"unknown import mode {mode!r}")
    if not store.collection_exists(collection_id):
        raise ConfigurationError(f"collection {collection_id} does not exist")

    validation_errors = validation_errors or []
    if total_rows is None:
        total_rows = len(plan.records) + len(validation_errors)
    ledger = ImportLedger(mode=mode, total_rows=total_rows, started_at=utc_now_iso())
    for err in validation_errors:
        cause = f"{err.field}: {err.reason}" if err.field else err.reason
        ledger.fail(err.original_index, cause, STATUS_VALIDATION)
    t0 = time.monotonic()

    if mode == MODE_REPLACE:
        apply_replace(store, collection_id, list(plan.records.values()), ledger)
    else:
        apply_append(store, collection_id, plan, rules, ledger)

    ledger.finished_at = utc_now_iso()
    ledger.duration_ms = int((time.monotonic() - t0) * 1000)
    ledger.audit_id = store.insert_import_log(
        build_audit_record(collection_id, run_id, ledger, file_hash, rules, meta)
    )
    log.info("[%s] apply %s: %s", run_id, mode, ledger.counts())
    return ledger
