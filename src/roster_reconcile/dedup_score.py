"""roster_reconcile.dedup_score

Linkage scoring of incoming records against the persisted collection.

For each incoming record, candidate existing entities are gathered by key
(identifier, name+dob, sequence number, normalized name) and by fuzzy name
similarity (rapidfuzz token_sort_ratio).  Each candidate is scored with the
YAML feature weights and the best one decides the default action:

  score >= auto_update   update (payload = MergePolicy-permitted changes),
                         or skip when the policy permits no change
  score >= review        create, flagged for operator review
  otherwise              create

Every decision carries the MergePolicy fingerprint it was computed under;
DedupPlan.is_stale() reports when the policy has changed since.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from rapidfuzz import fuzz, process

from roster_reconcile.conflicts import identifier_key, name_dob_key, sequence_key
from roster_reconcile.normalize import normalize_name
from roster_reconcile.records import ExistingEntity, IncomingRecord
from roster_reconcile.reconcile_rules import MERGEABLE_FIELDS, MergePolicy, ReconcileRules

log = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"
VALID_ACTIONS = frozenset({ACTION_CREATE, ACTION_UPDATE, ACTION_SKIP})

SOURCE_SCORE = "score"
SOURCE_OPERATOR = "operator"
SOURCE_CONFLICT = "conflict"

CONFIDENCE_HIGH = 0.7
CONFIDENCE_MEDIUM = 0.5

_FUZZY_LIMIT = 5


def confidence_level(score: float) -> str:
    if score >= CONFIDENCE_HIGH:
        return "high"
    if score >= CONFIDENCE_MEDIUM:
        return "medium"
    return "low"


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class DedupMatch:
    existing: ExistingEntity
    score: float
    reasons: list[str] = field(default_factory=list)
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class DedupCandidate:
    original_index: int
    incoming: IncomingRecord
    matches: list[DedupMatch] = field(default_factory=list)
    suggested_action: str = ACTION_CREATE
    needs_review: bool = False

    @property
    def best_match(self) -> DedupMatch | None:
        return self.matches[0] if self.matches else None

    @property
    def confidence(self) -> str:
        best = self.best_match
        return confidence_level(best.score) if best else "low"

    def to_dict(self) -> dict[str, Any]:
        best = self.best_match
        return {
            "row": self.original_index,
            "name": self.incoming.name,
            "rank": self.incoming.rank,
            "existing_id": best.existing.id if best else None,
            "existing_name": best.existing.name if best else None,
            "score": best.score if best else 0.0,
            "confidence": self.confidence,
            "reasons": ";".join(best.reasons) if best else "",
            "suggested_action": self.suggested_action,
            "changed_fields": ",".join(sorted(best.changes)) if best else "",
            "needs_review": self.needs_review,
        }


@dataclass
class DedupDecision:
    original_index: int
    action: str
    existing_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    score: float | None = None
    source: str = SOURCE_SCORE
    policy_fingerprint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "row": self.original_index,
            "action": self.action,
            "existing_id": self.existing_id,
            "changed_fields": sorted(self.payload),
            "score": self.score,
            "source": self.source,
        }


@dataclass
class DedupPlan:
    candidates: dict[int, DedupCandidate]
    decisions: dict[int, DedupDecision]
    policy_fingerprint: str
    records: dict[int, IncomingRecord] = field(default_factory=dict, repr=False)
    existing: dict[str, ExistingEntity] = field(default_factory=dict, repr=False)
    warnings: list[str] = field(default_factory=list)

    def is_stale(self, policy: MergePolicy) -> bool:
        return self.policy_fingerprint != policy.fingerprint()

    @property
    def review_rows(self) -> list[int]:
        return sorted(i for i, c in self.candidates.items() if c.needs_review)

    def ordered_decisions(self) -> list[DedupDecision]:
        return [self.decisions[i] for i in sorted(self.decisions)]

    def summary(self) -> dict[str, Any]:
        actions = [d.action for d in self.decisions.values()]
        return {
            "total": len(self.decisions),
            "matched": sum(1 for c in self.candidates.values() if c.best_match),
            "needs_review": len(self.review_rows),
            "creates": actions.count(ACTION_CREATE),
            "updates": actions.count(ACTION_UPDATE),
            "skips": actions.count(ACTION_SKIP),
            "policy_fingerprint": self.policy_fingerprint,
        }


# ---------------------------------------------------------------------------
# Merge policy
# ---------------------------------------------------------------------------

def apply_merge_policy(
    incoming: IncomingRecord,
    existing: ExistingEntity,
    policy: MergePolicy,
) -> dict[str, Any]:
    """Return the field changes the policy permits incoming to make on existing.

    A blank incoming value never changes anything.  'never' fields are left
    alone, 'if_empty' fields only fill blanks, 'always' fields overwrite any
    differing value.  Rating: a blank existing rating is always filled, and
    with prefer_newer_rating only a higher incoming rating overwrites.  Dob:
    never_overwrite_dob protects a populated existing dob.
    """
    changes: dict[str, Any] = {}
    for fld in MERGEABLE_FIELDS:
        inc = getattr(incoming, fld)
        if _blank(inc):
            continue
        mode = policy.mode_for(fld)
        if mode == "never":
            continue
        ex = getattr(existing, fld, None)

        if fld == "rating":
            if ex is None:
                changes[fld] = inc
            elif policy.prefer_newer_rating:
                if inc > ex:
                    changes[fld] = inc
            elif mode == "always" and inc != ex:
                changes[fld] = inc
            continue

        if fld == "dob" and policy.never_overwrite_dob and not _blank(ex):
            continue

        if _blank(ex):
            changes[fld] = inc
        elif mode == "always" and inc != ex:
            changes[fld] = inc

    if "dob" in changes and incoming.dob_original:
        changes["dob_original"] = incoming.dob_original
    if "rating" in changes:
        changes["unrated"] = False
    return changes


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_pair(
    incoming: IncomingRecord,
    existing: ExistingEntity,
    rules: ReconcileRules,
) -> tuple[float, list[str]]:
    """Weighted agreement between two records, clamped to [0.0, 1.0]."""
    w = rules.feature_weights
    reasons: list[str] = []
    score = 0.0

    inc_name = normalize_name(incoming.name)
    ex_name = normalize_name(existing.name)
    if not inc_name or not ex_name:
        return 0.0, reasons

    if inc_name == ex_name:
        score += w.get("name_exact", 0.0)
        reasons.append("name_exact")
    else:
        similarity = fuzz.token_sort_ratio(inc_name, ex_name) / 100.0
        if similarity >= rules.threshold_fuzzy_name:
            score += w.get("name_similarity", 0.0) * similarity
            reasons.append(f"name_similarity:{similarity:.2f}")

    inc_id, ex_id = identifier_key(incoming), identifier_key(existing)
    if inc_id and ex_id and inc_id == ex_id:
        score += w.get("identifier_exact", 0.0)
        reasons.append("identifier_exact")

    if incoming.dob and existing.dob:
        if incoming.dob == existing.dob:
            score += w.get("dob_exact", 0.0)
            reasons.append("dob_exact")
        elif incoming.dob[:4] == existing.dob[:4]:
            score += w.get("dob_year", 0.0)
            reasons.append("dob_year")

    inc_seq, ex_seq = sequence_key(incoming), sequence_key(existing)
    if inc_seq and ex_seq and inc_seq == ex_seq:
        score += w.get("sequence_exact", 0.0)
        reasons.append("sequence_exact")

    if incoming.rating is not None and existing.rating is not None:
        diff = abs(incoming.rating - existing.rating)
        if diff <= 25:
            score += w.get("rating_within_25", 0.0)
            reasons.append("rating_within_25")
        elif diff <= 50:
            score += w.get("rating_within_50", 0.0)
            reasons.append("rating_within_50")

    return round(min(1.0, max(0.0, score)), 4), reasons


class _ExistingIndex:
    """Blocking index over the existing snapshot."""

    def __init__(self, existing: list[ExistingEntity]) -> None:
        self.by_id = {e.id: e for e in existing}
        self.by_key: dict[str, dict[str, list[ExistingEntity]]] = {
            "identifier": {}, "name_dob": {}, "sequence": {}, "name": {},
        }
        for ent in existing:
            for kind, key in (
                ("identifier", identifier_key(ent)),
                ("name_dob", name_dob_key(ent)),
                ("sequence", sequence_key(ent)),
                ("name", normalize_name(ent.name)),
            ):
                if key:
                    self.by_key[kind].setdefault(key, []).append(ent)
        self.names = list(self.by_key["name"])

    def candidates(self, rec: IncomingRecord, fuzzy_threshold: float) -> list[ExistingEntity]:
        found: dict[str, ExistingEntity] = {}
        for kind, key in (
            ("identifier", identifier_key(rec)),
            ("name_dob", name_dob_key(rec)),
            ("sequence", sequence_key(rec)),
            ("name", normalize_name(rec.name)),
        ):
            for ent in self.by_key[kind].get(key or "", []):
                found.setdefault(ent.id, ent)
        name = normalize_name(rec.name)
        if name and self.names:
            for match_name, _, _ in process.extract(
                name,
                self.names,
                scorer=fuzz.token_sort_ratio,
                score_cutoff=fuzzy_threshold * 100.0,
                limit=_FUZZY_LIMIT,
            ):
                for ent in self.by_key["name"][match_name]:
                    found.setdefault(ent.id, ent)
        return list(found.values())


# ---------------------------------------------------------------------------
# Pass
# ---------------------------------------------------------------------------

def _classify(
    rec: IncomingRecord,
    matches: list[DedupMatch],
    rules: ReconcileRules,
    fingerprint: str,
) -> tuple[DedupCandidate, DedupDecision]:
    candidate = DedupCandidate(original_index=rec.original_index, incoming=rec, matches=matches)
    best = candidate.best_match
    decision = DedupDecision(
        original_index=rec.original_index,
        action=ACTION_CREATE,
        score=best.score if best else None,
        policy_fingerprint=fingerprint,
    )
    if best is None:
        return candidate, decision

    suggested = ACTION_UPDATE if best.changes else ACTION_SKIP
    if best.score >= rules.threshold_auto_update:
        candidate.suggested_action = suggested
        decision.action = suggested
        decision.existing_id = best.existing.id
        decision.payload = dict(best.changes)
    elif best.score >= rules.threshold_review:
        candidate.suggested_action = suggested
        candidate.needs_review = True
    return candidate, decision


def run_dedup_pass(
    records: list[IncomingRecord],
    existing: list[ExistingEntity],
    rules: ReconcileRules,
    predecided: dict[int, DedupDecision] | None = None,
) -> DedupPlan:
    """Score records against existing and build default decisions.

    Args:
        records: Records that survived conflict resolution.
        existing: Snapshot of the persisted collection (empty in replace mode).
        rules: Thresholds, weights and merge policy.
        predecided: Decisions already fixed by cross-store conflict
            resolution; those rows are not scored.
    """
    policy = rules.merge_policy
    fingerprint = policy.fingerprint()
    index = _ExistingIndex(existing)
    plan = DedupPlan(
        candidates={},
        decisions={},
        policy_fingerprint=fingerprint,
        records={r.original_index: r for r in records},
        existing=dict(index.by_id),
    )

    for rec in records:
        if predecided and rec.original_index in predecided:
            fixed = predecided[rec.original_index]
            fixed.policy_fingerprint = fingerprint
            plan.decisions[rec.original_index] = fixed
            continue

        matches: list[DedupMatch] = []
        for ent in index.candidates(rec, rules.threshold_fuzzy_name):
            score, reasons = score_pair(rec, ent, rules)
            if score > 0:
                matches.append(DedupMatch(
                    existing=ent,
                    score=score,
                    reasons=reasons,
                    changes=apply_merge_policy(rec, ent, policy),
                ))
        matches.sort(key=lambda m: (-m.score, m.existing.id))

        candidate, decision = _classify(rec, matches, rules, fingerprint)
        if candidate.matches:
            plan.candidates[rec.original_index] = candidate
        plan.decisions[rec.original_index] = decision

    log.info("dedup pass: %s", plan.summary())
    return plan


def apply_operator_choices(
    plan: DedupPlan,
    choices: dict[int, dict[str, Any]],
    policy: MergePolicy,
) -> DedupPlan:
    """Override default decisions with operator choices.

    choices maps original_index → {"action": create|update|skip,
    "existing_id": optional}.  update/skip without an existing_id use the
    row's best match.  Invalid choices are reported in plan.warnings and
    leave the default decision in place.
    """
    fingerprint = policy.fingerprint()
    if plan.is_stale(policy):
        raise ValueError(
            "dedup plan was computed under a different merge policy; re-run the dedup pass"
        )
    for row, choice in sorted(choices.items()):
        action = str(choice.get("action") or "").strip().lower()
        if row not in plan.decisions:
            plan.warnings.append(f"row {row}: not part of the dedup plan")
            continue
        current = plan.decisions[row]
        if current.source == SOURCE_CONFLICT:
            plan.warnings.append(f"row {row}: decided by conflict resolution; choice ignored")
            continue
        if action not in VALID_ACTIONS:
            plan.warnings.append(f"row {row}: unknown action={action!r}")
            continue

        if action == ACTION_CREATE:
            plan.decisions[row] = DedupDecision(
                row, ACTION_CREATE, score=current.score,
                source=SOURCE_OPERATOR, policy_fingerprint=fingerprint,
            )
            continue

        existing_id = str(choice.get("existing_id") or "").strip() or None
        if existing_id is None:
            candidate = plan.candidates.get(row)
            best = candidate.best_match if candidate else None
            existing_id = best.existing.id if best else None
        existing = plan.existing.get(existing_id) if existing_id else None
        if existing is None:
            plan.warnings.append(f"row {row}: {action} needs a known existing_id")
            continue

        payload = (
            apply_merge_policy(plan.records[row], existing, policy)
            if action == ACTION_UPDATE else {}
        )
        plan.decisions[row] = DedupDecision(
            row, action, existing_id=existing.id, payload=payload,
            score=current.score, source=SOURCE_OPERATOR, policy_fingerprint=fingerprint,
        )
    return plan
