"""roster_reconcile.conflict_resolution

Operator resolution of ConflictPairs.

Each pair moves detected → pending_resolution → resolved.  An ImportSession
holds the resolutions for one (collection, file hash) and persists them
through an injected KeyValueStore, so reopening the same file restores the
operator's earlier choices.

Strategies, for two incoming rows A and B:
  keep_a     drop B
  keep_b     drop A
  merge      winner = richer side, then higher rating, then the configured
             tie_break; blanks on the winner are filled from the loser; the
             loser is dropped
  keep_both  both rows continue as distinct entities

When A is an existing entity only the incoming row can leave the write set,
so each strategy becomes a fixed dedup decision for B:
  keep_a     skip (existing stays as is)
  keep_b     update existing with B's populated fields
  merge      B wins: update existing with B's fields; existing wins: update
             only the existing entity's blank fields from B
  keep_both  create B as a new entity

keep_both on two sides that share a sequence_no clears B's, so the two
entities never share the upsert key.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from roster_reconcile.conflicts import ConflictPair
from roster_reconcile.dedup_score import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    SOURCE_CONFLICT,
    DedupDecision,
)
from roster_reconcile.records import (
    RICHNESS_FIELDS,
    ExistingEntity,
    IncomingRecord,
    richness,
)
from roster_reconcile.reconcile_rules import MERGEABLE_FIELDS
from roster_reconcile.session_store import InMemoryKeyValueStore, KeyValueStore
from roster_reconcile.shared import ConflictUnresolved

log = logging.getLogger(__name__)


class Resolution(str, Enum):
    KEEP_A = "keep_a"
    KEEP_B = "keep_b"
    MERGE = "merge"
    KEEP_BOTH = "keep_both"


STATUS_DETECTED = "detected"
STATUS_PENDING = "pending_resolution"
STATUS_RESOLVED = "resolved"

TIE_BREAK_PREFER_A = "prefer_a"
TIE_BREAK_PREFER_B = "prefer_b"

# Fields an existing-side update may carry from the incoming row.
_EXISTING_UPDATE_FIELDS = ("name",) + MERGEABLE_FIELDS + ("dob_original",)


def parse_resolution(value: Any) -> Resolution:
    """'keepA', 'keep-a', 'KEEP_A' → Resolution.KEEP_A.  Raises ValueError."""
    if isinstance(value, Resolution):
        return value
    s = str(value or "").strip()
    if s and not s.isupper() and "_" not in s and "-" not in s:
        s = re.sub(r"(?<!^)(?=[A-Z])", "_", s)
    s = re.sub(r"[\s\-]+", "_", s.lower())
    try:
        return Resolution(s)
    except ValueError:
        raise ValueError(
            f"unknown resolution {value!r}; expected one of {[r.value for r in Resolution]}"
        ) from None


# ---------------------------------------------------------------------------
# ImportSession
# ---------------------------------------------------------------------------

@dataclass
class _PairState:
    pair: ConflictPair
    status: str = STATUS_DETECTED
    resolution: Resolution | None = None


class ImportSession:
    """Scoped conflict-resolution state for one file against one collection."""

    def __init__(
        self,
        collection_id: str,
        file_hash: str,
        store: KeyValueStore | None = None,
    ) -> None:
        self.collection_id = collection_id
        self.file_hash = file_hash
        self._store = store if store is not None else InMemoryKeyValueStore()
        self._states: dict[str, _PairState] = {}

    @property
    def key(self) -> str:
        return f"import-session:{self.collection_id}:{self.file_hash}"

    # -- lifecycle ----------------------------------------------------------

    def register(self, pairs: list[ConflictPair]) -> None:
        """Track pairs (detected → pending) and restore saved resolutions."""
        saved = (self._store.get(self.key) or {}).get("resolutions", {})
        self._states = {}
        for pair in pairs:
            state = _PairState(pair)
            state.status = STATUS_PENDING
            if pair.pair_id in saved:
                state.resolution = Resolution(saved[pair.pair_id])
                state.status = STATUS_RESOLVED
            self._states[pair.pair_id] = state
        restored = sum(1 for s in self._states.values() if s.status == STATUS_RESOLVED)
        if restored:
            log.info("session %s: restored %d resolution(s)", self.key, restored)

    def resolve(self, pair_id: str, resolution: Resolution | str) -> None:
        state = self._states.get(pair_id)
        if state is None:
            raise KeyError(f"unknown conflict pair {pair_id!r}")
        state.resolution = (
            resolution if isinstance(resolution, Resolution) else parse_resolution(resolution)
        )
        state.status = STATUS_RESOLVED
        self._persist()

    def resolve_all(self, resolution: Resolution | str, only_pending: bool = True) -> int:
        res = resolution if isinstance(resolution, Resolution) else parse_resolution(resolution)
        count = 0
        for state in self._states.values():
            if only_pending and state.status == STATUS_RESOLVED:
                continue
            state.resolution = res
            state.status = STATUS_RESOLVED
            count += 1
        self._persist()
        return count

    def reopen(self, pair_id: str) -> None:
        state = self._states[pair_id]
        state.resolution = None
        state.status = STATUS_PENDING
        self._persist()

    def clear(self) -> None:
        self._store.delete(self.key)
        for state in self._states.values():
            state.resolution = None
            state.status = STATUS_PENDING

    def _persist(self) -> None:
        self._store.set(self.key, {
            "collection_id": self.collection_id,
            "file_hash": self.file_hash,
            "resolutions": {
                pid: s.resolution.value
                for pid, s in self._states.items()
                if s.resolution is not None
            },
        })

    # -- queries ------------------------------------------------------------

    def status(self, pair_id: str) -> str:
        return self._states[pair_id].status

    def resolution(self, pair_id: str) -> Resolution | None:
        return self._states[pair_id].resolution

    @property
    def pairs(self) -> list[ConflictPair]:
        return [s.pair for s in self._states.values()]

    @property
    def pending(self) -> list[str]:
        return [pid for pid, s in self._states.items() if s.status != STATUS_RESOLVED]

    def ensure_resolved(self) -> None:
        pending = self.pending
        if pending:
            raise ConflictUnresolved(pending)

    def to_dict(self) -> dict[str, Any]:
        return {
            pid: {"status": s.status, "resolution": s.resolution.value if s.resolution else None}
            for pid, s in self._states.items()
        }


# ---------------------------------------------------------------------------
# Applying resolutions
# ---------------------------------------------------------------------------

@dataclass
class ResolutionOutcome:
    records: list[IncomingRecord]
    predecided: dict[int, DedupDecision] = field(default_factory=dict)
    dropped: list[dict[str, Any]] = field(default_factory=list)
    merges: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dropped": self.dropped,
            "merges": self.merges,
            "predecided": {str(k): v.to_dict() for k, v in self.predecided.items()},
            "warnings": self.warnings,
        }


def pick_merge_winner(a: Any, b: Any, tie_break: str = TIE_BREAK_PREFER_A) -> str:
    """Return 'a' or 'b': richer side, then higher rating, then tie_break."""
    ra, rb = richness(a), richness(b)
    if ra != rb:
        return "a" if ra > rb else "b"
    rating_a = a.rating if a.rating is not None else -1
    rating_b = b.rating if b.rating is not None else -1
    if rating_a != rating_b:
        return "a" if rating_a > rating_b else "b"
    return "b" if tie_break == TIE_BREAK_PREFER_B else "a"


def fill_blanks(winner: IncomingRecord, loser: Any) -> list[str]:
    """Copy every field that is blank on winner from loser.  Never overwrites."""
    filled: list[str] = []
    for fld in RICHNESS_FIELDS:
        value = getattr(loser, fld, None)
        if winner.is_blank(fld) and value is not None and value != "":
            setattr(winner, fld, value)
            filled.append(fld)
            if fld == "dob":
                winner.dob_original = getattr(loser, "dob_original", None) or value
                winner.dob_inferred = bool(getattr(loser, "dob_inferred", False))
    return filled


def _incoming_fields(rec: IncomingRecord) -> dict[str, Any]:
    return {
        f: getattr(rec, f)
        for f in _EXISTING_UPDATE_FIELDS
        if getattr(rec, f) is not None and getattr(rec, f) != ""
    }


def _existing_side_decision(
    pair: ConflictPair,
    resolution: Resolution,
    tie_break: str,
) -> tuple[DedupDecision, dict[str, Any] | None]:
    existing: ExistingEntity = pair.record_a  # type: ignore[assignment]
    incoming = pair.record_b
    row = incoming.original_index

    def decision(action: str, payload: dict[str, Any] | None = None) -> DedupDecision:
        return DedupDecision(
            row, action,
            existing_id=existing.id if action != ACTION_CREATE else None,
            payload=payload or {},
            source=SOURCE_CONFLICT,
        )

    if resolution is Resolution.KEEP_A:
        return decision(ACTION_SKIP), None
    if resolution is Resolution.KEEP_BOTH:
        return decision(ACTION_CREATE), None

    if resolution is Resolution.KEEP_B:
        changes = {
            f: v for f, v in _incoming_fields(incoming).items()
            if getattr(existing, f, None) != v
        }
        return decision(ACTION_UPDATE if changes else ACTION_SKIP, changes), None

    winner = pick_merge_winner(existing, incoming, tie_break)
    if winner == "b":
        filled = fill_blanks(incoming, existing)
        changes = {
            f: v for f, v in _incoming_fields(incoming).items()
            if getattr(existing, f, None) != v
        }
    else:
        filled = [
            f for f in _EXISTING_UPDATE_FIELDS
            if existing.is_blank(f) and not incoming.is_blank(f)
        ]
        changes = {f: getattr(incoming, f) for f in filled}
    merge = {"pair_id": pair.pair_id, "winner": "existing" if winner == "a" else f"row:{row}",
             "filled": filled}
    return decision(ACTION_UPDATE if changes else ACTION_SKIP, changes), merge


def _release_sequence(pair: ConflictPair, outcome: ResolutionOutcome) -> None:
    rec = pair.record_b
    if rec.sequence_no is None or rec.sequence_no != pair.record_a.sequence_no:
        return
    outcome.warnings.append(
        f"{pair.pair_id}: keep_both; row {rec.original_index} sequence_no {rec.sequence_no} cleared"
    )
    rec.sequence_no = None


def apply_resolutions(
    records: list[IncomingRecord],
    session: ImportSession,
    tie_break: str = TIE_BREAK_PREFER_A,
) -> ResolutionOutcome:
    """Apply every resolved pair to the batch.

    Raises:
        ConflictUnresolved: if any pair is still pending.
    """
    session.ensure_resolved()
    dropped: dict[int, str] = {}
    outcome = ResolutionOutcome(records=[])

    def drop(rec: IncomingRecord, pair_id: str) -> None:
        if rec.original_index not in dropped:
            dropped[rec.original_index] = pair_id
            outcome.dropped.append({"row": rec.original_index, "pair_id": pair_id})

    for pair in session.pairs:
        resolution = session.resolution(pair.pair_id)
        b = pair.record_b

        if pair.is_cross_store:
            if b.original_index in dropped:
                outcome.warnings.append(f"{pair.pair_id}: row already dropped; skipped")
                continue
            decision, merge = _existing_side_decision(pair, resolution, tie_break)
            if b.original_index in outcome.predecided:
                outcome.warnings.append(
                    f"{pair.pair_id}: row {b.original_index} already decided by another pair"
                )
                continue
            outcome.predecided[b.original_index] = decision
            if merge:
                outcome.merges.append(merge)
            if resolution is Resolution.KEEP_BOTH:
                _release_sequence(pair, outcome)
            continue

        a: IncomingRecord = pair.record_a  # type: ignore[assignment]
        if a.original_index in dropped or b.original_index in dropped:
            if resolution is Resolution.MERGE:
                outcome.warnings.append(f"{pair.pair_id}: one side already dropped; merge skipped")
            elif resolution is Resolution.KEEP_A:
                drop(b, pair.pair_id)
            elif resolution is Resolution.KEEP_B:
                drop(a, pair.pair_id)
            continue

        if resolution is Resolution.KEEP_A:
            drop(b, pair.pair_id)
        elif resolution is Resolution.KEEP_B:
            drop(a, pair.pair_id)
        elif resolution is Resolution.KEEP_BOTH:
            _release_sequence(pair, outcome)
        elif resolution is Resolution.MERGE:
            winner_side = pick_merge_winner(a, b, tie_break)
            winner, loser = (a, b) if winner_side == "a" else (b, a)
            filled = fill_blanks(winner, loser)
            drop(loser, pair.pair_id)
            outcome.merges.append({
                "pair_id": pair.pair_id,
                "winner": f"row:{winner.original_index}",
                "loser": f"row:{loser.original_index}",
                "filled": filled,
            })

    outcome.records = [r for r in records if r.original_index not in dropped]
    log.info(
        "resolutions applied: %d dropped, %d merged, %d pre-decided",
        len(outcome.dropped), len(outcome.merges), len(outcome.predecided),
    )
    return outcome
