"""roster_reconcile.conflicts

Identity-collision detection within a batch and against the persisted
collection.

Three key kinds, checked in fixed precedence order:
  identifier  digits-only, 6–10 digits
  name_dob    folded name ([a-z ], >= 3 chars) + '::' + ISO dob
  sequence    positive start/serial number

A record that collides on a key kind is not checked against lower kinds,
and a physical pair is reported at most once.  Two records whose identity
fields agree and differ only in rank are the same entity re-ranked and are
never a conflict.  Replace mode passes no existing entities, which skips
cross-store detection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from roster_reconcile.normalize import fold_name, parse_identifier
from roster_reconcile.records import ExistingEntity, IncomingRecord

log = logging.getLogger(__name__)

KIND_IDENTIFIER = "identifier"
KIND_NAME_DOB = "name_dob"
KIND_SEQUENCE = "sequence"
KEY_KINDS = (KIND_IDENTIFIER, KIND_NAME_DOB, KIND_SEQUENCE)

REASON_SAME_IDENTIFIER = "same identifier"
REASON_NAME_DOB = "same name + dob"
REASON_NAME_DOB_SAME_IDENTIFIER = "same name + dob (same identifier)"
REASON_NAME_DOB_MISSING_IDENTIFIER = "same name + dob (one record missing identifier)"
REASON_SEQUENCE = "duplicate sequence number"

Side = Union[IncomingRecord, ExistingEntity]


# ---------------------------------------------------------------------------
# Key functions
# ---------------------------------------------------------------------------

def identifier_key(rec: Side) -> str | None:
    return parse_identifier(rec.identifier)


def name_dob_key(rec: Side) -> str | None:
    name = fold_name(rec.name)
    if not name or not rec.dob:
        return None
    return f"{name}::{rec.dob}"


def sequence_key(rec: Side) -> str | None:
    seq = rec.sequence_no
    if seq is None or seq <= 0:
        return None
    return str(int(seq))


_KEY_FUNCS = {
    KIND_IDENTIFIER: identifier_key,
    KIND_NAME_DOB: name_dob_key,
    KIND_SEQUENCE: sequence_key,
}


def side_ref(rec: Side) -> str:
    if isinstance(rec, ExistingEntity):
        return f"existing:{rec.id}"
    return f"row:{rec.original_index}"


def differs_only_by_rank(a: Side, b: Side) -> bool:
    """True when every identity field agrees: the same entity re-ranked."""
    return (
        fold_name(a.name) == fold_name(b.name)
        and (a.dob or None) == (b.dob or None)
        and identifier_key(a) == identifier_key(b)
        and sequence_key(a) == sequence_key(b)
    )


def name_dob_reason(a: Side, b: Side) -> str | None:
    """Reason for a name+dob collision, or None when identifiers prove two people."""
    ida, idb = identifier_key(a), identifier_key(b)
    if ida and idb:
        return REASON_NAME_DOB_SAME_IDENTIFIER if ida == idb else None
    if ida or idb:
        return REASON_NAME_DOB_MISSING_IDENTIFIER
    return REASON_NAME_DOB


# ---------------------------------------------------------------------------
# ConflictPair
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConflictPair:
    key_kind: str
    key: str
    reason: str
    record_a: Side
    record_b: IncomingRecord

    @property
    def pair_id(self) -> str:
        return f"{self.key_kind}:{self.key}:{side_ref(self.record_a)}:{side_ref(self.record_b)}"

    @property
    def is_cross_store(self) -> bool:
        return isinstance(self.record_a, ExistingEntity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pair_id": self.pair_id,
            "key_kind": self.key_kind,
            "key": self.key,
            "reason": self.reason,
            "a": side_ref(self.record_a),
            "a_name": self.record_a.name,
            "a_rank": self.record_a.rank,
            "b": side_ref(self.record_b),
            "b_name": self.record_b.name,
            "b_rank": self.record_b.rank,
        }


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _index_existing(existing: list[ExistingEntity]) -> dict[str, dict[str, ExistingEntity]]:
    index: dict[str, dict[str, ExistingEntity]] = {k: {} for k in KEY_KINDS}
    for ent in existing:
        for kind in KEY_KINDS:
            key = _KEY_FUNCS[kind](ent)
            if key:
                index[kind].setdefault(key, ent)
    return index


def detect_conflicts(
    records: list[IncomingRecord],
    existing: list[ExistingEntity] | None = None,
) -> list[ConflictPair]:
    """Return ConflictPairs for the batch, in batch order.

    Args:
        records: Normalized incoming records.
        existing: Persisted entities for append mode; None or [] in replace
            mode, which disables cross-store detection.
    """
    existing_index = _index_existing(existing or [])
    first_seen: dict[str, dict[str, IncomingRecord]] = {k: {} for k in KEY_KINDS}
    seen_pairs: set[frozenset[str]] = set()
    pairs: list[ConflictPair] = []

    for rec in records:
        for kind in KEY_KINDS:
            key = _KEY_FUNCS[kind](rec)
            if not key:
                continue

            other: Side | None = existing_index[kind].get(key)
            if other is None:
                other = first_seen[kind].get(key)
            if other is None:
                first_seen[kind][key] = rec
                continue

            if kind == KIND_NAME_DOB:
                reason = name_dob_reason(other, rec)
                if reason is None:
                    # Distinct identifiers: two different people.
                    continue
            elif kind == KIND_IDENTIFIER:
                reason = REASON_SAME_IDENTIFIER
            else:
                reason = REASON_SEQUENCE

            if differs_only_by_rank(other, rec):
                break

            marker = frozenset((side_ref(other), side_ref(rec)))
            if marker in seen_pairs:
                break
            seen_pairs.add(marker)
            pairs.append(ConflictPair(kind, key, reason, other, rec))
            break

    log.info(
        "conflict detection: %d pair(s) (%d cross-store)",
        len(pairs), sum(1 for p in pairs if p.is_cross_store),
    )
    return pairs
