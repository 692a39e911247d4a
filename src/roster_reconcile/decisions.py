"""roster_reconcile.decisions

Operator review files: export conflicts and dedup candidates to CSV, and
load the operator's decisions back.

Conflict decisions CSV (header row required):
    pair_id,resolution[,actor]
  resolution: keep_a | keep_b | merge | keep_both (keepA, KEEP_A, keep-a
  are accepted too)

Dedup decisions CSV (header row required):
    row,action[,existing_id,actor]
  action: create | update | skip; update/skip without existing_id use the
  row's best match

A file with a missing header or missing required columns raises ValueError.
Bad rows are counted and reported in warnings; they never abort the load.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from roster_reconcile.conflict_resolution import ImportSession, Resolution, parse_resolution
from roster_reconcile.conflicts import ConflictPair
from roster_reconcile.dedup_score import VALID_ACTIONS, DedupPlan

_CONFLICT_REQUIRED_COLS = frozenset({"pair_id", "resolution"})
_DEDUP_REQUIRED_COLS = frozenset({"row", "action"})

_CONFLICT_EXPORT_COLS = [
    "pair_id", "key_kind", "key", "reason",
    "a", "a_name", "a_rank", "b", "b_name", "b_rank",
    "status", "resolution",
]
_DEDUP_EXPORT_COLS = [
    "row", "name", "rank", "existing_id", "existing_name", "score", "confidence",
    "reasons", "suggested_action", "changed_fields", "needs_review", "action",
]


@dataclass
class DecisionLoadCounters:
    rows_read: int = 0
    rows_valid: int = 0
    rows_invalid: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_valid": self.rows_valid,
            "rows_invalid": self.rows_invalid,
            "warnings": self.warnings[:50],
        }


def _open_reader(path: Path, required: frozenset[str], label: str):
    fh = open(path, newline="", encoding="utf-8-sig")
    reader = csv.DictReader(fh)
    if reader.fieldnames is None:
        fh.close()
        raise ValueError(f"{label} CSV is empty or has no header: {path}")
    missing = required - {f.strip().lower() for f in reader.fieldnames}
    if missing:
        fh.close()
        raise ValueError(f"{label} CSV missing required columns {sorted(missing)}: {path}")
    return fh, reader


def _cell(raw_row: dict[str, Any], name: str) -> str:
    for key, value in raw_row.items():
        if key is not None and key.strip().lower() == name:
            return (value or "").strip()
    return ""


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def load_conflict_decisions(path: Path) -> tuple[dict[str, Resolution], DecisionLoadCounters]:
    ctrs = DecisionLoadCounters()
    decisions: dict[str, Resolution] = {}
    fh, reader = _open_reader(path, _CONFLICT_REQUIRED_COLS, "conflict decisions")
    with fh:
        for idx, raw_row in enumerate(reader):
            ctrs.rows_read += 1
            pair_id = _cell(raw_row, "pair_id")
            raw_resolution = _cell(raw_row, "resolution")
            if not pair_id or not raw_resolution:
                ctrs.rows_invalid += 1
                ctrs.warnings.append(
                    f"row {idx}: missing required field(s) "
                    f"(pair_id={pair_id!r}, resolution={raw_resolution!r})"
                )
                continue
            try:
                resolution = parse_resolution(raw_resolution)
            except ValueError:
                ctrs.rows_invalid += 1
                ctrs.warnings.append(f"row {idx}: unknown resolution={raw_resolution!r}")
                continue
            if pair_id in decisions and decisions[pair_id] is not resolution:
                ctrs.warnings.append(f"row {idx}: {pair_id} decided twice; last one wins")
            decisions[pair_id] = resolution
            ctrs.rows_valid += 1
    return decisions, ctrs


def load_dedup_decisions(path: Path) -> tuple[dict[int, dict[str, Any]], DecisionLoadCounters]:
    ctrs = DecisionLoadCounters()
    choices: dict[int, dict[str, Any]] = {}
    fh, reader = _open_reader(path, _DEDUP_REQUIRED_COLS, "dedup decisions")
    with fh:
        for idx, raw_row in enumerate(reader):
            ctrs.rows_read += 1
            raw_index = _cell(raw_row, "row")
            action = _cell(raw_row, "action").lower()
            if not raw_index or not action:
                ctrs.rows_invalid += 1
                ctrs.warnings.append(
                    f"row {idx}: missing required field(s) (row={raw_index!r}, action={action!r})"
                )
                continue
            try:
                original_index = int(raw_index)
            except ValueError:
                ctrs.rows_invalid += 1
                ctrs.warnings.append(f"row {idx}: row={raw_index!r} is not an integer")
                continue
            if action not in VALID_ACTIONS:
                ctrs.rows_invalid += 1
                ctrs.warnings.append(f"row {idx}: unknown action={action!r}")
                continue
            choices[original_index] = {
                "action": action,
                "existing_id": _cell(raw_row, "existing_id") or None,
                "actor": _cell(raw_row, "actor") or None,
            }
            ctrs.rows_valid += 1
    return choices, ctrs


# ---------------------------------------------------------------------------
# Exports
# ---------------------------------------------------------------------------

def write_conflicts_csv(path: Path, pairs: list[ConflictPair], session: ImportSession) -> int:
    """Write one row per pair; the resolution column is pre-filled when known."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=_CONFLICT_EXPORT_COLS, extrasaction="ignore")
        writer.writeheader()
        for pair in pairs:
            resolution = session.resolution(pair.pair_id)
            writer.writerow({
                **pair.to_dict(),
                "status": session.status(pair.pair_id),
                "resolution": resolution.value if resolution else "",
            })
    return len(pairs)


def write_dedup_candidates_csv(path: Path, plan: DedupPlan) -> int:
    """Write every matched candidate; action holds the current decision."""
    path.parent.mkdir(parents=True, exist_ok=True)
    rows = sorted(plan.candidates)
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.DictWriter(fh, fieldnames=_DEDUP_EXPORT_COLS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            decision = plan.decisions.get(row)
            writer.writerow({
                **plan.candidates[row].to_dict(),
                "action": decision.action if decision else "",
            })
    return len(rows)
