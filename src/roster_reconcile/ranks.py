"""roster_reconcile.ranks

Rank repair for exported standings.

Tournament software often prints a rank only on the first row of a tie
group and leaves the following rows blank.  Three passes run in order:

  1. impute_tie_ranks: blanks after a printed anchor get anchor+1, …
  2. fill_single_gap_ranks: a lone blank between r and r+2 becomes r+1
  3. autofill_missing_ranks: anything still blank gets max+1, max+2, …

All passes mutate the records in place and only touch named rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from roster_reconcile.records import IncomingRecord


@dataclass(frozen=True)
class TieRankImputation:
    row_index: int
    tie_anchor_rank: int
    imputed_rank: int
    next_printed_rank: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "tie_anchor_rank": self.tie_anchor_rank,
            "imputed_rank": self.imputed_rank,
            "next_printed_rank": self.next_printed_rank,
        }


@dataclass
class TieRankReport:
    imputations: list[TieRankImputation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_imputed(self) -> int:
        return len(self.imputations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_imputed": self.total_imputed,
            "rows": [i.to_dict() for i in self.imputations],
            "warnings": self.warnings,
        }


def _named(rec: IncomingRecord) -> bool:
    return bool(rec.name and rec.name.strip())


def impute_tie_ranks(records: list[IncomingRecord]) -> TieRankReport:
    """Fill tie groups that follow a printed anchor rank.

    A run of consecutive named rows with no rank, directly after a row with
    a printed rank, receives anchor+1, anchor+2, ….  The run is only
    imputed when every imputed value stays strictly below the next printed
    rank; otherwise it is left blank and a warning is recorded.  A run that
    reaches the end of the table has no upper bound.
    """
    report = TieRankReport()
    n = len(records)
    i = 0
    while i < n:
        anchor = records[i]
        if anchor.rank is None or not _named(anchor):
            i += 1
            continue

        j = i + 1
        while j < n and records[j].rank is None and _named(records[j]):
            j += 1
        run = records[i + 1:j]
        if not run:
            i += 1
            continue

        next_printed = records[j].rank if j < n else None
        last_imputed = anchor.rank + len(run)
        if next_printed is not None and last_imputed >= next_printed:
            report.warnings.append(
                f"rows {run[0].original_index}-{run[-1].original_index}: "
                f"{len(run)} blank rank(s) after anchor {anchor.rank} do not fit "
                f"below next printed rank {next_printed}; left blank"
            )
            i = j
            continue

        for offset, rec in enumerate(run, start=1):
            rec.rank = anchor.rank + offset
            rec.tie_rank_imputed = True
            report.imputations.append(TieRankImputation(
                row_index=rec.original_index,
                tie_anchor_rank=anchor.rank,
                imputed_rank=rec.rank,
                next_printed_rank=next_printed,
            ))
        i = j
    return report


def fill_single_gap_ranks(records: list[IncomingRecord]) -> int:
    """A single missing rank between r and r+2 becomes r+1.  Returns count."""
    filled = 0
    for idx in range(1, len(records) - 1):
        cur = records[idx]
        if cur.rank is not None or not _named(cur):
            continue
        prev_rank = records[idx - 1].rank
        next_rank = records[idx + 1].rank
        if prev_rank is not None and next_rank is not None and next_rank - prev_rank == 2:
            cur.rank = prev_rank + 1
            cur.rank_autofilled = True
            filled += 1
    return filled


def autofill_missing_ranks(records: list[IncomingRecord]) -> int:
    """Assign max+1, max+2, … to named rows still missing a rank."""
    present = [r.rank for r in records if r.rank is not None]
    next_rank = (max(present) if present else 0) + 1
    filled = 0
    for rec in records:
        if rec.rank is None and _named(rec):
            rec.rank = next_rank
            rec.rank_autofilled = True
            next_rank += 1
            filled += 1
    return filled


def find_duplicate_ranks(records: list[IncomingRecord]) -> dict[int, list[int]]:
    """Return rank → original indexes for every rank used more than once."""
    by_rank: dict[int, list[int]] = {}
    for rec in records:
        if rec.rank is not None:
            by_rank.setdefault(rec.rank, []).append(rec.original_index)
    return {rank: idxs for rank, idxs in by_rank.items() if len(idxs) > 1}
