"""roster_reconcile.batch_normalize

Turns mapped spreadsheet rows into IncomingRecords.

Processing order:
  1. per-row field normalization (normalize.py, gender.py)
  2. footer rows (no rank and no name) dropped
  3. rows with an unparseable printed rank rejected
  4. rank repair (ranks.py): tie imputation, single-gap fill, autofill
  5. validation: every remaining row needs a name and a positive rank

Row-level problems are collected as RowValidationError entries; nothing
here raises for bad data.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from roster_reconcile.column_mapping import ColumnMapping
from roster_reconcile.gender import analyze_gender_columns, infer_gender
from roster_reconcile.normalize import (
    extract_state_from_ident,
    infer_unrated,
    merge_title_and_name,
    normalize_group_label,
    normalize_space,
    parse_dob,
    parse_identifier,
    parse_rank,
    parse_rating,
    parse_sequence_no,
    trim,
)
from roster_reconcile.ranks import (
    TieRankReport,
    autofill_missing_ranks,
    fill_single_gap_ranks,
    find_duplicate_ranks,
    impute_tie_ranks,
)
from roster_reconcile.records import IncomingRecord
from roster_reconcile.reconcile_rules import ReconcileRules
from roster_reconcile.shared import RowValidationError

log = logging.getLogger(__name__)

# Key a remote parser may set on each row with an already-computed gender.
UPSTREAM_GENDER_KEY = "_gender"


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class NormalizeSummary:
    rows_in: int = 0
    footer_dropped: int = 0
    tie_ranks: TieRankReport = field(default_factory=TieRankReport)
    single_gap_filled: int = 0
    rank_autofilled: int = 0
    dob_imputed: list[dict[str, Any]] = field(default_factory=list)
    zero_ratings: int = 0
    unrated: int = 0
    state_auto_extracted: int = 0
    gender_sources: Counter = field(default_factory=Counter)
    gender_warnings: int = 0
    duplicate_ranks: dict[int, list[int]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_in": self.rows_in,
            "footer_dropped": self.footer_dropped,
            "tie_ranks": self.tie_ranks.to_dict(),
            "single_gap_filled": self.single_gap_filled,
            "rank_autofilled": self.rank_autofilled,
            "dob_imputed": {"count": len(self.dob_imputed), "rows": self.dob_imputed[:50]},
            "zero_ratings": self.zero_ratings,
            "unrated": self.unrated,
            "state_auto_extracted": self.state_auto_extracted,
            "gender_sources": dict(self.gender_sources),
            "gender_warnings": self.gender_warnings,
            "duplicate_ranks": {str(k): v for k, v in self.duplicate_ranks.items()},
            "warnings": self.warnings[:50],
        }


@dataclass
class NormalizeResult:
    records: list[IncomingRecord]
    errors: list[RowValidationError]
    summary: NormalizeSummary


# ---------------------------------------------------------------------------
# Per-row
# ---------------------------------------------------------------------------

def _build_record(
    idx: int,
    row: dict[str, Any],
    mapping: ColumnMapping,
    rules: ReconcileRules,
) -> IncomingRecord:
    v = mapping.value
    name = normalize_space(v(row, "name"))
    if mapping.header_for("title"):
        name = merge_title_and_name(v(row, "title"), name)

    rating = parse_rating(v(row, "rating"), strip_commas=rules.strip_rating_commas)
    identifier = parse_identifier(v(row, "identifier"))
    dob = parse_dob(v(row, "dob"))
    group_label, group_disability = normalize_group_label(v(row, "group"))
    type_label, type_disability = normalize_group_label(v(row, "type"))
    label_disability = group_disability or type_disability
    explicit_disability = trim(v(row, "disability"))

    rec = IncomingRecord(
        original_index=idx,
        name=name,
        rank=parse_rank(v(row, "rank")),
        sequence_no=parse_sequence_no(v(row, "sno")),
        full_name=normalize_space(v(row, "full_name")),
        rating=rating.rating,
        rating_was_zero=rating.was_zero,
        unrated=infer_unrated(
            rating,
            identifier,
            v(row, "unrated"),
            rules.unrated.treat_empty_as_unrated,
            rules.unrated.infer_from_missing_rating,
        ),
        dob=dob.iso,
        dob_original=dob.original,
        dob_inferred=dob.inferred,
        state=trim(v(row, "state")),
        city=normalize_space(v(row, "city")),
        club=normalize_space(v(row, "club")),
        identifier=identifier,
        federation=trim(v(row, "federation")),
        group_label=group_label,
        type_label=type_label,
        disability=explicit_disability or label_disability,
        special_group=label_disability is not None,
        notes=normalize_space(v(row, "notes")),
        raw=dict(row),
    )

    if rec.state is None:
        extracted = extract_state_from_ident(v(row, "ident")) or extract_state_from_ident(
            v(row, "identifier")
        )
        if extracted:
            rec.state = extracted
            rec.state_auto_extracted = True
    return rec


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

def normalize_rows(
    rows: list[dict[str, Any]],
    mapping: ColumnMapping,
    rules: ReconcileRules,
) -> NormalizeResult:
    """Normalize every mapped row.  original_index is the row's position in rows."""
    summary = NormalizeSummary(rows_in=len(rows))
    errors: list[RowValidationError] = []
    gender_config = analyze_gender_columns(mapping.headers, rows)
    mapped_gender = mapping.header_for("gender")
    if mapped_gender and mapped_gender != gender_config.fs_column:
        gender_config.gender_column = mapped_gender

    candidates: list[IncomingRecord] = []
    for idx, row in enumerate(rows):
        rec = _build_record(idx, row, mapping, rules)
        raw_rank = trim(mapping.value(row, "rank"))

        if rec.rank is None and not rec.name and raw_rank is None:
            summary.footer_dropped += 1
            continue
        if raw_rank is not None and rec.rank is None:
            errors.append(RowValidationError(idx, f"invalid rank {raw_rank!r}", "rank"))
            continue

        inference = infer_gender(
            row,
            gender_config,
            type_label=rec.type_label,
            group_label=rec.group_label,
            upstream=row.get(UPSTREAM_GENDER_KEY),
        )
        rec.gender = inference.gender
        rec.gender_sources = inference.sources
        rec.gender_warnings = inference.warnings
        summary.gender_sources.update(inference.sources)
        summary.gender_warnings += len(inference.warnings)

        if rec.dob_inferred:
            summary.dob_imputed.append(
                {"row_index": idx, "original": rec.dob_original, "imputed": rec.dob}
            )
        if rec.rating_was_zero:
            summary.zero_ratings += 1
        if rec.unrated:
            summary.unrated += 1
        if rec.state_auto_extracted:
            summary.state_auto_extracted += 1
        candidates.append(rec)

    summary.tie_ranks = impute_tie_ranks(candidates)
    summary.warnings.extend(summary.tie_ranks.warnings)
    summary.single_gap_filled = fill_single_gap_ranks(candidates)
    summary.rank_autofilled = autofill_missing_ranks(candidates)

    records: list[IncomingRecord] = []
    for rec in candidates:
        if not rec.name:
            errors.append(RowValidationError(rec.original_index, "missing name", "name"))
            continue
        if rec.rank is None or rec.rank <= 0:
            errors.append(RowValidationError(rec.original_index, "missing rank", "rank"))
            continue
        records.append(rec)

    summary.duplicate_ranks = find_duplicate_ranks(records)
    for rank, idxs in sorted(summary.duplicate_ranks.items()):
        for i in idxs:
            summary.warnings.append(f"row {i}: rank {rank} also used by rows {[x for x in idxs if x != i]}")

    errors.sort(key=lambda e: e.original_index)
    log.info(
        "normalized %d rows: %d records, %d errors, %d footer rows dropped",
        len(rows), len(records), len(errors), summary.footer_dropped,
    )
    return NormalizeResult(records=records, errors=errors, summary=summary)
