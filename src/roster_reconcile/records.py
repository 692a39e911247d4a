"""roster_reconcile.records

Record types that flow through the reconciliation pipeline.

IncomingRecord is one normalized spreadsheet row; original_index (its
0-based position in the parsed table) is its only stable identity from
mapping through apply.  ExistingEntity is a read-only snapshot of a row
already persisted in the target collection.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any

# Fields written to roster_entry for an incoming record.
PAYLOAD_FIELDS = (
    "rank",
    "sequence_no",
    "name",
    "full_name",
    "rating",
    "unrated",
    "dob",
    "dob_original",
    "gender",
    "state",
    "city",
    "club",
    "identifier",
    "federation",
    "group_label",
    "type_label",
    "disability",
    "notes",
)

# Populated-field count used to pick a merge winner.  Rank is excluded: every
# surviving record has one.
RICHNESS_FIELDS = (
    "name",
    "full_name",
    "sequence_no",
    "rating",
    "dob",
    "gender",
    "state",
    "city",
    "club",
    "identifier",
    "federation",
    "group_label",
    "type_label",
    "disability",
    "notes",
)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def richness(side: Any) -> int:
    """Count of populated RICHNESS_FIELDS on an incoming or existing record."""
    return sum(1 for f in RICHNESS_FIELDS if not _is_blank(getattr(side, f, None)))


@dataclass
class IncomingRecord:
    original_index: int
    name: str | None = None
    rank: int | None = None
    sequence_no: int | None = None
    full_name: str | None = None
    rating: int | None = None
    rating_was_zero: bool = False
    unrated: bool = False
    dob: str | None = None
    dob_original: str | None = None
    dob_inferred: bool = False
    gender: str | None = None
    gender_sources: list[str] = field(default_factory=list)
    gender_warnings: list[str] = field(default_factory=list)
    state: str | None = None
    state_auto_extracted: bool = False
    city: str | None = None
    club: str | None = None
    identifier: str | None = None
    federation: str | None = None
    group_label: str | None = None
    type_label: str | None = None
    disability: str | None = None
    special_group: bool = False
    notes: str | None = None
    rank_autofilled: bool = False
    tie_rank_imputed: bool = False
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def richness(self) -> int:
        return richness(self)

    def is_blank(self, field_name: str) -> bool:
        return _is_blank(getattr(self, field_name))

    def to_payload(self) -> dict[str, Any]:
        return {f: getattr(self, f) for f in PAYLOAD_FIELDS}

    def to_flat_dict(self) -> dict[str, Any]:
        """All scalar fields, for reject CSVs and review exports."""
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "raw":
                continue
            value = getattr(self, f.name)
            out[f.name] = "|".join(value) if isinstance(value, list) else value
        return out


@dataclass(frozen=True)
class ExistingEntity:
    id: str
    name: str
    rank: int | None = None
    sequence_no: int | None = None
    rating: int | None = None
    dob: str | None = None
    dob_original: str | None = None
    identifier: str | None = None
    full_name: str | None = None
    gender: str | None = None
    state: str | None = None
    city: str | None = None
    club: str | None = None
    federation: str | None = None
    disability: str | None = None
    notes: str | None = None

    def is_blank(self, field_name: str) -> bool:
        return _is_blank(getattr(self, field_name, None))
