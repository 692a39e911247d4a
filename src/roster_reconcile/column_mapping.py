"""roster_reconcile.column_mapping

Maps arbitrary spreadsheet headers onto canonical roster fields.

Every mapped field carries a confidence in [0, 1]:
  1.0  exact alias hit (or an operator override)
  0.9  name picked as the clearly fuller of two name-like columns
  0.6  rating mapped from an initial-rating column only
  0.5  name picked by position because fullness was inconclusive
  <0.9 fuzzy header match (rapidfuzz ratio / 100)

Missing required fields (rank, name) are reported, never raised here;
require_mapping() turns them into a ConfigurationError.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from rapidfuzz import fuzz, process

from roster_reconcile.shared import ConfigurationError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# rank and sno are separate: Swiss-Manager exports carry both columns.
ALIASES: dict[str, list[str]] = {
    "rank": ["rank", "rk", "rk.", "final_rank", "position", "pos"],
    "sno": ["sno", "s_no", "sno.", "start_no", "startno", "seed", "seeding", "sr_no", "srno", "serial", "serial_no"],
    "name": ["name", "player_name", "player", "playername", "participant"],
    "full_name": ["full_name", "fullname", "name.1", "name_1", "name1", "name_(full)"],
    "rating": ["rtg", "irtg", "nrtg", "rating", "elo", "fide_rating", "std", "standard"],
    "dob": ["birth", "dob", "date_of_birth", "birth_date", "birthdate", "d.o.b", "d_o_b"],
    "gender": ["gender", "sex", "g", "m/f", "boy/girl", "b/g"],
    "state": ["state", "province", "region", "st", "association"],
    "city": ["city", "town", "location", "place"],
    "club": ["club", "club/city", "chess_club", "organization", "academy", "team"],
    "identifier": ["fide_no.", "fide_no", "fideno", "fide_id", "fideid", "fide", "id"],
    "ident": ["ident", "player_id", "pid", "id_no"],
    "federation": ["federation", "country", "nat", "nationality", "fide_fed", "fed", "fed.", "fid"],
    "group": ["gr", "group", "category"],
    "type": ["type"],
    "disability": ["disability", "disability_type", "pwd", "ph", "physically_handicapped", "special_category"],
    "notes": ["special_notes", "notes", "remarks", "special_needs", "accommodations", "comments"],
    "unrated": ["unrated", "urated", "u_r", "u/r", "not_rated"],
    "title": ["title", "tit"],
}

CANONICAL_FIELDS = tuple(ALIASES.keys())
REQUIRED_FIELDS = ("rank", "name")

_INITIAL_RATING_ALIASES = frozenset({"irtg"})
_DUPLICATE_NAME_RE = re.compile(r"^name_?\(\d+\)$")

NAME_SAMPLE_MIN = 5
_FUZZY_CUTOFF = 88.0
_FUZZY_MIN_LEN = 4

CONFIDENCE_EXACT = 1.0
CONFIDENCE_FULLER_NAME = 0.9
CONFIDENCE_INITIAL_RATING = 0.6
CONFIDENCE_NAME_FALLBACK = 0.5


def normalize_header(value: Any) -> str:
    """Case-fold, NBSP to space, collapse whitespace, spaces/hyphens to '_'."""
    s = str(value or "").replace("\u00a0", " ").strip().casefold()
    s = re.sub(r"\s+", " ", s)
    return re.sub(r"[\s\-]+", "_", s)


_ALIAS_LOOKUP: dict[str, str] = {}
for _field, _aliases in ALIASES.items():
    for _alias in _aliases:
        _ALIAS_LOOKUP.setdefault(normalize_header(_alias), _field)

_FUZZY_CHOICES = {
    alias: fld for alias, fld in _ALIAS_LOOKUP.items() if len(alias) >= _FUZZY_MIN_LEN
}


# ---------------------------------------------------------------------------
# ColumnMapping
# ---------------------------------------------------------------------------

@dataclass
class ColumnMapping:
    headers: list[str]
    fields: dict[str, str] = field(default_factory=dict)
    confidence: dict[str, float] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def missing_required(self) -> list[str]:
        return [f for f in REQUIRED_FIELDS if f not in self.fields]

    @property
    def unmapped_headers(self) -> list[str]:
        used = set(self.fields.values())
        return [h for h in self.headers if h not in used]

    def header_for(self, field_name: str) -> str | None:
        return self.fields.get(field_name)

    def value(self, row: dict[str, Any], field_name: str) -> Any:
        header = self.fields.get(field_name)
        return row.get(header) if header is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": dict(self.fields),
            "confidence": {k: round(v, 4) for k, v in self.confidence.items()},
            "missing_required": self.missing_required,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Name fullness
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _NameStats:
    samples: int
    avg_tokens: float
    avg_length: float


def _name_stats(rows: list[dict[str, Any]], header: str) -> _NameStats:
    values = [str(r.get(header)).strip() for r in rows if r.get(header) is not None]
    values = [v for v in values if v]
    if not values:
        return _NameStats(0, 0.0, 0.0)
    return _NameStats(
        samples=len(values),
        avg_tokens=sum(len(v.split()) for v in values) / len(values),
        avg_length=sum(len(v) for v in values) / len(values),
    )


def _clearly_fuller(a: _NameStats, b: _NameStats) -> bool:
    """True when a beats b on token count, or on length by at least 20%."""
    if a.avg_tokens >= b.avg_tokens + 0.5:
        return True
    return a.avg_tokens >= b.avg_tokens and a.avg_length >= b.avg_length * 1.2


def _pick_name_columns(
    mapping: ColumnMapping,
    candidates: list[str],
    rows: list[dict[str, Any]],
) -> None:
    first = candidates[0]
    if len(candidates) == 1:
        mapping.fields["name"] = first
        mapping.confidence["name"] = CONFIDENCE_EXACT
        return

    second = candidates[1]
    if len(candidates) > 2:
        mapping.warnings.append(
            f"name: {len(candidates)} name-like columns {candidates!r}; "
            f"only {first!r} and {second!r} compared"
        )
    stats_a = _name_stats(rows, first)
    stats_b = _name_stats(rows, second)

    if stats_a.samples < NAME_SAMPLE_MIN or stats_b.samples < NAME_SAMPLE_MIN:
        mapping.fields["name"] = first
        mapping.confidence["name"] = CONFIDENCE_NAME_FALLBACK
        mapping.warnings.append(
            f"name: fewer than {NAME_SAMPLE_MIN} sample values in {first!r}/{second!r}; "
            f"using {first!r}"
        )
        return

    if _clearly_fuller(stats_b, stats_a):
        mapping.fields["name"] = second
        mapping.confidence["name"] = CONFIDENCE_FULLER_NAME
        return
    if _clearly_fuller(stats_a, stats_b):
        mapping.fields["name"] = first
        mapping.confidence["name"] = CONFIDENCE_FULLER_NAME
        return

    mapping.fields["name"] = first
    mapping.confidence["name"] = CONFIDENCE_NAME_FALLBACK
    mapping.warnings.append(
        f"name: {first!r} and {second!r} look equally full; using {first!r}"
    )
    if (stats_b.avg_tokens, stats_b.avg_length) > (stats_a.avg_tokens, stats_a.avg_length):
        mapping.fields["full_name"] = second
        mapping.confidence["full_name"] = CONFIDENCE_NAME_FALLBACK


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------

def _match_header(header: str) -> tuple[str | None, float]:
    key = normalize_header(header)
    if not key or key.startswith("__empty_col_"):
        return None, 0.0
    if _DUPLICATE_NAME_RE.match(key):
        return "name", CONFIDENCE_EXACT
    if key in _ALIAS_LOOKUP:
        return _ALIAS_LOOKUP[key], CONFIDENCE_EXACT
    if len(key) < _FUZZY_MIN_LEN:
        return None, 0.0
    hit = process.extractOne(
        key, list(_FUZZY_CHOICES), scorer=fuzz.ratio, score_cutoff=_FUZZY_CUTOFF
    )
    if hit is None:
        return None, 0.0
    alias, score, _ = hit
    return _FUZZY_CHOICES[alias], min(score / 100.0, 0.89)


def map_columns(headers: list[str], sample_rows: list[dict[str, Any]]) -> ColumnMapping:
    """Build a ColumnMapping for headers, using sample_rows to pick names."""
    mapping = ColumnMapping(headers=list(headers))
    by_field: dict[str, list[tuple[str, float]]] = {}
    for header in headers:
        fld, conf = _match_header(header)
        if fld is not None:
            by_field.setdefault(fld, []).append((header, conf))

    name_like = [h for h, _ in by_field.pop("name", [])] + [h for h, _ in by_field.pop("full_name", [])]
    if name_like:
        ordered = [h for h in headers if h in name_like]
        _pick_name_columns(mapping, ordered, sample_rows)

    ratings = by_field.pop("rating", [])
    if ratings:
        current = [(h, c) for h, c in ratings if normalize_header(h) not in _INITIAL_RATING_ALIASES]
        if current:
            mapping.fields["rating"], mapping.confidence["rating"] = current[0]
        else:
            mapping.fields["rating"] = ratings[0][0]
            mapping.confidence["rating"] = CONFIDENCE_INITIAL_RATING
            mapping.warnings.append(
                f"rating: only initial rating column {ratings[0][0]!r} present"
            )

    for fld, hits in by_field.items():
        hits.sort(key=lambda hc: -hc[1])
        mapping.fields[fld], mapping.confidence[fld] = hits[0]
        if len(hits) > 1:
            mapping.warnings.append(
                f"{fld}: several candidate columns {[h for h, _ in hits]}; using {hits[0][0]!r}"
            )

    for fld in mapping.missing_required:
        mapping.warnings.append(f"required field {fld!r} is not mapped")
    log.debug("column mapping: %s", mapping.fields)
    return mapping


def apply_overrides(mapping: ColumnMapping, overrides: dict[str, str | None]) -> ColumnMapping:
    """Return a copy of mapping with operator-chosen columns.

    A None/empty header unmaps the field.  Unknown fields or headers raise
    ConfigurationError.
    """
    result = ColumnMapping(
        headers=list(mapping.headers),
        fields=dict(mapping.fields),
        confidence=dict(mapping.confidence),
        warnings=list(mapping.warnings),
    )
    for fld, header in overrides.items():
        if fld not in CANONICAL_FIELDS:
            raise ConfigurationError(f"unknown canonical field in override: {fld!r}")
        if not header:
            result.fields.pop(fld, None)
            result.confidence.pop(fld, None)
            continue
        if header not in result.headers:
            raise ConfigurationError(f"override for {fld!r} names unknown column {header!r}")
        for other, h in list(result.fields.items()):
            if h == header and other != fld:
                result.fields.pop(other)
                result.confidence.pop(other, None)
        result.fields[fld] = header
        result.confidence[fld] = CONFIDENCE_EXACT
    result.warnings = [
        w for w in result.warnings
        if not (w.startswith("required field") and w.split("'")[1] in result.fields)
    ]
    return result


def require_mapping(mapping: ColumnMapping) -> ColumnMapping:
    missing = mapping.missing_required
    if missing:
        raise ConfigurationError(
            f"required column(s) not mapped: {', '.join(missing)}; "
            f"headers seen: {mapping.headers}"
        )
    return mapping
