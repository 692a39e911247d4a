"""roster_reconcile.gender

Gender inference for roster rows.

Sources, in order of preference:
  gender_column          explicit Gender/Sex column (M/F)
  fs_column              Swiss-Manager 'fs' column (blank means M, 'F' means F)
  headerless_after_name  unnamed single-letter column between the last name
                         column and the first rating column (same blank→M rule)
Female markers in type/group labels (FMG, F14, F-U12, GIRL/GIRLS) then
force F, with a warning when they override an M read from a column.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from roster_reconcile.column_mapping import normalize_header

SOURCE_GENDER_COLUMN = "gender_column"
SOURCE_FS_COLUMN = "fs_column"
SOURCE_HEADERLESS = "headerless_after_name"
SOURCE_TYPE_LABEL = "type_label"
SOURCE_GROUP_LABEL = "group_label"
SOURCE_UPSTREAM = "upstream"

_GENDER_HEADERS = frozenset({"gender", "sex", "g", "m/f", "boy/girl", "b/g"})
_FS_HEADER = "fs"
_NAME_HEADERS = frozenset({"name", "player_name", "player", "playername", "full_name", "fullname"})
_RATING_HEADERS = frozenset({"rtg", "irtg", "nrtg", "rating", "elo", "fide_rating"})
_EMPTY_COL_PREFIX = "__EMPTY_COL_"

_FEMALE_MARKER_RE = re.compile(r"^F(?:MG|\d+|-.+)?$")
_GIRL_TOKENS = frozenset({"GIRL", "GIRLS"})

_MALE_WORDS = frozenset({"M", "MALE", "BOY", "B"})
_FEMALE_WORDS = frozenset({"F", "FEMALE", "GIRL", "W", "WOMAN"})


@dataclass
class GenderColumnConfig:
    gender_column: str | None = None
    fs_column: str | None = None
    headerless_column: str | None = None

    @property
    def preferred(self) -> tuple[str | None, str | None]:
        if self.gender_column:
            return self.gender_column, SOURCE_GENDER_COLUMN
        if self.fs_column:
            return self.fs_column, SOURCE_FS_COLUMN
        if self.headerless_column:
            return self.headerless_column, SOURCE_HEADERLESS
        return None, None


@dataclass
class GenderInference:
    gender: str | None = None
    sources: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _looks_like_gender_letters(values: list[Any]) -> bool:
    seen = [str(v).strip().upper() for v in values if v is not None and str(v).strip()]
    return bool(seen) and all(v in ("M", "F") for v in seen)


def find_headerless_gender_column(
    headers: list[str],
    rows: list[dict[str, Any]],
) -> str | None:
    """Find an unnamed M/F column sitting between the name and rating columns."""
    normalized = [normalize_header(h) for h in headers]
    name_positions = [i for i, h in enumerate(normalized) if h in _NAME_HEADERS or h.startswith("name")]
    rating_positions = [i for i, h in enumerate(normalized) if h in _RATING_HEADERS]
    if not name_positions or not rating_positions:
        return None
    lo = max(name_positions)
    after = [p for p in rating_positions if p > lo]
    if not after:
        return None
    for idx in range(lo + 1, min(after)):
        header = headers[idx]
        if not header.startswith(_EMPTY_COL_PREFIX):
            continue
        if _looks_like_gender_letters([row.get(header) for row in rows]):
            return header
    return None


def analyze_gender_columns(headers: list[str], rows: list[dict[str, Any]]) -> GenderColumnConfig:
    config = GenderColumnConfig()
    for header in headers:
        key = normalize_header(header)
        if key == _FS_HEADER and config.fs_column is None:
            config.fs_column = header
        elif key in _GENDER_HEADERS and config.gender_column is None:
            config.gender_column = header
    config.headerless_column = find_headerless_gender_column(headers, rows)
    return config


def normalize_gender(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip().upper()
    if s in _MALE_WORDS:
        return "M"
    if s in _FEMALE_WORDS:
        return "F"
    return None


def gender_blank_to_mf(value: Any) -> str | None:
    """Swiss-Manager convention: blank is male, 'F' is female."""
    if value is None or str(value).strip() == "":
        return "M"
    if str(value).strip().upper() == "F":
        return "F"
    return None


def has_female_marker(label: Any) -> bool:
    if label is None:
        return False
    for token in re.split(r"[\s,;|/]+", str(label).strip()):
        upper = token.upper()
        if not upper:
            continue
        if "FMG" in upper or upper in _GIRL_TOKENS:
            return True
        if _FEMALE_MARKER_RE.match(upper):
            return True
    return False


def infer_gender(
    row: dict[str, Any],
    config: GenderColumnConfig | None,
    type_label: str | None = None,
    group_label: str | None = None,
    upstream: str | None = None,
) -> GenderInference:
    """Infer gender for one raw row.

    An upstream classification (already M/F) wins outright and skips
    column reads; label markers still apply on top of it.
    """
    result = GenderInference()

    if upstream:
        result.gender = normalize_gender(upstream)
        if result.gender:
            result.sources.append(SOURCE_UPSTREAM)

    if result.gender is None and config is not None:
        candidates: list[tuple[str, str]] = []
        for column, source in (
            (config.gender_column, SOURCE_GENDER_COLUMN),
            (config.fs_column, SOURCE_FS_COLUMN),
            (config.headerless_column, SOURCE_HEADERLESS),
        ):
            if column:
                candidates.append((column, source))
        for column, source in candidates:
            value = row.get(column)
            if source == SOURCE_GENDER_COLUMN:
                gender = normalize_gender(value)
            else:
                gender = gender_blank_to_mf(value)
            if gender:
                result.gender = gender
                result.sources.append(source)
                break

    female_type = has_female_marker(type_label)
    female_group = has_female_marker(group_label)
    if female_type or female_group:
        if result.gender == "M":
            result.warnings.append("female label overrides gender M")
        result.gender = "F"
        if female_type:
            result.sources.append(SOURCE_TYPE_LABEL)
        if female_group:
            result.sources.append(SOURCE_GROUP_LABEL)

    return result
