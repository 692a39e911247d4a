"""Normalization functions for roster spreadsheet ingestion.

All functions accept raw cell values (str, int, float, date or None) and
return the appropriate type or None.  Nothing here raises on bad input:
unparseable values come back as None so callers can decide whether that is
a validation error.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_YMD_SLASH_RE = re.compile(r"^(\d{4})[/.](\d{1,2})[/.](\d{1,2})$")
_DMY_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4})$")
_YEAR_ONLY_RE = re.compile(r"^(\d{4})(?:\.0+)?$")
_YEAR_ZERO_RE = re.compile(r"^(\d{4})[-/.]0{1,2}[-/.]0{1,2}$")
_IDENTIFIER_RE = re.compile(r"^[0-9]{6,10}$")
_LEADING_STATE_RE = re.compile(r"^([A-Z]{2})(?=\d)")

_MIN_BIRTH_YEAR = 1900


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Stringify and strip leading/trailing whitespace; treat empty as None."""
    if value is None:
        return None
    v = str(value).replace("\u00a0", " ").strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_name  (for dedup scoring)
# ---------------------------------------------------------------------------

def normalize_name(value: Any) -> str | None:
    """Lowercase, strip diacritics and punctuation, collapse spaces.

    Digits survive so that "Player 2" and "Player 3" stay distinct.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9\s]", " ", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 4: fold_name  (for conflict keys)
# ---------------------------------------------------------------------------

def fold_name(value: Any) -> str | None:
    """Case-fold a name down to [a-z ] only.

    Names shorter than three letters after folding carry too little signal
    to key on and return None.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFD", v.lower())
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = re.sub(r"[^a-z\s]", " ", v)
    v = re.sub(r"\s+", " ", v).strip()
    return v if len(v) >= 3 else None


# ---------------------------------------------------------------------------
# Rule 5: parse_int / parse_rank / parse_sequence_no
# ---------------------------------------------------------------------------

def parse_int(value: Any) -> int | None:
    """Parse an integer, accepting '12', '12.0' and 12.0.  Else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    v = trim(value)
    if v is None:
        return None
    v = v.rstrip(".")
    try:
        f = float(v)
    except ValueError:
        return None
    if f != f or not f.is_integer():
        return None
    return int(f)


def parse_rank(value: Any) -> int | None:
    """Rank must be a positive integer."""
    n = parse_int(value)
    return n if n is not None and n > 0 else None


def parse_sequence_no(value: Any) -> int | None:
    """Start/serial number: positive integer else None."""
    n = parse_int(value)
    return n if n is not None and n > 0 else None


# ---------------------------------------------------------------------------
# Rule 6: identifiers
# ---------------------------------------------------------------------------

def digits_only(value: Any) -> str | None:
    """Keep only digits ('12345678.' → '12345678')."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    s = re.sub(r"\D+", "", str(value))
    return s or None


def parse_identifier(value: Any) -> str | None:
    """Return a 6–10 digit identifier, or None for anything else."""
    digits = digits_only(value)
    if digits and _IDENTIFIER_RE.match(digits):
        return digits
    return None


def extract_state_from_ident(value: Any) -> str | None:
    """Extract a two-letter state code from a composite identifier.

    Handles 'IND/KA/1234' (middle segment) and 'MH123456' (leading code).
    Never consults a federation column.
    """
    ident = trim(value)
    if ident is None:
        return None
    upper = ident.upper()
    parts = upper.split("/")
    if len(parts) >= 2:
        candidate = parts[1].strip()
        if re.fullmatch(r"[A-Z]{2}", candidate):
            return candidate
    m = _LEADING_STATE_RE.match(upper)
    if m:
        return m.group(1)
    return None


# ---------------------------------------------------------------------------
# Rule 7: parse_rating
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RatingValue:
    rating: int | None
    was_zero: bool = False
    was_present: bool = False


def parse_rating(value: Any, strip_commas: bool = True) -> RatingValue:
    """Parse a rating.

    '1,800' and '1 800' become 1800 when strip_commas is set.  A literal
    zero is reported via was_zero but stored as None.  Negative or
    non-numeric values are treated as missing.
    """
    v = trim(value)
    if v is None:
        return RatingValue(None)
    if strip_commas:
        v = re.sub(r"[,\s]", "", v)
    try:
        num = float(v)
    except ValueError:
        return RatingValue(None, was_present=True)
    if num == 0:
        return RatingValue(None, was_zero=True, was_present=True)
    if num < 0 or num != num or num == float("inf"):
        return RatingValue(None, was_present=True)
    return RatingValue(int(round(num)), was_present=True)


_UNRATED_TRUE = frozenset({"y", "yes", "true", "1", "u", "ur", "unrated"})
_UNRATED_FALSE = frozenset({"n", "no", "false", "0", "r", "rated"})
_UNRATED_EMPTY = frozenset({"", "-", "na", "n/a", "n.a."})


def infer_unrated(
    rating: RatingValue,
    identifier: str | None,
    explicit: Any,
    treat_empty_as_unrated: bool,
    infer_from_missing_rating: bool,
) -> bool:
    """Decide the unrated flag.

    A positive rating always means rated.  An explicit unrated-column value
    wins next.  Otherwise a missing rating with no identifier is unrated
    (when infer_from_missing_rating), and a literal zero rating is unrated
    (when treat_empty_as_unrated).
    """
    if rating.rating is not None and rating.rating > 0:
        return False
    if explicit is not None:
        s = str(explicit).strip().lower()
        if s in _UNRATED_TRUE:
            return True
        if s in _UNRATED_FALSE:
            return False
        if treat_empty_as_unrated and s in _UNRATED_EMPTY:
            return True
    if rating.was_zero:
        return treat_empty_as_unrated or (infer_from_missing_rating and not identifier)
    return infer_from_missing_rating and not identifier


# ---------------------------------------------------------------------------
# Rule 8: parse_dob
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DobValue:
    iso: str | None
    inferred: bool = False
    original: str | None = None


def _safe_date(year: int, month: int, day: int) -> date | None:
    if year < _MIN_BIRTH_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_dob(value: Any) -> DobValue:
    """Normalize a date of birth to ISO 'YYYY-MM-DD'.

    Full dates pass through.  Year-only ('1998') and zero month/day
    ('1998-00-00') become January 1 of that year with inferred=True and the
    original text preserved.  Empty or unparseable input gives iso=None and
    no flag.
    """
    if value is None:
        return DobValue(None)
    if isinstance(value, datetime):
        return DobValue(value.date().isoformat(), original=value.date().isoformat())
    if isinstance(value, date):
        return DobValue(value.isoformat(), original=value.isoformat())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(int(value)) if float(value).is_integer() else str(value)

    original = trim(value)
    if original is None:
        return DobValue(None)
    v = original.split("T")[0].split(" ")[0]

    m = _YEAR_ONLY_RE.match(v) or _YEAR_ZERO_RE.match(v)
    if m:
        d = _safe_date(int(m.group(1)), 1, 1)
        if d is None:
            return DobValue(None)
        return DobValue(d.isoformat(), inferred=True, original=original)

    m = _ISO_DATE_RE.match(v) or _YMD_SLASH_RE.match(v)
    if m:
        d = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return DobValue(d.isoformat(), original=original) if d else DobValue(None)

    m = _DMY_RE.match(v)
    if m:
        d = _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
        return DobValue(d.isoformat(), original=original) if d else DobValue(None)

    return DobValue(None)


# ---------------------------------------------------------------------------
# Rule 9: labels and titles
# ---------------------------------------------------------------------------

def normalize_group_label(value: Any) -> tuple[str | None, str | None]:
    """Return (group_label, disability) for a coded group cell.

    The label is preserved verbatim (trimmed).  Any 'PC' token marks the
    physically-challenged disability.
    """
    label = trim(value)
    if label is None:
        return None, None
    tokens = re.split(r"[\s,;|/]+", label.upper())
    if "PC" in tokens:
        return label, "PC"
    return label, None


def merge_title_and_name(title: Any, name: Any) -> str | None:
    """'IM' + 'A. Player' → 'IM A. Player'."""
    t = normalize_space(title)
    n = normalize_space(name)
    if t and n:
        return f"{t} {n}"
    return n or t
