"""roster_reconcile.eligibility

Category eligibility criteria as a closed set of frozen dataclasses.

Kinds:
  age_range       AgeRange(min_age, max_age, on_date)
  rating_range    RatingRange(min_rating, max_rating, allow_unrated)
  disability_set  DisabilitySet(values)
  allow_list      AllowList(field, values)   field in ALLOW_LIST_FIELDS

Categories are declared under `categories:` in the rules file
(reconcile_rules.parse_categories); the reconcile report counts eligible
rows per category for prize allocation.

A category's criteria is a list; a record is eligible when every criterion
passes.  Payloads are validated when parsed, so evaluation never reads
unknown keys.

Usage:
    criteria = parse_criteria([
        {"kind": "age_range", "max_age": 14, "on_date": "2025-01-01"},
        {"kind": "allow_list", "field": "state", "values": ["MH", "KA"]},
    ])
    is_eligible(record, criteria)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Union

from roster_reconcile.gender import normalize_gender
from roster_reconcile.normalize import parse_dob
from roster_reconcile.shared import ReconcileError

KIND_AGE_RANGE = "age_range"
KIND_RATING_RANGE = "rating_range"
KIND_DISABILITY_SET = "disability_set"
KIND_ALLOW_LIST = "allow_list"

ALLOW_LIST_FIELDS = ("gender", "state", "city", "club", "federation", "group_label", "type_label")


class CriteriaValidationError(ReconcileError):
    """Raised when a criteria payload has an unknown kind or bad fields."""


@dataclass(frozen=True)
class AgeRange:
    min_age: int | None
    max_age: int | None
    on_date: date


@dataclass(frozen=True)
class RatingRange:
    min_rating: int | None
    max_rating: int | None
    allow_unrated: bool = False


@dataclass(frozen=True)
class DisabilitySet:
    values: frozenset[str]


@dataclass(frozen=True)
class AllowList:
    field: str
    values: frozenset[str]


Criterion = Union[AgeRange, RatingRange, DisabilitySet, AllowList]


@dataclass
class EligibilityResult:
    eligible: bool
    reason_codes: list[str] = field(default_factory=list)
    pass_codes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _opt_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise CriteriaValidationError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise CriteriaValidationError(f"{key} must be an integer, got {value!r}") from exc
    if number < 0:
        raise CriteriaValidationError(f"{key} must be >= 0, got {number}")
    return number


def _check_bounds(kind: str, low: int | None, high: int | None) -> None:
    if low is None and high is None:
        raise CriteriaValidationError(f"{kind}: at least one bound is required")
    if low is not None and high is not None and low > high:
        raise CriteriaValidationError(f"{kind}: min {low} is greater than max {high}")


def _values(payload: dict[str, Any], kind: str) -> frozenset[str]:
    raw = payload.get("values")
    if not isinstance(raw, (list, tuple)) or not raw:
        raise CriteriaValidationError(f"{kind}: values must be a non-empty list")
    return frozenset(str(v).strip().lower() for v in raw if str(v).strip())


def _parse_one(payload: Any) -> Criterion:
    if not isinstance(payload, dict):
        raise CriteriaValidationError(f"criterion must be a mapping, got {type(payload).__name__}")
    kind = payload.get("kind")
    allowed = {"kind"}

    if kind == KIND_AGE_RANGE:
        allowed |= {"min_age", "max_age", "on_date"}
        min_age, max_age = _opt_int(payload, "min_age"), _opt_int(payload, "max_age")
        _check_bounds(kind, min_age, max_age)
        raw_date = payload.get("on_date")
        if isinstance(raw_date, date):
            on_date = raw_date
        else:
            parsed = parse_dob(raw_date)
            if parsed.iso is None:
                raise CriteriaValidationError(f"{kind}: on_date is required, got {raw_date!r}")
            on_date = date.fromisoformat(parsed.iso)
        criterion: Criterion = AgeRange(min_age, max_age, on_date)
    elif kind == KIND_RATING_RANGE:
        allowed |= {"min_rating", "max_rating", "allow_unrated"}
        min_rating, max_rating = _opt_int(payload, "min_rating"), _opt_int(payload, "max_rating")
        _check_bounds(kind, min_rating, max_rating)
        allow_unrated = payload.get("allow_unrated", False)
        if not isinstance(allow_unrated, bool):
            raise CriteriaValidationError(f"{kind}: allow_unrated must be a boolean")
        criterion = RatingRange(min_rating, max_rating, allow_unrated)
    elif kind == KIND_DISABILITY_SET:
        allowed |= {"values"}
        criterion = DisabilitySet(_values(payload, kind))
    elif kind == KIND_ALLOW_LIST:
        allowed |= {"field", "values"}
        fld = payload.get("field")
        if fld not in ALLOW_LIST_FIELDS:
            raise CriteriaValidationError(
                f"{kind}: field must be one of {list(ALLOW_LIST_FIELDS)}, got {fld!r}"
            )
        values = _values(payload, kind)
        if fld == "gender":
            values = frozenset(normalize_gender(v) or v.upper() for v in values)
        criterion = AllowList(fld, values)
    else:
        raise CriteriaValidationError(f"unknown criterion kind {kind!r}")

    extra = sorted(set(payload) - allowed)
    if extra:
        raise CriteriaValidationError(f"{kind}: unexpected keys {extra}")
    return criterion


def parse_criteria(payload: Any) -> list[Criterion]:
    """Parse one criterion mapping or a list of them."""
    if payload is None:
        return []
    items = payload if isinstance(payload, list) else [payload]
    return [_parse_one(item) for item in items]


def criteria_from_legacy(data: dict[str, Any], on_date: date | str | None = None) -> list[Criterion]:
    """Convert a flat criteria map (min_age, max_rating, allowed_states, ...)."""
    out: list[dict[str, Any]] = []
    if data.get("min_age") is not None or data.get("max_age") is not None:
        out.append({
            "kind": KIND_AGE_RANGE,
            "min_age": data.get("min_age"),
            "max_age": data.get("max_age"),
            "on_date": on_date or data.get("on_date"),
        })
    if data.get("min_rating") is not None or data.get("max_rating") is not None:
        out.append({
            "kind": KIND_RATING_RANGE,
            "min_rating": data.get("min_rating"),
            "max_rating": data.get("max_rating"),
            "allow_unrated": bool(data.get("allow_unrated", False)),
        })
    gender = str(data.get("gender") or "").strip().upper()
    if gender in ("M", "F"):
        out.append({"kind": KIND_ALLOW_LIST, "field": "gender", "values": [gender]})
    if data.get("allowed_disabilities"):
        out.append({"kind": KIND_DISABILITY_SET, "values": data["allowed_disabilities"]})
    for key, fld in (("allowed_states", "state"), ("allowed_cities", "city"), ("allowed_clubs", "club")):
        if data.get(key):
            out.append({"kind": KIND_ALLOW_LIST, "field": fld, "values": data[key]})
    return parse_criteria(out)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def age_on(dob_iso: str | None, on_date: date) -> int | None:
    if not dob_iso:
        return None
    try:
        dob = date.fromisoformat(dob_iso)
    except ValueError:
        return None
    years = on_date.year - dob.year
    if (on_date.month, on_date.day) < (dob.month, dob.day):
        years -= 1
    return years


def _check(record: Any, criterion: Criterion, fail: list[str], passed: list[str]) -> None:
    if isinstance(criterion, AgeRange):
        age = age_on(getattr(record, "dob", None), criterion.on_date)
        if age is None:
            fail.append("dob_missing")
        elif criterion.max_age is not None and age > criterion.max_age:
            fail.append("age_above_max")
        elif criterion.min_age is not None and age < criterion.min_age:
            fail.append("age_below_min")
        else:
            passed.append("age_ok")
    elif isinstance(criterion, RatingRange):
        rating = getattr(record, "rating", None)
        if not rating or getattr(record, "unrated", False):
            if criterion.allow_unrated:
                passed.append("rating_unrated_allowed")
            else:
                fail.append("unrated_excluded")
        elif criterion.min_rating is not None and rating < criterion.min_rating:
            fail.append("rating_below_min")
        elif criterion.max_rating is not None and rating > criterion.max_rating:
            fail.append("rating_above_max")
        else:
            passed.append("rating_ok")
    elif isinstance(criterion, DisabilitySet):
        value = str(getattr(record, "disability", None) or "").strip().lower()
        if value in criterion.values:
            passed.append("disability_ok")
        else:
            fail.append("disability_excluded")
    elif isinstance(criterion, AllowList):
        raw = getattr(record, criterion.field, None)
        value = str(raw or "").strip()
        value = value.upper() if criterion.field == "gender" else value.lower()
        if value and value in criterion.values:
            passed.append(f"{criterion.field}_ok")
        else:
            fail.append(f"{criterion.field}_excluded" if value else f"{criterion.field}_missing")
    else:
        raise TypeError(f"unsupported criterion {criterion!r}")


def evaluate(record: Any, criteria: list[Criterion]) -> EligibilityResult:
    fail: list[str] = []
    passed: list[str] = []
    for criterion in criteria:
        _check(record, criterion, fail, passed)
    return EligibilityResult(eligible=not fail, reason_codes=fail, pass_codes=passed)


def is_eligible(record: Any, criteria: list[Criterion]) -> bool:
    return evaluate(record, criteria).eligible
