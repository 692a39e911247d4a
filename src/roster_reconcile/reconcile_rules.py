"""roster_reconcile.reconcile_rules

YAML-based rules for a reconcile run.

Responsibilities:
  - Load and validate YAML rule files from config/reconcile_rules/*.yml
  - Expose dedup thresholds, feature weights and the merge policy
  - Hash YAML content for traceability (recorded in import_log.meta)

Usage:
    from pathlib import Path
    from roster_reconcile.reconcile_rules import load_rules

    rules = load_rules(Path("config/reconcile_rules/default.yml"))
    rules.merge_policy.mode_for("rating")   # 'if_empty'
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from roster_reconcile.eligibility import CriteriaValidationError, Criterion, parse_criteria

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RULES_PATH = (
    Path(__file__).parent.parent.parent / "config" / "reconcile_rules" / "default.yml"
)

REQUIRED_YAML_KEYS = frozenset({
    "version",
    "thresholds",
    "feature_weights",
    "merge_policy",
})

REQUIRED_THRESHOLD_KEYS = frozenset({"auto_update", "review", "fuzzy_name"})

KNOWN_FEATURES = frozenset({
    "name_exact",
    "name_similarity",
    "identifier_exact",
    "dob_exact",
    "dob_year",
    "sequence_exact",
    "rating_within_25",
    "rating_within_50",
})

MERGE_MODES = ("always", "if_empty", "never")

MERGEABLE_FIELDS = (
    "rating",
    "dob",
    "gender",
    "state",
    "city",
    "club",
    "disability",
    "notes",
    "federation",
    "identifier",
    "full_name",
)

TIE_BREAKS = ("prefer_a", "prefer_b")
RETRY_STRATEGIES = ("bulk", "per_row")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RulesValidationError(ValueError):
    """Raised when a YAML rules file fails schema validation."""


# ---------------------------------------------------------------------------
# Policy dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnratedPolicy:
    treat_empty_as_unrated: bool = False
    infer_from_missing_rating: bool = False


@dataclass(frozen=True)
class MergePolicy:
    """Per-field overwrite rules applied when an incoming row updates an
    existing entity.  Fields not listed default to if_empty."""

    fields: dict[str, str] = field(default_factory=dict)
    prefer_newer_rating: bool = True
    never_overwrite_dob: bool = True

    def mode_for(self, field_name: str) -> str:
        return self.fields.get(field_name, "if_empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": {f: self.mode_for(f) for f in MERGEABLE_FIELDS},
            "prefer_newer_rating": self.prefer_newer_rating,
            "never_overwrite_dob": self.never_overwrite_dob,
        }

    def fingerprint(self) -> str:
        raw = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# ReconcileRules dataclass
# ---------------------------------------------------------------------------

@dataclass
class ReconcileRules:
    """Parsed, validated rules loaded from a YAML file."""

    version: str
    yaml_hash: str
    thresholds: dict[str, float]
    feature_weights: dict[str, float]
    merge_policy: MergePolicy
    unrated: UnratedPolicy = field(default_factory=UnratedPolicy)
    tie_break: str = "prefer_a"
    chunk_size: int = 500
    sample_error_limit: int = 20
    strip_rating_commas: bool = True
    retry_strategies: tuple[str, ...] = RETRY_STRATEGIES
    categories: dict[str, list[Criterion]] = field(default_factory=dict)
    raw_yaml: str = field(repr=False, default="")

    @property
    def threshold_auto_update(self) -> float:
        return float(self.thresholds["auto_update"])

    @property
    def threshold_review(self) -> float:
        return float(self.thresholds["review"])

    @property
    def threshold_fuzzy_name(self) -> float:
        return float(self.thresholds["fuzzy_name"])

    def with_merge_policy(self, policy: MergePolicy) -> "ReconcileRules":
        return ReconcileRules(
            version=self.version,
            yaml_hash=self.yaml_hash,
            thresholds=dict(self.thresholds),
            feature_weights=dict(self.feature_weights),
            merge_policy=policy,
            unrated=self.unrated,
            tie_break=self.tie_break,
            chunk_size=self.chunk_size,
            sample_error_limit=self.sample_error_limit,
            strip_rating_commas=self.strip_rating_commas,
            retry_strategies=self.retry_strategies,
            categories=self.categories,
            raw_yaml=self.raw_yaml,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "yaml_hash": self.yaml_hash,
            "thresholds": dict(self.thresholds),
            "tie_break": self.tie_break,
            "chunk_size": self.chunk_size,
            "merge_policy_fingerprint": self.merge_policy.fingerprint(),
        }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_rules(yaml_path: Path | None = None) -> ReconcileRules:
    """Load, validate, and return ReconcileRules from a YAML file.

    Args:
        yaml_path: Path to the YAML rules file; defaults to
            config/reconcile_rules/default.yml.

    Raises:
        RulesValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_RULES_PATH
    raw = path.read_text(encoding="utf-8")
    return parse_rules(raw)


def parse_rules(raw: str) -> ReconcileRules:
    try:
        data: dict[str, Any] = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise RulesValidationError(f"Invalid YAML: {exc}") from exc
    validate_rules(data)

    mp = data["merge_policy"] or {}
    unrated = data.get("unrated") or {}
    return ReconcileRules(
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        thresholds={k: float(v) for k, v in data["thresholds"].items()},
        feature_weights={k: float(v) for k, v in data["feature_weights"].items()},
        merge_policy=MergePolicy(
            fields={k: str(v) for k, v in (mp.get("fields") or {}).items()},
            prefer_newer_rating=bool(mp.get("prefer_newer_rating", True)),
            never_overwrite_dob=bool(mp.get("never_overwrite_dob", True)),
        ),
        unrated=UnratedPolicy(
            treat_empty_as_unrated=bool(unrated.get("treat_empty_as_unrated", False)),
            infer_from_missing_rating=bool(unrated.get("infer_from_missing_rating", False)),
        ),
        tie_break=str(data.get("tie_break") or "prefer_a"),
        chunk_size=int(data.get("chunk_size") or 500),
        sample_error_limit=int(data.get("sample_error_limit") or 20),
        strip_rating_commas=bool(data.get("strip_rating_commas", True)),
        retry_strategies=tuple(data.get("retry_strategies") or RETRY_STRATEGIES),
        categories=parse_categories(data.get("categories")),
        raw_yaml=raw,
    )


def parse_categories(data: Any) -> dict[str, list[Criterion]]:
    """Category name -> eligibility criteria, from the optional categories key."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RulesValidationError("categories must be a mapping of name to criteria list.")
    categories: dict[str, list[Criterion]] = {}
    for name, payload in data.items():
        try:
            categories[str(name)] = parse_criteria(payload)
        except CriteriaValidationError as exc:
            raise RulesValidationError(f"category '{name}': {exc}") from exc
    return categories


def validate_rules(data: dict[str, Any]) -> None:
    """Raise RulesValidationError if data does not match the required schema.

    Validates:
      - Required top-level keys present
      - thresholds keys and value ranges (review <= auto_update)
      - feature_weights known and >= 0
      - merge_policy modes, tie_break, retry_strategies, chunk_size
    """
    if not isinstance(data, dict):
        raise RulesValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise RulesValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    thresholds = data.get("thresholds") or {}
    missing_thresh = REQUIRED_THRESHOLD_KEYS - set(thresholds.keys())
    if missing_thresh:
        raise RulesValidationError(f"Missing threshold keys: {sorted(missing_thresh)}")
    for key, val in thresholds.items():
        try:
            fval = float(val)
        except (TypeError, ValueError):
            raise RulesValidationError(f"Threshold '{key}' value '{val}' is not numeric.")
        if not (0.0 <= fval <= 1.0):
            raise RulesValidationError(f"Threshold '{key}' value {fval} must be in [0.0, 1.0].")
    review = float(thresholds["review"])
    auto_update = float(thresholds["auto_update"])
    if review > auto_update:
        raise RulesValidationError(
            f"'review' threshold ({review}) must be <= 'auto_update' ({auto_update})."
        )

    feature_weights = data.get("feature_weights") or {}
    if not feature_weights:
        raise RulesValidationError("'feature_weights' must not be empty.")
    for feat, weight in feature_weights.items():
        if feat not in KNOWN_FEATURES:
            raise RulesValidationError(f"Unknown feature_weight '{feat}'.")
        try:
            fw = float(weight)
        except (TypeError, ValueError):
            raise RulesValidationError(f"feature_weight '{feat}' value '{weight}' is not numeric.")
        if fw < 0:
            raise RulesValidationError(f"feature_weight '{feat}' value {fw} must be >= 0.")

    mp = data.get("merge_policy") or {}
    if not isinstance(mp, dict):
        raise RulesValidationError("'merge_policy' must be a mapping.")
    for fld, mode in (mp.get("fields") or {}).items():
        if fld not in MERGEABLE_FIELDS:
            raise RulesValidationError(f"merge_policy field '{fld}' is not mergeable.")
        if mode not in MERGE_MODES:
            raise RulesValidationError(
                f"merge_policy mode '{mode}' for '{fld}' must be one of {list(MERGE_MODES)}."
            )

    tie_break = data.get("tie_break", "prefer_a")
    if tie_break not in TIE_BREAKS:
        raise RulesValidationError(f"tie_break '{tie_break}' must be one of {list(TIE_BREAKS)}.")

    strategies = data.get("retry_strategies") or list(RETRY_STRATEGIES)
    if not strategies or any(s not in RETRY_STRATEGIES for s in strategies):
        raise RulesValidationError(
            f"retry_strategies {strategies} must be a non-empty subset of {list(RETRY_STRATEGIES)}."
        )

    chunk_size = data.get("chunk_size", 500)
    if not isinstance(chunk_size, int) or isinstance(chunk_size, bool) or chunk_size < 1:
        raise RulesValidationError(f"chunk_size '{chunk_size}' must be a positive integer.")
