"""Unit tests for roster_reconcile.reconcile_rules."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest
import yaml

from roster_reconcile.eligibility import AgeRange
from roster_reconcile.reconcile_rules import (
    DEFAULT_RULES_PATH,
    MERGEABLE_FIELDS,
    MergePolicy,
    ReconcileRules,
    RulesValidationError,
    load_rules,
    parse_categories,
    parse_rules,
    validate_rules,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

RULES_YAML = textwrap.dedent("""\
    version: "v2.1.0"
    thresholds:
      auto_update: 0.80
      review: 0.50
      fuzzy_name: 0.90
    feature_weights:
      name_exact: 0.50
      identifier_exact: 0.40
      dob_exact: 0.20
    merge_policy:
      prefer_newer_rating: false
      fields:
        rating: always
        club: never
    unrated:
      treat_empty_as_unrated: true
    tie_break: prefer_b
    retry_strategies: [per_row]
    chunk_size: 50
""")


@pytest.fixture
def rules_yaml_path(tmp_path: Path) -> Path:
    p = tmp_path / "rules.yml"
    p.write_text(RULES_YAML, encoding="utf-8")
    return p


@pytest.fixture
def rules(rules_yaml_path: Path) -> ReconcileRules:
    return load_rules(rules_yaml_path)


# ---------------------------------------------------------------------------
# load_rules
# ---------------------------------------------------------------------------

class TestLoadRules:
    def test_version(self, rules: ReconcileRules):
        assert rules.version == "v2.1.0"

    def test_yaml_hash_is_sha256_hex(self, rules: ReconcileRules):
        assert rules.yaml_hash == hashlib.sha256(RULES_YAML.encode("utf-8")).hexdigest()

    def test_thresholds(self, rules: ReconcileRules):
        assert rules.threshold_auto_update == 0.80
        assert rules.threshold_review == 0.50
        assert rules.threshold_fuzzy_name == 0.90

    def test_merge_policy(self, rules: ReconcileRules):
        assert rules.merge_policy.mode_for("rating") == "always"
        assert rules.merge_policy.mode_for("club") == "never"
        assert rules.merge_policy.mode_for("city") == "if_empty"
        assert rules.merge_policy.prefer_newer_rating is False
        assert rules.merge_policy.never_overwrite_dob is True

    def test_options(self, rules: ReconcileRules):
        assert rules.unrated.treat_empty_as_unrated is True
        assert rules.unrated.infer_from_missing_rating is False
        assert rules.tie_break == "prefer_b"
        assert rules.retry_strategies == ("per_row",)
        assert rules.chunk_size == 50
        assert rules.sample_error_limit == 20
        assert rules.strip_rating_commas is True

    def test_default_rules_file(self):
        rules = load_rules()
        assert DEFAULT_RULES_PATH.exists()
        assert rules.threshold_auto_update == 0.70
        assert rules.threshold_review == 0.45
        assert rules.retry_strategies == ("bulk", "per_row")

    def test_file_not_found_raises(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_rules(tmp_path / "missing.yml")

    def test_invalid_yaml_raises(self):
        with pytest.raises(RulesValidationError, match="Invalid YAML"):
            parse_rules("version: [unclosed")

    def test_to_dict_has_fingerprint(self, rules: ReconcileRules):
        d = rules.to_dict()
        assert d["merge_policy_fingerprint"] == rules.merge_policy.fingerprint()
        assert d["tie_break"] == "prefer_b"


class TestCategories:
    def test_absent_by_default(self, rules: ReconcileRules):
        assert rules.categories == {}

    def test_parsed_from_yaml(self):
        rules = parse_rules(RULES_YAML + textwrap.dedent("""\
            categories:
              under_14:
                - {kind: age_range, max_age: 14, on_date: "2026-01-01"}
              local:
                - {kind: allow_list, field: state, values: [MH]}
        """))
        assert list(rules.categories) == ["under_14", "local"]
        assert isinstance(rules.categories["under_14"][0], AgeRange)
        assert rules.categories["under_14"][0].max_age == 14
        assert rules.with_merge_policy(MergePolicy()).categories == rules.categories

    def test_bad_criterion_raises(self):
        with pytest.raises(RulesValidationError, match="category 'seniors'"):
            parse_categories({"seniors": [{"kind": "age_band"}]})

    def test_must_be_mapping(self):
        with pytest.raises(RulesValidationError, match="categories must be a mapping"):
            parse_categories([{"kind": "age_range"}])


class TestMergePolicy:
    def test_fingerprint_ignores_explicit_defaults(self):
        assert MergePolicy().fingerprint() == MergePolicy(fields={"city": "if_empty"}).fingerprint()

    def test_fingerprint_changes_with_mode(self):
        assert MergePolicy().fingerprint() != MergePolicy(fields={"city": "always"}).fingerprint()

    def test_to_dict_lists_every_field(self, rules: ReconcileRules):
        snapshot = rules.merge_policy.to_dict()
        assert set(snapshot["fields"]) == set(MERGEABLE_FIELDS)
        assert snapshot["fields"]["rating"] == "always"
        assert snapshot["fields"]["city"] == "if_empty"
        assert snapshot["prefer_newer_rating"] is False

    def test_with_merge_policy_copies(self, rules: ReconcileRules):
        swapped = rules.with_merge_policy(MergePolicy(fields={f: "never" for f in MERGEABLE_FIELDS}))
        assert swapped.merge_policy.mode_for("rating") == "never"
        assert rules.merge_policy.mode_for("rating") == "always"
        assert swapped.chunk_size == rules.chunk_size


# ---------------------------------------------------------------------------
# validate_rules
# ---------------------------------------------------------------------------

class TestValidateRules:
    def _base(self) -> dict:
        return yaml.safe_load(RULES_YAML)

    def test_valid_data_passes(self):
        validate_rules(self._base())

    def test_root_must_be_mapping(self):
        with pytest.raises(RulesValidationError, match="mapping"):
            validate_rules(["version"])

    def test_missing_required_key_raises(self):
        data = self._base()
        del data["feature_weights"]
        with pytest.raises(RulesValidationError, match="feature_weights"):
            validate_rules(data)

    def test_missing_threshold_key_raises(self):
        data = self._base()
        del data["thresholds"]["fuzzy_name"]
        with pytest.raises(RulesValidationError, match="fuzzy_name"):
            validate_rules(data)

    def test_threshold_out_of_range_raises(self):
        data = self._base()
        data["thresholds"]["auto_update"] = 1.5
        with pytest.raises(RulesValidationError, match="1.5"):
            validate_rules(data)

    def test_threshold_not_numeric_raises(self):
        data = self._base()
        data["thresholds"]["review"] = "high"
        with pytest.raises(RulesValidationError, match="not numeric"):
            validate_rules(data)

    def test_review_above_auto_update_raises(self):
        data = self._base()
        data["thresholds"]["review"] = 0.9
        with pytest.raises(RulesValidationError, match="review"):
            validate_rules(data)

    def test_unknown_feature_raises(self):
        data = self._base()
        data["feature_weights"]["shoe_size"] = 0.1
        with pytest.raises(RulesValidationError, match="shoe_size"):
            validate_rules(data)

    def test_negative_weight_raises(self):
        data = self._base()
        data["feature_weights"]["dob_exact"] = -0.1
        with pytest.raises(RulesValidationError, match=">= 0"):
            validate_rules(data)

    def test_unmergeable_field_raises(self):
        data = self._base()
        data["merge_policy"]["fields"]["rank"] = "always"
        with pytest.raises(RulesValidationError, match="not mergeable"):
            validate_rules(data)

    def test_unknown_merge_mode_raises(self):
        data = self._base()
        data["merge_policy"]["fields"]["city"] = "sometimes"
        with pytest.raises(RulesValidationError, match="sometimes"):
            validate_rules(data)

    def test_bad_tie_break_raises(self):
        data = self._base()
        data["tie_break"] = "coin_flip"
        with pytest.raises(RulesValidationError, match="tie_break"):
            validate_rules(data)

    def test_bad_retry_strategy_raises(self):
        data = self._base()
        data["retry_strategies"] = ["bulk", "carrier_pigeon"]
        with pytest.raises(RulesValidationError, match="retry_strategies"):
            validate_rules(data)

    @pytest.mark.parametrize("value", [0, -5, "ten", True])
    def test_bad_chunk_size_raises(self, value):
        data = self._base()
        data["chunk_size"] = value
        with pytest.raises(RulesValidationError, match="chunk_size"):
            validate_rules(data)
