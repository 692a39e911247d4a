"""Unit tests for roster_reconcile.gender."""

from __future__ import annotations

import pytest

from roster_reconcile.gender import (
    SOURCE_FS_COLUMN,
    SOURCE_GENDER_COLUMN,
    SOURCE_GROUP_LABEL,
    SOURCE_HEADERLESS,
    SOURCE_TYPE_LABEL,
    SOURCE_UPSTREAM,
    GenderColumnConfig,
    analyze_gender_columns,
    find_headerless_gender_column,
    gender_blank_to_mf,
    has_female_marker,
    infer_gender,
    normalize_gender,
)


class TestNormalizeGender:
    @pytest.mark.parametrize("raw, expected", [
        ("m", "M"), ("Male", "M"), ("boy", "M"), ("F", "F"), ("female", "F"), ("Girl", "F"),
        ("", None), ("x", None), (None, None),
    ])
    def test_values(self, raw, expected):
        assert normalize_gender(raw) == expected

    def test_blank_means_male_in_fs_convention(self):
        assert gender_blank_to_mf("") == "M"
        assert gender_blank_to_mf(None) == "M"
        assert gender_blank_to_mf("f") == "F"
        assert gender_blank_to_mf("w") is None


class TestFemaleMarkers:
    @pytest.mark.parametrize("label", ["FMG", "F14", "F-U12", "Girls", "U13 GIRL", "WFM/FMG"])
    def test_markers(self, label):
        assert has_female_marker(label) is True

    @pytest.mark.parametrize("label", ["U14", "Open", "PC", "FIDE", None, ""])
    def test_non_markers(self, label):
        assert has_female_marker(label) is False


class TestColumnDetection:
    def test_gender_and_fs_columns(self):
        config = analyze_gender_columns(["Rank", "Name", "fs", "Sex", "Rtg"], [])
        assert config.fs_column == "fs"
        assert config.gender_column == "Sex"
        assert config.preferred == ("Sex", SOURCE_GENDER_COLUMN)

    def test_headerless_column_between_name_and_rating(self):
        headers = ["Rank", "Name", "__EMPTY_COL_2", "Rtg"]
        rows = [
            {"Rank": 1, "Name": "A", "__EMPTY_COL_2": "", "Rtg": 1500},
            {"Rank": 2, "Name": "B", "__EMPTY_COL_2": "F", "Rtg": 1400},
        ]
        assert find_headerless_gender_column(headers, rows) == "__EMPTY_COL_2"

    def test_headerless_column_with_other_values_ignored(self):
        headers = ["Rank", "Name", "__EMPTY_COL_2", "Rtg"]
        rows = [{"__EMPTY_COL_2": "IND"}, {"__EMPTY_COL_2": "F"}]
        assert find_headerless_gender_column(headers, rows) is None

    def test_headerless_column_after_rating_ignored(self):
        headers = ["Rank", "Name", "Rtg", "__EMPTY_COL_3"]
        rows = [{"__EMPTY_COL_3": "F"}]
        assert find_headerless_gender_column(headers, rows) is None


class TestInferGender:
    def test_explicit_column(self):
        config = GenderColumnConfig(gender_column="Gender")
        result = infer_gender({"Gender": "F"}, config)
        assert result.gender == "F"
        assert result.sources == [SOURCE_GENDER_COLUMN]

    def test_fs_blank_is_male(self):
        config = GenderColumnConfig(fs_column="fs")
        result = infer_gender({"fs": ""}, config)
        assert result.gender == "M"
        assert result.sources == [SOURCE_FS_COLUMN]

    def test_unreadable_gender_column_falls_through_to_headerless(self):
        config = GenderColumnConfig(gender_column="Gender", headerless_column="__EMPTY_COL_4")
        result = infer_gender({"Gender": "?", "__EMPTY_COL_4": "F"}, config)
        assert result.gender == "F"
        assert result.sources == [SOURCE_HEADERLESS]

    def test_female_type_label_overrides_male_with_warning(self):
        config = GenderColumnConfig(fs_column="fs")
        result = infer_gender({"fs": ""}, config, type_label="FMG")
        assert result.gender == "F"
        assert SOURCE_TYPE_LABEL in result.sources
        assert result.warnings == ["female label overrides gender M"]

    def test_group_label_marker_without_columns(self):
        result = infer_gender({}, None, group_label="F14")
        assert result.gender == "F"
        assert result.sources == [SOURCE_GROUP_LABEL]
        assert result.warnings == []

    def test_upstream_wins_over_columns(self):
        config = GenderColumnConfig(gender_column="Gender")
        result = infer_gender({"Gender": "M"}, config, upstream="F")
        assert result.gender == "F"
        assert result.sources == [SOURCE_UPSTREAM]

    def test_nothing_known(self):
        result = infer_gender({"Name": "x"}, GenderColumnConfig())
        assert result.gender is None
        assert result.sources == []
