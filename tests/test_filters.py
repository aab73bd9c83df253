# tests/test_filters.py
"""Tests for option validation and the aggregated-issues filter body."""

import pytest

from snyk_issue_sync import (
    ConfigurationError,
    FilterOptions,
    Severity,
    build_issues_filter,
    create_maturity_filter,
)


class TestSeverity:

    @pytest.mark.parametrize("threshold, expected", [
        ("critical", ["critical"]),
        ("high", ["critical", "high"]),
        ("medium", ["critical", "high", "medium"]),
        ("low", ["critical", "high", "medium", "low"]),
    ])
    def test_cumulative_severities(self, threshold, expected):
        assert Severity.parse(threshold).cumulative() == expected

    def test_medium_excludes_low(self):
        severities = Severity.parse("medium").cumulative()
        assert "low" not in severities
        assert set(["critical", "high", "medium"]) == set(severities)

    def test_lower_threshold_is_superset(self):
        order = ["critical", "high", "medium", "low"]
        for narrow, wide in zip(order, order[1:]):
            assert set(Severity.parse(narrow).cumulative()) < set(Severity.parse(wide).cumulative())

    @pytest.mark.parametrize("value", [" HIGH ", "High", "high ", "", None])
    def test_parse_is_exact(self, value):
        with pytest.raises(ConfigurationError, match="Unexpected severity threshold"):
            Severity.parse(value)

    def test_unknown_severity_is_rejected(self):
        with pytest.raises(ConfigurationError, match="Unexpected severity threshold 'urgent'"):
            Severity.parse("urgent")


class TestMaturityFilter:

    def test_valid_levels_are_kept_in_order(self):
        levels = ["mature", "proof-of-concept", "no-known-exploit", "no-data"]
        assert create_maturity_filter(levels) == levels

    def test_empty_entries_are_skipped(self):
        assert create_maturity_filter(["mature", "", " "]) == ["mature"]

    def test_bare_string_is_rejected(self):
        with pytest.raises(ConfigurationError, match="must be a list of levels, got str"):
            create_maturity_filter("mature")

    def test_non_string_entry_is_rejected(self):
        with pytest.raises(ConfigurationError, match="must be a string, got None"):
            create_maturity_filter(["mature", None])

    def test_bare_string_option_is_rejected(self):
        with pytest.raises(ConfigurationError, match="must be a list of levels"):
            FilterOptions.from_values(maturity_filter="mature,proof-of-concept")

    def test_invalid_level_is_rejected(self):
        with pytest.raises(ConfigurationError, match="weaponized is not a valid maturity level"):
            create_maturity_filter(["mature", "weaponized"])


class TestFilterOptions:

    def test_defaults(self):
        options = FilterOptions.from_values()
        assert options.severity is Severity.LOW
        assert options.issue_type == "all"
        assert options.priority_score_threshold == 0
        assert options.maturity_filter == ()

    def test_empty_issue_type_means_all(self):
        assert FilterOptions.from_values(issue_type="").issue_type == "all"
        assert FilterOptions.from_values(issue_type=None).issue_type == "all"

    def test_unknown_issue_type_is_rejected(self):
        with pytest.raises(ConfigurationError, match="not a valid issue type"):
            FilterOptions.from_values(issue_type="sast")

    @pytest.mark.parametrize("score", [-1, 1001])
    def test_priority_score_out_of_range(self, score):
        with pytest.raises(ConfigurationError, match="between 0 and 1000"):
            FilterOptions.from_values(priority_score_threshold=score)

    def test_priority_score_not_a_number(self):
        with pytest.raises(ConfigurationError, match="must be an integer"):
            FilterOptions.from_values(priority_score_threshold="abc")

    def test_options_are_immutable(self):
        options = FilterOptions.from_values()
        with pytest.raises(AttributeError):
            options.severity = Severity.HIGH


class TestBuildIssuesFilter:

    def test_default_body(self):
        body = build_issues_filter(FilterOptions.from_values())
        assert body == {
            "filters": {
                "severities": ["critical", "high", "medium", "low"],
                "priority": {"score": {"min": 0, "max": 1000}},
                "types": ["vuln", "license"],
                "ignored": False,
                "patched": False,
            }
        }

    def test_exploit_maturity_omitted_when_empty(self):
        body = build_issues_filter(FilterOptions.from_values(maturity_filter=[""]))
        assert "exploitMaturity" not in body["filters"]

    def test_exploit_maturity_included(self):
        body = build_issues_filter(FilterOptions.from_values(maturity_filter=["mature", "proof-of-concept"]))
        assert body["filters"]["exploitMaturity"] == ["mature", "proof-of-concept"]

    def test_issue_type_override(self):
        body = build_issues_filter(FilterOptions.from_values(issue_type="license"))
        assert body["filters"]["types"] == ["license"]

    def test_priority_score_floor(self):
        body = build_issues_filter(FilterOptions.from_values(priority_score_threshold=700))
        assert body["filters"]["priority"]["score"] == {"min": 700, "max": 1000}

    def test_severity_threshold(self):
        body = build_issues_filter(FilterOptions.from_values(severity="high"))
        assert body["filters"]["severities"] == ["critical", "high"]
