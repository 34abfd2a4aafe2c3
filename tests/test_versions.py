"""Tests for heuristic version parsing of image tags."""

import pytest

from versions import SemanticVersion, looks_like_date, parse_tolerant, try_parse_version


def _triple(v):
    return (v.major, v.minor, v.patch)


class TestTryParseVersion:

    def test_full_semver(self):
        assert _triple(try_parse_version("1.2.3")) == (1, 2, 3)

    def test_v_prefix_and_missing_patch(self):
        assert _triple(try_parse_version("v1.2")) == (1, 2, 0)

    def test_bare_major(self):
        assert _triple(try_parse_version("1")) == (1, 0, 0)

    def test_suffixed_tag_keeps_suffix_as_prerelease(self):
        v = try_parse_version("1.2.3-foo")
        assert _triple(v) == (1, 2, 3)
        assert v.prerelease == ("foo",)
        assert v != SemanticVersion(1, 2, 3)
        assert v < SemanticVersion(1, 2, 3)

    def test_short_version_with_suffix_uses_prefix(self):
        v = try_parse_version("1.2-alpine")
        assert v == SemanticVersion(1, 2, 0)
        assert v.prerelease == ()

    def test_date_is_not_a_version(self):
        assert try_parse_version("20260101") is None

    def test_date_with_hour_is_not_a_version(self):
        assert try_parse_version("2026010123") is None

    @pytest.mark.parametrize("tag", ["19991231", "20240229", "20000101", "2025123100"])
    def test_valid_calendar_dates_rejected(self, tag):
        assert try_parse_version(tag) is None

    def test_large_bare_integer_rejected(self):
        assert try_parse_version("99999") is None

    def test_bare_integer_at_threshold_accepted(self):
        assert _triple(try_parse_version("10000")) == (10000, 0, 0)

    def test_dotted_large_major_kept(self):
        assert _triple(try_parse_version("20260101.1")) == (20260101, 1, 0)

    @pytest.mark.parametrize("tag", ["latest", "stable", "alpine", "", "main-abc123"])
    def test_non_versions(self, tag):
        assert try_parse_version(tag) is None

    def test_leading_zeros_tolerated(self):
        assert _triple(try_parse_version("01.02.03")) == (1, 2, 3)


class TestLooksLikeDate:

    def test_invalid_month_is_not_a_date(self):
        assert looks_like_date("20261301") is False

    def test_invalid_hour_is_not_a_date(self):
        assert looks_like_date("2026010125") is False

    def test_wrong_length(self):
        assert looks_like_date("2026011") is False


class TestParseTolerant:

    def test_build_metadata(self):
        v = parse_tolerant("1.2.3+build.5")
        assert v.build == ("build", "5")
        assert str(v) == "1.2.3+build.5"

    def test_short_version_with_prerelease_rejected(self):
        with pytest.raises(ValueError):
            parse_tolerant("1.2-rc1")

    def test_prerelease_numeric_leading_zero_rejected(self):
        with pytest.raises(ValueError):
            parse_tolerant("1.2.3-01")


class TestSemanticVersionOrdering:

    def test_precedence(self):
        ordered = [
            parse_tolerant("1.0.0-alpha"),
            parse_tolerant("1.0.0-alpha.1"),
            parse_tolerant("1.0.0-alpha.beta"),
            parse_tolerant("1.0.0-beta"),
            parse_tolerant("1.0.0-beta.2"),
            parse_tolerant("1.0.0-beta.11"),
            parse_tolerant("1.0.0-rc.1"),
            parse_tolerant("1.0.0"),
            parse_tolerant("1.0.1"),
            parse_tolerant("1.1.0"),
            parse_tolerant("2.0.0"),
        ]
        assert sorted(reversed(ordered)) == ordered

    def test_build_ignored_for_equality(self):
        assert parse_tolerant("1.2.3+a") == parse_tolerant("1.2.3+b")
        assert hash(parse_tolerant("1.2.3+a")) == hash(parse_tolerant("1.2.3"))
