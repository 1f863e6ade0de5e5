"""Tests for version classification and update selection."""

import pytest

from tag_pattern import compile_pattern
from versioning import Classification, ExtractedVersion, classify, select_updates
from tests.conftest import TAG_LISTS, PATTERNS


def version(pattern, tag):
    extracted = ExtractedVersion.extract(pattern, tag)
    assert extracted is not None, f"{tag!r} should match {pattern.source!r}"
    return extracted


@pytest.fixture
def semver():
    """Semantic versions where only the major version is breaking."""
    return compile_pattern("<!>.<>.<>")


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class TestClassify:

    @pytest.mark.parametrize("candidate,expected", [
        ("1.6.12", Classification.COMPATIBLE),
        ("1.4.13", Classification.COMPATIBLE),
        ("2.4.12", Classification.BREAKING),
        ("3.5.13", Classification.BREAKING),
        ("1.4.11", Classification.NOT_AN_UPDATE),
        ("1.4.12", Classification.CURRENT),
    ])
    def test_semver_from_1_4_12(self, semver, candidate, expected):
        assert classify(version(semver, "1.4.12"), version(semver, candidate)) == expected

    @pytest.mark.parametrize("tag", ["0.0.0", "1.4.12", "10.20.30", "007.1.2"])
    def test_same_version_is_current(self, semver, tag):
        v = version(semver, tag)
        assert classify(v, v) == Classification.CURRENT

    def test_leading_zeros_are_current(self, semver):
        assert classify(version(semver, "1.04.12"), version(semver, "1.4.12")) == Classification.CURRENT

    def test_older_slot_wins_over_later_newer_slots(self, semver):
        """An older minor is not an update even if the patch is higher."""
        assert classify(version(semver, "1.4.12"), version(semver, "1.3.99")) == Classification.NOT_AN_UPDATE

    def test_breaking_flag_is_per_slot(self):
        pattern = compile_pattern("<>.<!>")
        current = version(pattern, "2.1")
        assert classify(current, version(pattern, "2.5")) == Classification.BREAKING
        assert classify(current, version(pattern, "3.0")) == Classification.COMPATIBLE

    def test_all_compatible_pattern(self):
        pattern = compile_pattern("<>.<>")
        assert classify(version(pattern, "1.0"), version(pattern, "9.0")) == Classification.COMPATIBLE

    def test_different_patterns_cannot_be_compared(self):
        left = version(compile_pattern("<>.<>"), "1.2")
        right = version(compile_pattern("<>-<>"), "1-3")
        with pytest.raises(ValueError, match="different patterns"):
            classify(left, right)
        with pytest.raises(ValueError):
            left < right


class TestExtractedVersion:

    def test_extract(self, semver):
        v = ExtractedVersion.extract(semver, "1.04.12")
        assert v.values == (1, 4, 12)
        assert v.tag == "1.04.12"
        assert v.pattern is semver

    def test_extract_no_match(self, semver):
        assert ExtractedVersion.extract(semver, "latest") is None

    def test_ordering(self, semver):
        tags = ["1.10.0", "1.9.3", "2.0.0", "1.9.10"]
        ordered = sorted(version(semver, t) for t in tags)
        assert [v.tag for v in ordered] == ["1.9.3", "1.9.10", "1.10.0", "2.0.0"]


# ---------------------------------------------------------------------------
# Selector
# ---------------------------------------------------------------------------

class TestSelectUpdates:

    def test_compatible_and_breaking(self):
        """18.03 -> 18.04 compatible, 20.10 breaking, 19.10-rc skipped."""
        pattern = compile_pattern("<!>.<>")
        updates = select_updates(version(pattern, "18.03"), ["18.03", "18.04", "20.10", "19.10-rc"])
        assert [(u.classification, u.tag) for u in updates] == [
            (Classification.COMPATIBLE, "18.04"),
            (Classification.BREAKING, "20.10"),
        ]

    def test_best_compatible_is_full_lexicographic_max(self, semver):
        current = version(semver, "1.4.12")
        for tags in (["1.6.12", "1.4.13"], ["1.4.13", "1.6.12"]):
            updates = select_updates(current, tags)
            assert len(updates) == 1
            assert updates[0].tag == "1.6.12"
            assert updates[0].values == (1, 6, 12)

    def test_best_breaking(self, semver):
        updates = select_updates(version(semver, "1.4.12"), ["2.9.9", "3.0.0", "2.10.0"])
        assert [u.tag for u in updates] == ["3.0.0"]
        assert updates[0].classification == Classification.BREAKING

    def test_order_of_tags_does_not_matter(self, semver):
        tags = ["1.4.13", "3.5.13", "2.4.12", "1.6.12", "1.4.11"]
        expected = [(u.classification, u.tag) for u in select_updates(version(semver, "1.4.12"), tags)]
        actual = [(u.classification, u.tag)
                  for u in select_updates(version(semver, "1.4.12"), reversed(tags))]
        assert actual == expected == [
            (Classification.COMPATIBLE, "1.6.12"),
            (Classification.BREAKING, "3.5.13"),
        ]

    def test_identical_values_prefer_greater_tag(self):
        pattern = compile_pattern("<>.<>")
        current = version(pattern, "1.1")
        for tags in (["1.02", "1.2"], ["1.2", "1.02"]):
            updates = select_updates(current, tags)
            assert [u.tag for u in updates] == ["1.2"]

    def test_no_updates(self, semver):
        assert select_updates(version(semver, "1.4.12"), ["1.4.12", "1.4.11", "0.9.0", "latest"]) == []

    def test_empty_tag_list(self, semver):
        assert select_updates(version(semver, "1.4.12"), []) == []

    def test_consumes_generator(self, semver):
        consumed = []

        def tags():
            for tag in ["1.4.13", "latest", "1.5.0"]:
                consumed.append(tag)
                yield tag

        updates = select_updates(version(semver, "1.4.12"), tags())
        assert consumed == ["1.4.13", "latest", "1.5.0"]
        assert [u.tag for u in updates] == ["1.5.0"]

    @pytest.mark.parametrize("repo,current,compatible,breaking", [
        ("library/rocket.chat", "3.0.1", "3.1.0", "4.0.0"),
        ("linuxserver/calibre", "v8.12.0-ls359", "v8.16.2-ls374", None),
        ("linuxserver/sonarr", "3.0.10.1567-ls200", None, "4.0.16.2944-ls299"),
        ("gitlab/gitlab-ce", "12.3.2-ce.0", "12.4.0-ce.0", "13.0.0-ce.0"),
        ("library/debian", "debian-10-beta", None, "debian-11-beta"),
    ])
    def test_tag_lists(self, repo, current, compatible, breaking):
        pattern = compile_pattern(PATTERNS[repo])
        updates = {u.classification: u.tag for u in select_updates(version(pattern, current), TAG_LISTS[repo])}
        assert updates.get(Classification.COMPATIBLE) == compatible
        assert updates.get(Classification.BREAKING) == breaking
