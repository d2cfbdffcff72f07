"""Version comparison and changelog tests."""
from __future__ import annotations

import pytest
from conftest import CHANGELOG

from addonctl.versioning import (
    VersionTriple,
    changes_between,
    compare,
    parse_changelog,
    sort_versions,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.2.3", (1, 2, 3)),
        ("v2.0", (2, 0, 0)),
        ("3", (3, 0, 0)),
        ("1.2.3-beta.1", (1, 2, 3)),
        ("1.x.7", (1, 0, 7)),
        ("", (0, 0, 0)),
        (None, (0, 0, 0)),
    ],
)
def test_version_triple_parse_is_lenient(raw: str | None, expected: tuple[int, int, int]) -> None:
    """Missing or malformed components become zero."""
    triple = VersionTriple.parse(raw)

    assert (triple.major, triple.minor, triple.patch) == expected


@pytest.mark.parametrize(
    ("current", "target", "difference", "verdict"),
    [
        ("1.0.0", "2.0.0", "major", "newer"),
        ("1.0.0", "1.1.0", "minor", "newer"),
        ("1.0.1", "1.0.0", "patch", "older"),
        ("v1.2.0", "1.2", "none", "same"),
    ],
)
def test_compare_reports_difference_and_verdict(
    current: str, target: str, difference: str, verdict: str
) -> None:
    """The most significant differing component and the direction are reported."""
    result = compare(current, target)

    assert result.difference == difference
    assert result.verdict == verdict


def test_compare_flags() -> None:
    """Convenience properties mirror the verdict."""
    result = compare(None, "0.1.0")

    assert result.current == "0.0.0"
    assert result.is_newer and not result.is_older and not result.is_same


def test_sort_versions_orders_semantically() -> None:
    """Versions sort numerically with unparseable values last."""
    assert sort_versions(["1.10.0", "1.2.0", "nightly", "1.2.0", "0.9.1"]) == [
        "0.9.1",
        "1.2.0",
        "1.10.0",
        "nightly",
    ]


def test_parse_changelog_groups_bullets_by_heading() -> None:
    """Bullets are attached to the nearest version heading."""
    sections = parse_changelog(CHANGELOG)

    assert list(sections) == ["1.2.0", "1.1.0", "1.0.0"]
    assert sections["1.2.0"] == ["Added stream caching", "Faster availability checks"]


def test_changes_between_selects_window() -> None:
    """Only entries after the current version up to the target are returned."""
    changes = changes_between(CHANGELOG, "1.0.0", "1.2.0")

    assert changes == [
        "1.2.0: Added stream caching",
        "1.2.0: Faster availability checks",
        "1.1.0: Fixed torrent parsing",
    ]


@pytest.mark.parametrize("changelog", [None, "", "# Changelog\n\nNothing here.\n"])
def test_changes_between_falls_back_to_summary(changelog: str | None) -> None:
    """Without matching entries a one-line summary is produced."""
    assert changes_between(changelog, "1.0.0", "1.1.0") == ["Updated from 1.0.0 to 1.1.0"]
