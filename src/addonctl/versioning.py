"""Version triples, comparisons and changelog extraction."""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from packaging.version import InvalidVersion, Version

_LEADING_DIGITS = re.compile(r"^\d+")
_HEADING = re.compile(r"^#{1,3}\s*\[?v?(?P<version>\d+(?:\.\d+){0,2}[^\]\s]*)\]?")
_BULLET = re.compile(r"^\s*[-*+]\s+(?P<text>.+?)\s*$")


@dataclass(frozen=True, slots=True, order=True)
class VersionTriple:
    """``major.minor.patch`` tuple parsed leniently from a version string."""

    major: int = 0
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, value: str | None) -> VersionTriple:
        """Parse *value*; a leading ``v`` is allowed and bad components become 0."""
        if not value:
            return cls()
        parts = [part.strip() for part in value.strip().lstrip("vV").split(".")]
        numbers: list[int] = []
        for part in parts[:3]:
            match = _LEADING_DIGITS.match(part)
            numbers.append(int(match.group(0)) if match else 0)
        while len(numbers) < 3:
            numbers.append(0)
        return cls(numbers[0], numbers[1], numbers[2])

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True, slots=True)
class VersionComparison:
    """How *target* relates to *current*."""

    current: str
    target: str
    difference: str
    verdict: str

    @property
    def is_newer(self) -> bool:
        """``True`` when the target is newer than the current version."""
        return self.verdict == "newer"

    @property
    def is_older(self) -> bool:
        """``True`` when the target is older than the current version."""
        return self.verdict == "older"

    @property
    def is_same(self) -> bool:
        """``True`` when both versions parse to the same triple."""
        return self.verdict == "same"


def compare(current: str | None, target: str | None) -> VersionComparison:
    """Compare *target* against *current*.

    ``difference`` is the most significant component that differs (``major``,
    ``minor``, ``patch`` or ``none``); ``verdict`` is ``newer``, ``older`` or
    ``same`` from the point of view of *target*.
    """
    left = VersionTriple.parse(current)
    right = VersionTriple.parse(target)
    if left.major != right.major:
        difference = "major"
    elif left.minor != right.minor:
        difference = "minor"
    elif left.patch != right.patch:
        difference = "patch"
    else:
        difference = "none"

    if right > left:
        verdict = "newer"
    elif right < left:
        verdict = "older"
    else:
        verdict = "same"
    return VersionComparison(
        current=current or "0.0.0",
        target=target or "0.0.0",
        difference=difference,
        verdict=verdict,
    )


def sort_versions(versions: Iterable[str]) -> list[str]:
    """Return *versions* sorted ascending, unparseable entries last."""
    parsed: list[tuple[Version, str]] = []
    invalid: list[str] = []
    for version in set(versions):
        try:
            parsed.append((Version(version), version))
        except InvalidVersion:
            invalid.append(version)
    parsed.sort()
    invalid.sort()
    return [item for _, item in parsed] + invalid


def parse_changelog(text: str) -> dict[str, list[str]]:
    """Return the bullet entries of a Markdown changelog keyed by version heading."""
    sections: dict[str, list[str]] = {}
    current: str | None = None
    for line in text.splitlines():
        heading = _HEADING.match(line)
        if heading:
            current = heading.group("version")
            sections.setdefault(current, [])
            continue
        if line.startswith("#"):
            current = None
            continue
        if current is None:
            continue
        bullet = _BULLET.match(line)
        if bullet:
            sections[current].append(bullet.group("text"))
    return sections


def changes_between(text: str | None, current: str, target: str) -> list[str]:
    """Return changelog entries newer than *current* up to and including *target*.

    Falls back to a one-line summary when the changelog is missing or has no
    matching entries.
    """
    low = VersionTriple.parse(current)
    high = VersionTriple.parse(target)
    changes: list[str] = []
    if text:
        sections = parse_changelog(text)
        ordered = sorted(sections, key=VersionTriple.parse, reverse=True)
        for version in ordered:
            triple = VersionTriple.parse(version)
            if low < triple <= high:
                changes.extend(f"{version}: {entry}" for entry in sections[version])
    if not changes:
        changes.append(f"Updated from {current} to {target}")
    return changes


__all__ = [
    "VersionComparison",
    "VersionTriple",
    "changes_between",
    "compare",
    "parse_changelog",
    "sort_versions",
]
