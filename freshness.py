"""Decide which tags of a repository are upgrades over a running tag."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple, Union

from imageref import ImageReference
from versions import SemanticVersion, try_parse_version


@dataclass(frozen=True)
class TagInfo:
    tag: str
    version: Optional[SemanticVersion] = None


@dataclass
class RepositoryTagSet:
    """Tags listed for one (registry, repository) during a single check pass."""
    registry: str
    repository: str
    tags: List[TagInfo] = field(default_factory=list)

    @classmethod
    def from_tags(cls, registry: str, repository: str, raw_tags: Iterable[str]) -> 'RepositoryTagSet':
        """Parse every tag once. Entries that are not strings are dropped."""
        return cls(
            registry=registry,
            repository=repository,
            tags=[TagInfo(tag, try_parse_version(tag)) for tag in raw_tags if isinstance(tag, str)],
        )


@dataclass
class UpgradeCandidate:
    tag: str
    version: Optional[SemanticVersion] = None
    created_at: Optional[datetime] = None


TagLike = Union[TagInfo, Tuple[str, Optional[SemanticVersion]]]


def classify_upgrades(current: ImageReference, all_tags: Iterable[TagLike]) -> List[UpgradeCandidate]:
    """Return the tags that are genuine upgrades over ``current``.

    Candidates come out nearest first: the latest patch of the running
    minor, then the latest minor of the running major, then the latest
    release of each later major in ascending order. Tags without a parsed
    version are never candidates, and neither is anything when the running
    tag itself is not a version.
    """
    if current.version is None:
        return []

    running = current.version
    latest_same_minor = TagInfo(current.tag, running)
    latest_same_major = TagInfo(current.tag, running)
    latest_per_major: Dict[int, TagInfo] = {}

    for item in all_tags:
        info = item if isinstance(item, TagInfo) else TagInfo(*item)
        version = info.version
        if version is None:
            continue

        if version.major < running.major:
            continue

        if version.major > running.major:
            best = latest_per_major.get(version.major)
            if best is None or version > best.version:
                latest_per_major[version.major] = info
            continue

        if version.minor < running.minor:
            continue

        if version.minor > running.minor:
            if version > latest_same_major.version:
                latest_same_major = info
            continue

        if version > latest_same_minor.version:
            latest_same_minor = info

    ordered = [latest_same_minor, latest_same_major]
    ordered.extend(latest_per_major[major] for major in sorted(latest_per_major))

    return [
        UpgradeCandidate(tag=info.tag, version=info.version)
        for info in ordered
        if info.version > running
    ]
