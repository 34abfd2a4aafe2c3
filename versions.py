"""Heuristic semantic-version extraction from image tags.

Registry tags are free-form; this module decides which of them can be read as
a semantic version and which are dates or opaque identifiers.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from functools import total_ordering
from typing import Optional, Tuple


# Bare integers above this are treated as identifiers, not major versions
MAX_BARE_MAJOR = 10000

_DATE_FORMATS = {
    8: "%Y%m%d",
    10: "%Y%m%d%H",
}

_NUMERIC = re.compile(r'^(0|[1-9][0-9]*)$')
_IDENTIFIER = re.compile(r'^[0-9A-Za-z-]+$')
_STRICT = re.compile(
    r'^(?P<major>0|[1-9][0-9]*)\.(?P<minor>0|[1-9][0-9]*)\.(?P<patch>0|[1-9][0-9]*)'
    r'(?:-(?P<pre>[0-9A-Za-z.-]+))?'
    r'(?:\+(?P<build>[0-9A-Za-z.-]+))?$'
)


@total_ordering
@dataclass(frozen=True, eq=False)
class SemanticVersion:
    """A parsed semantic version. Build metadata does not affect precedence."""
    major: int
    minor: int
    patch: int
    prerelease: Tuple[str, ...] = ()
    build: Tuple[str, ...] = ()

    def _key(self):
        if not self.prerelease:
            pre = (1,)
        else:
            pre = (0, tuple(
                (0, int(ident), '') if ident.isdigit() else (1, 0, ident)
                for ident in self.prerelease
            ))
        return (self.major, self.minor, self.patch, pre)

    def __eq__(self, other):
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other):
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self):
        return hash(self._key())

    def __str__(self):
        s = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            s += "-" + ".".join(self.prerelease)
        if self.build:
            s += "+" + ".".join(self.build)
        return s


def _parse_strict(s: str) -> SemanticVersion:
    match = _STRICT.match(s)
    if not match:
        raise ValueError(f"Invalid semantic version '{s}'")

    prerelease: Tuple[str, ...] = ()
    if match.group('pre') is not None:
        prerelease = tuple(match.group('pre').split('.'))
        for ident in prerelease:
            if not _IDENTIFIER.match(ident):
                raise ValueError(f"Invalid pre-release identifier '{ident}' in '{s}'")
            if ident.isdigit() and not _NUMERIC.match(ident):
                raise ValueError(f"Pre-release identifier '{ident}' has leading zeros in '{s}'")

    build: Tuple[str, ...] = ()
    if match.group('build') is not None:
        build = tuple(match.group('build').split('.'))
        for ident in build:
            if not _IDENTIFIER.match(ident):
                raise ValueError(f"Invalid build identifier '{ident}' in '{s}'")

    return SemanticVersion(
        major=int(match.group('major')),
        minor=int(match.group('minor')),
        patch=int(match.group('patch')),
        prerelease=prerelease,
        build=build,
    )


def parse_tolerant(s: str) -> SemanticVersion:
    """Parse a version leniently.

    Accepts a leading 'v', leading zeros, and missing minor/patch components
    (``1.2`` becomes ``1.2.0``, ``1`` becomes ``1.0.0``).

    Raises:
        ValueError: if the string is not a version even under these rules
    """
    s = s.strip()
    if s.startswith('v'):
        s = s[1:]

    parts = s.split('.', 2)
    for i, part in enumerate(parts):
        if len(part) > 1:
            part = part.lstrip('0')
            if not part or not part[0].isdigit():
                part = '0' + part
            parts[i] = part

    if len(parts) < 3:
        if any(c in parts[-1] for c in '+-'):
            raise ValueError(f"Short version '{s}' cannot carry pre-release or build metadata")
        while len(parts) < 3:
            parts.append('0')

    return _parse_strict('.'.join(parts))


def looks_like_date(tag: str) -> bool:
    """Return True for YYYYMMDD and YYYYMMDDHH stamps that are real calendar dates."""
    fmt = _DATE_FORMATS.get(len(tag))
    if fmt is None or not tag.isdigit():
        return False
    try:
        datetime.strptime(tag, fmt)
    except ValueError:
        return False
    return True


def try_parse_version(tag: str) -> Optional[SemanticVersion]:
    """Read a tag as a semantic version, applying a few heuristics.

    1. Date stamps (``20260101``, ``2026010112``) are not versions, even
       though they would parse as enormous majors.
    2. The tolerant parser is tried on the whole tag.
    3. Failing that, it is tried on the part before the first ``-``, so
       ``1.2-alpine`` reads as ``1.2.0``.
    4. A dotless result above MAX_BARE_MAJOR is an identifier, not a version.

    Returns None when the tag is not a version.
    """
    if looks_like_date(tag):
        return None

    try:
        version = parse_tolerant(tag)
    except ValueError:
        try:
            version = parse_tolerant(tag.split('-', 1)[0])
        except ValueError:
            return None

    if '.' not in tag and version.major > MAX_BARE_MAJOR:
        return None

    return version
