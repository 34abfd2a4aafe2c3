"""Parsing and normalization of container image references.

Follows the distribution reference grammar:

    reference   := name [ ":" tag ] [ "@" digest ]
    name        := [ domain "/" ] path-component [ "/" path-component ]*
    domain      := host [ ":" port ]

Bare names resolve against Docker Hub, so ``nginx`` becomes
``docker.io/library/nginx:latest``.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple

from versions import SemanticVersion, try_parse_version


DEFAULT_REGISTRY = "docker.io"
LEGACY_DEFAULT_REGISTRY = "index.docker.io"
OFFICIAL_NAMESPACE = "library"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_DOMAIN_COMPONENT = r'(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])'
_IPV6 = r'\[(?:[a-fA-F0-9:]+)\]'
_DOMAIN = rf'(?:{_IPV6}|{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*)(?::[0-9]+)?'
_PATH_COMPONENT = r'[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*'
_TAG = r'[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}'
_DIGEST = r'[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}'

REFERENCE_RE = re.compile(
    rf'^(?P<name>(?:(?P<domain>{_DOMAIN})/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*)'
    rf'(?::(?P<tag>{_TAG}))?'
    rf'(?:@(?P<digest>{_DIGEST}))?\Z'
)
TAG_RE = re.compile(rf'^{_TAG}\Z')
_ANCHORED_IDENTIFIER = re.compile(r'^[a-f0-9]{64}$')


class InvalidReference(ValueError):
    """Raised when a string is not a syntactically valid image reference."""


@dataclass(frozen=True)
class ImageReference:
    """A normalized image reference. Registry and tag are never empty."""
    registry: str
    repository: str
    tag: str
    version: Optional[SemanticVersion] = None
    digest: Optional[str] = None

    def __str__(self):
        s = f"{self.registry}/{self.repository}:{self.tag}"
        if self.digest:
            s += f"@{self.digest}"
        return s

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"

    def split(self) -> Tuple[str, str, str]:
        return self.registry, self.repository, self.tag

    def with_tag(self, tag: str, version: Optional[SemanticVersion] = None) -> 'ImageReference':
        """Return a copy pointing at another tag of the same repository.

        The tag comes from a registry listing or an existing reference, so a
        grammar violation here means a bug rather than bad input.
        """
        if not TAG_RE.match(tag):
            raise RuntimeError(f"Tag '{tag}' is not valid for {self.name}")
        if version is None:
            version = try_parse_version(tag)
        return ImageReference(
            registry=self.registry,
            repository=self.repository,
            tag=tag,
            version=version,
        )


def split_docker_domain(name: str) -> Tuple[str, str]:
    """Split a repository name into (domain, remainder), applying Docker Hub defaults.

    The first path component is treated as a registry host only if it looks
    like one: it contains a '.' or ':', is 'localhost', or has uppercase
    characters (which are not allowed in repository paths).
    """
    i = name.find('/')
    if i == -1 or (
        not any(c in name[:i] for c in '.:')
        and name[:i] != 'localhost'
        and name[:i].lower() == name[:i]
    ):
        domain, remainder = DEFAULT_REGISTRY, name
    else:
        domain, remainder = name[:i], name[i + 1:]

    if domain == LEGACY_DEFAULT_REGISTRY:
        domain = DEFAULT_REGISTRY
    if domain == DEFAULT_REGISTRY and '/' not in remainder:
        remainder = f"{OFFICIAL_NAMESPACE}/{remainder}"
    return domain, remainder


def parse_reference(s: str) -> ImageReference:
    """Parse and normalize an image string from a container spec.

    Raises:
        InvalidReference: if the string is not a valid image reference
    """
    if not s:
        raise InvalidReference("Empty image reference")

    match = REFERENCE_RE.match(s)
    if not match:
        # Uppercase in the repository path is the most common mistake
        if REFERENCE_RE.match(s.lower()):
            raise InvalidReference(f"Repository name must be lowercase: '{s}'")
        raise InvalidReference(f"Invalid image reference format: '{s}'")

    name = match.group('name')
    if len(name) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReference(
            f"Repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters: '{s}'"
        )
    if _ANCHORED_IDENTIFIER.match(name):
        raise InvalidReference(
            f"Cannot specify 64-byte hexadecimal strings as a repository name: '{s}'"
        )

    registry, repository = split_docker_domain(name)
    if repository.lower() != repository:
        raise InvalidReference(f"Repository name must be lowercase: '{s}'")

    tag = match.group('tag') or DEFAULT_TAG
    return ImageReference(
        registry=registry,
        repository=repository,
        tag=tag,
        version=try_parse_version(tag),
        digest=match.group('digest'),
    )
