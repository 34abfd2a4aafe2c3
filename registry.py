"""Minimal Docker Registry HTTP API v2 client.

Lists repository tags and, optionally, reads image creation times. Every
failure surfaces as FetchError; callers treat them all alike.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
DEFAULT_PLATFORM = "linux/amd64"
MAX_TAG_PAGES = 100

MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.index.v1+json,"
    "application/vnd.oci.image.manifest.v1+json"
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')
_FRACTION = re.compile(r'\.(\d+)(?=[+-]\d\d:\d\d$)')


class FetchError(Exception):
    """A registry request failed (transport, auth, not found or bad payload)."""

    def __init__(self, registry: str, repository: str, message: str):
        super().__init__(f"{registry}/{repository}: {message}")
        self.registry = registry
        self.repository = repository


def parse_www_authenticate(header: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse a WWW-Authenticate challenge.

    Example:
        'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
        -> {'scheme': 'bearer', 'realm': 'https://ghcr.io/token', 'service': 'ghcr.io',
            'scope': 'repository:user/app:pull'}

    Returns None for an empty or unrecognised header.
    """
    if not header:
        return None
    scheme, _, params_str = header.strip().partition(' ')
    scheme = scheme.lower()
    if scheme not in ('bearer', 'basic'):
        return None
    params = {key.lower(): value for key, value in _CHALLENGE_PARAM.findall(params_str)}
    if scheme == 'bearer' and 'realm' not in params:
        return None
    params['scheme'] = scheme
    return params


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp that carries a UTC offset.

    Fractional seconds of any length are cut or padded to microseconds.

    Raises:
        ValueError: if the value is malformed or has no offset
    """
    value = value.strip().replace('Z', '+00:00').replace('z', '+00:00')
    value = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), value)
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        raise ValueError(f"timestamp '{value}' has no timezone")
    return ts


class RegistryClient:
    """Registry v2 client handling token auth and tag-list pagination.

    Args:
        credentials: Mapping of registry host to {"username", "password", "insecure"}
        timeout: Per-request timeout in seconds
        session: Optional requests session (one is created if omitted)
    """

    def __init__(self, credentials: Optional[Dict[str, Dict[str, Any]]] = None,
                 timeout: int = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.credentials = credentials or {}
        self.timeout = timeout
        self._session = session or requests.Session()

    def _api_base(self, registry: str) -> str:
        host = DOCKER_HUB_API_HOST if registry == DOCKER_HUB_REGISTRY else registry
        scheme = 'http' if self.credentials.get(registry, {}).get('insecure') else 'https'
        return f"{scheme}://{host}"

    def _basic_auth(self, registry: str):
        creds = self.credentials.get(registry) or {}
        if creds.get('username'):
            return (creds['username'], creds.get('password', ''))
        return None

    def _get_token(self, registry: str, repository: str, challenge: Dict[str, str]) -> str:
        params = {'scope': challenge.get('scope') or f"repository:{repository}:pull"}
        if challenge.get('service'):
            params['service'] = challenge['service']

        try:
            response = self._session.get(challenge['realm'], params=params,
                                         auth=self._basic_auth(registry),
                                         timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FetchError(registry, repository, f"token request failed: {e}") from e

        token = body.get('token') or body.get('access_token')
        if not token:
            raise FetchError(registry, repository, "token response carried no token")
        return token

    def _get(self, registry: str, repository: str, url: str,
             headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """GET a registry URL, answering one auth challenge if the registry asks."""
        headers = dict(headers or {})
        try:
            response = self._session.get(url, headers=headers, timeout=self.timeout)
            if response.status_code == 401:
                challenge = parse_www_authenticate(response.headers.get('WWW-Authenticate'))
                if challenge is None:
                    raise FetchError(registry, repository, "unauthorized and no usable auth challenge")
                if challenge['scheme'] == 'bearer':
                    token = self._get_token(registry, repository, challenge)
                    headers['Authorization'] = f'Bearer {token}'
                    response = self._session.get(url, headers=headers, timeout=self.timeout)
                else:
                    auth = self._basic_auth(registry)
                    if auth is None:
                        raise FetchError(registry, repository, "basic auth required but no credentials configured")
                    response = self._session.get(url, headers=headers, auth=auth, timeout=self.timeout)
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            raise FetchError(registry, repository, str(e)) from e

    def list_tags(self, registry: str, repository: str) -> List[str]:
        """Return every tag of a repository in registry order.

        Raises:
            FetchError: on any transport, auth, status or payload problem
        """
        url = f"{self._api_base(registry)}/v2/{repository}/tags/list"
        tags: List[str] = []

        for _ in range(MAX_TAG_PAGES):
            response = self._get(registry, repository, url)
            try:
                tags.extend(t for t in response.json().get('tags') or [] if isinstance(t, str))
            except (ValueError, AttributeError) as e:
                raise FetchError(registry, repository, f"invalid tag list payload: {e}") from e

            next_link = response.links.get('next', {}).get('url')
            if not next_link:
                break
            url = urljoin(url, next_link)
        else:
            logger.warning(f"Stopped listing tags for {registry}/{repository} after {MAX_TAG_PAGES} pages")

        logger.debug(f"Listed {len(tags)} tags for {registry}/{repository}")
        return tags

    def _get_manifest(self, registry: str, repository: str, reference: str) -> Dict[str, Any]:
        url = f"{self._api_base(registry)}/v2/{repository}/manifests/{reference}"
        response = self._get(registry, repository, url, headers={'Accept': MANIFEST_ACCEPT_HEADER})
        try:
            manifest = response.json()
        except ValueError as e:
            raise FetchError(registry, repository, f"invalid manifest for {reference}: {e}") from e
        if not isinstance(manifest, dict):
            raise FetchError(registry, repository, f"manifest for {reference} is not an object")
        return manifest

    def get_created_at(self, registry: str, repository: str, tag: str,
                       platform: str = DEFAULT_PLATFORM) -> datetime:
        """Return the creation time recorded in an image's config blob.

        Manifest lists resolve to the entry for ``platform``, or the first
        entry when no entry matches.

        Raises:
            FetchError: if any request fails or the config has no creation time
        """
        manifest = self._get_manifest(registry, repository, tag)

        if 'manifests' in manifest:
            entries = [e for e in manifest.get('manifests') or [] if isinstance(e, dict)]
            if not entries:
                raise FetchError(registry, repository, f"empty manifest list for {tag}")
            chosen = entries[0]
            for entry in entries:
                plat = entry.get('platform') or {}
                if f"{plat.get('os', '')}/{plat.get('architecture', '')}" == platform:
                    chosen = entry
                    break
            digest = chosen.get('digest')
            if not digest:
                raise FetchError(registry, repository, f"manifest list entry for {tag} has no digest")
            manifest = self._get_manifest(registry, repository, digest)

        config_digest = (manifest.get('config') or {}).get('digest')
        if not config_digest:
            raise FetchError(registry, repository, f"manifest for {tag} has no config")

        url = f"{self._api_base(registry)}/v2/{repository}/blobs/{config_digest}"
        response = self._get(registry, repository, url)
        try:
            return parse_rfc3339(response.json()['created'])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise FetchError(registry, repository, f"no creation time for {tag}: {e}") from e
