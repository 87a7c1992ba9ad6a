"""
Docker Registry HTTP API v2 client.

Resolves manifest digests (single-platform and multi-platform manifest
lists) and lists tags, handling the bearer-token challenge flow advertised
in ``WWW-Authenticate`` and caching issued tokens per repository.
"""

import base64
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

import requests

from credential_utils import CredentialResolver, Credentials

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
TAGS_PAGE_SIZE = 100
DOCKER_CONTENT_DIGEST_HEADER = "Docker-Content-Digest"
MANIFEST_ACCEPT_HEADER = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.oci.image.index.v1+json"
)
MANIFEST_LIST_ACCEPT_HEADER = "application/vnd.docker.distribution.manifest.list.v2+json"

# key="quoted value" or key=token, separated by commas
_CHALLENGE_PARAM_RE = re.compile(r'([A-Za-z0-9_.-]+)\s*=\s*(?:"([^"]*)"|([^,\s]*))')


class RegistryError(Exception):
    """Base class for registry protocol failures."""


class ManifestNotFoundError(RegistryError):
    """Neither manifest probe returned a content digest."""


class AuthenticationError(RegistryError):
    """The bearer token flow failed (no realm, no token, rejected request)."""


class UnsupportedAuthSchemeError(AuthenticationError):
    """401 without a challenge, or a challenge scheme other than Bearer."""


class TokenCache:
    """Bearer tokens keyed by ``registry/repository`` for the duration of a run."""

    def __init__(self):
        self._tokens: Dict[str, str] = {}

    @staticmethod
    def key(registry: str, repository: str) -> str:
        return f"{registry}/{repository}"

    def get(self, registry: str, repository: str) -> Optional[str]:
        return self._tokens.get(self.key(registry, repository))

    def set(self, registry: str, repository: str, token: str) -> None:
        self._tokens[self.key(registry, repository)] = token

    def clear(self) -> None:
        self._tokens.clear()

    def __len__(self) -> int:
        return len(self._tokens)


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Split a ``WWW-Authenticate`` value into (scheme, parameters).

        >>> parse_challenge('Bearer realm="https://auth.example/token",service="reg"')
        ('Bearer', {'realm': 'https://auth.example/token', 'service': 'reg'})

    Quoted values may contain commas, e.g. ``scope="repository:a/b:pull,push"``.
    """
    scheme, _, params_text = header.strip().partition(' ')
    params = {}
    for match in _CHALLENGE_PARAM_RE.finditer(params_text):
        name, quoted, bare = match.groups()
        params[name] = quoted if quoted is not None else bare
    return scheme, params


def _basic_auth_header(credentials: Credentials) -> Optional[str]:
    username, password = credentials
    if not username or not password:
        return None
    encoded = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return f"Basic {encoded}"


class RegistryClient:
    """Registry client for digest resolution and tag listing.

    The HTTP session, token cache and credential resolver are injected so
    that a run (or a test) owns its own state.
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 token_cache: Optional[TokenCache] = None,
                 credentials: Optional[CredentialResolver] = None,
                 insecure_registries: Iterable[str] = (),
                 timeout: float = REQUEST_TIMEOUT):
        self._session = session or requests.Session()
        self.token_cache = token_cache if token_cache is not None else TokenCache()
        self._credentials = credentials or CredentialResolver()
        self.insecure_registries = set(insecure_registries)
        self.timeout = timeout

    def _base_url(self, registry: str) -> str:
        scheme = 'http' if registry in self.insecure_registries else 'https'
        return f"{scheme}://{registry}"

    def _initial_auth(self, registry: str, repository: str) -> Optional[str]:
        """Cached bearer token, else basic credentials for the registry, else None."""
        token = self.token_cache.get(registry, repository)
        if token:
            return f"Bearer {token}"
        return _basic_auth_header(self._credentials.get_credentials(registry))

    def _send(self, method: str, url: str, accept: str,
              authorization: Optional[str], **kwargs) -> requests.Response:
        headers = {'Accept': accept}
        if authorization:
            headers['Authorization'] = authorization
        return self._session.request(method, url, headers=headers,
                                     timeout=self.timeout, **kwargs)

    def _request(self, method: str, registry: str, repository: str, url: str,
                 accept: str, **kwargs) -> Tuple[requests.Response, Optional[str]]:
        """Send a request, answering a 401 challenge once.

        Returns the response and the Authorization header that produced it
        so follow-up requests can reuse it.
        """
        authorization = self._initial_auth(registry, repository)
        response = self._send(method, url, accept, authorization, **kwargs)

        if response.status_code == 401:
            token = self._authenticate(registry, repository, response)
            authorization = f"Bearer {token}"
            response = self._send(method, url, accept, authorization, **kwargs)

        return response, authorization

    def _authenticate(self, registry: str, repository: str,
                      response: requests.Response) -> str:
        """Obtain a bearer token from the realm named in the 401 challenge."""
        challenge = response.headers.get('WWW-Authenticate')
        if not challenge:
            raise UnsupportedAuthSchemeError(
                f"No 'WWW-Authenticate' header in 401 response from {response.url}"
            )

        scheme, params = parse_challenge(challenge)
        if scheme.lower() != 'bearer':
            raise UnsupportedAuthSchemeError(f"Scheme '{scheme}' is not supported")

        realm = params.pop('realm', None)
        if not realm:
            raise AuthenticationError(
                f"Could not determine the realm from challenge for {registry}/{repository}"
            )

        headers = {}
        basic = _basic_auth_header(self._credentials.get_credentials(registry))
        if basic:
            headers['Authorization'] = basic

        logger.debug(f"Requesting token for {registry}/{repository} from {realm}")
        token_response = self._session.request('GET', realm, params=params,
                                               headers=headers, timeout=self.timeout)
        if not token_response.ok:
            raise AuthenticationError(
                f"Token request to {realm} failed with HTTP {token_response.status_code}"
            )

        try:
            body = token_response.json()
        except ValueError as e:
            raise AuthenticationError(f"Token response from {realm} is not JSON: {e}") from e

        token = None
        if isinstance(body, dict):
            token = body.get('access_token') or body.get('token')
        if not token:
            raise AuthenticationError(
                f"Could not find token in authentication response from {realm}"
            )

        self.token_cache.set(registry, repository, token)
        return token

    def get_digests(self, registry: str, repository: str, tag: str) -> List[str]:
        """Return every content digest the registry reports for ``tag``.

        Probes once for a single-platform manifest and once for a manifest
        list; a multi-arch tag usually yields two digests and a local image
        matching either one is current. Digests are returned in probe order
        without duplicates.
        """
        url = f"{self._base_url(registry)}/v2/{repository}/manifests/{tag}"
        digests: List[str] = []

        response, authorization = self._request(
            'HEAD', registry, repository, url, MANIFEST_ACCEPT_HEADER
        )
        digest = response.headers.get(DOCKER_CONTENT_DIGEST_HEADER)
        if digest:
            digests.append(digest)

        list_response = self._send('HEAD', url, MANIFEST_LIST_ACCEPT_HEADER, authorization)
        list_digest = list_response.headers.get(DOCKER_CONTENT_DIGEST_HEADER)
        if list_digest and list_digest not in digests:
            digests.append(list_digest)

        if not digests:
            raise ManifestNotFoundError(
                f"Could not find {DOCKER_CONTENT_DIGEST_HEADER} header for URL {url}"
            )

        logger.debug(f"Remote digests for {registry}/{repository}:{tag}: {digests}")
        return digests

    def get_tags(self, registry: str, repository: str) -> List[str]:
        """Return all tags for ``repository`` in server order, following pagination."""
        base_url = self._base_url(registry)
        url = f"{base_url}/v2/{repository}/tags/list"

        response, authorization = self._request(
            'GET', registry, repository, url, 'application/json',
            params={'n': TAGS_PAGE_SIZE},
        )
        response.raise_for_status()
        tags = self._tags_from(response)

        next_url = self._next_link(response, base_url)
        while next_url:
            response = self._send('GET', next_url, 'application/json', authorization)
            response.raise_for_status()
            tags.extend(self._tags_from(response))
            next_url = self._next_link(response, base_url)

        logger.debug(f"Found {len(tags)} tags for {registry}/{repository}")
        return tags

    @staticmethod
    def _tags_from(response: requests.Response) -> List[str]:
        try:
            body = response.json()
        except ValueError as e:
            raise RegistryError(f"Tag list from {response.url} is not JSON: {e}") from e
        if not isinstance(body, dict):
            raise RegistryError(f"Unexpected tag list payload from {response.url}")
        tags = body.get('tags') or []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise RegistryError(f"Unexpected tag list payload from {response.url}")
        return list(tags)

    @staticmethod
    def _next_link(response: requests.Response, base_url: str) -> Optional[str]:
        """Absolute URL of the ``rel="next"`` Link, if any."""
        next_link = response.links.get('next')
        if not next_link or not next_link.get('url'):
            return None
        return urljoin(base_url, next_link['url'])
