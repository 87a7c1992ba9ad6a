"""Tests for the registry client: digests, tags and the bearer token flow."""

import json
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from credential_utils import NO_CREDENTIALS
from registry_api import (
    MANIFEST_ACCEPT_HEADER,
    MANIFEST_LIST_ACCEPT_HEADER,
    AuthenticationError,
    ManifestNotFoundError,
    RegistryClient,
    RegistryError,
    TokenCache,
    UnsupportedAuthSchemeError,
    parse_challenge,
)

CHALLENGE = (
    'Bearer realm="https://auth.example.io/token",service="registry.example.io",'
    'scope="repository:org/app:pull"'
)


def _response(status=200, headers=None, body=None, url="https://registry.example.io/"):
    r = requests.Response()
    r.status_code = status
    r.headers = CaseInsensitiveDict(headers or {})
    r._content = json.dumps(body).encode() if body is not None else b''
    r.url = url
    return r


class FakeRegistry:
    """Routes session.request calls to canned responses and records them."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.session = MagicMock()
        self.session.request.side_effect = self._request

    def _request(self, method, url, headers=None, params=None, timeout=None):
        call = {'method': method, 'url': url, 'headers': dict(headers or {}),
                'params': dict(params or {})}
        self.calls.append(call)
        return self.handler(call)


def _client(fake, credentials=NO_CREDENTIALS, **kwargs):
    resolver = MagicMock()
    resolver.get_credentials.return_value = credentials
    return RegistryClient(session=fake.session, token_cache=TokenCache(),
                          credentials=resolver, **kwargs)


def _token_registry(digest_single="sha256:aaa", digest_list="sha256:bbb",
                    token_body=None):
    """A registry requiring a bearer token 'tok'."""
    token_body = token_body if token_body is not None else {"token": "tok"}

    def handler(call):
        if call['url'].startswith("https://auth.example.io/token"):
            return _response(body=token_body)
        if call['headers'].get('Authorization') != "Bearer tok":
            return _response(401, {"WWW-Authenticate": CHALLENGE})
        if call['headers']['Accept'] == MANIFEST_LIST_ACCEPT_HEADER:
            return _response(headers={"Docker-Content-Digest": digest_list} if digest_list else {})
        return _response(headers={"Docker-Content-Digest": digest_single} if digest_single else {})

    return FakeRegistry(handler)


class TestParseChallenge:

    def test_bearer_params(self):
        scheme, params = parse_challenge(CHALLENGE)
        assert scheme == "Bearer"
        assert params == {
            "realm": "https://auth.example.io/token",
            "service": "registry.example.io",
            "scope": "repository:org/app:pull",
        }

    def test_quoted_value_with_comma(self):
        _, params = parse_challenge('Bearer realm="https://a/t",scope="repository:x/y:pull,push"')
        assert params["scope"] == "repository:x/y:pull,push"

    def test_unquoted_values(self):
        scheme, params = parse_challenge('Bearer realm=https://a/t, service=reg')
        assert scheme == "Bearer"
        assert params == {"realm": "https://a/t", "service": "reg"}


class TestGetDigests:

    def test_union_of_manifest_and_manifest_list(self):
        fake = _token_registry()
        client = _client(fake)
        assert client.get_digests("registry.example.io", "org/app", "1.0") == ["sha256:aaa", "sha256:bbb"]

    def test_probes_use_head_and_both_accept_types(self):
        fake = _token_registry()
        _client(fake).get_digests("registry.example.io", "org/app", "1.0")

        manifest_calls = [c for c in fake.calls if "/manifests/" in c['url']]
        assert all(c['method'] == 'HEAD' for c in manifest_calls)
        assert manifest_calls[0]['url'] == "https://registry.example.io/v2/org/app/manifests/1.0"
        accepts = [c['headers']['Accept'] for c in manifest_calls]
        assert MANIFEST_ACCEPT_HEADER in accepts
        assert MANIFEST_LIST_ACCEPT_HEADER in accepts

    def test_challenge_params_forwarded_to_realm(self):
        fake = _token_registry()
        _client(fake).get_digests("registry.example.io", "org/app", "1.0")

        token_calls = [c for c in fake.calls if c['url'] == "https://auth.example.io/token"]
        assert len(token_calls) == 1
        assert token_calls[0]['params'] == {
            "service": "registry.example.io",
            "scope": "repository:org/app:pull",
        }

    def test_manifest_digest_listed_before_list_digest(self):
        fake = _token_registry(digest_single="sha256:zzz", digest_list="sha256:aaa")
        assert _client(fake).get_digests("registry.example.io", "org/app", "1.0") == ["sha256:zzz", "sha256:aaa"]

    def test_list_digest_alone(self):
        fake = _token_registry(digest_single=None)
        assert _client(fake).get_digests("registry.example.io", "org/app", "1.0") == ["sha256:bbb"]

    def test_single_digest_when_only_one_probe_answers(self):
        fake = _token_registry(digest_list=None)
        assert _client(fake).get_digests("registry.example.io", "org/app", "1.0") == ["sha256:aaa"]

    def test_same_digest_from_both_probes(self):
        fake = _token_registry(digest_single="sha256:same", digest_list="sha256:same")
        assert _client(fake).get_digests("registry.example.io", "org/app", "1.0") == ["sha256:same"]

    def test_no_digest_raises(self):
        fake = _token_registry(digest_single=None, digest_list=None)
        with pytest.raises(ManifestNotFoundError):
            _client(fake).get_digests("registry.example.io", "org/app", "1.0")

    def test_anonymous_registry_needs_no_token(self):
        fake = FakeRegistry(lambda call: _response(headers={"Docker-Content-Digest": "sha256:ccc"}))
        client = _client(fake)
        assert client.get_digests("registry.example.io", "org/app", "1.0") == ["sha256:ccc"]
        assert all('Authorization' not in c['headers'] for c in fake.calls)
        assert len(client.token_cache) == 0

    def test_insecure_registry_uses_http(self):
        fake = FakeRegistry(lambda call: _response(headers={"Docker-Content-Digest": "sha256:ccc"}))
        _client(fake, insecure_registries=["localhost:5000"]).get_digests("localhost:5000", "app", "1")
        assert fake.calls[0]['url'] == "http://localhost:5000/v2/app/manifests/1"


class TestAuthentication:

    def test_token_cached_per_repository(self):
        fake = _token_registry()
        client = _client(fake)
        client.get_digests("registry.example.io", "org/app", "1.0")
        client.get_digests("registry.example.io", "org/app", "1.1")

        token_calls = [c for c in fake.calls if c['url'].startswith("https://auth.example.io")]
        assert len(token_calls) == 1
        assert client.token_cache.get("registry.example.io", "org/app") == "tok"
        assert client.token_cache.get("registry.example.io", "org/other") is None

    def test_access_token_preferred(self):
        fake = _token_registry(token_body={"access_token": "tok", "token": "other"})
        client = _client(fake)
        client.get_digests("registry.example.io", "org/app", "1.0")
        assert client.token_cache.get("registry.example.io", "org/app") == "tok"

    def test_missing_token_field(self):
        fake = _token_registry(token_body={"expires_in": 300})
        with pytest.raises(AuthenticationError):
            _client(fake).get_digests("registry.example.io", "org/app", "1.0")

    def test_token_request_rejected(self):
        def handler(call):
            if call['url'].startswith("https://auth.example.io"):
                return _response(403)
            return _response(401, {"WWW-Authenticate": CHALLENGE})
        with pytest.raises(AuthenticationError):
            _client(FakeRegistry(handler)).get_digests("registry.example.io", "org/app", "1.0")

    def test_missing_realm(self):
        fake = FakeRegistry(lambda call: _response(401, {"WWW-Authenticate": 'Bearer service="x"'}))
        with pytest.raises(AuthenticationError):
            _client(fake).get_digests("registry.example.io", "org/app", "1.0")

    def test_basic_scheme_unsupported(self):
        fake = FakeRegistry(lambda call: _response(401, {"WWW-Authenticate": 'Basic realm="reg"'}))
        with pytest.raises(UnsupportedAuthSchemeError):
            _client(fake).get_digests("registry.example.io", "org/app", "1.0")

    def test_401_without_challenge(self):
        fake = FakeRegistry(lambda call: _response(401))
        with pytest.raises(UnsupportedAuthSchemeError):
            _client(fake).get_digests("registry.example.io", "org/app", "1.0")

    def test_credentials_sent_to_token_realm(self):
        fake = _token_registry()
        _client(fake, credentials=("user", "pass")).get_digests("registry.example.io", "org/app", "1.0")

        token_call = next(c for c in fake.calls if c['url'].startswith("https://auth.example.io"))
        assert token_call['headers']['Authorization'] == "Basic dXNlcjpwYXNz"


class TestGetTags:

    def _paged_registry(self, pages):
        """pages: list of (tags, next_link or None)."""
        def handler(call):
            if call['url'].startswith("https://auth.example.io"):
                return _response(body={"token": "tok"})
            if call['headers'].get('Authorization') != "Bearer tok":
                return _response(401, {"WWW-Authenticate": CHALLENGE})
            index = 0 if 'last=' not in call['url'] else int(call['url'].rsplit('last=', 1)[1])
            tags, next_link = pages[index]
            headers = {"Link": f'<{next_link}>; rel="next"'} if next_link else {}
            return _response(headers=headers, body={"name": "org/app", "tags": tags})
        return FakeRegistry(handler)

    def test_single_page(self):
        fake = self._paged_registry([(["1.0", "latest"], None)])
        tags = _client(fake).get_tags("registry.example.io", "org/app")
        assert tags == ["1.0", "latest"]

        list_call = next(c for c in fake.calls if "/tags/list" in c['url'])
        assert list_call['url'] == "https://registry.example.io/v2/org/app/tags/list"
        assert list_call['params'] == {"n": 100}

    def test_follows_next_links_in_order(self):
        fake = self._paged_registry([
            (["b", "a"], "/v2/org/app/tags/list?n=100&last=1"),
            (["c", "a"], "/v2/org/app/tags/list?n=100&last=2"),
            (["d"], None),
        ])
        tags = _client(fake).get_tags("registry.example.io", "org/app")
        # Server order kept, no de-duplication
        assert tags == ["b", "a", "c", "a", "d"]

        page_urls = [c['url'] for c in fake.calls if 'last=' in c['url']]
        assert page_urls == [
            "https://registry.example.io/v2/org/app/tags/list?n=100&last=1",
            "https://registry.example.io/v2/org/app/tags/list?n=100&last=2",
        ]

    def test_reuses_token_from_digest_check(self):
        fake = self._paged_registry([(["1.0"], None)])
        client = _client(fake)
        client.token_cache.set("registry.example.io", "org/app", "tok")
        client.get_tags("registry.example.io", "org/app")
        assert not any(c['url'].startswith("https://auth.example.io") for c in fake.calls)

    def test_null_tags(self):
        fake = FakeRegistry(lambda call: _response(body={"name": "org/app", "tags": None}))
        assert _client(fake).get_tags("registry.example.io", "org/app") == []

    @pytest.mark.parametrize("tags", [[1.2, None], ["1.0", 3], "1.0", {"1.0": "x"}])
    def test_malformed_tags_rejected(self, tags):
        fake = FakeRegistry(lambda call: _response(body={"name": "org/app", "tags": tags}))
        with pytest.raises(RegistryError):
            _client(fake).get_tags("registry.example.io", "org/app")

    def test_http_error_raised(self):
        fake = FakeRegistry(lambda call: _response(404, body={"errors": []}))
        with pytest.raises(requests.HTTPError):
            _client(fake).get_tags("registry.example.io", "org/app")
