import base64

import httpx
import pytest
from conftest import REGISTRY, REPOSITORY, TOKEN

from porter.errors import ArtifactNotFoundError, DigestMismatchError
from porter.oci import Client, Descriptor, Repository
from porter.oci.client import AuthenticationError, _clean_url, _parse_www_auth


@pytest.mark.parametrize(
    "url,plain_http,expected",
    [
        ("registry.test", False, "https://registry.test"),
        ("localhost:5000", True, "http://localhost:5000"),
        ("docker.io", False, "https://registry-1.docker.io"),
        ("http://example.com/", False, "http://example.com"),
    ],
)
def test_clean_url(url, plain_http, expected):
    assert _clean_url(url, plain_http=plain_http) == expected


def test_parse_www_auth():
    scheme, params = _parse_www_auth(
        'Bearer realm="https://auth.test/token",service="registry.test",'
        'scope="repository:plugins/hello:pull"'
    )
    assert scheme == "bearer"
    assert params == {
        "realm": "https://auth.test/token",
        "service": "registry.test",
        "scope": "repository:plugins/hello:pull",
    }


def _client(registry, **kwargs) -> Client:
    return Client(registry_url=REGISTRY, transport=registry.transport, **kwargs)


def test_resolve(registry):
    descriptor = registry.add_image(REPOSITORY, b"hello", tag="1.0")
    with _client(registry) as client:
        resolved = client.resolve(REPOSITORY, "1.0")
    assert resolved == descriptor


def test_resolve_not_found(registry):
    with _client(registry) as client:
        with pytest.raises(ArtifactNotFoundError):
            Repository(client, REPOSITORY).resolve("missing")


MANIFEST = b'{"schemaVersion":2,"mediaType":"application/vnd.oci.image.manifest.v1+json"}'
MANIFEST_DIGEST = Descriptor.from_bytes("", MANIFEST).digest


def _headless_registry(request: httpx.Request):
    """A registry not sending digest headers on HEAD"""
    headers = {"Content-Type": "application/vnd.oci.image.manifest.v1+json"}
    if request.method == "HEAD":
        return httpx.Response(200, headers=headers)
    return httpx.Response(200, headers=headers, content=MANIFEST)


def test_resolve_falls_back_to_get():
    with Client(REGISTRY, transport=httpx.MockTransport(_headless_registry)) as client:
        descriptor = client.resolve(REPOSITORY, "1.0")
    assert descriptor.digest == MANIFEST_DIGEST
    assert descriptor.size == len(MANIFEST)
    assert descriptor.data is None


def test_resolve_digest_mismatch():
    """A registry answering a digest request with other content is rejected"""
    with Client(REGISTRY, transport=httpx.MockTransport(_headless_registry)) as client:
        with pytest.raises(DigestMismatchError):
            client.resolve(REPOSITORY, "sha256:" + "0" * 64)


def test_retry_on_server_error(registry):
    registry.add_image(REPOSITORY, b"hello", tag="1.0")
    failures = iter([True, True, False])
    registry.fail = lambda request: next(failures, False)
    with _client(registry, backoff=0) as client:
        client.resolve(REPOSITORY, "1.0")
    assert len(registry.requests) == 3


def test_no_retry_for_uploads(registry):
    registry.fail = lambda request: request.method == "POST"
    with _client(registry, backoff=0) as client:
        with pytest.raises(httpx.HTTPStatusError):
            client.push_blob(REPOSITORY, b"data", digest=_digest(b"data"), size=4)
    assert [r.method for r in registry.requests] == ["HEAD", "POST"]


def _digest(data: bytes) -> str:
    return Descriptor.from_bytes("application/octet-stream", data).digest


def test_push_blob(registry):
    digest = _digest(b"data")
    with _client(registry) as client:
        client.push_blob(REPOSITORY, iter([b"da", b"ta"]), digest=digest, size=4)
        assert client.blob_exists(REPOSITORY, digest)
        # Already present, only checked
        client.push_blob(REPOSITORY, b"data", digest=digest, size=4)
    assert registry.blobs[(REPOSITORY, digest)] == b"data"
    assert [r.method for r in registry.requests] == ["HEAD", "POST", "PUT", "HEAD", "HEAD"]


def test_stream_blob(registry):
    digest = _digest(b"data" * 10)
    registry.blobs[(REPOSITORY, digest)] = b"data" * 10
    with _client(registry) as client:
        with client.stream_blob(REPOSITORY, digest) as content:
            assert b"".join(content) == b"data" * 10


def test_bearer_authentication(registry):
    registry.credentials = ("octo", "pw")
    registry.add_image(REPOSITORY, b"hello", tag="1.0")
    with _client(registry, username="octo", password="pw") as client:
        client.resolve(REPOSITORY, "1.0")
        client.pull_manifest(REPOSITORY, "1.0")
    # The token is requested once and reused
    assert registry.token_requests == 1
    assert registry.requests[-1].headers["Authorization"] == f"Bearer {TOKEN}"


def test_bearer_authentication_rejected(registry):
    registry.credentials = ("octo", "pw")
    registry.add_image(REPOSITORY, b"hello", tag="1.0")
    with _client(registry, username="octo", password="wrong") as client:
        with pytest.raises(AuthenticationError):
            client.resolve(REPOSITORY, "1.0")


def test_anonymous_token(registry):
    registry.credentials = ("octo", "pw")
    with _client(registry) as client:
        with pytest.raises(AuthenticationError):
            client.resolve(REPOSITORY, "1.0")
    token_request = next(r for r in registry.requests if r.url.path == "/token")
    assert "Authorization" not in token_request.headers
    assert token_request.url.params["scope"] == f"repository:{REPOSITORY}:pull,push"


def test_basic_authentication():
    def handler(request: httpx.Request):
        expected = "Basic " + base64.b64encode(b"u:p").decode()
        if request.headers.get("Authorization") != expected:
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="x"'})
        return httpx.Response(200, json={"name": "repo", "tags": ["1.0"]})

    transport = httpx.MockTransport(handler)
    with Client(REGISTRY, username="u", password="p", transport=transport) as client:
        assert client.list("repo") == {"name": "repo", "tags": ["1.0"]}


def test_basic_authentication_without_password():
    def handler(request: httpx.Request):
        return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="x"'})

    with Client(REGISTRY, transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(AuthenticationError):
            client.list("repo")
