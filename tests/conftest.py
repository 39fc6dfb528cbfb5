import base64
import hashlib
import json
import re
import uuid
from pathlib import Path
from typing import Callable

import httpx
import pytest

from porter.cache import Cache
from porter.oci import (
    ANNOTATION_TITLE,
    Descriptor,
    EmptyConfig,
    Index,
    Manifest,
    Platform,
)
from porter.oci.descriptor import DIGEST_RE, is_index

REGISTRY = "registry.test"
REPOSITORY = "plugins/hello"
TOKEN = "secret-token"
BINARY = "application/vnd.delivery-station.plugin.v1+binary"

_UPLOAD_RE = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/(?P<session>[^/]*)$")
_BLOB_RE = re.compile(r"^/v2/(?P<name>.+)/blobs/(?P<digest>[^/]+)$")
_MANIFEST_RE = re.compile(r"^/v2/(?P<name>.+)/manifests/(?P<reference>[^/]+)$")
_TAGS_RE = re.compile(r"^/v2/(?P<name>.+)/tags/list$")


class FakeRegistry:
    """In-memory OCI distribution API served through httpx.MockTransport

    Set `credentials` to require bearer token authentication, and `fail` to a
    predicate to answer matching requests with a 500.
    """

    def __init__(self):
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.manifests: dict[tuple[str, str], tuple[str, bytes]] = {}
        self.tags: dict[tuple[str, str], str] = {}
        self.uploads: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.credentials: tuple[str, str] | None = None
        self.token_requests = 0
        self.fail: Callable[[httpx.Request], bool] | None = None
        self.transport = httpx.MockTransport(self.handler)

    # Helpers to seed content without going through the client

    def add_image(
        self,
        repository: str,
        data: bytes,
        media_type: str = BINARY,
        title: str | None = None,
        tag: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> Descriptor:
        layer = Descriptor.from_bytes(
            media_type, data, annotations={ANNOTATION_TITLE: title} if title else None
        )
        config = EmptyConfig()
        self.blobs[(repository, layer.digest)] = data
        self.blobs[(repository, config.digest)] = config.data
        manifest = Manifest(
            artifactType=media_type,
            config=config,
            layers=[layer],
            annotations=annotations,
        )
        return self._add_manifest(repository, manifest.descriptor, tag)

    def add_index(
        self,
        repository: str,
        manifests: dict[Platform | None, Descriptor],
        tag: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> Descriptor:
        index = Index(annotations=annotations)
        for platform, descriptor in manifests.items():
            index.add_manifest(descriptor, platform=platform)
        return self._add_manifest(repository, index.descriptor, tag)

    def _add_manifest(
        self, repository: str, descriptor: Descriptor, tag: str | None
    ) -> Descriptor:
        self.manifests[(repository, descriptor.digest)] = (
            descriptor.mediaType,
            descriptor.data,
        )
        if tag:
            self.tags[(repository, tag)] = descriptor.digest
        return descriptor.model_copy(update={"data": None})

    def manifest(self, repository: str, reference: str) -> tuple[str, bytes] | None:
        digest = self.tags.get((repository, reference), reference)
        return self.manifests.get((repository, digest))

    # Request handling

    def handler(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        path = request.url.path

        if path == "/token":
            return self._token(request)
        if self.fail is not None and self.fail(request):
            return httpx.Response(500)
        if self.credentials is not None:
            if request.headers.get("Authorization") != f"Bearer {TOKEN}":
                return self._challenge(path)

        if match := _UPLOAD_RE.match(path):
            return self._upload(request, match["name"], match["session"])
        if match := _BLOB_RE.match(path):
            return self._blob(request, match["name"], match["digest"])
        if match := _MANIFEST_RE.match(path):
            return self._manifest(request, match["name"], match["reference"])
        if match := _TAGS_RE.match(path):
            tags = sorted(tag for repo, tag in self.tags if repo == match["name"])
            return httpx.Response(200, json={"name": match["name"], "tags": tags})
        return httpx.Response(404)

    def _challenge(self, path: str) -> httpx.Response:
        name = path.removeprefix("/v2/").split("/blobs/")[0].split("/manifests/")[0]
        return httpx.Response(
            401,
            headers={
                "WWW-Authenticate": (
                    f'Bearer realm="https://{REGISTRY}/token",'
                    f'service="{REGISTRY}",scope="repository:{name}:pull,push"'
                )
            },
        )

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests += 1
        username, password = self.credentials or ("", "")
        expected = base64.b64encode(f"{username}:{password}".encode()).decode()
        if request.headers.get("Authorization") != f"Basic {expected}":
            return httpx.Response(401)
        return httpx.Response(200, json={"token": TOKEN})

    def _upload(self, request, name, session) -> httpx.Response:
        if request.method == "POST":
            session = uuid.uuid4().hex
            self.uploads[session] = name
            return httpx.Response(
                202, headers={"Location": f"/v2/{name}/blobs/uploads/{session}"}
            )
        if request.method != "PUT" or self.uploads.pop(session, None) != name:
            return httpx.Response(404)
        digest = request.url.params["digest"]
        data = request.content
        if f"sha256:{hashlib.sha256(data).hexdigest()}" != digest:
            return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})
        self.blobs[(name, digest)] = data
        return httpx.Response(201, headers={"Docker-Content-Digest": digest})

    def _blob(self, request, name, digest) -> httpx.Response:
        data = self.blobs.get((name, digest))
        if data is None:
            return httpx.Response(404)
        headers = {"Docker-Content-Digest": digest, "Content-Length": str(len(data))}
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=data)

    def _manifest(self, request, name, reference) -> httpx.Response:
        if request.method == "PUT":
            return self._put_manifest(request, name, reference)
        found = self.manifest(name, reference)
        if found is None:
            return httpx.Response(404)
        media_type, data = found
        headers = {
            "Content-Type": media_type,
            "Docker-Content-Digest": f"sha256:{hashlib.sha256(data).hexdigest()}",
            "Content-Length": str(len(data)),
        }
        if request.method == "HEAD":
            return httpx.Response(200, headers=headers)
        return httpx.Response(200, headers=headers, content=data)

    def _put_manifest(self, request, name, reference) -> httpx.Response:
        data = request.content
        media_type = request.headers["Content-Type"]
        digest = f"sha256:{hashlib.sha256(data).hexdigest()}"
        if DIGEST_RE.match(reference) and reference != digest:
            return httpx.Response(400, json={"errors": [{"code": "DIGEST_INVALID"}]})

        payload = json.loads(data)
        if is_index(media_type):
            missing = [
                m["digest"]
                for m in payload.get("manifests", [])
                if (name, m["digest"]) not in self.manifests
            ]
        else:
            missing = [
                d["digest"]
                for d in [payload["config"], *payload.get("layers", [])]
                if (name, d["digest"]) not in self.blobs
            ]
        if missing:
            return httpx.Response(
                400, json={"errors": [{"code": "MANIFEST_BLOB_UNKNOWN"}]}
            )

        self.manifests[(name, digest)] = (media_type, data)
        if not DIGEST_RE.match(reference):
            self.tags[(name, reference)] = digest
        return httpx.Response(201, headers={"Docker-Content-Digest": digest})


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def cache(tmp_path, registry) -> Cache:
    return Cache(tmp_path / "cache", transport=registry.transport)


@pytest.fixture
def reference() -> str:
    return f"{REGISTRY}/{REPOSITORY}:1.0"


@pytest.fixture
def multiarch(registry) -> dict[Platform, bytes]:
    """An index tagged 1.0 with a binary for three platforms"""
    payloads = {
        Platform.parse("linux/amd64"): b"linux-amd64-binary",
        Platform.parse("linux/arm64"): b"linux-arm64-binary",
        Platform.parse("darwin/amd64"): b"darwin-amd64-binary",
    }
    registry.add_index(
        REPOSITORY,
        {
            platform: registry.add_image(REPOSITORY, data)
            for platform, data in payloads.items()
        },
        tag="1.0",
        annotations={"ds.plugin.name": "hello", "ds.plugin.version": "1.0"},
    )
    return payloads


def write_file(path: Path, data: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path
