from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from typing import Iterable, Iterator
from urllib.parse import urlparse, urlunparse

import httpx

from porter.errors import DigestMismatchError, RegistryError
from porter.oci.descriptor import (
    DIGEST_RE,
    INDEX_MEDIA_TYPES,
    MANIFEST_MEDIA_TYPES,
    Descriptor,
)

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"
MANIFEST_ACCEPT = ", ".join((*MANIFEST_MEDIA_TYPES, *INDEX_MEDIA_TYPES))
RETRY_STATUS = frozenset({429, 500, 502, 503, 504})
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD"})
CHUNK_SIZE = 1024 * 1024

_AUTH_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class AuthenticationError(RegistryError):
    """Raised when authentication fails."""


def _clean_url(registry_url: str, plain_http: bool = False) -> str:
    if "://" not in registry_url:
        registry_url = f"//{registry_url}"
    parts = urlparse(registry_url)
    if not parts.scheme:
        parts = parts._replace(scheme="http" if plain_http else "https")
    if parts.netloc in ("docker.io", "index.docker.io"):
        parts = parts._replace(netloc=DOCKER_HUB)
    return urlunparse(parts).rstrip("/")


def _parse_www_auth(www_authenticate: str) -> tuple[str, dict[str, str]]:
    """Parse the WWW-Authenticate header into the scheme and its parameters"""
    scheme, _, params = www_authenticate.strip().partition(" ")
    return scheme.lower(), dict(_AUTH_PARAM_RE.findall(params))


def _media_type(response: httpx.Response) -> str:
    return response.headers.get("Content-Type", "").split(";", 1)[0].strip()


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class Client:
    """Client for the OCI registry API.

    Challenges (401 + WWW-Authenticate) are answered transparently, bearer
    tokens are cached per scope for the lifetime of the client.
    Connection failures are retried by the transport, idempotent requests
    answered with 429 or 5xx are retried with a linear backoff.
    """

    def __init__(
        self,
        registry_url: str,
        username: str | None = None,
        password: str | None = None,
        plain_http: bool = False,
        transport: httpx.BaseTransport | None = None,
        retries: int = 3,
        timeout: float = 30.0,
        backoff: float = 0.5,
    ):
        self.registry_url = _clean_url(registry_url, plain_http=plain_http)
        self.username = username
        self.password = password
        self.retries = retries
        self.timeout = timeout
        self.backoff = backoff
        self._transport = transport
        self._session = None
        self._auth = None
        self._tokens: dict[str, str] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def session(self) -> httpx.Client:
        if self._session is None:
            self._session = httpx.Client(
                transport=self._transport or httpx.HTTPTransport(retries=self.retries),
                follow_redirects=True,
                max_redirects=5,
                timeout=self.timeout,
            )
        return self._session

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def request(self, method: str, uri: str, stream: bool = False, **kwargs):
        """Send a request to the registry.

        `uri` is either a path relative to the registry or an absolute url
        (upload locations). Streamed responses must be closed by the caller.
        """
        if uri.startswith(("http://", "https://")):
            url = uri
        else:
            url = f"{self.registry_url}{uri}"
        challenged = False
        attempt = 0
        while True:
            request = self.session.build_request(method, url, **kwargs)
            response = self.session.send(request, auth=self._auth, stream=stream)
            if response.status_code == 401:
                response.close()
                www_authenticate = response.headers.get("WWW-Authenticate")
                if challenged or not www_authenticate:
                    raise AuthenticationError(
                        f"{self.registry_url} rejected {method} {uri}, "
                        f"check the configured credentials."
                    )
                self._answer_challenge(www_authenticate)
                challenged = True
                continue
            if (
                response.status_code in RETRY_STATUS
                and method in IDEMPOTENT_METHODS
                and attempt < self.retries
            ):
                response.close()
                attempt += 1
                logger.debug(
                    "%s %s returned %s, retry %s/%s",
                    method,
                    uri,
                    response.status_code,
                    attempt,
                    self.retries,
                )
                time.sleep(self.backoff * attempt)
                continue
            return response

    def head(self, uri, **kwargs):
        return self.request("HEAD", uri, **kwargs)

    def get(self, uri, **kwargs):
        return self.request("GET", uri, **kwargs)

    def post(self, uri, **kwargs):
        return self.request("POST", uri, **kwargs)

    def put(self, uri, **kwargs):
        return self.request("PUT", uri, **kwargs)

    def _answer_challenge(self, www_authenticate: str):
        scheme, params = _parse_www_auth(www_authenticate)
        logger.debug("Authentication challenge: %s %s", scheme, params)
        if scheme == "basic":
            if not self.password:
                raise AuthenticationError(
                    f"{self.registry_url} requires authentication, "
                    f"provide a username and/or password."
                )
            self._auth = httpx.BasicAuth(self.username or "", self.password)
            return
        if scheme != "bearer" or "realm" not in params:
            raise AuthenticationError(
                f"{self.registry_url} uses an unsupported authentication scheme: "
                f"{www_authenticate}"
            )
        scope = params.get("scope", "")
        token = self._tokens.get(scope)
        if token is None or (
            isinstance(self._auth, BearerAuth) and self._auth.token == token
        ):
            token = self.authenticate(
                token_url=params["realm"],
                service=params.get("service"),
                scope=scope or None,
            )
            self._tokens[scope] = token
        self._auth = BearerAuth(token)

    def authenticate(self, token_url, service, scope) -> str:
        """Use the token api to get a token, anonymously if no password is set

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope
        auth = None
        if self.password:
            auth = (self.username or "", self.password)
            if self.username:
                params["account"] = self.username
        response = self.session.get(token_url, params=params, auth=auth)
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.registry_url} refused to issue a token for scope {scope!r}"
            )
        response.raise_for_status()
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthenticationError(f"{token_url} did not return a token")
        return token

    def list(self, name: str) -> dict:
        uri = f"/v2/{name}/tags/list"
        result = self.get(uri)
        result.raise_for_status()
        return result.json()

    def resolve(self, name: str, reference: str) -> Descriptor:
        """Resolve a tag or digest to the descriptor of the manifest it points at"""
        uri = f"/v2/{name}/manifests/{reference}"
        result = self.head(uri, headers={"Accept": MANIFEST_ACCEPT})
        result.raise_for_status()
        digest = result.headers.get("Docker-Content-Digest")
        size = result.headers.get("Content-Length")
        media_type = _media_type(result)
        if not digest or size is None or not media_type:
            # Not every registry returns the full set of headers on HEAD
            result = self.get(uri, headers={"Accept": MANIFEST_ACCEPT})
            result.raise_for_status()
            descriptor = Descriptor.from_bytes(_media_type(result), result.content)
            if DIGEST_RE.match(reference) and descriptor.digest != reference:
                raise DigestMismatchError(
                    f"{name}@{reference} returned content with digest "
                    f"{descriptor.digest}"
                )
            return descriptor.model_copy(update={"data": None})
        return Descriptor(mediaType=media_type, digest=digest, size=int(size))

    def pull_manifest(
        self, name: str, reference: str, media_type: str = MANIFEST_ACCEPT
    ) -> bytes:
        uri = f"/v2/{name}/manifests/{reference}"
        result = self.get(uri, headers={"Accept": media_type})
        if result.status_code == 403:
            logger.debug(result.headers)
        result.raise_for_status()
        return result.content

    def manifest_exists(self, name: str, digest: str) -> bool:
        response = self.head(
            f"/v2/{name}/manifests/{digest}", headers={"Accept": MANIFEST_ACCEPT}
        )
        return response.status_code == 200

    def blob_exists(self, name: str, digest: str) -> bool:
        response = self.head(f"/v2/{name}/blobs/{digest}")
        return response.status_code == 200

    @contextmanager
    def stream_blob(self, name: str, digest: str) -> Iterator[Iterator[bytes]]:
        """Stream the blob content in chunks"""
        response = self.get(f"/v2/{name}/blobs/{digest}", stream=True)
        try:
            response.raise_for_status()
            yield response.iter_bytes(CHUNK_SIZE)
        finally:
            response.close()

    def push_blob(
        self, name: str, blob: bytes | Iterable[bytes], digest: str, size: int
    ):
        """Push a blob for repository `name`

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-blobs
        """
        # Check if the blob already exists
        if self.blob_exists(name, digest):
            logger.info("Blob already exists: %s@%s", name, digest)
            return

        # Push the blob using the POST then PUT method
        response = self.post(
            f"/v2/{name}/blobs/uploads/",
            headers={"content-type": "application/octet-stream"},
        )
        response.raise_for_status()
        if response.status_code != 202:
            raise RegistryError(
                f"unexpected response {response.status_code} starting upload "
                f"of {digest} to {name}"
            )
        location = response.headers["location"]
        response = self.put(
            location,
            content=blob,
            headers={
                "content-type": "application/octet-stream",
                "content-length": str(size),
            },
            params={"digest": digest},
        )
        if response.status_code == 404:
            logger.info(response.text)
        response.raise_for_status()

    def push_manifest(self, name: str, data: bytes, media_type: str, reference: str):
        """Push a manifest for repository `name` under `reference` (tag or digest)

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-manifests
        """
        uri = f"/v2/{name}/manifests/{reference}"
        logger.debug("Pushing manifest %s: %s", reference, data)
        response = self.put(uri, content=data, headers={"content-type": media_type})
        if (
            not response.is_success
            and "application/json" in response.headers.get("Content-Type", "")
        ):
            logger.error(response.json())
        response.raise_for_status()
