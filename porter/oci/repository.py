from contextlib import contextmanager
from typing import Iterable

import httpx

from porter.errors import ArtifactNotFoundError
from porter.oci.client import Client
from porter.oci.descriptor import Descriptor, is_index, is_manifest
from porter.oci.store import Store


def _is_manifest_like(descriptor: Descriptor) -> bool:
    return is_index(descriptor.mediaType) or is_manifest(descriptor.mediaType)


class Repository(Store):
    """A repository `name` on a remote registry, exposed as a content store"""

    def __init__(self, client: Client, name: str):
        self.client = client
        self.name = name

    def __repr__(self):
        return f"Repository({self.client.registry_url}/{self.name})"

    def exists(self, descriptor: Descriptor) -> bool:
        if _is_manifest_like(descriptor):
            return self.client.manifest_exists(self.name, descriptor.digest)
        return self.client.blob_exists(self.name, descriptor.digest)

    @contextmanager
    def fetch(self, descriptor: Descriptor):
        if _is_manifest_like(descriptor):
            yield iter(
                [
                    self.client.pull_manifest(
                        self.name, descriptor.digest, media_type=descriptor.mediaType
                    )
                ]
            )
            return
        with self.client.stream_blob(self.name, descriptor.digest) as content:
            yield content

    def push(self, descriptor: Descriptor, content: Iterable[bytes]):
        if _is_manifest_like(descriptor):
            self.client.push_manifest(
                self.name,
                data=b"".join(content),
                media_type=descriptor.mediaType,
                reference=descriptor.digest,
            )
            return
        self.client.push_blob(
            self.name, content, digest=descriptor.digest, size=descriptor.size
        )

    def resolve(self, reference: str) -> Descriptor:
        try:
            return self.client.resolve(self.name, reference)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise ArtifactNotFoundError(
                    f"{self.client.registry_url}/{self.name}:{reference} not found"
                ) from e
            raise

    def tag(self, descriptor: Descriptor, reference: str):
        """Point `reference` at an existing manifest"""
        data = self.client.pull_manifest(
            self.name, descriptor.digest, media_type=descriptor.mediaType
        )
        descriptor.verify(data)
        self.client.push_manifest(
            self.name, data=data, media_type=descriptor.mediaType, reference=reference
        )
