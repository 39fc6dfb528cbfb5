import hashlib
import re

from pydantic import BaseModel, Field

from porter.errors import DigestMismatchError, InvalidReferenceError
from porter.oci.platform import Platform

MEDIA_TYPE_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)
MEDIA_TYPE_EMPTY = "application/vnd.oci.empty.v1+json"

INDEX_MEDIA_TYPES = (MEDIA_TYPE_IMAGE_INDEX, MEDIA_TYPE_DOCKER_MANIFEST_LIST)
MANIFEST_MEDIA_TYPES = (MEDIA_TYPE_IMAGE_MANIFEST, MEDIA_TYPE_DOCKER_MANIFEST)

ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_CREATED = "org.opencontainers.image.created"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"

DIGEST_RE = re.compile(r"^(?P<algorithm>sha256|sha512):(?P<encoded>[a-f0-9]{64,128})$")


def is_index(media_type: str | None) -> bool:
    return media_type in INDEX_MEDIA_TYPES


def is_manifest(media_type: str | None) -> bool:
    return media_type in MANIFEST_MEDIA_TYPES


def split_digest(digest: str) -> tuple[str, str]:
    """Split `<algorithm>:<encoded>` into its parts"""
    match = DIGEST_RE.match(digest)
    if not match:
        raise InvalidReferenceError(f"invalid digest: {digest!r}")
    return match["algorithm"], match["encoded"]


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    mediaType: str
    digest: str
    size: int
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
    platform: Platform | None = None
    data: bytes | None = Field(exclude=True, default=None)

    @classmethod
    def from_bytes(cls, media_type: str, data: bytes, **kwargs) -> "Descriptor":
        return cls(
            mediaType=media_type,
            digest=sha256_digest(data),
            size=len(data),
            data=data,
            **kwargs,
        )

    @property
    def encoded(self) -> str:
        """The hex part of the digest"""
        return split_digest(self.digest)[1]

    def verify(self, data: bytes):
        """Raise if `data` is not the content described by this descriptor"""
        algorithm, encoded = split_digest(self.digest)
        if len(data) != self.size:
            raise DigestMismatchError(
                f"{self.digest}: expected {self.size} bytes, got {len(data)}"
            )
        if hashlib.new(algorithm, data).hexdigest() != encoded:
            raise DigestMismatchError(f"content does not match digest {self.digest}")


class EmptyConfig(Descriptor):
    mediaType: str = MEDIA_TYPE_EMPTY
    digest: str = (
        "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a"
    )
    size: int = 2
    data: bytes | None = Field(exclude=True, default=b"{}")
