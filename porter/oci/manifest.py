from functools import cached_property

from pydantic import BaseModel, ValidationError

from porter.errors import IntegrityError
from porter.oci.descriptor import MEDIA_TYPE_IMAGE_MANIFEST, Descriptor


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    schemaVersion: int = 2
    mediaType: str = MEDIA_TYPE_IMAGE_MANIFEST
    artifactType: str | None = None
    config: Descriptor
    layers: list[Descriptor] = []
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    @cached_property
    def descriptor(self) -> Descriptor:
        data = self.model_dump_json(exclude_none=True).encode("utf-8")
        return Descriptor.from_bytes(self.mediaType, data)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Manifest":
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise IntegrityError(f"failed to parse manifest: {e}") from e

    def successors(self) -> list[Descriptor]:
        """Content referenced by this manifest"""
        return [self.config, *self.layers]
