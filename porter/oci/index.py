import logging
from functools import cached_property

from pydantic import BaseModel, ValidationError

from porter.errors import IntegrityError
from porter.oci.descriptor import MEDIA_TYPE_IMAGE_INDEX, Descriptor
from porter.oci.platform import Platform

logger = logging.getLogger(__name__)


class Index(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    schemaVersion: int = 2
    mediaType: str = MEDIA_TYPE_IMAGE_INDEX
    artifactType: str | None = None
    manifests: list[Descriptor] = []
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    def add_manifest(self, descriptor: Descriptor, platform: Platform | None = None):
        """Add a manifest descriptor, replacing any manifest for the same platform"""
        if platform is not None:
            descriptor = descriptor.model_copy(update={"platform": platform})
        manifests = {m.platform: idx for idx, m in enumerate(self.manifests)}
        if descriptor.platform is None or descriptor.platform not in manifests:
            self.manifests.append(descriptor)
            return
        idx = manifests[descriptor.platform]
        if self.manifests[idx].digest != descriptor.digest:
            logger.warning(
                "'%s' already exists with different content, overwriting.",
                descriptor.platform,
            )
        else:
            logger.info("'%s' already exists, skipping.", descriptor.platform)
        self.manifests[idx] = descriptor

    @cached_property
    def descriptor(self) -> Descriptor:
        data = self.model_dump_json(exclude_none=True).encode("utf-8")
        return Descriptor.from_bytes(
            self.mediaType, data, artifactType=self.artifactType
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "Index":
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise IntegrityError(f"failed to parse index: {e}") from e
