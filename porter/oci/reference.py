import re
from dataclasses import dataclass

from porter.errors import InvalidReferenceError
from porter.oci.descriptor import split_digest

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

# ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pulling-manifests
REPOSITORY_PATTERN = r"[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*)*"
TAG_PATTERN = r"[a-zA-Z0-9_][a-zA-Z0-9._-]{0,127}"
DIGEST_PATTERN = r"[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]+"
REFERENCE_RE = re.compile(
    rf"^(?P<repository>{REPOSITORY_PATTERN})"
    rf"(?::(?P<tag>{TAG_PATTERN}))?"
    rf"(?:@(?P<digest>{DIGEST_PATTERN}))?$"
)


def _is_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True, slots=True)
class Reference:
    """An artifact reference: `registry/repository[:tag][@digest]`"""

    registry: str
    repository: str
    tag: str = DEFAULT_TAG
    digest: str | None = None

    def __str__(self):
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag}"

    @property
    def identifier(self) -> str:
        """The digest if the reference pins one, the tag otherwise"""
        return self.digest or self.tag

    @classmethod
    def parse(cls, value: str) -> "Reference":
        """Parse a reference string.

        `localhost/...` is a shorthand for the `localhost` registry,
        references without a registry component point at docker hub.
        """
        value = value.strip()
        if not value:
            raise InvalidReferenceError("artifact reference required")

        registry, _, remainder = value.partition("/")
        if not remainder or not _is_registry(registry):
            registry, remainder = DEFAULT_REGISTRY, value
            if "/" not in remainder.split(":", 1)[0].split("@", 1)[0]:
                remainder = f"library/{remainder}"

        match = REFERENCE_RE.match(remainder)
        if not match:
            raise InvalidReferenceError(f"invalid reference: {value!r}")
        if match["digest"]:
            split_digest(match["digest"])
        return cls(
            registry=registry.lower(),
            repository=match["repository"],
            tag=match["tag"] or DEFAULT_TAG,
            digest=match["digest"],
        )
