import platform as _host
from typing import Iterable

from pydantic import BaseModel, ConfigDict, field_validator

from porter.errors import InputError

NOARCH = "noarch"

# Host machine names mapped onto the names used in OCI platform objects
_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md

    Frozen so it can be used as a key when mapping platforms onto artifacts.
    All values are lower-cased, making comparisons case-insensitive.
    """

    model_config = ConfigDict(frozen=True)

    architecture: str = ""
    os: str
    variant: str | None = None

    @field_validator("os", "architecture", "variant", mode="before")
    @classmethod
    def _normalize(cls, value):
        if value is None:
            return value
        value = str(value).strip().lower()
        return value

    @field_validator("variant")
    @classmethod
    def _empty_variant(cls, value):
        return value or None

    def __str__(self):
        if self.os == NOARCH:
            return NOARCH
        if self.variant:
            return f"{self.os}/{self.architecture}/{self.variant}"
        return f"{self.os}/{self.architecture}"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Parse `os[/arch][/variant][:os_version]`, the os version is dropped"""
        value = value.strip().split(":", 1)[0]
        os_, arch, variant, *_ = value.split("/") + ["", ""]
        return cls(os=os_, architecture=arch, variant=variant)

    @classmethod
    def parse_selection(cls, value: str) -> "Platform":
        """Parse a user supplied `os/arch[/variant]` platform selection"""
        trimmed = value.strip()
        if not trimmed:
            raise InputError("platform cannot be empty")
        parts = trimmed.split("/")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise InputError(
                f"invalid platform {value!r}, expected os/arch or os/arch/variant"
            )
        return cls(os=parts[0], architecture=parts[1], variant="/".join(parts[2:]))

    def matches(self, target: "Platform") -> bool:
        """Check if this platform satisfies the `target` filter.

        An empty variant in the target matches any variant.
        """
        if self.os != target.os or self.architecture != target.architecture:
            return False
        return not target.variant or target.variant == self.variant


def platform_matches(platform: Platform | None, targets: Iterable[Platform]) -> bool:
    """Check a (possibly missing) descriptor platform against a list of filters"""
    targets = list(targets)
    if not targets:
        return True
    if platform is None:
        # Producers that omit platform metadata only match a single selection
        return len(targets) == 1
    return any(platform.matches(target) for target in targets)


def current_platform() -> Platform:
    """Return the platform of the running host"""
    machine = _host.machine().lower()
    return Platform(
        os=_host.system().lower(),
        architecture=_ARCHITECTURES.get(machine, machine),
    )
