import logging
from typing import NamedTuple

from pydantic import BaseModel

from porter.errors import ArtifactNotFoundError, InputError, IntegrityError
from porter.oci import Descriptor, Index, Platform, Store, fetch_all, is_index
from porter.oci.platform import current_platform, platform_matches

logger = logging.getLogger(__name__)


class ExportOptions(BaseModel):
    """Which platforms to export and how to lay them out"""

    all_platforms: bool = False
    platforms: list[Platform] = []
    use_platform_subdirs: bool = False


class ManifestSelection(NamedTuple):
    descriptor: Descriptor
    platform: Platform | None


def build_export_options(
    all_platforms: bool = False, selections: list[str] | None = None
) -> ExportOptions:
    """Turn the `--all-arch` / `--platform` flags into export options

    Without a selection the platform of the running host is exported.
    """
    selections = [s for s in selections or [] if s.strip()]
    if all_platforms and selections:
        raise InputError("--all-arch cannot be combined with --platform")
    if all_platforms:
        return ExportOptions(all_platforms=True, use_platform_subdirs=True)
    if selections:
        platforms = [Platform.parse_selection(s) for s in selections]
        return ExportOptions(
            platforms=platforms, use_platform_subdirs=len(platforms) > 1
        )
    return ExportOptions(platforms=[current_platform()])


def select_manifests(
    store: Store, root: Descriptor, options: ExportOptions
) -> list[ManifestSelection]:
    """Return the manifests under `root` matching the platform selection"""
    if not is_index(root.mediaType):
        return [ManifestSelection(root, root.platform)]

    index = Index.from_bytes(fetch_all(store, root))
    selections = [
        ManifestSelection(manifest, manifest.platform)
        for manifest in index.manifests
        if options.all_platforms or platform_matches(manifest.platform, options.platforms)
    ]
    logger.debug(
        "Selected %s of %s manifests (platforms=%s, all=%s)",
        len(selections),
        len(index.manifests),
        [str(p) for p in options.platforms],
        options.all_platforms,
    )
    if selections:
        return selections
    if options.platforms and not options.all_platforms:
        raise ArtifactNotFoundError("no manifests found for requested platform(s)")
    if len(index.manifests) == 1:
        manifest = index.manifests[0]
        return [ManifestSelection(manifest, manifest.platform)]
    raise IntegrityError("no manifests found in index")
