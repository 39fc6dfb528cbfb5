"""Materialize cached artifacts onto the filesystem"""
import json
import logging
import os
import posixpath
import shutil
import tarfile
import threading
import zlib
from pathlib import Path
from typing import BinaryIO

from porter.artifact import FINALIZER_ARGS, FINALIZER_KEYS, ArtifactResult
from porter.errors import (
    ArtifactNotFoundError,
    ExportError,
    InputError,
    IntegrityError,
    UnsafeArchiveError,
)
from porter.oci import (
    ANNOTATION_TITLE,
    Descriptor,
    LayoutStore,
    Manifest,
    Platform,
    fetch_all,
)
from porter.oci.store import check_cancelled
from porter.selector import ExportOptions, select_manifests

logger = logging.getLogger(__name__)

TAR_GZIP = "tar+gzip"
DEFAULT_NAME = "artifact"
UNKNOWN_PLATFORM_DIR = "unknown"

_FILENAME_TRANSLATION = str.maketrans({"\\": "-", "/": "-", ":": "-", " ": "-"})


def is_archive(descriptor: Descriptor) -> bool:
    return TAR_GZIP in descriptor.mediaType


def destination_looks_like_file(path: str) -> bool:
    """A path with an extension and without a trailing separator"""
    if path.endswith(("/", os.sep)):
        return False
    return os.path.splitext(path)[1] != ""


def sanitize_filename(name: str) -> str:
    clean = name.translate(_FILENAME_TRANSLATION).strip()
    if not clean or clean in (".", ".."):
        return DEFAULT_NAME
    return clean


def derive_artifact_base_name(reference: str) -> str:
    """Last path segment of `reference` without its tag or digest"""
    name = reference.rsplit("/", 1)[-1]
    for separator in ("@", ":"):
        name = name.split(separator, 1)[0]
    return sanitize_filename(name)


def default_extension(layer: Descriptor, platform: Platform | None) -> str:
    if platform is not None and platform.os == "windows":
        return ".exe"
    if is_archive(layer):
        return ".tar.gz"
    return ""


def determine_layer_filename(
    layer: Descriptor, base_name: str, platform: Platform | None
) -> str:
    """Name of the file a non-archive layer is written to"""
    title = (layer.annotations or {}).get(ANNOTATION_TITLE, "").strip()
    if title:
        return sanitize_filename(title)

    name = base_name or DEFAULT_NAME
    if not os.path.splitext(name)[1]:
        name += default_extension(layer, platform)
    return sanitize_filename(name)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _remove_existing(path: str):
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)


def extract_tar_gz(fileobj: BinaryIO, destination: Path) -> list[str]:
    """Extract a tar+gzip stream below `destination`

    Regular files, directories and symlinks are extracted, other entry types
    are skipped. Entries that would end up outside of `destination` raise
    UnsafeArchiveError.
    """
    root = os.path.realpath(destination)
    os.makedirs(root, exist_ok=True)
    extracted = []
    try:
        with tarfile.open(fileobj=fileobj, mode="r|gz") as archive:
            for member in archive:
                clean = posixpath.normpath(member.name.lstrip("/"))
                if clean.startswith(".."):
                    raise UnsafeArchiveError(
                        f"archive entry {member.name} escapes destination"
                    )
                if clean == ".":
                    continue
                target = os.path.join(root, *clean.split("/"))
                parent = os.path.dirname(target)
                if not _within(os.path.realpath(parent), root):
                    raise UnsafeArchiveError(
                        f"archive entry {member.name} escapes destination through a link"
                    )

                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                elif member.isreg():
                    os.makedirs(parent, exist_ok=True)
                    _remove_existing(target)
                    source = archive.extractfile(member)
                    mode = (member.mode & 0o777) or 0o644
                    fd = os.open(target, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
                    with os.fdopen(fd, "wb") as file:
                        shutil.copyfileobj(source, file)
                elif member.issym():
                    os.makedirs(parent, exist_ok=True)
                    _remove_existing(target)
                    os.symlink(member.linkname, target)
                else:
                    logger.debug("Skipping unsupported archive entry %s", member.name)
                    continue
                extracted.append(target)
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise IntegrityError(f"failed to read archive: {e}") from e
    except OSError as e:
        raise ExportError(f"failed to extract archive to {destination}: {e}") from e
    return extracted


def _load_manifest(store: LayoutStore, descriptor: Descriptor) -> Manifest:
    return Manifest.from_bytes(fetch_all(store, descriptor))


def export_manifest_to_file(
    store: LayoutStore, descriptor: Descriptor, destination: Path
) -> list[str]:
    """Write the single layer of a manifest to `destination`"""
    manifest = _load_manifest(store, descriptor)
    if len(manifest.layers) != 1:
        raise ExportError(f"expected a single layer, found {len(manifest.layers)}")

    layer = manifest.layers[0]
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with store.open(layer) as source, destination.open("wb") as file:
            shutil.copyfileobj(source, file)
    except OSError as e:
        raise ExportError(f"failed to write {destination}: {e}") from e
    logger.info("Exported layer %s to %s", layer.digest, destination)
    return [str(destination)]


def export_manifest_layers(
    store: LayoutStore,
    descriptor: Descriptor,
    directory: Path,
    base_name: str,
    platform: Platform | None,
    cancel: threading.Event | None = None,
) -> list[str]:
    """Write every layer of a manifest into `directory`"""
    manifest = _load_manifest(store, descriptor)
    exported = []
    for layer in manifest.layers:
        check_cancelled(cancel)
        if is_archive(layer):
            with store.open(layer) as source:
                exported.extend(extract_tar_gz(source, directory))
            logger.info("Extracted archive layer %s to %s", layer.digest, directory)
            continue

        path = directory / determine_layer_filename(layer, base_name, platform)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with store.open(layer) as source, path.open("wb") as file:
                shutil.copyfileobj(source, file)
        except OSError as e:
            raise ExportError(f"failed to write {path}: {e}") from e
        exported.append(str(path))
        logger.info("Exported layer %s to %s", layer.digest, path)
    return exported


def platform_directory(destination: Path, platform: Platform | None) -> Path:
    """`<destination>/<os>/<arch>[/<variant>]`, or `unknown` without a platform"""
    if platform is None or not platform.os or not platform.architecture:
        return destination / UNKNOWN_PLATFORM_DIR
    path = destination / platform.os / platform.architecture
    if platform.variant:
        path = path / platform.variant
    return path


def export_artifact(
    result: ArtifactResult,
    destination: str,
    options: ExportOptions | None = None,
    cancel: threading.Event | None = None,
) -> list[str]:
    """Export the platform payloads of a cached artifact to `destination`

    An existing directory, or a non-existing path that does not look like a
    file, receives the layers of every selected manifest. Otherwise the
    single layer of the single selected manifest is written to the file.
    """
    if not destination:
        raise InputError("destination required")
    if not result.digest:
        raise IntegrityError(f"artifact {result.id} has no digest")
    if not result.local_path:
        raise ArtifactNotFoundError(f"artifact {result.id} is not cached")
    options = options or ExportOptions()

    store = LayoutStore(Path(result.local_path), create=False)
    root = store.resolve(result.digest)
    manifests = select_manifests(store, root, options)
    if not manifests:
        raise ArtifactNotFoundError("no matching platform found for export")

    path = Path(destination)
    multiple = len(manifests) > 1
    subdirs = options.use_platform_subdirs or multiple
    is_dir = path.is_dir()
    is_file = path.exists() and not is_dir

    if is_file and subdirs:
        raise InputError(
            "destination must be a directory when exporting multiple platforms"
        )
    if not path.exists() and not subdirs and destination_looks_like_file(destination):
        is_file = True

    if is_file:
        return export_manifest_to_file(store, manifests[0].descriptor, path)

    base_name = derive_artifact_base_name(result.reference)
    exported = []
    for selection in manifests:
        check_cancelled(cancel)
        directory = platform_directory(path, selection.platform) if subdirs else path
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ExportError(f"failed to create {directory}: {e}") from e
        exported.extend(
            export_manifest_layers(
                store,
                selection.descriptor,
                directory,
                base_name,
                selection.platform,
                cancel=cancel,
            )
        )
    return exported


def apply_finalizer_args(result: ArtifactResult, output: str):
    """Point the finalizer of `result` at the exported output

    Only applies when the artifact names a finalizer and does not carry
    finalizer arguments of its own.
    """
    finalizer = next(
        (result.metadata[k] for k in FINALIZER_KEYS if result.metadata.get(k, "").strip()),
        None,
    )
    if not finalizer or FINALIZER_ARGS in result.metadata:
        return
    resolved = os.path.abspath(output)
    if not os.path.exists(resolved):
        logger.warning("Finalizer path does not exist: %s", resolved)
    result.metadata[FINALIZER_ARGS] = json.dumps([resolved])
