"""Publish per-platform binaries as a multi-architecture OCI index

Every platform payload is packed into a single layer manifest and pushed by
digest. Only once all of them made it to the registry is the index pushed
under the requested tag, so a tag never points at a partial set of
platforms.
"""
import logging
import os
import tarfile
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, TextIO

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from porter.artifact import ArtifactResult
from porter.cache import Cache, artifact_id
from porter.errors import InputError, PublishError
from porter.oci import (
    ANNOTATION_CREATED,
    Client,
    Descriptor,
    EmptyConfig,
    FileStore,
    Index,
    Manifest,
    MemoryStore,
    Platform,
    Reference,
    Repository,
    copy,
    copy_graph,
    current_platform,
)
from porter.oci.store import check_cancelled

logger = logging.getLogger(__name__)

MEDIA_TYPE_ARTIFACT_BINARY = "application/vnd.delivery-station.plugin.v1+binary"
MEDIA_TYPE_ARTIFACT_ARCHIVE = "application/vnd.delivery-station.plugin.v1.tar+gzip"
MEDIA_TYPE_ARTIFACT_INDEX = "application/vnd.delivery-station.plugin.index.v1+json"

MANIFEST_EXTENSIONS = (".yaml", ".yml", ".json")
LATEST = "latest"


class ManifestEntry(BaseModel):
    platform: str = ""
    mediaType: str = ""
    path: str = ""


class PublishManifest(BaseModel):
    """The `ds.manifest.yaml` describing what to publish

    artifact-type: application/vnd.example+json
    annotations:
      ds.plugin.name: example
    manifests:
      - platform: linux/amd64
        path: dist/example-linux-amd64
    """

    model_config = ConfigDict(populate_by_name=True)

    artifact_type: str = Field(default="", alias="artifact-type")
    annotations: dict[str, str] = {}
    manifests: list[ManifestEntry] = []

    @field_validator("artifact_type", mode="before")
    @classmethod
    def _no_artifact_type(cls, value):
        return value or ""

    @field_validator("annotations", mode="before")
    @classmethod
    def _no_annotations(cls, value):
        return value or {}

    @field_validator("manifests", mode="before")
    @classmethod
    def _no_manifests(cls, value):
        return value or []

    @classmethod
    def load(cls, path: Path) -> "PublishManifest":
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InputError(f"failed to read manifest {path}: {e}") from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InputError(f"failed to parse manifest {path}: {e}") from e


def _progress(progress: TextIO | None, message: str = "", *args):
    if progress is None:
        return
    progress.write((message % args if args else message) + "\n")


@contextmanager
def create_archive_from_directory(directory: Path) -> Iterator[Path]:
    """Pack `directory` into a temporary `<name>.tar.gz`

    The archive is removed when the context exits. Symlinks are stored as
    links, they are not followed.
    """
    if not directory.is_dir():
        raise InputError(f"path {directory} is not a directory")
    with tempfile.TemporaryDirectory(prefix="ds-porter-archive-") as tmp:
        archive = Path(tmp) / f"{directory.name or 'artifact'}.tar.gz"
        try:
            with tarfile.open(archive, "w:gz") as tar:
                for root, dirnames, filenames in os.walk(directory):
                    dirnames.sort()
                    for name in sorted(dirnames + filenames):
                        path = Path(root) / name
                        tar.add(
                            path,
                            arcname=path.relative_to(directory).as_posix(),
                            recursive=False,
                        )
        except OSError as e:
            raise PublishError(f"failed to archive directory {directory}: {e}") from e
        logger.debug("Archived %s to %s", directory, archive)
        yield archive


def _default_entry(path: Path, media_type: str) -> PublishManifest:
    return PublishManifest(
        artifact_type=MEDIA_TYPE_ARTIFACT_INDEX,
        manifests=[
            ManifestEntry(
                platform=str(current_platform()), mediaType=media_type, path=str(path)
            )
        ],
    )


def load_push_manifest(path: Path) -> tuple[PublishManifest, Path]:
    """Load what to publish from `path` and the directory entries are relative to

    `path` is a manifest file (yaml or json), a directory or a single binary.
    Directories and binaries are published for the current platform.
    """
    if not path.exists():
        raise InputError(f"failed to access {path}: no such file or directory")
    if path.is_dir():
        manifest = _default_entry(path, MEDIA_TYPE_ARTIFACT_ARCHIVE)
    elif path.suffix.lower() in MANIFEST_EXTENSIONS:
        manifest = PublishManifest.load(path)
    else:
        manifest = _default_entry(path, MEDIA_TYPE_ARTIFACT_BINARY)
    if not manifest.manifests:
        raise InputError("manifest must contain at least one entry")
    return manifest, path.parent


def prepare_entry(
    entry: ManifestEntry, base_dir: Path, stack: ExitStack
) -> tuple[Platform, ManifestEntry]:
    """Resolve the path and platform of an entry, archiving directories"""
    if not entry.path.strip():
        raise InputError("manifest entry missing path")
    path = Path(os.path.normpath(base_dir / entry.path))
    if not path.exists():
        raise InputError(f"manifest entry path {path} does not exist")

    if entry.platform.strip():
        platform = Platform.parse(entry.platform)
    else:
        platform = current_platform()

    if path.is_dir():
        path = stack.enter_context(create_archive_from_directory(path))
        media_type = entry.mediaType.strip() or MEDIA_TYPE_ARTIFACT_ARCHIVE
    else:
        media_type = entry.mediaType.strip() or MEDIA_TYPE_ARTIFACT_BINARY
    return platform, entry.model_copy(update={"path": str(path), "mediaType": media_type})


def prepare_entries(
    manifest: PublishManifest, base_dir: Path, stack: ExitStack
) -> dict[Platform, ManifestEntry]:
    entries = {}
    for entry in manifest.manifests:
        platform, prepared = prepare_entry(entry, base_dir, stack)
        if platform in entries:
            raise InputError(f"platform {platform} listed more than once")
        entries[platform] = prepared
    return entries


class Pusher:
    """Push platform binaries and their index to `reference`"""

    def __init__(
        self,
        reference: str,
        username: str | None = None,
        password: str | None = None,
        insecure: bool = False,
        tag_latest: bool = True,
        transport: httpx.BaseTransport | None = None,
    ):
        self.reference = Reference.parse(reference)
        if self.reference.digest:
            raise InputError(f"cannot publish to a digest reference: {reference}")
        self.tag_latest = tag_latest
        self.client = Client(
            registry_url=self.reference.registry,
            username=username or None,
            password=password or None,
            plain_http=insecure,
            transport=transport,
        )
        self.repository = Repository(self.client, self.reference.repository)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    @property
    def tag(self) -> str:
        return self.reference.tag

    def push(
        self,
        manifest_path: Path,
        progress: TextIO | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Publish everything described by the manifest file at `manifest_path`"""
        _progress(progress, "=== Porter Multi-Arch Push ===")
        _progress(progress)
        _progress(progress, "Loading manifest from %s...", manifest_path)
        manifest = PublishManifest.load(manifest_path)
        if not manifest.manifests:
            raise InputError("manifest must contain at least one entry")

        with ExitStack() as stack:
            entries = prepare_entries(manifest, manifest_path.parent, stack)
            _progress(progress, "Pushing artifacts to OCI registry...")
            descriptors = self.push_all(entries, progress=progress, cancel=cancel)
            _progress(progress, "Pushing manifest index...")
            reference = self.push_index(descriptors, manifest, cancel=cancel)

        _progress(progress)
        _progress(progress, "Pushed to %s", reference)
        return reference

    def push_all(
        self,
        entries: dict[Platform, ManifestEntry],
        progress: TextIO | None = None,
        cancel: threading.Event | None = None,
    ) -> dict[Platform, Descriptor]:
        """Push every platform binary, stopping at the first failure"""
        descriptors = {}
        for platform, entry in entries.items():
            check_cancelled(cancel)
            _progress(progress, "Pushing %s...", platform)
            try:
                descriptor = self.push_binary(platform, entry, cancel=cancel)
            except httpx.HTTPError as e:
                raise PublishError(f"failed to push {platform}: {e}") from e
            descriptors[platform] = descriptor
            _progress(progress, "Pushed %s -> %s", platform, descriptor.digest)

        _progress(progress, "All platform binaries pushed successfully")
        return descriptors

    def push_binary(
        self,
        platform: Platform,
        entry: ManifestEntry,
        cancel: threading.Event | None = None,
    ) -> Descriptor:
        """Pack `entry` into a single layer manifest and push it by digest"""
        media_type = entry.mediaType or MEDIA_TYPE_ARTIFACT_BINARY
        store = FileStore()
        layer = store.add_file(Path(entry.path), media_type=media_type)
        config = EmptyConfig()
        store.push(config, [config.data])

        created = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        manifest = Manifest(
            artifactType=media_type,
            config=config,
            layers=[layer],
            annotations={ANNOTATION_CREATED: created},
        )
        descriptor = manifest.descriptor
        store.push(descriptor, [descriptor.data])

        logger.info("Pushing %s (%s) as %s", entry.path, platform, descriptor.digest)
        copy_graph(store, self.repository, descriptor, cancel=cancel)

        annotations = {
            ANNOTATION_CREATED: created,
            "os": platform.os,
            "architecture": platform.architecture,
        }
        if platform.variant:
            annotations["variant"] = platform.variant
        return descriptor.model_copy(update={"data": None, "annotations": annotations})

    def push_index(
        self,
        descriptors: dict[Platform, Descriptor],
        manifest: PublishManifest | None = None,
        cancel: threading.Event | None = None,
    ) -> str:
        """Push the index of all platform manifests under the tag

        Returns the reference the index was pushed to.
        """
        check_cancelled(cancel)
        index = Index(
            artifactType=(manifest and manifest.artifact_type) or MEDIA_TYPE_ARTIFACT_INDEX,
            annotations=(manifest and manifest.annotations) or None,
        )
        for platform, descriptor in descriptors.items():
            index.add_manifest(descriptor, platform=platform)
        descriptor = index.descriptor

        store = MemoryStore()
        store.push(descriptor, [descriptor.data])
        store.tag(descriptor, self.tag)
        try:
            copy(store, self.tag, self.repository, self.tag, cancel=cancel)
            if self.tag_latest and self.tag != LATEST:
                self.repository.tag(descriptor, LATEST)
        except httpx.HTTPError as e:
            raise PublishError(f"failed to push index: {e}") from e

        reference = f"{self.reference.registry}/{self.reference.repository}:{self.tag}"
        logger.info("Pushed index %s to %s", descriptor.digest, reference)
        return reference


def push_artifact(
    cache: Cache,
    path: Path,
    reference: str,
    insecure: bool = False,
    tag_latest: bool = True,
    progress: TextIO | None = None,
    cancel: threading.Event | None = None,
) -> ArtifactResult:
    """Publish a manifest file, a directory or a single binary to `reference`"""
    if not reference:
        raise InputError("artifact reference required")
    if not path:
        raise InputError("manifest or artifact path required")
    ref = Reference.parse(reference)
    manifest, base_dir = load_push_manifest(Path(path).absolute())
    username, password = cache.resolve_credentials(ref.registry)

    with ExitStack() as stack:
        entries = prepare_entries(manifest, base_dir, stack)
        pusher = stack.enter_context(
            Pusher(
                reference,
                username=username,
                password=password,
                insecure=insecure,
                tag_latest=tag_latest,
                transport=cache.transport,
            )
        )
        descriptors = pusher.push_all(entries, progress=progress, cancel=cancel)
        pushed = pusher.push_index(descriptors, manifest, cancel=cancel)
        try:
            descriptor = pusher.repository.resolve(pusher.tag)
        except httpx.HTTPError as e:
            raise PublishError(f"failed to resolve pushed artifact: {e}") from e

    metadata = dict(manifest.annotations)
    if manifest.artifact_type:
        metadata["artifact.type"] = manifest.artifact_type
    metadata["pushed.reference"] = pushed
    if pushed != reference:
        metadata["requested.reference"] = reference

    logger.info("Artifact pushed successfully (reference=%s, digest=%s)", pushed, descriptor.digest)
    return ArtifactResult(
        id=artifact_id(descriptor),
        reference=pushed,
        digest=descriptor.digest,
        size=descriptor.size,
        metadata=metadata,
        cached=False,
    )
