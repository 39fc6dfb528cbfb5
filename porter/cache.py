"""Content-addressable artifact cache

Every cached artifact lives in `<root>/<id>/` as an OCI image layout plus a
`metadata.json` sidecar. The id is the first 16 hex characters of the
artifact digest. Each pull copies content into its own hidden staging
directory and renames it once complete; committed entries are never
modified by a later pull.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Callable, Iterable

import httpx
from pydantic import ValidationError

from porter.artifact import ArtifactResult, PluginExecutionInfo
from porter.config import RegistryConfig
from porter.credentials import resolve_credentials
from porter.errors import (
    ArtifactNotFoundError,
    InputError,
    IntegrityError,
    RegistryError,
)
from porter.oci import Client, Descriptor, LayoutStore, Reference, Repository
from porter.oci.store import copy_graph

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
ID_LENGTH = 16

AnnotationLookup = Callable[[LayoutStore, Descriptor], dict[str, str]]


def descriptor_annotations(store: LayoutStore, descriptor: Descriptor) -> dict[str, str]:
    """Annotations carried by the root descriptor itself"""
    return dict(descriptor.annotations or {})


def blob_annotations(store: LayoutStore, descriptor: Descriptor) -> dict[str, str]:
    """Annotations of the manifest or index the root descriptor points at"""
    with store.open(descriptor) as file:
        payload = json.load(file)
    return dict(payload.get("annotations") or {})


def index_annotations(store: LayoutStore, descriptor: Descriptor) -> dict[str, str]:
    """Top-level annotations of the layout index.json"""
    return store.annotations()


# Producers attach delivery metadata at different levels, the first
# lookup returning annotations wins
ANNOTATION_LOOKUPS: tuple[AnnotationLookup, ...] = (
    descriptor_annotations,
    blob_annotations,
    index_annotations,
)


def lookup_annotations(
    store: LayoutStore,
    descriptor: Descriptor,
    lookups: Iterable[AnnotationLookup] = ANNOTATION_LOOKUPS,
) -> dict[str, str]:
    for lookup in lookups:
        try:
            annotations = lookup(store, descriptor)
        except (OSError, ValueError, AttributeError, ArtifactNotFoundError) as e:
            logger.debug("Failed to load %s: %s", lookup.__name__, e)
            continue
        if annotations:
            return annotations
    return {}


def temporary_id(reference: str) -> str:
    """Cache id used until the digest of `reference` is known"""
    return sha256(reference.encode("utf-8")).hexdigest()[:ID_LENGTH]


def artifact_id(descriptor: Descriptor) -> str:
    return descriptor.encoded[:ID_LENGTH]


class Cache:
    """Artifact cache rooted at `root`"""

    def __init__(
        self,
        root: Path,
        registries: list[RegistryConfig] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.root = Path(root)
        self.registries = registries or []
        self.transport = transport
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, artifact_id: str) -> Path:
        if not artifact_id or artifact_id in (".", "..") or "/" in artifact_id or (
            os.sep in artifact_id
        ):
            raise InputError(f"invalid artifact id: {artifact_id!r}")
        return self.root / artifact_id

    def resolve_credentials(self, registry: str) -> tuple[str, str]:
        return resolve_credentials(self.registries, registry)

    def client(self, registry: str, insecure: bool = False) -> Client:
        username, password = self.resolve_credentials(registry)
        return Client(
            registry_url=registry,
            username=username or None,
            password=password or None,
            plain_http=insecure,
            transport=self.transport,
        )

    def pull(
        self,
        reference: str,
        insecure: bool = False,
        cancel: threading.Event | None = None,
    ) -> ArtifactResult:
        """Pull `reference` (a manifest or an index) into the cache"""
        logger.info("Pulling artifact %s (insecure=%s)", reference, insecure)
        ref = Reference.parse(reference)

        try:
            with self.client(ref.registry, insecure=insecure) as client:
                repository = Repository(client, ref.repository)
                root = repository.resolve(ref.identifier)
                final_id = artifact_id(root)
                if self._is_committed(final_id, root):
                    logger.info("Artifact %s already cached as %s", reference, final_id)
                    cache_id = final_id
                else:
                    cache_id = self._download(reference, ref, repository, root, cancel)
        except httpx.HTTPError as e:
            raise RegistryError(f"failed to pull {reference}: {e}") from e

        store = LayoutStore(self.path(cache_id), create=False)
        metadata = lookup_annotations(store, root)
        result = ArtifactResult(
            id=cache_id,
            reference=reference,
            digest=root.digest,
            size=root.size,
            local_path=str(store.root),
            metadata=metadata,
            plugin_info=PluginExecutionInfo.from_metadata(metadata),
            cached=True,
            cached_at=datetime.now(timezone.utc),
        )
        try:
            self.save(result)
        except OSError as e:
            logger.warning("Failed to save artifact metadata for %s: %s", cache_id, e)

        logger.info(
            "Artifact pulled successfully (id=%s, digest=%s, size=%s)",
            cache_id,
            root.digest,
            root.size,
        )
        return result

    def _is_committed(self, cache_id: str, root: Descriptor) -> bool:
        path = self.root / cache_id
        return LayoutStore.is_layout(path) and LayoutStore(path, create=False).exists(
            root
        )

    def _download(
        self,
        reference: str,
        ref: Reference,
        repository: Repository,
        root: Descriptor,
        cancel: threading.Event | None,
    ) -> str:
        """Copy the artifact into a private staging directory, then commit it"""
        temp_id = temporary_id(reference)
        staging = Path(tempfile.mkdtemp(dir=self.root, prefix=f".{temp_id}-"))
        logger.info("Copying artifact to cache (target=%s)", ref.identifier)
        try:
            store = LayoutStore(staging)
            copy_graph(repository, store, root, cancel=cancel)
            store.tag(root, ref.identifier)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        return self._commit(staging, temp_id, root)

    def _commit(self, staging: Path, temp_id: str, root: Descriptor) -> str:
        """Rename `staging` to the digest derived id of `root`

        Falls back to the temporary id when that rename fails, and to the
        staging directory itself when both fail. Returns the id the artifact
        ended up under.
        """
        for cache_id in dict.fromkeys((artifact_id(root), temp_id)):
            if self._is_committed(cache_id, root):
                logger.debug("Artifact already cached as %s, discarding %s", cache_id, staging)
                self._discard(staging)
                return cache_id

            path = self.root / cache_id
            try:
                os.rename(staging, path)
                return cache_id
            except OSError as e:
                if self._is_committed(cache_id, root):
                    # Another pull committed the same digest first
                    self._discard(staging)
                    return cache_id
                if path.exists() and self._replace_incomplete(staging, path):
                    return cache_id
                logger.warning("Failed to rename %s to %s: %s", staging, path, e)

        logger.warning("Keeping artifact in staging directory %s", staging)
        return staging.name

    def _replace_incomplete(self, staging: Path, path: Path) -> bool:
        """Swap the unusable cache entry at `path` for `staging`"""
        logger.warning("Replacing incomplete cache entry %s", path)
        trash = Path(tempfile.mkdtemp(dir=self.root, prefix=".stale-"))
        try:
            os.rename(path, trash / path.name)
            os.rename(staging, path)
        except OSError as e:
            logger.warning("Failed to replace %s: %s", path, e)
            return False
        finally:
            shutil.rmtree(trash, ignore_errors=True)
        return True

    def _discard(self, staging: Path):
        try:
            shutil.rmtree(staging)
        except OSError as e:
            logger.warning("Failed to remove staging directory %s: %s", staging, e)

    def save(self, result: ArtifactResult):
        """Write `result` as the metadata.json of its cache entry"""
        path = self.path(result.id) / METADATA_FILE
        path.write_text(result.dump(), encoding="utf-8")

    def load(self, artifact_id: str) -> ArtifactResult:
        path = self.path(artifact_id) / METADATA_FILE
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ArtifactNotFoundError(f"artifact {artifact_id} not found") from None
        try:
            return ArtifactResult.model_validate_json(data)
        except ValidationError as e:
            raise IntegrityError(f"failed to read metadata of {artifact_id}: {e}") from e

    def list(self) -> list[ArtifactResult]:
        """All cached artifacts, entries without readable metadata are skipped"""
        if not self.root.is_dir():
            return []
        artifacts = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                artifacts.append(self.load(entry.name))
            except (ArtifactNotFoundError, IntegrityError, OSError) as e:
                logger.warning("Failed to load metadata for %s: %s", entry.name, e)
        return artifacts

    def execute_plugin(
        self, artifact_id: str, plugin_name: str, args: list[str] | None = None
    ) -> ArtifactResult:
        """Request `plugin_name` to run on a cached artifact

        Running the plugin is up to the host, this validates the artifact
        exists and records the request.
        """
        logger.info("Executing plugin %s on artifact %s", plugin_name, artifact_id)
        try:
            artifact = self.load(artifact_id)
        except ArtifactNotFoundError as e:
            raise ArtifactNotFoundError(f"artifact not found: {e}") from e
        logger.info(
            "Plugin execution requested (artifact_path=%s, plugin=%s, args=%s)",
            artifact.local_path,
            plugin_name,
            args or [],
        )
        return artifact
