"""Content stores

All stores expose the same operations so content can be copied between
them: a remote repository, an OCI image layout on disk, and in-memory
stores used while publishing.
"""
import hashlib
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import BinaryIO, ContextManager, Iterable, Iterator

from porter.errors import (
    ArtifactNotFoundError,
    DigestMismatchError,
    IntegrityError,
    OperationCancelled,
)
from porter.oci.descriptor import (
    ANNOTATION_REF_NAME,
    ANNOTATION_TITLE,
    DIGEST_RE,
    Descriptor,
    is_index,
    is_manifest,
    split_digest,
)
from porter.oci.index import Index
from porter.oci.manifest import Manifest

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
OCI_LAYOUT_VERSION = "1.0.0"


def check_cancelled(cancel: threading.Event | None):
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")


def _read_chunks(file: BinaryIO) -> Iterator[bytes]:
    return iter(lambda: file.read(CHUNK_SIZE), b"")


class Store:
    """Interface shared by all content stores"""

    def exists(self, descriptor: Descriptor) -> bool:
        raise NotImplementedError

    def fetch(self, descriptor: Descriptor) -> ContextManager[Iterable[bytes]]:
        raise NotImplementedError

    def push(self, descriptor: Descriptor, content: Iterable[bytes]):
        raise NotImplementedError

    def resolve(self, reference: str) -> Descriptor:
        raise NotImplementedError

    def tag(self, descriptor: Descriptor, reference: str):
        raise NotImplementedError


class MemoryStore(Store):
    """Descriptors and their content kept in memory"""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._descriptors: dict[str, Descriptor] = {}
        self._tags: dict[str, Descriptor] = {}

    def exists(self, descriptor: Descriptor) -> bool:
        return descriptor.digest in self._blobs

    @contextmanager
    def fetch(self, descriptor: Descriptor):
        if descriptor.digest not in self._blobs:
            raise ArtifactNotFoundError(f"{descriptor.digest}: not found")
        yield iter([self._blobs[descriptor.digest]])

    def push(self, descriptor: Descriptor, content: Iterable[bytes]):
        data = b"".join(content)
        descriptor.verify(data)
        self._blobs[descriptor.digest] = data
        self._descriptors[descriptor.digest] = descriptor.model_copy(
            update={"data": None}
        )

    def resolve(self, reference: str) -> Descriptor:
        if reference in self._tags:
            return self._tags[reference]
        if reference in self._descriptors:
            return self._descriptors[reference]
        raise ArtifactNotFoundError(f"{reference}: not found")

    def tag(self, descriptor: Descriptor, reference: str):
        if descriptor.digest not in self._blobs:
            raise ArtifactNotFoundError(f"{descriptor.digest}: not found")
        self._tags[reference] = descriptor.model_copy(update={"data": None})


class FileStore(MemoryStore):
    """Hybrid store serving files from disk and all other content from memory

    Files are added by reference, their content is never loaded into memory.
    """

    def __init__(self):
        super().__init__()
        self._files: dict[str, tuple[Path, Descriptor]] = {}

    def add_file(
        self, path: Path, media_type: str, title: str | None = None
    ) -> Descriptor:
        """Add a file to the store and return its descriptor"""
        digest = hashlib.sha256()
        size = 0
        with path.open("rb") as file:
            for chunk in _read_chunks(file):
                digest.update(chunk)
                size += len(chunk)
        descriptor = Descriptor(
            mediaType=media_type,
            digest=f"sha256:{digest.hexdigest()}",
            size=size,
            annotations={ANNOTATION_TITLE: title or path.name},
        )
        self._files[descriptor.digest] = (path, descriptor)
        return descriptor

    def exists(self, descriptor: Descriptor) -> bool:
        return descriptor.digest in self._files or super().exists(descriptor)

    @contextmanager
    def fetch(self, descriptor: Descriptor):
        if descriptor.digest not in self._files:
            with super().fetch(descriptor) as content:
                yield content
            return
        path, _ = self._files[descriptor.digest]
        with path.open("rb") as file:
            yield _read_chunks(file)

    def resolve(self, reference: str) -> Descriptor:
        if reference in self._files:
            return self._files[reference][1]
        return super().resolve(reference)


class LayoutStore(Store):
    """OCI image layout on disk

    ref: https://github.com/opencontainers/image-spec/blob/main/image-layout.md

    Blobs are written to a temporary file while their digest is computed and
    only renamed into place once verified. Tags are recorded as
    `org.opencontainers.image.ref.name` annotations in index.json.
    """

    def __init__(self, root: Path, create: bool = True):
        self.root = Path(root)
        if not create:
            if not self.is_layout(self.root):
                raise ArtifactNotFoundError(f"{self.root} is not an OCI layout")
            return
        (self.root / "blobs").mkdir(parents=True, exist_ok=True)
        layout = self.root / "oci-layout"
        if not layout.exists():
            layout.write_text(json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION}))
        if not self.index_path.exists():
            self._save_index(Index())

    @staticmethod
    def is_layout(path: Path) -> bool:
        return (path / "oci-layout").is_file() and (path / "index.json").is_file()

    @property
    def index_path(self) -> Path:
        return self.root / "index.json"

    def blob_path(self, digest: str) -> Path:
        algorithm, encoded = split_digest(digest)
        return self.root / "blobs" / algorithm / encoded

    def exists(self, descriptor: Descriptor) -> bool:
        return self.blob_path(descriptor.digest).is_file()

    def open(self, descriptor: Descriptor) -> BinaryIO:
        """Open the content of `descriptor` for reading"""
        path = self.blob_path(descriptor.digest)
        if not path.is_file():
            raise ArtifactNotFoundError(f"{descriptor.digest}: not found in {self.root}")
        return path.open("rb")

    @contextmanager
    def fetch(self, descriptor: Descriptor):
        with self.open(descriptor) as file:
            yield _read_chunks(file)

    def push(self, descriptor: Descriptor, content: Iterable[bytes]):
        algorithm, encoded = split_digest(descriptor.digest)
        target = self.blob_path(descriptor.digest)
        target.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.new(algorithm)
        size = 0
        fd, upload = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as file:
                for chunk in content:
                    digest.update(chunk)
                    size += len(chunk)
                    file.write(chunk)
            if size != descriptor.size or digest.hexdigest() != encoded:
                raise DigestMismatchError(
                    f"{descriptor.digest}: received {size} bytes with digest "
                    f"{algorithm}:{digest.hexdigest()}, expected {descriptor.size} bytes"
                )
            os.replace(upload, target)
        except BaseException:
            with suppress(FileNotFoundError):
                os.unlink(upload)
            raise

    def _load_index(self) -> Index:
        try:
            return Index.from_bytes(self.index_path.read_bytes())
        except FileNotFoundError:
            raise ArtifactNotFoundError(f"{self.root} has no index.json") from None

    def _save_index(self, index: Index):
        # Write then rename so readers never see a partial index.json
        data = index.model_dump_json(exclude_none=True, indent=2)
        with tempfile.NamedTemporaryFile(
            "w", dir=self.root, prefix=".index-", delete=False
        ) as file:
            file.write(data)
        os.replace(file.name, self.index_path)

    def annotations(self) -> dict[str, str]:
        """Top-level annotations of index.json"""
        return dict(self._load_index().annotations or {})

    def tag(self, descriptor: Descriptor, reference: str):
        if not self.exists(descriptor):
            raise ArtifactNotFoundError(f"{descriptor.digest}: not found in {self.root}")
        index = self._load_index()
        descriptor = descriptor.model_copy(update={"data": None})
        if DIGEST_RE.match(reference):
            if any(m.digest == descriptor.digest for m in index.manifests):
                return
            index.manifests.append(descriptor)
        else:
            index.manifests = [
                m
                for m in index.manifests
                if (m.annotations or {}).get(ANNOTATION_REF_NAME) != reference
            ]
            annotations = dict(descriptor.annotations or {})
            annotations[ANNOTATION_REF_NAME] = reference
            index.manifests.append(descriptor.model_copy(update={"annotations": annotations}))
        self._save_index(index)

    def resolve(self, reference: str) -> Descriptor:
        index = self._load_index()
        for manifest in index.manifests:
            annotations = dict(manifest.annotations or {})
            name = annotations.pop(ANNOTATION_REF_NAME, None)
            if reference in (name, manifest.digest):
                return manifest.model_copy(update={"annotations": annotations or None})
        if DIGEST_RE.match(reference) and self.blob_path(reference).is_file():
            # Untagged content, recover the media type from the content itself
            data = self.blob_path(reference).read_bytes()
            try:
                media_type = json.loads(data)["mediaType"]
            except (ValueError, KeyError, TypeError):
                raise IntegrityError(f"{reference} is not a manifest") from None
            return Descriptor(mediaType=media_type, digest=reference, size=len(data))
        raise ArtifactNotFoundError(f"{reference}: not found in {self.root}")


def fetch_all(store: Store, descriptor: Descriptor) -> bytes:
    """Read and verify the content of a (small) descriptor"""
    with store.fetch(descriptor) as content:
        data = b"".join(content)
    descriptor.verify(data)
    return data


def successors(descriptor: Descriptor, data: bytes) -> list[Descriptor]:
    """Descriptors referenced by manifest or index content"""
    if is_index(descriptor.mediaType):
        return list(Index.from_bytes(data).manifests)
    if is_manifest(descriptor.mediaType):
        return Manifest.from_bytes(data).successors()
    return []


def copy_graph(
    src: Store,
    dst: Store,
    root: Descriptor,
    cancel: threading.Event | None = None,
):
    """Copy `root` and everything it references from `src` to `dst`

    Children are copied before their parents so a manifest present in `dst`
    implies its content is present too; existing content is skipped.
    """
    check_cancelled(cancel)
    if dst.exists(root):
        logger.debug("Skipping %s, already exists", root.digest)
        return
    if is_index(root.mediaType) or is_manifest(root.mediaType):
        data = fetch_all(src, root)
        for child in successors(root, data):
            copy_graph(src, dst, child, cancel=cancel)
        dst.push(root, [data])
    else:
        with src.fetch(root) as content:
            dst.push(root, content)
    logger.debug("Copied %s (%s)", root.digest, root.mediaType)


def copy(
    src: Store,
    src_ref: str,
    dst: Store,
    dst_ref: str | None = None,
    cancel: threading.Event | None = None,
) -> Descriptor:
    """Copy the graph tagged `src_ref` in `src` to `dst`, tagging it `dst_ref`"""
    root = src.resolve(src_ref)
    copy_graph(src, dst, root, cancel=cancel)
    dst.tag(root, dst_ref or src_ref)
    return root
