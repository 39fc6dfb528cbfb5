"""OCI registry client library

This module provides a Python API for the subset of the OCI distribution and
image specs needed to move artifacts between registries and local stores.
"""
from porter.oci.client import AuthenticationError, Client
from porter.oci.descriptor import (
    ANNOTATION_CREATED,
    ANNOTATION_REF_NAME,
    ANNOTATION_TITLE,
    MEDIA_TYPE_EMPTY,
    MEDIA_TYPE_IMAGE_INDEX,
    MEDIA_TYPE_IMAGE_MANIFEST,
    Descriptor,
    EmptyConfig,
    is_index,
    is_manifest,
)
from porter.oci.index import Index
from porter.oci.manifest import Manifest
from porter.oci.platform import Platform, current_platform, platform_matches
from porter.oci.reference import Reference
from porter.oci.repository import Repository
from porter.oci.store import (
    FileStore,
    LayoutStore,
    MemoryStore,
    Store,
    copy,
    copy_graph,
    fetch_all,
)

__all__ = [
    "ANNOTATION_CREATED",
    "ANNOTATION_REF_NAME",
    "ANNOTATION_TITLE",
    "AuthenticationError",
    "Client",
    "Descriptor",
    "EmptyConfig",
    "FileStore",
    "Index",
    "LayoutStore",
    "MEDIA_TYPE_EMPTY",
    "MEDIA_TYPE_IMAGE_INDEX",
    "MEDIA_TYPE_IMAGE_MANIFEST",
    "Manifest",
    "MemoryStore",
    "Platform",
    "Reference",
    "Repository",
    "Store",
    "copy",
    "copy_graph",
    "current_platform",
    "fetch_all",
    "is_index",
    "is_manifest",
    "platform_matches",
]
