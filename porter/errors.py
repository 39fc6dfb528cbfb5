"""Exceptions raised by porter.

Input errors are raised before any network or filesystem mutation, registry
errors wrap transport failures, integrity errors are always fatal.
"""


class PorterError(Exception):
    """Base class for all porter errors."""


class InputError(PorterError, ValueError):
    """Invalid caller input (paths, flags, manifest files)."""


class InvalidReferenceError(InputError):
    """The artifact reference could not be parsed."""


class RegistryError(PorterError):
    """Talking to the registry failed."""


class ArtifactNotFoundError(PorterError, LookupError):
    """The requested artifact, tag or blob does not exist."""


class IntegrityError(PorterError):
    """Content is corrupt or unsafe."""


class DigestMismatchError(IntegrityError):
    """Content does not match the digest or size of its descriptor."""


class UnsafeArchiveError(IntegrityError):
    """An archive entry would be written outside of the destination."""


class ExportError(PorterError):
    """Writing an artifact to the filesystem failed."""


class PublishError(PorterError):
    """Publishing an artifact to a registry failed."""


class OperationCancelled(PorterError):
    """The caller cancelled the operation."""
