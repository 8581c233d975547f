"""Exception types raised by the storage, import and notification layers."""

from __future__ import annotations


class RefStoreError(Exception):
    """Base class for all refstore errors."""


class InvalidKeyError(RefStoreError, ValueError):
    """A record key is not 8 uppercase alphanumeric characters."""

    def __init__(self, key: object) -> None:
        super().__init__(f"Record key must be an 8-character string, got {key!r}")
        self.key = key


class NoBaseDirectoryError(RefStoreError):
    """A base-relative path was resolved with no base directory configured."""


class NotAFileError(RefStoreError):
    """The import source is missing or is not a regular file."""


class InvalidURLError(RefStoreError, ValueError):
    """A URL failed syntax validation."""


class UnsupportedSchemeError(InvalidURLError):
    """A remote attachment URL uses a scheme other than http/https."""


class MimeTypeMismatchError(RefStoreError):
    """Downloaded content does not match the declared MIME type."""


class DiskWriteFailureError(RefStoreError):
    """Copying or writing an attachment file failed."""


class UnsupportedLinkModeError(RefStoreError, ValueError):
    """The requested operation is not possible for this link mode."""


class PathNotResolvedError(RefStoreError):
    """No path resolution strategy found an existing file."""


class RecordNotFoundError(RefStoreError, LookupError):
    """No record exists for the given id or key."""


class NoActiveQueueError(RefStoreError, RuntimeError):
    """A queue-only notifier operation was called with no open queue."""


class InvalidEventTypeError(RefStoreError, ValueError):
    """An event subject type is not in the notifier whitelist."""


class InvalidStateTransitionError(RefStoreError, RuntimeError):
    """An import job was moved to a state its current state cannot reach."""


class MissingCollaboratorError(RefStoreError):
    """An operation needs a collaborator (fetcher, indexer) that is not configured."""
