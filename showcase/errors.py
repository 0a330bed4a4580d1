"""
Typed errors raised by the media subsystem and document stores.
"""

from __future__ import annotations


class MediaError(Exception):
    """Base exception for the showcase backend."""


class BlobNotFoundError(MediaError):
    """Raised when a blob id does not exist in the blob store."""

    def __init__(self, blob_id: str):
        self.blob_id = blob_id
        super().__init__(f"Blob not found: {blob_id}")


class InvalidReferenceError(MediaError, ValueError):
    """Raised for malformed blob ids or blob-reference URLs."""

    def __init__(self, value: object, reason: str = "malformed blob reference"):
        self.value = value
        self.reason = reason
        super().__init__(f"{reason}: {value!r}")


class UploadFailedError(MediaError):
    """Raised when the underlying storage rejects a blob write."""


class UploadTooLargeError(UploadFailedError):
    """Raised when an upload exceeds the configured size limit."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Upload exceeds the {limit} byte limit")


class DocumentNotFoundError(MediaError):
    """Raised when a project or user document does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection} document not found: {doc_id}")


class DocumentValidationError(MediaError, ValueError):
    """Raised when a document payload fails validation."""
