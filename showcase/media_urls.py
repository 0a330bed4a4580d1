"""
Blob ids and blob-reference URLs (``/media/<blobId>``).
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

from showcase.errors import InvalidReferenceError

MEDIA_URL_PREFIX = "/media/"
BLOB_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")


def new_blob_id() -> str:
    return uuid.uuid4().hex[:24]


def validate_blob_id(blob_id: object) -> str:
    """Return the canonical (lower-case) form of a blob id or raise."""
    if not isinstance(blob_id, str) or not BLOB_ID_PATTERN.match(blob_id):
        raise InvalidReferenceError(blob_id, "invalid blob id format")
    return blob_id.lower()


def media_url(blob_id: str) -> str:
    return f"{MEDIA_URL_PREFIX}{validate_blob_id(blob_id)}"


def normalize_url(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidReferenceError(value, "reference fields must hold strings")
    value = value.strip()
    return value or None


def parse_media_url(value: object) -> Optional[str]:
    """
    Extract the blob id from a field value.

    Returns None for empty values and external URLs. Values that claim to be
    blob references but carry a malformed id raise InvalidReferenceError.
    """
    url = normalize_url(value)
    if url is None or not url.startswith(MEDIA_URL_PREFIX):
        return None
    blob_id = url[len(MEDIA_URL_PREFIX):].rstrip("/")
    return validate_blob_id(blob_id)