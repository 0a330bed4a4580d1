"""
Blob storage for uploaded media: in-memory, database-backed and S3-compatible.

Blobs are immutable once written. Replacing a file means uploading a new blob
and letting the reclaimer delete the old one once nothing references it.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterable, Iterator, Optional, Protocol, Union
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import delete, exists, select
from sqlalchemy.exc import SQLAlchemyError

from showcase.db import (
    Database,
    FileReferenceRow,
    InMemoryDatabase,
    MediaChunkRow,
    MediaFileRow,
)
from showcase.errors import BlobNotFoundError, UploadFailedError, UploadTooLargeError
from showcase.media_urls import BLOB_ID_PATTERN, new_blob_id, validate_blob_id

logger = logging.getLogger(__name__)

UploadContent = Union[bytes, bytearray, memoryview, BinaryIO, Iterable[bytes]]

DEFAULT_CONTENT_TYPE = "application/octet-stream"
READ_CHUNK_SIZE = 64 * 1024

EXTENSION_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
}


@dataclass(frozen=True)
class BlobInfo:
    blob_id: str
    filename: str
    content_type: Optional[str]
    length: int
    checksum: str
    created_at: float


@dataclass(frozen=True)
class StoredBlob:
    info: BlobInfo
    data: bytes


class BlobStore(Protocol):
    """Defines the operations the media subsystem needs from blob storage."""

    def upload(
        self,
        content: UploadContent,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        ...

    def download(self, blob_id: str) -> StoredBlob:
        ...

    def get_info(self, blob_id: str) -> BlobInfo:
        ...

    def delete(self, blob_id: str) -> None:
        ...

    def delete_if_unreferenced(self, blob_id: str) -> bool:
        ...

    def exists(self, blob_id: str) -> bool:
        ...

    def list_ids(self) -> set[str]:
        ...

    def find_older_than(self, cutoff: Optional[float]) -> list[BlobInfo]:
        ...


def guess_type_from_filename(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    lower = filename.lower()
    for extension, content_type in EXTENSION_CONTENT_TYPES.items():
        if lower.endswith(extension):
            return content_type
    return None


def resolve_content_type(info: BlobInfo) -> str:
    """Stored content type first, then the filename extension, then binary."""
    return (
        info.content_type
        or guess_type_from_filename(info.filename)
        or DEFAULT_CONTENT_TYPE
    )


def _iter_chunks(content: UploadContent) -> Iterator[bytes]:
    if isinstance(content, (bytes, bytearray, memoryview)):
        yield bytes(content)
        return
    if isinstance(content, str):
        raise TypeError("upload content must be bytes, not str")
    if hasattr(content, "read"):
        while True:
            chunk = content.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk
    else:
        yield from content


def read_content(
    content: UploadContent, max_bytes: Optional[int] = None
) -> tuple[bytes, str]:
    """
    Drain an upload fully and return ``(data, sha256 hex digest)``.

    Nothing is written to a store until this returns, so a stream that fails
    or is cancelled half way never produces a readable partial blob.
    """
    hasher = hashlib.sha256()
    buffer = bytearray()
    for chunk in _iter_chunks(content):
        if not isinstance(chunk, (bytes, bytearray, memoryview)):
            raise TypeError(
                f"upload chunks must be bytes, got {type(chunk).__name__}"
            )
        buffer.extend(chunk)
        hasher.update(chunk)
        if max_bytes is not None and len(buffer) > max_bytes:
            raise UploadTooLargeError(max_bytes)
    return bytes(buffer), hasher.hexdigest()


class InMemoryBlobStore:
    """Test double for blob storage; shares its lock with the in-memory ledger."""

    def __init__(self, database: InMemoryDatabase, max_upload_bytes: Optional[int] = None):
        self.database = database
        self.max_upload_bytes = max_upload_bytes

    def upload(
        self,
        content: UploadContent,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        data, checksum = read_content(content, self.max_upload_bytes)
        blob_id = new_blob_id()
        info = BlobInfo(
            blob_id=blob_id,
            filename=filename,
            content_type=content_type or None,
            length=len(data),
            checksum=checksum,
            created_at=time.time(),
        )
        with self.database.lock:
            self.database.blobs[blob_id] = (info, data)
        return blob_id

    def _get(self, blob_id: str) -> tuple[BlobInfo, bytes]:
        with self.database.lock:
            stored = self.database.blobs.get(blob_id)
        if stored is None:
            raise BlobNotFoundError(blob_id)
        return stored

    def download(self, blob_id: str) -> StoredBlob:
        info, data = self._get(blob_id)
        return StoredBlob(info=info, data=data)

    def get_info(self, blob_id: str) -> BlobInfo:
        return self._get(blob_id)[0]

    def delete(self, blob_id: str) -> None:
        with self.database.lock:
            if self.database.blobs.pop(blob_id, None) is None:
                raise BlobNotFoundError(blob_id)

    def delete_if_unreferenced(self, blob_id: str) -> bool:
        with self.database.lock:
            if blob_id not in self.database.blobs:
                raise BlobNotFoundError(blob_id)
            if any(key[0] == blob_id for key in self.database.references):
                return False
            del self.database.blobs[blob_id]
            return True

    def exists(self, blob_id: str) -> bool:
        with self.database.lock:
            return blob_id in self.database.blobs

    def list_ids(self) -> set[str]:
        with self.database.lock:
            return set(self.database.blobs)

    def find_older_than(self, cutoff: Optional[float]) -> list[BlobInfo]:
        with self.database.lock:
            infos = [info for info, _ in self.database.blobs.values()]
        if cutoff is not None:
            infos = [info for info in infos if info.created_at < cutoff]
        return sorted(infos, key=lambda info: info.created_at)


class SqlBlobStore:
    """
    Blob store in the application database. Content is split into ordered
    fixed-size chunk rows next to one metadata row per blob.
    """

    def __init__(
        self,
        database: Database,
        chunk_size: int = 255 * 1024,
        max_upload_bytes: Optional[int] = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.database = database
        self.chunk_size = chunk_size
        self.max_upload_bytes = max_upload_bytes

    def _to_info(self, row: MediaFileRow) -> BlobInfo:
        return BlobInfo(
            blob_id=row.blob_id,
            filename=row.filename,
            content_type=row.content_type,
            length=row.length,
            checksum=row.checksum,
            created_at=row.created_at,
        )

    def upload(
        self,
        content: UploadContent,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        data, checksum = read_content(content, self.max_upload_bytes)
        blob_id = new_blob_id()
        try:
            with self.database.Session() as session:
                session.add(
                    MediaFileRow(
                        blob_id=blob_id,
                        filename=filename,
                        content_type=content_type or None,
                        length=len(data),
                        chunk_size=self.chunk_size,
                        checksum=checksum,
                        created_at=time.time(),
                    )
                )
                for n, offset in enumerate(range(0, len(data), self.chunk_size)):
                    session.add(
                        MediaChunkRow(
                            blob_id=blob_id,
                            n=n,
                            data=data[offset : offset + self.chunk_size],
                        )
                    )
                session.commit()
        except SQLAlchemyError as exc:
            raise UploadFailedError(f"Failed to store {filename!r}: {exc}") from exc
        return blob_id

    def download(self, blob_id: str) -> StoredBlob:
        with self.database.Session() as session:
            row = session.get(MediaFileRow, blob_id)
            if not row:
                raise BlobNotFoundError(blob_id)
            chunks = session.execute(
                select(MediaChunkRow.data)
                .where(MediaChunkRow.blob_id == blob_id)
                .order_by(MediaChunkRow.n.asc())
            ).scalars()
            return StoredBlob(info=self._to_info(row), data=b"".join(chunks))

    def get_info(self, blob_id: str) -> BlobInfo:
        with self.database.Session() as session:
            row = session.get(MediaFileRow, blob_id)
            if not row:
                raise BlobNotFoundError(blob_id)
            return self._to_info(row)

    def delete(self, blob_id: str) -> None:
        with self.database.Session() as session:
            deleted = (
                session.query(MediaFileRow)
                .filter(MediaFileRow.blob_id == blob_id)
                .delete(synchronize_session=False)
            )
            if not deleted:
                session.rollback()
                raise BlobNotFoundError(blob_id)
            session.execute(delete(MediaChunkRow).where(MediaChunkRow.blob_id == blob_id))
            session.commit()

    def delete_if_unreferenced(self, blob_id: str) -> bool:
        # The reference check and the delete are one statement.
        referenced = exists().where(FileReferenceRow.blob_id == blob_id)
        with self.database.Session() as session:
            deleted = (
                session.query(MediaFileRow)
                .filter(MediaFileRow.blob_id == blob_id, ~referenced)
                .delete(synchronize_session=False)
            )
            if not deleted:
                session.rollback()
                if session.get(MediaFileRow, blob_id) is None:
                    raise BlobNotFoundError(blob_id)
                return False
            session.execute(delete(MediaChunkRow).where(MediaChunkRow.blob_id == blob_id))
            session.commit()
            return True

    def exists(self, blob_id: str) -> bool:
        with self.database.Session() as session:
            return session.get(MediaFileRow, blob_id) is not None

    def list_ids(self) -> set[str]:
        with self.database.Session() as session:
            return set(session.execute(select(MediaFileRow.blob_id)).scalars())

    def find_older_than(self, cutoff: Optional[float]) -> list[BlobInfo]:
        with self.database.Session() as session:
            stmt = select(MediaFileRow).order_by(MediaFileRow.created_at.asc())
            if cutoff is not None:
                stmt = stmt.where(MediaFileRow.created_at < cutoff)
            return [self._to_info(row) for row in session.execute(stmt).scalars()]


def _is_missing(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return code in {"404", "NoSuchKey", "NotFound"}


@dataclass
class S3BlobStore:
    """
    S3-compatible blob store. One object per blob under ``prefix``; filename,
    checksum and creation time travel as object user metadata.

    S3 cannot check the ledger and delete in one step, so
    ``delete_if_unreferenced`` reads then acts and leaves the rare lost race
    to the periodic sweep.
    """

    bucket: str
    ledger: Any
    region: str = ""
    endpoint: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""
    prefix: str = "media/"
    max_upload_bytes: Optional[int] = None
    client: Any = field(default=None, repr=False)

    def __post_init__(self):
        if self.client is None:
            config = Config(
                s3={"addressing_style": "auto"},
                signature_version="s3v4",
            )
            self.client = boto3.client(
                "s3",
                endpoint_url=self.endpoint or None,
                region_name=self.region or None,
                aws_access_key_id=self.access_key_id or None,
                aws_secret_access_key=self.secret_access_key or None,
                config=config,
            )

    def _key(self, blob_id: str) -> str:
        return f"{self.prefix}{blob_id}"

    def _to_info(self, blob_id: str, response: dict) -> BlobInfo:
        metadata = response.get("Metadata") or {}
        created_at = metadata.get("created-at")
        if created_at:
            created = float(created_at)
        else:
            created = response["LastModified"].timestamp()
        return BlobInfo(
            blob_id=blob_id,
            filename=unquote(metadata.get("filename", "")),
            content_type=metadata.get("content-type") or None,
            length=int(response.get("ContentLength", 0)),
            checksum=metadata.get("checksum", ""),
            created_at=created,
        )

    def _head(self, blob_id: str) -> dict:
        try:
            return self.client.head_object(Bucket=self.bucket, Key=self._key(blob_id))
        except ClientError as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(blob_id) from exc
            raise

    def upload(
        self,
        content: UploadContent,
        filename: str,
        content_type: Optional[str] = None,
    ) -> str:
        data, checksum = read_content(content, self.max_upload_bytes)
        blob_id = new_blob_id()
        params = {
            "Bucket": self.bucket,
            "Key": self._key(blob_id),
            "Body": data,
            "Metadata": {
                "filename": quote(filename),
                "content-type": content_type or "",
                "checksum": checksum,
                "created-at": repr(time.time()),
            },
        }
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            raise UploadFailedError(f"Failed to store {filename!r}: {exc}") from exc
        return blob_id

    def download(self, blob_id: str) -> StoredBlob:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self._key(blob_id))
        except ClientError as exc:
            if _is_missing(exc):
                raise BlobNotFoundError(blob_id) from exc
            raise
        data = response["Body"].read()
        return StoredBlob(info=self._to_info(blob_id, response), data=data)

    def get_info(self, blob_id: str) -> BlobInfo:
        return self._to_info(blob_id, self._head(blob_id))

    def delete(self, blob_id: str) -> None:
        # S3 deletes are silent for missing keys, so look first.
        self._head(blob_id)
        self.client.delete_object(Bucket=self.bucket, Key=self._key(blob_id))

    def delete_if_unreferenced(self, blob_id: str) -> bool:
        self._head(blob_id)
        if self.ledger.has_any_reference(blob_id):
            return False
        self.client.delete_object(Bucket=self.bucket, Key=self._key(blob_id))
        return True

    def exists(self, blob_id: str) -> bool:
        try:
            self._head(blob_id)
        except BlobNotFoundError:
            return False
        return True

    def _iter_objects(self) -> Iterator[tuple[str, dict]]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=self.prefix):
            for obj in page.get("Contents", []):
                blob_id = obj["Key"][len(self.prefix):]
                if BLOB_ID_PATTERN.match(blob_id):
                    yield validate_blob_id(blob_id), obj

    def list_ids(self) -> set[str]:
        return {blob_id for blob_id, _ in self._iter_objects()}

    def find_older_than(self, cutoff: Optional[float]) -> list[BlobInfo]:
        infos = []
        for blob_id, obj in self._iter_objects():
            if cutoff is not None and obj["LastModified"].timestamp() >= cutoff:
                continue
            try:
                info = self.get_info(blob_id)
            except BlobNotFoundError:
                continue
            if cutoff is None or info.created_at < cutoff:
                infos.append(info)
        return sorted(infos, key=lambda info: info.created_at)
