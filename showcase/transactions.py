"""
Upload-then-link helpers with compensating rollback.

The blob store and the document store do not share a transaction, so a
multi-step write records an undo action for every completed step and runs
them in reverse if a later step fails. Undo failures are logged and never
replace the original error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from showcase.errors import BlobNotFoundError, DocumentValidationError
from showcase.media_urls import media_url
from showcase.types import Collection, FieldBinding, binding_for_field

if TYPE_CHECKING:
    from showcase.mutators import MediaAwareDocuments
    from showcase.storage import BlobStore, UploadContent

logger = logging.getLogger(__name__)


class CompensationLog:
    """
    Ordered list of completed steps and their undo actions.

    Used as a context manager, any exception (cancellation included) inside
    the block triggers ``rollback`` before it propagates; a clean exit
    forgets the recorded steps.
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self._steps: list[tuple[str, Callable[[], Any]]] = []

    @property
    def steps(self) -> list[str]:
        return [description for description, _ in self._steps]

    def record(self, description: str, undo: Callable[[], Any]) -> None:
        self._steps.append((description, undo))

    def rollback(self) -> list[str]:
        """Run undo actions newest first; returns the descriptions that failed."""
        failed = []
        while self._steps:
            description, undo = self._steps.pop()
            try:
                undo()
            except Exception:
                logger.exception("Rollback of %s failed at: %s", self.label, description)
                failed.append(description)
            else:
                logger.info("Rolled back %s: %s", self.label, description)
        return failed

    def discard(self) -> None:
        self._steps.clear()

    def __enter__(self) -> "CompensationLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.discard()
            return False
        if self._steps:
            logger.warning(
                "%s failed (%s), rolling back %d step(s)",
                self.label,
                exc_type.__name__,
                len(self._steps),
            )
            self.rollback()
        return False


@dataclass
class PendingUpload:
    """A file to store and link into ``field`` of the document being written."""

    field: str
    content: "UploadContent"
    filename: str
    content_type: Optional[str] = None


def _discard_blob(store: "BlobStore", blob_id: str) -> None:
    try:
        store.delete(blob_id)
    except BlobNotFoundError:
        pass


def _resolve_bindings(
    collection: Collection, uploads: Sequence[PendingUpload]
) -> list[FieldBinding]:
    try:
        return [binding_for_field(collection, upload.field) for upload in uploads]
    except KeyError as exc:
        raise DocumentValidationError(exc.args[0]) from exc


def _upload_into(
    store: "BlobStore",
    payload: dict,
    bindings: Sequence[FieldBinding],
    uploads: Sequence[PendingUpload],
    compensation: CompensationLog,
) -> None:
    for binding, upload in zip(bindings, uploads):
        blob_id = store.upload(upload.content, upload.filename, upload.content_type)
        compensation.record(f"delete blob {blob_id}", partial(_discard_blob, store, blob_id))
        url = media_url(blob_id)
        if binding.many:
            payload[binding.field] = list(payload.get(binding.field) or []) + [url]
        else:
            payload[binding.field] = url


def create_with_blobs(
    media_docs: "MediaAwareDocuments",
    store: "BlobStore",
    collection: Collection,
    data: dict,
    uploads: Sequence[PendingUpload],
) -> dict:
    """
    Upload every file, write the ``/media/<id>`` URLs into the payload and
    insert the document. Any failure deletes the blobs uploaded so far.
    """
    collection = Collection(collection)
    payload = dict(data)
    bindings = _resolve_bindings(collection, uploads)
    label = f"create {collection.value} with {len(uploads)} upload(s)"
    with CompensationLog(label) as compensation:
        _upload_into(store, payload, bindings, uploads, compensation)
        return media_docs.create(collection, payload)


def update_with_blobs(
    media_docs: "MediaAwareDocuments",
    store: "BlobStore",
    collection: Collection,
    doc_id: str,
    updates: dict,
    uploads: Sequence[PendingUpload],
) -> dict:
    """
    Same as ``create_with_blobs`` for an existing document. Uploads into list
    fields are appended to the submitted list, or to the stored one when the
    update leaves that field out. Replaced blobs are reclaimed by the mutator
    once the write succeeded.
    """
    collection = Collection(collection)
    bindings = _resolve_bindings(collection, uploads)
    current = media_docs.get(collection, doc_id)
    payload = dict(updates)
    for binding in bindings:
        if binding.many and binding.field not in payload:
            payload[binding.field] = list(current.get(binding.field) or [])
    label = f"update {collection.value}/{doc_id} with {len(uploads)} upload(s)"
    with CompensationLog(label) as compensation:
        _upload_into(store, payload, bindings, uploads, compensation)
        return media_docs.update(collection, doc_id, payload)
