"""
Reference-aware create/update/delete for projects and users.

When a field that holds a ``/media/<blobId>`` URL changes, the ledger entry
for the new blob is added before the document write and the entry for the
old blob is removed (and the blob reclaimed) only after the write succeeded.
Unchanged fields produce no ledger traffic at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from showcase.documents import DocumentStore, apply_updates
from showcase.errors import DocumentNotFoundError, InvalidReferenceError
from showcase.ledger import ReferenceEntry, ReferenceLedger
from showcase.media_urls import normalize_url, parse_media_url
from showcase.reclaimer import OrphanReclaimer
from showcase.transactions import CompensationLog
from showcase.types import (
    Collection,
    FieldBinding,
    OwnerFieldKind,
    binding_for_kind,
    bindings_for,
)

logger = logging.getLogger(__name__)

TrackedReference = tuple[str, OwnerFieldKind]


@dataclass(frozen=True)
class ReferenceDiff:
    added: frozenset[TrackedReference] = field(default_factory=frozenset)
    removed: frozenset[TrackedReference] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


def _field_values(value: Any, binding: FieldBinding) -> list[Any]:
    if not binding.many:
        return [value]
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise InvalidReferenceError(value, f"{binding.field} must be a list")
    return list(value)


def _lenient_parse(value: Any) -> Optional[str]:
    try:
        return parse_media_url(value)
    except InvalidReferenceError:
        logger.warning("Ignoring malformed stored reference %r", value)
        return None


def field_blob_ids(value: Any, binding: FieldBinding, strict: bool = True) -> set[str]:
    """Blob ids named by one field; external URLs and empty values are skipped."""
    parse = parse_media_url if strict else _lenient_parse
    blob_ids = set()
    for item in _field_values(value, binding):
        blob_id = parse(item)
        if blob_id:
            blob_ids.add(blob_id)
    return blob_ids


def tracked_references(
    document: dict, bindings: Iterable[FieldBinding], strict: bool = True
) -> set[TrackedReference]:
    references: set[TrackedReference] = set()
    for binding in bindings:
        for blob_id in field_blob_ids(document.get(binding.field), binding, strict):
            references.add((blob_id, binding.kind))
    return references


def _normalized(value: Any, binding: FieldBinding) -> Any:
    if binding.many:
        if not isinstance(value, (list, tuple)):
            return value
        return [normalize_url(item) if isinstance(item, str) else item for item in value]
    return normalize_url(value) if isinstance(value, str) else value


def diff_references(
    old: dict, new: dict, bindings: Iterable[FieldBinding]
) -> ReferenceDiff:
    """
    Compare the reference-bearing fields of two document states.

    Fields whose normalized value did not change are skipped outright. New
    values are parsed strictly, old values leniently so that a malformed
    legacy value never blocks an unrelated edit.
    """
    added: set[TrackedReference] = set()
    removed: set[TrackedReference] = set()
    for binding in bindings:
        old_value = old.get(binding.field)
        new_value = new.get(binding.field)
        if _normalized(old_value, binding) == _normalized(new_value, binding):
            continue
        old_ids = field_blob_ids(old_value, binding, strict=False)
        new_ids = field_blob_ids(new_value, binding, strict=True)
        added.update((blob_id, binding.kind) for blob_id in new_ids - old_ids)
        removed.update((blob_id, binding.kind) for blob_id in old_ids - new_ids)
    return ReferenceDiff(added=frozenset(added), removed=frozenset(removed))


class MediaAwareDocuments:
    """Document writes that keep the reference ledger in step."""

    def __init__(
        self,
        documents: DocumentStore,
        ledger: ReferenceLedger,
        reclaimer: OrphanReclaimer,
    ):
        self.documents = documents
        self.ledger = ledger
        self.reclaimer = reclaimer

    def get(self, collection: Collection, doc_id: str) -> dict:
        doc = self.documents.get(collection, doc_id)
        if doc is None:
            raise DocumentNotFoundError(Collection(collection).value, doc_id)
        return doc

    def create(
        self, collection: Collection, data: dict, doc_id: Optional[str] = None
    ) -> dict:
        collection = Collection(collection)
        references = tracked_references(data, bindings_for(collection))
        doc_id = doc_id or self.documents.new_id()
        with CompensationLog(f"create {collection.value}/{doc_id}") as compensation:
            self._add_references(doc_id, references, compensation)
            return self.documents.insert(collection, doc_id, data)

    def update(self, collection: Collection, doc_id: str, updates: dict) -> dict:
        collection = Collection(collection)
        current = self.get(collection, doc_id)
        proposed = apply_updates(current, updates)
        diff = diff_references(current, proposed, bindings_for(collection))

        with CompensationLog(f"update {collection.value}/{doc_id}") as compensation:
            self._add_references(doc_id, diff.added, compensation)
            updated = self.documents.update(collection, doc_id, updates)
            if updated is None:
                raise DocumentNotFoundError(collection.value, doc_id)

        self._release(doc_id, diff.removed)
        return updated

    def delete(self, collection: Collection, doc_id: str) -> bool:
        collection = Collection(collection)
        current = self.documents.get(collection, doc_id)
        if current is None or not self.documents.delete(collection, doc_id):
            return False

        blob_ids = {
            blob_id
            for blob_id, _ in tracked_references(
                current, bindings_for(collection), strict=False
            )
        }
        try:
            blob_ids |= self.ledger.remove_all_for_owner(doc_id)
        except Exception:
            logger.exception(
                "Failed to remove references for deleted %s/%s", collection.value, doc_id
            )
        for blob_id in sorted(blob_ids):
            self._reclaim(blob_id)
        return True

    def detach_missing_blob(self, entry: ReferenceEntry) -> bool:
        """
        Clear the field that still names a blob which no longer exists.
        Returns True when the owning document was changed.
        """
        binding = binding_for_kind(entry.kind)
        doc = self.documents.get(binding.collection, entry.owner_id)
        if doc is None:
            return False
        value = doc.get(binding.field)
        if binding.many:
            items = _field_values(value, binding)
            kept = [item for item in items if _lenient_parse(item) != entry.blob_id]
            if len(kept) == len(items):
                return False
            self.documents.update(binding.collection, entry.owner_id, {binding.field: kept})
        else:
            if _lenient_parse(value) != entry.blob_id:
                return False
            self.documents.update(binding.collection, entry.owner_id, {binding.field: None})
        logger.info(
            "Cleared %s.%s on %s (blob %s is gone)",
            binding.collection.value,
            binding.field,
            entry.owner_id,
            entry.blob_id,
        )
        return True

    def _add_references(
        self,
        owner_id: str,
        references: Iterable[TrackedReference],
        compensation: CompensationLog,
    ) -> None:
        for blob_id, kind in sorted(references, key=lambda ref: (ref[0], ref[1].value)):
            if self.ledger.add_reference(blob_id, owner_id, kind):
                compensation.record(
                    f"remove reference {blob_id} ({kind.value})",
                    lambda blob_id=blob_id, kind=kind: self.ledger.remove_reference(
                        blob_id, owner_id, kind
                    ),
                )

    def _release(self, owner_id: str, references: Iterable[TrackedReference]) -> None:
        # Runs after the document write; failures are left for the sweep.
        for blob_id, kind in sorted(references, key=lambda ref: (ref[0], ref[1].value)):
            try:
                self.ledger.remove_reference(blob_id, owner_id, kind)
            except Exception:
                logger.exception(
                    "Failed to remove reference %s -> %s (%s)", owner_id, blob_id, kind.value
                )
                continue
            self._reclaim(blob_id)

    def _reclaim(self, blob_id: str) -> None:
        try:
            self.reclaimer.reclaim_if_orphaned(blob_id)
        except Exception:
            logger.exception("Failed to reclaim blob %s, leaving it for the sweep", blob_id)
