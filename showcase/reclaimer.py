"""
Orphan reclamation for the blob store.

``reclaim_if_orphaned`` is the primary trigger, called right after a ledger
entry is removed. ``sweep`` is the backstop: it re-derives the truth from the
blob store and the ledger alone and repairs drift in both directions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from showcase.errors import BlobNotFoundError
from showcase.ledger import ReferenceEntry, ReferenceLedger
from showcase.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    blobs_scanned: int = 0
    blobs_deleted: int = 0
    references_removed: int = 0
    orphan_ids: list[str] = field(default_factory=list)
    stale_references: list[ReferenceEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    def as_dict(self) -> dict:
        return {
            "blobs_scanned": self.blobs_scanned,
            "blobs_deleted": self.blobs_deleted,
            "references_removed": self.references_removed,
            "orphan_ids": list(self.orphan_ids),
            "stale_references": [entry.as_dict() for entry in self.stale_references],
            "errors": list(self.errors),
            "dry_run": self.dry_run,
        }


class OrphanReclaimer:
    """Deletes blobs that no ledger entry points at."""

    def __init__(self, store: BlobStore, ledger: ReferenceLedger):
        self.store = store
        self.ledger = ledger

    def reclaim_if_orphaned(self, blob_id: str) -> bool:
        """
        Delete ``blob_id`` if it has no references. Returns True only when this
        call performed the delete; a blob that is referenced, or that another
        caller already removed, yields False.
        """
        if self.ledger.has_any_reference(blob_id):
            return False
        try:
            deleted = self.store.delete_if_unreferenced(blob_id)
        except BlobNotFoundError:
            logger.debug("Blob %s already gone, nothing to reclaim", blob_id)
            return False
        if deleted:
            logger.info("Reclaimed orphaned blob %s", blob_id)
        else:
            logger.info("Blob %s gained a reference before reclaim, keeping it", blob_id)
        return deleted

    def sweep(
        self,
        older_than: Optional[timedelta] = None,
        dry_run: bool = False,
    ) -> SweepReport:
        """
        Full reconciliation pass.

        Blobs created within ``older_than`` are left alone so that uploads
        that have not been linked to a document yet survive. Ledger entries
        are read before the blob listing: an entry can only exist for a blob
        that was uploaded earlier, so a blob missing from the later listing is
        genuinely gone (re-confirmed before the entry is removed).
        """
        report = SweepReport(dry_run=dry_run)
        cutoff = time.time() - older_than.total_seconds() if older_than else None

        try:
            entries = self.ledger.list_entries()
            existing_ids = self.store.list_ids()
            candidates = self.store.find_older_than(cutoff)
        except Exception as exc:
            logger.exception("Sweep could not list blobs or references")
            report.errors.append(f"listing failed: {exc}")
            return report

        referenced_ids = {entry.blob_id for entry in entries}
        for info in candidates:
            report.blobs_scanned += 1
            if info.blob_id in referenced_ids:
                continue
            try:
                if dry_run:
                    if not self.ledger.has_any_reference(info.blob_id):
                        report.orphan_ids.append(info.blob_id)
                    continue
                if self.reclaim_if_orphaned(info.blob_id):
                    report.orphan_ids.append(info.blob_id)
                    report.blobs_deleted += 1
            except Exception as exc:
                logger.exception("Failed to reclaim blob %s", info.blob_id)
                report.errors.append(f"blob {info.blob_id}: {exc}")

        for entry in entries:
            if entry.blob_id in existing_ids:
                continue
            try:
                if self.store.exists(entry.blob_id):
                    continue
                report.stale_references.append(entry)
                if dry_run:
                    continue
                if self.ledger.remove_reference(entry.blob_id, entry.owner_id, entry.kind):
                    report.references_removed += 1
                    logger.info(
                        "Removed stale reference %s -> %s (%s)",
                        entry.owner_id,
                        entry.blob_id,
                        entry.kind.value,
                    )
            except Exception as exc:
                logger.exception("Failed to repair reference to blob %s", entry.blob_id)
                report.errors.append(f"reference {entry.blob_id}/{entry.owner_id}: {exc}")

        logger.info(
            "Sweep complete: scanned %d blobs, deleted %d, removed %d stale references, %d errors",
            report.blobs_scanned,
            report.blobs_deleted,
            report.references_removed,
            len(report.errors),
        )
        return report
