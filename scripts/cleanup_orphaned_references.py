"""
Remove ledger entries whose blob no longer exists and clear the document
field that still points at it.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from showcase.config import get_settings
from showcase.dependencies import Services, build_services

logger = logging.getLogger(__name__)


def cleanup_references(services: Services, dry_run: bool = False) -> tuple[int, int]:
    """Returns ``(references removed, documents cleared)``."""
    removed = 0
    cleared = 0
    entries = services.ledger.list_entries()
    logger.info("Checking %d reference(s)", len(entries))
    for entry in entries:
        try:
            if services.store.exists(entry.blob_id):
                continue
            logger.info(
                "Blob %s is missing (referenced by %s as %s)",
                entry.blob_id,
                entry.owner_id,
                entry.kind.value,
            )
            if dry_run:
                continue
            if services.ledger.remove_reference(entry.blob_id, entry.owner_id, entry.kind):
                removed += 1
            if services.media_docs.detach_missing_blob(entry):
                cleared += 1
        except Exception:
            logger.exception("Error checking blob %s", entry.blob_id)
    return removed, cleared


def main() -> int:
    parser = argparse.ArgumentParser(description="Remove references to missing media blobs")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report missing blobs",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    services = build_services(get_settings())
    try:
        removed, cleared = cleanup_references(services, dry_run=args.dry_run)
    finally:
        services.close()
    logger.info("Removed %d orphaned reference(s), cleared %d document field(s)", removed, cleared)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
