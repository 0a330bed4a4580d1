"""
One-shot cleanup of blobs that no document references.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from showcase.config import get_settings
from showcase.dependencies import build_services
from showcase.worker import run_sweep_once

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Delete orphaned media blobs")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.sweep_older_than_minutes,
        help="Only consider blobs created more than N minutes ago",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report orphans without deleting anything",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    services = build_services(settings)
    try:
        report = run_sweep_once(services, args.older_than, dry_run=args.dry_run)
    finally:
        services.close()

    print(json.dumps(report.as_dict(), indent=2))
    return 1 if report.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
