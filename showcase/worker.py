"""
Periodic orphan sweep. Run under systemd/supervisor next to the API, or once
from cron with ``--once``.
"""

from __future__ import annotations

import argparse
import logging
import random
import time
from datetime import timedelta
from typing import Optional

from showcase.config import get_settings
from showcase.dependencies import Services, build_services
from showcase.reclaimer import SweepReport

logger = logging.getLogger(__name__)


def run_sweep_once(
    services: Services,
    older_than_minutes: Optional[int] = None,
    dry_run: bool = False,
) -> SweepReport:
    if older_than_minutes is None:
        older_than_minutes = services.settings.sweep_older_than_minutes
    logger.info(
        "Sweeping blobs older than %d minute(s)%s",
        older_than_minutes,
        " (dry run)" if dry_run else "",
    )
    return services.reclaimer.sweep(
        older_than=timedelta(minutes=older_than_minutes), dry_run=dry_run
    )


def run_loop(
    services: Services,
    interval_seconds: float,
    jitter_seconds: float = 0,
    older_than_minutes: Optional[int] = None,
) -> None:
    while True:
        try:
            report = run_sweep_once(services, older_than_minutes)
            if report.errors:
                logger.warning("Sweep finished with %d error(s)", len(report.errors))
        except Exception:
            logger.exception("Sweep failed")
        sleep_for = interval_seconds + random.uniform(0, max(jitter_seconds, 0))
        logger.info("Sleeping %.0fs", sleep_for)
        time.sleep(sleep_for)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Orphaned media sweeper")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.sweep_older_than_minutes,
        help="Only reclaim blobs created more than N minutes ago",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=settings.sweep_interval_seconds,
        help="Seconds between sweeps",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=60,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    services = build_services(settings)
    try:
        if args.once:
            report = run_sweep_once(services, args.older_than)
            return 1 if report.errors else 0
        run_loop(
            services,
            interval_seconds=args.interval_seconds,
            jitter_seconds=args.jitter_seconds,
            older_than_minutes=args.older_than,
        )
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        services.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
