#!/usr/bin/env python3
"""
Delete stored report exports that no export history entry references.

An export object normally gets its history entry right after it is stored;
if the process dies in between, the object is left behind. This sweep removes
such objects once they are older than the grace period.

Usage:
    python scripts/sweep_orphan_exports.py

    # Show what would be deleted
    python scripts/sweep_orphan_exports.py --dry-run

    # Custom grace period
    python scripts/sweep_orphan_exports.py --older-than-minutes 240
"""

import argparse
import logging
import sys
from datetime import timedelta

from sitemark.config import settings
from sitemark.db import init_schema
from sitemark.services.report_export import ExportPublisher

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Sweep orphaned report export objects"
    )
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=settings.orphan_sweep_minutes,
        help=f"Only sweep objects older than this (default: {settings.orphan_sweep_minutes})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List orphans without deleting them",
    )
    args = parser.parse_args(argv)

    if args.older_than_minutes < 0:
        parser.error("--older-than-minutes must be >= 0")

    init_schema()
    publisher = ExportPublisher()
    orphans = publisher.sweep_orphaned_exports(
        older_than=timedelta(minutes=args.older_than_minutes),
        dry_run=args.dry_run,
    )

    action = "Would delete" if args.dry_run else "Deleted"
    logger.info(f"{action} {len(orphans)} orphaned export(s) under {settings.export_prefix}/")
    return 0


if __name__ == "__main__":
    sys.exit(main())
