#!/usr/bin/env python3
"""
Storage repair from the command line.

Scans the configured blob store (and the local uploads mirror when
LOCAL_MIRROR_ROOT is set), renames image files saved under a video
extension, and copies misplaced thumbnails to their canonical keys.

Usage:
    cd backend
    python scripts/run_repair.py --dry-run
    python scripts/run_repair.py --root shared/uploads --root uploads

Exit codes:
    0 - Scan completed without errors
    1 - Scan completed with errors (conflicts or storage failures)
    130 - Interrupted
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from thumbkeeper.core.logging_config import setup_logging  # noqa: E402
from thumbkeeper.services.repair_scanner import cancel_repair_scan, run_repair_scan  # noqa: E402


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Repair thumbnail naming drift in media storage"
    )
    parser.add_argument(
        "--root",
        action="append",
        dest="roots",
        metavar="PREFIX",
        help="Key prefix to scan (repeatable; default: primary and latest legacy root)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL"
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> dict:
    task = asyncio.create_task(run_repair_scan(roots=args.roots, dry_run=args.dry_run))
    try:
        stats = await asyncio.shield(task)
    except asyncio.CancelledError:
        # Ctrl-C: let assets already in progress finish
        cancel_repair_scan()
        stats = await task
    return stats.to_dict()


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(log_level=args.log_level)

    try:
        summary = asyncio.run(_run(args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130

    print(json.dumps(summary, indent=2))
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
