# src/gatehouse/scripts/sweep.py
"""Run one expiry sweep, for cron or another external scheduler."""
from __future__ import annotations

import argparse
import logging
import sys

from gatehouse.core.errors import GatehouseError
from gatehouse.services.sweeper import get_expiry_sweeper

logger = logging.getLogger("gatehouse.sweep")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gatehouse-sweep",
        description=(
            "Delete expired sessions and challenge sessions and restart elapsed "
            "request quotas once, then exit."
        ),
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="log at DEBUG level"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s [%(name)s] %(message)s",
    )
    try:
        report = get_expiry_sweeper().sweep()
    except GatehouseError as exc:
        logger.error("Sweep failed: %s", exc)
        return 1

    print(
        f"sessions={report.sessions_deleted} "
        f"challenges={report.challenges_deleted} "
        f"cache_entries={report.cache_entries_dropped} "
        f"counts_reset={report.counts_reset}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
