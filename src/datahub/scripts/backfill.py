"""
Backfill script: sync uncovered months, or re-sync one month.

Usage:
    python -m datahub backfill --dataset wip
    python -m datahub backfill --dataset collectedTime --month 2024-02
    python -m datahub backfill --dataset wip --months 24 --dry-run

Months run oldest first with a pause between them. A failed month is
reported and the batch continues. With --dry-run the uncovered months are
listed and nothing is synced.
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def _backfill(dataset: str, month: str = None, months: int = None, dry_run: bool = False) -> int:
    from datahub.hub import build_hub

    hub = build_hub()
    try:
        if dry_run:
            keys = hub.coverage.uncovered(dataset, months=months)
            logger.info("Uncovered %s months: %s", dataset, ", ".join(keys) or "none")
            return 0

        result = await hub.backfill(dataset, month_key=month, invoked_by="cli", months=months)
    finally:
        await hub.aclose()

    for key in result.done:
        logger.info("%s ok: %s", key, result.messages.get(key, ""))
    for key in result.skipped:
        logger.info("%s skipped: %s", key, result.messages.get(key, ""))
    for key in result.errors:
        logger.warning("%s failed: %s", key, result.messages.get(key, ""))
    if result.aborted:
        logger.warning("Backfill aborted")

    logger.info(
        "Backfill complete. Done: %d, Failed: %d, Skipped: %d",
        len(result.done), len(result.errors), len(result.skipped),
    )
    return 1 if result.errors or result.aborted else 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Backfill Clio datasets month by month")
    parser.add_argument(
        "--dataset",
        required=True,
        choices=["collectedTime", "wip"],
        help="Dataset to backfill",
    )
    parser.add_argument(
        "--month",
        default=None,
        help="Re-sync a single month (YYYY-MM) even if already covered",
    )
    parser.add_argument(
        "--months",
        type=int,
        default=None,
        help="How many trailing months to audit (default: AUDIT_MONTHS setting)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List uncovered months without syncing",
    )
    args = parser.parse_args(argv)
    sys.exit(asyncio.run(_backfill(args.dataset, args.month, args.months, args.dry_run)))


if __name__ == "__main__":
    main()
