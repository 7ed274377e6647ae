"""
Main entrypoint: runs the sync scheduler.

FastAPI runs separately under uvicorn.

Usage:
    python -m datahub setup                     # store Clio credentials
    python -m datahub backfill --dataset wip    # backfill uncovered months
    python -m datahub                           # starts the scheduler
    uvicorn datahub.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from datahub.scripts.setup import run_setup
    run_setup()


def _run_backfill(argv) -> None:
    from datahub.scripts.backfill import main
    main(argv)


async def _run_scheduler() -> None:
    from datahub.config import get_settings
    from datahub.hub import get_hub
    from datahub.scheduler.jobs import build_scheduler

    settings = get_settings()
    hub = get_hub()

    scheduler = build_scheduler(hub)
    scheduler.start()
    logger.info(
        "Scheduler started (collected time at :%s past each hour, rolling %d days at %02d:03 %s)",
        settings.daily_sync_minutes.replace(",", "/:"),
        settings.rolling_sync_days,
        settings.rolling_sync_hour,
        settings.scheduler_timezone,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await hub.aclose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `setup`, `backfill ...`, or nothing for the scheduler
    if len(sys.argv) > 1 and sys.argv[1] == "setup":
        _run_setup()
    elif len(sys.argv) > 1 and sys.argv[1] == "backfill":
        _run_backfill(sys.argv[2:])
    else:
        asyncio.run(_run_scheduler())
