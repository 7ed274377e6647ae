"""
APScheduler jobs for recurring collected-time syncs.

  daily_collected_sync    today's payments, twice an hour (default :03/:33,
                          offset from the legacy timer triggers at :00/:30)
  rolling_collected_sync  today and the previous N days (default 7) once a
                          night at 23:03, catching payments Clio back-dates

Both run in replace mode, so overlapping runs converge on Clio's view. A
run that collides with an in-flight run of the same range is skipped.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from datahub.config import get_settings
from datahub.errors import OperationInFlight
from datahub.sync.types import Dataset, SyncRequest

logger = logging.getLogger(__name__)


def build_scheduler(hub) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        hub: DataHub the jobs run against.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    scheduler.add_job(
        _daily_collected_sync,
        trigger="cron",
        minute=settings.daily_sync_minutes,
        id="daily_collected_sync",
        replace_existing=True,
        kwargs={"hub": hub},
    )
    scheduler.add_job(
        _rolling_collected_sync,
        trigger="cron",
        hour=settings.rolling_sync_hour,
        minute=3,
        id="rolling_collected_sync",
        replace_existing=True,
        kwargs={"hub": hub, "days": settings.rolling_sync_days},
    )

    return scheduler


async def _run(hub, request: SyncRequest, label: str) -> None:
    try:
        result = await hub.sync(request)
        logger.info("%s done: %s", label, result.message)
    except OperationInFlight:
        logger.info("%s skipped: previous run still in flight", label)
    except Exception as exc:
        logger.error("%s failed: %s", label, exc)


async def _daily_collected_sync(hub) -> None:
    request = SyncRequest.rolling(
        Dataset.COLLECTED_TIME, 0, invoked_by="scheduler", triggered_by="scheduler"
    )
    await _run(hub, request, "Daily collected sync")


async def _rolling_collected_sync(hub, days: int = 7) -> None:
    request = SyncRequest.rolling(
        Dataset.COLLECTED_TIME, days, invoked_by="scheduler", triggered_by="scheduler"
    )
    await _run(hub, request, f"Rolling {days}-day collected sync")
