"""
BackfillQueue: sync uncovered months one at a time.

Months run sequentially in replace mode, oldest first. A failed month is
recorded with its message and the batch moves on. The batch registers its
own abort key (e.g. "backfillWip") and checks it before each month, so
abort() with no key stops the batch cleanly with partial results. A second
batch for the same dataset is rejected while one is running.

WIP current-month cap: the current week is read live from Clio by the
dashboards, so a WIP sync of the current month ends on the last completed
Sunday. When this week started on or before the 1st there is nothing to
sync yet and the month is skipped.
"""
import asyncio
import logging
from datetime import date, timedelta
from typing import Iterable, Optional, Tuple

from datahub.errors import AbortedByUser, OperationInFlight
from datahub.sync.abort import AbortSignal
from datahub.sync.coverage import CoverageTracker
from datahub.sync.executor import SyncExecutor
from datahub.sync.types import BackfillResult, Dataset, SyncMode, SyncRequest, month_bounds, month_key

logger = logging.getLogger(__name__)

SLEEP_BETWEEN_MONTHS = 2.0
SKIPPED_CURRENT_WEEK = "Current week started at beginning of month, nothing to sync yet"


def month_range(dataset: Dataset, key: str, today: Optional[date] = None) -> Optional[Tuple[date, date]]:
    """Sync range for a month, or None when the month must be skipped."""
    start, end = month_bounds(key)
    today = today or date.today()
    if Dataset(dataset) is Dataset.WIP and key == month_key(today):
        last_sunday = today - timedelta(days=today.weekday() + 1)
        if last_sunday < start:
            return None
        end = last_sunday
    return start, end


class BackfillQueue:
    def __init__(
        self,
        executor: SyncExecutor,
        coverage: CoverageTracker,
        abort_signal: AbortSignal,
        pause_seconds: float = SLEEP_BETWEEN_MONTHS,
    ):
        self.executor = executor
        self.coverage = coverage
        self.abort_signal = abort_signal
        self.pause_seconds = pause_seconds

    @staticmethod
    def batch_key(dataset: Dataset) -> str:
        return f"backfill{Dataset(dataset).title}"

    async def backfill_uncovered(
        self,
        dataset: Dataset,
        months: Optional[int] = None,
        invoked_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BackfillResult:
        dataset = Dataset(dataset)
        keys = self.coverage.uncovered(dataset, months=months, today=today)
        logger.info("Backfilling %d uncovered %s month(s): %s", len(keys), dataset.value, keys)
        return await self._run(dataset, keys, invoked_by, today)

    async def backfill_one(
        self,
        dataset: Dataset,
        key: str,
        invoked_by: Optional[str] = None,
        today: Optional[date] = None,
    ) -> BackfillResult:
        """Re-sync one month whether or not it is already covered."""
        month_bounds(key)  # validate before registering anything
        return await self._run(Dataset(dataset), [key], invoked_by, today)

    async def _run(
        self,
        dataset: Dataset,
        keys: Iterable[str],
        invoked_by: Optional[str],
        today: Optional[date],
    ) -> BackfillResult:
        result = BackfillResult(dataset=dataset)
        batch = self.batch_key(dataset)
        if batch in self.abort_signal.active:
            logger.warning("Rejecting %s: a batch for this dataset is already running", batch)
            raise OperationInFlight(batch)
        self.abort_signal.register(batch)
        try:
            for i, key in enumerate(keys):
                if self.abort_signal.is_aborted(batch):
                    logger.info("Backfill %s aborted before %s", dataset.value, key)
                    result.aborted = True
                    break
                if i and self.pause_seconds:
                    await asyncio.sleep(self.pause_seconds)

                bounds = month_range(dataset, key, today)
                if bounds is None:
                    result.skipped.append(key)
                    result.messages[key] = SKIPPED_CURRENT_WEEK
                    continue

                request = SyncRequest(
                    dataset,
                    bounds[0],
                    bounds[1],
                    mode=SyncMode.REPLACE,
                    invoked_by=invoked_by or "backfill",
                    triggered_by="backfill",
                )
                try:
                    outcome = await self.executor.run(request)
                except AbortedByUser as exc:
                    result.aborted = True
                    result.messages[key] = str(exc)
                    break
                except Exception as exc:
                    logger.warning("Backfill of %s %s failed: %s", dataset.value, key, exc)
                    result.errors.append(key)
                    result.messages[key] = str(exc)
                    continue

                result.done.append(key)
                result.messages[key] = outcome.message
        finally:
            self.abort_signal.release(batch)

        logger.info(
            "Backfill %s finished: done=%s errors=%s skipped=%s aborted=%s",
            dataset.value, result.done, result.errors, result.skipped, result.aborted,
        )
        return result
