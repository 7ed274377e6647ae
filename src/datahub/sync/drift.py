"""
DriftDetector: compare local aggregates with Clio for a dataset and range.

Read-only on both sides. The local side is one grouped query (count, sum
and per-user buckets) so a concurrent sync cannot be half-visible.

Remote side per dataset:
  wip            activities list with minimal fields; cheap enough for
                 shallow checks, same call with the deep timeout when deep
  collectedTime  Clio has no cheap count, so shallow checks report the
                 remote side as unavailable; deep checks run the
                 invoice_payments_v2 report and aggregate its line items

Money is compared to the penny: two amounts match when they differ by less
than 0.01.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Tuple

from datahub.clio.client import COUNT_FIELDS, ClioClient
from datahub.clio.normalizer import flatten_collected_report
from datahub.db.store import LocalStore
from datahub.errors import DriftUnavailable, ProviderFetchError
from datahub.sync.types import Dataset, DriftReport, MonthStats, SpotCheck

logger = logging.getLogger(__name__)

PENNY = Decimal("0.01")


def money_matches(a: Optional[float], b: Optional[float]) -> Optional[bool]:
    if a is None or b is None:
        return None
    return abs(Decimal(str(a)) - Decimal(str(b))) < PENNY


def classify_spot_check(rows_match: Optional[bool], sum_match: Optional[bool]) -> str:
    if rows_match is None or sum_match is None:
        return "unverified"
    if rows_match and sum_match:
        return "match"
    if rows_match:
        return "rows_only"
    if sum_match:
        return "sum_only"
    return "mismatch"


def _summarize(rows: Iterable[Tuple[Optional[int], float]]) -> Tuple[int, float, Dict[Optional[int], MonthStats]]:
    count = 0
    total = Decimal("0")
    per_user: Dict[Optional[int], list] = defaultdict(lambda: [0, Decimal("0")])
    for user_id, amount in rows:
        value = Decimal(str(amount or 0))
        count += 1
        total += value
        per_user[user_id][0] += 1
        per_user[user_id][1] += value
    return count, float(total), {
        uid: MonthStats(rows=n, total=float(s)) for uid, (n, s) in per_user.items()
    }


class DriftDetector:
    def __init__(
        self,
        client: ClioClient,
        store: LocalStore,
        *,
        spot_check_users: Optional[Dict[int, str]] = None,
        shallow_timeout: float = 8.0,
        deep_timeout: float = 90.0,
        poll_interval: float = 4.0,
    ):
        self.client = client
        self.store = store
        self.spot_check_users = dict(spot_check_users or {})
        self.shallow_timeout = shallow_timeout
        self.deep_timeout = deep_timeout
        self.poll_interval = poll_interval

    async def detect(
        self,
        dataset: Dataset,
        start: date,
        end: date,
        deep: bool = False,
        principal: Optional[str] = None,
        spot_check_users: Optional[Dict[int, str]] = None,
    ) -> DriftReport:
        """
        Compare local and Clio row counts and sums for [start, end].

        Raises:
            ValueError: start is after end.
            ProviderFetchError: Clio failed or did not answer within the timeout.
            TokenExchangeFailed: no Clio token could be obtained.
        """
        dataset = Dataset(dataset)
        if start > end:
            raise ValueError(f"start_date {start} is after end_date {end}")

        local = self.store.aggregate(dataset, start, end)
        report = DriftReport(
            dataset=dataset,
            start_date=start,
            end_date=end,
            deep=deep,
            local_count=local.count,
            local_sum=round(local.total, 2),
        )

        remote_per_user: Dict[Optional[int], MonthStats] = {}
        try:
            remote_count, remote_sum, remote_per_user = await self._remote(
                dataset, start, end, deep, principal
            )
        except DriftUnavailable as exc:
            logger.info("Drift %s %s..%s: %s", dataset.value, start, end, exc)
        else:
            report.remote_available = True
            report.remote_count = remote_count
            report.remote_sum = round(remote_sum, 2)
            report.drift = remote_count - local.count
            report.count_match = remote_count == local.count
            report.sum_match = money_matches(local.total, remote_sum)
            report.status = self._status(report)

        users = self.spot_check_users if spot_check_users is None else spot_check_users
        for user_id, name in users.items():
            mine = local.per_user.get(user_id, MonthStats(rows=0, total=0.0))
            check = SpotCheck(
                user_id=user_id, name=name, local_rows=mine.rows, local_sum=round(mine.total, 2)
            )
            if report.remote_available:
                theirs = remote_per_user.get(user_id, MonthStats(rows=0, total=0.0))
                check.remote_rows = theirs.rows
                check.remote_sum = round(theirs.total, 2)
                check.rows_match = theirs.rows == mine.rows
                check.sum_match = money_matches(mine.total, theirs.total)
            check.status = classify_spot_check(check.rows_match, check.sum_match)
            report.spot_checks.append(check)

        logger.info(
            "Drift %s %s..%s deep=%s: local=%d/%.2f remote=%s/%s status=%s",
            dataset.value, start, end, deep, report.local_count, report.local_sum,
            report.remote_count, report.remote_sum, report.status,
        )
        return report

    @staticmethod
    def _status(report: DriftReport) -> str:
        if report.drift is None:
            return "unverified"
        if report.drift > 0:
            return "missing"
        if report.drift < 0:
            return "extra"
        if report.sum_match is False:
            return "sum_mismatch"
        return "match"

    async def _remote(
        self, dataset: Dataset, start: date, end: date, deep: bool, principal: Optional[str]
    ) -> Tuple[int, float, Dict[Optional[int], MonthStats]]:
        timeout = self.deep_timeout if deep else self.shallow_timeout

        if dataset is Dataset.WIP:
            coro = self._wip_rows(principal, start, end, timeout)
        elif deep:
            coro = self._collected_rows(principal, start, end, timeout)
        else:
            raise DriftUnavailable("Clio has no cheap collected-time aggregate; run a deep check")

        try:
            rows = await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderFetchError(
                f"Clio {dataset.value} drift check timed out after {timeout:g}s"
            ) from exc
        return _summarize(rows)

    async def _wip_rows(self, principal, start, end, timeout):
        items = await self.client.list_activities(
            principal, start, end, fields=COUNT_FIELDS, timeout=timeout
        )
        return [(_user_of(item), item.get("total")) for item in items]

    async def _collected_rows(self, principal, start, end, timeout):
        report = await self.client.fetch_report(
            principal, start, end, timeout=timeout, poll_interval=self.poll_interval
        )
        rows, _ = flatten_collected_report(report)
        return [
            (row.get("user_id"), row.get("payment_allocated"))
            for row in rows
            if row.get("payment_date") is not None and start <= row["payment_date"] <= end
        ]


def _user_of(item: Dict[str, Any]) -> Optional[int]:
    user = item.get("user")
    if isinstance(user, dict) and user.get("id") is not None:
        return int(user["id"])
    return None
