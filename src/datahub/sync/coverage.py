"""
CoverageTracker: per-month sync coverage, projected from the operation log.

A month is covered when the newest sync entry overlapping it (ignoring
progress entries and dry runs) is "completed". A trailing "started" with no
terminal entry after it usually means a crashed run and is surfaced as its
own state rather than counted as covered.
"""
import logging
from datetime import date
from typing import Dict, List, Optional

from datahub.db.store import LocalStore
from datahub.models.oplog import OperationLogEntry
from datahub.sync.oplog import OperationLog
from datahub.sync.types import (
    CoverageRecord,
    Dataset,
    EntrySummary,
    OpKind,
    OpStatus,
    month_bounds,
    month_label,
    trailing_months,
)

logger = logging.getLogger(__name__)


def summarize(entry: OperationLogEntry) -> EntrySummary:
    return EntrySummary(
        id=entry.id,
        ts=entry.ts,
        operation=entry.operation,
        status=entry.status,
        inserted_rows=entry.inserted_rows,
        deleted_rows=entry.deleted_rows,
        duration_ms=entry.duration_ms,
        invoked_by=entry.invoked_by,
        message=entry.message,
    )


class CoverageTracker:
    def __init__(self, oplog: OperationLog, store: Optional[LocalStore] = None, default_months: int = 12):
        self.oplog = oplog
        self.store = store
        self.default_months = default_months

    def month_audit(
        self,
        dataset: Dataset,
        months: Optional[int] = None,
        today: Optional[date] = None,
        with_stats: bool = True,
    ) -> List[CoverageRecord]:
        """One CoverageRecord per trailing month, newest first."""
        dataset = Dataset(dataset)
        months = self.default_months if months is None else months
        if months < 1:
            raise ValueError(f"months must be at least 1, got {months}")
        keys = trailing_months(today or date.today(), months)
        window_start = month_bounds(keys[-1])[0]
        window_end = month_bounds(keys[0])[1]

        entries = self.oplog.overlapping(dataset, window_start, window_end)
        stats = (
            self.store.monthly_stats(dataset, window_start, window_end)
            if with_stats and self.store is not None else {}
        )

        records = []
        for key in keys:
            start, end = month_bounds(key)
            in_month = [
                e for e in entries
                if not e.dry_run and e.start_date <= end and e.end_date >= start
            ]
            record = self._project(key, in_month)
            record.stats = stats.get(key)
            records.append(record)
        return records

    def uncovered(self, dataset: Dataset, months: Optional[int] = None, today: Optional[date] = None) -> List[str]:
        """Month keys without a completed sync, oldest first."""
        audit = self.month_audit(dataset, months=months, today=today, with_stats=False)
        return [r.month_key for r in reversed(audit) if not r.covered]

    @staticmethod
    def _project(key: str, entries: List[OperationLogEntry]) -> CoverageRecord:
        # entries arrive oldest first
        syncs: Dict[str, List[OperationLogEntry]] = {OpKind.SYNC.value: [], OpKind.VALIDATE.value: []}
        for entry in entries:
            syncs.setdefault(entry.kind, []).append(entry)

        sync_entries = syncs[OpKind.SYNC.value]
        validate_entries = syncs[OpKind.VALIDATE.value]

        record = CoverageRecord(
            month_key=key,
            label=month_label(key),
            sync_count=sum(1 for e in sync_entries if e.status == OpStatus.STARTED.value),
            validate_count=sum(1 for e in validate_entries if e.status == OpStatus.STARTED.value),
        )
        if sync_entries:
            last = sync_entries[-1]
            record.last_sync = summarize(last)
            record.state = last.status
            record.covered = last.status == OpStatus.COMPLETED.value
            if record.covered:
                record.state = "covered"
        if validate_entries:
            record.last_validate = summarize(validate_entries[-1])
        return record
