"""
OperationLog: append-only audit trail of sync and validate operations.

Every append is committed in its own short session before the caller moves
on, so the log write is part of the run's sequence rather than a side call.
Each append is also mirrored to the module logger.
"""
import logging
from datetime import date
from typing import List, Optional, Sequence

from sqlmodel import Session, select

from datahub.models.oplog import OperationLogEntry
from datahub.sync.types import Dataset, OperationKey, OpKind, OpStatus

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500


class OperationLog:
    def __init__(self, engine):
        self.engine = engine

    def append(
        self,
        key: OperationKey,
        status: OpStatus,
        *,
        message: Optional[str] = None,
        deleted_rows: Optional[int] = None,
        inserted_rows: Optional[int] = None,
        duration_ms: Optional[int] = None,
        invoked_by: Optional[str] = None,
        triggered_by: Optional[str] = None,
        dry_run: bool = False,
    ) -> OperationLogEntry:
        entry = OperationLogEntry(
            operation=key.canonical,
            kind=key.kind.value,
            dataset=key.dataset.value,
            status=OpStatus(status).value,
            mode=key.mode.value if key.mode is not None else None,
            message=(message or "")[:MAX_MESSAGE_LENGTH] or None,
            start_date=key.start_date,
            end_date=key.end_date,
            deleted_rows=deleted_rows,
            inserted_rows=inserted_rows,
            duration_ms=duration_ms,
            invoked_by=invoked_by,
            triggered_by=triggered_by,
            dry_run=dry_run,
        )
        with Session(self.engine) as s:
            s.add(entry)
            s.commit()
            s.refresh(entry)

        logger.info("%s %s %s", entry.operation, entry.status, message or "")
        return entry

    # ─── Reads ────────────────────────────────────────────────────────────────

    def recent(
        self,
        dataset: Optional[Dataset] = None,
        limit: int = 30,
        since: Optional[int] = None,
    ) -> List[OperationLogEntry]:
        """Newest-first entries; `since` returns only ids greater than it (pull API)."""
        stmt = select(OperationLogEntry)
        if dataset is not None:
            stmt = stmt.where(OperationLogEntry.dataset == Dataset(dataset).value)
        if since is not None:
            stmt = stmt.where(OperationLogEntry.id > since)
        stmt = stmt.order_by(OperationLogEntry.id.desc()).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(stmt).all())

    def entries_for(self, operation: str) -> List[OperationLogEntry]:
        """All entries for one canonical operation key, oldest first."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(OperationLogEntry)
                .where(OperationLogEntry.operation == operation)
                .order_by(OperationLogEntry.id)
            ).all())

    def last_completed(self, operation: str) -> Optional[OperationLogEntry]:
        with Session(self.engine) as s:
            return s.exec(
                select(OperationLogEntry)
                .where(
                    OperationLogEntry.operation == operation,
                    OperationLogEntry.status == OpStatus.COMPLETED.value,
                )
                .order_by(OperationLogEntry.id.desc())
            ).first()

    def latest(
        self,
        dataset: Dataset,
        kind: OpKind = OpKind.SYNC,
        statuses: Sequence[OpStatus] = (
            OpStatus.STARTED, OpStatus.COMPLETED, OpStatus.ERROR, OpStatus.ABORTED,
        ),
    ) -> Optional[OperationLogEntry]:
        """Newest entry of `kind` for the dataset whose status is in `statuses`."""
        with Session(self.engine) as s:
            return s.exec(
                select(OperationLogEntry)
                .where(
                    OperationLogEntry.dataset == Dataset(dataset).value,
                    OperationLogEntry.kind == kind.value,
                    OperationLogEntry.status.in_([OpStatus(st).value for st in statuses]),
                )
                .order_by(OperationLogEntry.id.desc())
            ).first()

    def overlapping(self, dataset: Dataset, start: date, end: date) -> List[OperationLogEntry]:
        """Non-progress entries whose range intersects [start, end], oldest first."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(OperationLogEntry)
                .where(
                    OperationLogEntry.dataset == Dataset(dataset).value,
                    OperationLogEntry.status != OpStatus.PROGRESS.value,
                    OperationLogEntry.start_date <= end,
                    OperationLogEntry.end_date >= start,
                )
                .order_by(OperationLogEntry.id)
            ).all())
