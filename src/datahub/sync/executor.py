"""
SyncExecutor: one Clio -> local-store sync for one dataset and date range.

Flow for a single run:
  1. Reject if the same operation key is already running (OperationInFlight)
  2. Log "started"
  3. Fetch the range from Clio (WIP: paginated activities list; collected
     time: invoice_payments_v2 report) -> normalized rows
  4. Dry run: count what would be deleted/inserted, log "completed", stop
  5. One local transaction: delete range (unless insert-only), insert rows
     (insert-only merges by natural key), abort checkpoint, commit
  6. Log "completed" with row counts and duration

On any exception: roll back, log "error" (or "aborted" for AbortedByUser
and task cancellation) and re-raise. Every run therefore ends with exactly
one terminal entry.

No retries here: a failed run is terminal and callers decide whether to
try again. The 401 retry lives in ClioClient.
"""
import asyncio
import logging
import time
from functools import partial
from typing import Any, Callable, Dict, List, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from datahub.clio.client import ClioClient
from datahub.clio.normalizer import flatten_collected_report, normalize_wip_activity
from datahub.db.store import LocalStore
from datahub.errors import AbortedByUser, LocalStoreError, OperationInFlight
from datahub.sync.abort import AbortSignal
from datahub.sync.oplog import OperationLog
from datahub.sync.types import Dataset, OpStatus, SyncMode, SyncRequest, SyncResult

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Runs SyncRequests against Clio and the local store."""

    def __init__(
        self,
        client: ClioClient,
        store: LocalStore,
        oplog: OperationLog,
        abort_signal: AbortSignal,
        *,
        report_timeout: float = 240.0,
        poll_interval: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.oplog = oplog
        self.abort_signal = abort_signal
        self._report_timeout = report_timeout
        self._poll_interval = poll_interval
        self._clock = clock
        self._in_flight: Set[str] = set()

    @property
    def in_flight(self) -> List[str]:
        return sorted(self._in_flight)

    async def run(self, request: SyncRequest) -> SyncResult:
        """
        Execute one sync.

        Raises:
            OperationInFlight: same operation key already running (nothing logged).
            AbortedByUser: abort observed at a checkpoint; logged as "aborted".
            TokenExchangeFailed, ProviderFetchError: Clio side failed.
            LocalStoreError: local transaction failed and was rolled back.
        """
        key = request.operation_key
        name = key.canonical
        if name in self._in_flight:
            logger.warning("Rejecting %s: already in flight", name)
            raise OperationInFlight(name)

        self._in_flight.add(name)
        self.abort_signal.register(name)
        started = self._clock()
        log = partial(
            self.oplog.append,
            key,
            invoked_by=request.invoked_by,
            triggered_by=request.triggered_by,
            dry_run=request.dry_run,
        )
        try:
            verb = "Planning sync" if request.dry_run else "Syncing"
            log(
                OpStatus.STARTED,
                message=f"{verb} {request.start_date} -> {request.end_date} ({request.mode.value})",
            )
            try:
                return await self._run(request, name, log, started)
            except AbortedByUser as exc:
                log(OpStatus.ABORTED, message=str(exc), duration_ms=self._elapsed_ms(started))
                raise
            except asyncio.CancelledError:
                log(
                    OpStatus.ABORTED,
                    message=f"Operation {name} cancelled",
                    duration_ms=self._elapsed_ms(started),
                )
                raise
            except SQLAlchemyError as exc:
                log(OpStatus.ERROR, message=str(exc), duration_ms=self._elapsed_ms(started))
                raise LocalStoreError(str(exc)) from exc
            except Exception as exc:
                log(
                    OpStatus.ERROR,
                    message=str(exc) or exc.__class__.__name__,
                    duration_ms=self._elapsed_ms(started),
                )
                raise
        finally:
            self._in_flight.discard(name)
            self.abort_signal.release(name)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    async def _run(self, request: SyncRequest, name: str, log, started: float) -> SyncResult:
        self.abort_signal.checkpoint(name)
        rows, skipped = await self._fetch(request, name, log)
        log(OpStatus.PROGRESS, message=f"Fetched {len(rows)} records from Clio ({skipped} skipped)")
        self.abort_signal.checkpoint(name)

        mode = request.mode
        if request.dry_run:
            with Session(self.store.engine) as s:
                to_delete = (
                    self.store.count_range(s, request.dataset, request.start_date, request.end_date)
                    if mode.deletes else 0
                )
            to_insert = len(rows) if mode.inserts else 0
            message = f"Plan: {_plan_message(mode, to_delete, to_insert)}"
            duration_ms = self._elapsed_ms(started)
            log(
                OpStatus.COMPLETED,
                message=message,
                deleted_rows=to_delete,
                inserted_rows=to_insert,
                duration_ms=duration_ms,
            )
            return SyncResult(
                success=True,
                operation_key=name,
                deleted_rows=to_delete,
                inserted_rows=to_insert,
                duration_ms=duration_ms,
                dry_run=True,
                skipped_rows=skipped,
                message=message,
            )

        log(
            OpStatus.PROGRESS,
            message=f"Writing {request.dataset.value} {request.start_date} -> {request.end_date}",
        )
        deleted, inserted = self._write(request, name, rows)

        duration_ms = self._elapsed_ms(started)
        message = f"Deleted {deleted}, inserted {inserted}"
        log(
            OpStatus.COMPLETED,
            message=message,
            deleted_rows=deleted,
            inserted_rows=inserted,
            duration_ms=duration_ms,
        )
        return SyncResult(
            success=True,
            operation_key=name,
            deleted_rows=deleted,
            inserted_rows=inserted,
            duration_ms=duration_ms,
            skipped_rows=skipped,
            message=message,
        )

    async def _fetch(self, request: SyncRequest, name: str, log) -> Tuple[List[Dict[str, Any]], int]:
        """Pull the range from Clio and return (rows in range, skipped count)."""
        log(OpStatus.PROGRESS, message="Requesting records from Clio")

        if request.dataset is Dataset.WIP:
            def on_page(batch_size: int, offset: int) -> None:
                log(OpStatus.PROGRESS, message=f"Fetched {batch_size} activities (offset {offset})")
                self.abort_signal.checkpoint(name)

            raw = await self.client.list_activities(
                request.principal, request.start_date, request.end_date, on_page=on_page
            )
            rows = [normalize_wip_activity(item) for item in raw]
            skipped = 0
            date_attr = "entry_date"
        else:
            def on_poll(attempt: int, max_attempts: int) -> None:
                self.abort_signal.checkpoint(name)
                if attempt:
                    log(
                        OpStatus.PROGRESS,
                        message=f"Waiting for report generation (poll {attempt + 1}/{max_attempts})",
                    )

            report = await self.client.fetch_report(
                request.principal,
                request.start_date,
                request.end_date,
                timeout=self._report_timeout,
                poll_interval=self._poll_interval,
                on_poll=on_poll,
            )
            rows, skipped = flatten_collected_report(report)
            date_attr = "payment_date"

        # Rows outside the range would survive the next replace and double up
        in_range = [
            row for row in rows
            if row.get(date_attr) is not None
            and request.start_date <= row[date_attr] <= request.end_date
        ]
        return in_range, skipped + (len(rows) - len(in_range))

    def _write(self, request: SyncRequest, name: str, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
        """Delete/insert inside one transaction. Nothing is logged while it is open."""
        mode = request.mode
        with Session(self.store.engine) as s:
            try:
                deleted = 0
                if mode.deletes:
                    deleted = self.store.delete_range(
                        s, request.dataset, request.start_date, request.end_date
                    )
                inserted = 0
                if mode is SyncMode.INSERT_ONLY:
                    inserted = self.store.merge_rows(
                        s, request.dataset, rows, request.start_date, request.end_date
                    )
                elif mode.inserts:
                    inserted = self.store.insert_rows(s, request.dataset, rows)

                self.abort_signal.checkpoint(name)
                s.commit()
            except SQLAlchemyError as exc:
                s.rollback()
                raise LocalStoreError(f"Local store write failed: {exc}") from exc
            except BaseException:
                s.rollback()
                raise
        return deleted, inserted


def _plan_message(mode: SyncMode, to_delete: int, to_insert: int) -> str:
    if mode is SyncMode.DELETE_ONLY:
        return f"delete {to_delete} rows"
    if mode is SyncMode.INSERT_ONLY:
        return f"insert {to_insert} rows"
    return f"replace {to_delete} rows with {to_insert} rows"
