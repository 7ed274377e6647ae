"""
DataHub: the engine's external operations, wired from settings.

One instance per process. HTTP routes, scheduler jobs and the CLI all go
through it so they share one TokenCache, one AbortSignal and one set of
in-flight operation keys.

Usage:
    hub = get_hub()
    await hub.sync(SyncRequest.for_month("wip", "2024-01"))
    hub.month_audit("collectedTime")
"""
import asyncio
import logging
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from datahub.clio.auth import TokenCache
from datahub.clio.client import ClioClient
from datahub.clio.secrets import SECRETS_FILE_DEFAULT, ChainSecretResolver, EnvSecretResolver, FileSecretStore
from datahub.config import Settings, get_settings
from datahub.db.store import LocalStore
from datahub.models.oplog import OperationLogEntry
from datahub.sync.abort import AbortSignal
from datahub.sync.backfill import BackfillQueue
from datahub.sync.coverage import CoverageTracker, summarize
from datahub.sync.drift import DriftDetector
from datahub.sync.executor import SyncExecutor
from datahub.sync.oplog import OperationLog
from datahub.sync.types import (
    BackfillResult,
    CoverageRecord,
    Dataset,
    DriftReport,
    OperationKey,
    OpKind,
    OpStatus,
    SyncRequest,
    SyncResult,
)

logger = logging.getLogger(__name__)


class DataHub:
    def __init__(self, engine, client: ClioClient, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.settings = settings
        self.engine = engine
        self.client = client
        self.store = LocalStore(engine)
        self.oplog = OperationLog(engine)
        self.abort_signal = AbortSignal()
        self.executor = SyncExecutor(
            client,
            self.store,
            self.oplog,
            self.abort_signal,
            report_timeout=settings.report_timeout_seconds,
            poll_interval=settings.report_poll_interval_seconds,
        )
        self.coverage = CoverageTracker(self.oplog, self.store, default_months=settings.audit_months)
        self.backfill_queue = BackfillQueue(
            self.executor, self.coverage, self.abort_signal, pause_seconds=settings.backfill_pause_seconds
        )
        self.drift_detector = DriftDetector(
            client,
            self.store,
            spot_check_users=settings.spot_check_users,
            shallow_timeout=settings.shallow_timeout_seconds,
            deep_timeout=settings.deep_timeout_seconds,
            poll_interval=settings.report_poll_interval_seconds,
        )

    # ─── Sync ─────────────────────────────────────────────────────────────────

    async def sync(self, request: SyncRequest) -> SyncResult:
        return await self.executor.run(request)

    def status(self, dataset: Dataset) -> Dict[str, Any]:
        dataset = Dataset(dataset)
        row_count, latest_date = self.store.status(dataset)
        last_sync = self.oplog.latest(dataset)
        last_completed = self.oplog.latest(dataset, statuses=(OpStatus.COMPLETED,))
        return {
            "dataset": dataset.value,
            "row_count": row_count,
            "latest_date": latest_date,
            "last_sync": summarize(last_sync) if last_sync else None,
            "last_completed": summarize(last_completed) if last_completed else None,
        }

    def log(
        self, dataset: Optional[Dataset] = None, limit: int = 30, since: Optional[int] = None
    ) -> List[OperationLogEntry]:
        return self.oplog.recent(dataset=dataset, limit=limit, since=since)

    # ─── Coverage / backfill ──────────────────────────────────────────────────

    def month_audit(
        self, dataset: Dataset, months: Optional[int] = None, today: Optional[date] = None
    ) -> List[CoverageRecord]:
        return self.coverage.month_audit(dataset, months=months, today=today)

    async def backfill(
        self,
        dataset: Dataset,
        month_key: Optional[str] = None,
        invoked_by: Optional[str] = None,
        months: Optional[int] = None,
    ) -> BackfillResult:
        if month_key:
            return await self.backfill_queue.backfill_one(dataset, month_key, invoked_by=invoked_by)
        return await self.backfill_queue.backfill_uncovered(dataset, months=months, invoked_by=invoked_by)

    # ─── Drift ────────────────────────────────────────────────────────────────

    async def drift(
        self,
        dataset: Dataset,
        start: date,
        end: date,
        deep: bool = False,
        invoked_by: Optional[str] = None,
        principal: Optional[str] = None,
    ) -> DriftReport:
        """Run a drift check and record it as a validate operation."""
        dataset = Dataset(dataset)
        if start > end:
            raise ValueError(f"start_date {start} is after end_date {end}")

        key = OperationKey(OpKind.VALIDATE, dataset, start, end)
        started = time.monotonic()
        self.oplog.append(
            key, OpStatus.STARTED, message="Deep validate" if deep else "Validate", invoked_by=invoked_by
        )
        try:
            report = await self.drift_detector.detect(dataset, start, end, deep=deep, principal=principal)
        except asyncio.CancelledError:
            self.oplog.append(
                key,
                OpStatus.ABORTED,
                message=f"Operation {key.canonical} cancelled",
                duration_ms=int((time.monotonic() - started) * 1000),
                invoked_by=invoked_by,
            )
            raise
        except Exception as exc:
            self.oplog.append(
                key,
                OpStatus.ERROR,
                message=str(exc) or exc.__class__.__name__,
                duration_ms=int((time.monotonic() - started) * 1000),
                invoked_by=invoked_by,
            )
            raise

        self.oplog.append(
            key,
            OpStatus.COMPLETED,
            message=(
                f"{report.status}: local {report.local_count} rows / {report.local_sum:.2f}, "
                f"clio {report.remote_count} rows / {report.remote_sum}"
            ),
            duration_ms=int((time.monotonic() - started) * 1000),
            invoked_by=invoked_by,
        )
        return report

    # ─── Control ──────────────────────────────────────────────────────────────

    def abort(self, operation_key: Optional[str] = None) -> int:
        return self.abort_signal.abort(operation_key)

    async def check_token(self, principal: Optional[str] = None) -> Dict[str, Any]:
        """Force a token exchange to prove the credentials work."""
        started = time.monotonic()
        token = await self.client.tokens.get_token(principal, force_refresh=True)
        return {
            "success": True,
            "token_preview": f"{token[:8]}...{token[-4:]}" if token else None,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    async def aclose(self) -> None:
        await self.client.aclose()


def build_hub(settings: Optional[Settings] = None, engine=None, http: Optional[httpx.AsyncClient] = None) -> DataHub:
    """Wire a DataHub from settings. Tests pass their own engine and http client."""
    from datahub.db.engine import get_engine

    settings = settings or get_settings()
    engine = engine if engine is not None else get_engine()
    http = http or httpx.AsyncClient(timeout=settings.request_timeout_seconds)

    secrets_path = Path(settings.secrets_file).expanduser() if settings.secrets_file else SECRETS_FILE_DEFAULT
    secrets = ChainSecretResolver([FileSecretStore(secrets_path), EnvSecretResolver()])
    tokens = TokenCache(
        http,
        secrets,
        token_url=settings.clio_token_url,
        service_principal=settings.clio_service_principal,
        expiry_buffer_seconds=settings.token_expiry_buffer_seconds,
    )
    client = ClioClient(
        http,
        tokens,
        api_base=settings.clio_api_base,
        page_limit=settings.provider_page_limit,
        timeout=settings.request_timeout_seconds,
    )
    return DataHub(engine, client, settings)


_hub: Optional[DataHub] = None


def get_hub() -> DataHub:
    global _hub
    if _hub is None:
        _hub = build_hub()
    return _hub


async def close_hub() -> None:
    global _hub
    if _hub is not None:
        await _hub.aclose()
        _hub = None
