"""Data operations routes: sync, status, log, coverage, backfill, drift, abort."""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from datahub.hub import DataHub, get_hub
from datahub.models.oplog import OperationLogEntry
from datahub.sync.types import Dataset, SyncMode, SyncRequest

router = APIRouter()


def hub_dependency() -> DataHub:
    return get_hub()


class SyncBody(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    days_back: Optional[int] = None  # rolling window ending today
    mode: str = SyncMode.REPLACE.value
    invoked_by: Optional[str] = None
    dry_run: bool = False
    principal: Optional[str] = None


class BackfillBody(BaseModel):
    month_key: Optional[str] = None
    months: Optional[int] = None
    invoked_by: Optional[str] = None


class AbortBody(BaseModel):
    operation_key: Optional[str] = None


@router.post("/sync/{dataset}")
async def sync(dataset: Dataset, body: SyncBody, hub: DataHub = Depends(hub_dependency)):
    """Run one sync and wait for it. A dry run returns the plan without writing."""
    options = dict(
        mode=SyncMode.parse(body.mode),
        invoked_by=body.invoked_by,
        dry_run=body.dry_run,
        principal=body.principal,
    )
    if body.start_date and body.end_date:
        request = SyncRequest(dataset, body.start_date, body.end_date, **options)
    elif body.days_back is not None:
        request = SyncRequest.rolling(dataset, body.days_back, **options)
    else:
        raise ValueError("Provide start_date and end_date, or days_back")
    return await hub.sync(request)


@router.get("/status/{dataset}")
def status(dataset: Dataset, hub: DataHub = Depends(hub_dependency)):
    return hub.status(dataset)


@router.get("/log", response_model=List[OperationLogEntry])
def log(
    dataset: Optional[Dataset] = None,
    limit: int = 30,
    since: Optional[int] = None,
    hub: DataHub = Depends(hub_dependency),
):
    """Newest entries first. Pass the highest id seen as `since` to pull only new ones."""
    return hub.log(dataset=dataset, limit=min(max(limit, 1), 500), since=since)


@router.get("/month-audit/{dataset}")
def month_audit(
    dataset: Dataset,
    months: Optional[int] = Query(None, ge=1),
    hub: DataHub = Depends(hub_dependency),
):
    return hub.month_audit(dataset, months=months)


@router.post("/backfill/{dataset}")
async def backfill(dataset: Dataset, body: BackfillBody, hub: DataHub = Depends(hub_dependency)):
    return await hub.backfill(dataset, month_key=body.month_key, invoked_by=body.invoked_by, months=body.months)


@router.get("/drift/{dataset}")
async def drift(
    dataset: Dataset,
    start_date: date,
    end_date: date,
    deep: bool = False,
    invoked_by: Optional[str] = None,
    hub: DataHub = Depends(hub_dependency),
):
    return await hub.drift(dataset, start_date, end_date, deep=deep, invoked_by=invoked_by)


@router.post("/abort")
def abort(body: AbortBody, hub: DataHub = Depends(hub_dependency)):
    count = hub.abort(body.operation_key)
    return {"success": True, "count": count}


@router.get("/check-token")
async def check_token(principal: Optional[str] = None, hub: DataHub = Depends(hub_dependency)):
    return await hub.check_token(principal)
