"""Operation audit log model."""
from datetime import date, datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class OperationLogEntry(SQLModel, table=True):
    """
    One row per step of a sync/validate operation. Append-only.

    A run writes one "started" row, any number of "progress" rows and exactly
    one terminal row ("completed", "error" or "aborted"), all sharing the
    same `operation` key string.
    """

    __tablename__ = "dataopslog"

    id: Optional[int] = Field(default=None, primary_key=True)
    ts: datetime = Field(default_factory=utcnow, index=True)
    operation: str = Field(index=True)  # canonical OperationKey string
    kind: str = "sync"  # "sync" | "validate"
    dataset: str = Field(index=True)
    status: str  # "started" | "progress" | "completed" | "error" | "aborted"
    mode: Optional[str] = None
    message: Optional[str] = None

    start_date: Optional[date] = None
    end_date: Optional[date] = None
    deleted_rows: Optional[int] = None
    inserted_rows: Optional[int] = None
    duration_ms: Optional[int] = None

    invoked_by: Optional[str] = None  # person, if any
    triggered_by: Optional[str] = None  # "manual", "scheduler", "backfill"
    dry_run: bool = False
