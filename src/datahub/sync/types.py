"""
Value types shared by the sync engine.

All of these are plain dataclasses/enums so they can be built and compared
in tests without a database. Persistence lives in datahub.models.
"""
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class Dataset(str, Enum):
    COLLECTED_TIME = "collectedTime"
    WIP = "wip"

    @property
    def title(self) -> str:
        """CamelCase name used inside operation keys ("CollectedTime", "Wip")."""
        return self.value[0].upper() + self.value[1:]


class SyncMode(str, Enum):
    REPLACE = "replace"
    DELETE_ONLY = "deleteOnly"
    INSERT_ONLY = "insertOnly"

    @classmethod
    def parse(cls, value: Union[str, "SyncMode", None]) -> "SyncMode":
        """Accept enum values plus the legacy "delete"/"insert" short names."""
        if value is None:
            return cls.REPLACE
        if isinstance(value, cls):
            return value
        legacy = {"delete": cls.DELETE_ONLY, "insert": cls.INSERT_ONLY}
        if value in legacy:
            return legacy[value]
        return cls(value)

    @property
    def deletes(self) -> bool:
        return self is not SyncMode.INSERT_ONLY

    @property
    def inserts(self) -> bool:
        return self is not SyncMode.DELETE_ONLY


class OpStatus(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (OpStatus.COMPLETED, OpStatus.ERROR, OpStatus.ABORTED)


class OpKind(str, Enum):
    SYNC = "sync"
    VALIDATE = "validate"


# ─── Calendar months ──────────────────────────────────────────────────────────

def month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def month_bounds(key: str) -> Tuple[date, date]:
    """Return the first and last day of a "YYYY-MM" month key."""
    try:
        year, month = (int(part) for part in key.split("-"))
        last_day = calendar.monthrange(year, month)[1]
    except (ValueError, calendar.IllegalMonthError) as exc:
        raise ValueError(f"Invalid month key {key!r}, expected YYYY-MM") from exc
    return date(year, month, 1), date(year, month, last_day)


def month_label(key: str) -> str:
    start, _ = month_bounds(key)
    return start.strftime("%b %Y")


def trailing_months(today: date, count: int) -> List[str]:
    """Month keys for the `count` months ending with today's month, newest first."""
    keys = []
    year, month = today.year, today.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return keys


def _as_date(value: Union[date, datetime, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


# ─── Operation keys and requests ──────────────────────────────────────────────

@dataclass(frozen=True)
class OperationKey:
    """Structured identity of a (kind, dataset, range, mode) operation.

    The canonical string is for display, logging and naming a run to abort;
    nothing parses it back.
    """

    kind: OpKind
    dataset: Dataset
    start_date: date
    end_date: date
    mode: Optional[SyncMode] = None

    @property
    def range_label(self) -> str:
        first, last = month_bounds(month_key(self.start_date))
        if self.start_date == first and self.end_date == last:
            return month_key(self.start_date)
        if self.start_date == self.end_date:
            return self.start_date.isoformat()
        return f"{self.start_date.isoformat()}..{self.end_date.isoformat()}"

    @property
    def canonical(self) -> str:
        key = f"{self.kind.value}{self.dataset.title}_{self.range_label}"
        if self.mode is not None:
            key += f"_{self.mode.value}"
        return key

    def __str__(self) -> str:
        return self.canonical


@dataclass(frozen=True)
class SyncRequest:
    dataset: Dataset
    start_date: date
    end_date: date
    mode: SyncMode = SyncMode.REPLACE
    invoked_by: Optional[str] = None
    dry_run: bool = False
    principal: Optional[str] = None  # None: service principal
    triggered_by: str = "manual"

    def __post_init__(self):
        # frozen: coerce loose inputs (strings from JSON/CLI) in place
        object.__setattr__(self, "dataset", Dataset(self.dataset))
        object.__setattr__(self, "mode", SyncMode.parse(self.mode))
        object.__setattr__(self, "start_date", _as_date(self.start_date))
        object.__setattr__(self, "end_date", _as_date(self.end_date))
        if self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )

    @classmethod
    def rolling(cls, dataset, days_back: int, today: Optional[date] = None, **kwargs) -> "SyncRequest":
        """today - days_back .. today (days_back=0 is today only)."""
        if days_back < 0:
            raise ValueError("days_back must be >= 0")
        today = today or date.today()
        return cls(dataset, today - timedelta(days=days_back), today, **kwargs)

    @classmethod
    def for_month(cls, dataset, key: str, **kwargs) -> "SyncRequest":
        start, end = month_bounds(key)
        return cls(dataset, start, end, **kwargs)

    @property
    def operation_key(self) -> OperationKey:
        return OperationKey(OpKind.SYNC, self.dataset, self.start_date, self.end_date, self.mode)


@dataclass
class SyncResult:
    success: bool
    operation_key: str
    deleted_rows: int = 0
    inserted_rows: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    skipped_rows: int = 0
    message: str = ""


# ─── Coverage / backfill ──────────────────────────────────────────────────────

@dataclass
class EntrySummary:
    """The parts of an OperationLogEntry the month audit displays."""

    id: int
    ts: datetime
    operation: str
    status: str
    inserted_rows: Optional[int] = None
    deleted_rows: Optional[int] = None
    duration_ms: Optional[int] = None
    invoked_by: Optional[str] = None
    message: Optional[str] = None


@dataclass
class MonthStats:
    rows: int
    total: float


@dataclass
class CoverageRecord:
    month_key: str
    label: str
    last_sync: Optional[EntrySummary] = None
    sync_count: int = 0
    last_validate: Optional[EntrySummary] = None
    validate_count: int = 0
    covered: bool = False
    state: str = "none"  # covered | error | aborted | started | none
    stats: Optional[MonthStats] = None


@dataclass
class BackfillResult:
    dataset: Dataset
    done: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    aborted: bool = False
    messages: Dict[str, str] = field(default_factory=dict)


# ─── Drift ────────────────────────────────────────────────────────────────────

@dataclass
class SpotCheck:
    user_id: int
    name: str
    local_rows: int
    local_sum: float
    remote_rows: Optional[int] = None
    remote_sum: Optional[float] = None
    rows_match: Optional[bool] = None
    sum_match: Optional[bool] = None
    status: str = "unverified"  # match | rows_only | sum_only | mismatch | unverified


@dataclass
class DriftReport:
    dataset: Dataset
    start_date: date
    end_date: date
    deep: bool
    local_count: int
    local_sum: float
    remote_count: Optional[int] = None
    remote_sum: Optional[float] = None
    remote_available: bool = False
    drift: Optional[int] = None  # remote_count - local_count
    count_match: Optional[bool] = None
    sum_match: Optional[bool] = None
    status: str = "unverified"  # match | missing | extra | sum_mismatch | unverified
    spot_checks: List[SpotCheck] = field(default_factory=list)
