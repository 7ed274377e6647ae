"""
LocalStore: range-scoped reads and writes over the mirrored record sets.

Write helpers take the caller's Session so SyncExecutor can run delete and
insert inside one transaction and decide when to commit. Read helpers open
their own session and issue one statement each, so a concurrent sync can
never be half-visible in a single report.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import delete, func
from sqlmodel import Session, SQLModel, select

from datahub.models.records import CollectedTime, WipEntry
from datahub.sync.types import Dataset, MonthStats, month_key


@dataclass(frozen=True)
class TableSpec:
    model: Type[SQLModel]
    date_attr: str  # range filter column
    amount_attr: str  # monetary column summed for drift checks
    natural_key: Tuple[str, ...]  # identity used by insert-only merges

    @property
    def date_col(self):
        return getattr(self.model, self.date_attr)

    @property
    def amount_col(self):
        return getattr(self.model, self.amount_attr)

    def key_of(self, row: Any) -> tuple:
        if isinstance(row, dict):
            return tuple(row.get(name) for name in self.natural_key)
        return tuple(getattr(row, name) for name in self.natural_key)


TABLES: Dict[Dataset, TableSpec] = {
    Dataset.COLLECTED_TIME: TableSpec(
        model=CollectedTime,
        date_attr="payment_date",
        amount_attr="payment_allocated",
        natural_key=("clio_id", "bill_id", "payment_date"),
    ),
    Dataset.WIP: TableSpec(
        model=WipEntry,
        date_attr="entry_date",
        amount_attr="total",
        natural_key=("clio_id",),
    ),
}


@dataclass
class RangeAggregate:
    count: int = 0
    total: float = 0.0
    per_user: Dict[Optional[int], MonthStats] = field(default_factory=dict)


class LocalStore:
    """Dataset-aware access to the local SQL mirror."""

    def __init__(self, engine):
        self.engine = engine

    @staticmethod
    def table(dataset: Dataset) -> TableSpec:
        return TABLES[Dataset(dataset)]

    def _in_range(self, spec: TableSpec, start: date, end: date):
        return (spec.date_col >= start) & (spec.date_col <= end)

    # ─── Writes (caller-owned session / transaction) ──────────────────────────

    def count_range(self, session: Session, dataset: Dataset, start: date, end: date) -> int:
        spec = self.table(dataset)
        return session.exec(
            select(func.count()).select_from(spec.model).where(self._in_range(spec, start, end))
        ).one()

    def delete_range(self, session: Session, dataset: Dataset, start: date, end: date) -> int:
        spec = self.table(dataset)
        result = session.connection().execute(
            delete(spec.model).where(self._in_range(spec, start, end))
        )
        return result.rowcount or 0

    def insert_rows(self, session: Session, dataset: Dataset, rows: List[Dict[str, Any]]) -> int:
        spec = self.table(dataset)
        session.add_all([spec.model(**row) for row in rows])
        session.flush()
        return len(rows)

    def merge_rows(
        self,
        session: Session,
        dataset: Dataset,
        rows: List[Dict[str, Any]],
        start: date,
        end: date,
    ) -> int:
        """Upsert rows by natural key: update matches in place, insert the rest."""
        spec = self.table(dataset)
        existing = {
            spec.key_of(obj): obj
            for obj in session.exec(
                select(spec.model).where(self._in_range(spec, start, end))
            ).all()
        }
        for row in rows:
            current = existing.get(spec.key_of(row))
            if current is None:
                obj = spec.model(**row)
                session.add(obj)
                existing[spec.key_of(row)] = obj
            else:
                for name, value in row.items():
                    setattr(current, name, value)
                session.add(current)
        session.flush()
        return len(rows)

    # ─── Reads (one statement each) ───────────────────────────────────────────

    def aggregate(self, dataset: Dataset, start: date, end: date) -> RangeAggregate:
        """Row count and amount sum for the range, overall and per user."""
        spec = self.table(dataset)
        stmt = (
            select(
                spec.model.user_id,
                func.count(),
                func.coalesce(func.sum(spec.amount_col), 0.0),
            )
            .where(self._in_range(spec, start, end))
            .group_by(spec.model.user_id)
        )
        agg = RangeAggregate()
        with Session(self.engine) as s:
            for user_id, rows, total in s.exec(stmt).all():
                agg.per_user[user_id] = MonthStats(rows=rows, total=float(total or 0))
                agg.count += rows
                agg.total += float(total or 0)
        return agg

    def monthly_stats(self, dataset: Dataset, start: date, end: date) -> Dict[str, MonthStats]:
        """Per-month row count and sum across [start, end]."""
        spec = self.table(dataset)
        stmt = (
            select(spec.date_col, func.count(), func.coalesce(func.sum(spec.amount_col), 0.0))
            .where(self._in_range(spec, start, end))
            .group_by(spec.date_col)
        )
        stats: Dict[str, MonthStats] = {}
        with Session(self.engine) as s:
            for day, rows, total in s.exec(stmt).all():
                bucket = stats.setdefault(month_key(day), MonthStats(rows=0, total=0.0))
                bucket.rows += rows
                bucket.total += float(total or 0)
        for bucket in stats.values():
            bucket.total = round(bucket.total, 2)
        return stats

    def status(self, dataset: Dataset) -> Tuple[int, Optional[date]]:
        """(row count, latest record date) for the whole dataset."""
        spec = self.table(dataset)
        with Session(self.engine) as s:
            count, latest = s.exec(
                select(func.count(), func.max(spec.date_col)).select_from(spec.model)
            ).one()
        return count, latest
