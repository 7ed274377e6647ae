"""Integration tests for SyncExecutor: Clio fake -> local SQLite mirror."""
import asyncio
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from datahub.errors import (
    AbortedByUser,
    LocalStoreError,
    OperationInFlight,
    ProviderFetchError,
    TokenExchangeFailed,
)
from datahub.models.records import CollectedTime, WipEntry
from datahub.sync.types import Dataset, SyncRequest

JAN = SyncRequest.for_month(Dataset.WIP, "2024-01", invoked_by="alex")


def _seed_wip(engine, count, day=date(2024, 1, 10), first_id=1000):
    with Session(engine) as s:
        for i in range(count):
            s.add(WipEntry(clio_id=first_id + i, entry_date=day, total=1.0))
        s.commit()


def _statuses(hub, request):
    return [e.status for e in hub.oplog.entries_for(request.operation_key.canonical)]


@pytest.fixture(name="jan_activities")
def jan_activities_fixture(fake_clio):
    for i in range(8):
        fake_clio.add_activity(i + 1, f"2024-01-{i + 2:02d}", total=25.0)
    fake_clio.add_activity(99, "2024-02-01")  # outside the range, filtered by Clio


class TestReplace:
    @pytest.mark.asyncio
    async def test_replaces_month(self, hub, engine, jan_activities):
        _seed_wip(engine, 5)

        result = await hub.sync(JAN)

        assert result.success
        assert result.deleted_rows == 5
        assert result.inserted_rows == 8
        assert result.message == "Deleted 5, inserted 8"
        assert hub.store.status(Dataset.WIP) == (8, date(2024, 1, 9))
        with Session(engine) as s:
            ids = sorted(row.clio_id for row in s.exec(select(WipEntry)).all())
        assert ids == list(range(1, 9))

    @pytest.mark.asyncio
    async def test_rows_outside_range_untouched(self, hub, engine, jan_activities):
        _seed_wip(engine, 3, day=date(2023, 12, 31))
        await hub.sync(JAN)
        assert hub.store.status(Dataset.WIP)[0] == 11

    @pytest.mark.asyncio
    async def test_second_run_converges(self, hub, jan_activities):
        await hub.sync(JAN)
        result = await hub.sync(JAN)
        assert (result.deleted_rows, result.inserted_rows) == (8, 8)
        assert hub.store.status(Dataset.WIP)[0] == 8

    @pytest.mark.asyncio
    async def test_empty_remote_clears_range(self, hub, engine):
        _seed_wip(engine, 4)
        result = await hub.sync(JAN)
        assert (result.deleted_rows, result.inserted_rows) == (4, 0)
        assert hub.store.status(Dataset.WIP)[0] == 0


class TestLogOrdering:
    @pytest.mark.asyncio
    async def test_started_progress_completed(self, hub, jan_activities):
        await hub.sync(JAN)
        statuses = _statuses(hub, JAN)
        assert statuses[0] == "started"
        assert statuses[-1] == "completed"
        assert set(statuses[1:-1]) == {"progress"}

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_entry(self, hub, jan_activities):
        await hub.sync(JAN)
        terminal = [s for s in _statuses(hub, JAN) if s in ("completed", "error", "aborted")]
        assert terminal == ["completed"]

    @pytest.mark.asyncio
    async def test_completed_entry_carries_counts(self, hub, engine, jan_activities):
        _seed_wip(engine, 2)
        await hub.sync(JAN)
        entry = hub.oplog.last_completed(JAN.operation_key.canonical)
        assert (entry.deleted_rows, entry.inserted_rows) == (2, 8)
        assert entry.invoked_by == "alex"
        assert entry.triggered_by == "manual"
        assert entry.duration_ms is not None


class TestFailures:
    @pytest.mark.asyncio
    async def test_store_failure_rolls_back(self, hub, engine, jan_activities):
        _seed_wip(engine, 5)
        boom = OperationalError("INSERT INTO wip", {}, Exception("disk I/O error"))

        with patch.object(hub.store, "insert_rows", side_effect=boom):
            with pytest.raises(LocalStoreError):
                await hub.sync(JAN)

        # delete ran inside the same transaction, so nothing changed
        assert hub.store.status(Dataset.WIP)[0] == 5
        statuses = _statuses(hub, JAN)
        assert statuses[-1] == "error"
        assert "completed" not in statuses

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_store(self, hub, engine, fake_clio, jan_activities):
        _seed_wip(engine, 5)
        fake_clio.api_statuses = [500]

        with pytest.raises(ProviderFetchError):
            await hub.sync(JAN)

        assert hub.store.status(Dataset.WIP)[0] == 5
        entry = hub.oplog.entries_for(JAN.operation_key.canonical)[-1]
        assert entry.status == "error"
        assert "500" in entry.message

    @pytest.mark.asyncio
    async def test_token_failure_logged(self, hub, fake_clio):
        fake_clio.token_status = 400
        with pytest.raises(TokenExchangeFailed):
            await hub.sync(JAN)
        assert _statuses(hub, JAN) == ["started", "progress", "error"]

    @pytest.mark.asyncio
    async def test_key_released_after_failure(self, hub, fake_clio, jan_activities):
        fake_clio.api_statuses = [500]
        with pytest.raises(ProviderFetchError):
            await hub.sync(JAN)
        assert hub.executor.in_flight == []
        assert hub.abort_signal.active == []
        result = await hub.sync(JAN)
        assert result.inserted_rows == 8


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_during_fetch(self, hub, engine, fake_clio, jan_activities):
        _seed_wip(engine, 5)
        fake_clio.token_delay = 0.05

        task = asyncio.create_task(hub.sync(JAN))
        await asyncio.sleep(0.01)
        assert hub.abort() == 1

        with pytest.raises(AbortedByUser):
            await task

        assert hub.store.status(Dataset.WIP)[0] == 5
        assert _statuses(hub, JAN)[-1] == "aborted"

    @pytest.mark.asyncio
    async def test_abort_before_commit_rolls_back(self, hub, engine, jan_activities):
        _seed_wip(engine, 5)
        real_insert = hub.store.insert_rows

        def insert_then_abort(session, dataset, rows):
            inserted = real_insert(session, dataset, rows)
            hub.abort(JAN.operation_key.canonical)
            return inserted

        with patch.object(hub.store, "insert_rows", side_effect=insert_then_abort):
            with pytest.raises(AbortedByUser):
                await hub.sync(JAN)

        assert hub.store.status(Dataset.WIP)[0] == 5
        terminal = hub.oplog.entries_for(JAN.operation_key.canonical)[-1]
        assert terminal.status == "aborted"
        assert "cancelled by user" in terminal.message

    @pytest.mark.asyncio
    async def test_abort_does_not_leak_into_next_run(self, hub, fake_clio, jan_activities):
        fake_clio.token_delay = 0.05
        task = asyncio.create_task(hub.sync(JAN))
        await asyncio.sleep(0.01)
        hub.abort()
        with pytest.raises(AbortedByUser):
            await task

        fake_clio.token_delay = 0.0
        result = await hub.sync(JAN)
        assert result.success


class TestInFlight:
    @pytest.mark.asyncio
    async def test_same_key_rejected(self, hub, fake_clio, jan_activities):
        fake_clio.token_delay = 0.05
        first = asyncio.create_task(hub.sync(JAN))
        await asyncio.sleep(0.01)

        with pytest.raises(OperationInFlight) as exc_info:
            await hub.sync(JAN)
        assert exc_info.value.operation_key == "syncWip_2024-01_replace"

        await first
        # the rejected call logged nothing
        assert _statuses(hub, JAN).count("started") == 1

    @pytest.mark.asyncio
    async def test_different_ranges_run_concurrently(self, hub, fake_clio, jan_activities):
        fake_clio.add_activity(50, "2024-02-10")
        fake_clio.token_delay = 0.02
        feb = SyncRequest.for_month(Dataset.WIP, "2024-02")

        jan_result, feb_result = await asyncio.gather(hub.sync(JAN), hub.sync(feb))

        assert jan_result.inserted_rows == 8
        assert feb_result.inserted_rows == 2


class TestModes:
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, hub, engine, jan_activities):
        _seed_wip(engine, 5)
        request = SyncRequest.for_month(Dataset.WIP, "2024-01", dry_run=True)

        result = await hub.sync(request)

        assert result.dry_run
        assert (result.deleted_rows, result.inserted_rows) == (5, 8)
        assert result.message == "Plan: replace 5 rows with 8 rows"
        assert hub.store.status(Dataset.WIP)[0] == 5
        assert hub.oplog.entries_for(request.operation_key.canonical)[0].dry_run is True

    @pytest.mark.asyncio
    async def test_delete_only(self, hub, engine, jan_activities):
        _seed_wip(engine, 5)
        request = SyncRequest.for_month(Dataset.WIP, "2024-01", mode="deleteOnly")
        result = await hub.sync(request)
        assert (result.deleted_rows, result.inserted_rows) == (5, 0)
        assert hub.store.status(Dataset.WIP)[0] == 0

    @pytest.mark.asyncio
    async def test_insert_only_merges_by_clio_id(self, hub, engine, fake_clio):
        with Session(engine) as s:
            s.add(WipEntry(clio_id=1, entry_date=date(2024, 1, 3), total=10.0))
            s.commit()
        fake_clio.add_activity(1, "2024-01-03", total=99.0)
        fake_clio.add_activity(2, "2024-01-04", total=5.0)

        request = SyncRequest.for_month(Dataset.WIP, "2024-01", mode="insertOnly")
        result = await hub.sync(request)

        assert (result.deleted_rows, result.inserted_rows) == (0, 2)
        with Session(engine) as s:
            rows = {r.clio_id: r.total for r in s.exec(select(WipEntry)).all()}
        assert rows == {1: 99.0, 2: 5.0}


class TestCollectedTime:
    @pytest.mark.asyncio
    async def test_sync_from_report(self, hub, engine, fake_clio):
        fake_clio.add_payment(12, "2024-03-05", [(1, 100.0, 7), (2, 50.0, 8)])
        fake_clio.add_payment(13, "2024-02-28", [(3, 5.0, 7)], bill_id=901)
        fake_clio.polls_before_ready = 1
        request = SyncRequest.for_month(Dataset.COLLECTED_TIME, "2024-03")

        result = await hub.sync(request)

        assert result.inserted_rows == 2
        assert result.skipped_rows == 1  # paid outside the range
        with Session(engine) as s:
            rows = s.exec(select(CollectedTime)).all()
        assert {r.payment_date for r in rows} == {date(2024, 3, 5)}
        assert sum(r.payment_allocated for r in rows) == 150.0

        messages = [e.message for e in hub.oplog.entries_for(request.operation_key.canonical)]
        assert any("Waiting for report generation" in m for m in messages)

    @pytest.mark.asyncio
    async def test_no_data_report_clears_range(self, hub, engine):
        with Session(engine) as s:
            s.add(CollectedTime(clio_id=1, payment_date=date(2024, 3, 2), payment_allocated=5.0))
            s.commit()
        request = SyncRequest.for_month(Dataset.COLLECTED_TIME, "2024-03")

        result = await hub.sync(request)

        assert (result.deleted_rows, result.inserted_rows) == (1, 0)

    @pytest.mark.asyncio
    async def test_outage_does_not_clear_range(self, hub, engine, fake_clio):
        with Session(engine) as s:
            for i in range(3):
                s.add(CollectedTime(clio_id=i + 1, payment_date=date(2024, 3, 2), payment_allocated=5.0))
            s.commit()
        fake_clio.api_statuses = [503]
        fake_clio.api_error_text = "Service unavailable: no database connection"
        request = SyncRequest.for_month(Dataset.COLLECTED_TIME, "2024-03")

        with pytest.raises(ProviderFetchError):
            await hub.sync(request)

        assert hub.store.status(Dataset.COLLECTED_TIME)[0] == 3
        assert _statuses(hub, request)[-1] == "error"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_timeout_logged_as_aborted(self, hub, fake_clio):
        fake_clio.add_payment(12, "2024-03-05", [(1, 100.0, 7)])
        fake_clio.polls_before_ready = 1000
        request = SyncRequest.for_month(Dataset.COLLECTED_TIME, "2024-03")

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(hub.sync(request), 0.1)

        terminal = hub.oplog.entries_for(request.operation_key.canonical)[-1]
        assert terminal.status == "aborted"
        assert "cancelled" in terminal.message
        assert terminal.duration_ms is not None
        assert hub.executor.in_flight == []
        assert hub.abort_signal.active == []
        audit = hub.month_audit(Dataset.COLLECTED_TIME, months=1, today=date(2024, 3, 20))
        assert audit[0].state == "aborted"
