"""Unit tests for store_engine.billing.scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update
from store_engine.billing.ledger import CreditLedger
from store_engine.billing.scheduler import (
    DAILY_DEDUCTION,
    BillingScheduler,
    StoreChargeOutcome,
    compute_next_run,
    daily_charge_key,
    log_outcome,
)
from store_engine.errors import JobAlreadyRunning
from store_engine.state.repository import BillingJobRepository
from store_engine.state.tables import BillingJobTable, CreditUsageTable
from store_engine.tenancy.registry import TenantRegistry

# ---------------------------------------------------------------------------
# compute_next_run
# ---------------------------------------------------------------------------


class TestComputeNextRun:
    def test_hourly(self) -> None:
        base = datetime(2026, 3, 1, 10, 20, tzinfo=UTC)
        assert compute_next_run("15 * * * *", base) == datetime(2026, 3, 1, 11, 15, tzinfo=UTC)
        assert compute_next_run("45 * * * *", base) == datetime(2026, 3, 1, 10, 45, tzinfo=UTC)

    def test_daily_midnight(self) -> None:
        base = datetime(2026, 3, 1, 0, 0, tzinfo=UTC)
        assert compute_next_run("0 0 * * *", base) == datetime(2026, 3, 2, 0, 0, tzinfo=UTC)

    def test_daily_later_today(self) -> None:
        base = datetime(2026, 3, 1, 1, 0, tzinfo=UTC)
        assert compute_next_run("30 2 * * *", base) == datetime(2026, 3, 1, 2, 30, tzinfo=UTC)

    def test_weekly_sunday(self) -> None:
        # 2026-03-04 is a Wednesday.
        base = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)
        assert compute_next_run("0 3 * * 0", base) == datetime(2026, 3, 8, 3, 0, tzinfo=UTC)

    @pytest.mark.parametrize("expr", ["*/5 * * * *", "0 0 1 * *", "bogus", "61 * * * *", "0 24 * * *"])
    def test_rejects_unsupported(self, expr: str) -> None:
        with pytest.raises(ValueError):
            compute_next_run(expr, datetime(2026, 3, 1, tzinfo=UTC))


def test_daily_charge_key() -> None:
    assert daily_charge_key("s1", date(2026, 3, 1)) == "daily_charge:s1:2026-03-01"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 1, 0, 5, tzinfo=UTC))


@pytest.fixture()
def hook() -> AsyncMock:
    return AsyncMock()


def _scheduler(session_factory, settings, clock, hook=None, worker_id="worker-1") -> BillingScheduler:
    registry = TenantRegistry(session_factory)
    return BillingScheduler(
        session_factory,
        registry,
        CreditLedger(session_factory),
        settings,
        outcome_hook=hook,
        clock=clock,
        worker_id=worker_id,
    )


async def _daily_usage(session_factory) -> list[CreditUsageTable]:
    async with session_factory() as session:
        result = await session.execute(
            select(CreditUsageTable).where(CreditUsageTable.usage_type == "daily_charge")
        )
        return list(result.scalars().all())


async def _job(session_factory) -> BillingJobTable:
    async with session_factory() as session:
        row = await BillingJobRepository(session).get(DAILY_DEDUCTION)
    assert row is not None
    return row


# ---------------------------------------------------------------------------
# Daily deduction
# ---------------------------------------------------------------------------


class TestDailyDeduction:
    @pytest.mark.asyncio
    async def test_charges_published_stores(self, session_factory, settings, seed_store, clock, hook) -> None:
        await seed_store("s1", balance=5)
        await seed_store("s2", balance=0)
        await seed_store("s3", balance=2)
        scheduler = _scheduler(session_factory, settings, clock, hook)

        summary = await scheduler.trigger(DAILY_DEDUCTION)

        ledger = CreditLedger(session_factory)
        assert [await ledger.get_balance(s) for s in ("s1", "s2", "s3")] == [4, 0, 1]
        assert summary["processed"] == 3
        assert summary["succeeded"] == 2
        assert summary["failed"] == 1
        assert summary["insufficient"] == ["s2"]
        assert summary["charge_date"] == "2026-03-01"
        assert len(await _daily_usage(session_factory)) == 2

        outcomes = [call.args[0] for call in hook.await_args_list]
        assert [(o.store_id, o.status) for o in outcomes] == [
            ("s1", "charged"),
            ("s2", "insufficient"),
            ("s3", "charged"),
        ]

    @pytest.mark.asyncio
    async def test_second_run_same_day_charges_nothing(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        await seed_store("s2", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)

        await scheduler.trigger(DAILY_DEDUCTION)
        clock.now += timedelta(hours=3)
        summary = await scheduler.trigger(DAILY_DEDUCTION)

        assert summary["duplicates"] == 2
        usage = await _daily_usage(session_factory)
        assert sorted(u.idempotency_key for u in usage) == [
            "daily_charge:s1:2026-03-01",
            "daily_charge:s2:2026-03-01",
        ]
        ledger = CreditLedger(session_factory)
        assert await ledger.get_balance("s1") == 4

    @pytest.mark.asyncio
    async def test_next_day_charges_again(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)

        await scheduler.trigger(DAILY_DEDUCTION)
        clock.now += timedelta(days=1)
        await scheduler.trigger(DAILY_DEDUCTION)

        assert await CreditLedger(session_factory).get_balance("s1") == 3

    @pytest.mark.asyncio
    async def test_unpublished_and_inactive_are_skipped(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("live", balance=5)
        await seed_store("draft", published=False, balance=5)
        await seed_store("off", is_active=False, balance=5)

        summary = await _scheduler(session_factory, settings, clock).trigger(DAILY_DEDUCTION)

        assert summary["processed"] == 1
        ledger = CreditLedger(session_factory)
        assert await ledger.get_balance("draft") == 5
        assert await ledger.get_balance("off") == 5

    @pytest.mark.asyncio
    async def test_store_error_does_not_abort_batch(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("no-account")
        await seed_store("paying", balance=5)

        summary = await _scheduler(session_factory, settings, clock).trigger(DAILY_DEDUCTION)

        assert summary["succeeded"] == 1
        assert [e["store_id"] for e in summary["errors"]] == ["no-account"]
        assert await CreditLedger(session_factory).get_balance("paying") == 4

    @pytest.mark.asyncio
    async def test_failing_hook_is_isolated(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        await seed_store("s2", balance=5)
        hook = AsyncMock(side_effect=RuntimeError("unpublish failed"))

        summary = await _scheduler(session_factory, settings, clock, hook).trigger(DAILY_DEDUCTION)

        assert summary["succeeded"] == 2
        assert hook.await_count == 2

    @pytest.mark.asyncio
    async def test_default_hook_warns_on_insufficient(self, caplog) -> None:
        outcome = StoreChargeOutcome("s2", "insufficient", date(2026, 3, 1), balance=0)
        with caplog.at_level("WARNING"):
            await log_outcome(outcome)
        assert "insufficient credits" in caplog.text


# ---------------------------------------------------------------------------
# Job state machine
# ---------------------------------------------------------------------------


class TestJobState:
    @pytest.mark.asyncio
    async def test_ensure_jobs_is_idempotent(self, session_factory, settings, clock) -> None:
        scheduler = _scheduler(session_factory, settings, clock)
        await scheduler.ensure_jobs()
        await scheduler.ensure_jobs()

        jobs = await scheduler.list_jobs()
        assert len(jobs) == 1
        assert jobs[0]["status"] == "pending"
        assert jobs[0]["next_run_at"] == "2026-03-02T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_finish_records_result_and_reschedules(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)

        await scheduler.trigger(DAILY_DEDUCTION)

        job = await _job(session_factory)
        assert job.status == "done"
        assert job.run_count == 1
        assert job.success_count == 1
        assert job.claimed_by is None
        assert job.last_result["succeeded"] == 1
        assert job.next_run_at.replace(tzinfo=UTC) == datetime(2026, 3, 2, 0, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_trigger_while_running_is_rejected(self, session_factory, settings, clock) -> None:
        holder = _scheduler(session_factory, settings, clock, worker_id="holder")
        await holder.ensure_jobs()
        async with session_factory() as session:
            await BillingJobRepository(session).claim(
                DAILY_DEDUCTION, "holder", clock(), lease_cutoff=clock() - timedelta(hours=1), force=True
            )
            await session.commit()

        other = _scheduler(session_factory, settings, clock, worker_id="other")
        with pytest.raises(JobAlreadyRunning):
            await other.trigger(DAILY_DEDUCTION)

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_once(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        await _scheduler(session_factory, settings, clock).ensure_jobs()
        first = _scheduler(session_factory, settings, clock, worker_id="a")
        second = _scheduler(session_factory, settings, clock, worker_id="b")

        results = await asyncio.gather(
            first.trigger(DAILY_DEDUCTION),
            second.trigger(DAILY_DEDUCTION),
            return_exceptions=True,
        )

        # Either the loser saw the job running, or it ran after the winner
        # finished and found the store already charged for the day.
        assert any(isinstance(r, dict) and r["succeeded"] == 1 for r in results)
        assert await CreditLedger(session_factory).get_balance("s1") == 4
        assert len(await _daily_usage(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_reclaimed_after_lease(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock, worker_id="rescuer")
        await scheduler.ensure_jobs()
        stale = clock() - timedelta(seconds=settings.job_lease_seconds + 60)
        async with session_factory() as session:
            await session.execute(
                update(BillingJobTable)
                .where(BillingJobTable.kind == DAILY_DEDUCTION)
                .values(status="running", claimed_by="crashed", claimed_at=stale)
            )
            await session.commit()

        summary = await scheduler.trigger(DAILY_DEDUCTION)

        assert summary["succeeded"] == 1
        assert (await _job(session_factory)).status == "done"

    @pytest.mark.asyncio
    async def test_failed_body_marks_job_failed(self, session_factory, settings, clock) -> None:
        scheduler = _scheduler(session_factory, settings, clock)
        scheduler._registry.list_published_store_ids = AsyncMock(side_effect=RuntimeError("registry down"))

        with pytest.raises(RuntimeError):
            await scheduler.trigger(DAILY_DEDUCTION)

        job = await _job(session_factory)
        assert job.status == "failed"
        assert job.failure_count == 1
        assert job.consecutive_failures == 1
        assert "registry down" in job.last_error

    @pytest.mark.asyncio
    async def test_unknown_kind(self, session_factory, settings, clock) -> None:
        with pytest.raises(KeyError):
            await _scheduler(session_factory, settings, clock).trigger("weekly_report")


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------


class TestRunDue:
    @pytest.mark.asyncio
    async def test_not_due_does_nothing(self, session_factory, settings, seed_store, clock) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)
        await scheduler.ensure_jobs()

        assert await scheduler.run_due() == []
        assert await CreditLedger(session_factory).get_balance("s1") == 5

    @pytest.mark.asyncio
    async def test_due_job_runs_then_waits_for_next_period(
        self, session_factory, settings, seed_store, clock
    ) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)
        await scheduler.ensure_jobs()

        clock.now = datetime(2026, 3, 2, 0, 1, tzinfo=UTC)
        assert await scheduler.run_due() == [DAILY_DEDUCTION]
        assert await scheduler.run_due() == []

        clock.now = datetime(2026, 3, 3, 0, 1, tzinfo=UTC)
        assert await scheduler.run_due() == [DAILY_DEDUCTION]
        assert await CreditLedger(session_factory).get_balance("s1") == 3

    @pytest.mark.asyncio
    async def test_manual_and_poller_same_day_charge_once(
        self, session_factory, settings, seed_store, clock
    ) -> None:
        await seed_store("s1", balance=5)
        scheduler = _scheduler(session_factory, settings, clock)
        await scheduler.ensure_jobs()

        clock.now = datetime(2026, 3, 2, 0, 0, 30, tzinfo=UTC)
        # Manual trigger first; its finish pushes next_run_at to tomorrow.
        await scheduler.trigger(DAILY_DEDUCTION)
        assert await scheduler.run_due() == []
        assert await CreditLedger(session_factory).get_balance("s1") == 4

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, settings, clock) -> None:
        scheduler = _scheduler(session_factory, settings, clock)
        await scheduler.start()
        assert scheduler.running is True
        await scheduler.stop()
        assert scheduler.running is False
        assert len(await scheduler.list_jobs()) == 1
