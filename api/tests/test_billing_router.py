"""Tests for api/api/routers/billing.py

Covers:
- POST /billing/daily-deduction/run: summary shape, 409 while running
- GET /billing/jobs: job state listing
- Admin token requirements, including endpoints disabled without a token
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from store_engine.billing.scheduler import DAILY_DEDUCTION
from store_engine.errors import JobAlreadyRunning

_SUMMARY = {
    "charge_date": "2026-03-01",
    "processed": 3,
    "succeeded": 2,
    "duplicates": 0,
    "insufficient": ["s2"],
    "errors": [],
    "failed": 1,
}


class TestRunDailyDeduction:
    @pytest.mark.asyncio
    async def test_returns_summary(self, client, mocks, admin_headers) -> None:
        mocks.scheduler.trigger.return_value = dict(_SUMMARY)

        resp = await client.post("/api/v1/billing/daily-deduction/run", headers=admin_headers)

        assert resp.status_code == 200
        body = resp.json()
        assert body["succeeded"] == 2
        assert body["failed"] == 1
        assert body["insufficient"] == ["s2"]
        mocks.scheduler.trigger.assert_awaited_once_with(DAILY_DEDUCTION)

    @pytest.mark.asyncio
    async def test_concurrent_run_is_409(self, client, mocks, admin_headers) -> None:
        mocks.scheduler.trigger.side_effect = JobAlreadyRunning(DAILY_DEDUCTION)

        resp = await client.post("/api/v1/billing/daily-deduction/run", headers=admin_headers)

        assert resp.status_code == 409
        assert "already running" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_requires_admin_token(self, client, mocks) -> None:
        resp = await client.post("/api/v1/billing/daily-deduction/run")

        assert resp.status_code == 401
        mocks.scheduler.trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_without_configured_token(self, app_factory, settings_factory) -> None:
        app, mocks = app_factory(settings_factory(admin_api_token=""))

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.post(
                "/api/v1/billing/daily-deduction/run",
                headers={"X-Admin-Token": ""},
            )

        assert resp.status_code == 403
        mocks.scheduler.trigger.assert_not_awaited()


class TestListJobs:
    @pytest.mark.asyncio
    async def test_lists_jobs(self, client, mocks, admin_headers) -> None:
        mocks.scheduler.list_jobs.return_value = [
            {
                "kind": DAILY_DEDUCTION,
                "status": "done",
                "cron_expression": "0 0 * * *",
                "next_run_at": "2026-03-02T00:00:00+00:00",
                "claimed_by": None,
                "claimed_at": None,
                "last_run_at": "2026-03-01T00:00:02+00:00",
                "last_result": dict(_SUMMARY),
                "last_error": None,
                "run_count": 1,
                "success_count": 1,
                "failure_count": 0,
                "consecutive_failures": 0,
            }
        ]

        resp = await client.get("/api/v1/billing/jobs", headers=admin_headers)

        assert resp.status_code == 200
        jobs = resp.json()
        assert jobs[0]["kind"] == DAILY_DEDUCTION
        assert jobs[0]["last_result"]["processed"] == 3

    @pytest.mark.asyncio
    async def test_requires_admin_token(self, client) -> None:
        resp = await client.get("/api/v1/billing/jobs")
        assert resp.status_code == 401
