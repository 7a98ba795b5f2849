"""Tests for the liveness and readiness endpoints."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client, mocks) -> None:
        mocks.manager.cached_connections.return_value = [{"store_id": "s1"}]

        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"
        assert body["scheduler"] == "running"
        assert body["cached_connections"] == 1

    @pytest.mark.asyncio
    async def test_degraded_database_still_200(self, client, mocks) -> None:
        mocks.session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client) -> None:
        resp = await client.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_not_ready_when_database_down(self, client, mocks) -> None:
        mocks.session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        resp = await client.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["checks"]["db"] == "unavailable"


@pytest.mark.asyncio
async def test_correlation_id_is_echoed(client) -> None:
    resp = await client.get("/ready", headers={"X-Correlation-ID": "abc-123"})
    assert resp.headers["X-Correlation-ID"] == "abc-123"
