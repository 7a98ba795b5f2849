"""Tests for api/api/routers/stores.py and api/api/routers/storefront.py

Covers:
- GET /stores/resolve: hostname lookup and misses
- GET /stores/{id}/connection: resolve + metadata, error mapping (404/503)
- DELETE /stores/{id}/connection and GET /stores/connections (admin)
- GET /storefront/status: resolution by X-Store-Id or Host header
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from store_engine.errors import CredentialError, ProvisioningError, UnknownTenant


def _handle(store_id: str = "s1", latency_ms: float = 1.5) -> MagicMock:
    handle = MagicMock()
    handle.store_id = store_id
    handle.ping = AsyncMock(return_value=latency_ms)
    return handle


_INFO = {
    "store_id": "s1",
    "configured": True,
    "database_type": "postgresql",
    "host": "db-1.internal",
    "connection_status": "connected",
    "last_connection_test": "2026-03-01T10:00:00+00:00",
}


class TestResolve:
    @pytest.mark.asyncio
    async def test_hostname_resolves(self, client, mocks) -> None:
        mocks.registry.lookup_by_hostname.return_value = "s1"

        resp = await client.get("/api/v1/stores/resolve", params={"hostname": "shop.example.com"})

        assert resp.status_code == 200
        assert resp.json() == {"hostname": "shop.example.com", "store_id": "s1"}

    @pytest.mark.asyncio
    async def test_unmapped_hostname_is_404(self, client, mocks) -> None:
        mocks.registry.lookup_by_hostname.side_effect = UnknownTenant("nope.test", reason="hostname not mapped")

        resp = await client.get("/api/v1/stores/resolve", params={"hostname": "nope.test"})

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_hostname_required(self, client) -> None:
        resp = await client.get("/api/v1/stores/resolve")
        assert resp.status_code == 422


class TestConnectionInfo:
    @pytest.mark.asyncio
    async def test_reports_metadata(self, client, mocks) -> None:
        mocks.manager.resolve.return_value = _handle()
        mocks.manager.is_cached.return_value = True
        mocks.registry.get_connection_info.return_value = dict(_INFO)

        resp = await client.get("/api/v1/stores/s1/connection")

        assert resp.status_code == 200
        body = resp.json()
        assert body["connection_status"] == "connected"
        assert body["cached"] is True
        assert "secret" not in body
        mocks.manager.resolve.assert_awaited_once_with("s1")

    @pytest.mark.asyncio
    async def test_inactive_store_is_404(self, client, mocks) -> None:
        mocks.manager.resolve.side_effect = UnknownTenant("s1", reason="store is inactive")

        resp = await client.get("/api/v1/stores/s1/connection")

        assert resp.status_code == 404
        assert resp.json()["detail"] == "Store not found"

    @pytest.mark.asyncio
    async def test_tampered_credential_is_503(self, client, mocks) -> None:
        mocks.manager.resolve.side_effect = CredentialError("s1")

        resp = await client.get("/api/v1/stores/s1/connection")

        assert resp.status_code == 503
        assert "credential" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_unreachable_database_is_503_with_retry_after(self, client, mocks) -> None:
        mocks.manager.resolve.side_effect = ProvisioningError("s1", attempts=3, cause=OSError("refused"))

        resp = await client.get("/api/v1/stores/s1/connection")

        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "30"
        assert "refused" not in resp.text


class TestConnectionAdmin:
    @pytest.mark.asyncio
    async def test_invalidate(self, client, mocks, admin_headers) -> None:
        resp = await client.delete("/api/v1/stores/s1/connection", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json() == {"store_id": "s1", "cleared": True}
        mocks.manager.invalidate.assert_awaited_once_with("s1")

    @pytest.mark.asyncio
    async def test_invalidate_requires_admin(self, client, mocks) -> None:
        resp = await client.delete("/api/v1/stores/s1/connection")

        assert resp.status_code == 401
        mocks.manager.invalidate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cached_connections(self, client, mocks, admin_headers) -> None:
        mocks.manager.cached_connections.return_value = [
            {
                "store_id": "s1",
                "database_type": "postgresql",
                "age_seconds": 12.0,
                "idle_seconds": 3.5,
                "ref_count": 0,
            }
        ]

        resp = await client.get("/api/v1/stores/connections", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()[0]["idle_seconds"] == 3.5


class TestStorefrontStatus:
    @pytest.mark.asyncio
    async def test_resolves_by_store_header(self, client, mocks) -> None:
        mocks.manager.resolve.return_value = _handle("s1", 2.25)

        resp = await client.get("/api/v1/storefront/status", headers={"X-Store-Id": "s1"})

        assert resp.status_code == 200
        assert resp.json() == {"store_id": "s1", "database": "ok", "latency_ms": 2.25}
        mocks.manager.resolve_hostname.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resolves_by_host_header(self, client, mocks) -> None:
        mocks.manager.resolve_hostname.return_value = _handle("s7")

        resp = await client.get("/api/v1/storefront/status", headers={"Host": "shop.example.com"})

        assert resp.status_code == 200
        assert resp.json()["store_id"] == "s7"
        mocks.manager.resolve_hostname.assert_awaited_once_with("shop.example.com")

    @pytest.mark.asyncio
    async def test_unknown_host_is_404(self, client, mocks) -> None:
        mocks.manager.resolve_hostname.side_effect = UnknownTenant("nobody.test", reason="hostname not mapped")

        resp = await client.get("/api/v1/storefront/status", headers={"Host": "nobody.test"})

        assert resp.status_code == 404
