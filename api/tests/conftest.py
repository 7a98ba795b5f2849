"""Shared fixtures for storefront API tests.

Routers are exercised through ``create_app()`` with every component
dependency overridden by a mock, so no database or tenant pool is needed.
The lifespan never runs under ``ASGITransport``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from api.config import APISettings
from api.dependencies import (
    get_connection_manager,
    get_db_session,
    get_ledger,
    get_registry,
    get_scheduler,
    get_settings,
)
from api.main import create_app
from httpx import ASGITransport, AsyncClient

ADMIN_TOKEN = "test-admin-token"
ADMIN_HEADERS = {"X-Admin-Token": ADMIN_TOKEN}


def make_settings(admin_api_token: str = ADMIN_TOKEN) -> APISettings:
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        cors_origins=["http://localhost:3000"],
        admin_api_token=admin_api_token,
        scheduler_enabled=False,
    )


@dataclass
class Mocks:
    """The mocked components behind a test app."""

    session: AsyncMock
    registry: AsyncMock
    manager: MagicMock
    ledger: AsyncMock
    scheduler: AsyncMock


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.execute = AsyncMock(return_value=MagicMock())
    return session


def _mock_manager() -> MagicMock:
    manager = MagicMock()
    manager.resolve = AsyncMock()
    manager.resolve_hostname = AsyncMock()
    manager.invalidate = AsyncMock(return_value=True)
    manager.cached_connections = MagicMock(return_value=[])
    manager.is_cached = MagicMock(return_value=False)
    return manager


def _mock_scheduler() -> AsyncMock:
    scheduler = AsyncMock()
    scheduler.running = True
    return scheduler


def build_app(settings: APISettings | None = None) -> tuple[Any, Mocks]:
    """Create the app with mocked dependencies and return both."""
    app = create_app()
    mocks = Mocks(
        session=_mock_session(),
        registry=AsyncMock(),
        manager=_mock_manager(),
        ledger=AsyncMock(),
        scheduler=_mock_scheduler(),
    )
    resolved_settings = settings or make_settings()

    async def _override_session():
        yield mocks.session

    app.dependency_overrides[get_settings] = lambda: resolved_settings
    app.dependency_overrides[get_db_session] = _override_session
    app.dependency_overrides[get_registry] = lambda: mocks.registry
    app.dependency_overrides[get_connection_manager] = lambda: mocks.manager
    app.dependency_overrides[get_ledger] = lambda: mocks.ledger
    app.dependency_overrides[get_scheduler] = lambda: mocks.scheduler
    return app, mocks


@pytest.fixture()
def app_and_mocks() -> tuple[Any, Mocks]:
    return build_app()


@pytest.fixture()
def mocks(app_and_mocks: tuple[Any, Mocks]) -> Mocks:
    return app_and_mocks[1]


@pytest_asyncio.fixture
async def client(app_and_mocks: tuple[Any, Mocks]):
    app, _ = app_and_mocks
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return dict(ADMIN_HEADERS)


@pytest.fixture()
def app_factory():
    """Return ``build_app`` for tests that need non-default settings."""
    return build_app


@pytest.fixture()
def settings_factory():
    return make_settings
