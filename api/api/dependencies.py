"""FastAPI dependency injection for settings, the master database and core components."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from store_engine.billing.ledger import CreditLedger
from store_engine.billing.scheduler import BillingScheduler
from store_engine.config import Settings, load_settings
from store_engine.security.vault import CredentialVault
from store_engine.state import database
from store_engine.tenancy.connection_manager import ConnectionManager, PoolFactory
from store_engine.tenancy.registry import TenantRegistry

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_engine_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_engine_settings() -> Settings:
    """Return the cached store engine :class:`Settings` singleton."""
    global _engine_settings_cache  # noqa: PLW0603
    if _engine_settings_cache is None:
        _engine_settings_cache = load_settings()
    return _engine_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
EngineSettingsDep = Annotated[Settings, Depends(get_engine_settings)]

# ---------------------------------------------------------------------------
# Master database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings, engine_settings: Settings) -> AsyncEngine:
    """Create and cache the master database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = database.get_engine(
        settings.database_url or engine_settings.master_database_url,
        pool_size=engine_settings.master_pool_size,
        max_overflow=engine_settings.master_max_overflow,
    )
    _session_factory = database.get_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the master engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        database.forget_engine(_engine)
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the master session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a master-database session that commits on clean exit."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------

_registry: TenantRegistry | None = None
_connection_manager: ConnectionManager | None = None
_ledger: CreditLedger | None = None
_scheduler: BillingScheduler | None = None


def init_components(
    engine_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    pool_factory: PoolFactory | None = None,
) -> None:
    """Build the registry, vault, connection manager, ledger and scheduler."""
    global _registry, _connection_manager, _ledger, _scheduler  # noqa: PLW0603
    _registry = TenantRegistry(session_factory)
    vault = CredentialVault.from_settings(engine_settings)
    _connection_manager = ConnectionManager(_registry, vault, engine_settings, pool_factory=pool_factory)
    _ledger = CreditLedger(session_factory)
    _scheduler = BillingScheduler(session_factory, _registry, _ledger, engine_settings)


async def dispose_components() -> None:
    """Stop background loops and close every tenant pool."""
    global _registry, _connection_manager, _ledger, _scheduler  # noqa: PLW0603
    if _scheduler is not None:
        await _scheduler.stop()
    if _connection_manager is not None:
        await _connection_manager.close()
    _registry = _connection_manager = _ledger = _scheduler = None


def _not_initialised(name: str) -> RuntimeError:
    return RuntimeError(f"{name} has not been initialised. Ensure init_components() is called during application startup.")


def get_registry() -> TenantRegistry:
    if _registry is None:
        raise _not_initialised("TenantRegistry")
    return _registry


def get_connection_manager() -> ConnectionManager:
    if _connection_manager is None:
        raise _not_initialised("ConnectionManager")
    return _connection_manager


def get_ledger() -> CreditLedger:
    if _ledger is None:
        raise _not_initialised("CreditLedger")
    return _ledger


def get_scheduler() -> BillingScheduler:
    if _scheduler is None:
        raise _not_initialised("BillingScheduler")
    return _scheduler


RegistryDep = Annotated[TenantRegistry, Depends(get_registry)]
ManagerDep = Annotated[ConnectionManager, Depends(get_connection_manager)]
LedgerDep = Annotated[CreditLedger, Depends(get_ledger)]
SchedulerDep = Annotated[BillingScheduler, Depends(get_scheduler)]

# ---------------------------------------------------------------------------
# Admin guard
# ---------------------------------------------------------------------------


def require_admin(
    settings: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless ``X-Admin-Token`` matches the configured token.

    Admin endpoints are disabled (403) while no token is configured.
    """
    expected = settings.admin_api_token.get_secret_value()
    if not expected:
        raise HTTPException(status_code=403, detail="Admin endpoints are disabled")
    if x_admin_token is None or not hmac.compare_digest(x_admin_token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin token")


AdminDep = Annotated[None, Depends(require_admin)]
