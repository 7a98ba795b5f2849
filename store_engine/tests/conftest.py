"""Shared fixtures for store engine tests.

The master database is a SQLite file in ``tmp_path`` so that concurrent
sessions really do contend on the same database, which an in-memory
database cannot show.  Postgres-specific column types are patched for
SQLite at import time.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.types import TypeDecorator
from store_engine.config import Settings, load_settings
from store_engine.security.vault import CredentialVault
from store_engine.state.database import forget_engine, get_session_factory
from store_engine.state.repository import CredentialRepository, CreditRepository, StoreRepository
from store_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from store_engine.state.tables import Base

_TEST_SECRET = "unit-test-credential-secret"


def _patch_columns_for_sqlite() -> None:
    """Substitute Postgres-specific column types for SQLite compatibility.

    * ``JSONB`` -> ``JSON``.
    * ``DateTime(timezone=True)`` -> a decorator that returns UTC-aware values.
    """

    class _UTCAwareDateTime(TypeDecorator):
        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()


@pytest.fixture()
def settings() -> Settings:
    return load_settings(
        credential_encryption_key=_TEST_SECRET,
        connect_max_retries=2,
        connect_backoff_base=0.001,
        connect_backoff_max=0.002,
        tenant_connect_timeout=2.0,
        idle_eviction_seconds=1800.0,
        job_lease_seconds=3600,
    )


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault(_TEST_SECRET)


@pytest_asyncio.fixture
async def master_engine(tmp_path: Path):
    """A fresh master database file with all tables created."""
    engine = get_local_engine(tmp_path / "master.db")
    await create_local_tables(engine)
    yield engine
    forget_engine(engine)
    await engine.dispose()


@pytest.fixture()
def session_factory(master_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(master_engine)


SeedStore = Callable[..., Awaitable[str]]


@pytest.fixture()
def seed_store(
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
    tmp_path: Path,
) -> SeedStore:
    """Return ``async seed(store_id, **options) -> store_id``.

    Creates the registry row, hostnames, an encrypted credential pointing
    at a SQLite file under ``tmp_path`` (unless ``database_url`` is given
    or ``with_credential=False``) and, when ``balance`` is not None, a
    credit account funded with that many credits.
    """

    async def _seed(
        store_id: str,
        *,
        hostnames: list[str] | None = None,
        published: bool = True,
        is_active: bool = True,
        with_credential: bool = True,
        database_url: str | None = None,
        balance: int | None = None,
    ) -> str:
        async with session_factory() as session:
            await StoreRepository(session).create(
                store_id,
                slug=store_id,
                name=f"Store {store_id}",
                is_active=is_active,
                published=published,
                hostnames=hostnames,
            )
            if with_credential:
                url = database_url or f"sqlite+aiosqlite:///{tmp_path / 'tenants' / f'{store_id}.db'}"
                secret = vault.encrypt_text(url)
                await CredentialRepository(session).store(
                    store_id,
                    ciphertext=secret.ciphertext,
                    iv=secret.iv,
                    auth_tag=secret.tag,
                    algorithm_version=secret.algorithm_version,
                    database_type="sqlite" if url.startswith("sqlite") else "postgresql",
                    host="localhost",
                )
            if balance is not None:
                repo = CreditRepository(session)
                await repo.open_account(store_id)
                if balance > 0:
                    await repo.increment(store_id, balance)
                    await repo.add_transaction(
                        store_id, balance, kind="purchase", description="seed", reference_id=None
                    )
            await session.commit()
        return store_id

    return _seed
