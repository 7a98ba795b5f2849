"""Tenant registry: hostname / store_id lookups against the master database.

The registry is a thin read layer.  It never caches; every lookup opens a
short session on the master database so that deactivation and credential
rotation are visible immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from store_engine.errors import UnknownTenant
from store_engine.security.vault import EncryptedSecret
from store_engine.state.repository import CredentialRepository, StoreRepository, normalize_hostname
from store_engine.state.tables import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialRef:
    """Encrypted credential plus the non-sensitive metadata stored beside it."""

    secret: EncryptedSecret
    database_type: str
    host: str | None


@dataclass(frozen=True)
class TenantRecord:
    store_id: str
    is_active: bool
    published: bool
    credential: CredentialRef | None


class TenantRegistry:
    """Read access to the store registry.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the master database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def lookup_by_hostname(self, hostname: str) -> str:
        """Return the store_id routed to *hostname*.

        Raises
        ------
        UnknownTenant
            No store is mapped to the normalised hostname.
        """
        normalized = normalize_hostname(hostname)
        if not normalized:
            raise UnknownTenant(hostname, reason="empty hostname")
        async with self._session_factory() as session:
            store_id = await StoreRepository(session).get_store_id_by_hostname(normalized)
        if store_id is None:
            raise UnknownTenant(normalized, reason="hostname not mapped")
        return store_id

    async def lookup_by_id(self, store_id: str) -> TenantRecord:
        async with self._session_factory() as session:
            store = await StoreRepository(session).get(store_id)
            if store is None:
                raise UnknownTenant(store_id)
            cred = await CredentialRepository(session).get(store_id)

        credential = None
        if cred is not None:
            credential = CredentialRef(
                secret=EncryptedSecret(
                    ciphertext=cred.ciphertext,
                    iv=cred.iv,
                    tag=cred.auth_tag,
                    algorithm_version=cred.algorithm_version,
                ),
                database_type=cred.database_type,
                host=cred.host,
            )
        return TenantRecord(
            store_id=store.store_id,
            is_active=store.is_active,
            published=store.published,
            credential=credential,
        )

    async def list_published_store_ids(self) -> list[str]:
        async with self._session_factory() as session:
            return await StoreRepository(session).list_published_ids()

    async def get_connection_info(self, store_id: str) -> dict[str, Any]:
        """Non-sensitive connection metadata for diagnostics.

        Never includes the ciphertext or anything derived from it.
        """
        async with self._session_factory() as session:
            store = await StoreRepository(session).get(store_id)
            if store is None:
                raise UnknownTenant(store_id)
            cred = await CredentialRepository(session).get(store_id)

        if cred is None:
            return {
                "store_id": store_id,
                "configured": False,
                "database_type": None,
                "host": None,
                "connection_status": None,
                "last_connection_test": None,
            }
        last_test: datetime | None = as_utc(cred.last_connection_test)
        return {
            "store_id": store_id,
            "configured": True,
            "database_type": cred.database_type,
            "host": cred.host,
            "connection_status": cred.connection_status,
            "last_connection_test": last_test.isoformat() if last_test else None,
        }

    async def record_connection_status(self, store_id: str, status: str) -> None:
        async with self._session_factory() as session:
            await CredentialRepository(session).update_status(store_id, status)
            await session.commit()
