"""Tenant resolution: registry lookups and the per-store connection cache."""

from __future__ import annotations

from store_engine.tenancy.connection_manager import ConnectionHandle, ConnectionManager, open_tenant_pool
from store_engine.tenancy.registry import CredentialRef, TenantRecord, TenantRegistry

__all__ = [
    "ConnectionHandle",
    "ConnectionManager",
    "CredentialRef",
    "TenantRecord",
    "TenantRegistry",
    "open_tenant_pool",
]
