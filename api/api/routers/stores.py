"""Tenant resolution and connection diagnostics."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query

from api.dependencies import AdminDep, ManagerDep, RegistryDep
from api.schemas import CachedConnectionResponse, ConnectionInfoResponse, ResolveResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stores", tags=["stores"])


@router.get("/resolve", response_model=ResolveResponse)
async def resolve_hostname(
    registry: RegistryDep,
    hostname: str = Query(..., min_length=1, max_length=255),
) -> ResolveResponse:
    return ResolveResponse(hostname=hostname, store_id=await registry.lookup_by_hostname(hostname))


@router.get("/connections", response_model=list[CachedConnectionResponse])
async def cached_connections(
    manager: ManagerDep,
    _admin: AdminDep,
) -> list[CachedConnectionResponse]:
    return [CachedConnectionResponse(**entry) for entry in manager.cached_connections()]


@router.get("/{store_id}/connection", response_model=ConnectionInfoResponse)
async def connection_info(
    store_id: str,
    registry: RegistryDep,
    manager: ManagerDep,
) -> ConnectionInfoResponse:
    """Resolve the store's database and report non-sensitive connection metadata."""
    await manager.resolve(store_id)
    info = await registry.get_connection_info(store_id)
    return ConnectionInfoResponse(**info, cached=manager.is_cached(store_id))


@router.delete("/{store_id}/connection")
async def invalidate_connection(
    store_id: str,
    manager: ManagerDep,
    _admin: AdminDep,
) -> dict[str, object]:
    """Drop the cached connection, e.g. after rotating the store's credential."""
    cleared = await manager.invalidate(store_id)
    return {"store_id": store_id, "cleared": cleared}
