"""Storefront-facing probe: resolves the tenant from the request and pings its database."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request
from store_engine.tenancy.connection_manager import ConnectionHandle

from api.dependencies import ManagerDep
from api.schemas import StorefrontStatusResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storefront", tags=["storefront"])


async def _resolve_request_store(
    request: Request,
    manager: ManagerDep,
    x_store_id: str | None,
) -> ConnectionHandle:
    """Resolve by ``X-Store-Id`` when present, otherwise by the ``Host`` header."""
    if x_store_id:
        handle = await manager.resolve(x_store_id)
    else:
        host = request.headers.get("host")
        if not host:
            raise HTTPException(status_code=400, detail="X-Store-Id or Host header required")
        handle = await manager.resolve_hostname(host)
    request.state.store_id = handle.store_id
    return handle


@router.get("/status", response_model=StorefrontStatusResponse)
async def storefront_status(
    request: Request,
    manager: ManagerDep,
    x_store_id: Annotated[str | None, Header()] = None,
) -> StorefrontStatusResponse:
    handle = await _resolve_request_store(request, manager, x_store_id)
    latency_ms = await handle.ping()
    return StorefrontStatusResponse(store_id=handle.store_id, database="ok", latency_ms=latency_ms)
