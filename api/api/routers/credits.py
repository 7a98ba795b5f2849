"""Credit endpoints: balances, purchases, spending and history.

Everything except the public pricing catalogue requires the admin token.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Query
from store_engine.billing.pricing import get_credit_pricing

from api.dependencies import AdminDep, LedgerDep
from api.schemas import (
    BalanceResponse,
    CreditPackageResponse,
    CreditRequest,
    CreditTransactionResponse,
    CreditUsageResponse,
    SpendRequest,
    SpendResponse,
    UptimeReportResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["credits"])


@router.get("/credits/pricing", response_model=list[CreditPackageResponse])
async def credit_pricing() -> list[CreditPackageResponse]:
    return [CreditPackageResponse(**package.model_dump()) for package in get_credit_pricing()]


@router.get("/stores/{store_id}/credits/balance", response_model=BalanceResponse)
async def get_balance(store_id: str, ledger: LedgerDep, _admin: AdminDep) -> BalanceResponse:
    return BalanceResponse(store_id=store_id, balance=await ledger.get_balance(store_id))


@router.post("/stores/{store_id}/credits", response_model=BalanceResponse, status_code=201)
async def add_credits(
    store_id: str,
    body: CreditRequest,
    ledger: LedgerDep,
    _admin: AdminDep,
) -> BalanceResponse:
    """Record a purchase, adjustment or bonus and return the new balance."""
    balance = await ledger.credit(
        store_id,
        body.amount,
        kind=body.kind,
        description=body.description,
        reference_id=body.reference_id,
    )
    return BalanceResponse(store_id=store_id, balance=balance)


@router.post("/stores/{store_id}/credits/spend", response_model=SpendResponse)
async def spend_credits(
    store_id: str,
    body: SpendRequest,
    ledger: LedgerDep,
    _admin: AdminDep,
    idempotency_key: Annotated[str | None, Header(max_length=255)] = None,
) -> SpendResponse:
    """Charge credits.  Replaying an ``Idempotency-Key`` returns the first charge.

    Responds 402 when the balance is too low.
    """
    result = await ledger.debit(
        store_id,
        body.amount,
        body.description,
        idempotency_key=idempotency_key,
        usage_type=body.usage_type,
    )
    return SpendResponse(
        store_id=result.store_id,
        amount=result.amount,
        balance=result.balance,
        usage_id=result.usage_id,
        duplicate=result.duplicate,
    )


@router.get("/stores/{store_id}/credits/transactions", response_model=list[CreditTransactionResponse])
async def list_transactions(
    store_id: str,
    ledger: LedgerDep,
    _admin: AdminDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> list[CreditTransactionResponse]:
    return [CreditTransactionResponse(**row) for row in await ledger.list_transactions(store_id, limit=limit)]


@router.get("/stores/{store_id}/credits/usage", response_model=list[CreditUsageResponse])
async def list_usage(
    store_id: str,
    ledger: LedgerDep,
    _admin: AdminDep,
    limit: int = Query(default=50, ge=1, le=500),
    usage_type: str | None = Query(default=None, max_length=64),
) -> list[CreditUsageResponse]:
    rows = await ledger.list_usage(store_id, limit=limit, usage_type=usage_type)
    return [CreditUsageResponse(**row) for row in rows]


@router.get("/stores/{store_id}/credits/uptime-report", response_model=UptimeReportResponse)
async def uptime_report(
    store_id: str,
    ledger: LedgerDep,
    _admin: AdminDep,
    days: int = Query(default=30, ge=1, le=365),
) -> UptimeReportResponse:
    """Days the store was charged for being published over the last *days* days."""
    return UptimeReportResponse(**await ledger.usage_report(store_id, days=days))
