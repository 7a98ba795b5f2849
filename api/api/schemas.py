"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Credit schemas
# ---------------------------------------------------------------------------


class BalanceResponse(BaseModel):
    store_id: str
    balance: int


class CreditRequest(BaseModel):
    """Request body for ``POST /stores/{store_id}/credits``."""

    amount: int = Field(..., gt=0, description="Credits to add.")
    kind: str = Field(default="purchase", pattern="^(purchase|adjustment|bonus)$")
    description: str | None = Field(default=None, max_length=500)
    reference_id: str | None = Field(default=None, max_length=255, description="External payment reference.")


class SpendRequest(BaseModel):
    """Request body for ``POST /stores/{store_id}/credits/spend``."""

    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    usage_type: str = Field(default="manual", max_length=64)


class SpendResponse(BaseModel):
    store_id: str
    amount: int
    balance: int
    usage_id: str
    duplicate: bool


class CreditTransactionResponse(BaseModel):
    id: str
    store_id: str
    amount: int
    kind: str
    description: str | None = None
    reference_id: str | None = None
    created_at: str | None = None


class CreditUsageResponse(BaseModel):
    id: str
    store_id: str
    amount: int
    description: str
    usage_type: str
    idempotency_key: str | None = None
    balance_after: int
    created_at: str | None = None


class UptimeSummary(BaseModel):
    total_days: int
    total_credits_charged: int
    first_charge_date: str | None = None
    last_charge_date: str | None = None


class UptimeReportResponse(BaseModel):
    store_id: str
    period_days: int
    records: list[CreditUsageResponse]
    summary: UptimeSummary


class CreditPackageResponse(BaseModel):
    amount_usd: Decimal
    credits: int
    price_per_credit: Decimal
    popular: bool = False
    savings: str | None = None


# ---------------------------------------------------------------------------
# Billing job schemas
# ---------------------------------------------------------------------------


class DeductionRunResponse(BaseModel):
    """Summary of one daily deduction run."""

    charge_date: str
    processed: int
    succeeded: int
    failed: int
    duplicates: int
    insufficient: list[str] = Field(default_factory=list)
    errors: list[dict[str, str]] = Field(default_factory=list)


class BillingJobResponse(BaseModel):
    kind: str
    status: str
    cron_expression: str
    next_run_at: str | None = None
    claimed_by: str | None = None
    claimed_at: str | None = None
    last_run_at: str | None = None
    last_result: dict[str, Any] | None = None
    last_error: str | None = None
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0


# ---------------------------------------------------------------------------
# Tenancy schemas
# ---------------------------------------------------------------------------


class ResolveResponse(BaseModel):
    hostname: str
    store_id: str


class ConnectionInfoResponse(BaseModel):
    store_id: str
    configured: bool
    database_type: str | None = None
    host: str | None = None
    connection_status: str | None = None
    last_connection_test: str | None = None
    cached: bool = False


class CachedConnectionResponse(BaseModel):
    store_id: str
    database_type: str
    age_seconds: float
    idle_seconds: float
    ref_count: int


class StorefrontStatusResponse(BaseModel):
    store_id: str
    database: str
    latency_ms: float
