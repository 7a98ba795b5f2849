"""Credit ledger and scheduled billing jobs."""

from __future__ import annotations

from store_engine.billing.ledger import CreditLedger, DebitResult
from store_engine.billing.pricing import CreditPackage, get_credit_pricing
from store_engine.billing.scheduler import (
    DAILY_DEDUCTION,
    BillingScheduler,
    StoreChargeOutcome,
    compute_next_run,
    daily_charge_key,
)

__all__ = [
    "DAILY_DEDUCTION",
    "BillingScheduler",
    "CreditLedger",
    "CreditPackage",
    "DebitResult",
    "StoreChargeOutcome",
    "compute_next_run",
    "daily_charge_key",
    "get_credit_pricing",
]
