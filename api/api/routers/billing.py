"""Billing job endpoints: manual daily deduction trigger and job state."""

from __future__ import annotations

import logging

from fastapi import APIRouter
from store_engine.billing.scheduler import DAILY_DEDUCTION

from api.dependencies import AdminDep, SchedulerDep
from api.schemas import BillingJobResponse, DeductionRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/daily-deduction/run", response_model=DeductionRunResponse)
async def run_daily_deduction(
    scheduler: SchedulerDep,
    _admin: AdminDep,
) -> DeductionRunResponse:
    """Run today's deduction now.

    Safe to call repeatedly: stores already charged today are reported as
    duplicates.  Returns 409 while another run holds the job.
    """
    summary = await scheduler.trigger(DAILY_DEDUCTION)
    return DeductionRunResponse(**summary)


@router.get("/jobs", response_model=list[BillingJobResponse])
async def list_jobs(
    scheduler: SchedulerDep,
    _admin: AdminDep,
) -> list[BillingJobResponse]:
    return [BillingJobResponse(**job) for job in await scheduler.list_jobs()]
