"""Billing scheduler: claim-based execution of recurring billing jobs.

Each job kind owns one ``billing_jobs`` row that cycles through
``pending -> running -> done|failed -> pending``.  The poller loop and the
manual trigger race for the same row; whichever UPDATE flips it to
``running`` first runs the job, the other sees zero affected rows and
backs off.  Per-store charges carry an idempotency key for the calendar
day, so even a reclaimed, abandoned run never charges a store twice.

Supports a simple subset of cron expressions (hourly, daily, weekly) that
covers the billing cadence without requiring a full cron parser.
"""

from __future__ import annotations

import asyncio
import logging
import re
import socket
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from store_engine.billing.ledger import CreditLedger
from store_engine.config import Settings
from store_engine.errors import InsufficientCredits, JobAlreadyRunning, UnknownTenant
from store_engine.state.repository import BillingJobRepository
from store_engine.state.tables import BillingJobTable, as_utc
from store_engine.tenancy.registry import TenantRegistry

logger = logging.getLogger(__name__)

DAILY_DEDUCTION = "daily_deduction"
DAILY_CHARGE_USAGE_TYPE = "daily_charge"

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time strictly after *from_time*.

    Supports a practical subset of cron syntax:

    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- daily at *H*:*M*.
    * ``M H * * D`` -- weekly on day-of-week *D* (0=Sunday) at *H*:*M*.

    Raises
    ------
    ValueError
        If the expression does not match a supported pattern or a field
        is out of range.
    """
    expr = cron_expression.strip()

    match = _HOURLY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, "minute")
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    match = _DAILY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, "minute")
        hour = _field(match.group(2), 23, "hour")
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    match = _WEEKLY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, "minute")
        hour = _field(match.group(2), 23, "hour")
        target_dow = _field(match.group(3), 6, "day-of-week")

        # Cron counts Sunday as 0; Python's weekday() counts Monday as 0.
        python_dow = (target_dow - 1) % 7

        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


def _field(raw: str, maximum: int, name: str) -> int:
    value = int(raw)
    if value > maximum:
        raise ValueError(f"cron {name} {value} out of range 0-{maximum}")
    return value


def daily_charge_key(store_id: str, charge_date: date) -> str:
    """Idempotency key for one store's charge on one UTC calendar day."""
    return f"daily_charge:{store_id}:{charge_date.isoformat()}"


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreChargeOutcome:
    """What happened to one store in a deduction run.

    ``status`` is one of ``charged``, ``duplicate``, ``insufficient`` or
    ``error``.
    """

    store_id: str
    status: str
    charge_date: date
    balance: int | None = None
    error: str | None = None


class BillingOutcomeHook(Protocol):
    """Called once per store after its charge attempt.

    Policies such as unpublishing stores that ran out of credits plug in
    here.  A hook that raises is logged and does not affect other stores.
    """

    def __call__(self, outcome: StoreChargeOutcome) -> Awaitable[None]: ...


async def log_outcome(outcome: StoreChargeOutcome) -> None:
    """Default hook: warn about stores that could not pay."""
    if outcome.status == "insufficient":
        logger.warning(
            "Store %s has insufficient credits for %s (balance=%s)",
            outcome.store_id,
            outcome.charge_date.isoformat(),
            outcome.balance,
        )


@dataclass
class DeductionSummary:
    charge_date: str
    processed: int = 0
    succeeded: int = 0
    duplicates: int = 0
    insufficient: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.insufficient) + len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["failed"] = self.failed
        return data


def job_to_dict(row: BillingJobTable) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        value = as_utc(value)
        return value.isoformat() if value else None

    return {
        "kind": row.kind,
        "status": row.status,
        "cron_expression": row.cron_expression,
        "next_run_at": _iso(row.next_run_at),
        "claimed_by": row.claimed_by,
        "claimed_at": _iso(row.claimed_at),
        "last_run_at": _iso(row.last_run_at),
        "last_result": row.last_result,
        "last_error": row.last_error,
        "run_count": row.run_count,
        "success_count": row.success_count,
        "failure_count": row.failure_count,
        "consecutive_failures": row.consecutive_failures,
    }


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


JobBody = Callable[[datetime], Awaitable[dict[str, Any]]]


class BillingScheduler:
    """Runs billing jobs from the poll loop or on demand.

    Parameters
    ----------
    session_factory:
        Sessions on the master database, used for job state.
    registry:
        Enumerates the published stores to charge.
    ledger:
        Applies the per-store debits.
    settings:
        Cron expression, charge amount, poll interval and lease TTL.
    outcome_hook:
        Awaited for every per-store outcome.  Defaults to :func:`log_outcome`.
    clock:
        Returns the current UTC time.
    worker_id:
        Identity written to ``claimed_by``.  Defaults to host and a random
        suffix so that concurrent processes are distinguishable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: TenantRegistry,
        ledger: CreditLedger,
        settings: Settings,
        *,
        outcome_hook: BillingOutcomeHook | None = None,
        clock: Callable[[], datetime] | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._ledger = ledger
        self._settings = settings
        self._outcome_hook: BillingOutcomeHook = outcome_hook or log_outcome
        self._clock = clock or (lambda: datetime.now(UTC))
        self._worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self._jobs: dict[str, tuple[str, JobBody]] = {
            DAILY_DEDUCTION: (settings.daily_deduction_cron, self.run_daily_deduction),
        }
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the poll loop is active."""
        return self._running

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # ------------------------------------------------------------------
    # Job state
    # ------------------------------------------------------------------

    async def ensure_jobs(self) -> None:
        """Create a row for every known job kind that does not have one."""
        now = self._clock()
        async with self._session_factory() as session:
            repo = BillingJobRepository(session)
            for kind, (cron, _) in self._jobs.items():
                if await repo.ensure(kind, cron, compute_next_run(cron, now)):
                    logger.info("Registered billing job %s (cron=%s)", kind, cron)
            await session.commit()

    async def list_jobs(self) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await BillingJobRepository(session).list_all()
        return [job_to_dict(r) for r in rows]

    async def _claim(self, kind: str, *, force: bool) -> bool:
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.job_lease_seconds)
        async with self._session_factory() as session:
            claimed = await BillingJobRepository(session).claim(
                kind, self._worker_id, now, lease_cutoff=cutoff, force=force
            )
            await session.commit()
        return claimed

    async def _finish(
        self,
        kind: str,
        cron: str,
        *,
        result: dict[str, Any] | None,
        error: str | None,
    ) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            finished = await BillingJobRepository(session).finish(
                kind,
                self._worker_id,
                succeeded=error is None,
                result=result,
                error=error,
                now=now,
                next_run_at=compute_next_run(cron, now),
            )
            await session.commit()
        if not finished:
            logger.warning("Billing job %s was reclaimed by another worker before it finished", kind)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_due(self) -> list[str]:
        """One poller tick: release finished jobs whose period began, run what is due.

        Returns the kinds this worker ran.
        """
        now = self._clock()
        async with self._session_factory() as session:
            repo = BillingJobRepository(session)
            released = await repo.release_due(now)
            await session.commit()
            due = await repo.list_due_kinds(now)
        if released:
            logger.debug("Released %d billing job(s) back to pending", released)

        ran: list[str] = []
        for kind in due:
            if kind not in self._jobs:
                logger.warning("Unknown billing job kind '%s'; skipping.", kind)
                continue
            if not await self._claim(kind, force=False):
                logger.info("Billing job %s claimed elsewhere; skipping", kind)
                continue
            try:
                await self._execute(kind)
            except Exception:
                logger.warning("Billing job %s marked failed; it runs again next period", kind)
                continue
            ran.append(kind)
        return ran

    async def trigger(self, kind: str = DAILY_DEDUCTION) -> dict[str, Any]:
        """Run *kind* now, regardless of its schedule.

        Raises
        ------
        JobAlreadyRunning
            Another trigger holds the job.
        KeyError
            *kind* is not a known job.
        """
        if kind not in self._jobs:
            raise KeyError(f"Unknown billing job kind: {kind}")
        await self.ensure_jobs()
        if not await self._claim(kind, force=True):
            raise JobAlreadyRunning(kind)
        logger.info("Billing job %s triggered manually by %s", kind, self._worker_id)
        return await self._execute(kind)

    async def _execute(self, kind: str) -> dict[str, Any]:
        cron, body = self._jobs[kind]
        started = self._clock()
        try:
            result = await body(started)
        except Exception as exc:
            logger.error("Billing job %s failed: %s", kind, exc, exc_info=True)
            await self._finish(kind, cron, result=None, error=f"{type(exc).__name__}: {exc}")
            raise
        await self._finish(kind, cron, result=result, error=None)
        logger.info("Billing job %s complete: %s", kind, result)
        return result

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def run_daily_deduction(self, now: datetime) -> dict[str, Any]:
        """Charge every published, active store for the UTC day of *now*.

        One store's failure never stops the batch.  Re-running on the same
        day reports already-charged stores as duplicates.
        """
        charge_date = now.astimezone(UTC).date()
        amount = self._settings.daily_charge_credits
        summary = DeductionSummary(charge_date=charge_date.isoformat())

        store_ids = await self._registry.list_published_store_ids()
        logger.info("Daily deduction for %s: %d published store(s)", summary.charge_date, len(store_ids))

        for store_id in store_ids:
            summary.processed += 1
            outcome = await self._charge_store(store_id, amount, charge_date)
            if outcome.status == "charged":
                summary.succeeded += 1
            elif outcome.status == "duplicate":
                summary.succeeded += 1
                summary.duplicates += 1
            elif outcome.status == "insufficient":
                summary.insufficient.append(store_id)
            else:
                summary.errors.append({"store_id": store_id, "error": outcome.error or ""})

            try:
                await self._outcome_hook(outcome)
            except Exception as exc:
                logger.error("Billing outcome hook failed for store=%s: %s", store_id, exc, exc_info=True)

        return summary.to_dict()

    async def _charge_store(self, store_id: str, amount: int, charge_date: date) -> StoreChargeOutcome:
        try:
            result = await self._ledger.debit(
                store_id,
                amount,
                f"Daily publishing charge for {charge_date.isoformat()}",
                idempotency_key=daily_charge_key(store_id, charge_date),
                usage_type=DAILY_CHARGE_USAGE_TYPE,
            )
        except InsufficientCredits as exc:
            return StoreChargeOutcome(store_id, "insufficient", charge_date, balance=exc.balance)
        except (UnknownTenant, OperationalError, InterfaceError) as exc:
            logger.error("Daily charge failed for store=%s: %s", store_id, exc)
            return StoreChargeOutcome(store_id, "error", charge_date, error=str(exc))
        except Exception as exc:
            logger.error("Daily charge failed for store=%s: %s", store_id, exc, exc_info=True)
            return StoreChargeOutcome(store_id, "error", charge_date, error=f"{type(exc).__name__}: {exc}")

        status = "duplicate" if result.duplicate else "charged"
        return StoreChargeOutcome(store_id, status, charge_date, balance=result.balance)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register jobs and start the poll loop."""
        if self._running:
            logger.warning("BillingScheduler already running; ignoring start()")
            return
        await self.ensure_jobs()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BillingScheduler started (worker=%s)", self._worker_id)

    async def stop(self) -> None:
        """Stop the poll loop gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("BillingScheduler stopped (worker=%s)", self._worker_id)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("BillingScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("BillingScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._settings.scheduler_poll_interval)
