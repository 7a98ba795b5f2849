"""Repository classes providing access to the master database.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on ``session.begin()`` / ``get_session``).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from store_engine.state.tables import (
    BillingJobTable,
    CreditBalanceTable,
    CreditTransactionTable,
    CreditUsageTable,
    StoreCredentialTable,
    StoreHostnameTable,
    StoreTable,
)

logger = logging.getLogger(__name__)


def normalize_hostname(hostname: str) -> str:
    """Lower-case *hostname* and strip any port and trailing dot.

    ``"Shop.Example.com:443"`` and ``"shop.example.com."`` both map to
    ``"shop.example.com"``.  Bracketed IPv6 literals keep their brackets.
    """
    host = hostname.strip().lower()
    if host.startswith("["):
        end = host.find("]")
        host = host[: end + 1] if end != -1 else host
    elif host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: values[col] for col in update_columns},
        )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# StoreRepository
# ---------------------------------------------------------------------------


class StoreRepository:
    """Registry rows and hostname routing.

    Writes here belong to the provisioning collaborator; the tenancy core
    only reads.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        store_id: str,
        slug: str,
        *,
        name: str | None = None,
        is_active: bool = True,
        published: bool = False,
        hostnames: list[str] | None = None,
    ) -> StoreTable:
        """Insert a store and its hostnames.  The first hostname is primary."""
        now = datetime.now(UTC)
        row = StoreTable(
            store_id=store_id,
            slug=slug,
            name=name,
            is_active=is_active,
            published=published,
            published_at=now if published else None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        for index, hostname in enumerate(hostnames or []):
            await self.add_hostname(store_id, hostname, is_primary=index == 0)
        return row

    async def add_hostname(self, store_id: str, hostname: str, *, is_primary: bool = False) -> None:
        self._session.add(
            StoreHostnameTable(
                hostname=normalize_hostname(hostname),
                store_id=store_id,
                is_primary=is_primary,
            )
        )
        await self._session.flush()

    async def get(self, store_id: str) -> StoreTable | None:
        result = await self._session.execute(select(StoreTable).where(StoreTable.store_id == store_id))
        return result.scalar_one_or_none()

    async def get_store_id_by_hostname(self, hostname: str) -> str | None:
        stmt = select(StoreHostnameTable.store_id).where(
            StoreHostnameTable.hostname == normalize_hostname(hostname),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_hostnames(self, store_id: str) -> list[str]:
        stmt = (
            select(StoreHostnameTable.hostname)
            .where(StoreHostnameTable.store_id == store_id)
            .order_by(StoreHostnameTable.is_primary.desc(), StoreHostnameTable.hostname)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    async def list_published_ids(self) -> list[str]:
        """Return ids of stores that are both published and active, ordered."""
        stmt = (
            select(StoreTable.store_id)
            .where(
                StoreTable.published == True,  # noqa: E712
                StoreTable.is_active == True,  # noqa: E712
            )
            .order_by(StoreTable.store_id)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    async def set_published(self, store_id: str, published: bool) -> bool:
        now = datetime.now(UTC)
        stmt = (
            update(StoreTable)
            .where(StoreTable.store_id == store_id)
            .values(published=published, published_at=now if published else None, updated_at=now)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def set_active(self, store_id: str, is_active: bool) -> bool:
        stmt = (
            update(StoreTable)
            .where(StoreTable.store_id == store_id)
            .values(is_active=is_active, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CredentialRepository
# ---------------------------------------------------------------------------


class CredentialRepository:
    """CRUD operations for the ``store_credentials`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def store(
        self,
        store_id: str,
        *,
        ciphertext: bytes,
        iv: bytes,
        auth_tag: bytes,
        algorithm_version: int,
        database_type: str = "postgresql",
        host: str | None = None,
    ) -> None:
        """Upsert the single live credential for *store_id*.

        Replacing a credential resets ``connection_status`` to ``pending``.
        """
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            StoreCredentialTable,
            values={
                "store_id": store_id,
                "database_type": database_type,
                "ciphertext": ciphertext,
                "iv": iv,
                "auth_tag": auth_tag,
                "algorithm_version": algorithm_version,
                "host": host,
                "connection_status": "pending",
                "created_at": now,
                "rotated_at": now,
            },
            index_elements=["store_id"],
            update_columns=[
                "database_type",
                "ciphertext",
                "iv",
                "auth_tag",
                "algorithm_version",
                "host",
                "connection_status",
                "rotated_at",
            ],
        )
        await self._session.flush()

    async def get(self, store_id: str) -> StoreCredentialTable | None:
        stmt = select(StoreCredentialTable).where(StoreCredentialTable.store_id == store_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_status(self, store_id: str, status: str) -> bool:
        """Record the outcome of the latest connection attempt."""
        stmt = (
            update(StoreCredentialTable)
            .where(StoreCredentialTable.store_id == store_id)
            .values(connection_status=status, last_connection_test=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CreditRepository
# ---------------------------------------------------------------------------


class CreditRepository:
    """Row-level primitives for the credit ledger.

    The primitives are deliberately small; atomicity comes from the ledger
    running them inside a single transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def open_account(self, store_id: str) -> bool:
        """Create a zero-balance row.  Returns ``True`` if it was created."""
        result = await _dialect_insert_ignore(
            self._session,
            CreditBalanceTable,
            values={"store_id": store_id, "balance": 0, "updated_at": datetime.now(UTC)},
            index_elements=["store_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_balance(self, store_id: str) -> int | None:
        stmt = select(CreditBalanceTable.balance).where(CreditBalanceTable.store_id == store_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment(self, store_id: str, amount: int) -> bool:
        """Add *amount* to the balance.  Returns ``False`` if no account exists."""
        stmt = (
            update(CreditBalanceTable)
            .where(CreditBalanceTable.store_id == store_id)
            .values(balance=CreditBalanceTable.balance + amount, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def decrement_if_sufficient(self, store_id: str, amount: int) -> bool:
        """Subtract *amount* only if the balance covers it.

        A single conditional UPDATE: the row lock it takes serialises
        concurrent debits for the same store, and the ``balance >= amount``
        guard is re-evaluated against the committed value.
        """
        stmt = (
            update(CreditBalanceTable)
            .where(
                CreditBalanceTable.store_id == store_id,
                CreditBalanceTable.balance >= amount,
            )
            .values(balance=CreditBalanceTable.balance - amount, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def add_transaction(
        self,
        store_id: str,
        amount: int,
        *,
        kind: str,
        description: str | None,
        reference_id: str | None,
    ) -> CreditTransactionTable:
        row = CreditTransactionTable(
            id=uuid.uuid4().hex,
            store_id=store_id,
            amount=amount,
            kind=kind,
            description=description,
            reference_id=reference_id,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def add_usage(
        self,
        store_id: str,
        amount: int,
        *,
        description: str,
        usage_type: str,
        idempotency_key: str | None,
        balance_after: int,
    ) -> CreditUsageTable:
        """Insert a usage record.  Raises ``IntegrityError`` on a duplicate key."""
        row = CreditUsageTable(
            id=uuid.uuid4().hex,
            store_id=store_id,
            amount=amount,
            description=description,
            usage_type=usage_type,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_usage_by_key(self, store_id: str, idempotency_key: str) -> CreditUsageTable | None:
        stmt = select(CreditUsageTable).where(
            CreditUsageTable.store_id == store_id,
            CreditUsageTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_transactions(self, store_id: str, limit: int = 100) -> list[CreditTransactionTable]:
        stmt = (
            select(CreditTransactionTable)
            .where(CreditTransactionTable.store_id == store_id)
            .order_by(CreditTransactionTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_usage(
        self,
        store_id: str,
        *,
        limit: int = 100,
        usage_type: str | None = None,
        since: datetime | None = None,
    ) -> list[CreditUsageTable]:
        conditions = [CreditUsageTable.store_id == store_id]
        if usage_type is not None:
            conditions.append(CreditUsageTable.usage_type == usage_type)
        if since is not None:
            conditions.append(CreditUsageTable.created_at >= since)
        stmt = (
            select(CreditUsageTable)
            .where(and_(*conditions))
            .order_by(CreditUsageTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def totals(self, store_id: str) -> tuple[int, int]:
        """Return ``(sum of transactions, sum of usage)`` for *store_id*."""
        credited = await self._session.execute(
            select(func.coalesce(func.sum(CreditTransactionTable.amount), 0)).where(
                CreditTransactionTable.store_id == store_id
            )
        )
        used = await self._session.execute(
            select(func.coalesce(func.sum(CreditUsageTable.amount), 0)).where(CreditUsageTable.store_id == store_id)
        )
        return int(credited.scalar_one()), int(used.scalar_one())


# ---------------------------------------------------------------------------
# BillingJobRepository
# ---------------------------------------------------------------------------


class BillingJobRepository:
    """State transitions for ``billing_jobs``.

    Every transition is a single UPDATE whose WHERE clause names the
    expected current status, so two racing triggers can never both
    succeed: the loser's UPDATE matches zero rows.
    """

    _CLAIMABLE_BY_TRIGGER = ("pending", "done", "failed")

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure(self, kind: str, cron_expression: str, next_run_at: datetime) -> bool:
        """Create the job row for *kind* if missing.  Returns ``True`` if created."""
        now = datetime.now(UTC)
        result = await _dialect_insert_ignore(
            self._session,
            BillingJobTable,
            values={
                "kind": kind,
                "status": "pending",
                "cron_expression": cron_expression,
                "next_run_at": next_run_at,
                "run_count": 0,
                "success_count": 0,
                "failure_count": 0,
                "consecutive_failures": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["kind"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, kind: str) -> BillingJobTable | None:
        result = await self._session.execute(select(BillingJobTable).where(BillingJobTable.kind == kind))
        return result.scalar_one_or_none()

    async def list_all(self) -> list[BillingJobTable]:
        result = await self._session.execute(select(BillingJobTable).order_by(BillingJobTable.kind))
        return list(result.scalars().all())

    async def list_due_kinds(self, now: datetime) -> list[str]:
        stmt = (
            select(BillingJobTable.kind)
            .where(BillingJobTable.status == "pending", BillingJobTable.next_run_at <= now)
            .order_by(BillingJobTable.next_run_at)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    async def claim(
        self,
        kind: str,
        worker_id: str,
        now: datetime,
        *,
        lease_cutoff: datetime,
        force: bool = False,
    ) -> bool:
        """Atomically move *kind* to ``running``.

        The poller (``force=False``) claims only a ``pending`` job whose
        ``next_run_at`` has passed.  A manual trigger (``force=True``)
        claims any job that is not running.  Either path may take over a
        ``running`` job whose claim is older than *lease_cutoff*.
        """
        if force:
            claimable = BillingJobTable.status.in_(self._CLAIMABLE_BY_TRIGGER)
        else:
            claimable = and_(BillingJobTable.status == "pending", BillingJobTable.next_run_at <= now)
        abandoned = and_(BillingJobTable.status == "running", BillingJobTable.claimed_at < lease_cutoff)

        stmt = (
            update(BillingJobTable)
            .where(BillingJobTable.kind == kind, or_(claimable, abandoned))
            .values(status="running", claimed_by=worker_id, claimed_at=now, updated_at=now)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def finish(
        self,
        kind: str,
        worker_id: str,
        *,
        succeeded: bool,
        result: dict[str, Any] | None,
        error: str | None,
        now: datetime,
        next_run_at: datetime,
    ) -> bool:
        """Move a job this worker holds from ``running`` to ``done`` or ``failed``."""
        stmt = (
            update(BillingJobTable)
            .where(
                BillingJobTable.kind == kind,
                BillingJobTable.status == "running",
                BillingJobTable.claimed_by == worker_id,
            )
            .values(
                status="done" if succeeded else "failed",
                last_run_at=now,
                last_result=result,
                last_error=error,
                next_run_at=next_run_at,
                run_count=BillingJobTable.run_count + 1,
                success_count=BillingJobTable.success_count + (1 if succeeded else 0),
                failure_count=BillingJobTable.failure_count + (0 if succeeded else 1),
                consecutive_failures=0 if succeeded else BillingJobTable.consecutive_failures + 1,
                claimed_by=None,
                claimed_at=None,
                updated_at=now,
            )
        )
        res = await self._session.execute(stmt)
        await self._session.flush()
        return res.rowcount > 0  # type: ignore[attr-defined]

    async def release_due(self, now: datetime) -> int:
        """Move ``done`` / ``failed`` jobs whose next period has begun back to ``pending``."""
        stmt = (
            update(BillingJobTable)
            .where(
                BillingJobTable.status.in_(("done", "failed")),
                BillingJobTable.next_run_at <= now,
            )
            .values(status="pending", updated_at=now)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined, return-value]
