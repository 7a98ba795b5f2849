"""Credit ledger: per-store balances, purchases and usage.

Balances only move inside a single database transaction that also writes
the matching ``credit_transactions`` or ``credit_usage`` row, so the
stored balance always equals the sum of transactions minus the sum of
usage.  Debits are conditional (``balance >= amount``) and idempotent per
``(store_id, idempotency_key)``: replaying a key for the same store returns
the first result and never charges twice.  Other stores may reuse the key.

Each transaction writes before it reads.  On PostgreSQL the conditional
UPDATE takes the row lock that serialises same-store debits; on SQLite it
takes the database write lock up front instead of upgrading a read
snapshot.  Operations on the same store are additionally serialised
in-process by a per-store lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from store_engine.errors import DuplicateCharge, InsufficientCredits, UnknownTenant
from store_engine.locks import KeyedLock
from store_engine.state.repository import CreditRepository
from store_engine.state.tables import CreditTransactionTable, CreditUsageTable, as_utc

logger = logging.getLogger(__name__)

TRANSACTION_KINDS = frozenset({"purchase", "adjustment", "bonus"})

# A duplicate key with no visible usage row is retried this many times in total.
_DEBIT_ATTEMPTS = 2


@dataclass(frozen=True)
class DebitResult:
    """Outcome of :meth:`CreditLedger.debit`.

    ``duplicate`` is ``True`` when the idempotency key had already been
    charged; ``balance`` and ``usage_id`` then describe that first charge.
    """

    store_id: str
    amount: int
    balance: int
    usage_id: str
    duplicate: bool = False


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


def _transaction_to_dict(row: CreditTransactionTable) -> dict[str, Any]:
    created = as_utc(row.created_at)
    return {
        "id": row.id,
        "store_id": row.store_id,
        "amount": row.amount,
        "kind": row.kind,
        "description": row.description,
        "reference_id": row.reference_id,
        "created_at": created.isoformat() if created else None,
    }


def _usage_to_dict(row: CreditUsageTable) -> dict[str, Any]:
    created = as_utc(row.created_at)
    return {
        "id": row.id,
        "store_id": row.store_id,
        "amount": row.amount,
        "description": row.description,
        "usage_type": row.usage_type,
        "idempotency_key": row.idempotency_key,
        "balance_after": row.balance_after,
        "created_at": created.isoformat() if created else None,
    }


class CreditLedger:
    """Atomic balance operations over the master database.

    Parameters
    ----------
    session_factory:
        Factory for sessions on the master database.  Each public method
        runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, store_id: str) -> int:
        async with self._session_factory() as session:
            balance = await CreditRepository(session).get_balance(store_id)
        if balance is None:
            raise UnknownTenant(store_id, reason="no credit account")
        return balance

    async def has_enough_credits(self, store_id: str, amount: int) -> bool:
        """Whether the store can currently afford *amount* (the publish check)."""
        return await self.get_balance(store_id) >= amount

    async def list_transactions(self, store_id: str, limit: int = 50) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await CreditRepository(session).list_transactions(store_id, limit=limit)
        return [_transaction_to_dict(r) for r in rows]

    async def list_usage(
        self,
        store_id: str,
        limit: int = 50,
        usage_type: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await CreditRepository(session).list_usage(store_id, limit=limit, usage_type=usage_type)
        return [_usage_to_dict(r) for r in rows]

    async def usage_report(
        self,
        store_id: str,
        days: int = 30,
        usage_type: str = "daily_charge",
    ) -> dict[str, Any]:
        """Charges of *usage_type* over the last *days* days with a summary.

        With the default usage type this is the store's uptime report: one
        record per day the store was published and charged.
        """
        since = datetime.now(UTC) - timedelta(days=days)
        async with self._session_factory() as session:
            rows = await CreditRepository(session).list_usage(
                store_id,
                limit=max(days, 1) * 10,
                usage_type=usage_type,
                since=since,
            )
        records = [_usage_to_dict(r) for r in rows]
        dates = [as_utc(r.created_at) for r in rows]
        return {
            "store_id": store_id,
            "period_days": days,
            "records": records,
            "summary": {
                "total_days": len(records),
                "total_credits_charged": sum(r.amount for r in rows),
                "first_charge_date": min(dates).isoformat() if dates else None,
                "last_charge_date": max(dates).isoformat() if dates else None,
            },
        }

    async def verify_balance(self, store_id: str) -> dict[str, Any]:
        """Recompute the balance from the append-only history and compare."""
        async with self._session_factory() as session:
            repo = CreditRepository(session)
            stored = await repo.get_balance(store_id)
            if stored is None:
                raise UnknownTenant(store_id, reason="no credit account")
            credited, used = await repo.totals(store_id)
        computed = credited - used
        if computed != stored:
            logger.error(
                "Balance drift for store=%s: stored=%d computed=%d",
                store_id,
                stored,
                computed,
            )
        return {
            "store_id": store_id,
            "stored_balance": stored,
            "computed_balance": computed,
            "total_credited": credited,
            "total_used": used,
            "consistent": computed == stored,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def open_account(self, store_id: str) -> bool:
        """Create a zero balance for *store_id*.  Idempotent."""
        async with self._session_factory() as session:
            created = await CreditRepository(session).open_account(store_id)
            await session.commit()
        if created:
            logger.info("Opened credit account for store=%s", store_id)
        return created

    async def credit(
        self,
        store_id: str,
        amount: int,
        *,
        kind: str = "purchase",
        description: str | None = None,
        reference_id: str | None = None,
    ) -> int:
        """Add *amount* credits and record the transaction.  Returns the new balance."""
        _require_positive(amount)
        if kind not in TRANSACTION_KINDS:
            raise ValueError(f"kind must be one of {sorted(TRANSACTION_KINDS)}, got {kind!r}")

        async with self._locks.hold(store_id):
            async with self._session_factory() as session:
                repo = CreditRepository(session)
                if not await repo.increment(store_id, amount):
                    raise UnknownTenant(store_id, reason="no credit account")
                await repo.add_transaction(
                    store_id,
                    amount,
                    kind=kind,
                    description=description,
                    reference_id=reference_id,
                )
                balance = await repo.get_balance(store_id)
                await session.commit()

        logger.info("Credited store=%s amount=%d kind=%s balance=%s", store_id, amount, kind, balance)
        assert balance is not None  # noqa: S101
        return balance

    async def debit(
        self,
        store_id: str,
        amount: int,
        description: str,
        idempotency_key: str | None = None,
        *,
        usage_type: str = "manual",
    ) -> DebitResult:
        """Charge *amount* credits.

        Raises
        ------
        InsufficientCredits
            The balance is lower than *amount*.  Nothing is written.
        UnknownTenant
            The store has no credit account.
        """
        _require_positive(amount)

        async with self._locks.hold(store_id):
            for attempt in range(1, _DEBIT_ATTEMPTS + 1):
                async with self._session_factory() as session:
                    try:
                        result = await self._debit_in_session(
                            session, store_id, amount, description, idempotency_key, usage_type
                        )
                        await session.commit()
                    except DuplicateCharge:
                        await session.rollback()
                    else:
                        logger.info(
                            "Debited store=%s amount=%d type=%s balance=%d",
                            store_id,
                            amount,
                            usage_type,
                            result.balance,
                        )
                        return result

                    # The key was already charged: report the original charge.
                    assert idempotency_key is not None  # noqa: S101
                    prior = await CreditRepository(session).get_usage_by_key(store_id, idempotency_key)

                if prior is not None:
                    logger.info("Duplicate charge ignored for store=%s key=%s", store_id, idempotency_key)
                    return DebitResult(
                        store_id=prior.store_id,
                        amount=prior.amount,
                        balance=prior.balance_after,
                        usage_id=prior.id,
                        duplicate=True,
                    )
                # The conflicting row was rolled back elsewhere; charge again.
                logger.warning(
                    "Duplicate key for store=%s key=%s has no usage record (attempt %d/%d)",
                    store_id,
                    idempotency_key,
                    attempt,
                    _DEBIT_ATTEMPTS,
                )

        assert idempotency_key is not None  # noqa: S101
        raise DuplicateCharge(idempotency_key)

    async def _debit_in_session(
        self,
        session: AsyncSession,
        store_id: str,
        amount: int,
        description: str,
        idempotency_key: str | None,
        usage_type: str,
    ) -> DebitResult:
        repo = CreditRepository(session)

        if not await repo.decrement_if_sufficient(store_id, amount):
            if idempotency_key is not None and await repo.get_usage_by_key(store_id, idempotency_key) is not None:
                raise DuplicateCharge(idempotency_key)
            balance = await repo.get_balance(store_id)
            if balance is None:
                raise UnknownTenant(store_id, reason="no credit account")
            raise InsufficientCredits(store_id, balance, amount)

        new_balance = await repo.get_balance(store_id)
        assert new_balance is not None  # noqa: S101
        try:
            usage = await repo.add_usage(
                store_id,
                amount,
                description=description,
                usage_type=usage_type,
                idempotency_key=idempotency_key,
                balance_after=new_balance,
            )
        except IntegrityError as exc:
            if idempotency_key is None:
                raise
            raise DuplicateCharge(idempotency_key) from exc

        return DebitResult(
            store_id=store_id,
            amount=amount,
            balance=new_balance,
            usage_id=usage.id,
        )
