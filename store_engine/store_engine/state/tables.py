"""SQLAlchemy 2.0 ORM table definitions for the master database.

The master database holds everything shared across tenants: the store
registry, hostname routing, encrypted tenant credentials, the credit
ledger and billing job state.  Tenant data lives in each store's own
database and is never modelled here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Coerce a naive datetime read back from SQLite to UTC-aware."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all master tables."""


# ---------------------------------------------------------------------------
# Store registry
# ---------------------------------------------------------------------------


class StoreTable(Base):
    """One row per tenant store.  ``store_id`` never changes once created."""

    __tablename__ = "stores"

    store_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_stores_published_active", "published", "is_active"),)


class StoreHostnameTable(Base):
    """Hostname routing.  Hostnames are stored normalised (lower-case, no port)."""

    __tablename__ = "store_hostnames"

    hostname: Mapped[str] = mapped_column(String(255), primary_key=True)
    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.store_id", ondelete="CASCADE"), nullable=False
    )
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_store_hostnames_store", "store_id"),)


class StoreCredentialTable(Base):
    """Encrypted tenant database credential, one live row per store.

    The connection URL is sealed with AES-256-GCM by
    :class:`store_engine.security.vault.CredentialVault`.  ``iv`` and
    ``auth_tag`` are stored beside the ciphertext; the key never is.
    ``host`` is non-sensitive metadata kept in clear for diagnostics.
    """

    __tablename__ = "store_credentials"

    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.store_id", ondelete="CASCADE"), primary_key=True
    )
    database_type: Mapped[str] = mapped_column(String(32), nullable=False, default="postgresql")
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    iv: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    auth_tag: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    algorithm_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    host: Mapped[str | None] = mapped_column(String(255), nullable=True)
    connection_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    last_connection_test: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    rotated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "connection_status IN ('pending', 'connected', 'failed')",
            name="ck_store_credentials_status",
        ),
    )


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class CreditBalanceTable(Base):
    """Current spendable credit per store.

    Derived state: always equal to the sum of ``credit_transactions``
    minus the sum of ``credit_usage`` for the store.  Mutated only inside
    ledger transactions.
    """

    __tablename__ = "credit_balances"

    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.store_id", ondelete="CASCADE"), primary_key=True
    )
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),)


class CreditTransactionTable(Base):
    """Append-only balance increases (purchases, adjustments, bonuses)."""

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.store_id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="purchase")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
        CheckConstraint(
            "kind IN ('purchase', 'adjustment', 'bonus')",
            name="ck_credit_transactions_kind",
        ),
        Index("ix_credit_transactions_store_created", "store_id", "created_at"),
    )


class CreditUsageTable(Base):
    """Append-only balance decreases.

    ``(store_id, idempotency_key)`` is unique so that a retried or
    duplicate-triggered charge for the same period collapses into the first
    one.  Keys are scoped to the store: two stores may use the same key.
    """

    __tablename__ = "credit_usage"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("stores.store_id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    usage_type: Mapped[str] = mapped_column(String(64), nullable=False, default="manual")
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_usage_amount_positive"),
        UniqueConstraint("store_id", "idempotency_key", name="uq_credit_usage_store_key"),
        Index("ix_credit_usage_store_created", "store_id", "created_at"),
        Index("ix_credit_usage_store_type", "store_id", "usage_type"),
    )


# ---------------------------------------------------------------------------
# Billing jobs
# ---------------------------------------------------------------------------


class BillingJobTable(Base):
    """Perpetually rescheduled billing job, one row per kind.

    ``status`` moves ``pending -> running -> done|failed -> pending``; every
    transition is a conditional UPDATE on the current status.
    """

    __tablename__ = "billing_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    cron_expression: Mapped[str] = mapped_column(String(128), nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_result: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="ck_billing_jobs_status",
        ),
        Index("ix_billing_jobs_status_next_run", "status", "next_run_at"),
    )
