"""Initial master schema for the storefront tenancy core.

Creates the store registry (stores, store_hostnames, store_credentials),
the credit ledger (credit_balances, credit_transactions, credit_usage)
and billing job state (billing_jobs).

Revision ID: 001
Revises: None
Create Date: 2026-03-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def _store_fk() -> sa.ForeignKey:
    return sa.ForeignKey("stores.store_id", ondelete="CASCADE")


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # stores
    # ------------------------------------------------------------------
    op.create_table(
        "stores",
        sa.Column("store_id", sa.String(64), primary_key=True),
        sa.Column("slug", sa.String(128), nullable=False, unique=True),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("published", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("published_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_stores_published_active", "stores", ["published", "is_active"])

    # ------------------------------------------------------------------
    # store_hostnames
    # ------------------------------------------------------------------
    op.create_table(
        "store_hostnames",
        sa.Column("hostname", sa.String(255), primary_key=True),
        sa.Column("store_id", sa.String(64), _store_fk(), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at"),
    )
    op.create_index("ix_store_hostnames_store", "store_hostnames", ["store_id"])

    # ------------------------------------------------------------------
    # store_credentials
    # ------------------------------------------------------------------
    op.create_table(
        "store_credentials",
        sa.Column("store_id", sa.String(64), _store_fk(), primary_key=True),
        sa.Column("database_type", sa.String(32), nullable=False, server_default="postgresql"),
        sa.Column("ciphertext", sa.LargeBinary(), nullable=False),
        sa.Column("iv", sa.LargeBinary(), nullable=False),
        sa.Column("auth_tag", sa.LargeBinary(), nullable=False),
        sa.Column("algorithm_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("host", sa.String(255), nullable=True),
        sa.Column("connection_status", sa.String(16), nullable=False, server_default="pending"),
        _timestamp("last_connection_test", nullable=True),
        _timestamp("created_at"),
        _timestamp("rotated_at"),
        sa.CheckConstraint(
            "connection_status IN ('pending', 'connected', 'failed')",
            name="ck_store_credentials_status",
        ),
    )

    # ------------------------------------------------------------------
    # credit_balances
    # ------------------------------------------------------------------
    op.create_table(
        "credit_balances",
        sa.Column("store_id", sa.String(64), _store_fk(), primary_key=True),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("updated_at"),
        sa.CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
    )

    # ------------------------------------------------------------------
    # credit_transactions
    # ------------------------------------------------------------------
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("store_id", sa.String(64), _store_fk(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False, server_default="purchase"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reference_id", sa.String(255), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
        sa.CheckConstraint("kind IN ('purchase', 'adjustment', 'bonus')", name="ck_credit_transactions_kind"),
    )
    op.create_index(
        "ix_credit_transactions_store_created",
        "credit_transactions",
        ["store_id", "created_at"],
    )

    # ------------------------------------------------------------------
    # credit_usage
    # ------------------------------------------------------------------
    op.create_table(
        "credit_usage",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("store_id", sa.String(64), _store_fk(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("usage_type", sa.String(64), nullable=False, server_default="manual"),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint("amount > 0", name="ck_credit_usage_amount_positive"),
        sa.UniqueConstraint("store_id", "idempotency_key", name="uq_credit_usage_store_key"),
    )
    op.create_index("ix_credit_usage_store_created", "credit_usage", ["store_id", "created_at"])
    op.create_index("ix_credit_usage_store_type", "credit_usage", ["store_id", "usage_type"])

    # ------------------------------------------------------------------
    # billing_jobs
    # ------------------------------------------------------------------
    op.create_table(
        "billing_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("cron_expression", sa.String(128), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_by", sa.String(128), nullable=True),
        _timestamp("claimed_at", nullable=True),
        _timestamp("last_run_at", nullable=True),
        sa.Column("last_result", _JSON, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="ck_billing_jobs_status",
        ),
    )
    op.create_index("ix_billing_jobs_status_next_run", "billing_jobs", ["status", "next_run_at"])


def downgrade() -> None:
    op.drop_table("billing_jobs")
    op.drop_table("credit_usage")
    op.drop_table("credit_transactions")
    op.drop_table("credit_balances")
    op.drop_table("store_credentials")
    op.drop_table("store_hostnames")
    op.drop_table("stores")
