"""Create payments table

Revision ID: 20261019_000002
Revises: 20261019_000001
Create Date: 2026-10-19

Ledger of purchase attempts. The partial unique index allows at most one
paid order per (user, course).
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261019_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PAYMENT_STATUSES = ("pending", "paid", "failed", "cancelled", "refunded")


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("order_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("course_id", sa.String(64), nullable=False),
        sa.Column("order_name", sa.String(200), nullable=False),
        sa.Column("declared_amount", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("method", sa.String(32), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*PAYMENT_STATUSES, name="payment_status", native_enum=False, create_constraint=True),
            nullable=False,
        ),
        sa.Column("customer_name", sa.String(100), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("success_url", sa.String(500), nullable=True),
        sa.Column("fail_url", sa.String(500), nullable=True),
        sa.Column("provider_transaction_id", sa.String(200), nullable=True),
        sa.Column("receipt_url", sa.String(500), nullable=True),
        sa.Column("fail_reason", sa.Text(), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refund_amount", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(), nullable=True),
        sa.Column("processing_token", sa.String(36), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(), nullable=True),
        sa.Column("attempted_payment_key", sa.String(200), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_course_id", "payments", ["course_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_provider_transaction_id", "payments", ["provider_transaction_id"])
    op.create_index("ix_payments_processing_token", "payments", ["processing_token"])
    op.create_index("ix_payments_user_course", "payments", ["user_id", "course_id"])
    op.create_index(
        "uq_payments_user_course_paid",
        "payments",
        ["user_id", "course_id"],
        unique=True,
        sqlite_where=sa.text("status = 'paid'"),
        postgresql_where=sa.text("status = 'paid'"),
        mssql_where=sa.text("status = 'paid'"),
    )


def downgrade() -> None:
    op.drop_index("uq_payments_user_course_paid", table_name="payments")
    op.drop_index("ix_payments_user_course", table_name="payments")
    op.drop_index("ix_payments_processing_token", table_name="payments")
    op.drop_index("ix_payments_provider_transaction_id", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_course_id", table_name="payments")
    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_table("payments")
