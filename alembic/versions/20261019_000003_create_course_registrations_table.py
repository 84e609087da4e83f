"""Create course_registrations table

Revision ID: 20261019_000003
Revises: 20261019_000002
Create Date: 2026-10-19

Enrollment store written by the enrollment trigger once an order is paid.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000003"
down_revision: Union[str, None] = "20261019_000002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "course_registrations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("course_id", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", name="registration_status", native_enum=False, create_constraint=True),
            nullable=False,
        ),
        sa.Column("payment_status", sa.String(16), nullable=True),
        sa.Column("payment_id", sa.String(64), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "course_id", name="uq_course_registrations_user_course"),
    )
    op.create_index("ix_course_registrations_user_id", "course_registrations", ["user_id"])
    op.create_index("ix_course_registrations_course_id", "course_registrations", ["course_id"])
    op.create_index("ix_course_registrations_payment_id", "course_registrations", ["payment_id"])


def downgrade() -> None:
    op.drop_index("ix_course_registrations_payment_id", table_name="course_registrations")
    op.drop_index("ix_course_registrations_course_id", table_name="course_registrations")
    op.drop_index("ix_course_registrations_user_id", table_name="course_registrations")
    op.drop_table("course_registrations")
