"""reconciliation bookkeeping tables

Revision ID: 0001_reconcile_tables
Revises:
Create Date: 2026-02-02 09:30:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_reconcile_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dedup_ignored",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_id_a", sa.String(length=64), nullable=False),
        sa.Column("patient_id_b", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("patient_id_a", "patient_id_b", name="uq_dedup_ignored_pair"),
    )

    op.create_table(
        "reconcile_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("from_patient_id", sa.String(length=64), nullable=False),
        sa.Column("to_patient_id", sa.String(length=64), nullable=True),
        sa.Column("details_json", sa.JSON(), nullable=True),
    )
    op.create_index("ix_reconcile_events_from_patient_id", "reconcile_events", ["from_patient_id"])


def downgrade() -> None:
    op.drop_index("ix_reconcile_events_from_patient_id", table_name="reconcile_events")
    op.drop_table("reconcile_events")
    op.drop_table("dedup_ignored")
