"""widen bom snapshot per-unit quantity

Revision ID: 0002_snapshot_per_unit_scale
Revises: 0001_initial
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_snapshot_per_unit_scale"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("bom_snapshot_lines") as batch_op:
        batch_op.alter_column(
            "quantity_per_unit",
            existing_type=sa.Numeric(18, 6),
            type_=sa.Numeric(36, 18),
            existing_nullable=False,
        )


def downgrade() -> None:
    with op.batch_alter_table("bom_snapshot_lines") as batch_op:
        batch_op.alter_column(
            "quantity_per_unit",
            existing_type=sa.Numeric(36, 18),
            type_=sa.Numeric(18, 6),
            existing_nullable=False,
        )
