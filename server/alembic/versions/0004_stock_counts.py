"""physical stock counts

Revision ID: 0004_stock_counts
Revises: 0003_order_cancellation
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0004_stock_counts"
down_revision = "0003_order_cancellation"
branch_labels = None
depends_on = None


def _quantity():
    return sa.Numeric(18, 6)


def upgrade() -> None:
    op.create_table(
        "stock_counts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column(
            "item_tier",
            sa.Enum("raw", "semi", "finished", name="stock_count_item_tier"),
            nullable=False,
        ),
        sa.Column("system_quantity", _quantity(), nullable=False),
        sa.Column("physical_quantity", _quantity(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", name="stock_count_status"),
            nullable=False,
        ),
        sa.Column("counted_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("counted_at", sa.DateTime(), nullable=False),
        sa.Column("reviewed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("adjustment_movement_id", sa.Integer(), sa.ForeignKey("stock_movements.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint("system_quantity >= 0", name="ck_stock_count_system_non_negative"),
        sa.CheckConstraint("physical_quantity >= 0", name="ck_stock_count_physical_non_negative"),
    )
    op.create_index("ix_stock_counts_item_id", "stock_counts", ["item_id"])


def downgrade() -> None:
    op.drop_index("ix_stock_counts_item_id", table_name="stock_counts")
    op.drop_table("stock_counts")
