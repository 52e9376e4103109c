"""initial stock ledger schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ITEM_TIERS = ("raw", "semi", "finished")
MATERIAL_TIERS = ("raw", "semi")
PRODUCIBLE_TIERS = ("semi", "finished")


def _quantity():
    return sa.Numeric(18, 6)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column(
            "role",
            sa.Enum("manager", "planner", "operator", "warehouse", name="user_role"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tier", sa.Enum(*ITEM_TIERS, name="item_tier"), nullable=False),
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("unit", sa.String(length=20), nullable=False),
        sa.Column("quantity", _quantity(), nullable=False),
        sa.Column("reserved_quantity", _quantity(), nullable=False),
        sa.Column("critical_level", _quantity(), nullable=True),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("barcode", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tier", "code", name="uq_item_tier_code"),
        sa.CheckConstraint("quantity >= 0", name="ck_item_quantity_non_negative"),
        sa.CheckConstraint("reserved_quantity >= 0", name="ck_item_reserved_non_negative"),
    )

    op.create_table(
        "bom_edges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("parent_item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("parent_tier", sa.Enum(*PRODUCIBLE_TIERS, name="bom_parent_tier"), nullable=False),
        sa.Column("child_item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("child_tier", sa.Enum(*MATERIAL_TIERS, name="bom_child_tier"), nullable=False),
        sa.Column("quantity_per_unit", _quantity(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("parent_item_id", "child_item_id", name="uq_bom_edge_parent_child"),
        sa.CheckConstraint("quantity_per_unit > 0", name="ck_bom_edge_quantity_positive"),
        sa.CheckConstraint("parent_item_id <> child_item_id", name="ck_bom_edge_not_self"),
    )
    op.create_index("ix_bom_edges_parent_item_id", "bom_edges", ["parent_item_id"])
    op.create_index("ix_bom_edges_child_item_id", "bom_edges", ["child_item_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=30), nullable=False, unique=True),
        sa.Column("customer_name", sa.String(length=200), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "in_production", "completed", "cancelled", name="order_status"),
            nullable=False,
        ),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "order_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("quantity", _quantity(), nullable=False),
    )

    op.create_table(
        "production_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("product_tier", sa.Enum(*PRODUCIBLE_TIERS, name="plan_product_tier"), nullable=False),
        sa.Column("planned_quantity", _quantity(), nullable=False),
        sa.Column("produced_quantity", _quantity(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("planned", "in_progress", "completed", "cancelled", name="plan_status"),
            nullable=False,
        ),
        sa.Column("assigned_operator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.CheckConstraint("planned_quantity > 0", name="ck_plan_planned_positive"),
        sa.CheckConstraint("produced_quantity >= 0", name="ck_plan_produced_non_negative"),
    )
    op.create_index("ix_production_plans_order_id", "production_plans", ["order_id"])

    op.create_table(
        "bom_snapshot_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("production_plans.id"), nullable=False),
        sa.Column("material_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("material_tier", sa.Enum(*MATERIAL_TIERS, name="snapshot_material_tier"), nullable=False),
        sa.Column("material_code", sa.String(length=100), nullable=False),
        sa.Column("material_name", sa.String(length=200), nullable=False),
        sa.Column("quantity_per_unit", _quantity(), nullable=False),
        sa.Column("quantity_needed_total", _quantity(), nullable=False),
        sa.UniqueConstraint("plan_id", "material_id", name="uq_snapshot_plan_material"),
    )
    op.create_index("ix_bom_snapshot_lines_plan_id", "bom_snapshot_lines", ["plan_id"])

    op.create_table(
        "production_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("production_plans.id"), nullable=False),
        sa.Column("quantity_produced", _quantity(), nullable=False),
        sa.Column("operator_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("correlation_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("status", sa.Enum("active", "voided", name="production_log_status"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("voided_at", sa.DateTime(), nullable=True),
        sa.Column("voided_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("void_reason", sa.Text(), nullable=True),
        sa.Column("void_correlation_id", sa.String(length=36), nullable=True),
        sa.CheckConstraint("quantity_produced > 0", name="ck_production_log_quantity_positive"),
    )
    op.create_index("ix_production_logs_plan_id", "production_logs", ["plan_id"])

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("item_tier", sa.Enum(*ITEM_TIERS, name="movement_item_tier"), nullable=False),
        sa.Column(
            "movement_type",
            sa.Enum("inflow", "outflow", "production_in", "production_out", "transfer", name="movement_type"),
            nullable=False,
        ),
        sa.Column("quantity", _quantity(), nullable=False),
        sa.Column("quantity_delta", _quantity(), nullable=False),
        sa.Column("before_quantity", _quantity(), nullable=False),
        sa.Column("after_quantity", _quantity(), nullable=False),
        sa.Column(
            "source",
            sa.Enum("manual", "purchase", "production", "transfer", "system", name="movement_source"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("correlation_id", sa.String(length=36), nullable=False),
        sa.Column("production_log_id", sa.Integer(), sa.ForeignKey("production_logs.id"), nullable=True),
        sa.Column("reversal_of_id", sa.Integer(), sa.ForeignKey("stock_movements.id"), nullable=True),
        sa.Column("reverses_correlation_id", sa.String(length=36), nullable=True),
        sa.Column("is_reconciliation", sa.Boolean(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_movement_quantity_non_negative"),
        sa.CheckConstraint("after_quantity >= 0", name="ck_stock_movement_after_non_negative"),
    )
    op.create_index("ix_stock_movements_item_created", "stock_movements", ["item_id", "created_at"])
    op.create_index("ix_stock_movements_correlation_id", "stock_movements", ["correlation_id"])
    op.create_index(
        "ix_stock_movements_reverses_correlation_id",
        "stock_movements",
        ["reverses_correlation_id"],
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("owner_type", sa.Enum("plan", "order", name="reservation_owner_type"), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("quantity_reserved", _quantity(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("released_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("quantity_reserved >= 0", name="ck_reservation_quantity_non_negative"),
    )
    op.create_index("ix_reservations_item_id", "reservations", ["item_id"])
    op.create_index("ix_reservations_owner", "reservations", ["owner_type", "owner_id"])

    op.create_table(
        "critical_stock_notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("items.id"), nullable=False),
        sa.Column("is_open", sa.Boolean(), nullable=False),
        sa.Column("quantity_at_open", _quantity(), nullable=False),
        sa.Column("critical_level", _quantity(), nullable=False),
        sa.Column("opened_at", sa.DateTime(), nullable=False),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("quantity_at_close", _quantity(), nullable=True),
    )
    op.create_index(
        "uq_critical_stock_open_item",
        "critical_stock_notifications",
        ["item_id"],
        unique=True,
        sqlite_where=sa.text("is_open = 1"),
        postgresql_where=sa.text("is_open"),
    )


def downgrade() -> None:
    op.drop_index("uq_critical_stock_open_item", table_name="critical_stock_notifications")
    op.drop_table("critical_stock_notifications")
    op.drop_index("ix_reservations_owner", table_name="reservations")
    op.drop_index("ix_reservations_item_id", table_name="reservations")
    op.drop_table("reservations")
    op.drop_index("ix_stock_movements_reverses_correlation_id", table_name="stock_movements")
    op.drop_index("ix_stock_movements_correlation_id", table_name="stock_movements")
    op.drop_index("ix_stock_movements_item_created", table_name="stock_movements")
    op.drop_table("stock_movements")
    op.drop_index("ix_production_logs_plan_id", table_name="production_logs")
    op.drop_table("production_logs")
    op.drop_index("ix_bom_snapshot_lines_plan_id", table_name="bom_snapshot_lines")
    op.drop_table("bom_snapshot_lines")
    op.drop_index("ix_production_plans_order_id", table_name="production_plans")
    op.drop_table("production_plans")
    op.drop_table("order_lines")
    op.drop_table("orders")
    op.drop_index("ix_bom_edges_child_item_id", table_name="bom_edges")
    op.drop_index("ix_bom_edges_parent_item_id", table_name="bom_edges")
    op.drop_table("bom_edges")
    op.drop_table("items")
    op.drop_table("users")
