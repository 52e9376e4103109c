from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import relationship

from stockledger.db import Base


ITEM_TIERS = ("raw", "semi", "finished")
MATERIAL_TIERS = ("raw", "semi")
PRODUCIBLE_TIERS = ("semi", "finished")

MOVEMENT_TYPES = ("inflow", "outflow", "production_in", "production_out", "transfer")
MOVEMENT_SOURCES = ("manual", "purchase", "production", "transfer", "system")

USER_ROLES = ("manager", "planner", "operator", "warehouse")

ORDER_STATUSES = ("pending", "in_production", "completed", "cancelled")
PLAN_STATUSES = ("planned", "in_progress", "completed", "cancelled")
PRODUCTION_LOG_STATUSES = ("active", "voided")
RESERVATION_OWNER_TYPES = ("plan", "order")
STOCK_COUNT_STATUSES = ("pending", "approved", "rejected")

Quantity = Numeric(18, 6)
PerUnitQuantity = Numeric(36, 18)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(100), unique=True, nullable=False)
    full_name = Column(String(200), nullable=True)
    role = Column(Enum(*USER_ROLES, name="user_role"), nullable=False, default="operator")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Item(Base):
    """A stock-bearing entity of one tier. `quantity` moves only through the ledger."""

    __tablename__ = "items"

    id = Column(Integer, primary_key=True)
    tier = Column(Enum(*ITEM_TIERS, name="item_tier"), nullable=False)
    code = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)
    unit = Column(String(20), nullable=False, default="pcs")
    quantity = Column(Quantity, nullable=False, default=0)
    reserved_quantity = Column(Quantity, nullable=False, default=0)
    critical_level = Column(Quantity, nullable=True)
    unit_cost = Column(Numeric(14, 2), nullable=False, default=0)
    barcode = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tier", "code", name="uq_item_tier_code"),
        CheckConstraint("quantity >= 0", name="ck_item_quantity_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_item_reserved_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def available_quantity(self):
        return Decimal(self.quantity or 0) - Decimal(self.reserved_quantity or 0)

    @property
    def is_critical(self) -> bool:
        if self.critical_level is None:
            return False
        return Decimal(self.quantity or 0) <= Decimal(self.critical_level)


class BomEdge(Base):
    __tablename__ = "bom_edges"

    id = Column(Integer, primary_key=True)
    parent_item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    parent_tier = Column(Enum(*PRODUCIBLE_TIERS, name="bom_parent_tier"), nullable=False)
    child_item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    child_tier = Column(Enum(*MATERIAL_TIERS, name="bom_child_tier"), nullable=False)
    quantity_per_unit = Column(Quantity, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    parent = relationship("Item", foreign_keys=[parent_item_id])
    child = relationship("Item", foreign_keys=[child_item_id])

    __table_args__ = (
        UniqueConstraint("parent_item_id", "child_item_id", name="uq_bom_edge_parent_child"),
        CheckConstraint("quantity_per_unit > 0", name="ck_bom_edge_quantity_positive"),
        CheckConstraint("parent_item_id <> child_item_id", name="ck_bom_edge_not_self"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(30), nullable=False, unique=True)
    customer_name = Column(String(200), nullable=True)
    status = Column(Enum(*ORDER_STATUSES, name="order_status"), nullable=False, default="pending")
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lines = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan")
    plans = relationship("ProductionPlan", back_populates="order")


class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Quantity, nullable=False)

    order = relationship("Order", back_populates="lines")
    product = relationship("Item")


class ProductionPlan(Base):
    __tablename__ = "production_plans"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    product_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    product_tier = Column(Enum(*PRODUCIBLE_TIERS, name="plan_product_tier"), nullable=False)
    planned_quantity = Column(Quantity, nullable=False)
    produced_quantity = Column(Quantity, nullable=False, default=0)
    status = Column(Enum(*PLAN_STATUSES, name="plan_status"), nullable=False, default="planned")
    assigned_operator_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)

    order = relationship("Order", back_populates="plans")
    product = relationship("Item")
    snapshot_lines = relationship(
        "BomSnapshotLine",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="BomSnapshotLine.id",
    )
    logs = relationship("ProductionLog", back_populates="plan", order_by="ProductionLog.id")

    __table_args__ = (
        CheckConstraint("planned_quantity > 0", name="ck_plan_planned_positive"),
        CheckConstraint("produced_quantity >= 0", name="ck_plan_produced_non_negative"),
    )

    @property
    def remaining_quantity(self):
        return Decimal(self.planned_quantity or 0) - Decimal(self.produced_quantity or 0)


class BomSnapshotLine(Base):
    """Frozen material requirement of a plan. Never edited after the plan is created."""

    __tablename__ = "bom_snapshot_lines"

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey("production_plans.id"), nullable=False, index=True)
    material_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    material_tier = Column(Enum(*MATERIAL_TIERS, name="snapshot_material_tier"), nullable=False)
    material_code = Column(String(100), nullable=False)
    material_name = Column(String(200), nullable=False)
    quantity_per_unit = Column(PerUnitQuantity, nullable=False)
    quantity_needed_total = Column(Quantity, nullable=False)

    plan = relationship("ProductionPlan", back_populates="snapshot_lines")
    material = relationship("Item")

    __table_args__ = (
        UniqueConstraint("plan_id", "material_id", name="uq_snapshot_plan_material"),
    )


class ProductionLog(Base):
    __tablename__ = "production_logs"

    id = Column(Integer, primary_key=True)
    plan_id = Column(Integer, ForeignKey("production_plans.id"), nullable=False, index=True)
    quantity_produced = Column(Quantity, nullable=False)
    operator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    correlation_id = Column(String(36), nullable=False, unique=True)
    status = Column(Enum(*PRODUCTION_LOG_STATUSES, name="production_log_status"), nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    voided_at = Column(DateTime, nullable=True)
    voided_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    void_reason = Column(Text, nullable=True)
    void_correlation_id = Column(String(36), nullable=True)

    plan = relationship("ProductionPlan", back_populates="logs")

    __table_args__ = (
        CheckConstraint("quantity_produced > 0", name="ck_production_log_quantity_positive"),
    )

    @property
    def is_voided(self) -> bool:
        return self.status == "voided"


class StockMovement(Base):
    """Append-only ledger entry. Corrections are new rows, never edits."""

    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    item_tier = Column(Enum(*ITEM_TIERS, name="movement_item_tier"), nullable=False)
    movement_type = Column(Enum(*MOVEMENT_TYPES, name="movement_type"), nullable=False)
    quantity = Column(Quantity, nullable=False)
    quantity_delta = Column(Quantity, nullable=False)
    before_quantity = Column(Quantity, nullable=False)
    after_quantity = Column(Quantity, nullable=False)
    source = Column(Enum(*MOVEMENT_SOURCES, name="movement_source"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    correlation_id = Column(String(36), nullable=False, index=True)
    production_log_id = Column(Integer, ForeignKey("production_logs.id"), nullable=True)
    reversal_of_id = Column(Integer, ForeignKey("stock_movements.id"), nullable=True)
    reverses_correlation_id = Column(String(36), nullable=True, index=True)
    is_reconciliation = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    item = relationship("Item")

    __table_args__ = (
        Index("ix_stock_movements_item_created", "item_id", "created_at"),
        CheckConstraint("quantity >= 0", name="ck_stock_movement_quantity_non_negative"),
        CheckConstraint("after_quantity >= 0", name="ck_stock_movement_after_non_negative"),
    )


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    owner_type = Column(Enum(*RESERVATION_OWNER_TYPES, name="reservation_owner_type"), nullable=False)
    owner_id = Column(Integer, nullable=False)
    quantity_reserved = Column(Quantity, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    released_at = Column(DateTime, nullable=True)

    item = relationship("Item")

    __table_args__ = (
        Index("ix_reservations_owner", "owner_type", "owner_id"),
        CheckConstraint("quantity_reserved >= 0", name="ck_reservation_quantity_non_negative"),
    )


class CriticalStockNotification(Base):
    """Alert state per item. At most one open row per item."""

    __tablename__ = "critical_stock_notifications"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    is_open = Column(Boolean, nullable=False, default=True)
    quantity_at_open = Column(Quantity, nullable=False)
    critical_level = Column(Quantity, nullable=False)
    opened_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    quantity_at_close = Column(Quantity, nullable=True)

    item = relationship("Item")

    __table_args__ = (
        Index(
            "uq_critical_stock_open_item",
            "item_id",
            unique=True,
            sqlite_where=text("is_open = 1"),
            postgresql_where=text("is_open"),
        ),
    )


class StockCount(Base):
    """A physical count of one item, reconciled into the ledger once approved."""

    __tablename__ = "stock_counts"

    id = Column(Integer, primary_key=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    item_tier = Column(Enum(*ITEM_TIERS, name="stock_count_item_tier"), nullable=False)
    system_quantity = Column(Quantity, nullable=False)
    physical_quantity = Column(Quantity, nullable=False)
    status = Column(Enum(*STOCK_COUNT_STATUSES, name="stock_count_status"), nullable=False, default="pending")
    counted_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    counted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_reason = Column(Text, nullable=True)
    adjustment_movement_id = Column(Integer, ForeignKey("stock_movements.id"), nullable=True)
    notes = Column(Text, nullable=True)

    item = relationship("Item")

    __table_args__ = (
        CheckConstraint("system_quantity >= 0", name="ck_stock_count_system_non_negative"),
        CheckConstraint("physical_quantity >= 0", name="ck_stock_count_physical_non_negative"),
    )

    @property
    def variance(self) -> Decimal:
        return Decimal(self.physical_quantity or 0) - Decimal(self.system_quantity or 0)

    @property
    def variance_percent(self) -> Decimal:
        system = Decimal(self.system_quantity or 0)
        if system == 0:
            return Decimal("0")
        return (self.variance / system * 100).quantize(Decimal("0.01"))

    @property
    def severity(self) -> str:
        percent = abs(self.variance_percent)
        if percent > 10:
            return "high"
        if percent > 5:
            return "medium"
        return "low"


class LedgerImmutabilityError(RuntimeError):
    pass


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise LedgerImmutabilityError(f"Stock movement {target.id} is immutable; post a reversal instead.")


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"Stock movement {target.id} cannot be deleted.")


@event.listens_for(BomSnapshotLine, "before_update")
def _reject_snapshot_update(mapper, connection, target):
    raise LedgerImmutabilityError(f"BOM snapshot line {target.id} is frozen.")
