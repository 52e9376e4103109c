"""Orders, production plans and the consumption engine.

Posting output is the only way production touches stock: materials leave
through `outflow` entries and the product arrives through one
`production_in` entry, all under one correlation id and one transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockledger.bom.service import freeze_bom_snapshot, resolve_bom
from stockledger.db import transaction
from stockledger.errors import (
    InsufficientStockError,
    NotFoundError,
    PermissionDeniedError,
    PlanStateConflictError,
    ValidationError,
)
from stockledger.inventory.service import lock_items, new_correlation_id, post_movement
from stockledger.models import Order, OrderLine, ProductionLog, ProductionPlan, StockMovement
from stockledger.notifications.service import evaluate_items
from stockledger.reservations.service import (
    OWNER_PLAN,
    get_owner_reserved_qty_map,
    release_reservations,
    reserve_for_plan,
    sync_plan_reservations,
)
from stockledger.users.service import get_user, is_supervisor
from stockledger.utils.quantity import ZERO, quantize_qty, require_positive


logger = logging.getLogger(__name__)

OPEN_PLAN_STATUSES = {"planned", "in_progress"}


@dataclass
class ProductionPosting:
    production_log: ProductionLog
    movements: list[StockMovement] = field(default_factory=list)

    @property
    def correlation_id(self) -> str:
        return self.production_log.correlation_id


def _next_order_number(db: Session) -> str:
    count = db.query(func.count(Order.id)).scalar() or 0
    return f"ORD-{count + 1:05d}"


def get_plan(db: Session, plan_id: int, *, for_update: bool = False) -> ProductionPlan:
    query = db.query(ProductionPlan).filter(ProductionPlan.id == plan_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    plan = query.first()
    if not plan:
        raise NotFoundError(f"Production plan {plan_id} not found.")
    return plan


def get_order(db: Session, order_id: int, *, for_update: bool = False) -> Order:
    query = db.query(Order).filter(Order.id == order_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    order = query.first()
    if not order:
        raise NotFoundError(f"Order {order_id} not found.")
    return order


def list_plans(db: Session, *, status: str | None = None, order_id: int | None = None) -> list[ProductionPlan]:
    query = db.query(ProductionPlan)
    if status is not None:
        query = query.filter(ProductionPlan.status == status)
    if order_id is not None:
        query = query.filter(ProductionPlan.order_id == order_id)
    return query.order_by(ProductionPlan.created_at.desc(), ProductionPlan.id.desc()).all()


def create_order(
    db: Session,
    *,
    lines: list[dict],
    created_by: int,
    customer_name: str | None = None,
    notes: str | None = None,
) -> Order:
    get_user(db, created_by)
    if not lines:
        raise ValidationError("An order must include at least one line.")
    order = Order(
        order_number=_next_order_number(db),
        customer_name=customer_name,
        notes=notes,
        status="pending",
        created_by=created_by,
    )
    for payload in lines:
        quantity = require_positive(payload["quantity"], field="quantity")
        order.lines.append(OrderLine(product_id=payload["product_id"], quantity=quantize_qty(quantity)))
    db.add(order)
    db.flush()
    return order


def create_production_plan(
    db: Session,
    *,
    product_id: int,
    tier: str,
    planned_quantity,
    created_by: int,
    order_id: int | None = None,
    assigned_operator_id: int | None = None,
    explode_semi: bool = True,
) -> ProductionPlan:
    """Create a plan, freeze its BOM and reserve the materials it will consume."""
    quantity = require_positive(planned_quantity, field="planned_quantity")
    get_user(db, created_by)
    if assigned_operator_id is not None:
        get_user(db, assigned_operator_id)

    lines = resolve_bom(db, product_id, tier, quantity, explode_semi=explode_semi)
    if not lines:
        raise ValidationError(f"Item {product_id} has no BOM; nothing to produce from.")

    plan = ProductionPlan(
        order_id=order_id,
        product_id=product_id,
        product_tier=tier,
        planned_quantity=quantize_qty(quantity),
        produced_quantity=ZERO,
        status="planned",
        assigned_operator_id=assigned_operator_id,
        created_by=created_by,
        created_at=datetime.utcnow(),
    )
    db.add(plan)
    db.flush()
    freeze_bom_snapshot(db, plan, lines)
    items = lock_items(db, [line.material_id for line in lines])
    reserve_for_plan(db, plan, items)
    logger.info(
        "Production plan created: plan_id=%s product_id=%s planned=%s lines=%s",
        plan.id,
        product_id,
        plan.planned_quantity,
        len(lines),
    )
    return plan


def approve_order(db: Session, order_id: int, actor_id: int) -> list[ProductionPlan]:
    """Check material availability for every line, then open one plan per line.

    A shortage on any material rejects the whole order and reports every
    short material at once.
    """
    with transaction(db):
        actor = get_user(db, actor_id)
        if not is_supervisor(actor):
            raise PermissionDeniedError("Only managers and planners can approve orders.")
        order = get_order(db, order_id, for_update=True)
        if order.status != "pending":
            raise PlanStateConflictError(f"Order {order.order_number} is {order.status}, not pending.")
        if not order.lines:
            raise ValidationError(f"Order {order.order_number} has no lines.")

        required: dict[int, Decimal] = {}
        for line in order.lines:
            for requirement in resolve_bom(db, line.product_id, line.product.tier, line.quantity):
                required[requirement.material_id] = (
                    required.get(requirement.material_id, ZERO) + requirement.quantity_needed_total
                )

        items = lock_items(db, required.keys())
        violations = []
        for material_id in sorted(required):
            item = items[material_id]
            available = item.available_quantity
            if required[material_id] > available:
                violations.append(
                    {
                        "material_id": item.id,
                        "material_code": item.code,
                        "material_tier": item.tier,
                        "required": str(quantize_qty(required[material_id])),
                        "available": str(quantize_qty(available)),
                        "shortage": str(quantize_qty(required[material_id] - available)),
                    }
                )
        if violations:
            logger.warning("Order %s rejected: %s material(s) short", order.order_number, len(violations))
            raise InsufficientStockError(violations)

        plans = [
            create_production_plan(
                db,
                product_id=line.product_id,
                tier=line.product.tier,
                planned_quantity=line.quantity,
                created_by=actor.id,
                order_id=order.id,
            )
            for line in order.lines
        ]
        order.status = "in_production"
        order.approved_by = actor.id
        order.approved_at = datetime.utcnow()
        db.flush()
    logger.info("Order %s approved by user_id=%s with %s plan(s)", order.order_number, actor_id, len(plans))
    return plans


def start_plan(db: Session, plan_id: int, actor_id: int) -> ProductionPlan:
    with transaction(db):
        get_user(db, actor_id)
        plan = get_plan(db, plan_id, for_update=True)
        if plan.status != "planned":
            raise PlanStateConflictError(f"Plan {plan.id} is {plan.status}, not planned.")
        plan.status = "in_progress"
        plan.started_at = datetime.utcnow()
        db.flush()
    return plan


def post_production_output(
    db: Session,
    plan_id: int,
    quantity_produced_delta,
    operator_id: int,
) -> ProductionPosting:
    """Consume the plan's frozen BOM for `quantity_produced_delta` units and book the output."""
    delta = quantize_qty(require_positive(quantity_produced_delta, field="quantity_produced_delta"))

    with transaction(db):
        operator = get_user(db, operator_id)
        plan = get_plan(db, plan_id, for_update=True)
        if plan.status not in OPEN_PLAN_STATUSES:
            raise PlanStateConflictError(f"Plan {plan.id} is {plan.status}; output can no longer be posted.")
        if Decimal(plan.produced_quantity) + delta > Decimal(plan.planned_quantity):
            raise ValidationError(
                f"Plan {plan.id} would exceed its planned quantity: "
                f"produced {plan.produced_quantity} + {delta} > planned {plan.planned_quantity}."
            )
        snapshot = list(plan.snapshot_lines)
        if not snapshot:
            raise ValidationError(f"Plan {plan.id} has no BOM snapshot.")

        items = lock_items(db, [line.material_id for line in snapshot] + [plan.product_id])
        own_reserved = get_owner_reserved_qty_map(db, owner_type=OWNER_PLAN, owner_id=plan.id)

        requirements = []
        violations = []
        for line in snapshot:
            item = items[line.material_id]
            required = Decimal(line.quantity_per_unit) * delta
            available = item.available_quantity + own_reserved.get(item.id, ZERO)
            requirements.append((item, required))
            if required > available:
                violations.append(
                    {
                        "material_id": item.id,
                        "material_code": item.code,
                        "material_tier": item.tier,
                        "required": str(quantize_qty(required)),
                        "available": str(quantize_qty(available)),
                        "shortage": str(quantize_qty(required - available)),
                    }
                )
        if violations:
            logger.warning(
                "Production posting rejected: plan_id=%s delta=%s short=%s",
                plan.id,
                delta,
                [violation["material_code"] for violation in violations],
            )
            raise InsufficientStockError(violations)

        if plan.status == "planned":
            plan.status = "in_progress"
            plan.started_at = datetime.utcnow()

        correlation_id = new_correlation_id()
        log = ProductionLog(
            plan_id=plan.id,
            quantity_produced=delta,
            operator_id=operator.id,
            correlation_id=correlation_id,
            status="active",
            created_at=datetime.utcnow(),
        )
        db.add(log)
        db.flush()

        movements = []
        for item, required in requirements:
            if quantize_qty(required) == 0:
                continue
            movements.append(
                post_movement(
                    db,
                    item=item,
                    movement_type="outflow",
                    quantity_delta=-required,
                    source="production",
                    correlation_id=correlation_id,
                    actor_id=operator.id,
                    description=f"Consumed by plan #{plan.id}",
                    production_log_id=log.id,
                )
            )
        product = items[plan.product_id]
        movements.append(
            post_movement(
                db,
                item=product,
                movement_type="production_in",
                quantity_delta=delta,
                source="production",
                correlation_id=correlation_id,
                actor_id=operator.id,
                description=f"Produced by plan #{plan.id}",
                production_log_id=log.id,
            )
        )

        plan.produced_quantity = quantize_qty(Decimal(plan.produced_quantity) + delta)
        sync_plan_reservations(db, plan, items)
        evaluate_items(db, items.values())
        db.flush()

    logger.info(
        "Production output posted: plan_id=%s delta=%s produced=%s/%s correlation_id=%s",
        plan.id,
        delta,
        plan.produced_quantity,
        plan.planned_quantity,
        correlation_id,
    )
    return ProductionPosting(production_log=log, movements=movements)


def refresh_order_status(db: Session, order: Order) -> None:
    statuses = {plan.status for plan in order.plans}
    if not statuses or statuses & OPEN_PLAN_STATUSES:
        return
    if statuses == {"cancelled"}:
        order.status = "cancelled"
    else:
        order.status = "completed"
    db.flush()
    logger.info("Order %s is now %s", order.order_number, order.status)


def complete_plan(db: Session, plan_id: int, actor_id: int) -> ProductionPlan:
    """Close a plan. Outstanding reservations are released, stock is untouched."""
    with transaction(db):
        actor = get_user(db, actor_id)
        if not is_supervisor(actor):
            raise PermissionDeniedError("Only managers and planners can complete production plans.")
        plan = get_plan(db, plan_id, for_update=True)
        if plan.status not in OPEN_PLAN_STATUSES:
            raise PlanStateConflictError(f"Plan {plan.id} is {plan.status} and cannot be completed.")
        if Decimal(plan.produced_quantity) <= 0:
            raise ValidationError(f"Plan {plan.id} has produced nothing; cancel it instead.")
        items = lock_items(db, [line.material_id for line in plan.snapshot_lines])
        plan.status = "completed"
        plan.completed_at = datetime.utcnow()
        release_reservations(db, owner_type=OWNER_PLAN, owner_id=plan.id, items=items)
        if plan.order is not None:
            refresh_order_status(db, plan.order)
        db.flush()
    logger.info("Plan %s completed by user_id=%s at %s/%s", plan.id, actor_id, plan.produced_quantity, plan.planned_quantity)
    return plan
