"""Undoing production: rolling back one posting, or cancelling a plan or a whole order.

Nothing is deleted. Every ledger entry of the undone posting gets a
compensating entry under a fresh correlation id that points back at the
original, and the production log is marked voided.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from stockledger.config import OPERATOR_ROLLBACK_WINDOW_MINUTES
from stockledger.db import transaction
from stockledger.errors import (
    LogAlreadyVoidedError,
    NotFoundError,
    PermissionDeniedError,
    PlanStateConflictError,
    ValidationError,
)
from stockledger.inventory.service import lock_items, new_correlation_id, post_reversal
from stockledger.models import Item, Order, ProductionLog, ProductionPlan, StockMovement, User
from stockledger.notifications.service import evaluate_items
from stockledger.production.service import get_order, get_plan, refresh_order_status
from stockledger.reservations.service import OWNER_PLAN, release_reservations, sync_plan_reservations
from stockledger.users.service import get_user, is_supervisor
from stockledger.utils.quantity import quantize_qty


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancelPermission:
    allowed: bool
    reason: str | None = None


def _get_log(db: Session, log_id: int) -> ProductionLog:
    log = (
        db.query(ProductionLog)
        .filter(ProductionLog.id == log_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not log:
        raise NotFoundError(f"Production log {log_id} not found.")
    return log


def _original_entries(db: Session, log: ProductionLog) -> list[StockMovement]:
    return (
        db.query(StockMovement)
        .filter(
            StockMovement.correlation_id == log.correlation_id,
            StockMovement.reversal_of_id.is_(None),
        )
        .order_by(StockMovement.id.desc())
        .all()
    )


def _check_rollback_permission(actor: User, log: ProductionLog, plan: ProductionPlan, now: datetime) -> None:
    if is_supervisor(actor):
        if plan.status == "completed":
            raise PlanStateConflictError(f"Plan {plan.id} is completed; its production can no longer be rolled back.")
        return
    if actor.role != "operator" or log.operator_id != actor.id:
        raise PermissionDeniedError("Operators can only roll back their own production entries.")
    if plan.status == "completed":
        raise PermissionDeniedError(f"Plan {plan.id} is completed; ask a planner or manager.")
    if now - log.created_at > timedelta(minutes=OPERATOR_ROLLBACK_WINDOW_MINUTES):
        raise PermissionDeniedError(
            f"Production entries can only be rolled back within {OPERATOR_ROLLBACK_WINDOW_MINUTES} minutes."
        )


def _reverse_log(
    db: Session,
    *,
    log: ProductionLog,
    plan: ProductionPlan,
    actor: User,
    reason: str,
    now: datetime,
) -> list[StockMovement]:
    originals = _original_entries(db, log)
    items: dict[int, Item] = lock_items(
        db,
        [entry.item_id for entry in originals] + [line.material_id for line in plan.snapshot_lines],
    )
    correlation_id = new_correlation_id()
    reversals = [
        post_reversal(
            db,
            original=entry,
            item=items[entry.item_id],
            correlation_id=correlation_id,
            actor_id=actor.id,
            description=f"Rollback of production log #{log.id}: {reason}",
        )
        for entry in originals
    ]

    produced = Decimal(plan.produced_quantity) - Decimal(log.quantity_produced)
    if produced < 0:
        raise ValidationError(f"Plan {plan.id} produced quantity would go negative.")
    plan.produced_quantity = quantize_qty(produced)

    log.status = "voided"
    log.voided_at = now
    log.voided_by = actor.id
    log.void_reason = reason
    log.void_correlation_id = correlation_id

    sync_plan_reservations(db, plan, items)
    evaluate_items(db, items.values())
    db.flush()
    logger.info(
        "Production log %s voided by user_id=%s: %s reversal(s), correlation_id=%s",
        log.id,
        actor.id,
        len(reversals),
        correlation_id,
    )
    return reversals


def rollback_production_log(
    db: Session,
    log_id: int,
    actor_id: int,
    reason: str,
    *,
    now: datetime | None = None,
) -> list[StockMovement]:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to roll back production.")
    now = now or datetime.utcnow()

    with transaction(db):
        actor = get_user(db, actor_id)
        log = _get_log(db, log_id)
        if log.is_voided:
            raise LogAlreadyVoidedError(f"Production log {log.id} has already been rolled back.")
        plan = get_plan(db, log.plan_id, for_update=True)
        _check_rollback_permission(actor, log, plan, now)
        reversals = _reverse_log(db, log=log, plan=plan, actor=actor, reason=reason, now=now)
    return reversals


def _check_cancel_permission(actor: User, plan: ProductionPlan) -> CancelPermission:
    if plan.status == "completed":
        return CancelPermission(False, f"Plan {plan.id} is already completed.")
    if plan.status == "cancelled":
        return CancelPermission(False, f"Plan {plan.id} is already cancelled.")
    if is_supervisor(actor):
        return CancelPermission(True)
    if plan.order is not None and plan.order.created_by == actor.id:
        if Decimal(plan.produced_quantity) > 0:
            return CancelPermission(False, "Production has started; only a planner or manager can cancel.")
        return CancelPermission(True)
    return CancelPermission(False, "Only planners, managers or the order's creator can cancel a plan.")


def can_cancel_plan(db: Session, plan_id: int, actor_id: int) -> CancelPermission:
    actor = get_user(db, actor_id)
    plan = get_plan(db, plan_id)
    return _check_cancel_permission(actor, plan)


def _cancel_plan_locked(db: Session, plan: ProductionPlan, actor: User, reason: str, now: datetime) -> int:
    """Reverse the plan's live postings newest first, then release what it still holds."""
    active_logs = [log for log in plan.logs if not log.is_voided]
    for log in sorted(active_logs, key=lambda row: row.id, reverse=True):
        _reverse_log(db, log=log, plan=plan, actor=actor, reason=f"Plan cancelled: {reason}", now=now)

    items = lock_items(db, [line.material_id for line in plan.snapshot_lines])
    plan.status = "cancelled"
    plan.cancelled_at = now
    plan.cancel_reason = reason
    release_reservations(db, owner_type=OWNER_PLAN, owner_id=plan.id, items=items)
    return len(active_logs)


def cancel_plan(db: Session, plan_id: int, actor_id: int, reason: str) -> ProductionPlan:
    """Cancel a plan, reversing everything it produced and releasing its reservations."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to cancel a plan.")
    now = datetime.utcnow()

    with transaction(db):
        actor = get_user(db, actor_id)
        plan = get_plan(db, plan_id, for_update=True)
        permission = _check_cancel_permission(actor, plan)
        if not permission.allowed:
            if plan.status in {"completed", "cancelled"}:
                raise PlanStateConflictError(permission.reason)
            raise PermissionDeniedError(permission.reason)

        reversed_count = _cancel_plan_locked(db, plan, actor, reason, now)
        if plan.order is not None:
            refresh_order_status(db, plan.order)
        db.flush()
    logger.info("Plan %s cancelled by user_id=%s (%s log(s) reversed)", plan.id, actor_id, reversed_count)
    return plan


def cancel_order(db: Session, order_id: int, actor_id: int, reason: str) -> Order:
    """Cancel an order and every plan under it in one transaction.

    A completed plan blocks the whole cancellation. Once any plan has
    produced output only planners and managers may cancel; before that the
    order's creator may as well.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to cancel an order.")
    now = datetime.utcnow()

    with transaction(db):
        actor = get_user(db, actor_id)
        order = get_order(db, order_id, for_update=True)
        if order.status in {"completed", "cancelled"}:
            raise PlanStateConflictError(f"Order {order.order_number} is already {order.status}.")

        plans = sorted(order.plans, key=lambda row: row.id)
        completed = [plan.id for plan in plans if plan.status == "completed"]
        if completed:
            raise PlanStateConflictError(
                f"Order {order.order_number} has completed plan(s) {completed} and cannot be cancelled."
            )
        open_plans = [get_plan(db, plan.id, for_update=True) for plan in plans if plan.status != "cancelled"]
        started = any(Decimal(plan.produced_quantity) > 0 for plan in open_plans)
        if not is_supervisor(actor):
            if started:
                raise PermissionDeniedError("Production has started; only a planner or manager can cancel.")
            if order.created_by != actor.id:
                raise PermissionDeniedError("Only planners, managers or the order's creator can cancel an order.")

        reversed_count = sum(_cancel_plan_locked(db, plan, actor, reason, now) for plan in open_plans)
        order.status = "cancelled"
        order.cancelled_at = now
        order.cancelled_by = actor.id
        order.cancel_reason = reason
        db.flush()
    logger.info(
        "Order %s cancelled by user_id=%s: %s plan(s), %s log(s) reversed",
        order.order_number,
        actor_id,
        len(open_plans),
        reversed_count,
    )
    return order
