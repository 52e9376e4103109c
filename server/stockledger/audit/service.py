"""Consistency auditor.

Replays each item's ledger and compares the result with the stored
quantity. Drift is reported, never silently rewritten: a repair is itself a
ledger entry (`is_reconciliation=True`) that moves the stored value to the
replayed one, and later replays re-anchor on it.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable
import logging

from sqlalchemy.orm import Session

from stockledger.config import AUDIT_EPSILON
from stockledger.db import transaction
from stockledger.errors import ConsistencyDriftError, NotFoundError
from stockledger.inventory.service import item_history, lock_items, new_correlation_id, post_movement
from stockledger.models import Item, ProductionLog, ProductionPlan, StockMovement
from stockledger.notifications.service import evaluate_critical_stock
from stockledger.reservations.service import get_reserved_qty
from stockledger.utils.quantity import ZERO, quantize_qty


logger = logging.getLogger(__name__)


@dataclass
class ItemAuditReport:
    item_id: int
    tier: str
    code: str
    stored_quantity: Decimal
    replayed_quantity: Decimal
    entry_count: int
    chain_gaps: list[dict] = field(default_factory=list)
    arithmetic_violations: list[dict] = field(default_factory=list)

    @property
    def drift(self) -> Decimal:
        return self.stored_quantity - self.replayed_quantity

    @property
    def has_drift(self) -> bool:
        return abs(self.drift) > AUDIT_EPSILON

    @property
    def is_consistent(self) -> bool:
        return not self.has_drift and not self.chain_gaps and not self.arithmetic_violations


@dataclass
class ReservationAuditReport:
    item_id: int
    stored_reserved: Decimal
    active_reserved: Decimal

    @property
    def drift(self) -> Decimal:
        return self.stored_reserved - self.active_reserved

    @property
    def is_consistent(self) -> bool:
        return abs(self.drift) <= AUDIT_EPSILON


@dataclass
class ProductionLogIssue:
    log_id: int
    plan_id: int
    problem: str


@dataclass
class AuditRunSummary:
    items_checked: int = 0
    drifted: list[ItemAuditReport] = field(default_factory=list)
    reservation_drifts: list[ReservationAuditReport] = field(default_factory=list)
    repaired_item_ids: list[int] = field(default_factory=list)
    stopped: bool = False

    @property
    def is_clean(self) -> bool:
        return not self.drifted and not self.reservation_drifts


def _differs(left, right) -> bool:
    return abs(Decimal(left) - Decimal(right)) > AUDIT_EPSILON


def replay_history(item: Item, history: Iterable[StockMovement]) -> ItemAuditReport:
    """Fold the ordered ledger of one item into an audit report."""
    report = ItemAuditReport(
        item_id=item.id,
        tier=item.tier,
        code=item.code,
        stored_quantity=Decimal(item.quantity or 0),
        replayed_quantity=ZERO,
        entry_count=0,
    )
    running = ZERO
    previous_after = ZERO
    for entry in history:
        report.entry_count += 1
        before = Decimal(entry.before_quantity)
        after = Decimal(entry.after_quantity)
        delta = Decimal(entry.quantity_delta)
        if _differs(before + delta, after):
            report.arithmetic_violations.append(
                {"movement_id": entry.id, "before": str(before), "delta": str(delta), "after": str(after)}
            )
        if entry.is_reconciliation:
            running = after
        else:
            if _differs(before, previous_after):
                report.chain_gaps.append(
                    {"movement_id": entry.id, "expected_before": str(previous_after), "before": str(before)}
                )
            running += delta
        previous_after = after
    report.replayed_quantity = running
    return report


def audit_item(db: Session, item_id: int) -> ItemAuditReport:
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise NotFoundError(f"Item {item_id} not found.")
    report = replay_history(item, item_history(db, item_id))
    if not report.is_consistent:
        logger.warning(
            "Audit mismatch: item_id=%s code=%s stored=%s replayed=%s gaps=%s arithmetic=%s",
            item.id,
            item.code,
            report.stored_quantity,
            report.replayed_quantity,
            len(report.chain_gaps),
            len(report.arithmetic_violations),
        )
    return report


def audit_reservations(db: Session, item_id: int) -> ReservationAuditReport:
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise NotFoundError(f"Item {item_id} not found.")
    return ReservationAuditReport(
        item_id=item.id,
        stored_reserved=Decimal(item.reserved_quantity or 0),
        active_reserved=get_reserved_qty(db, item.id),
    )


def verify_production_logs(db: Session, plan_id: int | None = None) -> list[ProductionLogIssue]:
    """Check that each production log is backed by exactly the entries its snapshot implies."""
    query = db.query(ProductionLog)
    if plan_id is not None:
        query = query.filter(ProductionLog.plan_id == plan_id)
    issues: list[ProductionLogIssue] = []
    for log in query.order_by(ProductionLog.id.asc()).all():
        plan: ProductionPlan = log.plan
        entries = (
            db.query(StockMovement)
            .filter(StockMovement.correlation_id == log.correlation_id)
            .order_by(StockMovement.id.asc())
            .all()
        )
        if log.is_voided:
            reversed_ids = {
                movement_id
                for (movement_id,) in db.query(StockMovement.reversal_of_id)
                .filter(StockMovement.reverses_correlation_id == log.correlation_id)
                .all()
            }
            for entry in entries:
                if entry.id not in reversed_ids:
                    issues.append(ProductionLogIssue(log.id, plan.id, f"movement {entry.id} was never reversed"))
            continue

        consumed: dict[int, Decimal] = {}
        output = ZERO
        for entry in entries:
            if entry.movement_type == "outflow" and entry.source == "production":
                consumed[entry.item_id] = consumed.get(entry.item_id, ZERO) + Decimal(entry.quantity)
            elif entry.movement_type == "production_in" and entry.item_id == plan.product_id:
                output += Decimal(entry.quantity)
            else:
                issues.append(
                    ProductionLogIssue(log.id, plan.id, f"unexpected {entry.movement_type} entry {entry.id}")
                )

        for line in plan.snapshot_lines:
            expected = quantize_qty(Decimal(line.quantity_per_unit) * Decimal(log.quantity_produced))
            actual = consumed.pop(line.material_id, ZERO)
            if _differs(actual, expected):
                issues.append(
                    ProductionLogIssue(
                        log.id,
                        plan.id,
                        f"{line.material_code}: consumed {actual}, expected {expected}",
                    )
                )
        for material_id, quantity in consumed.items():
            issues.append(ProductionLogIssue(log.id, plan.id, f"item {material_id} consumed {quantity} outside the snapshot"))
        if _differs(output, log.quantity_produced):
            issues.append(
                ProductionLogIssue(log.id, plan.id, f"output {output}, expected {log.quantity_produced}")
            )

    for issue in issues:
        logger.warning("Production log %s (plan %s): %s", issue.log_id, issue.plan_id, issue.problem)
    return issues


def repair_item(
    db: Session,
    item_id: int,
    actor_id: int | None = None,
    reason: str = "Consistency repair",
) -> StockMovement | None:
    """Bring the stored quantity back to the replayed ledger with one corrective entry.

    Returns the reconciliation entry, or None when there was nothing to fix.
    """
    with transaction(db):
        item = lock_items(db, [item_id])[item_id]
        report = replay_history(item, item_history(db, item_id))
        if not report.has_drift:
            return None
        movement = post_movement(
            db,
            item=item,
            movement_type="inflow" if report.drift < 0 else "outflow",
            quantity_delta=-report.drift,
            source="system",
            correlation_id=new_correlation_id(),
            actor_id=actor_id,
            description=f"{reason}: stored {report.stored_quantity}, ledger {report.replayed_quantity}",
            is_reconciliation=True,
        )
        evaluate_critical_stock(db, item)
    logger.warning(
        "Repaired item_id=%s code=%s: %s -> %s (movement %s)",
        item.id,
        item.code,
        report.stored_quantity,
        report.replayed_quantity,
        movement.id,
    )
    return movement


def repair_reservations(db: Session, item_id: int) -> ReservationAuditReport:
    """Reset the denormalised reserved quantity to the sum of active reservations."""
    with transaction(db):
        item = lock_items(db, [item_id])[item_id]
        report = audit_reservations(db, item_id)
        if not report.is_consistent:
            item.reserved_quantity = quantize_qty(report.active_reserved)
            db.flush()
            logger.warning(
                "Repaired reservations for item_id=%s: %s -> %s",
                item_id,
                report.stored_reserved,
                report.active_reserved,
            )
    return report


def assert_consistent(db: Session, item_id: int) -> ItemAuditReport:
    report = audit_item(db, item_id)
    if not report.is_consistent:
        raise ConsistencyDriftError(report)
    return report


def run_audit(
    db: Session,
    *,
    repair: bool = False,
    tiers: Iterable[str] | None = None,
    item_ids: Iterable[int] | None = None,
    should_stop: Callable[[], bool] | None = None,
    actor_id: int | None = None,
) -> AuditRunSummary:
    """Audit every item (optionally filtered), repairing drift one item per transaction.

    `should_stop` is polled between items; a run that stops early keeps
    every repair committed so far.
    """
    query = db.query(Item.id).order_by(Item.id.asc())
    if tiers:
        query = query.filter(Item.tier.in_(list(tiers)))
    if item_ids:
        query = query.filter(Item.id.in_(list(item_ids)))
    ids = [item_id for (item_id,) in query.all()]

    summary = AuditRunSummary()
    logger.info("Audit started: %s item(s), repair=%s", len(ids), repair)
    for item_id in ids:
        if should_stop is not None and should_stop():
            summary.stopped = True
            logger.info("Audit stopped after %s item(s)", summary.items_checked)
            break
        report = audit_item(db, item_id)
        reservation_report = audit_reservations(db, item_id)
        summary.items_checked += 1
        if report.has_drift:
            summary.drifted.append(report)
        if not reservation_report.is_consistent:
            summary.reservation_drifts.append(reservation_report)
        if repair and report.has_drift:
            if repair_item(db, item_id, actor_id=actor_id) is not None:
                summary.repaired_item_ids.append(item_id)
        if repair and not reservation_report.is_consistent:
            repair_reservations(db, item_id)
    logger.info(
        "Audit finished: checked=%s drifted=%s reservation_drifts=%s repaired=%s",
        summary.items_checked,
        len(summary.drifted),
        len(summary.reservation_drifts),
        len(summary.repaired_item_ids),
    )
    return summary
