"""Physical stock counts.

A count freezes the system quantity next to what was found on the shelf.
Approving it books the variance as a single adjustment movement; the
stored quantity is never overwritten directly.
"""

from datetime import datetime
import logging

from sqlalchemy.orm import Session

from stockledger.db import transaction
from stockledger.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from stockledger.inventory.service import get_item, lock_items, new_correlation_id, post_movement
from stockledger.models import STOCK_COUNT_STATUSES, StockCount
from stockledger.notifications.service import evaluate_critical_stock
from stockledger.users.service import get_user, is_supervisor
from stockledger.utils.quantity import quantize_qty, to_decimal


logger = logging.getLogger(__name__)


def get_stock_count(db: Session, count_id: int, *, for_update: bool = False) -> StockCount:
    query = db.query(StockCount).filter(StockCount.id == count_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    count = query.first()
    if not count:
        raise NotFoundError(f"Stock count {count_id} not found.")
    return count


def list_stock_counts(db: Session, *, status: str | None = None, item_id: int | None = None) -> list[StockCount]:
    query = db.query(StockCount)
    if status:
        if status not in STOCK_COUNT_STATUSES:
            raise ValidationError(f"Unknown stock count status '{status}'.")
        query = query.filter(StockCount.status == status)
    if item_id is not None:
        query = query.filter(StockCount.item_id == item_id)
    return query.order_by(StockCount.counted_at.desc(), StockCount.id.desc()).all()


def record_stock_count(
    db: Session,
    *,
    item_id: int,
    tier: str,
    physical_quantity,
    actor_id: int,
    notes: str | None = None,
) -> StockCount:
    physical = quantize_qty(to_decimal(physical_quantity, field="physical_quantity"))
    if physical < 0:
        raise ValidationError("physical_quantity must not be negative.")

    with transaction(db):
        get_user(db, actor_id)
        item = get_item(db, item_id, tier=tier)
        count = StockCount(
            item_id=item.id,
            item_tier=item.tier,
            system_quantity=item.quantity,
            physical_quantity=physical,
            counted_by=actor_id,
            counted_at=datetime.utcnow(),
            notes=notes,
        )
        db.add(count)
        db.flush()
    logger.info(
        "Stock count %s recorded for item_id=%s: system=%s physical=%s",
        count.id,
        item_id,
        count.system_quantity,
        physical,
    )
    return count


def _load_pending(db: Session, count_id: int, actor_id: int, action: str) -> StockCount:
    actor = get_user(db, actor_id)
    if not is_supervisor(actor):
        raise PermissionDeniedError(f"Only managers and planners can {action} stock counts.")
    count = get_stock_count(db, count_id, for_update=True)
    if count.status != "pending":
        raise ConflictError(f"Stock count {count.id} is already {count.status}.")
    return count


def approve_stock_count(db: Session, count_id: int, actor_id: int, *, auto_adjust: bool = True) -> StockCount:
    """Accept a count and book its variance against the item.

    The variance is measured against the quantity frozen when the count was
    taken, so movements posted since then are kept.
    """
    with transaction(db):
        count = _load_pending(db, count_id, actor_id, "approve")
        variance = count.variance
        if auto_adjust and variance != 0:
            item = lock_items(db, [count.item_id])[count.item_id]
            movement = post_movement(
                db,
                item=item,
                movement_type="inflow" if variance > 0 else "outflow",
                quantity_delta=variance,
                source="manual",
                correlation_id=new_correlation_id(),
                actor_id=actor_id,
                description=f"Stock count #{count.id}",
            )
            count.adjustment_movement_id = movement.id
            evaluate_critical_stock(db, item)
        count.status = "approved"
        count.reviewed_by = actor_id
        count.reviewed_at = datetime.utcnow()
        db.flush()
    logger.info(
        "Stock count %s approved by user_id=%s: variance=%s adjustment_movement_id=%s",
        count.id,
        actor_id,
        variance,
        count.adjustment_movement_id,
    )
    return count


def reject_stock_count(db: Session, count_id: int, actor_id: int, reason: str) -> StockCount:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to reject a stock count.")

    with transaction(db):
        count = _load_pending(db, count_id, actor_id, "reject")
        count.status = "rejected"
        count.reviewed_by = actor_id
        count.reviewed_at = datetime.utcnow()
        count.review_reason = reason
        db.flush()
    logger.info("Stock count %s rejected by user_id=%s: %s", count.id, actor_id, reason)
    return count
