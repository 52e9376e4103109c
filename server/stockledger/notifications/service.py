from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from stockledger.events import CriticalStockClosed, CriticalStockOpened, queue_event
from stockledger.models import CriticalStockNotification, Item


logger = logging.getLogger(__name__)


def get_open_notification(db: Session, item_id: int) -> CriticalStockNotification | None:
    return (
        db.query(CriticalStockNotification)
        .filter(CriticalStockNotification.item_id == item_id, CriticalStockNotification.is_open.is_(True))
        .with_for_update()
        .first()
    )


def evaluate_critical_stock(db: Session, item: Item) -> str | None:
    """Open or close the item's alert to match its current quantity.

    Must run in the same transaction as the quantity change. Returns
    "opened", "closed" or None when nothing changed.
    """
    if item.critical_level is None:
        return None

    quantity = Decimal(item.quantity or 0)
    critical_level = Decimal(item.critical_level)
    open_notification = get_open_notification(db, item.id)

    if quantity <= critical_level:
        if open_notification is not None:
            return None
        db.add(
            CriticalStockNotification(
                item_id=item.id,
                is_open=True,
                quantity_at_open=quantity,
                critical_level=critical_level,
                opened_at=datetime.utcnow(),
            )
        )
        db.flush()
        queue_event(db, CriticalStockOpened(item_id=item.id, quantity=quantity, critical_level=critical_level))
        logger.info(
            "Critical stock opened: item_id=%s code=%s quantity=%s critical_level=%s",
            item.id,
            item.code,
            quantity,
            critical_level,
        )
        return "opened"

    if open_notification is None:
        return None
    open_notification.is_open = False
    open_notification.closed_at = datetime.utcnow()
    open_notification.quantity_at_close = quantity
    db.flush()
    queue_event(db, CriticalStockClosed(item_id=item.id, quantity=quantity, critical_level=critical_level))
    logger.info("Critical stock closed: item_id=%s code=%s quantity=%s", item.id, item.code, quantity)
    return "closed"


def evaluate_items(db: Session, items) -> dict[int, str]:
    changes: dict[int, str] = {}
    for item in sorted(items, key=lambda row: row.id):
        change = evaluate_critical_stock(db, item)
        if change:
            changes[item.id] = change
    return changes


def list_open_notifications(db: Session) -> list[CriticalStockNotification]:
    return (
        db.query(CriticalStockNotification)
        .filter(CriticalStockNotification.is_open.is_(True))
        .order_by(CriticalStockNotification.opened_at.asc())
        .all()
    )


def count_open_notifications(db: Session) -> int:
    return db.query(CriticalStockNotification).filter(CriticalStockNotification.is_open.is_(True)).count()
