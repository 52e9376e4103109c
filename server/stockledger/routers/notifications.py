from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session, selectinload

from stockledger.auth import get_current_user
from stockledger.db import get_db
from stockledger.inventory.schemas import CriticalStockNotificationResponse
from stockledger.models import CriticalStockNotification


router = APIRouter(prefix="/api/notifications", tags=["notifications"], dependencies=[Depends(get_current_user)])


@router.get("/critical-stock", response_model=List[CriticalStockNotificationResponse])
def list_critical_stock(db: Session = Depends(get_db)):
    notifications = (
        db.query(CriticalStockNotification)
        .options(selectinload(CriticalStockNotification.item))
        .filter(CriticalStockNotification.is_open.is_(True))
        .order_by(CriticalStockNotification.opened_at.asc())
        .all()
    )
    return [
        CriticalStockNotificationResponse(
            id=notification.id,
            item_id=notification.item_id,
            item_code=notification.item.code,
            item_tier=notification.item.tier,
            quantity_at_open=notification.quantity_at_open,
            critical_level=notification.critical_level,
            opened_at=notification.opened_at,
        )
        for notification in notifications
    ]
