from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from stockledger.db import get_db
from stockledger.notifications.service import count_open_notifications


router = APIRouter(tags=["health"])


@router.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "open_critical_stock": count_open_notifications(db)}
