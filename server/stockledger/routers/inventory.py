from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from stockledger.auth import get_current_user, require_roles
from stockledger.db import get_db, transaction
from stockledger.errors import StockLedgerError
from stockledger.http_errors import to_http_exception
from stockledger.inventory import schemas
from stockledger.inventory.counts import (
    approve_stock_count,
    get_stock_count,
    list_stock_counts,
    record_stock_count,
    reject_stock_count,
)
from stockledger.inventory.service import create_item, get_item, item_history, list_movements, record_manual_movement
from stockledger.models import Item, User
from stockledger.reservations.service import list_item_reservations


router = APIRouter(prefix="/api", tags=["inventory"], dependencies=[Depends(get_current_user)])

STOCK_ROLES = ("manager", "planner", "warehouse")


@router.get("/items", response_model=List[schemas.ItemResponse])
def list_items(tier: Optional[str] = None, search: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Item).filter(Item.is_active.is_(True))
    if tier:
        query = query.filter(Item.tier == tier)
    if search:
        like = f"%{search.lower()}%"
        query = query.filter(Item.name.ilike(like) | Item.code.ilike(like))
    return query.order_by(Item.tier, Item.code).all()


@router.post("/items", response_model=schemas.ItemResponse, status_code=status.HTTP_201_CREATED)
def create_item_endpoint(
    payload: schemas.ItemCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*STOCK_ROLES)),
):
    try:
        with transaction(db):
            item = create_item(db, actor_id=current_user.id, **payload.model_dump())
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    db.refresh(item)
    return item


@router.get("/items/{item_id}", response_model=schemas.ItemResponse)
def get_item_endpoint(item_id: int, db: Session = Depends(get_db)):
    try:
        return get_item(db, item_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/items/{item_id}/movements", response_model=List[schemas.MovementResponse])
def item_movements(item_id: int, db: Session = Depends(get_db)):
    try:
        get_item(db, item_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    return item_history(db, item_id)


@router.get("/items/{item_id}/reservations", response_model=List[schemas.ReservationResponse])
def item_reservations(item_id: int, db: Session = Depends(get_db)):
    return list_item_reservations(db, item_id)


@router.get("/movements", response_model=List[schemas.MovementResponse])
def list_movements_endpoint(
    item_id: Optional[int] = None,
    tier: Optional[str] = None,
    movement_type: Optional[str] = None,
    correlation_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return list_movements(
        db,
        item_id=item_id,
        tier=tier,
        movement_type=movement_type,
        correlation_id=correlation_id,
        limit=min(limit, 500),
        offset=offset,
    )


@router.post("/movements", response_model=schemas.MovementResponse, status_code=status.HTTP_201_CREATED)
def record_movement(
    payload: schemas.MovementCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*STOCK_ROLES)),
):
    try:
        return record_manual_movement(
            db,
            item_id=payload.item_id,
            tier=payload.tier,
            movement_type=payload.movement_type,
            quantity=payload.quantity,
            actor_id=current_user.id,
            source=payload.source,
            description=payload.description,
        )
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/stock-counts", response_model=List[schemas.StockCountResponse])
def list_stock_counts_endpoint(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    item_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        return list_stock_counts(db, status=status_filter, item_id=item_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/stock-counts", response_model=schemas.StockCountResponse, status_code=status.HTTP_201_CREATED)
def record_stock_count_endpoint(
    payload: schemas.StockCountCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*STOCK_ROLES)),
):
    try:
        return record_stock_count(db, actor_id=current_user.id, **payload.model_dump())
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/stock-counts/{count_id}", response_model=schemas.StockCountResponse)
def get_stock_count_endpoint(count_id: int, db: Session = Depends(get_db)):
    try:
        return get_stock_count(db, count_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/stock-counts/{count_id}/approve", response_model=schemas.StockCountResponse)
def approve_stock_count_endpoint(
    count_id: int,
    payload: schemas.StockCountApprove,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return approve_stock_count(db, count_id, current_user.id, auto_adjust=payload.auto_adjust)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/stock-counts/{count_id}/reject", response_model=schemas.StockCountResponse)
def reject_stock_count_endpoint(
    count_id: int,
    payload: schemas.StockCountReject,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return reject_stock_count(db, count_id, current_user.id, payload.reason)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
