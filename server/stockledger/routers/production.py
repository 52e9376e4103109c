from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from stockledger.auth import get_current_user, require_roles
from stockledger.db import get_db, transaction
from stockledger.errors import StockLedgerError
from stockledger.http_errors import to_http_exception
from stockledger.models import ProductionLog, User
from stockledger.production import schemas
from stockledger.production.rollback import can_cancel_plan, cancel_order, cancel_plan, rollback_production_log
from stockledger.production.service import (
    approve_order,
    complete_plan,
    create_order,
    create_production_plan,
    get_order,
    get_plan,
    list_plans,
    post_production_output,
    start_plan,
)


router = APIRouter(prefix="/api", tags=["production"], dependencies=[Depends(get_current_user)])

PLANNERS = ("manager", "planner")


@router.post("/orders", response_model=schemas.OrderResponse, status_code=status.HTTP_201_CREATED)
def create_order_endpoint(
    payload: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        with transaction(db):
            order = create_order(
                db,
                lines=[line.model_dump() for line in payload.lines],
                created_by=current_user.id,
                customer_name=payload.customer_name,
                notes=payload.notes,
            )
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    db.refresh(order)
    return order


@router.get("/orders/{order_id}", response_model=schemas.OrderResponse)
def get_order_endpoint(order_id: int, db: Session = Depends(get_db)):
    try:
        return get_order(db, order_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/orders/{order_id}/approve", response_model=List[schemas.PlanResponse])
def approve_order_endpoint(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return approve_order(db, order_id, current_user.id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/orders/{order_id}/cancel", response_model=schemas.OrderResponse)
def cancel_order_endpoint(
    order_id: int,
    payload: schemas.ReasonPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return cancel_order(db, order_id, current_user.id, payload.reason)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/production/plans", response_model=List[schemas.PlanResponse])
def list_plans_endpoint(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    order_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return list_plans(db, status=status_filter, order_id=order_id)


@router.post("/production/plans", response_model=schemas.PlanResponse, status_code=status.HTTP_201_CREATED)
def create_plan_endpoint(
    payload: schemas.PlanCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*PLANNERS)),
):
    try:
        with transaction(db):
            plan = create_production_plan(db, created_by=current_user.id, **payload.model_dump())
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    db.refresh(plan)
    return plan


@router.get("/production/plans/{plan_id}", response_model=schemas.PlanResponse)
def get_plan_endpoint(plan_id: int, db: Session = Depends(get_db)):
    try:
        return get_plan(db, plan_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/production/plans/{plan_id}/start", response_model=schemas.PlanResponse)
def start_plan_endpoint(
    plan_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return start_plan(db, plan_id, current_user.id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "/production/plans/{plan_id}/output",
    response_model=schemas.ProductionPostingResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_output_endpoint(
    plan_id: int,
    payload: schemas.OutputCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        posting = post_production_output(db, plan_id, payload.quantity, current_user.id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    return schemas.ProductionPostingResponse(
        production_log=schemas.ProductionLogResponse.model_validate(posting.production_log),
        movements=[schemas.MovementResponse.model_validate(movement) for movement in posting.movements],
    )


@router.post("/production/plans/{plan_id}/complete", response_model=schemas.PlanResponse)
def complete_plan_endpoint(
    plan_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return complete_plan(db, plan_id, current_user.id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/production/plans/{plan_id}/cancel-permission", response_model=schemas.CancelPermissionResponse)
def cancel_permission_endpoint(
    plan_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        permission = can_cancel_plan(db, plan_id, current_user.id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    return schemas.CancelPermissionResponse(allowed=permission.allowed, reason=permission.reason)


@router.post("/production/plans/{plan_id}/cancel", response_model=schemas.PlanResponse)
def cancel_plan_endpoint(
    plan_id: int,
    payload: schemas.ReasonPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        return cancel_plan(db, plan_id, current_user.id, payload.reason)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/production/logs/{log_id}/rollback", response_model=schemas.RollbackResponse)
def rollback_log_endpoint(
    log_id: int,
    payload: schemas.ReasonPayload,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        reversals = rollback_production_log(db, log_id, current_user.id, payload.reason)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    log = db.query(ProductionLog).filter(ProductionLog.id == log_id).one()
    return schemas.RollbackResponse(
        production_log=schemas.ProductionLogResponse.model_validate(log),
        reversals=[schemas.MovementResponse.model_validate(movement) for movement in reversals],
    )
