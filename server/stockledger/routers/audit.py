from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stockledger.audit import schemas
from stockledger.audit.service import (
    ItemAuditReport,
    ReservationAuditReport,
    audit_item,
    audit_reservations,
    run_audit,
)
from stockledger.auth import require_roles
from stockledger.db import get_db
from stockledger.errors import StockLedgerError
from stockledger.http_errors import to_http_exception
from stockledger.models import User


router = APIRouter(prefix="/api/audit", tags=["audit"], dependencies=[Depends(require_roles("manager"))])


def _item_response(report: ItemAuditReport) -> schemas.ItemAuditResponse:
    return schemas.ItemAuditResponse(
        item_id=report.item_id,
        tier=report.tier,
        code=report.code,
        stored_quantity=report.stored_quantity,
        replayed_quantity=report.replayed_quantity,
        drift=report.drift,
        entry_count=report.entry_count,
        chain_gaps=report.chain_gaps,
        arithmetic_violations=report.arithmetic_violations,
        is_consistent=report.is_consistent,
    )


def _reservation_response(report: ReservationAuditReport) -> schemas.ReservationAuditResponse:
    return schemas.ReservationAuditResponse(
        item_id=report.item_id,
        stored_reserved=report.stored_reserved,
        active_reserved=report.active_reserved,
        drift=report.drift,
        is_consistent=report.is_consistent,
    )


@router.get("/items/{item_id}", response_model=schemas.ItemAuditResponse)
def audit_item_endpoint(item_id: int, db: Session = Depends(get_db)):
    try:
        return _item_response(audit_item(db, item_id))
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.get("/items/{item_id}/reservations", response_model=schemas.ReservationAuditResponse)
def audit_reservations_endpoint(item_id: int, db: Session = Depends(get_db)):
    try:
        return _reservation_response(audit_reservations(db, item_id))
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/run", response_model=schemas.AuditRunResponse)
def run_audit_endpoint(
    payload: schemas.AuditRunRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_roles("manager")),
):
    try:
        summary = run_audit(
            db,
            repair=payload.repair,
            tiers=payload.tiers,
            item_ids=payload.item_ids,
            actor_id=current_user.id,
        )
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    return schemas.AuditRunResponse(
        items_checked=summary.items_checked,
        drifted=[_item_response(report) for report in summary.drifted],
        reservation_drifts=[_reservation_response(report) for report in summary.reservation_drifts],
        repaired_item_ids=summary.repaired_item_ids,
        stopped=summary.stopped,
    )
