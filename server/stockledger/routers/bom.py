from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from stockledger.auth import get_current_user, require_roles
from stockledger.bom import schemas
from stockledger.bom.service import add_bom_edge, list_bom, remove_bom_edge, resolve_bom, update_bom_edge
from stockledger.db import get_db, transaction
from stockledger.errors import StockLedgerError
from stockledger.http_errors import to_http_exception
from stockledger.utils.quantity import quantize_per_unit, quantize_qty


router = APIRouter(prefix="/api/bom", tags=["bom"], dependencies=[Depends(get_current_user)])

BOM_EDITORS = ("manager", "planner")


@router.get("/{parent_item_id}", response_model=List[schemas.BomEdgeResponse])
def get_bom(parent_item_id: int, db: Session = Depends(get_db)):
    try:
        return list_bom(db, parent_item_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post(
    "",
    response_model=schemas.BomEdgeResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles(*BOM_EDITORS))],
)
def create_bom_edge(payload: schemas.BomEdgeCreate, db: Session = Depends(get_db)):
    try:
        with transaction(db):
            edge = add_bom_edge(db, **payload.model_dump())
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    db.refresh(edge)
    return edge


@router.patch(
    "/edges/{edge_id}",
    response_model=schemas.BomEdgeResponse,
    dependencies=[Depends(require_roles(*BOM_EDITORS))],
)
def update_bom_edge_endpoint(edge_id: int, payload: schemas.BomEdgeUpdate, db: Session = Depends(get_db)):
    try:
        with transaction(db):
            edge = update_bom_edge(db, edge_id, quantity_per_unit=payload.quantity_per_unit)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
    db.refresh(edge)
    return edge


@router.delete(
    "/edges/{edge_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_roles(*BOM_EDITORS))],
)
def delete_bom_edge(edge_id: int, db: Session = Depends(get_db)):
    try:
        with transaction(db):
            remove_bom_edge(db, edge_id)
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc


@router.post("/resolve", response_model=List[schemas.BomSnapshotLineResponse])
def resolve(payload: schemas.BomResolveRequest, db: Session = Depends(get_db)):
    try:
        lines = resolve_bom(
            db,
            payload.product_id,
            payload.tier,
            payload.target_quantity,
            explode_semi=payload.explode_semi,
        )
        return [
            schemas.BomSnapshotLineResponse(
                material_id=line.material_id,
                material_tier=line.material_tier,
                material_code=line.material_code,
                material_name=line.material_name,
                quantity_per_unit=quantize_per_unit(line.quantity_per_unit),
                quantity_needed_total=quantize_qty(line.quantity_needed_total),
            )
            for line in lines
        ]
    except StockLedgerError as exc:
        raise to_http_exception(exc) from exc
