from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockledger.models import Item, ProductionPlan, Reservation
from stockledger.utils.quantity import ZERO, quantize_qty


logger = logging.getLogger(__name__)

OWNER_PLAN = "plan"


def get_reserved_qty(db: Session, item_id: int) -> Decimal:
    reserved = (
        db.query(func.coalesce(func.sum(Reservation.quantity_reserved), 0))
        .filter(Reservation.item_id == item_id, Reservation.released_at.is_(None))
        .scalar()
    )
    return Decimal(reserved or 0)


def get_owner_reserved_qty_map(db: Session, *, owner_type: str, owner_id: int) -> dict[int, Decimal]:
    rows = (
        db.query(Reservation.item_id, func.coalesce(func.sum(Reservation.quantity_reserved), 0))
        .filter(
            Reservation.owner_type == owner_type,
            Reservation.owner_id == owner_id,
            Reservation.released_at.is_(None),
        )
        .group_by(Reservation.item_id)
        .all()
    )
    return {item_id: Decimal(total or 0) for item_id, total in rows}


def _active_reservations(db: Session, *, owner_type: str, owner_id: int) -> list[Reservation]:
    return (
        db.query(Reservation)
        .filter(
            Reservation.owner_type == owner_type,
            Reservation.owner_id == owner_id,
            Reservation.released_at.is_(None),
        )
        .order_by(Reservation.id.asc())
        .with_for_update()
        .all()
    )


def _adjust_item_reserved(item: Item, qty_delta: Decimal) -> None:
    reserved = Decimal(item.reserved_quantity or 0) + qty_delta
    if reserved < 0:
        # Legacy drift: never store a negative reservation, let the auditor report it.
        logger.warning(
            "Reserved quantity for item_id=%s would go negative (%s); clamping to 0",
            item.id,
            reserved,
        )
        reserved = ZERO
    item.reserved_quantity = reserved


def sync_reservations_for_owner(
    db: Session,
    *,
    owner_type: str,
    owner_id: int,
    item_qty_map: dict[int, Decimal],
    items: dict[int, Item],
) -> list[Reservation]:
    """Make the owner's active reservations match `item_qty_map` exactly.

    Items missing from the map, or mapped to zero, are released. The
    denormalised `Item.reserved_quantity` moves by the same difference.
    """
    active = _active_reservations(db, owner_type=owner_type, owner_id=owner_id)
    active_by_item = {row.item_id: row for row in active}
    released_at = datetime.utcnow()

    for item_id, reservation in active_by_item.items():
        target = quantize_qty(max(Decimal(item_qty_map.get(item_id, ZERO) or 0), ZERO))
        current = Decimal(reservation.quantity_reserved or 0)
        item = items.get(item_id) or db.query(Item).filter(Item.id == item_id).one()
        if target <= 0:
            reservation.released_at = released_at
            _adjust_item_reserved(item, -current)
        elif target != current:
            reservation.quantity_reserved = target
            _adjust_item_reserved(item, target - current)

    for item_id, qty in item_qty_map.items():
        qty_decimal = quantize_qty(Decimal(qty or 0))
        if qty_decimal <= 0 or item_id in active_by_item:
            continue
        item = items.get(item_id) or db.query(Item).filter(Item.id == item_id).one()
        db.add(
            Reservation(
                item_id=item_id,
                owner_type=owner_type,
                owner_id=owner_id,
                quantity_reserved=qty_decimal,
                created_at=released_at,
            )
        )
        _adjust_item_reserved(item, qty_decimal)
    db.flush()
    return active


def outstanding_plan_requirements(plan: ProductionPlan) -> dict[int, Decimal]:
    """Material still needed to finish the plan, from its frozen snapshot."""
    if plan.status in {"completed", "cancelled"}:
        return {}
    remaining_units = max(plan.remaining_quantity, ZERO)
    return {
        line.material_id: Decimal(line.quantity_per_unit) * remaining_units
        for line in plan.snapshot_lines
    }


def reserve_for_plan(db: Session, plan: ProductionPlan, items: dict[int, Item] | None = None) -> None:
    sync_plan_reservations(db, plan, items)
    logger.info("Reserved materials for plan_id=%s: %s", plan.id, outstanding_plan_requirements(plan))


def sync_plan_reservations(db: Session, plan: ProductionPlan, items: dict[int, Item] | None = None) -> None:
    sync_reservations_for_owner(
        db,
        owner_type=OWNER_PLAN,
        owner_id=plan.id,
        item_qty_map=outstanding_plan_requirements(plan),
        items=items or {},
    )


def release_reservations(db: Session, *, owner_type: str, owner_id: int, items: dict[int, Item] | None = None) -> list[Reservation]:
    rows = _active_reservations(db, owner_type=owner_type, owner_id=owner_id)
    released_at = datetime.utcnow()
    items = items or {}
    for row in rows:
        item = items.get(row.item_id) or db.query(Item).filter(Item.id == row.item_id).one()
        _adjust_item_reserved(item, -Decimal(row.quantity_reserved or 0))
        row.released_at = released_at
    db.flush()
    if rows:
        logger.info("Released %s reservation(s) for %s #%s", len(rows), owner_type, owner_id)
    return rows


def list_item_reservations(db: Session, item_id: int) -> list[Reservation]:
    return (
        db.query(Reservation)
        .filter(Reservation.item_id == item_id, Reservation.released_at.is_(None))
        .order_by(Reservation.created_at.asc())
        .all()
    )
