from datetime import datetime
from decimal import Decimal
from typing import Iterable
from uuid import uuid4
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockledger.db import transaction
from stockledger.errors import ConcurrencyConflictError, InsufficientStockError, NotFoundError, ValidationError
from stockledger.events import MovementPosted, queue_event
from stockledger.models import ITEM_TIERS, MOVEMENT_SOURCES, MOVEMENT_TYPES, Item, StockMovement
from stockledger.notifications.service import evaluate_critical_stock
from stockledger.users.service import get_user
from stockledger.utils.quantity import ZERO, quantize_qty, require_positive, to_decimal


logger = logging.getLogger(__name__)

INBOUND_TYPES = {"inflow", "production_in"}
OUTBOUND_TYPES = {"outflow", "production_out"}

# Movement types a compensating entry uses for each original type.
REVERSAL_TYPES = {
    "inflow": "outflow",
    "outflow": "inflow",
    "production_in": "production_out",
    "production_out": "production_in",
    "transfer": "transfer",
}

MANUAL_MOVEMENT_TYPES = {"inflow", "outflow", "transfer"}
MANUAL_SOURCES = {"manual", "purchase", "transfer", "system"}


def new_correlation_id() -> str:
    return str(uuid4())


def get_item(db: Session, item_id: int, tier: str | None = None) -> Item:
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise NotFoundError(f"Item {item_id} not found.")
    if tier is not None and item.tier != tier:
        raise ValidationError(f"Item {item_id} is a {item.tier} item, not {tier}.")
    return item


def lock_items(db: Session, item_ids: Iterable[int]) -> dict[int, Item]:
    """Lock item rows in id order and refresh them from the database.

    A fixed lock order keeps two postings that touch overlapping materials
    from deadlocking each other.
    """
    ids = sorted(set(item_ids))
    if not ids:
        return {}
    rows = (
        db.query(Item)
        .filter(Item.id.in_(ids))
        .order_by(Item.id.asc())
        .with_for_update()
        .populate_existing()
        .all()
    )
    found = {row.id: row for row in rows}
    missing = [item_id for item_id in ids if item_id not in found]
    if missing:
        raise NotFoundError(f"Items not found: {', '.join(str(item_id) for item_id in missing)}")
    return found


def signed_delta(movement_type: str, quantity: Decimal) -> Decimal:
    if movement_type in INBOUND_TYPES:
        return quantity
    if movement_type in OUTBOUND_TYPES:
        return -quantity
    if movement_type == "transfer":
        return quantity
    raise ValidationError(f"Unknown movement type '{movement_type}'.")


def post_movement(
    db: Session,
    *,
    item: Item,
    movement_type: str,
    quantity_delta: Decimal,
    source: str,
    correlation_id: str,
    actor_id: int | None = None,
    description: str | None = None,
    production_log_id: int | None = None,
    reversal_of: StockMovement | None = None,
    is_reconciliation: bool = False,
) -> StockMovement:
    """Write one ledger entry and apply its delta to the item.

    The item must already be locked by the caller. The UPDATE is guarded by
    the item's version counter, so a concurrent writer that slipped in
    between the read and the write surfaces as ConcurrencyConflictError.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type '{movement_type}'.")
    if source not in MOVEMENT_SOURCES:
        raise ValidationError(f"Unknown movement source '{source}'.")

    delta = quantize_qty(quantity_delta)
    if delta == 0:
        raise ValidationError("A movement must change the quantity.")
    if movement_type in INBOUND_TYPES and delta < 0:
        raise ValidationError(f"{movement_type} movements must increase the quantity.")
    if movement_type in OUTBOUND_TYPES and delta > 0:
        raise ValidationError(f"{movement_type} movements must decrease the quantity.")

    before = Decimal(item.quantity or 0)
    after = before + delta
    if after < 0:
        raise InsufficientStockError(
            [
                {
                    "material_id": item.id,
                    "material_code": item.code,
                    "material_tier": item.tier,
                    "required": str(-delta),
                    "available": str(before),
                    "shortage": str(-after),
                }
            ]
        )

    movement = StockMovement(
        item_id=item.id,
        item_tier=item.tier,
        movement_type=movement_type,
        quantity=abs(delta),
        quantity_delta=delta,
        before_quantity=before,
        after_quantity=after,
        source=source,
        actor_id=actor_id,
        correlation_id=correlation_id,
        production_log_id=production_log_id,
        reversal_of_id=reversal_of.id if reversal_of is not None else None,
        reverses_correlation_id=reversal_of.correlation_id if reversal_of is not None else None,
        is_reconciliation=is_reconciliation,
        description=description,
        created_at=datetime.utcnow(),
    )
    # A failed flush leaves the session unusable; read what the message needs first.
    item_id, item_code = item.id, item.code
    item.quantity = after
    db.add(movement)
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrencyConflictError(
            f"Item {item_id} ({item_code}) was modified concurrently; retry the operation."
        ) from exc

    queue_event(
        db,
        MovementPosted(
            movement_id=movement.id,
            item_id=item.id,
            item_tier=item.tier,
            movement_type=movement_type,
            quantity_delta=delta,
            before_quantity=before,
            after_quantity=after,
            source=source,
            correlation_id=correlation_id,
            created_at=movement.created_at,
        ),
    )
    logger.debug(
        "Movement posted: item_id=%s type=%s delta=%s before=%s after=%s correlation_id=%s",
        item.id,
        movement_type,
        delta,
        before,
        after,
        correlation_id,
    )
    return movement


def post_reversal(
    db: Session,
    *,
    original: StockMovement,
    item: Item,
    correlation_id: str,
    actor_id: int | None,
    description: str | None = None,
) -> StockMovement:
    return post_movement(
        db,
        item=item,
        movement_type=REVERSAL_TYPES[original.movement_type],
        quantity_delta=-Decimal(original.quantity_delta),
        source=original.source,
        correlation_id=correlation_id,
        actor_id=actor_id,
        description=description or f"Reversal of movement #{original.id}",
        production_log_id=original.production_log_id,
        reversal_of=original,
    )


def create_item(
    db: Session,
    *,
    tier: str,
    code: str,
    name: str,
    unit: str = "pcs",
    critical_level: Decimal | None = None,
    unit_cost: Decimal = Decimal("0"),
    opening_quantity: Decimal = Decimal("0"),
    barcode: str | None = None,
    actor_id: int | None = None,
) -> Item:
    """Onboard an item. A non-zero opening quantity is itself a ledger entry."""
    if tier not in ITEM_TIERS:
        raise ValidationError(f"Unknown tier '{tier}'. Expected one of: {', '.join(ITEM_TIERS)}.")
    code = (code or "").strip()
    if not code:
        raise ValidationError("Item code is required.")
    if db.query(Item.id).filter(Item.tier == tier, Item.code == code).scalar() is not None:
        raise ValidationError(f"Item {tier}/{code} already exists.")
    opening = to_decimal(opening_quantity, field="opening_quantity")
    if opening < 0:
        raise ValidationError("opening_quantity cannot be negative.")
    if critical_level is not None and to_decimal(critical_level, field="critical_level") < 0:
        raise ValidationError("critical_level cannot be negative.")

    item = Item(
        tier=tier,
        code=code,
        name=name,
        unit=unit,
        quantity=ZERO,
        reserved_quantity=ZERO,
        critical_level=critical_level,
        unit_cost=unit_cost,
        barcode=barcode,
        is_active=True,
    )
    db.add(item)
    db.flush()

    if opening > 0:
        post_movement(
            db,
            item=item,
            movement_type="inflow",
            quantity_delta=opening,
            source="system",
            correlation_id=new_correlation_id(),
            actor_id=actor_id,
            description="Opening balance",
        )
    evaluate_critical_stock(db, item)
    return item


def record_manual_movement(
    db: Session,
    *,
    item_id: int,
    tier: str,
    movement_type: str,
    quantity: Decimal,
    actor_id: int,
    source: str = "manual",
    description: str | None = None,
) -> StockMovement:
    """Post a stock receipt, issue or transfer outside production.

    `quantity` is positive for inflow/outflow; a transfer carries its own
    sign (positive moves stock in, negative moves it out).
    """
    if movement_type not in MANUAL_MOVEMENT_TYPES:
        raise ValidationError(
            f"Movement type '{movement_type}' cannot be recorded manually. "
            f"Expected one of: {', '.join(sorted(MANUAL_MOVEMENT_TYPES))}."
        )
    if source not in MANUAL_SOURCES:
        raise ValidationError(f"Source '{source}' cannot be used for a manual movement.")
    if movement_type == "transfer":
        amount = to_decimal(quantity)
        if amount == 0:
            raise ValidationError("quantity must not be zero.")
        delta = amount
    else:
        delta = signed_delta(movement_type, require_positive(quantity))

    with transaction(db):
        get_user(db, actor_id)
        get_item(db, item_id, tier=tier)
        item = lock_items(db, [item_id])[item_id]
        movement = post_movement(
            db,
            item=item,
            movement_type=movement_type,
            quantity_delta=delta,
            source=source,
            correlation_id=new_correlation_id(),
            actor_id=actor_id,
            description=description,
        )
        if delta < 0 and Decimal(item.quantity) < Decimal(item.reserved_quantity or 0):
            logger.warning(
                "Manual %s left item_id=%s below its reservations: quantity=%s reserved=%s",
                movement_type,
                item.id,
                item.quantity,
                item.reserved_quantity,
            )
        evaluate_critical_stock(db, item)
    logger.info(
        "Manual movement recorded: item_id=%s type=%s delta=%s source=%s actor_id=%s",
        item_id,
        movement_type,
        delta,
        source,
        actor_id,
    )
    return movement


def list_movements(
    db: Session,
    *,
    item_id: int | None = None,
    tier: str | None = None,
    movement_type: str | None = None,
    correlation_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[StockMovement]:
    query = db.query(StockMovement)
    if item_id is not None:
        query = query.filter(StockMovement.item_id == item_id)
    if tier is not None:
        query = query.filter(StockMovement.item_tier == tier)
    if movement_type is not None:
        query = query.filter(StockMovement.movement_type == movement_type)
    if correlation_id is not None:
        query = query.filter(StockMovement.correlation_id == correlation_id)
    return query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).offset(offset).limit(limit).all()


def item_history(db: Session, item_id: int) -> list[StockMovement]:
    """Full ledger of one item in posting order."""
    return (
        db.query(StockMovement)
        .filter(StockMovement.item_id == item_id)
        .order_by(StockMovement.id.asc())
        .all()
    )


def movements_for_correlation(db: Session, correlation_id: str) -> list[StockMovement]:
    return (
        db.query(StockMovement)
        .filter(StockMovement.correlation_id == correlation_id)
        .order_by(StockMovement.id.asc())
        .all()
    )
