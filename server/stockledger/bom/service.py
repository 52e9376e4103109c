"""BOM graph maintenance and recursive resolution into plan snapshots.

A BOM edge says "one unit of parent consumes N units of child". Parents are
semi-finished or finished items, children are raw or semi-finished items,
and the graph must stay acyclic. Resolution walks the graph once, when a
plan is created, and freezes the result so later edits cannot change what
an in-flight plan consumes.
"""

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from stockledger.errors import BomCycleError, NotFoundError, ValidationError
from stockledger.models import MATERIAL_TIERS, PRODUCIBLE_TIERS, BomEdge, BomSnapshotLine, Item, ProductionPlan
from stockledger.utils.quantity import quantize_per_unit, quantize_qty, require_positive


logger = logging.getLogger(__name__)

MAX_BOM_DEPTH = 16


@dataclass(frozen=True)
class BomSnapshotLineData:
    material_id: int
    material_tier: str
    material_code: str
    material_name: str
    quantity_per_unit: Decimal
    quantity_needed_total: Decimal


def _get_item(db: Session, item_id: int) -> Item:
    item = db.query(Item).filter(Item.id == item_id).first()
    if not item:
        raise NotFoundError(f"Item {item_id} not found.")
    return item


def _children_of(db: Session, parent_item_id: int) -> list[BomEdge]:
    return (
        db.query(BomEdge)
        .filter(BomEdge.parent_item_id == parent_item_id)
        .order_by(BomEdge.id.asc())
        .all()
    )


def _reaches(db: Session, start_id: int, target_id: int) -> bool:
    """True when `target_id` is reachable from `start_id` along BOM edges."""
    stack = [start_id]
    seen: set[int] = set()
    while stack:
        node = stack.pop()
        if node == target_id:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(child_id for (child_id,) in db.query(BomEdge.child_item_id).filter(BomEdge.parent_item_id == node).all())
    return False


def add_bom_edge(db: Session, *, parent_item_id: int, child_item_id: int, quantity_per_unit) -> BomEdge:
    quantity = require_positive(quantity_per_unit, field="quantity_per_unit")
    if parent_item_id == child_item_id:
        raise BomCycleError("An item cannot consume itself.")

    parent = _get_item(db, parent_item_id)
    child = _get_item(db, child_item_id)
    if parent.tier not in PRODUCIBLE_TIERS:
        raise ValidationError(f"{parent.code} is a {parent.tier} item and cannot have a BOM.")
    if child.tier not in MATERIAL_TIERS:
        raise ValidationError(f"{child.code} is a {child.tier} item and cannot be consumed as a material.")

    existing = (
        db.query(BomEdge.id)
        .filter(BomEdge.parent_item_id == parent.id, BomEdge.child_item_id == child.id)
        .scalar()
    )
    if existing is not None:
        raise ValidationError(f"{parent.code} already consumes {child.code}; update the existing edge instead.")

    if _reaches(db, child.id, parent.id):
        raise BomCycleError(f"Adding {parent.code} -> {child.code} would create a cycle.")

    edge = BomEdge(
        parent_item_id=parent.id,
        parent_tier=parent.tier,
        child_item_id=child.id,
        child_tier=child.tier,
        quantity_per_unit=quantize_qty(quantity),
    )
    db.add(edge)
    db.flush()
    logger.info("BOM edge added: %s -> %s x %s", parent.code, child.code, quantity)
    return edge


def update_bom_edge(db: Session, edge_id: int, *, quantity_per_unit) -> BomEdge:
    quantity = require_positive(quantity_per_unit, field="quantity_per_unit")
    edge = db.query(BomEdge).filter(BomEdge.id == edge_id).first()
    if not edge:
        raise NotFoundError(f"BOM edge {edge_id} not found.")
    edge.quantity_per_unit = quantize_qty(quantity)
    db.flush()
    return edge


def remove_bom_edge(db: Session, edge_id: int) -> None:
    edge = db.query(BomEdge).filter(BomEdge.id == edge_id).first()
    if not edge:
        raise NotFoundError(f"BOM edge {edge_id} not found.")
    db.delete(edge)
    db.flush()


def list_bom(db: Session, parent_item_id: int) -> list[BomEdge]:
    _get_item(db, parent_item_id)
    return _children_of(db, parent_item_id)


def resolve_bom(
    db: Session,
    product_id: int,
    tier: str,
    target_quantity,
    *,
    explode_semi: bool = True,
) -> list[BomSnapshotLineData]:
    """Expand a product's BOM into flat material requirements.

    Quantities are multiplied with full Decimal precision along every path
    and merged per material. Semi-finished children with their own BOM are
    expanded further when `explode_semi` is set; otherwise they are
    consumed from semi-finished stock.
    """
    target = require_positive(target_quantity, field="target_quantity")
    product = _get_item(db, product_id)
    if product.tier != tier:
        raise ValidationError(f"Item {product_id} is a {product.tier} item, not {tier}.")
    if tier not in PRODUCIBLE_TIERS:
        raise ValidationError(f"{tier} items have no BOM.")

    per_unit: "OrderedDict[int, Decimal]" = OrderedDict()
    materials: dict[int, Item] = {}

    def expand(parent_id: int, multiplier: Decimal, path: tuple[int, ...]) -> None:
        if len(path) > MAX_BOM_DEPTH:
            raise BomCycleError(f"BOM of item {product_id} is deeper than {MAX_BOM_DEPTH} levels.")
        for edge in _children_of(db, parent_id):
            if edge.child_item_id in path:
                raise BomCycleError(f"BOM cycle detected through item {edge.child_item_id}.")
            quantity = multiplier * Decimal(edge.quantity_per_unit)
            child = edge.child
            if explode_semi and child.tier == "semi" and _children_of(db, child.id):
                expand(child.id, quantity, path + (child.id,))
                continue
            materials[child.id] = child
            per_unit[child.id] = per_unit.get(child.id, Decimal("0")) + quantity

    expand(product.id, Decimal("1"), (product.id,))

    lines = [
        BomSnapshotLineData(
            material_id=material_id,
            material_tier=materials[material_id].tier,
            material_code=materials[material_id].code,
            material_name=materials[material_id].name,
            quantity_per_unit=quantity,
            quantity_needed_total=quantity * target,
        )
        for material_id, quantity in per_unit.items()
    ]
    logger.debug("Resolved BOM for item_id=%s x %s into %s line(s)", product_id, target, len(lines))
    return lines


def freeze_bom_snapshot(db: Session, plan: ProductionPlan, lines: list[BomSnapshotLineData]) -> list[BomSnapshotLine]:
    if plan.snapshot_lines:
        raise ValidationError(f"Plan {plan.id} already has a BOM snapshot.")
    rows = []
    for line in lines:
        per_unit = quantize_per_unit(line.quantity_per_unit)
        rows.append(
            BomSnapshotLine(
                plan_id=plan.id,
                material_id=line.material_id,
                material_tier=line.material_tier,
                material_code=line.material_code,
                material_name=line.material_name,
                quantity_per_unit=per_unit,
                quantity_needed_total=quantize_qty(per_unit * Decimal(plan.planned_quantity)),
            )
        )
    plan.snapshot_lines.extend(rows)
    db.flush()
    return rows
