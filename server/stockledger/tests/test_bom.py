from decimal import Decimal

import pytest

from stockledger.bom.service import (
    MAX_BOM_DEPTH,
    add_bom_edge,
    freeze_bom_snapshot,
    list_bom,
    remove_bom_edge,
    resolve_bom,
    update_bom_edge,
)
from stockledger.db import transaction
from stockledger.errors import BomCycleError, ValidationError
from stockledger.models import BomEdge, BomSnapshotLine, Item, LedgerImmutabilityError
from stockledger.production.service import create_production_plan, post_production_output
from stockledger.utils.quantity import quantize_per_unit


def _edge(db, parent, child, quantity):
    with transaction(db):
        return add_bom_edge(db, parent_item_id=parent.id, child_item_id=child.id, quantity_per_unit=Decimal(quantity))


def test_resolve_bom_expands_semi_finished_levels_and_merges_materials(db, make_item):
    steel = make_item("raw", "STEEL")
    bolt = make_item("raw", "BOLT")
    frame = make_item("semi", "FRAME")
    bike = make_item("finished", "BIKE")
    _edge(db, frame, steel, "1.5")
    _edge(db, frame, bolt, "4")
    _edge(db, bike, frame, "2")
    _edge(db, bike, bolt, "2")

    lines = resolve_bom(db, bike.id, "finished", Decimal("3"))

    by_code = {line.material_code: line for line in lines}
    assert set(by_code) == {"STEEL", "BOLT"}
    assert by_code["STEEL"].quantity_per_unit == Decimal("3")
    assert by_code["STEEL"].quantity_needed_total == Decimal("9")
    assert by_code["BOLT"].quantity_per_unit == Decimal("10")
    assert by_code["BOLT"].quantity_needed_total == Decimal("30")


def test_resolve_bom_can_consume_semi_finished_stock(db, make_item):
    steel = make_item("raw", "STEEL")
    frame = make_item("semi", "FRAME")
    bike = make_item("finished", "BIKE")
    _edge(db, frame, steel, "1.5")
    _edge(db, bike, frame, "2")

    lines = resolve_bom(db, bike.id, "finished", Decimal("1"), explode_semi=False)

    assert [(line.material_code, line.material_tier, line.quantity_per_unit) for line in lines] == [
        ("FRAME", "semi", Decimal("2")),
    ]


def test_resolve_bom_keeps_full_precision_until_storage(db, make_item):
    glue = make_item("raw", "GLUE")
    panel = make_item("semi", "PANEL")
    desk = make_item("finished", "DESK")
    _edge(db, panel, glue, "0.333333")
    _edge(db, desk, panel, "0.5")

    lines = resolve_bom(db, desk.id, "finished", Decimal("3"))

    assert lines[0].quantity_per_unit == Decimal("0.1666665")
    assert lines[0].quantity_needed_total == Decimal("0.4999995")


def test_add_bom_edge_rejects_cycles(db, make_item):
    steel = make_item("raw", "STEEL")
    frame = make_item("semi", "FRAME")
    subframe = make_item("semi", "SUBFRAME")
    _edge(db, frame, subframe, "1")
    _edge(db, subframe, steel, "1")

    with pytest.raises(BomCycleError):
        _edge(db, subframe, frame, "1")
    with pytest.raises(BomCycleError):
        _edge(db, frame, frame, "1")

    assert db.query(BomEdge).count() == 2


@pytest.mark.parametrize(
    "parent_tier, child_tier",
    [("raw", "raw"), ("finished", "finished"), ("semi", "finished")],
)
def test_add_bom_edge_enforces_tiers(db, make_item, parent_tier, child_tier):
    parent = make_item(parent_tier, "PARENT")
    child = make_item(child_tier, "CHILD")

    with pytest.raises(ValidationError):
        _edge(db, parent, child, "1")


def test_add_bom_edge_rejects_duplicates_and_non_positive_quantities(db, make_item):
    steel = make_item("raw", "STEEL")
    frame = make_item("semi", "FRAME")
    _edge(db, frame, steel, "1")

    with pytest.raises(ValidationError):
        _edge(db, frame, steel, "2")
    with pytest.raises(ValidationError):
        _edge(db, frame, make_item("raw", "BOLT"), "0")


def test_update_and_remove_edges(db, make_item):
    steel = make_item("raw", "STEEL")
    frame = make_item("semi", "FRAME")
    edge = _edge(db, frame, steel, "1")

    with transaction(db):
        update_bom_edge(db, edge.id, quantity_per_unit=Decimal("2.5"))
    assert list_bom(db, frame.id)[0].quantity_per_unit == Decimal("2.5")

    with transaction(db):
        remove_bom_edge(db, edge.id)
    assert list_bom(db, frame.id) == []


def test_resolve_bom_enforces_depth_bound(db, make_item):
    chain = [make_item("semi", f"LEVEL{index}") for index in range(MAX_BOM_DEPTH + 2)]
    for parent, child in zip(chain, chain[1:]):
        _edge(db, parent, child, "1")
    _edge(db, chain[-1], make_item("raw", "LEAF"), "1")

    with pytest.raises(BomCycleError):
        resolve_bom(db, chain[0].id, "semi", Decimal("1"))


def test_snapshot_is_frozen_against_later_bom_edits(db, users, make_item):
    steel = make_item("raw", "STEEL", quantity="100")
    bike = make_item("finished", "BIKE")
    edge = _edge(db, bike, steel, "2")

    with transaction(db):
        plan = create_production_plan(
            db, product_id=bike.id, tier="finished", planned_quantity=Decimal("5"), created_by=users["planner"].id
        )
    with transaction(db):
        update_bom_edge(db, edge.id, quantity_per_unit=Decimal("7"))

    line = db.query(BomSnapshotLine).filter(BomSnapshotLine.plan_id == plan.id).one()
    assert line.quantity_per_unit == Decimal("2")
    assert line.quantity_needed_total == Decimal("10")

    line.quantity_per_unit = Decimal("3")
    with pytest.raises(LedgerImmutabilityError):
        db.flush()
    db.rollback()

    with pytest.raises(ValidationError):
        freeze_bom_snapshot(db, plan, resolve_bom(db, bike.id, "finished", Decimal("5")))


def test_snapshot_total_follows_stored_per_unit_for_tiny_multi_level_quantities(db, users, make_item):
    steel = make_item("raw", "STEEL", quantity="3")
    frame = make_item("semi", "FRAME")
    bike = make_item("finished", "BIKE")
    _edge(db, frame, steel, "0.0015")
    _edge(db, bike, frame, "0.0015")

    with transaction(db):
        plan = create_production_plan(
            db, product_id=bike.id, tier="finished", planned_quantity=Decimal("1000000"), created_by=users["planner"].id
        )

    line = db.query(BomSnapshotLine).filter(BomSnapshotLine.plan_id == plan.id).one()
    assert line.quantity_per_unit == Decimal("0.00000225")
    assert line.quantity_needed_total == Decimal("2.25")
    assert line.quantity_per_unit * Decimal(plan.planned_quantity) == line.quantity_needed_total
    assert Decimal(db.get(Item, steel.id).reserved_quantity) == Decimal("2.25")

    post_production_output(db, plan.id, Decimal("400000"), users["operator"].id)

    steel = db.get(Item, steel.id)
    assert Decimal(steel.quantity) == Decimal("2.1")
    assert Decimal(steel.reserved_quantity) == Decimal("1.35")


def test_per_unit_quantities_beyond_storage_scale_are_rejected():
    assert quantize_per_unit(Decimal("0.00000225")) == Decimal("0.00000225")

    with pytest.raises(ValidationError):
        quantize_per_unit(Decimal("0.0000000000000000001"))
