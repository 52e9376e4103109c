from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stockledger.bom.service import add_bom_edge
from stockledger.db import Base, transaction
from stockledger.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    PermissionDeniedError,
    PlanStateConflictError,
    ValidationError,
)
from stockledger.events import CriticalStockClosed, CriticalStockOpened, MovementPosted, subscribe
from stockledger.inventory.service import create_item, item_history, movements_for_correlation, record_manual_movement
from stockledger.models import CriticalStockNotification, Item, ProductionLog, ProductionPlan, StockMovement
from stockledger.production import service as production_service
from stockledger.production.service import (
    approve_order,
    complete_plan,
    create_order,
    create_production_plan,
    post_production_output,
    start_plan,
)
from stockledger.users.service import create_user


@pytest.fixture()
def bike_line(db, users, make_item):
    """Steel Sheet (critical at 20) -> Bike, 2 sheets per bike."""

    def _build(steel_quantity="100", planned="10", extra_materials=()):
        steel = make_item("raw", "STEEL-SHEET", quantity=steel_quantity, critical_level="20", name="Steel Sheet")
        bike = make_item("finished", "BIKE")
        with transaction(db):
            add_bom_edge(db, parent_item_id=bike.id, child_item_id=steel.id, quantity_per_unit=Decimal("2"))
            for material, per_unit in extra_materials:
                add_bom_edge(db, parent_item_id=bike.id, child_item_id=material.id, quantity_per_unit=Decimal(per_unit))
        with transaction(db):
            plan = create_production_plan(
                db,
                product_id=bike.id,
                tier="finished",
                planned_quantity=Decimal(planned),
                created_by=users["planner"].id,
            )
        return steel, bike, plan

    return _build


def test_plan_creation_reserves_snapshot_materials(db, bike_line):
    steel, _, plan = bike_line(steel_quantity="100", planned="10")

    db.refresh(steel)
    assert steel.reserved_quantity == Decimal("20")
    assert steel.quantity == Decimal("100")
    assert plan.status == "planned"


def test_posting_consumes_materials_and_books_output(db, users, bike_line):
    steel, bike, plan = bike_line(steel_quantity="100", planned="10")

    posting = post_production_output(db, plan.id, Decimal("10"), users["operator"].id)

    db.refresh(steel)
    db.refresh(bike)
    db.refresh(plan)
    assert steel.quantity == Decimal("80")
    assert steel.reserved_quantity == Decimal("0")
    assert bike.quantity == Decimal("10")
    assert plan.produced_quantity == Decimal("10")
    assert plan.status == "in_progress"
    assert db.query(CriticalStockNotification).count() == 0

    entries = movements_for_correlation(db, posting.correlation_id)
    assert {(entry.item_id, entry.movement_type, entry.quantity_delta) for entry in entries} == {
        (steel.id, "outflow", Decimal("-20")),
        (bike.id, "production_in", Decimal("10")),
    }
    assert all(entry.source == "production" for entry in entries)
    assert all(entry.production_log_id == posting.production_log.id for entry in entries)


def test_partial_postings_shrink_the_reservation(db, users, bike_line):
    steel, _, plan = bike_line(steel_quantity="100", planned="10")

    post_production_output(db, plan.id, Decimal("4"), users["operator"].id)

    db.refresh(steel)
    assert steel.quantity == Decimal("92")
    assert steel.reserved_quantity == Decimal("12")


def test_insufficient_stock_rejects_the_posting_unchanged(db, users, bike_line):
    steel, bike, plan = bike_line(steel_quantity="25", planned="15")

    with pytest.raises(InsufficientStockError) as exc_info:
        post_production_output(db, plan.id, Decimal("15"), users["operator"].id)

    assert exc_info.value.total_shortage == Decimal("5")
    violation = exc_info.value.violations[0]
    assert violation["material_id"] == steel.id
    assert Decimal(violation["required"]) == Decimal("30")
    assert Decimal(violation["available"]) == Decimal("25")
    db.refresh(steel)
    db.refresh(plan)
    assert steel.quantity == Decimal("25")
    assert plan.produced_quantity == Decimal("0")
    assert db.query(ProductionLog).count() == 0
    assert len(item_history(db, steel.id)) == 1
    assert len(item_history(db, bike.id)) == 0


def test_shortage_on_one_material_writes_nothing_for_the_others(db, users, make_item, bike_line):
    bolt = make_item("raw", "BOLT", quantity="1000")
    paint = make_item("raw", "PAINT", quantity="1")
    steel, _, plan = bike_line(
        steel_quantity="100", planned="10", extra_materials=((bolt, "8"), (paint, "0.5"))
    )
    movement_count = db.query(StockMovement).count()

    with pytest.raises(InsufficientStockError) as exc_info:
        post_production_output(db, plan.id, Decimal("5"), users["operator"].id)

    assert [violation["material_code"] for violation in exc_info.value.violations] == ["PAINT"]
    assert db.query(StockMovement).count() == movement_count
    for item in (steel, bolt, paint):
        db.refresh(item)
    assert (steel.quantity, bolt.quantity, paint.quantity) == (Decimal("100"), Decimal("1000"), Decimal("1"))


def test_other_plans_reservations_are_not_available(db, users, make_item, bike_line):
    steel, bike, first_plan = bike_line(steel_quantity="30", planned="10")
    with transaction(db):
        second_plan = create_production_plan(
            db, product_id=bike.id, tier="finished", planned_quantity=Decimal("5"), created_by=users["planner"].id
        )
    record_manual_movement(
        db, item_id=steel.id, tier="raw", movement_type="outflow", quantity=Decimal("5"),
        actor_id=users["warehouse"].id,
    )

    with pytest.raises(InsufficientStockError) as exc_info:
        post_production_output(db, second_plan.id, Decimal("5"), users["operator"].id)
    assert Decimal(exc_info.value.violations[0]["available"]) == Decimal("5")

    post_production_output(db, first_plan.id, Decimal("7"), users["operator"].id)
    db.refresh(steel)
    assert steel.quantity == Decimal("11")
    assert steel.reserved_quantity == Decimal("16")


def test_shortage_counts_the_full_gap_when_stock_is_over_reserved(db, users, bike_line):
    steel, bike, _ = bike_line(steel_quantity="10", planned="10")
    with transaction(db):
        small_plan = create_production_plan(
            db, product_id=bike.id, tier="finished", planned_quantity=Decimal("1"), created_by=users["planner"].id
        )
    db.refresh(steel)
    assert steel.reserved_quantity == Decimal("22")

    with pytest.raises(InsufficientStockError) as exc_info:
        post_production_output(db, small_plan.id, Decimal("1"), users["operator"].id)

    violation = exc_info.value.violations[0]
    assert Decimal(violation["available"]) == Decimal("-10")
    assert Decimal(violation["shortage"]) == Decimal("12")


def test_critical_stock_alert_opens_and_closes(db, users, bike_line):
    steel, _, plan = bike_line(steel_quantity="35", planned="10")
    seen = []
    subscribe(CriticalStockOpened, seen.append)
    subscribe(CriticalStockClosed, seen.append)

    post_production_output(db, plan.id, Decimal("10"), users["operator"].id)

    db.refresh(steel)
    assert steel.quantity == Decimal("15")
    assert [type(event) for event in seen] == [CriticalStockOpened]
    assert db.query(CriticalStockNotification).filter(CriticalStockNotification.is_open.is_(True)).count() == 1

    record_manual_movement(
        db, item_id=steel.id, tier="raw", movement_type="outflow", quantity=Decimal("1"),
        actor_id=users["warehouse"].id,
    )
    assert len(seen) == 1

    record_manual_movement(
        db, item_id=steel.id, tier="raw", movement_type="inflow", quantity=Decimal("11"),
        actor_id=users["warehouse"].id, source="purchase",
    )

    assert [type(event) for event in seen] == [CriticalStockOpened, CriticalStockClosed]
    assert db.query(CriticalStockNotification).filter(CriticalStockNotification.is_open.is_(True)).count() == 0


def test_events_are_dispatched_only_after_commit(db, users, bike_line):
    steel, _, plan = bike_line(steel_quantity="25", planned="15")
    posted = []
    subscribe(MovementPosted, posted.append)

    with pytest.raises(InsufficientStockError):
        post_production_output(db, plan.id, Decimal("15"), users["operator"].id)
    assert posted == []

    post_production_output(db, plan.id, Decimal("5"), users["operator"].id)
    assert {event.movement_type for event in posted} == {"outflow", "production_in"}
    assert all(event.source == "production" for event in posted)


def test_posting_validates_quantities_and_plan_state(db, users, bike_line):
    _, _, plan = bike_line(steel_quantity="100", planned="10")

    with pytest.raises(ValidationError):
        post_production_output(db, plan.id, Decimal("0"), users["operator"].id)
    with pytest.raises(ValidationError):
        post_production_output(db, plan.id, Decimal("11"), users["operator"].id)

    post_production_output(db, plan.id, Decimal("6"), users["operator"].id)
    complete_plan(db, plan.id, users["planner"].id)

    with pytest.raises(PlanStateConflictError):
        post_production_output(db, plan.id, Decimal("1"), users["operator"].id)


def test_complete_plan_releases_remaining_reservations(db, users, bike_line):
    steel, _, plan = bike_line(steel_quantity="100", planned="10")
    post_production_output(db, plan.id, Decimal("6"), users["operator"].id)

    with pytest.raises(PermissionDeniedError):
        complete_plan(db, plan.id, users["operator"].id)
    complete_plan(db, plan.id, users["planner"].id)

    db.refresh(steel)
    db.refresh(plan)
    assert plan.status == "completed"
    assert steel.reserved_quantity == Decimal("0")
    assert steel.quantity == Decimal("88")


def test_start_plan_moves_planned_to_in_progress(db, users, bike_line):
    _, _, plan = bike_line()

    start_plan(db, plan.id, users["operator"].id)

    with pytest.raises(PlanStateConflictError):
        start_plan(db, plan.id, users["operator"].id)
    db.refresh(plan)
    assert plan.status == "in_progress"


def test_approve_order_lists_every_short_material(db, users, make_item):
    steel = make_item("raw", "STEEL", quantity="10")
    bolt = make_item("raw", "BOLT", quantity="3")
    bike = make_item("finished", "BIKE")
    with transaction(db):
        add_bom_edge(db, parent_item_id=bike.id, child_item_id=steel.id, quantity_per_unit=Decimal("2"))
        add_bom_edge(db, parent_item_id=bike.id, child_item_id=bolt.id, quantity_per_unit=Decimal("4"))
        order = create_order(
            db, lines=[{"product_id": bike.id, "quantity": Decimal("6")}], created_by=users["planner"].id
        )

    with pytest.raises(PermissionDeniedError):
        approve_order(db, order.id, users["operator"].id)
    with pytest.raises(InsufficientStockError) as exc_info:
        approve_order(db, order.id, users["manager"].id)

    shortages = {violation["material_code"]: Decimal(violation["shortage"]) for violation in exc_info.value.violations}
    assert shortages == {"STEEL": Decimal("2"), "BOLT": Decimal("21")}


def test_approve_order_opens_one_plan_per_line_and_completes_with_them(db, users, make_item):
    steel = make_item("raw", "STEEL", quantity="100")
    bike = make_item("finished", "BIKE")
    trike = make_item("finished", "TRIKE")
    with transaction(db):
        add_bom_edge(db, parent_item_id=bike.id, child_item_id=steel.id, quantity_per_unit=Decimal("2"))
        add_bom_edge(db, parent_item_id=trike.id, child_item_id=steel.id, quantity_per_unit=Decimal("3"))
        order = create_order(
            db,
            lines=[
                {"product_id": bike.id, "quantity": Decimal("5")},
                {"product_id": trike.id, "quantity": Decimal("2")},
            ],
            created_by=users["planner"].id,
        )

    plans = approve_order(db, order.id, users["planner"].id)

    db.refresh(order)
    db.refresh(steel)
    assert order.status == "in_production"
    assert [plan.product_id for plan in plans] == [bike.id, trike.id]
    assert steel.reserved_quantity == Decimal("16")

    with pytest.raises(PlanStateConflictError):
        approve_order(db, order.id, users["planner"].id)

    for plan in plans:
        post_production_output(db, plan.id, plan.planned_quantity, users["operator"].id)
        complete_plan(db, plan.id, users["manager"].id)

    db.refresh(order)
    db.refresh(steel)
    assert order.status == "completed"
    assert steel.quantity == Decimal("84")
    assert steel.reserved_quantity == Decimal("0")
    assert db.query(Item).filter(Item.id == bike.id).one().quantity == Decimal("5")


def test_racing_postings_on_a_shared_material_conflict_instead_of_overwriting(tmp_path, monkeypatch):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with Session() as setup:
        with transaction(setup):
            operator = create_user(setup, username="operator", role="operator")
            planner = create_user(setup, username="planner", role="planner")
            steel = create_item(setup, tier="raw", code="STEEL", name="Steel", opening_quantity=Decimal("100"))
            bike = create_item(setup, tier="finished", code="BIKE", name="Bike")
            add_bom_edge(setup, parent_item_id=bike.id, child_item_id=steel.id, quantity_per_unit=Decimal("2"))
        plan_ids = []
        for _ in range(2):
            with transaction(setup):
                plan = create_production_plan(
                    setup, product_id=bike.id, tier="finished", planned_quantity=Decimal("10"), created_by=planner.id
                )
            plan_ids.append(plan.id)
        operator_id, steel_id = operator.id, steel.id
    first_plan_id, second_plan_id = plan_ids

    first = Session()
    second = Session()
    real_lock_items = production_service.lock_items
    raced = []

    def lock_then_let_the_other_posting_commit(db, item_ids):
        items = real_lock_items(db, item_ids)
        if db is first and not raced:
            raced.append(True)
            post_production_output(second, second_plan_id, Decimal("5"), operator_id)
        return items

    monkeypatch.setattr(production_service, "lock_items", lock_then_let_the_other_posting_commit)
    try:
        with pytest.raises(ConcurrencyConflictError):
            post_production_output(first, first_plan_id, Decimal("4"), operator_id)

        steel = first.query(Item).filter(Item.id == steel_id).one()
        assert steel.quantity == Decimal("90")
        assert first.query(ProductionLog).filter(ProductionLog.plan_id == first_plan_id).count() == 0
        first_plan = first.query(ProductionPlan).filter(ProductionPlan.id == first_plan_id).one()
        assert first_plan.produced_quantity == Decimal("0")
        assert first_plan.status == "planned"

        post_production_output(first, first_plan_id, Decimal("4"), operator_id)

        first.refresh(steel)
        assert steel.quantity == Decimal("82")
        assert steel.reserved_quantity == Decimal("22")
    finally:
        first.close()
        second.close()
