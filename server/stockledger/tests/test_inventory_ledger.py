from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stockledger.db import Base, transaction
from stockledger.errors import ConcurrencyConflictError, InsufficientStockError, ValidationError
from stockledger.inventory.service import (
    item_history,
    list_movements,
    lock_items,
    new_correlation_id,
    post_movement,
    record_manual_movement,
)
from stockledger.models import Item, LedgerImmutabilityError, StockMovement


def test_opening_quantity_is_posted_as_a_ledger_entry(db, make_item):
    item = make_item("raw", "STEEL", quantity="25")

    history = item_history(db, item.id)

    assert len(history) == 1
    assert history[0].movement_type == "inflow"
    assert history[0].source == "system"
    assert history[0].before_quantity == Decimal("0")
    assert history[0].after_quantity == Decimal("25")
    assert item.quantity == Decimal("25")


def test_manual_movements_keep_the_before_after_chain(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="10")

    record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="inflow", quantity=Decimal("5.5"),
        actor_id=users["warehouse"].id, source="purchase",
    )
    record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="outflow", quantity=Decimal("3.25"),
        actor_id=users["warehouse"].id,
    )
    record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="transfer", quantity=Decimal("-2"),
        actor_id=users["warehouse"].id, source="transfer",
    )

    history = item_history(db, item.id)
    db.refresh(item)

    assert [entry.quantity_delta for entry in history] == [
        Decimal("10"),
        Decimal("5.5"),
        Decimal("-3.25"),
        Decimal("-2"),
    ]
    for previous, current in zip(history, history[1:]):
        assert current.before_quantity == previous.after_quantity
    for entry in history:
        assert entry.after_quantity == entry.before_quantity + entry.quantity_delta
    assert item.quantity == history[-1].after_quantity == Decimal("10.25")


def test_outflow_beyond_on_hand_is_rejected_and_nothing_is_written(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="4")

    with pytest.raises(InsufficientStockError) as exc_info:
        record_manual_movement(
            db, item_id=item.id, tier="raw", movement_type="outflow", quantity=Decimal("5"),
            actor_id=users["warehouse"].id,
        )

    violation = exc_info.value.violations[0]
    assert violation["material_code"] == "STEEL"
    assert Decimal(violation["shortage"]) == Decimal("1")
    db.refresh(item)
    assert item.quantity == Decimal("4")
    assert len(item_history(db, item.id)) == 1


@pytest.mark.parametrize(
    "movement_type, quantity, source",
    [
        ("production_in", "1", "manual"),
        ("inflow", "0", "manual"),
        ("outflow", "-2", "manual"),
        ("transfer", "0", "transfer"),
        ("inflow", "1", "production"),
    ],
)
def test_manual_movement_rejects_invalid_input(db, users, make_item, movement_type, quantity, source):
    item = make_item("raw", "STEEL", quantity="4")

    with pytest.raises(ValidationError):
        record_manual_movement(
            db, item_id=item.id, tier="raw", movement_type=movement_type, quantity=Decimal(quantity),
            actor_id=users["warehouse"].id, source=source,
        )


def test_manual_movement_checks_the_tier(db, users, make_item):
    item = make_item("semi", "FRAME", quantity="4")

    with pytest.raises(ValidationError):
        record_manual_movement(
            db, item_id=item.id, tier="raw", movement_type="inflow", quantity=Decimal("1"),
            actor_id=users["warehouse"].id,
        )


def test_ledger_entries_cannot_be_edited_or_deleted(db, make_item):
    item = make_item("raw", "STEEL", quantity="4")
    entry = db.query(StockMovement).filter(StockMovement.item_id == item.id).one()

    entry.description = "tampered"
    with pytest.raises(LedgerImmutabilityError):
        db.flush()
    db.rollback()

    db.delete(entry)
    with pytest.raises(LedgerImmutabilityError):
        db.flush()
    db.rollback()


def test_list_movements_filters_by_correlation_id(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="4")
    movement = record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="inflow", quantity=Decimal("1"),
        actor_id=users["warehouse"].id,
    )

    rows = list_movements(db, correlation_id=movement.correlation_id)

    assert [row.id for row in rows] == [movement.id]


def test_concurrent_item_update_surfaces_as_conflict(tmp_path):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    with Session() as setup:
        setup.add(Item(tier="raw", code="STEEL", name="Steel", quantity=Decimal("10"), reserved_quantity=0))
        setup.commit()

    first = Session()
    second = Session()
    try:
        item_id = first.query(Item.id).scalar()
        stale = lock_items(first, [item_id])[item_id]

        competing = second.query(Item).filter(Item.id == item_id).one()
        competing.quantity = Decimal("7")
        second.commit()

        with pytest.raises(ConcurrencyConflictError):
            with transaction(first):
                post_movement(
                    first,
                    item=stale,
                    movement_type="outflow",
                    quantity_delta=Decimal("-1"),
                    source="manual",
                    correlation_id=new_correlation_id(),
                )

        assert first.query(StockMovement).count() == 0
        assert first.query(Item.quantity).filter(Item.id == item_id).scalar() == Decimal("7")
    finally:
        first.close()
        second.close()
