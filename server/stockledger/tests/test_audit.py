from decimal import Decimal
import logging

import pytest
from sqlalchemy import update

from stockledger.audit.__main__ import main as audit_main
from stockledger.audit.service import (
    assert_consistent,
    audit_item,
    audit_reservations,
    repair_item,
    run_audit,
)
from stockledger.errors import ConsistencyDriftError
from stockledger.inventory.service import item_history, record_manual_movement
from stockledger.models import Item


def _force_quantity(db, item, quantity):
    db.execute(update(Item).where(Item.id == item.id).values(quantity=Decimal(quantity)))
    db.commit()


def test_clean_ledger_replays_to_stored_quantity(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="10")
    record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="outflow", quantity=Decimal("2.5"),
        actor_id=users["warehouse"].id,
    )

    report = audit_item(db, item.id)

    assert report.is_consistent
    assert report.entry_count == 2
    assert report.replayed_quantity == Decimal("7.5")
    assert assert_consistent(db, item.id) is not None


def test_drift_is_reported_and_repaired_with_one_entry(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="10")
    _force_quantity(db, item, "13")

    report = audit_item(db, item.id)
    assert report.has_drift
    assert report.drift == Decimal("3")
    with pytest.raises(ConsistencyDriftError):
        assert_consistent(db, item.id)

    movement = repair_item(db, item.id, actor_id=users["manager"].id)

    assert movement.is_reconciliation
    assert movement.source == "system"
    assert (movement.before_quantity, movement.after_quantity) == (Decimal("13"), Decimal("10"))
    db.refresh(item)
    assert item.quantity == Decimal("10")
    assert audit_item(db, item.id).is_consistent
    assert repair_item(db, item.id) is None
    assert len(item_history(db, item.id)) == 2


def test_later_movements_chain_from_the_reconciliation_entry(db, users, make_item):
    item = make_item("raw", "STEEL", quantity="10")
    _force_quantity(db, item, "4")
    repair_item(db, item.id)

    record_manual_movement(
        db, item_id=item.id, tier="raw", movement_type="inflow", quantity=Decimal("1"),
        actor_id=users["warehouse"].id,
    )

    report = audit_item(db, item.id)
    assert report.is_consistent
    assert report.replayed_quantity == Decimal("11")


def test_reservation_drift_is_detected_and_repaired(db, make_item):
    item = make_item("raw", "STEEL", quantity="10")
    db.execute(update(Item).where(Item.id == item.id).values(reserved_quantity=Decimal("4")))
    db.commit()

    assert audit_reservations(db, item.id).drift == Decimal("4")

    summary = run_audit(db, repair=True)

    assert [report.item_id for report in summary.reservation_drifts] == [item.id]
    assert audit_reservations(db, item.id).is_consistent


def test_run_audit_filters_by_tier_and_repairs(db, make_item):
    steel = make_item("raw", "STEEL", quantity="10")
    frame = make_item("semi", "FRAME", quantity="5")
    _force_quantity(db, steel, "9")
    _force_quantity(db, frame, "6")

    summary = run_audit(db, repair=True, tiers=["raw"])

    assert summary.items_checked == 1
    assert summary.repaired_item_ids == [steel.id]
    assert audit_item(db, steel.id).is_consistent
    assert audit_item(db, frame.id).has_drift


def test_run_audit_stops_between_items(db, make_item):
    items = [make_item("raw", f"RAW{index}", quantity="1") for index in range(5)]
    for item in items:
        _force_quantity(db, item, "2")
    checked = []

    def should_stop():
        checked.append(True)
        return len(checked) > 2

    summary = run_audit(db, repair=True, should_stop=should_stop)

    assert summary.stopped
    assert summary.items_checked == 2
    assert summary.repaired_item_ids == [items[0].id, items[1].id]
    assert audit_item(db, items[2].id).has_drift


def test_audit_cli_reports_drift(db, make_item, monkeypatch, capsys):
    item = make_item("raw", "STEEL", quantity="10")
    _force_quantity(db, item, "12")
    monkeypatch.setattr("stockledger.audit.__main__.SessionLocal", lambda: db)
    monkeypatch.setattr("stockledger.audit.__main__.setup_logging", lambda level=None: logging.getLogger("test"))

    exit_code = audit_main(["--tier", "raw"])

    assert exit_code == 1
    assert "STEEL" in capsys.readouterr().out
