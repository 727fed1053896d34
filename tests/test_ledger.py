from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.core.errors import InsufficientStock, LedgerInvariantError, ValidationFailed
from app.db.models.inventory import POOL_SFG, StockLot
from services.inventory import ledger

T1 = datetime(2026, 3, 1, 9, 0)
T2 = T1 + timedelta(days=2)


def test_fifo_issue_drains_oldest_lot_first(db, make_material):
    fabric = make_material("Fabric-A", lots=[("L1", 100, T1), ("L2", 50, T2)])

    taken = ledger.issue(db, fabric, 120)
    db.commit()

    assert taken == [{"lot_number": "L1", "qty": Decimal("100")}, {"lot_number": "L2", "qty": Decimal("20")}]
    lots = ledger.lots_for(db, fabric)
    assert [(lot.lot_number, lot.qty) for lot in lots] == [("L2", Decimal("30"))]
    assert fabric.current_qty == Decimal("30")


def test_fifo_orders_by_receipt_time_not_insertion(db, make_material):
    fabric = make_material("Fabric-B", lots=[("LATE", 40, T2), ("EARLY", 40, T1)])

    taken = ledger.issue(db, fabric, 10)

    assert taken == [{"lot_number": "EARLY", "qty": Decimal("10")}]


def test_insufficient_stock_changes_nothing(db, make_material):
    fabric = make_material("Fabric-C", lots=[("L1", 100, T1), ("L2", 50, T2)])

    with pytest.raises(InsufficientStock) as exc:
        ledger.issue(db, fabric, 151)

    assert exc.value.context["item_code"] == "Fabric-C"
    db.rollback()
    assert fabric.current_qty == Decimal("150")
    assert sorted(lot.qty for lot in ledger.lots_for(db, fabric)) == [Decimal("50"), Decimal("100")]


def test_issue_rejects_non_positive_quantity(db, make_material):
    fabric = make_material("Fabric-D", lots=[("L1", 10, T1)])
    with pytest.raises(ValidationFailed):
        ledger.issue(db, fabric, 0)


def test_receive_with_box_breakdown_creates_boxed_and_loose_lots(db, make_material):
    thread = make_material("Thread-Red")

    lots = ledger.receive(db, thread, lot_number="GRN-7", breakdown={"boxes": 3, "per_box": 10, "loose": 4})
    db.commit()

    assert [(lot.lot_number, lot.qty, lot.box_count, lot.is_loose) for lot in lots] == [
        ("GRN-7", Decimal("30"), 3, False),
        ("GRN-7-L", Decimal("4"), 0, True),
    ]
    assert thread.current_qty == Decimal("34")


def test_product_receipts_land_in_free_warehouse_stock(db, make_product):
    tee = make_product("TEE-W")

    ledger.receive(db, tee, 25, lot_number="FG-OPEN", added_at=T1)
    db.commit()

    assert tee.warehouse_qty == Decimal("25")
    assert tee.reserved_qty == Decimal("0")
    assert tee.on_hand_qty == ledger.lot_total(db, tee)


def test_conservation_check_catches_drift(db, make_material):
    fabric = make_material("Fabric-E", lots=[("L1", 10, T1)])
    fabric.current_qty = Decimal("15")

    with pytest.raises(LedgerInvariantError):
        ledger.check_conservation(db, fabric)


def test_issue_from_reserved_only_touches_reserved_balance(db, make_product):
    tee = make_product("TEE-R", stock=20)
    tee.warehouse_qty = Decimal("5")
    tee.reserved_qty = Decimal("15")
    db.commit()

    ledger.issue(db, tee, 15, from_reserved=True)

    assert tee.reserved_qty == Decimal("0")
    assert tee.warehouse_qty == Decimal("5")
    with pytest.raises(InsufficientStock):
        ledger.issue(db, tee, 1, from_reserved=True)


def test_sfg_lots_stay_outside_the_product_aggregate(db, make_product):
    tee = make_product("TEE-S")

    ledger.receive_sfg(db, tee, 97, lot_number="SFG-1234", job_id="job-1")
    ledger.check_conservation(db, tee)

    sfg = db.query(StockLot).filter(StockLot.pool == POOL_SFG).all()
    assert [(lot.lot_number, lot.qty) for lot in sfg] == [("SFG-1234", Decimal("97"))]
    assert ledger.consume_sfg(db, tee, "job-1") == Decimal("97")
    assert db.query(StockLot).filter(StockLot.pool == POOL_SFG).count() == 0


@pytest.mark.parametrize(
    "current,target,band",
    [
        (30, 100, "CRITICAL"),
        (33, 100, "CRITICAL"),
        (50, 100, "MEDIUM"),
        (100, 100, "OPTIMAL"),
        (101, 100, "EXCESS"),
        (2, 0, "EXCESS"),
    ],
)
def test_health_bands(current, target, band):
    assert ledger.health_status(current, target) == band


def test_stock_target_treats_zero_multiplier_as_one():
    assert ledger.stock_target(2, 10, 0) == Decimal("20")
    assert ledger.stock_target(2, 10, Decimal("1.5")) == Decimal("30")


def test_health_is_computed_from_current_levels(db, make_material):
    fabric = make_material("Fabric-H", lots=[("L1", 10, T1)], avg_consumption=Decimal("1"),
                           lead_time_days=Decimal("10"), safety_stock_multiplier=Decimal("1"))
    assert fabric.health == "OPTIMAL"
    ledger.issue(db, fabric, 8)
    assert fabric.health == "CRITICAL"
