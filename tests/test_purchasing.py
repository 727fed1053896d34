from decimal import Decimal

import pytest

from app.core.errors import Forbidden, InvalidTransition, ValidationFailed
from app.db.models.inventory import SurplusLedgerEntry
from app.db.models.mes_exec import STATUS_COMPLETED
from app.db.models.planning import ProductionPlan, PLAN_COMPLETED
from app.db.models.sales import ORDER_READY_DISPATCH
from services.mes import state_machine as sm
from services.planning.service import confirm_strategy
from services.purchasing.orders import create_purchase_order
from services.purchasing.service import (
    held_receipts,
    direct_entry,
    receipt_value,
    receive_purchase_line,
    review_purchase_qc,
    surplus_report,
)
from services.sales.allocation import create_order


@pytest.fixture
def mill(make_vendor):
    return make_vendor("Loom Mills")


@pytest.fixture
def fabric_po(db, mill, fabric):
    def _open(qty, unit_price):
        po = create_purchase_order(
            db, mill, [{"item_type": "Raw Material", "item_id": fabric.id, "qty": qty, "unit_price": unit_price}],
            created_by="buyer",
        )
        db.commit()
        return po

    return _open


@pytest.mark.parametrize(
    "qty,price,discount,tax,expected",
    [
        (10, 60, 0, 18, "708.00"),
        (10, 60, 10, 18, "637.20"),
        (3, "19.99", 0, 0, "59.97"),
        (1, "0.333", 0, 18, "0.39"),
    ],
)
def test_receipt_value(qty, price, discount, tax, expected):
    assert receipt_value(qty, price, discount, tax) == Decimal(expected)


def test_default_tax_applies_when_none_given():
    assert receipt_value(10, 60) == Decimal("708.00")


def test_partial_then_complete_receipt_records_surplus(db, staff, mill, fabric, fabric_po):
    po = fabric_po(100, 50)

    first = receive_purchase_line(db, po.po_number, 1, staff, qty=40, lot_number="GRN-1", bill_number="B-77")
    assert first["line_status"] == "Partial"
    assert first["po_status"] == "Partial"
    assert first["value"] == Decimal("2360.00")
    assert fabric.current_qty == Decimal("1040")

    second = receive_purchase_line(db, po.po_number, 1, staff, qty=70, lot_number="GRN-2")
    assert second["line_status"] == "Completed"
    assert second["po_status"] == "Completed"
    assert fabric.current_qty == Decimal("1110")
    assert mill.balance == Decimal("2360.00") + Decimal("4130.00")

    (entry,) = db.query(SurplusLedgerEntry).all()
    assert (entry.lot_number, entry.surplus_qty) == ("GRN-2", Decimal("10"))
    (row,) = surplus_report(db)
    assert row["remaining_surplus"] == Decimal("10")
    assert row["item_type"] == "Raw Material"

    with pytest.raises(InvalidTransition):
        receive_purchase_line(db, po.po_number, 1, staff, qty=1)


def test_surplus_shrinks_as_the_lot_is_consumed(db, staff, fabric, fabric_po, open_job):
    po = fabric_po(10, 50)
    receive_purchase_line(db, po.po_number, 1, staff, qty=25, lot_number="GRN-OVER")

    # 1020 needed: the 1000 old metres go first, then 20 come out of GRN-OVER
    sm.issue_materials(db, open_job(qty=680), staff)

    (row,) = surplus_report(db)
    assert row["original_surplus"] == Decimal("15")
    assert row["current_in_lot"] == Decimal("5")
    assert row["remaining_surplus"] == Decimal("5")


def test_box_breakdown_receipt(db, staff, fabric, fabric_po):
    po = fabric_po(34, 50)

    out = receive_purchase_line(
        db, po.id, 1, staff, breakdown={"boxes": 3, "per_box": 10, "loose": 4}, lot_number="GRN-BX"
    )

    assert out["posted_qty"] == Decimal("34")
    assert out["line_status"] == "Completed"
    assert fabric.current_qty == Decimal("1034")


def test_inspection_hold_then_approval_posts_the_good_part(db, staff, admin, mill, fabric, fabric_po):
    po = fabric_po(40, 10)

    out = receive_purchase_line(
        db, po.po_number, 1, staff, qty=40, mode="qc", sample_size=10, rejected_qty=3, lot_number="GRN-Q"
    )

    assert out["held"] is True
    assert out["posted_qty"] == Decimal("0")
    assert out["line_status"] == "QC_Review"
    assert out["po_status"] == "QC_Review"
    assert fabric.current_qty == Decimal("1000")
    assert [r.lot_number for r in held_receipts(db)] == ["GRN-Q"]
    with pytest.raises(InvalidTransition):
        receive_purchase_line(db, po.po_number, 1, staff, qty=1)

    with pytest.raises(Forbidden):
        review_purchase_qc(db, po.po_number, 1, "approve", staff)
    review = review_purchase_qc(db, po.po_number, 1, "approve", admin, notes="usable")

    assert review["posted_qty"] == Decimal("37")
    assert review["line_status"] == "Completed"
    assert fabric.current_qty == Decimal("1037")
    assert mill.balance == Decimal("472.00")
    assert held_receipts(db) == []


def test_inspection_below_threshold_posts_immediately(db, staff, fabric, fabric_po):
    po = fabric_po(40, 10)

    out = receive_purchase_line(db, po.po_number, 1, staff, qty=40, mode="qc", sample_size=10, rejected_qty=1)

    assert out["held"] is False
    assert out["posted_qty"] == Decimal("39")
    assert fabric.current_qty == Decimal("1039")


def test_rejected_receipt_posts_nothing(db, staff, admin, mill, fabric, fabric_po):
    po = fabric_po(40, 10)
    receive_purchase_line(db, po.po_number, 1, staff, qty=40, mode="qc", sample_size=10, rejected_qty=5)

    out = review_purchase_qc(db, po.po_number, 1, "reject", admin)

    assert out["line_status"] == "Rejected"
    assert out["po_status"] == "Rejected"
    assert fabric.current_qty == Decimal("1000")
    assert mill.balance == Decimal("0")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"qty": 0},
        {"qty": 10, "mode": "qc", "sample_size": 11},
        {"qty": 10, "mode": "qc", "sample_size": 5, "rejected_qty": 6},
        {"qty": 10, "discount_percent": 120},
        {"qty": 10, "mode": "airdrop"},
    ],
)
def test_bad_receipts_are_refused(db, staff, fabric_po, kwargs):
    po = fabric_po(10, 1)
    with pytest.raises(ValidationFailed):
        receive_purchase_line(db, po.po_number, 1, staff, **kwargs)


def test_direct_entry_books_a_closed_po(db, staff, mill, fabric):
    out = direct_entry(
        db,
        mill.vendor_code,
        [{"item_type": "material", "item_id": fabric.code, "qty": 12, "ordered_qty": 10, "unit_price": 5,
          "lot_number": "DIR-LOT-1"}],
        staff,
    )

    assert out["po_number"].startswith("DIR-")
    assert out["status"] == "Completed"
    assert fabric.current_qty == Decimal("1012")
    assert mill.balance == Decimal("60.00")
    (entry,) = db.query(SurplusLedgerEntry).all()
    assert entry.surplus_qty == Decimal("2")


def test_trading_po_receipt_completes_full_buy_job_and_fills_order(db, staff, tee, make_vendor):
    trader = make_vendor("Tee Traders", category="Trading")
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 12}], staff, priority="High")
    plan = db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).one()
    (job_number,) = confirm_strategy(db, plan.id, [{"mode": "Buy", "qty": 12}], staff)["jobs"]
    po_number = sm.raise_trading_po(db, job_number, trader.id, 80, staff)["po_number"]

    out = receive_purchase_line(db, po_number, 1, staff, qty=12, lot_number="FG-TR-1")

    assert out["line_status"] == "Completed"
    job = sm.get_job(db, job_number)
    assert job.status == STATUS_COMPLETED
    assert job.current_step == sm.QC_COMPLETED
    db.refresh(plan)
    assert plan.produced_qty == Decimal("12")
    assert plan.status == PLAN_COMPLETED
    assert order.status == ORDER_READY_DISPATCH
    assert order.lines[0].qty_allocated == Decimal("12")
    assert tee.reserved_qty == Decimal("12")
    assert trader.balance == Decimal("1132.80")
