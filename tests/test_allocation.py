from datetime import datetime
from decimal import Decimal

import pytest

from app.core.errors import NotFound, ValidationFailed
from app.db.models.planning import ProductionPlan, PLAN_PENDING_STRATEGY
from app.db.models.sales import SalesOrder, ORDER_PRODUCTION_QUEUED, ORDER_READY_DISPATCH
from app.events.outbox import OutboxEvent
from services.inventory import ledger
from services.sales.allocation import create_order, recompute_allocation, resolve_priority


def _line(order):
    (line,) = order.lines
    return line


def _balanced(order):
    ln = _line(order)
    return ln.qty_allocated + ln.qty_to_produce == ln.qty_ordered - ln.qty_dispatched


@pytest.fixture
def stocked(make_product):
    def _make(qty, code="TEE-STK"):
        return make_product(code, stock=qty)

    return _make


def test_order_fully_covered_from_stock(db, staff, stocked):
    tee = stocked(25)

    order, (result,) = create_order(db, "Blue Mart", [{"product_id": tee.code, "qty": 10}], staff, priority="Low")

    assert order.order_number.startswith("ORD-")
    assert order.status == ORDER_READY_DISPATCH
    assert _line(order).qty_allocated == Decimal("10")
    assert _line(order).qty_to_produce == Decimal("0")
    assert result["plans_created"] == []
    assert tee.reserved_qty == Decimal("10")
    assert tee.warehouse_qty == Decimal("15")
    assert tee.on_hand_qty == ledger.lot_total(db, tee)


def test_higher_priority_order_displaces_lower(db, staff, stocked):
    tee = stocked(10)
    low, _ = create_order(db, "Corner Shop", [{"product_id": tee.id, "qty": 10}], staff, priority="Low")
    assert low.status == ORDER_READY_DISPATCH

    high, (result,) = create_order(db, "Big Retail", [{"product_id": tee.id, "qty": 10}], staff, customer_tier="Diamond")

    assert high.priority == "High"
    assert high.status == ORDER_READY_DISPATCH
    assert low.status == ORDER_PRODUCTION_QUEUED
    assert _line(low).qty_allocated == Decimal("0")
    assert _line(low).qty_to_produce == Decimal("10")
    assert result["displaced"] == [low.order_number]
    assert _balanced(low) and _balanced(high)

    assert len(result["plans_created"]) == 1
    plan = db.query(ProductionPlan).filter(ProductionPlan.plan_number == result["plans_created"][0]).one()
    assert plan.order_id == low.id
    assert plan.total_qty_to_make == Decimal("10")
    assert plan.status == PLAN_PENDING_STRATEGY

    events = db.query(OutboxEvent).filter(OutboxEvent.topic == "OrderDisplaced").all()
    assert [e.payload["order"] for e in events] == [low.order_number]
    assert tee.reserved_qty == Decimal("10")
    assert tee.warehouse_qty == Decimal("0")


def test_equal_priority_keeps_older_order_first(db, staff, stocked):
    tee = stocked(5)
    older, _ = create_order(db, "First In", [{"product_id": tee.id, "qty": 5}], staff, priority="Medium")
    older.created_at = datetime(2026, 1, 1, 8, 0)
    db.commit()

    newer, (result,) = create_order(db, "Second In", [{"product_id": tee.id, "qty": 5}], staff, priority="Medium")

    assert _line(older).qty_allocated == Decimal("5")
    assert _line(newer).qty_allocated == Decimal("0")
    assert result["displaced"] == []
    assert len(result["plans_created"]) == 1
    assert newer.status == ORDER_PRODUCTION_QUEUED


def test_partial_cover_then_receipt_tops_up_and_drops_pending_plan(db, staff, stocked):
    tee = stocked(6)
    order, (result,) = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 10}], staff, priority="Medium")
    assert _line(order).qty_allocated == Decimal("6")
    assert _line(order).qty_to_produce == Decimal("4")
    plan = db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).one()
    assert plan.total_qty_to_make == Decimal("4")

    ledger.receive(db, tee, 4, lot_number="FG-RESTOCK")
    out = recompute_allocation(db, tee)
    db.commit()

    assert out["pool"] == Decimal("10")
    assert out["leftover"] == Decimal("0")
    assert order.status == ORDER_READY_DISPATCH
    assert _balanced(order)
    assert db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).count() == 0


def test_waterfall_keeps_stock_conserved(db, staff, stocked):
    tee = stocked(7)
    for name, prio in (("A", "Low"), ("B", "High"), ("C", "Medium")):
        create_order(db, name, [{"product_id": tee.id, "qty": 4}], staff, priority=prio)

    orders = {o.customer_name: o for o in db.query(SalesOrder).all()}
    assert _line(orders["B"]).qty_allocated == Decimal("4")
    assert _line(orders["C"]).qty_allocated == Decimal("3")
    assert _line(orders["A"]).qty_allocated == Decimal("0")
    assert all(_balanced(o) for o in orders.values())
    assert tee.reserved_qty + tee.warehouse_qty == ledger.lot_total(db, tee) == Decimal("7")


@pytest.mark.parametrize(
    "priority,tier,expected",
    [
        (None, "Diamond", "High"),
        (None, "Gold", "Medium"),
        (None, "Silver", "Low"),
        (None, None, "Low"),
        ("Low", "Diamond", "Low"),
    ],
)
def test_priority_from_tier(priority, tier, expected):
    assert resolve_priority(priority, tier) == expected


def test_order_input_is_validated(db, staff, stocked):
    tee = stocked(1)
    with pytest.raises(ValidationFailed):
        resolve_priority("Urgent")
    with pytest.raises(ValidationFailed):
        create_order(db, "Blue Mart", [], staff)
    with pytest.raises(ValidationFailed):
        create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 0}], staff)
    with pytest.raises(NotFound):
        create_order(db, "Blue Mart", [{"product_id": "nope", "qty": 1}], staff)
    assert db.query(SalesOrder).count() == 0
