from decimal import Decimal

import pytest

from app.core.errors import ValidationFailed
from app.db.models.planning import ProductionPlan, PLAN_COMPLETED, PLAN_PENDING_STRATEGY, PLAN_SCHEDULED
from app.db.models.sales import SalesDispatch, ORDER_DISPATCHED, ORDER_PARTIALLY_DISPATCHED
from app.events.outbox import OutboxEvent
from services.inventory import ledger
from services.mes import state_machine as sm
from services.planning.service import confirm_strategy, list_pending_plans
from services.purchasing.service import receive_purchase_line
from services.sales.allocation import create_order, recompute_allocation
from services.sales.dispatch import dispatch_order, get_order


@pytest.fixture
def ready_order(db, staff, make_product):
    tee = make_product("TEE-DSP", stock=30)
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 20}], staff, priority="High")
    return order, tee


def test_full_dispatch_ships_reserved_stock(db, staff, ready_order):
    order, tee = ready_order

    out = dispatch_order(db, order.order_number, None, staff, transport={"vehicle": "MH-12-AB-1234"})

    assert out["status"] == ORDER_DISPATCHED
    (item,) = out["items"]
    assert Decimal(item["qty"]) == Decimal("20")
    assert [(p["lot_number"], Decimal(p["qty"])) for p in item["lots"]] == [("OPEN-TEE-DSP", Decimal("20"))]
    line = order.lines[0]
    assert (line.qty_allocated, line.qty_dispatched) == (Decimal("0"), Decimal("20"))
    assert order.dispatched_at is not None
    assert tee.reserved_qty == Decimal("0")
    assert tee.warehouse_qty == Decimal("10")
    assert ledger.lot_total(db, tee) == Decimal("10")

    record = db.query(SalesDispatch).filter(SalesDispatch.order_id == order.id).one()
    assert record.transport == {"vehicle": "MH-12-AB-1234"}
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "OrderDispatched").count() == 1


def test_partial_dispatch_keeps_the_rest_allocated(db, staff, ready_order):
    order, tee = ready_order

    out = dispatch_order(db, order.id, [{"product_id": tee.id, "qty": 8}], staff)

    assert out["status"] == ORDER_PARTIALLY_DISPATCHED
    line = get_order(db, order.order_number).lines[0]
    assert line.qty_allocated == Decimal("12")
    assert line.qty_dispatched == Decimal("8")
    assert line.qty_allocated + line.qty_to_produce == line.qty_ordered - line.qty_dispatched
    assert tee.reserved_qty == Decimal("12")

    out = dispatch_order(db, order.id, [{"line_id": line.id, "qty": 12}], staff)
    assert out["status"] == ORDER_DISPATCHED


def test_partially_dispatched_order_survives_a_waterfall(db, staff, ready_order):
    order, tee = ready_order
    dispatch_order(db, order.id, [{"product_id": tee.id, "qty": 5}], staff)

    recompute_allocation(db, tee)
    db.commit()

    line = order.lines[0]
    assert line.qty_allocated == Decimal("15")
    assert line.qty_to_produce == Decimal("0")
    assert tee.reserved_qty == Decimal("15")


def test_cannot_ship_more_than_allocated(db, staff, make_product):
    tee = make_product("TEE-SHORT", stock=4)
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 10}], staff)

    with pytest.raises(ValidationFailed):
        dispatch_order(db, order.id, [{"product_id": tee.id, "qty": 5}], staff)

    line = get_order(db, order.id).lines[0]
    assert line.qty_allocated == Decimal("4")
    assert line.qty_dispatched == Decimal("0")
    assert tee.reserved_qty == Decimal("4")
    assert db.query(SalesDispatch).count() == 0


def test_closed_or_unrelated_items_are_refused(db, staff, ready_order, make_product):
    order, _ = ready_order
    other = make_product("CAP-RED", stock=5)
    with pytest.raises(ValidationFailed):
        dispatch_order(db, order.id, [{"product_id": other.id, "qty": 1}], staff)

    dispatch_order(db, order.id, None, staff)
    with pytest.raises(ValidationFailed):
        dispatch_order(db, order.id, None, staff)


def test_shipping_stock_on_hand_leaves_the_shortfall_plan_open(db, staff, make_product):
    tee = make_product("TEE-GAP", stock=6)
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 10}], staff, priority="Medium")
    plan = db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).one()

    dispatch_order(db, order.id, None, staff)

    db.refresh(plan)
    assert plan.status == PLAN_PENDING_STRATEGY
    assert plan.dispatched_qty == Decimal("0")
    assert order.lines[0].qty_to_produce == Decimal("4")
    assert [p.plan_number for p in list_pending_plans(db)] == [plan.plan_number]


def test_scheduled_plan_with_open_jobs_survives_a_stock_dispatch(db, staff, tee):
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 10}], staff, priority="Medium")
    plan = db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).one()
    confirm_strategy(db, plan.id, [{"mode": "Buy", "qty": 10}], staff)

    ledger.receive(db, tee, 10, lot_number="FG-RETURNED")
    recompute_allocation(db, tee)
    db.commit()
    dispatch_order(db, order.id, None, staff)

    db.refresh(plan)
    assert plan.status == PLAN_SCHEDULED
    assert plan.dispatched_qty == Decimal("0")


def test_produced_units_are_credited_to_their_plan(db, staff, tee, make_vendor):
    trader = make_vendor("Tee Traders", category="Trading")
    order, _ = create_order(db, "Blue Mart", [{"product_id": tee.id, "qty": 12}], staff, priority="High")
    plan = db.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).one()
    (job_number,) = confirm_strategy(db, plan.id, [{"mode": "Buy", "qty": 12}], staff)["jobs"]
    po_number = sm.raise_trading_po(db, job_number, trader.id, 80, staff)["po_number"]
    receive_purchase_line(db, po_number, 1, staff, qty=12, lot_number="FG-TR-1")

    dispatch_order(db, order.id, None, staff)

    db.refresh(plan)
    assert plan.produced_qty == Decimal("12")
    assert plan.dispatched_qty == Decimal("12")
    assert plan.status == PLAN_COMPLETED
