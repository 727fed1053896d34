from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import NotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.inventory import Product
from app.db.models.mes_exec import Job, TERMINAL_STATUSES
from app.db.models.planning import ProductionPlan, PLAN_COMPLETED, PLAN_FULFILLED_BY_STOCK
from app.db.models.sales import (
    SalesDispatch,
    SalesOrder,
    ORDER_DISPATCHED,
    ORDER_PARTIALLY_DISPATCHED,
    OPEN_ORDER_STATUSES,
)
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def get_order(db: Session, order_ref: str, *, lock: bool = False) -> SalesOrder:
    q = db.query(SalesOrder).filter((SalesOrder.id == order_ref) | (SalesOrder.order_number == order_ref))
    if lock:
        q = q.with_for_update()
    order = q.first()
    if not order:
        raise NotFound("Order not found", order=order_ref)
    return order


def _credit_plans(db: Session, order: SalesOrder, product_id: str, qty: Decimal) -> None:
    """Count shipped stock against the order's plans for the product, oldest first.

    A plan is only credited for units it has produced; stock that was already
    in the warehouse never counts toward a plan's shortfall.
    """
    plans = (
        db.query(ProductionPlan)
        .filter(ProductionPlan.order_id == order.id, ProductionPlan.product_id == product_id)
        .order_by(ProductionPlan.created_at.asc())
        .all()
    )
    left = qty
    for plan in plans:
        if left <= 0:
            break
        total = _dec(plan.total_qty_to_make)
        room = max(ZERO, min(_dec(plan.produced_qty), total) - _dec(plan.dispatched_qty))
        take = min(room, left)
        if take <= 0:
            continue
        plan.dispatched_qty = _dec(plan.dispatched_qty) + take
        left -= take
        if (
            plan.status != PLAN_COMPLETED
            and _dec(plan.produced_qty) >= total
            and plan.dispatched_qty >= total
            and not db.query(Job).filter(Job.plan_id == plan.id, Job.status.not_in(TERMINAL_STATUSES)).count()
        ):
            plan.status = PLAN_FULFILLED_BY_STOCK


def _resolve_items(order: SalesOrder, items: list[dict] | None) -> list[tuple]:
    """Pair each requested item with its order line. No items means ship everything allocated."""
    if not items:
        return [(ln, _dec(ln.qty_allocated)) for ln in order.lines if _dec(ln.qty_allocated) > 0]

    by_key = {}
    for ln in order.lines:
        by_key[ln.id] = ln
        by_key.setdefault(ln.product_id, ln)
    pairs = []
    for it in items:
        ref = it.get("line_id") or it.get("product_id")
        line = by_key.get(ref)
        if line is None:
            raise ValidationFailed("Item is not on this order", item=ref, order=order.order_number)
        qty = _dec(it.get("qty"))
        if qty <= 0:
            raise ValidationFailed("Dispatch quantity must be positive", item=ref)
        pairs.append((line, qty))
    return pairs


def dispatch_order(db: Session, order_ref: str, items: list[dict] | None, actor: Actor, transport: dict | None = None) -> dict:
    """Ship allocated stock for an order.

    Only allocated quantity can leave; each line's shipment is FIFO-issued out
    of the product's reserved stock.
    """
    with atomic(db):
        order = get_order(db, order_ref, lock=True)
        if order.status not in OPEN_ORDER_STATUSES:
            raise ValidationFailed(f"Order {order.order_number} is {order.status}", order=order.order_number)

        pairs = _resolve_items(order, items)
        if not pairs:
            raise ValidationFailed("Nothing allocated to dispatch", order=order.order_number)

        wanted: dict[str, Decimal] = {}
        for line, qty in pairs:
            wanted[line.id] = wanted.get(line.id, ZERO) + qty
        for line, _ in pairs:
            if wanted[line.id] > _dec(line.qty_allocated):
                raise ValidationFailed(
                    f"Cannot ship {wanted[line.id]}: only {line.qty_allocated} allocated",
                    order=order.order_number,
                    line=line.line_number,
                )

        shipped = []
        for line, qty in pairs:
            product = db.query(Product).filter(Product.id == line.product_id).with_for_update().first()
            lots = ledger.issue(db, product, qty, from_reserved=True)
            line.qty_allocated = _dec(line.qty_allocated) - qty
            line.qty_dispatched = _dec(line.qty_dispatched) + qty
            _credit_plans(db, order, product.id, qty)
            shipped.append({"line_id": line.id, "product": product.code, "qty": str(qty), "lots": [
                {"lot_number": p["lot_number"], "qty": str(p["qty"])} for p in lots
            ]})

        if all(_dec(ln.qty_dispatched) >= _dec(ln.qty_ordered) for ln in order.lines):
            order.status = ORDER_DISPATCHED
        else:
            order.status = ORDER_PARTIALLY_DISPATCHED
        order.dispatched_at = datetime.now(timezone.utc)

        record = SalesDispatch(order_id=order.id, items=shipped, transport=transport or {}, dispatched_by=actor.name)
        db.add(record)
        publish(db, "OrderDispatched", {"order": order.order_number, "status": order.status, "items": shipped})
        audit(db, actor=actor.name, actor_role=actor.role, action="sales.dispatch", entity_type="sales_order",
              entity_id=order.order_number, payload={"items": shipped, "transport": transport or {}})
        logger.info("order %s dispatched (%d line(s)), now %s", order.order_number, len(shipped), order.status)

    return {"order": order.order_number, "status": order.status, "items": shipped}
