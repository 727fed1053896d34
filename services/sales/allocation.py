from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import NotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.common import short_ref
from app.db.models.inventory import Product
from app.db.models.sales import (
    SalesOrder,
    SalesOrderLine,
    OPEN_ORDER_STATUSES,
    ORDER_PRODUCTION_QUEUED,
    ORDER_READY_DISPATCH,
    PRIORITY_WEIGHT,
    TIER_PRIORITY,
)
from app.db.session import atomic
from app.events.bus import publish
from services.inventory.ledger import check_conservation
from services.planning.service import regenerate_plans

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def resolve_priority(priority: str | None = None, customer_tier: str | None = None) -> str:
    if priority:
        if priority not in PRIORITY_WEIGHT:
            raise ValidationFailed(f"Unknown priority {priority!r}")
        return priority
    return TIER_PRIORITY.get(customer_tier or "", "Low")


def _rank_key(order: SalesOrder):
    return (-order.priority_weight, order.created_at, order.order_number)


def recompute_allocation(db: Session, product: Product, trigger_order: SalesOrder | None = None) -> dict:
    """Redistribute a product's finished stock across its open orders.

    All current allocations go back into one pool with the free warehouse
    stock, then orders take from it greedily by priority and age. Runs inside
    the caller's unit of work.
    """
    orders = (
        db.query(SalesOrder)
        .join(SalesOrderLine, SalesOrderLine.order_id == SalesOrder.id)
        .filter(SalesOrderLine.product_id == product.id, SalesOrder.status.in_(OPEN_ORDER_STATUSES))
        .with_for_update()
        .all()
    )
    orders = list({o.id: o for o in orders}.values())
    if trigger_order is not None and trigger_order.id not in {o.id for o in orders}:
        orders.append(trigger_order)

    before: dict[str, Decimal] = {}
    pool = _dec(product.warehouse_qty)
    for order in orders:
        held = ZERO
        for line in order.lines:
            if line.product_id == product.id:
                held += _dec(line.qty_allocated)
                line.qty_allocated = ZERO
        before[order.id] = held
        pool += held

    remaining = pool
    allocations = []
    for order in sorted(orders, key=_rank_key):
        got = ZERO
        for line in order.lines:
            if line.product_id != product.id:
                continue
            need = max(ZERO, _dec(line.qty_ordered) - _dec(line.qty_dispatched))
            take = min(need, remaining)
            line.qty_allocated = take
            line.qty_to_produce = need - take
            remaining -= take
            got += take
        order.status = (
            ORDER_READY_DISPATCH
            if all(_dec(ln.qty_to_produce) <= 0 for ln in order.lines)
            else ORDER_PRODUCTION_QUEUED
        )
        allocations.append({"order": order.order_number, "priority": order.priority, "allocated": got, "status": order.status})

    product.warehouse_qty = remaining
    product.reserved_qty = pool - remaining
    check_conservation(db, product)

    displaced = [
        o for o in orders
        if (trigger_order is None or o.id != trigger_order.id) and sum(
            (_dec(ln.qty_allocated) for ln in o.lines if ln.product_id == product.id), ZERO
        ) < before.get(o.id, ZERO)
    ]
    for order in displaced:
        logger.warning("order %s lost stock of %s to a higher-priority order", order.order_number, product.code)
        publish(
            db,
            "OrderDisplaced",
            {
                "order": order.order_number,
                "product": product.code,
                "by": trigger_order.order_number if trigger_order is not None else None,
            },
        )

    plans = regenerate_plans(db, product, orders)
    logger.info(
        "waterfall %s: pool=%s reserved=%s free=%s orders=%d new_plans=%d",
        product.code, pool, product.reserved_qty, product.warehouse_qty, len(orders), len(plans),
    )
    return {
        "product": product.code,
        "pool": pool,
        "reserved": product.reserved_qty,
        "leftover": remaining,
        "allocations": allocations,
        "displaced": [o.order_number for o in displaced],
        "plans_created": [p.plan_number for p in plans],
    }


def create_order(
    db: Session,
    customer_name: str,
    lines: list[dict],
    actor: Actor,
    *,
    priority: str | None = None,
    customer_tier: str | None = None,
) -> tuple[SalesOrder, list[dict]]:
    """Book an order and run the waterfall for each product on it, in one unit of work."""
    if not customer_name:
        raise ValidationFailed("Customer name is required")
    if not lines:
        raise ValidationFailed("An order needs at least one line")
    prio = resolve_priority(priority, customer_tier)

    with atomic(db):
        order = SalesOrder(
            order_number=short_ref("ORD"),
            customer_name=customer_name,
            customer_tier=customer_tier,
            priority=prio,
            status=ORDER_PRODUCTION_QUEUED,
            created_by=actor.name,
        )
        products: dict[str, Product] = {}
        for n, ln in enumerate(lines, start=1):
            ref = ln.get("product_id")
            product = db.query(Product).filter((Product.id == ref) | (Product.code == ref)).first()
            if not product:
                raise NotFound("Product not found", product_id=ref)
            qty = _dec(ln.get("qty"))
            if qty <= 0:
                raise ValidationFailed("Ordered quantity must be positive", product=product.code)
            order.lines.append(
                SalesOrderLine(
                    line_number=n,
                    product_id=product.id,
                    qty_ordered=qty,
                    qty_allocated=ZERO,
                    qty_to_produce=qty,
                    qty_dispatched=ZERO,
                    unit_price=_dec(ln.get("unit_price")),
                )
            )
            products[product.id] = product
        db.add(order)
        db.flush()

        results = [recompute_allocation(db, p, trigger_order=order) for p in products.values()]
        audit(db, actor=actor.name, actor_role=actor.role, action="sales.create_order", entity_type="sales_order",
              entity_id=order.order_number, payload={"priority": prio, "lines": len(lines)})
        logger.info("order %s booked for %s (%s)", order.order_number, customer_name, prio)
    return order, results
