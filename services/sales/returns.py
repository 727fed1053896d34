"""Customer returns.

A return is held at QC_PENDING until an admin looks at the goods. Approval
posts everything returned as one ``LOT-RMA-...`` finished lot per product and
re-runs the waterfall, since returned stock can fill waiting orders.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import Forbidden, InvalidTransition, NotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.common import short_ref
from app.db.models.inventory import Product
from app.db.models.sales import (
    SalesOrder,
    SalesReturn,
    SalesReturnLine,
    ORDER_DISPATCHED,
    ORDER_PARTIALLY_DISPATCHED,
    RETURN_APPROVED,
    RETURN_CONDITIONS,
    RETURN_QC_PENDING,
    RETURN_REJECTED,
)
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.sales.allocation import recompute_allocation
from services.sales.dispatch import get_order

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

RETURNABLE_STATUSES = (ORDER_DISPATCHED, ORDER_PARTIALLY_DISPATCHED)


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def get_return(db: Session, return_ref: str, *, lock: bool = False) -> SalesReturn:
    q = db.query(SalesReturn).filter((SalesReturn.id == return_ref) | (SalesReturn.return_number == return_ref))
    if lock:
        q = q.with_for_update()
    ret = q.first()
    if not ret:
        raise NotFound("Return not found", return_ref=return_ref)
    return ret


def search_returnable_orders(db: Session, query: str, limit: int = 10) -> list[SalesOrder]:
    """Shipped orders matching an order number or customer name."""
    if not query:
        return []
    pattern = f"%{query}%"
    return (
        db.query(SalesOrder)
        .filter(
            SalesOrder.status.in_(RETURNABLE_STATUSES),
            SalesOrder.order_number.ilike(pattern) | SalesOrder.customer_name.ilike(pattern),
        )
        .order_by(SalesOrder.created_at.desc())
        .limit(limit)
        .all()
    )


def _already_returned(db: Session, order: SalesOrder, product_id: str) -> Decimal:
    rows = (
        db.query(SalesReturnLine.qty)
        .join(SalesReturn, SalesReturnLine.return_id == SalesReturn.id)
        .filter(
            SalesReturn.order_id == order.id,
            SalesReturn.status != RETURN_REJECTED,
            SalesReturnLine.product_id == product_id,
        )
        .all()
    )
    return sum((_dec(r[0]) for r in rows), ZERO)


def create_return(
    db: Session,
    items: list[dict],
    actor: Actor,
    *,
    order_ref: str | None = None,
    customer_name: str | None = None,
) -> SalesReturn:
    """Book a return request. Nothing reaches stock until it is approved.

    Against an order, each product may come back at most up to what was
    shipped on it. Without an order it is a direct return and
    ``customer_name`` is required.
    """
    if not items:
        raise ValidationFailed("A return needs at least one item")

    with atomic(db):
        order = None
        if order_ref:
            order = get_order(db, order_ref)
            if order.status not in RETURNABLE_STATUSES:
                raise ValidationFailed(f"Order {order.order_number} has not shipped ({order.status})",
                                       order=order.order_number)
            customer_name = customer_name or order.customer_name
        if not customer_name:
            raise ValidationFailed("Customer name is required for a direct return")

        ret = SalesReturn(
            return_number=short_ref("RMA"),
            order_id=order.id if order else None,
            order_reference=order.order_number if order else short_ref("DIR-RET"),
            customer_name=customer_name,
            status=RETURN_QC_PENDING,
            created_by=actor.name,
        )
        asked: dict[str, Decimal] = {}
        for it in items:
            ref = it.get("product_id")
            product = db.query(Product).filter((Product.id == ref) | (Product.code == ref)).first()
            if not product:
                raise NotFound("Product not found", product_id=ref)
            qty = _dec(it.get("qty"))
            if qty <= 0:
                raise ValidationFailed("Return quantity must be positive", product=product.code)
            condition = it.get("condition") or "Good"
            if condition not in RETURN_CONDITIONS:
                raise ValidationFailed(f"Unknown condition {condition!r}", product=product.code)
            asked[product.id] = asked.get(product.id, ZERO) + qty
            ret.lines.append(
                SalesReturnLine(
                    product_id=product.id,
                    qty=qty,
                    reason=it.get("reason") or "Direct Return",
                    condition=condition,
                )
            )

        if order:
            for product_id, qty in asked.items():
                shipped = sum((_dec(ln.qty_dispatched) for ln in order.lines if ln.product_id == product_id), ZERO)
                room = shipped - _already_returned(db, order, product_id)
                if qty > room:
                    raise ValidationFailed(
                        f"Cannot return {qty}: only {max(room, ZERO)} shipped and not yet returned",
                        order=order.order_number,
                        product_id=product_id,
                    )

        db.add(ret)
        db.flush()
        audit(db, actor=actor.name, actor_role=actor.role, action="sales.create_return", entity_type="sales_return",
              entity_id=ret.return_number, payload={"order": ret.order_reference, "lines": len(items)})
        logger.info("return %s booked for %s, held for QC", ret.return_number, ret.order_reference)
    return ret


def review_return(db: Session, return_ref: str, decision: str, actor: Actor, notes: str | None = None) -> dict:
    """Admin decision on a held return: approve posts the goods, reject closes it."""
    if not actor.is_admin:
        raise Forbidden("Only an admin or manager can review a return")
    decision = (decision or "").strip().lower()
    if decision not in ("approve", "reject"):
        raise ValidationFailed(f"Unknown return decision {decision!r}")

    waterfall = []
    with atomic(db):
        ret = get_return(db, return_ref, lock=True)
        if ret.status != RETURN_QC_PENDING:
            raise InvalidTransition(f"Return {ret.return_number} is already {ret.status}",
                                    return_number=ret.return_number)

        ret.admin_notes = notes
        ret.processed_by = actor.name
        ret.processed_at = datetime.now(timezone.utc)

        if decision == "reject":
            ret.status = RETURN_REJECTED
        else:
            lot_number = f"LOT-{ret.return_number}"
            per_product: dict[str, Decimal] = {}
            for ln in ret.lines:
                per_product[ln.product_id] = per_product.get(ln.product_id, ZERO) + _dec(ln.qty)
            for product_id, qty in per_product.items():
                product = db.query(Product).filter(Product.id == product_id).with_for_update().first()
                ledger.receive(db, product, qty, lot_number=lot_number, meta={"return": ret.return_number})
                waterfall.append(recompute_allocation(db, product))
            ret.status = RETURN_APPROVED
            ret.lot_number = lot_number
            publish(db, "ReturnApproved", {
                "return": ret.return_number,
                "lot_number": lot_number,
                "items": {pid: qty for pid, qty in per_product.items()},
            })

        audit(db, actor=actor.name, actor_role=actor.role, action=f"sales.return_{decision}",
              entity_type="sales_return", entity_id=ret.return_number, payload={"notes": notes})
        logger.info("return %s %s by %s", ret.return_number, ret.status, actor.name)

    return {"return": ret.return_number, "status": ret.status, "lot_number": ret.lot_number, "waterfall": waterfall}


def return_history(db: Session, status: str | None = None, limit: int = 200) -> list[SalesReturn]:
    q = db.query(SalesReturn)
    if status:
        q = q.filter(SalesReturn.status == status)
    return q.order_by(SalesReturn.created_at.desc()).limit(limit).all()
