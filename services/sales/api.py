from __future__ import annotations
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.core.security import Actor, get_actor, require_admin
from app.db.session import get_db, atomic
from app.db.models.inventory import Product
from app.db.models.sales import SalesOrder, SalesReturn
from services.sales.allocation import create_order, recompute_allocation
from services.sales.dispatch import dispatch_order, get_order
from services.sales import returns

router = APIRouter(prefix="/sales", tags=["sales"])


class OrderLineIn(BaseModel):
    product_id: str
    qty: float = Field(..., gt=0)
    unit_price: float = Field(0, ge=0)


class OrderIn(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=256)
    priority: str | None = None  # High|Medium|Low
    customer_tier: str | None = None  # Diamond|Gold|...
    lines: list[OrderLineIn]


class DispatchItemIn(BaseModel):
    line_id: str | None = None
    product_id: str | None = None
    qty: float = Field(..., gt=0)


class DispatchIn(BaseModel):
    items: list[DispatchItemIn] = []
    transport: dict = {}


class ReturnItemIn(BaseModel):
    product_id: str
    qty: float = Field(..., gt=0)
    reason: str | None = None
    condition: str = "Good"  # Good|Damaged|Defective


class ReturnIn(BaseModel):
    order_ref: str | None = None  # omit for a direct return
    customer_name: str | None = None
    items: list[ReturnItemIn]


class ReviewReturnIn(BaseModel):
    decision: str  # approve|reject
    notes: str | None = None


def _order_out(o: SalesOrder) -> dict:
    return {
        "id": o.id,
        "order_number": o.order_number,
        "customer_name": o.customer_name,
        "priority": o.priority,
        "status": o.status,
        "created_at": o.created_at,
        "lines": [
            {
                "id": ln.id,
                "product_id": ln.product_id,
                "qty_ordered": float(ln.qty_ordered),
                "qty_allocated": float(ln.qty_allocated),
                "qty_to_produce": float(ln.qty_to_produce),
                "qty_dispatched": float(ln.qty_dispatched),
            }
            for ln in o.lines
        ],
    }


def _waterfall_out(r: dict) -> dict:
    return {
        **r,
        "pool": float(r["pool"]),
        "reserved": float(r["reserved"]),
        "leftover": float(r["leftover"]),
        "allocations": [{**a, "allocated": float(a["allocated"])} for a in r["allocations"]],
    }


@router.get("/orders")
def list_orders(status: str | None = None, db: Session = Depends(get_db), limit: int = 200):
    q = db.query(SalesOrder)
    if status:
        q = q.filter(SalesOrder.status == status)
    return [_order_out(o) for o in q.order_by(SalesOrder.created_at.desc()).limit(limit).all()]


@router.get("/orders/{order_ref}")
def read_order(order_ref: str, db: Session = Depends(get_db)):
    return _order_out(get_order(db, order_ref))


@router.post("/orders")
def post_order(payload: OrderIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    order, results = create_order(
        db,
        payload.customer_name,
        [ln.model_dump() for ln in payload.lines],
        actor,
        priority=payload.priority,
        customer_tier=payload.customer_tier,
    )
    return {**_order_out(order), "waterfall": [_waterfall_out(r) for r in results]}


@router.post("/orders/{order_ref}/dispatch")
def post_dispatch(order_ref: str, payload: DispatchIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    items = [it.model_dump(exclude_none=True) for it in payload.items]
    return dispatch_order(db, order_ref, items, actor, transport=payload.transport)


@router.post("/products/{product_id}/reallocate")
def reallocate(product_id: str, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    """Re-run the waterfall by hand, e.g. after a priority change."""
    product = db.query(Product).filter((Product.id == product_id) | (Product.code == product_id)).first()
    if not product:
        raise NotFound("Product not found", product_id=product_id)
    with atomic(db):
        result = recompute_allocation(db, product)
    return _waterfall_out(result)


def _return_out(r: SalesReturn) -> dict:
    return {
        "id": r.id,
        "return_number": r.return_number,
        "order_reference": r.order_reference,
        "customer_name": r.customer_name,
        "status": r.status,
        "lot_number": r.lot_number,
        "admin_notes": r.admin_notes,
        "processed_by": r.processed_by,
        "processed_at": r.processed_at,
        "created_at": r.created_at,
        "items": [
            {"product_id": ln.product_id, "qty": float(ln.qty), "reason": ln.reason, "condition": ln.condition}
            for ln in r.lines
        ],
    }


@router.get("/returns/search")
def search_orders_for_return(query: str = "", db: Session = Depends(get_db)):
    return [_order_out(o) for o in returns.search_returnable_orders(db, query)]


@router.get("/returns")
def list_returns(status: str | None = None, db: Session = Depends(get_db), limit: int = 200):
    return [_return_out(r) for r in returns.return_history(db, status=status, limit=limit)]


@router.post("/returns")
def post_return(payload: ReturnIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    ret = returns.create_return(
        db,
        [it.model_dump(exclude_none=True) for it in payload.items],
        actor,
        order_ref=payload.order_ref,
        customer_name=payload.customer_name,
    )
    return _return_out(ret)


@router.post("/returns/{return_ref}/review")
def review_return(return_ref: str, payload: ReviewReturnIn, db: Session = Depends(get_db),
                  actor: Actor = Depends(require_admin)):
    out = returns.review_return(db, return_ref, payload.decision, actor, notes=payload.notes)
    return {**out, "waterfall": [_waterfall_out(r) for r in out["waterfall"]]}
