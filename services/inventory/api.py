from __future__ import annotations
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.security import Actor, get_actor
from app.db.session import get_db, atomic
from app.db.models.inventory import Material, Product, POOL_SFG
from services.inventory import ledger
from services.sales.allocation import recompute_allocation

router = APIRouter(prefix="/inventory", tags=["inventory"])


class Breakdown(BaseModel):
    boxes: int = Field(0, ge=0)
    per_box: float = Field(0, ge=0)
    loose: float = Field(0, ge=0)


class ReceiveIn(BaseModel):
    lot_number: str = Field(..., max_length=64)
    qty: float | None = Field(default=None, gt=0)
    breakdown: Breakdown | None = None
    added_at: datetime | None = None


def _lot_out(lot) -> dict:
    return {
        "lot_number": lot.lot_number,
        "qty": float(lot.qty),
        "added_at": lot.added_at.isoformat(),
        "job_id": lot.job_id,
        "is_loose": lot.is_loose,
        "box_count": lot.box_count,
    }


def _item(db: Session, kind: str, item_id: str):
    model = {"materials": Material, "products": Product}.get(kind)
    if model is None:
        raise HTTPException(404, "Unknown item kind")
    item = db.query(model).filter((model.id == item_id) | (model.code == item_id)).first()
    if not item:
        raise HTTPException(404, "Item not found")
    return item


@router.get("/materials")
def list_materials(db: Session = Depends(get_db), limit: int = 200):
    qs = db.query(Material).order_by(Material.code.asc()).limit(limit).all()
    return [
        {
            "id": m.id,
            "code": m.code,
            "name": m.name,
            "unit": m.unit,
            "current_qty": float(m.current_qty),
            "stock_at_least": float(m.stock_at_least),
            "health": m.health,
        }
        for m in qs
    ]


@router.get("/products")
def list_products(db: Session = Depends(get_db), limit: int = 200):
    qs = db.query(Product).order_by(Product.code.asc()).limit(limit).all()
    return [
        {
            "id": p.id,
            "code": p.code,
            "sku": p.sku,
            "name": p.name,
            "warehouse_qty": float(p.warehouse_qty),
            "reserved_qty": float(p.reserved_qty),
            "stock_at_least": float(p.stock_at_least),
            "health": p.health,
        }
        for p in qs
    ]


@router.get("/{kind}/{item_id}/lots")
def list_lots(kind: str, item_id: str, db: Session = Depends(get_db)):
    item = _item(db, kind, item_id)
    out = {"code": item.code, "lots": [_lot_out(lot) for lot in ledger.lots_for(db, item)]}
    if isinstance(item, Product):
        out["sfg_lots"] = [_lot_out(lot) for lot in ledger.lots_for(db, item, POOL_SFG)]
    return out


@router.post("/{kind}/{item_id}/receive")
def receive_stock(kind: str, item_id: str, payload: ReceiveIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    """Opening balances and stock found on count; purchases go through /purchasing."""
    item = _item(db, kind, item_id)
    with atomic(db):
        lots = ledger.receive(
            db,
            item,
            payload.qty,
            lot_number=payload.lot_number,
            breakdown=payload.breakdown.model_dump() if payload.breakdown else None,
            added_at=payload.added_at,
        )
        if isinstance(item, Product):
            # New free stock may complete waiting orders.
            recompute_allocation(db, item)
        audit(db, actor=actor.name, actor_role=actor.role, action="inventory.receive", entity_type=kind,
              entity_id=item.id, payload={"lots": [lot.lot_number for lot in lots]})
    return {"code": item.code, "lots": [_lot_out(lot) for lot in lots]}
