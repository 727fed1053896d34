from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Actor, get_actor
from app.db.session import get_db
from app.db.models.inventory import Product
from services.planning.service import (
    confirm_manual_strategy,
    confirm_strategy,
    list_pending_plans,
    plan_ceiling,
)

router = APIRouter(prefix="/planning", tags=["planning"])


class RoutingStage(BaseModel):
    type: str = "In-House"  # In-House|Job Work
    vendor_name: str | None = None


class SplitIn(BaseModel):
    mode: str = Field(..., max_length=32)  # Manufacture|Job Work|Buy
    qty: float
    vendor_id: str | None = None
    unit_cost: float | None = None
    routing: dict[str, RoutingStage] | None = None


class StrategyIn(BaseModel):
    splits: list[SplitIn]


class ManualStrategyIn(BaseModel):
    product_id: str
    total_qty: float = Field(..., gt=0)
    splits: list[SplitIn]


def _splits(payload: list[SplitIn]) -> list[dict]:
    return [s.model_dump(exclude_none=True) for s in payload]


def _plan_out(db: Session, p) -> dict:
    product = db.query(Product).filter(Product.id == p.product_id).first()
    return {
        "id": p.id,
        "plan_number": p.plan_number,
        "order_id": p.order_id,
        "product": product.code if product else None,
        "total_qty_to_make": float(p.total_qty_to_make),
        "planned_qty": float(p.planned_qty),
        "dispatched_qty": float(p.dispatched_qty),
        "produced_qty": float(p.produced_qty),
        "ceiling": float(plan_ceiling(p, product)) if product else 0.0,
        "status": p.status,
        "created_at": p.created_at,
    }


@router.get("/health")
def health():
    return {"ok": True, "service": "planning"}


@router.get("/plans/pending")
def pending_plans(db: Session = Depends(get_db), limit: int = 200):
    return [_plan_out(db, p) for p in list_pending_plans(db, limit=limit)]


@router.post("/plans/{plan_id}/strategy")
def post_strategy(plan_id: str, payload: StrategyIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = confirm_strategy(db, plan_id, _splits(payload.splits), actor)
    return {**out, "planned_qty": float(out["planned_qty"])}


@router.post("/manual")
def post_manual_strategy(payload: ManualStrategyIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = confirm_manual_strategy(db, payload.product_id, payload.total_qty, _splits(payload.splits), actor)
    return {**out, "planned_qty": float(out["planned_qty"])}
