from __future__ import annotations
from decimal import Decimal
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import NotFound, ValidationFailed
from app.core.security import Actor, get_actor, require_admin
from app.db.session import get_db, atomic
from app.db.models.common import short_ref
from app.db.models.purchasing import Vendor, PurchaseOrder
from services.purchasing.orders import create_purchase_order, get_vendor
from services.purchasing import service

router = APIRouter(prefix="/purchasing", tags=["purchasing"])


class VendorIn(BaseModel):
    vendor_name: str = Field(..., min_length=1, max_length=256)
    vendor_code: str | None = None
    category: str = "Material Supplier"  # Material Supplier|Job Worker|Full Service Factory|Trading


class POLineIn(BaseModel):
    item_type: str  # Raw Material|Finished Good
    item_id: str
    qty: float = Field(..., gt=0)
    unit_price: float = Field(0, ge=0)


class POIn(BaseModel):
    vendor_id: str
    lines: list[POLineIn]
    job_id: str | None = None


class Breakdown(BaseModel):
    boxes: int = Field(0, ge=0)
    per_box: float = Field(0, ge=0)
    loose: float = Field(0, ge=0)


class ReceiveIn(BaseModel):
    qty: float | None = Field(default=None, gt=0)
    breakdown: Breakdown | None = None
    mode: str = "direct"  # direct|qc
    sample_size: float | None = Field(default=None, gt=0)
    rejected_qty: float = Field(0, ge=0)
    lot_number: str | None = Field(default=None, max_length=64)
    bill_number: str | None = Field(default=None, max_length=64)
    discount_percent: float = Field(0, ge=0, le=100)
    tax_percent: float | None = Field(default=None, ge=0)
    notes: str | None = None


class ReviewIn(BaseModel):
    decision: str  # approve|reject
    notes: str | None = None


class DirectItemIn(BaseModel):
    item_type: str
    item_id: str
    qty: float = Field(..., gt=0)
    unit_price: float = Field(0, ge=0)
    ordered_qty: float | None = Field(default=None, gt=0)
    lot_number: str | None = Field(default=None, max_length=64)
    bill_number: str | None = None


class DirectEntryIn(BaseModel):
    vendor_id: str
    items: list[DirectItemIn]


def _po_out(po: PurchaseOrder) -> dict:
    return {
        "id": po.id,
        "po_number": po.po_number,
        "vendor_id": po.vendor_id,
        "status": po.status,
        "is_direct_entry": po.is_direct_entry,
        "total_amount": float(po.total_amount),
        "lines": [
            {
                "id": ln.id,
                "line_number": ln.line_number,
                "item_type": ln.item_type,
                "item_id": ln.item_id,
                "item_name": ln.item_name,
                "ordered_qty": float(ln.ordered_qty),
                "received_qty": float(ln.received_qty),
                "unit_price": float(ln.unit_price),
                "status": ln.status,
                "job_id": ln.job_id,
            }
            for ln in po.lines
        ],
    }


def _floats(d: dict) -> dict:
    return {k: (float(v) if isinstance(v, Decimal) else v) for k, v in d.items()}


@router.get("/health")
def health():
    return {"ok": True, "service": "purchasing"}


@router.get("/vendors")
def list_vendors(db: Session = Depends(get_db), limit: int = 200):
    vs = db.query(Vendor).order_by(Vendor.vendor_name.asc()).limit(limit).all()
    return [
        {"id": v.id, "code": v.vendor_code, "name": v.vendor_name, "category": v.category, "balance": float(v.balance)}
        for v in vs
    ]


@router.post("/vendors")
def create_vendor(payload: VendorIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    with atomic(db):
        if db.query(Vendor).filter(Vendor.vendor_name == payload.vendor_name).first():
            raise ValidationFailed("Vendor name already exists", vendor_name=payload.vendor_name)
        v = Vendor(
            vendor_code=payload.vendor_code or short_ref("VEN"),
            vendor_name=payload.vendor_name,
            category=payload.category,
            meta={},
        )
        db.add(v)
        db.flush()
        audit(db, actor=actor.name, actor_role=actor.role, action="purchasing.create_vendor", entity_type="vendor", entity_id=v.id)
    return {"id": v.id, "code": v.vendor_code}


@router.get("/purchase-orders")
def list_purchase_orders(status: str | None = None, db: Session = Depends(get_db), limit: int = 200):
    q = db.query(PurchaseOrder)
    if status:
        q = q.filter(PurchaseOrder.status == status)
    return [_po_out(po) for po in q.order_by(PurchaseOrder.created_at.desc()).limit(limit).all()]


@router.post("/purchase-orders")
def create_po(payload: POIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    with atomic(db):
        vendor = get_vendor(db, payload.vendor_id)
        po = create_purchase_order(db, vendor, [ln.model_dump() for ln in payload.lines],
                                   created_by=actor.name, job_id=payload.job_id)
        audit(db, actor=actor.name, actor_role=actor.role, action="purchasing.create_po", entity_type="purchase_order",
              entity_id=po.po_number, payload={"total": po.total_amount})
    return _po_out(po)


@router.get("/purchase-orders/{po_ref}")
def get_purchase_order(po_ref: str, db: Session = Depends(get_db)):
    po = db.query(PurchaseOrder).filter((PurchaseOrder.id == po_ref) | (PurchaseOrder.po_number == po_ref)).first()
    if not po:
        raise NotFound("Purchase order not found", po=po_ref)
    return _po_out(po)


@router.post("/purchase-orders/{po_ref}/lines/{line_ref}/receive")
def receive_line(po_ref: str, line_ref: str, payload: ReceiveIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = service.receive_purchase_line(
        db,
        po_ref,
        line_ref,
        actor,
        qty=payload.qty,
        breakdown=payload.breakdown.model_dump() if payload.breakdown else None,
        mode=payload.mode,
        sample_size=payload.sample_size,
        rejected_qty=payload.rejected_qty,
        lot_number=payload.lot_number,
        bill_number=payload.bill_number,
        discount_percent=payload.discount_percent,
        tax_percent=payload.tax_percent,
        notes=payload.notes,
    )
    return _floats(out)


@router.get("/qc/held")
def held_receipts(db: Session = Depends(get_db), limit: int = 200):
    return [
        {
            "id": r.id,
            "po_number": r.line.purchase_order.po_number,
            "line": r.line.line_number,
            "item_name": r.line.item_name,
            "qty": float(r.qty),
            "sample_size": float(r.sample_size),
            "rejected_qty": float(r.rejected_qty),
            "lot_number": r.lot_number,
            "received_by": r.received_by,
            "received_at": r.created_at,
        }
        for r in service.held_receipts(db, limit=limit)
    ]


@router.post("/purchase-orders/{po_ref}/lines/{line_ref}/review")
def review_line(po_ref: str, line_ref: str, payload: ReviewIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    return _floats(service.review_purchase_qc(db, po_ref, line_ref, payload.decision, actor, notes=payload.notes))


@router.post("/direct-entry")
def post_direct_entry(payload: DirectEntryIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = service.direct_entry(db, payload.vendor_id, [it.model_dump(exclude_none=True) for it in payload.items], actor)
    return {**out, "receipts": [_floats(r) for r in out["receipts"]]}


@router.get("/surplus")
def surplus(db: Session = Depends(get_db)):
    return [_floats(row) for row in service.surplus_report(db)]
