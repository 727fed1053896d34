from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.errors import NotFound, ValidationFailed
from app.db.models.common import short_ref
from app.db.models.inventory import Material, Product, ITEM_MATERIAL, ITEM_PRODUCT
from app.db.models.purchasing import PurchaseOrder, PurchaseOrderLine, Vendor

LINE_PENDING = "Pending"
LINE_PARTIAL = "Partial"
LINE_COMPLETED = "Completed"
LINE_QC_REVIEW = "QC_Review"
LINE_REJECTED = "Rejected"

_ITEM_TYPES = {
    "material": ITEM_MATERIAL,
    "raw material": ITEM_MATERIAL,
    "product": ITEM_PRODUCT,
    "finished good": ITEM_PRODUCT,
}


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def normalize_item_type(item_type: str | None) -> str:
    t = _ITEM_TYPES.get((item_type or "").strip().lower())
    if not t:
        raise ValidationFailed(f"Unknown item type: {item_type!r}")
    return t


def resolve_item(db: Session, item_type: str, item_id: str) -> Material | Product:
    model = Material if item_type == ITEM_MATERIAL else Product
    item = db.query(model).filter((model.id == item_id) | (model.code == item_id)).first()
    if not item:
        raise NotFound(f"{item_type.title()} not found", item_id=item_id)
    return item


def get_vendor(db: Session, vendor_id: str) -> Vendor:
    vendor = (
        db.query(Vendor)
        .filter((Vendor.id == vendor_id) | (Vendor.vendor_code == vendor_id))
        .first()
    )
    if not vendor:
        raise NotFound("Vendor not found", vendor_id=vendor_id)
    return vendor


def create_purchase_order(
    db: Session,
    vendor: Vendor,
    lines: list[dict],
    *,
    created_by: str | None = None,
    job_id: str | None = None,
    is_direct_entry: bool = False,
    prefix: str = "PO",
) -> PurchaseOrder:
    """Open a PO. Each line is ``{item_type, item_id, qty, unit_price}``."""
    if not lines:
        raise ValidationFailed("A purchase order needs at least one line")

    po = PurchaseOrder(
        po_number=short_ref(prefix),
        vendor_id=vendor.id,
        status=LINE_PENDING,
        is_direct_entry=is_direct_entry,
        created_by=created_by,
        total_amount=Decimal("0"),
    )
    total = Decimal("0")
    for n, ln in enumerate(lines, start=1):
        item_type = normalize_item_type(ln.get("item_type"))
        item = resolve_item(db, item_type, ln.get("item_id"))
        qty = _dec(ln.get("qty"))
        price = _dec(ln.get("unit_price"))
        if qty <= 0:
            raise ValidationFailed("Ordered quantity must be positive", item_code=item.code)
        if price < 0:
            raise ValidationFailed("Unit price cannot be negative", item_code=item.code)
        po.lines.append(
            PurchaseOrderLine(
                line_number=n,
                item_type=item_type,
                item_id=item.id,
                item_name=item.name,
                ordered_qty=qty,
                received_qty=Decimal("0"),
                unit_price=price,
                status=LINE_PENDING,
                job_id=ln.get("job_id") or job_id,
            )
        )
        total += qty * price
    po.total_amount = total
    db.add(po)
    db.flush()
    return po


def refresh_po_status(po: PurchaseOrder) -> str:
    """Header status from its lines: any held -> QC_Review, all closed -> Completed."""
    statuses = [ln.status for ln in po.lines]
    if any(s == LINE_QC_REVIEW for s in statuses):
        po.status = LINE_QC_REVIEW
    elif statuses and all(s == LINE_REJECTED for s in statuses):
        po.status = LINE_REJECTED
    elif statuses and all(s in (LINE_COMPLETED, LINE_REJECTED) for s in statuses):
        po.status = LINE_COMPLETED
    elif all(s == LINE_PENDING for s in statuses):
        po.status = LINE_PENDING
    else:
        po.status = LINE_PARTIAL
    return po.status
