"""Incoming goods: receipts against PO lines, inspection holds, surplus tracking.

A receipt is either ``direct`` (everything goes to stock) or ``qc`` (a sample
is inspected first). A sampled rejection rate at or above the QC hold
threshold parks the receipt for an admin and posts nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import DEFAULT_PURCHASE_TAX_PERCENT, QC_HOLD_THRESHOLD
from app.core.errors import Forbidden, InvalidTransition, NotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.common import short_ref
from app.db.models.inventory import Product, StockLot, SurplusLedgerEntry, ITEM_PRODUCT
from app.db.models.mes_exec import Job
from app.db.models.purchasing import PurchaseOrder, PurchaseOrderLine, PurchaseReceipt, Vendor
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.mes.state_machine import complete_procured_job
from services.purchasing.orders import (
    LINE_COMPLETED,
    LINE_PARTIAL,
    LINE_QC_REVIEW,
    LINE_REJECTED,
    create_purchase_order,
    get_vendor,
    refresh_po_status,
    resolve_item,
)
from services.sales.allocation import recompute_allocation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")

MODE_DIRECT = "direct"
MODE_QC = "qc"

RECEIPT_POSTED = "Posted"
RECEIPT_QC_REVIEW = "QC_Review"
RECEIPT_REJECTED = "Rejected"


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def receipt_value(qty, unit_price, discount_percent=0, tax_percent=None) -> Decimal:
    """qty x price, less discount, plus tax; rounded to cents."""
    tax = DEFAULT_PURCHASE_TAX_PERCENT if tax_percent is None else _dec(tax_percent)
    gross = _dec(qty) * _dec(unit_price)
    taxable = gross * (1 - _dec(discount_percent) / 100)
    return (taxable * (1 + tax / 100)).quantize(CENT)


def breakdown_qty(breakdown: dict) -> Decimal:
    return int(breakdown.get("boxes") or 0) * _dec(breakdown.get("per_box")) + _dec(breakdown.get("loose"))


def get_line(db: Session, po_ref: str, line_ref: str | int) -> PurchaseOrderLine:
    """A PO line by id, line number, or item id within the PO."""
    po = (
        db.query(PurchaseOrder)
        .filter((PurchaseOrder.id == po_ref) | (PurchaseOrder.po_number == po_ref))
        .with_for_update()
        .first()
    )
    if not po:
        raise NotFound("Purchase order not found", po=po_ref)
    for ln in po.lines:
        if ln.id == str(line_ref) or str(ln.line_number) == str(line_ref) or ln.item_id == str(line_ref):
            return ln
    raise NotFound("Item not found on this purchase order", po=po.po_number, line=str(line_ref))


def _post_receipt(db: Session, line: PurchaseOrderLine, receipt: PurchaseReceipt, actor: Actor) -> Decimal:
    """Put the good part of a receipt into stock and credit the vendor. Returns the quantity posted."""
    item = resolve_item(db, line.item_type, line.item_id)
    po = line.purchase_order
    good = _dec(receipt.qty) - _dec(receipt.rejected_qty)

    if good > 0:
        # Boxes only describe the lot when nothing was rejected out of it.
        breakdown = receipt.breakdown if receipt.breakdown and _dec(receipt.rejected_qty) == 0 else None
        ledger.receive(db, item, None if breakdown else good, lot_number=receipt.lot_number, breakdown=breakdown,
                       meta={"po": po.po_number, "bill_number": receipt.bill_number})

    before = _dec(line.received_qty)
    line.received_qty = before + _dec(receipt.qty)
    line.status = LINE_COMPLETED if line.received_qty >= _dec(line.ordered_qty) else LINE_PARTIAL
    receipt.status = RECEIPT_POSTED

    vendor = db.query(Vendor).filter(Vendor.id == po.vendor_id).with_for_update().first()
    if vendor and _dec(receipt.value) > 0:
        vendor.balance = _dec(vendor.balance) + _dec(receipt.value)

    surplus = line.received_qty - max(_dec(line.ordered_qty), before)
    if surplus > 0:
        db.add(
            SurplusLedgerEntry(
                lot_number=receipt.lot_number,
                vendor_name=vendor.vendor_name if vendor else None,
                item_kind=line.item_type,
                item_id=line.item_id,
                item_name=line.item_name,
                ordered_qty=_dec(line.ordered_qty),
                received_qty=line.received_qty,
                surplus_qty=min(surplus, good),
            )
        )
        logger.info("surplus of %s on %s lot %s", surplus, line.item_name, receipt.lot_number)

    if line.job_id and line.status == LINE_COMPLETED:
        job = db.query(Job).filter((Job.id == line.job_id) | (Job.job_number == line.job_id)).first()
        if job:
            posted = sum(
                (_dec(r.qty) - _dec(r.rejected_qty) for r in line.receipts if r.status == RECEIPT_POSTED), ZERO
            )
            complete_procured_job(db, job, posted, actor, lot_number=receipt.lot_number)

    if good > 0 and isinstance(item, Product):
        recompute_allocation(db, item)
    return good


def receive_purchase_line(
    db: Session,
    po_ref: str,
    line_ref: str | int,
    actor: Actor,
    *,
    qty=None,
    breakdown: dict | None = None,
    mode: str = MODE_DIRECT,
    sample_size=None,
    rejected_qty=0,
    lot_number: str | None = None,
    bill_number: str | None = None,
    discount_percent=0,
    tax_percent=None,
    notes: str | None = None,
) -> dict:
    """Receive goods against one PO line."""
    mode = (mode or MODE_DIRECT).lower()
    if mode not in (MODE_DIRECT, MODE_QC):
        raise ValidationFailed(f"Unknown receipt mode {mode!r}")
    received = breakdown_qty(breakdown) if breakdown else _dec(qty)
    if received <= 0:
        raise ValidationFailed("Received quantity must be positive")

    rejected = _dec(rejected_qty) if mode == MODE_QC else ZERO
    sample = (_dec(sample_size) or received) if mode == MODE_QC else received
    if sample <= 0 or sample > received:
        raise ValidationFailed("Sample size must be between 1 and the received quantity", sample_size=str(sample))
    if rejected < 0 or rejected > sample:
        raise ValidationFailed("Rejected quantity must be between 0 and the sample size", rejected_qty=str(rejected))
    discount = _dec(discount_percent)
    tax = DEFAULT_PURCHASE_TAX_PERCENT if tax_percent is None else _dec(tax_percent)
    if not (ZERO <= discount <= 100) or tax < 0:
        raise ValidationFailed("Discount must be 0-100% and tax non-negative")

    with atomic(db):
        line = get_line(db, po_ref, line_ref)
        if line.status in (LINE_QC_REVIEW, LINE_REJECTED, LINE_COMPLETED):
            raise InvalidTransition(f"Line {line.line_number} cannot take receipts ({line.status})", line=line.id)

        receipt = PurchaseReceipt(
            qty=received,
            rejected_qty=rejected,
            sample_size=sample,
            mode=mode,
            lot_number=lot_number or short_ref("LOT"),
            bill_number=bill_number,
            breakdown=breakdown or {},
            discount_percent=discount,
            tax_percent=tax,
            value=receipt_value(received, line.unit_price, discount, tax),
            status=RECEIPT_QC_REVIEW,
            received_by=actor.name,
            notes=notes,
        )
        line.receipts.append(receipt)

        rate = rejected / sample
        held = mode == MODE_QC and rate >= QC_HOLD_THRESHOLD
        posted = ZERO
        if held:
            line.status = LINE_QC_REVIEW
            logger.warning("receipt on %s held: rejection rate %s", line.item_name, rate)
            publish(db, "PurchaseQCHold", {"po": line.purchase_order.po_number, "line": line.line_number, "rate": rate})
        else:
            posted = _post_receipt(db, line, receipt, actor)
        po_status = refresh_po_status(line.purchase_order)

        audit(db, actor=actor.name, actor_role=actor.role, action="purchasing.receive", entity_type="purchase_order_line",
              entity_id=line.id, payload={"qty": received, "rejected": rejected, "held": held, "lot": receipt.lot_number})

    return {
        "po_number": line.purchase_order.po_number,
        "line": line.line_number,
        "held": held,
        "rejection_rate": rate,
        "posted_qty": posted,
        "value": receipt.value,
        "lot_number": receipt.lot_number,
        "line_status": line.status,
        "po_status": po_status,
    }


def review_purchase_qc(db: Session, po_ref: str, line_ref: str | int, decision: str, actor: Actor, notes: str | None = None) -> dict:
    """Admin decision on a held receipt."""
    if not actor.is_admin:
        raise Forbidden("Only an admin or manager can review a purchase QC hold")
    decision = (decision or "").strip().lower()
    if decision not in ("approve", "reject"):
        raise ValidationFailed(f"Unknown QC decision {decision!r}")

    with atomic(db):
        line = get_line(db, po_ref, line_ref)
        held = [r for r in line.receipts if r.status == RECEIPT_QC_REVIEW]
        if line.status != LINE_QC_REVIEW or not held:
            raise InvalidTransition(f"Line {line.line_number} has no receipt awaiting review", line=line.id)
        receipt = held[-1]
        receipt.reviewed_by = actor.name
        receipt.reviewed_at = datetime.now(timezone.utc)
        receipt.notes = "\n".join(n for n in (receipt.notes, notes) if n) or None

        posted = ZERO
        if decision == "approve":
            posted = _post_receipt(db, line, receipt, actor)
        else:
            receipt.status = RECEIPT_REJECTED
            line.status = LINE_REJECTED
        po_status = refresh_po_status(line.purchase_order)

        audit(db, actor=actor.name, actor_role=actor.role, action="purchasing.review_qc", entity_type="purchase_order_line",
              entity_id=line.id, payload={"decision": decision, "lot": receipt.lot_number, "notes": notes})
        logger.info("purchase receipt %s %sd by %s", receipt.lot_number, decision, actor.name)

    return {
        "po_number": line.purchase_order.po_number,
        "line": line.line_number,
        "decision": decision,
        "posted_qty": posted,
        "line_status": line.status,
        "po_status": po_status,
    }


def held_receipts(db: Session, limit: int = 200) -> list[PurchaseReceipt]:
    return (
        db.query(PurchaseReceipt)
        .filter(PurchaseReceipt.status == RECEIPT_QC_REVIEW)
        .order_by(PurchaseReceipt.created_at.asc())
        .limit(limit)
        .all()
    )


def direct_entry(db: Session, vendor_ref: str, items: list[dict], actor: Actor) -> dict:
    """Stock bought over the counter: a completed PO and its receipts in one go.

    Each item is ``{item_type, item_id, qty, unit_price, ordered_qty?, lot_number?}``;
    receiving more than ``ordered_qty`` lands in the surplus ledger.
    """
    if not items:
        raise ValidationFailed("Direct entry needs at least one item")
    with atomic(db):
        vendor = get_vendor(db, vendor_ref)
        lines = [
            {
                "item_type": it.get("item_type"),
                "item_id": it.get("item_id"),
                "qty": it.get("ordered_qty") or it.get("qty"),
                "unit_price": it.get("unit_price", it.get("rate")),
            }
            for it in items
        ]
        po = create_purchase_order(db, vendor, lines, created_by=actor.name, is_direct_entry=True, prefix="DIR")
        receipts = []
        for line, it in zip(po.lines, items):
            receipts.append(
                receive_purchase_line(
                    db,
                    po.id,
                    line.id,
                    actor,
                    qty=it.get("qty"),
                    lot_number=it.get("lot_number") or None,
                    bill_number=it.get("bill_number"),
                    tax_percent=it.get("tax_percent", 0),
                )
            )
        logger.info("direct entry %s from %s: %d item(s)", po.po_number, vendor.vendor_name, len(items))
    return {"po_number": po.po_number, "status": po.status, "receipts": receipts}


def surplus_report(db: Session) -> list[dict]:
    """Surplus entries with what is still on the shelf: min(surplus, what is left of the lot)."""
    rows = []
    for entry in db.query(SurplusLedgerEntry).order_by(SurplusLedgerEntry.received_at.desc()).all():
        lots = (
            db.query(StockLot)
            .filter(
                StockLot.item_kind == entry.item_kind,
                StockLot.item_id == entry.item_id,
                StockLot.lot_number.in_((entry.lot_number, f"{entry.lot_number}-L")),
            )
            .all()
        )
        in_lot = sum((_dec(lot.qty) for lot in lots), ZERO)
        rows.append(
            {
                "lot_number": entry.lot_number,
                "vendor_name": entry.vendor_name,
                "item_name": entry.item_name,
                "item_type": "Finished Good" if entry.item_kind == ITEM_PRODUCT else "Raw Material",
                "ordered_qty": entry.ordered_qty,
                "received_qty": entry.received_qty,
                "original_surplus": entry.surplus_qty,
                "current_in_lot": in_lot,
                "remaining_surplus": min(_dec(entry.surplus_qty), in_lot),
                "received_at": entry.received_at,
            }
        )
    return rows
