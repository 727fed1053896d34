"""
MODULE: PURCHASING & PROCUREMENT
Vendors, purchase orders, and the incoming inspection trail of every receipt
"""

from __future__ import annotations

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============= VENDOR MANAGEMENT =============

class Vendor(Base, HasId, HasCreatedAt):
    """Vendor / job worker master"""
    __tablename__ = "purchase_vendor"

    vendor_code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    vendor_name: Mapped[str] = mapped_column(String(256), unique=True, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), default="Material Supplier", nullable=False)
    # Material Supplier|Job Worker|Full Service Factory|Trading

    # Running payable, credited by every posted receipt.
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


# ============= PURCHASE ORDERS =============

class PurchaseOrder(Base, HasId, HasCreatedAt):
    """Purchase order master"""
    __tablename__ = "purchase_order"

    po_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(ForeignKey("purchase_vendor.id"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), default="Pending", nullable=False, index=True)
    # Pending|Partial|Completed|QC_Review|Rejected
    is_direct_entry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    vendor: Mapped[Vendor] = relationship()
    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="purchase_order", cascade="all, delete-orphan", order_by="PurchaseOrderLine.line_number"
    )


class PurchaseOrderLine(Base, HasId, HasCreatedAt):
    """PO line items"""
    __tablename__ = "purchase_order_line"

    po_id: Mapped[str] = mapped_column(ForeignKey("purchase_order.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    item_type: Mapped[str] = mapped_column(String(16), nullable=False)  # MATERIAL|PRODUCT
    item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    item_name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    ordered_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    received_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="Pending", nullable=False)
    # Pending|Partial|Completed|QC_Review|Rejected

    # Full-Buy job this line was raised for.
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    purchase_order: Mapped[PurchaseOrder] = relationship(back_populates="lines")
    receipts: Mapped[list["PurchaseReceipt"]] = relationship(
        back_populates="line", cascade="all, delete-orphan", order_by="PurchaseReceipt.created_at"
    )


class PurchaseReceipt(Base, HasId, HasCreatedAt):
    """One receiving event on a PO line, with its inspection result"""
    __tablename__ = "purchase_receipt"

    line_id: Mapped[str] = mapped_column(ForeignKey("purchase_order_line.id"), nullable=False, index=True)

    qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    rejected_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    sample_size: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    mode: Mapped[str] = mapped_column(String(8), default="direct", nullable=False)  # direct|qc

    lot_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    bill_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # {"boxes": n, "per_box": q, "loose": q} when received in cartons
    breakdown: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    discount_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), default=0, nullable=False)
    tax_percent: Mapped[Decimal] = mapped_column(Numeric(9, 4), default=0, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)  # Posted|QC_Review|Rejected
    received_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    line: Mapped[PurchaseOrderLine] = relationship(back_populates="receipts")

Index("ix_purchase_receipt_status", PurchaseReceipt.status, PurchaseReceipt.created_at)
