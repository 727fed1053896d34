"""
MODULE: SALES ORDERS
Customer orders, their per-product allocation lines, and dispatch records
"""

from __future__ import annotations

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, Integer, Numeric, ForeignKey, JSON, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

PRIORITY_WEIGHT = {"High": 3, "Medium": 2, "Low": 1}

# Customer tier -> order priority
TIER_PRIORITY = {"Diamond": "High", "Gold": "Medium"}

ORDER_PRODUCTION_QUEUED = "Production_Queued"
ORDER_READY_DISPATCH = "Ready_Dispatch"
ORDER_PARTIALLY_DISPATCHED = "Partially_Dispatched"
ORDER_DISPATCHED = "Dispatched"

OPEN_ORDER_STATUSES = (ORDER_PRODUCTION_QUEUED, ORDER_READY_DISPATCH, ORDER_PARTIALLY_DISPATCHED)


class SalesOrder(Base, HasId, HasCreatedAt):
    """Sales order header"""
    __tablename__ = "sales_order"

    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    customer_tier: Mapped[str | None] = mapped_column(String(32), nullable=True)
    priority: Mapped[str] = mapped_column(String(8), default="Low", nullable=False, index=True)  # High|Medium|Low

    status: Mapped[str] = mapped_column(String(24), default=ORDER_PRODUCTION_QUEUED, nullable=False, index=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    lines: Mapped[list["SalesOrderLine"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="SalesOrderLine.line_number"
    )

    @property
    def priority_weight(self) -> int:
        return PRIORITY_WEIGHT.get(self.priority, 1)

Index("ix_sales_order_status_created", SalesOrder.status, SalesOrder.created_at)


class SalesOrderLine(Base, HasId, HasCreatedAt):
    """One product on an order.

    qty_allocated + qty_to_produce == qty_ordered - qty_dispatched
    """
    __tablename__ = "sales_order_line"

    order_id: Mapped[str] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(ForeignKey("inv_product.id"), nullable=False, index=True)

    qty_ordered: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    qty_allocated: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    qty_to_produce: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    qty_dispatched: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    order: Mapped[SalesOrder] = relationship(back_populates="lines")

    @property
    def qty_outstanding(self) -> Decimal:
        return Decimal(self.qty_ordered) - Decimal(self.qty_dispatched or 0)


class SalesDispatch(Base, HasId, HasCreatedAt):
    """Shipment out of reserved finished stock"""
    __tablename__ = "sales_dispatch"

    order_id: Mapped[str] = mapped_column(ForeignKey("sales_order.id"), nullable=False, index=True)
    # [{"line_id", "product_id", "qty", "lots": [{"lot_number", "qty"}]}]
    items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    transport: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    dispatched_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


RETURN_QC_PENDING = "QC_PENDING"
RETURN_APPROVED = "APPROVED"
RETURN_REJECTED = "REJECTED"

RETURN_CONDITIONS = ("Good", "Damaged", "Defective")


class SalesReturn(Base, HasId, HasCreatedAt):
    """Customer return held for inspection before the goods go back on the shelf"""
    __tablename__ = "sales_return"

    return_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(ForeignKey("sales_order.id"), nullable=True, index=True)  # None for direct returns
    order_reference: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), default=RETURN_QC_PENDING, nullable=False, index=True)
    lot_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lines: Mapped[list["SalesReturnLine"]] = relationship(
        back_populates="sales_return", cascade="all, delete-orphan", order_by="SalesReturnLine.created_at"
    )


class SalesReturnLine(Base, HasId, HasCreatedAt):
    __tablename__ = "sales_return_line"

    return_id: Mapped[str] = mapped_column(ForeignKey("sales_return.id"), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("inv_product.id"), nullable=False, index=True)
    qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    reason: Mapped[str] = mapped_column(String(256), default="Direct Return", nullable=False)
    condition: Mapped[str] = mapped_column(String(16), default="Good", nullable=False)

    sales_return: Mapped[SalesReturn] = relationship(back_populates="lines")
