"""
MODULE: INVENTORY LEDGER
Stocked items (raw materials, finished/semi-finished products) and their lots.
Quantities live on the lots; the aggregate columns are kept equal to the lot
sums by services.inventory.ledger.
"""

from __future__ import annotations

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, Numeric, ForeignKey, JSON, Boolean, Integer, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

ITEM_MATERIAL = "MATERIAL"
ITEM_PRODUCT = "PRODUCT"

POOL_RAW = "RAW"   # material lots
POOL_FG = "FG"     # finished goods, warehouse-ready
POOL_SFG = "SFG"   # stitched, not yet packed

HEALTH_CRITICAL = "CRITICAL"
HEALTH_MEDIUM = "MEDIUM"
HEALTH_OPTIMAL = "OPTIMAL"
HEALTH_EXCESS = "EXCESS"


def stock_target(avg_consumption, lead_time_days, safety_stock_multiplier) -> Decimal:
    """Minimum stock: avg consumption x lead time x safety multiplier (0 means 1)."""
    multiplier = Decimal(str(safety_stock_multiplier or 0))
    if multiplier <= 0:
        multiplier = Decimal("1")
    return Decimal(str(avg_consumption or 0)) * Decimal(str(lead_time_days or 0)) * multiplier


def health_status(current, target) -> str:
    """Band current stock against its target: <=33% / <=66% / <=100% / above."""
    target = Decimal(str(target or 0))
    if target <= 0:
        target = Decimal("1")
    ratio = Decimal(str(current or 0)) / target * 100
    if ratio <= 33:
        return HEALTH_CRITICAL
    if ratio <= 66:
        return HEALTH_MEDIUM
    if ratio <= 100:
        return HEALTH_OPTIMAL
    return HEALTH_EXCESS


class _PlanningMetrics:
    avg_consumption: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    lead_time_days: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    safety_stock_multiplier: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    @property
    def stock_at_least(self) -> Decimal:
        return stock_target(self.avg_consumption, self.lead_time_days, self.safety_stock_multiplier)


# ============= RAW MATERIAL =============

class Material(Base, HasId, HasCreatedAt, _PlanningMetrics):
    __tablename__ = "inv_material"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    material_type: Mapped[str] = mapped_column(String(64), default="FABRIC", nullable=False)
    unit: Mapped[str] = mapped_column(String(16), default="MTR", nullable=False)
    cost_per_unit: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    # Equal to the sum of RAW lots after every committed mutation.
    current_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (CheckConstraint("current_qty >= 0", name="ck_material_qty_non_negative"),)

    item_kind = ITEM_MATERIAL

    @property
    def health(self) -> str:
        return health_status(self.current_qty, self.stock_at_least)


# ============= PRODUCT (FG / SFG) =============

class Product(Base, HasId, HasCreatedAt, _PlanningMetrics):
    __tablename__ = "inv_product"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    color: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cost_per_unit: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    selling_price: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)

    # Unallocated finished stock (what the allocation waterfall leaves behind).
    warehouse_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    # Finished stock held for open orders; written by the waterfall, released by dispatch.
    reserved_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    bom: Mapped[list["BomLine"]] = relationship(back_populates="product", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("warehouse_qty >= 0", name="ck_product_warehouse_non_negative"),
        CheckConstraint("reserved_qty >= 0", name="ck_product_reserved_non_negative"),
    )

    item_kind = ITEM_PRODUCT

    @property
    def on_hand_qty(self) -> Decimal:
        return Decimal(str(self.warehouse_qty or 0)) + Decimal(str(self.reserved_qty or 0))

    @property
    def health(self) -> str:
        return health_status(self.warehouse_qty, self.stock_at_least)


class BomLine(Base, HasId, HasCreatedAt):
    """Per-unit material requirement (master data, read by the core)."""
    __tablename__ = "inv_bom_line"

    product_id: Mapped[str] = mapped_column(ForeignKey("inv_product.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    qty_required: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    product: Mapped[Product] = relationship(back_populates="bom")


# ============= LOTS =============

class StockLot(Base, HasId, HasCreatedAt):
    __tablename__ = "inv_stock_lot"

    item_kind: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # MATERIAL|PRODUCT
    item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pool: Mapped[str] = mapped_column(String(8), nullable=False, index=True)  # RAW|FG|SFG
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)  # SFG/FG produced by a job
    is_loose: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    box_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    __table_args__ = (CheckConstraint("qty >= 0", name="ck_lot_qty_non_negative"),)

Index("ix_lot_item_pool_added", StockLot.item_kind, StockLot.item_id, StockLot.pool, StockLot.added_at)


class SurplusLedgerEntry(Base, HasId, HasCreatedAt):
    """One row per over-received lot. Written once, never updated."""
    __tablename__ = "inv_surplus_ledger"

    lot_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    vendor_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    item_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    item_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    ordered_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    received_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    surplus_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
