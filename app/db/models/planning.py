from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, ForeignKey, Index, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from decimal import Decimal
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

PLAN_PENDING_STRATEGY = "Pending Strategy"
PLAN_PARTIALLY_PLANNED = "Partially Planned"
PLAN_SCHEDULED = "Scheduled"
PLAN_IN_PROGRESS = "In Progress"
PLAN_COMPLETED = "Completed"
PLAN_FULFILLED_BY_STOCK = "Fulfilled-By-Stock"

# Plans whose remaining quantity counts as covering an order's unmet demand.
ACTIVE_PLAN_STATUSES = (PLAN_PARTIALLY_PLANNED, PLAN_SCHEDULED, PLAN_IN_PROGRESS)

MODE_MANUFACTURE = "Manufacture"
MODE_JOB_WORK = "Job Work"
MODE_BUY = "Buy"

class ProductionPlan(Base, HasId, HasCreatedAt):
    __tablename__ = "plan_production_plan"
    plan_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(ForeignKey("sales_order.id"), nullable=True, index=True)  # None for manual stock plans
    product_id: Mapped[str] = mapped_column(ForeignKey("inv_product.id"), nullable=False, index=True)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    total_qty_to_make: Mapped[Decimal] = mapped_column(Numeric(18,6), nullable=False)
    planned_qty: Mapped[Decimal] = mapped_column(Numeric(18,6), default=0, nullable=False)
    dispatched_qty: Mapped[Decimal] = mapped_column(Numeric(18,6), default=0, nullable=False)
    produced_qty: Mapped[Decimal] = mapped_column(Numeric(18,6), default=0, nullable=False)

    status: Mapped[str] = mapped_column(String(24), default=PLAN_PENDING_STRATEGY, nullable=False, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    splits: Mapped[list["PlanSplit"]] = relationship(back_populates="plan", cascade="all, delete-orphan", order_by="PlanSplit.created_at")

Index("ix_plan_product_status", ProductionPlan.product_id, ProductionPlan.status)

class PlanSplit(Base, HasId, HasCreatedAt):
    __tablename__ = "plan_split"
    plan_id: Mapped[str] = mapped_column(ForeignKey("plan_production_plan.id"), nullable=False, index=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)  # Manufacture/Job Work/Buy
    qty: Mapped[Decimal] = mapped_column(Numeric(18,6), nullable=False)
    vendor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    # {"cutting": {"type": "In-House"|"Job Work", "vendor_name": ...}, "stitching": {...}}
    routing: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    plan: Mapped[ProductionPlan] = relationship(back_populates="splits")
