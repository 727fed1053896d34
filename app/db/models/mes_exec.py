from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, DateTime, JSON, ForeignKey, Numeric, Index, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt

JOB_IN_HOUSE = "In-House"
JOB_WORK = "Job-Work"
JOB_FULL_BUY = "Full-Buy"

# Job status
STATUS_PENDING = "Pending"
STATUS_IN_PROGRESS = "In_Progress"
STATUS_QC_PENDING = "QC_Pending"
STATUS_READY_FOR_PACKING = "Ready_For_Packing"
STATUS_QC_HOLD = "QC_HOLD"
STATUS_COMPLETED = "Completed"
STATUS_QC_REJECTED = "QC_Rejected"
STATUS_SCRAPPED = "Scrapped"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_QC_REJECTED, STATUS_SCRAPPED)

# Logistics status (job-work only)
AT_SOURCE = "At_Source"
IN_TRANSIT = "In_Transit"
RECEIVED_AT_FACTORY = "Received_At_Factory"


class Job(Base, HasId, HasCreatedAt):
    """Job card. One table for every channel; routing and vendor are channel specific."""
    __tablename__ = "mes_job"
    job_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    job_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # In-House/Job-Work/Full-Buy
    plan_id: Mapped[str | None] = mapped_column(ForeignKey("plan_production_plan.id"), nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("inv_product.id"), nullable=False, index=True)
    vendor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    routing: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    total_qty: Mapped[Decimal] = mapped_column(Numeric(18,6), nullable=False)
    status: Mapped[str] = mapped_column(String(24), default=STATUS_PENDING, nullable=False, index=True)
    current_step: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    logistics_status: Mapped[str] = mapped_column(String(24), default=AT_SOURCE, nullable=False)

    qc_result: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    vendor_report: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    rework_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    purchase_order_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    history: Mapped[list["JobHistoryEntry"]] = relationship(order_by="JobHistoryEntry.seq", cascade="save-update, merge")
    timeline: Mapped[list["JobTimelineEntry"]] = relationship(order_by="JobTimelineEntry.seq", cascade="save-update, merge")
    issued_materials: Mapped[list["JobIssuedMaterial"]] = relationship(cascade="save-update, merge")
    receipts: Mapped[list["JobReceiptLog"]] = relationship(cascade="save-update, merge")

    @validates("total_qty")
    def _freeze_total_qty(self, key, value):
        if self.total_qty is not None and Decimal(str(value)) != Decimal(str(self.total_qty)):
            raise ValueError("total_qty is fixed once the job is created")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

Index("ix_mes_job_status_step", Job.status, Job.current_step)

class JobHistoryEntry(Base, HasId, HasCreatedAt):
    __tablename__ = "mes_job_history"
    job_id: Mapped[str] = mapped_column(ForeignKey("mes_job.id"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(nullable=False)
    stage: Mapped[str | None] = mapped_column(String(32), nullable=True)  # named event: Kitting, Assembly QC, ...
    step: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

class JobTimelineEntry(Base, HasId, HasCreatedAt):
    __tablename__ = "mes_job_timeline"
    job_id: Mapped[str] = mapped_column(ForeignKey("mes_job.id"), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(nullable=False)
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)

class JobIssuedMaterial(Base, HasId, HasCreatedAt):
    __tablename__ = "mes_job_issued_material"
    job_id: Mapped[str] = mapped_column(ForeignKey("mes_job.id"), nullable=False, index=True)
    material_id: Mapped[str] = mapped_column(ForeignKey("inv_material.id"), nullable=False, index=True)
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(18,6), nullable=False)
    issued_by: Mapped[str] = mapped_column(String(128), nullable=False)

class JobReceiptLog(Base, HasId, HasCreatedAt):
    """Physical handshake of job-work goods arriving back at the factory."""
    __tablename__ = "mes_job_receipt"
    job_id: Mapped[str] = mapped_column(ForeignKey("mes_job.id"), nullable=False, index=True)
    qty: Mapped[Decimal] = mapped_column(Numeric(18,6), nullable=False)
    received_by: Mapped[str] = mapped_column(String(128), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
