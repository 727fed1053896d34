"""
MODULE: QUALITY MANAGEMENT SYSTEM (QMS)
Sampling inspections recorded at the two production gates
"""

from __future__ import annotations

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from decimal import Decimal
from sqlalchemy import String, Numeric, ForeignKey, JSON, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

GATE_ASSEMBLY = "Assembly QC"   # gate 1, after stitching
GATE_FINAL = "Final QC"         # gate 2, after packaging

OUTCOME_PASSED = "PASSED"
OUTCOME_HOLD = "HOLD"
OUTCOME_APPROVED = "APPROVED"   # hold released by a reviewer
OUTCOME_REJECTED = "REJECTED"
OUTCOME_REWORK = "REWORK"

# ============= INSPECTION EXECUTION =============
class QCInspection(Base, HasId, HasCreatedAt):
    __tablename__ = "qms_job_inspection"

    job_id: Mapped[str] = mapped_column(ForeignKey("mes_job.id"), nullable=False, index=True)
    gate: Mapped[str] = mapped_column(String(16), nullable=False)

    # Quantities
    lot_size: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    sample_size: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    qty_rejected: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    passed_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    rejection_rate: Mapped[Decimal] = mapped_column(Numeric(9, 6), default=0, nullable=False)

    # Result
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # PASSED|HOLD|APPROVED|REJECTED|REWORK
    # True once stock has been written for this inspection; at most one per job and gate.
    posted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lot_number: Mapped[str | None] = mapped_column(String(64), nullable=True)

    inspector: Mapped[str] = mapped_column(String(128), nullable=False)
    reviewed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

Index("ix_qms_job_gate", QCInspection.job_id, QCInspection.gate)
