from __future__ import annotations
from decimal import Decimal
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import Actor, get_actor, require_admin
from app.db.session import get_db
from app.db.models.qms import QCInspection
from services.mes.state_machine import get_job
from services.qms import service

router = APIRouter(prefix="/qms", tags=["qms"])


class SubmitQCIn(BaseModel):
    sample_size: float = Field(..., gt=0)
    qty_rejected: float = Field(0, ge=0)
    notes: str | None = None


class ReviewQCIn(BaseModel):
    decision: str  # approve|reject|rework
    notes: str | None = None


def _result_out(out: dict) -> dict:
    return {k: (float(v) if isinstance(v, Decimal) else v) for k, v in out.items()}


@router.get("/health")
def health():
    return {"ok": True, "service": "qms"}


@router.post("/jobs/{job_ref}/submit")
def submit(job_ref: str, payload: SubmitQCIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = service.submit_qc(db, job_ref, payload.sample_size, payload.qty_rejected, actor, notes=payload.notes)
    return _result_out(out)


@router.post("/jobs/{job_ref}/review")
def review(job_ref: str, payload: ReviewQCIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    return _result_out(service.review_qc(db, job_ref, payload.decision, actor, notes=payload.notes))


@router.get("/held")
def held(db: Session = Depends(get_db), limit: int = 200):
    return [
        {
            "id": j.id,
            "job_number": j.job_number,
            "job_type": j.job_type,
            "product_id": j.product_id,
            "total_qty": float(j.total_qty),
            "qc_result": j.qc_result or {},
            "status": j.status,
            "current_step": j.current_step,
        }
        for j in service.held_jobs(db, limit=limit)
    ]


@router.get("/jobs/{job_ref}/inspections")
def inspections(job_ref: str, db: Session = Depends(get_db)):
    job = get_job(db, job_ref)
    rows = db.query(QCInspection).filter(QCInspection.job_id == job.id).order_by(QCInspection.created_at.asc()).all()
    return [
        {
            "gate": r.gate,
            "sample_size": float(r.sample_size),
            "qty_rejected": float(r.qty_rejected),
            "passed_qty": float(r.passed_qty),
            "rejection_rate": float(r.rejection_rate),
            "outcome": r.outcome,
            "lot_number": r.lot_number,
            "inspector": r.inspector,
            "reviewed_by": r.reviewed_by,
            "at": r.created_at,
        }
        for r in rows
    ]
