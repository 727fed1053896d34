from __future__ import annotations
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.core.security import Actor, get_actor, require_admin
from app.db.models.mes_exec import Job
from services.mes import state_machine as sm

router = APIRouter(prefix="/mes", tags=["mes"])


class AdvanceIn(BaseModel):
    to_step: str | None = None
    remarks: str | None = None


class HandshakeIn(BaseModel):
    received_qty: float = Field(..., gt=0)


class VendorDispatchIn(BaseModel):
    actual_qty: float = Field(..., ge=0)
    wastage: float = Field(0, ge=0)
    remarks: str | None = None


class ForceIn(BaseModel):
    step: str
    status: str | None = None
    logistics_status: str | None = None
    reason: str = Field(..., min_length=1)


class TradingPOIn(BaseModel):
    vendor_id: str
    unit_cost: float = Field(..., ge=0)


def _job_out(job: Job, *, detail: bool = False) -> dict:
    out = {
        "id": job.id,
        "job_number": job.job_number,
        "job_type": job.job_type,
        "product_id": job.product_id,
        "plan_id": job.plan_id,
        "vendor_id": job.vendor_id,
        "total_qty": float(job.total_qty),
        "status": job.status,
        "current_step": job.current_step,
        "logistics_status": job.logistics_status,
    }
    if detail:
        out["routing"] = job.routing or {}
        out["qc_result"] = job.qc_result or {}
        out["vendor_report"] = job.vendor_report or {}
        out["rework_instructions"] = job.rework_instructions
        out["history"] = [
            {"stage": h.stage, "step": h.step, "status": h.status, "actor": h.actor, "remarks": h.remarks, "at": h.created_at}
            for h in job.history
        ]
        out["timeline"] = [
            {"event": t.event, "details": t.details, "actor": t.actor, "at": t.created_at} for t in job.timeline
        ]
        out["issued_materials"] = [
            {"material_id": m.material_id, "lot_number": m.lot_number, "qty": float(m.qty), "issued_by": m.issued_by}
            for m in job.issued_materials
        ]
    return out


@router.get("/health")
def health():
    return {"ok": True, "service": "mes"}


@router.get("/jobs")
def list_jobs(step: str | None = None, limit: int = 200, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return [_job_out(j) for j in sm.visible_jobs(db, actor, step=step, limit=limit)]


@router.get("/jobs/{job_ref}")
def get_job(job_ref: str, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    job = sm.get_job(db, job_ref)
    sm.check_access(job, actor)
    return _job_out(job, detail=True)


@router.post("/jobs/{job_ref}/issue-materials")
def issue_materials(job_ref: str, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    out = sm.issue_materials(db, job_ref, actor)
    return {**out, "issued": [{**i, "qty": float(i["qty"])} for i in out["issued"]]}


@router.post("/jobs/{job_ref}/advance")
def advance(job_ref: str, payload: AdvanceIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return _job_out(sm.advance_stage(db, job_ref, actor, to_step=payload.to_step, remarks=payload.remarks))


@router.post("/jobs/{job_ref}/vendor-dispatch")
def vendor_dispatch(job_ref: str, payload: VendorDispatchIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    job = sm.report_vendor_dispatch(db, job_ref, payload.actual_qty, payload.wastage, actor, remarks=payload.remarks)
    return _job_out(job)


@router.post("/jobs/{job_ref}/handshake")
def handshake(job_ref: str, payload: HandshakeIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return _job_out(sm.receive_handshake(db, job_ref, payload.received_qty, actor))


@router.post("/jobs/{job_ref}/force")
def force(job_ref: str, payload: ForceIn, db: Session = Depends(get_db), actor: Actor = Depends(require_admin)):
    job = sm.force_transition(db, job_ref, payload.step, actor, status=payload.status,
                              reason=payload.reason, logistics_status=payload.logistics_status)
    return _job_out(job)


@router.post("/jobs/{job_ref}/trading-po")
def trading_po(job_ref: str, payload: TradingPOIn, db: Session = Depends(get_db), actor: Actor = Depends(get_actor)):
    return sm.raise_trading_po(db, job_ref, payload.vendor_id, payload.unit_cost, actor)
