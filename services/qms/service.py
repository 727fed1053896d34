"""Job quality gates.

Gate 1 (assembly) runs after stitching and writes a semi-finished lot; gate 2
(final) runs after packaging and writes sellable stock. A job is at gate 1
until an assembly inspection has been posted to its history.

A batch whose sampled rejection rate reaches ``QC_HOLD_THRESHOLD`` is held for
an admin instead of being posted.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import QC_HOLD_THRESHOLD
from app.core.errors import Forbidden, InvalidTransition, PhysicalReceiptRequired, ValidationFailed
from app.core.security import Actor
from app.db.models.mes_exec import (
    Job,
    IN_TRANSIT,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_QC_HOLD,
    STATUS_QC_REJECTED,
    STATUS_READY_FOR_PACKING,
)
from app.db.models.planning import ProductionPlan
from app.db.models.qms import (
    QCInspection,
    GATE_ASSEMBLY,
    GATE_FINAL,
    OUTCOME_APPROVED,
    OUTCOME_HOLD,
    OUTCOME_PASSED,
    OUTCOME_REJECTED,
    OUTCOME_REWORK,
)
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.mes import state_machine as sm
from services.mes.history import append_history, append_timeline, has_stage
from services.planning.service import mark_plan_progress
from services.sales.allocation import recompute_allocation

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DECISION_APPROVE = "approve"
DECISION_REJECT = "reject"
DECISION_REWORK = "rework"
DECISIONS = (DECISION_APPROVE, DECISION_REJECT, DECISION_REWORK)


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def current_gate(job: Job) -> str:
    return GATE_FINAL if has_stage(job, GATE_ASSEMBLY) else GATE_ASSEMBLY


def lot_suffix(job: Job) -> str:
    return job.job_number.split("-")[-1]


def _gate_posted(db: Session, job: Job, gate: str) -> bool:
    return (
        db.query(QCInspection)
        .filter(QCInspection.job_id == job.id, QCInspection.gate == gate, QCInspection.posted.is_(True))
        .first()
        is not None
    )


def _post_gate(db: Session, job: Job, gate: str, passed: Decimal, actor: Actor, *, override: bool = False) -> str | None:
    """Write the gate's stock and move the job on. Returns the lot number written, if any."""
    if _gate_posted(db, job, gate):
        raise InvalidTransition(f"{gate} already posted for job {job.job_number}", job=job.job_number)

    product = sm.job_product(db, job)
    tag = "-OVR" if override else ""
    lot_number = None

    if gate == GATE_ASSEMBLY and passed > 0:
        lot_number = f"SFG-{lot_suffix(job)}{tag}"
        ledger.receive_sfg(db, product, passed, lot_number=lot_number, job_id=job.id)
        job.current_step = sm.PACKAGING_PENDING
        job.status = STATUS_READY_FOR_PACKING
        append_history(job, actor=actor.name, stage=GATE_ASSEMBLY, remarks=f"{passed} passed to packing as {lot_number}")
        append_timeline(job, "Assembly QC Passed", actor=actor.name, details=f"SFG lot {lot_number}")
        logger.info("job %s passed assembly QC: %s -> %s", job.job_number, passed, lot_number)
        return lot_number

    if passed > 0:
        lot_number = f"FG-{lot_suffix(job)}{tag}"
        ledger.receive(db, product, passed, lot_number=lot_number, job_id=job.id)
        if job.plan_id:
            plan = db.query(ProductionPlan).filter(ProductionPlan.id == job.plan_id).first()
            if plan:
                plan.produced_qty = _dec(plan.produced_qty) + passed
    ledger.consume_sfg(db, product, job.id)

    job.current_step = sm.QC_COMPLETED
    job.status = STATUS_COMPLETED
    append_history(job, actor=actor.name, stage=gate, remarks=f"{passed} posted" + (f" as {lot_number}" if lot_number else ""))
    append_timeline(job, "Completed", actor=actor.name, details=f"FG lot {lot_number}" if lot_number else "Closed with no good units")
    db.flush()
    mark_plan_progress(db, job.plan_id)
    if passed > 0:
        recompute_allocation(db, product)
    publish(db, "JobCompleted", {"job": job.job_number, "qty": passed, "lot_number": lot_number, "gate": gate})
    logger.info("job %s completed at %s: %s -> %s", job.job_number, gate, passed, lot_number)
    return lot_number


def submit_qc(db: Session, job_ref: str, sample_size, qty_rejected, actor: Actor, notes: str | None = None) -> dict:
    """Record a sampling inspection at the job's current gate.

    Returns ``{"held": bool, ...}``; a hold is a normal outcome, not an error.
    """
    sample_size = _dec(sample_size)
    qty_rejected = _dec(qty_rejected)

    with atomic(db):
        job = sm.get_job(db, job_ref, lock=True)
        sm.check_access(job, actor)
        if job.logistics_status == IN_TRANSIT:
            raise PhysicalReceiptRequired(
                f"Job {job.job_number} is still in transit; receive it at the factory first",
                job=job.job_number,
            )
        if job.is_terminal or job.current_step not in sm.QC_STEPS:
            raise InvalidTransition(f"Job {job.job_number} is not awaiting QC ({job.current_step})", job=job.job_number)
        total = _dec(job.total_qty)
        if sample_size <= 0 or sample_size > total:
            raise ValidationFailed(f"Sample size must be between 1 and {total}", sample_size=str(sample_size))
        if qty_rejected < 0 or qty_rejected > sample_size:
            raise ValidationFailed("Rejected quantity must be between 0 and the sample size", qty_rejected=str(qty_rejected))

        gate = current_gate(job)
        rate = qty_rejected / sample_size
        passed = total - qty_rejected
        held = rate >= QC_HOLD_THRESHOLD

        inspection = QCInspection(
            job_id=job.id,
            gate=gate,
            lot_size=total,
            sample_size=sample_size,
            qty_rejected=qty_rejected,
            passed_qty=passed,
            rejection_rate=rate.quantize(Decimal("0.000001")),
            outcome=OUTCOME_HOLD if held else OUTCOME_PASSED,
            inspector=actor.name,
            notes=notes,
        )
        job.qc_result = {
            "gate": gate,
            "sample_size": str(sample_size),
            "qty_rejected": str(qty_rejected),
            "rejection_rate": str(rate),
            "inspector": actor.name,
            "notes": notes or "",
        }

        lot_number = None
        if held:
            job.current_step = sm.QC_REVIEW_NEEDED
            job.status = STATUS_QC_HOLD
            append_history(job, actor=actor.name, stage="QC Hold", remarks=f"{gate}: {qty_rejected}/{sample_size} rejected")
            append_timeline(job, "QC Hold", actor=actor.name, details=f"Rejection rate {rate:.2%} at {gate}")
            logger.warning("job %s held at %s: rejection rate %s", job.job_number, gate, rate)
        else:
            lot_number = _post_gate(db, job, gate, passed, actor)
            inspection.posted = True
            inspection.lot_number = lot_number
        db.add(inspection)

        audit(db, actor=actor.name, actor_role=actor.role, action="qms.submit_qc", entity_type="job",
              entity_id=job.job_number, payload={"gate": gate, "rate": rate, "held": held, "lot": lot_number})

    return {
        "job": job.job_number,
        "gate": gate,
        "held": held,
        "rejection_rate": rate,
        "passed_qty": passed,
        "lot_number": lot_number,
        "status": job.status,
        "current_step": job.current_step,
    }


def _held_inspection(db: Session, job: Job) -> QCInspection | None:
    return (
        db.query(QCInspection)
        .filter(QCInspection.job_id == job.id, QCInspection.outcome == OUTCOME_HOLD)
        .order_by(QCInspection.created_at.desc())
        .first()
    )


def review_qc(db: Session, job_ref: str, decision: str, actor: Actor, notes: str | None = None) -> dict:
    """Admin decision on a held batch: approve, reject or rework."""
    if not actor.is_admin:
        raise Forbidden("Only an admin or manager can review a QC hold")
    decision = (decision or "").strip().lower()
    if decision not in DECISIONS:
        raise ValidationFailed(f"Unknown QC decision {decision!r}", allowed=list(DECISIONS))

    with atomic(db):
        job = sm.get_job(db, job_ref, lock=True)
        if job.status != STATUS_QC_HOLD:
            raise InvalidTransition(f"Job {job.job_number} is not on QC hold", job=job.job_number)
        inspection = _held_inspection(db, job)
        gate = inspection.gate if inspection else current_gate(job)
        passed = _dec(inspection.passed_qty) if inspection else _dec(job.total_qty)
        lot_number = None

        if decision == DECISION_APPROVE:
            lot_number = _post_gate(db, job, gate, passed, actor, override=True)
            if inspection:
                inspection.outcome = OUTCOME_APPROVED
                inspection.posted = True
                inspection.lot_number = lot_number
        elif decision == DECISION_REJECT:
            job.current_step = sm.SCRAPPED
            job.status = STATUS_QC_REJECTED
            ledger.consume_sfg(db, sm.job_product(db, job), job.id)
            append_history(job, actor=actor.name, stage="QC Rejected", remarks=notes)
            append_timeline(job, "Scrapped", actor=actor.name, details=notes)
            db.flush()
            mark_plan_progress(db, job.plan_id)
            if inspection:
                inspection.outcome = OUTCOME_REJECTED
        else:
            job.current_step = sm.CUTTING_STARTED if gate == GATE_ASSEMBLY else sm.PACKAGING_STARTED
            job.status = STATUS_IN_PROGRESS
            job.rework_instructions = notes
            append_history(job, actor=actor.name, stage="QC Rework", remarks=notes)
            append_timeline(job, "Sent for Rework", actor=actor.name, details=notes)
            if inspection:
                inspection.outcome = OUTCOME_REWORK

        if inspection:
            inspection.reviewed_by = actor.name
        audit(db, actor=actor.name, actor_role=actor.role, action="qms.review_qc", entity_type="job",
              entity_id=job.job_number, payload={"decision": decision, "gate": gate, "notes": notes, "lot": lot_number})
        logger.info("job %s QC review: %s by %s", job.job_number, decision, actor.name)

    return {
        "job": job.job_number,
        "decision": decision,
        "gate": gate,
        "lot_number": lot_number,
        "status": job.status,
        "current_step": job.current_step,
    }


def held_jobs(db: Session, limit: int = 200) -> list[Job]:
    return (
        db.query(Job)
        .filter(Job.status == STATUS_QC_HOLD)
        .order_by(Job.created_at.asc())
        .limit(limit)
        .all()
    )
