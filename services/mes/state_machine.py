"""Job card lifecycle.

One canonical step table drives every channel:

    Material_Pending -> Cutting_Pending -> Cutting_Started -> Cutting_Completed
    -> Stitching_Pending -> Sewing_Started
       -> Stitching_Completed (job work, goods in transit) --handshake--> Stitching_QC_Pending
       -> Stitching_QC_Pending (in-house)                                    [gate 1]
    -> Packaging_Pending -> Packaging_Started -> Packaging_Completed -> QC_Pending  [gate 2]
    -> QC_Completed

    Full-Buy: Procurement_Pending -> PO_Raised -> QC_Completed

Gate outcomes (hold, rework, scrap) are written by services.qms.service.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import Forbidden, InvalidTransition, NotFound, ReferenceNotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.inventory import BomLine, Material, Product
from app.db.models.mes_exec import (
    Job,
    JobIssuedMaterial,
    JobReceiptLog,
    JOB_FULL_BUY,
    JOB_WORK,
    AT_SOURCE,
    IN_TRANSIT,
    RECEIVED_AT_FACTORY,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_QC_PENDING,
    TERMINAL_STATUSES,
)
from app.db.models.planning import ProductionPlan
from app.db.session import atomic
from app.events.bus import publish
from services.inventory import ledger
from services.mes.history import append_history, append_timeline
from services.planning.service import mark_plan_progress
from services.purchasing.orders import create_purchase_order, get_vendor

logger = logging.getLogger(__name__)

MATERIAL_PENDING = "Material_Pending"
CUTTING_PENDING = "Cutting_Pending"
CUTTING_STARTED = "Cutting_Started"
CUTTING_COMPLETED = "Cutting_Completed"
STITCHING_PENDING = "Stitching_Pending"
SEWING_STARTED = "Sewing_Started"
STITCHING_COMPLETED = "Stitching_Completed"
STITCHING_QC_PENDING = "Stitching_QC_Pending"
PACKAGING_PENDING = "Packaging_Pending"
PACKAGING_STARTED = "Packaging_Started"
PACKAGING_COMPLETED = "Packaging_Completed"
QC_PENDING = "QC_Pending"
QC_COMPLETED = "QC_Completed"
QC_REVIEW_NEEDED = "QC_Review_Needed"
PROCUREMENT_PENDING = "Procurement_Pending"
PO_RAISED = "PO_Raised"
SCRAPPED = "Scrapped"

# Steps an operator may move a job between. Everything else is driven by
# kitting, the logistics handshake, the QC gates, or purchasing.
OPERATOR_TRANSITIONS: dict[str, tuple[str, ...]] = {
    CUTTING_PENDING: (CUTTING_STARTED,),
    CUTTING_STARTED: (CUTTING_COMPLETED,),
    CUTTING_COMPLETED: (STITCHING_PENDING,),
    STITCHING_PENDING: (SEWING_STARTED,),
    SEWING_STARTED: (STITCHING_COMPLETED, STITCHING_QC_PENDING),
    PACKAGING_PENDING: (PACKAGING_STARTED,),
    PACKAGING_STARTED: (PACKAGING_COMPLETED,),
    PACKAGING_COMPLETED: (QC_PENDING,),
}

ALL_STEPS = (
    MATERIAL_PENDING, CUTTING_PENDING, CUTTING_STARTED, CUTTING_COMPLETED, STITCHING_PENDING,
    SEWING_STARTED, STITCHING_COMPLETED, STITCHING_QC_PENDING, PACKAGING_PENDING, PACKAGING_STARTED,
    PACKAGING_COMPLETED, QC_PENDING, QC_COMPLETED, QC_REVIEW_NEEDED, PROCUREMENT_PENDING, PO_RAISED,
    SCRAPPED,
)

QC_STEPS = (STITCHING_QC_PENDING, QC_PENDING)


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def get_job(db: Session, job_ref: str, *, lock: bool = False) -> Job:
    q = db.query(Job).filter((Job.id == job_ref) | (Job.job_number == job_ref))
    if lock:
        q = q.with_for_update()
    job = q.first()
    if not job:
        raise NotFound("Job not found", job=job_ref)
    return job


def check_access(job: Job, actor: Actor) -> None:
    if actor.is_vendor and (not actor.vendor_id or actor.vendor_id != job.vendor_id):
        raise Forbidden("Job is not assigned to this vendor", job=job.job_number)


def _check_open(job: Job) -> None:
    if job.is_terminal:
        raise InvalidTransition(f"Job {job.job_number} is closed ({job.status})", job=job.job_number)


def stitching_exit(job: Job) -> str:
    """Where a job goes when sewing finishes: back through logistics, or straight to gate 1."""
    return STITCHING_COMPLETED if job.job_type == JOB_WORK else STITCHING_QC_PENDING


def next_step(job: Job) -> str | None:
    if job.current_step == SEWING_STARTED:
        return stitching_exit(job)
    options = OPERATOR_TRANSITIONS.get(job.current_step)
    return options[0] if options else None


def visible_jobs(db: Session, actor: Actor, *, step: str | None = None, limit: int = 200) -> list[Job]:
    """Job board. Vendors only see the jobs assigned to them."""
    q = db.query(Job)
    if actor.is_vendor:
        if not actor.vendor_id:
            return []
        q = q.filter(Job.vendor_id == actor.vendor_id)
    if step:
        q = q.filter(Job.current_step == step)
    return q.order_by(Job.created_at.desc()).limit(limit).all()


def issue_materials(db: Session, job_ref: str, actor: Actor) -> dict:
    """Kit a job: FIFO-issue every BOM material for the full job quantity, then send it to cutting."""
    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        check_access(job, actor)
        _check_open(job)
        if job.current_step != MATERIAL_PENDING:
            raise InvalidTransition(
                f"Materials can only be issued at {MATERIAL_PENDING}; job is at {job.current_step}",
                job=job.job_number,
            )

        bom = db.query(BomLine).filter(BomLine.product_id == job.product_id).all()
        issued = []
        for line in bom:
            material = db.query(Material).filter(Material.id == line.material_id).first()
            if not material:
                raise ReferenceNotFound(
                    f"BOM for job {job.job_number} references a missing material",
                    material_id=line.material_id,
                )
            need = _dec(line.qty_required) * _dec(job.total_qty)
            if need <= 0:
                continue
            for part in ledger.issue(db, material, need):
                job.issued_materials.append(
                    JobIssuedMaterial(
                        material_id=material.id,
                        lot_number=part["lot_number"],
                        qty=part["qty"],
                        issued_by=actor.name,
                    )
                )
                issued.append({"material": material.code, "lot_number": part["lot_number"], "qty": part["qty"]})

        job.current_step = CUTTING_PENDING
        job.status = STATUS_IN_PROGRESS
        append_history(job, actor=actor.name, stage="Kitting", remarks=f"{len(issued)} lot issue(s); sent to cutting floor")
        append_timeline(job, "Materials Issued", actor=actor.name, details=f"Kitted by {actor.name}")
        mark_plan_progress(db, job.plan_id)
        audit(db, actor=actor.name, actor_role=actor.role, action="mes.issue_materials", entity_type="job",
              entity_id=job.job_number, payload={"issued": issued})
        logger.info("job %s kitted (%d lot issues)", job.job_number, len(issued))

    return {"job": job.job_number, "current_step": job.current_step, "issued": issued}


def advance_stage(db: Session, job_ref: str, actor: Actor, to_step: str | None = None, remarks: str | None = None) -> Job:
    """Operator move along the step table. ``to_step`` defaults to the natural next step."""
    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        check_access(job, actor)
        _check_open(job)
        allowed = OPERATOR_TRANSITIONS.get(job.current_step, ())
        if job.current_step == SEWING_STARTED:
            allowed = (stitching_exit(job),)
        target = to_step or next_step(job)
        if not target or target not in allowed:
            raise InvalidTransition(
                f"Cannot move job {job.job_number} from {job.current_step} to {to_step or 'next step'}",
                job=job.job_number,
                from_step=job.current_step,
                to_step=to_step,
            )

        job.current_step = target
        if target in QC_STEPS:
            job.status = STATUS_QC_PENDING
        else:
            job.status = STATUS_IN_PROGRESS
        if target == STITCHING_COMPLETED:
            job.logistics_status = IN_TRANSIT

        append_history(job, actor=actor.name, remarks=remarks)
        if target in (STITCHING_COMPLETED, STITCHING_QC_PENDING, QC_PENDING):
            append_timeline(job, target, actor=actor.name, details=remarks)
        mark_plan_progress(db, job.plan_id)
        logger.info("job %s -> %s by %s", job.job_number, target, actor.name)
    return job


def report_vendor_dispatch(db: Session, job_ref: str, actual_qty, wastage, actor: Actor, remarks: str | None = None) -> Job:
    """Job worker reports stitched goods dispatched back to the factory."""
    actual_qty = _dec(actual_qty)
    wastage = _dec(wastage)
    if actual_qty < 0 or wastage < 0:
        raise ValidationFailed("Dispatched and wasted quantities cannot be negative")
    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        check_access(job, actor)
        _check_open(job)
        if job.job_type != JOB_WORK or job.current_step != SEWING_STARTED:
            raise InvalidTransition(
                f"Job {job.job_number} is not with a job worker at {SEWING_STARTED}",
                job=job.job_number,
            )

        job.vendor_report = {
            "actual_qty_produced": str(actual_qty),
            "wastage_qty": str(wastage),
            "reported_by": actor.name,
            "remarks": remarks or "",
        }
        job.current_step = STITCHING_COMPLETED
        job.status = STATUS_IN_PROGRESS
        job.logistics_status = IN_TRANSIT
        append_history(job, actor=actor.name, stage="Vendor Dispatch", remarks=remarks)
        append_timeline(job, "Vendor Dispatch", actor=actor.name, details=f"Vendor reported {actual_qty} pcs dispatched")
        logger.info("job %s dispatched by vendor (%s pcs, %s wasted)", job.job_number, actual_qty, wastage)
    return job


def receive_handshake(db: Session, job_ref: str, received_qty, actor: Actor) -> Job:
    """Physical receipt of job-work goods; opens gate 1."""
    received_qty = _dec(received_qty)
    if received_qty <= 0:
        raise ValidationFailed("Received quantity must be positive")
    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        _check_open(job)
        if job.current_step != STITCHING_COMPLETED or job.logistics_status != IN_TRANSIT:
            raise InvalidTransition(
                f"Job {job.job_number} has nothing in transit ({job.current_step}, {job.logistics_status})",
                job=job.job_number,
            )

        job.receipts.append(JobReceiptLog(qty=received_qty, received_by=actor.name))
        job.logistics_status = RECEIVED_AT_FACTORY
        job.current_step = STITCHING_QC_PENDING
        job.status = STATUS_QC_PENDING
        append_history(job, actor=actor.name, stage="Logistics", remarks=f"Received {received_qty} of {job.total_qty}")
        append_timeline(job, "Vendor Handshake", actor=actor.name,
                        details=f"Received {received_qty} units. Moved to Stitching QC (Gate 1).")
        logger.info("job %s received at factory (%s)", job.job_number, received_qty)
    return job


def force_transition(db: Session, job_ref: str, step: str, actor: Actor, *, status: str | None = None,
                     reason: str | None = None, logistics_status: str | None = None) -> Job:
    """Admin override for a stuck job. Cannot close a job; QC and purchasing do that."""
    if not actor.is_admin:
        raise Forbidden("Only an admin or manager can force a job transition")
    if step not in ALL_STEPS or step in (QC_COMPLETED, SCRAPPED):
        raise InvalidTransition(f"Cannot force a job to {step}", to_step=step)
    status = status or (STATUS_QC_PENDING if step in QC_STEPS else STATUS_IN_PROGRESS)
    if status in TERMINAL_STATUSES:
        raise InvalidTransition(f"Cannot force a job to status {status}", status=status)
    if logistics_status and logistics_status not in (AT_SOURCE, IN_TRANSIT, RECEIVED_AT_FACTORY):
        raise ValidationFailed(f"Unknown logistics status {logistics_status}")

    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        _check_open(job)
        previous = job.current_step
        job.current_step = step
        job.status = status
        if step == STITCHING_COMPLETED:
            # the handshake is the only way out of this step
            job.logistics_status = IN_TRANSIT
        elif logistics_status:
            job.logistics_status = logistics_status
        append_history(job, actor=actor.name, stage="Admin Override", remarks=reason, meta={"from_step": previous})
        append_timeline(job, "Admin Override", actor=actor.name, details=f"{previous} -> {step}: {reason or ''}")
        audit(db, actor=actor.name, actor_role=actor.role, action="mes.force_transition", entity_type="job",
              entity_id=job.job_number, payload={"from": previous, "to": step, "status": status, "reason": reason})
        logger.warning("job %s forced %s -> %s by %s", job.job_number, previous, step, actor.name)
    return job


def raise_trading_po(db: Session, job_ref: str, vendor_ref: str, unit_cost, actor: Actor) -> dict:
    """Full-Buy channel: order the finished product from a trading vendor."""
    unit_cost = _dec(unit_cost)
    if unit_cost < 0:
        raise ValidationFailed("Unit cost cannot be negative")
    with atomic(db):
        job = get_job(db, job_ref, lock=True)
        _check_open(job)
        if job.job_type != JOB_FULL_BUY or job.current_step != PROCUREMENT_PENDING:
            raise InvalidTransition(f"Job {job.job_number} is not awaiting procurement", job=job.job_number)
        vendor = get_vendor(db, vendor_ref)
        po = create_purchase_order(
            db,
            vendor,
            [{"item_type": "product", "item_id": job.product_id, "qty": job.total_qty, "unit_price": unit_cost}],
            created_by=actor.name,
            job_id=job.id,
            prefix="PO-TR",
        )
        job.vendor_id = vendor.id
        job.purchase_order_id = po.id
        job.current_step = PO_RAISED
        job.status = STATUS_IN_PROGRESS
        append_history(job, actor=actor.name, stage="PO Created", remarks=po.po_number)
        append_timeline(job, "PO Raised", actor=actor.name, details=f"{po.po_number} to {vendor.vendor_name}")
        mark_plan_progress(db, job.plan_id)
        logger.info("job %s: trading PO %s raised", job.job_number, po.po_number)
    return {"job": job.job_number, "po_number": po.po_number, "current_step": job.current_step}


def complete_procured_job(db: Session, job: Job, qty, actor: Actor, *, lot_number: str) -> None:
    """Close a Full-Buy job once its PO line is fully received. Runs inside the caller's unit of work."""
    if job.is_terminal or job.current_step != PO_RAISED:
        return
    job.current_step = QC_COMPLETED
    job.status = STATUS_COMPLETED
    append_history(job, actor=actor.name, stage="Goods Received", remarks=f"{qty} received as {lot_number}")
    append_timeline(job, "Goods Received", actor=actor.name, details=f"Lot {lot_number}")
    if job.plan_id:
        plan = db.query(ProductionPlan).filter(ProductionPlan.id == job.plan_id).first()
        if plan:
            plan.produced_qty = _dec(plan.produced_qty) + _dec(qty)
    db.flush()
    mark_plan_progress(db, job.plan_id)
    publish(db, "JobCompleted", {"job": job.job_number, "qty": _dec(qty), "channel": job.job_type})


def job_product(db: Session, job: Job) -> Product:
    product = db.query(Product).filter(Product.id == job.product_id).first()
    if not product:
        raise ReferenceNotFound("Job references a missing product", job=job.job_number)
    return product
