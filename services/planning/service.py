"""Production plans: turning unmet order demand into job cards.

A plan covers one order line's shortfall for one product. Confirming a
strategy splits the plan across channels (in-house, job work, buy) and opens
one job per split.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import NotFound, OverCommit, ReferenceNotFound, ValidationFailed
from app.core.security import Actor
from app.db.models.common import short_ref
from app.db.models.inventory import Product
from app.db.models.mes_exec import Job, JOB_FULL_BUY, JOB_IN_HOUSE, JOB_WORK, STATUS_PENDING, TERMINAL_STATUSES
from app.db.models.planning import (
    ProductionPlan,
    PlanSplit,
    ACTIVE_PLAN_STATUSES,
    MODE_BUY,
    MODE_JOB_WORK,
    MODE_MANUFACTURE,
    PLAN_COMPLETED,
    PLAN_IN_PROGRESS,
    PLAN_PARTIALLY_PLANNED,
    PLAN_PENDING_STRATEGY,
    PLAN_SCHEDULED,
)
from app.db.models.purchasing import Vendor
from app.db.models.sales import SalesOrder
from app.db.session import atomic
from services.mes.history import append_history, append_timeline

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

PREFIX_IN_HOUSE = "JC-IN"
PREFIX_JOB_WORK = "JC-JW"
PREFIX_BUY = "TR-REQ"
PREFIX_MANUAL = "MAN-STK"

STEP_MATERIAL_PENDING = "Material_Pending"
STEP_PROCUREMENT_PENDING = "Procurement_Pending"

_MODE_ALIASES = {
    "manufacture": MODE_MANUFACTURE,
    "manufacturing": MODE_MANUFACTURE,
    "in-house": MODE_MANUFACTURE,
    "job work": MODE_JOB_WORK,
    "job-work": MODE_JOB_WORK,
    "buy": MODE_BUY,
    "full-buy": MODE_BUY,
}

ROUTING_STAGES = ("cutting", "stitching")


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v or 0))


def normalize_mode(mode: str | None) -> str:
    m = _MODE_ALIASES.get((mode or "").strip().lower())
    if not m:
        raise ValidationFailed(f"Unknown split mode: {mode!r}")
    return m


def _routing_is_job_work(routing: dict | None) -> bool:
    routing = routing or {}
    return any((routing.get(stage) or {}).get("type") == "Job Work" for stage in ROUTING_STAGES)


def _routing_vendor_name(routing: dict | None) -> str | None:
    routing = routing or {}
    for stage in ROUTING_STAGES:
        name = (routing.get(stage) or {}).get("vendor_name")
        if name:
            return name
    return None


def plan_ceiling(plan: ProductionPlan, product: Product) -> Decimal:
    """Most that may still be committed: the order's remainder plus the stock refill."""
    remaining = max(ZERO, _dec(plan.total_qty_to_make) - _dec(plan.planned_qty) - _dec(plan.dispatched_qty))
    refill = max(ZERO, product.stock_at_least - _dec(product.warehouse_qty))
    return remaining + refill


def _validate_splits(splits: list[dict]) -> list[dict]:
    clean = []
    for s in splits or []:
        qty = _dec(s.get("qty"))
        if qty < 0:
            raise ValidationFailed("Split quantity cannot be negative", split=s)
        clean.append({**s, "qty": qty, "mode": normalize_mode(s.get("mode") or s.get("type"))})
    if sum((s["qty"] for s in clean), ZERO) <= 0:
        raise ValidationFailed("Nothing to plan: all split quantities are zero")
    return clean


def _resolve_vendor(db: Session, split: dict) -> str | None:
    if split.get("vendor_id"):
        vendor = db.query(Vendor).filter(Vendor.id == split["vendor_id"]).first()
        if not vendor:
            raise ReferenceNotFound(f"Vendor {split['vendor_id']} not found")
        return vendor.id
    name = _routing_vendor_name(split.get("routing"))
    if not name:
        return None
    vendor = db.query(Vendor).filter(Vendor.vendor_name == name).first()
    if not vendor:
        raise ReferenceNotFound(f"Vendor named in routing not found: {name}", vendor_name=name)
    return vendor.id


def _job_channel(split: dict, *, manual: bool) -> tuple[str, str, str]:
    """(prefix, job_type, initial step) for a split."""
    mode = split["mode"]
    if mode == MODE_BUY:
        return (PREFIX_MANUAL if manual else PREFIX_BUY), JOB_FULL_BUY, STEP_PROCUREMENT_PENDING
    if mode == MODE_JOB_WORK or _routing_is_job_work(split.get("routing")):
        return (PREFIX_MANUAL if manual else PREFIX_JOB_WORK), JOB_WORK, STEP_MATERIAL_PENDING
    return (PREFIX_MANUAL if manual else PREFIX_IN_HOUSE), JOB_IN_HOUSE, STEP_MATERIAL_PENDING


def _open_jobs(db: Session, plan: ProductionPlan, product: Product, splits: list[dict], actor: Actor, *, manual: bool) -> list[Job]:
    jobs: list[Job] = []
    for s in splits:
        if s["qty"] <= 0:
            continue
        prefix, job_type, step = _job_channel(s, manual=manual)
        vendor_id = _resolve_vendor(db, s)
        job = Job(
            job_number=short_ref(prefix),
            job_type=job_type,
            plan_id=plan.id,
            order_id=plan.order_id,
            product_id=product.id,
            vendor_id=vendor_id,
            routing=s.get("routing") or {},
            total_qty=s["qty"],
            status=STATUS_PENDING,
            current_step=step,
            meta={"unit_cost": str(s.get("unit_cost") or 0), "source": "Internal Stock" if manual else "Sales Order"},
        )
        db.add(job)
        append_history(job, actor=actor.name, stage="Created", remarks=f"{s['mode']} job for {s['qty']}")
        append_timeline(
            job,
            "Created",
            actor=actor.name,
            details=f"Manual stock job created ({s['qty']})" if manual else f"Partial plan created ({s['qty']})",
        )
        db.flush()
        plan.splits.append(
            PlanSplit(
                mode=s["mode"],
                qty=s["qty"],
                vendor_id=vendor_id,
                routing=s.get("routing") or {},
                job_id=job.id,
                created_by=actor.name,
            )
        )
        jobs.append(job)
    return jobs


def confirm_strategy(db: Session, plan_id: str, splits: list[dict], actor: Actor) -> dict:
    """Split a pending plan into jobs, bounded by the plan ceiling."""
    with atomic(db):
        plan = (
            db.query(ProductionPlan)
            .filter((ProductionPlan.id == plan_id) | (ProductionPlan.plan_number == plan_id))
            .with_for_update()
            .first()
        )
        if not plan:
            raise NotFound("Production plan not found", plan_id=plan_id)
        product = db.query(Product).filter(Product.id == plan.product_id).first()

        clean = _validate_splits(splits)
        requested = sum((s["qty"] for s in clean), ZERO)
        ceiling = plan_ceiling(plan, product)
        if requested > ceiling:
            raise OverCommit(
                f"Cannot plan {requested}: at most {ceiling} may be committed",
                requested=str(requested),
                ceiling=str(ceiling),
            )

        jobs = _open_jobs(db, plan, product, clean, actor, manual=False)

        plan.planned_qty = _dec(plan.planned_qty) + requested
        if plan.planned_qty + _dec(plan.dispatched_qty) >= _dec(plan.total_qty_to_make):
            plan.status = PLAN_SCHEDULED
        else:
            plan.status = PLAN_PARTIALLY_PLANNED

        audit(db, actor=actor.name, actor_role=actor.role, action="planning.confirm_strategy", entity_type="production_plan",
              entity_id=plan.id, payload={"jobs": [j.job_number for j in jobs], "qty": requested})
        logger.info("plan %s: %s planned over %d job(s), status %s", plan.plan_number, requested, len(jobs), plan.status)

    return {
        "plan_number": plan.plan_number,
        "status": plan.status,
        "planned_qty": plan.planned_qty,
        "jobs": [j.job_number for j in jobs],
    }


def confirm_manual_strategy(db: Session, product_id: str, total_qty, splits: list[dict], actor: Actor) -> dict:
    """Internal stock build with no order behind it; the requested total is the ceiling."""
    total_qty = _dec(total_qty)
    if total_qty <= 0:
        raise ValidationFailed("Total quantity must be positive")
    with atomic(db):
        product = db.query(Product).filter((Product.id == product_id) | (Product.code == product_id)).first()
        if not product:
            raise NotFound("Product not found", product_id=product_id)

        clean = _validate_splits(splits)
        requested = sum((s["qty"] for s in clean), ZERO)
        if requested > total_qty:
            raise OverCommit(
                f"Cannot plan {requested}: manual plan is for {total_qty}",
                requested=str(requested),
                ceiling=str(total_qty),
            )

        plan = ProductionPlan(
            plan_number=short_ref("PP"),
            order_id=None,
            product_id=product.id,
            is_manual=True,
            total_qty_to_make=total_qty,
            planned_qty=requested,
            status=PLAN_SCHEDULED if requested >= total_qty else PLAN_PARTIALLY_PLANNED,
        )
        db.add(plan)
        db.flush()
        jobs = _open_jobs(db, plan, product, clean, actor, manual=True)

        audit(db, actor=actor.name, actor_role=actor.role, action="planning.confirm_manual", entity_type="production_plan",
              entity_id=plan.id, payload={"jobs": [j.job_number for j in jobs], "qty": requested})

    return {
        "plan_number": plan.plan_number,
        "status": plan.status,
        "planned_qty": plan.planned_qty,
        "jobs": [j.job_number for j in jobs],
    }


def uncovered_demand(db: Session, order: SalesOrder, product_id: str, qty_to_produce) -> Decimal:
    """Part of an order's shortfall that active plans do not already cover."""
    plans = (
        db.query(ProductionPlan)
        .filter(
            ProductionPlan.order_id == order.id,
            ProductionPlan.product_id == product_id,
            ProductionPlan.status.in_(ACTIVE_PLAN_STATUSES),
        )
        .all()
    )
    covered = sum((max(ZERO, _dec(p.total_qty_to_make) - _dec(p.produced_qty)) for p in plans), ZERO)
    return max(ZERO, _dec(qty_to_produce) - covered)


def regenerate_plans(db: Session, product: Product, orders: list[SalesOrder]) -> list[ProductionPlan]:
    """Replace the pending plans of ``orders`` for ``product`` with fresh ones.

    Pending-strategy plans are dropped; a new plan is opened for any shortfall
    that active plans do not cover.
    """
    order_ids = [o.id for o in orders]
    if order_ids:
        db.query(ProductionPlan).filter(
            ProductionPlan.order_id.in_(order_ids),
            ProductionPlan.product_id == product.id,
            ProductionPlan.status == PLAN_PENDING_STRATEGY,
        ).delete(synchronize_session="fetch")

    created: list[ProductionPlan] = []
    for order in orders:
        shortfall = sum((_dec(ln.qty_to_produce) for ln in order.lines if ln.product_id == product.id), ZERO)
        need = uncovered_demand(db, order, product.id, shortfall)
        if need <= 0:
            continue
        plan = ProductionPlan(
            plan_number=short_ref("PP"),
            order_id=order.id,
            product_id=product.id,
            total_qty_to_make=need,
            status=PLAN_PENDING_STRATEGY,
        )
        db.add(plan)
        created.append(plan)
    db.flush()
    return created


def list_pending_plans(db: Session, limit: int = 200) -> list[ProductionPlan]:
    return (
        db.query(ProductionPlan)
        .filter(ProductionPlan.status.in_((PLAN_PENDING_STRATEGY, PLAN_PARTIALLY_PLANNED)))
        .order_by(ProductionPlan.created_at.asc())
        .limit(limit)
        .all()
    )


def mark_plan_progress(db: Session, plan_id: str | None) -> None:
    """In Progress once a job runs; Completed when every job is terminal and the plan is fully planned."""
    if not plan_id:
        return
    plan = db.query(ProductionPlan).filter(ProductionPlan.id == plan_id).first()
    if not plan or plan.status not in (PLAN_PARTIALLY_PLANNED, PLAN_SCHEDULED, PLAN_IN_PROGRESS):
        return
    jobs = db.query(Job).filter(Job.plan_id == plan.id).all()
    if not jobs:
        return
    fully_planned = _dec(plan.planned_qty) + _dec(plan.dispatched_qty) >= _dec(plan.total_qty_to_make)
    if fully_planned and all(j.status in TERMINAL_STATUSES for j in jobs):
        plan.status = PLAN_COMPLETED
    elif plan.status == PLAN_SCHEDULED and any(j.status != STATUS_PENDING for j in jobs):
        plan.status = PLAN_IN_PROGRESS
