from decimal import Decimal

import pytest

from app.core.errors import Forbidden, InvalidTransition, PhysicalReceiptRequired, ValidationFailed
from app.core.security import Actor
from app.db.models.inventory import POOL_FG, POOL_SFG, StockLot
from app.db.models.mes_exec import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_QC_HOLD,
    STATUS_QC_REJECTED,
    STATUS_READY_FOR_PACKING,
)
from app.db.models.planning import ProductionPlan, PLAN_COMPLETED
from app.db.models.qms import QCInspection, GATE_ASSEMBLY, GATE_FINAL
from app.events.outbox import OutboxEvent
from services.mes import state_machine as sm
from services.qms import service as qc


def _lots(db, pool):
    return [(lot.lot_number, lot.qty) for lot in db.query(StockLot).filter(StockLot.pool == pool).all()]


@pytest.fixture
def at_gate_one(open_job, run_to):
    def _make(qty=100):
        job_number = open_job(qty=qty)
        run_to(job_number, sm.STITCHING_QC_PENDING)
        return job_number

    return _make


def test_high_rejection_holds_the_job_without_stock(db, staff, at_gate_one):
    job_number = at_gate_one(100)

    out = qc.submit_qc(db, job_number, 20, 5, staff)

    assert out["held"] is True
    job = sm.get_job(db, job_number)
    assert job.status == STATUS_QC_HOLD
    assert job.current_step == sm.QC_REVIEW_NEEDED
    assert _lots(db, POOL_SFG) == []
    assert [j.job_number for j in qc.held_jobs(db)] == [job_number]
    assert not any(h.stage == GATE_ASSEMBLY for h in job.history)


def test_exactly_twenty_percent_is_held(db, staff, at_gate_one):
    job_number = at_gate_one(100)
    out = qc.submit_qc(db, job_number, 20, 4, staff)
    assert out["held"] is True
    assert out["rejection_rate"] == Decimal("0.2")


def test_gate_one_pass_posts_semi_finished_lot_and_routes_next_to_gate_two(db, staff, at_gate_one):
    job_number = at_gate_one(100)

    out = qc.submit_qc(db, job_number, 20, 3, staff, notes="loose threads")

    suffix = job_number.split("-")[-1]
    assert out["gate"] == GATE_ASSEMBLY
    assert out["passed_qty"] == Decimal("97")
    assert _lots(db, POOL_SFG) == [(f"SFG-{suffix}", Decimal("97"))]
    job = sm.get_job(db, job_number)
    assert job.current_step == sm.PACKAGING_PENDING
    assert job.status == STATUS_READY_FOR_PACKING
    assert job.history[-1].stage == GATE_ASSEMBLY
    assert qc.current_gate(job) == GATE_FINAL


def test_gate_two_pass_writes_finished_stock_and_closes_job(db, staff, tee, at_gate_one, run_to):
    job_number = at_gate_one(100)
    qc.submit_qc(db, job_number, 20, 3, staff)
    run_to(job_number, sm.QC_PENDING)

    out = qc.submit_qc(db, job_number, 10, 1, staff)

    suffix = job_number.split("-")[-1]
    assert out["gate"] == GATE_FINAL
    assert _lots(db, POOL_FG) == [(f"FG-{suffix}", Decimal("99"))]
    assert _lots(db, POOL_SFG) == []
    assert tee.warehouse_qty == Decimal("99")

    job = sm.get_job(db, job_number)
    assert job.status == STATUS_COMPLETED
    assert job.current_step == sm.QC_COMPLETED
    plan = db.query(ProductionPlan).filter(ProductionPlan.id == job.plan_id).one()
    assert plan.produced_qty == Decimal("99")
    assert plan.status == PLAN_COMPLETED
    assert db.query(OutboxEvent).filter(OutboxEvent.topic == "JobCompleted").count() == 1


def test_each_gate_posts_at_most_once(db, staff, at_gate_one, run_to):
    job_number = at_gate_one(50)
    qc.submit_qc(db, job_number, 10, 0, staff)
    run_to(job_number, sm.QC_PENDING)
    qc.submit_qc(db, job_number, 10, 0, staff)

    with pytest.raises(InvalidTransition):
        qc.submit_qc(db, job_number, 10, 0, staff)

    job = sm.get_job(db, job_number)
    posted = db.query(QCInspection).filter(QCInspection.job_id == job.id, QCInspection.posted.is_(True)).all()
    assert sorted(i.gate for i in posted) == sorted([GATE_ASSEMBLY, GATE_FINAL])


@pytest.mark.parametrize("sample,rejected", [(0, 0), (101, 0), (10, 11), (10, -1)])
def test_bad_inspection_input_changes_nothing(db, staff, at_gate_one, sample, rejected):
    job_number = at_gate_one(100)
    before = len(sm.get_job(db, job_number).history)

    with pytest.raises(ValidationFailed):
        qc.submit_qc(db, job_number, sample, rejected, staff)

    job = sm.get_job(db, job_number)
    assert len(job.history) == before
    assert job.current_step == sm.STITCHING_QC_PENDING
    assert db.query(QCInspection).count() == 0


def test_goods_in_transit_need_physical_receipt(db, staff, make_vendor, open_job, run_to):
    vendor = make_vendor("Stitch Co", category="Job Worker")
    job_number = open_job(qty=30, mode="Job Work", vendor_id=vendor.id)
    run_to(job_number, sm.SEWING_STARTED)
    sm.advance_stage(db, job_number, staff)  # goods leave the job worker

    with pytest.raises(PhysicalReceiptRequired):
        qc.submit_qc(db, job_number, 5, 0, staff)

    sm.receive_handshake(db, job_number, 30, staff)
    assert qc.submit_qc(db, job_number, 5, 0, staff)["gate"] == GATE_ASSEMBLY


def test_admin_approval_posts_override_lot_at_the_held_gate(db, staff, admin, at_gate_one):
    job_number = at_gate_one(100)
    qc.submit_qc(db, job_number, 20, 5, staff)

    with pytest.raises(Forbidden):
        qc.review_qc(db, job_number, "approve", staff)
    out = qc.review_qc(db, job_number, "approve", admin, notes="customer accepts minor defects")

    suffix = job_number.split("-")[-1]
    assert out["lot_number"] == f"SFG-{suffix}-OVR"
    assert _lots(db, POOL_SFG) == [(f"SFG-{suffix}-OVR", Decimal("95"))]
    job = sm.get_job(db, job_number)
    assert job.current_step == sm.PACKAGING_PENDING
    # approval at gate 1 records the assembly stage, so the next inspection is gate 2
    assert qc.current_gate(job) == GATE_FINAL
    assert qc.held_jobs(db) == []


def test_admin_rework_sends_job_back_to_the_gate_stage(db, staff, admin, at_gate_one, run_to):
    job_number = at_gate_one(40)
    qc.submit_qc(db, job_number, 10, 0, staff)
    run_to(job_number, sm.QC_PENDING)
    qc.submit_qc(db, job_number, 10, 5, staff)

    qc.review_qc(db, job_number, "rework", admin, notes="re-press collars")

    job = sm.get_job(db, job_number)
    assert job.current_step == sm.PACKAGING_STARTED
    assert job.status == STATUS_IN_PROGRESS
    assert job.rework_instructions == "re-press collars"


def test_admin_reject_scraps_the_job(db, staff, admin, at_gate_one):
    job_number = at_gate_one(40)
    qc.submit_qc(db, job_number, 10, 9, staff)

    qc.review_qc(db, job_number, "reject", admin)

    job = sm.get_job(db, job_number)
    assert job.status == STATUS_QC_REJECTED
    assert job.current_step == sm.SCRAPPED
    with pytest.raises(InvalidTransition):
        qc.submit_qc(db, job_number, 10, 0, staff)


def test_review_needs_a_held_job(db, admin, at_gate_one):
    job_number = at_gate_one(10)
    with pytest.raises(InvalidTransition):
        qc.review_qc(db, job_number, "approve", admin)
    with pytest.raises(ValidationFailed):
        qc.review_qc(db, job_number, "shrug", admin)


def test_vendor_cannot_inspect_someone_elses_job(db, at_gate_one):
    job_number = at_gate_one(10)
    outsider = Actor(name="outsider", role="Vendor", vendor_id="not-this-one")
    with pytest.raises(Forbidden):
        qc.submit_qc(db, job_number, 5, 0, outsider)
