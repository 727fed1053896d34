import os

# Must be set before app.core.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["IDENTITY_JWT_SECRET"] = "test-secret"

from datetime import datetime
from decimal import Decimal

import pytest
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import IDENTITY_AUDIENCE, IDENTITY_JWT_ALG, IDENTITY_JWT_SECRET
from app.core.security import Actor
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.inventory import BomLine, Material, Product
from app.db.models.purchasing import Vendor
from services.inventory import ledger
from services.mes import state_machine as sm
from services.planning.service import confirm_manual_strategy

T0 = datetime(2026, 1, 1, 8, 0, 0)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def staff():
    return Actor(name="floor-operator", role="Staff")


@pytest.fixture
def admin():
    return Actor(name="plant-manager", role="Admin")


@pytest.fixture
def make_material(db):
    def _make(code, lots=(), **kw):
        m = Material(code=code, name=kw.pop("name", code), current_qty=Decimal("0"), **kw)
        db.add(m)
        db.flush()
        for lot_number, qty, added_at in lots:
            ledger.receive(db, m, qty, lot_number=lot_number, added_at=added_at)
        db.commit()
        return m

    return _make


@pytest.fixture
def make_product(db):
    def _make(code, bom=(), stock=None, **kw):
        p = Product(
            code=code,
            sku=kw.pop("sku", f"SKU-{code}"),
            name=kw.pop("name", code),
            warehouse_qty=Decimal("0"),
            reserved_qty=Decimal("0"),
            **kw,
        )
        db.add(p)
        db.flush()
        for material, qty_required in bom:
            db.add(BomLine(product_id=p.id, material_id=material.id, qty_required=Decimal(str(qty_required))))
        if stock:
            ledger.receive(db, p, stock, lot_number=f"OPEN-{code}", added_at=T0)
        db.commit()
        return p

    return _make


@pytest.fixture
def make_vendor(db):
    def _make(name, category="Material Supplier", code=None):
        v = Vendor(vendor_code=code or name.upper().replace(" ", "-")[:32], vendor_name=name, category=category,
                   balance=Decimal("0"), meta={})
        db.add(v)
        db.commit()
        return v

    return _make


@pytest.fixture
def fabric(make_material):
    return make_material("FAB-COTTON", lots=[("FAB-L1", 1000, T0)], unit="MTR")


@pytest.fixture
def tee(make_product, fabric):
    return make_product("TEE-BLK", bom=[(fabric, "1.5")])


@pytest.fixture
def open_job(db, staff, tee):
    """Manual stock job for ``tee``; returns its job number."""
    def _open(qty=100, mode="Manufacture", **split):
        out = confirm_manual_strategy(db, tee.id, qty, [{"mode": mode, "qty": qty, **split}], staff)
        return out["jobs"][0]

    return _open


@pytest.fixture
def run_to(db, staff):
    """Drive a job along the operator table until it reaches ``step``."""
    def _run(job_number, step, actor=None):
        actor = actor or staff
        job = sm.get_job(db, job_number)
        if job.current_step == sm.MATERIAL_PENDING:
            sm.issue_materials(db, job_number, actor)
        for _ in range(len(sm.ALL_STEPS)):
            job = sm.get_job(db, job_number)
            if job.current_step == step:
                return job
            sm.advance_stage(db, job_number, actor)
        raise AssertionError(f"{job_number} never reached {step}")

    return _run


def mint_token(name, role="Staff", vendor_id=None):
    claims = {"sub": name, "role": role, "aud": IDENTITY_AUDIENCE}
    if vendor_id:
        claims["vendor_id"] = vendor_id
    return jwt.encode(claims, IDENTITY_JWT_SECRET, algorithm=IDENTITY_JWT_ALG)


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient

    from app.db.session import get_db
    from main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(name="floor-operator", role="Staff", vendor_id=None):
        return {"Authorization": f"Bearer {mint_token(name, role, vendor_id)}"}

    return _headers
