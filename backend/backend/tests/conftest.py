import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RUN_EVENT_DISPATCHER"] = "false"
os.environ["SEED_CATALOG_ON_STARTUP"] = "false"

from datetime import date  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.security import Grant, Principal, get_principal  # noqa: E402
from app.db import models  # noqa: E402,F401
from app.db.base import Base  # noqa: E402
from app.db.models.auth import User  # noqa: E402
from app.db.models.master import Department, Machine, ProcessType, RouteTemplate, RouteTemplateStep  # noqa: E402
from app.db.session import SessionLocal, engine  # noqa: E402
from services.notify.notifier import RecordingNotifier, get_notifier  # noqa: E402
from services.orders.service import create_order  # noqa: E402
from services.tracking.catalog import get_status_by_code, seed_catalog  # noqa: E402

ALL_PERMISSIONS = [
    "auth.user.manage",
    "sales:manage_orders",
    "planning:manage_plans",
    "inventory:manage_materials",
    "inventory:manage_storage",
    "weaving:manage_workorders",
    "finishing:manage_processes",
    "quality:manage_checks",
    "shipping:manage_shipments",
]


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    seed_catalog(session)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def status(db):
    """Look up a catalog status id by code."""

    def _status(code: str) -> str:
        return get_status_by_code(db, code).id

    return _status


@pytest.fixture
def plant(db):
    """Three departments with one machine and one process type each, plus users."""
    depts = {}
    for code in ("PLANNING", "WEAVING", "FINISHING"):
        d = Department(code=code, name=code.title())
        db.add(d)
        db.flush()
        depts[code] = d
    machines = {
        "WEAVING": Machine(code="LOOM-01", name="Loom 1", department_id=depts["WEAVING"].id),
        "FINISHING": Machine(code="STENTER-01", name="Stenter 1", department_id=depts["FINISHING"].id),
    }
    db.add_all(machines.values())
    process_types = {
        1: ProcessType(code="WEAVE", name="Weaving", department_id=depts["WEAVING"].id, sequence=1),
        2: ProcessType(code="DYE", name="Dyeing", department_id=depts["FINISHING"].id, sequence=2),
        3: ProcessType(code="FINISH", name="Finishing", department_id=depts["FINISHING"].id, sequence=3),
    }
    db.add_all(process_types.values())
    users = {
        "planner": User(email="planner@mill.test", full_name="Planner", department_id=depts["PLANNING"].id),
        "planner2": User(email="planner2@mill.test", full_name="Second Planner", department_id=depts["PLANNING"].id),
        "weaver": User(email="weaver@mill.test", full_name="Weaver", department_id=depts["WEAVING"].id),
        "finisher": User(email="finisher@mill.test", full_name="Finisher", department_id=depts["FINISHING"].id),
    }
    db.add_all(users.values())
    db.commit()
    return {"departments": depts, "machines": machines, "process_types": process_types, "users": users}


@pytest.fixture
def order(db, plant):
    return create_order(
        db,
        order_number="ORD-001",
        actor_id=plant["users"]["planner"].id,
        customer_name="Acme Textiles",
        fabric_type="denim",
        color="indigo",
        quantity=1000,
        due_date=date(2026, 11, 30),
    )


@pytest.fixture
def route_template(db, plant):
    depts = plant["departments"]
    tpl = RouteTemplate(code="DENIM-2", name="Denim two-step")
    tpl.steps = [
        RouteTemplateStep(step_order=1, department_id=depts["WEAVING"].id, process_type_id=plant["process_types"][1].id),
        RouteTemplateStep(step_order=2, department_id=depts["FINISHING"].id, process_type_id=plant["process_types"][3].id),
    ]
    db.add(tpl)
    db.commit()
    return tpl


def make_principal(user: User | None, permissions=ALL_PERMISSIONS, roles=("ADMIN",)) -> Principal:
    if user is None:
        return Principal(grants=[])
    grants = [Grant(role=r, scope_type="TENANT", scope_id="default", perms=list(permissions)) for r in roles]
    return Principal(
        user_id=user.id,
        username=user.email,
        tenant_id="default",
        grants=grants,
        department_id=user.department_id,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client(db, plant, notifier):
    """TestClient acting as the planner with every permission; `client.act_as(...)` switches the caller."""
    from main import app

    holder = {"principal": make_principal(plant["users"]["planner"])}
    app.dependency_overrides[get_principal] = lambda: holder["principal"]
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        c.act_as = lambda principal: holder.__setitem__("principal", principal)
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def principal_for():
    return make_principal
