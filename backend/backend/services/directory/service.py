from __future__ import annotations

from sqlalchemy.orm import Session

from app.core.errors import NotFound
from app.db.models.auth import User
from app.db.models.master import Department, Machine, ProcessType


def get_department(db: Session, department_id: str) -> Department:
    dept = db.query(Department).filter(Department.id == department_id).first()
    if not dept:
        raise NotFound("Department not found", department_id=department_id)
    return dept


def get_department_by_code(db: Session, code: str) -> Department | None:
    return db.query(Department).filter(Department.code == code).first()


def get_machine(db: Session, machine_id: str) -> Machine:
    machine = db.query(Machine).filter(Machine.id == machine_id).first()
    if not machine:
        raise NotFound("Machine not found", machine_id=machine_id)
    return machine


def get_process_type(db: Session, process_type_id: str) -> ProcessType:
    pt = db.query(ProcessType).filter(ProcessType.id == process_type_id).first()
    if not pt:
        raise NotFound("Process type not found", process_type_id=process_type_id)
    return pt


def first_active_machine(db: Session, department_id: str) -> Machine | None:
    return (
        db.query(Machine)
        .filter(Machine.department_id == department_id, Machine.status == "active")
        .order_by(Machine.code.asc())
        .first()
    )


def first_process_type(db: Session, department_id: str) -> ProcessType | None:
    return (
        db.query(ProcessType)
        .filter(ProcessType.department_id == department_id, ProcessType.is_active == True)  # noqa: E712
        .order_by(ProcessType.sequence.asc(), ProcessType.code.asc())
        .first()
    )


def department_for_sequence(db: Session, sequence: int) -> str | None:
    """Department owning the active process type at a given card position."""
    pt = (
        db.query(ProcessType)
        .filter(ProcessType.sequence == sequence, ProcessType.is_active == True)  # noqa: E712
        .order_by(ProcessType.code.asc())
        .first()
    )
    return pt.department_id if pt else None


def users_in_department(db: Session, department_id: str) -> list[str]:
    rows = (
        db.query(User.id)
        .filter(User.department_id == department_id, User.is_active == True)  # noqa: E712
        .order_by(User.email.asc())
        .all()
    )
    return [r[0] for r in rows]


def display_names(db: Session, user_ids) -> dict[str, str]:
    ids = {u for u in user_ids if u}
    if not ids:
        return {}
    return {u.id: (u.full_name or u.email) for u in db.query(User).filter(User.id.in_(ids)).all()}


def list_departments(db: Session) -> list[Department]:
    return db.query(Department).filter(Department.is_active == True).order_by(Department.code.asc()).all()  # noqa: E712


def list_machines(db: Session, department_id: str, *, active_only: bool = True) -> list[Machine]:
    get_department(db, department_id)
    q = db.query(Machine).filter(Machine.department_id == department_id)
    if active_only:
        q = q.filter(Machine.status == "active")
    return q.order_by(Machine.code.asc()).all()


def list_process_types(db: Session, department_id: str | None = None) -> list[ProcessType]:
    q = db.query(ProcessType).filter(ProcessType.is_active == True)  # noqa: E712
    if department_id:
        get_department(db, department_id)
        q = q.filter(ProcessType.department_id == department_id)
    return q.order_by(ProcessType.sequence.asc(), ProcessType.code.asc()).all()
